import copy
import json
import logging
import string
import time
import uuid
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from errors import SchemaMismatchError

logger = logging.getLogger("stage_portrait.workflow")


class WorkflowTemplate:
    """Read-only view over a workflow graph (node id -> node document).

    The graph schema belongs to the backend, so nodes are kept as plain dicts.
    """

    def __init__(self, graph: Dict[str, Any], source: str = "<memory>"):
        self._graph = graph
        self.source = source

    @property
    def graph(self) -> Mapping[str, Any]:
        return MappingProxyType(self._graph)

    def copy_graph(self) -> Dict[str, Any]:
        return copy.deepcopy(self._graph)


def load_template(path: str) -> WorkflowTemplate:
    with open(path, "r", encoding="utf-8") as f:
        try:
            data = json.load(f)
        except ValueError as e:
            # JSONDecodeError and UnicodeDecodeError
            raise SchemaMismatchError(f"workflow template {path} is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise SchemaMismatchError(f"workflow template {path} must be a JSON object of nodes")
    return WorkflowTemplate(data, source=path)


@dataclass(frozen=True)
class SlotBinding:
    node: str
    input: str
    template: Optional[str] = None

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> "SlotBinding":
        if not isinstance(raw, Mapping):
            raise SchemaMismatchError(f"binding must be an object, got {raw!r}")
        try:
            binding = cls(node=str(raw["node"]), input=str(raw["input"]), template=raw.get("template"))
        except KeyError as e:
            raise SchemaMismatchError(f"binding {dict(raw)!r} is missing {e.args[0]!r}") from e
        if binding.template is not None:
            _check_template(binding)
        return binding


def _check_template(binding: SlotBinding) -> None:
    """Only plain named fields (``{gender}``) are allowed in text templates."""
    where = f"{binding.node}.{binding.input}"
    if not isinstance(binding.template, str):
        raise SchemaMismatchError(f"template for {where} must be a string")
    try:
        parsed = list(string.Formatter().parse(binding.template))
    except ValueError as e:
        raise SchemaMismatchError(f"template for {where} is malformed: {e}") from e
    for _, name, _, _ in parsed:
        if name is None:
            continue
        if not name.isidentifier():
            raise SchemaMismatchError(f"template for {where} uses unsupported field {{{name}}}")


@dataclass(frozen=True)
class BindingMap:
    subject: SlotBinding
    frame: SlotBinding
    text: Tuple[SlotBinding, ...]
    output_node: str

    @classmethod
    def from_config(cls, raw: Mapping[str, Any]) -> "BindingMap":
        try:
            return cls(
                subject=SlotBinding.from_mapping(raw["subject"]),
                frame=SlotBinding.from_mapping(raw["frame"]),
                text=tuple(SlotBinding.from_mapping(b) for b in raw.get("text", [])),
                output_node=str(raw["output_node"]),
            )
        except KeyError as e:
            raise SchemaMismatchError(f"bindings are missing {e.args[0]!r}") from e

    def slots(self) -> Iterable[SlotBinding]:
        yield self.subject
        yield self.frame
        yield from self.text


def new_client_id() -> str:
    return f"portrait_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}"


@dataclass
class BoundJob:
    prompt: Dict[str, Any]
    client_id: str
    bindings: BindingMap

    def validate(self) -> None:
        """Raise SchemaMismatchError unless every bound slot is present and filled."""
        missing: List[str] = []
        for slot in self.bindings.slots():
            inputs = _node_inputs(self.prompt, slot.node)
            value = inputs.get(slot.input) if inputs is not None else None
            if value is None or value == "":
                missing.append(f"{slot.node}.{slot.input}")
        if self.bindings.output_node not in self.prompt:
            missing.append(f"{self.bindings.output_node} (output)")
        if missing:
            raise SchemaMismatchError(f"bound job is missing slots: {', '.join(missing)}")

    def envelope(self) -> Dict[str, Any]:
        return {"prompt": self.prompt, "client_id": self.client_id}


def _node_inputs(graph: Mapping[str, Any], node_id: str) -> Optional[Dict[str, Any]]:
    node = graph.get(node_id)
    if not isinstance(node, dict):
        return None
    inputs = node.get("inputs")
    return inputs if isinstance(inputs, dict) else None


class TemplateBinder:
    def __init__(self, bindings: BindingMap, default_frame: str = "sample_frame.png"):
        self.bindings = bindings
        self.default_frame = default_frame

    def _set(self, graph: Dict[str, Any], slot: SlotBinding, value: Any) -> None:
        inputs = _node_inputs(graph, slot.node)
        if inputs is None:
            raise SchemaMismatchError(f"workflow has no node {slot.node!r} with inputs")
        if slot.input not in inputs:
            raise SchemaMismatchError(f"node {slot.node!r} has no input slot {slot.input!r}")
        inputs[slot.input] = value

    def bind(
        self,
        template: WorkflowTemplate,
        fields: Mapping[str, Any],
        subject: str,
        frame: Optional[str] = None,
    ) -> BoundJob:
        graph = template.copy_graph()
        self._set(graph, self.bindings.subject, subject)
        self._set(graph, self.bindings.frame, frame or self.default_frame)

        for slot in self.bindings.text:
            if slot.template is None:
                raise SchemaMismatchError(f"text binding {slot.node}.{slot.input} has no template")
            try:
                text = slot.template.format_map(fields)
            except KeyError as e:
                raise SchemaMismatchError(
                    f"binding {slot.node}.{slot.input} references unknown field {e.args[0]!r}"
                ) from e
            except (IndexError, ValueError, AttributeError) as e:
                raise SchemaMismatchError(f"binding {slot.node}.{slot.input} could not be formatted: {e}") from e
            self._set(graph, slot, text)

        job = BoundJob(prompt=graph, client_id=new_client_id(), bindings=self.bindings)
        logger.debug("bound workflow %s (%s nodes, client_id=%s)", template.source, len(graph), job.client_id)
        return job
