import asyncio
import enum
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import requests

from comfy_api import ComfyAPI
from errors import PollCancelledError, PollError, PollTimeoutError, SubmissionError
from workflow import BoundJob

logger = logging.getLogger("stage_portrait.jobs")


@dataclass(frozen=True)
class ArtifactLocator:
    filename: str
    subfolder: str
    type: str


@dataclass(frozen=True)
class GenerationResult:
    locator: ArtifactLocator
    image_url: str


class PollState(enum.Enum):
    PENDING = "pending"
    COMPLETE = "complete"
    ERROR = "error"


class JobSubmitter:
    def __init__(self, api: ComfyAPI):
        self.api = api

    async def submit(self, job: BoundJob) -> str:
        """Queue ``job`` once and return the backend prompt id. Never retried."""
        job.validate()
        try:
            resp = await asyncio.to_thread(self.api.queue_prompt, job.envelope())
        except requests.RequestException as e:
            logger.error("prompt submission failed: %s", e)
            raise SubmissionError(f"could not reach backend: {e}") from e

        if not resp.ok:
            body = resp.text[:2000]
            logger.error("prompt rejected status=%s body=%s", resp.status_code, body[:400])
            raise SubmissionError(
                f"backend rejected job: HTTP {resp.status_code} {body[:400]}",
                status=resp.status_code,
                body=body,
            )

        try:
            data = resp.json()
        except ValueError as e:
            raise SubmissionError("backend returned invalid JSON", resp.status_code, resp.text[:2000]) from e

        prompt_id = data.get("prompt_id") if isinstance(data, dict) else None
        if not prompt_id:
            raise SubmissionError("backend response carried no prompt_id", resp.status_code, resp.text[:2000])
        logger.info("queued prompt %s (client_id=%s)", prompt_id, job.client_id)
        return str(prompt_id)

    async def cancel(self, prompt_id: str) -> None:
        """Best-effort removal of a queued job; failures are only logged."""
        try:
            await asyncio.to_thread(self.api.delete_queued, [prompt_id])
            logger.info("removed prompt %s from backend queue", prompt_id)
        except requests.RequestException as e:
            logger.warning("could not remove prompt %s from backend queue: %s", prompt_id, e)


class CompletionPoller:
    """Polls backend history until the output node reports an image.

    Bounded by ``timeout`` seconds of wall clock and ``max_ticks`` queries
    (either may be None), and aborted early by an optional ``asyncio.Event``.
    """

    def __init__(
        self,
        api: ComfyAPI,
        output_node: str,
        interval: float = 1.0,
        timeout: Optional[float] = 600.0,
        max_ticks: Optional[int] = None,
    ):
        self.api = api
        self.output_node = output_node
        self.interval = interval
        self.timeout = timeout
        self.max_ticks = max_ticks

    async def wait(self, prompt_id: str, cancel_event: Optional[asyncio.Event] = None) -> GenerationResult:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout if self.timeout else None
        ticks = 0

        while True:
            if cancel_event is not None and cancel_event.is_set():
                raise PollCancelledError(f"polling for {prompt_id} was cancelled")

            ticks += 1
            try:
                history = await asyncio.to_thread(self.api.get_history, prompt_id)
            except (requests.RequestException, ValueError) as e:
                logger.error("history query for %s failed: %s", prompt_id, e)
                raise PollError(f"history query for {prompt_id} failed: {e}") from e

            state, outcome = self._inspect(prompt_id, history)
            if state is PollState.COMPLETE:
                logger.info("prompt %s complete after %s polls: %s", prompt_id, ticks, outcome.image_url)
                return outcome
            if state is PollState.ERROR:
                logger.error("prompt %s failed on backend: %s", prompt_id, outcome)
                raise PollError(outcome)

            logger.debug("prompt %s pending (poll %s)", prompt_id, ticks)
            if self.max_ticks and ticks >= self.max_ticks:
                raise PollTimeoutError(f"prompt {prompt_id} not finished after {ticks} polls")
            if deadline is not None and loop.time() >= deadline:
                raise PollTimeoutError(f"prompt {prompt_id} not finished after {self.timeout:.0f}s")
            await self._pause(cancel_event)

    async def _pause(self, cancel_event: Optional[asyncio.Event]) -> None:
        if cancel_event is None:
            await asyncio.sleep(self.interval)
            return
        try:
            await asyncio.wait_for(cancel_event.wait(), timeout=self.interval)
        except asyncio.TimeoutError:
            pass

    def _inspect(self, prompt_id: str, history: Dict[str, Any]):
        record = history.get(prompt_id)
        if not isinstance(record, dict):
            return PollState.PENDING, None

        status = record.get("status") or {}
        if isinstance(status, dict) and status.get("status_str") == "error":
            messages = [m for m in status.get("messages") or [] if isinstance(m, list) and m and m[0] == "execution_error"]
            detail = messages[-1][1] if messages and len(messages[-1]) > 1 else status
            return PollState.ERROR, f"backend reported an execution error for {prompt_id}: {detail}"

        outputs = record.get("outputs") or {}
        if not isinstance(outputs, dict):
            return PollState.ERROR, f"malformed outputs for {prompt_id}: {outputs!r}"
        node_output = outputs.get(self.output_node) or {}
        if not isinstance(node_output, dict):
            return PollState.ERROR, f"malformed output node {self.output_node} for {prompt_id}: {node_output!r}"
        images = node_output.get("images")
        if not images:
            return PollState.PENDING, None
        if not isinstance(images, list):
            return PollState.ERROR, f"malformed image list for {prompt_id}: {images!r}"

        try:
            image = images[0]
            locator = ArtifactLocator(
                filename=str(image["filename"]),
                subfolder=str(image.get("subfolder") or ""),
                type=str(image.get("type") or "output"),
            )
        except (KeyError, TypeError, AttributeError):
            return PollState.ERROR, f"malformed output record for {prompt_id}: {images[0]!r}"
        url = self.api.view_url(locator.filename, locator.subfolder, locator.type)
        return PollState.COMPLETE, GenerationResult(locator=locator, image_url=url)
