from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Dict, List

import pytest
import requests

from comfy_api import ComfyAPI
from settings import BASE_DIR, DEFAULT_BINDINGS, Settings

BACKEND = "http://comfy.test"
WORKFLOW_PATH = os.path.join(BASE_DIR, "workflow_api.json")


class FakeResponse:
    def __init__(self, status_code: int = 200, payload: Any = None, text: str | None = None):
        self.status_code = status_code
        self._payload = payload
        self.text = text if text is not None else json.dumps(payload)

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    def json(self) -> Any:
        if self._payload is None:
            raise ValueError("no JSON body")
        return self._payload


def _next(queue: List[Any]) -> Any:
    item = queue.pop(0) if len(queue) > 1 else queue[0]
    if isinstance(item, Exception):
        raise item
    return item


class FakeComfyAPI(ComfyAPI):
    """Scripted backend: each list holds responses (or exceptions) served in order.

    The last entry is repeated once the list is down to one item.
    """

    def __init__(self) -> None:
        super().__init__(BACKEND)
        self.upload_results: List[Any] = [{"name": "uploaded.png"}]
        self.queue_results: List[Any] = [FakeResponse(200, {"prompt_id": "p-1", "number": 1})]
        self.history_results: List[Any] = [{}]
        self.uploads: List[str] = []
        self.queued: List[Dict[str, Any]] = []
        self.history_calls: List[str] = []
        self.deleted: List[str] = []

    def upload_image(self, path, timeout=None, overwrite=False):
        self.uploads.append(path)
        return _next(self.upload_results)

    def queue_prompt(self, envelope):
        self.queued.append(dict(envelope))
        return _next(self.queue_results)

    def get_history(self, prompt_id):
        self.history_calls.append(prompt_id)
        return _next(self.history_results)

    def delete_queued(self, prompt_ids):
        self.deleted.extend(prompt_ids)


def http_error(status: int) -> requests.HTTPError:
    return requests.HTTPError(f"{status} Server Error")


def completed_history(prompt_id: str = "p-1", node: str = "20", filename: str = "stage_portrait_00001_.png") -> Dict[str, Any]:
    return {
        prompt_id: {
            "outputs": {node: {"images": [{"filename": filename, "subfolder": "", "type": "output"}]}},
            "status": {"status_str": "success", "completed": True, "messages": []},
        }
    }


@pytest.fixture
def api() -> FakeComfyAPI:
    return FakeComfyAPI()


@pytest.fixture
def subject_file(tmp_path: Path) -> Path:
    path = tmp_path / "subject.png"
    path.write_bytes(b"\x89PNG\r\n\x1a\nfake")
    return path


@pytest.fixture
def frames_dir(tmp_path: Path) -> Path:
    path = tmp_path / "frames"
    path.mkdir()
    (path / "gold.png").write_bytes(b"\x89PNG\r\n\x1a\nframe")
    return path


@pytest.fixture
def settings(tmp_path: Path, frames_dir: Path) -> Settings:
    return Settings(
        backend_url=BACKEND,
        workflow_path=WORKFLOW_PATH,
        frames_dir=str(frames_dir),
        upload_dir=str(tmp_path / "uploads"),
        upload_retry_delay=0.0,
        poll_interval=0.0,
        poll_timeout=5.0,
        bindings=dict(DEFAULT_BINDINGS),
    )


@pytest.fixture
def fields() -> Dict[str, str]:
    return {
        "gender": "female",
        "position": "drummer",
        "band_genre": "punk rock",
        "expression": "fierce",
        "stage": "festival main stage",
    }
