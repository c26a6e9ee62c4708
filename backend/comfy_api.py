"""Thin blocking client for the ComfyUI HTTP API.

Callers on the event loop run these methods through ``asyncio.to_thread``.
Every call carries a timeout; HTTP failures surface as ``requests`` errors.
"""

import logging
import mimetypes
import os
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import requests

logger = logging.getLogger("stage_portrait.comfy")


class ComfyAPI:
    def __init__(self, base_url: str, timeout: float = 30.0, session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def upload_image(self, path: str, timeout: Optional[float] = None, overwrite: bool = False) -> Dict[str, Any]:
        file_name = os.path.basename(path)
        content_type = mimetypes.guess_type(file_name)[0] or "image/png"
        data = {"overwrite": "true"} if overwrite else None
        with open(path, "rb") as f:
            resp = self.session.post(
                f"{self.base_url}/upload/image",
                files={"image": (file_name, f, content_type)},
                data=data,
                timeout=timeout or self.timeout,
            )
        logger.debug("upload %s -> status=%s", file_name, resp.status_code)
        resp.raise_for_status()
        return resp.json()

    def queue_prompt(self, envelope: Dict[str, Any]) -> requests.Response:
        # Status handling is left to the caller so it can report the body.
        return self.session.post(f"{self.base_url}/prompt", json=envelope, timeout=self.timeout)

    def get_history(self, prompt_id: str) -> Dict[str, Any]:
        resp = self.session.get(f"{self.base_url}/history/{prompt_id}", timeout=self.timeout)
        resp.raise_for_status()
        data = resp.json()
        if not isinstance(data, dict):
            raise ValueError(f"history response is not an object: {type(data).__name__}")
        return data

    def delete_queued(self, prompt_ids: List[str]) -> None:
        resp = self.session.post(
            f"{self.base_url}/queue",
            json={"delete": list(prompt_ids)},
            timeout=self.timeout,
        )
        resp.raise_for_status()

    def view_url(self, filename: str, subfolder: str = "", type_: str = "output") -> str:
        query = urlencode({"filename": filename, "subfolder": subfolder, "type": type_})
        return f"{self.base_url}/view?{query}"
