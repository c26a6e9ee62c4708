import asyncio
import logging
import os

import requests

from comfy_api import ComfyAPI
from errors import UploadError

logger = logging.getLogger("stage_portrait.assets")


class AssetUploader:
    """Pushes local images into the backend's input store with fixed-delay retries."""

    def __init__(
        self,
        api: ComfyAPI,
        max_retries: int = 3,
        retry_delay: float = 2.0,
        timeout: float = 60.0,
        overwrite: bool = False,
    ):
        self.api = api
        self.max_retries = max(1, max_retries)
        self.retry_delay = retry_delay
        self.timeout = timeout
        self.overwrite = overwrite

    async def upload(self, path: str) -> str:
        """Upload ``path`` and return the name the backend stored it under."""
        if not os.path.isfile(path):
            raise FileNotFoundError(f"File does not exist: {path}")

        file_name = os.path.basename(path)
        for attempt in range(1, self.max_retries + 1):
            logger.info("[%s/%s] uploading %s", attempt, self.max_retries, file_name)
            try:
                result = await asyncio.to_thread(
                    self.api.upload_image, path, self.timeout, self.overwrite
                )
            except (requests.RequestException, ValueError) as e:
                logger.warning("[%s/%s] upload of %s failed: %s", attempt, self.max_retries, file_name, e)
                if attempt == self.max_retries:
                    raise UploadError(
                        f"upload of {file_name} failed after {attempt} attempts: {e}"
                    ) from e
                await asyncio.sleep(self.retry_delay)
                continue

            name = result.get("name") if isinstance(result, dict) else None
            logger.info("uploaded %s as %s", file_name, name or file_name)
            return name or file_name

        # max_retries >= 1, the loop always returns or raises
        raise UploadError(f"upload of {file_name} was never attempted")
