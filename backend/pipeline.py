"""Sequences upload -> frame -> bind -> submit -> poll for one portrait request."""

import asyncio
import logging
import os
from typing import Any, Mapping, Optional

from assets import AssetUploader
from comfy_api import ComfyAPI
from errors import OrchestrationError, PollError, PortraitError
from jobs import CompletionPoller, GenerationResult, JobSubmitter
from settings import Settings
from workflow import BindingMap, TemplateBinder, load_template

logger = logging.getLogger("stage_portrait.pipeline")


def _frame_path(frames_dir: str, selection: str) -> Optional[str]:
    # Only bare names; a selection must not escape frames_dir.
    name = selection.strip()
    if not name or name in {".", ".."} or os.path.basename(name) != name or "\\" in name:
        return None
    if not name.lower().endswith(".png"):
        name = f"{name}.png"
    return os.path.join(frames_dir, name)


class PortraitPipeline:
    def __init__(self, settings: Settings, api: Optional[ComfyAPI] = None):
        self.settings = settings
        self.api = api or ComfyAPI(settings.backend_url, timeout=settings.request_timeout)
        self.bindings = BindingMap.from_config(settings.bindings)
        self.uploader = AssetUploader(
            self.api,
            max_retries=settings.upload_max_retries,
            retry_delay=settings.upload_retry_delay,
            timeout=settings.upload_timeout,
            overwrite=settings.upload_overwrite,
        )
        self.binder = TemplateBinder(self.bindings, default_frame=settings.default_frame)
        self.submitter = JobSubmitter(self.api)
        self.poller = CompletionPoller(
            self.api,
            output_node=self.bindings.output_node,
            interval=settings.poll_interval,
            timeout=settings.poll_timeout,
            max_ticks=settings.poll_max_ticks,
        )

    async def upload_frame(self, selection: Optional[str]) -> Optional[str]:
        """Upload the selected frame, or return None so the default frame is bound."""
        if not selection:
            return None
        path = _frame_path(self.settings.frames_dir, selection)
        if path is None:
            logger.warning("Rejected frame selection %r, using default frame", selection)
            return None
        try:
            return await self.uploader.upload(path)
        except (PortraitError, OSError) as e:
            logger.error("Failed to upload frame %s, using default frame: %s", selection, e)
            return None

    async def generate(
        self,
        subject_path: str,
        frame_selection: Optional[str],
        fields: Mapping[str, Any],
        cancel_event: Optional[asyncio.Event] = None,
    ) -> GenerationResult:
        stage = "upload"
        prompt_id = None
        try:
            subject = await self.uploader.upload(subject_path)
            logger.info("[1] subject uploaded as %s", subject)

            stage = "frame"
            frame = await self.upload_frame(frame_selection)
            logger.info("[2] frame=%s", frame or self.settings.default_frame)

            stage = "bind"
            template = load_template(self.settings.workflow_path)
            job = self.binder.bind(template, fields, subject=subject, frame=frame)

            stage = "submit"
            prompt_id = await self.submitter.submit(job)
            logger.info("[3] submitted prompt %s", prompt_id)

            stage = "poll"
            result = await self.poller.wait(prompt_id, cancel_event=cancel_event)
            logger.info("[4] generation complete: %s", result.image_url)
            return result
        except asyncio.CancelledError:
            if prompt_id is not None:
                await asyncio.shield(self.submitter.cancel(prompt_id))
            raise
        except (PortraitError, OSError) as e:
            logger.error("generation failed at stage=%s: %s", stage, e)
            if isinstance(e, PollError) and prompt_id is not None:
                await self.submitter.cancel(prompt_id)
            raise OrchestrationError(stage, e) from e
        except Exception as e:
            logger.exception("unexpected failure at stage=%s: %s", stage, e)
            if prompt_id is not None:
                await self.submitter.cancel(prompt_id)
            raise OrchestrationError(stage, e) from e
