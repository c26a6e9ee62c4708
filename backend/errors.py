from typing import Optional


class PortraitError(Exception):
    """Base class for failures raised by the portrait pipeline."""


class UploadError(PortraitError):
    pass


class SchemaMismatchError(PortraitError):
    """The workflow template does not carry a node/slot the bindings need."""


class SubmissionError(PortraitError):
    def __init__(self, message: str, status: Optional[int] = None, body: str = ""):
        super().__init__(message)
        self.status = status
        self.body = body


class PollError(PortraitError):
    pass


class PollTimeoutError(PollError):
    pass


class PollCancelledError(PollError):
    pass


class OrchestrationError(PortraitError):
    """A pipeline stage failed; carries the stage name and underlying cause."""

    def __init__(self, stage: str, cause: BaseException):
        self.stage = stage
        self.cause = cause
        super().__init__(f"{stage} failed: {cause}")

    @property
    def message(self) -> str:
        return str(self)
