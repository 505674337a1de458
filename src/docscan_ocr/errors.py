class OcrError(RuntimeError):
    """Base class for recognition pipeline failures."""


class SourceUnavailableError(OcrError):
    """The source handle is unsupported, missing, or unreadable."""


class ImageDecodeError(OcrError):
    """Image geometry or pixels could not be decoded."""


class EngineFailure(OcrError):
    """The local recognition engine failed to build or to process an image."""


class RemoteFailure(OcrError):
    """The remote vision OCR provider returned an error."""


class RecognitionCancelled(OcrError):
    """A cooperative cancellation request was observed at a stage boundary."""

    def __init__(self, stage: str | None = None) -> None:
        self.stage = stage
        message = "Recognition cancelled"
        if stage:
            message = f"{message} before {stage}"
        super().__init__(message)
