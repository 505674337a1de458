from threading import Event

from docscan_ocr.errors import RecognitionCancelled


class CancellationToken:
    """Cooperative cancellation flag shared between a caller and worker threads.

    A child token is cancelled when either it or its parent is cancelled, so a
    single call can be aborted without touching the caller's own token.
    """

    def __init__(self, parent: "CancellationToken | None" = None) -> None:
        self._event = Event()
        self._parent = parent

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self._parent is not None and self._parent.cancelled

    def child(self) -> "CancellationToken":
        return CancellationToken(parent=self)

    def raise_if_cancelled(self, stage: str | None = None) -> None:
        if self.cancelled:
            raise RecognitionCancelled(stage)
