import logging
import time

from docscan_ocr.cancellation import CancellationToken
from docscan_ocr.errors import EngineFailure
from docscan_ocr.models import RecognitionResult, ScriptMode
from docscan_ocr.ocr.aggregate import aggregate
from docscan_ocr.ocr.clients import EngineCache, engine_script
from docscan_ocr.ocr.image_source import (
    MAX_IMAGE_DIMENSION,
    ContentResolver,
    SourceHandle,
    normalize_image,
)
from docscan_ocr.ocr.script_detection import detect_script_with_document
from docscan_ocr.ocr.types import OcrDocument

logger = logging.getLogger(__name__)


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def recognize_image(
    source: SourceHandle,
    mode: ScriptMode,
    cache: EngineCache,
    *,
    resolver: ContentResolver | None = None,
    cancel: CancellationToken | None = None,
    max_dimension: int = MAX_IMAGE_DIMENSION,
) -> RecognitionResult:
    """Run the blocking local pipeline for one source.

    Normalizes the image once, resolves AUTO through script detection, runs
    the script's engine and flattens its output. A cancellation request is
    honoured between stages; the pixel buffer is released on every exit path
    while the cached engine stays alive.

    When the main pass fails after a successful detection pass, the Latin
    detection output is returned instead of raising.
    """
    cancel = cancel or CancellationToken()
    started = time.monotonic()

    cancel.raise_if_cancelled("normalize")
    with normalize_image(
        source,
        max_dimension=max_dimension,
        resolver=resolver,
    ) as image:
        script = mode
        detection: OcrDocument | None = None
        if mode is ScriptMode.AUTO:
            cancel.raise_if_cancelled("script detection")
            try:
                detected, detection = detect_script_with_document(image, cache)
            except EngineFailure:
                logger.warning("Script detection failed; using Latin.", exc_info=True)
                detected = None
            script = detected or ScriptMode.LATIN
            logger.debug("Resolved script mode %s.", script.value)

        engine_used = engine_script(script)
        if detection is not None and engine_used is ScriptMode.LATIN:
            document = detection
        else:
            cancel.raise_if_cancelled("engine")
            try:
                engine = cache.get(script)
                cancel.raise_if_cancelled("recognition")
                document = engine.process(image.pixels)
            except EngineFailure:
                if detection is None:
                    raise
                logger.warning(
                    "%s recognition failed; keeping the Latin detection pass.",
                    script.display_name,
                    exc_info=True,
                )
                document = detection
                engine_used = ScriptMode.LATIN

    cancel.raise_if_cancelled("aggregation")
    return aggregate(
        document,
        script,
        _elapsed_ms(started),
        engine_used=engine_used,
    )


__all__ = ["recognize_image"]
