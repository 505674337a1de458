import logging
from collections.abc import Iterable

from docscan_ocr.models import ScriptMode
from docscan_ocr.ocr.clients import EngineCache
from docscan_ocr.ocr.image_source import NormalizedImage
from docscan_ocr.ocr.types import OcrDocument
from docscan_ocr.text import is_blank

logger = logging.getLogger(__name__)

# Checked in order; the first script whose ranges contain a character wins.
_DETECTABLE_SCRIPTS = (
    ScriptMode.CHINESE,
    ScriptMode.JAPANESE,
    ScriptMode.KOREAN,
    ScriptMode.DEVANAGARI,
    ScriptMode.LATIN,
)


def classify_char(char: str) -> ScriptMode | None:
    """Script owning `char`, or None for code points outside every range."""
    code_point = ord(char)
    for script in _DETECTABLE_SCRIPTS:
        for low, high in script.code_point_ranges:
            if low <= code_point <= high:
                return script
    return None


def tally_scripts(text: Iterable[str]) -> dict[ScriptMode, int]:
    """Count characters per script, keyed in first-seen order."""
    counts: dict[ScriptMode, int] = {}
    for char in text:
        script = classify_char(char)
        if script is not None:
            counts[script] = counts.get(script, 0) + 1
    return counts


def detect_script_with_document(
    image: NormalizedImage,
    cache: EngineCache,
) -> tuple[ScriptMode | None, OcrDocument]:
    """Run a Latin pass and vote on the dominant script of its output.

    Returns the winning script (None when nothing was recognized) together
    with the Latin document, which stays usable as a recognition result.
    """
    engine = cache.get(ScriptMode.LATIN)
    document = engine.process(image.pixels)
    # Interior whitespace falls in the Latin range and votes with it.
    text = document.text.strip()
    if is_blank(text):
        logger.debug("Script detection found no text.")
        return None, document
    counts = tally_scripts(text)
    if not counts:
        return None, document
    # max() keeps the first maximal key, so ties go to the first-seen script.
    detected = max(counts, key=counts.__getitem__)
    logger.debug(
        "Script detection tally %s -> %s.",
        {script.value: count for script, count in counts.items()},
        detected.value,
    )
    return detected, document


def detect_script(image: NormalizedImage, cache: EngineCache) -> ScriptMode | None:
    script, _ = detect_script_with_document(image, cache)
    return script
