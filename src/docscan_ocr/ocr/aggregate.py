from docscan_ocr.models import (
    RecognitionResult,
    ScriptMode,
    WordSpan,
    classify_confidence,
)
from docscan_ocr.ocr.types import OcrDocument

# Assumed when the engine reports no native confidence for a word.
DEFAULT_WORD_CONFIDENCE = 0.9

WORD_SEPARATOR = " "
LINE_SEPARATOR = "\n"
BLOCK_SEPARATOR = "\n\n"


def _engine_for(script: ScriptMode) -> ScriptMode:
    return ScriptMode.LATIN if script is ScriptMode.AUTO else script


def _clamp_confidence(value: float | None) -> float:
    if value is None:
        return DEFAULT_WORD_CONFIDENCE
    return min(1.0, max(0.0, float(value)))


def aggregate(
    document: OcrDocument,
    script: ScriptMode,
    processing_time_ms: int = 0,
    *,
    engine_used: ScriptMode | None = None,
) -> RecognitionResult:
    """Flatten an engine document into text with per-word confidence spans.

    Offsets are `[start, end)` positions in the joined text, which uses one
    space between words, a newline between lines and a blank line between
    blocks. Words that need review also land in `low_confidence_ranges`.
    """
    parts: list[str] = []
    words: list[WordSpan] = []
    low_ranges: list[tuple[int, int]] = []
    offset = 0

    def emit(chunk: str) -> None:
        nonlocal offset
        parts.append(chunk)
        offset += len(chunk)

    for block_index, block in enumerate(document.blocks):
        if block_index:
            emit(BLOCK_SEPARATOR)
        for line_index, line in enumerate(block.lines):
            if line_index:
                emit(LINE_SEPARATOR)
            for word_index, word in enumerate(line.words):
                if word_index:
                    emit(WORD_SEPARATOR)
                start = offset
                emit(word.text)
                confidence = _clamp_confidence(word.confidence)
                span = WordSpan(
                    text=word.text,
                    confidence=confidence,
                    level=classify_confidence(confidence),
                    bbox=word.bbox,
                    start_offset=start,
                    end_offset=offset,
                )
                words.append(span)
                if span.needs_review:
                    low_ranges.append((start, offset))

    overall = 0.0
    if words:
        overall = min(1.0, sum(word.confidence for word in words) / len(words))
    return RecognitionResult(
        text="".join(parts),
        detected_script=script,
        overall_confidence=overall,
        words=tuple(words),
        low_confidence_ranges=tuple(low_ranges),
        processing_time_ms=processing_time_ms,
        engine_used=engine_used or _engine_for(script),
    )
