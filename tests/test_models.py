import pytest
from pydantic import ValidationError

from docscan_ocr.cancellation import CancellationToken
from docscan_ocr.errors import RecognitionCancelled
from docscan_ocr.models import (
    ConfidenceLevel,
    QualityLevel,
    QualityMetrics,
    RecognitionResult,
    ScriptMode,
    UnifiedResult,
    WordSpan,
    classify_confidence,
)


@pytest.mark.parametrize(
    ("confidence", "expected"),
    [
        (1.0, ConfidenceLevel.HIGH),
        (0.9, ConfidenceLevel.HIGH),
        (0.89, ConfidenceLevel.MEDIUM),
        (0.7, ConfidenceLevel.MEDIUM),
        (0.5, ConfidenceLevel.LOW),
        (0.49, ConfidenceLevel.VERY_LOW),
        (0.0, ConfidenceLevel.VERY_LOW),
    ],
)
def test_classify_confidence_boundaries(
    confidence: float,
    expected: ConfidenceLevel,
) -> None:
    assert classify_confidence(confidence) is expected


def test_classify_confidence_is_monotonic() -> None:
    values = [index / 100 for index in range(101)]
    levels = [classify_confidence(value) for value in values]

    assert levels == sorted(levels)


def test_script_mode_parse() -> None:
    assert ScriptMode.parse("KOREAN") is ScriptMode.KOREAN
    assert ScriptMode.parse(" chinese ") is ScriptMode.CHINESE
    assert ScriptMode.parse(ScriptMode.JAPANESE) is ScriptMode.JAPANESE
    assert ScriptMode.parse("klingon") is ScriptMode.AUTO
    assert ScriptMode.parse(None) is ScriptMode.AUTO


def test_script_mode_metadata() -> None:
    assert ScriptMode.AUTO.code_point_ranges == ()
    assert ScriptMode.DEVANAGARI.code_point_ranges == ((0x0900, 0x097F),)
    assert ScriptMode.AUTO.display_name == "Auto-Detect"
    assert "ja" in ScriptMode.JAPANESE.languages


def test_word_span_validates_confidence_and_offsets() -> None:
    with pytest.raises(ValidationError):
        WordSpan(
            text="x",
            confidence=1.5,
            level=ConfidenceLevel.HIGH,
            start_offset=0,
            end_offset=1,
        )
    with pytest.raises(ValidationError):
        WordSpan(
            text="x",
            confidence=0.5,
            level=ConfidenceLevel.LOW,
            start_offset=3,
            end_offset=1,
        )


def test_word_span_is_frozen_and_flags_review() -> None:
    span = WordSpan(
        text="hello",
        confidence=0.55,
        level=ConfidenceLevel.LOW,
        start_offset=0,
        end_offset=5,
    )

    assert span.needs_review
    with pytest.raises(ValidationError):
        span.text = "other"


def test_recognition_result_defaults() -> None:
    result = RecognitionResult(text="")

    assert result.low_confidence_count == 0
    assert result.high_confidence_percent == 100.0
    assert result.engine_used is ScriptMode.LATIN


def test_quality_metrics_summary() -> None:
    metrics = QualityMetrics(
        overall_confidence=0.734,
        low_confidence_ratio=0.25,
        variance=0.01,
        std_dev=0.1,
        word_count=8,
        avg_word_length=4.5,
        quality=QualityLevel.GOOD,
        is_likely_handwritten=False,
        recommend_fallback=False,
    )

    assert metrics.quality_percent == 73
    assert metrics.summary() == (
        "quality=GOOD confidence=73% low_conf=25% handwritten=False fallback=False"
    )


def test_unified_result_serializes_to_json() -> None:
    result = UnifiedResult(text="hi", confidence=0.9, source="remote")

    payload = result.model_dump(mode="json")

    assert payload["source"] == "remote"
    assert payload["fallback_triggered"] is False
    with pytest.raises(ValidationError):
        UnifiedResult(text="hi", source="cloud")


def test_cancellation_token_links_to_parent() -> None:
    parent = CancellationToken()
    child = parent.child()
    sibling = parent.child()

    child.cancel()
    assert child.cancelled
    assert not parent.cancelled
    assert not sibling.cancelled

    parent.cancel()
    assert sibling.cancelled
    with pytest.raises(RecognitionCancelled, match="before normalize") as info:
        sibling.raise_if_cancelled("normalize")
    assert info.value.stage == "normalize"
