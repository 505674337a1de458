import logging
import math
from dataclasses import dataclass
from statistics import fmean, pvariance

from docscan_ocr.models import QualityLevel, QualityMetrics, RecognitionResult
from docscan_ocr.policy import FallbackPolicy

logger = logging.getLogger(__name__)

NO_TEXT_REASON = "No text recognized"


@dataclass(frozen=True)
class QualityThresholds:
    """Heuristic cut-offs used to grade a local recognition pass."""

    excellent_confidence: float = 0.85
    excellent_max_ratio: float = 0.10
    good_confidence: float = 0.70
    good_max_ratio: float = 0.25
    fair_confidence: float = 0.50
    fair_max_ratio: float = 0.50
    low_word_confidence: float = 0.50
    min_text_length: int = 3
    handwriting_confidence_floor: float = 0.30
    handwriting_confidence_ceiling: float = 0.75
    handwriting_low_ratio: float = 0.20
    handwriting_votes: int = 2
    mixed_content_variance: float = 0.09
    short_text_words: int = 10


DEFAULT_THRESHOLDS = QualityThresholds()


def _percent(value: float) -> int:
    return int(value * 100)


def _failed_metrics(confidence: float = 0.0) -> QualityMetrics:
    return QualityMetrics(
        overall_confidence=confidence,
        low_confidence_ratio=1.0,
        variance=0.0,
        std_dev=0.0,
        word_count=0,
        avg_word_length=0.0,
        quality=QualityLevel.FAILED,
        is_likely_handwritten=False,
        recommend_fallback=True,
        reasons=(NO_TEXT_REASON,),
    )


def _classify_quality(
    confidence: float,
    low_ratio: float,
    thresholds: QualityThresholds,
) -> QualityLevel:
    if (
        confidence >= thresholds.excellent_confidence
        and low_ratio < thresholds.excellent_max_ratio
    ):
        return QualityLevel.EXCELLENT
    if (
        confidence >= thresholds.good_confidence
        and low_ratio < thresholds.good_max_ratio
    ):
        return QualityLevel.GOOD
    if (
        confidence >= thresholds.fair_confidence
        and low_ratio < thresholds.fair_max_ratio
    ):
        return QualityLevel.FAIR
    if confidence > 0:
        return QualityLevel.POOR
    return QualityLevel.FAILED


def _is_likely_handwritten(
    confidence: float,
    variance: float,
    low_ratio: float,
    policy: FallbackPolicy,
    thresholds: QualityThresholds,
) -> bool:
    """Vote on handwriting from confidence statistics alone.

    Handwriting tends to produce uneven word confidences, a middling mean and
    a noticeable share of weak words; enough agreeing signals decide.
    """
    votes = (
        variance > policy.handwriting_variance_threshold,
        thresholds.handwriting_confidence_floor
        <= confidence
        <= thresholds.handwriting_confidence_ceiling,
        low_ratio > thresholds.handwriting_low_ratio,
    )
    return sum(votes) >= thresholds.handwriting_votes


def _fallback_reasons(
    *,
    quality: QualityLevel,
    confidence: float,
    low_ratio: float,
    variance: float,
    handwritten: bool,
    word_count: int,
    policy: FallbackPolicy,
    thresholds: QualityThresholds,
) -> tuple[str, ...]:
    if quality is QualityLevel.FAILED:
        return (NO_TEXT_REASON,)

    reasons: list[str] = []
    if quality is QualityLevel.POOR:
        reasons.append(f"Very low confidence: {_percent(confidence)}%")

    threshold = policy.threshold_for(handwritten)
    if confidence < threshold:
        reasons.append(
            f"Confidence {_percent(confidence)}% < threshold {_percent(threshold)}%"
        )
    if low_ratio > policy.max_ratio_for(handwritten):
        reasons.append(f"{_percent(low_ratio)}% words with low confidence")
    if handwritten and confidence < thresholds.good_confidence:
        reasons.append("Likely handwritten text detected")
    if (
        variance > thresholds.mixed_content_variance
        and confidence < thresholds.good_confidence
    ):
        reasons.append("Inconsistent recognition (possible mixed content)")
    if (
        word_count < thresholds.short_text_words
        and confidence < thresholds.fair_confidence
    ):
        reasons.append("Short text with low confidence")
    return tuple(reasons)


def analyze(
    result: RecognitionResult,
    policy: FallbackPolicy = FallbackPolicy.DEFAULT,
    thresholds: QualityThresholds = DEFAULT_THRESHOLDS,
) -> QualityMetrics:
    """Grade a local recognition pass and decide whether it needs a fallback.

    The verdict depends only on `result`, so it can be recomputed at any time.
    Thresholds for printed and handwritten content come from `policy`.

    Args:
        result: Flattened local recognition output.
        policy: Adaptive confidence limits and the handwriting variance cut-off.
        thresholds: Quality grading and heuristic constants.
    Returns:
        Metrics with the quality level, handwriting vote and fallback reasons.
    """
    text = result.text
    if not text.strip() or len(text) < thresholds.min_text_length:
        return _failed_metrics()

    words = result.words
    confidences = [word.confidence for word in words]
    word_count = len(words)
    low_count = sum(
        1 for value in confidences if value < thresholds.low_word_confidence
    )
    low_ratio = low_count / word_count if word_count else 0.0
    variance = pvariance(confidences) if confidences else 0.0
    if result.overall_confidence is not None:
        confidence = result.overall_confidence
    else:
        confidence = fmean(confidences) if confidences else 0.0
    avg_word_length = fmean(len(word.text) for word in words) if words else 0.0

    quality = _classify_quality(confidence, low_ratio, thresholds)
    handwritten = _is_likely_handwritten(
        confidence, variance, low_ratio, policy, thresholds
    )
    reasons = _fallback_reasons(
        quality=quality,
        confidence=confidence,
        low_ratio=low_ratio,
        variance=variance,
        handwritten=handwritten,
        word_count=word_count,
        policy=policy,
        thresholds=thresholds,
    )
    metrics = QualityMetrics(
        overall_confidence=confidence,
        low_confidence_ratio=low_ratio,
        variance=variance,
        std_dev=math.sqrt(variance),
        word_count=word_count,
        avg_word_length=avg_word_length,
        quality=quality,
        is_likely_handwritten=handwritten,
        recommend_fallback=bool(reasons),
        reasons=reasons,
    )
    logger.debug("Quality analysis: %s", metrics.summary())
    return metrics


def analyze_simple(
    confidence: float | None,
    text_length: int,
    thresholds: QualityThresholds = DEFAULT_THRESHOLDS,
) -> QualityMetrics:
    """Grade a result that only carries an overall confidence."""
    value = min(1.0, max(0.0, confidence or 0.0))
    if text_length < thresholds.min_text_length:
        return _failed_metrics(value)

    if value >= thresholds.excellent_confidence:
        quality = QualityLevel.EXCELLENT
    elif value >= thresholds.good_confidence:
        quality = QualityLevel.GOOD
    elif value >= thresholds.fair_confidence:
        quality = QualityLevel.FAIR
    else:
        quality = QualityLevel.POOR

    recommend = quality is QualityLevel.POOR
    reasons = (f"Low overall confidence: {_percent(value)}%",) if recommend else ()
    return QualityMetrics(
        overall_confidence=value,
        low_confidence_ratio=1.0 if value < thresholds.fair_confidence else 0.0,
        variance=0.0,
        std_dev=0.0,
        # Rough estimate assuming five characters per word.
        word_count=text_length // 5,
        avg_word_length=5.0,
        quality=quality,
        is_likely_handwritten=(
            thresholds.handwriting_confidence_floor
            < value
            < thresholds.handwriting_confidence_ceiling
        ),
        recommend_fallback=recommend,
        reasons=reasons,
    )


def should_fallback(
    result: RecognitionResult,
    policy: FallbackPolicy = FallbackPolicy.DEFAULT,
) -> bool:
    return analyze(result, policy).recommend_fallback
