from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

BBox = tuple[float, float, float, float]
OcrSource = Literal["local", "remote"]


class ScriptMode(str, Enum):
    """Writing-system selector for the local recognition engine."""

    AUTO = "auto"
    LATIN = "latin"
    CHINESE = "chinese"
    JAPANESE = "japanese"
    KOREAN = "korean"
    DEVANAGARI = "devanagari"

    @property
    def display_name(self) -> str:
        return _SCRIPT_DISPLAY_NAMES[self]

    @property
    def languages(self) -> tuple[str, ...]:
        return _SCRIPT_LANGUAGES[self]

    @property
    def code_point_ranges(self) -> tuple[tuple[int, int], ...]:
        """Inclusive code-point ranges that count towards this script.

        AUTO owns no range; it is resolved to a concrete script before use.
        """
        return _SCRIPT_RANGES.get(self, ())

    @classmethod
    def parse(cls, value: "str | ScriptMode | None") -> "ScriptMode":
        """Map a stored setting string to a mode, defaulting to AUTO."""
        if isinstance(value, ScriptMode):
            return value
        if not value:
            return cls.AUTO
        normalized = value.strip().lower()
        for mode in cls:
            if normalized in (mode.value, mode.name.lower()):
                return mode
        return cls.AUTO


_SCRIPT_DISPLAY_NAMES: dict[ScriptMode, str] = {
    ScriptMode.AUTO: "Auto-Detect",
    ScriptMode.LATIN: "Latin",
    ScriptMode.CHINESE: "Chinese",
    ScriptMode.JAPANESE: "Japanese",
    ScriptMode.KOREAN: "Korean",
    ScriptMode.DEVANAGARI: "Devanagari",
}

_SCRIPT_LANGUAGES: dict[ScriptMode, tuple[str, ...]] = {
    ScriptMode.AUTO: (),
    ScriptMode.LATIN: ("en", "es", "fr", "de", "pt", "it"),
    ScriptMode.CHINESE: ("zh", "zh-TW"),
    ScriptMode.JAPANESE: ("ja",),
    ScriptMode.KOREAN: ("ko",),
    ScriptMode.DEVANAGARI: ("hi", "mr", "ne"),
}

_SCRIPT_RANGES: dict[ScriptMode, tuple[tuple[int, int], ...]] = {
    ScriptMode.CHINESE: (
        (0x4E00, 0x9FFF),
        (0x3400, 0x4DBF),
        (0x20000, 0x2A6DF),
        (0xF900, 0xFAFF),
    ),
    ScriptMode.JAPANESE: (
        (0x3040, 0x309F),
        (0x30A0, 0x30FF),
    ),
    ScriptMode.KOREAN: (
        (0xAC00, 0xD7AF),
        (0x1100, 0x11FF),
    ),
    ScriptMode.DEVANAGARI: ((0x0900, 0x097F),),
    ScriptMode.LATIN: (
        (0x0000, 0x007F),
        (0x0080, 0x00FF),
    ),
}


class ConfidenceLevel(IntEnum):
    """Per-word confidence bucket; higher members mean more trust."""

    VERY_LOW = 0
    LOW = 1
    MEDIUM = 2
    HIGH = 3

    @property
    def min_confidence(self) -> float:
        return _CONFIDENCE_FLOORS[self]


_CONFIDENCE_FLOORS: dict[ConfidenceLevel, float] = {
    ConfidenceLevel.HIGH: 0.9,
    ConfidenceLevel.MEDIUM: 0.7,
    ConfidenceLevel.LOW: 0.5,
    ConfidenceLevel.VERY_LOW: 0.0,
}


def classify_confidence(confidence: float) -> ConfidenceLevel:
    """Bucket a confidence in [0, 1] into a `ConfidenceLevel`."""
    for level in (ConfidenceLevel.HIGH, ConfidenceLevel.MEDIUM, ConfidenceLevel.LOW):
        if confidence >= level.min_confidence:
            return level
    return ConfidenceLevel.VERY_LOW


class QualityLevel(IntEnum):
    """Overall quality of a local recognition pass, best first."""

    EXCELLENT = 0
    GOOD = 1
    FAIR = 2
    POOR = 3
    FAILED = 4


class WordSpan(BaseModel):
    """One recognized word located inside the aggregated text."""

    model_config = ConfigDict(frozen=True)

    text: str
    confidence: float = Field(ge=0.0, le=1.0)
    level: ConfidenceLevel
    bbox: BBox | None = None
    start_offset: int = Field(ge=0)
    end_offset: int = Field(ge=0)

    @model_validator(mode="after")
    def _check_offsets(self) -> "WordSpan":
        if self.start_offset > self.end_offset:
            raise ValueError("start_offset must not exceed end_offset")
        return self

    @property
    def needs_review(self) -> bool:
        return self.level in (ConfidenceLevel.LOW, ConfidenceLevel.VERY_LOW)


class RecognitionResult(BaseModel):
    """Flattened output of one local recognition pass."""

    model_config = ConfigDict(frozen=True)

    text: str
    detected_script: ScriptMode | None = None
    overall_confidence: float | None = Field(default=None, ge=0.0, le=1.0)
    words: tuple[WordSpan, ...] = ()
    low_confidence_ranges: tuple[tuple[int, int], ...] = ()
    processing_time_ms: int = 0
    engine_used: ScriptMode = ScriptMode.LATIN

    @property
    def low_confidence_count(self) -> int:
        return sum(1 for word in self.words if word.needs_review)

    @property
    def high_confidence_percent(self) -> float:
        if not self.words:
            return 100.0
        high = sum(1 for word in self.words if word.level is ConfidenceLevel.HIGH)
        return high * 100.0 / len(self.words)


class QualityMetrics(BaseModel):
    """Statistics and fallback verdict derived from a `RecognitionResult`."""

    model_config = ConfigDict(frozen=True)

    overall_confidence: float = Field(ge=0.0, le=1.0)
    low_confidence_ratio: float = Field(ge=0.0, le=1.0)
    variance: float = Field(ge=0.0)
    std_dev: float = Field(ge=0.0)
    word_count: int = Field(ge=0)
    avg_word_length: float = Field(ge=0.0)
    quality: QualityLevel
    is_likely_handwritten: bool
    recommend_fallback: bool
    reasons: tuple[str, ...] = ()

    @property
    def quality_percent(self) -> int:
        return int(self.overall_confidence * 100)

    def summary(self) -> str:
        return (
            f"quality={self.quality.name} confidence={self.quality_percent}% "
            f"low_conf={int(self.low_confidence_ratio * 100)}% "
            f"handwritten={self.is_likely_handwritten} "
            f"fallback={self.recommend_fallback}"
        )


@dataclass(frozen=True)
class RemoteOcrResult:
    """Text returned by the remote vision OCR provider."""

    text: str
    confidence: float | None
    processing_time_ms: int = 0


class UnifiedResult(BaseModel):
    """Best available recognition for one source, whichever provider won."""

    model_config = ConfigDict(frozen=True)

    text: str
    confidence: float | None = Field(default=None, ge=0.0, le=1.0)
    source: OcrSource
    script: ScriptMode | None = None
    processing_time_ms: int = 0
    local_result: RecognitionResult | None = None
    quality: QualityMetrics | None = None
    fallback_triggered: bool = False
    fallback_reasons: tuple[str, ...] = ()
    remote_error: str | None = None
