from docscan_ocr.cancellation import CancellationToken
from docscan_ocr.errors import (
    EngineFailure,
    ImageDecodeError,
    OcrError,
    RecognitionCancelled,
    RemoteFailure,
    SourceUnavailableError,
)
from docscan_ocr.models import (
    ConfidenceLevel,
    QualityLevel,
    QualityMetrics,
    RecognitionResult,
    ScriptMode,
    UnifiedResult,
    WordSpan,
)
from docscan_ocr.orchestrator import HybridRecognizer, RecognitionStage
from docscan_ocr.policy import FallbackPolicy, StaticSettings

__all__ = [
    "CancellationToken",
    "ConfidenceLevel",
    "EngineFailure",
    "FallbackPolicy",
    "HybridRecognizer",
    "ImageDecodeError",
    "OcrError",
    "QualityLevel",
    "QualityMetrics",
    "RecognitionCancelled",
    "RecognitionResult",
    "RecognitionStage",
    "RemoteFailure",
    "ScriptMode",
    "SourceUnavailableError",
    "StaticSettings",
    "UnifiedResult",
    "WordSpan",
]
