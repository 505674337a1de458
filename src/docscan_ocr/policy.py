import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import ClassVar, Protocol, TypeVar

from docscan_ocr.models import ScriptMode

logger = logging.getLogger(__name__)

DEFAULT_SCRIPT_MODE = ScriptMode.AUTO
DEFAULT_FALLBACK_ENABLED = True
DEFAULT_CONFIDENCE_THRESHOLD = 0.5
DEFAULT_ALWAYS_USE_REMOTE = False

_T = TypeVar("_T")


@dataclass(frozen=True)
class FallbackPolicy:
    """Thresholds that decide when the remote provider replaces local OCR.

    Printed and handwritten content get separate limits; handwriting is
    inferred from confidence statistics by the quality analyzer.
    """

    fallback_enabled: bool = True
    always_use_remote: bool = False
    printed_threshold: float = 0.65
    handwritten_threshold: float = 0.45
    handwriting_variance_threshold: float = 0.12
    max_low_conf_ratio_printed: float = 0.25
    max_low_conf_ratio_handwritten: float = 0.50

    DEFAULT: ClassVar["FallbackPolicy"]
    CONSERVATIVE: ClassVar["FallbackPolicy"]
    AGGRESSIVE: ClassVar["FallbackPolicy"]
    REMOTE_ONLY: ClassVar["FallbackPolicy"]
    LOCAL_ONLY: ClassVar["FallbackPolicy"]

    def threshold_for(self, handwritten: bool) -> float:
        if handwritten:
            return self.handwritten_threshold
        return self.printed_threshold

    def max_ratio_for(self, handwritten: bool) -> float:
        if handwritten:
            return self.max_low_conf_ratio_handwritten
        return self.max_low_conf_ratio_printed

    @classmethod
    def preset(cls, name: str) -> "FallbackPolicy":
        """Look up a named preset (case-insensitive, dashes allowed)."""
        key = name.strip().upper().replace("-", "_")
        try:
            return _PRESETS[key]
        except KeyError:
            options = ", ".join(sorted(_PRESETS))
            raise ValueError(
                f"Unknown fallback policy {name!r}; expected one of {options}."
            ) from None


FallbackPolicy.DEFAULT = FallbackPolicy()
# Keep the local result more often to save remote calls.
FallbackPolicy.CONSERVATIVE = FallbackPolicy(
    printed_threshold=0.45,
    handwritten_threshold=0.30,
    max_low_conf_ratio_printed=0.40,
    max_low_conf_ratio_handwritten=0.60,
)
FallbackPolicy.AGGRESSIVE = FallbackPolicy(
    printed_threshold=0.75,
    handwritten_threshold=0.55,
    max_low_conf_ratio_printed=0.15,
    max_low_conf_ratio_handwritten=0.40,
)
FallbackPolicy.REMOTE_ONLY = FallbackPolicy(
    fallback_enabled=True,
    always_use_remote=True,
)
FallbackPolicy.LOCAL_ONLY = FallbackPolicy(fallback_enabled=False)

_PRESETS: dict[str, FallbackPolicy] = {
    "DEFAULT": FallbackPolicy.DEFAULT,
    "CONSERVATIVE": FallbackPolicy.CONSERVATIVE,
    "AGGRESSIVE": FallbackPolicy.AGGRESSIVE,
    "REMOTE_ONLY": FallbackPolicy.REMOTE_ONLY,
    "LOCAL_ONLY": FallbackPolicy.LOCAL_ONLY,
}


class SettingsStore(Protocol):
    """Read-only view of the persisted recognition preferences."""

    def get_preferred_script_mode(self) -> ScriptMode: ...

    def is_fallback_enabled(self) -> bool: ...

    def get_confidence_threshold(self) -> float: ...

    def always_use_remote(self) -> bool: ...


@dataclass(frozen=True)
class StaticSettings:
    """In-process settings store with fixed values."""

    script_mode: ScriptMode = DEFAULT_SCRIPT_MODE
    fallback_enabled: bool = DEFAULT_FALLBACK_ENABLED
    confidence_threshold: float = DEFAULT_CONFIDENCE_THRESHOLD
    use_remote_always: bool = DEFAULT_ALWAYS_USE_REMOTE

    def get_preferred_script_mode(self) -> ScriptMode:
        return self.script_mode

    def is_fallback_enabled(self) -> bool:
        return self.fallback_enabled

    def get_confidence_threshold(self) -> float:
        return self.confidence_threshold

    def always_use_remote(self) -> bool:
        return self.use_remote_always


@dataclass(frozen=True)
class ResolvedSettings:
    """Settings snapshot taken once per recognition call."""

    script_mode: ScriptMode
    fallback_enabled: bool
    confidence_threshold: float
    always_use_remote: bool


def _read_setting(name: str, reader: Callable[[], _T], default: _T) -> _T:
    try:
        return reader()
    except Exception:
        logger.warning(
            "Failed to read setting %s; using default %r.",
            name,
            default,
            exc_info=True,
        )
        return default


def read_settings(store: SettingsStore) -> ResolvedSettings:
    """Snapshot the settings store, substituting defaults for failed reads."""
    script_mode = ScriptMode.parse(
        _read_setting(
            "preferred_script_mode",
            store.get_preferred_script_mode,
            DEFAULT_SCRIPT_MODE,
        )
    )
    threshold = _read_setting(
        "confidence_threshold",
        lambda: float(store.get_confidence_threshold()),
        DEFAULT_CONFIDENCE_THRESHOLD,
    )
    fallback_enabled = _read_setting(
        "fallback_enabled",
        store.is_fallback_enabled,
        DEFAULT_FALLBACK_ENABLED,
    )
    always_use_remote = _read_setting(
        "always_use_remote",
        store.always_use_remote,
        DEFAULT_ALWAYS_USE_REMOTE,
    )
    return ResolvedSettings(
        script_mode=script_mode,
        fallback_enabled=bool(fallback_enabled),
        confidence_threshold=min(1.0, max(0.0, threshold)),
        always_use_remote=bool(always_use_remote),
    )
