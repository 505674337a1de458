import logging
from collections.abc import Callable, Sequence
from functools import lru_cache
from threading import Lock
from typing import Protocol

import numpy as np
import paddle
from paddleocr import PaddleOCR

from docscan_ocr.errors import EngineFailure
from docscan_ocr.models import ScriptMode
from docscan_ocr.ocr.lines import document_from_paddle
from docscan_ocr.ocr.types import DEFAULT_OCR_OPTIONS, OcrDocument, OcrOptions

logger = logging.getLogger(__name__)

_PADDLE_LANGS: dict[ScriptMode, str] = {
    ScriptMode.LATIN: "latin",
    ScriptMode.CHINESE: "ch",
    ScriptMode.JAPANESE: "japan",
    ScriptMode.KOREAN: "korean",
    ScriptMode.DEVANAGARI: "devanagari",
}


class OcrEngine(Protocol):
    def process(self, pixels: np.ndarray) -> OcrDocument: ...

    def close(self) -> None: ...


EngineFactory = Callable[[ScriptMode], OcrEngine]


def engine_script(mode: ScriptMode) -> ScriptMode:
    """Script whose engine configuration serves `mode` (AUTO uses Latin)."""
    if mode is ScriptMode.AUTO:
        return ScriptMode.LATIN
    return mode


class ThreadSafeOcrClient:
    """Serialize OCR calls for backends that are not thread-safe."""

    def __init__(self, inner: object) -> None:
        self._inner = inner
        self._lock = Lock()

    def predict(
        self,
        image: object,
        *,
        use_doc_orientation_classify: bool,
        use_doc_unwarping: bool,
        use_textline_orientation: bool,
    ) -> Sequence[object]:
        with self._lock:
            return self._inner.predict(
                image,
                use_doc_orientation_classify=use_doc_orientation_classify,
                use_doc_unwarping=use_doc_unwarping,
                use_textline_orientation=use_textline_orientation,
            )


class PaddleOcrEngine:
    """Local recognition engine backed by one PaddleOCR pipeline."""

    def __init__(
        self,
        client: ThreadSafeOcrClient,
        mode: ScriptMode,
        *,
        options: OcrOptions = DEFAULT_OCR_OPTIONS,
    ) -> None:
        self._client: ThreadSafeOcrClient | None = client
        self.mode = mode
        self._options = options

    @property
    def closed(self) -> bool:
        return self._client is None

    def process(self, pixels: np.ndarray) -> OcrDocument:
        client = self._client
        if client is None:
            raise EngineFailure(f"{self.mode.display_name} engine is closed.")
        try:
            results = client.predict(
                pixels,
                use_doc_orientation_classify=self._options.use_doc_orientation_classify,
                use_doc_unwarping=self._options.use_doc_unwarping,
                use_textline_orientation=self._options.use_textline_orientation,
            )
        except Exception as exc:
            raise EngineFailure(
                f"{self.mode.display_name} engine failed to process the image: {exc}"
            ) from exc
        return document_from_paddle(results)

    def close(self) -> None:
        self._client = None


def _choose_device() -> str:
    if paddle.is_compiled_with_cuda():
        if paddle.device.cuda.device_count() > 0:
            return "gpu"
    return "cpu"


def _create_paddle_ocr_client(device: str, lang: str) -> PaddleOCR:
    return PaddleOCR(
        lang=lang,
        device=device,
        enable_mkldnn=device != "cpu",
        enable_cinn=False,
    )


def create_paddle_engine(mode: ScriptMode) -> PaddleOcrEngine:
    script = engine_script(mode)
    device = _choose_device()
    client = _create_paddle_ocr_client(device, _PADDLE_LANGS[script])
    return PaddleOcrEngine(ThreadSafeOcrClient(client), script)


class EngineCache:
    """Single-slot engine cache keyed by script mode.

    At most one engine is alive at a time: switching modes closes the current
    engine before its replacement is built. The lock covers lookup and swap
    only, never recognition, so callers sharing a mode use the engine
    concurrently once they hold it.
    """

    def __init__(self, factory: EngineFactory = create_paddle_engine) -> None:
        self._factory = factory
        self._lock = Lock()
        self._mode: ScriptMode | None = None
        self._engine: OcrEngine | None = None

    @property
    def current_mode(self) -> ScriptMode | None:
        with self._lock:
            return self._mode

    def get(self, mode: ScriptMode) -> OcrEngine:
        script = engine_script(mode)
        with self._lock:
            if self._mode is script and self._engine is not None:
                logger.debug("Reusing cached %s engine.", script.display_name)
                return self._engine
            self._release_locked()
            try:
                engine = self._factory(script)
            except Exception as exc:
                raise EngineFailure(
                    f"Failed to create {script.display_name} engine: {exc}"
                ) from exc
            self._mode = script
            self._engine = engine
            logger.info("Created %s recognition engine.", script.display_name)
            return engine

    def clear(self) -> None:
        with self._lock:
            self._release_locked()

    def _release_locked(self) -> None:
        engine = self._engine
        self._engine = None
        self._mode = None
        if engine is None:
            return
        try:
            engine.close()
        except Exception:
            logger.warning("Failed to close recognition engine.", exc_info=True)


@lru_cache(maxsize=1)
def default_engine_cache() -> EngineCache:
    return EngineCache()


def _reset_default_engine_cache() -> None:
    if default_engine_cache.cache_info().currsize:
        default_engine_cache().clear()
    default_engine_cache.cache_clear()
