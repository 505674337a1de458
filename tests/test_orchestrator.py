import asyncio
import threading
from pathlib import Path

import numpy as np
import pytest

import docscan_ocr.ocr as local_pipeline
from docscan_ocr.cancellation import CancellationToken
from docscan_ocr.errors import (
    EngineFailure,
    RecognitionCancelled,
    RemoteFailure,
    SourceUnavailableError,
)
from docscan_ocr.models import RemoteOcrResult, ScriptMode
from docscan_ocr.ocr.clients import EngineCache
from docscan_ocr.ocr.image_source import normalize_image
from docscan_ocr.ocr.types import OcrBlock, OcrDocument, OcrLine, OcrWord
from docscan_ocr.orchestrator import HybridRecognizer, RecognitionStage
from docscan_ocr.policy import FallbackPolicy, StaticSettings

CHINESE_TEXT = "中文文本 示例 内容 更多 文字 段落 结束 完成 好的 再见"
STRONG_TEXT = "the quick brown fox jumps over the lazy dog again and again"


def _document(text: str, confidence: float | None) -> OcrDocument:
    words = tuple(
        OcrWord(text=token, confidence=confidence) for token in text.split()
    )
    if not words:
        return OcrDocument()
    return OcrDocument(blocks=(OcrBlock(lines=(OcrLine(words=words),)),))


class StubEngine:
    def __init__(
        self,
        mode: ScriptMode,
        document: OcrDocument | None,
        *,
        on_process=None,
    ) -> None:
        self.mode = mode
        self._document = document
        self._on_process = on_process
        self.process_calls = 0
        self.close_calls = 0

    def process(self, pixels: np.ndarray) -> OcrDocument:
        self.process_calls += 1
        assert pixels.dtype == np.uint8
        if self._on_process is not None:
            self._on_process()
        if self._document is None:
            raise EngineFailure(f"{self.mode.display_name} engine crashed")
        return self._document

    def close(self) -> None:
        self.close_calls += 1


class StubEngineFactory:
    """Builds stub engines that return a fixed document per script."""

    def __init__(
        self,
        documents: dict[ScriptMode, OcrDocument | None],
        *,
        on_process=None,
    ) -> None:
        self._documents = documents
        self._on_process = on_process
        self.created: list[StubEngine] = []

    def __call__(self, mode: ScriptMode) -> StubEngine:
        engine = StubEngine(
            mode,
            self._documents.get(mode),
            on_process=self._on_process,
        )
        self.created.append(engine)
        return engine

    @property
    def modes(self) -> list[ScriptMode]:
        return [engine.mode for engine in self.created]


class StubRemote:
    def __init__(
        self,
        text: str = "remote text result",
        confidence: float | None = 0.95,
        *,
        error: Exception | None = None,
    ) -> None:
        self._text = text
        self._confidence = confidence
        self._error = error
        self.calls: list[object] = []

    async def recognize(self, source: object) -> RemoteOcrResult:
        self.calls.append(source)
        if self._error is not None:
            raise self._error
        return RemoteOcrResult(text=self._text, confidence=self._confidence)


class ImageRecorder:
    """Wraps `normalize_image` and notices when buffers are released."""

    def __init__(self) -> None:
        self.images = []
        self.closed = threading.Event()

    def __call__(self, source, **kwargs):
        image = normalize_image(source, **kwargs)
        release = image.close

        def _close() -> None:
            release()
            self.closed.set()

        image.close = _close
        self.images.append(image)
        return image


def _recognizer(
    documents: dict[ScriptMode, OcrDocument | None],
    *,
    remote: StubRemote | None = None,
    settings: StaticSettings | None = None,
    policy: FallbackPolicy = FallbackPolicy.DEFAULT,
    on_stage=None,
    on_process=None,
) -> tuple[HybridRecognizer, StubEngineFactory]:
    factory = StubEngineFactory(documents, on_process=on_process)
    recognizer = HybridRecognizer(
        settings or StaticSettings(),
        remote,
        engine_cache=EngineCache(factory),
        policy=policy,
        on_stage=on_stage,
    )
    return recognizer, factory


@pytest.mark.asyncio
async def test_always_remote_skips_local_engine(page_image: Path) -> None:
    remote = StubRemote()
    recognizer, factory = _recognizer(
        {ScriptMode.LATIN: _document(STRONG_TEXT, 0.99)},
        remote=remote,
        settings=StaticSettings(use_remote_always=True),
    )

    result = await recognizer.recognize(page_image)

    assert result.source == "remote"
    assert result.text == "remote text result"
    assert result.local_result is None
    assert factory.created == []
    assert remote.calls == [page_image]


@pytest.mark.asyncio
async def test_remote_only_policy_overrides_settings(page_image: Path) -> None:
    remote = StubRemote()
    recognizer, factory = _recognizer(
        {},
        remote=remote,
        policy=FallbackPolicy.REMOTE_ONLY,
    )

    result = await recognizer.recognize(page_image)

    assert result.source == "remote"
    assert factory.created == []


@pytest.mark.asyncio
async def test_high_confidence_local_result_is_kept(page_image: Path) -> None:
    remote = StubRemote()
    recognizer, factory = _recognizer(
        {ScriptMode.LATIN: _document(STRONG_TEXT, 0.98)},
        remote=remote,
    )

    result = await recognizer.recognize(page_image)

    assert result.source == "local"
    assert result.text == STRONG_TEXT
    assert result.script is ScriptMode.LATIN
    assert not result.fallback_triggered
    assert result.quality is not None and not result.quality.recommend_fallback
    assert remote.calls == []
    # The Latin detection pass doubles as the recognition pass.
    assert factory.modes == [ScriptMode.LATIN]
    assert factory.created[0].process_calls == 1


@pytest.mark.asyncio
async def test_weak_local_result_falls_back_to_remote(page_image: Path) -> None:
    remote = StubRemote()
    recognizer, _ = _recognizer(
        {ScriptMode.LATIN: _document("blurry smudge text", 0.25)},
        remote=remote,
    )

    result = await recognizer.recognize(page_image)

    assert result.source == "remote"
    assert result.text == "remote text result"
    assert result.confidence == 0.95
    assert result.fallback_triggered
    assert "Very low confidence: 25%" in result.fallback_reasons
    assert result.local_result is not None
    assert result.local_result.text == "blurry smudge text"
    assert result.quality is not None and result.quality.overall_confidence == 0.95


@pytest.mark.asyncio
async def test_remote_failure_degrades_to_local(page_image: Path) -> None:
    remote = StubRemote(error=RemoteFailure("quota exceeded"))
    recognizer, _ = _recognizer(
        {ScriptMode.LATIN: _document("blurry smudge text", 0.25)},
        remote=remote,
    )

    result = await recognizer.recognize(page_image)

    assert result.source == "local"
    assert result.text == "blurry smudge text"
    assert result.fallback_triggered
    assert result.remote_error == "quota exceeded"
    assert remote.calls == [page_image]


@pytest.mark.asyncio
async def test_blank_remote_result_keeps_local_text(page_image: Path) -> None:
    remote = StubRemote(text="", confidence=0.0)
    recognizer, _ = _recognizer(
        {ScriptMode.LATIN: _document("blurry smudge text", 0.25)},
        remote=remote,
    )

    result = await recognizer.recognize(page_image)

    assert result.source == "local"
    assert result.remote_error == "Remote provider returned no text."


@pytest.mark.asyncio
async def test_disabled_fallback_returns_weak_local_result(page_image: Path) -> None:
    remote = StubRemote()
    recognizer, _ = _recognizer(
        {ScriptMode.LATIN: _document("blurry smudge text", 0.25)},
        remote=remote,
        settings=StaticSettings(fallback_enabled=False),
    )

    result = await recognizer.recognize(page_image)

    assert result.source == "local"
    assert not result.fallback_triggered
    assert result.fallback_reasons
    assert remote.calls == []


@pytest.mark.asyncio
async def test_user_threshold_triggers_fallback(page_image: Path) -> None:
    remote = StubRemote()
    recognizer, _ = _recognizer(
        {ScriptMode.LATIN: _document(STRONG_TEXT, 0.75)},
        remote=remote,
        settings=StaticSettings(confidence_threshold=0.9),
    )

    result = await recognizer.recognize(page_image)

    assert result.source == "remote"
    assert result.fallback_reasons == ("Confidence 75% < user threshold 90%",)


@pytest.mark.asyncio
async def test_auto_mode_switches_to_detected_script(page_image: Path) -> None:
    recognizer, factory = _recognizer(
        {
            ScriptMode.LATIN: _document("中文 文本 x", 0.6),
            ScriptMode.CHINESE: _document(CHINESE_TEXT, 0.97),
        },
    )

    result = await recognizer.recognize(page_image)

    assert factory.modes == [ScriptMode.LATIN, ScriptMode.CHINESE]
    assert factory.created[0].close_calls == 1
    assert result.script is ScriptMode.CHINESE
    assert result.local_result is not None
    assert result.local_result.engine_used is ScriptMode.CHINESE


@pytest.mark.asyncio
async def test_failed_main_pass_keeps_detection_output(page_image: Path) -> None:
    recognizer, _ = _recognizer(
        {ScriptMode.LATIN: _document("한국어 텍스트", 0.7), ScriptMode.KOREAN: None},
    )

    result = await recognizer.recognize(page_image)

    assert result.source == "local"
    assert result.text == "한국어 텍스트"
    assert result.script is ScriptMode.KOREAN
    assert result.local_result is not None
    assert result.local_result.engine_used is ScriptMode.LATIN


@pytest.mark.asyncio
async def test_engine_failure_uses_remote_when_available(page_image: Path) -> None:
    remote = StubRemote()
    recognizer, _ = _recognizer(
        {ScriptMode.JAPANESE: None},
        remote=remote,
        settings=StaticSettings(script_mode=ScriptMode.JAPANESE),
    )

    result = await recognizer.recognize(page_image)

    assert result.source == "remote"
    assert result.fallback_reasons[0].startswith("Local recognition failed")


@pytest.mark.asyncio
async def test_engine_failure_raises_when_remote_fails(page_image: Path) -> None:
    remote = StubRemote(error=RemoteFailure("offline"))
    recognizer, _ = _recognizer(
        {ScriptMode.JAPANESE: None},
        remote=remote,
        settings=StaticSettings(script_mode=ScriptMode.JAPANESE),
    )

    with pytest.raises(EngineFailure, match="Japanese engine crashed"):
        await recognizer.recognize(page_image)


@pytest.mark.asyncio
async def test_missing_source_is_fatal(tmp_path: Path) -> None:
    remote = StubRemote()
    recognizer, _ = _recognizer({}, remote=remote)

    with pytest.raises(SourceUnavailableError):
        await recognizer.recognize(tmp_path / "missing.png")

    assert remote.calls == []


@pytest.mark.asyncio
async def test_cancelled_token_stops_before_work(page_image: Path) -> None:
    remote = StubRemote()
    recognizer, factory = _recognizer({}, remote=remote)
    token = CancellationToken()
    token.cancel()

    with pytest.raises(RecognitionCancelled):
        await recognizer.recognize(page_image, token)

    assert factory.created == []
    assert remote.calls == []


@pytest.mark.asyncio
async def test_cancellation_mid_pipeline_releases_buffer_and_keeps_engine(
    page_image: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    recorder = ImageRecorder()
    monkeypatch.setattr(local_pipeline, "normalize_image", recorder)
    token = CancellationToken()
    remote = StubRemote()
    recognizer, factory = _recognizer(
        {ScriptMode.LATIN: _document(STRONG_TEXT, 0.2)},
        remote=remote,
        on_process=token.cancel,
    )

    with pytest.raises(RecognitionCancelled, match="aggregation"):
        await recognizer.recognize(page_image, token)

    assert recorder.closed.is_set()
    assert recorder.images[0].closed
    assert factory.created[0].close_calls == 0
    assert remote.calls == []


@pytest.mark.asyncio
async def test_task_cancellation_stops_worker(
    page_image: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    recorder = ImageRecorder()
    monkeypatch.setattr(local_pipeline, "normalize_image", recorder)
    started = threading.Event()
    release = threading.Event()

    def _block() -> None:
        started.set()
        release.wait(timeout=2.0)

    recognizer, factory = _recognizer(
        {ScriptMode.LATIN: _document(STRONG_TEXT, 0.99)},
        settings=StaticSettings(script_mode=ScriptMode.LATIN),
        on_process=_block,
    )

    task = asyncio.create_task(recognizer.recognize(page_image))
    assert await asyncio.to_thread(started.wait, 2.0)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    release.set()

    assert await asyncio.to_thread(recorder.closed.wait, 2.0)
    assert factory.created[0].close_calls == 0


@pytest.mark.asyncio
async def test_stage_callback_sequence(page_image: Path) -> None:
    stages: list[RecognitionStage] = []
    recognizer, _ = _recognizer(
        {ScriptMode.LATIN: _document("blurry smudge text", 0.25)},
        remote=StubRemote(),
        on_stage=stages.append,
    )

    await recognizer.recognize(page_image)

    assert stages == [
        RecognitionStage.IDLE,
        RecognitionStage.LOCAL_RECOGNIZING,
        RecognitionStage.QUALITY_CHECK,
        RecognitionStage.REMOTE_RECOGNIZING,
        RecognitionStage.DONE,
    ]


@pytest.mark.asyncio
async def test_recognize_local_never_calls_remote(page_image: Path) -> None:
    remote = StubRemote()
    recognizer, _ = _recognizer(
        {ScriptMode.LATIN: _document("blurry smudge text", 0.25)},
        remote=remote,
    )

    result = await recognizer.recognize_local(page_image)

    assert result.source == "local"
    assert result.quality is not None and result.quality.recommend_fallback
    assert remote.calls == []


@pytest.mark.asyncio
async def test_recognize_with_script_forces_engine(page_image: Path) -> None:
    recognizer, factory = _recognizer(
        {ScriptMode.DEVANAGARI: _document("नमस्ते दुनिया", 0.9)},
    )

    result = await recognizer.recognize_with_script(page_image, ScriptMode.DEVANAGARI)

    assert factory.modes == [ScriptMode.DEVANAGARI]
    assert result.script is ScriptMode.DEVANAGARI
    assert result.text == "नमस्ते दुनिया"


@pytest.mark.asyncio
async def test_recognize_remote_requires_provider(page_image: Path) -> None:
    recognizer, _ = _recognizer({})

    with pytest.raises(RemoteFailure, match="No remote OCR provider"):
        await recognizer.recognize_remote(page_image)


@pytest.mark.asyncio
async def test_recognize_remote_skips_engine(page_image: Path) -> None:
    remote = StubRemote(text="hello from remote", confidence=0.85)
    recognizer, factory = _recognizer({}, remote=remote)

    result = await recognizer.recognize_remote(page_image)

    assert result.source == "remote"
    assert result.confidence == 0.85
    assert factory.created == []


@pytest.mark.asyncio
async def test_clear_cache_closes_engine(page_image: Path) -> None:
    recognizer, factory = _recognizer(
        {ScriptMode.LATIN: _document(STRONG_TEXT, 0.99)},
    )
    await recognizer.recognize(page_image)

    recognizer.clear_cache()

    assert factory.created[0].close_calls == 1


def test_available_script_modes() -> None:
    modes = HybridRecognizer.available_script_modes()

    assert modes[0] is ScriptMode.AUTO
    assert set(modes) == set(ScriptMode)
