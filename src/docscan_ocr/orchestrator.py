import asyncio
import logging
import time
from collections.abc import Callable
from enum import Enum
from typing import Protocol

from docscan_ocr.cancellation import CancellationToken
from docscan_ocr.errors import EngineFailure, RecognitionCancelled, RemoteFailure
from docscan_ocr.models import (
    QualityMetrics,
    RecognitionResult,
    RemoteOcrResult,
    ScriptMode,
    UnifiedResult,
)
from docscan_ocr.ocr import recognize_image
from docscan_ocr.ocr.clients import EngineCache, default_engine_cache
from docscan_ocr.ocr.image_source import (
    MAX_IMAGE_DIMENSION,
    ContentResolver,
    SourceHandle,
)
from docscan_ocr.policy import (
    FallbackPolicy,
    ResolvedSettings,
    SettingsStore,
    StaticSettings,
    read_settings,
)
from docscan_ocr.quality import (
    DEFAULT_THRESHOLDS,
    QualityThresholds,
    analyze,
    analyze_simple,
)
from docscan_ocr.text import is_blank

logger = logging.getLogger(__name__)


class RecognitionStage(str, Enum):
    IDLE = "idle"
    LOCAL_RECOGNIZING = "local_recognizing"
    QUALITY_CHECK = "quality_check"
    REMOTE_RECOGNIZING = "remote_recognizing"
    DONE = "done"


class RemoteOcrProvider(Protocol):
    async def recognize(self, source: SourceHandle) -> RemoteOcrResult: ...


StageCallback = Callable[[RecognitionStage], None]


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def _call_token(cancel: CancellationToken | None) -> CancellationToken:
    if cancel is None:
        return CancellationToken()
    return cancel.child()


class HybridRecognizer:
    """Local-first recognizer that falls back to a remote provider on weak output.

    Each call snapshots the settings store, runs the local pipeline in a worker
    thread, grades the result and, when the grade or the user threshold calls
    for it, asks the remote provider instead. A failing remote never turns a
    usable local result into an error.
    """

    def __init__(
        self,
        settings: SettingsStore | None = None,
        remote: RemoteOcrProvider | None = None,
        *,
        engine_cache: EngineCache | None = None,
        policy: FallbackPolicy = FallbackPolicy.DEFAULT,
        thresholds: QualityThresholds = DEFAULT_THRESHOLDS,
        resolver: ContentResolver | None = None,
        max_dimension: int = MAX_IMAGE_DIMENSION,
        on_stage: StageCallback | None = None,
    ) -> None:
        self._settings = settings or StaticSettings()
        self._remote = remote
        self._engine_cache = engine_cache or default_engine_cache()
        self._policy = policy
        self._thresholds = thresholds
        self._resolver = resolver
        self._max_dimension = max_dimension
        self._on_stage = on_stage

    @property
    def policy(self) -> FallbackPolicy:
        return self._policy

    @staticmethod
    def available_script_modes() -> tuple[ScriptMode, ...]:
        return tuple(ScriptMode)

    def clear_cache(self) -> None:
        """Release the cached local engine; the next call rebuilds it."""
        self._engine_cache.clear()

    async def recognize(
        self,
        source: SourceHandle,
        cancel: CancellationToken | None = None,
    ) -> UnifiedResult:
        """Recognize `source` with the local engine and remote fallback.

        Raises:
            SourceUnavailableError: The source cannot be opened.
            ImageDecodeError: The source is not a decodable image.
            EngineFailure: The local pipeline failed and no remote result
                could replace it.
            RemoteFailure: Remote-only recognition is configured and failed.
            RecognitionCancelled: `cancel` was triggered.
        """
        settings = read_settings(self._settings)
        always_remote = settings.always_use_remote or self._policy.always_use_remote
        fallback_enabled = (
            settings.fallback_enabled
            and self._policy.fallback_enabled
            and self._remote is not None
        )
        token = _call_token(cancel)
        started = time.monotonic()
        self._enter(RecognitionStage.IDLE)
        token.raise_if_cancelled("recognition")

        if always_remote:
            logger.info("Remote-only recognition configured; skipping local engine.")
            remote = await self._run_remote(source, token)
            return self._finish(self._remote_result(remote, started))

        try:
            local = await self._run_local(source, settings.script_mode, token)
        except EngineFailure as exc:
            if not fallback_enabled:
                raise
            logger.warning(
                "Local recognition failed; trying remote provider.", exc_info=True
            )
            try:
                remote = await self._run_remote(source, token)
            except (RecognitionCancelled, asyncio.CancelledError):
                raise
            except Exception:
                logger.warning("Remote provider failed as well.", exc_info=True)
                raise exc
            result = self._remote_result(
                remote,
                started,
                fallback_reasons=(f"Local recognition failed: {exc}",),
            )
            return self._finish(result)

        token.raise_if_cancelled("quality check")
        self._enter(RecognitionStage.QUALITY_CHECK)
        metrics = analyze(local, self._policy, self._thresholds)
        reasons = self._fallback_reasons(local, metrics, settings)
        if not (fallback_enabled and reasons):
            if reasons:
                logger.info(
                    "Local result is weak (%s) but fallback is disabled.",
                    "; ".join(reasons),
                )
            return self._finish(
                self._local_result(local, metrics, started, fallback_reasons=reasons)
            )

        logger.info("Falling back to remote provider: %s", "; ".join(reasons))
        token.raise_if_cancelled("remote recognition")
        try:
            remote = await self._run_remote(source, token)
        except (RecognitionCancelled, asyncio.CancelledError):
            raise
        except Exception as exc:
            logger.warning(
                "Remote provider failed; keeping local result.", exc_info=True
            )
            return self._finish(
                self._local_result(
                    local,
                    metrics,
                    started,
                    fallback_triggered=True,
                    fallback_reasons=reasons,
                    remote_error=str(exc) or exc.__class__.__name__,
                )
            )
        if is_blank(remote.text) and not is_blank(local.text):
            logger.warning("Remote provider returned no text; keeping local result.")
            return self._finish(
                self._local_result(
                    local,
                    metrics,
                    started,
                    fallback_triggered=True,
                    fallback_reasons=reasons,
                    remote_error="Remote provider returned no text.",
                )
            )
        return self._finish(
            self._remote_result(
                remote,
                started,
                local=local,
                fallback_reasons=reasons,
            )
        )

    async def recognize_local(
        self,
        source: SourceHandle,
        cancel: CancellationToken | None = None,
    ) -> UnifiedResult:
        """Local pipeline with the stored script preference and no remote call."""
        settings = read_settings(self._settings)
        return await self._local_only(source, settings.script_mode, cancel)

    async def recognize_with_script(
        self,
        source: SourceHandle,
        mode: ScriptMode,
        cancel: CancellationToken | None = None,
    ) -> UnifiedResult:
        """Local pipeline forced to `mode`, for diagnostics."""
        return await self._local_only(source, mode, cancel)

    async def recognize_remote(
        self,
        source: SourceHandle,
        cancel: CancellationToken | None = None,
    ) -> UnifiedResult:
        token = _call_token(cancel)
        started = time.monotonic()
        self._enter(RecognitionStage.IDLE)
        token.raise_if_cancelled("recognition")
        remote = await self._run_remote(source, token)
        return self._finish(self._remote_result(remote, started))

    async def _local_only(
        self,
        source: SourceHandle,
        mode: ScriptMode,
        cancel: CancellationToken | None,
    ) -> UnifiedResult:
        token = _call_token(cancel)
        started = time.monotonic()
        self._enter(RecognitionStage.IDLE)
        token.raise_if_cancelled("recognition")
        local = await self._run_local(source, mode, token)
        token.raise_if_cancelled("quality check")
        self._enter(RecognitionStage.QUALITY_CHECK)
        metrics = analyze(local, self._policy, self._thresholds)
        return self._finish(self._local_result(local, metrics, started))

    async def _run_local(
        self,
        source: SourceHandle,
        mode: ScriptMode,
        token: CancellationToken,
    ) -> RecognitionResult:
        self._enter(RecognitionStage.LOCAL_RECOGNIZING)
        try:
            return await asyncio.to_thread(
                recognize_image,
                source,
                mode,
                self._engine_cache,
                resolver=self._resolver,
                cancel=token,
                max_dimension=self._max_dimension,
            )
        except asyncio.CancelledError:
            # The worker thread keeps running; stop it at its next checkpoint.
            token.cancel()
            raise

    async def _run_remote(
        self,
        source: SourceHandle,
        token: CancellationToken,
    ) -> RemoteOcrResult:
        if self._remote is None:
            raise RemoteFailure("No remote OCR provider is configured.")
        self._enter(RecognitionStage.REMOTE_RECOGNIZING)
        result = await self._remote.recognize(source)
        token.raise_if_cancelled("result delivery")
        return result

    def _fallback_reasons(
        self,
        local: RecognitionResult,
        metrics: QualityMetrics,
        settings: ResolvedSettings,
    ) -> tuple[str, ...]:
        reasons = list(metrics.reasons) if metrics.recommend_fallback else []
        confidence = local.overall_confidence or 0.0
        if confidence < settings.confidence_threshold:
            reasons.append(
                f"Confidence {int(confidence * 100)}% < user threshold "
                f"{int(settings.confidence_threshold * 100)}%"
            )
        return tuple(reasons)

    def _local_result(
        self,
        local: RecognitionResult,
        metrics: QualityMetrics,
        started: float,
        *,
        fallback_triggered: bool = False,
        fallback_reasons: tuple[str, ...] = (),
        remote_error: str | None = None,
    ) -> UnifiedResult:
        return UnifiedResult(
            text=local.text,
            confidence=local.overall_confidence,
            source="local",
            script=local.detected_script,
            processing_time_ms=_elapsed_ms(started),
            local_result=local,
            quality=metrics,
            fallback_triggered=fallback_triggered,
            fallback_reasons=fallback_reasons,
            remote_error=remote_error,
        )

    def _remote_result(
        self,
        remote: RemoteOcrResult,
        started: float,
        *,
        local: RecognitionResult | None = None,
        fallback_reasons: tuple[str, ...] = (),
    ) -> UnifiedResult:
        confidence = remote.confidence
        if confidence is not None:
            confidence = min(1.0, max(0.0, confidence))
        return UnifiedResult(
            text=remote.text,
            confidence=confidence,
            source="remote",
            script=local.detected_script if local is not None else None,
            processing_time_ms=_elapsed_ms(started),
            local_result=local,
            quality=analyze_simple(confidence, len(remote.text), self._thresholds),
            fallback_triggered=bool(fallback_reasons),
            fallback_reasons=fallback_reasons,
        )

    def _finish(self, result: UnifiedResult) -> UnifiedResult:
        self._enter(RecognitionStage.DONE)
        logger.info(
            "Recognized %d characters from %s provider in %d ms.",
            len(result.text),
            result.source,
            result.processing_time_ms,
        )
        return result

    def _enter(self, stage: RecognitionStage) -> None:
        logger.debug("Recognition stage: %s", stage.value)
        if self._on_stage is None:
            return
        try:
            self._on_stage(stage)
        except Exception:
            logger.warning("Stage callback failed for %s.", stage.value, exc_info=True)
