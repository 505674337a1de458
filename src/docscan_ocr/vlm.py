import asyncio
import logging
import re
import time
import types
from collections.abc import Callable, Mapping, Sequence
from functools import lru_cache
from pathlib import Path
from typing import Protocol, cast

import torch
import transformers
from huggingface_hub import hf_hub_download
from huggingface_hub.errors import LocalEntryNotFoundError
from PIL import Image
from transformers import (
    AutoConfig,
    AutoImageProcessor,
    AutoModelForCausalLM,
    AutoProcessor,
    AutoTokenizer,
    PreTrainedModel,
    ProcessorMixin,
)

from docscan_ocr.errors import OcrError, RemoteFailure
from docscan_ocr.models import RemoteOcrResult
from docscan_ocr.ocr.image_source import (
    ContentResolver,
    SourceHandle,
    normalize_image,
)

logger = logging.getLogger(__name__)

QWEN_MODEL_ID = "Qwen/Qwen2.5-VL-3B-Instruct"
QWEN_MAX_TOKENS = 2048
QWEN_TEMPERATURE = 0.0
QWEN_TOP_P: float | None = None
REMOTE_MAX_DIMENSION = 1920
NO_TEXT_MARKER = "[NO_TEXT_FOUND]"
UNCERTAIN_MARKER = "[?]"
OCR_PROMPT = (
    "Extract text. Return ONLY text. "
    f"Write {UNCERTAIN_MARKER} in place of any word you cannot read. "
    f"If the image contains no text, return {NO_TEXT_MARKER}."
)
AutoModelForVision2Seq: type[PreTrainedModel] | None = getattr(
    transformers, "AutoModelForVision2Seq", None
)
AutoModelForImageTextToText: type[PreTrainedModel] | None = getattr(
    transformers, "AutoModelForImageTextToText", None
)

_FENCE_RE = re.compile(r"^```[\w-]*\n?(.*?)\n?```$", re.DOTALL)


class QwenProcessor(Protocol):
    def apply_chat_template(
        self,
        messages: list[dict[str, object]],
        *,
        tokenize: bool,
        add_generation_prompt: bool,
    ) -> str: ...

    def __call__(
        self,
        *,
        text: list[str],
        images: list[Image.Image],
        return_tensors: str,
    ) -> Mapping[str, torch.Tensor]: ...

    def batch_decode(
        self,
        sequences: Sequence[Sequence[int]] | torch.Tensor,
        *,
        skip_special_tokens: bool,
    ) -> list[str]: ...


class QwenModel(Protocol):
    def generate(self, **kwargs: object) -> torch.Tensor: ...


QwenComponents = tuple[PreTrainedModel, ProcessorMixin, types.ModuleType]
QwenLoader = Callable[[], QwenComponents]


def _is_vl_config(config: object) -> bool:
    """Detect whether a transformers config represents a vision-language model."""
    class_name = config.__class__.__name__.lower()
    if "vl" in class_name:
        return True
    model_type = getattr(config, "model_type", "")
    return isinstance(model_type, str) and "vl" in model_type


def _select_model_class(
    config: object,
    auto_vl: type[PreTrainedModel] | None,
    auto_image_text: type[PreTrainedModel] | None,
    auto_causal: type[PreTrainedModel],
) -> type[PreTrainedModel]:
    """Pick the auto class able to load `config`.

    Newer transformers releases drop `AutoModelForVision2Seq` in favour of
    `AutoModelForImageTextToText`; either serves a VL checkpoint.
    """
    if not _is_vl_config(config):
        return auto_causal
    for candidate in (auto_vl, auto_image_text):
        if candidate is not None:
            return candidate
    raise RemoteFailure(
        "Transformers does not provide a vision-language auto model. "
        "Install a transformers version that supports Qwen VL."
    )


def _select_processor_class(config: object, auto_processor):
    class_map = {
        "Qwen2_5_VLConfig": "Qwen2_5_VLProcessor",
        "Qwen2VLConfig": "Qwen2VLProcessor",
        "Qwen3VLConfig": "Qwen3VLProcessor",
        "Qwen3VLMoeConfig": "Qwen3VLProcessor",
    }
    processor_name = class_map.get(config.__class__.__name__)
    if processor_name is None:
        return auto_processor
    return getattr(transformers, processor_name, None) or auto_processor


def _build_null_video_processor():
    """Video processor that refuses work; the OCR prompt only carries images."""

    class _NullVideoProcessor(transformers.BaseVideoProcessor):
        def __init__(self) -> None:
            self.model_input_names = []
            self.merge_size = 1
            self.temporal_patch_size = 1

        def __call__(self, *args, **kwargs):
            raise RuntimeError("Video input is not supported for document OCR.")

        def get_number_of_video_patches(self, *args, **kwargs):
            raise RuntimeError("Video input is not supported for document OCR.")

    return _NullVideoProcessor()


def _resolve_local_model_path(model_id: str) -> str | None:
    """Directory of a cached snapshot of `model_id`, or None to download."""
    try:
        config_path = hf_hub_download(model_id, "config.json", local_files_only=True)
    except LocalEntryNotFoundError:
        return None
    return str(Path(config_path).parent)


def _load_qwen_processor(
    config: object,
    auto_processor,
    auto_tokenizer,
    auto_image_processor,
    model_source: str,
    local_files_only: bool,
):
    processor_class = _select_processor_class(config, auto_processor)
    if not (
        _is_vl_config(config) and processor_class.__name__.endswith("VLProcessor")
    ):
        return processor_class.from_pretrained(
            model_source,
            local_files_only=local_files_only,
            trust_remote_code=True,
        )
    image_processor = auto_image_processor.from_pretrained(
        model_source,
        local_files_only=local_files_only,
        trust_remote_code=True,
    )
    tokenizer = auto_tokenizer.from_pretrained(
        model_source,
        local_files_only=local_files_only,
        trust_remote_code=True,
    )
    return processor_class(
        image_processor=image_processor,
        tokenizer=tokenizer,
        video_processor=_build_null_video_processor(),
        chat_template=getattr(tokenizer, "chat_template", None),
    )


@lru_cache(maxsize=1)
def preload_qwen_model() -> QwenComponents:
    """Load and cache the Qwen model, processor, and torch module.

    Used by `QwenVisionOcrProvider` on its first recognition; later calls
    reuse the loaded weights.

    Returns:
        Tuple of (model, processor, torch module).
    """
    model_source = _resolve_local_model_path(QWEN_MODEL_ID) or QWEN_MODEL_ID
    local_files_only = model_source != QWEN_MODEL_ID
    logger.info(
        "Loading %s from %s.",
        QWEN_MODEL_ID,
        "local cache" if local_files_only else "the Hugging Face Hub",
    )
    config = AutoConfig.from_pretrained(
        model_source,
        local_files_only=local_files_only,
        trust_remote_code=True,
    )
    model_class = _select_model_class(
        config,
        AutoModelForVision2Seq,
        AutoModelForImageTextToText,
        AutoModelForCausalLM,
    )
    model = model_class.from_pretrained(
        model_source,
        torch_dtype="auto",
        device_map="auto",
        local_files_only=local_files_only,
        trust_remote_code=True,
    )
    processor = _load_qwen_processor(
        config,
        AutoProcessor,
        AutoTokenizer,
        AutoImageProcessor,
        model_source,
        local_files_only,
    )
    return model, processor, torch


def _model_device(model, torch_module):
    device = getattr(model, "device", None)
    if device is not None:
        return device
    try:
        return next(model.parameters()).device
    except StopIteration:
        return torch_module.device("cpu")


def _build_messages(image: Image.Image, prompt: str) -> list[dict[str, object]]:
    return [
        {
            "role": "user",
            "content": [
                {"type": "image", "image": image},
                {"type": "text", "text": prompt},
            ],
        }
    ]


def _strip_response(text: str) -> str:
    cleaned = text.strip()
    match = _FENCE_RE.match(cleaned)
    if match:
        cleaned = match.group(1).strip()
    return cleaned


def _confidence_from_markers(text: str) -> float:
    """Estimate confidence from the number of unreadable-word markers."""
    uncertain = text.count(UNCERTAIN_MARKER)
    if uncertain == 0:
        return 0.95
    if uncertain <= 2:
        return 0.85
    if uncertain <= 5:
        return 0.75
    return 0.65


def _parse_response(raw: str, processing_time_ms: int) -> RemoteOcrResult:
    text = _strip_response(raw)
    if not text or text == NO_TEXT_MARKER:
        return RemoteOcrResult(
            text="",
            confidence=0.0,
            processing_time_ms=processing_time_ms,
        )
    return RemoteOcrResult(
        text=text,
        confidence=_confidence_from_markers(text),
        processing_time_ms=processing_time_ms,
    )


class QwenVisionOcrProvider:
    """Remote-quality OCR through a Qwen2.5-VL vision-language model.

    Generation runs in a worker thread; the model is loaded once per process.
    """

    def __init__(
        self,
        *,
        resolver: ContentResolver | None = None,
        loader: QwenLoader = preload_qwen_model,
        max_dimension: int = REMOTE_MAX_DIMENSION,
        max_new_tokens: int = QWEN_MAX_TOKENS,
    ) -> None:
        self._resolver = resolver
        self._loader = loader
        self._max_dimension = max_dimension
        self._max_new_tokens = max_new_tokens

    async def recognize(self, source: SourceHandle) -> RemoteOcrResult:
        started = time.monotonic()
        try:
            raw = await asyncio.to_thread(self._recognize_blocking, source)
        except OcrError:
            raise
        except Exception as exc:
            raise RemoteFailure(f"Qwen OCR failed: {exc}") from exc
        elapsed = int((time.monotonic() - started) * 1000)
        result = _parse_response(raw, elapsed)
        logger.debug(
            "Qwen OCR returned %d characters in %d ms.",
            len(result.text),
            elapsed,
        )
        return result

    def _recognize_blocking(self, source: SourceHandle) -> str:
        with normalize_image(
            source,
            max_dimension=self._max_dimension,
            resolver=self._resolver,
        ) as image:
            return self._generate(image.pil_image())

    def _generate(self, image: Image.Image) -> str:
        model, processor, torch_module = self._loader()
        typed_model = cast(QwenModel, model)
        typed_processor = cast(QwenProcessor, processor)
        prompt_text = typed_processor.apply_chat_template(
            _build_messages(image, OCR_PROMPT),
            tokenize=False,
            add_generation_prompt=True,
        )
        inputs = typed_processor(
            text=[prompt_text],
            images=[image],
            return_tensors="pt",
        )
        device = _model_device(model, torch_module)
        inputs = {key: value.to(device) for key, value in inputs.items()}
        generation_args: dict[str, object] = {"max_new_tokens": self._max_new_tokens}
        if QWEN_TEMPERATURE > 0:
            generation_args.update({"do_sample": True, "temperature": QWEN_TEMPERATURE})
            if QWEN_TOP_P is not None:
                generation_args["top_p"] = QWEN_TOP_P
        output_ids = typed_model.generate(**inputs, **generation_args)
        # generate() echoes the prompt tokens; decode only the completion.
        input_ids = inputs.get("input_ids")
        prompt_length = input_ids.shape[-1] if input_ids is not None else 0
        decoded = typed_processor.batch_decode(
            output_ids[:, prompt_length:],
            skip_special_tokens=True,
        )
        if not decoded:
            raise RemoteFailure("Qwen response was empty.")
        return decoded[0]
