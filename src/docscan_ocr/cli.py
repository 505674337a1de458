"""Diagnostic command line: recognize one image and report how it was handled.

Examples:
  docscan-ocr scan.jpg
  docscan-ocr scan.jpg --mode local --script japanese --words
  docscan-ocr file:///tmp/note.png --policy aggressive --json
"""

import argparse
import asyncio
import logging
import sys
from collections.abc import Sequence

from docscan_ocr.errors import OcrError
from docscan_ocr.models import ScriptMode, UnifiedResult
from docscan_ocr.orchestrator import HybridRecognizer
from docscan_ocr.policy import FallbackPolicy, StaticSettings

logger = logging.getLogger(__name__)

_MODES = ("hybrid", "local", "remote")


def _build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="docscan-ocr",
        description="Recognize text in a document photo with remote fallback.",
    )
    ap.add_argument("source", help="Image path, file:// URI, or content:// handle")
    ap.add_argument(
        "--script",
        default=ScriptMode.AUTO.value,
        choices=[mode.value for mode in ScriptMode],
        help="Script of the local engine (default: auto-detect)",
    )
    ap.add_argument(
        "--mode",
        default="hybrid",
        choices=_MODES,
        help="hybrid: local with remote fallback; local/remote: one provider only",
    )
    ap.add_argument(
        "--threshold",
        type=float,
        default=0.5,
        help="Confidence below which the remote provider is used (0-1)",
    )
    ap.add_argument(
        "--policy",
        default="default",
        help="Fallback preset: default, conservative, aggressive, "
        "remote-only, local-only",
    )
    ap.add_argument(
        "--words",
        action="store_true",
        help="List words with confidence below the review level",
    )
    ap.add_argument("--json", action="store_true", help="Print the result as JSON")
    ap.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return ap


def _build_remote():
    # Imported lazily so local-only runs never load torch.
    from docscan_ocr.vlm import QwenVisionOcrProvider

    return QwenVisionOcrProvider()


def _format_result(result: UnifiedResult, *, show_words: bool) -> str:
    lines = [result.text, ""]
    confidence = "n/a" if result.confidence is None else f"{result.confidence:.2f}"
    lines.append(f"source: {result.source}  confidence: {confidence}")
    if result.script is not None:
        lines.append(f"script: {result.script.display_name}")
    if result.quality is not None:
        lines.append(f"quality: {result.quality.summary()}")
    if result.fallback_reasons:
        lines.append("fallback reasons:")
        lines.extend(f"  - {reason}" for reason in result.fallback_reasons)
    if result.remote_error:
        lines.append(f"remote error: {result.remote_error}")
    lines.append(f"time: {result.processing_time_ms} ms")
    if show_words and result.local_result is not None:
        review = [word for word in result.local_result.words if word.needs_review]
        lines.append(f"words needing review: {len(review)}")
        for word in review:
            lines.append(
                f"  [{word.start_offset}:{word.end_offset}] {word.text!r} "
                f"{word.confidence:.2f} {word.level.name}"
            )
    return "\n".join(lines)


async def _run(args: argparse.Namespace, policy: FallbackPolicy) -> UnifiedResult:
    script = ScriptMode.parse(args.script)
    settings = StaticSettings(
        script_mode=script,
        confidence_threshold=args.threshold,
    )
    remote = None
    if args.mode != "local" and policy.fallback_enabled:
        remote = _build_remote()
    recognizer = HybridRecognizer(settings, remote, policy=policy)
    if args.mode == "local":
        return await recognizer.recognize_with_script(args.source, script)
    if args.mode == "remote":
        return await recognizer.recognize_remote(args.source)
    return await recognizer.recognize(args.source)


def main(argv: Sequence[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        policy = FallbackPolicy.preset(args.policy)
    except ValueError as exc:
        print(exc, file=sys.stderr)
        return 2
    try:
        result = asyncio.run(_run(args, policy))
    except OcrError as exc:
        logger.debug("Recognition failed.", exc_info=True)
        print(f"error: {exc}", file=sys.stderr)
        return 1
    if args.json:
        print(result.model_dump_json(indent=2))
    else:
        print(_format_result(result, show_words=args.words))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
