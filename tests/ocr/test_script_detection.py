import numpy as np
import pytest

from docscan_ocr.models import ScriptMode
from docscan_ocr.ocr.clients import EngineCache
from docscan_ocr.ocr.script_detection import (
    classify_char,
    detect_script,
    detect_script_with_document,
    tally_scripts,
)
from docscan_ocr.ocr.types import OcrBlock, OcrDocument, OcrLine, OcrWord


class _TextEngine:
    def __init__(self, text: str) -> None:
        self._text = text
        self.calls = 0

    def process(self, pixels: np.ndarray) -> OcrDocument:
        self.calls += 1
        words = tuple(
            OcrWord(text=token, confidence=0.9) for token in self._text.split()
        )
        if not words:
            return OcrDocument()
        return OcrDocument(blocks=(OcrBlock(lines=(OcrLine(words=words),)),))

    def close(self) -> None:
        pass


class _FakeImage:
    pixels = np.zeros((2, 2, 3), dtype=np.uint8)


def _cache_for(text: str) -> tuple[EngineCache, list[ScriptMode]]:
    requested: list[ScriptMode] = []

    def _factory(mode: ScriptMode) -> _TextEngine:
        requested.append(mode)
        return _TextEngine(text)

    return EngineCache(_factory), requested


@pytest.mark.parametrize(
    ("char", "expected"),
    [
        ("a", ScriptMode.LATIN),
        ("é", ScriptMode.LATIN),
        ("中", ScriptMode.CHINESE),
        ("ひ", ScriptMode.JAPANESE),
        ("カ", ScriptMode.JAPANESE),
        ("한", ScriptMode.KOREAN),
        ("क", ScriptMode.DEVANAGARI),
        (" ", ScriptMode.LATIN),
        ("\n", ScriptMode.LATIN),
        ("7", ScriptMode.LATIN),
        ("Ж", None),
    ],
)
def test_classify_char(char: str, expected: ScriptMode | None) -> None:
    assert classify_char(char) is expected


def test_tally_scripts_counts_whitespace_as_latin_in_first_seen_order() -> None:
    counts = tally_scripts("한 ab\n中")

    assert counts == {ScriptMode.KOREAN: 1, ScriptMode.LATIN: 4, ScriptMode.CHINESE: 1}
    assert list(counts) == [ScriptMode.KOREAN, ScriptMode.LATIN, ScriptMode.CHINESE]


def test_detect_script_returns_majority_script() -> None:
    cache, requested = _cache_for("東京タワーは高いです x")

    script, document = detect_script_with_document(_FakeImage(), cache)

    assert script is ScriptMode.JAPANESE
    assert requested == [ScriptMode.LATIN]
    assert "タワー" in document.text


def test_detect_script_breaks_ties_by_first_seen() -> None:
    cache, _ = _cache_for("ab中文")

    assert detect_script(_FakeImage(), cache) is ScriptMode.LATIN


def test_detect_script_counts_interior_spaces_for_latin() -> None:
    cache, _ = _cache_for("中 文 字 a")

    assert detect_script(_FakeImage(), cache) is ScriptMode.LATIN


def test_detect_script_on_blank_output_is_undetermined() -> None:
    cache, _ = _cache_for("   ")

    assert detect_script(_FakeImage(), cache) is None


def test_detect_script_without_known_characters_is_undetermined() -> None:
    cache, _ = _cache_for("Жук")

    assert detect_script(_FakeImage(), cache) is None
