from dataclasses import dataclass

from docscan_ocr.models import BBox


@dataclass(frozen=True)
class OcrWord:
    """Recognized word with optional native confidence."""

    text: str
    confidence: float | None = None
    bbox: BBox | None = None


@dataclass(frozen=True)
class OcrLine:
    """Ordered words on one text line."""

    words: tuple[OcrWord, ...]
    bbox: BBox | None = None


@dataclass(frozen=True)
class OcrBlock:
    """Ordered lines forming one layout block."""

    lines: tuple[OcrLine, ...]
    bbox: BBox | None = None


@dataclass(frozen=True)
class OcrDocument:
    """Engine output for one image: blocks in reading order."""

    blocks: tuple[OcrBlock, ...] = ()

    @property
    def text(self) -> str:
        return "\n\n".join(
            "\n".join(
                " ".join(word.text for word in line.words) for line in block.lines
            )
            for block in self.blocks
        )


@dataclass(frozen=True)
class OcrOptions:
    """Runtime options passed to the OCR backend."""

    use_doc_orientation_classify: bool
    use_doc_unwarping: bool
    use_textline_orientation: bool


DEFAULT_OCR_OPTIONS = OcrOptions(
    use_doc_orientation_classify=True,
    use_doc_unwarping=True,
    use_textline_orientation=True,
)
