from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from statistics import median

from docscan_ocr.models import BBox
from docscan_ocr.ocr.types import OcrBlock, OcrDocument, OcrLine, OcrWord
from docscan_ocr.text import normalize_text

# A vertical gap larger than this many median line heights starts a new block.
BLOCK_GAP_RATIO = 1.0


@dataclass(frozen=True)
class _RecognizedLine:
    text: str
    confidence: float | None
    bbox: BBox | None


def _select_polys(
    texts: Sequence[object],
    *candidates: Sequence[object],
) -> Sequence[object]:
    for candidate in candidates:
        if isinstance(candidate, Sequence) and len(candidate) == len(texts):
            return candidate
    return []


def _as_sequence(value: object) -> Sequence[object]:
    tolist = getattr(value, "tolist", None)
    if callable(tolist):
        value = tolist()
    if isinstance(value, Sequence) and not isinstance(value, (str, bytes)):
        return value
    return []


def _result_to_json(result: object) -> Mapping[str, object] | None:
    if isinstance(result, Mapping):
        return result
    json_attr = getattr(result, "json", None)
    if callable(json_attr):
        payload = json_attr()
    else:
        payload = json_attr
    if isinstance(payload, Mapping):
        # PaddleOCR 3.x wraps the prediction under a "res" key.
        inner = payload.get("res")
        if isinstance(inner, Mapping):
            return inner
        return payload
    return None


def _coerce_score(value: object) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float, str)):
        try:
            return float(value)
        except ValueError:
            return None
    return None


def _polygon_to_bbox(poly: object) -> BBox | None:
    if isinstance(poly, (str, bytes)):
        return None

    tolist = getattr(poly, "tolist", None)
    if callable(tolist):
        poly = tolist()

    if not isinstance(poly, Sequence):
        return None

    if len(poly) == 4:
        points: list[Sequence[object]] = []
        for point in poly:
            if isinstance(point, (str, bytes)):
                points = []
                break
            point_tolist = getattr(point, "tolist", None)
            if callable(point_tolist):
                point = point_tolist()
            if not isinstance(point, Sequence):
                points = []
                break
            points.append(point)
        if points:
            xs = [float(point[0]) for point in points if len(point) >= 2]
            ys = [float(point[1]) for point in points if len(point) >= 2]
            if not xs or not ys:
                return None
            return min(xs), min(ys), max(xs), max(ys)

    try:
        values = [float(value) for value in poly]
    except (TypeError, ValueError):
        return None
    if len(values) == 8:
        xs = [values[index] for index in range(0, 8, 2)]
        ys = [values[index] for index in range(1, 8, 2)]
        return min(xs), min(ys), max(xs), max(ys)
    if len(values) == 4:
        x0, y0, x1, y1 = values
        return min(x0, x1), min(y0, y1), max(x0, x1), max(y0, y1)
    return None


def _lines_from_legacy_page(page: Sequence[object]) -> list[_RecognizedLine]:
    """Parse the PaddleOCR 2.x `[[poly, (text, score)], ...]` layout."""
    lines: list[_RecognizedLine] = []
    for item in page:
        if not isinstance(item, (list, tuple)) or len(item) < 2:
            continue
        text_info = item[1]
        if not isinstance(text_info, (list, tuple)) or not text_info:
            continue
        text = normalize_text(str(text_info[0]))
        if not text:
            continue
        score = _coerce_score(text_info[1]) if len(text_info) > 1 else None
        lines.append(
            _RecognizedLine(text=text, confidence=score, bbox=_polygon_to_bbox(item[0]))
        )
    return lines


def _lines_from_page_json(page: Mapping[str, object]) -> list[_RecognizedLine]:
    """Parse the PaddleOCR 3.x `rec_texts`/`rec_scores`/`rec_polys` layout."""
    raw_texts = _as_sequence(page.get("rec_texts"))
    scores = _as_sequence(page.get("rec_scores"))
    polys = _select_polys(
        raw_texts,
        _as_sequence(page.get("rec_polys")),
        _as_sequence(page.get("rec_boxes")),
        _as_sequence(page.get("dt_polys")),
        _as_sequence(page.get("dt_boxes")),
    )
    lines: list[_RecognizedLine] = []
    for index, raw_text in enumerate(raw_texts):
        text = normalize_text(str(raw_text))
        if not text:
            continue
        score = _coerce_score(scores[index]) if index < len(scores) else None
        bbox = _polygon_to_bbox(polys[index]) if index < len(polys) else None
        lines.append(_RecognizedLine(text=text, confidence=score, bbox=bbox))
    return lines


def _iter_recognized_lines(results: Iterable[object]) -> list[_RecognizedLine]:
    lines: list[_RecognizedLine] = []
    for page in results:
        if isinstance(page, list):
            lines.extend(_lines_from_legacy_page(page))
            continue
        payload = _result_to_json(page)
        if payload:
            lines.extend(_lines_from_page_json(payload))
    return lines


def _split_words(line: _RecognizedLine) -> tuple[OcrWord, ...]:
    """Split a recognized line into words sharing the line's confidence.

    Word boxes are interpolated along the x axis by character position.
    """
    tokens = line.text.split(" ")
    if line.bbox is None:
        return tuple(
            OcrWord(text=token, confidence=line.confidence) for token in tokens
        )
    if len(tokens) == 1:
        return (OcrWord(text=line.text, confidence=line.confidence, bbox=line.bbox),)

    x0, y0, x1, y1 = line.bbox
    total = len(line.text)
    width = x1 - x0
    words: list[OcrWord] = []
    cursor = 0
    for token in tokens:
        start = cursor
        end = cursor + len(token)
        words.append(
            OcrWord(
                text=token,
                confidence=line.confidence,
                bbox=(
                    x0 + width * start / total,
                    y0,
                    x0 + width * end / total,
                    y1,
                ),
            )
        )
        cursor = end + 1
    return tuple(words)


def _group_blocks(lines: Sequence[_RecognizedLine]) -> list[list[_RecognizedLine]]:
    heights = [line.bbox[3] - line.bbox[1] for line in lines if line.bbox is not None]
    max_gap = median(heights) * BLOCK_GAP_RATIO if heights else None
    blocks: list[list[_RecognizedLine]] = []
    previous: _RecognizedLine | None = None
    for line in lines:
        starts_block = not blocks
        if (
            not starts_block
            and max_gap is not None
            and previous is not None
            and previous.bbox is not None
            and line.bbox is not None
        ):
            gap = line.bbox[1] - previous.bbox[3]
            starts_block = gap > max_gap
        if starts_block:
            blocks.append([])
        blocks[-1].append(line)
        previous = line
    return blocks


def _union_bbox(boxes: Iterable[BBox | None]) -> BBox | None:
    present = [box for box in boxes if box is not None]
    if not present:
        return None
    return (
        min(box[0] for box in present),
        min(box[1] for box in present),
        max(box[2] for box in present),
        max(box[3] for box in present),
    )


def document_from_paddle(results: Iterable[object]) -> OcrDocument:
    """Build the blocks → lines → words hierarchy from PaddleOCR predictions.

    Used by `PaddleOcrEngine.process`. PaddleOCR reports lines only, so blocks
    are formed by splitting on large vertical gaps and words by splitting the
    normalized line text on spaces.
    """
    recognized = _iter_recognized_lines(results)
    blocks: list[OcrBlock] = []
    for group in _group_blocks(recognized):
        lines = tuple(
            OcrLine(words=_split_words(line), bbox=line.bbox) for line in group
        )
        bbox = _union_bbox(line.bbox for line in group)
        blocks.append(OcrBlock(lines=lines, bbox=bbox))
    return OcrDocument(blocks=tuple(blocks))
