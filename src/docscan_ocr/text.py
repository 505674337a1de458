def normalize_text(text: str) -> str:
    """Collapse runs of whitespace in OCR-derived strings to single spaces."""
    return " ".join(text.split())


def is_blank(text: str | None) -> bool:
    return text is None or not text.strip()
