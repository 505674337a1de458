from pathlib import Path

import pytest
from PIL import Image, ImageDraw

from docscan_ocr.ocr import clients as ocr_clients


@pytest.fixture
def page_image(tmp_path: Path) -> Path:
    """Small white page with a dark stripe, saved as PNG."""
    image = Image.new("RGB", (64, 48), color="white")
    ImageDraw.Draw(image).rectangle((8, 20, 56, 28), fill="black")
    path = tmp_path / "page.png"
    image.save(path)
    image.close()
    return path


@pytest.fixture(autouse=True)
def _isolated_default_engine_cache():
    ocr_clients._reset_default_engine_cache()
    yield
    ocr_clients._reset_default_engine_cache()
