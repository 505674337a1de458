import io
import logging
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from os import PathLike
from pathlib import Path
from threading import Lock
from typing import BinaryIO, Protocol
from urllib.parse import urlsplit
from urllib.request import url2pathname

import numpy as np
from PIL import Image

from docscan_ocr.errors import ImageDecodeError, SourceUnavailableError

logger = logging.getLogger(__name__)

MAX_IMAGE_DIMENSION = 4096
MAX_SAMPLE_SIZE = 8
CONTENT_SCHEME = "content"

SourceHandle = str | PathLike[str]

_DECODE_ERRORS = (OSError, ValueError, Image.DecompressionBombError)
_PALETTE_MODES = ("1", "P", "PA")
_PIXEL_LIMIT_LOCK = Lock()


class ContentResolver(Protocol):
    """Opens `content://` handles issued by a host application."""

    def open(self, handle: str) -> BinaryIO: ...


class InMemoryContentStore:
    """Content resolver over byte payloads registered in process."""

    def __init__(self, authority: str = "docscan") -> None:
        self._authority = authority
        self._payloads: dict[str, bytes] = {}
        self._lock = Lock()

    def add(self, data: bytes, name: str | None = None) -> str:
        handle = f"{CONTENT_SCHEME}://{self._authority}/{name or uuid.uuid4().hex}"
        with self._lock:
            self._payloads[handle] = bytes(data)
        return handle

    def remove(self, handle: str) -> None:
        with self._lock:
            self._payloads.pop(handle, None)

    def open(self, handle: str) -> BinaryIO:
        with self._lock:
            data = self._payloads.get(handle)
        if data is None:
            raise SourceUnavailableError(f"No content registered for {handle}.")
        return io.BytesIO(data)


def _open_source(source: SourceHandle, resolver: ContentResolver | None) -> BinaryIO:
    """Open a byte stream for a source handle.

    Accepts `content://` handles (through `resolver`), `file://` URIs, and bare
    filesystem paths. Every failure surfaces as `SourceUnavailableError`.
    """
    handle = str(source)
    parsed = urlsplit(handle)
    scheme = parsed.scheme.lower()
    if scheme == CONTENT_SCHEME:
        if resolver is None:
            raise SourceUnavailableError(
                f"No content resolver configured for {handle}."
            )
        try:
            return resolver.open(handle)
        except SourceUnavailableError:
            raise
        except OSError as exc:
            raise SourceUnavailableError(f"Cannot open {handle}: {exc}") from exc
    if scheme == "file":
        path = Path(url2pathname(parsed.path))
    elif not scheme or len(scheme) == 1:
        # Single-letter schemes are Windows drive letters.
        path = Path(handle)
    else:
        raise SourceUnavailableError(f"Unsupported source scheme {scheme!r}.")
    try:
        return path.open("rb")
    except OSError as exc:
        raise SourceUnavailableError(f"Cannot open {path}: {exc}") from exc


def _calculate_sample_size(width: int, height: int, max_dimension: int) -> int:
    """Power-of-two decode factor that keeps the image near `max_dimension`."""
    sample_size = 1
    half_width = width // 2
    half_height = height // 2
    while (
        half_height // sample_size >= max_dimension
        and half_width // sample_size >= max_dimension
        and sample_size < MAX_SAMPLE_SIZE
    ):
        sample_size *= 2
    return sample_size


def _source_pixel_budget(max_dimension: int) -> int:
    """Largest source the sample-size cap still brings near `max_dimension`."""
    return (2 * max_dimension * MAX_SAMPLE_SIZE) ** 2


@contextmanager
def _open_unbounded(stream: BinaryIO) -> Iterator[Image.Image]:
    """`Image.open` without Pillow's decompression-bomb size guard.

    Callers enforce `_source_pixel_budget` instead. The guard is a process
    global, so it is lifted only while the header is parsed.
    """
    with _PIXEL_LIMIT_LOCK:
        previous = Image.MAX_IMAGE_PIXELS
        Image.MAX_IMAGE_PIXELS = None
        try:
            image = Image.open(stream)
        finally:
            Image.MAX_IMAGE_PIXELS = previous
    with image:
        yield image


def _read_geometry(
    source: SourceHandle,
    resolver: ContentResolver | None,
) -> tuple[int, int]:
    with _open_source(source, resolver) as stream:
        try:
            with _open_unbounded(stream) as image:
                width, height = image.size
        except _DECODE_ERRORS as exc:
            raise ImageDecodeError(
                f"Cannot read image geometry of {source}: {exc}"
            ) from exc
    if width <= 0 or height <= 0:
        raise ImageDecodeError(f"Image {source} has no pixels.")
    return width, height


def _reduce_to_rgb(image: Image.Image, factor: int) -> Image.Image:
    if image.mode in _PALETTE_MODES:
        # Averaging palette indices is meaningless; expand colours first.
        with image.convert("RGB") as expanded:
            return expanded.reduce(factor)
    reduced = image.reduce(factor)
    if reduced.mode == "RGB":
        return reduced
    with reduced:
        return reduced.convert("RGB")


def _decode_pixels(
    source: SourceHandle,
    resolver: ContentResolver | None,
    sample_size: int,
) -> Image.Image:
    with _open_source(source, resolver) as stream:
        try:
            with _open_unbounded(stream) as image:
                width = image.width
                if sample_size > 1:
                    # JPEG decoders scale during decode; others ignore the request.
                    image.draft(
                        "RGB",
                        (image.width // sample_size, image.height // sample_size),
                    )
                # draft() rounds sizes up, so 1001 px at scale 2 becomes 501 px.
                applied = max(1, round(width / image.width))
                remaining = sample_size // applied
                if remaining > 1:
                    return _reduce_to_rgb(image, remaining)
                return image.convert("RGB")
        except _DECODE_ERRORS as exc:
            raise ImageDecodeError(f"Cannot decode image {source}: {exc}") from exc


class NormalizedImage:
    """RGB pixel buffer ready for recognition.

    Owns the decoded image until `close()`; use it as a context manager so
    the buffer is dropped as soon as the engine has consumed it. Only one
    representation is held at a time: building `pixels` releases the PIL
    image, and `pil_image()` rebuilds it from the array when asked.
    """

    def __init__(
        self,
        image: Image.Image,
        *,
        original_size: tuple[int, int],
        sample_size: int,
    ) -> None:
        self._image: Image.Image | None = image
        self._pixels: np.ndarray | None = None
        self._closed = False
        self.original_size = original_size
        self.sample_size = sample_size
        self.size = image.size

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pixels(self) -> np.ndarray:
        """`uint8` array of shape `(height, width, 3)`."""
        self._check_open()
        if self._pixels is None:
            image = self._image
            self._pixels = np.asarray(image, dtype=np.uint8)
            self._image = None
            image.close()
        return self._pixels

    def pil_image(self) -> Image.Image:
        self._check_open()
        if self._image is None:
            self._image = Image.fromarray(self._pixels)
        return self._image

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        image = self._image
        self._image = None
        self._pixels = None
        if image is not None:
            image.close()

    def _check_open(self) -> None:
        if self._closed:
            raise ValueError("Normalized image has been released.")

    def __enter__(self) -> "NormalizedImage":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


def normalize_image(
    source: SourceHandle,
    *,
    max_dimension: int = MAX_IMAGE_DIMENSION,
    resolver: ContentResolver | None = None,
) -> NormalizedImage:
    """Decode a source into an RGB buffer bounded by `max_dimension`.

    Geometry is read first without decoding pixels, so the subsampling factor
    is known before the full decode allocates memory. Sources too large for
    the capped factor to bring near `max_dimension` are rejected up front.
    """
    width, height = _read_geometry(source, resolver)
    budget = _source_pixel_budget(max_dimension)
    if width * height > budget:
        raise ImageDecodeError(
            f"Image {source} is {width}x{height}; sources above {budget} "
            "pixels are not decoded."
        )
    sample_size = _calculate_sample_size(width, height, max_dimension)
    image = _decode_pixels(source, resolver, sample_size)
    logger.debug(
        "Decoded %s: %dx%d -> %dx%d (sample size %d).",
        source,
        width,
        height,
        image.width,
        image.height,
        sample_size,
    )
    return NormalizedImage(
        image,
        original_size=(width, height),
        sample_size=sample_size,
    )
