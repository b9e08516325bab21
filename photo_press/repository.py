"""Intake of user-supplied image files into decoded pixel buffers."""
import logging
import mimetypes
from dataclasses import dataclass
from io import BytesIO
from pathlib import Path
from typing import Tuple

import numpy as np
from PIL import Image, ImageOps
from pillow_heif import register_heif_opener

logger = logging.getLogger(__name__)

register_heif_opener()

# Pillow modes holding 16-bit grayscale samples (PNG and TIFF open as one of these)
_WIDE_INTEGER_MODES = frozenset({"I", "I;16", "I;16L", "I;16B", "I;16N"})

ALLOWED_MIME_TYPES = frozenset({
    "image/jpeg",
    "image/jpg",
    "image/png",
    "image/webp",
    "image/gif",
    "image/bmp",
    "image/tiff",
    "image/svg+xml",
    "image/heic",
    "image/heif",
})

# Types the stdlib mimetypes table may not know about
_EXTRA_MIME_TYPES = {
    ".webp": "image/webp",
    ".heic": "image/heic",
    ".heif": "image/heif",
}


class UnsupportedInput(Exception):
    """Raised when a file's MIME type is not on the allow-list."""
    pass


class LoadError(Exception):
    """Raised when a file cannot be decoded into a pixel buffer."""
    pass


@dataclass(frozen=True)
class SourceFile:
    """A file handed to the editor: its name, declared MIME type and raw bytes."""
    name: str
    mime_type: str
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)


def guess_mime_type(path: Path) -> str:
    """Guess a MIME type from the file extension, '' when unknown."""
    suffix = path.suffix.lower()
    if suffix in _EXTRA_MIME_TYPES:
        return _EXTRA_MIME_TYPES[suffix]
    mime_type, _ = mimetypes.guess_type(path.name)
    return mime_type or ""


def read_source_file(path: Path) -> SourceFile:
    """
    Read a file from disk into a SourceFile.

    Args:
        path: Path to the image file

    Returns:
        SourceFile with the guessed MIME type

    Raises:
        LoadError: If the file cannot be read
    """
    try:
        data = path.read_bytes()
    except OSError as e:
        logger.error(f"Error reading {path}: {e}")
        raise LoadError(f"Error reading {path}: {str(e)}") from e
    return SourceFile(name=path.name, mime_type=guess_mime_type(path), data=data)


def check_mime_type(source: SourceFile) -> None:
    """
    Raises:
        UnsupportedInput: If the declared MIME type is not accepted
    """
    if source.mime_type.lower() not in ALLOWED_MIME_TYPES:
        raise UnsupportedInput(f"Unsupported file type {source.mime_type or 'unknown'!r}: {source.name}")


def _to_8bit_gray(image: Image.Image) -> Image.Image:
    """Scale 16-bit grayscale samples down to 8 bits instead of clipping at 255."""
    samples = np.asarray(image).astype(np.int64)
    scaled = (np.clip(samples, 0, 65535) >> 8).astype(np.uint8)
    return Image.fromarray(scaled)


def decode_image(data: bytes) -> Image.Image:
    """
    Decode raw file bytes into an RGBA pixel buffer.

    EXIF orientation is applied so the buffer matches what a viewer shows.

    Args:
        data: Encoded image bytes

    Returns:
        Fully loaded RGBA image

    Raises:
        LoadError: If the bytes are not a decodable raster image
    """
    try:
        with Image.open(BytesIO(data)) as img:
            img.load()
            oriented = ImageOps.exif_transpose(img)
            if oriented.mode in _WIDE_INTEGER_MODES:
                oriented = _to_8bit_gray(oriented)
            image = oriented.convert("RGBA")
    except Exception as e:
        logger.debug(f"Could not decode image data ({len(data)} bytes): {e}")
        raise LoadError(f"Could not decode image: {str(e)}") from e

    if image.width < 1 or image.height < 1:
        raise LoadError("Decoded image has no pixels")
    return image


def load_source(source: SourceFile) -> Tuple[Image.Image, int, int]:
    """
    Validate and decode a SourceFile.

    Returns:
        Tuple of (pixel buffer, width, height)

    Raises:
        UnsupportedInput: If the MIME type is not allowed
        LoadError: If decoding fails
    """
    check_mime_type(source)
    image = decode_image(source.data)
    return image, image.width, image.height
