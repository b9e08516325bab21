"""Output encoders for raster formats and single-page PDF documents."""
import io
import logging
import re
from enum import Enum
from typing import Tuple, Union

import fitz  # PyMuPDF
from PIL import Image

logger = logging.getLogger(__name__)

MIN_QUALITY = 10
MAX_QUALITY = 100

_SIZE_UNITS = ["B", "KB", "MB", "GB"]
_EXTENSION_RE = re.compile(r"\.[^/.]+$")


class EncodeError(Exception):
    """Raised when a pixel buffer cannot be encoded."""
    pass


class OutputFormat(str, Enum):
    """Export formats offered per image."""
    JPEG = "jpeg"
    PNG = "png"
    WEBP = "webp"
    PDF = "pdf"

    @property
    def extension(self) -> str:
        return "jpg" if self is OutputFormat.JPEG else self.value

    @property
    def mime_type(self) -> str:
        if self is OutputFormat.PDF:
            return "application/pdf"
        return f"image/{self.value}"

    @property
    def is_lossy(self) -> bool:
        return self in (OutputFormat.JPEG, OutputFormat.WEBP)

    @classmethod
    def parse(cls, value: Union["OutputFormat", str]) -> "OutputFormat":
        """Accept an OutputFormat or its string value ('jpg' is an alias of jpeg)."""
        if isinstance(value, cls):
            return value
        text = str(value).strip().lower()
        if text == "jpg":
            return cls.JPEG
        try:
            return cls(text)
        except ValueError:
            raise ValueError(f"Unsupported output format: {value!r}") from None


def clamp_quality(quality: float) -> int:
    """Round a quality percentage and clamp it to [10, 100]."""
    return max(MIN_QUALITY, min(MAX_QUALITY, int(round(quality))))


def normalize_quality(quality: float) -> float:
    """
    Convert a 10-100 percentage into the codec's 0.1-1.0 scale.

    Args:
        quality: Quality percentage from the editor

    Returns:
        clamp(quality / 100, 0.1, 1.0)
    """
    return min(1.0, max(0.1, quality / 100))


def format_file_name(name: str, output_format: Union[OutputFormat, str]) -> str:
    """
    Replace the file extension with the one of the output format.

    >>> format_file_name("photo.png", "jpeg")
    'photo.jpg'
    >>> format_file_name("a.b.png", "webp")
    'a.b.webp'
    """
    fmt = OutputFormat.parse(output_format)
    base = _EXTENSION_RE.sub("", name)
    return f"{base}.{fmt.extension}"


def human_file_size(num_bytes: int) -> str:
    """Format a byte count the way the export summary shows it (e.g. '1.5 MB')."""
    if num_bytes <= 0:
        return "0 B"
    i = 0
    size = float(num_bytes)
    while size >= 1024 and i < len(_SIZE_UNITS) - 1:
        size /= 1024
        i += 1
    if size > 99 or i == 0:
        return f"{size:.0f} {_SIZE_UNITS[i]}"
    return f"{size:.1f} {_SIZE_UNITS[i]}"


def page_orientation(width: int, height: int) -> str:
    """Return 'landscape' when wider than tall, otherwise 'portrait'."""
    return "landscape" if width > height else "portrait"


def flatten_on_black(image: Image.Image) -> Image.Image:
    """Composite an image over opaque black and drop the alpha channel."""
    rgba = image.convert("RGBA")
    background = Image.new("RGBA", rgba.size, (0, 0, 0, 255))
    flattened = Image.alpha_composite(background, rgba).convert("RGB")
    background.close()
    return flattened


def _encode_raster(image: Image.Image, output_format: OutputFormat, quality: int, compress_level: int) -> bytes:
    buffer = io.BytesIO()
    native_quality = int(round(normalize_quality(quality) * 100))

    if output_format is OutputFormat.JPEG:
        # JPEG has no alpha channel, transparency blends into black
        flat = flatten_on_black(image)
        try:
            flat.save(buffer, format="JPEG", quality=native_quality, optimize=True)
        finally:
            flat.close()
    elif output_format is OutputFormat.WEBP:
        image.save(buffer, format="WEBP", quality=native_quality, method=4)
    elif output_format is OutputFormat.PNG:
        image.save(buffer, format="PNG", compress_level=compress_level)
    else:
        raise EncodeError(f"{output_format.value} is not a raster format")

    return buffer.getvalue()


def _encode_pdf(image: Image.Image, quality: int) -> bytes:
    """Embed a JPEG rendition of the image as the only page of a new PDF."""
    jpeg_bytes = _encode_raster(image, OutputFormat.JPEG, quality, compress_level=6)

    width, height = image.size
    if page_orientation(width, height) == "landscape":
        page_width, page_height = max(width, height), min(width, height)
    else:
        page_width, page_height = min(width, height), max(width, height)

    doc = fitz.open()
    try:
        page = doc.new_page(width=page_width, height=page_height)
        page.insert_image(page.rect, stream=jpeg_bytes)
        return doc.tobytes(garbage=3, deflate=True)
    finally:
        doc.close()


def encode(
    image: Image.Image,
    output_format: Union[OutputFormat, str],
    quality: int,
    compress_level: int = 6
) -> Tuple[bytes, int]:
    """
    Encode a pixel buffer into the bytes of an output file.

    Lossy formats get `quality` normalized to the codec scale; PNG ignores
    it. PDF output is bounded by the JPEG it embeds.

    Args:
        image: Pixel buffer to encode
        output_format: Target format
        quality: Quality percentage (10-100)
        compress_level: zlib level for PNG output

    Returns:
        Tuple of (encoded bytes, byte length)

    Raises:
        EncodeError: If the buffer is empty or the codec fails
    """
    fmt = OutputFormat.parse(output_format)
    if image.width < 1 or image.height < 1:
        raise EncodeError(f"Cannot encode an empty buffer ({image.width}x{image.height})")

    try:
        if fmt is OutputFormat.PDF:
            data = _encode_pdf(image, quality)
        else:
            data = _encode_raster(image, fmt, quality, compress_level)
    except EncodeError:
        raise
    except Exception as e:
        logger.error(f"Error encoding {image.width}x{image.height} image as {fmt.value}: {e}")
        raise EncodeError(f"Error encoding image as {fmt.value}: {str(e)}") from e

    logger.debug(f"Encoded {image.width}x{image.height} image as {fmt.value}: {len(data)} bytes")
    return data, len(data)
