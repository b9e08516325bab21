"""Pure pixel-buffer operations: rotated crops and resampling."""
import logging
import math
from dataclasses import dataclass
from typing import Optional, Tuple

import cv2
import numpy as np
from PIL import Image

logger = logging.getLogger(__name__)

# Fill for canvas regions the rotated source does not cover.
TRANSPARENT = (0, 0, 0, 0)


class ImageProcessingError(Exception):
    """Raised when image processing operations fail."""
    pass


class InvalidDimension(ImageProcessingError):
    """Raised when a buffer or a target size has less than one pixel on an axis."""
    pass


@dataclass(frozen=True)
class CropRect:
    """Crop rectangle in pixels of the rotated canvas."""
    x: float
    y: float
    width: float
    height: float

    def to_box(self) -> Tuple[int, int, int, int]:
        """Return the (left, top, right, bottom) box used by Pillow."""
        left = int(round(self.x))
        top = int(round(self.y))
        return left, top, left + int(round(self.width)), top + int(round(self.height))

    @property
    def size(self) -> Tuple[int, int]:
        return int(round(self.width)), int(round(self.height))


def normalize_rotation(degrees: float) -> float:
    """
    Map any rotation angle into [0, 360).

    Args:
        degrees: Rotation in degrees, possibly negative or larger than a turn

    Returns:
        Equivalent angle in [0, 360)
    """
    normalized = float(degrees) % 360.0
    # -1e-14 % 360 rounds up to exactly 360.0
    return 0.0 if normalized >= 360.0 else normalized


def rotated_bounding_box(width: int, height: int, degrees: float) -> Tuple[int, int]:
    """
    Compute the axis-aligned bounding box of a width x height rectangle
    rotated about its centre.

    Args:
        width: Source width in pixels
        height: Source height in pixels
        degrees: Rotation angle in degrees

    Returns:
        Tuple of (box_width, box_height), each at least 1
    """
    radians = math.radians(normalize_rotation(degrees))
    cos_a = abs(math.cos(radians))
    sin_a = abs(math.sin(radians))
    box_width = width * cos_a + height * sin_a
    box_height = width * sin_a + height * cos_a
    return max(1, int(round(box_width))), max(1, int(round(box_height)))


def _ensure_rgba(image: Image.Image) -> Image.Image:
    if image.mode == "RGBA":
        return image.copy()
    return image.convert("RGBA")


def _rotation_matrix(
    source_size: Tuple[int, int],
    canvas_size: Tuple[int, int],
    degrees: float
) -> Tuple[float, float, float, float, float, float]:
    """
    Affine coefficients mapping canvas pixels back to source pixels for a
    clockwise rotation about both centres.
    """
    radians = math.radians(degrees)
    cos_a, sin_a = math.cos(radians), math.sin(radians)
    src_cx, src_cy = source_size[0] / 2, source_size[1] / 2
    dst_cx, dst_cy = canvas_size[0] / 2, canvas_size[1] / 2
    return (
        cos_a, sin_a, src_cx - cos_a * dst_cx - sin_a * dst_cy,
        -sin_a, cos_a, src_cy + sin_a * dst_cx - cos_a * dst_cy,
    )


def crop_to_bounding_box(
    image: Image.Image,
    rect: Optional[CropRect],
    rotation: float = 0.0
) -> Image.Image:
    """
    Rotate an image onto its bounding-box canvas and extract a region.

    The source is painted rotated (positive angles turn clockwise) and
    centred on a transparent canvas large enough to hold all of it. `rect`
    is expressed in that canvas's coordinates; parts of it outside the
    canvas stay transparent.

    Args:
        image: Source pixel buffer, left untouched
        rect: Region to extract, or None for the whole rotated canvas
        rotation: Rotation angle in degrees

    Returns:
        New RGBA image of exactly rect's size (or the canvas size)

    Raises:
        InvalidDimension: If the source or rect is empty
    """
    if image.width < 1 or image.height < 1:
        raise InvalidDimension(f"Cannot crop an empty buffer ({image.width}x{image.height})")

    angle = normalize_rotation(rotation)
    source = _ensure_rgba(image)

    if angle == 0.0:
        canvas = source
    elif angle % 90 == 0:
        # Quarter turns are exact transposes; Pillow rotates counter-clockwise
        canvas = source.rotate(-angle, expand=True)
        source.close()
    else:
        box_width, box_height = rotated_bounding_box(source.width, source.height, angle)
        canvas = source.transform(
            (box_width, box_height),
            Image.AFFINE,
            _rotation_matrix(source.size, (box_width, box_height), angle),
            resample=Image.BICUBIC,
            fillcolor=TRANSPARENT,
        )
        source.close()

    if rect is None:
        return canvas

    out_width, out_height = rect.size
    if out_width < 1 or out_height < 1:
        canvas.close()
        raise InvalidDimension(f"Crop rectangle has no area: {out_width}x{out_height}")

    cropped = canvas.crop(rect.to_box())
    canvas.close()
    logger.debug(f"Cropped {image.width}x{image.height} at {angle:.2f} deg to {cropped.width}x{cropped.height}")
    return cropped


def resize_image(image: Image.Image, width: int, height: int) -> Image.Image:
    """
    Scale a pixel buffer to exactly width x height.

    No aspect correction is applied. Area interpolation is used when
    shrinking and bicubic when enlarging, both deterministic.

    Args:
        image: Source pixel buffer, left untouched
        width: Target width, at least 1
        height: Target height, at least 1

    Returns:
        New RGBA image of the requested size

    Raises:
        InvalidDimension: If a target or the source has less than one pixel
    """
    if width < 1 or height < 1:
        raise InvalidDimension(f"Target size must be at least 1x1, got {width}x{height}")
    if image.width < 1 or image.height < 1:
        raise InvalidDimension(f"Cannot resize an empty buffer ({image.width}x{image.height})")

    source = _ensure_rgba(image)
    if (source.width, source.height) == (width, height):
        return source

    shrinking = width * height < source.width * source.height
    interpolation = cv2.INTER_AREA if shrinking else cv2.INTER_CUBIC

    array = np.asarray(source)
    source.close()
    size = (int(width), int(height))

    if array[..., 3].min() == 255:
        resized = cv2.resize(array, size, interpolation=interpolation)
        return Image.fromarray(np.ascontiguousarray(resized))

    # Premultiply so transparent pixels do not bleed their colour into edges
    pixels = array.astype(np.float32)
    alpha = pixels[..., 3:4] / 255.0
    pixels[..., :3] *= alpha
    resized = cv2.resize(pixels, size, interpolation=interpolation)

    out_alpha = np.clip(resized[..., 3:4], 0.0, 255.0)
    safe_alpha = np.where(out_alpha > 0, out_alpha / 255.0, 1.0)
    rgb = np.where(out_alpha > 0, resized[..., :3] / safe_alpha, 0.0)
    result = np.concatenate([np.clip(rgb, 0.0, 255.0), out_alpha], axis=2)
    return Image.fromarray(np.ascontiguousarray(np.rint(result).astype(np.uint8)))
