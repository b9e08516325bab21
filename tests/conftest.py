"""
Pytest configuration and shared fixtures for photopress tests.

Images are generated in memory so no test depends on files on disk.
"""

import io

import numpy as np
import pytest
from PIL import Image

from photo_press.config import AppSettings
from photo_press.repository import SourceFile
from photo_press.services import ImageService
from photo_press.state import SessionState


def make_image(width, height, seed=0, mode="RGBA"):
    """Create a deterministic noisy image of the given size."""
    rng = np.random.default_rng(seed)
    channels = 4 if mode == "RGBA" else 3
    pixels = rng.integers(0, 256, size=(height, width, channels), dtype=np.uint8)
    if mode == "RGBA":
        pixels[..., 3] = 255
    return Image.fromarray(pixels)


def encode_png(image):
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.fixture
def noisy_image():
    """A 64x48 opaque RGBA image with random pixels."""
    return make_image(64, 48)


@pytest.fixture
def make_source():
    """
    Factory for SourceFile objects holding a PNG of the requested size.

    Returns:
        Callable (name, width, height, mime_type) -> SourceFile
    """
    def _make(name="photo.png", width=40, height=30, mime_type="image/png", seed=0):
        image = Image.new("RGBA", (width, height), (200, 30, 30, 255)) if seed is None \
            else make_image(width, height, seed=seed)
        return SourceFile(name=name, mime_type=mime_type, data=encode_png(image))
    return _make


@pytest.fixture
def settings():
    return AppSettings()


@pytest.fixture
def session(settings):
    state = SessionState(settings)
    yield state
    state.clear()


@pytest.fixture
def service(settings):
    svc = ImageService(settings)
    yield svc
    svc.state.clear()


@pytest.fixture
def image_factory():
    """Factory for deterministic noisy images: (width, height, seed=0, mode='RGBA')."""
    return make_image
