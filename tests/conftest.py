"""
Pytest configuration for the playlist cover art test suite.

This module configures the Python path so test files can import from the
src directory, and provides fixtures shared by the unit and integration
tests.
"""
import io
import sys
from pathlib import Path

import numpy as np
import pytest
from PIL import Image

# Add project root to Python path so tests can import from src
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from src.cover_art.models import PlaylistRef, Style  # noqa: E402
from src.cover_art.store import Database  # noqa: E402

TEST_ENCRYPTION_KEY = "00112233445566778899aabbccddeeff00112233445566778899aabbccddeeff"


def make_png(seed: int = 0, size: int = 256, pattern: str = "noise") -> bytes:
    """Render a deterministic test image as PNG bytes.

    ``noise`` is incompressible random color; ``gradient`` is a smooth
    diagonal ramp; ``blobs`` is a smoothed random 8x8 field; ``stripes``
    is vertical bands.
    """
    rng = np.random.default_rng(seed)
    if pattern == "noise":
        pixels = rng.integers(0, 256, size=(size, size, 3), dtype=np.uint8)
    elif pattern == "gradient":
        ramp = np.add.outer(np.arange(size), np.arange(size)) * (255.0 / (2 * size - 2))
        pixels = np.stack([ramp, ramp[::-1], np.full((size, size), 128.0)], axis=-1).astype(np.uint8)
    elif pattern == "blobs":
        coarse = rng.integers(0, 256, size=(8, 8, 3), dtype=np.uint8)
        return _png(Image.fromarray(coarse, "RGB").resize((size, size), Image.Resampling.BICUBIC))
    elif pattern == "stripes":
        bands = ((np.arange(size) // (size // 8)) % 2 * 255).astype(np.uint8)
        pixels = np.repeat(np.tile(bands, (size, 1))[:, :, None], 3, axis=2)
    else:
        raise ValueError(pattern)
    return _png(Image.fromarray(pixels, "RGB"))


def _png(image: Image.Image) -> bytes:
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.fixture
def encryption_key() -> str:
    return TEST_ENCRYPTION_KEY


@pytest.fixture
def db():
    """In-memory database with the schema applied."""
    database = Database(":memory:")
    database.init_schema()
    yield database
    database.close()


@pytest.fixture
def style() -> Style:
    return Style(
        id="bleached-crosshatch",
        name="Bleached Crosshatch",
        replicate_model="black-forest-labs/flux-dev-lora",
        prompt_template="a {subject}, bleached crosshatch etching",
        lora_url="https://huggingface.co/example/crosshatch",
        lora_scale=0.9,
        guidance_scale=3.5,
        num_inference_steps=28,
    )


@pytest.fixture
def user_id(db, encryption_key) -> str:
    from src.cover_art import crypto

    return db.add_user(
        "spotify-user-1",
        encrypted_refresh_token=crypto.encrypt("refresh-token-1", encryption_key),
        display_name="Test User",
    )


@pytest.fixture
def playlist(db, user_id) -> PlaylistRef:
    playlist_id = db.add_playlist(user_id, "sp-playlist-1", "Late Night Drives")
    return db.get_playlist_ref(playlist_id)


@pytest.fixture
def png_bytes() -> bytes:
    return make_png(seed=1, pattern="gradient")


@pytest.fixture
def image_factory():
    """The ``make_png`` helper, for tests that need several images."""
    return make_png
