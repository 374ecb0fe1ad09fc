"""
Image post-processing for playlist covers.

Compresses generated images to a JPEG under the upload ceiling and computes
a 64-bit DCT perceptual hash so an uploaded cover can later be matched
against what Spotify serves.
"""

import base64
import io
import logging
from typing import Tuple

import numpy as np
from PIL import Image, UnidentifiedImageError

from .exceptions import CompressionError

logger = logging.getLogger(__name__)

IMAGE_DIMENSIONS = 640
JPEG_QUALITY = 40
MIN_JPEG_QUALITY = 5
QUALITY_STEP = 5
IMAGE_MAX_BYTES = 192 * 1024

HASH_SIZE = 32
HASH_BLOCK = 8
PHASH_MATCH_THRESHOLD = 10


def _open(image_bytes: bytes) -> Image.Image:
    try:
        image = Image.open(io.BytesIO(image_bytes))
        image.load()
    except (UnidentifiedImageError, OSError) as e:
        raise CompressionError(f"Cannot decode image: {e}") from e
    return image


def compress_jpeg(
    image_bytes: bytes,
    max_bytes: int = IMAGE_MAX_BYTES,
    dimensions: int = IMAGE_DIMENSIONS,
    start_quality: int = JPEG_QUALITY,
) -> Tuple[bytes, int]:
    """Resize to a square and JPEG-encode under ``max_bytes``.

    Quality starts at ``start_quality`` and drops by 5 while the output is
    too large, with a last attempt at quality 5.

    Args:
        image_bytes: Source image in any format Pillow decodes
        max_bytes: Byte ceiling for the JPEG
        dimensions: Output width and height in pixels
        start_quality: First JPEG quality tried

    Returns:
        (jpeg_bytes, quality_used)

    Raises:
        CompressionError: If the image cannot be decoded or never fits
    """
    image = _open(image_bytes).convert("RGB")
    resized = image.resize((dimensions, dimensions), Image.Resampling.LANCZOS)

    quality = start_quality
    while True:
        buffer = io.BytesIO()
        resized.save(buffer, format="JPEG", quality=quality)
        data = buffer.getvalue()
        if len(data) <= max_bytes:
            logger.debug(f"Compressed cover to {len(data)} bytes at quality {quality}")
            return data, quality
        if quality <= MIN_JPEG_QUALITY:
            raise CompressionError(
                f"Image is {len(data)} bytes at minimum quality, limit is {max_bytes}"
            )
        quality = max(quality - QUALITY_STEP, MIN_JPEG_QUALITY)


def compress_for_upload(image_bytes: bytes, max_bytes: int = IMAGE_MAX_BYTES,
                        dimensions: int = IMAGE_DIMENSIONS, start_quality: int = JPEG_QUALITY) -> str:
    """Compress and return the JPEG as base64 text, ready for the cover upload."""
    data, _ = compress_jpeg(image_bytes, max_bytes=max_bytes, dimensions=dimensions,
                            start_quality=start_quality)
    return base64.b64encode(data).decode("ascii")


def _dct_matrix(n: int) -> np.ndarray:
    """Orthonormal DCT-II basis: row u, column x."""
    x = np.arange(n)
    u = x.reshape(-1, 1)
    matrix = np.cos((2 * x + 1) * u * np.pi / (2 * n))
    scale = np.full((n, 1), np.sqrt(2.0 / n))
    scale[0, 0] = np.sqrt(1.0 / n)
    return matrix * scale


_DCT = _dct_matrix(HASH_SIZE)


def compute_perceptual_hash(image_bytes: bytes) -> str:
    """64-bit DCT perceptual hash as 16 lowercase hex characters.

    The 8x8 low-frequency block of a 32x32 grayscale DCT is compared against
    the median of its 63 AC coefficients; bit 63 (the DC term) is always 0.
    """
    image = _open(image_bytes).convert("RGB")
    small = image.resize((HASH_SIZE, HASH_SIZE), Image.Resampling.LANCZOS).convert("L")
    pixels = np.asarray(small, dtype=np.float64)

    coefficients = _DCT @ pixels @ _DCT.T
    block = coefficients[:HASH_BLOCK, :HASH_BLOCK].flatten()
    ac = sorted(block[1:])
    median = ac[len(ac) // 2]

    value = 0
    for i, coefficient in enumerate(block):
        if i > 0 and coefficient > median:
            value |= 1 << (63 - i)
    return f"{value:016x}"


def hamming_distance(hash_a: str, hash_b: str) -> int:
    """Number of differing bits between two hex hashes."""
    return bin(int(hash_a, 16) ^ int(hash_b, 16)).count("1")


def is_same_image(hash_a: str, hash_b: str, threshold: int = PHASH_MATCH_THRESHOLD) -> bool:
    return hamming_distance(hash_a, hash_b) <= threshold
