#!/usr/bin/env python3
"""
DCT Perceptual Hash
===================
Computes a 64-bit perceptual hash (pHash) from decoded image pixels.

Algorithm:
---------
1. Convert to grayscale and resize to a 32x32 grid (Lanczos)
2. Apply a 2-D DCT as ``D @ pixels @ D.T`` with a fixed orthonormal basis
3. Keep the 8x8 block of coefficients at rows 1-8, columns 1-8
   (the DC term and the first row/column are skipped)
4. Threshold each coefficient against the median of the block

The 64 coefficients are flattened column by column; bit ``i`` of the hash
corresponds to coefficient ``i`` in that order.

License: MIT
"""

import logging
from io import BytesIO
from pathlib import Path
from typing import Optional, Union

import imagehash
import numpy as np
from PIL import Image, UnidentifiedImageError

logger = logging.getLogger(__name__)

DCT_SIZE = 32
HASH_BLOCK = 8
HASH_BITS = HASH_BLOCK * HASH_BLOCK


class PhashError(Exception):
    """Recoverable failure to hash a single image path."""

    def __init__(self, path, message: str):
        super().__init__(message)
        self.path = str(path)


class ImageReadError(PhashError):
    """The image file could not be read."""


class ImageFormatError(PhashError):
    """The image format could not be detected."""


class ImageDecodeError(PhashError):
    """The image data could not be decoded."""


def dct_matrix(size: int = DCT_SIZE) -> np.ndarray:
    """
    Build the orthonormal DCT-II basis matrix (as used by pHash).

    Row 0 is ``1/sqrt(N)``; row ``y > 0`` at column ``x`` is
    ``sqrt(2/N) * cos(pi / (2N) * y * (2x + 1))``.

    The returned array is read-only so it can be shared between workers.
    """
    rows = np.arange(size, dtype=np.float64).reshape(-1, 1)
    cols = np.arange(size, dtype=np.float64).reshape(1, -1)

    basis = np.sqrt(2.0 / size) * np.cos(np.pi / (2.0 * size) * rows * (2 * cols + 1))
    basis[0, :] = 1.0 / np.sqrt(size)

    basis = basis.astype(np.float32)
    basis.setflags(write=False)
    return basis


# Built once at import; never mutated afterwards
DCT_BASIS = dct_matrix(DCT_SIZE)


def compute_phash(img: Image.Image, dct: Optional[np.ndarray] = None) -> int:
    """
    Compute the 64-bit perceptual hash of a decoded image.

    Args:
        img: Decoded PIL image, any mode
        dct: DCT basis matrix (defaults to the shared 32x32 basis)

    Returns:
        Unsigned 64-bit integer hash
    """
    if dct is None:
        dct = DCT_BASIS
    size = dct.shape[0]

    gray = img.convert('L').resize((size, size), Image.Resampling.LANCZOS)
    pixels = np.asarray(gray, dtype=np.float32)

    coeffs = dct @ pixels @ dct.T

    block = coeffs[1:HASH_BLOCK + 1, 1:HASH_BLOCK + 1]
    values = block.flatten(order='F')

    ordered = np.sort(values)
    median = (ordered[HASH_BITS // 2 - 1] + ordered[HASH_BITS // 2]) / 2

    phash = 0
    for i, bit in enumerate(values >= median):
        if bit:
            phash |= 1 << i
    return phash


def decode_image(data: bytes, path: Union[str, Path] = '<bytes>') -> Image.Image:
    """
    Decode raw image bytes, guessing the format from the content.

    Raises:
        ImageFormatError: no decoder recognises the data
        ImageDecodeError: the format was recognised but decoding failed
    """
    try:
        img = Image.open(BytesIO(data))
    except UnidentifiedImageError as e:
        raise ImageFormatError(path, f"Error guessing image format: {e}") from e
    except Exception as e:
        raise ImageDecodeError(path, f"Error decoding image: {e}") from e

    try:
        img.load()
    except Exception as e:
        raise ImageDecodeError(path, f"Error decoding image: {e}") from e

    return img


def image_path_to_phash(path: Union[str, Path], dct: Optional[np.ndarray] = None) -> int:
    """Read, decode and hash the image at ``path``."""
    try:
        data = Path(path).read_bytes()
    except OSError as e:
        raise ImageReadError(path, f"Error reading image: {e}") from e

    with decode_image(data, path) as img:
        try:
            return compute_phash(img, dct)
        except (ValueError, OSError) as e:
            # Decodable modes Pillow cannot convert to grayscale (LAB, La, ...)
            raise ImageDecodeError(path, f"Error converting image: {e}") from e


def to_image_hash(phash: int) -> imagehash.ImageHash:
    """
    Convert a 64-bit hash into an ``imagehash.ImageHash``.

    The 8x8 bit array is laid out like the coefficient block, so element
    ``[r, c]`` holds the bit of DCT coefficient ``(r + 1, c + 1)``.
    """
    if not 0 <= phash < 1 << HASH_BITS:
        raise ValueError(f"Hash out of range for {HASH_BITS} bits: {phash}")

    bits = np.array([(phash >> i) & 1 for i in range(HASH_BITS)], dtype=bool)
    return imagehash.ImageHash(bits.reshape((HASH_BLOCK, HASH_BLOCK), order='F'))


def hamming_distance(hash1: int, hash2: int) -> int:
    """Number of bit positions where two hashes differ."""
    return to_image_hash(hash1) - to_image_hash(hash2)
