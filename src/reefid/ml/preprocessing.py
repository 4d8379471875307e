"""Image preprocessing pipeline.

Decodes uploaded image bytes, applies EXIF orientation, converts to RGB,
resizes to the model's square input and packs the pixels into the flat
float32 buffer the classifier expects:

    row-major pixels x (R, G, B), each sample / 255.0, native byte order.
"""

from __future__ import annotations

import io
import logging

import numpy as np
from numpy.typing import NDArray
from PIL import Image, ImageOps, UnidentifiedImageError

logger = logging.getLogger(__name__)

INPUT_SIZE: int = 150
CHANNELS: int = 3
FLOAT_BYTES: int = np.dtype(np.float32).itemsize


def input_buffer_size(size: int = INPUT_SIZE) -> int:
    """Return the packed buffer length in bytes for a ``size`` x ``size`` RGB image."""
    return size * size * CHANNELS * FLOAT_BYTES


def decode_image(data: bytes, *, max_pixels: int) -> Image.Image:
    """Decode raw image bytes into an upright RGB PIL image.

    Raises:
        ValueError: If the bytes are not a readable image or the image has
            more than ``max_pixels`` pixels.
    """
    try:
        image = Image.open(io.BytesIO(data))
    except (UnidentifiedImageError, OSError) as exc:
        raise ValueError(f"Cannot decode image: {exc}") from exc

    width, height = image.size
    if width * height > max_pixels:
        raise ValueError(f"Image too large: {width}x{height} exceeds {max_pixels} pixels")

    logger.debug("Decoded %s image %dx%d (mode=%s)", image.format, width, height, image.mode)
    try:
        image = ImageOps.exif_transpose(image)
        return image.convert("RGB")
    except OSError as exc:
        raise ValueError(f"Cannot decode image: {exc}") from exc


def resize_image(image: Image.Image, size: int = INPUT_SIZE) -> Image.Image:
    """Resize to exactly ``size`` x ``size`` with bilinear filtering."""
    if image.mode != "RGB":
        image = image.convert("RGB")
    if image.size == (size, size):
        return image
    return image.resize((size, size), Image.Resampling.BILINEAR)


def pack_pixels(image: Image.Image) -> bytes:
    """Pack an RGB image into normalized float32 (R, G, B) triplets.

    The output is allocated up front for ``width * height * 3`` floats. A
    pixel array of any other length means the image is not what it claims to
    be, which is a bug rather than bad input.
    """
    width, height = image.size
    values = np.empty(width * height * CHANNELS, dtype=np.float32)

    pixels = np.asarray(image.convert("RGB"), dtype=np.uint8).reshape(-1)
    if pixels.size != values.size:
        raise RuntimeError(f"Pixel data has {pixels.size} samples, expected {values.size} for {width}x{height} RGB")

    np.divide(pixels.astype(np.float32), np.float32(255.0), out=values)
    return values.tobytes(order="C")


def prepare_input(image: Image.Image, size: int = INPUT_SIZE) -> bytes:
    """Resize an image of any resolution and pack it into the model input buffer."""
    buffer = pack_pixels(resize_image(image, size))
    expected = input_buffer_size(size)
    if len(buffer) != expected:
        raise RuntimeError(f"Packed input is {len(buffer)} bytes, expected {expected}")
    return buffer


def unpack_buffer(buffer: bytes) -> NDArray[np.float32]:
    """View a packed input buffer as an (N, 3) array of RGB triplets."""
    return np.frombuffer(buffer, dtype=np.float32).reshape(-1, CHANNELS)


def to_model_input(buffer: bytes, size: int = INPUT_SIZE) -> NDArray[np.float32]:
    """Shape a packed buffer as the (1, size, size, 3) NHWC batch the model takes."""
    return np.frombuffer(buffer, dtype=np.float32).reshape(1, size, size, CHANNELS)
