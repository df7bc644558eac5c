"""Image preprocessing pipeline.

Decodes uploaded bytes with Pillow (EXIF orientation, RGB conversion, size
validation) and turns the resulting array into the normalized NCHW tensor the
ImageNet classifiers expect.
"""

from __future__ import annotations

import io
from typing import TYPE_CHECKING

import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from classifyx.errors import ImageDecodeError

if TYPE_CHECKING:
    from numpy.typing import NDArray

# Standard ImageNet evaluation transform: resize shorter side to 256, crop 224.
RESIZE_RATIO: float = 256 / 224


def decode_image(image_bytes: bytes, max_pixels: int) -> NDArray[np.uint8]:
    """Decode raw image bytes into an RGB uint8 numpy array.

    Args:
        image_bytes: Raw file bytes (any format Pillow can open).
        max_pixels: Upper bound on width * height.

    Returns:
        HxWx3 RGB uint8 numpy array.

    Raises:
        ImageDecodeError: If the image cannot be decoded or exceeds size limits.
    """
    if not image_bytes:
        raise ImageDecodeError("Empty image payload")

    try:
        with Image.open(io.BytesIO(image_bytes)) as img:
            width, height = img.size
            if width * height > max_pixels:
                raise ImageDecodeError(f"Image has {width * height} pixels, limit is {max_pixels}")
            img.load()
            rgb = ImageOps.exif_transpose(img).convert("RGB")
    except (UnidentifiedImageError, OSError, Image.DecompressionBombError) as exc:
        raise ImageDecodeError(f"Cannot decode image: {exc}") from exc

    return np.asarray(rgb, dtype=np.uint8)


def prepare_input(
    image: NDArray[np.uint8],
    input_size: int,
    mean: tuple[float, float, float],
    std: tuple[float, float, float],
) -> NDArray[np.float32]:
    """Resize, center crop, and normalize an image for a classifier.

    Args:
        image: HxWx3 RGB uint8 array.
        input_size: Square model input edge (e.g. 224).
        mean: Per-channel mean on the [0, 1] scale.
        std: Per-channel standard deviation on the [0, 1] scale.

    Returns:
        Float32 tensor of shape (1, 3, input_size, input_size).
    """
    if image.ndim != 3 or image.shape[2] != 3:
        raise ValueError(f"Expected HxWx3 image, got shape {image.shape}")

    pil = Image.fromarray(image)
    width, height = pil.size
    short_side = round(input_size * RESIZE_RATIO)
    scale = short_side / min(width, height)
    resized = pil.resize(
        (max(input_size, round(width * scale)), max(input_size, round(height * scale))),
        Image.Resampling.BILINEAR,
    )

    left = (resized.width - input_size) // 2
    top = (resized.height - input_size) // 2
    cropped = resized.crop((left, top, left + input_size, top + input_size))

    arr = np.asarray(cropped, dtype=np.float32) / 255.0
    arr = (arr - np.asarray(mean, dtype=np.float32)) / np.asarray(std, dtype=np.float32)
    return arr.transpose(2, 0, 1)[np.newaxis, ...].astype(np.float32)


def softmax(logits: NDArray[np.float32]) -> NDArray[np.float32]:
    """Numerically stable softmax over the last axis."""
    shifted = logits - np.max(logits, axis=-1, keepdims=True)
    exp = np.exp(shifted)
    return (exp / np.sum(exp, axis=-1, keepdims=True)).astype(np.float32)
