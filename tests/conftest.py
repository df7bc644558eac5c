"""Shared fixtures."""

from __future__ import annotations

import io
from typing import TYPE_CHECKING

import numpy as np
import pytest
from PIL import Image

if TYPE_CHECKING:
    from numpy.typing import NDArray


@pytest.fixture()
def image() -> NDArray[np.uint8]:
    return np.full((32, 48, 3), 127, dtype=np.uint8)


@pytest.fixture()
def png_bytes() -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (64, 40), color=(200, 30, 30)).save(buffer, format="PNG")
    return buffer.getvalue()
