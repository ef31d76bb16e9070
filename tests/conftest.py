"""
Pytest fixtures for blurgen tests
"""

import numpy as np
import pytest

import pipeline  # noqa: F401  (registers every stage)
from pixels import PixelBuffer


@pytest.fixture
def rng() -> np.random.Generator:
    return np.random.default_rng(1234)


@pytest.fixture
def random_buffer(rng) -> PixelBuffer:
    """A 9x7 buffer of random samples, alpha included."""
    return PixelBuffer.from_array(rng.integers(0, 256, size=(7, 9, 4), dtype=np.uint8))


@pytest.fixture
def grey_buffer() -> PixelBuffer:
    """A 64x64 opaque mid-grey (#808080) buffer."""
    return PixelBuffer.solid(64, 64, (128, 128, 128, 255))
