"""
pixels.py — the RGBA pixel buffer every stage consumes and produces.

A PixelBuffer is a thin wrapper around a C-ordered uint8 array of shape
(height, width, 4). Stages never write into a buffer they were handed;
they build a new array and wrap it.
"""
from __future__ import annotations

import math
import numbers
from dataclasses import dataclass
from typing import Any, Tuple

import numpy as np
from PIL import Image

__all__ = ["ConfigurationError", "PixelBuffer", "check_int", "check_non_negative", "narrow_u8"]

CHANNELS = 4
OPAQUE = 255


class ConfigurationError(ValueError):
    """Raised before any processing when a stage or pipeline is misconfigured."""


def narrow_u8(arr: np.ndarray) -> np.ndarray:
    """Clamp to [0,255] and store as uint8, rounding half to even."""
    return np.rint(np.clip(arr, 0, 255)).astype(np.uint8)


def check_non_negative(value: Any, name: str) -> float:
    """Finite real number >= 0, returned as float."""
    if isinstance(value, bool) or not isinstance(value, numbers.Real) or not math.isfinite(value) or value < 0:
        raise ConfigurationError(f"{name} must be a finite number >= 0, got {value!r}")
    return float(value)


def check_int(value: Any, name: str, minimum: int = 0) -> int:
    """Integral value >= ``minimum``; 3.0 is accepted, 2.7 and -0.5 are not."""
    if (isinstance(value, bool) or not isinstance(value, numbers.Real)
            or not math.isfinite(value) or int(value) != value):
        raise ConfigurationError(f"{name} must be an integer, got {value!r}")
    if value < minimum:
        raise ConfigurationError(f"{name} must be >= {minimum}, got {value!r}")
    return int(value)


@dataclass(frozen=True, eq=False)
class PixelBuffer:
    width: int
    height: int
    data: np.ndarray

    def __post_init__(self) -> None:
        if self.width <= 0 or self.height <= 0:
            raise ConfigurationError(f"Buffer dimensions must be positive, got {self.width}x{self.height}")
        if self.data.dtype != np.uint8:
            raise ConfigurationError(f"Buffer samples must be uint8, got {self.data.dtype}")
        if self.data.shape != (self.height, self.width, CHANNELS):
            raise ConfigurationError(
                f"Buffer shape {self.data.shape} does not match {self.width}x{self.height}x{CHANNELS}"
            )
        if not self.data.flags.c_contiguous:
            object.__setattr__(self, "data", np.ascontiguousarray(self.data))

    # ---- constructors ----
    @classmethod
    def from_array(cls, arr: np.ndarray) -> "PixelBuffer":
        arr = np.asarray(arr)
        if arr.ndim != 3 or arr.shape[2] != CHANNELS:
            raise ConfigurationError(f"Expected an (H, W, 4) array, got shape {arr.shape}")
        data = arr.copy() if arr.dtype == np.uint8 else narrow_u8(arr)
        return cls(width=int(arr.shape[1]), height=int(arr.shape[0]), data=data)

    @classmethod
    def solid(cls, width: int, height: int, rgba: Tuple[int, int, int, int]) -> "PixelBuffer":
        if width <= 0 or height <= 0:
            raise ConfigurationError(f"Buffer dimensions must be positive, got {width}x{height}")
        arr = np.empty((height, width, CHANNELS), np.uint8)
        arr[...] = np.asarray(rgba, np.uint8)
        return cls(width=width, height=height, data=arr)

    @classmethod
    def from_image(cls, img: Image.Image) -> "PixelBuffer":
        arr = np.asarray(img.convert("RGBA"), dtype=np.uint8)
        return cls(width=img.width, height=img.height, data=arr.copy())

    # ---- views / conversions ----
    @property
    def size(self) -> Tuple[int, int]:
        return self.width, self.height

    def flat(self) -> np.ndarray:
        """Row-major R,G,B,A sample sequence (length width*height*4)."""
        return self.data.reshape(-1)

    def to_image(self) -> Image.Image:
        return Image.fromarray(self.data, "RGBA")

    def is_opaque(self) -> bool:
        return bool((self.data[..., 3] == OPAQUE).all())

    def crop(self, left: int, top: int, width: int, height: int) -> "PixelBuffer":
        if width <= 0 or height <= 0:
            raise ConfigurationError(f"Crop size must be positive, got {width}x{height}")
        if left < 0 or top < 0 or left + width > self.width or top + height > self.height:
            raise ConfigurationError(
                f"Crop {width}x{height}+{left}+{top} falls outside {self.width}x{self.height} buffer"
            )
        return PixelBuffer(width, height, self.data[top:top + height, left:left + width].copy())

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, PixelBuffer):
            return NotImplemented
        return self.size == other.size and np.array_equal(self.data, other.data)
