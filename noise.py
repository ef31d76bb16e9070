"""
noise.py — film-grain style overlay.

The grain field is uniform noise in [0,255], a faint two-frequency sine/cosine
pattern, and a second full-range random term multiplied by ``scale``. At
scale ~1 the random terms swamp the pattern and the result reads as plain
grain. It is composited with an additive blend centred on mid-grey.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np

from palettes import REGISTRY, BaseStage
from pixels import ConfigurationError, PixelBuffer, check_non_negative, narrow_u8

__all__ = ["noise_field", "apply_noise", "NoiseStage"]

log = logging.getLogger("blurgen")

STRUCTURE_AMPLITUDE = 16.0
STRUCTURE_FREQUENCIES = (0.05, 0.13)
BLEND_CENTER = 128.0


def noise_field(width: int, height: int, scale: float, rng: np.random.Generator) -> np.ndarray:
    """HxW float grain field; values are not clamped."""
    if width <= 0 or height <= 0:
        raise ConfigurationError(f"Noise dimensions must be positive, got {width}x{height}")
    scale = check_non_negative(scale, "scale")

    ys, xs = np.mgrid[0:height, 0:width].astype(np.float64)
    structure = np.zeros((height, width), np.float64)
    for f in STRUCTURE_FREQUENCIES:
        structure += np.sin(xs * f) * np.cos(ys * f)

    base = rng.random((height, width)) * 255.0
    grain = (rng.random((height, width)) * 2.0 - 1.0) * 255.0 * scale
    return base + STRUCTURE_AMPLITUDE * structure + grain


def apply_noise(buffer: PixelBuffer, opacity: float, scale: float, rng: np.random.Generator) -> PixelBuffer:
    opacity = check_non_negative(opacity, "opacity")
    field = noise_field(buffer.width, buffer.height, scale, rng)
    out = buffer.data.copy()
    rgb = out[..., :3].astype(np.float64)
    out[..., :3] = narrow_u8(rgb + (field[..., None] - BLEND_CENTER) * opacity)
    return PixelBuffer(buffer.width, buffer.height, out)


@dataclass
class NoiseStage(BaseStage):
    def generate(self, buffer: PixelBuffer, **kwargs) -> PixelBuffer:
        opacity = check_non_negative(kwargs.get("opacity", 0.08), "opacity")
        scale = check_non_negative(kwargs.get("scale", 1.0), "scale")
        log.info("Noise opacity=%.3f scale=%.3f", opacity, scale)
        return apply_noise(buffer, opacity, scale, self.random())


REGISTRY.register("noise", NoiseStage)
