"""
dither.py — Floyd–Steinberg error diffusion over a fixed quantization ladder.

Each of R, G and B is snapped to a multiple of ``step = MAX_LEVEL / (shades - 1)``
and the rounding error is pushed onto neighbours that the row-major scan has
not visited yet. MAX_LEVEL is deliberately larger than the 8-bit range, which
keeps the posterization coarse.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Tuple

import numpy as np

from palettes import REGISTRY, BaseStage
from pixels import ConfigurationError, PixelBuffer, check_int, check_non_negative, narrow_u8

__all__ = ["MAX_LEVEL", "FLOYD_STEINBERG", "quantization_step", "dither", "DitherStage"]

log = logging.getLogger("blurgen")

MAX_LEVEL = 4000.0

# (dx, dy, weight); weights sum to 1.
FLOYD_STEINBERG: Tuple[Tuple[int, int, float], ...] = (
    (1, 0, 7 / 16),
    (-1, 1, 3 / 16),
    (0, 1, 5 / 16),
    (1, 1, 1 / 16),
)


def quantization_step(shades: int, max_level: float = MAX_LEVEL) -> float:
    shades = check_int(shades, "shades", 2)
    max_level = check_non_negative(max_level, "max_level")
    if max_level == 0:
        raise ConfigurationError("max_level must be > 0")
    return max_level / (shades - 1)


def dither(buffer: PixelBuffer, shades: int, *, max_level: float = MAX_LEVEL) -> PixelBuffer:
    step = quantization_step(shades, max_level)
    h, w = buffer.height, buffer.width
    work = buffer.data[..., :3].astype(np.float64)

    # Strict row-major order: every pixel sees the error of all pixels before it.
    for y in range(h):
        for x in range(w):
            old = work[y, x].copy()
            # round half up
            quantized = np.floor(old / step + 0.5) * step
            work[y, x] = quantized
            err = old - quantized
            for dx, dy, weight in FLOYD_STEINBERG:
                nx, ny = x + dx, y + dy
                if 0 <= nx < w and ny < h:
                    work[ny, nx] += err * weight

    out = buffer.data.copy()
    out[..., :3] = narrow_u8(work)
    return PixelBuffer(w, h, out)


@dataclass
class DitherStage(BaseStage):
    def generate(self, buffer: PixelBuffer, **kwargs) -> PixelBuffer:
        shades = check_int(kwargs.get("shades", 4), "shades", 2)
        max_level = kwargs.get("max_level", MAX_LEVEL)
        log.info("Dither shades=%d step=%.2f", shades, quantization_step(shades, max_level))
        return dither(buffer, shades, max_level=max_level)


REGISTRY.register("dither", DitherStage)
