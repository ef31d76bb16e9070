# filters.py — blur engine, blur map, contrast and crop stages (registers itself)
# -----------------------------------------------------------------------------
# Box blur here is the truncated kind: near the borders a window only averages
# the samples that actually exist, so edge pixels see a smaller window. The
# pipeline pads the scene by the blur radius and crops it away afterwards.
#
# Usage (examples):
#   # fixed radius blur followed by a contrast push
#   python main.py apply --url input.png --pipeline "blur|contrast" --out out.png \
#     --extra blur.radius=12 contrast.factor=1.4
#
#   # spatially varying blur driven by the deterministic blur map
#   python main.py apply --url input.png --pipeline "blur" --out out.png \
#     --extra blur.min_radius=2 blur.max_radius=18
# -----------------------------------------------------------------------------

from __future__ import annotations

import logging

from dataclasses import dataclass
from typing import Tuple, Union

import numpy as np

from palettes import REGISTRY, BaseStage
from pixels import ConfigurationError, PixelBuffer, check_int, check_non_negative, narrow_u8

__all__ = [
    "generate_blur_map",
    "check_radius",
    "check_radius_range",
    "box_blur",
    "enhance_contrast",
    "BlurStage",
    "CropStage",
    "ContrastStage",
]

log = logging.getLogger("blurgen")

# Blur map field: sum of sin(k*f*x)*cos(k*f*y) for k in BLUR_MAP_HARMONICS.
BLUR_MAP_FREQUENCY = 0.02
BLUR_MAP_HARMONICS = (1.0, 2.0, 4.0)

CONTRAST_PIVOT = 128.0

RadiusOrMap = Union[int, np.ndarray]


# ============================ blur map ============================

def generate_blur_map(width: int, height: int, min_radius: int, max_radius: int) -> np.ndarray:
    """Per-pixel blur radii in [min_radius, max_radius] from a fixed multi-harmonic field.

    Pure function of its arguments. The mapping floors, so ``max_radius`` is
    only reached where all harmonics peak at once.
    """
    if width <= 0 or height <= 0:
        raise ConfigurationError(f"Blur map dimensions must be positive, got {width}x{height}")
    min_radius, max_radius = check_radius_range(min_radius, max_radius)

    ys, xs = np.mgrid[0:height, 0:width].astype(np.float64)
    nx = xs * BLUR_MAP_FREQUENCY
    ny = ys * BLUR_MAP_FREQUENCY
    raw = np.zeros((height, width), np.float64)
    for k in BLUR_MAP_HARMONICS:
        raw += np.sin(k * nx) * np.cos(k * ny)

    norm = (raw + len(BLUR_MAP_HARMONICS)) / (2.0 * len(BLUR_MAP_HARMONICS))
    radii = np.floor(min_radius + norm * (max_radius - min_radius)).astype(np.int64)
    log.debug("Blur map %dx%d: radii %d..%d", width, height, int(radii.min()), int(radii.max()))
    return radii


def check_radius(radius: int, name: str = "radius") -> int:
    return check_int(radius, name, 0)


def check_radius_range(min_radius: int, max_radius: int) -> Tuple[int, int]:
    lo = check_radius(min_radius, "min_radius")
    hi = check_radius(max_radius, "max_radius")
    if lo > hi:
        raise ConfigurationError(f"min_radius ({lo}) must not exceed max_radius ({hi})")
    return lo, hi


# ============================ box blur ============================

def _window_mean_rows(arr: np.ndarray, radii: np.ndarray) -> np.ndarray:
    """Mean over [x-r, x+r] ∩ [0, W) along axis 1 of an HxWxC uint8 array, r read per pixel.

    Integer prefix sums keep the window sums exact, so this matches the
    straightforward per-pixel loop sample for sample.
    """
    h, w, c = arr.shape
    prefix = np.zeros((h, w + 1, c), np.int64)
    prefix[:, 1:, :] = np.cumsum(arr, axis=1, dtype=np.int64)

    xs = np.arange(w, dtype=np.int64)[None, :]
    lo = np.maximum(xs - radii, 0)
    hi = np.minimum(xs + radii, w - 1)

    sums = (np.take_along_axis(prefix, (hi + 1)[..., None], axis=1)
            - np.take_along_axis(prefix, lo[..., None], axis=1))
    count = (hi - lo + 1)[..., None]
    return narrow_u8(sums / count)


def box_blur(buffer: PixelBuffer, radius: RadiusOrMap) -> PixelBuffer:
    """Two-pass separable box blur, horizontal then vertical.

    ``radius`` is either a single non-negative integer or a blur map of shape
    (height, width). With a map, both passes read the radius stored at the
    output pixel. All four channels, alpha included, are averaged.
    """
    if isinstance(radius, np.ndarray):
        if radius.shape != (buffer.height, buffer.width):
            raise ConfigurationError(
                f"Blur map shape {radius.shape} does not match buffer {buffer.height}x{buffer.width}"
            )
        if radius.size and int(radius.min()) < 0:
            raise ConfigurationError("Blur map radii must be >= 0")
        radii = radius.astype(np.int64, copy=False)
    else:
        radii = np.full((buffer.height, buffer.width), check_radius(radius), np.int64)

    horizontal = _window_mean_rows(buffer.data, radii)
    vertical = _window_mean_rows(horizontal.transpose(1, 0, 2), radii.T).transpose(1, 0, 2)
    return PixelBuffer.from_array(np.ascontiguousarray(vertical))


# ============================ contrast ============================

def enhance_contrast(buffer: PixelBuffer, factor: float) -> PixelBuffer:
    """Linear contrast stretch of R, G and B around mid-grey; alpha is left alone."""
    factor = check_non_negative(factor, "contrast factor")
    out = buffer.data.copy()
    rgb = out[..., :3].astype(np.float64)
    out[..., :3] = narrow_u8(factor * (rgb - CONTRAST_PIVOT) + CONTRAST_PIVOT)
    return PixelBuffer(buffer.width, buffer.height, out)


# ============================ stages ============================

@dataclass
class BlurStage(BaseStage):
    """
    Box blur stage.

    Parameters (extras)
    -------------------
    radius: int         = 4     # fixed radius, used when no range is given
    min_radius: int     = None  # together with max_radius selects the variable blur
    max_radius: int     = None
    """
    def generate(self, buffer: PixelBuffer, **kwargs) -> PixelBuffer:
        min_r = kwargs.get("min_radius")
        max_r = kwargs.get("max_radius")
        if min_r is not None or max_r is not None:
            if min_r is None or max_r is None:
                raise ConfigurationError("Variable blur needs both min_radius and max_radius")
            min_r, max_r = check_radius_range(min_r, max_r)
            log.info("Variable blur %d..%d on %dx%d", min_r, max_r, buffer.width, buffer.height)
            return box_blur(buffer, generate_blur_map(buffer.width, buffer.height, min_r, max_r))

        radius = check_radius(kwargs.get("radius", 4))
        log.info("Box blur r=%d on %dx%d", radius, buffer.width, buffer.height)
        return box_blur(buffer, radius)


@dataclass
class CropStage(BaseStage):
    """Keeps the central region: either ``pad`` pixels off every side, or a ``width`` x ``height`` window."""
    def generate(self, buffer: PixelBuffer, **kwargs) -> PixelBuffer:
        if "pad" in kwargs:
            pad = check_int(kwargs["pad"], "pad")
            return buffer.crop(pad, pad, buffer.width - 2 * pad, buffer.height - 2 * pad)
        width = check_int(kwargs.get("width", buffer.width), "width", 1)
        height = check_int(kwargs.get("height", buffer.height), "height", 1)
        left = check_int(kwargs.get("left", (buffer.width - width) // 2), "left")
        top = check_int(kwargs.get("top", (buffer.height - height) // 2), "top")
        return buffer.crop(left, top, width, height)


@dataclass
class ContrastStage(BaseStage):
    def generate(self, buffer: PixelBuffer, **kwargs) -> PixelBuffer:
        factor = check_non_negative(kwargs.get("factor", 1.25), "factor")
        log.info("Contrast factor=%.3f", factor)
        return enhance_contrast(buffer, factor)


REGISTRY.register("blur", BlurStage)
REGISTRY.register("crop", CropStage)
REGISTRY.register("contrast", ContrastStage)
