from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

import numpy as np
from PIL import Image, ImageDraw

from pixels import ConfigurationError, PixelBuffer, check_int, check_non_negative, narrow_u8

log = logging.getLogger("blurgen")


# =============== Registry ===============
class StageRegistry:
    def __init__(self) -> None:
        self._by_name: Dict[str, type[BaseStage]] = {}

    def register(self, name: str, cls: type["BaseStage"]) -> None:
        key = name.strip().lower()
        self._by_name[key] = cls

    def names(self) -> list[str]:
        return sorted(self._by_name.keys())

    def create(self, name: str, **kwargs) -> "BaseStage":
        key = name.strip().lower()
        if key not in self._by_name:
            raise KeyError(f"Unknown stage '{name}'. Available: {', '.join(self.names()) or '(none)'}")
        return self._by_name[key](**kwargs)


REGISTRY = StageRegistry()


# =============== Base & common utils ===============
@dataclass
class BaseStage:
    seed: Optional[int] = None
    rng: Optional[np.random.Generator] = None

    def generate(self, buffer: PixelBuffer, **kwargs) -> PixelBuffer:  # pragma: no cover
        raise NotImplementedError

    def random(self) -> np.random.Generator:
        if self.rng is None:
            self.rng = _rng(self.seed)
        return self.rng


def _rng(seed: Optional[int]) -> np.random.Generator:
    return np.random.default_rng(seed if seed is not None else np.random.SeedSequence().entropy)


def _parse_hex_color(code: str) -> Tuple[float, float, float]:
    s = code.strip().lstrip("#")
    if len(s) == 3:
        s = "".join([c * 2 for c in s])
    if len(s) != 6:
        raise ConfigurationError(f"Invalid hex color '{code}'")
    r = int(s[0:2], 16); g = int(s[2:4], 16); b = int(s[4:6], 16)
    return float(r), float(g), float(b)


def parse_palette(value: str) -> Tuple[str, ...]:
    """Comma separated hex colors, e.g. ``"#000,#fff"``."""
    return tuple(c.strip() for c in value.split(",") if c.strip())


# =============== Scene rasterizer ===============
# Cool grey ramp, light to dark.
DEFAULT_PALETTE: Tuple[str, ...] = (
    "#DEE4E7",
    "#C6D0D5",
    "#A3B2B8",
    "#7F949C",
    "#495B60",
    "#364447",
    "#1D2325",
    "#141515",
)


@dataclass(frozen=True)
class SceneConfig:
    """Gradient + ellipses scene drawn from a limited palette.

    Ellipse centers are sampled from a donut around the canvas center, between
    ``donut_inner`` and ``donut_outer`` pixels away. ``deviation`` is the
    fraction by which the vertical radius may differ from the horizontal one
    (0 = circles).
    """
    palette: Tuple[str, ...] = field(default=DEFAULT_PALETTE)
    ellipse_count: int = 2
    min_ellipse_size: float = 90.0
    max_ellipse_size: float = 120.0
    donut_inner: float = 30.0
    donut_outer: float = 70.0
    deviation: float = 0.2

    def validate(self) -> None:
        if not self.palette:
            raise ConfigurationError("Scene palette must contain at least one color")
        for code in self.palette:
            _parse_hex_color(code)
        check_int(self.ellipse_count, "ellipse_count")
        for name in ("min_ellipse_size", "max_ellipse_size", "donut_inner", "donut_outer", "deviation"):
            check_non_negative(getattr(self, name), name)
        if not self.min_ellipse_size <= self.max_ellipse_size:
            raise ConfigurationError(
                f"Ellipse size range must satisfy 0 <= min <= max, got {self.min_ellipse_size}..{self.max_ellipse_size}"
            )
        if not self.donut_inner <= self.donut_outer:
            raise ConfigurationError(
                f"Donut radii must satisfy 0 <= inner <= outer, got {self.donut_inner}..{self.donut_outer}"
            )


def _linear_gradient(width: int, height: int, c0: Tuple[float, float, float], c1: Tuple[float, float, float]) -> np.ndarray:
    """Diagonal gradient from the top-left corner to the bottom-right corner, sampled at pixel centers."""
    ys, xs = np.mgrid[0:height, 0:width].astype(np.float64)
    t = ((xs + 0.5) * width + (ys + 0.5) * height) / float(width * width + height * height)
    t = np.clip(t, 0.0, 1.0)[..., None]
    rgb = np.asarray(c0, np.float64) * (1.0 - t) + np.asarray(c1, np.float64) * t
    out = np.empty((height, width, 4), np.uint8)
    out[..., :3] = narrow_u8(rgb)
    out[..., 3] = 255
    return out


def _pick_color(palette: Tuple[str, ...], rng: np.random.Generator) -> Tuple[float, float, float]:
    return _parse_hex_color(palette[int(rng.integers(0, len(palette)))])


def rasterize_scene(width: int, height: int, rng: np.random.Generator, scene: Optional[SceneConfig] = None) -> PixelBuffer:
    """Draw the gradient background and random ellipses into a fresh, fully opaque buffer."""
    if width <= 0 or height <= 0:
        raise ConfigurationError(f"Scene dimensions must be positive, got {width}x{height}")
    scene = scene or SceneConfig()
    scene.validate()

    c0 = _pick_color(scene.palette, rng)
    c1 = _pick_color(scene.palette, rng)
    img = Image.fromarray(_linear_gradient(width, height, c0, c1), "RGBA")
    draw = ImageDraw.Draw(img)

    cx, cy = width / 2.0, height / 2.0
    for _ in range(scene.ellipse_count):
        offset = scene.donut_inner + rng.random() * (scene.donut_outer - scene.donut_inner)
        angle = rng.random() * 2.0 * np.pi
        ex = cx + offset * np.cos(angle)
        ey = cy + offset * np.sin(angle)
        base = scene.min_ellipse_size + rng.random() * (scene.max_ellipse_size - scene.min_ellipse_size)
        rx = base
        ry = max(0.0, base + (rng.random() * 2.0 - 1.0) * scene.deviation * base)
        color = tuple(int(v) for v in _pick_color(scene.palette, rng)) + (255,)
        draw.ellipse([ex - rx, ey - ry, ex + rx, ey + ry], fill=color)
        log.debug("Ellipse at (%.1f, %.1f) r=(%.1f, %.1f) fill=%s", ex, ey, rx, ry, color)

    return PixelBuffer.from_image(img)


# =============== Stages ===============
@dataclass
class SceneStage(BaseStage):
    """Replaces the incoming buffer with a freshly rasterized scene of the same size."""
    def generate(self, buffer: PixelBuffer, **kwargs) -> PixelBuffer:
        names = {f.name for f in dataclasses.fields(SceneConfig)}
        known = {k: v for k, v in kwargs.items() if k in names}
        if isinstance(known.get("palette"), str):
            known["palette"] = parse_palette(known["palette"])
        scene = dataclasses.replace(SceneConfig(), **known)
        return rasterize_scene(buffer.width, buffer.height, self.random(), scene)


# ---- Register defaults at import time ----
REGISTRY.register("scene", SceneStage)
