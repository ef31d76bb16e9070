"""
pipeline.py — configuration, presets and the stage sequence that turns a scene
into the final texture.

What this does
--------------
• Validates a PipelineConfig up front, so a bad run fails before any pixel work.
• Rasterizes the scene (or conforms a loaded image) at the final size plus a
  border of ``padding`` pixels on every side.
• Runs blur → crop → contrast → [dither] → [second blur] → [noise] through
  the stage registry, one shared random generator per run.
"""
from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
from PIL import Image

# Importing the stage modules registers them.
import dither as _dither  # noqa: F401
import filters
import noise as _noise  # noqa: F401
from palettes import REGISTRY, SceneConfig, _rng, parse_palette, rasterize_scene
from pixels import ConfigurationError, PixelBuffer, check_non_negative

log = logging.getLogger("blurgen")

Stage = Tuple[str, Dict[str, Any]]


# ------------------------------ Configuration ------------------------------- #

@dataclass(frozen=True)
class PipelineConfig:
    """Everything a run needs besides its random source.

    The first blur uses either ``blur_radius`` or the variable range
    ``min_blur_radius``..``max_blur_radius``. The optional stages are switched
    on by setting ``dither_shades``, a second blur radius (or range) and
    ``noise_opacity``.
    """
    final_width: int = 256
    final_height: int = 256
    blur_radius: Optional[int] = 20
    min_blur_radius: Optional[int] = None
    max_blur_radius: Optional[int] = None
    contrast_factor: float = 1.25
    dither_shades: Optional[int] = None
    second_blur_radius: Optional[int] = None
    second_min_blur_radius: Optional[int] = None
    second_max_blur_radius: Optional[int] = None
    noise_opacity: Optional[float] = None
    noise_scale: float = 1.0
    scene: SceneConfig = field(default_factory=SceneConfig)

    @property
    def variable_blur(self) -> bool:
        return self.min_blur_radius is not None or self.max_blur_radius is not None

    @property
    def padding(self) -> int:
        return int(self.max_blur_radius if self.variable_blur else self.blur_radius)

    @property
    def padded_size(self) -> Tuple[int, int]:
        return self.final_width + 2 * self.padding, self.final_height + 2 * self.padding

    def validate(self) -> None:
        for name in ("final_width", "final_height"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                raise ConfigurationError(f"{name} must be a positive integer, got {value!r}")

        if self.variable_blur:
            if self.blur_radius is not None:
                raise ConfigurationError("Give either blur_radius or min/max_blur_radius, not both")
            if self.min_blur_radius is None or self.max_blur_radius is None:
                raise ConfigurationError("Variable blur needs both min_blur_radius and max_blur_radius")
            filters.check_radius_range(self.min_blur_radius, self.max_blur_radius)
        elif self.blur_radius is None:
            raise ConfigurationError("Give blur_radius or min/max_blur_radius")
        else:
            filters.check_radius(self.blur_radius, "blur_radius")

        check_non_negative(self.contrast_factor, "contrast_factor")

        if self.dither_shades is not None:
            _dither.quantization_step(self.dither_shades)

        second_range = (self.second_min_blur_radius, self.second_max_blur_radius)
        if any(v is not None for v in second_range):
            if self.second_blur_radius is not None:
                raise ConfigurationError("Give either second_blur_radius or second_min/max_blur_radius, not both")
            if any(v is None for v in second_range):
                raise ConfigurationError("Second variable blur needs both second_min and second_max_blur_radius")
            filters.check_radius_range(*second_range)
        elif self.second_blur_radius is not None:
            filters.check_radius(self.second_blur_radius, "second_blur_radius")

        if self.noise_opacity is not None:
            check_non_negative(self.noise_opacity, "noise_opacity")
            check_non_negative(self.noise_scale, "noise_scale")

        self.scene.validate()

    def with_overrides(self, overrides: Dict[str, Any]) -> "PipelineConfig":
        """New config with fields replaced; ``scene.<field>`` keys target the scene."""
        top: Dict[str, Any] = {}
        scene: Dict[str, Any] = {}
        top_names = {f.name for f in dataclasses.fields(self)} - {"scene"}
        scene_names = {f.name for f in dataclasses.fields(SceneConfig)}
        for key, value in overrides.items():
            if key.startswith("scene."):
                name = key.split(".", 1)[1]
                if name not in scene_names:
                    raise ConfigurationError(f"Unknown scene setting '{name}'. Available: {', '.join(sorted(scene_names))}")
                if name == "palette" and isinstance(value, str):
                    value = parse_palette(value)
                scene[name] = value
            elif key in top_names:
                top[key] = value
            else:
                raise ConfigurationError(f"Unknown setting '{key}'. Available: {', '.join(sorted(top_names))}")
        if scene:
            top["scene"] = dataclasses.replace(self.scene, **scene)
        return dataclasses.replace(self, **top)



# ------------------------------- Presets -------------------------------- #

@dataclass(frozen=True)
class Preset:
    config: PipelineConfig
    description: str = ""

PRESETS: Dict[str, Preset] = {
    "classic": Preset(
        config=PipelineConfig(),
        description="Wide fixed blur and a contrast lift.",
    ),
    "variable": Preset(
        config=PipelineConfig(blur_radius=None, min_blur_radius=8, max_blur_radius=32, contrast_factor=1.3),
        description="Blur strength drifts across the canvas.",
    ),
    "dithered": Preset(
        config=PipelineConfig(dither_shades=8, second_blur_radius=2),
        description="Posterized with error diffusion, softened by a small second blur.",
    ),
    "grain": Preset(
        config=PipelineConfig(
            blur_radius=None, min_blur_radius=8, max_blur_radius=32, contrast_factor=1.3,
            dither_shades=16,
            second_min_blur_radius=1, second_max_blur_radius=3,
            noise_opacity=0.06, noise_scale=1.0,
        ),
        description="Variable blur, dithering, soft second pass and film grain.",
    ),
}


def get_preset(name: str) -> PipelineConfig:
    key = name.strip().lower()
    if key not in PRESETS:
        raise KeyError(f"Unknown preset '{name}'. Available: {', '.join(sorted(PRESETS))}")
    return PRESETS[key].config


# ------------------------------- Stage plan --------------------------------- #

def plan_stages(config: PipelineConfig) -> List[Stage]:
    """Stage names with their extras, in execution order (source excluded)."""
    if config.variable_blur:
        first = {"min_radius": config.min_blur_radius, "max_radius": config.max_blur_radius}
    else:
        first = {"radius": config.blur_radius}
    stages: List[Stage] = [
        ("blur", first),
        ("crop", {"pad": config.padding}),
        ("contrast", {"factor": config.contrast_factor}),
    ]
    if config.dither_shades is not None:
        stages.append(("dither", {"shades": config.dither_shades}))
    if config.second_min_blur_radius is not None:
        stages.append(("blur", {"min_radius": config.second_min_blur_radius,
                                "max_radius": config.second_max_blur_radius}))
    elif config.second_blur_radius is not None:
        stages.append(("blur", {"radius": config.second_blur_radius}))
    if config.noise_opacity is not None:
        stages.append(("noise", {"opacity": config.noise_opacity, "scale": config.noise_scale}))
    return stages


def run_stages(
    buffer: PixelBuffer,
    stages: List[str],
    stage_extras: List[Dict[str, Any]],
    rng: np.random.Generator,
) -> PixelBuffer:
    out = buffer
    for i, name in enumerate(stages):
        stage = REGISTRY.create(name, rng=rng)
        extras = stage_extras[i]
        log.info("Stage %d/%d: %s extras=%s", i + 1, len(stages), name, {k: extras[k] for k in sorted(extras)})
        out = stage.generate(out, **extras)
    return out


# ------------------------------- Sources ------------------------------------ #

def conform_source(img: Image.Image, width: int, height: int) -> PixelBuffer:
    """Resize an arbitrary image to ``width`` x ``height`` and make it fully opaque."""
    rgba = img.convert("RGBA")
    if rgba.size != (width, height):
        rgba = rgba.resize((width, height), Image.Resampling.LANCZOS)
    arr = np.asarray(rgba, dtype=np.uint8).copy()
    arr[..., 3] = 255
    return PixelBuffer(width, height, arr)


def run_pipeline(
    config: PipelineConfig,
    *,
    seed: Optional[int] = None,
    rng: Optional[np.random.Generator] = None,
    source: Optional[Image.Image] = None,
) -> PixelBuffer:
    config.validate()
    rng = rng if rng is not None else _rng(seed)
    pw, ph = config.padded_size

    if source is not None:
        log.info("Source: image %dx%d -> %dx%d", source.width, source.height, pw, ph)
        buffer = conform_source(source, pw, ph)
    else:
        log.info("Source: scene %dx%d (padding %d)", pw, ph, config.padding)
        buffer = rasterize_scene(pw, ph, rng, config.scene)

    plan = plan_stages(config)
    out = run_stages(buffer, [name for name, _ in plan], [extras for _, extras in plan], rng)
    log.debug("Pipeline done: %dx%d", out.width, out.height)
    return out
