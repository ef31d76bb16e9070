from __future__ import annotations

import argparse
import hashlib
import io
import logging
import mimetypes
import tempfile
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlparse, unquote

import requests
from PIL import Image, ImageOps

# Import registry & stages (registration happens at import time)
from palettes import REGISTRY, _rng
from pipeline import PRESETS, get_preset, run_pipeline, run_stages
from pixels import PixelBuffer

# =============== Logging ===============
log = logging.getLogger("blurgen")


def setup_logging(verbosity: int = 0) -> None:
    level = [logging.WARNING, logging.INFO, logging.DEBUG][min(verbosity, 2)]
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-8s | %(message)s",
        datefmt="%H:%M:%S",
    )


# =============== Image sources ===============
CACHE_DIRNAME = "blurgen_cache"
USER_AGENT = "blurgen/1.0"


class FileFetcher:
    """Reads a source image as bytes.

    Accepts a local path, a ``file://`` URL or an http(s) URL. Downloads are
    kept on disk under the sha256 of the URL, so a repeated run with the same
    ``--url`` does not hit the network again.
    """

    def __init__(self, cache_dir: Optional[Path] = None, timeout: float = 20.0) -> None:
        self.timeout = timeout
        self.cache_dir = Path(cache_dir) if cache_dir else Path(tempfile.gettempdir()) / CACHE_DIRNAME
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        self._session = requests.Session()
        self._session.headers["User-Agent"] = USER_AGENT

    def fetch(self, src: str) -> Tuple[bytes, Optional[str]]:
        parsed = urlparse(src)
        scheme = parsed.scheme.lower()
        if scheme in ("http", "https"):
            return self._download(src)
        if scheme == "file":
            return self._read_file(Path(unquote(parsed.path)))
        # bare paths, including Windows drive letters
        if not scheme or len(scheme) == 1:
            return self._read_file(Path(src))
        raise ValueError(f"Unsupported URL scheme: {scheme}")

    def cache_path(self, url: str) -> Path:
        digest = hashlib.sha256(url.encode("utf-8")).hexdigest()
        return self.cache_dir / f"{digest[:32]}.bin"

    def _download(self, url: str) -> Tuple[bytes, Optional[str]]:
        cached = self.cache_path(url)
        guessed = mimetypes.guess_type(urlparse(url).path)[0]
        if cached.is_file():
            log.info("Cache hit for %s (%s)", url, cached.name)
            return cached.read_bytes(), guessed

        log.info("Downloading %s", url)
        resp = self._session.get(url, timeout=self.timeout)
        resp.raise_for_status()
        body = resp.content
        try:
            cached.write_bytes(body)
        except OSError as e:
            log.warning("Could not cache %s: %s", url, e)
        return body, resp.headers.get("Content-Type") or guessed

    @staticmethod
    def _read_file(path: Path) -> Tuple[bytes, Optional[str]]:
        if not path.is_file():
            raise FileNotFoundError(f"Input file not found: {path}")
        return path.read_bytes(), mimetypes.guess_type(path.name)[0]


class ImageLoader:
    """Turns fetched bytes into an RGBA Pillow image, optionally bounded by ``max_size``."""

    def load(self, raw: bytes, content_type: Optional[str], *, max_size: Optional[int] = None) -> Image.Image:
        if not raw:
            raise ValueError("Source is empty")
        try:
            with Image.open(io.BytesIO(raw)) as opened:
                # grey sources go through colorize so they come out as RGB
                img = ImageOps.colorize(opened, "black", "white") if opened.mode == "L" else opened.copy()
        except (OSError, SyntaxError) as e:
            raise ValueError(f"Cannot decode source as an image ({content_type or 'unknown type'}): {e}") from e

        img = img.convert("RGBA")
        if max_size:
            img.thumbnail((max_size, max_size), Image.Resampling.LANCZOS)
        return img


def _load_source(src: str, max_size: Optional[int] = None) -> Image.Image:
    raw, ctype = FileFetcher().fetch(src)
    return ImageLoader().load(raw, ctype, max_size=max_size)


# =============== Small CLI helpers ===============
def _coerce(v: str) -> Any:
    if v.isdigit():
        return int(v)
    try:
        return float(v)
    except ValueError:
        low = v.lower()
        if low in ("true", "false"):
            return low == "true"
        if low in ("none", "null", "off"):
            return None
    return v


def _parse_kv_pairs(pairs: Optional[List[str]]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    if not pairs:
        return out
    for p in pairs:
        if "=" not in p:
            raise ValueError(f"Malformed extra '{p}', expected key=value")
        k, v = p.split("=", 1)
        out[k.strip()] = _coerce(v.strip())
    return out


def _infer_format_from_path(p: Path) -> str:
    if p.suffix.lower() == ".webp":
        return "WEBP"
    return "PNG"


def save_buffer(buffer: PixelBuffer, out: Path, *, scale: int = 1) -> Path:
    img = buffer.to_image()
    if scale and scale > 1:
        img = img.resize((buffer.width * scale, buffer.height * scale), Image.Resampling.NEAREST)
    out.parent.mkdir(parents=True, exist_ok=True)
    fmt = _infer_format_from_path(out)
    if fmt == "WEBP":
        img.save(out, format=fmt, lossless=True)
    else:
        img.save(out, format=fmt, optimize=True)
    log.info("Saved %s (%dx%d)", out, *img.size)
    return out


# ======= Pipeline helpers (ad-hoc stages) =======
def _parse_pipeline(spec: Optional[str]) -> List[str]:
    stages = [s.strip().lower() for s in (spec or "").split("|") if s.strip()]
    if not stages:
        raise ValueError("Empty --pipeline. Example: blur|contrast|dither")
    return stages


def _split_stage_extras(stages: List[str], raw_extras: Dict[str, Any]) -> List[Dict[str, Any]]:
    """
    Extras can be:
      - Unprefixed:        key=val          (applies to ALL stages unless overridden)
      - By name:           stage.key=val    (applies to every stage named 'stage')
      - By index (0-based) 0.key=val        (applies to stage at index 0)
      - 'all.key=val'      applies to all (alias of unprefixed)
    Merge order per stage: (unprefixed/all) -> (by-name) -> (by-index)
    """
    global_extras: Dict[str, Any] = {}
    name_targets: Dict[str, Dict[str, Any]] = {}
    index_targets: Dict[int, Dict[str, Any]] = {}

    for k, v in raw_extras.items():
        if "." not in k:
            global_extras[k] = v
            continue
        prefix, key = k.split(".", 1)
        prefix = prefix.strip().lower()
        key = key.strip()
        if prefix == "all":
            global_extras[key] = v
        elif prefix.isdigit():
            idx = int(prefix)
            if 0 <= idx < len(stages):
                index_targets.setdefault(idx, {})[key] = v
            else:
                log.warning("Ignoring extra '%s': no stage at index %d", k, idx)
        else:
            name_targets.setdefault(prefix, {})[key] = v

    stage_extras: List[Dict[str, Any]] = []
    for i, name in enumerate(stages):
        merged: Dict[str, Any] = {}
        merged.update(global_extras)
        merged.update(name_targets.get(name, {}))
        merged.update(index_targets.get(i, {}))
        stage_extras.append(merged)
    return stage_extras


def _check_stages(stages: List[str]) -> None:
    unknown = [s for s in stages if s not in REGISTRY.names()]
    if unknown:
        raise SystemExit(f"Unknown stage(s) in pipeline: {', '.join(unknown)}")


# =============== CLI ===============
def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Procedural blurred / posterized texture generator")
    p.add_argument("-v", "--verbose", action="count", default=0, help="Increase verbosity (-v, -vv).")

    sub = p.add_subparsers(dest="cmd", required=True)

    rp = sub.add_parser("run", help="Generate a texture from a preset (optionally from an input image).")
    rp.add_argument("--preset", choices=sorted(PRESETS), default="classic", help="Base configuration.")
    rp.add_argument("--out", type=Path, required=True, help="Output image file (png/webp, lossless).")
    rp.add_argument("--url", default=None, help="Use this image (HTTP(S) URL, file:// URL, or path) instead of the scene.")
    rp.add_argument("--seed", type=int, default=None, help="RNG seed (optional).")
    rp.add_argument("--scale", type=int, default=1, help="Final nearest-neighbour upscale factor (1=off).")
    rp.add_argument(
        "--extra",
        nargs="*",
        help=(
            "Config overrides as k=v pairs, e.g. blur_radius=12 dither_shades=6 noise_opacity=0.1 "
            "scene.ellipse_count=3. Use 'none' to switch a setting off."
        ),
    )
    rp.set_defaults(func=cmd_run)

    ap = sub.add_parser("apply", help="Run named stages on an existing image.")
    ap.add_argument("--url", required=True, help="HTTP(S) URL, file:// URL, or local path.")
    ap.add_argument("--pipeline", required=True, help="Pipe stages as 's1|s2|s3'. (Quote on PowerShell)")
    ap.add_argument("--out", type=Path, required=True, help="Output image file (png/webp, lossless).")
    ap.add_argument("--seed", type=int, default=None, help="RNG seed (optional).")
    ap.add_argument("--max-size", type=int, default=None, help="Downscale input longest side before processing.")
    ap.add_argument("--scale", type=int, default=1, help="Final nearest-neighbour upscale factor (1=off).")
    ap.add_argument(
        "--extra",
        nargs="*",
        help="Extra k=v pairs. Unprefixed apply to all stages; use name.key=val or index.key=val per stage.",
    )
    ap.set_defaults(func=cmd_apply)

    lp = sub.add_parser("list", help="List stages and presets.")
    lp.set_defaults(func=cmd_list)

    bp = sub.add_parser("bench", help="Micro-benchmark a preset.")
    bp.add_argument("--preset", choices=sorted(PRESETS), default="classic")
    bp.add_argument("--runs", type=int, default=3)
    bp.add_argument("--extra", nargs="*")
    bp.set_defaults(func=cmd_bench)

    return p


# =============== Commands ===============
def cmd_list(_args: argparse.Namespace) -> int:
    print("Available stages:", ", ".join(REGISTRY.names()) or "(none)")
    print("Presets:")
    for name in sorted(PRESETS):
        print(f"  {name:<10} {PRESETS[name].description}")
    return 0


def cmd_run(args: argparse.Namespace) -> int:
    try:
        config = get_preset(args.preset).with_overrides(_parse_kv_pairs(args.extra))
        config.validate()
        source = _load_source(args.url) if args.url else None
        out = run_pipeline(config, seed=args.seed, source=source)
        save_buffer(out, args.out, scale=args.scale)
        return 0
    except Exception as e:
        log.exception("Failed: %s", e)
        return 1


def cmd_apply(args: argparse.Namespace) -> int:
    try:
        stages = _parse_pipeline(args.pipeline)
        _check_stages(stages)
        stage_extras = _split_stage_extras(stages, _parse_kv_pairs(args.extra))

        src = PixelBuffer.from_image(_load_source(args.url, max_size=args.max_size))
        out = run_stages(src, stages, stage_extras, _rng(args.seed))
        save_buffer(out, args.out, scale=args.scale)
        return 0
    except Exception as e:
        log.exception("Failed: %s", e)
        return 1


def cmd_bench(args: argparse.Namespace) -> int:
    try:
        config = get_preset(args.preset).with_overrides(_parse_kv_pairs(args.extra))
        times = []
        for _ in range(max(1, args.runs)):
            t0 = time.perf_counter()
            run_pipeline(config, seed=None)
            times.append(time.perf_counter() - t0)
        avg = sum(times) / len(times)
        print(
            f"{args.preset}: {len(times)} run(s) — avg {avg*1000:.2f} ms, "
            f"min {min(times)*1000:.2f} ms, max {max(times)*1000:.2f} ms"
        )
        return 0
    except Exception as e:
        log.exception("Bench failed: %s", e)
        return 1


# =============== Entry ===============
def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.verbose)
    return args.func(args)


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
