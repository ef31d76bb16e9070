"""
Tests for the command line entry points and their helpers. No network access;
http sources go through a stubbed session.
"""

import pytest
import requests
from PIL import Image

from main import (
    FileFetcher,
    ImageLoader,
    _coerce,
    _parse_kv_pairs,
    _parse_pipeline,
    _split_stage_extras,
    main,
)


@pytest.fixture
def source_png(tmp_path):
    path = tmp_path / "source.png"
    Image.new("RGB", (24, 18), (90, 140, 200)).save(path)
    return path


def test_coerce():
    assert _coerce("12") == 12
    assert _coerce("1.5") == 1.5
    assert _coerce("True") is True
    assert _coerce("none") is None
    assert _coerce("#abc") == "#abc"


def test_parse_kv_pairs():
    assert _parse_kv_pairs(["blur_radius=3", "scene.palette=#000,#fff"]) == {
        "blur_radius": 3,
        "scene.palette": "#000,#fff",
    }
    assert _parse_kv_pairs(None) == {}
    with pytest.raises(ValueError):
        _parse_kv_pairs(["radius"])


def test_parse_pipeline():
    assert _parse_pipeline(" Blur | contrast|") == ["blur", "contrast"]
    with pytest.raises(ValueError):
        _parse_pipeline(" | ")


def test_stage_extras_merge_order():
    stages = ["blur", "contrast", "blur"]
    extras = _split_stage_extras(
        stages,
        {"radius": 1, "blur.radius": 4, "2.radius": 9, "contrast.factor": 1.5, "all.seedless": True, "7.radius": 3},
    )
    assert extras[0] == {"radius": 4, "seedless": True}
    assert extras[1] == {"radius": 1, "factor": 1.5, "seedless": True}
    assert extras[2] == {"radius": 9, "seedless": True}


def test_fetch_local_and_file_url(source_png, tmp_path):
    fetcher = FileFetcher(cache_dir=tmp_path / "cache")
    raw, ctype = fetcher.fetch(str(source_png))
    assert ctype == "image/png"
    assert fetcher.fetch(source_png.as_uri())[0] == raw
    with pytest.raises(FileNotFoundError):
        fetcher.fetch(str(tmp_path / "missing.png"))
    with pytest.raises(ValueError):
        fetcher.fetch("ftp://example.com/a.png")


class _StubResponse:
    def __init__(self, content=b"", status=200, content_type="image/png"):
        self.content = content
        self.status_code = status
        self.headers = {"Content-Type": content_type}

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")


def test_http_download_is_cached(source_png, tmp_path, monkeypatch):
    fetcher = FileFetcher(cache_dir=tmp_path / "cache")
    url = "https://example.com/textures/source.png"
    body = source_png.read_bytes()
    calls = []

    def fake_get(u, timeout):
        calls.append(u)
        return _StubResponse(body)

    monkeypatch.setattr(fetcher._session, "get", fake_get)

    raw, ctype = fetcher.fetch(url)
    assert raw == body
    assert ctype == "image/png"
    assert calls == [url]
    assert fetcher.cache_path(url).read_bytes() == body

    # second fetch is served from disk
    raw, ctype = fetcher.fetch(url)
    assert raw == body
    assert ctype == "image/png"
    assert calls == [url]


def test_http_cache_is_keyed_by_url(tmp_path, monkeypatch):
    fetcher = FileFetcher(cache_dir=tmp_path / "cache")
    fetcher.cache_path("https://example.com/b.png").write_bytes(b"cached")
    monkeypatch.setattr(fetcher._session, "get", lambda u, timeout: _StubResponse(b"fresh"))
    assert fetcher.fetch("https://example.com/a.png")[0] == b"fresh"
    assert fetcher.fetch("https://example.com/b.png")[0] == b"cached"


def test_http_error_is_raised_and_not_cached(tmp_path, monkeypatch):
    fetcher = FileFetcher(cache_dir=tmp_path / "cache")
    url = "http://example.com/missing.png"
    monkeypatch.setattr(fetcher._session, "get", lambda u, timeout: _StubResponse(b"nope", status=404))
    with pytest.raises(requests.HTTPError):
        fetcher.fetch(url)
    assert not fetcher.cache_path(url).exists()


def test_fetcher_sends_user_agent(tmp_path):
    assert FileFetcher(cache_dir=tmp_path)._session.headers["User-Agent"] == "blurgen/1.0"


def test_loader_rejects_garbage():
    with pytest.raises(ValueError):
        ImageLoader().load(b"not an image", None)
    with pytest.raises(ValueError):
        ImageLoader().load(b"", "image/png")


def test_loader_returns_rgba(source_png):
    img = ImageLoader().load(source_png.read_bytes(), "image/png", max_size=12)
    assert img.mode == "RGBA"
    assert max(img.size) == 12


def test_run_writes_final_image(tmp_path):
    out = tmp_path / "out" / "texture.png"
    rc = main([
        "run", "--out", str(out), "--seed", "3",
        "--extra", "final_width=20", "final_height=16", "blur_radius=3", "dither_shades=4",
    ])
    assert rc == 0
    with Image.open(out) as img:
        assert img.size == (20, 16)
        assert img.mode == "RGBA"


def test_run_from_image_with_scale(tmp_path, source_png):
    out = tmp_path / "texture.webp"
    rc = main([
        "run", "--url", str(source_png), "--out", str(out), "--scale", "2",
        "--extra", "final_width=8", "final_height=8", "blur_radius=2",
    ])
    assert rc == 0
    with Image.open(out) as img:
        assert img.format == "WEBP"
        assert img.size == (16, 16)


def test_run_rejects_bad_config(tmp_path):
    out = tmp_path / "never.png"
    assert main(["run", "--out", str(out), "--extra", "dither_shades=1"]) == 1
    assert not out.exists()


def test_apply_runs_named_stages(tmp_path, source_png):
    out = tmp_path / "applied.png"
    rc = main([
        "apply", "--url", str(source_png), "--pipeline", "blur|contrast|crop", "--out", str(out),
        "--extra", "blur.radius=1", "contrast.factor=1.1", "crop.pad=2",
    ])
    assert rc == 0
    with Image.open(out) as img:
        assert img.size == (20, 14)


def test_apply_unknown_stage(tmp_path, source_png):
    with pytest.raises(SystemExit):
        main(["apply", "--url", str(source_png), "--pipeline", "blur|sharpen", "--out", str(tmp_path / "x.png")])


def test_list(capsys):
    assert main(["list"]) == 0
    printed = capsys.readouterr().out
    assert "dither" in printed
    assert "grain" in printed


def test_bench(capsys):
    assert main(["bench", "--runs", "1", "--extra", "final_width=8", "final_height=8", "blur_radius=1"]) == 0
    assert "1 run(s)" in capsys.readouterr().out
