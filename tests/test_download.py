from __future__ import annotations

import io
from datetime import datetime
from pathlib import Path
from typing import Any

import pytest
from PIL import Image, ImageDraw, PngImagePlugin

from asset_engine.client import AssetClient, AssetClientError, DownloadError, DownloadOptions
from asset_engine.client.download import render_filename, sanitize_for_filename


def _png_bytes(size: tuple[int, int] = (64, 48), with_text: bool = False, block: bool = False) -> bytes:
    image = Image.new("RGB", size, (255, 255, 255) if block else (40, 80, 120))
    if block:
        ImageDraw.Draw(image).rectangle((20, 10, 59, 49), fill=(0, 0, 0))
    info = PngImagePlugin.PngInfo()
    if with_text:
        info.add_text("parameters", "prompt: secret castle")
    buffer = io.BytesIO()
    image.save(buffer, format="PNG", pnginfo=info)
    return buffer.getvalue()


def _serve(server, path: str, payload: Any, status: int = 200) -> None:
    server.routes["/" + path] = lambda body: (status, payload)


def test_partial_failure_reports_saved_and_failed(swarm_server, client_config, tmp_path: Path) -> None:
    paths = [f"View/local/raw/img{n}.png" for n in range(1, 5)]
    for position, path in enumerate(paths, start=1):
        if position % 2 == 0:
            _serve(swarm_server, path, b"missing", status=404)
        else:
            _serve(swarm_server, path, _png_bytes())
    client = AssetClient(client_config)

    with pytest.raises(DownloadError) as excinfo:
        client.download_images(paths, DownloadOptions(output_dir=tmp_path / "out"))

    error = excinfo.value
    assert "2/4" in str(error)
    assert str(error).startswith("partial download failure")
    assert [path.name for path in error.saved_paths] == ["img1.png", "img3.png"]
    assert len(error.failures) == 2
    assert "failed to download image 2 (img2.png)" in error.failures[0]
    assert "404" in error.failures[0]
    assert sorted(p.name for p in (tmp_path / "out").iterdir()) == ["img1.png", "img3.png"]


def test_all_failures(swarm_server, client_config, tmp_path: Path) -> None:
    client = AssetClient(client_config)
    with pytest.raises(DownloadError, match="all downloads failed") as excinfo:
        client.download_images(["View/a.png", "View/b.png"], DownloadOptions(output_dir=tmp_path))
    assert excinfo.value.saved_paths == []


def test_no_paths_is_an_error(client_config, tmp_path: Path) -> None:
    client = AssetClient(client_config)
    with pytest.raises(AssetClientError, match="no images to download"):
        client.download_images([], DownloadOptions(output_dir=tmp_path))


def test_invalid_options_rejected_before_fetch(swarm_server, client_config, tmp_path: Path) -> None:
    _serve(swarm_server, "View/a.png", _png_bytes())
    client = AssetClient(client_config)
    options = DownloadOptions(output_dir=tmp_path, resize_width=10, resize_filter="bicubic")
    with pytest.raises(AssetClientError, match="invalid downscale filter"):
        client.download_images(["View/a.png"], options)
    assert swarm_server.requests == []


def test_download_strips_metadata_and_sends_auth(swarm_server, client_config, tmp_path: Path) -> None:
    _serve(swarm_server, "View/local/raw/gen.png", _png_bytes(with_text=True))
    client = AssetClient(client_config)

    saved = client.download_images(["View/local/raw/gen.png"], DownloadOptions(output_dir=tmp_path))

    assert saved == [tmp_path / "gen.png"]
    assert b"secret castle" not in saved[0].read_bytes()
    assert swarm_server.requests[0]["headers"]["Authorization"] == "Bearer test-key"


def test_template_and_post_processing(swarm_server, client_config, tmp_path: Path) -> None:
    _serve(swarm_server, "View/local/raw/orig.png", _png_bytes(size=(80, 60), block=True))
    client = AssetClient(client_config)
    options = DownloadOptions(
        output_dir=tmp_path,
        filename_template="{model}-{seed}-{index}",
        metadata={"model": "sdxl", "seed": 42},
        auto_crop=True,
        resize_percentage=50,
    )

    saved = client.download_images(["View/local/raw/orig.png"], options)

    assert saved == [tmp_path / "sdxl-42-000.png"]
    with Image.open(saved[0]) as result:
        # Cropped to the 40x40 block, then halved.
        assert result.size == (20, 20)


def test_post_processing_failure_counts_as_failed_download(swarm_server, client_config, tmp_path: Path) -> None:
    _serve(swarm_server, "View/blank.png", _png_bytes())
    client = AssetClient(client_config)
    options = DownloadOptions(output_dir=tmp_path, resize_width=500)
    with pytest.raises(DownloadError, match="all downloads failed") as excinfo:
        client.download_images(["View/blank.png"], options)
    assert "downscale operation failed" in excinfo.value.failures[0]


@pytest.mark.parametrize(
    ("template", "index", "original", "metadata", "expected"),
    [
        ("img-{index}.png", 5, "test.png", None, "img-005.png"),
        ("img-{i1}.png", 0, "test.png", None, "img-1.png"),
        ("copy-of-{original}", 0, "myimage.jpg", None, "copy-of-myimage.jpg"),
        ("image-{index}{ext}", 1, "photo.jpeg", None, "image-001.jpeg"),
        ("image-{index}", 0, "photo.png", None, "image-000.png"),
        ("seed-{seed}-img.png", 0, "test.png", {"seed": 42}, "seed-42-img.png"),
        ("{model}-{width}x{height}.png", 0, "test.png", {"model": "flux", "width": 512, "height": 512}, "flux-512x512.png"),
        ("{prompt}.png", 0, "test.png", {"prompt": "a cat/dog in <the> rain?"}, "a_catdog_in_the_rain.png"),
    ],
)
def test_render_filename(template: str, index: int, original: str, metadata: Any, expected: str) -> None:
    assert render_filename(template, index, original, metadata) == expected


def test_render_filename_dates() -> None:
    now = datetime(2024, 5, 19, 14, 3, 9)
    name = render_filename("{date}_{time}-{dt}-{index1}.png", 2, "x.png", now=now)
    assert name == "2024-05-19_14-03-09-2024-05-19_14-03-09-3.png"


def test_prompt_is_truncated() -> None:
    name = render_filename("{prompt}", 0, "x.png", {"prompt": "word " * 40})
    assert name.endswith(".png")
    assert len(name) == 50 + len(".png")


def test_sanitize_for_filename() -> None:
    assert sanitize_for_filename("  a  b\tc:d  ") == "a_bcd"


def test_oversized_image_counts_as_one_failure(swarm_server, client_config, tmp_path: Path, monkeypatch) -> None:
    _serve(swarm_server, "View/small.png", _png_bytes(size=(8, 8)))
    _serve(swarm_server, "View/huge.png", _png_bytes(size=(32, 32)))
    monkeypatch.setattr(Image, "MAX_IMAGE_PIXELS", 100)
    client = AssetClient(client_config)

    with pytest.raises(DownloadError, match="1/2") as excinfo:
        client.download_images(["View/huge.png", "View/small.png"], DownloadOptions(output_dir=tmp_path))

    assert [path.name for path in excinfo.value.saved_paths] == ["small.png"]
    assert "failed to decode PNG" in excinfo.value.failures[0]
