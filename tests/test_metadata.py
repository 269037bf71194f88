from __future__ import annotations

from pathlib import Path

import pytest
from PIL import Image, PngImagePlugin

from asset_engine.processor.formats import ProcessingError
from asset_engine.processor.metadata import is_png, strip_png_metadata


def _png_with_text(path: Path) -> None:
    info = PngImagePlugin.PngInfo()
    info.add_text("parameters", "a secret prompt, steps: 20, seed: 42")
    info.add_text("Software", "SwarmUI")
    image = Image.new("RGB", (16, 16), (12, 34, 56))
    image.putpixel((3, 4), (250, 1, 1))
    image.save(path, pnginfo=info, dpi=(300, 300))


def test_strip_removes_text_chunks(tmp_path: Path) -> None:
    path = tmp_path / "gen.png"
    _png_with_text(path)
    assert b"tEXt" in path.read_bytes()

    assert strip_png_metadata(path) is True

    raw = path.read_bytes()
    assert b"tEXt" not in raw
    assert b"pHYs" not in raw
    assert b"secret prompt" not in raw


def test_strip_is_idempotent_on_pixels(tmp_path: Path) -> None:
    path = tmp_path / "gen.png"
    _png_with_text(path)
    with Image.open(path) as original:
        expected = list(original.convert("RGB").getdata())

    strip_png_metadata(path)
    once = path.read_bytes()
    strip_png_metadata(path)

    assert path.read_bytes() == once
    with Image.open(path) as stripped:
        assert list(stripped.convert("RGB").getdata()) == expected


def test_strip_keeps_transparency(tmp_path: Path) -> None:
    path = tmp_path / "alpha.png"
    image = Image.new("RGBA", (8, 8), (0, 0, 0, 0))
    image.putpixel((1, 1), (255, 0, 0, 128))
    image.save(path)
    strip_png_metadata(path)
    with Image.open(path) as stripped:
        assert stripped.mode == "RGBA"
        assert stripped.getpixel((1, 1)) == (255, 0, 0, 128)


def test_non_png_is_left_alone(tmp_path: Path) -> None:
    path = tmp_path / "photo.jpg"
    Image.new("RGB", (8, 8)).save(path, format="JPEG")
    before = path.read_bytes()
    assert is_png(path) is False
    assert strip_png_metadata(path) is False
    assert path.read_bytes() == before


def test_undecodable_png_name_is_left_alone(tmp_path: Path) -> None:
    path = tmp_path / "error.png"
    path.write_bytes(b"<html>not found</html>")
    assert strip_png_metadata(path) is False
    assert path.read_bytes() == b"<html>not found</html>"


def test_oversized_png_raises_processing_error(tmp_path: Path, monkeypatch) -> None:
    path = tmp_path / "huge.png"
    Image.new("RGB", (32, 32), (1, 2, 3)).save(path)
    monkeypatch.setattr(Image, "MAX_IMAGE_PIXELS", 100)
    with pytest.raises(ProcessingError, match="failed to decode PNG"):
        strip_png_metadata(path)
