from __future__ import annotations

from pathlib import Path

import pytest
from PIL import Image, ImageDraw

from asset_engine.processor.crop import (
    CropOptions,
    NoContentError,
    Rectangle,
    auto_crop,
    auto_crop_in_place,
    detect_bounds,
    preserve_aspect_ratio,
)
from asset_engine.processor.formats import InvalidOptionsError


def _bordered(size: tuple[int, int], box: tuple[int, int, int, int], mode: str = "RGB") -> Image.Image:
    background = (255, 255, 255, 255) if mode == "RGBA" else (255, 255, 255)
    fill = (0, 0, 0, 255) if mode == "RGBA" else (0, 0, 0)
    image = Image.new(mode, size, background)
    ImageDraw.Draw(image).rectangle((box[0], box[1], box[2] - 1, box[3] - 1), fill=fill)
    return image


def test_detect_bounds_uniform_border_gives_exact_insets() -> None:
    image = _bordered((100, 80), (10, 5, 90, 70))
    assert detect_bounds(image) == Rectangle(10, 5, 90, 70)


def test_detect_bounds_treats_transparent_pixels_as_whitespace() -> None:
    image = Image.new("RGBA", (50, 50), (0, 0, 0, 0))
    ImageDraw.Draw(image).rectangle((20, 20, 29, 29), fill=(0, 0, 0, 255))
    assert detect_bounds(image) == Rectangle(20, 20, 30, 30)


def test_detect_bounds_tolerance_absorbs_near_white() -> None:
    image = Image.new("RGB", (40, 40), (245, 245, 245))
    ImageDraw.Draw(image).rectangle((10, 10, 19, 19), fill=(30, 30, 30))
    assert detect_bounds(image, threshold=250, tolerance=10) == Rectangle(10, 10, 20, 20)
    # Without tolerance the off-white background counts as content.
    assert detect_bounds(image, threshold=250, tolerance=0) == Rectangle(0, 0, 40, 40)


@pytest.mark.parametrize(
    ("border", "expected"),
    [
        (240, Rectangle(12, 8, 30, 25)),
        (248, Rectangle(12, 8, 30, 25)),
        (255, Rectangle(12, 8, 30, 25)),
        (239, Rectangle(0, 0, 40, 32)),
    ],
)
def test_detect_bounds_border_at_tolerance_edge(border: int, expected: Rectangle) -> None:
    image = Image.new("RGB", (40, 32), (border, border, border))
    ImageDraw.Draw(image).rectangle((12, 8, 29, 24), fill=(0, 0, 0))
    assert detect_bounds(image, threshold=250, tolerance=10) == expected


def test_detect_bounds_keeps_semi_transparent_light_pixels() -> None:
    image = Image.new("RGBA", (20, 20), (255, 255, 255, 255))
    image.putpixel((5, 5), (255, 255, 255, 128))
    image.putpixel((10, 10), (0, 0, 0, 255))
    assert detect_bounds(image) == Rectangle(5, 5, 11, 11)


def test_all_white_image_raises_no_content(tmp_path: Path) -> None:
    source = tmp_path / "blank.png"
    Image.new("RGB", (64, 64), (255, 255, 255)).save(source)
    with pytest.raises(NoContentError, match="no content detected"):
        auto_crop(source, tmp_path / "out.png")
    assert not (tmp_path / "out.png").exists()


def test_zero_border_in_place_leaves_file_untouched(tmp_path: Path) -> None:
    path = tmp_path / "full.png"
    Image.new("RGB", (32, 32), (10, 20, 30)).save(path)
    before = path.read_bytes()
    bounds = auto_crop_in_place(path)
    assert bounds == Rectangle(0, 0, 32, 32)
    assert path.read_bytes() == before


def test_zero_border_to_other_path_copies_bytes(tmp_path: Path) -> None:
    source = tmp_path / "full.png"
    target = tmp_path / "copy.png"
    Image.new("RGB", (32, 32), (10, 20, 30)).save(source)
    auto_crop(source, target)
    assert target.read_bytes() == source.read_bytes()


def test_end_to_end_crop_of_block(tmp_path: Path) -> None:
    path = tmp_path / "block.png"
    _bordered((1024, 1024), (400, 300, 600, 600)).save(path)
    bounds = auto_crop_in_place(path)
    assert bounds == Rectangle(400, 300, 600, 600)
    with Image.open(path) as cropped:
        assert cropped.size == (200, 300)


def test_end_to_end_crop_preserving_aspect(tmp_path: Path) -> None:
    path = tmp_path / "block.png"
    _bordered((1024, 1024), (400, 300, 600, 600)).save(path)
    bounds = auto_crop_in_place(path, CropOptions(preserve_aspect_ratio=True))
    assert bounds == Rectangle(350, 300, 650, 600)
    with Image.open(path) as cropped:
        assert cropped.size == (300, 300)


def test_preserve_aspect_shifts_overflow_to_other_side() -> None:
    source = Rectangle(0, 0, 100, 100)
    crop = Rectangle(0, 10, 20, 90)
    assert preserve_aspect_ratio(source, crop) == Rectangle(0, 10, 80, 90)


def test_preserve_aspect_within_tolerance_is_unchanged() -> None:
    source = Rectangle(0, 0, 1000, 500)
    crop = Rectangle(100, 100, 501, 300)
    assert preserve_aspect_ratio(source, crop) == crop


def test_jpeg_crop_keeps_format(tmp_path: Path) -> None:
    source = tmp_path / "photo.jpg"
    target = tmp_path / "photo-cropped.jpg"
    _bordered((120, 120), (30, 30, 90, 90)).save(source, format="JPEG", quality=95)
    auto_crop(source, target, CropOptions(tolerance=40))
    with Image.open(target) as cropped:
        assert cropped.format == "JPEG"
        assert cropped.width < 120 and cropped.height < 120


def test_invalid_threshold_rejected(tmp_path: Path) -> None:
    path = tmp_path / "img.png"
    Image.new("RGB", (8, 8)).save(path)
    with pytest.raises(InvalidOptionsError):
        auto_crop_in_place(path, CropOptions(threshold=300))
