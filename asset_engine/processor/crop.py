"""Whitespace auto-crop."""

from __future__ import annotations

import shutil
from dataclasses import dataclass
from pathlib import Path

import numpy as np
from PIL import Image

from .formats import (
    DEFAULT_JPEG_QUALITY,
    ImageFormat,
    InvalidOptionsError,
    ProcessingError,
    open_image,
    replace_from_temp,
    save_image,
    temp_sibling,
)
from .metadata import strip_png_metadata

DEFAULT_THRESHOLD = 250
DEFAULT_TOLERANCE = 10
ALPHA_FLOOR = 10
ASPECT_TOLERANCE = 0.01


class NoContentError(ProcessingError):
    pass


@dataclass(frozen=True)
class Rectangle:
    """Axis-aligned region, inclusive min and exclusive max."""

    min_x: int
    min_y: int
    max_x: int
    max_y: int

    @property
    def width(self) -> int:
        return self.max_x - self.min_x

    @property
    def height(self) -> int:
        return self.max_y - self.min_y

    def is_empty(self) -> bool:
        return self.min_x >= self.max_x or self.min_y >= self.max_y

    def box(self) -> tuple[int, int, int, int]:
        return (self.min_x, self.min_y, self.max_x, self.max_y)

    @classmethod
    def of(cls, image: Image.Image) -> "Rectangle":
        return cls(0, 0, image.width, image.height)


@dataclass
class CropOptions:
    threshold: int = DEFAULT_THRESHOLD
    tolerance: int = DEFAULT_TOLERANCE
    jpeg_quality: int = DEFAULT_JPEG_QUALITY
    preserve_aspect_ratio: bool = False

    def validate(self) -> None:
        for label, value in (("threshold", self.threshold), ("tolerance", self.tolerance)):
            if not 0 <= int(value) <= 255:
                raise InvalidOptionsError(f"crop {label} must be between 0 and 255, got {value}")


def whitespace_mask(image: Image.Image, threshold: int, tolerance: int) -> np.ndarray:
    """Boolean (height, width) array, True where the pixel counts as whitespace."""
    floor = max(0, int(threshold) - int(tolerance))
    pixels = np.asarray(image.convert("RGBA")).astype(np.uint32)
    alpha = pixels[:, :, 3]
    transparent = alpha < ALPHA_FLOOR
    # Compare premultiplied colour so a half-transparent white reads as grey.
    premultiplied = pixels[:, :, :3] * alpha[:, :, None] // 255
    light = np.all(premultiplied >= floor, axis=2)
    return transparent | light


def detect_bounds(
    image: Image.Image,
    threshold: int = DEFAULT_THRESHOLD,
    tolerance: int = DEFAULT_TOLERANCE,
) -> Rectangle:
    content = ~whitespace_mask(image, threshold, tolerance)
    columns = content.any(axis=0)
    rows = content.any(axis=1)
    if not columns.any():
        return Rectangle(0, 0, 0, 0)
    left = int(np.argmax(columns))
    right = len(columns) - int(np.argmax(columns[::-1]))
    top = int(np.argmax(rows))
    bottom = len(rows) - int(np.argmax(rows[::-1]))
    return Rectangle(left, top, right, bottom)


def preserve_aspect_ratio(source: Rectangle, crop: Rectangle) -> Rectangle:
    """Grow the narrow side of `crop` until it matches the source aspect ratio."""
    src_aspect = source.width / source.height
    crop_aspect = crop.width / crop.height
    ratio = crop_aspect / src_aspect
    if 1.0 - ASPECT_TOLERANCE < ratio < 1.0 + ASPECT_TOLERANCE:
        return crop

    if crop_aspect > src_aspect:
        target = min(int(crop.width / src_aspect), source.height)
        min_y, max_y = _expand(crop.min_y, crop.max_y, target, source.min_y, source.max_y)
        return Rectangle(crop.min_x, min_y, crop.max_x, max_y)

    target = min(int(crop.height * src_aspect), source.width)
    min_x, max_x = _expand(crop.min_x, crop.max_x, target, source.min_x, source.max_x)
    return Rectangle(min_x, crop.min_y, max_x, crop.max_y)


def _expand(low: int, high: int, target: int, floor: int, ceiling: int) -> tuple[int, int]:
    diff = target - (high - low)
    new_low = low - diff // 2
    new_high = high + diff // 2 + diff % 2
    # Overflow on one side moves to the other.
    if new_low < floor:
        new_low = floor
        new_high = new_low + target
    if new_high > ceiling:
        new_high = ceiling
        new_low = new_high - target
    return new_low, new_high


def crop_bounds(image: Image.Image, options: CropOptions) -> Rectangle:
    """Final crop rectangle for `image`; raises NoContentError on blank input."""
    bounds = detect_bounds(image, options.threshold, options.tolerance)
    if bounds.is_empty():
        raise NoContentError("no content detected in image (entire image appears to be whitespace)")
    source = Rectangle.of(image)
    if bounds == source:
        return bounds
    if options.preserve_aspect_ratio:
        bounds = preserve_aspect_ratio(source, bounds)
    return bounds


def auto_crop(input_path: Path, output_path: Path, options: CropOptions | None = None) -> Rectangle:
    options = options or CropOptions()
    options.validate()
    input_path = Path(input_path)
    output_path = Path(output_path)
    image, fmt = open_image(input_path)
    bounds = crop_bounds(image, options)

    if bounds == Rectangle.of(image):
        # Nothing to trim: keep the original bytes instead of re-encoding.
        if input_path.resolve() != output_path.resolve():
            try:
                shutil.copyfile(input_path, output_path)
            except OSError as exc:
                raise ProcessingError(f"failed to copy image: {exc}") from exc
        return bounds

    _write_cropped(image, bounds, output_path, fmt, options)
    return bounds


def auto_crop_in_place(path: Path, options: CropOptions | None = None) -> Rectangle:
    options = options or CropOptions()
    options.validate()
    path = Path(path)
    image, fmt = open_image(path)
    bounds = crop_bounds(image, options)
    if bounds == Rectangle.of(image):
        return bounds

    temp_path = temp_sibling(path, "crop_tmp")
    try:
        _write_cropped(image, bounds, temp_path, fmt, options)
    except ProcessingError:
        temp_path.unlink(missing_ok=True)
        raise
    replace_from_temp(temp_path, path)
    return bounds


def _write_cropped(image: Image.Image, bounds: Rectangle, path: Path, fmt: ImageFormat, options: CropOptions) -> None:
    save_image(image.crop(bounds.box()), path, fmt, options.jpeg_quality)
    strip_png_metadata(path)
