"""Downscale-only image resizing."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from PIL import Image

from .formats import (
    DEFAULT_JPEG_QUALITY,
    InvalidOptionsError,
    ProcessingError,
    open_image,
    replace_from_temp,
    save_image,
    temp_sibling,
)
from .metadata import strip_png_metadata


class UpscaleError(ProcessingError):
    pass


class ResizeFilter(Enum):
    LANCZOS = "lanczos"
    BILINEAR = "bilinear"
    NEAREST = "nearest"

    @classmethod
    def parse(cls, value: "str | ResizeFilter | None") -> "ResizeFilter":
        if isinstance(value, cls):
            return value
        name = str(value or "").strip().lower() or cls.LANCZOS.value
        for member in cls:
            if member.value == name:
                return member
        valid = ", ".join(member.value for member in cls)
        raise InvalidOptionsError(f"invalid downscale filter: {name} (valid options: {valid})")

    @property
    def resample(self) -> Image.Resampling:
        return _RESAMPLING[self]


_RESAMPLING = {
    ResizeFilter.LANCZOS: Image.Resampling.LANCZOS,
    ResizeFilter.BILINEAR: Image.Resampling.BILINEAR,
    ResizeFilter.NEAREST: Image.Resampling.NEAREST,
}


@dataclass
class ResizeOptions:
    width: int = 0
    height: int = 0
    # Percentage wins over width/height when both are set.
    percentage: float = 0.0
    filter: ResizeFilter = ResizeFilter.LANCZOS
    jpeg_quality: int = DEFAULT_JPEG_QUALITY

    def is_set(self) -> bool:
        return self.percentage > 0 or self.width > 0 or self.height > 0

    def validate(self) -> None:
        if self.percentage < 0 or self.percentage > 100:
            raise InvalidOptionsError("percentage must be between 0 and 100")
        if self.width < 0 or self.height < 0:
            raise InvalidOptionsError("dimensions cannot be negative")
        if not self.is_set():
            raise InvalidOptionsError(
                "either percentage or at least one dimension (width or height) must be specified"
            )
        self.filter = ResizeFilter.parse(self.filter)


def compute_target_size(src_width: int, src_height: int, options: ResizeOptions) -> tuple[int, int]:
    if options.percentage > 0:
        scale = options.percentage / 100.0
        target_width = int(src_width * scale)
        target_height = int(src_height * scale)
    else:
        target_width = options.width
        target_height = options.height
        if target_width == 0:
            target_width = int(target_height * src_width / src_height)
        elif target_height == 0:
            target_height = int(target_width * src_height / src_width)

    if target_width >= src_width and target_height >= src_height:
        raise UpscaleError(
            f"target dimensions ({target_width}x{target_height}) are not smaller than source "
            f"({src_width}x{src_height}) - downscaling only"
        )
    if target_width <= 0 or target_height <= 0:
        raise InvalidOptionsError(f"target dimensions ({target_width}x{target_height}) must be positive")
    return target_width, target_height


def resize_image(image: Image.Image, options: ResizeOptions) -> Image.Image:
    options.validate()
    size = compute_target_size(image.width, image.height, options)
    if image.mode not in {"RGB", "RGBA", "L", "LA"}:
        image = image.convert("RGBA" if "A" in image.getbands() or "transparency" in image.info else "RGB")
    return image.resize(size, resample=options.filter.resample)


def downscale(input_path: Path, output_path: Path, options: ResizeOptions) -> tuple[int, int]:
    image, fmt = open_image(Path(input_path))
    resized = resize_image(image, options)
    save_image(resized, Path(output_path), fmt, options.jpeg_quality)
    strip_png_metadata(Path(output_path))
    return resized.size


def downscale_in_place(path: Path, options: ResizeOptions) -> tuple[int, int]:
    path = Path(path)
    temp_path = temp_sibling(path, "tmp")
    try:
        size = downscale(path, temp_path, options)
    except ProcessingError:
        temp_path.unlink(missing_ok=True)
        raise
    replace_from_temp(temp_path, path)
    return size


def image_dimensions(path: Path) -> tuple[int, int]:
    try:
        with Image.open(path) as handle:
            return handle.size
    except (OSError, Image.DecompressionBombError) as exc:
        raise ProcessingError(f"failed to decode image config: {exc}") from exc
