"""Output container handling shared by crop and resize."""

from __future__ import annotations

import os
from enum import Enum
from pathlib import Path

from PIL import Image

DEFAULT_JPEG_QUALITY = 90


class ProcessingError(RuntimeError):
    pass


class InvalidOptionsError(ProcessingError):
    pass


class ImageFormat(Enum):
    PNG = "PNG"
    JPEG = "JPEG"

    @classmethod
    def from_decoded(cls, name: str | None) -> "ImageFormat":
        # Anything that is not JPEG is re-encoded as PNG.
        if str(name or "").upper() in {"JPEG", "JPG", "MPO"}:
            return cls.JPEG
        return cls.PNG


def open_image(path: Path) -> tuple[Image.Image, ImageFormat]:
    try:
        with Image.open(path) as handle:
            handle.load()
            fmt = ImageFormat.from_decoded(handle.format)
            image = handle.copy()
    except FileNotFoundError as exc:
        raise ProcessingError(f"failed to open input image: {exc}") from exc
    except (OSError, Image.DecompressionBombError) as exc:
        raise ProcessingError(f"failed to decode image: {exc}") from exc
    return image, fmt


def save_image(image: Image.Image, path: Path, fmt: ImageFormat, jpeg_quality: int = DEFAULT_JPEG_QUALITY) -> None:
    try:
        if fmt is ImageFormat.JPEG:
            if image.mode not in {"RGB", "L", "CMYK"}:
                image = image.convert("RGB")
            image.save(path, format="JPEG", quality=_clamp_quality(jpeg_quality))
        else:
            image.info = {key: value for key, value in image.info.items() if key == "transparency"}
            image.save(path, format="PNG")
    except OSError as exc:
        raise ProcessingError(f"failed to encode output image: {exc}") from exc


def temp_sibling(path: Path, tag: str) -> Path:
    return path.with_name(f".{path.stem}_{tag}{path.suffix}")


def replace_from_temp(temp_path: Path, path: Path) -> None:
    try:
        os.replace(temp_path, path)
    except OSError as exc:
        temp_path.unlink(missing_ok=True)
        raise ProcessingError(f"failed to replace original file: {exc}") from exc


def _clamp_quality(value: int) -> int:
    try:
        quality = int(value)
    except (TypeError, ValueError):
        return DEFAULT_JPEG_QUALITY
    if quality <= 0:
        return DEFAULT_JPEG_QUALITY
    return max(1, min(100, quality))
