"""PNG metadata stripping.

Every PNG written or downloaded by the generator passes through
`strip_png_metadata`. Only the chunks needed to display the image survive
(IHDR, PLTE, tRNS, IDAT, IEND); text chunks carrying prompts and generation
parameters, timestamps, colour profiles and physical dimensions are dropped.
Files that are not PNGs, or that do not decode, are left untouched.
"""

from __future__ import annotations

from pathlib import Path

from PIL import Image, UnidentifiedImageError

from .formats import ImageFormat, ProcessingError, replace_from_temp, save_image

PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"


def is_png(path: Path) -> bool:
    if path.suffix.lower() == ".png":
        return True
    try:
        with path.open("rb") as handle:
            return handle.read(len(PNG_SIGNATURE)) == PNG_SIGNATURE
    except OSError:
        return False


def strip_png_metadata(path: Path) -> bool:
    """Re-encode `path` without ancillary chunks. Returns True if rewritten."""
    path = Path(path)
    if not is_png(path):
        return False
    try:
        with Image.open(path) as handle:
            if handle.format != "PNG":
                return False
            handle.load()
            image = handle.copy()
    except FileNotFoundError as exc:
        raise ProcessingError(f"failed to open PNG file: {exc}") from exc
    except Image.DecompressionBombError as exc:
        raise ProcessingError(f"failed to decode PNG: {exc}") from exc
    except (UnidentifiedImageError, OSError):
        # Not decodable as PNG (e.g. an error body saved with a .png name).
        return False

    temp_path = path.with_name(f".{path.name}.tmp")
    try:
        save_image(image, temp_path, ImageFormat.PNG)
    except ProcessingError as exc:
        temp_path.unlink(missing_ok=True)
        raise ProcessingError(f"failed to encode PNG without metadata: {exc}") from exc
    replace_from_temp(temp_path, path)
    return True
