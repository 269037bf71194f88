"""Fetch generated images, name them from a template and post-process them."""

from __future__ import annotations

import re
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Mapping

from ..processor.crop import DEFAULT_THRESHOLD, DEFAULT_TOLERANCE, CropOptions
from ..processor.formats import DEFAULT_JPEG_QUALITY, ProcessingError
from ..processor.pipeline import PostProcessPipeline
from ..processor.resize import ResizeFilter, ResizeOptions
from ..runs.events import NullEventWriter
from ..utils import ensure_dir
from .base import AssetClientError, DownloadError
from .http_transport import check_cancelled, fetch_bytes

PROMPT_MAX_CHARS = 50
_INVALID_FILENAME_CHARS = re.compile(r'[/\\:*?"<>|\n\r\t]')


def _ignore(message: str) -> None:
    return None


@dataclass
class DownloadOptions:
    output_dir: Path | str = "."
    filename_template: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)
    auto_crop: bool = False
    crop_threshold: int = DEFAULT_THRESHOLD
    crop_tolerance: int = DEFAULT_TOLERANCE
    crop_preserve_aspect: bool = False
    resize_width: int = 0
    resize_height: int = 0
    resize_percentage: float = 0.0
    resize_filter: str = ResizeFilter.LANCZOS.value
    jpeg_quality: int = DEFAULT_JPEG_QUALITY

    def pipeline(self) -> PostProcessPipeline:
        """Validated crop-then-resize pipeline for these options."""
        crop = None
        if self.auto_crop:
            crop = CropOptions(
                threshold=self.crop_threshold,
                tolerance=self.crop_tolerance,
                jpeg_quality=self.jpeg_quality,
                preserve_aspect_ratio=self.crop_preserve_aspect,
            )
        resize = None
        if self.resize_width or self.resize_height or self.resize_percentage:
            resize = ResizeOptions(
                width=self.resize_width,
                height=self.resize_height,
                percentage=self.resize_percentage,
                filter=ResizeFilter.parse(self.resize_filter),
                jpeg_quality=self.jpeg_quality,
            )
        pipeline = PostProcessPipeline(crop=crop, resize=resize)
        pipeline.validate()
        return pipeline


def sanitize_for_filename(value: str) -> str:
    value = value.replace(" ", "_")
    value = _INVALID_FILENAME_CHARS.sub("", value)
    value = re.sub(r"_{2,}", "_", value)
    return value.strip("_")


def render_filename(
    template: str,
    index: int,
    original: str,
    metadata: Mapping[str, Any] | None = None,
    now: datetime | None = None,
) -> str:
    """Expand `{index}`-style placeholders; appends the original extension if none."""
    now = now or datetime.now()
    dot = original.rfind(".")
    ext = original[dot:] if dot != -1 else ""
    stamp = str(int(now.timestamp()))
    replacements = {
        "{index1}": str(index + 1),
        "{i1}": str(index + 1),
        "{index}": f"{index:03d}",
        "{i}": f"{index:03d}",
        "{timestamp}": stamp,
        "{ts}": stamp,
        "{datetime}": now.strftime("%Y-%m-%d_%H-%M-%S"),
        "{dt}": now.strftime("%Y-%m-%d_%H-%M-%S"),
        "{date}": now.strftime("%Y-%m-%d"),
        "{time}": now.strftime("%H-%M-%S"),
        "{original}": original,
        "{ext}": ext,
    }
    metadata = metadata or {}
    for key in ("seed", "model", "width", "height"):
        if key in metadata:
            replacements[f"{{{key}}}"] = str(metadata[key])
    if "prompt" in metadata:
        replacements["{prompt}"] = sanitize_for_filename(str(metadata["prompt"]))[:PROMPT_MAX_CHARS]

    result = template
    for placeholder, value in replacements.items():
        result = result.replace(placeholder, value)
    if "." not in result and ext:
        result += ext
    return result


class DownloadPipeline:
    def __init__(
        self,
        base_url: str,
        headers: Mapping[str, str],
        timeout_s: float,
        log: Callable[[str], None] = _ignore,
        events: Any = None,
    ) -> None:
        self.base_url = base_url
        self.headers = dict(headers)
        self.timeout_s = timeout_s
        self.log = log
        self.events = events or NullEventWriter()

    def download_all(
        self,
        remote_paths: list[str],
        options: DownloadOptions | None = None,
        cancel: threading.Event | None = None,
    ) -> list[Path]:
        if not remote_paths:
            raise AssetClientError("no images to download")
        options = options or DownloadOptions()
        try:
            pipeline = options.pipeline()
        except ProcessingError as exc:
            raise AssetClientError(f"invalid download options: {exc}") from exc

        output_dir = Path(options.output_dir or ".")
        try:
            ensure_dir(output_dir)
        except OSError as exc:
            raise AssetClientError(f"failed to create output directory: {exc}") from exc

        saved: list[Path] = []
        failures: list[str] = []
        for index, remote_path in enumerate(remote_paths):
            check_cancelled(cancel)
            original = remote_path.rstrip("/").split("/")[-1]
            if not original:
                failures.append(f"invalid image path: {remote_path!r}")
                continue
            if options.filename_template:
                filename = render_filename(options.filename_template, index, original, options.metadata)
            else:
                filename = original
            target = output_dir / filename
            try:
                self._fetch_one(remote_path, target, pipeline)
            except (AssetClientError, ProcessingError, OSError) as exc:
                message = f"failed to download image {index + 1} ({filename}): {exc}"
                failures.append(message)
                self.log(message)
                self.events.emit("download_failed", index=index + 1, filename=filename, error=str(exc))
                continue
            saved.append(target)
            self.log(f"Downloaded: {remote_path} -> {target}")
            self.events.emit("image_saved", index=index + 1, path=str(target))

        if not failures:
            return saved
        joined = "; ".join(failures)
        if saved:
            raise DownloadError(
                f"partial download failure: {len(saved)}/{len(remote_paths)} images downloaded "
                f"successfully; errors: {joined}",
                saved_paths=saved,
                failures=failures,
            )
        raise DownloadError(f"all downloads failed: {joined}", saved_paths=[], failures=failures)

    def _fetch_one(self, remote_path: str, target: Path, pipeline: PostProcessPipeline) -> None:
        url = f"{self.base_url}/{remote_path.lstrip('/')}"
        started = time.monotonic()
        data = fetch_bytes(url, self.headers, self.timeout_s)
        target.write_bytes(data)
        # Unconditional, even when no other step is configured.
        pipeline.strip(target)
        applied = pipeline.run(target)
        if applied:
            self.log(f"Post-processed {target.name}: {', '.join(applied)} ({time.monotonic() - started:.2f}s)")
