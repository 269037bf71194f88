"""Ordered local post-processing: crop first, then downscale."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from .crop import CropOptions, auto_crop_in_place
from .formats import ProcessingError
from .metadata import strip_png_metadata
from .resize import ResizeOptions, downscale_in_place


class PostProcessError(ProcessingError):
    def __init__(self, step: str, path: Path, cause: ProcessingError) -> None:
        super().__init__(f"{step} operation failed: {cause}")
        self.step = step
        self.path = path
        self.cause = cause


@dataclass
class PostProcessPipeline:
    crop: CropOptions | None = None
    resize: ResizeOptions | None = None

    def validate(self) -> None:
        if self.crop is not None:
            self.crop.validate()
        if self.resize is not None:
            self.resize.validate()

    def steps(self) -> list[tuple[str, Callable[[Path], object]]]:
        steps: list[tuple[str, Callable[[Path], object]]] = []
        if self.crop is not None:
            crop = self.crop
            steps.append(("auto-crop", lambda path: auto_crop_in_place(path, crop)))
        if self.resize is not None:
            resize = self.resize
            steps.append(("downscale", lambda path: downscale_in_place(path, resize)))
        return steps

    def run(self, path: Path) -> list[str]:
        """Apply the configured steps to `path` in place; returns the step names run."""
        path = Path(path)
        applied: list[str] = []
        for name, step in self.steps():
            try:
                step(path)
            except ProcessingError as exc:
                raise PostProcessError(name, path, exc) from exc
            applied.append(name)
        return applied

    def strip(self, path: Path) -> bool:
        try:
            return strip_png_metadata(Path(path))
        except ProcessingError as exc:
            raise PostProcessError("strip-metadata", Path(path), exc) from exc
