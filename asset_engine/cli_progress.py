"""CLI progress rendering for generation callbacks."""

from __future__ import annotations

import os
import shutil
import sys
import threading
import time
from typing import TextIO

_BOLD = "\x1b[1m"
_GREY = "\x1b[38;2;150;157;165m"
_RESET = "\x1b[0m"

BAR_WIDTH = 24
# Non-TTY streams get one line per this many percentage points.
PLAIN_STEP = 10


def progress_line(label: str, progress: float, start: float, stopped: bool = False) -> str:
    fraction = max(0.0, min(1.0, progress))
    filled = int(round(fraction * BAR_WIDTH))
    bar = "█" * filled + "░" * (BAR_WIDTH - filled)
    elapsed = _format_duration(int(max(0, time.monotonic() - start)))
    suffix = "stopped" if stopped else "ctrl-c to cancel"
    return f"• {label} [{bar}] {fraction * 100:5.1f}% ({elapsed} • {suffix})"


class ProgressBar:
    """Renders `(progress, status)` callbacks; redraws in place on a TTY."""

    def __init__(self, label: str = "Generating", stream: TextIO | None = None) -> None:
        self.label = label
        self.stream = stream or sys.stderr
        self.start = time.monotonic()
        self._lock = threading.Lock()
        self._enabled = bool(getattr(self.stream, "isatty", lambda: False)())
        self._progress = 0.0
        self._status = label
        self._last_plain: tuple[int, str] | None = None
        self._finished = False

    def __call__(self, progress: float, status: str) -> None:
        self.update(progress, status)

    def update(self, progress: float, status: str) -> None:
        # Called from the ticker thread as well as the caller's thread.
        with self._lock:
            if self._finished:
                return
            self._progress = progress
            self._status = status or self.label
            line = progress_line(self._status, self._progress, self.start)
            if self._enabled:
                self._write_line(f"{_BOLD}{line}{_RESET}", newline=False)
                return
            bucket = int(max(0.0, min(1.0, progress)) * 100) // PLAIN_STEP
            key = (bucket, self._status)
            if key == self._last_plain:
                return
            self._last_plain = key
            self._write_line(line, newline=True)

    def finish(self, done: bool = True) -> None:
        with self._lock:
            if self._finished:
                return
            self._finished = True
            if self._enabled:
                self.stream.write("\r\033[K")
            if done:
                self._write_done_line()
            else:
                line = progress_line(self._status, self._progress, self.start, stopped=True)
                self._write_line(line, newline=True)

    def _write_line(self, line: str, newline: bool) -> None:
        if self._enabled and not newline:
            self.stream.write("\r")
            self.stream.write(line)
            self.stream.write("\033[K")
        else:
            self.stream.write(f"{line}\n")
        self.stream.flush()

    def _write_done_line(self) -> None:
        elapsed = int(max(0, time.monotonic() - self.start))
        width = _resolve_terminal_width(self.stream, 100)
        line = _separator_line(f"Generated in {_format_duration(elapsed)}", width)
        self.stream.write(f"{_GREY}{line}{_RESET}\n")
        self.stream.flush()


def _format_duration(seconds: int) -> str:
    minutes, secs = divmod(seconds, 60)
    hours, minutes = divmod(minutes, 60)
    if hours:
        return f"{hours}h {minutes}m {secs:02d}s"
    if minutes:
        return f"{minutes}m {secs:02d}s"
    return f"{secs}s"


def _separator_line(label: str, width: int) -> str:
    content = f" {label} "
    if width <= len(content) + 2:
        return content.strip()
    remaining = width - len(content)
    left = remaining // 2
    right = remaining - left
    return f"{'─' * left}{content}{'─' * right}"


def _resolve_terminal_width(stream: TextIO | None, fallback: int) -> int:
    if stream and hasattr(stream, "fileno"):
        try:
            return os.get_terminal_size(stream.fileno()).columns
        except (OSError, ValueError):
            pass
    return shutil.get_terminal_size(fallback=(fallback, 20)).columns
