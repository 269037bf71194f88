"""Client configuration."""

from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass
from pathlib import Path

from .utils import getenv_flag, load_dotenv

DEFAULT_BASE_URL = "http://localhost:7801"
STATE_FILE_NAME = ".asset-generator-state.json"
# Large models can legitimately take tens of minutes per request.
DEFAULT_HTTP_TIMEOUT_S = 40 * 60.0
DEFAULT_WS_OPEN_TIMEOUT_S = 10 * 60.0


@dataclass
class ClientConfig:
    base_url: str
    api_key: str | None = None
    verbose: bool = False
    http_timeout_s: float = DEFAULT_HTTP_TIMEOUT_S
    ws_open_timeout_s: float = DEFAULT_WS_OPEN_TIMEOUT_S
    state_path: Path | None = None
    events_path: Path | None = None

    def __post_init__(self) -> None:
        self.base_url = str(self.base_url or "").strip().rstrip("/")

    @classmethod
    def from_env(cls, dotenv: Path | None = None) -> "ClientConfig":
        load_dotenv(dotenv)
        events = os.getenv("ASSET_GENERATOR_EVENTS")
        return cls(
            base_url=os.getenv("ASSET_GENERATOR_BASE_URL") or DEFAULT_BASE_URL,
            api_key=os.getenv("ASSET_GENERATOR_API_KEY") or None,
            verbose=getenv_flag("ASSET_GENERATOR_VERBOSE", False),
            events_path=Path(events) if events else None,
        )

    def auth_headers(self) -> dict[str, str]:
        if not self.api_key:
            return {}
        return {"Authorization": f"Bearer {self.api_key}"}

    def resolve_state_path(self) -> Path:
        if self.state_path is not None:
            return Path(self.state_path)
        try:
            base = Path.cwd()
        except OSError:
            base = Path(tempfile.gettempdir())
        return base / STATE_FILE_NAME
