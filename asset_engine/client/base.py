"""Client data types and errors."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Mapping

from ..utils import now_utc

ProgressCallback = Callable[[float, str], None]

INVALID_SESSION_ERROR_ID = "invalid_session_id"


class AssetClientError(RuntimeError):
    pass


class SessionExpiredError(AssetClientError):
    """The remote peer rejected the cached session identifier."""


class EmptyResultError(AssetClientError):
    pass


class GenerationCancelled(AssetClientError):
    pass


class ModelNotFoundError(AssetClientError):
    pass


class ServerUnreachableError(AssetClientError):
    def __init__(self, message: str, status: "ServerStatus") -> None:
        super().__init__(message)
        self.status = status


class DownloadError(AssetClientError):
    def __init__(self, message: str, saved_paths: list[Any], failures: list[str]) -> None:
        super().__init__(message)
        self.saved_paths = saved_paths
        self.failures = failures


class SessionStatus(str, Enum):
    PENDING = "pending"
    STARTING = "starting"
    GENERATING = "generating"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_active(self) -> bool:
        return self in ACTIVE_STATUSES


ACTIVE_STATUSES = frozenset({SessionStatus.PENDING, SessionStatus.STARTING, SessionStatus.GENERATING})


@dataclass
class GenerationRequest:
    prompt: str
    model: str | None = None
    parameters: dict[str, Any] = field(default_factory=dict)
    progress_callback: ProgressCallback | None = None


@dataclass
class GenerationResult:
    session_id: str
    image_paths: list[str]
    metadata: dict[str, Any] = field(default_factory=dict)
    status: str = SessionStatus.COMPLETED.value
    created_at: datetime = field(default_factory=now_utc)


@dataclass
class Session:
    key: str
    id: str
    status: SessionStatus = SessionStatus.PENDING
    progress: float = 0.0
    start_time: datetime = field(default_factory=now_utc)
    result: GenerationResult | None = None

    def advance(self, status: SessionStatus, progress: float | None = None) -> None:
        if status is SessionStatus.COMPLETED:
            self.status = status
            self.progress = 1.0
            return
        self.status = status
        if progress is None:
            return
        progress = max(0.0, min(1.0, float(progress)))
        if status.is_active:
            # Progress only moves forward while the generation is live.
            progress = max(self.progress, progress)
        self.progress = progress


@dataclass
class Model:
    name: str
    type: str = ""
    description: str = ""
    version: str = ""
    loaded: bool = False

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "Model":
        return cls(
            name=str(payload.get("name") or ""),
            type=str(payload.get("type") or ""),
            description=str(payload.get("description") or ""),
            version=str(payload.get("version") or ""),
            loaded=bool(payload.get("loaded", False)),
        )


@dataclass
class ListModelsOptions:
    path: str = ""
    depth: int = 5
    subtype: str = "Stable-Diffusion"
    sort_by: str = "Name"
    allow_remote: bool = True
    sort_reverse: bool = False
    data_images: bool = False

    def to_payload(self, session_id: str) -> dict[str, Any]:
        return {
            "session_id": session_id,
            "path": self.path,
            "depth": self.depth or 5,
            "subtype": self.subtype or "Stable-Diffusion",
            "sortBy": self.sort_by or "Name",
            "allowRemote": self.allow_remote,
            "sortReverse": self.sort_reverse,
            "dataImages": self.data_images,
        }


@dataclass
class ActiveGeneration:
    session_id: str
    status: str
    progress: float
    start_time: datetime
    duration: str


@dataclass
class BackendStatus:
    id: str = ""
    type: str = ""
    status: str = ""
    model_loaded: str = ""
    gpu: str = ""

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "BackendStatus":
        def pick(*keys: str) -> str:
            for key in keys:
                value = payload.get(key)
                if isinstance(value, str):
                    return value
            return ""

        return cls(
            id=pick("backend_id", "id"),
            type=pick("type"),
            status=pick("status"),
            model_loaded=pick("model_loaded", "current_model"),
            gpu=pick("gpu", "gpu_id"),
        )


@dataclass
class ServerStatus:
    server_url: str
    status: str = "unknown"
    response_time: str = ""
    version: str = ""
    session_id: str = ""
    backends: list[BackendStatus] = field(default_factory=list)
    models_count: int = 0
    models_loaded: int = 0
    system_info: dict[str, Any] = field(default_factory=dict)
    active_generations: list[ActiveGeneration] = field(default_factory=list)
    generations_running: int = 0


def remote_error(payload: Mapping[str, Any], label: str = "SwarmUI") -> AssetClientError | None:
    """Map an `error` / `error_id` response body to an exception, if any."""
    message = payload.get("error")
    error_id = payload.get("error_id")
    message = message if isinstance(message, str) else ""
    error_id = error_id if isinstance(error_id, str) else ""
    if error_id == INVALID_SESSION_ERROR_ID:
        return SessionExpiredError(f"{label} error ({error_id}): {message or 'session expired'}")
    if message and error_id:
        return AssetClientError(f"{label} error ({error_id}): {message}")
    if message:
        return AssetClientError(f"{label} error: {message}")
    if error_id:
        return AssetClientError(f"{label} error (ID: {error_id})")
    return None
