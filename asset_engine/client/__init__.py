"""SwarmUI-compatible generation client."""

from __future__ import annotations

from .base import (
    AssetClientError,
    DownloadError,
    EmptyResultError,
    GenerationCancelled,
    GenerationRequest,
    GenerationResult,
    ListModelsOptions,
    Model,
    ModelNotFoundError,
    ServerStatus,
    ServerUnreachableError,
    SessionExpiredError,
    SessionStatus,
)
from .client import AssetClient
from .download import DownloadOptions

__all__ = [
    "AssetClient",
    "AssetClientError",
    "DownloadError",
    "DownloadOptions",
    "EmptyResultError",
    "GenerationCancelled",
    "GenerationRequest",
    "GenerationResult",
    "ListModelsOptions",
    "Model",
    "ModelNotFoundError",
    "ServerStatus",
    "ServerUnreachableError",
    "SessionExpiredError",
    "SessionStatus",
]
