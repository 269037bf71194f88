"""WebSocket transport with server-reported progress.

The endpoint accepts the same JSON payload as the HTTP one and then streams
newline-delimited JSON frames back:

    {"progress": 0.45, "status": "generating"}
    {"images": ["View/local/raw/2024-05-19/file.png"], "info": {...}}
    {"error": "...", "error_id": "invalid_session_id"}

A frame with a non-empty `images` list ends the generation. A handshake
failure raises `HandshakeFailed` so the caller can fall back to HTTP.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import threading
from typing import Any, Callable, Iterator, Mapping
from urllib.parse import urlparse

import websockets
from websockets.exceptions import ConnectionClosed, ConnectionClosedOK, InvalidHandshake, InvalidURI

from .base import (
    AssetClientError,
    EmptyResultError,
    GenerationRequest,
    GenerationResult,
    SessionStatus,
    remote_error,
)
from .http_transport import build_payload, check_cancelled, image_list

WS_ENDPOINT = "/API/GenerateText2ImageWS"
# recv() poll interval; bounds how long a cancellation can go unnoticed.
RECV_POLL_S = 0.5


class HandshakeFailed(Exception):
    """The socket could not be opened; not an application-level error."""


def _ignore(message: str) -> None:
    return None


def ws_url(base_url: str) -> str:
    parsed = urlparse(base_url)
    scheme = parsed.scheme
    if scheme == "https":
        scheme = "wss"
    elif scheme == "http":
        scheme = "ws"
    path = (parsed.path or "").rstrip("/")
    return f"{scheme}://{parsed.netloc}{path}{WS_ENDPOINT}"


async def _connect(url: str, headers: Mapping[str, str], open_timeout_s: float) -> Any:
    connect_kwargs: dict[str, Any] = {"open_timeout": open_timeout_s, "max_size": None}
    if headers:
        # websockets renamed `extra_headers` -> `additional_headers` (>=14).
        try:
            sig = inspect.signature(websockets.connect)
            key = "additional_headers" if "additional_headers" in sig.parameters else "extra_headers"
        except (TypeError, ValueError):
            key = "additional_headers"
        connect_kwargs[key] = list(headers.items())
    return await websockets.connect(url, **connect_kwargs)


def iter_frames(raw: str | bytes) -> Iterator[dict[str, Any]]:
    text = raw.decode("utf-8", errors="replace") if isinstance(raw, (bytes, bytearray)) else str(raw)
    for line in text.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            frame = json.loads(line)
        except json.JSONDecodeError as exc:
            raise AssetClientError(f"WebSocket read error: malformed frame: {exc}") from exc
        if isinstance(frame, dict):
            yield frame


class WebSocketTransport:
    name = "websocket"

    def __init__(
        self,
        base_url: str,
        headers: Mapping[str, str],
        open_timeout_s: float,
        log: Callable[[str], None] = _ignore,
    ) -> None:
        self.url = ws_url(base_url)
        self.headers = dict(headers)
        self.open_timeout_s = open_timeout_s
        self.log = log

    def generate_once(
        self,
        session_id: str,
        request: GenerationRequest,
        handle: Any,
        cancel: threading.Event | None = None,
    ) -> GenerationResult:
        payload = build_payload(session_id, request, warn=self.log)
        check_cancelled(cancel)
        return asyncio.run(self._generate(session_id, payload, request, handle, cancel))

    async def _generate(
        self,
        session_id: str,
        payload: Mapping[str, Any],
        request: GenerationRequest,
        handle: Any,
        cancel: threading.Event | None,
    ) -> GenerationResult:
        self.log(f"Connecting: {self.url}")
        try:
            ws = await _connect(self.url, self.headers, self.open_timeout_s)
        except (OSError, TimeoutError, InvalidHandshake, InvalidURI) as exc:
            raise HandshakeFailed(str(exc) or type(exc).__name__) from exc

        try:
            try:
                await ws.send(json.dumps(payload))
            except ConnectionClosed as exc:
                raise AssetClientError(f"failed to send WebSocket request: {exc}") from exc
            handle.advance(SessionStatus.STARTING, 0.0)
            if request.progress_callback is not None:
                request.progress_callback(0.0, "Starting generation...")
            result = await self._read_until_terminal(ws, session_id, request, handle, cancel)
        finally:
            await ws.close()

        handle.complete(result)
        if request.progress_callback is not None:
            request.progress_callback(1.0, "Generation completed")
        return result

    async def _read_until_terminal(
        self,
        ws: Any,
        session_id: str,
        request: GenerationRequest,
        handle: Any,
        cancel: threading.Event | None,
    ) -> GenerationResult:
        terminal_seen = False
        result: GenerationResult | None = None
        while not terminal_seen:
            check_cancelled(cancel)
            try:
                raw = await asyncio.wait_for(ws.recv(), timeout=RECV_POLL_S)
            except TimeoutError:
                continue
            except ConnectionClosedOK:
                break
            except ConnectionClosed as exc:
                raise AssetClientError(f"WebSocket read error: {exc}") from exc

            for frame in iter_frames(raw):
                result = self._handle_frame(frame, session_id, request, handle)
                if result is not None:
                    terminal_seen = True
                    break

        if not terminal_seen or result is None:
            raise EmptyResultError("WebSocket closed without returning images")
        return result

    def _handle_frame(
        self,
        frame: Mapping[str, Any],
        session_id: str,
        request: GenerationRequest,
        handle: Any,
    ) -> GenerationResult | None:
        error = remote_error(frame)
        if error is not None:
            raise error

        progress = frame.get("progress")
        if isinstance(progress, (int, float)) and not isinstance(progress, bool):
            handle.advance(SessionStatus.GENERATING, float(progress))
            if request.progress_callback is not None:
                status = frame.get("status")
                request.progress_callback(float(progress), status if isinstance(status, str) else "Generating...")

        images = image_list(frame.get("images"))
        if not images:
            return None
        info = frame.get("info")
        return GenerationResult(
            session_id=session_id,
            image_paths=images,
            metadata=dict(info) if isinstance(info, dict) else {},
        )
