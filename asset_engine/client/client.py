"""AssetClient: generation, session tracking, model queries and downloads."""

from __future__ import annotations

import contextlib
import sys
import threading
import time
import uuid
from pathlib import Path
from typing import Any, Iterator

from ..config import ClientConfig
from ..runs.events import EventWriter, NullEventWriter
from ..utils import format_duration, now_utc
from .base import (
    ActiveGeneration,
    AssetClientError,
    BackendStatus,
    GenerationRequest,
    GenerationResult,
    ListModelsOptions,
    Model,
    ModelNotFoundError,
    ServerStatus,
    ServerUnreachableError,
    Session,
    SessionStatus,
    remote_error,
)
from .download import DownloadOptions, DownloadPipeline
from .http_transport import HttpTransport, post_json
from .session import SessionManager
from .state import StateStore
from .ws_transport import HandshakeFailed, WebSocketTransport

SESSION_ENDPOINT = "/API/GetNewSession"
LIST_MODELS_ENDPOINT = "/API/ListModels"
LIST_BACKENDS_ENDPOINT = "/API/ListBackends"
INTERRUPT_ENDPOINT = "/API/InterruptGeneration"
INTERRUPT_ALL_ENDPOINT = "/API/InterruptAll"
# Non-blocking endpoints never need the generation timeout.
QUERY_TIMEOUT_S = 60.0


class SessionHandle:
    """Transport-facing view of one tracked generation."""

    def __init__(self, client: "AssetClient", key: str) -> None:
        self._client = client
        self.key = key

    def advance(self, status: SessionStatus, progress: float | None = None) -> None:
        self._client._transition(self.key, status, progress)

    def complete(self, result: GenerationResult) -> None:
        self._client._transition(self.key, SessionStatus.COMPLETED, 1.0, result=result)


class AssetClient:
    def __init__(self, config: ClientConfig, events: Any = None) -> None:
        if not config.base_url:
            raise ValueError("base URL is required")
        self.config = config
        self._lock = threading.Lock()
        self._sessions: dict[str, Session] = {}
        self.sessions = SessionManager(self._create_session, lock=self._lock, log=self._log)

        if events is not None:
            self.events = events
        elif config.events_path is not None:
            self.events = EventWriter(Path(config.events_path), client_id=uuid.uuid4().hex[:12])
        else:
            self.events = NullEventWriter()

        self.state = StateStore(config.resolve_state_path(), log=self._log)
        self.state.cleanup()
        self._sessions.update(self.state.load())

        headers = config.auth_headers()
        self.http = HttpTransport(config.base_url, headers, config.http_timeout_s, log=self._log)
        self.ws = WebSocketTransport(config.base_url, headers, config.ws_open_timeout_s, log=self._log)
        self.downloads = DownloadPipeline(
            config.base_url, headers, config.http_timeout_s, log=self._log, events=self.events
        )

    def _log(self, message: str) -> None:
        if self.config.verbose:
            print(message, file=sys.stderr)

    def _url(self, endpoint: str) -> str:
        return f"{self.config.base_url}{endpoint}"

    def _post(
        self,
        endpoint: str,
        payload: dict[str, Any],
        *,
        strict: bool = True,
        timeout_s: float = QUERY_TIMEOUT_S,
    ) -> dict[str, Any]:
        url = self._url(endpoint)
        self._log(f"Request: POST {url}")
        return post_json(url, payload, self.config.auth_headers(), timeout_s, strict=strict)

    # Sessions ---------------------------------------------------------------

    def new_session(self) -> str:
        try:
            body = self._post(SESSION_ENDPOINT, {})
        except AssetClientError as exc:
            raise AssetClientError(f"session request failed: {exc}") from exc
        message = body.get("error")
        if isinstance(message, str) and message:
            raise AssetClientError(f"SwarmUI session error: {message}")
        session_id = body.get("session_id")
        if not isinstance(session_id, str) or not session_id:
            raise AssetClientError("SwarmUI did not return a session ID")
        return session_id

    def _create_session(self) -> str:
        return self.new_session()

    def _transition(
        self,
        key: str,
        status: SessionStatus,
        progress: float | None = None,
        result: GenerationResult | None = None,
    ) -> None:
        with self._lock:
            session = self._sessions.get(key)
            if session is None:
                return
            session.advance(status, progress)
            if result is not None:
                session.result = result
            self.state.save(self._sessions.values())
            snapshot = (session.status.value, session.progress)
        self.events.emit("session_state", generation=key, status=snapshot[0], progress=snapshot[1])

    @contextlib.contextmanager
    def _tracked(self, session_id: str, request: GenerationRequest, transport: str) -> Iterator[SessionHandle]:
        key = f"gen-{uuid.uuid4().hex[:12]}"
        with self._lock:
            self._sessions[key] = Session(key=key, id=session_id)
            self.state.save(self._sessions.values())
        self.events.emit(
            "generation_started",
            generation=key,
            transport=transport,
            prompt=request.prompt,
            model=request.model,
        )
        try:
            yield SessionHandle(self, key)
        except HandshakeFailed:
            # The HTTP fallback takes over; the record is just dropped.
            raise
        except BaseException as exc:
            self._transition(key, SessionStatus.FAILED)
            self.events.emit("generation_failed", generation=key, error=str(exc) or type(exc).__name__)
            raise
        finally:
            with self._lock:
                self._sessions.pop(key, None)
                self.state.save(self._sessions.values())

    # Generation -------------------------------------------------------------

    def _run(self, transport: Any, request: GenerationRequest, cancel: threading.Event | None) -> GenerationResult:
        def attempt(session_id: str) -> GenerationResult:
            with self._tracked(session_id, request, transport.name) as handle:
                result = transport.generate_once(session_id, request, handle, cancel)
            self.events.emit(
                "generation_completed",
                transport=transport.name,
                images=len(result.image_paths),
            )
            return result

        return self.sessions.call(attempt)

    def generate(self, request: GenerationRequest, cancel: threading.Event | None = None) -> GenerationResult:
        """Blocking HTTP generation with a simulated progress ramp."""
        return self._run(self.http, request, cancel)

    def generate_ws(self, request: GenerationRequest, cancel: threading.Event | None = None) -> GenerationResult:
        """WebSocket generation with real progress; falls back to HTTP if the socket cannot open."""
        try:
            return self._run(self.ws, request, cancel)
        except HandshakeFailed as exc:
            self._log(f"WebSocket unavailable ({exc}); falling back to HTTP")
            return self.generate(request, cancel)

    def active_generations(self) -> list[ActiveGeneration]:
        now = now_utc()
        with self._lock:
            sessions = [session for session in self._sessions.values() if session.status.is_active]
            return [
                ActiveGeneration(
                    session_id=session.id,
                    status=session.status.value,
                    progress=session.progress,
                    start_time=session.start_time,
                    duration=format_duration((now - session.start_time).total_seconds()),
                )
                for session in sessions
            ]

    # Models -----------------------------------------------------------------

    def list_models(self, options: ListModelsOptions | None = None) -> list[Model]:
        options = options or ListModelsOptions()

        def attempt(session_id: str) -> list[Model]:
            body = self._post(LIST_MODELS_ENDPOINT, options.to_payload(session_id))
            error = remote_error(body)
            if error is not None:
                raise error
            files = body.get("files")
            if not isinstance(files, list):
                return []
            return [Model.from_payload(item) for item in files if isinstance(item, dict)]

        return self.sessions.call(attempt)

    def get_model(self, name: str) -> Model:
        for model in self.list_models():
            if model.name == name:
                return model
        raise ModelNotFoundError(f"model not found: {name}")

    # Interrupts -------------------------------------------------------------

    def _interrupt(self, endpoint: str) -> None:
        def attempt(session_id: str) -> None:
            payload = {"session_id": session_id}
            body = self._post(endpoint, payload, strict=False)
            if "raw" in body and len(body) == 1:
                self._log("Warning: could not parse interrupt response; assuming success")
                return
            error = remote_error(body)
            if error is not None:
                raise error

        self.sessions.call(attempt)

    def interrupt(self) -> None:
        """Cancel the current generation of this client's session."""
        self._interrupt(INTERRUPT_ENDPOINT)

    def interrupt_all(self) -> None:
        """Cancel every queued generation on the server."""
        self._interrupt(INTERRUPT_ALL_ENDPOINT)

    # Status -----------------------------------------------------------------

    def server_status(self) -> ServerStatus:
        status = ServerStatus(server_url=self.config.base_url)
        started = time.monotonic()
        try:
            session_id = self.new_session()
        except AssetClientError as exc:
            status.status = "offline"
            raise ServerUnreachableError(f"server unreachable: {exc}", status) from exc
        status.response_time = f"{(time.monotonic() - started) * 1000:.0f}ms"
        status.status = "online"
        status.session_id = session_id

        self._apply_backends(status, session_id)

        try:
            models = self.list_models()
        except AssetClientError as exc:
            self._log(f"Model listing unavailable: {exc}")
        else:
            status.models_count = len(models)
            status.models_loaded = sum(1 for model in models if model.loaded)

        status.active_generations = self.active_generations()
        status.generations_running = len(status.active_generations)
        if not status.active_generations:
            # Nothing tracked locally; busy backends are the best signal left.
            status.generations_running = sum(
                1 for backend in status.backends if backend.status in {"running", "generating"}
            )
        return status

    def _apply_backends(self, status: ServerStatus, session_id: str) -> None:
        try:
            body = self._post(LIST_BACKENDS_ENDPOINT, {"session_id": session_id}, strict=False)
        except AssetClientError as exc:
            self._log(f"Backend status unavailable: {exc}")
            return
        message = body.get("error")
        if isinstance(message, str) and message:
            self._log(f"Backend API error: {message}")
            return
        backends = body.get("backends")
        if isinstance(backends, list):
            status.backends = [BackendStatus.from_payload(item) for item in backends if isinstance(item, dict)]
        version = body.get("version")
        if isinstance(version, str):
            status.version = version
        system_info = body.get("system_info")
        if isinstance(system_info, dict):
            status.system_info = system_info

    # Downloads --------------------------------------------------------------

    def download_images(
        self,
        remote_paths: list[str],
        options: DownloadOptions | None = None,
        cancel: threading.Event | None = None,
    ) -> list[Path]:
        return self.downloads.download_all(remote_paths, options, cancel)

    def close(self) -> None:
        with self._lock:
            self.state.save(self._sessions.values())

    def __enter__(self) -> "AssetClient":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()
