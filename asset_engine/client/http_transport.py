"""HTTP transport: JSON POST helpers, payload assembly and the simulated progress ramp."""

from __future__ import annotations

import contextlib
import http.client
import json
import socket
import threading
from typing import Any, Callable, ContextManager, Mapping
from urllib.error import HTTPError, URLError
from urllib.request import HTTPHandler, HTTPSHandler, OpenerDirector, Request, build_opener, urlopen

from .base import (
    AssetClientError,
    EmptyResultError,
    GenerationCancelled,
    GenerationRequest,
    GenerationResult,
    ProgressCallback,
    SessionStatus,
    remote_error,
)

GENERATE_ENDPOINT = "/API/GenerateText2Image"

PAYLOAD_DEFAULTS: dict[str, Any] = {
    "width": 512,
    "height": 512,
    "steps": 20,
    "cfgscale": 7.5,
    "sampler": "euler_a",
    "seed": -1,
}
# Logical parameter names that travel under a different wire name.
PARAMETER_ALIASES = {
    "cfg_scale": "cfgscale",
    "guidance_scale": "cfgscale",
    "batch_size": "images",
}
KNOWN_FIELDS = frozenset(PAYLOAD_DEFAULTS) | {"images", "negative_prompt"}
RESERVED_FIELDS = frozenset({"session_id", "prompt", "model"})

PROGRESS_INTERVAL_S = 0.5
PROGRESS_START = 0.10
PROGRESS_STEP = 0.05
PROGRESS_CAP = 0.90
CANCEL_POLL_S = 0.1


def _ignore(message: str) -> None:
    return None


def build_payload(
    session_id: str,
    request: GenerationRequest,
    warn: Callable[[str], None] = _ignore,
) -> dict[str, Any]:
    """Merge typed defaults with the request's parameter bag.

    Known fields are authoritative; extra parameters that would overwrite one
    of them are dropped with a warning.
    """
    known: dict[str, Any] = {}
    extras: dict[str, Any] = {}
    for raw_key, value in (request.parameters or {}).items():
        key = str(raw_key)
        wire = PARAMETER_ALIASES.get(key, key)
        if wire not in KNOWN_FIELDS:
            extras[key] = value
            continue
        if wire in known and known[wire] != value:
            warn(f"Parameter '{key}' conflicts with an earlier value for '{wire}'; keeping {known[wire]!r}.")
            continue
        known[wire] = value

    payload: dict[str, Any] = {"session_id": session_id, "prompt": request.prompt}
    images = known.get("images")
    if isinstance(images, int) and not isinstance(images, bool) and images > 0:
        payload["images"] = images
    else:
        payload["images"] = 1
    if request.model:
        payload["model"] = request.model
    for key, default in PAYLOAD_DEFAULTS.items():
        value = known.get(key)
        payload[key] = default if value is None else value
    negative = known.get("negative_prompt")
    if isinstance(negative, str) and negative.strip():
        payload["negative_prompt"] = negative

    for key, value in extras.items():
        if key in payload or key in RESERVED_FIELDS:
            warn(f"Ignoring parameter '{key}': it would overwrite a request field.")
            continue
        payload[key] = value
    return payload


def post_json(
    url: str,
    payload: Mapping[str, Any],
    headers: Mapping[str, str],
    timeout_s: float,
    *,
    strict: bool = True,
    opener: OpenerDirector | None = None,
) -> dict[str, Any]:
    body = json.dumps(payload).encode("utf-8")
    request_headers = {"Content-Type": "application/json", **dict(headers)}
    req = Request(url, data=body, headers=request_headers, method="POST")
    open_url = opener.open if opener is not None else urlopen
    try:
        with open_url(req, timeout=timeout_s) as response:
            raw = response.read().decode("utf-8", errors="replace")
    except HTTPError as exc:
        raw = exc.read().decode("utf-8", errors="replace") if exc.fp else str(exc)
        error = remote_error(_loads_object(raw) or {})
        if error is not None:
            raise error from exc
        raise AssetClientError(f"API returned status {exc.code}: {raw}") from exc
    except (URLError, OSError) as exc:
        raise AssetClientError(f"request failed: {exc}") from exc

    decoded = _loads_object(raw)
    if decoded is None:
        if strict:
            raise AssetClientError(f"failed to decode response: {raw[:200]!r}")
        return {"raw": raw}
    return decoded


def fetch_bytes(url: str, headers: Mapping[str, str], timeout_s: float) -> bytes:
    req = Request(url, headers=dict(headers), method="GET")
    try:
        with urlopen(req, timeout=timeout_s) as response:
            return response.read()
    except HTTPError as exc:
        raw = exc.read().decode("utf-8", errors="replace") if exc.fp else str(exc)
        raise AssetClientError(f"server returned status {exc.code}: {raw}") from exc
    except (URLError, OSError) as exc:
        raise AssetClientError(f"download request failed: {exc}") from exc


class RequestAborter:
    """Tracks the connections one request opens so another thread can tear them down."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._connections: list[http.client.HTTPConnection] = []
        self._aborted = False

    def opener(self) -> OpenerDirector:
        return build_opener(_TrackedHTTPHandler(self), _TrackedHTTPSHandler(self))

    def connection_class(self, base: type[http.client.HTTPConnection]) -> Callable[..., http.client.HTTPConnection]:
        def build(host: str, **kwargs: Any) -> http.client.HTTPConnection:
            with self._lock:
                if self._aborted:
                    raise OSError("request aborted")
                conn = base(host, **kwargs)
                self._connections.append(conn)
            return conn

        return build

    def abort(self) -> None:
        with self._lock:
            self._aborted = True
            connections = list(self._connections)
        for conn in connections:
            sock = conn.sock
            if sock is not None:
                # shutdown wakes a reader blocked in recv; close alone does not.
                with contextlib.suppress(OSError):
                    sock.shutdown(socket.SHUT_RDWR)
            conn.close()


class _TrackedHTTPHandler(HTTPHandler):
    def __init__(self, aborter: RequestAborter) -> None:
        super().__init__()
        self.aborter = aborter

    def http_open(self, req: Request) -> Any:
        return self.do_open(self.aborter.connection_class(http.client.HTTPConnection), req)


class _TrackedHTTPSHandler(HTTPSHandler):
    def __init__(self, aborter: RequestAborter) -> None:
        super().__init__()
        self.aborter = aborter

    def https_open(self, req: Request) -> Any:
        return self.do_open(
            self.aborter.connection_class(http.client.HTTPSConnection),
            req,
            context=self._context,
        )


def post_json_cancellable(
    url: str,
    payload: Mapping[str, Any],
    headers: Mapping[str, str],
    timeout_s: float,
    cancel: threading.Event | None,
) -> dict[str, Any]:
    """`post_json` that returns early with `GenerationCancelled` once `cancel` is set.

    The POST runs on a worker thread; on cancellation its sockets are shut down
    so the worker unblocks instead of waiting out the response.
    """
    if cancel is None:
        return post_json(url, payload, headers, timeout_s)

    aborter = RequestAborter()
    outcome: dict[str, Any] = {}
    finished = threading.Event()

    def worker() -> None:
        try:
            outcome["body"] = post_json(url, payload, headers, timeout_s, opener=aborter.opener())
        except Exception as exc:
            outcome["error"] = exc
        finally:
            finished.set()

    thread = threading.Thread(target=worker, name="asset-request", daemon=True)
    thread.start()
    while not finished.wait(CANCEL_POLL_S):
        if cancel.is_set():
            aborter.abort()
            raise GenerationCancelled("generation cancelled")
    if "error" in outcome:
        raise outcome["error"]
    return outcome["body"]


def _loads_object(raw: str) -> dict[str, Any] | None:
    try:
        decoded = json.loads(raw)
    except (json.JSONDecodeError, ValueError):
        return None
    return decoded if isinstance(decoded, dict) else None


def image_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, str) and item]


def check_cancelled(cancel: threading.Event | None) -> None:
    if cancel is not None and cancel.is_set():
        raise GenerationCancelled("generation cancelled")


class ProgressSimulator:
    """Background ramp for endpoints that report no intermediate progress.

    Starts at `start`, adds `step` every `interval_s` and holds at `cap` until
    stopped. Use as a context manager so the thread is joined on every exit path.
    """

    def __init__(
        self,
        on_tick: Callable[[float], None],
        interval_s: float = PROGRESS_INTERVAL_S,
        start: float = PROGRESS_START,
        step: float = PROGRESS_STEP,
        cap: float = PROGRESS_CAP,
    ) -> None:
        self.on_tick = on_tick
        self.interval_s = interval_s
        self.start = start
        self.step = step
        self.cap = cap
        self._done = threading.Event()
        self._thread = threading.Thread(target=self._run, name="asset-progress", daemon=True)

    def __enter__(self) -> "ProgressSimulator":
        self._thread.start()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.stop()

    def stop(self) -> None:
        self._done.set()
        if self._thread.is_alive() and threading.current_thread() is not self._thread:
            self._thread.join()

    @property
    def running(self) -> bool:
        return self._thread.is_alive()

    def _run(self) -> None:
        progress = self.start
        while not self._done.wait(self.interval_s):
            progress = min(self.cap, progress + self.step)
            self.on_tick(progress)


class HttpTransport:
    name = "http"

    def __init__(
        self,
        base_url: str,
        headers: Mapping[str, str],
        timeout_s: float,
        log: Callable[[str], None] = _ignore,
        progress_interval_s: float = PROGRESS_INTERVAL_S,
    ) -> None:
        self.base_url = base_url
        self.headers = dict(headers)
        self.timeout_s = timeout_s
        self.log = log
        self.progress_interval_s = progress_interval_s

    def generate_once(
        self,
        session_id: str,
        request: GenerationRequest,
        handle: Any,
        cancel: threading.Event | None = None,
    ) -> GenerationResult:
        payload = build_payload(session_id, request, warn=self.log)
        url = f"{self.base_url}{GENERATE_ENDPOINT}"
        check_cancelled(cancel)

        callback = request.progress_callback
        handle.advance(SessionStatus.STARTING, 0.0)
        if callback is not None:
            callback(0.0, "Starting generation...")

        self.log(f"Request: POST {url}")
        with self._simulate(handle, callback):
            body = post_json_cancellable(url, payload, self.headers, self.timeout_s, cancel)
        check_cancelled(cancel)

        error = remote_error(body)
        if error is not None:
            raise error
        images = image_list(body.get("images"))
        if not images:
            raise EmptyResultError("generation finished without returning any images")
        info = body.get("info")
        result = GenerationResult(
            session_id=session_id,
            image_paths=images,
            metadata=dict(info) if isinstance(info, dict) else {},
        )
        handle.complete(result)
        if callback is not None:
            callback(1.0, "Generation completed")
        return result

    def _simulate(self, handle: Any, callback: ProgressCallback | None) -> ContextManager[Any]:
        if callback is None:
            return contextlib.nullcontext()

        def on_tick(progress: float) -> None:
            handle.advance(SessionStatus.GENERATING, progress)
            callback(progress, "Generating...")

        return ProgressSimulator(on_tick, interval_s=self.progress_interval_s)
