from __future__ import annotations

import json
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import Any, Callable, Iterator

import pytest

from asset_engine.config import ClientConfig

Route = Callable[[dict[str, Any]], "tuple[int, Any]"]


class FakeSwarmServer:
    """Tiny HTTP server; routes map a path to `handler(body) -> (status, payload)`.

    dict payloads are sent as JSON, bytes and str as-is.
    """

    def __init__(self) -> None:
        self.routes: dict[str, Route] = {}
        self.requests: list[dict[str, Any]] = []
        self._lock = threading.Lock()
        self._httpd = ThreadingHTTPServer(("127.0.0.1", 0), self._handler_class())
        self._thread = threading.Thread(target=self._httpd.serve_forever, daemon=True)

    @property
    def url(self) -> str:
        host, port = self._httpd.server_address[:2]
        return f"http://{host}:{port}"

    def start(self) -> None:
        self._thread.start()

    def stop(self) -> None:
        self._httpd.shutdown()
        self._httpd.server_close()

    def calls(self, path: str) -> list[dict[str, Any]]:
        with self._lock:
            return [req for req in self.requests if req["path"] == path]

    def sessions(self, *ids: str) -> None:
        """Serve GetNewSession, handing out `ids` in order."""
        remaining = list(ids)

        def handler(body: dict[str, Any]) -> tuple[int, Any]:
            return 200, {"session_id": remaining.pop(0)}

        self.routes["/API/GetNewSession"] = handler

    def _handler_class(self) -> type[BaseHTTPRequestHandler]:
        server = self

        class Handler(BaseHTTPRequestHandler):
            def log_message(self, format: str, *args: Any) -> None:
                return None

            def _dispatch(self, body: dict[str, Any]) -> None:
                with server._lock:
                    server.requests.append(
                        {"method": self.command, "path": self.path, "body": body, "headers": dict(self.headers)}
                    )
                route = server.routes.get(self.path)
                if route is None:
                    status, payload = 404, b"not found"
                else:
                    status, payload = route(body)
                if isinstance(payload, dict):
                    raw = json.dumps(payload).encode("utf-8")
                    content_type = "application/json"
                elif isinstance(payload, str):
                    raw = payload.encode("utf-8")
                    content_type = "text/plain"
                else:
                    raw = payload
                    content_type = "application/octet-stream"
                self.send_response(status)
                self.send_header("Content-Type", content_type)
                self.send_header("Content-Length", str(len(raw)))
                self.end_headers()
                self.wfile.write(raw)

            def do_POST(self) -> None:
                length = int(self.headers.get("Content-Length") or 0)
                raw = self.rfile.read(length) if length else b""
                try:
                    body = json.loads(raw) if raw else {}
                except json.JSONDecodeError:
                    body = {"raw": raw.decode("utf-8", errors="replace")}
                self._dispatch(body)

            def do_GET(self) -> None:
                self._dispatch({})

        return Handler


@pytest.fixture
def swarm_server() -> Iterator[FakeSwarmServer]:
    server = FakeSwarmServer()
    server.start()
    try:
        yield server
    finally:
        server.stop()


@pytest.fixture
def client_config(tmp_path: Path, swarm_server: FakeSwarmServer) -> ClientConfig:
    return ClientConfig(
        base_url=swarm_server.url,
        api_key="test-key",
        state_path=tmp_path / ".asset-generator-state.json",
        http_timeout_s=10.0,
        ws_open_timeout_s=5.0,
    )
