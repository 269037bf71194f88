"""Cached remote session identifier with lazy creation and expiry retry."""

from __future__ import annotations

import threading
from typing import Callable, TypeVar

from .base import SessionExpiredError

T = TypeVar("T")

MAX_RETRIES = 1


def _ignore(message: str) -> None:
    return None


class SessionManager:
    """Holds the single cached session id shared by every remote call.

    `create` performs the remote GetNewSession call. Creation is serialized so
    concurrent callers that find no cached id trigger exactly one request.
    """

    def __init__(
        self,
        create: Callable[[], str],
        lock: threading.Lock | None = None,
        log: Callable[[str], None] = _ignore,
    ) -> None:
        self._create = create
        self._lock = lock or threading.Lock()
        self._create_lock = threading.Lock()
        self._session_id = ""
        self.log = log

    @property
    def current(self) -> str:
        with self._lock:
            return self._session_id

    def ensure(self) -> str:
        with self._lock:
            if self._session_id:
                return self._session_id
        with self._create_lock:
            with self._lock:
                if self._session_id:
                    return self._session_id
            session_id = self._create()
            with self._lock:
                self._session_id = session_id
            self.log(f"Created new session: {session_id}")
            return session_id

    def invalidate(self, session_id: str) -> bool:
        """Forget `session_id` if it is still the cached one."""
        with self._lock:
            if self._session_id and self._session_id == session_id:
                self._session_id = ""
                return True
            return False

    def clear(self) -> None:
        with self._lock:
            self._session_id = ""

    def call(self, operation: Callable[[str], T]) -> T:
        """Run `operation(session_id)`, refreshing the session once on expiry."""
        attempt = 0
        while True:
            session_id = self.ensure()
            try:
                return operation(session_id)
            except SessionExpiredError:
                if attempt >= MAX_RETRIES:
                    raise
                attempt += 1
                self.log("Session expired, creating a new session and retrying")
                self.invalidate(session_id)
