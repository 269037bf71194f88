from __future__ import annotations

import threading
import time

import pytest

from asset_engine.client.base import AssetClientError, SessionExpiredError
from asset_engine.client.session import SessionManager


def _counter(*ids: str):
    remaining = list(ids)
    calls: list[str] = []

    def create() -> str:
        time.sleep(0.05)
        calls.append(remaining[0])
        return remaining.pop(0)

    return create, calls


def test_ensure_creates_once_under_concurrency() -> None:
    create, calls = _counter("s1", "s2")
    manager = SessionManager(create)
    results: list[str] = []
    threads = [threading.Thread(target=lambda: results.append(manager.ensure())) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    assert calls == ["s1"]
    assert results == ["s1"] * 8


def test_call_retries_exactly_once_on_expiry() -> None:
    create, calls = _counter("s1", "s2")
    manager = SessionManager(create)
    seen: list[str] = []

    def operation(session_id: str) -> str:
        seen.append(session_id)
        if session_id == "s1":
            raise SessionExpiredError("expired")
        return "ok"

    assert manager.call(operation) == "ok"
    assert seen == ["s1", "s2"]
    assert manager.current == "s2"


def test_call_gives_up_after_one_retry() -> None:
    create, calls = _counter("s1", "s2", "s3")
    manager = SessionManager(create)

    def operation(session_id: str) -> str:
        raise SessionExpiredError(f"expired {session_id}")

    with pytest.raises(SessionExpiredError, match="expired s2"):
        manager.call(operation)
    assert calls == ["s1", "s2"]


def test_other_errors_are_not_retried() -> None:
    create, calls = _counter("s1", "s2")
    manager = SessionManager(create)
    attempts: list[str] = []

    def operation(session_id: str) -> str:
        attempts.append(session_id)
        raise AssetClientError("boom")

    with pytest.raises(AssetClientError, match="boom"):
        manager.call(operation)
    assert attempts == ["s1"]
    assert manager.current == "s1"


def test_invalidate_only_matching_id() -> None:
    create, _ = _counter("s1")
    manager = SessionManager(create)
    manager.ensure()
    assert manager.invalidate("other") is False
    assert manager.current == "s1"
    assert manager.invalidate("s1") is True
    assert manager.current == ""
