"""Advisory on-disk mirror of in-flight generation sessions.

The state file only makes previously-known activity visible to a later
status query; it never re-establishes remote work and is never authoritative.
Every read, parse or write failure is reported through `log` and swallowed.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any, Callable, Iterable

from ..utils import now_utc, now_utc_iso, parse_iso, write_json_atomic
from .base import Session, SessionStatus

DEFAULT_MAX_AGE = timedelta(hours=24)


def _ignore(message: str) -> None:
    return None


@dataclass
class StateStore:
    path: Path
    log: Callable[[str], None] = field(default=_ignore, repr=False)

    def _read(self) -> dict[str, Any] | None:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            self.log(f"Could not read state file: {exc}")
            return None
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as exc:
            self.log(f"Could not parse state file: {exc}")
            return None
        if not isinstance(payload, dict):
            self.log("Could not parse state file: top-level value is not an object")
            return None
        sessions = payload.get("sessions")
        if not isinstance(sessions, dict):
            payload["sessions"] = {}
        return payload

    def _write(self, payload: dict[str, Any]) -> bool:
        try:
            write_json_atomic(self.path, payload)
        except (OSError, TypeError, ValueError) as exc:
            self.log(f"Could not write state file: {exc}")
            return False
        return True

    def load(self) -> dict[str, Session]:
        """Sessions with a non-terminal persisted status, keyed as on disk."""
        payload = self._read()
        if payload is None:
            return {}
        loaded: dict[str, Session] = {}
        for key, record in payload["sessions"].items():
            session = _session_from_record(str(key), record)
            if session is not None and session.status.is_active:
                loaded[session.key] = session
        if payload["sessions"]:
            self.log(f"Loaded {len(loaded)} session(s) from state file")
        return loaded

    def save(self, sessions: Iterable[Session]) -> bool:
        stamp = now_utc_iso()
        records = {
            session.key: _record_from_session(session, stamp)
            for session in sessions
            if session.status.is_active
        }
        written = self._write({"sessions": records, "updated_at": stamp})
        if written and records:
            self.log(f"Saved {len(records)} session(s) to state file")
        return written

    def cleanup(self, max_age: timedelta = DEFAULT_MAX_AGE) -> int:
        """Drop stale or terminal records; rewrites the file only if one was removed."""
        payload = self._read()
        if payload is None:
            return 0
        cutoff = now_utc() - max_age
        kept: dict[str, Any] = {}
        for key, record in payload["sessions"].items():
            session = _session_from_record(str(key), record)
            if session is None or session.start_time < cutoff or not session.status.is_active:
                continue
            kept[key] = record
        removed = len(payload["sessions"]) - len(kept)
        if removed:
            payload["sessions"] = kept
            payload["updated_at"] = now_utc_iso()
            if self._write(payload):
                self.log("Cleaned up old sessions from state file")
        return removed


def _record_from_session(session: Session, updated_at: str) -> dict[str, Any]:
    return {
        "id": session.id,
        "status": session.status.value,
        "progress": session.progress,
        "start_time": session.start_time.isoformat(),
        "updated_at": updated_at,
    }


def _session_from_record(key: str, record: Any) -> Session | None:
    if not isinstance(record, dict):
        return None
    try:
        status = SessionStatus(str(record.get("status") or ""))
    except ValueError:
        return None
    start_time = parse_iso(record.get("start_time"))
    if start_time is None:
        return None
    try:
        progress = float(record.get("progress") or 0.0)
    except (TypeError, ValueError):
        progress = 0.0
    return Session(
        key=key,
        id=str(record.get("id") or key),
        status=status,
        progress=progress,
        start_time=start_time,
    )
