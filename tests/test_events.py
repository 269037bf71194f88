from __future__ import annotations

import json
from pathlib import Path

from asset_engine.runs.events import EventWriter, NullEventWriter


def test_event_writer(tmp_path: Path) -> None:
    path = tmp_path / "logs" / "events.jsonl"
    writer = EventWriter(path, "client-123")
    writer.emit("generation_started", prompt="a castle", session_id="secret")
    writer.emit("generation_completed", images=2)
    lines = path.read_text(encoding="utf-8").strip().splitlines()
    assert len(lines) == 2
    payload = json.loads(lines[0])
    assert payload["type"] == "generation_started"
    assert payload["client_id"] == "client-123"
    assert "ts" in payload
    assert payload["prompt"] == "a castle"
    assert payload["session_id"] == "<omitted>"
    assert json.loads(lines[1])["images"] == 2


def test_null_writer_touches_nothing(tmp_path: Path) -> None:
    event = NullEventWriter().emit("image_saved", path="x.png")
    assert event == {"type": "image_saved", "path": "x.png"}
    assert list(tmp_path.iterdir()) == []
