import json
from pathlib import Path

import pytest

from av1_link.status_log import StatusLog


def test_record_and_tail():
    log = StatusLog(max_entries=3)
    for index in range(5):
        log.record("call", "event", f"message {index}")
    entries = log.tail()
    assert [entry.message for entry in entries] == ["message 2", "message 3", "message 4"]
    assert log.latest is entries[-1]


def test_tail_filters_by_category_and_limit():
    log = StatusLog()
    log.record("call", "outgoing", "Calling")
    log.record("signaling", "connected", "Signaling connected")
    log.record("call", "active", "Call connected")
    assert [entry.event for entry in log.tail(category="call")] == ["outgoing", "active"]
    assert [entry.event for entry in log.tail(1)] == ["active"]


def test_metadata_drops_empty_values():
    log = StatusLog()
    entry = log.record("call", "ended", "Call ended", metadata={"phase": "ended", "error": None})
    assert entry.to_dict()["metadata"] == {"phase": "ended"}
    bare = log.record("call", "ended", "Call ended", metadata={"error": None})
    assert "metadata" not in bare.to_dict()


def test_entries_persisted_as_json_lines(tmp_path: Path):
    path = tmp_path / "logs" / "status.jsonl"
    log = StatusLog(path)
    log.record("camera", "started", "Camera ready", level="info")
    log.record("call", "negotiation_failed", "Call failed", level="error")
    lines = path.read_text().splitlines()
    assert [json.loads(line)["level"] for line in lines] == ["info", "error"]


def test_invalid_capacity_rejected():
    with pytest.raises(ValueError):
        StatusLog(max_entries=0)
