"""User-visible status reports for call and signaling events."""

from __future__ import annotations

import json
import logging
import time
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Deque

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class StatusEntry:
    """A status report shown to the user."""

    timestamp: float
    category: str
    event: str
    message: str
    level: str = "info"
    metadata: dict[str, object | None] | None = None

    def to_dict(self) -> dict[str, object | None]:
        payload: dict[str, object | None] = {
            "timestamp": self.timestamp,
            "category": self.category,
            "event": self.event,
            "message": self.message,
            "level": self.level,
        }
        if self.metadata:
            payload["metadata"] = self.metadata
        return payload


class StatusLog:
    """Bounded status history with optional JSONL persistence.

    Every component runs on the same event loop, so no locking is needed.
    """

    def __init__(
        self,
        path: Path | str | None = None,
        *,
        max_entries: int = 200,
    ) -> None:
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self._path: Path | None = Path(path) if path is not None else None
        self._entries: Deque[StatusEntry] = deque(maxlen=max_entries)
        if self._path is not None:
            try:
                self._path.parent.mkdir(parents=True, exist_ok=True)
            except OSError as exc:  # pragma: no cover - filesystem errors are rare
                logger.warning("Unable to prepare status log directory: %s", exc)
                self._path = None

    @property
    def latest(self) -> StatusEntry | None:
        return self._entries[-1] if self._entries else None

    def record(
        self,
        category: str,
        event: str,
        message: str,
        *,
        level: str = "info",
        metadata: dict[str, object | None] | None = None,
    ) -> StatusEntry:
        cleaned = {key: value for key, value in (metadata or {}).items() if value is not None}
        entry = StatusEntry(
            timestamp=time.time(),
            category=category.strip() or "general",
            event=event,
            message=message,
            level=level,
            metadata=cleaned or None,
        )
        self._entries.append(entry)
        self._append_persistent(entry)
        return entry

    def tail(self, limit: int | None = None, *, category: str | None = None) -> list[StatusEntry]:
        entries = list(self._entries)
        if category:
            entries = [entry for entry in entries if entry.category == category.strip()]
        if limit is not None:
            limit_value = max(1, int(limit))
            entries = entries[-limit_value:]
        return entries

    def _append_persistent(self, entry: StatusEntry) -> None:
        if self._path is None:
            return
        try:
            with self._path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(entry.to_dict(), separators=(",", ":")) + "\n")
        except OSError as exc:  # pragma: no cover - best effort logging
            logger.warning("Unable to persist status log: %s", exc)


__all__ = ["StatusEntry", "StatusLog"]
