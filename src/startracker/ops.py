"""Operational utilities for Star Tracker: event log and parent audit trail."""

from __future__ import annotations

import json
import threading
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional


class StructuredLogger:
    """Write JSON lines log entries for parent inspection."""

    def __init__(self, *, path: Path | None = None, max_entries: int = 1000) -> None:
        self.path = path
        self._max_entries = max_entries
        self._entries: list[dict] = []
        self._lock = threading.Lock()

    def log(self, event_type: str, **fields: object) -> dict:
        entry = {"timestamp": datetime.now().isoformat(), "event": event_type, **fields}
        with self._lock:
            self._entries.append(entry)
            if len(self._entries) > self._max_entries:
                del self._entries[: len(self._entries) - self._max_entries]
            if self.path:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                with self.path.open("a", encoding="utf-8") as handle:
                    handle.write(json.dumps(entry, default=str) + "\n")
        return entry

    def tail(self, limit: int = 50, *, event: Optional[str] = None) -> tuple[dict, ...]:
        entries = self._entries
        if event is not None:
            entries = [entry for entry in entries if entry["event"] == event]
        return tuple(entries[-limit:])


@dataclass(slots=True)
class AuditEvent:
    """A parent action that changed stars, redemptions or the catalog."""

    actor: str
    action: str
    target: str
    child_id: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.now)
    details: Dict[str, Any] = field(default_factory=dict)


class AuditLog:
    """Keep parent actions and mirror each one into the structured log."""

    def __init__(self, logger: StructuredLogger | None = None) -> None:
        self._logger = logger
        self._entries: list[AuditEvent] = []

    def record(
        self,
        actor: str,
        action: str,
        target: str,
        *,
        child_id: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> AuditEvent:
        event = AuditEvent(
            actor=actor,
            action=action,
            target=target,
            child_id=child_id,
            details=dict(details or {}),
        )
        self._entries.append(event)
        if self._logger is not None:
            self._logger.log("audit", actor=actor, action=action, target=target, child_id=child_id, details=event.details)
        return event

    def entries(
        self,
        *,
        action: str | None = None,
        target: str | None = None,
        child_id: str | None = None,
    ) -> tuple[AuditEvent, ...]:
        records = self._entries
        if action is not None:
            records = [entry for entry in records if entry.action == action]
        if target is not None:
            records = [entry for entry in records if entry.target == target]
        if child_id is not None:
            records = [entry for entry in records if entry.child_id == child_id]
        return tuple(records)


__all__ = ["AuditEvent", "AuditLog", "StructuredLogger"]
