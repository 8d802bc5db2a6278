"""Data models for the activity journal."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any


@dataclass(slots=True)
class JournalEvent:
    """Represents a stored event in the journal collection."""

    id: str
    stream_id: str
    event_type: str
    document: str
    metadata: dict[str, Any]
    timestamp: datetime

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "stream_id": self.stream_id,
            "event_type": self.event_type,
            "document": self.document,
            "metadata": self.metadata,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(slots=True)
class ReplayedRecord:
    """Latest journaled state of one task, operation or transaction stream."""

    stream_id: str
    kind: str
    vm_name: str | None
    status: str | None
    first_seen: datetime
    last_seen: datetime
    state: dict[str, Any]

    def as_dict(self) -> dict[str, Any]:
        return {
            "stream_id": self.stream_id,
            "kind": self.kind,
            "vm_name": self.vm_name,
            "status": self.status,
            "first_seen": self.first_seen.isoformat(),
            "last_seen": self.last_seen.isoformat(),
            "state": self.state,
        }


__all__ = ["JournalEvent", "ReplayedRecord"]
