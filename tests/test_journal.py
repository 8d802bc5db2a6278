from __future__ import annotations

import asyncio
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import pytest

from conftest import GuestShell, result
from vbox_mcp.backends import CommandRouter
from vbox_mcp.storage import ActivityJournal, JournalUnavailableError, stream_id_for
from vbox_mcp.tracking import BackgroundTaskRegistry


@dataclass
class _Record:
    document: str
    metadata: dict[str, Any]
    id: str


class StubCollection:
    def __init__(self) -> None:
        self.records: list[_Record] = []

    def add(self, *, documents, metadatas, ids) -> None:  # type: ignore[override]
        for document, metadata, record_id in zip(documents, metadatas, ids):
            self.records.append(_Record(document=document, metadata=dict(metadata), id=record_id))

    def get(self, *, ids=None, where=None, limit=None):  # type: ignore[override]
        filtered = self.records
        if where:
            for key, value in where.items():
                filtered = [record for record in filtered if record.metadata.get(key) == value]
        if limit is not None:
            filtered = filtered[:limit]
        return {
            "ids": [record.id for record in filtered],
            "documents": [record.document for record in filtered],
            "metadatas": [record.metadata for record in filtered],
        }


class StubClient:
    def __init__(self) -> None:
        self.collections = defaultdict(StubCollection)

    def get_or_create_collection(self, name: str) -> StubCollection:
        return self.collections[name]


class TickingClock:
    def __init__(self) -> None:
        self.now = datetime(2025, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        self.now += timedelta(seconds=1)
        return self.now


def _journal(tmp_path: Path, client: StubClient | None = None, clock=None) -> ActivityJournal:
    client = client or StubClient()
    return ActivityJournal(tmp_path, client_factory=lambda: client, clock=clock or TickingClock())


def test_stream_ids() -> None:
    assert stream_id_for("task_status", {"task_id": "task_1_abc"}) == "task_1_abc"
    assert stream_id_for("operation_started", {"operation_id": "op_1_abc"}) == "op_1_abc"
    assert (
        stream_id_for("transaction", {"vm_name": "dev", "snapshot_name": "pre-atomic-1"})
        == "transaction::dev::pre-atomic-1"
    )
    assert stream_id_for("note", {}).startswith("note::")


def test_record_event_keeps_only_scalar_metadata(tmp_path: Path) -> None:
    journal = _journal(tmp_path)

    event = journal.record_event(
        stream_id="op_1",
        event_type="operation_started",
        body={"status": "running"},
        metadata={"vm_name": "dev", "status": None, "tags": ["a"], "pid": 42, "ok": True},
    )

    assert event.metadata["vm_name"] == "dev"
    assert event.metadata["pid"] == 42
    assert event.metadata["ok"] is True
    assert "status" not in event.metadata
    assert "tags" not in event.metadata
    assert event.metadata["sequence"] == 1
    assert event.document == '{"status": "running"}'


def test_fetch_events_in_order(tmp_path: Path) -> None:
    journal = _journal(tmp_path)
    for status in ("running", "completed"):
        journal.record_tracked("task_status", {"task_id": "task_1", "vm_name": "dev", "status": status})
    journal.record_tracked("task_status", {"task_id": "task_2", "vm_name": "dev", "status": "running"})

    events = journal.fetch_events("task_1")

    assert [event.metadata["status"] for event in events] == ["running", "completed"]
    assert [event.metadata["sequence"] for event in events] == [1, 2]
    assert events[0].metadata["kind"] == "task"


def test_search_events_filters_and_limits(tmp_path: Path) -> None:
    journal = _journal(tmp_path)
    journal.record_tracked("operation_started", {"operation_id": "op_1", "vm_name": "dev", "command": "wget big.iso"})
    journal.record_tracked("operation_started", {"operation_id": "op_2", "vm_name": "web", "command": "make"})
    journal.record_tracked("operation_finished", {"operation_id": "op_1", "vm_name": "dev", "status": "completed"})

    by_keyword = journal.search_events("BIG.ISO")
    by_vm = journal.search_events(filters={"vm_name": "dev"})
    latest = journal.search_events(limit=1)

    assert [event.stream_id for event in by_keyword] == ["op_1"]
    assert len(by_vm) == 2
    assert latest[0].event_type == "operation_finished"


def test_replay_tracked_returns_latest_state(tmp_path: Path) -> None:
    journal = _journal(tmp_path)
    journal.record_tracked("task_registered", {"task_id": "task_1", "vm_name": "dev", "status": "running", "command": "make"})
    journal.record_tracked("operation_started", {"operation_id": "op_1", "vm_name": "web", "status": "running"})
    journal.record_tracked("task_status", {"task_id": "task_1", "vm_name": "dev", "status": "failed", "command": "make"})
    journal.record_tracked(
        "transaction",
        {"vm_name": "dev", "snapshot_name": "pre-atomic-1", "status": "rolled_back", "command": "rm -rf /opt"},
    )

    records = journal.replay_tracked()
    dev_only = journal.replay_tracked(vm_name="dev")

    assert [record.stream_id for record in records] == ["task_1", "op_1", "transaction::dev::pre-atomic-1"]
    assert records[0].kind == "task"
    assert records[0].status == "failed"
    assert records[0].state["command"] == "make"
    assert records[0].first_seen < records[0].last_seen
    assert records[1].kind == "operation"
    assert records[2].kind == "transaction"
    assert [record.stream_id for record in dev_only] == ["task_1", "transaction::dev::pre-atomic-1"]
    assert records[0].as_dict()["status"] == "failed"


def test_registry_events_flow_into_journal(tmp_path: Path, router: CommandRouter, guest: GuestShell) -> None:
    journal = _journal(tmp_path)
    registry = BackgroundTaskRegistry(router, on_event=journal.record_tracked)
    guest.on("nohup", result("77\n"))
    guest.on("kill -0 77", result("STOPPED\n"))
    guest.on("2>/dev/null || { wait", result("0\n"))

    registration = asyncio.run(registry.register("dev", "echo hi"))
    asyncio.run(registry.refresh(registration.task_id))

    events = journal.fetch_events(registration.task_id)
    replayed = journal.replay_tracked(vm_name="dev")
    assert [event.event_type for event in events] == ["task_registered", "task_status"]
    assert replayed[0].status == "completed"
    assert replayed[0].state["pid"] == 77


def test_missing_client_surfaces_unavailable(tmp_path: Path) -> None:
    def factory():
        raise JournalUnavailableError("chromadb package is not installed")

    journal = ActivityJournal(tmp_path, client_factory=factory)

    with pytest.raises(JournalUnavailableError):
        journal.ping()
