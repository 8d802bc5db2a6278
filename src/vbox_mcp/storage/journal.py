"""Chroma-backed activity journal for tasks, operations and transactions."""

from __future__ import annotations

import json
import logging
import uuid
from collections import defaultdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Protocol

from .models import JournalEvent, ReplayedRecord

logger = logging.getLogger(__name__)

_METADATA_TYPES = (str, int, float, bool)
_STREAM_KEYS = ("task_id", "operation_id")


class JournalUnavailableError(RuntimeError):
    """Raised when the Chroma client cannot be constructed."""


class CollectionProtocol(Protocol):
    """Protocol for the minimal Chroma collection API used by the journal."""

    def add(
        self,
        *,
        documents: Iterable[str],
        metadatas: Iterable[dict[str, Any]],
        ids: Iterable[str],
    ) -> None:
        ...

    def get(
        self,
        *,
        ids: Iterable[str] | None = None,
        where: dict[str, Any] | None = None,
        limit: int | None = None,
    ) -> dict[str, list[Any]]:
        ...


class ClientProtocol(Protocol):
    def get_or_create_collection(self, name: str) -> CollectionProtocol:
        ...


def stream_id_for(event_type: str, payload: dict[str, Any]) -> str:
    for key in _STREAM_KEYS:
        value = payload.get(key)
        if value:
            return str(value)
    if event_type == "transaction":
        return f"transaction::{payload.get('vm_name', 'unknown')}::{payload.get('snapshot_name', '')}"
    return f"{event_type}::{uuid.uuid4().hex[:8]}"


def _kind_for(stream_id: str, event_type: str) -> str:
    if stream_id.startswith("task_"):
        return "task"
    if stream_id.startswith("op_"):
        return "operation"
    if event_type == "transaction":
        return "transaction"
    return event_type


class ActivityJournal:
    """Append-only record of tracked work, persisted in a ChromaDB collection."""

    def __init__(
        self,
        path: Path,
        *,
        collection_name: str = "vbox_activity",
        client_factory: Callable[[], ClientProtocol] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._path = Path(path)
        self._collection_name = collection_name
        self._client_factory = client_factory or self._default_client_factory
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._client: ClientProtocol | None = None
        self._collection: CollectionProtocol | None = None
        self._counters: dict[str, int] = defaultdict(int)

    @property
    def path(self) -> Path:
        return self._path

    def _default_client_factory(self) -> ClientProtocol:
        try:
            import chromadb
        except ImportError as exc:  # pragma: no cover - depends on environment
            raise JournalUnavailableError("chromadb package is not installed") from exc

        self._path.mkdir(parents=True, exist_ok=True)
        return chromadb.PersistentClient(path=str(self._path))

    def _ensure_collection(self) -> CollectionProtocol:
        if self._collection is None:
            client = self._client or self._client_factory()
            self._client = client
            self._collection = client.get_or_create_collection(self._collection_name)
        return self._collection

    def _convert_result(self, result: dict[str, list[Any]]) -> list[JournalEvent]:
        events: list[JournalEvent] = []
        ids = result.get("ids", [])
        documents = result.get("documents", [])
        metadatas = result.get("metadatas", [])
        for event_id, document, metadata in zip(ids, documents, metadatas):
            timestamp_raw = metadata.get("timestamp")
            timestamp = (
                datetime.fromisoformat(timestamp_raw)
                if isinstance(timestamp_raw, str)
                else self._clock()
            )
            events.append(
                JournalEvent(
                    id=event_id,
                    stream_id=metadata.get("stream_id", ""),
                    event_type=metadata.get("event_type", ""),
                    document=document,
                    metadata=metadata,
                    timestamp=timestamp,
                )
            )
        events.sort(key=lambda event: (event.timestamp, event.metadata.get("sequence", 0)))
        return events

    def ping(self) -> bool:
        """Verify that the underlying collection can be obtained."""

        self._ensure_collection()
        return True

    def record_event(
        self,
        *,
        stream_id: str,
        event_type: str,
        body: Any,
        metadata: dict[str, Any] | None = None,
    ) -> JournalEvent:
        collection = self._ensure_collection()
        counter = self._counters[stream_id] = self._counters[stream_id] + 1
        event_id = f"{stream_id}:{uuid.uuid4().hex}"
        timestamp = self._clock()

        document = body if isinstance(body, str) else json.dumps(body, default=str)
        record_metadata: dict[str, Any] = {
            "stream_id": stream_id,
            "event_type": event_type,
            "timestamp": timestamp.isoformat(),
            "sequence": counter,
        }
        # chroma metadata only accepts scalars
        for key, value in (metadata or {}).items():
            if isinstance(value, _METADATA_TYPES):
                record_metadata[key] = value

        collection.add(documents=[document], metadatas=[record_metadata], ids=[event_id])
        return JournalEvent(
            id=event_id,
            stream_id=stream_id,
            event_type=event_type,
            document=document,
            metadata=record_metadata,
            timestamp=timestamp,
        )

    def record_tracked(self, event_type: str, payload: dict[str, Any]) -> JournalEvent:
        """Listener for the task registry, operation tracker and transaction runner."""

        stream_id = stream_id_for(event_type, payload)
        return self.record_event(
            stream_id=stream_id,
            event_type=event_type,
            body=payload,
            metadata={
                "kind": _kind_for(stream_id, event_type),
                "vm_name": payload.get("vm_name"),
                "status": payload.get("status"),
            },
        )

    def fetch_events(self, stream_id: str, *, limit: int | None = None) -> list[JournalEvent]:
        collection = self._ensure_collection()
        result = collection.get(where={"stream_id": stream_id}, limit=limit)
        return self._convert_result(result)

    def search_events(
        self,
        query: str | None = None,
        *,
        filters: dict[str, Any] | None = None,
        limit: int | None = None,
    ) -> list[JournalEvent]:
        collection = self._ensure_collection()
        result = collection.get(where=filters or None)
        events = self._convert_result(result)
        if query:
            needle = query.lower()
            events = [
                event
                for event in events
                if needle in event.document.lower()
                or any(needle in str(value).lower() for value in event.metadata.values())
            ]
        return events[-limit:] if limit else events

    def replay_tracked(self, *, vm_name: str | None = None) -> list[ReplayedRecord]:
        """Rebuild the latest journaled state of every task, operation and transaction."""

        filters = {"vm_name": vm_name} if vm_name else None
        streams: dict[str, list[JournalEvent]] = defaultdict(list)
        for event in self.search_events(filters=filters):
            streams[event.stream_id].append(event)

        records: list[ReplayedRecord] = []
        for stream_id, events in streams.items():
            latest = events[-1]
            try:
                state = json.loads(latest.document)
            except json.JSONDecodeError:
                state = {"document": latest.document}
            records.append(
                ReplayedRecord(
                    stream_id=stream_id,
                    kind=latest.metadata.get("kind") or _kind_for(stream_id, latest.event_type),
                    vm_name=latest.metadata.get("vm_name"),
                    status=latest.metadata.get("status") or state.get("status"),
                    first_seen=events[0].timestamp,
                    last_seen=latest.timestamp,
                    state=state,
                )
            )
        records.sort(key=lambda record: record.first_seen)
        return records


__all__ = [
    "ActivityJournal",
    "JournalUnavailableError",
    "stream_id_for",
]
