"""Registry indexed by tracked id and by VM name."""

from __future__ import annotations

from collections import defaultdict
from datetime import datetime
from typing import Generic, Iterator, Protocol, TypeVar


class Tracked(Protocol):
    @property
    def id(self) -> str: ...

    vm_name: str
    started_at: datetime


T = TypeVar("T", bound=Tracked)


class TrackedRegistry(Generic[T]):
    """Owns every tracked entry; the id map and the VM index change together."""

    def __init__(self) -> None:
        self._entries: dict[str, T] = {}
        self._by_vm: dict[str, set[str]] = defaultdict(set)

    def add(self, entry: T) -> T:
        existing = self._entries.get(entry.id)
        if existing is not None:
            self._unindex(existing)
        self._entries[entry.id] = entry
        self._by_vm[entry.vm_name].add(entry.id)
        return entry

    def get(self, entry_id: str) -> T | None:
        return self._entries.get(entry_id)

    def remove(self, entry_id: str) -> T | None:
        entry = self._entries.pop(entry_id, None)
        if entry is not None:
            self._unindex(entry)
        return entry

    def _unindex(self, entry: T) -> None:
        ids = self._by_vm.get(entry.vm_name)
        if ids is None:
            return
        ids.discard(entry.id)
        if not ids:
            del self._by_vm[entry.vm_name]

    def ids_for_vm(self, vm_name: str) -> set[str]:
        return set(self._by_vm.get(vm_name, ()))

    def vm_names(self) -> list[str]:
        return sorted(self._by_vm)

    def values(self, vm_name: str | None = None) -> list[T]:
        if vm_name is None:
            entries = list(self._entries.values())
        else:
            entries = [self._entries[entry_id] for entry_id in self._by_vm.get(vm_name, ())]
        return sorted(entries, key=lambda entry: entry.started_at)

    def __contains__(self, entry_id: object) -> bool:
        return entry_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[T]:
        return iter(self.values())


__all__ = ["TrackedRegistry"]
