"""Value types shared by the backend resolver, handles and router."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any


class BackendKind(str, Enum):
    LOCAL = "local"
    GLOBAL = "global"
    NATIVE = "native"


@dataclass(slots=True, frozen=True)
class GuestCredentials:
    """Account used by VBoxManage guestcontrol on native VMs."""

    username: str = "vagrant"
    password: str = "vagrant"

    def as_dict(self) -> dict[str, str]:
        return {"username": self.username, "password": self.password}


@dataclass(slots=True)
class GlobalMachine:
    """One row of ``vagrant global-status --prune``."""

    id: str
    name: str
    provider: str
    state: str
    directory: str


@dataclass(slots=True)
class VMStatus:
    name: str
    backend: BackendKind
    state: str
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def running(self) -> bool:
        return self.state == "running"

    def as_dict(self) -> dict[str, Any]:
        return {"name": self.name, "backend": self.backend.value, "state": self.state}


@dataclass(slots=True)
class VMSummary:
    name: str
    backend: BackendKind
    state: str | None = None
    directory: Path | str | None = None
    id: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "backend": self.backend.value,
            "state": self.state,
            "directory": str(self.directory) if self.directory is not None else None,
            "id": self.id,
        }


@dataclass(slots=True)
class ProcessInfo:
    """One parsed row of ``ps aux`` inside a guest."""

    user: str
    pid: int
    cpu: float
    memory: float
    command: str

    def as_dict(self) -> dict[str, Any]:
        return {
            "user": self.user,
            "pid": self.pid,
            "cpu": self.cpu,
            "memory": self.memory,
            "command": self.command,
        }


__all__ = [
    "BackendKind",
    "GuestCredentials",
    "GlobalMachine",
    "VMStatus",
    "VMSummary",
    "ProcessInfo",
]
