"""Records kept by the task registry and the operation tracker."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from ..backends.models import GuestCredentials


class TaskStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    UNKNOWN = "unknown"


TASK_TERMINAL = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED})


class OperationStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


OPERATION_TERMINAL = frozenset(
    {
        OperationStatus.COMPLETED,
        OperationStatus.FAILED,
        OperationStatus.TIMEOUT,
        OperationStatus.CANCELLED,
    }
)
OPERATION_ACTIVE = frozenset({OperationStatus.PENDING, OperationStatus.RUNNING})


class OperationType(str, Enum):
    DOWNLOAD = "download"
    UPLOAD = "upload"
    COMPILE = "compile"
    INSTALL = "install"
    EXTRACT = "extract"
    COMMAND = "command"
    CUSTOM = "custom"


def format_bytes(value: float | int | None) -> str:
    if value is None:
        return "unknown"
    size = float(value)
    for unit in ("B", "KB", "MB", "GB"):
        if abs(size) < 1024 or unit == "GB":
            return f"{size:.0f} {unit}" if unit == "B" else f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} TB"  # pragma: no cover


def format_duration(seconds: float | int | None) -> str:
    if seconds is None:
        return "unknown"
    total = int(round(seconds))
    if total < 60:
        return f"{total}s"
    minutes, secs = divmod(total, 60)
    if minutes < 60:
        return f"{minutes}m {secs}s"
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h {minutes}m"


@dataclass(slots=True)
class TrackedTask:
    task_id: str
    vm_name: str
    pid: int
    command: str
    stdout_file: str
    stderr_file: str
    exit_file: str
    working_dir: str
    started_at: datetime
    status: TaskStatus = TaskStatus.RUNNING
    exit_code: int | None = None
    last_checked_at: datetime | None = None
    status_message: str | None = None
    credentials: GuestCredentials | None = field(default=None, repr=False)

    @property
    def id(self) -> str:
        return self.task_id

    @property
    def terminal(self) -> bool:
        return self.status in TASK_TERMINAL

    def as_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "vm_name": self.vm_name,
            "pid": self.pid,
            "command": self.command,
            "status": self.status.value,
            "exit_code": self.exit_code,
            "working_dir": self.working_dir,
            "stdout_file": self.stdout_file,
            "stderr_file": self.stderr_file,
            "started_at": self.started_at.isoformat(),
            "last_checked_at": self.last_checked_at.isoformat() if self.last_checked_at else None,
            "status_message": self.status_message,
        }


@dataclass(slots=True)
class TrackedOperation:
    operation_id: str
    vm_name: str
    type: OperationType
    command: str
    stdout_file: str
    stderr_file: str
    exit_file: str
    working_dir: str
    started_at: datetime
    last_updated_at: datetime
    pid: int = 0
    status: OperationStatus = OperationStatus.PENDING
    status_message: str = ""
    description: str | None = None
    output_path: str | None = None
    bytes_total: int | None = None
    bytes_completed: int | None = None
    percent_complete: int | None = None
    bytes_per_second: float | None = None
    estimated_time_remaining: float | None = None
    items_completed: int | None = None
    exit_code: int | None = None
    error_message: str | None = None
    completed_at: datetime | None = None
    duration_seconds: float | None = None
    # when bytes_completed was last read; speed is measured against it
    last_size_at: datetime | None = None
    credentials: GuestCredentials | None = field(default=None, repr=False)

    @property
    def id(self) -> str:
        return self.operation_id

    @property
    def terminal(self) -> bool:
        return self.status in OPERATION_TERMINAL

    @property
    def active(self) -> bool:
        return self.status in OPERATION_ACTIVE

    def as_dict(self) -> dict[str, Any]:
        return {
            "operation_id": self.operation_id,
            "vm_name": self.vm_name,
            "type": self.type.value,
            "pid": self.pid,
            "command": self.command,
            "status": self.status.value,
            "status_message": self.status_message,
            "description": self.description,
            "output_path": self.output_path,
            "bytes_total": self.bytes_total,
            "bytes_completed": self.bytes_completed,
            "percent_complete": self.percent_complete,
            "bytes_per_second": self.bytes_per_second,
            "estimated_time_remaining": self.estimated_time_remaining,
            "items_completed": self.items_completed,
            "exit_code": self.exit_code,
            "error_message": self.error_message,
            "started_at": self.started_at.isoformat(),
            "last_updated_at": self.last_updated_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_seconds": self.duration_seconds,
            "log_file": self.stdout_file,
            "error_file": self.stderr_file,
        }


__all__ = [
    "TaskStatus",
    "TASK_TERMINAL",
    "OperationStatus",
    "OPERATION_TERMINAL",
    "OPERATION_ACTIVE",
    "OperationType",
    "TrackedTask",
    "TrackedOperation",
    "format_bytes",
    "format_duration",
]
