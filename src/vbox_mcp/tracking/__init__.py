"""Background task registry and operation progress tracking."""

from .models import (
    OperationStatus,
    OperationType,
    TaskStatus,
    TrackedOperation,
    TrackedTask,
    format_bytes,
    format_duration,
)
from .operations import OperationTracker, StartOperation
from .probe import GuestProbe, reports_failure
from .registry import TrackedRegistry
from .tasks import BackgroundTaskRegistry, TaskOutput, TaskRegistration

__all__ = [
    "BackgroundTaskRegistry",
    "GuestProbe",
    "OperationStatus",
    "OperationTracker",
    "OperationType",
    "StartOperation",
    "TaskOutput",
    "TaskRegistration",
    "TaskStatus",
    "TrackedOperation",
    "TrackedRegistry",
    "TrackedTask",
    "format_bytes",
    "format_duration",
    "reports_failure",
]
