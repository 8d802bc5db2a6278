"""Background task registry: fire-and-forget guest commands tracked by pid."""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable
from uuid import uuid4

from ..backends.models import GuestCredentials
from ..backends.router import CommandRouter
from ..errors import TaskNotFoundError, VBoxMcpError
from ..process import normalize_signal
from .models import TaskStatus, TrackedTask
from .probe import GuestProbe, reports_failure
from .registry import TrackedRegistry

logger = logging.getLogger(__name__)

EventListener = Callable[[str, dict[str, Any]], None]


@dataclass(slots=True)
class TaskRegistration:
    task_id: str
    pid: int
    stdout_file: str
    stderr_file: str

    def as_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "pid": self.pid,
            "stdout_file": self.stdout_file,
            "stderr_file": self.stderr_file,
        }


@dataclass(slots=True)
class TaskOutput:
    task_id: str
    status: TaskStatus
    stdout: str
    stderr: str
    stdout_lines: int
    stderr_lines: int
    truncated: bool
    exit_code: int | None

    def as_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "status": self.status.value,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "stdout_lines": self.stdout_lines,
            "stderr_lines": self.stderr_lines,
            "truncated": self.truncated,
            "exit_code": self.exit_code,
        }


class BackgroundTaskRegistry:
    """In-memory directory of detached guest commands.

    Status is only ever pulled: ``refresh`` probes the guest and updates the
    cached record. ``completed`` and ``failed`` are final.
    """

    def __init__(
        self,
        router: CommandRouter,
        *,
        default_workdir: str = "/home/vagrant",
        temp_dir: str = "/tmp",
        kill_settle_seconds: float = 0.5,
        on_event: EventListener | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._probe = GuestProbe(router)
        self._registry: TrackedRegistry[TrackedTask] = TrackedRegistry()
        self._default_workdir = default_workdir
        self._temp_dir = temp_dir.rstrip("/") or "/tmp"
        self._kill_settle_seconds = kill_settle_seconds
        self._on_event = on_event
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _emit(self, event_type: str, task: TrackedTask) -> None:
        if self._on_event is None:
            return
        try:
            self._on_event(event_type, task.as_dict())
        except Exception:  # pragma: no cover - journal failures must not break tracking
            logger.exception("Task event listener failed", extra={"task_id": task.task_id})

    def _require(self, task_id: str) -> TrackedTask:
        task = self._registry.get(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    async def register(
        self,
        vm_name: str,
        command: str,
        *,
        working_dir: str | None = None,
        credentials: GuestCredentials | None = None,
    ) -> TaskRegistration:
        """Start ``command`` detached inside the VM and begin tracking it."""

        task_id = f"task_{int(self._clock().timestamp() * 1000)}_{uuid4().hex[:8]}"
        base = f"{self._temp_dir}/mcp_task_{task_id}"
        stdout_file = f"{base}_stdout.log"
        stderr_file = f"{base}_stderr.log"
        exit_file = f"{base}.exit"
        workdir = working_dir or self._default_workdir

        pid = await self._probe.dispatch(
            vm_name,
            command,
            working_dir=workdir,
            stdout_file=stdout_file,
            stderr_file=stderr_file,
            exit_file=exit_file,
            credentials=credentials,
        )

        task = TrackedTask(
            task_id=task_id,
            vm_name=vm_name,
            pid=pid,
            command=command,
            stdout_file=stdout_file,
            stderr_file=stderr_file,
            exit_file=exit_file,
            working_dir=workdir,
            started_at=self._clock(),
            credentials=credentials,
        )
        self._registry.add(task)
        logger.info("Registered background task", extra={"task_id": task_id, "vm": vm_name, "pid": pid})
        self._emit("task_registered", task)
        return TaskRegistration(task_id=task_id, pid=pid, stdout_file=stdout_file, stderr_file=stderr_file)

    async def refresh(self, task_id: str) -> TrackedTask:
        """Probe the guest and update the task; terminal tasks are returned untouched."""

        task = self._require(task_id)
        if task.terminal:
            return task

        previous = task.status
        exit_code: int | None = None
        message: str | None = None
        try:
            alive = await self._probe.is_alive(task.vm_name, task.pid, task.credentials)
            if alive:
                status = TaskStatus.RUNNING
            else:
                exit_code = await self._probe.exit_code(task.vm_name, task.pid, task.exit_file, task.credentials)
                if exit_code is None:
                    dirty = reports_failure(
                        await self._probe.stderr_tail(task.vm_name, task.stderr_file, task.credentials)
                    )
                    status = TaskStatus.FAILED if dirty else TaskStatus.COMPLETED
                    exit_code = None if dirty else 0
                    message = "exit code inferred from stderr"
                else:
                    status = TaskStatus.COMPLETED if exit_code == 0 else TaskStatus.FAILED
        except VBoxMcpError as exc:
            logger.warning("Task status probe failed", extra={"task_id": task_id, "error": str(exc)})
            status = TaskStatus.UNKNOWN
            message = f"status probe failed: {exc}"

        # a concurrent refresh may have finished the task while we were probing
        if task.terminal:
            return task
        task.status = status
        task.exit_code = exit_code
        task.status_message = message
        task.last_checked_at = self._clock()
        if task.status != previous:
            self._emit("task_status", task)
        return task

    async def fetch_output(
        self,
        task_id: str,
        *,
        max_lines: int = 1000,
        tail_only: bool = True,
    ) -> TaskOutput:
        """Read a head or tail window of both output files plus full line counts."""

        task = await self.refresh(task_id)
        max_lines = max(1, int(max_lines))
        stdout = await self._probe.read_lines(
            task.vm_name, task.stdout_file, max_lines=max_lines, tail_only=tail_only, credentials=task.credentials
        )
        stderr = await self._probe.read_lines(
            task.vm_name, task.stderr_file, max_lines=max_lines, tail_only=tail_only, credentials=task.credentials
        )
        stdout_lines, stderr_lines = await self._probe.count_lines(
            task.vm_name, [task.stdout_file, task.stderr_file], task.credentials
        )
        return TaskOutput(
            task_id=task_id,
            status=task.status,
            stdout=stdout,
            stderr=stderr,
            stdout_lines=stdout_lines,
            stderr_lines=stderr_lines,
            truncated=stdout_lines > max_lines or stderr_lines > max_lines,
            exit_code=task.exit_code,
        )

    async def kill(self, task_id: str, signal: str = "SIGTERM") -> dict[str, Any]:
        """Signal a task. Off-list signals are rejected before touching the VM."""

        task = self._require(task_id)
        signal_name = normalize_signal(signal)
        if task.terminal:
            return {
                "success": False,
                "task_id": task_id,
                "signal": signal_name,
                "status": task.status.value,
                "message": f"Task already {task.status.value}",
            }

        result = await self._probe.signal(task.vm_name, task.pid, signal_name, task.credentials)
        if result.ok:
            await asyncio.sleep(self._kill_settle_seconds)
            await self.refresh(task_id)
            message = f"Sent {signal_name} to pid {task.pid}"
        else:
            message = (result.stderr or result.stdout).strip() or f"Failed to signal pid {task.pid}"
        logger.info("Signalled task", extra={"task_id": task_id, "signal": signal_name, "ok": result.ok})
        return {
            "success": result.ok,
            "task_id": task_id,
            "signal": signal_name,
            "status": task.status.value,
            "message": message,
        }

    def remove(self, task_id: str) -> TrackedTask:
        """Stop tracking a task without killing it."""

        task = self._registry.remove(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    async def cleanup(self, task_id: str) -> dict[str, Any]:
        """Delete the task's guest files (best effort) and drop it from the registry."""

        task = self._require(task_id)
        files_removed = False
        try:
            files_removed = await self._probe.remove_files(
                task.vm_name, [task.stdout_file, task.stderr_file, task.exit_file], task.credentials
            )
        except VBoxMcpError as exc:
            logger.warning("Task file cleanup failed", extra={"task_id": task_id, "error": str(exc)})
        self._registry.remove(task_id)
        return {"task_id": task_id, "files_removed": files_removed, "removed": True}

    def get(self, task_id: str) -> TrackedTask:
        return self._require(task_id)

    def list(self, vm_name: str | None = None) -> list[TrackedTask]:
        return self._registry.values(vm_name)

    def summary(self, vm_name: str) -> dict[str, Any]:
        tasks = self._registry.values(vm_name)
        counts = Counter(task.status.value for task in tasks)
        return {
            "vm_name": vm_name,
            "total": len(tasks),
            "running": counts.get(TaskStatus.RUNNING.value, 0),
            "completed": counts.get(TaskStatus.COMPLETED.value, 0),
            "failed": counts.get(TaskStatus.FAILED.value, 0),
            "unknown": counts.get(TaskStatus.UNKNOWN.value, 0),
            "recent": [task.as_dict() for task in tasks[-5:][::-1]],
        }

    def __len__(self) -> int:
        return len(self._registry)


__all__ = ["BackgroundTaskRegistry", "TaskRegistration", "TaskOutput"]
