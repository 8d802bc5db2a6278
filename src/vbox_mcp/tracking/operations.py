"""Operation progress tracker: background commands with measurable progress."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable
from uuid import uuid4

from ..backends.models import GuestCredentials
from ..backends.router import CommandRouter
from ..errors import InvalidArgumentError, OperationNotFoundError, VBoxMcpError
from ..process import shell_quote
from .models import (
    OperationStatus,
    OperationType,
    TrackedOperation,
    format_bytes,
    format_duration,
)
from .probe import PROBE_TIMEOUT, GuestProbe, reports_failure
from .registry import TrackedRegistry

logger = logging.getLogger(__name__)

EventListener = Callable[[str, dict[str, Any]], None]
ProgressCallback = Callable[[TrackedOperation], Any]
ContentLengthProbe = Callable[[str], Awaitable["int | None"]]


@dataclass(slots=True)
class StartOperation:
    vm_name: str
    command: str
    type: OperationType = OperationType.COMMAND
    working_dir: str | None = None
    expected_bytes: int | None = None
    output_path: str | None = None
    description: str | None = None
    credentials: GuestCredentials | None = None


def _first_int(text: str) -> int | None:
    for line in text.splitlines():
        token = line.strip().split(" ")[0] if line.strip() else ""
        if token.isdigit():
            return int(token)
    return None


class OperationTracker:
    """Start, poll, wait on and cancel long-running guest operations.

    ``pending -> running -> {completed | failed | timeout | cancelled}``; the
    last four are final and no later refresh may change them.
    """

    def __init__(
        self,
        router: CommandRouter,
        *,
        default_workdir: str = "/home/vagrant",
        temp_dir: str = "/tmp",
        poll_interval_ms: int = 2000,
        wait_timeout_seconds: float = 600.0,
        cancel_grace_seconds: float = 1.0,
        content_length_probe: ContentLengthProbe | None = None,
        on_event: EventListener | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._probe = GuestProbe(router)
        self._registry: TrackedRegistry[TrackedOperation] = TrackedRegistry()
        self._waiters: dict[str, set[asyncio.Event]] = {}
        self._default_workdir = default_workdir
        self._temp_dir = temp_dir.rstrip("/") or "/tmp"
        self.poll_interval_ms = poll_interval_ms
        self.wait_timeout_seconds = wait_timeout_seconds
        self.cancel_grace_seconds = cancel_grace_seconds
        self._content_length_probe = content_length_probe
        self._on_event = on_event
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _emit(self, event_type: str, operation: TrackedOperation) -> None:
        if self._on_event is None:
            return
        try:
            self._on_event(event_type, operation.as_dict())
        except Exception:  # pragma: no cover - journal failures must not break tracking
            logger.exception("Operation event listener failed", extra={"operation_id": operation.operation_id})

    def _require(self, operation_id: str) -> TrackedOperation:
        operation = self._registry.get(operation_id)
        if operation is None:
            raise OperationNotFoundError(operation_id)
        return operation

    def _finish(
        self,
        operation: TrackedOperation,
        status: OperationStatus,
        message: str,
        *,
        exit_code: int | None = None,
        error_message: str | None = None,
    ) -> bool:
        """Move to a terminal status; refused when the operation is already final."""

        if operation.terminal:
            return False
        now = self._clock()
        operation.status = status
        operation.status_message = message
        operation.completed_at = now
        operation.last_updated_at = now
        operation.duration_seconds = round((now - operation.started_at).total_seconds(), 3)
        if exit_code is not None:
            operation.exit_code = exit_code
        if error_message:
            operation.error_message = error_message
        if status is OperationStatus.COMPLETED:
            operation.percent_complete = 100
            operation.estimated_time_remaining = 0
        for event in self._waiters.get(operation.operation_id, ()):
            event.set()
        logger.info(
            "Operation finished",
            extra={"operation_id": operation.operation_id, "status": status.value},
        )
        self._emit("operation_finished", operation)
        return True

    async def start(self, options: StartOperation) -> TrackedOperation:
        """Dispatch a detached command and register it as a tracked operation."""

        if not options.command.strip():
            raise InvalidArgumentError("command must not be empty")
        now = self._clock()
        operation_id = f"op_{int(now.timestamp() * 1000)}_{uuid4().hex[:8]}"
        base = f"{self._temp_dir}/mcp_op_{operation_id}"
        operation = TrackedOperation(
            operation_id=operation_id,
            vm_name=options.vm_name,
            type=OperationType(options.type),
            command=options.command,
            stdout_file=f"{base}.log",
            stderr_file=f"{base}.err",
            exit_file=f"{base}.exit",
            working_dir=options.working_dir or self._default_workdir,
            started_at=now,
            last_updated_at=now,
            description=options.description,
            output_path=options.output_path,
            bytes_total=options.expected_bytes,
            percent_complete=0,
            credentials=options.credentials,
            status_message=options.description or f"Started {OperationType(options.type).value} operation",
        )

        operation.pid = await self._probe.dispatch(
            operation.vm_name,
            operation.command,
            working_dir=operation.working_dir,
            stdout_file=operation.stdout_file,
            stderr_file=operation.stderr_file,
            exit_file=operation.exit_file,
            credentials=operation.credentials,
        )
        operation.status = OperationStatus.RUNNING
        self._registry.add(operation)
        logger.info(
            "Started operation",
            extra={
                "operation_id": operation_id,
                "vm": operation.vm_name,
                "type": operation.type.value,
                "pid": operation.pid,
            },
        )
        self._emit("operation_started", operation)
        return operation

    async def start_download(
        self,
        vm_name: str,
        url: str,
        destination: str,
        *,
        expected_bytes: int | None = None,
        working_dir: str | None = None,
        credentials: GuestCredentials | None = None,
    ) -> TrackedOperation:
        """Download ``url`` inside the guest with wget, tracking bytes on disk."""

        if expected_bytes is None and self._content_length_probe is not None:
            try:
                expected_bytes = await self._content_length_probe(url)
            except Exception as exc:  # best effort: size is optional
                logger.debug("Content-Length probe failed", extra={"url": url, "error": str(exc)})
                expected_bytes = None

        return await self.start(
            StartOperation(
                vm_name=vm_name,
                command=f"wget -q {shell_quote(url)} -O {shell_quote(destination)}",
                type=OperationType.DOWNLOAD,
                working_dir=working_dir,
                expected_bytes=expected_bytes,
                output_path=destination,
                description=f"Download {url}",
                credentials=credentials,
            )
        )

    async def refresh(self, operation_id: str) -> TrackedOperation:
        operation = self._require(operation_id)
        if operation.terminal:
            return operation

        try:
            alive = await self._probe.is_alive(operation.vm_name, operation.pid, operation.credentials)
            if alive:
                await self._update_metrics(operation)
            else:
                await self._classify_exit(operation)
        except VBoxMcpError as exc:
            logger.warning(
                "Operation status probe failed",
                extra={"operation_id": operation_id, "error": str(exc)},
            )
            if not operation.terminal:
                operation.status_message = f"Status probe failed: {exc}"

        if not operation.terminal:
            operation.last_updated_at = self._clock()
        return operation

    async def _classify_exit(self, operation: TrackedOperation) -> None:
        code = await self._probe.exit_code(
            operation.vm_name, operation.pid, operation.exit_file, operation.credentials
        )
        stderr_text = ""
        if code is None or code != 0:
            stderr_text = await self._probe.stderr_tail(
                operation.vm_name, operation.stderr_file, operation.credentials
            )
        if code is None:
            code = 1 if reports_failure(stderr_text) else 0

        if code == 0:
            self._finish(operation, OperationStatus.COMPLETED, "Operation completed successfully", exit_code=0)
        else:
            self._finish(
                operation,
                OperationStatus.FAILED,
                f"Operation failed with exit code {code}",
                exit_code=code,
                error_message=stderr_text.strip()[-2000:] or None,
            )

    async def _update_metrics(self, operation: TrackedOperation) -> None:
        if operation.type is OperationType.DOWNLOAD and operation.output_path:
            await self._update_download(operation)
        elif operation.type is OperationType.EXTRACT and operation.output_path:
            result = await self._probe.router.execute(
                operation.vm_name,
                f"find {shell_quote(operation.output_path)} -type f 2>/dev/null | wc -l",
                timeout=PROBE_TIMEOUT,
                credentials=operation.credentials,
            )
            count = _first_int(result.stdout)
            if count is not None and not operation.terminal:
                operation.items_completed = count
                operation.status_message = f"Extracting... {count} files extracted"
        else:
            result = await self._probe.router.execute(
                operation.vm_name,
                f"wc -l < {shell_quote(operation.stdout_file)} 2>/dev/null || echo 0",
                timeout=PROBE_TIMEOUT,
                credentials=operation.credentials,
            )
            count = _first_int(result.stdout)
            if count is not None and not operation.terminal:
                operation.items_completed = count
                operation.status_message = f"Running... {count} log lines"

    async def _update_download(self, operation: TrackedOperation) -> None:
        result = await self._probe.router.execute(
            operation.vm_name,
            f"stat -c %s {shell_quote(operation.output_path or '')} 2>/dev/null || echo 0",
            timeout=PROBE_TIMEOUT,
            credentials=operation.credentials,
        )
        current = _first_int(result.stdout)
        if current is None or operation.terminal:
            return

        now = self._clock()
        previous = operation.bytes_completed or 0
        elapsed = (now - (operation.last_size_at or operation.started_at)).total_seconds()
        if elapsed > 0:
            operation.bytes_per_second = max(0.0, round((current - previous) / elapsed, 1))
        operation.bytes_completed = current
        operation.last_size_at = now

        total = operation.bytes_total
        if total:
            operation.percent_complete = min(100, round(current / total * 100))
            if operation.bytes_per_second and operation.bytes_per_second > 0:
                operation.estimated_time_remaining = round(
                    max(0, total - current) / operation.bytes_per_second
                )

        parts = [f"Downloading: {format_bytes(current)} / {format_bytes(total)}"]
        parts.append(f"({operation.percent_complete or 0}%)")
        if operation.bytes_per_second:
            parts.append(f"{format_bytes(operation.bytes_per_second)}/s")
        if operation.estimated_time_remaining:
            parts.append(f"ETA: {format_duration(operation.estimated_time_remaining)}")
        operation.status_message = " ".join(parts)

    async def wait_for(
        self,
        operation_id: str,
        *,
        timeout_seconds: float | None = None,
        poll_interval_ms: int | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> TrackedOperation:
        """Poll until the operation is final or the deadline passes.

        The deadline is checked before every sleep, so a zero timeout returns
        ``timeout`` immediately for a live operation. Each sleep doubles as a
        cancellation checkpoint.
        """

        operation = self._require(operation_id)
        timeout = self.wait_timeout_seconds if timeout_seconds is None else max(0.0, timeout_seconds)
        interval = (poll_interval_ms if poll_interval_ms is not None else self.poll_interval_ms) / 1000
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        wake = asyncio.Event()
        self._waiters.setdefault(operation_id, set()).add(wake)
        try:
            while not operation.terminal:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    self._finish(
                        operation,
                        OperationStatus.TIMEOUT,
                        f"Operation timed out after {timeout:g} seconds",
                    )
                    break
                try:
                    await asyncio.wait_for(wake.wait(), timeout=min(interval, remaining))
                except asyncio.TimeoutError:
                    pass
                if operation.terminal:
                    break
                await self.refresh(operation_id)
                if on_progress is not None:
                    outcome = on_progress(operation)
                    if asyncio.iscoroutine(outcome):
                        await outcome
        finally:
            waiters = self._waiters.get(operation_id)
            if waiters is not None:
                waiters.discard(wake)
                if not waiters:
                    self._waiters.pop(operation_id, None)
        return operation

    async def cancel(self, operation_id: str) -> bool:
        """Mark the operation cancelled, then ask the guest process to stop.

        Returns ``False`` when the operation was already final.
        """

        operation = self._require(operation_id)
        if not self._finish(operation, OperationStatus.CANCELLED, "Operation cancelled by user"):
            return False

        try:
            await self._probe.signal(operation.vm_name, operation.pid, "SIGTERM", operation.credentials)
            await asyncio.sleep(self.cancel_grace_seconds)
            if await self._probe.is_alive(operation.vm_name, operation.pid, operation.credentials):
                await self._probe.signal(operation.vm_name, operation.pid, "SIGKILL", operation.credentials)
        except VBoxMcpError as exc:
            logger.warning(
                "Failed to signal cancelled operation",
                extra={"operation_id": operation_id, "error": str(exc)},
            )
        return True

    def get(self, operation_id: str) -> TrackedOperation:
        return self._require(operation_id)

    def list(self, vm_name: str | None = None) -> list[TrackedOperation]:
        return self._registry.values(vm_name)

    def list_active(self, vm_name: str | None = None) -> list[TrackedOperation]:
        return [operation for operation in self._registry.values(vm_name) if operation.active]

    async def cleanup(self, operation_id: str) -> dict[str, Any]:
        operation = self._require(operation_id)
        files_removed = False
        try:
            files_removed = await self._probe.remove_files(
                operation.vm_name,
                [operation.stdout_file, operation.stderr_file, operation.exit_file],
                operation.credentials,
            )
        except VBoxMcpError as exc:
            logger.warning("Operation file cleanup failed", extra={"operation_id": operation_id, "error": str(exc)})
        self._registry.remove(operation_id)
        return {"operation_id": operation_id, "files_removed": files_removed, "removed": True}

    def __len__(self) -> int:
        return len(self._registry)


__all__ = ["OperationTracker", "StartOperation"]
