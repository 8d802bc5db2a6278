"""Command execution router."""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any

from ..errors import InvalidArgumentError, RemoteCommandError
from ..process import CommandResult, normalize_signal, shell_quote
from .handles import VMBackend
from .models import GuestCredentials, ProcessInfo, VMStatus
from .resolver import BackendResolver

logger = logging.getLogger(__name__)

_PS_AUX = re.compile(
    r"^(\S+)\s+(\d+)\s+(\d+\.?\d*)\s+(\d+\.?\d*)\s+(\d+)\s+(\d+)\s+(\S+)\s+(\S+)\s+(\S+)\s+(\S+)\s+(.*)$"
)


def parse_ps_aux(stdout: str) -> list[ProcessInfo]:
    processes: list[ProcessInfo] = []
    for line in stdout.splitlines():
        match = _PS_AUX.match(line.strip())
        if not match:
            continue
        processes.append(
            ProcessInfo(
                user=match.group(1),
                pid=int(match.group(2)),
                cpu=float(match.group(3)),
                memory=float(match.group(4)),
                command=match.group(11),
            )
        )
    return processes


class CommandRouter:
    """Dispatch execute, upload and status calls to whichever backend owns a VM."""

    def __init__(self, resolver: BackendResolver) -> None:
        self.resolver = resolver

    async def resolve(self, vm_name: str) -> VMBackend:
        return await self.resolver.resolve(vm_name)

    async def execute(
        self,
        vm_name: str,
        command: str,
        *,
        timeout: float | None = None,
        credentials: GuestCredentials | None = None,
    ) -> CommandResult:
        """Run ``command`` in the guest. Timeouts come back as results, not errors."""

        backend = await self.resolver.resolve(vm_name)
        result = await backend.execute(command, timeout=timeout, credentials=credentials)
        logger.debug(
            "Executed guest command",
            extra={
                "vm": vm_name,
                "backend": backend.kind.value,
                "exit_code": result.exit_code,
                "timed_out": result.timed_out,
            },
        )
        return result

    async def upload(
        self,
        vm_name: str,
        source: str | Path,
        destination: str,
        *,
        credentials: GuestCredentials | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        source_path = Path(source).expanduser()
        if not source_path.exists():
            raise FileNotFoundError(f"Source path '{source_path}' does not exist on the host")
        backend = await self.resolver.resolve(vm_name)
        return await backend.upload(
            str(source_path), destination, credentials=credentials, timeout=timeout
        )

    async def status(self, vm_name: str) -> VMStatus:
        backend = await self.resolver.resolve(vm_name)
        return await backend.status()

    async def _checked(
        self,
        vm_name: str,
        command: str,
        action: str,
        credentials: GuestCredentials | None,
    ) -> CommandResult:
        result = await self.execute(vm_name, command, credentials=credentials)
        if not result.ok:
            detail = (result.stderr or result.stdout).strip()
            raise RemoteCommandError(f"{action} failed: {detail or f'exit code {result.exit_code}'}", result)
        return result

    async def tail_file(
        self,
        vm_name: str,
        path: str,
        *,
        lines: int = 50,
        credentials: GuestCredentials | None = None,
    ) -> dict[str, Any]:
        if lines < 1:
            raise InvalidArgumentError("lines must be >= 1")
        result = await self._checked(
            vm_name, f"tail -n {int(lines)} {shell_quote(path)}", f"Reading {path}", credentials
        )
        content = result.stdout.rstrip("\n")
        return {
            "path": path,
            "content": content,
            "lines_returned": len(content.splitlines()) if content else 0,
        }

    async def grep_file(
        self,
        vm_name: str,
        path: str,
        pattern: str,
        *,
        limit: int = 100,
        case_sensitive: bool = False,
        credentials: GuestCredentials | None = None,
    ) -> dict[str, Any]:
        flags = "-n" if case_sensitive else "-n -i"
        command = (
            f"test -f {shell_quote(path)} && "
            f"{{ grep {flags} -e {shell_quote(pattern)} {shell_quote(path)} | head -n {int(limit)}; }}"
        )
        result = await self._checked(vm_name, command, f"Searching {path}", credentials)
        matches = []
        for line in result.stdout.splitlines():
            number, _, text = line.partition(":")
            if number.isdigit():
                matches.append({"line": int(number), "text": text})
        return {"path": path, "pattern": pattern, "matches": matches, "count": len(matches)}

    async def search_files(
        self,
        vm_name: str,
        path: str,
        pattern: str,
        *,
        limit: int = 200,
        credentials: GuestCredentials | None = None,
    ) -> list[str]:
        command = (
            f"find {shell_quote(path)} -type f -name {shell_quote(pattern)} 2>/dev/null "
            f"| head -n {int(limit)}"
        )
        result = await self._checked(vm_name, command, f"Searching {path}", credentials)
        return [line for line in result.stdout.splitlines() if line.strip()]

    async def list_processes(
        self,
        vm_name: str,
        *,
        name_filter: str | None = None,
        credentials: GuestCredentials | None = None,
    ) -> list[ProcessInfo]:
        command = "ps aux --no-headers"
        if name_filter:
            command += f" | grep -i {shell_quote(name_filter)} | grep -v grep"
        result = await self.execute(vm_name, command, credentials=credentials)
        return parse_ps_aux(result.stdout)

    async def kill_process(
        self,
        vm_name: str,
        pid: int,
        *,
        signal: str = "SIGTERM",
        credentials: GuestCredentials | None = None,
    ) -> dict[str, Any]:
        """Send an allow-listed signal to a guest pid."""

        signal_name = normalize_signal(signal)
        if pid <= 0:
            raise InvalidArgumentError(f"Invalid pid {pid}")

        probe = await self.execute(vm_name, f"ps -p {int(pid)} -o pid= 2>/dev/null", credentials=credentials)
        if not probe.ok or not probe.stdout.strip():
            return {
                "success": False,
                "pid": pid,
                "signal": signal_name,
                "message": f"Process {pid} not found or already terminated",
            }

        result = await self.execute(
            vm_name, f"kill -s {signal_name[3:]} {int(pid)} 2>&1", credentials=credentials
        )
        if result.ok:
            message = f"Signal {signal_name} sent to process {pid}"
        else:
            message = (result.stderr or result.stdout).strip() or f"Failed to signal process {pid}"
        return {"success": result.ok, "pid": pid, "signal": signal_name, "message": message}


__all__ = ["CommandRouter", "parse_ps_aux"]
