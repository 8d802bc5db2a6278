"""Guest-side shell probes shared by the task registry and the operation tracker."""

from __future__ import annotations

import logging
import re

from ..backends.models import GuestCredentials
from ..backends.router import CommandRouter
from ..errors import DispatchError, RemoteCommandError
from ..process import build_background_command, build_signal_command, parse_pid, shell_quote

logger = logging.getLogger(__name__)

FAILURE_KEYWORDS = re.compile(r"error|failed|fatal", re.IGNORECASE)
STDERR_SCAN_LINES = 50
DISPATCH_TIMEOUT = 30.0
PROBE_TIMEOUT = 30.0
_NOT_A_CHILD = 127


def reports_failure(stderr_text: str) -> bool:
    """Heuristic used when no exit status survived: any failure keyword means failure."""

    return bool(FAILURE_KEYWORDS.search(stderr_text))


class GuestProbe:
    """Dispatch detached commands and inspect them out-of-band."""

    def __init__(self, router: CommandRouter) -> None:
        self.router = router

    async def dispatch(
        self,
        vm_name: str,
        command: str,
        *,
        working_dir: str,
        stdout_file: str,
        stderr_file: str,
        exit_file: str,
        credentials: GuestCredentials | None = None,
    ) -> int:
        """Start ``command`` detached and return its pid; no pid is a hard error."""

        wrapped = build_background_command(
            command,
            working_dir=working_dir,
            stdout_file=stdout_file,
            stderr_file=stderr_file,
            exit_file=exit_file,
        )
        result = await self.router.execute(
            vm_name, wrapped, timeout=DISPATCH_TIMEOUT, credentials=credentials
        )
        if not result.ok:
            detail = (result.stderr or result.stdout).strip()
            raise DispatchError(
                f"Failed to start background command on '{vm_name}': "
                f"{detail or f'exit code {result.exit_code}'}"
            )
        pid = parse_pid(result.stdout)
        if pid is None:
            raise DispatchError(
                f"Could not parse a pid from background dispatch output on '{vm_name}': "
                f"{result.stdout.strip()[-200:]!r}"
            )
        return pid

    async def is_alive(self, vm_name: str, pid: int, credentials: GuestCredentials | None = None) -> bool:
        """Signal-0 liveness probe; raises when the probe itself could not run."""

        result = await self.router.execute(
            vm_name,
            f"kill -0 {int(pid)} 2>/dev/null && echo RUNNING || echo STOPPED",
            timeout=PROBE_TIMEOUT,
            credentials=credentials,
        )
        if "RUNNING" in result.stdout:
            return True
        if "STOPPED" in result.stdout:
            return False
        raise RemoteCommandError(f"Liveness probe for pid {pid} on '{vm_name}' returned no answer", result)

    async def exit_code(
        self,
        vm_name: str,
        pid: int,
        exit_file: str,
        credentials: GuestCredentials | None = None,
    ) -> int | None:
        """Recover the exit status from the exit file, falling back to ``wait``."""

        command = (
            f"cat {shell_quote(exit_file)} 2>/dev/null || "
            f"{{ wait {int(pid)} 2>/dev/null; echo \"wait:$?\"; }}"
        )
        result = await self.router.execute(vm_name, command, timeout=PROBE_TIMEOUT, credentials=credentials)
        lines = [line.strip() for line in result.stdout.splitlines() if line.strip()]
        if not lines:
            return None
        raw = lines[-1]
        from_wait = raw.startswith("wait:")
        if from_wait:
            raw = raw[5:]
        try:
            code = int(raw)
        except ValueError:
            return None
        if from_wait and code == _NOT_A_CHILD:
            return None
        return code

    async def stderr_tail(
        self,
        vm_name: str,
        stderr_file: str,
        credentials: GuestCredentials | None = None,
    ) -> str:
        result = await self.router.execute(
            vm_name,
            f"tail -n {STDERR_SCAN_LINES} {shell_quote(stderr_file)} 2>/dev/null",
            timeout=PROBE_TIMEOUT,
            credentials=credentials,
        )
        return result.stdout

    async def read_lines(
        self,
        vm_name: str,
        path: str,
        *,
        max_lines: int,
        tail_only: bool,
        credentials: GuestCredentials | None = None,
    ) -> str:
        tool = "tail" if tail_only else "head"
        result = await self.router.execute(
            vm_name,
            f"{tool} -n {int(max_lines)} {shell_quote(path)} 2>/dev/null",
            timeout=PROBE_TIMEOUT,
            credentials=credentials,
        )
        return result.stdout

    async def count_lines(
        self,
        vm_name: str,
        paths: list[str],
        credentials: GuestCredentials | None = None,
    ) -> list[int]:
        quoted = " ".join(shell_quote(path) for path in paths)
        result = await self.router.execute(
            vm_name,
            f'for f in {quoted}; do if [ -f "$f" ]; then wc -l < "$f"; else echo 0; fi; done',
            timeout=PROBE_TIMEOUT,
            credentials=credentials,
        )
        counts = []
        for line in result.stdout.splitlines():
            line = line.strip()
            if line.isdigit():
                counts.append(int(line))
        counts.extend([0] * (len(paths) - len(counts)))
        return counts[: len(paths)]

    async def signal(
        self,
        vm_name: str,
        pid: int,
        signal_name: str,
        credentials: GuestCredentials | None = None,
    ):
        return await self.router.execute(
            vm_name,
            build_signal_command(pid, signal_name),
            timeout=PROBE_TIMEOUT,
            credentials=credentials,
        )

    async def remove_files(
        self,
        vm_name: str,
        paths: list[str],
        credentials: GuestCredentials | None = None,
    ) -> bool:
        quoted = " ".join(shell_quote(path) for path in paths)
        result = await self.router.execute(
            vm_name, f"rm -f {quoted}", timeout=PROBE_TIMEOUT, credentials=credentials
        )
        return result.ok


__all__ = ["GuestProbe", "FAILURE_KEYWORDS", "STDERR_SCAN_LINES", "reports_failure"]
