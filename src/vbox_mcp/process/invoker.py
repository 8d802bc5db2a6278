"""Async subprocess invoker for the Vagrant and VBoxManage CLIs."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Iterable, Optional, Sequence

from ..errors import BinaryNotFoundError
from .utils import sanitize_environment

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124


@dataclass(slots=True)
class CommandResult:
    """Holds the outcome of one external command invocation."""

    args: tuple[str, ...]
    stdout: str
    stderr: str
    exit_code: int
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out

    def output(self) -> str:
        return (self.stdout + self.stderr).strip()


def _decode(data: bytes | None) -> str:
    return (data or b"").decode("utf-8", errors="replace")


class ProcessInvoker:
    """Run external binaries asynchronously.

    Non-zero exits are returned as results. A timeout kills the child and
    returns whatever output was captured with ``timed_out`` set.
    """

    async def run(
        self,
        binary: str,
        args: Sequence[str],
        *,
        cwd: Path | str | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        cmd = [binary, *args]
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(cwd) if cwd is not None else None,
                env=sanitize_environment(),
            )
        except FileNotFoundError as exc:
            raise BinaryNotFoundError(binary) from exc

        stdout_chunks: list[bytes] = []
        stderr_chunks: list[bytes] = []

        async def _drain(stream: asyncio.StreamReader | None, sink: list[bytes]) -> None:
            if stream is None:
                return
            while True:
                chunk = await stream.read(65536)
                if not chunk:
                    return
                sink.append(chunk)

        readers = asyncio.gather(
            _drain(process.stdout, stdout_chunks),
            _drain(process.stderr, stderr_chunks),
            process.wait(),
        )
        try:
            await asyncio.wait_for(readers, timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Command timed out",
                extra={"binary": binary, "timeout": timeout},
            )
            try:
                process.kill()
            except ProcessLookupError:
                pass
            await process.wait()
            return CommandResult(
                args=tuple(cmd),
                stdout=_decode(b"".join(stdout_chunks)),
                stderr=_decode(b"".join(stderr_chunks)),
                exit_code=TIMEOUT_EXIT_CODE,
                timed_out=True,
            )

        return CommandResult(
            args=tuple(cmd),
            stdout=_decode(b"".join(stdout_chunks)),
            stderr=_decode(b"".join(stderr_chunks)),
            exit_code=process.returncode if process.returncode is not None else -1,
        )


Handler = Callable[[str, tuple[str, ...], Optional[str]], Any]


class FakeProcessInvoker(ProcessInvoker):
    """Test double that records invocations and replays scripted results.

    Results are taken from ``handler`` when it returns one, otherwise from the
    queued ``responses``, otherwise an empty success.
    """

    def __init__(
        self,
        responses: Iterable[CommandResult] | None = None,
        *,
        handler: Handler | None = None,
        missing: Iterable[str] = (),
    ) -> None:
        self._responses = list(responses or [])
        self._handler = handler
        self._missing = set(missing)
        self._invocations: list[tuple[str, ...]] = []
        self.cwds: list[str | None] = []
        self.timeouts: list[float | None] = []

    async def run(  # type: ignore[override]
        self,
        binary: str,
        args: Sequence[str],
        *,
        cwd: Path | str | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        call = (binary, *args)
        if binary in self._missing:
            raise BinaryNotFoundError(binary)
        self._invocations.append(call)
        self.cwds.append(str(cwd) if cwd is not None else None)
        self.timeouts.append(timeout)
        if self._handler is not None:
            outcome = self._handler(binary, tuple(args), str(cwd) if cwd is not None else None)
            if asyncio.iscoroutine(outcome):
                outcome = await outcome
            if outcome is not None:
                return outcome
        if self._responses:
            return self._responses.pop(0)
        return CommandResult(args=call, stdout="", stderr="", exit_code=0)

    @property
    def invocations(self) -> list[tuple[str, ...]]:
        return self._invocations


def serialize_result(result: CommandResult) -> dict[str, Any]:
    """JSON-ready view of a command result for tool responses and the journal."""

    return {
        "args": list(result.args),
        "exit_code": result.exit_code,
        "timed_out": result.timed_out,
        "stdout": result.stdout,
        "stderr": result.stderr,
    }


__all__ = [
    "TIMEOUT_EXIT_CODE",
    "CommandResult",
    "ProcessInvoker",
    "FakeProcessInvoker",
    "serialize_result",
]
