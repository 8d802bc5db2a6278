"""Helpers shared by every component that shells out or backgrounds commands."""

from __future__ import annotations

import os
import re
from typing import Mapping

from ..errors import InvalidArgumentError

_SANITIZED_VARS = {
    "PYTHONHOME",
    "PYTHONPATH",
    "VIRTUAL_ENV",
    "PIP_RESPECT_VIRTUALENV",
}

SIGNAL_NUMBERS = {
    "SIGTERM": 15,
    "SIGKILL": 9,
    "SIGINT": 2,
    "SIGHUP": 1,
    "SIGSTOP": 19,
    "SIGCONT": 18,
    "SIGUSR1": 10,
    "SIGUSR2": 12,
    "SIGQUIT": 3,
}
_NUMERIC_SIGNALS = {str(number): name for name, number in SIGNAL_NUMBERS.items()}

_SNAPSHOT_UNSAFE = re.compile(r"[^A-Za-z0-9_-]")


def sanitize_environment(additional: Mapping[str, str] | None = None) -> dict[str, str]:
    """Return a sanitized environment suitable for subprocess execution."""

    env = dict(os.environ)
    for key in _SANITIZED_VARS:
        env.pop(key, None)
    if additional:
        env.update(additional)
    return env


def shell_quote(value: str) -> str:
    """Single-quote ``value`` for a POSIX shell, escaping embedded quotes as ``'\\''``."""

    return "'" + value.replace("'", "'\\''") + "'"


def normalize_signal(signal: str | int) -> str:
    """Return the canonical ``SIGxxx`` name or raise for anything off the allow-list."""

    raw = str(signal).strip().upper()
    if raw in _NUMERIC_SIGNALS:
        return _NUMERIC_SIGNALS[raw]
    if not raw.startswith("SIG"):
        raw = f"SIG{raw}"
    if raw not in SIGNAL_NUMBERS:
        allowed = ", ".join(sorted(SIGNAL_NUMBERS))
        raise InvalidArgumentError(f"Invalid signal '{signal}'. Allowed signals: {allowed}")
    return raw


def sanitize_snapshot_name(name: str) -> str:
    """Replace characters Vagrant and VirtualBox reject in snapshot names."""

    return _SNAPSHOT_UNSAFE.sub("_", name)


def build_background_command(
    command: str,
    *,
    working_dir: str,
    stdout_file: str,
    stderr_file: str,
    exit_file: str,
) -> str:
    """Wrap ``command`` so it detaches, redirects output and records its exit status.

    The wrapper shell is started through ``setsid`` when the guest has it, so
    its pid is also the process group id of everything the command spawns.
    The returned shell line prints that pid as its last output line.
    """

    inner = f"( {command}\n)\necho $? > {shell_quote(exit_file)}"
    return (
        f"cd {shell_quote(working_dir)} || exit 1; "
        f"$(command -v setsid) nohup sh -c {shell_quote(inner)} "
        f"> {shell_quote(stdout_file)} 2> {shell_quote(stderr_file)} < /dev/null "
        "& echo $!"
    )


def build_signal_command(pid: int, signal_name: str) -> str:
    """Signal the process group led by ``pid``.

    Falls back to the direct children and then ``pid`` itself when no such
    group exists, e.g. on guests without ``setsid``.
    """

    short = signal_name.removeprefix("SIG")
    pid = int(pid)
    return (
        f"kill -s {short} -- -{pid} 2>/dev/null || "
        f"{{ pkill -{short} -P {pid} 2>/dev/null; kill -s {short} {pid}; }} 2>&1"
    )


def parse_pid(stdout: str) -> int | None:
    """Parse a positive pid from the last non-empty line of ``stdout``."""

    lines = [line.strip() for line in stdout.splitlines() if line.strip()]
    if not lines:
        return None
    candidate = lines[-1]
    if candidate.upper().startswith("PID:"):
        candidate = candidate[4:].strip()
    try:
        pid = int(candidate)
    except ValueError:
        return None
    return pid if pid > 0 else None


__all__ = [
    "SIGNAL_NUMBERS",
    "sanitize_environment",
    "shell_quote",
    "normalize_signal",
    "sanitize_snapshot_name",
    "build_background_command",
    "build_signal_command",
    "parse_pid",
]
