"""Subprocess execution utilities."""

from .invoker import (
    TIMEOUT_EXIT_CODE,
    CommandResult,
    FakeProcessInvoker,
    ProcessInvoker,
    serialize_result,
)
from .utils import (
    SIGNAL_NUMBERS,
    build_background_command,
    build_signal_command,
    normalize_signal,
    parse_pid,
    sanitize_environment,
    sanitize_snapshot_name,
    shell_quote,
)

__all__ = [
    "TIMEOUT_EXIT_CODE",
    "CommandResult",
    "FakeProcessInvoker",
    "ProcessInvoker",
    "serialize_result",
    "SIGNAL_NUMBERS",
    "build_background_command",
    "build_signal_command",
    "normalize_signal",
    "parse_pid",
    "sanitize_environment",
    "sanitize_snapshot_name",
    "shell_quote",
]
