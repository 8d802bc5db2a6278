"""Exception taxonomy and caller-facing error formatting."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Iterable

if TYPE_CHECKING:  # pragma: no cover
    from .process import CommandResult


class VBoxMcpError(RuntimeError):
    """Base class for all vbox-mcp errors."""


class VMNotFoundError(VBoxMcpError):
    """Raised when no backend owns the requested VM name."""

    def __init__(
        self,
        vm_name: str,
        *,
        known_names: Iterable[str] = (),
        suggestion: str | None = None,
    ) -> None:
        self.vm_name = vm_name
        self.known_names = sorted(known_names)
        self.suggestion = suggestion
        message = f"VM '{vm_name}' not found in local, global Vagrant or VirtualBox registries."
        if suggestion:
            message += f" Did you mean '{suggestion}'?"
        if self.known_names:
            message += f" Available VMs: {', '.join(self.known_names)}"
        super().__init__(message)


class DispatchError(VBoxMcpError):
    """Raised when a subprocess or background command could not be started."""


class BinaryNotFoundError(DispatchError):
    """Raised when an external executable cannot be located."""

    def __init__(self, binary: str) -> None:
        self.binary = binary
        super().__init__(f"Executable '{binary}' not found")


class RemoteCommandError(VBoxMcpError):
    """Raised when a command ran and the caller treats its non-zero exit as fatal."""

    def __init__(self, message: str, result: "CommandResult | None" = None) -> None:
        self.result = result
        super().__init__(message)


class TransactionRolledBackError(RemoteCommandError):
    """Raised after an atomic transaction failed and its snapshot was restored."""

    def __init__(self, message: str, result: "CommandResult | None", *, snapshot_name: str) -> None:
        self.snapshot_name = snapshot_name
        super().__init__(message, result)


class RegistryMissError(VBoxMcpError, KeyError):
    """Raised when a tracked id is unknown to its registry."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else ""


class TaskNotFoundError(RegistryMissError):
    def __init__(self, task_id: str) -> None:
        self.task_id = task_id
        super().__init__(f"Task '{task_id}' not found")


class OperationNotFoundError(RegistryMissError):
    def __init__(self, operation_id: str) -> None:
        self.operation_id = operation_id
        super().__init__(f"Operation '{operation_id}' not found")


class InvalidArgumentError(VBoxMcpError, ValueError):
    """Raised when caller input fails validation before any remote call."""


class GuardrailViolationError(VBoxMcpError):
    """Raised when a preflight check reports a CRITICAL violation."""

    def __init__(self, tool_name: str, violations: list[Any]) -> None:
        self.tool_name = tool_name
        self.violations = violations
        messages = "; ".join(getattr(item, "message", str(item)) for item in violations)
        super().__init__(f"Guardrail blocked '{tool_name}': {messages}")


_TIPS = {
    "VM_NOT_FOUND": "Run list_vms to see the VMs known to Vagrant and VirtualBox.",
    "OPERATION_TIMEOUT": "The command took too long. Run it with run_background_task or raise the timeout.",
    "VAGRANT_ERROR": "Check that the VM is running (get_vm_status) and that the Vagrantfile is valid.",
    "CONNECTION_FAILED": "The guest could not be reached. Try start_vm or reload_vm.",
    "FILE_NOT_FOUND": "Check the path on the host and in the guest.",
    "GUARDRAIL_BLOCKED": "Free up host resources or choose a safer path, then retry.",
    "INVALID_ARGUMENT": "Correct the argument and retry.",
    "NOT_FOUND": "The id may have been cleaned up. List tasks or operations to find current ids.",
    "INTERNAL_ERROR": "Unexpected failure. Check the server logs for details.",
}


def classify_error(exc: BaseException) -> str:
    """Map an exception to a stable caller-facing error code."""

    if isinstance(exc, VMNotFoundError):
        return "VM_NOT_FOUND"
    if isinstance(exc, GuardrailViolationError):
        return "GUARDRAIL_BLOCKED"
    if isinstance(exc, InvalidArgumentError):
        return "INVALID_ARGUMENT"
    if isinstance(exc, RegistryMissError):
        return "NOT_FOUND"
    if isinstance(exc, RemoteCommandError):
        result = exc.result
        if result is not None and result.timed_out:
            return "OPERATION_TIMEOUT"
        text = str(exc).lower()
        if result is not None:
            text += " " + result.stderr.lower()
        if "connection" in text or ("ssh" in text and "refused" in text):
            return "CONNECTION_FAILED"
        return "VAGRANT_ERROR"
    if isinstance(exc, (BinaryNotFoundError, FileNotFoundError)):
        return "FILE_NOT_FOUND"

    text = str(exc).lower()
    if "timed out" in text or "timeout" in text:
        return "OPERATION_TIMEOUT"
    if "econnrefused" in text or "connection refused" in text:
        return "CONNECTION_FAILED"
    if "vagrant" in text:
        return "VAGRANT_ERROR"
    return "INTERNAL_ERROR"


def format_tool_error(tool_name: str, exc: BaseException) -> str:
    """Render an exception as the text returned to MCP callers."""

    code = classify_error(exc)
    lines = [f"Error [{code}] in {tool_name}: {exc}", "", f"Tip: {_TIPS[code]}"]
    result = getattr(exc, "result", None)
    stderr = getattr(result, "stderr", "") if result is not None else ""
    if stderr and stderr.strip():
        lines.extend(["", f"(stderr: {stderr.strip()[:500]})"])
    return "\n".join(lines)


__all__ = [
    "VBoxMcpError",
    "VMNotFoundError",
    "DispatchError",
    "BinaryNotFoundError",
    "RemoteCommandError",
    "TransactionRolledBackError",
    "RegistryMissError",
    "TaskNotFoundError",
    "OperationNotFoundError",
    "InvalidArgumentError",
    "GuardrailViolationError",
    "classify_error",
    "format_tool_error",
]
