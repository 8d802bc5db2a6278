"""Host-side safety checks run before tools touch the filesystem or VMs."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Mapping

import psutil

from ..errors import GuardrailViolationError

logger = logging.getLogger(__name__)

GIB = 1024**3
MIB = 1024**2

PATH_ARGUMENTS = ("path", "project_path", "host_path")
PROTECTED_PREFIXES = (
    "/windows",
    "/program files",
    "/system32",
    "/etc",
    "/usr",
    "/bin",
    "/sbin",
    "/boot",
    "/sys",
    "/proc",
    "/dev",
)
HEAVY_TOOLS = frozenset(
    {
        "create_vm",
        "create_dev_vm",
        "snapshot_save",
        "start_download",
        "package_box",
        "atomic_transaction_exec",
    }
)


class Severity(str, Enum):
    WARNING = "WARNING"
    CRITICAL = "CRITICAL"


class ViolationType(str, Enum):
    NO_SPACE = "NO_SPACE"
    MEMORY_LOW = "MEMORY_LOW"
    SYSTEM_PROTECTION = "SYSTEM_PROTECTION"


@dataclass(slots=True)
class Violation:
    type: ViolationType
    severity: Severity
    message: str
    details: dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "severity": self.severity.value,
            "message": self.message,
            "details": self.details,
        }


def is_protected_path(raw: str) -> bool:
    """True for filesystem roots and well-known system directories."""

    text = raw.strip().replace("\\", "/")
    if not text:
        return False
    # drive letters: "C:", "C:/" and "C:/Windows/..." normalise to "/..."
    if len(text) >= 2 and text[1] == ":" and text[0].isalpha():
        text = text[2:] or "/"
    lowered = text.rstrip("/").lower()
    if lowered == "":
        return True
    return any(lowered == prefix or lowered.startswith(prefix + "/") for prefix in PROTECTED_PREFIXES)


class Guardrails:
    """Preflight checks: workspace protection for path arguments, disk and memory for heavy tools."""

    def __init__(
        self,
        *,
        min_disk_gb_hard: float = 2.0,
        min_disk_gb_soft: float = 5.0,
        min_memory_mb: float = 512.0,
        disk_path: Path | str | None = None,
    ) -> None:
        self.min_disk_gb_hard = min_disk_gb_hard
        self.min_disk_gb_soft = min_disk_gb_soft
        self.min_memory_mb = min_memory_mb
        self.disk_path = str(disk_path) if disk_path is not None else (Path.cwd().anchor or "/")

    def _disk(self) -> dict[str, float]:
        target = Path(self.disk_path)
        while not target.exists() and target != target.parent:
            target = target.parent
        usage = psutil.disk_usage(str(target))
        return {
            "path": str(target),
            "free_gb": round(usage.free / GIB, 2),
            "total_gb": round(usage.total / GIB, 2),
            "percent_used": float(usage.percent),
        }

    def _memory(self) -> dict[str, float]:
        memory = psutil.virtual_memory()
        return {
            "available_mb": round(memory.available / MIB, 1),
            "total_mb": round(memory.total / MIB, 1),
            "percent_used": float(memory.percent),
        }

    def preflight(self, tool_name: str, args: Mapping[str, Any] | None) -> list[Violation]:
        args = args or {}
        for key in PATH_ARGUMENTS:
            value = args.get(key)
            if isinstance(value, str) and is_protected_path(value):
                return [
                    Violation(
                        type=ViolationType.SYSTEM_PROTECTION,
                        severity=Severity.CRITICAL,
                        message=f"Operation blocked: '{value}' is a system location ({key})",
                        details={"argument": key, "path": value},
                    )
                ]

        if tool_name not in HEAVY_TOOLS:
            return []

        violations: list[Violation] = []
        disk = self._disk()
        free_gb = disk["free_gb"]
        if free_gb < self.min_disk_gb_hard:
            violations.append(
                Violation(
                    type=ViolationType.NO_SPACE,
                    severity=Severity.CRITICAL,
                    message=(
                        f"Insufficient disk space ({free_gb:.1f}GB free). "
                        f"Minimum {self.min_disk_gb_hard:g}GB required."
                    ),
                    details=disk,
                )
            )
        elif free_gb < self.min_disk_gb_soft:
            violations.append(
                Violation(
                    type=ViolationType.NO_SPACE,
                    severity=Severity.WARNING,
                    message=(
                        f"Low disk space ({free_gb:.1f}GB free). "
                        f"Recommended {self.min_disk_gb_soft:g}GB."
                    ),
                    details=disk,
                )
            )

        memory = self._memory()
        if memory["available_mb"] < self.min_memory_mb:
            violations.append(
                Violation(
                    type=ViolationType.MEMORY_LOW,
                    severity=Severity.WARNING,
                    message=f"Low available memory ({memory['available_mb']:.0f}MB).",
                    details=memory,
                )
            )
        return violations

    def enforce(self, tool_name: str, args: Mapping[str, Any] | None) -> list[Violation]:
        """Run preflight, raise on CRITICAL and hand back the warnings."""

        violations = self.preflight(tool_name, args)
        critical = [item for item in violations if item.severity is Severity.CRITICAL]
        if critical:
            logger.warning(
                "Guardrail blocked tool call",
                extra={"tool": tool_name, "violations": [item.type.value for item in critical]},
            )
            raise GuardrailViolationError(tool_name, critical)
        for item in violations:
            logger.warning("Guardrail warning", extra={"tool": tool_name, "violation": item.message})
        return violations

    def health_report(self) -> dict[str, Any]:
        disk = self._disk()
        memory = self._memory()
        healthy = disk["free_gb"] >= self.min_disk_gb_soft and memory["available_mb"] >= self.min_memory_mb
        return {
            "status": "OK" if healthy else "WARNING",
            "disk": disk,
            "memory": memory,
            "cpu_count": psutil.cpu_count(),
        }


__all__ = [
    "Guardrails",
    "HEAVY_TOOLS",
    "Severity",
    "Violation",
    "ViolationType",
    "is_protected_path",
]
