"""Preflight guardrails and URL reachability warnings."""

from .preflight import HEAVY_TOOLS, Guardrails, Severity, Violation, ViolationType, is_protected_path
from .url_guard import UrlGuard, extract_urls

__all__ = [
    "Guardrails",
    "HEAVY_TOOLS",
    "Severity",
    "UrlGuard",
    "Violation",
    "ViolationType",
    "extract_urls",
    "is_protected_path",
]
