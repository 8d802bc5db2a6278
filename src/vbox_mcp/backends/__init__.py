"""VM backends: resolution, per-backend handles, routing and lifecycle."""

from .handles import (
    GlobalDeclarativeBackend,
    LocalManagedBackend,
    NativeHypervisorBackend,
    VagrantBackend,
    VMBackend,
)
from .lifecycle import DEV_PORTS, PortForward, VMLifecycle, render_vagrantfile
from .models import BackendKind, GlobalMachine, GuestCredentials, ProcessInfo, VMStatus, VMSummary
from .resolver import BackendResolver, HypervisorLocator, reset_vboxmanage_cache
from .router import CommandRouter
from .similarity import closest_match, levenshtein

__all__ = [
    "BackendKind",
    "BackendResolver",
    "CommandRouter",
    "DEV_PORTS",
    "GlobalDeclarativeBackend",
    "GlobalMachine",
    "GuestCredentials",
    "HypervisorLocator",
    "LocalManagedBackend",
    "NativeHypervisorBackend",
    "PortForward",
    "ProcessInfo",
    "VagrantBackend",
    "VMBackend",
    "VMLifecycle",
    "VMStatus",
    "VMSummary",
    "closest_match",
    "levenshtein",
    "render_vagrantfile",
    "reset_vboxmanage_cache",
]
