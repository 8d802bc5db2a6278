"""Backend resolution: decide which control plane owns a VM name."""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Iterable

from ..errors import BinaryNotFoundError, InvalidArgumentError, VMNotFoundError
from ..process import ProcessInvoker
from .handles import (
    DEFAULT_DECLARATIVE_TIMEOUT,
    DEFAULT_NATIVE_TIMEOUT,
    DEFAULT_UPLOAD_TIMEOUT,
    GlobalDeclarativeBackend,
    LocalManagedBackend,
    NativeHypervisorBackend,
    VMBackend,
)
from .models import BackendKind, GlobalMachine, GuestCredentials, VMSummary
from .similarity import closest_match

logger = logging.getLogger(__name__)

VBOXMANAGE_CANDIDATES: tuple[str, ...] = (
    "VBoxManage",
    "/usr/bin/VBoxManage",
    "/usr/local/bin/VBoxManage",
    "/Applications/VirtualBox.app/Contents/MacOS/VBoxManage",
    "C:\\Program Files\\Oracle\\VirtualBox\\VBoxManage.exe",
    "C:\\Program Files (x86)\\Oracle\\VirtualBox\\VBoxManage.exe",
)

_GLOBAL_ROW = re.compile(r"^[0-9a-f]{7}\s+")
_VBOX_LIST_ROW = re.compile(r'^"(?P<name>.+)"\s+\{(?P<uuid>[^}]+)\}')

# Written once per discovered path; misses are never stored.
_vboxmanage_path: str | None = None


def reset_vboxmanage_cache() -> None:
    global _vboxmanage_path
    _vboxmanage_path = None


def cached_vboxmanage() -> str | None:
    return _vboxmanage_path


def parse_global_status(stdout: str) -> list[GlobalMachine]:
    """Parse the ``id name provider state directory`` table of ``vagrant global-status``."""

    machines: list[GlobalMachine] = []
    for raw in stdout.splitlines():
        line = raw.strip()
        if not _GLOBAL_ROW.match(line):
            continue
        parts = line.split()
        if len(parts) < 5:
            continue
        machines.append(
            GlobalMachine(
                id=parts[0],
                name=parts[1],
                provider=parts[2],
                state=parts[3],
                directory=" ".join(parts[4:]),
            )
        )
    return machines


def parse_vbox_list(stdout: str) -> list[tuple[str, str]]:
    """Return ``(name, uuid)`` pairs from ``VBoxManage list vms``."""

    entries: list[tuple[str, str]] = []
    for line in stdout.splitlines():
        match = _VBOX_LIST_ROW.match(line.strip())
        if match:
            entries.append((match.group("name"), match.group("uuid")))
    return entries


class HypervisorLocator:
    """Find a working VBoxManage binary by probing candidates with ``--version``."""

    def __init__(
        self,
        invoker: ProcessInvoker,
        *,
        explicit: str | None = None,
        candidates: Iterable[str] = VBOXMANAGE_CANDIDATES,
    ) -> None:
        self._invoker = invoker
        self._candidates = ([explicit] if explicit else []) + [c for c in candidates if c != explicit]

    async def locate(self) -> str | None:
        global _vboxmanage_path
        if _vboxmanage_path is not None:
            return _vboxmanage_path

        for candidate in self._candidates:
            try:
                result = await self._invoker.run(candidate, ["--version"], timeout=15)
            except (BinaryNotFoundError, OSError):
                continue
            if result.ok:
                _vboxmanage_path = candidate
                logger.debug("Located VBoxManage", extra={"path": candidate})
                return candidate
        return None

    async def require(self) -> str:
        path = await self.locate()
        if path is None:
            raise BinaryNotFoundError("VBoxManage")
        return path


class BackendResolver:
    """Resolve a VM name to a backend handle: local, then global Vagrant, then VirtualBox."""

    def __init__(
        self,
        vms_dir: Path,
        invoker: ProcessInvoker,
        *,
        vagrant_binary: str = "vagrant",
        locator: HypervisorLocator | None = None,
        default_credentials: GuestCredentials | None = None,
        declarative_timeout: float = DEFAULT_DECLARATIVE_TIMEOUT,
        native_timeout: float = DEFAULT_NATIVE_TIMEOUT,
        upload_timeout: float = DEFAULT_UPLOAD_TIMEOUT,
    ) -> None:
        self.vms_dir = Path(vms_dir)
        self.invoker = invoker
        self.vagrant_binary = vagrant_binary
        self.locator = locator or HypervisorLocator(invoker)
        self.default_credentials = default_credentials or GuestCredentials()
        self.declarative_timeout = declarative_timeout
        self.native_timeout = native_timeout
        self.upload_timeout = upload_timeout

    def vm_dir(self, vm_name: str) -> Path:
        return self.vms_dir / vm_name

    def local_names(self) -> list[str]:
        if not self.vms_dir.is_dir():
            return []
        return sorted(entry.name for entry in self.vms_dir.iterdir() if entry.is_dir())

    def local_backend(self, vm_name: str) -> LocalManagedBackend:
        return LocalManagedBackend(
            vm_name,
            self.vm_dir(vm_name),
            self.invoker,
            vagrant_binary=self.vagrant_binary,
            default_timeout=self.declarative_timeout,
            upload_timeout=self.upload_timeout,
        )

    async def global_machines(self) -> list[GlobalMachine]:
        try:
            result = await self.invoker.run(self.vagrant_binary, ["global-status", "--prune"], timeout=60)
        except BinaryNotFoundError:
            logger.debug("Vagrant not installed; skipping global registry")
            return []
        if not result.ok:
            logger.debug("vagrant global-status failed", extra={"stderr": result.stderr[:200]})
            return []
        return parse_global_status(result.stdout)

    async def native_vms(self) -> list[tuple[str, str]]:
        vboxmanage = await self.locator.locate()
        if vboxmanage is None:
            return []
        result = await self.invoker.run(vboxmanage, ["list", "vms"], timeout=30)
        if not result.ok:
            return []
        return parse_vbox_list(result.stdout)

    def _is_local(self, vm_name: str) -> bool:
        if "/" in vm_name or "\\" in vm_name or vm_name in {".", ".."}:
            return False
        return self.vm_dir(vm_name).is_dir()

    async def resolve(self, vm_name: str) -> VMBackend:
        """Return the handle for ``vm_name`` or raise :class:`VMNotFoundError`."""

        if not vm_name or not vm_name.strip():
            raise InvalidArgumentError("VM name must not be empty")

        if self._is_local(vm_name):
            return self.local_backend(vm_name)

        for machine in await self.global_machines():
            if machine.name == vm_name or machine.id == vm_name:
                return GlobalDeclarativeBackend(
                    machine,
                    self.invoker,
                    vagrant_binary=self.vagrant_binary,
                    default_timeout=self.declarative_timeout,
                    upload_timeout=self.upload_timeout,
                )

        vboxmanage = await self.locator.locate()
        if vboxmanage is not None:
            for name, uuid in await self.native_vms():
                if vm_name in (name, uuid):
                    return NativeHypervisorBackend(
                        name,
                        self.invoker,
                        vboxmanage=vboxmanage,
                        default_credentials=self.default_credentials,
                        default_timeout=self.native_timeout,
                        upload_timeout=self.upload_timeout,
                    )

        known = self.local_names()
        suggestion = closest_match(vm_name, known)
        logger.info("VM resolution failed", extra={"vm": vm_name, "suggestion": suggestion})
        raise VMNotFoundError(vm_name, known_names=known, suggestion=suggestion)

    async def list_vms(self, *, include_status: bool = False) -> list[VMSummary]:
        """Merge every registry; on name clashes resolution precedence wins."""

        summaries: dict[str, VMSummary] = {}
        for name in self.local_names():
            state = None
            if include_status:
                state = (await self.local_backend(name).status()).state
            summaries[name] = VMSummary(
                name=name, backend=BackendKind.LOCAL, state=state, directory=self.vm_dir(name)
            )

        for machine in await self.global_machines():
            summaries.setdefault(
                machine.name,
                VMSummary(
                    name=machine.name,
                    backend=BackendKind.GLOBAL,
                    state=machine.state,
                    directory=machine.directory,
                    id=machine.id,
                ),
            )

        vboxmanage = await self.locator.locate()
        for name, uuid in await self.native_vms():
            if name in summaries:
                continue
            state = None
            if include_status and vboxmanage is not None:
                backend = NativeHypervisorBackend(name, self.invoker, vboxmanage=vboxmanage)
                state = (await backend.status()).state
            summaries[name] = VMSummary(name=name, backend=BackendKind.NATIVE, state=state, id=uuid)

        return list(summaries.values())


__all__ = [
    "VBOXMANAGE_CANDIDATES",
    "BackendResolver",
    "HypervisorLocator",
    "cached_vboxmanage",
    "parse_global_status",
    "parse_vbox_list",
    "reset_vboxmanage_cache",
]
