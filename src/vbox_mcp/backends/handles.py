"""Backend handles: one implementation of each VM operation per control plane.

The resolver picks a handle once per call and the router only talks to the
handle, so no operation needs to branch on the backend kind.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Sequence

from ..errors import RemoteCommandError
from ..process import CommandResult, ProcessInvoker
from .models import BackendKind, GlobalMachine, GuestCredentials, VMStatus

logger = logging.getLogger(__name__)

DEFAULT_DECLARATIVE_TIMEOUT = 300.0
DEFAULT_NATIVE_TIMEOUT = 60.0
DEFAULT_UPLOAD_TIMEOUT = 600.0

_VM_STATE = re.compile(r'^VMState="([^"]*)"', re.MULTILINE)
_NATIVE_SNAPSHOT = re.compile(r'^SnapshotName(?:-[\d-]+)?="(.*)"$', re.MULTILINE)


def parse_machine_readable_state(stdout: str) -> str | None:
    """Extract the state value from ``vagrant status --machine-readable`` output."""

    for line in stdout.splitlines():
        parts = line.split(",")
        if len(parts) >= 4 and parts[2] == "state":
            return parts[3].strip()
    return None


def parse_vminfo_state(stdout: str) -> str | None:
    match = _VM_STATE.search(stdout)
    return match.group(1) if match else None


def _parse_vagrant_snapshots(stdout: str) -> list[str]:
    output = stdout.strip()
    if not output or "No snapshots" in output:
        return []
    return [
        line.strip()
        for line in output.splitlines()
        if line.strip() and not line.strip().startswith(("==>", "Listing contents"))
    ]


def _require_ok(result: CommandResult, action: str) -> CommandResult:
    if not result.ok:
        detail = (result.stderr or result.stdout).strip()
        raise RemoteCommandError(f"{action} failed: {detail or f'exit code {result.exit_code}'}", result)
    return result


class VMBackend:
    """Common surface of the three backend variants."""

    kind: BackendKind

    def __init__(
        self,
        name: str,
        invoker: ProcessInvoker,
        *,
        default_timeout: float,
        upload_timeout: float = DEFAULT_UPLOAD_TIMEOUT,
    ) -> None:
        self.name = name
        self._invoker = invoker
        self.default_timeout = default_timeout
        self.upload_timeout = upload_timeout

    async def execute(
        self,
        command: str,
        *,
        timeout: float | None = None,
        credentials: GuestCredentials | None = None,
    ) -> CommandResult:
        raise NotImplementedError

    async def upload(
        self,
        source: str,
        destination: str,
        *,
        credentials: GuestCredentials | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        raise NotImplementedError

    async def status(self) -> VMStatus:
        raise NotImplementedError

    async def start(self) -> CommandResult:
        raise NotImplementedError

    async def halt(self) -> CommandResult:
        raise NotImplementedError

    async def snapshot_save(self, snapshot_name: str) -> CommandResult:
        raise NotImplementedError

    async def snapshot_restore(self, snapshot_name: str) -> CommandResult:
        raise NotImplementedError

    async def snapshot_delete(self, snapshot_name: str) -> CommandResult:
        raise NotImplementedError

    async def snapshot_list(self) -> list[str]:
        raise NotImplementedError

    def describe(self) -> dict[str, str | None]:
        return {"name": self.name, "backend": self.kind.value}

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r})"


class VagrantBackend(VMBackend):
    """Shared plumbing for the two Vagrant-driven variants."""

    def __init__(
        self,
        name: str,
        invoker: ProcessInvoker,
        *,
        vagrant_binary: str = "vagrant",
        default_timeout: float = DEFAULT_DECLARATIVE_TIMEOUT,
        upload_timeout: float = DEFAULT_UPLOAD_TIMEOUT,
    ) -> None:
        super().__init__(name, invoker, default_timeout=default_timeout, upload_timeout=upload_timeout)
        self.vagrant_binary = vagrant_binary

    @property
    def cwd(self) -> Path | None:
        return None

    def target_args(self) -> list[str]:
        return []

    async def vagrant(self, *args: str, timeout: float | None = None) -> CommandResult:
        return await self._invoker.run(self.vagrant_binary, list(args), cwd=self.cwd, timeout=timeout)

    async def execute(
        self,
        command: str,
        *,
        timeout: float | None = None,
        credentials: GuestCredentials | None = None,
    ) -> CommandResult:
        effective = timeout if timeout is not None else self.default_timeout
        return await self.vagrant("ssh", *self.target_args(), "-c", command, timeout=effective)

    async def upload(
        self,
        source: str,
        destination: str,
        *,
        credentials: GuestCredentials | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        effective = timeout if timeout is not None else self.upload_timeout
        result = await self.vagrant("upload", source, destination, *self.target_args(), timeout=effective)
        return _require_ok(result, f"Upload to {self.name}")

    async def status(self) -> VMStatus:
        result = await self.vagrant("status", *self.target_args(), "--machine-readable")
        state = parse_machine_readable_state(result.stdout) if result.ok else None
        return VMStatus(
            name=self.name,
            backend=self.kind,
            state=state or "unknown",
            raw={"exit_code": result.exit_code},
        )

    async def start(self) -> CommandResult:
        return _require_ok(await self.vagrant("up", *self.target_args()), f"Start {self.name}")

    async def halt(self) -> CommandResult:
        return _require_ok(await self.vagrant("halt", *self.target_args()), f"Halt {self.name}")

    async def snapshot_save(self, snapshot_name: str) -> CommandResult:
        result = await self.vagrant("snapshot", "save", *self.target_args(), snapshot_name)
        return _require_ok(result, f"Snapshot save '{snapshot_name}' on {self.name}")

    async def snapshot_restore(self, snapshot_name: str) -> CommandResult:
        result = await self.vagrant("snapshot", "restore", *self.target_args(), snapshot_name)
        return _require_ok(result, f"Snapshot restore '{snapshot_name}' on {self.name}")

    async def snapshot_delete(self, snapshot_name: str) -> CommandResult:
        result = await self.vagrant("snapshot", "delete", *self.target_args(), snapshot_name)
        return _require_ok(result, f"Snapshot delete '{snapshot_name}' on {self.name}")

    async def snapshot_list(self) -> list[str]:
        result = await self.vagrant("snapshot", "list", *self.target_args())
        if not result.ok:
            logger.warning("Snapshot listing failed", extra={"vm": self.name, "stderr": result.stderr[:200]})
            return []
        return _parse_vagrant_snapshots(result.stdout)


class LocalManagedBackend(VagrantBackend):
    """VM whose Vagrantfile lives in this server's VMs directory."""

    kind = BackendKind.LOCAL

    def __init__(self, name: str, directory: Path, invoker: ProcessInvoker, **kwargs) -> None:
        super().__init__(name, invoker, **kwargs)
        self.directory = Path(directory)

    @property
    def cwd(self) -> Path | None:
        return self.directory

    def describe(self) -> dict[str, str | None]:
        return {**super().describe(), "directory": str(self.directory)}


class GlobalDeclarativeBackend(VagrantBackend):
    """Vagrant machine registered elsewhere; every command targets its machine id."""

    kind = BackendKind.GLOBAL

    def __init__(self, machine: GlobalMachine, invoker: ProcessInvoker, **kwargs) -> None:
        super().__init__(machine.name, invoker, **kwargs)
        self.machine = machine

    def target_args(self) -> list[str]:
        return [self.machine.id]

    async def status(self) -> VMStatus:
        status = await super().status()
        if status.state == "unknown" and self.machine.state:
            status.state = self.machine.state
        status.raw["id"] = self.machine.id
        return status

    def describe(self) -> dict[str, str | None]:
        return {**super().describe(), "id": self.machine.id, "directory": self.machine.directory}


class NativeHypervisorBackend(VMBackend):
    """VM registered with VirtualBox only, driven through VBoxManage guestcontrol."""

    kind = BackendKind.NATIVE

    def __init__(
        self,
        name: str,
        invoker: ProcessInvoker,
        *,
        vboxmanage: str,
        default_credentials: GuestCredentials | None = None,
        default_timeout: float = DEFAULT_NATIVE_TIMEOUT,
        upload_timeout: float = DEFAULT_UPLOAD_TIMEOUT,
    ) -> None:
        super().__init__(name, invoker, default_timeout=default_timeout, upload_timeout=upload_timeout)
        self.vboxmanage = vboxmanage
        self.default_credentials = default_credentials or GuestCredentials()

    async def vbox(self, args: Sequence[str], *, timeout: float | None = None) -> CommandResult:
        return await self._invoker.run(self.vboxmanage, list(args), timeout=timeout)

    async def _require_running(self) -> None:
        status = await self.status()
        if not status.running:
            raise RemoteCommandError(
                f"VM '{self.name}' is not running (state: {status.state}). "
                "Start it before using guest control."
            )

    async def execute(
        self,
        command: str,
        *,
        timeout: float | None = None,
        credentials: GuestCredentials | None = None,
    ) -> CommandResult:
        await self._require_running()
        creds = credentials or self.default_credentials
        effective = timeout if timeout is not None else self.default_timeout
        result = await self.vbox(
            [
                "guestcontrol",
                self.name,
                "run",
                "--exe",
                "/bin/sh",
                "--username",
                creds.username,
                "--password",
                creds.password,
                "--",
                "-c",
                command,
            ],
            timeout=effective,
        )
        if not result.ok and "VBOX_E_IPRT_ERROR" in result.stderr:
            logger.warning(
                "Guest control failed; Guest Additions may be missing or credentials wrong",
                extra={"vm": self.name},
            )
        return result

    async def upload(
        self,
        source: str,
        destination: str,
        *,
        credentials: GuestCredentials | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        await self._require_running()
        creds = credentials or self.default_credentials
        effective = timeout if timeout is not None else self.upload_timeout
        result = await self.vbox(
            [
                "guestcontrol",
                self.name,
                "copyto",
                "--username",
                creds.username,
                "--password",
                creds.password,
                "--target-directory",
                destination,
                source,
            ],
            timeout=effective,
        )
        return _require_ok(result, f"Upload to {self.name}")

    async def status(self) -> VMStatus:
        result = await self.vbox(["showvminfo", self.name, "--machinereadable"])
        if not result.ok:
            return VMStatus(name=self.name, backend=self.kind, state="not_created")
        return VMStatus(
            name=self.name,
            backend=self.kind,
            state=parse_vminfo_state(result.stdout) or "unknown",
        )

    async def start(self) -> CommandResult:
        return _require_ok(
            await self.vbox(["startvm", self.name, "--type", "headless"]), f"Start {self.name}"
        )

    async def halt(self) -> CommandResult:
        return _require_ok(await self.vbox(["controlvm", self.name, "savestate"]), f"Halt {self.name}")

    async def snapshot_save(self, snapshot_name: str) -> CommandResult:
        result = await self.vbox(["snapshot", self.name, "take", snapshot_name])
        return _require_ok(result, f"Snapshot save '{snapshot_name}' on {self.name}")

    async def snapshot_restore(self, snapshot_name: str) -> CommandResult:
        result = await self.vbox(["snapshot", self.name, "restore", snapshot_name])
        return _require_ok(result, f"Snapshot restore '{snapshot_name}' on {self.name}")

    async def snapshot_delete(self, snapshot_name: str) -> CommandResult:
        result = await self.vbox(["snapshot", self.name, "delete", snapshot_name])
        return _require_ok(result, f"Snapshot delete '{snapshot_name}' on {self.name}")

    async def snapshot_list(self) -> list[str]:
        result = await self.vbox(["snapshot", self.name, "list", "--machinereadable"])
        if not result.ok:
            return []
        return _NATIVE_SNAPSHOT.findall(result.stdout)

    async def modify(self, *, cpus: int | None = None, memory_mb: int | None = None) -> CommandResult:
        args = ["modifyvm", self.name]
        if cpus is not None:
            args.extend(["--cpus", str(cpus)])
        if memory_mb is not None:
            args.extend(["--memory", str(memory_mb)])
        return _require_ok(await self.vbox(args), f"Modify {self.name}")

    def describe(self) -> dict[str, str | None]:
        return {**super().describe(), "vboxmanage": self.vboxmanage}


__all__ = [
    "DEFAULT_DECLARATIVE_TIMEOUT",
    "DEFAULT_NATIVE_TIMEOUT",
    "DEFAULT_UPLOAD_TIMEOUT",
    "VMBackend",
    "VagrantBackend",
    "LocalManagedBackend",
    "GlobalDeclarativeBackend",
    "NativeHypervisorBackend",
    "parse_machine_readable_state",
    "parse_vminfo_state",
]
