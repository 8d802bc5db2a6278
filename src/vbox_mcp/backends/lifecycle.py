"""VM lifecycle operations layered over the resolver and backend handles."""

from __future__ import annotations

import logging
import re
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable

from ..errors import InvalidArgumentError, RemoteCommandError
from ..process import sanitize_snapshot_name
from .handles import (
    GlobalDeclarativeBackend,
    LocalManagedBackend,
    NativeHypervisorBackend,
    VMBackend,
    VagrantBackend,
)
from .resolver import BackendResolver

logger = logging.getLogger(__name__)

DEFAULT_BOX = "ubuntu/focal64"
DEFAULT_EXCLUDES: tuple[str, ...] = (
    "node_modules",
    ".git",
    "*.log",
    "dist",
    "build",
    "__pycache__",
    "*.pyc",
    "venv",
    ".venv",
    "*.o",
    "*.out",
)
UP_TIMEOUT = 1800.0
PACKAGE_TIMEOUT = 600.0

_VM_NAME = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


@dataclass(slots=True, frozen=True)
class PortForward:
    guest: int
    host: int


DEV_PORTS: tuple[PortForward, ...] = (
    PortForward(3000, 3000),
    PortForward(8000, 8000),
    PortForward(5432, 5432),
    PortForward(3306, 3306),
    PortForward(6379, 6379),
)


def _ruby_string(value: str) -> str:
    return '"' + value.replace("\\", "/").replace('"', '\\"') + '"'


def render_vagrantfile(
    *,
    name: str,
    box: str = DEFAULT_BOX,
    cpus: int = 1,
    memory_mb: int = 1024,
    gui: bool = False,
    ports: Iterable[PortForward] = (),
    project_path: str | Path | None = None,
    sync_type: str = "rsync",
    exclude_patterns: Iterable[str] = DEFAULT_EXCLUDES,
) -> str:
    lines = [
        'Vagrant.configure("2") do |config|',
        f"  config.vm.box = {_ruby_string(box)}",
        "",
        '  config.vm.provider "virtualbox" do |vb|',
        f"    vb.name = {_ruby_string(name)}",
        f'    vb.memory = "{int(memory_mb)}"',
        f"    vb.cpus = {int(cpus)}",
        f"    vb.gui = {'true' if gui else 'false'}",
        "  end",
    ]
    port_lines = [
        f'  config.vm.network "forwarded_port", guest: {port.guest}, host: {port.host}'
        for port in ports
    ]
    if port_lines:
        lines.append("")
        lines.extend(port_lines)
    if project_path is not None:
        excludes = ", ".join(_ruby_string(pattern) for pattern in exclude_patterns)
        lines.extend(
            [
                "",
                f'  config.vm.synced_folder {_ruby_string(str(project_path))}, "/vagrant",',
                f"    type: {_ruby_string(sync_type)},",
                f"    rsync__exclude: [{excludes}]",
            ]
        )
    lines.append("end")
    return "\n".join(lines) + "\n"


def update_vagrantfile_resources(
    content: str,
    *,
    cpus: int | None = None,
    memory_mb: int | None = None,
) -> str:
    if cpus is not None:
        content = re.sub(r"vb\.cpus\s*=\s*\d+", f"vb.cpus = {int(cpus)}", content)
    if memory_mb is not None:
        content = re.sub(r'vb\.memory\s*=\s*"?\d+"?', f'vb.memory = "{int(memory_mb)}"', content)
    return content


class VMLifecycle:
    """Create, start, stop, snapshot, package and resize VMs."""

    def __init__(self, resolver: BackendResolver) -> None:
        self.resolver = resolver

    @staticmethod
    def validate_name(name: str) -> str:
        if not _VM_NAME.match(name or ""):
            raise InvalidArgumentError(
                f"Invalid VM name '{name}'. Use letters, digits, '.', '_' or '-'."
            )
        return name

    async def create_vm(
        self,
        name: str,
        *,
        box: str = DEFAULT_BOX,
        cpus: int = 1,
        memory_mb: int = 1024,
        gui: bool = False,
        ports: Iterable[PortForward] = (),
        project_path: str | Path | None = None,
        sync_type: str = "rsync",
        exclude_patterns: Iterable[str] | None = None,
        overwrite: bool = False,
    ) -> dict[str, Any]:
        """Write a Vagrantfile under the VMs directory and bring the machine up."""

        self.validate_name(name)
        if cpus < 1 or memory_mb < 128:
            raise InvalidArgumentError("cpus must be >= 1 and memory_mb >= 128")

        vm_dir = self.resolver.vm_dir(name)
        vm_dir.mkdir(parents=True, exist_ok=True)
        vagrantfile = vm_dir / "Vagrantfile"
        if overwrite or not vagrantfile.exists():
            vagrantfile.write_text(
                render_vagrantfile(
                    name=name,
                    box=box,
                    cpus=cpus,
                    memory_mb=memory_mb,
                    gui=gui,
                    ports=ports,
                    project_path=project_path,
                    sync_type=sync_type,
                    exclude_patterns=exclude_patterns if exclude_patterns is not None else DEFAULT_EXCLUDES,
                ),
                encoding="utf-8",
            )

        logger.info(
            "Creating VM",
            extra={"vm": name, "box": box, "cpus": cpus, "memory_mb": memory_mb},
        )
        backend = self.resolver.local_backend(name)
        result = await backend.vagrant("up", timeout=UP_TIMEOUT)
        if not result.ok:
            raise RemoteCommandError(f"vagrant up failed for '{name}': {result.stderr.strip()}", result)
        return {"name": name, "directory": str(vm_dir), "box": box, "cpus": cpus, "memory_mb": memory_mb}

    async def ensure_vm(self, name: str, **create_kwargs: Any) -> dict[str, Any]:
        """Start the VM when it exists, otherwise create it."""

        self.validate_name(name)
        if self.resolver.vm_dir(name).is_dir():
            backend = self.resolver.local_backend(name)
            status = await backend.status()
            if status.running:
                return {"name": name, "action": "none", "state": status.state}
            await backend.start()
            return {"name": name, "action": "started", "state": "running"}

        created = await self.create_vm(name, **create_kwargs)
        return {**created, "action": "created", "state": "running"}

    async def start_vm(self, name: str) -> dict[str, Any]:
        backend = await self.resolver.resolve(name)
        await backend.start()
        return {"name": name, "backend": backend.kind.value, "state": "running"}

    async def halt_vm(self, name: str) -> dict[str, Any]:
        backend = await self.resolver.resolve(name)
        await backend.halt()
        return {"name": name, "backend": backend.kind.value, "state": "stopped"}

    async def reload_vm(self, name: str) -> dict[str, Any]:
        backend = await self.resolver.resolve(name)
        if isinstance(backend, VagrantBackend):
            result = await backend.vagrant("reload", *backend.target_args(), timeout=UP_TIMEOUT)
            if not result.ok:
                raise RemoteCommandError(f"vagrant reload failed for '{name}'", result)
        else:
            status = await backend.status()
            if status.running:
                await backend.halt()
            await backend.start()
        return {"name": name, "backend": backend.kind.value, "state": "running"}

    async def destroy_vm(self, name: str, *, remove_directory: bool = True) -> dict[str, Any]:
        backend = await self.resolver.resolve(name)
        if not isinstance(backend, LocalManagedBackend):
            raise InvalidArgumentError(
                f"VM '{name}' is not managed by this server; destroy it with its own tooling"
            )
        result = await backend.vagrant("destroy", "-f", timeout=UP_TIMEOUT)
        if not result.ok:
            raise RemoteCommandError(f"vagrant destroy failed for '{name}'", result)
        if remove_directory:
            shutil.rmtree(backend.directory, ignore_errors=True)
        return {"name": name, "destroyed": True, "directory_removed": remove_directory}

    async def snapshot_save(self, name: str, snapshot_name: str) -> dict[str, Any]:
        safe = sanitize_snapshot_name(snapshot_name)
        backend = await self.resolver.resolve(name)
        await backend.snapshot_save(safe)
        return {"vm": name, "snapshot": safe, "action": "saved"}

    async def snapshot_restore(self, name: str, snapshot_name: str) -> dict[str, Any]:
        safe = sanitize_snapshot_name(snapshot_name)
        backend = await self.resolver.resolve(name)
        await backend.snapshot_restore(safe)
        return {"vm": name, "snapshot": safe, "action": "restored"}

    async def snapshot_delete(self, name: str, snapshot_name: str) -> dict[str, Any]:
        safe = sanitize_snapshot_name(snapshot_name)
        backend = await self.resolver.resolve(name)
        await backend.snapshot_delete(safe)
        return {"vm": name, "snapshot": safe, "action": "deleted"}

    async def snapshot_list(self, name: str) -> dict[str, Any]:
        backend = await self.resolver.resolve(name)
        snapshots = await backend.snapshot_list()
        return {"vm": name, "snapshots": snapshots, "count": len(snapshots)}

    async def package_vm(self, name: str, output_file: str | None = None) -> dict[str, Any]:
        """Export a managed VM as a ``.box`` file; the VM is halted first."""

        backend = await self.resolver.resolve(name)
        if not isinstance(backend, LocalManagedBackend):
            raise InvalidArgumentError(f"Only VMs managed by this server can be packaged ('{name}')")
        output = Path(output_file).expanduser() if output_file else backend.directory / f"{name}.box"
        if output.exists():
            raise InvalidArgumentError(f"Output file '{output}' already exists")

        status = await backend.status()
        if status.running:
            await backend.halt()
        result = await backend.vagrant("package", "--output", str(output), timeout=PACKAGE_TIMEOUT)
        if not result.ok:
            raise RemoteCommandError(f"vagrant package failed for '{name}'", result)
        size = output.stat().st_size if output.exists() else None
        return {"vm": name, "output_file": str(output), "size_bytes": size}

    async def resize_vm(
        self,
        name: str,
        *,
        cpus: int | None = None,
        memory_mb: int | None = None,
    ) -> dict[str, Any]:
        """Change CPU/RAM through VBoxManage, halting and restarting a running VM."""

        if cpus is None and memory_mb is None:
            raise InvalidArgumentError("Provide cpus and/or memory_mb")
        if (cpus is not None and cpus < 1) or (memory_mb is not None and memory_mb < 128):
            raise InvalidArgumentError("cpus must be >= 1 and memory_mb >= 128")

        backend = await self.resolver.resolve(name)
        if isinstance(backend, GlobalDeclarativeBackend):
            raise InvalidArgumentError(
                f"VM '{name}' is managed by another Vagrant project; edit its Vagrantfile instead"
            )

        vboxmanage = await self.resolver.locator.require()
        native: NativeHypervisorBackend = (
            backend
            if isinstance(backend, NativeHypervisorBackend)
            else NativeHypervisorBackend(name, self.resolver.invoker, vboxmanage=vboxmanage)
        )

        was_running = (await backend.status()).running
        if was_running:
            await backend.halt()
        await native.modify(cpus=cpus, memory_mb=memory_mb)

        if isinstance(backend, LocalManagedBackend):
            vagrantfile = backend.directory / "Vagrantfile"
            if vagrantfile.exists():
                vagrantfile.write_text(
                    update_vagrantfile_resources(
                        vagrantfile.read_text(encoding="utf-8"), cpus=cpus, memory_mb=memory_mb
                    ),
                    encoding="utf-8",
                )
        if was_running:
            await backend.start()
        return {"vm": name, "cpus": cpus, "memory_mb": memory_mb, "restarted": was_running}

    async def _rsync(self, name: str, subcommand: str) -> dict[str, Any]:
        backend: VMBackend = await self.resolver.resolve(name)
        if not isinstance(backend, VagrantBackend):
            raise InvalidArgumentError(f"File sync requires a Vagrant-managed VM ('{name}')")
        result = await backend.vagrant(subcommand, *backend.target_args(), timeout=UP_TIMEOUT)
        if not result.ok:
            raise RemoteCommandError(f"vagrant {subcommand} failed for '{name}'", result)
        return {"vm": name, "direction": "push" if subcommand == "rsync" else "pull", "output": result.stdout[-2000:]}

    async def sync_to_vm(self, name: str) -> dict[str, Any]:
        return await self._rsync(name, "rsync")

    async def sync_from_vm(self, name: str) -> dict[str, Any]:
        return await self._rsync(name, "rsync-back")


__all__ = [
    "DEFAULT_BOX",
    "DEFAULT_EXCLUDES",
    "DEV_PORTS",
    "PortForward",
    "VMLifecycle",
    "render_vagrantfile",
    "update_vagrantfile_resources",
]
