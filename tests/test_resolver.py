from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from vbox_mcp.backends import (
    BackendKind,
    BackendResolver,
    GlobalDeclarativeBackend,
    HypervisorLocator,
    LocalManagedBackend,
    NativeHypervisorBackend,
    closest_match,
    levenshtein,
)
from vbox_mcp.backends.resolver import cached_vboxmanage, parse_global_status, parse_vbox_list
from vbox_mcp.errors import InvalidArgumentError, VMNotFoundError
from vbox_mcp.process import CommandResult, FakeProcessInvoker

GLOBAL_STATUS = """\
id       name    provider   state    directory
-------------------------------------------------------------------------
a1b2c3d  web     virtualbox running  /home/me/projects/web
b2c3d4e  dev     virtualbox poweroff /home/me/projects/other dev

The above shows information about all known Vagrant environments
"""

VBOX_LIST = '"legacy" {11111111-2222-3333-4444-555555555555}\n"web" {99999999-2222-3333-4444-555555555555}\n'


def _ok(stdout: str = "") -> CommandResult:
    return CommandResult(args=(), stdout=stdout, stderr="", exit_code=0)


def _registries(binary, args, cwd):
    if binary == "vagrant" and args[:1] == ("global-status",):
        return _ok(GLOBAL_STATUS)
    if binary == "VBoxManage" and args == ("--version",):
        return _ok("7.0.14r161095\n")
    if binary == "VBoxManage" and args[:2] == ("list", "vms"):
        return _ok(VBOX_LIST)
    return None


def _resolver(vms_dir: Path, invoker: FakeProcessInvoker) -> BackendResolver:
    return BackendResolver(
        vms_dir, invoker, locator=HypervisorLocator(invoker, candidates=("VBoxManage",))
    )


def test_parse_global_status() -> None:
    machines = parse_global_status(GLOBAL_STATUS)

    assert [machine.name for machine in machines] == ["web", "dev"]
    assert machines[0].id == "a1b2c3d"
    assert machines[0].state == "running"
    assert machines[1].directory == "/home/me/projects/other dev"


def test_parse_vbox_list() -> None:
    assert parse_vbox_list(VBOX_LIST)[0] == ("legacy", "11111111-2222-3333-4444-555555555555")


def test_local_directory_wins_without_probing_registries(vms_dir: Path) -> None:
    invoker = FakeProcessInvoker(handler=_registries)

    backend = asyncio.run(_resolver(vms_dir, invoker).resolve("dev"))

    assert isinstance(backend, LocalManagedBackend)
    assert backend.kind is BackendKind.LOCAL
    assert backend.directory == vms_dir / "dev"
    assert invoker.invocations == []


def test_global_machine_resolves_by_name_or_id(vms_dir: Path) -> None:
    invoker = FakeProcessInvoker(handler=_registries)
    resolver = _resolver(vms_dir, invoker)

    by_name = asyncio.run(resolver.resolve("web"))
    by_id = asyncio.run(resolver.resolve("a1b2c3d"))

    assert isinstance(by_name, GlobalDeclarativeBackend)
    assert by_name.target_args() == ["a1b2c3d"]
    assert isinstance(by_id, GlobalDeclarativeBackend)
    assert by_id.name == "web"


def test_native_vm_resolves_when_vagrant_does_not_know_it(vms_dir: Path) -> None:
    invoker = FakeProcessInvoker(handler=_registries)

    backend = asyncio.run(_resolver(vms_dir, invoker).resolve("legacy"))

    assert isinstance(backend, NativeHypervisorBackend)
    assert backend.vboxmanage == "VBoxManage"


def test_missing_vm_suggests_closest_local_name(vms_dir: Path) -> None:
    (vms_dir / "web-server").mkdir()
    invoker = FakeProcessInvoker(handler=_registries)

    with pytest.raises(VMNotFoundError) as excinfo:
        asyncio.run(_resolver(vms_dir, invoker).resolve("webserver"))

    assert excinfo.value.suggestion == "web-server"
    assert "Did you mean 'web-server'?" in str(excinfo.value)
    assert "Available VMs: dev, web-server" in str(excinfo.value)


def test_resolution_survives_missing_binaries(vms_dir: Path) -> None:
    invoker = FakeProcessInvoker(missing=["vagrant", "VBoxManage"])

    with pytest.raises(VMNotFoundError) as excinfo:
        asyncio.run(_resolver(vms_dir, invoker).resolve("ghost"))

    assert excinfo.value.suggestion is None


def test_empty_name_rejected(vms_dir: Path) -> None:
    with pytest.raises(InvalidArgumentError):
        asyncio.run(_resolver(vms_dir, FakeProcessInvoker()).resolve("  "))


def test_path_like_names_are_not_local(vms_dir: Path) -> None:
    invoker = FakeProcessInvoker(missing=["VBoxManage"])

    with pytest.raises(VMNotFoundError):
        asyncio.run(_resolver(vms_dir, invoker).resolve("../vms"))


def test_locator_caches_hits_but_not_misses() -> None:
    state = {"installed": False}

    def handler(binary, args, cwd):
        if state["installed"]:
            return _ok("7.0.14")
        return CommandResult(args=(), stdout="", stderr="not installed", exit_code=1)

    invoker = FakeProcessInvoker(handler=handler)
    locator = HypervisorLocator(invoker, candidates=("VBoxManage",))

    assert asyncio.run(locator.locate()) is None
    assert cached_vboxmanage() is None

    state["installed"] = True
    assert asyncio.run(locator.locate()) == "VBoxManage"
    calls = len(invoker.invocations)

    state["installed"] = False
    assert asyncio.run(locator.locate()) == "VBoxManage"
    assert len(invoker.invocations) == calls


def test_locator_prefers_explicit_path() -> None:
    invoker = FakeProcessInvoker()
    locator = HypervisorLocator(invoker, explicit="/opt/vbox/VBoxManage", candidates=("VBoxManage",))

    assert asyncio.run(locator.locate()) == "/opt/vbox/VBoxManage"
    assert invoker.invocations == [("/opt/vbox/VBoxManage", "--version")]


def test_list_vms_merges_registries_with_precedence(vms_dir: Path) -> None:
    invoker = FakeProcessInvoker(handler=_registries)

    summaries = {summary.name: summary for summary in asyncio.run(_resolver(vms_dir, invoker).list_vms())}

    assert set(summaries) == {"dev", "web", "legacy"}
    assert summaries["dev"].backend is BackendKind.LOCAL
    assert summaries["web"].backend is BackendKind.GLOBAL
    assert summaries["web"].id == "a1b2c3d"
    assert summaries["legacy"].backend is BackendKind.NATIVE
    assert summaries["dev"].as_dict()["directory"] == str(vms_dir / "dev")


def test_levenshtein_and_closest_match() -> None:
    assert levenshtein("kitten", "sitting") == 3
    assert levenshtein("", "abc") == 3
    assert closest_match("DEV", ["dev", "prod"]) == "dev"
    assert closest_match("database", ["web"]) is None
