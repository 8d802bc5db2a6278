from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from conftest import GuestShell, result
from vbox_mcp.backends import BackendResolver, CommandRouter, GuestCredentials, HypervisorLocator
from vbox_mcp.backends.router import parse_ps_aux
from vbox_mcp.errors import InvalidArgumentError, RemoteCommandError
from vbox_mcp.process import CommandResult, FakeProcessInvoker

PS_OUTPUT = """\
root         1  0.0  0.1 167744 11520 ?        Ss   10:00   0:02 /sbin/init
vagrant   4242 12.5  3.2 912000 65000 ?        Sl   10:05   1:10 node server.js --port 3000
"""


def test_local_execute_runs_vagrant_ssh_in_vm_directory(
    router: CommandRouter, invoker: FakeProcessInvoker, guest: GuestShell, vms_dir: Path
) -> None:
    guest.on("uname", result("Linux\n"))

    outcome = asyncio.run(router.execute("dev", "uname -a", timeout=12))

    assert outcome.stdout == "Linux\n"
    assert invoker.invocations == [("vagrant", "ssh", "-c", "uname -a")]
    assert invoker.cwds == [str(vms_dir / "dev")]
    assert invoker.timeouts == [12]


def test_local_execute_uses_default_timeout(router: CommandRouter, invoker: FakeProcessInvoker) -> None:
    asyncio.run(router.execute("dev", "true"))

    assert invoker.timeouts == [300.0]


def test_global_execute_targets_machine_id(tmp_path: Path) -> None:
    def handler(binary, args, cwd):
        if args[:1] == ("global-status",):
            return CommandResult(
                args=(), stdout="a1b2c3d  web  virtualbox running /srv/web\n", stderr="", exit_code=0
            )
        return None

    invoker = FakeProcessInvoker(handler=handler)
    router = CommandRouter(BackendResolver(tmp_path, invoker, locator=HypervisorLocator(invoker, candidates=())))

    asyncio.run(router.execute("web", "hostname"))

    assert invoker.invocations[-1] == ("vagrant", "ssh", "a1b2c3d", "-c", "hostname")
    assert invoker.cwds[-1] is None


def _native_router(tmp_path: Path, state: str = "running", copy_error: str | None = None):
    def handler(binary, args, cwd):
        if copy_error and args[2:3] == ("copyto",):
            return CommandResult(args=(), stdout="", stderr=copy_error, exit_code=1)
        if binary == "vagrant":
            return CommandResult(args=(), stdout="", stderr="", exit_code=1)
        if args[:2] == ("list", "vms"):
            return CommandResult(args=(), stdout='"legacy" {abcd}\n', stderr="", exit_code=0)
        if args[:1] == ("showvminfo",):
            return CommandResult(args=(), stdout=f'name="legacy"\nVMState="{state}"\n', stderr="", exit_code=0)
        return None

    invoker = FakeProcessInvoker(handler=handler)
    resolver = BackendResolver(
        tmp_path,
        invoker,
        locator=HypervisorLocator(invoker, candidates=("VBoxManage",)),
        default_credentials=GuestCredentials("ops", "secret"),
    )
    return CommandRouter(resolver), invoker


def test_native_execute_uses_guestcontrol_with_credentials(tmp_path: Path) -> None:
    router, invoker = _native_router(tmp_path)

    asyncio.run(router.execute("legacy", "id", credentials=GuestCredentials("root", "toor")))

    call = invoker.invocations[-1]
    assert call[:4] == ("VBoxManage", "guestcontrol", "legacy", "run")
    assert call[call.index("--username") + 1] == "root"
    assert call[call.index("--password") + 1] == "toor"
    assert call[-2:] == ("-c", "id")


def test_native_execute_defaults_to_configured_credentials(tmp_path: Path) -> None:
    router, invoker = _native_router(tmp_path)

    asyncio.run(router.execute("legacy", "id"))

    call = invoker.invocations[-1]
    assert call[call.index("--username") + 1] == "ops"
    assert invoker.timeouts[-1] == 60.0


def test_native_execute_requires_running_vm(tmp_path: Path) -> None:
    router, invoker = _native_router(tmp_path, state="poweroff")

    with pytest.raises(RemoteCommandError) as excinfo:
        asyncio.run(router.execute("legacy", "id"))

    assert "not running" in str(excinfo.value)
    assert not any("guestcontrol" in call for call in invoker.invocations)


def test_upload_rejects_missing_source(router: CommandRouter, invoker: FakeProcessInvoker, tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        asyncio.run(router.upload("dev", tmp_path / "nope.txt", "/home/vagrant/nope.txt"))

    assert invoker.invocations == []


def test_upload_local_uses_vagrant_upload(router: CommandRouter, invoker: FakeProcessInvoker, tmp_path: Path) -> None:
    source = tmp_path / "app.tar"
    source.write_text("data", encoding="utf-8")

    outcome = asyncio.run(router.upload("dev", source, "/home/vagrant/app.tar"))

    assert outcome.ok
    assert invoker.invocations == [("vagrant", "upload", str(source), "/home/vagrant/app.tar")]
    assert invoker.timeouts == [600.0]


def _global_router(tmp_path: Path, upload_error: str | None = None):
    def handler(binary, args, cwd):
        if args[:1] == ("global-status",):
            return CommandResult(
                args=(), stdout="a1b2c3d  web  virtualbox running /srv/web\n", stderr="", exit_code=0
            )
        if upload_error and args[:1] == ("upload",):
            return CommandResult(args=(), stdout="", stderr=upload_error, exit_code=1)
        return None

    invoker = FakeProcessInvoker(handler=handler)
    resolver = BackendResolver(
        tmp_path / "vms", invoker, locator=HypervisorLocator(invoker, candidates=()), upload_timeout=90
    )
    return CommandRouter(resolver), invoker


def test_upload_global_targets_machine_id(tmp_path: Path) -> None:
    source = tmp_path / "site.zip"
    source.write_bytes(b"zip")
    router, invoker = _global_router(tmp_path)

    asyncio.run(router.upload("web", source, "/srv/site.zip"))

    assert invoker.invocations[-1] == ("vagrant", "upload", str(source), "/srv/site.zip", "a1b2c3d")
    assert invoker.cwds[-1] is None
    assert invoker.timeouts[-1] == 90


def test_upload_global_failure_raises(tmp_path: Path) -> None:
    source = tmp_path / "site.zip"
    source.write_bytes(b"zip")
    router, _ = _global_router(tmp_path, upload_error="No space left on device")

    with pytest.raises(RemoteCommandError) as excinfo:
        asyncio.run(router.upload("web", source, "/srv/site.zip", timeout=5))

    assert "No space left on device" in str(excinfo.value)
    assert excinfo.value.result.exit_code == 1


def test_upload_native_uses_guestcontrol_copyto(tmp_path: Path) -> None:
    source = tmp_path / "tool.sh"
    source.write_text("#!/bin/sh\n", encoding="utf-8")
    router, invoker = _native_router(tmp_path)

    asyncio.run(router.upload("legacy", source, "/opt/bin", credentials=GuestCredentials("root", "toor")))

    assert invoker.invocations[-1] == (
        "VBoxManage",
        "guestcontrol",
        "legacy",
        "copyto",
        "--username",
        "root",
        "--password",
        "toor",
        "--target-directory",
        "/opt/bin",
        str(source),
    )
    assert invoker.timeouts[-1] == 600.0


def test_upload_native_defaults_credentials_and_timeout(tmp_path: Path) -> None:
    source = tmp_path / "tool.sh"
    source.write_text("#!/bin/sh\n", encoding="utf-8")
    router, invoker = _native_router(tmp_path)

    asyncio.run(router.upload("legacy", source, "/opt/bin", timeout=30))

    call = invoker.invocations[-1]
    assert call[call.index("--username") + 1] == "ops"
    assert call[call.index("--password") + 1] == "secret"
    assert invoker.timeouts[-1] == 30


def test_upload_native_requires_running_vm(tmp_path: Path) -> None:
    source = tmp_path / "tool.sh"
    source.write_text("#!/bin/sh\n", encoding="utf-8")
    router, invoker = _native_router(tmp_path, state="saved")

    with pytest.raises(RemoteCommandError, match="not running"):
        asyncio.run(router.upload("legacy", source, "/opt/bin"))

    assert not any("copyto" in call for call in invoker.invocations)


def test_upload_native_failure_raises(tmp_path: Path) -> None:
    source = tmp_path / "tool.sh"
    source.write_text("#!/bin/sh\n", encoding="utf-8")
    router, _ = _native_router(tmp_path, copy_error="VBOX_E_IPRT_ERROR: copy failed")

    with pytest.raises(RemoteCommandError) as excinfo:
        asyncio.run(router.upload("legacy", source, "/opt/bin"))

    assert "Upload to legacy failed: VBOX_E_IPRT_ERROR: copy failed" in str(excinfo.value)


def test_tail_file_quotes_path(router: CommandRouter, guest: GuestShell) -> None:
    guest.on("tail -n 2", result("b\nc\n"))

    payload = asyncio.run(router.tail_file("dev", "/var/log/my app.log", lines=2))

    assert guest.commands == ["tail -n 2 '/var/log/my app.log'"]
    assert payload == {"path": "/var/log/my app.log", "content": "b\nc", "lines_returned": 2}


def test_tail_file_failure_raises(router: CommandRouter, guest: GuestShell) -> None:
    guest.on("tail", result(stderr="tail: cannot open", exit_code=1))

    with pytest.raises(RemoteCommandError) as excinfo:
        asyncio.run(router.tail_file("dev", "/missing.log"))

    assert "cannot open" in str(excinfo.value)


def test_grep_file_parses_numbered_matches(router: CommandRouter, guest: GuestShell) -> None:
    guest.on("grep", result("3:ERROR boom\n10:error: again\nnoise\n"))

    payload = asyncio.run(router.grep_file("dev", "/var/log/app.log", "error", limit=5))

    assert payload["count"] == 2
    assert payload["matches"][0] == {"line": 3, "text": "ERROR boom"}
    assert "grep -n -i -e 'error'" in guest.commands[0]
    assert "head -n 5" in guest.commands[0]


def test_search_files(router: CommandRouter, guest: GuestShell) -> None:
    guest.on("find", result("/srv/a.py\n/srv/b.py\n\n"))

    files = asyncio.run(router.search_files("dev", "/srv", "*.py"))

    assert files == ["/srv/a.py", "/srv/b.py"]
    assert guest.commands[0].startswith("find '/srv' -type f -name '*.py'")


def test_list_processes_parses_ps(router: CommandRouter, guest: GuestShell) -> None:
    guest.on("ps aux", result(PS_OUTPUT))

    processes = asyncio.run(router.list_processes("dev", name_filter="node"))

    assert [process.pid for process in processes] == [1, 4242]
    assert processes[1].command == "node server.js --port 3000"
    assert "grep -i 'node'" in guest.commands[0]


def test_parse_ps_aux_skips_garbage() -> None:
    assert parse_ps_aux("garbage line\n") == []


def test_kill_process_rejects_bad_signal_before_any_call(
    router: CommandRouter, invoker: FakeProcessInvoker
) -> None:
    with pytest.raises(InvalidArgumentError):
        asyncio.run(router.kill_process("dev", 4242, signal="SIGBANANA"))

    assert invoker.invocations == []


def test_kill_process_sends_signal(router: CommandRouter, guest: GuestShell) -> None:
    guest.on("ps -p 4242", result("4242\n"))

    payload = asyncio.run(router.kill_process("dev", 4242, signal="9"))

    assert payload["success"] is True
    assert payload["signal"] == "SIGKILL"
    assert guest.ran("kill -s KILL 4242")


def test_kill_process_reports_missing_pid(router: CommandRouter, guest: GuestShell) -> None:
    guest.on("ps -p", result("", exit_code=1))

    payload = asyncio.run(router.kill_process("dev", 999))

    assert payload["success"] is False
    assert "not found" in payload["message"]
    assert not guest.ran("kill -s")
