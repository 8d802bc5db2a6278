from __future__ import annotations

import asyncio
import re

import pytest

from conftest import GuestShell, result
from vbox_mcp.backends import CommandRouter
from vbox_mcp.errors import RemoteCommandError, TransactionRolledBackError
from vbox_mcp.transactions import TransactionRunner


def _snapshot_calls(guest: GuestShell, action: str) -> list[tuple[str, ...]]:
    return [call for call in guest.vagrant_calls if call[:2] == ("snapshot", action)]


def test_snapshot_names_are_unique_and_safe(router: CommandRouter) -> None:
    runner = TransactionRunner(router)

    first, second = runner.snapshot_name(), runner.snapshot_name()

    assert first != second
    assert re.fullmatch(r"pre-atomic-\d{8}T\d{6}-[0-9a-f]{6}", first)


def test_successful_command_keeps_snapshot(router: CommandRouter, guest: GuestShell) -> None:
    events: list = []
    runner = TransactionRunner(router, on_event=lambda event_type, payload: events.append((event_type, payload)))
    guest.on("apt-get upgrade", result("done\n"))

    outcome = asyncio.run(runner.run("dev", "sudo apt-get upgrade -y"))

    saves = _snapshot_calls(guest, "save")
    assert len(saves) == 1
    assert saves[0][-1] == outcome.snapshot_name
    assert _snapshot_calls(guest, "restore") == []
    assert _snapshot_calls(guest, "delete") == []
    assert outcome.rolled_back is False
    assert outcome.as_dict()["result"]["stdout"] == "done\n"
    assert events[0][0] == "transaction"
    assert events[0][1]["status"] == "committed"


def test_failed_command_restores_snapshot_once(router: CommandRouter, guest: GuestShell) -> None:
    events: list = []
    runner = TransactionRunner(router, on_event=lambda event_type, payload: events.append(payload))
    guest.on("rm -rf /opt/app", result(stderr="permission denied", exit_code=1))

    with pytest.raises(TransactionRolledBackError) as excinfo:
        asyncio.run(runner.run("dev", "rm -rf /opt/app"))

    restores = _snapshot_calls(guest, "restore")
    assert len(restores) == 1
    assert restores[0][-1] == excinfo.value.snapshot_name
    assert excinfo.value.result.exit_code == 1
    assert "exited with code 1" in str(excinfo.value)
    assert events[-1]["status"] == "rolled_back"
    assert events[-1]["rolled_back"] is True


def test_timed_out_command_is_rolled_back(router: CommandRouter, guest: GuestShell) -> None:
    runner = TransactionRunner(router)
    guest.on("sleep", result(exit_code=124, timed_out=True))

    with pytest.raises(TransactionRolledBackError) as excinfo:
        asyncio.run(runner.run("dev", "sleep 999", timeout=1))

    assert "timed out" in str(excinfo.value)
    assert len(_snapshot_calls(guest, "restore")) == 1


def test_failure_without_rollback_returns_result(router: CommandRouter, guest: GuestShell) -> None:
    runner = TransactionRunner(router)
    guest.on("false", result(exit_code=1))

    outcome = asyncio.run(runner.run("dev", "false", rollback_on_fail=False))

    assert outcome.result.exit_code == 1
    assert outcome.rolled_back is False
    assert _snapshot_calls(guest, "restore") == []


def test_snapshot_failure_prevents_command(router: CommandRouter, guest: GuestShell) -> None:
    runner = TransactionRunner(router)
    guest.vagrant_replies["snapshot"] = result(stderr="VBoxManage: error: snapshot failed", exit_code=1)

    with pytest.raises(RemoteCommandError) as excinfo:
        asyncio.run(runner.run("dev", "touch /tmp/never"))

    assert "command not run" in str(excinfo.value)
    assert not isinstance(excinfo.value, TransactionRolledBackError)
    assert guest.commands == []


def test_failed_restore_propagates(router: CommandRouter, guest: GuestShell) -> None:
    runner = TransactionRunner(router)
    guest.on("make", result(exit_code=2))
    guest.vagrant_replies["snapshot restore"] = result(stderr="restore failed", exit_code=1)

    with pytest.raises(RemoteCommandError) as excinfo:
        asyncio.run(runner.run("dev", "make install"))

    assert not isinstance(excinfo.value, TransactionRolledBackError)
    assert "Snapshot restore" in str(excinfo.value)
