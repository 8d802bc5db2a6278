from __future__ import annotations

from pathlib import Path
from typing import Callable, Union

import pytest

from vbox_mcp.backends import BackendResolver, CommandRouter, HypervisorLocator, reset_vboxmanage_cache
from vbox_mcp.process import CommandResult, FakeProcessInvoker

Reply = Union[CommandResult, Callable[[str], CommandResult]]


def result(stdout: str = "", stderr: str = "", exit_code: int = 0, *, timed_out: bool = False) -> CommandResult:
    return CommandResult(args=("sh",), stdout=stdout, stderr=stderr, exit_code=exit_code, timed_out=timed_out)


class GuestShell:
    """Scripted guest: ``vagrant ssh -c`` commands are answered by substring rules.

    The most recently added matching rule wins; unmatched commands succeed
    with empty output. Other vagrant invocations are answered from
    ``vagrant_replies`` keyed by subcommand, e.g. ``"up"`` or ``"snapshot restore"``.
    """

    def __init__(self) -> None:
        self.rules: list[tuple[str, Reply]] = []
        self.commands: list[str] = []
        self.vagrant_calls: list[tuple[str, ...]] = []
        self.vagrant_replies: dict[str, CommandResult] = {}

    def on(self, needle: str, reply: Reply) -> None:
        self.rules.append((needle, reply))

    def respond(self, command: str) -> CommandResult:
        for needle, reply in reversed(self.rules):
            if needle in command:
                return reply(command) if callable(reply) else reply
        return result()

    def ran(self, needle: str) -> list[str]:
        return [command for command in self.commands if needle in command]

    def handler(self, binary: str, args: tuple[str, ...], cwd: str | None):
        if binary != "vagrant":
            return None
        if args and args[0] == "ssh":
            command = args[args.index("-c") + 1]
            self.commands.append(command)
            return self.respond(command)
        self.vagrant_calls.append(args)
        for depth in (2, 1):
            key = " ".join(args[:depth])
            if len(args) >= depth and key in self.vagrant_replies:
                return self.vagrant_replies[key]
        return None


@pytest.fixture(autouse=True)
def _fresh_vboxmanage_cache():
    reset_vboxmanage_cache()
    yield
    reset_vboxmanage_cache()


@pytest.fixture
def vms_dir(tmp_path: Path) -> Path:
    directory = tmp_path / "vms"
    (directory / "dev").mkdir(parents=True)
    return directory


@pytest.fixture
def guest() -> GuestShell:
    return GuestShell()


@pytest.fixture
def invoker(guest: GuestShell) -> FakeProcessInvoker:
    return FakeProcessInvoker(handler=guest.handler)


@pytest.fixture
def resolver(vms_dir: Path, invoker: FakeProcessInvoker) -> BackendResolver:
    return BackendResolver(vms_dir, invoker, locator=HypervisorLocator(invoker, candidates=()))


@pytest.fixture
def router(resolver: BackendResolver) -> CommandRouter:
    return CommandRouter(resolver)
