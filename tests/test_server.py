from __future__ import annotations

import asyncio
import json
from collections import defaultdict
from pathlib import Path
from types import SimpleNamespace

import pytest

from vbox_mcp import __version__
from vbox_mcp.backends.resolver import VBOXMANAGE_CANDIDATES
from vbox_mcp.config import VBoxMcpSettings
from vbox_mcp.process import CommandResult, FakeProcessInvoker
from vbox_mcp.server import create_server
from vbox_mcp.storage import ActivityJournal, JournalUnavailableError


class StubCollection:
    def __init__(self) -> None:
        self.rows: list[tuple[str, str, dict]] = []

    def add(self, *, documents, metadatas, ids) -> None:
        self.rows.extend(zip(ids, documents, (dict(item) for item in metadatas)))

    def get(self, *, ids=None, where=None, limit=None):
        rows = [row for row in self.rows if all(row[2].get(key) == value for key, value in (where or {}).items())]
        return {
            "ids": [row[0] for row in rows],
            "documents": [row[1] for row in rows],
            "metadatas": [row[2] for row in rows],
        }


class StubClient:
    def __init__(self) -> None:
        self.collections = defaultdict(StubCollection)

    def get_or_create_collection(self, name: str) -> StubCollection:
        return self.collections[name]


def _vagrant(binary, args, cwd):
    if binary == "vagrant" and args == ("--version",):
        return CommandResult(args=(binary, *args), stdout="Vagrant 2.4.1\n", stderr="", exit_code=0)
    if binary == "vagrant" and args[:1] == ("ssh",):
        return CommandResult(args=(binary, *args), stdout="4242\n", stderr="", exit_code=0)
    return None


def _settings(tmp_path: Path, **overrides) -> VBoxMcpSettings:
    vms_dir = tmp_path / "vms"
    (vms_dir / "dev").mkdir(parents=True, exist_ok=True)
    values = {"vms_dir": vms_dir, "journal_enabled": False, "journal_path": tmp_path / "journal"}
    values.update(overrides)
    return VBoxMcpSettings(**values)


def test_status_resource_reports_runtime_state(tmp_path: Path) -> None:
    invoker = FakeProcessInvoker(handler=_vagrant, missing=VBOXMANAGE_CANDIDATES)

    server = create_server(_settings(tmp_path), invoker=invoker)
    payload = json.loads(server.status_payload(SimpleNamespace(request_id="req-7")))

    assert payload["server_version"] == __version__
    assert payload["vagrant"] == {"path": "vagrant", "available": True, "version": "Vagrant 2.4.1", "error": None}
    assert payload["vboxmanage"] == {"available": False, "path": None}
    assert payload["local_vms"] == ["dev"]
    assert payload["journal"]["enabled"] is False
    assert payload["journal"]["available"] is False
    assert "node" in payload["recipes"]["ids"]
    assert payload["tasks"] == {"count": 0, "status_counts": {}}
    assert payload["operations"]["active"] == []
    assert payload["request_id"] == "req-7"


def test_missing_vagrant_is_reported(tmp_path: Path, caplog) -> None:
    invoker = FakeProcessInvoker(missing=("vagrant", *VBOXMANAGE_CANDIDATES))

    with caplog.at_level("WARNING"):
        server = create_server(_settings(tmp_path), invoker=invoker)

    assert server.vagrant_metadata["available"] is False
    assert "not found" in server.vagrant_metadata["error"]
    assert "Vagrant not available" in caplog.text


def test_server_exposes_components(tmp_path: Path) -> None:
    invoker = FakeProcessInvoker(handler=_vagrant, missing=VBOXMANAGE_CANDIDATES)

    server = create_server(_settings(tmp_path, upload_timeout_seconds=45), invoker=invoker)

    assert server.tool_handles.exec_command is not None
    assert server.resolver.upload_timeout == 45
    assert server.resolver.local_backend("dev").upload_timeout == 45
    assert server.task_registry is not None
    assert server.operation_tracker is not None
    assert server.journal is None


def test_tracked_work_is_journaled(tmp_path: Path) -> None:
    invoker = FakeProcessInvoker(handler=_vagrant, missing=VBOXMANAGE_CANDIDATES)
    journal = ActivityJournal(tmp_path / "journal", client_factory=StubClient)

    server = create_server(_settings(tmp_path), invoker=invoker, journal=journal)
    registration = asyncio.run(server.task_registry.register("dev", "make"))
    payload = json.loads(server.status_payload(SimpleNamespace(request_id=None)))

    assert server.journal_metadata["available"] is True
    assert payload["tasks"]["status_counts"] == {"running": 1}
    events = journal.fetch_events(registration.task_id)
    assert [event.event_type for event in events] == ["task_registered"]


def test_unavailable_journal_degrades(tmp_path: Path, monkeypatch) -> None:
    class BrokenJournal:
        def __init__(self, *_, **__):
            pass

        def ping(self):
            raise JournalUnavailableError("chromadb package is not installed")

    monkeypatch.setattr("vbox_mcp.server.ActivityJournal", BrokenJournal)
    invoker = FakeProcessInvoker(handler=_vagrant, missing=VBOXMANAGE_CANDIDATES)

    server = create_server(_settings(tmp_path, journal_enabled=True), invoker=invoker)

    assert server.journal is None
    assert server.journal_metadata["error"] == "chromadb package is not installed"


def test_settings_validation(monkeypatch) -> None:
    monkeypatch.setenv("VBOX_MCP_LOG_LEVEL", "debug")
    monkeypatch.setenv("VBOX_MCP_RECIPE_PATHS", "/opt/recipes:/srv/recipes")

    settings = VBoxMcpSettings()

    assert settings.log_level == "DEBUG"
    assert settings.recipe_paths == (Path("/opt/recipes"), Path("/srv/recipes"))
    assert settings.upload_timeout_seconds == 600.0

    monkeypatch.setenv("VBOX_MCP_POLL_INTERVAL_MS", "1")
    with pytest.raises(ValueError):
        VBoxMcpSettings()

    monkeypatch.setenv("VBOX_MCP_POLL_INTERVAL_MS", "2000")
    monkeypatch.setenv("VBOX_MCP_UPLOAD_TIMEOUT", "0")
    with pytest.raises(ValueError):
        VBoxMcpSettings()
