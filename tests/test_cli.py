from __future__ import annotations

import argparse
import importlib.util
import json
from pathlib import Path

import pytest

from vbox_mcp.storage import JournalUnavailableError


def _load_cli_module():
    script = Path(__file__).resolve().parents[1] / "scripts" / "vbox_diag.py"
    spec = importlib.util.spec_from_file_location("vbox_diag", script)
    module = importlib.util.module_from_spec(spec)
    assert spec.loader is not None
    spec.loader.exec_module(module)
    return module


def _record(stream_id, kind, status, vm_name, command=""):
    state = {"command": command, "status": status}
    return argparse.Namespace(
        stream_id=stream_id,
        kind=kind,
        status=status,
        vm_name=vm_name,
        state=state,
        as_dict=lambda: {"stream_id": stream_id, "kind": kind, "status": status, "vm_name": vm_name},
    )


class StubJournal:
    def __init__(self) -> None:
        self.replay_calls: list[str | None] = []

    def replay_tracked(self, vm_name=None):
        self.replay_calls.append(vm_name)
        records = [
            _record("task_1", "task", "running", "dev", "make"),
            _record("task_2", "task", "failed", "web", "npm test"),
            _record("op_1", "operation", "completed", "dev", "wget big.iso"),
            _record("transaction::dev::pre-atomic-1", "transaction", "rolled_back", "dev"),
        ]
        if vm_name:
            records = [record for record in records if record.vm_name == vm_name]
        return records

    def search_events(self, query=None, filters=None):
        if filters == {"event_type": "transaction"}:
            return [
                argparse.Namespace(metadata={"status": "committed"}),
                argparse.Namespace(metadata={"status": "rolled_back"}),
                argparse.Namespace(metadata={"status": "rolled_back"}),
            ]
        return [argparse.Namespace(as_dict=lambda: {"stream_id": "op_1", "query": query})]

    def fetch_events(self, stream_id, limit=None):
        return [
            argparse.Namespace(as_dict=lambda n=n: {"stream_id": stream_id, "sequence": n}) for n in (1, 2, 3)
        ]


@pytest.fixture
def cli(monkeypatch):
    module = _load_cli_module()
    journal = StubJournal()
    monkeypatch.setattr(module, "load_journal", lambda settings: journal)
    module.stub_journal = journal
    return module


def test_metrics_counts_tracked_kinds(cli, capsys) -> None:
    cli.main(["metrics"])

    metrics = json.loads(capsys.readouterr().out)
    assert metrics["tracked_total"] == 4
    assert metrics["status_counts"]["task"] == {"running": 1, "failed": 1}
    assert metrics["status_counts"]["operation"] == {"completed": 1}
    assert metrics["transactions_total"] == 3
    assert metrics["transaction_status_counts"] == {"committed": 1, "rolled_back": 2}
    assert metrics["vms"] == ["dev", "web"]


def test_tasks_text_output_filters_by_vm(cli, capsys) -> None:
    cli.main(["tasks", "--vm", "dev"])

    output = capsys.readouterr().out.strip().splitlines()
    assert output == ["task_1 [running] dev: make"]
    assert cli.stub_journal.replay_calls == ["dev"]


def test_operations_json_output(cli, capsys) -> None:
    cli.main(["operations", "--json"])

    payload = json.loads(capsys.readouterr().out)
    assert [item["stream_id"] for item in payload] == ["op_1"]


def test_events_by_stream_honours_limit(cli, capsys) -> None:
    cli.main(["events", "--stream-id", "task_1", "--limit", "2"])

    payload = json.loads(capsys.readouterr().out)
    assert [item["sequence"] for item in payload] == [2, 3]


def test_events_search_by_keyword(cli, capsys) -> None:
    cli.main(["events", "wget"])

    payload = json.loads(capsys.readouterr().out)
    assert payload == [{"stream_id": "op_1", "query": "wget"}]


def test_no_subcommand_prints_help(capsys) -> None:
    module = _load_cli_module()

    module.main([])

    assert "vbox-mcp diagnostics" in capsys.readouterr().out


def test_unavailable_journal_exits(monkeypatch, capsys, tmp_path) -> None:
    module = _load_cli_module()

    class BrokenJournal:
        def __init__(self, path):
            self.path = path

        def ping(self):
            raise JournalUnavailableError("chromadb package is not installed")

    monkeypatch.setattr(module, "ActivityJournal", BrokenJournal)
    monkeypatch.setenv("VBOX_MCP_JOURNAL_PATH", str(tmp_path / "journal"))

    with pytest.raises(SystemExit) as excinfo:
        module.main(["tasks"])

    assert excinfo.value.code == 1
    assert "Journal unavailable: chromadb package is not installed" in capsys.readouterr().out
