"""vbox-mcp diagnostics CLI for the activity journal."""

from __future__ import annotations

import argparse
import json

from vbox_mcp.config import VBoxMcpSettings
from vbox_mcp.storage import ActivityJournal, JournalUnavailableError


def load_journal(settings: VBoxMcpSettings) -> ActivityJournal:
    try:
        journal = ActivityJournal(settings.journal_path)
        journal.ping()
    except JournalUnavailableError as exc:
        print(f"Journal unavailable: {exc}")
        raise SystemExit(1)
    return journal


def _replayed(args: argparse.Namespace, kind: str) -> None:
    journal = load_journal(VBoxMcpSettings())
    records = [record for record in journal.replay_tracked(vm_name=args.vm) if record.kind == kind]
    if args.json:
        print(json.dumps([record.as_dict() for record in records], indent=2))
        return
    for record in records:
        command = record.state.get("command", "")
        print(f"{record.stream_id} [{record.status}] {record.vm_name}: {command}")


def cmd_tasks(args: argparse.Namespace) -> None:
    _replayed(args, "task")


def cmd_operations(args: argparse.Namespace) -> None:
    _replayed(args, "operation")


def cmd_events(args: argparse.Namespace) -> None:
    journal = load_journal(VBoxMcpSettings())
    if args.stream_id:
        events = journal.fetch_events(args.stream_id)
    else:
        events = journal.search_events(args.query)
    if args.limit is not None and args.limit > 0:
        events = events[-args.limit :]
    print(json.dumps([event.as_dict() for event in events], indent=2))


def cmd_metrics(args: argparse.Namespace) -> None:
    journal = load_journal(VBoxMcpSettings())
    records = journal.replay_tracked()
    transactions = journal.search_events(filters={"event_type": "transaction"})

    by_kind: dict[str, dict[str, int]] = {}
    for record in records:
        counts = by_kind.setdefault(record.kind, {})
        status = record.status or "unknown"
        counts[status] = counts.get(status, 0) + 1

    transaction_counts: dict[str, int] = {}
    for event in transactions:
        status = event.metadata.get("status") or "unknown"
        transaction_counts[status] = transaction_counts.get(status, 0) + 1

    vms = sorted({record.vm_name for record in records if record.vm_name})
    metrics = {
        "tracked_total": len(records),
        "status_counts": by_kind,
        "transactions_total": len(transactions),
        "transaction_status_counts": transaction_counts,
        "vms": vms,
    }
    print(json.dumps(metrics, indent=2))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="vbox-mcp diagnostics")
    sub = parser.add_subparsers(dest="cmd")

    p_tasks = sub.add_parser("tasks", help="List replayed background tasks")
    p_tasks.add_argument("--vm")
    p_tasks.add_argument("--json", action="store_true", help="Output JSON")
    p_tasks.set_defaults(func=cmd_tasks)

    p_operations = sub.add_parser("operations", help="List replayed tracked operations")
    p_operations.add_argument("--vm")
    p_operations.add_argument("--json", action="store_true", help="Output JSON")
    p_operations.set_defaults(func=cmd_operations)

    p_events = sub.add_parser("events", help="Search raw journal events")
    p_events.add_argument("query", nargs="?", default=None)
    p_events.add_argument("--stream-id", help="Show the history of one task or operation id")
    p_events.add_argument(
        "--limit",
        type=int,
        default=None,
        help="If provided, show only the latest N events",
    )
    p_events.set_defaults(func=cmd_events)

    p_metrics = sub.add_parser("metrics", help="Show status counts per tracked kind")
    p_metrics.set_defaults(func=cmd_metrics)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return
    args.func(args)


if __name__ == "__main__":
    main()
