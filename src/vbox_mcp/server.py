"""FastMCP server bootstrap for vbox-mcp."""

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, Optional

from fastmcp import Context, FastMCP

from . import __version__
from .backends import BackendResolver, CommandRouter, HypervisorLocator, VMLifecycle
from .config import VBoxMcpSettings, get_settings
from .errors import BinaryNotFoundError
from .guardrails import Guardrails, UrlGuard
from .process import ProcessInvoker
from .recipes import RecipeLoadError, RecipeLoader
from .storage import ActivityJournal, JournalUnavailableError
from .tools import register_tools
from .tracking import BackgroundTaskRegistry, OperationTracker
from .transactions import TransactionRunner


def configure_logging(level: str) -> None:
    """Configure root logging; records go to stderr so stdout stays free for stdio."""

    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
    )


def _run_sync(coro):
    """Execute an async coroutine on a dedicated event loop."""

    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def _probe_binary(invoker: ProcessInvoker, binary: str) -> dict[str, Any]:
    metadata: dict[str, Any] = {"path": binary, "available": False, "version": None, "error": None}
    try:
        result = _run_sync(invoker.run(binary, ["--version"], timeout=15))
    except BinaryNotFoundError as exc:
        metadata["error"] = str(exc)
        return metadata
    if result.ok:
        metadata["available"] = True
        metadata["version"] = result.stdout.strip().splitlines()[0] if result.stdout.strip() else None
    else:
        metadata["error"] = result.stderr.strip() or f"--version exited with code {result.exit_code}"
    return metadata


def create_server(
    settings: Optional[VBoxMcpSettings] = None,
    invoker: ProcessInvoker | None = None,
    journal: ActivityJournal | None = None,
) -> FastMCP:
    """Wire the resolver, trackers and guardrails together and register the tools."""

    settings = settings or get_settings()
    invoker = invoker or ProcessInvoker()
    log = logging.getLogger(__name__)

    vagrant_metadata = _probe_binary(invoker, settings.vagrant_path)
    locator = HypervisorLocator(invoker, explicit=settings.vboxmanage_path)
    vboxmanage_path = _run_sync(locator.locate())
    vboxmanage_metadata = {"available": vboxmanage_path is not None, "path": vboxmanage_path}

    journal_metadata: dict[str, Any] = {
        "enabled": settings.journal_enabled,
        "available": False,
        "path": str(settings.journal_path),
        "collection": "vbox_activity",
        "error": None,
    }
    if journal is None and settings.journal_enabled:
        try:
            journal = ActivityJournal(settings.journal_path)
            journal.ping()
        except JournalUnavailableError as exc:
            journal_metadata["error"] = str(exc)
            journal = None
    if journal is not None:
        journal_metadata["available"] = True
        journal_metadata["path"] = str(journal.path)

    on_event = journal.record_tracked if journal is not None else None

    resolver = BackendResolver(
        settings.vms_dir,
        invoker,
        vagrant_binary=settings.vagrant_path,
        locator=locator,
        default_credentials=settings.guest_credentials,
        declarative_timeout=settings.exec_timeout_seconds,
        native_timeout=settings.native_timeout_seconds,
        upload_timeout=settings.upload_timeout_seconds,
    )
    router = CommandRouter(resolver)
    lifecycle = VMLifecycle(resolver)
    url_guard = UrlGuard(timeout=settings.url_guard_timeout, enabled=settings.url_guard_enabled)
    tasks = BackgroundTaskRegistry(router, default_workdir=settings.guest_workdir, on_event=on_event)
    operations = OperationTracker(
        router,
        default_workdir=settings.guest_workdir,
        poll_interval_ms=settings.poll_interval_ms,
        wait_timeout_seconds=settings.wait_timeout_seconds,
        cancel_grace_seconds=settings.cancel_grace_seconds,
        content_length_probe=url_guard.content_length,
        on_event=on_event,
    )
    transactions = TransactionRunner(router, on_event=on_event)
    guardrails = Guardrails(
        min_disk_gb_hard=settings.min_disk_gb_hard,
        min_disk_gb_soft=settings.min_disk_gb_soft,
        disk_path=settings.vms_dir,
    )
    recipes = RecipeLoader(settings.recipe_paths)

    server = FastMCP(
        name="VirtualBox MCP",
        version=__version__,
        instructions=(
            "Manage VirtualBox VMs through Vagrant and VBoxManage. Run commands in VMs, "
            "start long jobs in the background and poll them by id, track downloads and "
            "builds with progress, and guard risky commands with snapshots."
        ),
    )

    handles = register_tools(
        server,
        settings=settings,
        resolver=resolver,
        router=router,
        lifecycle=lifecycle,
        tasks=tasks,
        operations=operations,
        transactions=transactions,
        guardrails=guardrails,
        url_guard=url_guard,
        recipes=recipes,
        journal=journal,
    )

    def status_payload(context: Context) -> str:
        """Return a JSON string summarizing runtime state."""

        try:
            recipe_ids = sorted(recipes.load_all())
            recipe_error: str | None = None
        except RecipeLoadError as exc:
            recipe_ids = []
            recipe_error = str(exc)

        task_counts: dict[str, int] = {}
        for task in tasks.list():
            task_counts[task.status.value] = task_counts.get(task.status.value, 0) + 1
        operation_counts: dict[str, int] = {}
        for operation in operations.list():
            operation_counts[operation.status.value] = operation_counts.get(operation.status.value, 0) + 1

        payload = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "server_version": __version__,
            "log_level": settings.log_level,
            "vms_dir": str(settings.vms_dir),
            "local_vms": resolver.local_names(),
            "vagrant": vagrant_metadata,
            "vboxmanage": vboxmanage_metadata,
            "journal": journal_metadata,
            "recipes": {"ids": recipe_ids, "error": recipe_error},
            "tasks": {"count": len(tasks), "status_counts": task_counts},
            "operations": {
                "count": len(operations),
                "status_counts": operation_counts,
                "active": [operation.operation_id for operation in operations.list_active()],
            },
            "request_id": getattr(context, "request_id", None),
        }
        return json.dumps(payload)

    server.resource(
        "resource://vbox-mcp/status",
        name="vbox_mcp_status",
        title="VirtualBox MCP Status",
        description="Binary availability, tracked task and operation counts, and journal state.",
        mime_type="application/json",
        tags={"status", "health"},
    )(status_payload)

    if not vagrant_metadata["available"]:
        log.warning("Vagrant not available", extra={"error": vagrant_metadata["error"]})

    setattr(server, "settings", settings)
    setattr(server, "resolver", resolver)
    setattr(server, "router", router)
    setattr(server, "task_registry", tasks)
    setattr(server, "operation_tracker", operations)
    setattr(server, "journal", journal)
    setattr(server, "journal_metadata", journal_metadata)
    setattr(server, "vagrant_metadata", vagrant_metadata)
    setattr(server, "vboxmanage_metadata", vboxmanage_metadata)
    setattr(server, "status_payload", status_payload)
    setattr(server, "tool_handles", handles)
    return server


def main() -> None:
    """Entry point for running the vbox-mcp server via CLI."""

    settings = get_settings()
    configure_logging(settings.log_level)

    server = create_server(settings)
    logging.getLogger(__name__).info(
        "Launching vbox-mcp server",
        extra={
            "version": __version__,
            "log_level": settings.log_level,
            "vagrant_available": getattr(server, "vagrant_metadata", {}).get("available"),
            "vboxmanage_available": getattr(server, "vboxmanage_metadata", {}).get("available"),
            "journal_available": getattr(server, "journal_metadata", {}).get("available"),
        },
    )
    server.run()


if __name__ == "__main__":
    main()
