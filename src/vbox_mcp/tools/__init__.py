"""Tool registration for the VirtualBox MCP server."""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Literal

from fastmcp import Context, FastMCP
from fastmcp.exceptions import ToolError

from ..backends import DEV_PORTS, BackendResolver, CommandRouter, GuestCredentials, PortForward, VMLifecycle
from ..backends.lifecycle import DEFAULT_BOX
from ..config import VBoxMcpSettings
from ..errors import InvalidArgumentError, format_tool_error
from ..guardrails import Guardrails, UrlGuard
from ..process import serialize_result
from ..recipes import RecipeLoader
from ..storage import ActivityJournal
from ..tracking import BackgroundTaskRegistry, OperationTracker, OperationType, StartOperation
from ..transactions import TransactionRunner

logger = logging.getLogger(__name__)

RECIPE_COMMAND_TIMEOUT = 1800.0


@dataclass(slots=True)
class ToolHandles:
    list_vms: Any
    get_vm_status: Any
    create_vm: Any
    create_dev_vm: Any
    ensure_dev_vm: Any
    start_vm: Any
    halt_vm: Any
    destroy_vm: Any
    reload_vm: Any
    exec_command: Any
    upload_file: Any
    search_files: Any
    tail_vm_log: Any
    grep_log_stream: Any
    list_processes: Any
    kill_process: Any
    run_background_task: Any
    get_task_output: Any
    get_task_status: Any
    list_tasks: Any
    kill_task: Any
    cleanup_task: Any
    start_download: Any
    start_operation: Any
    get_operation_progress: Any
    wait_for_operation: Any
    cancel_operation: Any
    list_active_operations: Any
    snapshot_save: Any
    snapshot_restore: Any
    snapshot_list: Any
    snapshot_delete: Any
    atomic_transaction_exec: Any
    resize_vm_resources: Any
    package_box: Any
    sync_to_vm: Any
    sync_from_vm: Any
    exec_with_sync: Any
    setup_dev_environment: Any
    install_dev_tools: Any
    scan_system_health: Any
    query_activity: Any


def _port_forwards(ports: list[dict[str, int]] | None) -> list[PortForward]:
    forwards = []
    for entry in ports or []:
        try:
            forwards.append(PortForward(guest=int(entry["guest"]), host=int(entry["host"])))
        except (KeyError, TypeError, ValueError) as exc:
            raise InvalidArgumentError(f"Invalid port mapping {entry!r}; expected {{'guest': int, 'host': int}}") from exc
    return forwards


def register_tools(
    server: FastMCP,
    *,
    settings: VBoxMcpSettings,
    resolver: BackendResolver,
    router: CommandRouter,
    lifecycle: VMLifecycle,
    tasks: BackgroundTaskRegistry,
    operations: OperationTracker,
    transactions: TransactionRunner,
    guardrails: Guardrails,
    url_guard: UrlGuard,
    recipes: RecipeLoader,
    journal: ActivityJournal | None,
) -> ToolHandles:
    """Register the VM, execution, tracking and provisioning tools on the server."""

    def _credentials(username: str | None, password: str | None) -> GuestCredentials | None:
        if username is None and password is None:
            return None
        return GuestCredentials(
            username or settings.guest_username,
            password if password is not None else settings.guest_password,
        )

    async def _run(
        tool_name: str,
        args: dict[str, Any],
        context: Context | None,
        action: Callable[[], Awaitable[Any]],
    ) -> Any:
        """Preflight, run and translate failures into caller-facing tool errors."""

        try:
            warnings = await url_guard.check(args)
            violations = guardrails.enforce(tool_name, args)
            warnings.extend(item.message for item in violations)
            outcome = await action()
        except ToolError:
            raise
        except Exception as exc:
            message = format_tool_error(tool_name, exc)
            await _emit_log(context, "error", message.splitlines()[0], extra={"tool": tool_name})
            raise ToolError(message) from exc

        if warnings and isinstance(outcome, dict):
            outcome = {**outcome, "warnings": warnings}
        return outcome

    # VM inventory and lifecycle

    async def _list_vms(include_status: bool = False, context: Context | None = None) -> list[dict[str, Any]]:
        """List VMs from the managed directory, global Vagrant and VirtualBox."""

        async def action():
            summaries = await resolver.list_vms(include_status=include_status)
            await _emit_log(context, "debug", "Listed VMs", extra={"count": len(summaries)})
            return [summary.as_dict() for summary in summaries]

        return await _run("list_vms", {"include_status": include_status}, context, action)

    async def _get_vm_status(vm_name: str, context: Context | None = None) -> dict[str, Any]:
        async def action():
            return (await router.status(vm_name)).as_dict()

        return await _run("get_vm_status", {"vm_name": vm_name}, context, action)

    async def _create_vm(
        vm_name: str,
        box: str = DEFAULT_BOX,
        cpus: int = 1,
        memory_mb: int = 1024,
        gui: bool = False,
        project_path: str | None = None,
        sync_type: str = "rsync",
        exclude_patterns: list[str] | None = None,
        ports: list[dict[str, int]] | None = None,
        overwrite: bool = False,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Write a Vagrantfile for a new VM and bring it up."""

        args = {"vm_name": vm_name, "box": box, "project_path": project_path}

        async def action():
            created = await lifecycle.create_vm(
                vm_name,
                box=box,
                cpus=cpus,
                memory_mb=memory_mb,
                gui=gui,
                ports=_port_forwards(ports),
                project_path=project_path,
                sync_type=sync_type,
                exclude_patterns=exclude_patterns,
                overwrite=overwrite,
            )
            await _emit_log(context, "info", "Created VM", extra={"vm": vm_name, "box": box})
            return created

        return await _run("create_vm", args, context, action)

    async def _create_dev_vm(
        vm_name: str,
        project_path: str,
        box: str = DEFAULT_BOX,
        cpus: int = 2,
        memory_mb: int = 2048,
        sync_type: str = "rsync",
        exclude_patterns: list[str] | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Create a VM with the project folder synced and common dev ports forwarded."""

        args = {"vm_name": vm_name, "box": box, "project_path": project_path}

        async def action():
            created = await lifecycle.create_vm(
                vm_name,
                box=box,
                cpus=cpus,
                memory_mb=memory_mb,
                ports=DEV_PORTS,
                project_path=project_path,
                sync_type=sync_type,
                exclude_patterns=exclude_patterns,
            )
            await _emit_log(context, "info", "Created dev VM", extra={"vm": vm_name, "project": project_path})
            return {**created, "ports": [{"guest": port.guest, "host": port.host} for port in DEV_PORTS]}

        return await _run("create_dev_vm", args, context, action)

    async def _ensure_dev_vm(
        vm_name: str,
        project_path: str | None = None,
        box: str = DEFAULT_BOX,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Start the dev VM if it exists, otherwise create it."""

        async def action():
            return await lifecycle.ensure_vm(
                vm_name,
                box=box,
                cpus=2,
                memory_mb=2048,
                ports=DEV_PORTS,
                project_path=project_path,
            )

        return await _run("ensure_dev_vm", {"vm_name": vm_name, "project_path": project_path}, context, action)

    async def _start_vm(vm_name: str, context: Context | None = None) -> dict[str, Any]:
        async def action():
            return await lifecycle.start_vm(vm_name)

        return await _run("start_vm", {"vm_name": vm_name}, context, action)

    async def _halt_vm(vm_name: str, context: Context | None = None) -> dict[str, Any]:
        async def action():
            return await lifecycle.halt_vm(vm_name)

        return await _run("halt_vm", {"vm_name": vm_name}, context, action)

    async def _destroy_vm(
        vm_name: str,
        remove_directory: bool = True,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Destroy a VM created by this server and optionally delete its directory."""

        async def action():
            result = await lifecycle.destroy_vm(vm_name, remove_directory=remove_directory)
            await _emit_log(context, "warning", "Destroyed VM", extra={"vm": vm_name})
            return result

        return await _run("destroy_vm", {"vm_name": vm_name}, context, action)

    async def _reload_vm(vm_name: str, context: Context | None = None) -> dict[str, Any]:
        async def action():
            return await lifecycle.reload_vm(vm_name)

        return await _run("reload_vm", {"vm_name": vm_name}, context, action)

    # Guest execution, files and processes

    async def _exec_command(
        vm_name: str,
        command: str,
        timeout_seconds: float | None = None,
        username: str | None = None,
        password: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Run a shell command inside the VM and wait for it to finish."""

        async def action():
            result = await router.execute(
                vm_name, command, timeout=timeout_seconds, credentials=_credentials(username, password)
            )
            await _emit_log(
                context,
                "info",
                "Executed command",
                extra={"vm": vm_name, "exit_code": result.exit_code, "timed_out": result.timed_out},
            )
            return serialize_result(result)

        return await _run("exec_command", {"vm_name": vm_name, "command": command}, context, action)

    async def _upload_file(
        vm_name: str,
        source: str,
        destination: str,
        username: str | None = None,
        password: str | None = None,
        timeout_seconds: float | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Copy a host file into the VM."""

        async def action():
            result = await router.upload(
                vm_name,
                source,
                destination,
                credentials=_credentials(username, password),
                timeout=timeout_seconds,
            )
            return {"vm": vm_name, "source": source, "destination": destination, "success": result.ok}

        return await _run(
            "upload_file",
            {"vm_name": vm_name, "host_path": source, "destination": destination},
            context,
            action,
        )

    async def _search_files(
        vm_name: str,
        path: str,
        pattern: str,
        limit: int = 200,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Find files under a guest directory whose names match a glob."""

        async def action():
            files = await router.search_files(vm_name, path, pattern, limit=limit)
            return {"vm": vm_name, "path": path, "pattern": pattern, "files": files, "count": len(files)}

        return await _run("search_files", {"vm_name": vm_name, "guest_path": path}, context, action)

    async def _tail_vm_log(
        vm_name: str,
        path: str,
        lines: int = 50,
        context: Context | None = None,
    ) -> dict[str, Any]:
        async def action():
            return await router.tail_file(vm_name, path, lines=lines)

        return await _run("tail_vm_log", {"vm_name": vm_name, "guest_path": path}, context, action)

    async def _grep_log_stream(
        vm_name: str,
        path: str,
        pattern: str,
        limit: int = 100,
        case_sensitive: bool = False,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Search a guest log file for a pattern and return numbered matches."""

        async def action():
            return await router.grep_file(vm_name, path, pattern, limit=limit, case_sensitive=case_sensitive)

        return await _run("grep_log_stream", {"vm_name": vm_name, "guest_path": path}, context, action)

    async def _list_processes(
        vm_name: str,
        name_filter: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        async def action():
            processes = await router.list_processes(vm_name, name_filter=name_filter)
            return {"vm": vm_name, "processes": [item.as_dict() for item in processes], "count": len(processes)}

        return await _run("list_processes", {"vm_name": vm_name}, context, action)

    async def _kill_process(
        vm_name: str,
        pid: int,
        signal: str = "SIGTERM",
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Send an allow-listed signal to a process inside the VM."""

        async def action():
            return await router.kill_process(vm_name, pid, signal=signal)

        return await _run("kill_process", {"vm_name": vm_name, "pid": pid, "signal": signal}, context, action)

    # Background tasks

    async def _run_background_task(
        vm_name: str,
        command: str,
        working_dir: str | None = None,
        username: str | None = None,
        password: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Start a command detached inside the VM and return its task id immediately."""

        async def action():
            registration = await tasks.register(
                vm_name, command, working_dir=working_dir, credentials=_credentials(username, password)
            )
            await _emit_log(
                context,
                "info",
                "Started background task",
                extra={"vm": vm_name, "task_id": registration.task_id, "pid": registration.pid},
            )
            return registration.as_dict()

        return await _run("run_background_task", {"vm_name": vm_name, "command": command}, context, action)

    async def _get_task_output(
        task_id: str,
        max_lines: int = 1000,
        tail_only: bool = True,
        context: Context | None = None,
    ) -> dict[str, Any]:
        async def action():
            return (await tasks.fetch_output(task_id, max_lines=max_lines, tail_only=tail_only)).as_dict()

        return await _run("get_task_output", {"task_id": task_id}, context, action)

    async def _get_task_status(task_id: str, context: Context | None = None) -> dict[str, Any]:
        async def action():
            return (await tasks.refresh(task_id)).as_dict()

        return await _run("get_task_status", {"task_id": task_id}, context, action)

    async def _list_tasks(
        vm_name: str | None = None,
        refresh: bool = False,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """List tracked background tasks, optionally refreshing the live ones first."""

        async def action():
            if refresh:
                for task in tasks.list(vm_name):
                    if not task.terminal:
                        await tasks.refresh(task.task_id)
            entries = [task.as_dict() for task in tasks.list(vm_name)]
            payload: dict[str, Any] = {"tasks": entries, "count": len(entries)}
            if vm_name:
                payload["summary"] = tasks.summary(vm_name)
            return payload

        return await _run("list_tasks", {"vm_name": vm_name}, context, action)

    async def _kill_task(task_id: str, signal: str = "SIGTERM", context: Context | None = None) -> dict[str, Any]:
        async def action():
            return await tasks.kill(task_id, signal)

        return await _run("kill_task", {"task_id": task_id, "signal": signal}, context, action)

    async def _cleanup_task(task_id: str, context: Context | None = None) -> dict[str, Any]:
        """Delete a task's output files in the VM and stop tracking it."""

        async def action():
            return await tasks.cleanup(task_id)

        return await _run("cleanup_task", {"task_id": task_id}, context, action)

    # Tracked operations

    async def _start_download(
        vm_name: str,
        url: str,
        destination: str,
        expected_bytes: int | None = None,
        username: str | None = None,
        password: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Download a URL inside the VM as a tracked operation with byte progress."""

        async def action():
            operation = await operations.start_download(
                vm_name,
                url,
                destination,
                expected_bytes=expected_bytes,
                credentials=_credentials(username, password),
            )
            return operation.as_dict()

        return await _run(
            "start_download",
            {"vm_name": vm_name, "url": url, "destination": destination},
            context,
            action,
        )

    async def _start_operation(
        vm_name: str,
        command: str,
        operation_type: Literal["download", "upload", "compile", "install", "extract", "command", "custom"] = "command",
        working_dir: str | None = None,
        expected_bytes: int | None = None,
        output_path: str | None = None,
        description: str | None = None,
        username: str | None = None,
        password: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Start a long-running command as a tracked operation."""

        async def action():
            operation = await operations.start(
                StartOperation(
                    vm_name=vm_name,
                    command=command,
                    type=OperationType(operation_type),
                    working_dir=working_dir,
                    expected_bytes=expected_bytes,
                    output_path=output_path,
                    description=description,
                    credentials=_credentials(username, password),
                )
            )
            return operation.as_dict()

        return await _run(
            "start_operation",
            {"vm_name": vm_name, "command": command, "type": operation_type},
            context,
            action,
        )

    async def _get_operation_progress(operation_id: str, context: Context | None = None) -> dict[str, Any]:
        async def action():
            return (await operations.refresh(operation_id)).as_dict()

        return await _run("get_operation_progress", {"operation_id": operation_id}, context, action)

    async def _wait_for_operation(
        operation_id: str,
        timeout_seconds: float | None = None,
        poll_interval_ms: int | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Block until an operation finishes, is cancelled, or the timeout elapses."""

        async def report(operation) -> None:
            if context is None or operation.percent_complete is None:
                return
            reporter = getattr(context, "report_progress", None)
            if callable(reporter):
                outcome = reporter(operation.percent_complete, 100)
                if inspect.isawaitable(outcome):
                    await outcome

        async def action():
            operation = await operations.wait_for(
                operation_id,
                timeout_seconds=timeout_seconds,
                poll_interval_ms=poll_interval_ms,
                on_progress=report,
            )
            return operation.as_dict()

        return await _run("wait_for_operation", {"operation_id": operation_id}, context, action)

    async def _cancel_operation(operation_id: str, context: Context | None = None) -> dict[str, Any]:
        async def action():
            cancelled = await operations.cancel(operation_id)
            operation = operations.get(operation_id)
            return {"operation_id": operation_id, "cancelled": cancelled, "status": operation.status.value}

        return await _run("cancel_operation", {"operation_id": operation_id}, context, action)

    async def _list_active_operations(vm_name: str | None = None, context: Context | None = None) -> dict[str, Any]:
        async def action():
            active = [operation.as_dict() for operation in operations.list_active(vm_name)]
            return {"operations": active, "count": len(active)}

        return await _run("list_active_operations", {"vm_name": vm_name}, context, action)

    # Snapshots and transactions

    async def _snapshot_save(vm_name: str, snapshot_name: str, context: Context | None = None) -> dict[str, Any]:
        async def action():
            return await lifecycle.snapshot_save(vm_name, snapshot_name)

        return await _run("snapshot_save", {"vm_name": vm_name, "snapshot_name": snapshot_name}, context, action)

    async def _snapshot_restore(vm_name: str, snapshot_name: str, context: Context | None = None) -> dict[str, Any]:
        async def action():
            return await lifecycle.snapshot_restore(vm_name, snapshot_name)

        return await _run("snapshot_restore", {"vm_name": vm_name, "snapshot_name": snapshot_name}, context, action)

    async def _snapshot_list(vm_name: str, context: Context | None = None) -> dict[str, Any]:
        async def action():
            return await lifecycle.snapshot_list(vm_name)

        return await _run("snapshot_list", {"vm_name": vm_name}, context, action)

    async def _snapshot_delete(vm_name: str, snapshot_name: str, context: Context | None = None) -> dict[str, Any]:
        async def action():
            return await lifecycle.snapshot_delete(vm_name, snapshot_name)

        return await _run("snapshot_delete", {"vm_name": vm_name, "snapshot_name": snapshot_name}, context, action)

    async def _atomic_transaction_exec(
        vm_name: str,
        command: str,
        rollback_on_fail: bool = True,
        timeout_seconds: float | None = None,
        username: str | None = None,
        password: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Snapshot the VM, run a command and restore the snapshot if the command fails."""

        async def action():
            outcome = await transactions.run(
                vm_name,
                command,
                rollback_on_fail=rollback_on_fail,
                credentials=_credentials(username, password),
                timeout=timeout_seconds,
            )
            return outcome.as_dict()

        return await _run(
            "atomic_transaction_exec",
            {"vm_name": vm_name, "command": command, "rollback_on_fail": rollback_on_fail},
            context,
            action,
        )

    # Resources, packaging and sync

    async def _resize_vm_resources(
        vm_name: str,
        cpus: int | None = None,
        memory_mb: int | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Change a VM's CPU count and/or memory, restarting it if it was running."""

        async def action():
            return await lifecycle.resize_vm(vm_name, cpus=cpus, memory_mb=memory_mb)

        return await _run("resize_vm_resources", {"vm_name": vm_name}, context, action)

    async def _package_box(
        vm_name: str,
        output_file: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Export a managed VM as a reusable .box file."""

        async def action():
            return await lifecycle.package_vm(vm_name, output_file)

        return await _run("package_box", {"vm_name": vm_name, "host_path": output_file}, context, action)

    async def _sync_to_vm(vm_name: str, context: Context | None = None) -> dict[str, Any]:
        async def action():
            return await lifecycle.sync_to_vm(vm_name)

        return await _run("sync_to_vm", {"vm_name": vm_name}, context, action)

    async def _sync_from_vm(vm_name: str, context: Context | None = None) -> dict[str, Any]:
        async def action():
            return await lifecycle.sync_from_vm(vm_name)

        return await _run("sync_from_vm", {"vm_name": vm_name}, context, action)

    async def _exec_with_sync(
        vm_name: str,
        command: str,
        sync_before: bool = True,
        sync_after: bool = True,
        timeout_seconds: float | None = None,
        username: str | None = None,
        password: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Push project files, run a command, then pull changed files back."""

        async def action():
            if sync_before:
                await lifecycle.sync_to_vm(vm_name)
            result = await router.execute(
                vm_name, command, timeout=timeout_seconds, credentials=_credentials(username, password)
            )
            if sync_after:
                await lifecycle.sync_from_vm(vm_name)
            return {**serialize_result(result), "synced_before": sync_before, "synced_after": sync_after}

        return await _run("exec_with_sync", {"vm_name": vm_name, "command": command}, context, action)

    # Provisioning

    async def _apply_recipe(vm_name: str, recipe, credentials: GuestCredentials | None) -> dict[str, Any]:
        for command in recipe.commands:
            result = await router.execute(
                vm_name, command, timeout=RECIPE_COMMAND_TIMEOUT, credentials=credentials
            )
            if not result.ok:
                detail = (result.stderr or result.stdout).strip()[-500:]
                return {"name": recipe.id, "status": "failed", "command": command, "error": detail}
        return {"name": recipe.id, "status": "installed"}

    async def _setup_dev_environment(
        vm_name: str,
        runtimes: list[str],
        username: str | None = None,
        password: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Install language runtimes (node, python, go, docker or custom recipes) in the VM."""

        async def action():
            credentials = _credentials(username, password)
            results = []
            for runtime in runtimes:
                recipe = recipes.runtime(runtime)
                if recipe is None:
                    results.append({"name": runtime, "status": "skipped", "error": "unknown runtime"})
                    continue
                await _emit_log(context, "info", "Installing runtime", extra={"vm": vm_name, "runtime": recipe.id})
                results.append(await _apply_recipe(vm_name, recipe, credentials))
            return {
                "vm": vm_name,
                "results": results,
                "success": all(item["status"] != "failed" for item in results),
            }

        return await _run("setup_dev_environment", {"vm_name": vm_name, "runtimes": runtimes}, context, action)

    async def _install_dev_tools(
        vm_name: str,
        tools: list[str],
        username: str | None = None,
        password: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Install development tools in the VM, falling back to apt-get for unknown names."""

        async def action():
            credentials = _credentials(username, password)
            selected = [recipes.tool(name) for name in tools]
            results = []
            for recipe in selected:
                results.append(await _apply_recipe(vm_name, recipe, credentials))
            return {
                "vm": vm_name,
                "results": results,
                "success": all(item["status"] == "installed" for item in results),
            }

        return await _run("install_dev_tools", {"vm_name": vm_name, "tools": tools}, context, action)

    async def _scan_system_health(context: Context | None = None) -> dict[str, Any]:
        """Report host disk and memory headroom plus VM and tracking counts."""

        async def action():
            report = guardrails.health_report()
            vms = await resolver.list_vms(include_status=True)
            running = [vm.name for vm in vms if vm.state == "running"]
            report["vms"] = {"total": len(vms), "running": len(running), "running_names": running}
            report["tracking"] = {
                "tasks": len(tasks),
                "operations": len(operations),
                "active_operations": len(operations.list_active()),
            }
            return report

        return await _run("scan_system_health", {}, context, action)

    # Journal

    async def _query_activity(
        query: str | None = None,
        stream_id: str | None = None,
        vm_name: str | None = None,
        replay: bool = False,
        limit: int = 50,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Search the activity journal, or replay it to the latest state per task/operation."""

        async def action():
            if journal is None:
                raise RuntimeError("Activity journal is unavailable; enable it with VBOX_MCP_JOURNAL_ENABLED")
            if replay:
                records = journal.replay_tracked(vm_name=vm_name)
                return {"records": [record.as_dict() for record in records[-limit:]], "count": len(records)}
            if stream_id:
                events = journal.fetch_events(stream_id)[-limit:]
            else:
                filters = {"vm_name": vm_name} if vm_name else None
                events = journal.search_events(query, filters=filters, limit=limit)
            return {"events": [event.as_dict() for event in events], "count": len(events)}

        return await _run("query_activity", {"query": query}, context, action)

    def _tool(name: str, description: str, fn: Callable[..., Any]) -> Any:
        return server.tool(name=name, description=description)(fn)

    return ToolHandles(
        list_vms=_tool("list_vms", "List VMs known to this server, global Vagrant and VirtualBox.", _list_vms),
        get_vm_status=_tool("get_vm_status", "Get the current state of a VM.", _get_vm_status),
        create_vm=_tool(
            "create_vm",
            "Create a new Vagrant VM (box, CPUs, memory, ports, optional synced project folder) and start it.",
            _create_vm,
        ),
        create_dev_vm=_tool(
            "create_dev_vm",
            "Create a development VM with a synced project folder and common dev ports forwarded.",
            _create_dev_vm,
        ),
        ensure_dev_vm=_tool("ensure_dev_vm", "Start a dev VM, creating it first if it does not exist.", _ensure_dev_vm),
        start_vm=_tool("start_vm", "Start (boot or resume) a VM.", _start_vm),
        halt_vm=_tool("halt_vm", "Stop a VM.", _halt_vm),
        destroy_vm=_tool("destroy_vm", "Destroy a VM created by this server.", _destroy_vm),
        reload_vm=_tool("reload_vm", "Restart a VM.", _reload_vm),
        exec_command=_tool(
            "exec_command",
            "Run a shell command inside a VM and return stdout, stderr, exit code and timeout flag.",
            _exec_command,
        ),
        upload_file=_tool("upload_file", "Copy a file from the host into a VM.", _upload_file),
        search_files=_tool("search_files", "Find files in a VM by name pattern.", _search_files),
        tail_vm_log=_tool("tail_vm_log", "Return the last lines of a file inside a VM.", _tail_vm_log),
        grep_log_stream=_tool("grep_log_stream", "Search a file inside a VM for a pattern.", _grep_log_stream),
        list_processes=_tool("list_processes", "List processes running inside a VM.", _list_processes),
        kill_process=_tool("kill_process", "Send a signal to a process inside a VM.", _kill_process),
        run_background_task=_tool(
            "run_background_task",
            "Start a command in the background inside a VM and return a task id to poll.",
            _run_background_task,
        ),
        get_task_output=_tool("get_task_output", "Read stdout/stderr of a background task.", _get_task_output),
        get_task_status=_tool("get_task_status", "Refresh and return the status of a background task.", _get_task_status),
        list_tasks=_tool("list_tasks", "List tracked background tasks.", _list_tasks),
        kill_task=_tool("kill_task", "Send a signal to a background task.", _kill_task),
        cleanup_task=_tool("cleanup_task", "Remove a background task's files and stop tracking it.", _cleanup_task),
        start_download=_tool(
            "start_download",
            "Download a URL inside a VM as a tracked operation with byte progress and ETA.",
            _start_download,
        ),
        start_operation=_tool("start_operation", "Start a long-running command as a tracked operation.", _start_operation),
        get_operation_progress=_tool(
            "get_operation_progress", "Refresh and return progress for a tracked operation.", _get_operation_progress
        ),
        wait_for_operation=_tool(
            "wait_for_operation",
            "Wait until a tracked operation completes, fails, is cancelled or times out.",
            _wait_for_operation,
        ),
        cancel_operation=_tool("cancel_operation", "Cancel a tracked operation.", _cancel_operation),
        list_active_operations=_tool(
            "list_active_operations", "List pending and running operations.", _list_active_operations
        ),
        snapshot_save=_tool("snapshot_save", "Take a named snapshot of a VM.", _snapshot_save),
        snapshot_restore=_tool("snapshot_restore", "Restore a VM to a named snapshot.", _snapshot_restore),
        snapshot_list=_tool("snapshot_list", "List a VM's snapshots.", _snapshot_list),
        snapshot_delete=_tool("snapshot_delete", "Delete a named snapshot.", _snapshot_delete),
        atomic_transaction_exec=_tool(
            "atomic_transaction_exec",
            "Run a command guarded by a snapshot; the VM is restored if the command fails.",
            _atomic_transaction_exec,
        ),
        resize_vm_resources=_tool("resize_vm_resources", "Change a VM's CPUs and memory.", _resize_vm_resources),
        package_box=_tool("package_box", "Package a managed VM as a .box file.", _package_box),
        sync_to_vm=_tool("sync_to_vm", "Push synced folder changes from the host to a VM.", _sync_to_vm),
        sync_from_vm=_tool("sync_from_vm", "Pull synced folder changes from a VM to the host.", _sync_from_vm),
        exec_with_sync=_tool(
            "exec_with_sync", "Sync files to the VM, run a command, and sync results back.", _exec_with_sync
        ),
        setup_dev_environment=_tool(
            "setup_dev_environment", "Install language runtimes inside a VM.", _setup_dev_environment
        ),
        install_dev_tools=_tool("install_dev_tools", "Install development tools inside a VM.", _install_dev_tools),
        scan_system_health=_tool(
            "scan_system_health", "Report host disk/memory headroom and VM counts.", _scan_system_health
        ),
        query_activity=_tool(
            "query_activity", "Search or replay the journal of tasks, operations and transactions.", _query_activity
        ),
    )


async def _emit_log(
    context: Context | None,
    level: str,
    message: str,
    *,
    extra: dict[str, Any] | None = None,
) -> None:
    """Log locally and, when a request context is present, to the MCP client."""

    payload = extra or {}
    fallback = getattr(logger, level, logger.info)
    fallback(message, extra=payload)

    if context is None:
        return
    ctx_method = getattr(context, level, None)
    if not callable(ctx_method):
        return
    try:
        outcome = ctx_method(message)
        if inspect.isawaitable(outcome):
            await outcome
    except Exception as exc:  # pragma: no cover - depends on FastMCP session state
        logger.debug("Client log delivery failed", extra={"error": str(exc)})


__all__ = ["register_tools", "ToolHandles"]
