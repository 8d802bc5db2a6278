"""Snapshot-guarded command execution."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable
from uuid import uuid4

from .backends.models import GuestCredentials
from .backends.router import CommandRouter
from .errors import RemoteCommandError, TransactionRolledBackError
from .process import CommandResult, sanitize_snapshot_name, serialize_result

logger = logging.getLogger(__name__)

EventListener = Callable[[str, dict[str, Any]], None]


@dataclass(slots=True)
class TransactionResult:
    vm_name: str
    snapshot_name: str
    result: CommandResult
    rolled_back: bool = False

    def as_dict(self) -> dict[str, Any]:
        return {
            "vm_name": self.vm_name,
            "snapshot_name": self.snapshot_name,
            "rolled_back": self.rolled_back,
            "result": serialize_result(self.result),
        }


class TransactionRunner:
    """Take a snapshot, run a command, restore the snapshot if the command fails.

    The snapshot is left in place after a successful run; deleting it is the
    caller's decision.
    """

    def __init__(
        self,
        router: CommandRouter,
        *,
        on_event: EventListener | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.router = router
        self._on_event = on_event
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def snapshot_name(self) -> str:
        stamp = self._clock().strftime("%Y%m%dT%H%M%S")
        return sanitize_snapshot_name(f"pre-atomic-{stamp}-{uuid4().hex[:6]}")

    def _emit(self, payload: dict[str, Any]) -> None:
        if self._on_event is None:
            return
        try:
            self._on_event("transaction", payload)
        except Exception:  # pragma: no cover - journal failures must not break transactions
            logger.exception("Transaction event listener failed")

    async def run(
        self,
        vm_name: str,
        command: str,
        *,
        rollback_on_fail: bool = True,
        credentials: GuestCredentials | None = None,
        timeout: float | None = None,
    ) -> TransactionResult:
        backend = await self.router.resolve(vm_name)
        snapshot = self.snapshot_name()

        try:
            await backend.snapshot_save(snapshot)
        except RemoteCommandError as exc:
            raise RemoteCommandError(
                f"Could not take pre-transaction snapshot '{snapshot}' of '{vm_name}'; command not run: {exc}",
                exc.result,
            ) from exc
        logger.info("Saved pre-transaction snapshot", extra={"vm": vm_name, "snapshot": snapshot})

        try:
            result = await backend.execute(command, timeout=timeout, credentials=credentials)
        except Exception:
            if rollback_on_fail:
                await self._rollback(backend, vm_name, snapshot)
            raise

        if result.ok:
            outcome = TransactionResult(vm_name=vm_name, snapshot_name=snapshot, result=result)
            self._emit({**outcome.as_dict(), "status": "committed", "command": command})
            return outcome

        if not rollback_on_fail:
            outcome = TransactionResult(vm_name=vm_name, snapshot_name=snapshot, result=result)
            self._emit({**outcome.as_dict(), "status": "failed", "command": command})
            return outcome

        await self._rollback(backend, vm_name, snapshot)
        self._emit(
            {
                **TransactionResult(vm_name, snapshot, result, rolled_back=True).as_dict(),
                "status": "rolled_back",
                "command": command,
            }
        )
        reason = "timed out" if result.timed_out else f"exited with code {result.exit_code}"
        raise TransactionRolledBackError(
            f"Command {reason} on '{vm_name}'; restored snapshot '{snapshot}'",
            result,
            snapshot_name=snapshot,
        )

    async def _rollback(self, backend, vm_name: str, snapshot: str) -> None:
        logger.warning("Rolling back transaction", extra={"vm": vm_name, "snapshot": snapshot})
        try:
            await backend.snapshot_restore(snapshot)
        except RemoteCommandError:
            logger.error(
                "Snapshot restore failed; VM may be left in a partial state",
                extra={"vm": vm_name, "snapshot": snapshot},
            )
            raise


__all__ = ["TransactionResult", "TransactionRunner"]
