from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, TypeVar

from pvefleet.core.contracts import ProxmoxService, StateRepository
from pvefleet.core.errors import AuthenticationError, ConflictError, OperationTimeoutError
from pvefleet.core.models import NodeStateRecord, ObservedNode, Settings
from pvefleet.core.vm_state_machine import (
    EVENT_CREATED,
    EVENT_DELETED,
    EVENT_MARK_FAILED,
    EVENT_UPDATED,
    OPERATION_CREATE,
    OPERATION_DELETE,
    OPERATION_UPDATE,
    STATE_ABSENT,
    STATE_ACTIVE,
    STATE_FAILED,
    STATE_PENDING_CREATE,
    STATE_PENDING_DELETE,
    STATE_PENDING_UPDATE,
    is_pending_state,
    operation_for_pending,
    request_event_for,
    transition_state,
)
from .plan_service import (
    ACTION_ADOPT,
    ACTION_CONFLICT,
    ACTION_CREATE,
    ACTION_DELETE,
    ACTION_NOOP,
    ACTION_REPLACE,
    ACTION_UPDATE,
    Change,
    Plan,
)

LOG = logging.getLogger("pve-fleet")
_T = TypeVar("_T")

# states from which each operation's request event is accepted
_ENTRY_STATES = {
    OPERATION_CREATE: {STATE_ABSENT, STATE_FAILED, STATE_PENDING_CREATE},
    OPERATION_UPDATE: {STATE_ACTIVE, STATE_FAILED, STATE_PENDING_UPDATE},
    OPERATION_DELETE: {STATE_ACTIVE, STATE_FAILED, STATE_PENDING_CREATE, STATE_PENDING_UPDATE, STATE_PENDING_DELETE},
}
_RESTART_STATE = {
    OPERATION_CREATE: STATE_ABSENT,
    OPERATION_UPDATE: STATE_ACTIVE,
    OPERATION_DELETE: STATE_ACTIVE,
}


@dataclass
class ApplyResult:
    created: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    replaced: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    adopted: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed and not self.skipped


class NodeOperationFailed(Exception):
    def __init__(self, operation: str, cause: BaseException):
        super().__init__(str(cause))
        self.operation = operation
        self.cause = cause


class ReconcileService:
    def __init__(self, *, settings: Settings, proxmox: ProxmoxService, state: StateRepository):
        self.settings = settings
        self.proxmox = proxmox
        self.state = state

    async def apply(self, plan: Plan) -> ApplyResult:
        result = ApplyResult()
        changes = [c for c in plan.changes if c.action != ACTION_NOOP]
        if not changes:
            return result

        loop = asyncio.get_running_loop()
        done: dict[str, asyncio.Future[bool]] = {c.name: loop.create_future() for c in changes}
        slots = asyncio.Semaphore(max(1, self.settings.parallelism))
        abort = asyncio.Event()

        async def run(change: Change) -> None:
            ok = False
            try:
                for name in self._prerequisites(change, changes):
                    if not await done[name]:
                        LOG.warning("Skipping %s %s: prerequisite %s did not complete", change.action, change.name, name)
                        result.skipped.append(change.name)
                        return
                async with slots:
                    if abort.is_set():
                        result.skipped.append(change.name)
                        return
                    ok = await self._apply_change(change, result)
            except AuthenticationError:
                abort.set()
            except Exception as exc:
                # state store or other local failure: stop scheduling new work
                LOG.exception("Unexpected error applying %s %s", change.action, change.name)
                result.failed[change.name] = f"{type(exc).__name__}: {exc}"
                abort.set()
            finally:
                if not done[change.name].done():
                    done[change.name].set_result(ok)

        async with asyncio.TaskGroup() as group:
            for change in changes:
                group.create_task(run(change))
        return result

    def _prerequisites(self, change: Change, changes: list[Change]) -> list[str]:
        names = {c.name for c in changes}
        if change.action == ACTION_DELETE:
            # dependents go first
            return [
                c.name
                for c in changes
                if c.name != change.name and c.action in (ACTION_DELETE, ACTION_REPLACE) and change.name in c.depends_on
            ]
        return [name for name in change.depends_on if name in names]

    async def _apply_change(self, change: Change, result: ApplyResult) -> bool:
        try:
            if change.action == ACTION_CONFLICT:
                raise NodeOperationFailed(OPERATION_UPDATE, ConflictError(change.reason or "state conflict"))
            if change.action == ACTION_ADOPT:
                await self._adopt(change)
                result.adopted.append(change.name)
            elif change.action == ACTION_CREATE:
                await self._create(change, change.record)
                result.created.append(change.name)
            elif change.action == ACTION_UPDATE:
                await self._update(change)
                result.updated.append(change.name)
            elif change.action == ACTION_REPLACE:
                await self._delete(change)
                await self._create(change, None)
                result.replaced.append(change.name)
            elif change.action == ACTION_DELETE:
                await self._delete(change)
                result.deleted.append(change.name)
            else:
                raise ValueError(f"unsupported plan action: {change.action}")
            return True
        except NodeOperationFailed as exc:
            message = str(exc)
            result.failed[change.name] = message
            if change.action == ACTION_CONFLICT:
                LOG.error("Conflict on %s (vmid=%s): %s; manual reconciliation required", change.name, change.vmid, message)
            else:
                LOG.error("%s of %s (vmid=%s) failed: %s", exc.operation, change.name, change.vmid, message)
            if isinstance(exc.cause, AuthenticationError):
                raise exc.cause
            return False

    async def _persist(
        self,
        change: Change,
        *,
        state: str,
        failed_operation: str | None = None,
        last_error: str | None = None,
    ) -> None:
        ip_address = change.desired.ip_address if change.desired is not None else (
            change.record.ip_address if change.record is not None else None
        )
        await self.state.upsert_node_state(
            vmid=change.vmid,
            fleet_id=change.fleet_id,
            name=change.desired.name if change.desired is not None else change.name,
            state=state,
            failed_operation=failed_operation,
            ip_address=ip_address,
            last_error=last_error,
        )

    def _enter_pending(self, operation: str, record: NodeStateRecord | None) -> str:
        current = record.state if record is not None else STATE_ABSENT
        if current not in _ENTRY_STATES[operation]:
            current = _RESTART_STATE[operation]
        return transition_state(current, request_event_for(operation))

    async def _run(
        self, change: Change, operation: str, record: NodeStateRecord | None, call: Callable[[], Awaitable[_T]]
    ) -> tuple[_T, str]:
        """Persist the pending state, run ``call`` under the operation timeout, persist failure."""
        pending = self._enter_pending(operation, record)
        await self._persist(change, state=pending)
        timeout_s = self.settings.timeouts.for_operation(operation)
        try:
            try:
                value = await asyncio.wait_for(call(), timeout=timeout_s)
            except asyncio.TimeoutError:
                raise OperationTimeoutError(operation, change.name, timeout_s) from None
        except Exception as exc:
            failed = transition_state(pending, EVENT_MARK_FAILED)
            await self._persist(change, state=failed, failed_operation=operation, last_error=str(exc))
            raise NodeOperationFailed(operation, exc) from exc
        return value, pending

    async def _create(self, change: Change, record: NodeStateRecord | None) -> ObservedNode:
        assert change.desired is not None
        observed, pending = await self._run(
            change, OPERATION_CREATE, record, lambda: self.proxmox.create_node(change.desired)
        )
        await self._persist(change, state=transition_state(pending, EVENT_CREATED))
        LOG.info("Created %s vmid=%s ip=%s", change.name, change.vmid, change.desired.ip_address)
        return observed

    async def _update(self, change: Change) -> ObservedNode:
        assert change.desired is not None and change.observed is not None
        observed, pending = await self._run(
            change, OPERATION_UPDATE, change.record, lambda: self.proxmox.update_node(change.desired, change.observed)
        )
        await self._persist(change, state=transition_state(pending, EVENT_UPDATED))
        LOG.info("Updated %s vmid=%s fields=%s", change.name, change.vmid, sorted(change.diffs))
        return observed

    async def _delete(self, change: Change) -> None:
        if change.observed is None:
            # already gone at the provider, only the record remains
            await self.state.delete_node_state(change.vmid)
            LOG.info("Forgot %s vmid=%s, VM no longer exists", change.name, change.vmid)
            return
        _, pending = await self._run(
            change, OPERATION_DELETE, change.record, lambda: self.proxmox.delete_node(change.vmid)
        )
        if transition_state(pending, EVENT_DELETED) == STATE_ABSENT:
            await self.state.delete_node_state(change.vmid)
        LOG.info("Deleted %s vmid=%s", change.name, change.vmid)

    async def _adopt(self, change: Change) -> None:
        await self._persist(change, state=STATE_ACTIVE)
        LOG.info("Adopted existing VM %s vmid=%s", change.name, change.vmid)


def describe_record(record: NodeStateRecord) -> str:
    if record.state == STATE_FAILED:
        return f"failed during {record.failed_operation}: {record.last_error or 'unknown error'}"
    if is_pending_state(record.state):
        return f"interrupted during {operation_for_pending(record.state)}"
    return record.state
