from __future__ import annotations

import asyncio
import logging
import os
import socket
import uuid
from contextlib import asynccontextmanager, suppress
from typing import AsyncIterator

from pvefleet.core.contracts import ProxmoxService, StateRepository
from pvefleet.core.errors import LockHeldError, LockLostError, NotFoundError
from pvefleet.core.models import NodeStateRecord, Settings
from .fleet_context import FleetContext
from .outputs import FleetOutputs, build_outputs
from .plan_service import Plan, compute_destroy_plan, compute_plan
from .reconcile_service import ApplyResult, ReconcileService

LOG = logging.getLogger("pve-fleet")

LOCK_NAME = "fleet"


def default_holder() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class FleetOrchestrator:
    def __init__(
        self,
        *,
        settings: Settings,
        proxmox: ProxmoxService,
        state: StateRepository,
        holder: str | None = None,
    ):
        self.settings = settings
        self.state = state
        self.context = FleetContext(settings=settings, proxmox=proxmox, state=state)
        self.reconcile = ReconcileService(settings=settings, proxmox=proxmox, state=state)
        self.holder = holder or default_holder()

    async def start(self) -> None:
        await self.state.init()

    @asynccontextmanager
    async def locked(self) -> AsyncIterator[None]:
        await self.start()
        if not await self.state.try_acquire_lock(LOCK_NAME, self.holder, self.settings.lock_ttl_seconds):
            held = await self.state.lock_holder(LOCK_NAME)
            holder, acquired_at = held if held is not None else ("unknown", 0)
            raise LockHeldError(LOCK_NAME, holder, acquired_at)
        LOG.debug("Acquired lock %s as %s", LOCK_NAME, self.holder)
        owner = asyncio.current_task()
        lost: list[LockLostError] = []
        heartbeat = None
        if self.settings.lock_ttl_seconds > 0 and owner is not None:
            heartbeat = asyncio.create_task(self._heartbeat(owner, lost))
        try:
            try:
                yield
            except asyncio.CancelledError:
                if not lost:
                    raise
                # cancelled by our own heartbeat
                owner.uncancel()
                raise lost[0] from None
        finally:
            if heartbeat is not None:
                heartbeat.cancel()
                with suppress(asyncio.CancelledError):
                    await heartbeat
            # shielded so a cancelled apply still releases the lock
            await asyncio.shield(self.state.release_lock(LOCK_NAME, self.holder))
            LOG.debug("Released lock %s", LOCK_NAME)

    async def _heartbeat(self, owner: asyncio.Task, lost: list[LockLostError]) -> None:
        """Keep the lock fresh; cancel ``owner`` as soon as it is no longer ours."""
        interval = self.settings.lock_ttl_seconds / 3
        while True:
            await asyncio.sleep(interval)
            try:
                still_ours = await self.state.refresh_lock(LOCK_NAME, self.holder)
                current = None if still_ours else await self.state.lock_holder(LOCK_NAME)
            except Exception as exc:
                LOG.error("Could not refresh lock %s: %s", LOCK_NAME, exc)
                still_ours, current = False, None
            if still_ours:
                continue
            lost.append(LockLostError(LOCK_NAME, self.holder, current[0] if current else None))
            LOG.error("%s; aborting the run", lost[0])
            owner.cancel()
            return

    async def _plan(self) -> Plan:
        snapshot = await self.context.snapshot()
        return compute_plan(snapshot.desired, snapshot.observed, snapshot.records)

    async def plan(self) -> Plan:
        async with self.locked():
            return await self._plan()

    async def apply(self) -> tuple[Plan, ApplyResult]:
        async with self.locked():
            plan = await self._plan()
            if plan.is_empty():
                LOG.info("Fleet is converged, nothing to apply")
                return plan, ApplyResult()
            result = await self.reconcile.apply(plan)
            return plan, result

    async def plan_destroy(self) -> Plan:
        async with self.locked():
            snapshot = await self.context.snapshot()
            return compute_destroy_plan(snapshot.desired, snapshot.observed, snapshot.records)

    async def destroy(self) -> tuple[Plan, ApplyResult]:
        async with self.locked():
            snapshot = await self.context.snapshot()
            plan = compute_destroy_plan(snapshot.desired, snapshot.observed, snapshot.records)
            result = await self.reconcile.apply(plan)
            return plan, result

    async def records(self) -> list[NodeStateRecord]:
        await self.start()
        return await self.state.list_node_states()

    async def outputs(self, fleet_id: str | None = None) -> FleetOutputs:
        records = await self.records()
        if fleet_id is not None:
            self.context.fleet(fleet_id)
            records = [r for r in records if r.fleet_id == fleet_id]
        return build_outputs(self.settings, self.context.desired(), records)

    async def forget(self, name: str) -> NodeStateRecord:
        async with self.locked():
            record = await self.context.record_for_name(name)
            if record is None:
                raise NotFoundError(f"no recorded node named {name}")
            await self.state.delete_node_state(record.vmid)
            LOG.warning("Forgot %s vmid=%s; the VM itself was not touched", record.name, record.vmid)
            return record

    async def force_unlock(self) -> bool:
        await self.start()
        released = await self.state.force_release_lock(LOCK_NAME)
        if released:
            LOG.warning("Force-released lock %s", LOCK_NAME)
        return released

