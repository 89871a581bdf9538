from __future__ import annotations

from dataclasses import dataclass

from pvefleet.core.contracts import ProxmoxService, StateRepository
from pvefleet.core.descriptors import MANAGED_TAG, derive_fleet
from pvefleet.core.errors import FailedPreconditionError, FleetNotFoundError
from pvefleet.core.models import FleetConfig, NodeSpec, NodeStateRecord, ObservedNode, Settings
from pvefleet.core.vm_state_machine import is_lifecycle_state


@dataclass(frozen=True)
class FleetSnapshot:
    desired: list[NodeSpec]
    observed: dict[int, ObservedNode]
    records: dict[int, NodeStateRecord]


class FleetContext:
    def __init__(self, *, settings: Settings, proxmox: ProxmoxService, state: StateRepository):
        self.settings = settings
        self.proxmox = proxmox
        self.state = state

    def fleet(self, fleet_id: str) -> FleetConfig:
        fleet = self.settings.fleets.get(fleet_id)
        if fleet is None:
            raise FleetNotFoundError(f"unknown fleet: {fleet_id}")
        return fleet

    def desired(self) -> list[NodeSpec]:
        return derive_fleet(self.settings)

    async def records(self) -> dict[int, NodeStateRecord]:
        out: dict[int, NodeStateRecord] = {}
        for record in await self.state.list_node_states():
            if not is_lifecycle_state(record.state):
                raise FailedPreconditionError(f"{record.name} (vmid={record.vmid}) has unknown state {record.state!r}")
            out[record.vmid] = record
        return out

    async def snapshot(self) -> FleetSnapshot:
        """Desired set, durable records and one read of the provider's VMs."""
        desired = self.desired()
        records = await self.records()
        vmids = {spec.vmid for spec in desired} | set(records)
        observed = {vm.vmid: vm for vm in await self.proxmox.list_nodes(vmids, MANAGED_TAG)}
        return FleetSnapshot(desired=desired, observed=observed, records=records)

    async def record_for_name(self, name: str) -> NodeStateRecord | None:
        for record in await self.state.list_node_states():
            if record.name == name:
                return record
        return None
