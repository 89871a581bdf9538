from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from pvefleet.core.models import NodeSpec, NodeStateRecord, Settings
from pvefleet.core.variables import SENSITIVE_PLACEHOLDER
from pvefleet.core.vm_state_machine import STATE_ACTIVE


@dataclass(frozen=True)
class OutputNode:
    fleet_id: str
    name: str
    ip_address: str
    id: str


@dataclass(frozen=True)
class FleetOutputs:
    nodes: list[OutputNode] = field(default_factory=list)

    @property
    def ip_addresses(self) -> list[str]:
        return [n.ip_address for n in self.nodes]

    @property
    def names(self) -> list[str]:
        return [n.name for n in self.nodes]

    @property
    def ids(self) -> list[str]:
        return [n.id for n in self.nodes]

    def by_fleet(self) -> dict[str, list[OutputNode]]:
        out: dict[str, list[OutputNode]] = {}
        for node in self.nodes:
            out.setdefault(node.fleet_id, []).append(node)
        return out

    def as_dict(self) -> dict[str, Any]:
        return {"ip_addresses": self.ip_addresses, "names": self.names, "ids": self.ids}


def _scrub(value: str, secret: str) -> str:
    return value.replace(secret, SENSITIVE_PLACEHOLDER) if secret else value


def build_outputs(settings: Settings, desired: list[NodeSpec], records: list[NodeStateRecord]) -> FleetOutputs:
    """Project realized records, in descriptor order, onto the output surface."""
    secret = settings.proxmox.token_secret.reveal()
    order = {spec.vmid: pos for pos, spec in enumerate(desired)}
    realized = sorted(
        (r for r in records if r.state == STATE_ACTIVE),
        key=lambda r: (order.get(r.vmid, len(order)), r.vmid),
    )
    nodes = [
        OutputNode(
            fleet_id=_scrub(r.fleet_id, secret),
            name=_scrub(r.name, secret),
            ip_address=_scrub(r.ip_address or "", secret),
            id=_scrub(f"{settings.proxmox.node}/qemu/{r.vmid}", secret),
        )
        for r in realized
    ]
    return FleetOutputs(nodes=nodes)
