"""Derive the node descriptor set from settings.

Every node is identified by its fleet and a zero-based index. Names, vmids and
addresses are pure functions of that index, so growing a fleet only appends
descriptors and never renumbers existing ones.
"""

from __future__ import annotations

import ipaddress
import re

from .errors import InvalidArgumentError
from .models import FleetConfig, NodeSpec, Settings

MANAGED_TAG = "pve-fleet"

_DISK_SIZE_RE = re.compile(r"^(\d+)([KMGT]?)$")
_DISK_UNITS = {"": 1 / (1024**3), "K": 1 / (1024**2), "M": 1 / 1024, "G": 1, "T": 1024}


def disk_size_gib(size: str) -> float:
    m = _DISK_SIZE_RE.match(str(size or "").strip().upper())
    if not m:
        raise InvalidArgumentError(f"malformed disk size: {size!r}")
    return int(m.group(1)) * _DISK_UNITS[m.group(2)]


def node_name(fleet: FleetConfig, index: int) -> str:
    return f"{fleet.name_prefix}-{index + 1:0{fleet.name_width}d}"


def node_address(fleet: FleetConfig, index: int) -> str:
    try:
        return str(ipaddress.IPv4Address(fleet.ip_start) + index)
    except ValueError as exc:
        raise InvalidArgumentError(f"fleet {fleet.id}: address range from {fleet.ip_start} runs past the IPv4 space") from exc


def fleet_tag(fleet_id: str) -> str:
    return f"fleet-{fleet_id}"


def fleet_order(settings: Settings) -> list[str]:
    """Fleet ids with every fleet after the fleets it depends on."""
    order: list[str] = []
    visiting: set[str] = set()

    def visit(fleet_id: str) -> None:
        if fleet_id in order:
            return
        if fleet_id in visiting:
            raise InvalidArgumentError(f"dependency cycle through fleet {fleet_id!r}")
        fleet = settings.fleets.get(fleet_id)
        if fleet is None:
            raise InvalidArgumentError(f"unknown fleet in depends_on: {fleet_id!r}")
        visiting.add(fleet_id)
        for dep in fleet.depends_on:
            visit(dep)
        visiting.discard(fleet_id)
        order.append(fleet_id)

    for fleet_id in settings.fleets:
        visit(fleet_id)
    return order


def _validate_fleet(fleet: FleetConfig) -> None:
    if fleet.count < 1:
        raise InvalidArgumentError(f"fleet {fleet.id}: count must be >= 1, got {fleet.count}")
    capacity = 10**fleet.name_width - 1
    if fleet.count > capacity:
        raise InvalidArgumentError(
            f"fleet {fleet.id}: count {fleet.count} exceeds name_width {fleet.name_width} (max {capacity})"
        )
    if fleet.cores < 1 or fleet.memory_mb < 16:
        raise InvalidArgumentError(f"fleet {fleet.id}: cores and memory_mb must be positive")
    if fleet.vmid_base < 100 or fleet.vmid_base + fleet.count - 1 > 999_999_999:
        raise InvalidArgumentError(f"fleet {fleet.id}: vmid range out of bounds")
    if fleet.template_vmid < 100:
        raise InvalidArgumentError(f"fleet {fleet.id}: template_vmid must be >= 100")
    if not fleet.storage:
        raise InvalidArgumentError(f"fleet {fleet.id}: storage is required")
    disk_size_gib(fleet.disk_size)
    try:
        ipaddress.IPv4Address(fleet.ip_start)
    except ValueError as exc:
        raise InvalidArgumentError(f"fleet {fleet.id}: ip_start is not an IPv4 address") from exc


def derive_fleet(settings: Settings) -> list[NodeSpec]:
    if not settings.fleets:
        raise InvalidArgumentError("no fleets configured")
    if not settings.ssh_public_keys:
        raise InvalidArgumentError("no SSH public key material configured")
    try:
        gateway = ipaddress.IPv4Address(settings.network.gateway)
        subnet = ipaddress.IPv4Network(f"{gateway}/{settings.network.cidr}", strict=False)
        reserved = {str(ipaddress.IPv4Address(addr)) for addr in settings.network.reserved}
    except ValueError as exc:
        raise InvalidArgumentError(f"invalid network settings: {exc}") from exc
    forbidden = {str(gateway), str(subnet.network_address), str(subnet.broadcast_address)}

    nodes: list[NodeSpec] = []
    names: set[str] = set()
    vmids: set[int] = set()
    addresses: set[str] = set()
    fleet_nodes: dict[str, list[str]] = {}

    for fleet_id in fleet_order(settings):
        fleet = settings.fleets[fleet_id]
        _validate_fleet(fleet)
        depends_on = tuple(name for dep in fleet.depends_on for name in fleet_nodes[dep])
        tags = tuple(sorted({settings.tag_prefix, MANAGED_TAG, fleet_tag(fleet.id)} - {""}))
        for index in range(fleet.count):
            name = node_name(fleet, index)
            vmid = fleet.vmid_base + index
            address = node_address(fleet, index)
            if name in names:
                raise InvalidArgumentError(f"duplicate node name: {name}")
            if vmid in vmids or vmid == fleet.template_vmid:
                raise InvalidArgumentError(f"duplicate vmid: {vmid}")
            if address in addresses:
                raise InvalidArgumentError(f"duplicate address: {address}")
            if address in reserved or address in forbidden:
                raise InvalidArgumentError(f"{name}: address {address} is reserved")
            if ipaddress.IPv4Address(address) not in subnet:
                raise InvalidArgumentError(f"{name}: address {address} is outside {subnet}")
            names.add(name)
            vmids.add(vmid)
            addresses.add(address)
            nodes.append(
                NodeSpec(
                    fleet_id=fleet.id,
                    index=index,
                    name=name,
                    vmid=vmid,
                    cores=fleet.cores,
                    memory_mb=fleet.memory_mb,
                    disk_size=fleet.disk_size.upper(),
                    storage=fleet.storage,
                    bridge=fleet.bridge or settings.network.bridge,
                    vlan_tag=fleet.vlan_tag if fleet.vlan_tag is not None else settings.network.vlan_tag,
                    ip_address=address,
                    cidr=settings.network.cidr,
                    gateway=str(gateway),
                    ci_user=fleet.ci_user or settings.ci_user,
                    ssh_keys=tuple(settings.ssh_public_keys),
                    template_vmid=fleet.template_vmid,
                    tags=tags,
                    depends_on=depends_on,
                )
            )
        fleet_nodes[fleet.id] = [n.name for n in nodes if n.fleet_id == fleet.id]

    return nodes
