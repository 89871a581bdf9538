from __future__ import annotations

import asyncio
import sys
from pathlib import Path

SECRET = "0f3c9a1e-7d2b-4c55-9e61-secret-token"


def _resolve_layout() -> Path:
    for parent in Path(__file__).resolve().parents:
        if (parent / "source" / "pvefleet").is_dir():
            return parent / "source"
        if (parent / "pvefleet").is_dir():
            return parent
    raise RuntimeError("could not locate the pvefleet package")


def bootstrap_tests() -> None:
    package_dir = _resolve_layout()
    if str(package_dir) not in sys.path:
        sys.path.insert(0, str(package_dir))


bootstrap_tests()


def make_fleet(fleet_id: str = "k3s", **overrides):
    from pvefleet.core.models import FleetConfig

    values = dict(
        id=fleet_id,
        name_prefix=f"{fleet_id}-node",
        count=3,
        vmid_base=9101,
        ip_start="192.168.1.21",
        cores=2,
        memory_mb=4096,
        disk_size="32G",
        storage="local-lvm",
        template_vmid=9000,
    )
    values.update(overrides)
    return FleetConfig(**values)


def make_proxmox_config(secret: str = SECRET):
    from pvefleet.core.models import ProxmoxConfig
    from pvefleet.core.variables import Sensitive

    return ProxmoxConfig(
        api_url="https://pm.example.invalid:8006",
        node="pve",
        token_id="fleet@pve!provision",
        token_secret=Sensitive(secret),
        tls_insecure=True,
    )


def make_settings(*fleets, **overrides):
    from pvefleet.core.models import NetworkConfig, RetryConfig, Settings, TimeoutConfig

    fleets = fleets or (make_fleet(),)
    values = dict(
        proxmox=make_proxmox_config(),
        network=NetworkConfig(gateway="192.168.1.1", cidr=24, bridge="vmbr0", vlan_tag=20),
        timeouts=TimeoutConfig(create=5, update=5, delete=5),
        retry=RetryConfig(max_attempts=3, base_delay=0.01, max_delay=0.05),
        ssh_public_keys=["ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAIFleet ops@example"],
        ci_user="ubuntu",
        tag_prefix="homelab",
        parallelism=4,
        lock_ttl_seconds=3600,
        fleets={fleet.id: fleet for fleet in fleets},
    )
    values.update(overrides)
    return Settings(**values)


class FakeProxmox:
    """In-memory ``ProxmoxService`` that records every mutating call."""

    def __init__(self):
        from pvefleet.core.descriptors import MANAGED_TAG

        self.managed_tag = MANAGED_TAG
        self.vms = {}
        self.calls: list[tuple[str, str]] = []
        self.failures: dict[tuple[str, str], Exception] = {}
        self.hangs: set[tuple[str, str]] = set()
        self.delay = 0.0
        self.active = 0
        self.max_active = 0

    def fail(self, name: str, operation: str, exc: Exception) -> None:
        self.failures[(name, operation)] = exc

    def hang(self, name: str, operation: str) -> None:
        self.hangs.add((name, operation))

    def mutations(self, operation: str | None = None) -> list[tuple[str, str]]:
        return [c for c in self.calls if operation is None or c[0] == operation]

    def put(self, spec, **attribute_overrides):
        from pvefleet.core.models import ObservedNode

        attrs = dict(spec.attributes(), storage=spec.storage)
        attrs.update(attribute_overrides)
        node = ObservedNode(vmid=spec.vmid, name=spec.name, status="running", tags=list(spec.tags), attributes=attrs)
        self.vms[spec.vmid] = node
        return node

    async def _maybe_fail(self, name: str, operation: str) -> None:
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if (name, operation) in self.hangs:
                await asyncio.sleep(3600)
            if self.delay:
                await asyncio.sleep(self.delay)
            exc = self.failures.get((name, operation))
            if exc is not None:
                raise exc
        finally:
            self.active -= 1

    async def list_nodes(self, vmids, tag):
        return [vm for vmid, vm in sorted(self.vms.items()) if vmid in vmids or tag in vm.tags]

    async def create_node(self, spec):
        self.calls.append(("create", spec.name))
        await self._maybe_fail(spec.name, "create")
        return self.put(spec)

    async def update_node(self, spec, observed):
        self.calls.append(("update", spec.name))
        await self._maybe_fail(spec.name, "update")
        return self.put(spec)

    async def delete_node(self, vmid):
        name = self.vms[vmid].name if vmid in self.vms else str(vmid)
        self.calls.append(("delete", name))
        await self._maybe_fail(name, "delete")
        self.vms.pop(vmid, None)
