from __future__ import annotations

import logging
from typing import Any

from pvefleet.core.descriptors import disk_size_gib
from pvefleet.core.errors import ConflictError, ProviderRejectedError
from pvefleet.core.models import NodeSpec, ObservedNode
from .pve import PveClient
from .utils import encode_sshkeys, net0_value, parse_tags, vm_attributes

LOG = logging.getLogger("pve-fleet")


def config_params(spec: NodeSpec) -> dict[str, Any]:
    return {
        "cores": spec.cores,
        "memory": spec.memory_mb,
        "net0": net0_value(spec.bridge, spec.vlan_tag),
        "ipconfig0": f"ip={spec.ip_address}/{spec.cidr},gw={spec.gateway}",
        "ciuser": spec.ci_user,
        "sshkeys": encode_sshkeys(spec.ssh_keys),
        "agent": 1,
        "tags": ";".join(spec.tags),
    }


def changed_params(spec: NodeSpec, observed: ObservedNode) -> dict[str, Any]:
    """Config parameters whose observed value differs from the descriptor."""
    want = spec.attributes()
    have = observed.attributes
    params = config_params(spec)
    out: dict[str, Any] = {}
    if observed.name != spec.name:
        out["name"] = spec.name
    if have.get("cores") != want["cores"]:
        out["cores"] = params["cores"]
    if have.get("memory_mb") != want["memory_mb"]:
        out["memory"] = params["memory"]
    if have.get("bridge") != want["bridge"] or have.get("vlan_tag") != want["vlan_tag"]:
        out["net0"] = params["net0"]
    if have.get("ipconfig") != want["ipconfig"]:
        out["ipconfig0"] = params["ipconfig0"]
    if have.get("ci_user") != want["ci_user"]:
        out["ciuser"] = params["ciuser"]
    if have.get("ssh_keys") != want["ssh_keys"]:
        out["sshkeys"] = params["sshkeys"]
    if set(observed.tags) != set(spec.tags):
        out["tags"] = params["tags"]
    return out


class AsyncProxmoxAdapter:
    def __init__(self, client: PveClient):
        self._client = client

    async def close(self) -> None:
        await self._client.close()

    async def _observe(self, vm: dict[str, Any]) -> ObservedNode:
        vmid = int(vm["vmid"])
        cfg = await self._client.vm_config(vmid)
        tags = parse_tags(vm.get("tags")) or parse_tags(cfg.get("tags"))
        return ObservedNode(
            vmid=vmid,
            name=str(vm.get("name") or cfg.get("name") or ""),
            status=str(vm.get("status") or ""),
            tags=tags,
            attributes=vm_attributes(cfg),
        )

    async def list_nodes(self, vmids: set[int], tag: str) -> list[ObservedNode]:
        out: list[ObservedNode] = []
        for vm in await self._client.list_vms():
            try:
                vmid = int(vm.get("vmid"))
            except (TypeError, ValueError):
                continue
            if int(vm.get("template") or 0):
                continue
            if vmid not in vmids and tag not in parse_tags(vm.get("tags")):
                continue
            out.append(await self._observe(vm))
        return sorted(out, key=lambda x: x.vmid)

    async def _find(self, vmid: int) -> dict[str, Any] | None:
        for vm in await self._client.list_vms():
            if str(vm.get("vmid")) == str(vmid):
                return vm
        return None

    async def create_node(self, spec: NodeSpec) -> ObservedNode:
        existing = await self._find(spec.vmid)
        if existing is None:
            LOG.info("Cloning template=%s into vmid=%s name=%s", spec.template_vmid, spec.vmid, spec.name)
            await self._client.clone_vm(
                template_vmid=spec.template_vmid, vmid=spec.vmid, name=spec.name, storage=spec.storage
            )
        elif str(existing.get("name") or "") != spec.name:
            raise ConflictError(f"vmid {spec.vmid} is taken by {existing.get('name')!r}, expected {spec.name}")
        else:
            LOG.info("Resuming create of vmid=%s name=%s, clone already present", spec.vmid, spec.name)

        await self._client.update_vm_config(spec.vmid, config_params(spec))
        observed = await self._observe({"vmid": spec.vmid, "name": spec.name})
        await self._grow_disk(spec, observed)
        if await self._client.vm_status(spec.vmid) != "running":
            await self._client.start_vm(spec.vmid)
        return await self._observe({"vmid": spec.vmid, "name": spec.name, "status": "running"})

    async def update_node(self, spec: NodeSpec, observed: ObservedNode) -> ObservedNode:
        params = changed_params(spec, observed)
        if params:
            LOG.info("Updating vmid=%s name=%s params=%s", spec.vmid, spec.name, sorted(params))
            await self._client.update_vm_config(spec.vmid, params)
        await self._grow_disk(spec, observed)
        return await self._observe({"vmid": spec.vmid, "name": spec.name, "status": observed.status})

    async def _grow_disk(self, spec: NodeSpec, observed: ObservedNode) -> None:
        have = observed.attributes.get("disk_size")
        want_gib = disk_size_gib(spec.disk_size)
        if have and disk_size_gib(have) > want_gib:
            raise ProviderRejectedError(f"{spec.name}: disk cannot shrink from {have} to {spec.disk_size}")
        if not have or disk_size_gib(have) != want_gib:
            await self._client.resize_disk(spec.vmid, "scsi0", spec.disk_size)

    async def delete_node(self, vmid: int) -> None:
        await self._client.stop_and_delete_vm(int(vmid))
