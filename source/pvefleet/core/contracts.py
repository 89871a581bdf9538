from __future__ import annotations

from typing import Protocol

from .models import NodeSpec, NodeStateRecord, ObservedNode


class StateRepository(Protocol):
    async def init(self) -> None: ...

    async def upsert_node_state(
        self,
        *,
        vmid: int,
        fleet_id: str,
        name: str,
        state: str,
        failed_operation: str | None = None,
        ip_address: str | None = None,
        last_error: str | None = None,
    ) -> None: ...

    async def get_node_state(self, vmid: int) -> NodeStateRecord | None: ...

    async def list_node_states(self) -> list[NodeStateRecord]: ...

    async def delete_node_state(self, vmid: int) -> None: ...

    async def try_acquire_lock(self, name: str, holder: str, ttl_seconds: int) -> bool: ...

    async def refresh_lock(self, name: str, holder: str) -> bool: ...

    async def lock_holder(self, name: str) -> tuple[str, int] | None: ...

    async def release_lock(self, name: str, holder: str) -> None: ...

    async def force_release_lock(self, name: str) -> bool: ...


class ProxmoxService(Protocol):
    async def list_nodes(self, vmids: set[int], tag: str) -> list[ObservedNode]: ...

    async def create_node(self, spec: NodeSpec) -> ObservedNode: ...

    async def update_node(self, spec: NodeSpec, observed: ObservedNode) -> ObservedNode: ...

    async def delete_node(self, vmid: int) -> None: ...
