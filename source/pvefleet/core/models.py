from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from .variables import Sensitive


@dataclass(frozen=True)
class ProxmoxConfig:
    api_url: str
    node: str
    token_id: str
    token_secret: Sensitive
    tls_insecure: bool


@dataclass(frozen=True)
class NetworkConfig:
    gateway: str
    cidr: int
    bridge: str
    vlan_tag: int | None = None
    reserved: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class TimeoutConfig:
    create: float = 600.0
    update: float = 300.0
    delete: float = 300.0

    def for_operation(self, operation: str) -> float:
        return float(getattr(self, operation))


@dataclass(frozen=True)
class RetryConfig:
    max_attempts: int = 5
    base_delay: float = 1.0
    max_delay: float = 30.0

    def delay_for(self, attempt: int) -> float:
        return min(self.max_delay, self.base_delay * (2**attempt))


@dataclass(frozen=True)
class FleetConfig:
    id: str
    name_prefix: str
    count: int
    vmid_base: int
    ip_start: str
    cores: int
    memory_mb: int
    disk_size: str
    storage: str
    template_vmid: int
    bridge: str | None = None
    vlan_tag: int | None = None
    ci_user: str | None = None
    depends_on: list[str] = field(default_factory=list)
    name_width: int = 2


@dataclass(frozen=True)
class Settings:
    proxmox: ProxmoxConfig
    network: NetworkConfig
    timeouts: TimeoutConfig
    retry: RetryConfig
    ssh_public_keys: list[str]
    ci_user: str
    tag_prefix: str
    parallelism: int
    lock_ttl_seconds: int
    fleets: dict[str, FleetConfig]


@dataclass(frozen=True)
class NodeSpec:
    fleet_id: str
    index: int
    name: str
    vmid: int
    cores: int
    memory_mb: int
    disk_size: str
    storage: str
    bridge: str
    vlan_tag: int | None
    ip_address: str
    cidr: int
    gateway: str
    ci_user: str
    ssh_keys: tuple[str, ...]
    template_vmid: int
    tags: tuple[str, ...]
    depends_on: tuple[str, ...] = ()

    def attributes(self) -> dict[str, Any]:
        """Comparable projection, same keys as ``ObservedNode.attributes``."""
        return {
            "cores": self.cores,
            "memory_mb": self.memory_mb,
            "disk_size": self.disk_size,
            "bridge": self.bridge,
            "vlan_tag": self.vlan_tag,
            "ipconfig": f"ip={self.ip_address}/{self.cidr},gw={self.gateway}",
            "ci_user": self.ci_user,
            "ssh_keys": "\n".join(self.ssh_keys),
        }


@dataclass(frozen=True)
class ObservedNode:
    vmid: int
    name: str
    status: str
    tags: list[str]
    attributes: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class NodeStateRecord:
    vmid: int
    fleet_id: str
    name: str
    state: str
    failed_operation: str | None
    ip_address: str | None
    last_error: str | None
    updated_at: int
