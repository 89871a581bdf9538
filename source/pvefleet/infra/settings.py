from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Mapping

import yaml

from pvefleet.core.descriptors import derive_fleet
from pvefleet.core.errors import InvalidArgumentError
from pvefleet.core.models import (
    FleetConfig,
    NetworkConfig,
    ProxmoxConfig,
    RetryConfig,
    Settings,
    TimeoutConfig,
)
from pvefleet.core.variables import as_list, resolve
from .utils import normalize_pm_api_base, read_optional


def _int(raw: Any, name: str) -> int:
    try:
        return int(raw)
    except (TypeError, ValueError) as exc:
        raise InvalidArgumentError(f"{name} must be an integer, got {raw!r}") from exc


def _float(raw: Any, name: str) -> float:
    try:
        value = float(raw)
    except (TypeError, ValueError) as exc:
        raise InvalidArgumentError(f"{name} must be a number, got {raw!r}") from exc
    if value <= 0:
        raise InvalidArgumentError(f"{name} must be > 0")
    return value


def _optional_int(raw: Any, name: str) -> int | None:
    if raw is None or str(raw).strip() == "":
        return None
    return _int(raw, name)


def _section(raw: dict[str, Any], key: str) -> dict[str, Any]:
    value = raw.get(key) or {}
    if not isinstance(value, dict):
        raise InvalidArgumentError(f"{key} must be a mapping")
    return value


def _ssh_keys(raw: dict[str, Any], environ: Mapping[str, str]) -> list[str]:
    keys = list(resolve("SSH_PUBLIC_KEYS", raw.get("ssh_public_keys"), environ))
    key_file = resolve("SSH_PUBLIC_KEY_FILE", raw.get("ssh_public_key_file"), environ)
    if key_file:
        path = Path(os.path.expanduser(str(key_file)))
        if not path.exists():
            raise InvalidArgumentError(f"SSH public key file not found: {path}")
        keys.extend(as_list(read_optional(path)))
    out: list[str] = []
    for key in keys:
        if key.startswith("#") or key in out:
            continue
        out.append(key)
    return out


def parse_settings(raw: dict[str, Any], environ: Mapping[str, str] | None = None) -> Settings:
    env = os.environ if environ is None else environ
    if not isinstance(raw, dict):
        raise InvalidArgumentError("configuration document must be a mapping")

    proxmox_raw = _section(raw, "proxmox")
    network_raw = _section(raw, "network")
    timeouts_raw = _section(raw, "timeouts")
    retry_raw = _section(raw, "retry")
    defaults_raw = _section(raw, "defaults")

    proxmox = ProxmoxConfig(
        api_url=normalize_pm_api_base(resolve("PM_API_URL", proxmox_raw.get("api_url"), env)),
        node=resolve("PM_NODE", proxmox_raw.get("node"), env),
        token_id=resolve("PM_API_TOKEN_ID", proxmox_raw.get("token_id"), env),
        token_secret=resolve("PM_API_TOKEN_SECRET", proxmox_raw.get("token_secret"), env),
        tls_insecure=resolve("PM_TLS_INSECURE", proxmox_raw.get("tls_insecure"), env),
    )
    if not proxmox.api_url.startswith(("https://", "http://")):
        raise InvalidArgumentError("PM_API_URL must be an http(s) URL")

    network = NetworkConfig(
        gateway=str(network_raw.get("gateway", "")),
        cidr=_int(network_raw.get("cidr", 24), "network.cidr"),
        bridge=str(network_raw.get("bridge", "vmbr0")),
        vlan_tag=_optional_int(network_raw.get("vlan_tag"), "network.vlan_tag"),
        reserved=[str(x) for x in (network_raw.get("reserved", []) or [])],
    )
    if network.vlan_tag is not None and not 1 <= network.vlan_tag <= 4094:
        raise InvalidArgumentError("network.vlan_tag must be within 1..4094")

    timeouts = TimeoutConfig(
        create=_float(timeouts_raw.get("create", 600), "timeouts.create"),
        update=_float(timeouts_raw.get("update", 300), "timeouts.update"),
        delete=_float(timeouts_raw.get("delete", 300), "timeouts.delete"),
    )
    retry = RetryConfig(
        max_attempts=_int(retry_raw.get("max_attempts", 5), "retry.max_attempts"),
        base_delay=_float(retry_raw.get("base_delay", 1.0), "retry.base_delay"),
        max_delay=_float(retry_raw.get("max_delay", 30.0), "retry.max_delay"),
    )
    if retry.max_attempts < 1:
        raise InvalidArgumentError("retry.max_attempts must be >= 1")

    template_default = resolve("TEMPLATE_VMID", raw.get("template_vmid"), env)
    ci_user = str(defaults_raw.get("ci_user", "ubuntu"))

    fleets: dict[str, FleetConfig] = {}
    fleets_raw = raw.get("fleets") or []
    if not isinstance(fleets_raw, list):
        raise InvalidArgumentError("fleets must be a list")
    for fleet in fleets_raw:
        if not isinstance(fleet, dict):
            raise InvalidArgumentError(f"every fleet must be a mapping, got {type(fleet).__name__}")
        if "id" not in fleet:
            raise InvalidArgumentError("every fleet needs an id")
        fleet_id = str(fleet["id"])
        if fleet_id in fleets:
            raise InvalidArgumentError(f"duplicate fleet id: {fleet_id}")
        template_vmid = fleet.get("template_vmid", template_default)
        if template_vmid is None:
            raise InvalidArgumentError(f"fleet {fleet_id}: no template_vmid and no TEMPLATE_VMID default")
        item = FleetConfig(
            id=fleet_id,
            name_prefix=str(fleet.get("name_prefix") or fleet_id),
            count=_int(fleet.get("count", 1), f"fleet {fleet_id} count"),
            vmid_base=_int(fleet.get("vmid_base"), f"fleet {fleet_id} vmid_base"),
            ip_start=str(fleet.get("ip_start", "")),
            cores=_int(fleet.get("cores", 2), f"fleet {fleet_id} cores"),
            memory_mb=_int(fleet.get("memory_mb", 2048), f"fleet {fleet_id} memory_mb"),
            disk_size=str(fleet.get("disk_size", "20G")),
            storage=str(fleet.get("storage", "local-lvm")),
            template_vmid=_int(template_vmid, f"fleet {fleet_id} template_vmid"),
            bridge=(str(fleet["bridge"]) if fleet.get("bridge") else None),
            vlan_tag=_optional_int(fleet.get("vlan_tag"), f"fleet {fleet_id} vlan_tag"),
            ci_user=(str(fleet["ci_user"]) if fleet.get("ci_user") else None),
            depends_on=[str(x) for x in (fleet.get("depends_on", []) or [])],
            name_width=_int(fleet.get("name_width", 2), f"fleet {fleet_id} name_width"),
        )
        fleets[item.id] = item

    settings = Settings(
        proxmox=proxmox,
        network=network,
        timeouts=timeouts,
        retry=retry,
        ssh_public_keys=_ssh_keys(raw, env),
        ci_user=ci_user,
        tag_prefix=str(defaults_raw.get("tag_prefix", "homelab")),
        parallelism=max(1, _int(defaults_raw.get("parallelism", 4), "defaults.parallelism")),
        lock_ttl_seconds=max(0, _int(defaults_raw.get("lock_ttl_seconds", 3600), "defaults.lock_ttl_seconds")),
        fleets=fleets,
    )
    # derive once so a bad descriptor set fails before any network call
    derive_fleet(settings)
    return settings


def load_settings(config_path: Path, environ: Mapping[str, str] | None = None) -> Settings:
    try:
        text = Path(config_path).read_text(encoding="utf-8")
    except OSError as exc:
        raise InvalidArgumentError(f"cannot read config {config_path}: {exc.strerror}") from exc
    try:
        raw = yaml.safe_load(text) or {}
    except yaml.YAMLError as exc:
        raise InvalidArgumentError(f"invalid YAML in {config_path}: {exc}") from exc
    return parse_settings(raw, environ)
