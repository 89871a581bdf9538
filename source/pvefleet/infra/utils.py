from __future__ import annotations

import logging
import re
import urllib.parse
from pathlib import Path
from typing import Any, Iterable

from pvefleet.core.variables import SENSITIVE_PLACEHOLDER

_TOKEN_HEADER_RE = re.compile(r"PVEAPIToken=\S+")


def normalize_pm_api_base(url: str) -> str:
    out = (url or "").rstrip("/")
    if out.endswith("/api2/json"):
        out = out[: -len("/api2/json")]
    return out


def parse_tags(raw: str | None) -> list[str]:
    if not raw:
        return []
    out: list[str] = []
    seen: set[str] = set()
    for part in str(raw).replace(",", ";").split(";"):
        tag = part.strip()
        if not tag or tag in seen:
            continue
        seen.add(tag)
        out.append(tag)
    return out


def parse_kv(raw: str | None) -> dict[str, str]:
    """Parse Proxmox property strings such as ``virtio=AA:BB,bridge=vmbr0,tag=20``."""
    out: dict[str, str] = {}
    for part in str(raw or "").split(","):
        part = part.strip()
        if not part:
            continue
        key, sep, value = part.partition("=")
        out[key.strip()] = value.strip() if sep else ""
    return out


def net0_value(bridge: str, vlan_tag: int | None) -> str:
    out = f"virtio,bridge={bridge}"
    if vlan_tag is not None:
        out += f",tag={vlan_tag}"
    return out


def encode_sshkeys(keys: Iterable[str]) -> str:
    # the API double-decodes this field, so spaces must be %20 rather than +
    return urllib.parse.quote("\n".join(keys), safe="")


def decode_sshkeys(raw: str | None) -> str:
    return urllib.parse.unquote(str(raw or "")).strip()


def disk_size_from_drive(raw: str | None) -> str | None:
    size = parse_kv(raw).get("size")
    return size.upper() if size else None


def vm_attributes(cfg: dict[str, Any]) -> dict[str, Any]:
    """Project a raw VM config onto the keys of ``NodeSpec.attributes``."""
    net0 = parse_kv(cfg.get("net0"))
    tag = net0.get("tag")
    return {
        "cores": int(cfg["cores"]) if cfg.get("cores") is not None else None,
        "memory_mb": int(cfg["memory"]) if cfg.get("memory") is not None else None,
        "disk_size": disk_size_from_drive(cfg.get("scsi0")),
        "bridge": net0.get("bridge"),
        "vlan_tag": int(tag) if tag else None,
        "ipconfig": str(cfg.get("ipconfig0") or ""),
        "ci_user": str(cfg.get("ciuser") or ""),
        "ssh_keys": decode_sshkeys(cfg.get("sshkeys")),
        "storage": str(cfg.get("scsi0") or "").split(":", 1)[0] or None,
    }


def redact(text: str, secrets: Iterable[str]) -> str:
    out = _TOKEN_HEADER_RE.sub(f"PVEAPIToken={SENSITIVE_PLACEHOLDER}", str(text))
    for secret in secrets:
        if secret:
            out = out.replace(secret, SENSITIVE_PLACEHOLDER)
    return out


class SecretRedactingFilter(logging.Filter):
    def __init__(self, secrets: Iterable[str]):
        super().__init__()
        self.secrets = [s for s in secrets if s]

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        clean = redact(message, self.secrets)
        if clean != message:
            record.msg = clean
            record.args = None
        return True


def read_optional(path: Path) -> str:
    if not path.exists():
        return ""
    content = path.read_text(encoding="utf-8")
    for raw in content.splitlines():
        if raw.strip() and not raw.strip().startswith("#"):
            return content
    return ""
