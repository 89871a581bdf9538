"""Named, typed inputs with environment overrides and confidential values."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any, Mapping

from .errors import InvalidArgumentError

SENSITIVE_PLACEHOLDER = "(sensitive value)"


class Sensitive:
    """A confidential string that renders as a placeholder everywhere but ``reveal()``."""

    __slots__ = ("_value",)

    def __init__(self, value: str):
        self._value = str(value or "")

    def reveal(self) -> str:
        return self._value

    def __bool__(self) -> bool:
        return bool(self._value)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Sensitive):
            return self._value == other._value
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self._value)

    def __str__(self) -> str:
        return SENSITIVE_PLACEHOLDER

    def __repr__(self) -> str:
        return f"Sensitive({SENSITIVE_PLACEHOLDER!r})"

    def __format__(self, spec: str) -> str:
        return format(SENSITIVE_PLACEHOLDER, spec)


def as_bool(value: Any, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on", "y"}


def as_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [str(item).strip() for item in value if str(item).strip()]
    return [line.strip() for line in str(value).splitlines() if line.strip()]


_CASTS = {
    "str": lambda v: str(v).strip(),
    "int": lambda v: int(str(v).strip()),
    "bool": as_bool,
    "list": as_list,
}


@dataclass(frozen=True)
class Variable:
    name: str
    type: str = "str"
    default: Any = None
    required: bool = False
    sensitive: bool = False
    description: str = ""

    def resolve(self, document_value: Any, environ: Mapping[str, str] | None = None) -> Any:
        env = os.environ if environ is None else environ
        raw = env.get(self.name)
        if raw is None or str(raw).strip() == "":
            raw = document_value
        if raw is None or (isinstance(raw, str) and raw.strip() == ""):
            raw = self.default
        if raw is None:
            if self.required:
                raise InvalidArgumentError(f"missing required variable: {self.name}")
            return Sensitive("") if self.sensitive else None
        try:
            value = _CASTS[self.type](raw)
        except (TypeError, ValueError) as exc:
            # never echo the raw value, it may be confidential
            raise InvalidArgumentError(f"variable {self.name} is not a valid {self.type}") from exc
        if self.required and value in ("", []):
            raise InvalidArgumentError(f"missing required variable: {self.name}")
        return Sensitive(value) if self.sensitive else value


VARIABLES: dict[str, Variable] = {
    v.name: v
    for v in (
        Variable("PM_API_URL", required=True, description="Proxmox API endpoint"),
        Variable("PM_NODE", required=True, description="target placement node"),
        Variable("PM_API_TOKEN_ID", required=True, description="API token id, user@realm!name"),
        Variable("PM_API_TOKEN_SECRET", required=True, sensitive=True, description="API token secret"),
        Variable("PM_TLS_INSECURE", type="bool", default=True),
        Variable("TEMPLATE_VMID", type="int", description="cloud-init template to clone"),
        Variable("SSH_PUBLIC_KEYS", type="list", default=[]),
        Variable("SSH_PUBLIC_KEY_FILE", default=""),
    )
}


def resolve(name: str, document_value: Any = None, environ: Mapping[str, str] | None = None) -> Any:
    return VARIABLES[name].resolve(document_value, environ)
