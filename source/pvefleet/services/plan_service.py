"""Pure desired/observed/recorded three-way diff.

Nothing in this module performs I/O: callers fetch the observed snapshot and
the durable records once and pass them in.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from pvefleet.core.descriptors import disk_size_gib
from pvefleet.core.models import NodeSpec, NodeStateRecord, ObservedNode
from pvefleet.core.vm_state_machine import (
    OPERATION_CREATE,
    OPERATION_DELETE,
    STATE_ABSENT,
    STATE_ACTIVE,
    STATE_FAILED,
    STATE_PENDING_CREATE,
    STATE_PENDING_DELETE,
)

ACTION_NOOP = "noop"
ACTION_CREATE = "create"
ACTION_UPDATE = "update"
ACTION_REPLACE = "replace"
ACTION_DELETE = "delete"
ACTION_ADOPT = "adopt"
ACTION_CONFLICT = "conflict"

_COMPARED = ("cores", "memory_mb", "bridge", "vlan_tag", "ipconfig", "ci_user", "ssh_keys")


@dataclass(frozen=True)
class Change:
    action: str
    name: str
    vmid: int
    fleet_id: str
    desired: NodeSpec | None = None
    observed: ObservedNode | None = None
    record: NodeStateRecord | None = None
    diffs: dict[str, tuple[Any, Any]] = field(default_factory=dict)
    reason: str | None = None

    @property
    def depends_on(self) -> tuple[str, ...]:
        return self.desired.depends_on if self.desired is not None else ()


@dataclass(frozen=True)
class Plan:
    changes: list[Change]

    def by_action(self, action: str) -> list[Change]:
        return [c for c in self.changes if c.action == action]

    @property
    def to_add(self) -> int:
        return len(self.by_action(ACTION_CREATE)) + len(self.by_action(ACTION_REPLACE))

    @property
    def to_change(self) -> int:
        return len(self.by_action(ACTION_UPDATE))

    @property
    def to_destroy(self) -> int:
        return len(self.by_action(ACTION_DELETE)) + len(self.by_action(ACTION_REPLACE))

    @property
    def to_adopt(self) -> int:
        return len(self.by_action(ACTION_ADOPT))

    @property
    def conflicts(self) -> list[Change]:
        return self.by_action(ACTION_CONFLICT)

    def is_empty(self) -> bool:
        return all(c.action == ACTION_NOOP for c in self.changes)


def _failed(record: NodeStateRecord | None, *operations: str) -> bool:
    return record is not None and record.state == STATE_FAILED and record.failed_operation in operations


def attribute_diffs(spec: NodeSpec, observed: ObservedNode) -> dict[str, tuple[Any, Any]]:
    want = spec.attributes()
    have = observed.attributes
    out: dict[str, tuple[Any, Any]] = {}
    if observed.name != spec.name:
        out["name"] = (observed.name, spec.name)
    for key in _COMPARED:
        if have.get(key) != want[key]:
            out[key] = (have.get(key), want[key])
    have_disk = have.get("disk_size")
    if not have_disk or disk_size_gib(have_disk) != disk_size_gib(spec.disk_size):
        out["disk_size"] = (have_disk, spec.disk_size)
    if set(observed.tags) != set(spec.tags):
        out["tags"] = (";".join(sorted(observed.tags)), ";".join(sorted(spec.tags)))
    return out


def replace_reasons(spec: NodeSpec, observed: ObservedNode) -> list[str]:
    reasons: list[str] = []
    have_storage = observed.attributes.get("storage")
    if have_storage and have_storage != spec.storage:
        reasons.append(f"storage {have_storage} -> {spec.storage}")
    have_disk = observed.attributes.get("disk_size")
    if have_disk and disk_size_gib(have_disk) > disk_size_gib(spec.disk_size):
        reasons.append(f"disk shrink {have_disk} -> {spec.disk_size}")
    return reasons


def _desired_change(spec: NodeSpec, observed: ObservedNode | None, record: NodeStateRecord | None) -> Change:
    base = {"name": spec.name, "vmid": spec.vmid, "fleet_id": spec.fleet_id, "desired": spec,
            "observed": observed, "record": record}

    if observed is None:
        resumable = record is None or record.state in {STATE_ABSENT, STATE_PENDING_CREATE, STATE_PENDING_DELETE}
        if resumable or _failed(record, OPERATION_CREATE, OPERATION_DELETE):
            return Change(action=ACTION_CREATE, **base)
        return Change(
            action=ACTION_CONFLICT,
            reason=f"recorded as {record.state} but vmid {spec.vmid} no longer exists",
            **base,
        )

    if observed.name != spec.name and (record is None or record.name != observed.name):
        return Change(
            action=ACTION_CONFLICT,
            reason=f"vmid {spec.vmid} is held by unmanaged VM {observed.name!r}",
            **base,
        )

    if (record is not None and record.state == STATE_PENDING_CREATE) or _failed(record, OPERATION_CREATE):
        return Change(action=ACTION_CREATE, reason="resuming interrupted create", **base)

    diffs = attribute_diffs(spec, observed)
    reasons = replace_reasons(spec, observed)
    if reasons:
        return Change(action=ACTION_REPLACE, diffs=diffs, reason="; ".join(reasons), **base)
    if diffs:
        return Change(action=ACTION_UPDATE, diffs=diffs, **base)
    if record is None or record.state != STATE_ACTIVE:
        return Change(action=ACTION_ADOPT, **base)
    return Change(action=ACTION_NOOP, **base)


def _removal_change(
    record: NodeStateRecord,
    observed: ObservedNode | None,
    desired: NodeSpec | None = None,
) -> Change:
    base = {"name": record.name, "vmid": record.vmid, "fleet_id": record.fleet_id, "desired": desired,
            "observed": observed, "record": record}
    if observed is not None and observed.name != record.name:
        return Change(
            action=ACTION_CONFLICT,
            reason=f"vmid {record.vmid} now belongs to {observed.name!r}, not {record.name!r}",
            **base,
        )
    return Change(action=ACTION_DELETE, **base)


def compute_plan(
    desired: list[NodeSpec],
    observed: dict[int, ObservedNode],
    records: dict[int, NodeStateRecord],
) -> Plan:
    changes = [_desired_change(spec, observed.get(spec.vmid), records.get(spec.vmid)) for spec in desired]
    wanted = {spec.vmid for spec in desired}
    for vmid in sorted(records):
        if vmid in wanted:
            continue
        changes.append(_removal_change(records[vmid], observed.get(vmid)))
    return Plan(changes=changes)


def compute_destroy_plan(
    desired: list[NodeSpec],
    observed: dict[int, ObservedNode],
    records: dict[int, NodeStateRecord],
) -> Plan:
    by_vmid = {spec.vmid: spec for spec in desired}
    order = {spec.vmid: pos for pos, spec in enumerate(desired)}
    ordered = sorted(records, key=lambda vmid: (order.get(vmid, len(order)), vmid))
    return Plan(changes=[_removal_change(records[v], observed.get(v), by_vmid.get(v)) for v in ordered])
