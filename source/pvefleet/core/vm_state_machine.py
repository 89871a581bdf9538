from __future__ import annotations

from statemachine import State, StateMachine

STATE_ABSENT = "absent"
STATE_PENDING_CREATE = "pending_create"
STATE_ACTIVE = "active"
STATE_PENDING_UPDATE = "pending_update"
STATE_PENDING_DELETE = "pending_delete"
STATE_FAILED = "failed"

LIFECYCLE_STATES = {
    STATE_ABSENT,
    STATE_PENDING_CREATE,
    STATE_ACTIVE,
    STATE_PENDING_UPDATE,
    STATE_PENDING_DELETE,
    STATE_FAILED,
}
PENDING_STATES = {STATE_PENDING_CREATE, STATE_PENDING_UPDATE, STATE_PENDING_DELETE}

OPERATION_CREATE = "create"
OPERATION_UPDATE = "update"
OPERATION_DELETE = "delete"

EVENT_REQUEST_CREATE = "request_create"
EVENT_CREATED = "created"
EVENT_REQUEST_UPDATE = "request_update"
EVENT_UPDATED = "updated"
EVENT_REQUEST_DELETE = "request_delete"
EVENT_DELETED = "deleted"
EVENT_MARK_FAILED = "mark_failed"

_PENDING_FOR_OPERATION = {
    OPERATION_CREATE: STATE_PENDING_CREATE,
    OPERATION_UPDATE: STATE_PENDING_UPDATE,
    OPERATION_DELETE: STATE_PENDING_DELETE,
}
_REQUEST_EVENT_FOR_OPERATION = {
    OPERATION_CREATE: EVENT_REQUEST_CREATE,
    OPERATION_UPDATE: EVENT_REQUEST_UPDATE,
    OPERATION_DELETE: EVENT_REQUEST_DELETE,
}


class NodeLifecycleStateMachine(StateMachine):
    absent = State(initial=True, value=STATE_ABSENT)
    pending_create = State(value=STATE_PENDING_CREATE)
    active = State(value=STATE_ACTIVE)
    pending_update = State(value=STATE_PENDING_UPDATE)
    pending_delete = State(value=STATE_PENDING_DELETE)
    failed = State(value=STATE_FAILED)

    # failed re-enters the pending state of whichever operation failed
    request_create = absent.to(pending_create) | failed.to(pending_create) | pending_create.to.itself()
    created = pending_create.to(active)

    request_update = active.to(pending_update) | failed.to(pending_update) | pending_update.to.itself()
    updated = pending_update.to(active)

    request_delete = (
        active.to(pending_delete)
        | failed.to(pending_delete)
        | pending_create.to(pending_delete)
        | pending_update.to(pending_delete)
        | pending_delete.to.itself()
    )
    deleted = pending_delete.to(absent)

    mark_failed = (
        pending_create.to(failed)
        | pending_update.to(failed)
        | pending_delete.to(failed)
        | failed.to.itself()
    )


def is_lifecycle_state(state: str) -> bool:
    return state in LIFECYCLE_STATES


def is_pending_state(state: str) -> bool:
    return state in PENDING_STATES


def request_event_for(operation: str) -> str:
    return _REQUEST_EVENT_FOR_OPERATION[operation]


def operation_for_pending(state: str) -> str | None:
    for operation, pending in _PENDING_FOR_OPERATION.items():
        if pending == state:
            return operation
    return None


def _machine_for_state(state: str) -> NodeLifecycleStateMachine:
    machine = NodeLifecycleStateMachine()
    if state == STATE_ABSENT:
        return machine
    if state == STATE_PENDING_CREATE:
        machine.request_create()
        return machine
    if state == STATE_ACTIVE:
        machine.request_create()
        machine.created()
        return machine
    if state == STATE_PENDING_UPDATE:
        machine.request_create()
        machine.created()
        machine.request_update()
        return machine
    if state == STATE_PENDING_DELETE:
        machine.request_create()
        machine.created()
        machine.request_delete()
        return machine
    if state == STATE_FAILED:
        machine.request_create()
        machine.mark_failed()
        return machine
    raise ValueError(f"unsupported lifecycle state: {state}")


def transition_state(state: str, event: str) -> str:
    machine = _machine_for_state(state)
    handler = getattr(machine, event)
    handler()
    return str(machine.current_state.value)
