from enum import Enum


class InstanceState(str, Enum):
    PENDING = "pending"
    STARTING = "starting"
    READY = "ready"
    DRAINING = "draining"
    TERMINATED = "terminated"


# Position along the main lifecycle path; transitions never move backwards.
STATE_ORDER = {
    InstanceState.PENDING: 0,
    InstanceState.STARTING: 1,
    InstanceState.READY: 2,
    InstanceState.DRAINING: 3,
    InstanceState.TERMINATED: 4,
}

COUNT_RELEVANT_STATES = frozenset({
    InstanceState.PENDING,
    InstanceState.STARTING,
    InstanceState.READY,
})

ADDRESSABLE_STATES = frozenset({
    InstanceState.READY,
    InstanceState.DRAINING,
})


class TerminationReason:
    HEARTBEAT_TIMEOUT = "heartbeat-timeout"
    READINESS_TIMEOUT = "readiness-timeout"
    CREATE_FAILED = "create-failed"
    DELETE_FAILED = "delete-failed"
    POD_DELETED = "pod-deleted"
    POD_FAILED = "pod-failed"
    POD_SUCCEEDED = "pod-succeeded"
    DRAINED = "drained"
    DRAIN_TIMEOUT = "drain-timeout"
    TEMPLATE_REMOVED = "template-removed"


class TransitionError(Exception):
    def __init__(self, from_state: str, to_state: str, reason: str = None):
        self.from_state = from_state
        self.to_state = to_state
        self.reason = reason or f"Cannot transition from {from_state} to {to_state}"
        super().__init__(self.reason)


def parse_state(value) -> InstanceState:
    if isinstance(value, InstanceState):
        return value
    try:
        return InstanceState(value)
    except ValueError:
        raise TransitionError(str(value), "unknown", f"Unknown instance state '{value}'")


def can_transition(from_state: InstanceState, to_state: InstanceState) -> bool:
    """
    Check whether an instance may move from one lifecycle state to another.

    Moves along PENDING -> STARTING -> READY -> DRAINING -> TERMINATED are
    valid, including skips (a pod first observed already ready goes straight
    from PENDING to READY). Any live state may jump to TERMINATED. A
    same-state move is an in-place update (heartbeat, load) and is refused
    only for TERMINATED records, which are immutable.
    """
    from_state = parse_state(from_state)
    to_state = parse_state(to_state)

    if from_state == InstanceState.TERMINATED:
        return False
    if from_state == to_state:
        return True
    if to_state == InstanceState.DRAINING:
        return from_state == InstanceState.READY
    return STATE_ORDER[to_state] > STATE_ORDER[from_state]
