from __future__ import annotations

import enum


class ProcessType(enum.StrEnum):
    SWITCH = "switch"
    MOVE_IN = "move_in"
    MOVE_OUT = "move_out"
    END_OF_SUPPLY = "end_of_supply"


class ProcessStatus(enum.StrEnum):
    PENDING = "pending"
    SENT = "sent"
    ACKNOWLEDGED = "acknowledged"
    EFFECTUATION_PENDING = "effectuation_pending"
    COMPLETED = "completed"
    REJECTED = "rejected"
    CANCELLATION_PENDING = "cancellation_pending"
    CANCELLED = "cancelled"
    OFFBOARDING_STARTED = "offboarding_started"
    FINAL_SETTLED = "final_settled"


class ProcessTrigger(enum.StrEnum):
    SEND = "send"
    ACKNOWLEDGE = "acknowledge"
    CONFIRM = "confirm"
    COMPLETE = "complete"
    REJECT = "reject"
    REQUEST_CANCELLATION = "request_cancellation"
    ACKNOWLEDGE_CANCELLATION = "acknowledge_cancellation"
    REVERT_CANCELLATION = "revert_cancellation"
    AUTO_CANCEL = "auto_cancel"
    START_OFFBOARDING = "start_offboarding"
    SETTLE_FINAL = "settle_final"


TERMINAL_STATUSES: frozenset[ProcessStatus] = frozenset(
    {
        ProcessStatus.COMPLETED,
        ProcessStatus.REJECTED,
        ProcessStatus.CANCELLED,
        ProcessStatus.FINAL_SETTLED,
    }
)

# trigger -> {from status: to status}
TRANSITIONS: dict[ProcessTrigger, dict[ProcessStatus, ProcessStatus]] = {
    ProcessTrigger.SEND: {ProcessStatus.PENDING: ProcessStatus.SENT},
    ProcessTrigger.ACKNOWLEDGE: {ProcessStatus.SENT: ProcessStatus.ACKNOWLEDGED},
    ProcessTrigger.CONFIRM: {ProcessStatus.ACKNOWLEDGED: ProcessStatus.EFFECTUATION_PENDING},
    ProcessTrigger.COMPLETE: {ProcessStatus.EFFECTUATION_PENDING: ProcessStatus.COMPLETED},
    ProcessTrigger.REJECT: {
        ProcessStatus.SENT: ProcessStatus.REJECTED,
        ProcessStatus.ACKNOWLEDGED: ProcessStatus.REJECTED,
    },
    ProcessTrigger.REQUEST_CANCELLATION: {ProcessStatus.EFFECTUATION_PENDING: ProcessStatus.CANCELLATION_PENDING},
    ProcessTrigger.ACKNOWLEDGE_CANCELLATION: {ProcessStatus.CANCELLATION_PENDING: ProcessStatus.CANCELLED},
    ProcessTrigger.REVERT_CANCELLATION: {ProcessStatus.CANCELLATION_PENDING: ProcessStatus.EFFECTUATION_PENDING},
    ProcessTrigger.AUTO_CANCEL: {ProcessStatus.EFFECTUATION_PENDING: ProcessStatus.CANCELLED},
    ProcessTrigger.START_OFFBOARDING: {ProcessStatus.COMPLETED: ProcessStatus.OFFBOARDING_STARTED},
    ProcessTrigger.SETTLE_FINAL: {ProcessStatus.OFFBOARDING_STARTED: ProcessStatus.FINAL_SETTLED},
}


def resolve_transition(current: ProcessStatus | str, trigger: ProcessTrigger) -> ProcessStatus | None:
    """Return the status ``trigger`` leads to from ``current``, or None when it is not a legal move."""
    return TRANSITIONS[trigger].get(ProcessStatus(current))


def allowed_triggers(current: ProcessStatus | str) -> set[ProcessTrigger]:
    status = ProcessStatus(current)
    return {trigger for trigger, moves in TRANSITIONS.items() if status in moves}


def is_terminal(status: ProcessStatus | str) -> bool:
    return ProcessStatus(status) in TERMINAL_STATUSES
