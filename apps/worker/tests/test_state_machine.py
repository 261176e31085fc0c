from __future__ import annotations

import pytest

from supplyhub.lifecycle.state_machine import (
    TRANSITIONS,
    ProcessStatus,
    ProcessTrigger,
    allowed_triggers,
    is_terminal,
    resolve_transition,
)


@pytest.mark.parametrize(
    ("current", "trigger", "expected"),
    [
        (ProcessStatus.PENDING, ProcessTrigger.SEND, ProcessStatus.SENT),
        (ProcessStatus.SENT, ProcessTrigger.ACKNOWLEDGE, ProcessStatus.ACKNOWLEDGED),
        (ProcessStatus.ACKNOWLEDGED, ProcessTrigger.CONFIRM, ProcessStatus.EFFECTUATION_PENDING),
        (ProcessStatus.EFFECTUATION_PENDING, ProcessTrigger.COMPLETE, ProcessStatus.COMPLETED),
        (ProcessStatus.SENT, ProcessTrigger.REJECT, ProcessStatus.REJECTED),
        (ProcessStatus.ACKNOWLEDGED, ProcessTrigger.REJECT, ProcessStatus.REJECTED),
        (ProcessStatus.EFFECTUATION_PENDING, ProcessTrigger.REQUEST_CANCELLATION, ProcessStatus.CANCELLATION_PENDING),
        (ProcessStatus.CANCELLATION_PENDING, ProcessTrigger.ACKNOWLEDGE_CANCELLATION, ProcessStatus.CANCELLED),
        (ProcessStatus.CANCELLATION_PENDING, ProcessTrigger.REVERT_CANCELLATION, ProcessStatus.EFFECTUATION_PENDING),
        (ProcessStatus.EFFECTUATION_PENDING, ProcessTrigger.AUTO_CANCEL, ProcessStatus.CANCELLED),
        (ProcessStatus.COMPLETED, ProcessTrigger.START_OFFBOARDING, ProcessStatus.OFFBOARDING_STARTED),
        (ProcessStatus.OFFBOARDING_STARTED, ProcessTrigger.SETTLE_FINAL, ProcessStatus.FINAL_SETTLED),
    ],
)
def test_legal_transitions(current: ProcessStatus, trigger: ProcessTrigger, expected: ProcessStatus) -> None:
    assert resolve_transition(current, trigger) is expected


def test_illegal_moves_resolve_to_none() -> None:
    assert resolve_transition(ProcessStatus.PENDING, ProcessTrigger.COMPLETE) is None
    assert resolve_transition(ProcessStatus.COMPLETED, ProcessTrigger.REJECT) is None
    assert resolve_transition("cancelled", ProcessTrigger.SEND) is None


def test_terminal_statuses_only_allow_offboarding() -> None:
    for status in (ProcessStatus.REJECTED, ProcessStatus.CANCELLED, ProcessStatus.FINAL_SETTLED):
        assert is_terminal(status)
        assert allowed_triggers(status) == set()
    assert allowed_triggers(ProcessStatus.COMPLETED) == {ProcessTrigger.START_OFFBOARDING}
    assert not is_terminal(ProcessStatus.OFFBOARDING_STARTED)


def test_every_trigger_has_a_move() -> None:
    assert set(TRANSITIONS) == set(ProcessTrigger)
    assert all(TRANSITIONS[trigger] for trigger in ProcessTrigger)


@pytest.mark.parametrize(
    "path",
    [
        [ProcessTrigger.SEND, ProcessTrigger.REJECT],
        [
            ProcessTrigger.SEND,
            ProcessTrigger.ACKNOWLEDGE,
            ProcessTrigger.CONFIRM,
            ProcessTrigger.REQUEST_CANCELLATION,
            ProcessTrigger.REVERT_CANCELLATION,
            ProcessTrigger.COMPLETE,
            ProcessTrigger.START_OFFBOARDING,
            ProcessTrigger.SETTLE_FINAL,
        ],
        [
            ProcessTrigger.SEND,
            ProcessTrigger.ACKNOWLEDGE,
            ProcessTrigger.CONFIRM,
            ProcessTrigger.REQUEST_CANCELLATION,
            ProcessTrigger.ACKNOWLEDGE_CANCELLATION,
        ],
        [ProcessTrigger.SEND, ProcessTrigger.ACKNOWLEDGE, ProcessTrigger.CONFIRM, ProcessTrigger.AUTO_CANCEL],
    ],
)
def test_walk_only_ever_takes_allowed_moves_and_ends_terminal(path: list[ProcessTrigger]) -> None:
    status = ProcessStatus.PENDING
    for trigger in path:
        allowed = allowed_triggers(status)
        assert trigger in allowed
        for other in set(ProcessTrigger) - allowed:
            assert resolve_transition(status, other) is None
        assert not is_terminal(status) or status is ProcessStatus.COMPLETED
        status = resolve_transition(status, trigger)

    assert is_terminal(status)
    assert status is not ProcessStatus.COMPLETED
