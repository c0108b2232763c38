"""
Tests for the campaign state machine.
"""

import pytest

from thumbpilot.common.exceptions import InvalidTransitionError
from thumbpilot.engine import state as state_module
from thumbpilot.engine.state import (
    TERMINAL_STATES,
    TRANSITIONS,
    can_transition,
    is_in_loop,
    is_terminal,
    validate_transition,
)
from thumbpilot.models import CampaignStatus as S


@pytest.mark.parametrize(
    "current,target",
    [
        (S.PENDING, S.ANALYZING),
        (S.ANALYZING, S.GENERATING),
        (S.GENERATING, S.TESTING),
        (S.TESTING, S.OPTIMIZING),
        (S.TESTING, S.SETTLED),
        (S.OPTIMIZING, S.OPTIMIZING),
        (S.OPTIMIZING, S.SETTLED),
    ],
)
def test_legal_transitions(current: S, target: S) -> None:
    assert can_transition(current, target)
    assert validate_transition(current.value, target.value) is target


@pytest.mark.parametrize(
    "current,target",
    [
        (S.PENDING, S.TESTING),
        (S.ANALYZING, S.SETTLED),
        (S.TESTING, S.GENERATING),
        (S.SETTLED, S.OPTIMIZING),
        (S.FAILED, S.PENDING),
    ],
)
def test_illegal_transitions_raise(current: S, target: S) -> None:
    assert not can_transition(current, target)
    with pytest.raises(InvalidTransitionError):
        validate_transition(current, target)


def test_failed_is_reachable_from_every_non_terminal_state() -> None:
    for status in S:
        assert can_transition(status, S.FAILED) is (status not in TERMINAL_STATES)


def test_terminal_states_have_no_exits() -> None:
    for status in TERMINAL_STATES:
        assert is_terminal(status)
        assert TRANSITIONS[status] == frozenset()


def test_loop_states() -> None:
    assert is_in_loop("testing")
    assert is_in_loop(S.OPTIMIZING)
    assert not is_in_loop("generating")
    assert not is_in_loop(S.SETTLED)


def test_module_doc_has_no_backslash() -> None:
    assert "\\" not in state_module.__doc__
    assert "settled" in state_module.__doc__
