"""
Campaign state machine.

    pending -> analyzing -> generating -> testing -> optimizing (loop) -> settled
                                            +------------------------------^

``failed`` is reachable from every non-terminal state. ``settled`` and
``failed`` are terminal.
"""

from __future__ import annotations

from thumbpilot.common.exceptions import InvalidTransitionError
from thumbpilot.models import Campaign, CampaignStatus

TERMINAL_STATES = frozenset({CampaignStatus.SETTLED, CampaignStatus.FAILED})

# Campaigns the scheduler iterates on
LOOP_STATES = frozenset({CampaignStatus.TESTING, CampaignStatus.OPTIMIZING})

TRANSITIONS: dict[CampaignStatus, frozenset[CampaignStatus]] = {
    CampaignStatus.PENDING: frozenset({CampaignStatus.ANALYZING}),
    CampaignStatus.ANALYZING: frozenset({CampaignStatus.GENERATING}),
    CampaignStatus.GENERATING: frozenset({CampaignStatus.TESTING}),
    CampaignStatus.TESTING: frozenset({CampaignStatus.OPTIMIZING, CampaignStatus.SETTLED}),
    CampaignStatus.OPTIMIZING: frozenset({CampaignStatus.OPTIMIZING, CampaignStatus.SETTLED}),
    CampaignStatus.SETTLED: frozenset(),
    CampaignStatus.FAILED: frozenset(),
}


def can_transition(current: CampaignStatus, target: CampaignStatus) -> bool:
    """Check a transition against the table."""
    if target is CampaignStatus.FAILED:
        return current not in TERMINAL_STATES
    return target in TRANSITIONS[current]


def validate_transition(current: CampaignStatus | str, target: CampaignStatus | str) -> CampaignStatus:
    """
    Validate ``current -> target``.

    Returns:
        The target status as an enum.

    Raises:
        InvalidTransitionError: if the table does not allow the move.
    """
    current = CampaignStatus(current)
    target = CampaignStatus(target)
    if not can_transition(current, target):
        raise InvalidTransitionError(
            f"Illegal campaign transition {current.value} -> {target.value}",
            details={"from": current.value, "to": target.value},
        )
    return target


def transition_fields(campaign: Campaign, target: CampaignStatus) -> dict[str, str]:
    """Partial-update fields for moving ``campaign`` to ``target``."""
    return {"status": validate_transition(campaign.status, target).value}


def is_terminal(status: CampaignStatus | str) -> bool:
    return CampaignStatus(status) in TERMINAL_STATES


def is_in_loop(status: CampaignStatus | str) -> bool:
    return CampaignStatus(status) in LOOP_STATES
