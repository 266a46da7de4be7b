"""
Escrow record state machine.

Initial state is ``pending``; ``released``, ``refunded`` and ``failed`` are
terminal. Any (state, event) pair missing from ``TRANSITIONS`` is rejected.
"""

from enum import Enum
from typing import Dict, Tuple

from bounty_escrow.storage.models import EscrowStatus
from .errors import ConflictError


class EscrowEvent(str, Enum):
    GATEWAY_CONFIRMED = "gateway_confirmed"
    MARK_READY_FOR_RELEASE = "mark_ready_for_release"
    RELEASE = "release"
    REFUND = "refund"
    GATEWAY_FAILED = "gateway_failed"


TERMINAL_STATES = frozenset({EscrowStatus.RELEASED, EscrowStatus.REFUNDED, EscrowStatus.FAILED})

TRANSITIONS: Dict[Tuple[EscrowStatus, EscrowEvent], EscrowStatus] = {
    (EscrowStatus.PENDING, EscrowEvent.GATEWAY_CONFIRMED): EscrowStatus.HELD_IN_ESCROW,
    (EscrowStatus.HELD_IN_ESCROW, EscrowEvent.MARK_READY_FOR_RELEASE): EscrowStatus.READY_FOR_RELEASE,
    (EscrowStatus.READY_FOR_RELEASE, EscrowEvent.RELEASE): EscrowStatus.RELEASED,
    (EscrowStatus.PENDING, EscrowEvent.REFUND): EscrowStatus.REFUNDED,
    (EscrowStatus.HELD_IN_ESCROW, EscrowEvent.REFUND): EscrowStatus.REFUNDED,
    (EscrowStatus.PENDING, EscrowEvent.GATEWAY_FAILED): EscrowStatus.FAILED,
    (EscrowStatus.HELD_IN_ESCROW, EscrowEvent.GATEWAY_FAILED): EscrowStatus.FAILED,
    (EscrowStatus.READY_FOR_RELEASE, EscrowEvent.GATEWAY_FAILED): EscrowStatus.FAILED,
}


def is_terminal(status: EscrowStatus) -> bool:
    return status in TERMINAL_STATES


def next_status(current: EscrowStatus, event: EscrowEvent) -> EscrowStatus:
    """Target state for ``event`` applied in ``current``.

    Raises:
        ConflictError: If the transition is not allowed
    """
    current = EscrowStatus(current)
    event = EscrowEvent(event)
    target = TRANSITIONS.get((current, event))
    if target is None:
        detail = "escrow is in a terminal state" if is_terminal(current) else None
        raise ConflictError(current.value, event.value, detail)
    return target
