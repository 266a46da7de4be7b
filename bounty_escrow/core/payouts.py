"""
Per-bounty payout ledger.

A bounty funds ``max_creators`` slots of ``per_creator_amount`` each. The
ledger fields on the bounty always satisfy:

    total_paid_amount == per_creator_amount * paid_creators_count
    remaining_budget  == per_creator_amount * max_creators - total_paid_amount
    paid_creators_count <= max_creators

Releases update the ledger in the same transaction as the escrow status.
``derive_ledger`` rebuilds it from the released escrow records and is the
compensating pass when the two ever disagree.
"""

import sqlite3
from typing import Any, Dict, List

from bounty_escrow.storage.models import Bounty, EscrowStatus, PaymentStatus
from bounty_escrow.storage.repository import count_open_tranches, released_totals
from .errors import ConflictError


def initial_ledger(per_creator_amount: int, max_creators: int) -> Dict[str, int]:
    """Ledger fields of a freshly funded bounty."""
    return {
        "per_creator_amount": per_creator_amount,
        "max_creators": max_creators,
        "paid_creators_count": 0,
        "total_paid_amount": 0,
        "remaining_budget": per_creator_amount * max_creators,
    }


def ledger_after_release(bounty: Bounty) -> Dict[str, Any]:
    """Ledger changes for paying one more creator.

    Raises:
        ConflictError: If every slot is already paid
    """
    if bounty.paid_creators_count >= bounty.max_creators:
        raise ConflictError(
            EscrowStatus.READY_FOR_RELEASE.value, "release",
            f"bounty {bounty.id} already paid all {bounty.max_creators} creators",
        )
    paid = bounty.paid_creators_count + 1
    total = bounty.per_creator_amount * paid
    changes: Dict[str, Any] = {
        "paid_creators_count": paid,
        "total_paid_amount": total,
        "remaining_budget": bounty.total_budget - total,
    }
    if paid == bounty.max_creators:
        changes["payment_status"] = PaymentStatus.COMPLETED
    return changes


def derive_ledger(conn: sqlite3.Connection, bounty: Bounty) -> Dict[str, Any]:
    """Ledger fields recomputed from the bounty's released escrow records."""
    paid, _ = released_totals(conn, bounty.id)
    paid = min(paid, bounty.max_creators)
    total = bounty.per_creator_amount * paid
    changes: Dict[str, Any] = {
        "paid_creators_count": paid,
        "total_paid_amount": total,
        "remaining_budget": bounty.total_budget - total,
    }
    if paid == bounty.max_creators:
        changes["payment_status"] = PaymentStatus.COMPLETED
    elif bounty.payment_status == PaymentStatus.COMPLETED:
        # Fewer releases than recorded; the rest of the budget is still held
        changes["payment_status"] = PaymentStatus.HELD_IN_ESCROW
    return changes


def ledger_violations(bounty: Bounty) -> List[str]:
    """Invariants the bounty's ledger fields currently break."""
    violations = []
    expected_total = bounty.per_creator_amount * bounty.paid_creators_count
    if bounty.total_paid_amount != expected_total:
        violations.append(
            f"total_paid_amount {bounty.total_paid_amount} != {expected_total}"
        )
    expected_remaining = bounty.total_budget - bounty.total_paid_amount
    if bounty.remaining_budget != expected_remaining:
        violations.append(
            f"remaining_budget {bounty.remaining_budget} != {expected_remaining}"
        )
    if bounty.paid_creators_count > bounty.max_creators:
        violations.append(
            f"paid_creators_count {bounty.paid_creators_count} > max_creators {bounty.max_creators}"
        )
    return violations


def open_slots(conn: sqlite3.Connection, bounty: Bounty, funding_id: str) -> int:
    """Creator slots neither paid nor already allocated to a payout record."""
    return bounty.max_creators - bounty.paid_creators_count - count_open_tranches(conn, funding_id)
