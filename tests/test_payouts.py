"""
Unit tests for the per-bounty payout ledger.
"""

from datetime import datetime, timezone

import pytest

from bounty_escrow.core.errors import ConflictError
from bounty_escrow.core.payouts import derive_ledger, initial_ledger, ledger_after_release, ledger_violations
from bounty_escrow.storage.db import read_connection, transaction
from bounty_escrow.storage.models import Bounty, BountyStatus, EscrowRecord, EscrowStatus, PaymentStatus
from bounty_escrow.storage.repository import get_bounty, insert_bounty, insert_escrow

NOW = datetime(2024, 3, 15, tzinfo=timezone.utc)


def _bounty(paid: int = 0, max_creators: int = 3, per_creator: int = 5000, **overrides) -> Bounty:
    fields = dict(
        id="bty_1",
        business_id="biz_1",
        title="Launch clips",
        status=BountyStatus.ACTIVE,
        payment_status=PaymentStatus.HELD_IN_ESCROW,
        per_creator_amount=per_creator,
        max_creators=max_creators,
        paid_creators_count=paid,
        total_paid_amount=per_creator * paid,
        remaining_budget=per_creator * (max_creators - paid),
        created_at=NOW,
    )
    fields.update(overrides)
    return Bounty(**fields)


class TestLedgerUpdates:
    """Test ledger arithmetic."""

    def test_initial_ledger(self):
        assert initial_ledger(5000, 3) == {
            "per_creator_amount": 5000,
            "max_creators": 3,
            "paid_creators_count": 0,
            "total_paid_amount": 0,
            "remaining_budget": 15000,
        }

    def test_release_increments(self):
        changes = ledger_after_release(_bounty(paid=1))
        assert changes == {
            "paid_creators_count": 2,
            "total_paid_amount": 10000,
            "remaining_budget": 5000,
        }

    def test_last_release_completes_payment(self):
        changes = ledger_after_release(_bounty(paid=2))
        assert changes["remaining_budget"] == 0
        assert changes["payment_status"] == PaymentStatus.COMPLETED

    def test_release_beyond_max_is_rejected(self):
        with pytest.raises(ConflictError, match="already paid all 3 creators"):
            ledger_after_release(_bounty(paid=3))


class TestLedgerInvariant:
    """Test invariant checking."""

    def test_consistent_ledger(self):
        assert ledger_violations(_bounty(paid=2)) == []

    def test_inconsistent_totals(self):
        broken = _bounty(paid=2, total_paid_amount=9999)
        violations = ledger_violations(broken)
        assert any("total_paid_amount" in v for v in violations)
        assert any("remaining_budget" in v for v in violations)


class TestDeriveLedger:
    """Test re-derivation from released records."""

    def test_counts_only_released_records(self, db_path):
        with transaction(db_path) as conn:
            insert_bounty(conn, _bounty(paid=0))
            for index, status in enumerate([EscrowStatus.RELEASED, EscrowStatus.RELEASED, EscrowStatus.READY_FOR_RELEASE]):
                insert_escrow(conn, EscrowRecord(
                    id=f"esc_{index}",
                    bounty_id="bty_1",
                    business_id="biz_1",
                    business_email="owner@brand.test",
                    amount=5000,
                    currency="usd",
                    status=status,
                    created_at=NOW,
                    per_creator_amount=5000,
                    creator_count=1,
                    creator_id=f"creator_{index}",
                    creator_earnings=5000,
                ))

        with read_connection(db_path) as conn:
            changes = derive_ledger(conn, get_bounty(conn, "bty_1"))

        assert changes == {
            "paid_creators_count": 2,
            "total_paid_amount": 10000,
            "remaining_budget": 5000,
        }

    def test_stale_completed_status_returns_to_held(self, db_path):
        with transaction(db_path) as conn:
            insert_bounty(conn, _bounty(paid=3, payment_status=PaymentStatus.COMPLETED))

        with read_connection(db_path) as conn:
            changes = derive_ledger(conn, get_bounty(conn, "bty_1"))

        assert changes["paid_creators_count"] == 0
        assert changes["payment_status"] == PaymentStatus.HELD_IN_ESCROW
