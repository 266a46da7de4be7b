"""
Unit tests for storage layer.

Tests schema creation, conditional updates, usage counters and the outbox.
"""

import os
import sqlite3
import tempfile
from datetime import datetime, timezone

import pytest

from bounty_escrow.storage.db import get_connection, read_connection, transaction
from bounty_escrow.storage.models import (
    DispatchOperation,
    EscrowRecord,
    EscrowStatus,
    OutboxEntry,
    OutboxState,
    SubscriptionUsage,
)
from bounty_escrow.storage.repository import (
    complete_outbox,
    delete_outbox,
    get_escrow,
    get_escrow_by_session,
    get_outbox,
    get_usage_counters,
    increment_usage,
    initialize_schema,
    insert_escrow,
    insert_outbox,
    list_escrows,
    list_outbox,
    update_escrow,
)

NOW = datetime(2024, 3, 15, 12, 0, tzinfo=timezone.utc)


def _record(escrow_id: str = "esc_1", **overrides) -> EscrowRecord:
    fields = dict(
        id=escrow_id,
        business_id="biz_1",
        business_email="owner@brand.test",
        amount=10500,
        currency="usd",
        status=EscrowStatus.PENDING,
        created_at=NOW,
        per_creator_amount=10000,
        creator_count=1,
        pending_bounty_payload={"title": "Review"},
    )
    fields.update(overrides)
    return EscrowRecord(**fields)


class TestStorageSchema:
    """Test database schema creation and structure."""

    def test_schema_creation(self):
        """Verify tables are created and the schema is re-runnable."""
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "test.db")
            initialize_schema(db_path)
            initialize_schema(db_path)

            conn = get_connection(db_path)
            try:
                cursor = conn.execute("SELECT name FROM sqlite_master WHERE type='table' ORDER BY name")
                tables = [row[0] for row in cursor.fetchall()]
                assert tables == [
                    "bounty", "escrow_outbox", "escrow_record",
                    "payout_eligibility", "subscription_usage",
                ]
            finally:
                conn.close()

    def test_amount_must_be_positive(self, db_path):
        with pytest.raises(sqlite3.IntegrityError):
            with transaction(db_path) as conn:
                insert_escrow(conn, _record(amount=0))

    def test_payload_and_bounty_never_both_set(self, db_path):
        with pytest.raises(sqlite3.IntegrityError):
            with transaction(db_path) as conn:
                insert_escrow(conn, _record(bounty_id="bty_1"))


class TestEscrowRecords:
    """Test escrow record persistence."""

    def test_round_trip(self, db_path):
        with transaction(db_path) as conn:
            insert_escrow(conn, _record(gateway_session_id="cs_1"))

        with read_connection(db_path) as conn:
            stored = get_escrow(conn, "esc_1")
            by_session = get_escrow_by_session(conn, "cs_1")

        assert stored == by_session
        assert stored.status == EscrowStatus.PENDING
        assert stored.pending_bounty_payload == {"title": "Review"}
        assert stored.created_at == NOW
        assert stored.version == 1
        assert stored.is_funding

    def test_unknown_id_returns_none(self, db_path):
        with read_connection(db_path) as conn:
            assert get_escrow(conn, "missing") is None
            assert get_escrow_by_session(conn, "cs_missing") is None

    def test_conditional_update_applies_once(self, db_path):
        """A stale status or version makes the update a no-op."""
        with transaction(db_path) as conn:
            insert_escrow(conn, _record())

        with transaction(db_path) as conn:
            assert update_escrow(conn, "esc_1", EscrowStatus.PENDING, 1, status=EscrowStatus.FAILED,
                                 failure_reason="card declined")
        with transaction(db_path) as conn:
            assert not update_escrow(conn, "esc_1", EscrowStatus.PENDING, 1, status=EscrowStatus.HELD_IN_ESCROW)
            assert not update_escrow(conn, "esc_1", EscrowStatus.FAILED, 1, failure_reason="other")

        with read_connection(db_path) as conn:
            stored = get_escrow(conn, "esc_1")
        assert stored.status == EscrowStatus.FAILED
        assert stored.failure_reason == "card declined"
        assert stored.version == 2

    def test_update_rejects_unknown_columns(self, db_path):
        with transaction(db_path) as conn:
            insert_escrow(conn, _record())
            with pytest.raises(ValueError, match="Cannot update columns"):
                update_escrow(conn, "esc_1", EscrowStatus.PENDING, 1, amount=1)

    def test_list_filters(self, db_path):
        with transaction(db_path) as conn:
            insert_escrow(conn, _record("esc_1"))
            insert_escrow(conn, _record("esc_2", business_id="biz_2"))
            insert_escrow(conn, _record("esc_3", status=EscrowStatus.FAILED))

        with read_connection(db_path) as conn:
            assert [r.id for r in list_escrows(conn, business_id="biz_1")] == ["esc_1", "esc_3"]
            assert [r.id for r in list_escrows(conn, status=EscrowStatus.FAILED)] == ["esc_3"]
            assert len(list_escrows(conn)) == 3

    def test_rollback_on_error(self, db_path):
        """A failing transaction leaves nothing behind."""
        with pytest.raises(RuntimeError):
            with transaction(db_path) as conn:
                insert_escrow(conn, _record())
                raise RuntimeError("boom")

        with read_connection(db_path) as conn:
            assert get_escrow(conn, "esc_1") is None


class TestUsageCounters:
    """Test per-period usage counters."""

    def test_absent_period_reads_as_zero(self, db_path):
        with read_connection(db_path) as conn:
            assert get_usage_counters(conn, "biz_1", "2024-03") == {
                "applications_used": 0, "bounties_created": 0, "total_earnings": 0,
            }

    def test_increment_creates_and_counts(self, db_path):
        with transaction(db_path) as conn:
            assert increment_usage(conn, "biz_1", "2024-03", "bounties_created")
            assert increment_usage(conn, "biz_1", "2024-03", "bounties_created")
            assert increment_usage(conn, "biz_1", "2024-03", "total_earnings", amount=5000)

        with read_connection(db_path) as conn:
            counters = get_usage_counters(conn, "biz_1", "2024-03")
        assert counters["bounties_created"] == 2
        assert counters["total_earnings"] == 5000

    def test_increment_respects_limit(self, db_path):
        with transaction(db_path) as conn:
            assert increment_usage(conn, "u", "2024-03", "applications_used", limit=1)
            assert not increment_usage(conn, "u", "2024-03", "applications_used", limit=1)
            assert increment_usage(conn, "u", "2024-03", "applications_used", limit=-1)

        with read_connection(db_path) as conn:
            assert get_usage_counters(conn, "u", "2024-03")["applications_used"] == 2

    def test_counters_never_decrease(self, db_path):
        with transaction(db_path) as conn:
            with pytest.raises(ValueError, match="never decrease"):
                increment_usage(conn, "u", "2024-03", "total_earnings", amount=-1)

    def test_unknown_counter(self, db_path):
        with transaction(db_path) as conn:
            with pytest.raises(ValueError, match="Unknown usage counter"):
                increment_usage(conn, "u", "2024-03", "version")

    def test_remaining_properties(self):
        usage = SubscriptionUsage("u", "2024-03", 2, 3, 5, -1)
        assert usage.applications_remaining == 1
        assert usage.bounties_remaining == -1


class TestOutbox:
    """Test the single-dispatch outbox."""

    def _entry(self, escrow_id: str = "esc_1", key: str = "transfer-abc") -> OutboxEntry:
        return OutboxEntry(
            escrow_id=escrow_id,
            operation=DispatchOperation.TRANSFER,
            idempotency_key=key,
            amount=10000,
            state=OutboxState.DISPATCHING,
            created_at=NOW,
        )

    def test_second_claim_is_rejected(self, db_path):
        with transaction(db_path) as conn:
            insert_escrow(conn, _record())
            insert_outbox(conn, self._entry())

        with pytest.raises(sqlite3.IntegrityError):
            with transaction(db_path) as conn:
                insert_outbox(conn, self._entry(key="transfer-other"))

    def test_complete_and_list(self, db_path):
        with transaction(db_path) as conn:
            insert_escrow(conn, _record())
            insert_outbox(conn, self._entry())

        with read_connection(db_path) as conn:
            assert [e.escrow_id for e in list_outbox(conn, OutboxState.DISPATCHING)] == ["esc_1"]

        with transaction(db_path) as conn:
            assert complete_outbox(conn, "esc_1", "tr_1", NOW)
            assert not complete_outbox(conn, "esc_1", "tr_2", NOW)

        with read_connection(db_path) as conn:
            entry = get_outbox(conn, "esc_1")
            assert list_outbox(conn, OutboxState.DISPATCHING) == []
        assert entry.state == OutboxState.COMPLETED
        assert entry.gateway_reference == "tr_1"

    def test_completed_claim_is_never_deleted(self, db_path):
        with transaction(db_path) as conn:
            insert_escrow(conn, _record())
            insert_outbox(conn, self._entry())
            complete_outbox(conn, "esc_1", "tr_1", NOW)
            delete_outbox(conn, "esc_1")

        with read_connection(db_path) as conn:
            assert get_outbox(conn, "esc_1") is not None
