"""
Unit tests for subscription quotas.

Tests tier-derived limits, period rollover and the fail-closed policy.
"""

import threading
from datetime import datetime, timedelta, timezone

import pytest

from bounty_escrow.config.loader import QuotaConfig, TierLimits
from bounty_escrow.core.errors import QuotaExceeded
from bounty_escrow.core.quota import QuotaAction, QuotaLedger, billing_period, within_limit
from bounty_escrow.storage.db import transaction
from bounty_escrow.storage.models import Tier


class TestBillingPeriod:
    """Test billing period keys."""

    def test_calendar_month(self):
        assert billing_period(datetime(2024, 3, 31, 23, 59, tzinfo=timezone.utc)) == "2024-03"

    def test_converted_to_utc(self):
        tokyo = timezone(timedelta(hours=9))
        assert billing_period(datetime(2024, 4, 1, 5, 0, tzinfo=tokyo)) == "2024-03"

    def test_within_limit(self):
        assert within_limit(2, 3)
        assert not within_limit(3, 3)
        assert within_limit(10_000, -1)


class TestCanAct:
    """Test quota checks."""

    def test_free_tier_limit(self, quota):
        """Three applications are allowed, the fourth is not."""
        for _ in range(3):
            assert quota.can_act("creator_1", QuotaAction.APPLY)
            quota.record_usage("creator_1", QuotaAction.APPLY)

        assert not quota.can_act("creator_1", QuotaAction.APPLY)
        assert quota.get_usage("creator_1").applications_used == 3

    def test_upgrade_lifts_limit_without_resetting(self, quota, tiers):
        """After an upgrade the same counters allow more actions."""
        for _ in range(3):
            quota.record_usage("creator_1", QuotaAction.APPLY)
        assert not quota.can_act("creator_1", QuotaAction.APPLY)

        tiers["creator_1"] = Tier.PREMIUM

        assert quota.can_act("creator_1", QuotaAction.APPLY)
        usage = quota.get_usage("creator_1")
        assert usage.applications_used == 3
        assert usage.applications_limit == -1
        assert usage.applications_remaining == -1

    def test_actions_are_counted_separately(self, quota):
        quota.record_usage("biz_1", QuotaAction.CREATE_BOUNTY)
        quota.record_usage("biz_1", QuotaAction.CREATE_BOUNTY)

        assert not quota.can_act("biz_1", QuotaAction.CREATE_BOUNTY)
        assert quota.can_act("biz_1", QuotaAction.APPLY)

    def test_action_given_as_string(self, quota):
        assert quota.can_act("biz_1", "create_bounty")

    def test_new_period_starts_fresh(self, quota, clock):
        quota.record_usage("biz_1", QuotaAction.CREATE_BOUNTY)
        quota.record_usage("biz_1", QuotaAction.CREATE_BOUNTY)
        assert not quota.can_act("biz_1", QuotaAction.CREATE_BOUNTY)

        clock.advance(days=20)

        assert quota.current_period() == "2024-04"
        assert quota.can_act("biz_1", QuotaAction.CREATE_BOUNTY)
        assert quota.get_usage("biz_1").bounties_created == 0


class TestFailClosed:
    """Test behavior when the tier lookup fails."""

    def test_unknown_user_is_denied(self, quota):
        assert not quota.can_act("stranger", QuotaAction.APPLY)

    def test_resolver_error_is_denied(self, db_path, clock):
        def broken(user_id):
            raise ConnectionError("subscription service down")

        ledger = QuotaLedger(broken, db_path, clock=clock)

        assert not ledger.can_act("biz_1", QuotaAction.CREATE_BOUNTY)
        with pytest.raises(QuotaExceeded, match="Tier unavailable"):
            ledger.consume("biz_1", QuotaAction.CREATE_BOUNTY)

    def test_invalid_tier_value_is_denied(self, db_path, clock):
        ledger = QuotaLedger(lambda user_id: "platinum", db_path, clock=clock)
        assert not ledger.can_act("biz_1", QuotaAction.APPLY)

    def test_usage_read_propagates_resolver_error(self, quota):
        with pytest.raises(KeyError):
            quota.get_usage("stranger")


class TestConsume:
    """Test atomic check-and-increment."""

    def test_consume_until_exhausted(self, quota):
        quota.consume("biz_1", QuotaAction.CREATE_BOUNTY)
        quota.consume("biz_1", QuotaAction.CREATE_BOUNTY)

        with pytest.raises(QuotaExceeded, match="free limit of 2"):
            quota.consume("biz_1", QuotaAction.CREATE_BOUNTY)
        assert quota.get_usage("biz_1").bounties_created == 2

    def test_consume_in_rolls_back_caller_writes(self, quota, db_path):
        quota.consume("biz_1", QuotaAction.CREATE_BOUNTY)
        quota.consume("biz_1", QuotaAction.CREATE_BOUNTY)

        with pytest.raises(QuotaExceeded):
            with transaction(db_path) as conn:
                quota.add_earnings_in(conn, "biz_1", 5000)
                quota.consume_in(conn, "biz_1", QuotaAction.CREATE_BOUNTY)

        usage = quota.get_usage("biz_1")
        assert usage.bounties_created == 2
        assert usage.total_earnings == 0

    def test_concurrent_consumers_never_exceed_limit(self, db_path, clock):
        config = QuotaConfig(free=TierLimits(applications=5, bounties=0))
        ledger = QuotaLedger(lambda user_id: Tier.FREE, db_path, config, clock)
        results = []
        lock = threading.Lock()

        def apply():
            try:
                ledger.consume("creator_9", QuotaAction.APPLY)
                outcome = True
            except QuotaExceeded:
                outcome = False
            with lock:
                results.append(outcome)

        threads = [threading.Thread(target=apply) for _ in range(12)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert results.count(True) == 5
        assert ledger.get_usage("creator_9").applications_used == 5

    def test_premium_is_unlimited(self, quota, tiers):
        tiers["biz_1"] = Tier.PREMIUM
        for _ in range(10):
            quota.consume("biz_1", QuotaAction.CREATE_BOUNTY)
        assert quota.get_usage("biz_1").bounties_created == 10


class TestEarnings:
    def test_earnings_accumulate(self, quota, db_path):
        with transaction(db_path) as conn:
            quota.add_earnings_in(conn, "creator_1", 5000)
            quota.add_earnings_in(conn, "creator_1", 2500)
        assert quota.get_usage("creator_1").total_earnings == 7500
