"""
Subscription usage quotas.

Free-tier users may only apply to, or create, a limited number of bounties per
billing period. Counters live in one row per (user, period); a new calendar
month simply starts a new row, so nothing ever resets counters.

Limits are not stored with the counters. They are derived from the user's
tier whenever usage is read, so an upgrade takes effect immediately without
touching the counters.

Failure policy: if the tier cannot be resolved the ledger denies the action.
"""

import logging
import sqlite3
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional

from bounty_escrow.config.loader import DEFAULT_CONFIG, QuotaConfig, TierLimits
from bounty_escrow.storage.db import DEFAULT_DB_PATH, read_connection, transaction
from bounty_escrow.storage.models import SubscriptionUsage, Tier
from bounty_escrow.storage.repository import get_usage_counters, increment_usage
from .errors import QuotaExceeded

logger = logging.getLogger(__name__)

UNLIMITED = -1

TierResolver = Callable[[str], Tier]


class QuotaAction(str, Enum):
    """Actions gated by the subscription tier."""
    APPLY = "apply"
    CREATE_BOUNTY = "create_bounty"


# Counter column and TierLimits attribute per action
_COUNTERS = {
    QuotaAction.APPLY: ("applications_used", "applications"),
    QuotaAction.CREATE_BOUNTY: ("bounties_created", "bounties"),
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def billing_period(now: datetime) -> str:
    """Billing period key (calendar month, UTC) for a point in time."""
    if now.tzinfo is not None:
        now = now.astimezone(timezone.utc)
    return now.strftime("%Y-%m")


def within_limit(used: int, limit: int) -> bool:
    """True if one more action fits under ``limit``."""
    return limit == UNLIMITED or used < limit


class QuotaLedger:
    """Tracks per-period usage against tier-derived limits."""

    def __init__(
        self,
        tier_resolver: TierResolver,
        db_path: str = DEFAULT_DB_PATH,
        quota: QuotaConfig = DEFAULT_CONFIG.quota,
        clock: Callable[[], datetime] = utcnow,
    ):
        """Initialize the ledger.

        Args:
            tier_resolver: Looks up a user's current subscription tier
            db_path: Path to SQLite database file
            quota: Limits per tier
            clock: Source of the current time, used for the period key
        """
        self.tier_resolver = tier_resolver
        self.db_path = db_path
        self.quota = quota
        self.clock = clock

    def limits_for(self, tier: Tier) -> TierLimits:
        return self.quota.premium if tier == Tier.PREMIUM else self.quota.free

    def current_period(self) -> str:
        return billing_period(self.clock())

    def _resolve_tier(self, user_id: str) -> Optional[Tier]:
        """The user's tier, or None when the lookup fails."""
        try:
            return Tier(self.tier_resolver(user_id))
        except Exception:
            logger.warning("Tier lookup failed for user %s; denying quota", user_id, exc_info=True)
            return None

    def get_usage(self, user_id: str) -> SubscriptionUsage:
        """Usage for the current period with limits from the user's tier.

        Raises:
            Whatever the tier resolver raises; reads do not fail closed
        """
        limits = self.limits_for(Tier(self.tier_resolver(user_id)))
        period = self.current_period()
        with read_connection(self.db_path) as conn:
            counters = get_usage_counters(conn, user_id, period)
        return SubscriptionUsage(
            user_id=user_id,
            period=period,
            applications_used=counters["applications_used"],
            applications_limit=limits.applications,
            bounties_created=counters["bounties_created"],
            bounties_limit=limits.bounties,
            total_earnings=counters["total_earnings"],
        )

    def can_act(self, user_id: str, action: QuotaAction) -> bool:
        """Whether the user may perform ``action`` now.

        Returns False when the tier cannot be resolved.
        """
        tier = self._resolve_tier(user_id)
        if tier is None:
            return False

        column, limit_name = _COUNTERS[QuotaAction(action)]
        limit = getattr(self.limits_for(tier), limit_name)
        if limit == UNLIMITED:
            return True

        with read_connection(self.db_path) as conn:
            used = get_usage_counters(conn, user_id, self.current_period())[column]
        return within_limit(used, limit)

    def record_usage(self, user_id: str, action: QuotaAction) -> None:
        """Count one ``action`` for the user in the current period."""
        with transaction(self.db_path) as conn:
            self.record_usage_in(conn, user_id, action)

    def record_usage_in(self, conn: sqlite3.Connection, user_id: str, action: QuotaAction) -> None:
        """Count one ``action`` inside a caller's transaction."""
        column, _ = _COUNTERS[QuotaAction(action)]
        increment_usage(conn, user_id, self.current_period(), column)

    def consume(self, user_id: str, action: QuotaAction) -> None:
        """Check the limit and count the action in one atomic step.

        Raises:
            QuotaExceeded: If the limit is reached or the tier is unknown
        """
        with transaction(self.db_path) as conn:
            self.consume_in(conn, user_id, action)

    def consume_in(self, conn: sqlite3.Connection, user_id: str, action: QuotaAction) -> None:
        """Like :meth:`consume`, inside a caller's transaction.

        The raise rolls back everything the caller wrote in that transaction.
        """
        action = QuotaAction(action)
        tier = self._resolve_tier(user_id)
        if tier is None:
            raise QuotaExceeded(f"Tier unavailable for user {user_id}; {action.value} denied")

        column, limit_name = _COUNTERS[action]
        limit = getattr(self.limits_for(tier), limit_name)
        if not increment_usage(conn, user_id, self.current_period(), column, limit=limit):
            raise QuotaExceeded(f"User {user_id} reached the {tier.value} limit of {limit} for {action.value}")

    def add_earnings_in(self, conn: sqlite3.Connection, user_id: str, amount: int) -> None:
        """Add released earnings (minor units) inside a caller's transaction."""
        increment_usage(conn, user_id, self.current_period(), "total_earnings", amount=amount)
