"""
Payout eligibility for creators.

A creator can only be paid once their payout destination exists and the
gateway reports payouts as enabled. Those flags change asynchronously while
the creator completes onboarding, so every check pulls them from the gateway
and stores the result; a stored "enabled" flag is never trusted on its own.
"""

import logging
from datetime import datetime, timezone
from typing import Callable

from bounty_escrow.config.loader import DEFAULT_CONFIG, EscrowConfig
from bounty_escrow.storage.db import DEFAULT_DB_PATH, read_connection, transaction
from bounty_escrow.storage.models import PayoutEligibility
from bounty_escrow.storage.repository import (
    get_eligibility,
    get_eligibility_by_account,
    insert_eligibility,
    update_eligibility,
)
from .errors import NotFound, PreconditionFailed, ValidationError
from .gateway import GatewayClient

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _not_onboarded(creator_id: str) -> PayoutEligibility:
    return PayoutEligibility(
        creator_id=creator_id,
        has_payout_account=False,
        payouts_enabled=False,
        charges_enabled=False,
    )


class PayoutEligibilityGate:
    """Owns creators' payout destinations and their eligibility flags."""

    def __init__(
        self,
        gateway: GatewayClient,
        db_path: str = DEFAULT_DB_PATH,
        clock: Callable[[], datetime] = _utcnow,
        settings: EscrowConfig = DEFAULT_CONFIG.escrow,
    ):
        self.gateway = gateway
        self.db_path = db_path
        self.clock = clock
        self.settings = settings

    def onboard(self, creator_id: str, email: str, country: str) -> PayoutEligibility:
        """Create a payout destination for a creator.

        Idempotent: a creator who already has a destination gets its current
        snapshot back and no second account is created.

        Raises:
            ValidationError: If a required field is missing
            GatewayUnavailable: If the gateway cannot be reached
        """
        if not creator_id or not email or not country:
            raise ValidationError("creator_id, email and country are required to onboard")

        with read_connection(self.db_path) as conn:
            existing = get_eligibility(conn, creator_id)
        if existing is not None:
            return self.check_eligibility(creator_id)

        account_id = self.gateway.create_payout_account(email, country.upper())
        snapshot = PayoutEligibility(
            creator_id=creator_id,
            has_payout_account=True,
            payouts_enabled=False,
            charges_enabled=False,
            account_reference=account_id,
            updated_at=self.clock(),
        )
        with transaction(self.db_path) as conn:
            created = insert_eligibility(conn, snapshot, email, country.upper())
        if not created:
            # A concurrent onboarding stored its account first
            logger.warning(
                "Creator %s was onboarded concurrently; gateway account %s is unused",
                creator_id, account_id,
            )
            return self.check_eligibility(creator_id)

        logger.info("Created payout account %s for creator %s", account_id, creator_id)
        return snapshot

    def onboarding_link(self, creator_id: str) -> str:
        """URL where the creator finishes onboarding with the gateway.

        Raises:
            PreconditionFailed: If the creator has no payout account yet
            GatewayUnavailable: If the gateway cannot be reached
        """
        with read_connection(self.db_path) as conn:
            stored = get_eligibility(conn, creator_id)
        if stored is None:
            raise PreconditionFailed(
                "has_payout_account",
                "The creator has not set up a payout account yet.",
            )
        url = self.gateway.create_onboarding_link(
            stored.account_reference,
            self.settings.onboarding_refresh_url,
            self.settings.onboarding_return_url,
        )
        logger.info("Issued onboarding link for payout account %s", stored.account_reference)
        return url

    def check_eligibility(self, creator_id: str) -> PayoutEligibility:
        """Latest eligibility, pulled from the gateway.

        Raises:
            GatewayUnavailable: If the gateway cannot be reached
        """
        with read_connection(self.db_path) as conn:
            stored = get_eligibility(conn, creator_id)
        if stored is None:
            return _not_onboarded(creator_id)

        status = self.gateway.get_payout_account(stored.account_reference)
        now = self.clock()
        if (status.payouts_enabled, status.charges_enabled) != (stored.payouts_enabled, stored.charges_enabled):
            logger.info(
                "Payout account %s for creator %s changed: payouts_enabled=%s charges_enabled=%s",
                stored.account_reference, creator_id, status.payouts_enabled, status.charges_enabled,
            )
        with transaction(self.db_path) as conn:
            update_eligibility(conn, creator_id, status.payouts_enabled, status.charges_enabled, now)

        return PayoutEligibility(
            creator_id=creator_id,
            has_payout_account=True,
            payouts_enabled=status.payouts_enabled,
            charges_enabled=status.charges_enabled,
            account_reference=stored.account_reference,
            updated_at=now,
        )

    def require_payouts_enabled(self, creator_id: str) -> PayoutEligibility:
        """Eligibility snapshot of a creator who can receive funds right now.

        Raises:
            PreconditionFailed: Naming the condition that is not met
        """
        eligibility = self.check_eligibility(creator_id)
        if not eligibility.has_payout_account:
            raise PreconditionFailed(
                "has_payout_account",
                "The creator has not set up a payout account yet.",
            )
        if not eligibility.payouts_enabled:
            raise PreconditionFailed(
                "payouts_enabled",
                "The creator's payout account is not enabled for payouts yet. "
                "They need to finish onboarding with the payment provider.",
            )
        return eligibility

    def apply_account_update(
        self,
        account_reference: str,
        payouts_enabled: bool,
        charges_enabled: bool,
    ) -> PayoutEligibility:
        """Store flags pushed by the gateway's account-updated notification.

        Raises:
            NotFound: If no creator owns the account
        """
        with transaction(self.db_path) as conn:
            stored = get_eligibility_by_account(conn, account_reference)
            if stored is None:
                raise NotFound(f"No creator has payout account {account_reference}")
            now = self.clock()
            update_eligibility(conn, stored.creator_id, payouts_enabled, charges_enabled, now)

        logger.info(
            "Payout account %s updated by gateway: payouts_enabled=%s",
            account_reference, payouts_enabled,
        )
        return PayoutEligibility(
            creator_id=stored.creator_id,
            has_payout_account=True,
            payouts_enabled=payouts_enabled,
            charges_enabled=charges_enabled,
            account_reference=account_reference,
            updated_at=now,
        )
