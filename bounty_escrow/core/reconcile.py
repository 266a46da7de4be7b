"""
Reconciliation passes.

Recovery paths for the engine's durable state. The engine has no scheduler
of its own; these are invoked by an operator or external job (see the
``reconcile``, ``ledger`` and ``overdue`` CLI commands) and are safe to run
repeatedly.

Passes:
1. retry_dispatches - finish transfers/refunds whose outcome was unknown
2. rederive_payout_ledger - rebuild a bounty's ledger from released records
3. overdue_holds - list funds held past their hold period
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional

from bounty_escrow.storage.db import DEFAULT_DB_PATH, read_connection, transaction
from bounty_escrow.storage.models import (
    Bounty,
    DispatchOperation,
    EscrowRecord,
    EscrowStatus,
    OutboxEntry,
    OutboxState,
)
from bounty_escrow.storage import repository as repo
from . import payouts
from .errors import EscrowError, GatewayDeclined, GatewayUnavailable, NotFound
from .lifecycle import EscrowEngine
from .quota import utcnow

logger = logging.getLogger(__name__)


class RetryResult(Enum):
    COMPLETED = "completed"
    UNAVAILABLE = "unavailable"
    DECLINED = "declined"
    ERROR = "error"


@dataclass(frozen=True)
class RetryOutcome:
    escrow_id: str
    operation: DispatchOperation
    result: RetryResult
    gateway_reference: Optional[str] = None
    detail: Optional[str] = None


@dataclass(frozen=True)
class LedgerCheck:
    bounty_id: str
    violations: List[str]


class Reconciler:
    """Runs recovery passes against the engine database.

    Ledger and hold passes only read and write the database. Retrying
    dispatches re-issues gateway calls and needs ``engine``.
    """

    def __init__(
        self,
        db_path: str = DEFAULT_DB_PATH,
        engine: Optional[EscrowEngine] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db_path = db_path
        self.engine = engine
        self.clock = clock

    def rederive_payout_ledger(self, bounty_id: str) -> Bounty:
        """Recompute a bounty's payout ledger from its released records.

        Raises:
            NotFound: Unknown bounty
        """
        with transaction(self.db_path) as conn:
            bounty = repo.get_bounty(conn, bounty_id)
            if bounty is None:
                raise NotFound(f"Bounty {bounty_id} not found")
            changes = payouts.derive_ledger(conn, bounty)
            current = {name: getattr(bounty, name) for name in changes}
            if current != changes:
                repo.update_bounty(conn, bounty_id, bounty.version, **changes)
                logger.warning(
                    "Payout ledger of bounty %s re-derived: %s -> %s",
                    bounty_id, current, changes,
                )
            updated = repo.get_bounty(conn, bounty_id)
        return updated

    def check_ledgers(self) -> List[LedgerCheck]:
        """Bounties whose stored ledger breaks its invariants."""
        with read_connection(self.db_path) as conn:
            bounties = repo.list_bounties(conn)
        checks = []
        for bounty in bounties:
            violations = payouts.ledger_violations(bounty)
            if violations:
                checks.append(LedgerCheck(bounty_id=bounty.id, violations=violations))
        return checks

    def pending_dispatches(self) -> List[OutboxEntry]:
        with read_connection(self.db_path) as conn:
            return repo.list_outbox(conn, state=OutboxState.DISPATCHING)

    def retry_dispatches(self) -> List[RetryOutcome]:
        """Re-issue every unfinished transfer or refund with its original key.

        The gateway deduplicates on the idempotency key, so a call that did
        go through the first time returns the same reference and is only
        recorded locally.

        Raises:
            ValueError: If the reconciler was built without an engine
        """
        if self.engine is None:
            raise ValueError("retry_dispatches requires an EscrowEngine")
        outcomes = []
        for entry in self.pending_dispatches():
            outcomes.append(self._retry(entry))
        return outcomes

    def _retry(self, entry: OutboxEntry) -> RetryOutcome:
        record = self.engine.get_escrow(entry.escrow_id)
        try:
            if entry.operation == DispatchOperation.TRANSFER:
                eligibility = self.engine.eligibility.check_eligibility(record.creator_id)
                reference = self.engine.gateway.transfer(
                    eligibility.account_reference,
                    entry.amount,
                    record.currency,
                    record.parent_id or record.id,
                    entry.idempotency_key,
                )
                self.engine.finalize_transfer(record.id, reference)
            else:
                reference = self.engine.gateway.refund(
                    record.gateway_payment_reference_id,
                    entry.reason,
                    entry.amount,
                    entry.idempotency_key,
                )
                self.engine.finalize_refund(record.id, reference, entry.reason)
        except GatewayUnavailable as exc:
            with transaction(self.db_path) as conn:
                repo.record_outbox_error(conn, entry.escrow_id, str(exc))
            logger.warning("Retry of %s for escrow %s still unavailable", entry.idempotency_key, entry.escrow_id)
            return RetryOutcome(entry.escrow_id, entry.operation, RetryResult.UNAVAILABLE, detail=str(exc))
        except GatewayDeclined as exc:
            # Nothing moved; release the claim so the operation can be requested again
            with transaction(self.db_path) as conn:
                repo.delete_outbox(conn, entry.escrow_id)
            logger.warning("Gateway declined retry of %s for escrow %s: %s", entry.idempotency_key, entry.escrow_id, exc)
            return RetryOutcome(entry.escrow_id, entry.operation, RetryResult.DECLINED, detail=str(exc))
        except EscrowError as exc:
            logger.error("Retry of %s for escrow %s failed: %s", entry.idempotency_key, entry.escrow_id, exc)
            return RetryOutcome(entry.escrow_id, entry.operation, RetryResult.ERROR, detail=str(exc))

        logger.info("Reconciled %s for escrow %s (%s)", entry.operation.value, entry.escrow_id, reference)
        return RetryOutcome(entry.escrow_id, entry.operation, RetryResult.COMPLETED, gateway_reference=reference)

    def overdue_holds(self, now: Optional[datetime] = None) -> List[EscrowRecord]:
        """Funding records still held after their hold period ended."""
        now = now or self.clock()
        with read_connection(self.db_path) as conn:
            held = repo.list_escrows(conn, status=EscrowStatus.HELD_IN_ESCROW)
        return [
            record for record in held
            if record.is_funding and record.held_until is not None and record.held_until < now
        ]
