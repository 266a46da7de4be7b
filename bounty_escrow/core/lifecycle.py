"""
Escrow lifecycle engine.

Drives an escrow record through its state machine in response to funding
requests, gateway notifications, releases and refunds, keeping the linked
bounty's payment fields and payout ledger in step.

Every transition is one ``transaction``: the escrow status, the bounty
fields, the payout ledger and usage counters commit together or not at all.

Money movement (transfer or refund) happens outside the transaction in
three steps:
1. Claim - insert the record's single outbox row (unique per record). This
   is the mutual-exclusion point; a concurrent claimant gets ConflictError.
2. Dispatch - call the gateway with an idempotency key derived from the
   record. Before this point a failure or cancellation drops the claim and
   leaves no trace.
3. Finalize - write the new status, ledger and outbox completion.
If the gateway outcome is unknown (timeout) or finalizing fails, the outbox
row stays ``dispatching`` and ``Reconciler.retry_dispatches`` finishes the
job with the same idempotency key.
"""

import hashlib
import logging
import sqlite3
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

from bounty_escrow.config.loader import DEFAULT_CONFIG, EngineConfig
from bounty_escrow.storage.db import DEFAULT_DB_PATH, read_connection, transaction
from bounty_escrow.storage.models import (
    Bounty,
    BountyStatus,
    Caller,
    DispatchOperation,
    EscrowRecord,
    EscrowStatus,
    OutboxEntry,
    OutboxState,
    PaymentStatus,
    Role,
)
from bounty_escrow.storage import repository as repo
from . import payouts
from .eligibility import PayoutEligibilityGate
from .errors import (
    ConflictError,
    Forbidden,
    GatewayDeclined,
    GatewayUnavailable,
    NotFound,
    OperationCancelled,
    ValidationError,
)
from .fees import FeeBreakdown, business_total, calculate_fees, from_minor_units, to_minor_units
from .gateway import CallbackEvent, GatewayClient, SessionOutcome
from .quota import QuotaAction, QuotaLedger, utcnow
from .states import EscrowEvent, next_status

logger = logging.getLogger(__name__)

DEFAULT_REFUND_REASON = "requested_by_customer"


@dataclass(frozen=True)
class FundingResult:
    escrow_id: str
    redirect_url: str
    session_id: str
    fees: FeeBreakdown


@dataclass(frozen=True)
class ReleaseResult:
    transfer_id: str
    amount_released: Decimal
    escrow: EscrowRecord


@dataclass(frozen=True)
class RefundResult:
    refund_id: Optional[str]
    amount_refunded: Decimal
    escrow: EscrowRecord


def idempotency_key(escrow_id: str, operation: DispatchOperation) -> str:
    """Stable key for the single outbound call of an escrow record."""
    data = f"{escrow_id}-{operation.value}"
    return f"{operation.value}-{hashlib.sha256(data.encode()).hexdigest()[:32]}"


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


class EscrowEngine:
    """Owns escrow record status and the bounty payment fields it drives."""

    def __init__(
        self,
        gateway: GatewayClient,
        quota: QuotaLedger,
        eligibility: PayoutEligibilityGate,
        db_path: str = DEFAULT_DB_PATH,
        config: EngineConfig = DEFAULT_CONFIG,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.gateway = gateway
        self.quota = quota
        self.eligibility = eligibility
        self.db_path = db_path
        self.config = config
        self.clock = clock

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_escrow(self, escrow_id: str) -> EscrowRecord:
        with read_connection(self.db_path) as conn:
            record = repo.get_escrow(conn, escrow_id)
        if record is None:
            raise NotFound(f"Escrow {escrow_id} not found")
        return record

    def get_bounty(self, bounty_id: str) -> Bounty:
        with read_connection(self.db_path) as conn:
            bounty = repo.get_bounty(conn, bounty_id)
        if bounty is None:
            raise NotFound(f"Bounty {bounty_id} not found")
        return bounty

    def list_escrows(self, business_id: str) -> List[EscrowRecord]:
        with read_connection(self.db_path) as conn:
            return repo.list_escrows(conn, business_id=business_id)

    # ------------------------------------------------------------------
    # Quota pass-through
    # ------------------------------------------------------------------

    def check_quota(self, user_id: str, action: QuotaAction) -> bool:
        return self.quota.can_act(user_id, action)

    def record_usage(self, user_id: str, action: QuotaAction) -> None:
        self.quota.record_usage(user_id, action)

    # ------------------------------------------------------------------
    # Funding
    # ------------------------------------------------------------------

    def fund_bounty(
        self,
        business: Caller,
        per_creator_amount: Any,
        creator_count: int = 1,
        bounty_id: Optional[str] = None,
        bounty_payload: Optional[Dict[str, Any]] = None,
    ) -> FundingResult:
        """Create a pending escrow and a checkout session to pay for it.

        Exactly one of ``bounty_id`` (fund an existing pending bounty) or
        ``bounty_payload`` (create the bounty once payment is confirmed) must
        be given.

        Args:
            business: The funding business
            per_creator_amount: Amount each creator receives, in major units
            creator_count: Number of creator slots to fund
            bounty_id: Existing bounty to fund
            bounty_payload: Bounty to materialize on confirmation; needs a title

        Returns:
            FundingResult with the escrow id and the checkout redirect

        Raises:
            ValidationError: Bad amount, count or payload
            Forbidden: Caller is not a business or does not own the bounty
            QuotaExceeded: The business may not create another bounty
            NotFound: Unknown bounty
            ConflictError: Bounty is not pending or is already funded
            GatewayUnavailable: Checkout could not be created
        """
        if (bounty_id is None) == (bounty_payload is None):
            raise ValidationError("Provide exactly one of bounty_id or bounty_payload")
        if business.role != Role.BUSINESS:
            raise Forbidden(f"User {business.user_id} is not a business and cannot fund bounties")

        breakdown = calculate_fees(per_creator_amount, creator_count, self.config.fees)

        if bounty_payload is not None:
            title = bounty_payload.get("title") if isinstance(bounty_payload, dict) else None
            if not isinstance(title, str) or not title.strip():
                raise ValidationError("Bounty payload requires a title")
        else:
            self._check_fundable(business, bounty_id)

        now = self.clock()
        per_creator = to_minor_units(breakdown.per_creator_amount)
        record = EscrowRecord(
            id=_new_id("esc"),
            bounty_id=bounty_id,
            business_id=business.user_id,
            business_email=business.email,
            amount=to_minor_units(breakdown.business_total),
            currency=self.config.currency,
            status=EscrowStatus.PENDING,
            per_creator_amount=per_creator,
            creator_count=creator_count,
            pending_bounty_payload=dict(bounty_payload) if bounty_payload is not None else None,
            created_at=now,
        )

        with transaction(self.db_path) as conn:
            if bounty_id is not None:
                bounty = self._check_fundable(business, bounty_id, conn)
                linked = repo.update_bounty(
                    conn, bounty_id, bounty.version,
                    escrow_payment_id=record.id,
                    payment_status=PaymentStatus.PENDING,
                    **payouts.initial_ledger(per_creator, creator_count),
                )
                if not linked:
                    raise ConflictError(EscrowStatus.PENDING.value, "create", f"bounty {bounty_id} changed concurrently")
            else:
                # The slot is taken when checkout starts and kept if checkout never completes
                self.quota.consume_in(conn, business.user_id, QuotaAction.CREATE_BOUNTY)
            repo.insert_escrow(conn, record)

        metadata = {
            "escrow_id": record.id,
            "bounty_id": bounty_id or "",
            "business_id": business.user_id,
            "type": "escrow_payment" if bounty_id else "upfront_escrow_payment",
        }
        try:
            session = self.gateway.create_checkout_session(
                record.amount,
                record.currency,
                self.config.escrow.success_url.format(escrow_id=record.id),
                self.config.escrow.cancel_url.format(escrow_id=record.id),
                metadata,
                business.email,
            )
        except Exception as exc:
            logger.error("Checkout creation failed for escrow %s: %s", record.id, exc)
            self._apply_failure(record.id, f"checkout creation failed: {exc}")
            raise

        with transaction(self.db_path) as conn:
            stored = repo.update_escrow(
                conn, record.id, EscrowStatus.PENDING, record.version,
                gateway_session_id=session.session_id,
                gateway_customer_id=session.customer_id,
            )
        if not stored:
            raise ConflictError(EscrowStatus.PENDING.value, "create", f"escrow {record.id} changed before checkout was stored")

        logger.info(
            "Escrow %s created for business %s: %d %s (%d x %d + fee), session %s",
            record.id, business.user_id, record.amount, record.currency,
            creator_count, per_creator, session.session_id,
        )
        return FundingResult(
            escrow_id=record.id,
            redirect_url=session.redirect_url,
            session_id=session.session_id,
            fees=breakdown,
        )

    def _check_fundable(
        self,
        business: Caller,
        bounty_id: str,
        conn: Optional[sqlite3.Connection] = None,
    ) -> Bounty:
        if conn is None:
            with read_connection(self.db_path) as read_conn:
                return self._check_fundable(business, bounty_id, read_conn)

        bounty = repo.get_bounty(conn, bounty_id)
        if bounty is None:
            raise NotFound(f"Bounty {bounty_id} not found")
        if bounty.business_id != business.user_id:
            raise Forbidden(f"User {business.user_id} does not own bounty {bounty_id}")
        if bounty.status != BountyStatus.PENDING:
            raise ConflictError(bounty.status.value, "create", f"bounty {bounty_id} is not awaiting funding")
        if bounty.escrow_payment_id:
            existing = repo.get_escrow(conn, bounty.escrow_payment_id)
            if existing is not None and existing.status not in (EscrowStatus.FAILED, EscrowStatus.REFUNDED):
                raise ConflictError(existing.status.value, "create", f"bounty {bounty_id} already has escrow {existing.id}")
        return bounty

    # ------------------------------------------------------------------
    # Gateway notifications
    # ------------------------------------------------------------------

    def handle_callback(self, payload: bytes, signature: str) -> Optional[Any]:
        """Authenticate a raw gateway notification and apply it.

        Raises:
            CallbackVerificationError: If the signature is invalid
        """
        event: CallbackEvent = self.gateway.parse_callback(payload, signature)
        if event.kind == "checkout":
            return self.on_gateway_callback(event.session_id, event.outcome, event.reason)
        if event.kind == "account":
            return self.eligibility.apply_account_update(
                event.account_reference, bool(event.payouts_enabled), bool(event.charges_enabled),
            )
        logger.debug("Ignoring gateway event %s", event.event_id)
        return None

    def on_gateway_callback(
        self,
        session_id: str,
        outcome: SessionOutcome,
        reason: Optional[str] = None,
    ) -> EscrowRecord:
        """Apply a checkout outcome reported for ``session_id``.

        Duplicate deliveries are expected and are no-ops.

        Raises:
            NotFound: No escrow has this session
            ConflictError: The outcome contradicts the record's state
        """
        outcome = SessionOutcome(outcome)
        with read_connection(self.db_path) as conn:
            record = repo.get_escrow_by_session(conn, session_id)
        if record is None:
            raise NotFound(f"No escrow for checkout session {session_id}")

        if outcome == SessionOutcome.CONFIRMED:
            return self._confirm(record)
        if outcome == SessionOutcome.FAILED:
            if record.status == EscrowStatus.FAILED:
                return record
            return self._apply_failure(record.id, reason or "payment failed")
        return record

    def _confirm(self, record: EscrowRecord) -> EscrowRecord:
        if record.status != EscrowStatus.PENDING:
            return self._already_confirmed(record)

        # The callback only says which session to look at; the gateway is
        # the authority on whether it was paid.
        confirmation = self.gateway.confirm_session(record.gateway_session_id)
        if confirmation.outcome == SessionOutcome.PENDING:
            logger.info("Session %s for escrow %s is not paid yet", record.gateway_session_id, record.id)
            return record
        if confirmation.outcome == SessionOutcome.FAILED:
            return self._apply_failure(record.id, confirmation.failure_reason or "payment failed")

        now = self.clock()
        held_until = now + timedelta(days=self.config.escrow.hold_days)

        with transaction(self.db_path) as conn:
            fresh = repo.get_escrow(conn, record.id)
            if fresh.status != EscrowStatus.PENDING:
                duplicate = fresh
            else:
                duplicate = None
                next_status(fresh.status, EscrowEvent.GATEWAY_CONFIRMED)
                changes: Dict[str, Any] = {
                    "status": EscrowStatus.HELD_IN_ESCROW,
                    "held_at": now,
                    "held_until": held_until,
                    "gateway_payment_reference_id": confirmation.payment_reference,
                }
                if fresh.bounty_id is None and fresh.pending_bounty_payload is not None:
                    changes["bounty_id"] = self._materialize_bounty(conn, fresh, now)
                    changes["pending_bounty_payload"] = None
                else:
                    self._activate_bounty(conn, fresh)

                if not repo.update_escrow(conn, fresh.id, EscrowStatus.PENDING, fresh.version, **changes):
                    raise ConflictError(fresh.status.value, EscrowEvent.GATEWAY_CONFIRMED.value)

        if duplicate is not None:
            return self._already_confirmed(duplicate)

        logger.info("Escrow %s confirmed and held until %s", record.id, held_until.isoformat())
        return self.get_escrow(record.id)

    def _already_confirmed(self, record: EscrowRecord) -> EscrowRecord:
        if record.held_at is not None:
            logger.info("Duplicate confirmation for escrow %s ignored (status %s)", record.id, record.status.value)
            return record
        if record.status == EscrowStatus.REFUNDED:
            logger.error(
                "Payment captured for escrow %s after it was cancelled; session %s needs a manual refund",
                record.id, record.gateway_session_id,
            )
        raise ConflictError(record.status.value, EscrowEvent.GATEWAY_CONFIRMED.value)

    def _materialize_bounty(self, conn: sqlite3.Connection, record: EscrowRecord, now: datetime) -> str:
        payload = record.pending_bounty_payload
        bounty = Bounty(
            id=_new_id("bty"),
            business_id=record.business_id,
            title=payload["title"],
            status=BountyStatus.ACTIVE,
            payment_status=PaymentStatus.HELD_IN_ESCROW,
            escrow_payment_id=record.id,
            details=payload,
            created_at=now,
            **payouts.initial_ledger(record.per_creator_amount, record.creator_count),
        )
        repo.insert_bounty(conn, bounty)
        logger.info("Bounty %s created from paid escrow %s", bounty.id, record.id)
        return bounty.id

    def _activate_bounty(self, conn: sqlite3.Connection, record: EscrowRecord) -> None:
        bounty = repo.get_bounty(conn, record.bounty_id)
        if bounty is None:
            raise NotFound(f"Bounty {record.bounty_id} for escrow {record.id} not found")
        status = BountyStatus.ACTIVE if bounty.status == BountyStatus.PENDING else bounty.status
        if not repo.update_bounty(
            conn, bounty.id, bounty.version,
            status=status,
            payment_status=PaymentStatus.HELD_IN_ESCROW,
        ):
            raise ConflictError(record.status.value, EscrowEvent.GATEWAY_CONFIRMED.value, f"bounty {bounty.id} changed concurrently")

    def _apply_failure(self, escrow_id: str, reason: str) -> EscrowRecord:
        """Move a record, and its unreleased payout records, to ``failed``."""
        with transaction(self.db_path) as conn:
            record = repo.get_escrow(conn, escrow_id)
            if record is None:
                raise NotFound(f"Escrow {escrow_id} not found")
            next_status(record.status, EscrowEvent.GATEWAY_FAILED)
            if repo.get_outbox(conn, escrow_id) is not None:
                raise ConflictError(record.status.value, EscrowEvent.GATEWAY_FAILED.value, "a payout or refund is in flight")

            targets = [record]
            if record.is_funding:
                targets += [
                    child for child in repo.list_escrows(conn, parent_id=record.id)
                    if child.status == EscrowStatus.READY_FOR_RELEASE
                    and repo.get_outbox(conn, child.id) is None
                ]
            for target in targets:
                if not repo.update_escrow(
                    conn, target.id, target.status, target.version,
                    status=EscrowStatus.FAILED, failure_reason=reason,
                ):
                    raise ConflictError(target.status.value, EscrowEvent.GATEWAY_FAILED.value)

            if record.is_funding and record.bounty_id:
                bounty = repo.get_bounty(conn, record.bounty_id)
                if bounty is not None and bounty.payment_status == PaymentStatus.HELD_IN_ESCROW:
                    repo.update_bounty(conn, bounty.id, bounty.version, payment_status=PaymentStatus.PENDING)
                    logger.warning("Bounty %s lost its escrow funding: %s", bounty.id, reason)

        logger.warning("Escrow %s failed: %s", escrow_id, reason)
        return self.get_escrow(escrow_id)

    # ------------------------------------------------------------------
    # Deliverable acceptance
    # ------------------------------------------------------------------

    def mark_ready_for_release(self, escrow_id: str, requester: Caller, creator_id: str) -> EscrowRecord:
        """Allocate one funded creator slot to ``creator_id``.

        While more than one slot is open a payout record is split off the
        funding record; the last slot moves the funding record itself to
        ``ready_for_release``.

        Returns:
            The record that is now ready for release

        Raises:
            ValidationError: Missing creator
            NotFound: Unknown escrow
            Forbidden: Requester is not the funding business
            ConflictError: Record not held, no open slots, or creator already allocated
        """
        if not creator_id:
            raise ValidationError("creator_id is required")
        record = self._owned_record(escrow_id, requester)
        if not record.is_funding:
            raise ConflictError(record.status.value, EscrowEvent.MARK_READY_FOR_RELEASE.value, "payout records are already allocated")
        next_status(record.status, EscrowEvent.MARK_READY_FOR_RELEASE)

        now = self.clock()
        with transaction(self.db_path) as conn:
            fresh = repo.get_escrow(conn, escrow_id)
            next_status(fresh.status, EscrowEvent.MARK_READY_FOR_RELEASE)
            bounty = repo.get_bounty(conn, fresh.bounty_id)
            if bounty is None:
                raise NotFound(f"Bounty {fresh.bounty_id} for escrow {escrow_id} not found")

            allocated = repo.list_escrows(conn, parent_id=fresh.id)
            if any(child.creator_id == creator_id and child.status != EscrowStatus.FAILED for child in allocated):
                raise ConflictError(fresh.status.value, EscrowEvent.MARK_READY_FOR_RELEASE.value, f"creator {creator_id} already has a payout for this bounty")

            slots = payouts.open_slots(conn, bounty, fresh.id)
            if slots <= 0:
                raise ConflictError(fresh.status.value, EscrowEvent.MARK_READY_FOR_RELEASE.value, "no unpaid creator slots remain")

            if slots == 1:
                if not repo.update_escrow(
                    conn, fresh.id, EscrowStatus.HELD_IN_ESCROW, fresh.version,
                    status=EscrowStatus.READY_FOR_RELEASE,
                    creator_id=creator_id,
                    creator_earnings=fresh.per_creator_amount,
                ):
                    raise ConflictError(fresh.status.value, EscrowEvent.MARK_READY_FOR_RELEASE.value)
                ready_id = fresh.id
            else:
                tranche = EscrowRecord(
                    id=_new_id("esc"),
                    parent_id=fresh.id,
                    bounty_id=fresh.bounty_id,
                    business_id=fresh.business_id,
                    business_email=fresh.business_email,
                    amount=fresh.per_creator_amount,
                    currency=fresh.currency,
                    status=EscrowStatus.READY_FOR_RELEASE,
                    per_creator_amount=fresh.per_creator_amount,
                    creator_count=1,
                    gateway_customer_id=fresh.gateway_customer_id,
                    gateway_payment_reference_id=fresh.gateway_payment_reference_id,
                    creator_id=creator_id,
                    creator_earnings=fresh.per_creator_amount,
                    created_at=now,
                    held_at=fresh.held_at,
                    held_until=fresh.held_until,
                )
                repo.insert_escrow(conn, tranche)
                ready_id = tranche.id

        logger.info("Escrow %s ready for release to creator %s", ready_id, creator_id)
        return self.get_escrow(ready_id)

    def _owned_record(self, escrow_id: str, requester: Caller) -> EscrowRecord:
        record = self.get_escrow(escrow_id)
        if record.business_id != requester.user_id:
            raise Forbidden(f"User {requester.user_id} does not own escrow {escrow_id}")
        return record

    # ------------------------------------------------------------------
    # Release
    # ------------------------------------------------------------------

    def release_escrow(
        self,
        escrow_id: str,
        requester: Caller,
        cancel: Optional[threading.Event] = None,
    ) -> ReleaseResult:
        """Pay the allocated creator and close the record.

        Raises:
            NotFound: Unknown escrow
            Forbidden: Requester is not the funding business
            ConflictError: Record not ready, or another release won
            PreconditionFailed: The creator cannot receive payouts
            OperationCancelled: ``cancel`` was set before dispatch
            GatewayUnavailable: Transfer outcome unknown; left for reconciliation
            GatewayDeclined: The gateway refused the transfer
        """
        record = self._owned_record(escrow_id, requester)
        next_status(record.status, EscrowEvent.RELEASE)
        if cancel is not None and cancel.is_set():
            raise OperationCancelled(f"Release of escrow {escrow_id} cancelled")

        key = idempotency_key(escrow_id, DispatchOperation.TRANSFER)
        self._claim(escrow_id, EscrowEvent.RELEASE, DispatchOperation.TRANSFER, key, record.creator_earnings)

        try:
            eligibility = self.eligibility.require_payouts_enabled(record.creator_id)
            if cancel is not None and cancel.is_set():
                raise OperationCancelled(f"Release of escrow {escrow_id} cancelled")
        except Exception:
            self._drop_claim(escrow_id)
            raise

        logger.info("Dispatching transfer for escrow %s (key %s)", escrow_id, key)
        transfer_id = self._dispatch(
            escrow_id, key,
            self.gateway.transfer,
            eligibility.account_reference,
            record.creator_earnings,
            record.currency,
            record.parent_id or record.id,
            key,
        )
        released = self.finalize_transfer(escrow_id, transfer_id)
        return ReleaseResult(
            transfer_id=transfer_id,
            amount_released=from_minor_units(record.creator_earnings),
            escrow=released,
        )

    def finalize_transfer(self, escrow_id: str, transfer_id: str) -> EscrowRecord:
        """Record a completed transfer: status, payout ledger, earnings, outbox."""
        now = self.clock()
        try:
            with transaction(self.db_path) as conn:
                record = repo.get_escrow(conn, escrow_id)
                next_status(record.status, EscrowEvent.RELEASE)
                bounty = repo.get_bounty(conn, record.bounty_id)
                if bounty is None:
                    raise NotFound(f"Bounty {record.bounty_id} for escrow {escrow_id} not found")

                if not repo.update_escrow(
                    conn, escrow_id, EscrowStatus.READY_FOR_RELEASE, record.version,
                    status=EscrowStatus.RELEASED,
                    gateway_transfer_id=transfer_id,
                    released_at=now,
                ):
                    raise ConflictError(record.status.value, EscrowEvent.RELEASE.value)
                if not repo.update_bounty(conn, bounty.id, bounty.version, **payouts.ledger_after_release(bounty)):
                    raise ConflictError(record.status.value, EscrowEvent.RELEASE.value, f"bounty {bounty.id} changed concurrently")
                self.quota.add_earnings_in(conn, record.creator_id, record.creator_earnings)
                repo.complete_outbox(conn, escrow_id, transfer_id, now)
        except Exception:
            logger.error(
                "Transfer %s for escrow %s succeeded at the gateway but was not recorded; "
                "left for reconciliation",
                transfer_id, escrow_id, exc_info=True,
            )
            raise

        logger.info("Escrow %s released to creator %s via transfer %s", escrow_id, record.creator_id, transfer_id)
        return self.get_escrow(escrow_id)

    # ------------------------------------------------------------------
    # Refund
    # ------------------------------------------------------------------

    def refund_escrow(
        self,
        escrow_id: str,
        requester: Caller,
        reason: str = DEFAULT_REFUND_REASON,
        cancel: Optional[threading.Event] = None,
    ) -> RefundResult:
        """Return the unpaid part of a funding escrow to the business.

        A pending record has captured nothing, so it is closed without a
        gateway call. After partial payouts only the unpaid slots and their
        share of the fee are refunded.

        Raises:
            ValidationError: Missing reason
            NotFound: Unknown escrow
            Forbidden: Requester is not the funding business
            ConflictError: Record not refundable, payouts allocated, or another request won
            OperationCancelled: ``cancel`` was set before dispatch
            GatewayUnavailable: Refund outcome unknown; left for reconciliation
            GatewayDeclined: The gateway refused the refund
        """
        if not reason or not reason.strip():
            raise ValidationError("A refund reason is required")
        record = self._owned_record(escrow_id, requester)
        if not record.is_funding:
            raise ConflictError(record.status.value, EscrowEvent.REFUND.value, "payout records are refunded through their funding escrow")
        next_status(record.status, EscrowEvent.REFUND)
        if cancel is not None and cancel.is_set():
            raise OperationCancelled(f"Refund of escrow {escrow_id} cancelled")

        if record.gateway_payment_reference_id is None:
            return self._cancel_unpaid(record, reason)

        key = idempotency_key(escrow_id, DispatchOperation.REFUND)
        amount = self._claim(escrow_id, EscrowEvent.REFUND, DispatchOperation.REFUND, key, None, reason)

        if cancel is not None and cancel.is_set():
            self._drop_claim(escrow_id)
            raise OperationCancelled(f"Refund of escrow {escrow_id} cancelled")

        logger.info("Dispatching refund of %d for escrow %s (key %s)", amount, escrow_id, key)
        refund_id = self._dispatch(
            escrow_id, key,
            self.gateway.refund,
            record.gateway_payment_reference_id,
            reason,
            amount,
            key,
        )
        refunded = self.finalize_refund(escrow_id, refund_id, reason)
        return RefundResult(
            refund_id=refund_id,
            amount_refunded=from_minor_units(amount),
            escrow=refunded,
        )

    def refundable_amount(self, conn: sqlite3.Connection, record: EscrowRecord) -> int:
        """Minor units still refundable on a funding record."""
        if record.bounty_id is None:
            return record.amount
        bounty = repo.get_bounty(conn, record.bounty_id)
        if bounty is None or bounty.paid_creators_count == 0:
            return record.amount
        unpaid = record.creator_count - bounty.paid_creators_count
        return to_minor_units(business_total(
            from_minor_units(record.per_creator_amount), unpaid, self.config.fees,
        ))

    def _cancel_unpaid(self, record: EscrowRecord, reason: str) -> RefundResult:
        now = self.clock()
        with transaction(self.db_path) as conn:
            fresh = repo.get_escrow(conn, record.id)
            next_status(fresh.status, EscrowEvent.REFUND)
            if fresh.gateway_payment_reference_id is not None:
                raise ConflictError(fresh.status.value, EscrowEvent.REFUND.value, "payment was captured concurrently")
            if not repo.update_escrow(
                conn, fresh.id, fresh.status, fresh.version,
                status=EscrowStatus.REFUNDED,
                refunded_at=now,
                failure_reason=reason,
            ):
                raise ConflictError(fresh.status.value, EscrowEvent.REFUND.value)

        logger.info("Unpaid escrow %s cancelled: %s", record.id, reason)
        return RefundResult(refund_id=None, amount_refunded=Decimal("0.00"), escrow=self.get_escrow(record.id))

    def finalize_refund(self, escrow_id: str, refund_id: str, reason: str) -> EscrowRecord:
        """Record a completed refund: status, bounty payment status, outbox."""
        now = self.clock()
        try:
            with transaction(self.db_path) as conn:
                record = repo.get_escrow(conn, escrow_id)
                next_status(record.status, EscrowEvent.REFUND)
                if not repo.update_escrow(
                    conn, escrow_id, record.status, record.version,
                    status=EscrowStatus.REFUNDED,
                    gateway_refund_id=refund_id,
                    refunded_at=now,
                    failure_reason=reason,
                ):
                    raise ConflictError(record.status.value, EscrowEvent.REFUND.value)
                if record.bounty_id:
                    bounty = repo.get_bounty(conn, record.bounty_id)
                    if bounty is not None and bounty.escrow_payment_id == escrow_id:
                        repo.update_bounty(conn, bounty.id, bounty.version, payment_status=PaymentStatus.REFUNDED)
                repo.complete_outbox(conn, escrow_id, refund_id, now)
        except Exception:
            logger.error(
                "Refund %s for escrow %s succeeded at the gateway but was not recorded; "
                "left for reconciliation",
                refund_id, escrow_id, exc_info=True,
            )
            raise

        logger.info("Escrow %s refunded via %s: %s", escrow_id, refund_id, reason)
        return self.get_escrow(escrow_id)

    # ------------------------------------------------------------------
    # Outbound call plumbing
    # ------------------------------------------------------------------

    def _claim(
        self,
        escrow_id: str,
        event: EscrowEvent,
        operation: DispatchOperation,
        key: str,
        amount: Optional[int],
        reason: Optional[str] = None,
    ) -> int:
        """Take the record's single outbound call; returns the amount claimed."""
        with transaction(self.db_path) as conn:
            record = repo.get_escrow(conn, escrow_id)
            next_status(record.status, event)
            if operation == DispatchOperation.REFUND:
                if repo.count_open_tranches(conn, escrow_id) > 0:
                    raise ConflictError(record.status.value, event.value, "creator payouts are awaiting release")
                amount = self.refundable_amount(conn, record)
            try:
                repo.insert_outbox(conn, OutboxEntry(
                    escrow_id=escrow_id,
                    operation=operation,
                    idempotency_key=key,
                    amount=amount,
                    reason=reason,
                    state=OutboxState.DISPATCHING,
                    created_at=self.clock(),
                ))
            except sqlite3.IntegrityError:
                raise ConflictError(record.status.value, event.value, "another release or refund is already in progress")
        return amount

    def _drop_claim(self, escrow_id: str) -> None:
        with transaction(self.db_path) as conn:
            repo.delete_outbox(conn, escrow_id)

    def _dispatch(self, escrow_id: str, key: str, call: Callable[..., str], *args: Any) -> str:
        try:
            return call(*args)
        except GatewayDeclined:
            logger.warning("Gateway declined call %s for escrow %s", key, escrow_id)
            self._drop_claim(escrow_id)
            raise
        except GatewayUnavailable as exc:
            logger.error(
                "Outcome of gateway call %s for escrow %s is unknown; left for reconciliation: %s",
                key, escrow_id, exc,
            )
            with transaction(self.db_path) as conn:
                repo.record_outbox_error(conn, escrow_id, str(exc))
            raise
