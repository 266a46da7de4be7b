"""
Data models for storage layer.

Defines the escrow engine's entities. Records are immutable snapshots; every
change is written through the repository's conditional updates and read
back as a new snapshot.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class EscrowStatus(str, Enum):
    """Authoritative funding state of an escrow record."""
    PENDING = "pending"
    HELD_IN_ESCROW = "held_in_escrow"
    READY_FOR_RELEASE = "ready_for_release"
    RELEASED = "released"
    REFUNDED = "refunded"
    FAILED = "failed"


class BountyStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    """Coarse projection of the funding escrow shown on a bounty."""
    PENDING = "pending"
    HELD_IN_ESCROW = "held_in_escrow"
    COMPLETED = "completed"
    REFUNDED = "refunded"


class DispatchOperation(str, Enum):
    TRANSFER = "transfer"
    REFUND = "refund"


class OutboxState(str, Enum):
    DISPATCHING = "dispatching"
    COMPLETED = "completed"


class Tier(str, Enum):
    FREE = "free"
    PREMIUM = "premium"


class Role(str, Enum):
    CREATOR = "creator"
    BUSINESS = "business"
    ADMIN = "admin"


@dataclass(frozen=True)
class Caller:
    """Identity resolved by the surrounding application."""
    user_id: str
    email: str
    tier: Tier = Tier.FREE
    role: Role = Role.BUSINESS


@dataclass(frozen=True)
class EscrowRecord:
    """Ledger entity for a single funding transaction.

    Funding records have ``parent_id=None``. A multi-creator bounty also has
    payout records split from its funding record, one per paid creator slot.
    Amounts are integer minor units.
    """
    id: str
    business_id: str
    business_email: str
    amount: int
    currency: str
    status: EscrowStatus
    created_at: datetime
    per_creator_amount: int
    creator_count: int
    bounty_id: Optional[str] = None
    parent_id: Optional[str] = None
    gateway_customer_id: Optional[str] = None
    gateway_session_id: Optional[str] = None
    gateway_payment_reference_id: Optional[str] = None
    gateway_transfer_id: Optional[str] = None
    gateway_refund_id: Optional[str] = None
    creator_id: Optional[str] = None
    creator_earnings: Optional[int] = None
    pending_bounty_payload: Optional[Dict[str, Any]] = None
    held_at: Optional[datetime] = None
    held_until: Optional[datetime] = None
    released_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    version: int = 1

    @property
    def is_terminal(self) -> bool:
        return self.status in (EscrowStatus.RELEASED, EscrowStatus.REFUNDED, EscrowStatus.FAILED)

    @property
    def is_funding(self) -> bool:
        return self.parent_id is None


@dataclass(frozen=True)
class Bounty:
    """The engine-visible part of a bounty, including its payout ledger."""
    id: str
    business_id: str
    title: str
    status: BountyStatus
    payment_status: PaymentStatus
    per_creator_amount: int
    max_creators: int
    paid_creators_count: int
    total_paid_amount: int
    remaining_budget: int
    created_at: datetime
    escrow_payment_id: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
    version: int = 1

    @property
    def total_budget(self) -> int:
        return self.per_creator_amount * self.max_creators


@dataclass(frozen=True)
class SubscriptionUsage:
    """Usage counters for one user and billing period.

    Limits are derived from the user's tier when the record is read.
    """
    user_id: str
    period: str
    applications_used: int
    applications_limit: int
    bounties_created: int
    bounties_limit: int
    total_earnings: int = 0

    @property
    def applications_remaining(self) -> int:
        """Remaining applications, or -1 when unlimited."""
        if self.applications_limit == -1:
            return -1
        return max(self.applications_limit - self.applications_used, 0)

    @property
    def bounties_remaining(self) -> int:
        """Remaining bounties, or -1 when unlimited."""
        if self.bounties_limit == -1:
            return -1
        return max(self.bounties_limit - self.bounties_created, 0)


@dataclass(frozen=True)
class PayoutEligibility:
    """Whether a creator's payout destination can receive funds."""
    creator_id: str
    has_payout_account: bool
    payouts_enabled: bool
    charges_enabled: bool
    account_reference: Optional[str] = None
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class OutboxEntry:
    """A claimed outbound money movement for one escrow record."""
    escrow_id: str
    operation: DispatchOperation
    idempotency_key: str
    amount: int
    state: OutboxState
    created_at: datetime
    gateway_reference: Optional[str] = None
    reason: Optional[str] = None
    completed_at: Optional[datetime] = None
    last_error: Optional[str] = None
