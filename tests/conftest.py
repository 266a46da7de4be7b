"""
Shared fixtures: a recording in-memory payment gateway, a controllable
clock and an engine wired to a temporary database.
"""

import itertools
import json
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

import pytest

from bounty_escrow.config.loader import EngineConfig, EscrowConfig
from bounty_escrow.core.eligibility import PayoutEligibilityGate
from bounty_escrow.core.errors import CallbackVerificationError
from bounty_escrow.core.gateway import (
    CallbackEvent,
    CheckoutSession,
    GatewayClient,
    PaymentGateway,
    PayoutAccountStatus,
    SessionConfirmation,
    SessionOutcome,
)
from bounty_escrow.core.lifecycle import EscrowEngine
from bounty_escrow.core.quota import QuotaLedger
from bounty_escrow.storage.db import transaction
from bounty_escrow.storage.models import Bounty, BountyStatus, Caller, PaymentStatus, Role, Tier
from bounty_escrow.storage.repository import initialize_schema, insert_bounty

VALID_SIGNATURE = "t=1,v1=valid"


class FakeGateway(PaymentGateway):
    """In-memory gateway that records every call.

    Sessions are paid by default once created. ``errors`` maps a method
    name to an exception raised on its next call; ``delays`` maps a method
    name to seconds it sleeps before answering.
    """

    def __init__(self):
        self.calls: List[Tuple[str, tuple]] = []
        self.sessions: Dict[str, SessionConfirmation] = {}
        self.accounts: Dict[str, PayoutAccountStatus] = {}
        self.transfers: Dict[str, str] = {}
        self.refunds: Dict[str, str] = {}
        self.errors: Dict[str, Exception] = {}
        self.delays: Dict[str, float] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def _enter(self, name: str, *args) -> int:
        with self._lock:
            self.calls.append((name, args))
            error = self.errors.pop(name, None)
            number = next(self._ids)
        if name in self.delays:
            time.sleep(self.delays[name])
        if error is not None:
            raise error
        return number

    def calls_to(self, name: str) -> List[tuple]:
        return [args for called, args in self.calls if called == name]

    def create_checkout_session(self, amount, currency, success_ref, cancel_ref, metadata, customer_email=None):
        number = self._enter("create_checkout_session", amount, currency, success_ref, cancel_ref, metadata, customer_email)
        session_id = f"cs_test_{number}"
        self.sessions[session_id] = SessionConfirmation(
            outcome=SessionOutcome.CONFIRMED,
            payment_reference=f"pi_test_{number}",
        )
        return CheckoutSession(
            session_id=session_id,
            redirect_url=f"https://checkout.test/{session_id}",
            customer_id=f"cus_test_{number}",
        )

    def confirm_session(self, session_id):
        self._enter("confirm_session", session_id)
        return self.sessions[session_id]

    def transfer(self, destination_account, amount, currency, group_ref, idempotency_key):
        number = self._enter("transfer", destination_account, amount, currency, group_ref, idempotency_key)
        with self._lock:
            return self.transfers.setdefault(idempotency_key, f"tr_test_{number}")

    def refund(self, payment_ref, reason, amount, idempotency_key):
        number = self._enter("refund", payment_ref, reason, amount, idempotency_key)
        with self._lock:
            return self.refunds.setdefault(idempotency_key, f"re_test_{number}")

    def create_payout_account(self, email, country):
        number = self._enter("create_payout_account", email, country)
        account_id = f"acct_test_{number}"
        self.accounts[account_id] = PayoutAccountStatus(payouts_enabled=False, charges_enabled=False)
        return account_id

    def get_payout_account(self, account_id):
        self._enter("get_payout_account", account_id)
        return self.accounts[account_id]

    def create_onboarding_link(self, account_id, refresh_ref, return_ref):
        number = self._enter("create_onboarding_link", account_id, refresh_ref, return_ref)
        return f"https://connect.test/setup/{account_id}/{number}"

    def enable_payouts(self, account_id: str, enabled: bool = True) -> None:
        self.accounts[account_id] = PayoutAccountStatus(payouts_enabled=enabled, charges_enabled=enabled)

    def parse_callback(self, payload, signature):
        self._enter("parse_callback", payload, signature)
        if signature != VALID_SIGNATURE:
            raise CallbackVerificationError("bad signature")
        data = json.loads(payload)
        if "outcome" in data:
            data["outcome"] = SessionOutcome(data["outcome"])
        return CallbackEvent(**data)


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: Optional[datetime] = None):
        self.now = now or datetime(2024, 3, 15, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def db_path(tmp_path):
    path = str(tmp_path / "escrow.db")
    initialize_schema(path)
    return path


@pytest.fixture
def fake_gateway():
    return FakeGateway()


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def tiers():
    """User id -> tier; unknown users make the tier lookup fail."""
    return {"biz_1": Tier.FREE, "biz_2": Tier.FREE, "creator_1": Tier.FREE}


@pytest.fixture
def config():
    return EngineConfig(escrow=EscrowConfig(gateway_timeout_seconds=2.0, retry_backoff_seconds=0.0))


@pytest.fixture
def gateway_client(fake_gateway, config):
    client = GatewayClient(fake_gateway, config.escrow, sleep=lambda _: None)
    yield client
    client.close()


@pytest.fixture
def quota(db_path, tiers, clock, config):
    return QuotaLedger(tiers.__getitem__, db_path, config.quota, clock)


@pytest.fixture
def eligibility(gateway_client, db_path, clock, config):
    return PayoutEligibilityGate(gateway_client, db_path, clock, config.escrow)


@pytest.fixture
def engine(gateway_client, quota, eligibility, db_path, config, clock):
    return EscrowEngine(
        gateway=gateway_client,
        quota=quota,
        eligibility=eligibility,
        db_path=db_path,
        config=config,
        clock=clock,
    )


@pytest.fixture
def business():
    return Caller(user_id="biz_1", email="owner@brand.test", tier=Tier.FREE, role=Role.BUSINESS)


@pytest.fixture
def other_business():
    return Caller(user_id="biz_2", email="rival@brand.test", tier=Tier.FREE, role=Role.BUSINESS)


def make_pending_bounty(db_path: str, business_id: str = "biz_1", bounty_id: str = "bty_1",
                        per_creator_amount: int = 10000, max_creators: int = 1,
                        created_at: Optional[datetime] = None) -> Bounty:
    """Insert a bounty the surrounding application created before funding."""
    bounty = Bounty(
        id=bounty_id,
        business_id=business_id,
        title="Unboxing video",
        status=BountyStatus.PENDING,
        payment_status=PaymentStatus.PENDING,
        per_creator_amount=per_creator_amount,
        max_creators=max_creators,
        paid_creators_count=0,
        total_paid_amount=0,
        remaining_budget=per_creator_amount * max_creators,
        created_at=created_at or datetime(2024, 3, 1, tzinfo=timezone.utc),
    )
    with transaction(db_path) as conn:
        insert_bounty(conn, bounty)
    return bounty


def onboard_creator(engine: EscrowEngine, gateway: FakeGateway, creator_id: str = "creator_1",
                    enabled: bool = True) -> str:
    """Onboard a creator and set their payout flags; returns the account id."""
    snapshot = engine.eligibility.onboard(creator_id, f"{creator_id}@creators.test", "us")
    gateway.enable_payouts(snapshot.account_reference, enabled)
    return snapshot.account_reference


def held_escrow(engine: EscrowEngine, business: Caller, per_creator="100.00", creators: int = 1,
                payload: Optional[dict] = None):
    """Fund a bounty from a payload and confirm it; returns the funding result."""
    funding = engine.fund_bounty(
        business, per_creator, creators,
        bounty_payload=payload or {"title": "Product review", "platform": "tiktok"},
    )
    engine.on_gateway_callback(funding.session_id, SessionOutcome.CONFIRMED)
    return funding
