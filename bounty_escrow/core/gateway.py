"""
Payment gateway interface.

The engine never talks to a payment processor directly. It depends on the
``PaymentGateway`` capabilities below and calls them through
``GatewayClient``, which bounds every call with a timeout and retries only
the idempotent reads.
"""

import logging
import time
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional, TypeVar

from bounty_escrow.config.loader import DEFAULT_CONFIG, EscrowConfig
from .errors import GatewayUnavailable

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SessionOutcome(str, Enum):
    CONFIRMED = "confirmed"
    PENDING = "pending"
    FAILED = "failed"


@dataclass(frozen=True)
class CheckoutSession:
    session_id: str
    redirect_url: str
    customer_id: Optional[str] = None


@dataclass(frozen=True)
class SessionConfirmation:
    outcome: SessionOutcome
    payment_reference: Optional[str] = None
    failure_reason: Optional[str] = None


@dataclass(frozen=True)
class PayoutAccountStatus:
    payouts_enabled: bool
    charges_enabled: bool


@dataclass(frozen=True)
class CallbackEvent:
    """An authenticated gateway notification, reduced to what the engine needs."""
    kind: str  # "checkout", "account" or "ignored"
    event_id: Optional[str] = None
    session_id: Optional[str] = None
    outcome: Optional[SessionOutcome] = None
    reason: Optional[str] = None
    account_reference: Optional[str] = None
    payouts_enabled: Optional[bool] = None
    charges_enabled: Optional[bool] = None


class PaymentGateway(ABC):
    """Capabilities a payment processor must provide.

    Amounts are integer minor units. Implementations raise
    ``GatewayUnavailable`` for timeouts and server errors and
    ``GatewayDeclined`` when a request is definitively refused.
    """

    @abstractmethod
    def create_checkout_session(
        self,
        amount: int,
        currency: str,
        success_ref: str,
        cancel_ref: str,
        metadata: Dict[str, str],
        customer_email: Optional[str] = None,
    ) -> CheckoutSession:
        """Start a hosted checkout for ``amount``."""

    @abstractmethod
    def confirm_session(self, session_id: str) -> SessionConfirmation:
        """Report whether the checkout session has been paid."""

    @abstractmethod
    def transfer(
        self,
        destination_account: str,
        amount: int,
        currency: str,
        group_ref: str,
        idempotency_key: str,
    ) -> str:
        """Move funds to a payout destination; returns the transfer id."""

    @abstractmethod
    def refund(
        self,
        payment_ref: str,
        reason: str,
        amount: int,
        idempotency_key: str,
    ) -> str:
        """Return funds to the payer; returns the refund id."""

    @abstractmethod
    def create_payout_account(self, email: str, country: str) -> str:
        """Create a payout destination; returns the account id."""

    @abstractmethod
    def get_payout_account(self, account_id: str) -> PayoutAccountStatus:
        """Current capability flags of a payout destination."""

    @abstractmethod
    def create_onboarding_link(self, account_id: str, refresh_ref: str, return_ref: str) -> str:
        """Hosted onboarding URL where the account holder finishes setup."""

    @abstractmethod
    def parse_callback(self, payload: bytes, signature: str) -> CallbackEvent:
        """Verify a notification's signature and decode it.

        Raises:
            CallbackVerificationError: If the signature does not match
        """


class GatewayClient:
    """Calls a ``PaymentGateway`` with bounded timeouts.

    Reads (``confirm_session``, ``get_payout_account``) are retried with
    exponential backoff. Money movement (``transfer``, ``refund``) and
    account creation are attempted exactly once per call; retrying them is
    the reconciler's job, with the same idempotency key.

    Calls run on a pool of ``gateway_max_workers`` threads. A call that times
    out is abandoned but still holds its thread until the gateway answers;
    once every worker is held that way, later calls queue and time out
    without running.
    """

    def __init__(
        self,
        gateway: PaymentGateway,
        settings: EscrowConfig = DEFAULT_CONFIG.escrow,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.gateway = gateway
        self.timeout = settings.gateway_timeout_seconds
        self.read_attempts = settings.read_attempts
        self.backoff = settings.retry_backoff_seconds
        self._sleep = sleep
        self._executor = ThreadPoolExecutor(
            max_workers=settings.gateway_max_workers, thread_name_prefix="gateway",
        )

    def close(self) -> None:
        self._executor.shutdown(wait=False)

    def _call(self, name: str, fn: Callable[..., T], *args: Any) -> T:
        future = self._executor.submit(fn, *args)
        try:
            return future.result(timeout=self.timeout)
        except FutureTimeout:
            logger.error("Gateway call %s timed out after %.1fs", name, self.timeout)
            raise GatewayUnavailable(f"Gateway call {name} timed out after {self.timeout}s")

    def _read(self, name: str, fn: Callable[..., T], *args: Any) -> T:
        delay = self.backoff
        attempt = 1
        while True:
            try:
                return self._call(name, fn, *args)
            except GatewayUnavailable:
                if attempt >= self.read_attempts:
                    raise
                logger.warning(
                    "Gateway read %s failed (attempt %d/%d), retrying in %.2fs",
                    name, attempt, self.read_attempts, delay,
                )
                self._sleep(delay)
                delay *= 2
                attempt += 1

    def create_checkout_session(
        self,
        amount: int,
        currency: str,
        success_ref: str,
        cancel_ref: str,
        metadata: Dict[str, str],
        customer_email: Optional[str] = None,
    ) -> CheckoutSession:
        return self._call(
            "create_checkout_session", self.gateway.create_checkout_session,
            amount, currency, success_ref, cancel_ref, metadata, customer_email,
        )

    def confirm_session(self, session_id: str) -> SessionConfirmation:
        return self._read("confirm_session", self.gateway.confirm_session, session_id)

    def transfer(self, destination_account: str, amount: int, currency: str,
                 group_ref: str, idempotency_key: str) -> str:
        return self._call(
            "transfer", self.gateway.transfer,
            destination_account, amount, currency, group_ref, idempotency_key,
        )

    def refund(self, payment_ref: str, reason: str, amount: int, idempotency_key: str) -> str:
        return self._call("refund", self.gateway.refund, payment_ref, reason, amount, idempotency_key)

    def create_payout_account(self, email: str, country: str) -> str:
        return self._call("create_payout_account", self.gateway.create_payout_account, email, country)

    def get_payout_account(self, account_id: str) -> PayoutAccountStatus:
        return self._read("get_payout_account", self.gateway.get_payout_account, account_id)

    def create_onboarding_link(self, account_id: str, refresh_ref: str, return_ref: str) -> str:
        # Links are single-use and cheap to mint again, so this is retried like a read
        return self._read(
            "create_onboarding_link", self.gateway.create_onboarding_link,
            account_id, refresh_ref, return_ref,
        )

    def parse_callback(self, payload: bytes, signature: str) -> CallbackEvent:
        return self.gateway.parse_callback(payload, signature)
