"""
Stripe payment gateway.

Implements ``PaymentGateway`` on top of the ``stripe`` library: Checkout
Sessions for funding, Transfers to connected accounts for releases, Refunds
against the captured PaymentIntent, and signed webhooks for callbacks.
"""

import logging
from contextlib import contextmanager
from typing import Dict, Iterator, Optional

import stripe

from ..core.errors import CallbackVerificationError, GatewayDeclined, GatewayUnavailable, ValidationError
from ..core.gateway import (
    CallbackEvent,
    CheckoutSession,
    PaymentGateway,
    PayoutAccountStatus,
    SessionConfirmation,
    SessionOutcome,
)

logger = logging.getLogger(__name__)

# Checkout event type -> outcome reported to the engine
CHECKOUT_EVENTS = {
    "checkout.session.completed": None,  # depends on payment_status
    "checkout.session.async_payment_succeeded": SessionOutcome.CONFIRMED,
    "checkout.session.async_payment_failed": SessionOutcome.FAILED,
    "checkout.session.expired": SessionOutcome.FAILED,
}


@contextmanager
def _translated(operation: str) -> Iterator[None]:
    """Map stripe exceptions onto the engine's gateway errors."""
    try:
        yield
    except (stripe.APIConnectionError, stripe.RateLimitError) as exc:
        raise GatewayUnavailable(f"Stripe {operation} unavailable: {exc.user_message or exc}") from exc
    except (stripe.CardError, stripe.InvalidRequestError, stripe.PermissionError,
            stripe.AuthenticationError, stripe.IdempotencyError) as exc:
        raise GatewayDeclined(f"Stripe {operation} declined: {exc.user_message or exc}") from exc
    except stripe.StripeError as exc:
        # 5xx and anything unrecognized: outcome unknown
        raise GatewayUnavailable(f"Stripe {operation} failed: {exc.user_message or exc}") from exc


def _session_confirmation(session) -> SessionConfirmation:
    if session.payment_status in ("paid", "no_payment_required"):
        return SessionConfirmation(
            outcome=SessionOutcome.CONFIRMED,
            payment_reference=session.payment_intent,
        )
    if session.status == "expired":
        return SessionConfirmation(
            outcome=SessionOutcome.FAILED,
            failure_reason="checkout session expired",
        )
    return SessionConfirmation(outcome=SessionOutcome.PENDING)


class StripeGateway(PaymentGateway):
    """Stripe implementation of the payment gateway capabilities.

    Every request passes ``api_key`` explicitly so several gateways with
    different keys can coexist in one process.
    """

    def __init__(
        self,
        api_key: str,
        webhook_secret: str,
        product_name: str = "Bounty escrow",
    ):
        """Initialize the gateway.

        Args:
            api_key: Stripe secret key (required)
            webhook_secret: Signing secret of the webhook endpoint (required)
            product_name: Line item name shown on the checkout page

        Raises:
            ValueError: If a key is missing/empty
        """
        if not api_key or not api_key.strip():
            raise ValueError("api_key is required and cannot be empty")
        if not webhook_secret or not webhook_secret.strip():
            raise ValueError("webhook_secret is required and cannot be empty")

        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.product_name = product_name

    def create_checkout_session(
        self,
        amount: int,
        currency: str,
        success_ref: str,
        cancel_ref: str,
        metadata: Dict[str, str],
        customer_email: Optional[str] = None,
    ) -> CheckoutSession:
        customer_id = None
        with _translated("checkout"):
            if customer_email:
                customer = stripe.Customer.create(
                    api_key=self.api_key,
                    email=customer_email,
                    metadata={"business_id": metadata.get("business_id", "")},
                )
                customer_id = customer.id

            params = {
                "mode": "payment",
                "payment_method_types": ["card"],
                "line_items": [{
                    "price_data": {
                        "currency": currency.lower(),
                        "product_data": {"name": self.product_name},
                        "unit_amount": amount,
                    },
                    "quantity": 1,
                }],
                "success_url": success_ref,
                "cancel_url": cancel_ref,
                "metadata": metadata,
            }
            if customer_id:
                params["customer"] = customer_id
            session = stripe.checkout.Session.create(api_key=self.api_key, **params)

        logger.debug("Created Stripe checkout session %s", session.id)
        return CheckoutSession(session_id=session.id, redirect_url=session.url, customer_id=customer_id)

    def confirm_session(self, session_id: str) -> SessionConfirmation:
        with _translated("session lookup"):
            session = stripe.checkout.Session.retrieve(session_id, api_key=self.api_key)
        return _session_confirmation(session)

    def transfer(
        self,
        destination_account: str,
        amount: int,
        currency: str,
        group_ref: str,
        idempotency_key: str,
    ) -> str:
        with _translated("transfer"):
            transfer = stripe.Transfer.create(
                api_key=self.api_key,
                amount=amount,
                currency=currency.lower(),
                destination=destination_account,
                transfer_group=group_ref,
                idempotency_key=idempotency_key,
            )
        return transfer.id

    def refund(self, payment_ref: str, reason: str, amount: int, idempotency_key: str) -> str:
        with _translated("refund"):
            refund = stripe.Refund.create(
                api_key=self.api_key,
                payment_intent=payment_ref,
                amount=amount,
                # Stripe only accepts its own reason codes; the free text goes in metadata
                reason="requested_by_customer",
                metadata={"reason": reason},
                idempotency_key=idempotency_key,
            )
        return refund.id

    def create_payout_account(self, email: str, country: str) -> str:
        with _translated("account creation"):
            account = stripe.Account.create(
                api_key=self.api_key,
                type="standard",
                country=country,
                email=email,
                metadata={"user_type": "creator"},
            )
        return account.id

    def get_payout_account(self, account_id: str) -> PayoutAccountStatus:
        with _translated("account lookup"):
            account = stripe.Account.retrieve(account_id, api_key=self.api_key)
        return PayoutAccountStatus(
            payouts_enabled=bool(account.payouts_enabled),
            charges_enabled=bool(account.charges_enabled),
        )

    def create_onboarding_link(self, account_id: str, refresh_ref: str, return_ref: str) -> str:
        with _translated("onboarding link"):
            link = stripe.AccountLink.create(
                api_key=self.api_key,
                account=account_id,
                refresh_url=refresh_ref,
                return_url=return_ref,
                type="account_onboarding",
            )
        return link.url

    def parse_callback(self, payload: bytes, signature: str) -> CallbackEvent:
        """Verify and decode a Stripe webhook.

        Raises:
            CallbackVerificationError: Bad or missing signature
            ValidationError: Payload is not a valid event
        """
        if not signature:
            raise CallbackVerificationError("Missing Stripe-Signature header")
        try:
            event = stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except stripe.SignatureVerificationError as exc:
            logger.warning("Rejected webhook with invalid signature")
            raise CallbackVerificationError(f"Invalid webhook signature: {exc}") from exc
        except ValueError as exc:
            raise ValidationError(f"Invalid webhook payload: {exc}") from exc

        obj = event.data.object
        if event.type in CHECKOUT_EVENTS:
            outcome = CHECKOUT_EVENTS[event.type]
            if outcome is None:
                outcome = _session_confirmation(obj).outcome
            return CallbackEvent(
                kind="checkout",
                event_id=event.id,
                session_id=obj.id,
                outcome=outcome,
                reason="checkout session expired" if event.type == "checkout.session.expired" else None,
            )
        if event.type == "account.updated":
            return CallbackEvent(
                kind="account",
                event_id=event.id,
                account_reference=obj.id,
                payouts_enabled=bool(obj.payouts_enabled),
                charges_enabled=bool(obj.charges_enabled),
            )
        return CallbackEvent(kind="ignored", event_id=event.id)
