"""
Payment gateway integrations.

Provides the Stripe implementation of the engine's gateway interface.
"""

from .stripe_gateway import StripeGateway

__all__ = ["StripeGateway"]
