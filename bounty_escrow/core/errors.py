"""
Error taxonomy for the escrow engine.

Every error carries a ``public_message`` that is safe to show to the end
user; the full ``str()`` form may contain identifiers and is meant for logs.
"""

from typing import Optional


class EscrowError(Exception):
    """Base class for all engine errors."""

    public_message = "The payment operation could not be completed."

    def __init__(self, message: str, public_message: Optional[str] = None):
        super().__init__(message)
        if public_message is not None:
            self.public_message = public_message


class ValidationError(EscrowError):
    """Bad input: invalid amount, missing field. Never retried."""

    public_message = "The request is invalid."


class OutOfRange(ValidationError):
    """An amount falls outside the configured bounds."""

    def __init__(self, message: str):
        super().__init__(message, public_message=message)


class CallbackVerificationError(ValidationError):
    """A gateway callback failed authenticity checks."""

    public_message = "The payment notification could not be verified."


class ConflictError(EscrowError):
    """A state-machine guard failed or a concurrent transition won."""

    public_message = "The payment was changed by another request. Reload and try again."

    def __init__(self, current: str, attempted: str, detail: Optional[str] = None):
        message = f"Cannot apply '{attempted}' to escrow in state '{current}'"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.current = current
        self.attempted = attempted


class PreconditionFailed(EscrowError):
    """A payout destination is not ready; ``condition`` names what failed."""

    def __init__(self, condition: str, message: str):
        super().__init__(message, public_message=message)
        self.condition = condition


class GatewayUnavailable(EscrowError):
    """The payment gateway timed out or returned a server error."""

    public_message = "The payment provider is temporarily unavailable. Please try again later."


class NotFound(EscrowError):
    """Unknown escrow, bounty or session."""

    public_message = "The requested payment could not be found."


class Forbidden(EscrowError):
    """The requester does not own the resource."""

    public_message = "You are not allowed to perform this action."


class QuotaExceeded(Forbidden):
    """The user's subscription tier does not allow another action this period."""

    public_message = "You have reached your plan's limit for this month. Upgrade to continue."


class OperationCancelled(EscrowError):
    """The caller cancelled before any external call was dispatched."""

    public_message = "The operation was cancelled."


class GatewayDeclined(EscrowError):
    """The gateway definitively refused a request; no money moved."""

    public_message = "The payment provider declined the request."
