"""
Error taxonomy for the escrow engine.
Every error carries the HTTP status the API layer reports and whether the
caller may safely retry the same operation.
"""
from typing import Optional


class EscrowError(Exception):
    status_code = 400
    retryable = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(EscrowError):
    status_code = 422


class ConfigurationError(EscrowError):
    status_code = 500


class NotFound(EscrowError):
    status_code = 404


class NotAvailable(EscrowError):
    status_code = 409


class SelfPurchaseForbidden(EscrowError):
    status_code = 400


class AlreadyReserved(EscrowError):
    status_code = 409


class InvalidState(EscrowError):
    """The order's current status does not allow the requested operation."""

    status_code = 409

    def __init__(self, action: str, current_status: Optional[str] = None):
        if current_status:
            message = f"Order is not eligible for {action} in its current state ({current_status})"
        else:
            message = f"Order is not eligible for {action} in its current state"
        super().__init__(message)
        self.action = action
        self.current_status = current_status


class InvalidTransition(EscrowError):
    status_code = 409


class NoPaymentToRefund(EscrowError):
    status_code = 409


class SellerNotOnboarded(EscrowError):
    status_code = 409


class Unauthorized(EscrowError):
    status_code = 403


class SignatureVerificationFailed(EscrowError):
    status_code = 400


class CollaboratorUnavailable(EscrowError):
    status_code = 503
    retryable = True


class GatewayError(EscrowError):
    """A hold, transfer or reversal call to the payment gateway failed."""

    status_code = 502
    retryable = True
