"""Exception hierarchy for the payment reconciliation service."""


class PaymentError(Exception):
    """Base exception for all payment service errors."""

    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message


class ValidationError(PaymentError):
    """Raised when request fields are missing or malformed."""

    status_code = 400


class NotFoundError(PaymentError):
    """Raised when a student or transaction does not exist."""

    status_code = 404


class ReferenceNotFound(NotFoundError):
    """Raised when the provider has no record of a reference."""


class Forbidden(PaymentError):
    """Raised when the caller may not act on a transaction."""

    status_code = 403


class DuplicateReference(PaymentError):
    """Raised when a provider reference is already stored."""

    status_code = 409


class AmountMismatch(PaymentError):
    """Raised when the provider reports a different amount or currency."""

    status_code = 409


class SignatureInvalid(PaymentError):
    """Raised when a webhook body fails signature verification."""

    status_code = 401


class GatewayUnavailable(PaymentError):
    """Raised on transport failure, timeout or provider-side error."""

    status_code = 502


class GatewayRejected(PaymentError):
    """Raised when the provider declines a request."""

    status_code = 502


class ReconciliationConflict(PaymentError):
    """Raised when the store reports a state the atomic transition forbids."""

    status_code = 500


class ProjectionError(PaymentError):
    """Raised when the student payment projection could not be updated."""
