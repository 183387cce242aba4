"""
Error taxonomy for the milestone payment core.

Every error carries a stable ``code`` and the HTTP status the API layer
answers with. Validation and state errors are safe to show to the caller;
``RailError`` keeps the processor reason for the audit log and exposes a
generic message.
"""
from typing import Any, Dict, Optional


class PaymentPlatformError(Exception):
    """Base error for payment platform failures."""

    code = 'payment_error'
    http_status = 400

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    @property
    def public_message(self) -> str:
        return self.message


class ValidationError(PaymentPlatformError):
    """Raised when a request fails validation."""

    code = 'validation_error'


class NotFoundError(PaymentPlatformError):
    code = 'not_found'
    http_status = 404


class NoAuthorizationError(PaymentPlatformError):
    """No active payment authorization covers the requested charge."""

    code = 'no_authorization'
    http_status = 409


class CapExceededError(PaymentPlatformError):
    """Charge would exceed the per-milestone or total authorized cap."""

    code = 'cap_exceeded'
    http_status = 409


class InvalidStateError(PaymentPlatformError):
    """Requested transition is not valid for the current status."""

    code = 'invalid_state'
    http_status = 409


class VerificationRequiredError(PaymentPlatformError):
    code = 'verification_required'
    http_status = 403


class VerificationFailedError(PaymentPlatformError):
    code = 'verification_failed'
    http_status = 403


class DisputeWindowClosedError(PaymentPlatformError):
    code = 'dispute_window_closed'


class RailError(PaymentPlatformError):
    """External payment processor failure; possibly transient."""

    code = 'payment_failed'
    http_status = 502

    def __init__(self, message: str, *, decline_category: str = 'processor_error',
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details=details)
        self.decline_category = decline_category

    @property
    def public_message(self) -> str:
        return 'Payment processing failed.'


class PaymentPendingError(PaymentPlatformError):
    """
    The processor outcome is not known yet. The charge stays open with its
    reservation held until reconciliation settles or fails it.
    """

    code = 'payment_pending'
    http_status = 202


class AuditIntegrityError(PaymentPlatformError):
    """Stored audit hash does not match the recomputed one."""

    code = 'audit_integrity'
    http_status = 500
