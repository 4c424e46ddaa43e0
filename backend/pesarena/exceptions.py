"""
Payment Exception Hierarchy

Error codes for the payment flow. The code prefix tells callers which side
failed: bad input (payment:), the M-Pesa gateway (gateway:), the record store
(store:) or callback processing after acknowledgement (reconciliation:).
"""
from typing import Optional, Dict, Any


class PaymentError(Exception):
    """
    Base exception for all payment flow errors.

    Carries a stable error code, a human readable message and optional
    structured details. status_code is the HTTP status used by the API layer.
    """

    status_code = 400

    def __init__(
        self,
        error_code: str,
        message: str,
        details: Optional[Dict[str, Any]] = None
    ):
        self.error_code = error_code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to API error response format."""
        return {
            "error": self.message,
            "error_code": self.error_code,
            "details": self.details
        }


class ValidationError(PaymentError):
    """
    Client input rejected before any network call.

    Examples:
    - Phone number that does not normalize to 254XXXXXXXXX
    - Non-positive amount
    - Registration approval before payment completed
    """

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("payment:validation", message, details)


class AuthError(PaymentError):
    """
    Gateway credential or token failure.

    May be retried after a delay; token acquisition is idempotent.
    """

    status_code = 502

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("gateway:auth", message, details)


class GatewayError(PaymentError):
    """
    The provider rejected a push or payout request.

    Not retried automatically: each push may prompt the payer's phone.
    """

    status_code = 502

    def __init__(
        self,
        code: Optional[str],
        description: str,
        details: Optional[Dict[str, Any]] = None
    ):
        self.code = code
        self.description = description
        details = dict(details or {})
        details.setdefault("code", code)
        details.setdefault("description", description)
        super().__init__("gateway:rejected", f"{description} (code={code})", details)


class ConflictError(PaymentError):
    """
    Duplicate record or an operation racing an in-flight one.

    Examples:
    - A second attempt with an existing correlation id
    - A retried initiation whose first call has not bound a correlation id
    - Registering twice for the same tournament
    """

    status_code = 409

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("store:conflict", message, details)


class AttemptNotFoundError(PaymentError):
    """Requested record does not exist."""

    status_code = 404

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("store:not_found", message, details)


class PaymentDeclinedError(PaymentError):
    """
    The payment attempt resolved as failed.

    Examples:
    - 1032: request cancelled by the user
    - 1: insufficient balance
    - 2001: wrong PIN
    """

    status_code = 402

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("payment:declined", message, details)


class PaymentTimeoutError(PaymentError, TimeoutError):
    """
    The caller stopped waiting for a resolution.

    The underlying attempt is untouched and may still resolve later.
    """

    status_code = 504

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("payment:timeout", message, details)


class ReconciliationGap(PaymentError):
    """
    Callback processing failed, or left state inconsistent, after the
    provider was already acknowledged. Logged for manual follow-up and never
    returned to the provider.
    """

    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("reconciliation:gap", message, details)
