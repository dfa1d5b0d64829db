"""
Payflow Exception Hierarchy

Every error carries a stable error code, a client-safe message and optional
details. Orchestrator operations return these as values inside ``Err``
results; the HTTP layer maps them to status codes.
"""
from typing import Optional, Dict, Any, List


class PaymentError(Exception):
    """
    Base exception for all payment orchestration errors.

    ``status_code`` is the HTTP status the API layer answers with.
    """

    status_code: int = 500

    def __init__(
        self,
        error_code: str,
        message: str,
        details: Optional[Dict[str, Any]] = None
    ):
        self.error_code = error_code
        self.message = message
        self.details = details or {}
        self.headers: Dict[str, str] = {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to API error response format."""
        return {
            "success": False,
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details
        }


class ValidationError(PaymentError):
    """
    Request failed shape or business-rule validation.

    ``details["fields"]`` holds one ``{"field", "message"}`` entry per problem.
    Never persisted.
    """

    status_code = 400

    def __init__(self, message: str, fields: Optional[List[Dict[str, str]]] = None):
        super().__init__("validation_error", message, {"fields": fields or []})

    @property
    def fields(self) -> List[Dict[str, str]]:
        return self.details["fields"]


class UnauthorizedError(PaymentError):
    """Missing, invalid, expired or revoked bearer token."""

    status_code = 401

    def __init__(self, message: str = "Authentication required"):
        super().__init__("unauthorized", message)


class ForbiddenError(PaymentError):
    """Token is valid but carries none of the required roles."""

    status_code = 403

    def __init__(self, message: str = "Insufficient permissions"):
        super().__init__("forbidden", message)


class RateLimitError(PaymentError):
    """Client exceeded the fixed-window limit for a route."""

    status_code = 429

    def __init__(self, retry_after: int, headers: Optional[Dict[str, str]] = None):
        super().__init__(
            "rate_limited",
            "Too many requests",
            {"retry_after": retry_after}
        )
        self.retry_after = retry_after
        self.headers = headers or {"Retry-After": str(retry_after)}


class GatewayError(PaymentError):
    """
    External provider call failed.

    Examples:
    - Network error or timeout talking to the provider (retryable)
    - Provider answered 5xx or 429 (retryable)
    - Provider rejected the request with a 4xx (terminal)

    The message may contain provider text; it is logged and stored in
    ``metadata.errorMessage`` but never returned to clients.
    """

    status_code = 500

    def __init__(
        self,
        message: str,
        retryable: bool = False,
        provider: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__("gateway_error", message, details)
        self.retryable = retryable
        self.provider = provider

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": False,
            "error_code": self.error_code,
            "message": "Payment processing failed",
            "details": {}
        }


class SignatureError(PaymentError):
    """Webhook signature missing or invalid. Payload is discarded."""

    status_code = 401

    def __init__(self, message: str = "Invalid webhook signature"):
        super().__init__("signature_invalid", message)


class ReconciliationConflict(PaymentError):
    """
    Webhook asked for a transition the state machine forbids.

    Example:
    - Provider reports ``failed`` for a transaction already ``completed``

    Logged and acknowledged with 200 so the provider stops retrying.
    """

    status_code = 200

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("reconciliation_conflict", message, details)


class InvalidTransitionError(PaymentError):
    """A caller-initiated operation is not allowed from the current status."""

    status_code = 409

    def __init__(self, current: str, target: str):
        super().__init__(
            "invalid_transition",
            f"Cannot move transaction from {current} to {target}",
            {"current_status": current, "target_status": target}
        )
        self.current = current
        self.target = target


class NotFoundError(PaymentError):
    """Referenced transaction does not exist."""

    status_code = 404

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("not_found", message, details)


class PersistenceError(PaymentError):
    """
    Transaction Store unavailable.

    The orchestrator cannot mask this: no external call is made when the
    preceding store write cannot be confirmed.
    """

    status_code = 500

    def __init__(self, message: str = "Transaction store unavailable"):
        super().__init__("persistence_error", message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": False,
            "error_code": self.error_code,
            "message": "An unexpected error occurred",
            "details": {}
        }
