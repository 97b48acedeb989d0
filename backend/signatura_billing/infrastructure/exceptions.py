"""
Billing Errors

Every error raised by the service derives from SignaturaBillingError.
Keyword context passed at the raise site (provider, table, missing_keys...)
becomes the ``details`` object of the JSON error body; main.py maps each
class to an HTTP status.
"""

from typing import Any, Dict, Optional


class SignaturaBillingError(Exception):
    """Base class. ``None`` valued context is left out of ``details``."""

    def __init__(
        self,
        message: str,
        original_error: Optional[Exception] = None,
        **context: Any,
    ):
        super().__init__(message)
        self.message = message
        self.original_error = original_error
        self.details: Dict[str, Any] = {
            key: value for key, value in context.items() if value is not None
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": type(self).__name__,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(SignaturaBillingError):
    """Malformed request or webhook input."""


class DatabaseError(SignaturaBillingError):
    """A subscription store read or write failed (context: operation, table)."""


class NotFoundError(DatabaseError):
    """No subscription row for the user."""


class InvalidTransitionError(SignaturaBillingError):
    """The operation breaks a lifecycle rule (context: current, requested)."""


class ConfigurationError(SignaturaBillingError):
    """Required settings are absent (context: missing_keys)."""


class GatewayError(SignaturaBillingError):
    """Grow or Morning call failed (context: provider, status_code)."""


class WebhookVerificationError(SignaturaBillingError):
    """Inbound webhook key did not match."""
