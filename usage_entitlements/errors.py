"""
Entitlement error hierarchy.

Business-rule denials are returned as Decision values, not raised.
Exceptions here cover missing records and infrastructure failures:
- EntitlementError: base for all entitlement failures
- UserNotFoundError / PlanNotFoundError: lookup misses (callers fail closed)
- StorageUnavailableError: the usage store could not be reached (HTTP 503)
- BillingProviderError: billing provider call failed (best-effort paths only)
- WebhookSignatureError: webhook payload failed verification (HTTP 400)
"""

from typing import Any, Dict, Optional


class EntitlementError(Exception):
    """Base exception for entitlement-related failures."""

    error_code = "ENTITLEMENT_ERROR"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"error": self.error_code, "message": self.message}


class UserNotFoundError(EntitlementError):
    error_code = "USER_NOT_FOUND"

    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__(f"User {user_id} not found")


class PlanNotFoundError(EntitlementError):
    error_code = "PLAN_NOT_FOUND"

    def __init__(self, identifier: str):
        self.identifier = identifier
        super().__init__(f"Unknown plan: {identifier}")


class StorageUnavailableError(EntitlementError):
    """
    Raised when the usage store fails (fail-closed).

    Never translated into an allow; the HTTP layer surfaces it as 503.
    """

    error_code = "STORAGE_UNAVAILABLE"

    def __init__(self, operation: str, cause: Optional[Exception] = None):
        self.operation = operation
        self.cause = cause
        super().__init__(f"Usage store unavailable during {operation}")

    def to_dict(self) -> dict:
        return {
            "error": self.error_code,
            "message": "Usage store temporarily unavailable",
            "operation": self.operation,
        }


class BillingProviderError(EntitlementError):
    """Error from the billing provider API."""

    error_code = "BILLING_PROVIDER_ERROR"

    def __init__(self, message: str, code: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.details = details or {}
        super().__init__(message)


class WebhookSignatureError(EntitlementError):
    error_code = "INVALID_SIGNATURE"
