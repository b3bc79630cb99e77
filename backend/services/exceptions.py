"""
Licensing exceptions.

Every error the licensing core surfaces carries a machine-readable code, a
human message, structured details and whether the caller may retry.
"""

from typing import Any, Dict, Optional


class LicenseError(Exception):
    """Base exception for all licensing errors."""

    code = "LICENSE_ERROR"
    http_status = 500
    retryable = False

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.original_error = original_error

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API responses."""
        return {
            "error": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
            "details": self.details,
        }


class PolicyRejectionError(LicenseError):
    """Raised when an abuse policy refuses a registration.

    `risk_event` holds the risk event fields to persist once the refused
    transaction has been rolled back.
    """

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        risk_event: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, details)
        self.risk_event = risk_event


class DeviceCapExceededError(PolicyRejectionError):
    """The user already has the maximum number of devices."""

    code = "DEVICE_CAP_EXCEEDED"
    http_status = 409


class RateLimitExceededError(PolicyRejectionError):
    """Too many devices were created for an IP or user in the current window."""

    code = "RATE_LIMIT_EXCEEDED"
    http_status = 429


class DeviceNotFoundError(LicenseError):
    """No device exists for the given fingerprint or id."""

    code = "DEVICE_NOT_FOUND"
    http_status = 404


class TrialIntegrityError(LicenseError):
    """A device row violates a trial invariant. Never auto-corrected."""

    code = "TRIAL_INTEGRITY_VIOLATION"
    http_status = 500

    def __init__(self, message: str, device_id: Optional[int] = None, violation: str = ""):
        details: Dict[str, Any] = {"violation": violation}
        if device_id is not None:
            details["device_id"] = device_id
        super().__init__(message, details)
        self.device_id = device_id
        self.violation = violation


class BillingProviderError(LicenseError):
    """The billing provider could not be reached or rejected the request."""

    code = "BILLING_PROVIDER_UNAVAILABLE"
    http_status = 503
    retryable = True


class SubscriptionNotFoundError(LicenseError):
    """A lifecycle event references a subscription that is not stored yet."""

    code = "SUBSCRIPTION_NOT_FOUND"
    http_status = 503
    retryable = True

    def __init__(self, external_subscription_id: Optional[str]):
        super().__init__(
            f"Subscription {external_subscription_id} not found",
            {"external_subscription_id": external_subscription_id},
        )
        self.external_subscription_id = external_subscription_id


class InvalidWebhookError(LicenseError):
    """A webhook failed signature verification or is malformed."""

    code = "INVALID_WEBHOOK"
    http_status = 400


class UpdateUnavailableError(LicenseError):
    """No released build can answer an update check. Fails closed.

    Covers a platform/channel with no active build and a client reporting a
    build newer than any release; neither is a server fault.
    """

    code = "UPDATE_UNAVAILABLE"
    http_status = 409
