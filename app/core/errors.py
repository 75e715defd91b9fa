"""
Error taxonomy for plan lifecycle and billing operations.

Services raise these; app.main maps them to HTTP responses. The validator and
the quota ledger return typed results instead of raising.
"""
from typing import Any, Dict, Optional


class BillingError(Exception):
    """Base class for billing subsystem errors."""

    status_code = 500
    error_code = "billing_error"
    retryable = False

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}

    def to_dict(self) -> Dict[str, Any]:
        payload = {
            "error": self.error_code,
            "message": self.message,
            "retryable": self.retryable,
        }
        payload.update(self.detail)
        return payload


class ValidationError(BillingError):
    """Malformed or impossible request (unknown plan, bad billing period, missing price)."""

    status_code = 422
    error_code = "validation_error"


class GatewayError(BillingError):
    """Base for failures talking to the billing provider."""

    status_code = 502
    error_code = "gateway_error"


class GatewayUnavailable(GatewayError):
    """Provider timed out or returned 5xx after all retry attempts."""

    status_code = 503
    error_code = "gateway_unavailable"
    retryable = True

    def __init__(self, message: str, retry_after: int = 5, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message, detail)
        self.retry_after = retry_after


class GatewayRejected(GatewayError):
    """Provider refused the request (4xx). Retrying will not help."""

    status_code = 400
    error_code = "gateway_rejected"

    def __init__(self, message: str, provider_code: Optional[str] = None,
                 detail: Optional[Dict[str, Any]] = None):
        super().__init__(message, detail)
        self.provider_code = provider_code
        if provider_code:
            self.detail.setdefault("provider_code", provider_code)


class GatewayResponseError(GatewayError):
    """Provider answered with a payload that cannot be mapped to our types."""

    status_code = 502
    error_code = "gateway_response_invalid"


class InconsistentState(BillingError):
    """
    Local state disagrees with the provider.

    Never surfaced to clients: reconciliation logs it and trusts the provider.
    """

    error_code = "inconsistent_state"


class WebhookSignatureError(BillingError):
    """Webhook payload failed signature verification."""

    status_code = 400
    error_code = "invalid_signature"


class QuotaExceeded(BillingError):
    """Raised only at the HTTP boundary when a generation would exceed the cycle limit."""

    status_code = 429
    error_code = "quota_exceeded"


class AccessDenied(BillingError):
    """Raised only at the HTTP boundary when the plan does not include a capability."""

    status_code = 402
    error_code = "plan_restriction"
