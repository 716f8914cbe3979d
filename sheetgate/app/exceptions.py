"""Custom exceptions for the gateway application."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from sheetgate.app.middleware.rate_limit import RateLimitResult


class GatewayException(Exception):
    """Base class for gateway exceptions with HTTP status code.

    All custom exceptions should inherit from this class and define
    their specific status_code for consistent HTTP response handling.
    """
    status_code: int = 500
    error_code: str = "internal_error"

    def __init__(self, message: str = "Gateway error"):
        self.message = message
        super().__init__(message)


class UnauthorizedError(GatewayException):
    """Missing, invalid or expired bearer credential.

    Maps to HTTP 401 Unauthorized.
    """
    status_code = 401
    error_code = "unauthorized"

    def __init__(self, detail: str = "Unauthorized: Invalid or expired token"):
        self.detail = detail
        super().__init__(detail)


class ProfileNotFoundError(GatewayException):
    """The credential is valid but no account row backs it.

    Distinct from UnauthorizedError so the client can re-provision the
    account instead of only signing in again. Maps to HTTP 404.
    """
    status_code = 404
    error_code = "profile_not_found"

    def __init__(self, account_id: str):
        self.account_id = account_id
        super().__init__("User profile not found. Please try signing in again.")


class QuotaExceededError(GatewayException):
    """Raised when the quota ledger refuses to consume another unit.

    Carries the usage snapshot so the client can render upgrade messaging.
    Maps to HTTP 403 Forbidden.
    """
    status_code = 403
    error_code = "quota_exceeded"

    def __init__(
        self,
        current: int,
        limit: int,
        plan: str,
        subscription_status: str,
        detail: str | None = None,
    ):
        self.current = current
        self.limit = limit
        self.plan = plan
        self.subscription_status = subscription_status
        super().__init__(detail or _quota_message(plan, subscription_status))

    def to_response(self) -> dict:
        return {
            "success": False,
            "error": "Usage limit reached",
            "message": self.message,
            "usage": {
                "current": self.current,
                "limit": self.limit,
                "limitReached": True,
                "plan": self.plan,
            },
        }


def _quota_message(plan: str, subscription_status: str) -> str:
    if subscription_status == "past_due":
        return "Your payment is past due. Please update your payment method to restore full access."
    if plan == "FREE":
        return "Free plan limit reached. Please upgrade to continue."
    return "Monthly limit reached. Limit resets next billing cycle."


class RateLimitedError(GatewayException):
    """Raised when the rate limiter denies a request.

    Maps to HTTP 429 Too Many Requests with Retry-After.
    """
    status_code = 429
    error_code = "rate_limit_exceeded"

    def __init__(self, scope: str, result: "RateLimitResult"):
        self.scope = scope
        self.result = result
        message = (
            "Too many authentication attempts. Please try again later."
            if scope == "auth"
            else "Too many requests, please try again later."
        )
        super().__init__(message)


class StoreUnavailableError(GatewayException):
    """The durable account store could not be reached or the write failed.

    Never interpreted as either an allowed or a denied quota decision.
    Maps to HTTP 500 with a generic body.
    """
    status_code = 500
    error_code = "internal_error"

    def __init__(self, operation: str, detail: str = ""):
        self.operation = operation
        self.detail = detail
        super().__init__(f"Account store unavailable during {operation}: {detail}".rstrip(": "))


class CacheUnavailableError(Exception):
    """The shared cache store is unreachable.

    Never surfaced to clients: every caller falls through to the durable store.
    """

    def __init__(self, operation: str, detail: str = ""):
        self.operation = operation
        self.detail = detail
        super().__init__(f"Shared cache unavailable during {operation}: {detail}".rstrip(": "))


class UpstreamError(GatewayException):
    """A third-party service (identity provider, Google, Stripe) failed.

    Maps to HTTP 502 Bad Gateway.
    """
    status_code = 502
    error_code = "upstream_error"

    def __init__(self, service: str, detail: str = "Upstream service error"):
        self.service = service
        super().__init__(detail)


class BadRequestError(GatewayException):
    """Maps to HTTP 400 Bad Request."""
    status_code = 400
    error_code = "bad_request"


class ServiceNotConfiguredError(GatewayException):
    """An optional integration is not configured. Maps to HTTP 503."""
    status_code = 503
    error_code = "service_not_configured"
