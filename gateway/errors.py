"""
Error types for the fetch path.

Every error carries enough classification for a client to tell
"try again shortly" (retryable) from "data not available".

IMPORTANT: Never expose data provider names in user-facing error messages.
Use to_client_dict(), which sanitizes the message.
"""
import re
from enum import Enum
from typing import Any, Dict, Optional

# Provider names that should never be shown to users
HIDDEN_PROVIDERS = ("espn",)


def sanitize_error_message(message: str) -> str:
    """Remove provider names from a message before it reaches a client."""
    sanitized = message
    for provider in HIDDEN_PROVIDERS:
        sanitized = re.sub(rf"\s*from\s+{provider}", "", sanitized, flags=re.IGNORECASE)
        sanitized = re.sub(rf"{provider}\s*adapter", "data provider", sanitized, flags=re.IGNORECASE)
        sanitized = re.sub(provider, "data provider", sanitized, flags=re.IGNORECASE)
    return re.sub(r"\s{2,}", " ", sanitized).strip()


class GatewayError(Exception):
    """Base error with an HTTP status, a stable code and a retry hint."""

    status_code: int = 500
    code: str = "INTERNAL_ERROR"
    retryable: bool = False

    def __init__(self, message: str = "Internal error"):
        super().__init__(message)
        self.message = message

    def to_client_dict(self) -> Dict[str, Any]:
        """Client-facing error body."""
        return {
            "error": {
                "code": self.code,
                "message": sanitize_error_message(self.message),
                "retryable": self.retryable,
            }
        }


class CacheUnavailable(GatewayError):
    """Cache backend unreachable. Absorbed by the orchestrator, never surfaced."""

    status_code = 503
    code = "CACHE_UNAVAILABLE"
    retryable = True


class BudgetReason(Enum):
    """Why the budget limiter refused an upstream call."""
    DAILY_EXHAUSTED = "daily_exhausted"
    MINUTE_EXHAUSTED = "minute_exhausted"
    BACKOFF = "backoff"
    BUCKET_EXHAUSTED = "bucket_exhausted"


class BudgetExhausted(GatewayError):
    """No upstream budget left and no stale copy to fall back on."""

    status_code = 429
    code = "RATE_LIMITED"
    retryable = True

    def __init__(
        self,
        reason: BudgetReason,
        retry_after_seconds: Optional[float] = None,
        message: Optional[str] = None,
    ):
        super().__init__(message or f"Upstream budget exhausted ({reason.value})")
        self.reason = reason
        self.retry_after_seconds = retry_after_seconds

    def to_client_dict(self) -> Dict[str, Any]:
        body = super().to_client_dict()
        if self.retry_after_seconds is not None:
            body["error"]["retryAfter"] = max(1, int(round(self.retry_after_seconds)))
        return body


class UpstreamError(GatewayError):
    """Base for failures of a single upstream call."""

    status_code = 502
    code = "PROVIDER_ERROR"


class UpstreamTimeout(UpstreamError):
    status_code = 504
    code = "UPSTREAM_TIMEOUT"
    retryable = True


class TransientNetworkError(UpstreamError):
    """Connection reset, DNS failure and similar."""

    code = "UPSTREAM_UNAVAILABLE"
    retryable = True


class UpstreamRejected(UpstreamError):
    """Provider answered with a non-2xx status."""

    code = "UPSTREAM_REJECTED"

    def __init__(self, status: int, message: Optional[str] = None):
        super().__init__(message or f"Upstream rejected request with status {status}")
        self.status = status
        if status == 404:
            self.status_code = 404
            self.code = "NOT_FOUND"


class UpstreamUnparseable(UpstreamError):
    code = "UPSTREAM_UNPARSEABLE"


class UnsupportedResource(GatewayError):
    """Request the provider adapter cannot map to an upstream call."""

    status_code = 400
    code = "BAD_REQUEST"
