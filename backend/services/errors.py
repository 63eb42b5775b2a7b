"""
Error taxonomy for the advisor services.

Each error carries a machine-readable ``code`` and the HTTP status it maps
to; ``main.py`` renders them as ``{"error": ..., "code": ...}`` bodies.
Authentication failures stay on FastAPI's ``HTTPException`` (see auth.py).
"""

from datetime import datetime
from typing import Any, Dict, Optional


class AdvisorError(Exception):
    """Base class for errors surfaced to API callers."""

    code = "INTERNAL_SERVER_ERROR"
    status_code = 500

    def __init__(self, message: str, **extra: Any):
        super().__init__(message)
        self.message = message
        self.extra: Dict[str, Any] = extra

    def to_body(self) -> Dict[str, Any]:
        return {"error": self.message, "code": self.code, **self.extra}


class BadRequestError(AdvisorError):
    code = "BAD_REQUEST"
    status_code = 400


class NotFoundError(AdvisorError):
    """Missing resource, or one owned by someone else. Both look the same."""

    code = "NOT_FOUND"
    status_code = 404


class QuotaExceededError(AdvisorError):
    code = "RATE_LIMIT_EXCEEDED"
    status_code = 429

    def __init__(self, reset_at: datetime, message: Optional[str] = None):
        reset_iso = reset_at.isoformat().replace("+00:00", "Z")
        super().__init__(
            message or f"Daily message limit reached. Resets at {reset_iso}",
            resetAt=reset_iso,
        )
        self.reset_at = reset_at


class UsageStoreUnavailableError(AdvisorError):
    code = "SERVICE_UNAVAILABLE"
    status_code = 503


class UpstreamModelError(AdvisorError):
    """The generative model call failed."""

    code = "INTERNAL_SERVER_ERROR"
    status_code = 500


class ModelOutputError(UpstreamModelError):
    """The model answered, but not with something matching the expected schema."""


class ModelUnavailableError(UpstreamModelError):
    """No model client is configured."""

    code = "SERVICE_UNAVAILABLE"
    status_code = 503
