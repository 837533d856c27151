"""
Error taxonomy for variation requests.

Admission and authorization errors are raised before any credit is touched.
Generation errors are raised by generator adapters and collected by the
dispatcher into per-variant failures; they never escape a dispatch.
"""

from typing import Any, Dict, Optional


class VariationError(Exception):
    """Base class for errors surfaced to the caller of the orchestrator."""
    code = "variation_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_payload(self) -> Dict[str, Any]:
        """Caller-facing rejection payload."""
        return {"error": self.code, "message": self.message}


class RateLimited(VariationError):
    """Requester exceeded the admission window."""
    code = "rate_limited"

    def __init__(self, requester_id: str, retry_after: float):
        super().__init__(f"Rate limit exceeded for {requester_id}. Please try again later.")
        self.requester_id = requester_id
        self.retry_after = retry_after

    def to_payload(self) -> Dict[str, Any]:
        payload = super().to_payload()
        payload["retry_after_seconds"] = max(0, int(self.retry_after))
        payload["remaining_requests"] = 0
        return payload


class InvalidRequest(VariationError):
    """Malformed, empty or oversized request."""
    code = "invalid_request"


class InsufficientCredits(VariationError):
    """Balance does not cover the required credits.

    Carries both numbers so the caller can prompt a top-up.
    """
    code = "insufficient_credits"

    def __init__(self, account_id: str, required: int, available: int):
        super().__init__(
            f"Insufficient credits for {account_id}: "
            f"{required} required, {available} available"
        )
        self.account_id = account_id
        self.required = required
        self.available = available

    def to_payload(self) -> Dict[str, Any]:
        payload = super().to_payload()
        payload.update({
            "credits_required": self.required,
            "credits_available": self.available,
            "need_to_purchase": True,
        })
        return payload


class GenerationError(Exception):
    """Failure of a single external generation call."""
    code = "generation_failed"

    def __init__(self, reason: str, cause: Optional[BaseException] = None):
        super().__init__(reason)
        self.reason = reason
        self.cause = cause


class UpstreamUnavailable(GenerationError):
    """Generation capability or its credentials are unavailable."""
    code = "service_unavailable"


class UpstreamRejected(GenerationError):
    """Provider refused the call (policy, bad input)."""
    code = "upstream_rejected"


class GenerationTimeout(GenerationError):
    """Call or request deadline exceeded."""
    code = "timeout"
