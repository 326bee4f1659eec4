"""
Exception hierarchy for the chatbot API.

ChatServiceError subclasses are terminal outcomes of a request: each carries the
HTTP status and the user-facing message the API returns as {"error": message}.
RetrievalError and CompletionError are raised by the upstream clients and carry
enough detail (failure kind, mid-stream or not) for the pipeline to choose a
terminal outcome.
"""
from typing import Dict, Optional

from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError


class ChatServiceError(Exception):
    """Base class for terminal request failures."""
    status_code = 500
    default_message = "An unexpected error occurred. Please try again."

    def __init__(self, message: Optional[str] = None, headers: Optional[Dict[str, str]] = None):
        self.message = message or self.default_message
        self.headers = headers or {}
        super().__init__(self.message)


class ValidationFailed(ChatServiceError):
    status_code = 400
    default_message = "Invalid request"


class Unauthorized(ChatServiceError):
    status_code = 401
    default_message = "Unauthorized"


class Forbidden(ChatServiceError):
    status_code = 403
    default_message = "Forbidden"


class NotFound(ChatServiceError):
    status_code = 404
    default_message = "Resource not found. Please refresh and try again."


class RateLimitExceeded(ChatServiceError):
    """Identified user is over quota. Carries the rate limit headers."""
    status_code = 429
    default_message = "Rate limit exceeded. Please wait a moment before sending another message."

    def __init__(self, limit: int, remaining: int, reset_at: int, message: Optional[str] = None):
        self.limit = limit
        self.remaining = remaining
        self.reset_at = reset_at
        super().__init__(message, headers={
            "X-RateLimit-Limit": str(limit),
            "X-RateLimit-Remaining": str(remaining),
            "X-RateLimit-Reset": str(reset_at),
        })


class InternalFailure(ChatServiceError):
    status_code = 500


class ServiceUnavailable(ChatServiceError):
    status_code = 503
    default_message = "Service temporarily unavailable. Please try again."


class GatewayTimeout(ChatServiceError):
    status_code = 504
    default_message = "Connection timeout. Please try again."


# ============================================================================
# Retrieval failures
# ============================================================================

class RetrievalError(Exception):
    """Base class for Retrieval Client failures."""


class EmbeddingError(RetrievalError):
    """Query embedding could not be generated (provider degraded or misconfigured)."""


class VectorSearchConnectionError(RetrievalError):
    """Vector store unreachable or timed out."""


class RetrievalQueryError(RetrievalError):
    """Any other retrieval failure. The turn continues without context."""


# ============================================================================
# Completion failures
# ============================================================================

class CompletionError(Exception):
    """
    Failure reported by a completion provider.

    kind is one of: overloaded, quota, auth, bad_request, timeout, network, other.
    mid_stream is True when at least one fragment was already delivered.
    """
    KINDS = ("overloaded", "quota", "auth", "bad_request", "timeout", "network", "other")

    def __init__(self, kind: str, detail: str = "", mid_stream: bool = False, status_code: Optional[int] = None):
        if kind not in self.KINDS:
            kind = "other"
        self.kind = kind
        self.detail = detail
        self.mid_stream = mid_stream
        self.status_code = status_code
        super().__init__(f"{kind}: {detail}" if detail else kind)

    @property
    def is_operator_facing(self) -> bool:
        """Credential problems need an operator, not a retry."""
        return self.kind == "auth"

    def to_service_error(self) -> ChatServiceError:
        """Map the provider failure kind to the terminal response."""
        if self.kind == "overloaded":
            return ServiceUnavailable("OpenAI service is busy. Please try again in a moment.")
        if self.kind == "quota":
            return ServiceUnavailable("Service temporarily unavailable. Please try again later.")
        if self.kind == "auth":
            return InternalFailure("Service configuration error. Please contact support.")
        if self.kind in ("timeout", "network"):
            return GatewayTimeout("Connection timeout. Please try again.")
        return InternalFailure("Unable to generate response. Please try again.")


# ============================================================================
# Store failures
# ============================================================================

def is_connectivity_error(exc: BaseException) -> bool:
    """True for database failures caused by an unreachable or dropped connection."""
    if isinstance(exc, (OperationalError, InterfaceError)):
        return True
    return isinstance(exc, DBAPIError) and bool(exc.connection_invalidated)
