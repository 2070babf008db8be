"""Error taxonomy shared by every search component and the HTTP layer."""

from __future__ import annotations

from datetime import datetime
from typing import Any


class SearchError(Exception):
    """Base class for errors surfaced to callers of the search service."""

    kind = "search_error"
    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_payload(self) -> dict[str, Any]:
        return {"error": self.kind, "message": self.message}


class ValidationError(SearchError):
    """Malformed input. Raised before any provider is contacted."""

    kind = "validation_error"
    status_code = 400


class ConfigurationError(SearchError):
    """A component was constructed with an invalid configuration."""

    kind = "configuration_error"
    status_code = 500


class RateLimitExceeded(SearchError):
    kind = "rate_limit_exceeded"
    status_code = 429

    def __init__(
        self,
        message: str,
        *,
        limit: int,
        remaining: int,
        reset: float,
        retry_after: float,
    ) -> None:
        super().__init__(message)
        self.limit = limit
        self.remaining = remaining
        self.reset = reset
        self.retry_after = retry_after

    def to_payload(self) -> dict[str, Any]:
        return {
            **super().to_payload(),
            "limit": self.limit,
            "remaining": self.remaining,
            "reset": self.reset,
            "retry_after": self.retry_after,
        }


class QuotaExceeded(SearchError):
    kind = "quota_exceeded"
    status_code = 402

    def __init__(
        self,
        message: str,
        *,
        resource: str,
        limit: int,
        remaining: int,
        reset_at: datetime | None,
    ) -> None:
        super().__init__(message)
        self.resource = resource
        self.limit = limit
        self.remaining = remaining
        self.reset_at = reset_at

    def to_payload(self) -> dict[str, Any]:
        return {
            **super().to_payload(),
            "resource": self.resource,
            "limit": self.limit,
            "remaining": self.remaining,
            "reset_at": self.reset_at.isoformat() if self.reset_at else None,
        }


class ProviderError(SearchError):
    """An external provider (embeddings, rerank, LLM) failed."""

    kind = "provider_error"
    status_code = 502

    def __init__(self, message: str, *, provider: str) -> None:
        super().__init__(message)
        self.provider = provider

    def to_payload(self) -> dict[str, Any]:
        return {**super().to_payload(), "provider": self.provider}


class ProviderTimeout(ProviderError):
    kind = "provider_timeout"
    status_code = 504


class RetrievalError(SearchError):
    """Search cannot proceed, e.g. the query could not be embedded."""

    kind = "retrieval_error"
    status_code = 502
