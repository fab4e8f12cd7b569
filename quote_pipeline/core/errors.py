"""
Shared exception types for quote_pipeline.

Adapters raise ProviderError subclasses; the resolver classifies them and
only lets AllSourcesExhausted (or a cancellation) reach its callers.
"""

from __future__ import annotations

from typing import Optional, Sequence


class QuotePipelineError(Exception):
    """Base exception for quote_pipeline; catch this for any package-raised error."""

    pass


class ProviderError(QuotePipelineError):
    """A single upstream provider failed to answer."""

    retryable = True
    disables_provider = False

    def __init__(self, message: str, provider_name: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.provider_name = provider_name

    def __str__(self) -> str:
        if self.provider_name:
            return f"{self.provider_name}: {self.message}"
        return self.message


class SymbolNotFound(ProviderError):
    """Symbol unknown to the provider (includes zero-price answers)."""

    retryable = False


class InvalidRequest(ProviderError):
    """Malformed input; retrying cannot help."""

    retryable = False


class RateLimited(ProviderError):
    """Provider quota exceeded. Not retried; the provider is cooled down."""

    retryable = False
    disables_provider = True


class AuthorizationFailed(ProviderError):
    """Missing, invalid or revoked API credentials."""

    retryable = False
    disables_provider = True


class ProviderTimeout(ProviderError):
    """Deadline exceeded while waiting on the provider."""


class ServerError(ProviderError):
    """HTTP 5xx from the provider."""

    def __init__(
        self, message: str, provider_name: Optional[str] = None, status_code: Optional[int] = None
    ) -> None:
        super().__init__(message, provider_name)
        self.status_code = status_code


class NetworkError(ProviderError):
    """Connection-level failure (DNS, reset, TLS)."""


class DecodeError(ProviderError):
    """Response shape did not match what the adapter expects.

    Retried once only: a repeat usually means the upstream schema changed.
    """

    max_retries = 1


class RetriesExhausted(QuotePipelineError):
    """All attempts against one provider failed with retryable errors."""

    def __init__(self, provider_name: str, attempts: int, last_error: BaseException) -> None:
        super().__init__(
            f"{provider_name}: gave up after {attempts} attempt(s): {last_error}"
        )
        self.provider_name = provider_name
        self.attempts = attempts
        self.last_error = last_error


class RequestCancelled(QuotePipelineError):
    """The caller cancelled the request or its deadline passed."""

    def __init__(self, message: str = "request cancelled", deadline_exceeded: bool = False) -> None:
        super().__init__(message)
        self.deadline_exceeded = deadline_exceeded


class AllSourcesExhausted(QuotePipelineError):
    """No provider answered and no cached value exists."""

    def __init__(self, key: str, errors: Sequence[str] = ()) -> None:
        detail = "; ".join(errors) if errors else "no providers available"
        super().__init__(f"All sources exhausted for {key}: {detail}")
        self.key = key
        self.errors = list(errors)


def root_cause(exc: BaseException) -> BaseException:
    """Unwrap RetriesExhausted to the provider error that ended the last attempt."""
    if isinstance(exc, RetriesExhausted):
        return exc.last_error
    return exc


__all__ = [
    "AllSourcesExhausted",
    "AuthorizationFailed",
    "DecodeError",
    "InvalidRequest",
    "NetworkError",
    "ProviderError",
    "ProviderTimeout",
    "QuotePipelineError",
    "RateLimited",
    "RequestCancelled",
    "RetriesExhausted",
    "ServerError",
    "SymbolNotFound",
    "root_cause",
]
