"""Provider error taxonomy shared by the embedding and LLM abstractions."""

from __future__ import annotations

import asyncio
from typing import Optional


class ProviderError(Exception):
    """Base class for failures raised by a backing provider."""

    def __init__(
        self,
        message: str,
        *,
        provider: Optional[str] = None,
        cause: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message)
        self.provider = provider
        self.cause = cause

    def __str__(self) -> str:
        base = super().__str__()
        if self.provider:
            return f"[{self.provider}] {base}"
        return base


class ProviderUnavailable(ProviderError):
    """The provider is not configured, not reachable, or lacks credentials."""


class HeuristicModeError(ProviderUnavailable):
    """Generation was requested while the LLM layer runs in heuristic mode."""


class ProviderTimeout(ProviderError):
    """A provider call did not finish within its configured timeout."""


class InvalidResponse(ProviderError):
    """The provider answered with a malformed or empty payload."""


class RateLimited(ProviderError):
    """The provider rejected the call because of upstream rate limits."""

    def __init__(
        self,
        message: str,
        *,
        provider: Optional[str] = None,
        cause: Optional[BaseException] = None,
        retry_after: Optional[float] = None,
    ) -> None:
        super().__init__(message, provider=provider, cause=cause)
        self.retry_after = retry_after


class AllProvidersExhausted(ProviderError):
    """Every provider in the fallback chain failed for one request."""

    def __init__(self, message: str, *, attempts: Optional[dict] = None) -> None:
        super().__init__(message)
        self.attempts = dict(attempts or {})


def _status_code(exc: BaseException) -> Optional[int]:
    status = getattr(exc, "status_code", None)
    if status is None:
        response = getattr(exc, "response", None)
        status = getattr(response, "status_code", None)
    try:
        return int(status) if status is not None else None
    except (TypeError, ValueError):
        return None


def translate_provider_error(exc: BaseException, provider: str) -> ProviderError:
    """Translate SDK / transport exceptions into the provider taxonomy.

    The OpenAI, Anthropic and httpx clients all raise their own exception
    hierarchies. Matching on type names and messages keeps this module free of
    hard imports on every SDK.
    """

    if isinstance(exc, ProviderError):
        if exc.provider is None:
            exc.provider = provider
        return exc

    exc_type = type(exc).__name__.lower()
    message = str(exc)
    lowered = message.lower()
    status = _status_code(exc)

    if isinstance(exc, asyncio.TimeoutError) or "timeout" in exc_type or "timed out" in lowered:
        return ProviderTimeout(message or "provider call timed out", provider=provider, cause=exc)

    if status == 429 or "ratelimit" in exc_type or "rate limit" in lowered or "rate_limit" in lowered:
        retry_after = None
        response = getattr(exc, "response", None)
        headers = getattr(response, "headers", None)
        if headers is not None:
            try:
                retry_after = float(headers.get("retry-after"))
            except (TypeError, ValueError):
                retry_after = None
        return RateLimited(message or "rate limited", provider=provider, cause=exc, retry_after=retry_after)

    if status in {401, 403} or "auth" in exc_type or "permission" in exc_type:
        return ProviderUnavailable(f"authentication failed: {message}", provider=provider, cause=exc)

    if "connect" in exc_type or "connection" in lowered or "unreachable" in lowered:
        return ProviderUnavailable(f"connection failed: {message}", provider=provider, cause=exc)

    if isinstance(exc, (ValueError, KeyError, IndexError, TypeError)) or "decode" in exc_type:
        return InvalidResponse(f"malformed response: {message}", provider=provider, cause=exc)

    if status is not None and status >= 500:
        return ProviderUnavailable(f"server error {status}: {message}", provider=provider, cause=exc)

    if status is not None and status >= 400:
        return InvalidResponse(f"request rejected ({status}): {message}", provider=provider, cause=exc)

    return ProviderError(message or exc_type, provider=provider, cause=exc)


__all__ = [
    "AllProvidersExhausted",
    "HeuristicModeError",
    "InvalidResponse",
    "ProviderError",
    "ProviderTimeout",
    "ProviderUnavailable",
    "RateLimited",
    "translate_provider_error",
]
