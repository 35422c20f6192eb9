"""
Exception hierarchy for the provider relay.

Errors are classified once, where they happen, so callers can tell apart:
- "every provider was tried and nothing worked" (ProvidersExhaustedError)
- "the request itself is invalid" (FatalProviderError and subclasses)
- "a partial answer was streamed and then the stream broke" (PartialStreamError)

Usage:
    from relay.exceptions import TransientProviderError, FatalProviderError

    try:
        result = await manager.chat(options)
    except FatalProviderError as e:
        # fix the request; retrying will not help
        ...
    except TransientProviderError as e:
        # everything is down right now, try again later
        await asyncio.sleep(e.retry_after or 30)
"""

from __future__ import annotations

from typing import Optional


class RelayError(Exception):
    """
    Base exception for all relay errors.

    Catch `RelayError` to handle anything raised by this package.
    """

    def __init__(self, message: str, *, details: Optional[dict] = None):
        super().__init__(message)
        self.details = details or {}


# ── Configuration Errors ──────────────────────────────────────────


class ConfigurationError(RelayError):
    """
    Raised when relay settings are invalid.

    Examples:
    - YAML file fails schema validation
    - Unknown provider id in the providers list
    """

    def __init__(
        self,
        message: str,
        *,
        config_path: Optional[str] = None,
        details: Optional[dict] = None,
    ):
        super().__init__(message, details=details)
        self.config_path = config_path


# ── Provider Errors ───────────────────────────────────────────────


class ProviderError(RelayError):
    """A failure attributed to one provider."""

    def __init__(
        self,
        message: str,
        *,
        provider: Optional[str] = None,
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None,
        details: Optional[dict] = None,
    ):
        super().__init__(message, details=details)
        self.provider = provider
        self.status_code = status_code
        self.retry_after = retry_after


class TransientProviderError(ProviderError):
    """
    Rate limit, overload, bad gateway, timeout or connection reset.

    Retried inside the adapter, then escalated to cross-provider fallback.
    """


class ProvidersExhaustedError(TransientProviderError):
    """
    Every attempted provider failed with a transient error.

    `errors` holds one entry per attempted provider, in attempt order.
    """

    def __init__(
        self,
        message: str,
        *,
        errors: Optional[list[ProviderError]] = None,
        details: Optional[dict] = None,
    ):
        errors = list(errors or [])
        last = errors[-1] if errors else None
        super().__init__(
            message,
            provider=last.provider if last else None,
            status_code=last.status_code if last else None,
            retry_after=last.retry_after if last else None,
            details=details,
        )
        self.errors = errors


class FatalProviderError(ProviderError):
    """
    A structurally invalid request or a rejected credential.

    Never retried and never triggers fallback.
    """


class AuthenticationError(FatalProviderError):
    """Missing or rejected API credential."""


class InvalidRequestError(FatalProviderError):
    """Malformed request, content policy rejection, or unknown model."""


class AlternationError(InvalidRequestError):
    """
    Conversation roles do not alternate user/assistant starting with user.

    Raised before any network call for providers that require alternation.
    """

    def __init__(
        self,
        message: str,
        *,
        index: Optional[int] = None,
        provider: Optional[str] = None,
        details: Optional[dict] = None,
    ):
        super().__init__(message, provider=provider, details=details)
        self.index = index


class UnsupportedToolParameterError(InvalidRequestError):
    """A tool parameter type has no mapping in the target schema dialect."""

    def __init__(
        self,
        message: str,
        *,
        tool_name: Optional[str] = None,
        parameter: Optional[str] = None,
        param_type: Optional[str] = None,
        dialect: Optional[str] = None,
        details: Optional[dict] = None,
    ):
        super().__init__(message, details=details)
        self.tool_name = tool_name
        self.parameter = parameter
        self.param_type = param_type
        self.dialect = dialect


class PartialStreamError(ProviderError):
    """
    A stream failed after at least one chunk reached the caller.

    Always terminal for the request. The classified cause is available as
    `cause` and as `__cause__`.
    """

    def __init__(
        self,
        message: str,
        *,
        provider: Optional[str] = None,
        chunks_delivered: int = 0,
        cause: Optional[ProviderError] = None,
        details: Optional[dict] = None,
    ):
        super().__init__(
            message,
            provider=provider,
            status_code=cause.status_code if cause else None,
            details=details,
        )
        self.chunks_delivered = chunks_delivered
        self.cause = cause


# ── Orchestration Errors ──────────────────────────────────────────


class NoProvidersAvailableError(RelayError):
    """No provider was available (or capable) for the request."""


class StreamStateError(RelayError):
    """A stream was consumed twice, or usage was read before the end."""
