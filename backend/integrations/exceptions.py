"""Typed exception hierarchy for provider errors.

The sync orchestrator distinguishes three kinds of provider failure:

- ``ProviderAuthError``: the access token was rejected.  The vault
  refreshes it and the fetch is retried exactly once.
- ``ProviderRateLimitedError``: the provider asked us to slow down.  The
  whole fetch is retried with exponential backoff up to a bounded
  number of attempts.
- ``ProviderFatalError``: anything else.  Aborts this sync attempt but
  leaves the connection ``active``.
"""


class ProviderError(Exception):
    """Base exception for all provider-related errors.

    Carries the provider name so callers can identify which provider failed.
    """

    def __init__(self, message: str, provider_name: str = ""):
        self.provider_name = provider_name
        super().__init__(message)


class ProviderAuthError(ProviderError):
    """Credentials missing, expired, or invalid (HTTP 401/403)."""

    pass


class ProviderRateLimitedError(ProviderError):
    """Provider throttled the request (HTTP 429).

    ``retry_after`` is the provider-suggested delay in seconds, if any.
    """

    def __init__(
        self,
        message: str,
        provider_name: str = "",
        retry_after: float | None = None,
    ):
        self.retry_after = retry_after
        super().__init__(message, provider_name)


class ProviderFatalError(ProviderError):
    """Non-retriable failure that aborts the current sync attempt only."""

    pass


class ProviderDataError(ProviderFatalError):
    """Malformed, unparseable, or unsupported response from the provider."""

    pass


class ProviderConnectionError(ProviderFatalError):
    """Network failures - timeouts, DNS resolution, connection refused."""

    pass


class ProviderAPIError(ProviderFatalError):
    """HTTP 4xx/5xx responses from the provider API."""

    def __init__(
        self,
        message: str,
        provider_name: str = "",
        status_code: int | None = None,
        error_code: str = "",
    ):
        self.status_code = status_code
        self.error_code = error_code  # provider-specific code, if any
        super().__init__(message, provider_name)


def classify_http_status(
    status_code: int,
    message: str,
    provider_name: str = "",
    retry_after: float | None = None,
) -> ProviderError:
    """Build the exception matching an HTTP error status.

    Args:
        status_code: HTTP status returned by the provider.
        message: Human-readable error message.
        provider_name: Provider that returned the status.
        retry_after: Parsed ``Retry-After`` header, if present.

    Returns:
        An exception instance (not raised).
    """
    if status_code in (401, 403):
        return ProviderAuthError(message, provider_name=provider_name)
    if status_code == 429:
        return ProviderRateLimitedError(
            message, provider_name=provider_name, retry_after=retry_after
        )
    return ProviderAPIError(
        message, provider_name=provider_name, status_code=status_code
    )
