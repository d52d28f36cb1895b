"""Error taxonomy for generation providers and local storage.

Provider adapters raise ProviderError; orchestrators decide per kind whether
to retry, fall back to the next tier, or degrade. Vendor-specific failures
are mapped at the adapter boundary with classify_status / to_provider_error.
"""

from __future__ import annotations

import asyncio
from enum import Enum

import httpx
from pydantic import ValidationError


class ProviderErrorKind(str, Enum):
    CONFIGURATION = "configuration"
    QUOTA = "quota"
    RATE_LIMIT = "rate_limit"
    TIMEOUT = "timeout"
    VALIDATION = "validation"
    TRANSIENT = "transient"


class ProviderError(Exception):
    """A failed call to an external generation service."""

    def __init__(self, kind: ProviderErrorKind, provider: str, message: str = ""):
        super().__init__(message or f"{provider} failed ({kind.value})")
        self.kind = kind
        self.provider = provider

    def __repr__(self) -> str:
        return f"ProviderError(kind={self.kind.value!r}, provider={self.provider!r}, message={str(self)!r})"


class StorageCapacityError(Exception):
    """The key-value backend refused a write because it is full."""


_QUOTA_MARKERS = ("quota", "insufficient credits", "credits", "billing")
_CONFIGURATION_MARKERS = ("api key", "api_key", "unauthorized", "configuration", "not configured")


def classify_status(status_code: int, body: str = "") -> ProviderErrorKind:
    """Map an HTTP status (and response body) to an error kind."""
    text = body.lower()
    if status_code == 402 or any(marker in text for marker in _QUOTA_MARKERS):
        return ProviderErrorKind.QUOTA
    if status_code in (401, 403):
        return ProviderErrorKind.CONFIGURATION
    if status_code == 429:
        return ProviderErrorKind.RATE_LIMIT
    if status_code in (408, 504):
        return ProviderErrorKind.TIMEOUT
    if status_code in (400, 404, 413, 422):
        return ProviderErrorKind.VALIDATION
    return ProviderErrorKind.TRANSIENT


def _classify_message(message: str) -> ProviderErrorKind:
    text = message.lower()
    if any(marker in text for marker in _QUOTA_MARKERS):
        return ProviderErrorKind.QUOTA
    if any(marker in text for marker in _CONFIGURATION_MARKERS):
        return ProviderErrorKind.CONFIGURATION
    if "rate limit" in text or "too many requests" in text:
        return ProviderErrorKind.RATE_LIMIT
    if "timeout" in text or "timed out" in text:
        return ProviderErrorKind.TIMEOUT
    return ProviderErrorKind.TRANSIENT


def to_provider_error(exc: BaseException, provider: str) -> ProviderError:
    """Normalize any exception raised while calling a provider."""
    if isinstance(exc, ProviderError):
        return exc
    if isinstance(exc, (TimeoutError, asyncio.TimeoutError, httpx.TimeoutException)):
        return ProviderError(ProviderErrorKind.TIMEOUT, provider, f"{provider} timed out")
    if isinstance(exc, httpx.HTTPStatusError):
        response = exc.response
        kind = classify_status(response.status_code, response.text)
        return ProviderError(kind, provider, f"{provider} returned HTTP {response.status_code}")
    if isinstance(exc, httpx.TransportError):
        return ProviderError(ProviderErrorKind.TRANSIENT, provider, f"{provider} unreachable: {exc}")
    if isinstance(exc, (ValidationError, ValueError, KeyError)):
        return ProviderError(ProviderErrorKind.VALIDATION, provider, f"{provider} returned an invalid response: {exc}")
    return ProviderError(_classify_message(str(exc)), provider, str(exc) or type(exc).__name__)


def raise_for_provider(response: httpx.Response, provider: str) -> None:
    """Raise a classified ProviderError for a non-2xx response."""
    if response.is_success:
        return
    kind = classify_status(response.status_code, response.text)
    raise ProviderError(kind, provider, f"{provider} returned HTTP {response.status_code}: {response.text[:200]}")


def json_object(response: httpx.Response, provider: str) -> dict:
    """Decode a provider response body that must be a JSON object."""
    try:
        data = response.json()
    except ValueError as exc:
        raise to_provider_error(exc, provider) from exc
    if not isinstance(data, dict):
        raise ProviderError(
            ProviderErrorKind.VALIDATION, provider, f"{provider} returned {type(data).__name__}, expected an object"
        )
    return data
