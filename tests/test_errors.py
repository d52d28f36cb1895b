"""Tests for provider error classification at the HTTP boundary."""

import asyncio

import httpx
import pytest

from journeys.errors import (
    ProviderError,
    ProviderErrorKind,
    classify_status,
    raise_for_provider,
    to_provider_error,
)


class TestClassifyStatus:
    @pytest.mark.parametrize(
        "status, body, expected",
        [
            (401, "", ProviderErrorKind.CONFIGURATION),
            (403, "forbidden", ProviderErrorKind.CONFIGURATION),
            (401, '{"detail": {"status": "quota_exceeded"}}', ProviderErrorKind.QUOTA),
            (402, "", ProviderErrorKind.QUOTA),
            (429, "", ProviderErrorKind.RATE_LIMIT),
            (504, "", ProviderErrorKind.TIMEOUT),
            (422, "bad prompt", ProviderErrorKind.VALIDATION),
            (500, "", ProviderErrorKind.TRANSIENT),
            (503, "", ProviderErrorKind.TRANSIENT),
        ],
    )
    def test_status_mapping(self, status, body, expected):
        assert classify_status(status, body) == expected


class TestToProviderError:
    def test_passes_provider_errors_through(self):
        error = ProviderError(ProviderErrorKind.QUOTA, "fal")
        assert to_provider_error(error, "other") is error

    def test_timeouts(self):
        assert to_provider_error(asyncio.TimeoutError(), "x").kind == ProviderErrorKind.TIMEOUT
        assert to_provider_error(httpx.ReadTimeout("slow"), "x").kind == ProviderErrorKind.TIMEOUT

    def test_transport_errors_are_transient(self):
        assert to_provider_error(httpx.ConnectError("refused"), "x").kind == ProviderErrorKind.TRANSIENT

    def test_http_status_error(self):
        request = httpx.Request("POST", "https://example.test")
        response = httpx.Response(429, request=request)
        exc = httpx.HTTPStatusError("too many", request=request, response=response)
        error = to_provider_error(exc, "gemini")
        assert error.kind == ProviderErrorKind.RATE_LIMIT
        assert error.provider == "gemini"

    def test_bad_payloads_are_validation(self):
        assert to_provider_error(ValueError("not json"), "x").kind == ProviderErrorKind.VALIDATION

    def test_message_markers(self):
        assert to_provider_error(RuntimeError("Quota exceeded"), "x").kind == ProviderErrorKind.QUOTA
        assert to_provider_error(RuntimeError("Invalid API key"), "x").kind == ProviderErrorKind.CONFIGURATION
        assert to_provider_error(RuntimeError("something odd"), "x").kind == ProviderErrorKind.TRANSIENT


class TestRaiseForProvider:
    def test_success_is_silent(self):
        raise_for_provider(httpx.Response(200), "x")

    def test_failure_raises_classified_error(self):
        with pytest.raises(ProviderError) as exc_info:
            raise_for_provider(httpx.Response(402, text="credits exhausted"), "speechify")
        assert exc_info.value.kind == ProviderErrorKind.QUOTA
        assert exc_info.value.provider == "speechify"
