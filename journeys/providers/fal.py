"""Minimal async client for fal.ai's synchronous model endpoints."""

from __future__ import annotations

import httpx

from journeys.config import FAL_API_KEY, FAL_BASE_URL
from journeys.errors import ProviderError, ProviderErrorKind, json_object, raise_for_provider, to_provider_error


class FalClient:
    def __init__(
        self,
        api_key: str = FAL_API_KEY,
        base_url: str = FAL_BASE_URL,
        timeout: float = 120.0,
        provider: str = "fal",
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.provider = provider

    def is_configured(self) -> bool:
        return bool(self.api_key.strip())

    async def run(self, model: str, payload: dict) -> dict:
        """POST ``payload`` to ``model`` and return the decoded JSON result."""
        if not self.is_configured():
            raise ProviderError(ProviderErrorKind.CONFIGURATION, self.provider, "FAL API key is not set")
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    f"{self.base_url}/{model}",
                    headers={"Authorization": f"Key {self.api_key}"},
                    json=payload,
                )
        except httpx.HTTPError as exc:
            raise to_provider_error(exc, self.provider) from exc
        raise_for_provider(response, self.provider)
        return json_object(response, self.provider)

    async def download(self, url: str) -> bytes:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=True) as client:
                response = await client.get(url)
        except httpx.HTTPError as exc:
            raise to_provider_error(exc, self.provider) from exc
        raise_for_provider(response, self.provider)
        return response.content
