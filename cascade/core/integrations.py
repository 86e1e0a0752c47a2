"""External integration calls (currently Firecrawl scraping/search)."""

from __future__ import annotations

import logging
from typing import Any

import httpx

logger = logging.getLogger(__name__)


class IntegrationError(Exception):
    """Integration endpoint failed or reported an unsuccessful result."""

    pass


class IntegrationClient:
    """Posts integration requests to the configured endpoint.

    The endpoint answers ``{"success": bool, "output": ..., "error": str}``.
    """

    def __init__(
        self,
        firecrawl_url: str | None,
        api_key: str | None = None,
        timeout: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.firecrawl_url = firecrawl_url
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = httpx.AsyncClient(headers=headers, timeout=timeout, transport=transport)

    async def firecrawl(self, payload: dict[str, Any]) -> Any:
        """Run one Firecrawl capability and return its output.

        Raises:
            IntegrationError: If no endpoint is configured, the request fails,
                or the endpoint reports ``success: false``
        """
        if not self.firecrawl_url:
            raise IntegrationError("Firecrawl endpoint not configured")

        try:
            response = await self._client.post(self.firecrawl_url, json=payload)
        except httpx.HTTPError as e:
            raise IntegrationError(str(e)) from e

        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            raise IntegrationError(f"Unexpected response body (HTTP {response.status_code})")

        if response.status_code >= 400 or not data.get("success"):
            raise IntegrationError(data.get("error") or f"HTTP {response.status_code}")

        logger.info(f"Firecrawl {payload.get('capability')} completed for node {payload.get('nodeId')}")
        return data.get("output") or ""

    async def aclose(self) -> None:
        await self._client.aclose()
