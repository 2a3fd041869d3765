"""
HttpTransport - thin async HTTP layer used by service wrappers.

Raw httpx exceptions are propagated untouched; ErrorFactory classifies them.
"""

from typing import Any

import httpx
from loguru import logger


class HttpTransport:
    """Lazily created httpx.AsyncClient with JSON decoding."""

    def __init__(
        self,
        timeout: float = 30.0,
        headers: dict[str, str] | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self._timeout = timeout
        self._headers = headers or {}
        self._client = client

    async def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._timeout),
                headers=self._headers,
                follow_redirects=True,
            )
        return self._client

    async def request(
        self,
        method: str,
        url: str,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        json_data: Any = None,
        timeout: float | None = None,
    ) -> Any:
        """
        Perform a request and return the decoded body.

        Raises:
            httpx.HTTPStatusError: For 4xx/5xx responses
            httpx.TimeoutException: If the request times out
            httpx.RequestError: For connection-level failures
        """
        client = await self._get_http_client()
        response = await client.request(
            method=method,
            url=url,
            params=params,
            headers=headers,
            json=json_data,
            timeout=timeout if timeout is not None else httpx.USE_CLIENT_DEFAULT,
        )
        response.raise_for_status()

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.debug("HttpTransport closed")
