"""
Async Graph API client with pagination, throttling, retry, and read-only enforcement.
Serves the memberOf lookups of the Graph directory adapter.
"""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncGenerator, Optional

import httpx

from ..config import (
    GRAPH_BASE_URL,
    GRAPH_API_VERSION,
    MAX_RETRIES,
    INITIAL_BACKOFF_SECONDS,
    MAX_BACKOFF_SECONDS,
    BACKOFF_MULTIPLIER,
    DEFAULT_PAGE_SIZE,
    MAX_PAGES_PER_ENDPOINT,
    MAX_CONCURRENT_REQUESTS,
)
from ..safety.guardian import SafetyGuardian, SafetyViolation

logger = logging.getLogger("membership_resolver.graph")


class GraphAPIError(Exception):
    """Raised when Graph API returns a non-recoverable error."""
    def __init__(self, status_code: int, message: str, url: str):
        self.status_code = status_code
        self.url = url
        super().__init__(f"Graph API Error {status_code} for {url}: {message}")


class GraphClient:
    """
    Async Microsoft Graph API client.
    Features:
      - Safety-validated requests (read-only enforcement)
      - Automatic pagination with @odata.nextLink
      - Exponential backoff on 429/503/504
      - Concurrent request semaphore
      - Streaming generators for large result sets
    """

    def __init__(
        self,
        access_token: str,
        guardian: Optional[SafetyGuardian] = None,
        max_concurrency: int = MAX_CONCURRENT_REQUESTS,
        max_retries: int = MAX_RETRIES,
        initial_backoff: float = INITIAL_BACKOFF_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.access_token = access_token
        self.guardian = guardian or SafetyGuardian()
        self.max_concurrency = max_concurrency
        self.max_retries = max_retries
        self.initial_backoff = initial_backoff
        self._transport = transport
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._request_count = 0
        self._throttle_count = 0
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self):
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(60.0, connect=30.0),
            limits=httpx.Limits(
                max_connections=self.max_concurrency * 2,
                max_keepalive_connections=self.max_concurrency,
            ),
            headers={
                "Authorization": f"Bearer {self.access_token}",
                "Accept": "application/json",
            },
            transport=self._transport,
        )
        return self

    async def __aexit__(self, *args):
        if self._client:
            await self._client.aclose()
            self._client = None

    def _build_url(self, endpoint: str) -> str:
        """Build full Graph URL from relative endpoint."""
        if endpoint.startswith("http"):
            return endpoint
        endpoint = endpoint.lstrip("/")
        return f"{GRAPH_BASE_URL}/{GRAPH_API_VERSION}/{endpoint}"

    async def get(self, endpoint: str, params: Optional[dict] = None) -> dict:
        """
        Execute a single GET request with retry/throttle handling.
        """
        url = self._build_url(endpoint)
        self.guardian.validate_request("GET", url)

        async with self._semaphore:
            return await self._execute_with_retry("GET", url, params=params)

    async def get_all_pages(
        self,
        endpoint: str,
        params: Optional[dict] = None,
        top: Optional[int] = None,
    ) -> list[dict]:
        """
        Fetch all pages of a paginated endpoint into a list.
        Use get_all_pages_stream() for very large datasets.
        """
        items = []
        async for item in self.get_all_pages_stream(endpoint, params, top):
            items.append(item)
        return items

    async def get_all_pages_stream(
        self,
        endpoint: str,
        params: Optional[dict] = None,
        top: Optional[int] = None,
    ) -> AsyncGenerator[dict, None]:
        """
        Stream all pages of a paginated endpoint as an async generator.
        Yields one item at a time.
        """
        params = dict(params or {})
        if "$top" not in params:
            params["$top"] = str(min(top or DEFAULT_PAGE_SIZE, DEFAULT_PAGE_SIZE))

        url: Optional[str] = self._build_url(endpoint)
        pages = 0

        while url and pages < MAX_PAGES_PER_ENDPOINT:
            self.guardian.validate_request("GET", url)

            async with self._semaphore:
                data = await self._execute_with_retry("GET", url, params=params)

            for item in data.get("value", []):
                yield item

            # Follow nextLink for pagination
            url = data.get("@odata.nextLink")
            params = None  # nextLink contains all params
            pages += 1

        if url:
            logger.warning(
                f"Pagination safety cap reached ({MAX_PAGES_PER_ENDPOINT} pages) "
                f"for endpoint: {endpoint}"
            )
            raise GraphAPIError(
                0,
                f"Pagination safety cap reached after {MAX_PAGES_PER_ENDPOINT} pages",
                url,
            )

    async def _execute_with_retry(
        self,
        method: str,
        url: str,
        params: Optional[dict] = None,
    ) -> dict:
        """Execute request with exponential backoff on throttling."""
        backoff = self.initial_backoff

        for attempt in range(self.max_retries + 1):
            try:
                response = await self._execute_raw(method, url, params=params)
                self._request_count += 1

                if response.status_code == 200:
                    if not response.content or not response.content.strip():
                        return {"value": []}
                    return response.json()

                if response.status_code == 204:
                    return {}

                if response.status_code in (429, 503, 504):
                    self._throttle_count += 1
                    if attempt == self.max_retries:
                        raise GraphAPIError(
                            response.status_code, "Throttled; retries exhausted", url
                        )
                    retry_after = float(
                        response.headers.get("Retry-After", backoff)
                    )
                    wait_time = max(retry_after, backoff)
                    logger.warning(
                        f"Throttled ({response.status_code}) on {url}. "
                        f"Retry {attempt + 1}/{self.max_retries} in {wait_time:.1f}s"
                    )
                    await asyncio.sleep(wait_time)
                    backoff = min(backoff * BACKOFF_MULTIPLIER, MAX_BACKOFF_SECONDS)
                    continue

                if response.status_code == 404:
                    logger.debug(f"404 Not Found: {url}")

                error_msg = self._error_message(response)
                if response.status_code == 403:
                    logger.warning(f"403 Forbidden: {url}: {error_msg}")
                raise GraphAPIError(response.status_code, error_msg, url)

            except httpx.TimeoutException:
                logger.warning(f"Timeout on {url}, attempt {attempt + 1}/{self.max_retries}")
                if attempt == self.max_retries:
                    raise
                await asyncio.sleep(backoff)
                backoff = min(backoff * BACKOFF_MULTIPLIER, MAX_BACKOFF_SECONDS)

            except httpx.ConnectError as e:
                logger.warning(f"Connection error on {url}: {e}")
                if attempt == self.max_retries:
                    raise
                await asyncio.sleep(backoff)
                backoff = min(backoff * BACKOFF_MULTIPLIER, MAX_BACKOFF_SECONDS)

        raise GraphAPIError(0, "Retries exhausted", url)

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            error_body = response.json() if response.content else {}
        except ValueError:
            return response.text[:200]
        return error_body.get("error", {}).get("message", response.text[:200])

    async def _execute_raw(
        self,
        method: str,
        url: str,
        params: Optional[dict] = None,
    ) -> httpx.Response:
        """Execute raw HTTP request."""
        if not self._client:
            raise RuntimeError("GraphClient not initialized. Use 'async with' context.")

        if method == "GET":
            return await self._client.get(url, params=params)
        raise SafetyViolation(f"Unsupported method at raw level: {method}")

    def get_stats(self) -> dict:
        """Return client statistics."""
        return {
            "total_requests": self._request_count,
            "throttle_events": self._throttle_count,
        }
