"""
Async Graph API client with pagination, throttling, retry, and change guarding.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncGenerator, Optional

import httpx

from ..config import (
    GRAPH_BASE_URL,
    GRAPH_API_VERSION,
    GRAPH_BETA_VERSION,
    MAX_RETRIES,
    INITIAL_BACKOFF_SECONDS,
    MAX_BACKOFF_SECONDS,
    BACKOFF_MULTIPLIER,
    DEFAULT_PAGE_SIZE,
    MAX_PAGES_PER_ENDPOINT,
    MAX_CONCURRENT_REQUESTS,
    REQUEST_TIMEOUT_SECONDS,
    CONNECT_TIMEOUT_SECONDS,
)
from ..safety.guardian import ChangeGuardian

logger = logging.getLogger("forwarding_guard.graph")

RETRYABLE_STATUS = (429, 500, 502, 503, 504)


class GraphAPIError(Exception):
    """Raised when the API returns a non-recoverable error."""
    def __init__(self, status_code: int, message: str, url: str):
        self.status_code = status_code
        self.url = url
        self.message = message
        super().__init__(f"API Error {status_code} for {url}: {message}")

    @property
    def transient(self) -> bool:
        return False

    @property
    def not_found(self) -> bool:
        return self.status_code == 404


class TransientIOError(GraphAPIError):
    """Raised when retries are exhausted on throttling, timeouts or 5xx."""

    @property
    def transient(self) -> bool:
        return True


class GraphClient:
    """
    Async Microsoft Graph API client.
    Features:
      - Change-guarded writes (allow-list + dry-run)
      - Automatic pagination with @odata.nextLink
      - Exponential backoff on 429/5xx and timeouts
      - Concurrent request semaphore
      - v1.0 and beta endpoint support
    """

    def __init__(
        self,
        access_token: str,
        guardian: ChangeGuardian,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        max_retries: int = MAX_RETRIES,
        initial_backoff: float = INITIAL_BACKOFF_SECONDS,
    ):
        self.access_token = access_token
        self.guardian = guardian
        self.max_retries = max_retries
        self.initial_backoff = initial_backoff
        self._transport = transport
        self._semaphore = asyncio.Semaphore(MAX_CONCURRENT_REQUESTS)
        self._request_count = 0
        self._throttle_count = 0
        self._client: Optional[httpx.AsyncClient] = None

    def _default_headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
            "ConsistencyLevel": "eventual",  # Required for advanced $filter on extension attributes
        }

    async def __aenter__(self):
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(REQUEST_TIMEOUT_SECONDS, connect=CONNECT_TIMEOUT_SECONDS),
            limits=httpx.Limits(
                max_connections=MAX_CONCURRENT_REQUESTS * 2,
                max_keepalive_connections=MAX_CONCURRENT_REQUESTS,
            ),
            headers=self._default_headers(),
            transport=self._transport,
        )
        return self

    async def __aexit__(self, *args):
        if self._client:
            await self._client.aclose()
            self._client = None

    def _build_url(self, endpoint: str, beta: bool = False) -> str:
        """Build full Graph URL from relative endpoint."""
        if endpoint.startswith("http"):
            return endpoint
        version = GRAPH_BETA_VERSION if beta else GRAPH_API_VERSION
        endpoint = endpoint.lstrip("/")
        return f"{GRAPH_BASE_URL}/{version}/{endpoint}"

    # ── Reads ───────────────────────────────────────────────────────────────

    async def get(
        self,
        endpoint: str,
        params: Optional[dict] = None,
        beta: bool = False,
    ) -> dict:
        """
        Execute a single GET request with retry/throttle handling.
        A 404 yields {"_not_found": True} instead of raising.
        """
        url = self._build_url(endpoint, beta=beta)
        self.guardian.validate_request("GET", url)

        async with self._semaphore:
            return await self._execute_with_retry("GET", url, params=params)

    async def get_all_pages(
        self,
        endpoint: str,
        params: Optional[dict] = None,
        beta: bool = False,
        top: Optional[int] = None,
        max_pages: int = MAX_PAGES_PER_ENDPOINT,
    ) -> list[dict]:
        """Fetch all pages of a paginated endpoint into a list."""
        items = []
        async for item in self.get_all_pages_stream(endpoint, params, beta, top, max_pages):
            items.append(item)
        return items

    async def get_all_pages_stream(
        self,
        endpoint: str,
        params: Optional[dict] = None,
        beta: bool = False,
        top: Optional[int] = None,
        max_pages: int = MAX_PAGES_PER_ENDPOINT,
    ) -> AsyncGenerator[dict, None]:
        """Stream all pages of a paginated endpoint one item at a time."""
        params = dict(params or {})
        if "$top" not in params:
            params["$top"] = str(min(top, DEFAULT_PAGE_SIZE) if top else DEFAULT_PAGE_SIZE)

        url: Optional[str] = self._build_url(endpoint, beta=beta)
        query: Optional[dict] = params
        pages = 0

        while url and pages < max_pages:
            self.guardian.validate_request("GET", url)

            async with self._semaphore:
                data = await self._execute_with_retry("GET", url, params=query)

            if data.get("_not_found"):
                raise GraphAPIError(404, "Not Found", url)

            for item in data.get("value", []):
                yield item

            url = data.get("@odata.nextLink")
            query = None  # nextLink contains all params
            pages += 1

        if url and pages >= max_pages:
            logger.warning(f"Pagination cap reached ({max_pages} pages) for endpoint: {endpoint}")

    # ── Writes ──────────────────────────────────────────────────────────────

    async def patch(self, endpoint: str, body: dict, beta: bool = False) -> dict:
        return await self._write("PATCH", endpoint, body, beta)

    async def post(self, endpoint: str, body: Optional[dict] = None, beta: bool = False) -> dict:
        return await self._write("POST", endpoint, body or {}, beta)

    async def _write(self, method: str, endpoint: str, body: dict, beta: bool) -> dict:
        url = self._build_url(endpoint, beta=beta)
        if not self.guardian.validate_request(method, url, body):
            return {"_dry_run": True}

        async with self._semaphore:
            data = await self._execute_with_retry(method, url, json_body=body)
        if data.get("_not_found"):
            raise GraphAPIError(404, "Not Found", url)
        return data

    # ── Transport ───────────────────────────────────────────────────────────

    def _error_message(self, response: httpx.Response) -> str:
        try:
            body = response.json() if response.content else {}
        except ValueError:
            return response.text[:200]
        error = body.get("error", {}) if isinstance(body, dict) else {}
        if isinstance(error, dict):
            return error.get("message", response.text[:200])
        return str(error)[:200]

    async def _execute_with_retry(
        self,
        method: str,
        url: str,
        params: Optional[dict] = None,
        json_body: Optional[dict] = None,
    ) -> dict:
        """Execute request with exponential backoff on throttling."""
        backoff = self.initial_backoff
        last_error = "retries exhausted"

        for attempt in range(self.max_retries + 1):
            try:
                response = await self._execute_raw(
                    method, url, params=params, json_body=json_body
                )
                self._request_count += 1

                if response.status_code in (200, 201, 202):
                    if not response.content or not response.content.strip():
                        return {}
                    try:
                        return response.json()
                    except ValueError:
                        logger.debug(f"{response.status_code} response with non-JSON body from {url}")
                        return {}

                if response.status_code == 204:
                    return {}

                if response.status_code == 404:
                    logger.debug(f"404 Not Found: {url}")
                    return {"value": [], "_not_found": True}

                if response.status_code in RETRYABLE_STATUS:
                    self._throttle_count += 1
                    last_error = f"HTTP {response.status_code}"
                    if attempt == self.max_retries:
                        break
                    try:
                        retry_after = float(response.headers.get("Retry-After", backoff))
                    except ValueError:
                        retry_after = backoff
                    wait_time = max(retry_after, backoff)
                    logger.warning(
                        f"Throttled ({response.status_code}) on {url}. "
                        f"Retry {attempt + 1}/{self.max_retries} in {wait_time:.1f}s"
                    )
                    await asyncio.sleep(wait_time)
                    backoff = min(backoff * BACKOFF_MULTIPLIER, MAX_BACKOFF_SECONDS)
                    continue

                raise GraphAPIError(response.status_code, self._error_message(response), url)

            except (httpx.TimeoutException, httpx.ConnectError) as e:
                last_error = f"{type(e).__name__}: {e}"
                logger.warning(f"{type(e).__name__} on {url}, attempt {attempt + 1}/{self.max_retries + 1}")
                if attempt == self.max_retries:
                    break
                await asyncio.sleep(backoff)
                backoff = min(backoff * BACKOFF_MULTIPLIER, MAX_BACKOFF_SECONDS)

        raise TransientIOError(503, last_error, url)

    async def _execute_raw(
        self,
        method: str,
        url: str,
        params: Optional[dict] = None,
        json_body: Optional[dict] = None,
    ) -> httpx.Response:
        """Execute raw HTTP request."""
        if not self._client:
            raise RuntimeError(f"{type(self).__name__} not initialized. Use 'async with' context.")
        return await self._client.request(method, url, params=params, json=json_body)

    def get_stats(self) -> dict:
        return {
            "total_requests": self._request_count,
            "throttle_events": self._throttle_count,
        }
