"""
HTTP client for the source site.

Every request goes through the shared RateLimiter (one request per configured
interval across the whole process) and the RetryManager. HTTP and transport
failures are mapped onto the import exception hierarchy so the retry manager
can classify them:

- 404                -> ResourceNotFoundError (permanent)
- 429                -> RateLimitError (transient)
- 5xx, timeouts      -> NetworkError (transient)
- connect/DNS errors -> SourceUnavailableError (transient, long first wait)
"""

import logging
from typing import Any, Dict, Optional

import httpx

from core.config import settings
from core.exceptions import (
    NetworkError,
    RateLimitError,
    ResourceNotFoundError,
    SourceRequestError,
    SourceUnavailableError,
)
from ingestion.cancellation import CancellationToken
from ingestion.rate_limiter import RateLimiter
from ingestion.retry import RetryManager

logger = logging.getLogger(__name__)


class SourceClient:
    """
    Rate-limited, retrying page fetcher.

    Usage:
        async with SourceClient(rate_limiter, retry_manager) as client:
            html = await client.fetch("/rating", params={"tab": "clubs", "page": 1})
    """

    def __init__(
        self,
        rate_limiter: RateLimiter,
        retry_manager: RetryManager,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.rate_limiter = rate_limiter
        self.retry_manager = retry_manager
        self.base_url = (base_url or settings.SOURCE_BASE_URL).rstrip("/")
        self.timeout = timeout or settings.SOURCE_TIMEOUT_SECONDS
        self._client = http_client
        self._owns_client = http_client is None

    async def __aenter__(self):
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                headers={
                    "User-Agent": settings.SOURCE_USER_AGENT,
                    "Accept": "text/html,application/xhtml+xml",
                    "Accept-Language": "ru,en;q=0.8",
                },
                follow_redirects=True,
            )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self):
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def url_for(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    async def fetch(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> str:
        """
        Fetch a page body, retrying transient failures.

        Raises:
            ResourceNotFoundError: 404, not retried
            RetryExhaustedError: transient failures outlasted every retry
            SourceRequestError: any other non-success status
        """
        description = f"GET {path}" + (f" {params}" if params else "")
        return await self.retry_manager.execute(
            lambda: self._fetch_once(path, params),
            description=description,
            cancel_token=cancel_token,
        )

    async def _fetch_once(self, path: str, params: Optional[Dict[str, Any]]) -> str:
        if self._client is None:
            raise RuntimeError("SourceClient used outside of its async context")

        await self.rate_limiter.wait()
        url = self.url_for(path)
        context = {"url": url, "params": params}

        try:
            response = await self._client.get(path, params=params)
        except httpx.TimeoutException as e:
            raise NetworkError(f"Request timeout for {url}", context=context, original_exception=e)
        except httpx.ConnectError as e:
            raise SourceUnavailableError(
                f"Connection refused by source for {url}", context=context, original_exception=e
            )
        except httpx.TransportError as e:
            raise NetworkError(f"Network error for {url}", context=context, original_exception=e)

        status = response.status_code
        context["status_code"] = status

        if status == 404:
            raise ResourceNotFoundError(f"Resource not found: {url}", context=context)

        if status == 429:
            retry_after = response.headers.get("Retry-After")
            raise RateLimitError(
                f"Rate limited by source for {url}",
                context=context,
                retry_after=int(retry_after) if retry_after and retry_after.isdigit() else None,
            )

        if status >= 500:
            raise NetworkError(f"Server error {status} for {url}", context=context)

        if status >= 400:
            raise SourceRequestError(f"Unexpected status {status} for {url}", context=context)

        logger.debug(f"Fetched {url} ({len(response.text)} bytes)")
        return response.text
