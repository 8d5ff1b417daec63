"""
HTTP infrastructure layer with retry logic.

Provides:
- RetryConfig: Exponential backoff configuration
- HTTPClient: Async HTTP client with automatic retry

This layer separates HTTP concerns (retries, backoff, Retry-After) from
domain logic (turning API payloads into items) in the adapters.
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any

import httpx

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "topic-tracker/1.0"


@dataclass
class RetryConfig:
    """
    Exponential backoff configuration for HTTP retries.

    Implements exponential backoff with jitter to prevent thundering herd
    problems when multiple clients retry simultaneously.

    Formula: min(max_backoff, base_delay * 2^attempt) * (1 + random(0, jitter_factor))
    """

    max_retries: int = 3
    max_backoff_seconds: float = 60.0
    base_delay: float = 1.0
    jitter_factor: float = 0.1

    def calculate_backoff(self, attempt: int) -> float:
        """
        Calculate backoff duration for a given retry attempt.

        Args:
            attempt: The retry attempt number (0-indexed)

        Returns:
            Backoff duration in seconds with jitter applied
        """
        delay = self.base_delay * (2**attempt)
        delay = min(delay, self.max_backoff_seconds)

        jitter = delay * self.jitter_factor * random.random()
        return delay + jitter

    def is_retryable_status(self, status_code: int) -> bool:
        """429 and the transient 5xx codes trigger a retry."""
        return status_code in {429, 500, 502, 503, 504}

    def is_retryable_exception(self, exc: Exception) -> bool:
        """Timeouts, connection failures and read errors trigger a retry."""
        return isinstance(
            exc,
            (
                httpx.TimeoutException,
                httpx.ConnectError,
                httpx.ReadError,
            ),
        )

    def retry_after(self, response: httpx.Response) -> float | None:
        """Seconds requested by a ``Retry-After`` header, capped at max backoff."""
        value = response.headers.get("Retry-After")
        if not value:
            return None
        try:
            seconds = float(value)
        except ValueError:
            return None
        return max(0.0, min(seconds, self.max_backoff_seconds))


class HTTPClientError(Exception):
    """Base exception for HTTP client errors."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response_body: str | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body


class RateLimitError(HTTPClientError):
    """Raised when rate limit is hit and all retries exhausted."""

    pass


class HTTPClient:
    """
    Async HTTP client with retry logic.

    Features:
    - Exponential backoff with jitter on retryable errors
    - Automatic retry on 429, 5xx status codes
    - ``Retry-After`` honoured on 429 responses
    - Automatic retry on timeout/connection errors
    - Context manager for proper resource cleanup

    Example:
        config = RetryConfig(max_retries=3)
        async with HTTPClient(config) as client:
            response = await client.get(
                "https://api.github.com/repos/python/cpython/releases",
                headers={"Accept": "application/vnd.github.v3+json"},
            )
    """

    def __init__(
        self,
        retry_config: RetryConfig | None = None,
        timeout: float = 30.0,
        user_agent: str = DEFAULT_USER_AGENT,
    ):
        self.retry_config = retry_config or RetryConfig()
        self.timeout = timeout
        self.user_agent = user_agent
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> "HTTPClient":
        self._client = httpx.AsyncClient(
            timeout=self.timeout,
            follow_redirects=True,
            headers={"User-Agent": self.user_agent},
        )
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def get(
        self,
        url: str,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        """
        Perform GET request with retry logic.

        Raises:
            HTTPClientError: On non-retryable errors or after retries exhausted
            RateLimitError: When rate limited and retries exhausted
        """
        return await self._request_with_retry("GET", url, params=params, headers=headers)

    async def post(
        self,
        url: str,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        json_body: dict[str, Any] | None = None,
        data: dict[str, Any] | None = None,
        content: bytes | None = None,
    ) -> httpx.Response:
        """Perform POST request with retry logic (JSON, form or raw body)."""
        return await self._request_with_retry(
            "POST",
            url,
            params=params,
            headers=headers,
            json=json_body,
            data=data,
            content=content,
        )

    async def _request_with_retry(
        self,
        method: str,
        url: str,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        **body: Any,
    ) -> httpx.Response:
        """
        Execute HTTP request, retrying transient failures.

        A 429 carrying ``Retry-After`` waits the requested time; every other
        retry uses exponential backoff with jitter.
        """
        if not self._client:
            raise RuntimeError("HTTPClient must be used as async context manager")

        body = {k: v for k, v in body.items() if v is not None}
        attempts = self.retry_config.max_retries + 1

        for attempt in range(attempts):
            final = attempt == attempts - 1
            try:
                response = await self._client.request(
                    method, url, params=params or None, headers=headers or None, **body
                )
            except (httpx.TimeoutException, httpx.ConnectError, httpx.ReadError) as e:
                if final:
                    raise HTTPClientError(
                        f"Request to {url} failed after {attempts} attempts: {e}"
                    ) from e
                await self._wait(attempt, url, type(e).__name__)
                continue

            status = response.status_code
            if status < 400:
                return response

            if not self.retry_config.is_retryable_status(status):
                raise HTTPClientError(
                    f"Request to {url} failed with status {status}",
                    status_code=status,
                    response_body=response.text,
                )

            if final:
                error_cls = RateLimitError if status == 429 else HTTPClientError
                raise error_cls(
                    f"Request to {url} failed with status {status} after {attempts} attempts",
                    status_code=status,
                    response_body=response.text,
                )

            requested = self.retry_config.retry_after(response) if status == 429 else None
            await self._wait(attempt, url, f"status {status}", requested)

        raise HTTPClientError(f"Request to {url} was not attempted (max_retries={self.retry_config.max_retries})")

    async def _wait(
        self, attempt: int, url: str, reason: str, requested: float | None = None
    ) -> None:
        delay = requested if requested is not None else self.retry_config.calculate_backoff(attempt)
        logger.warning(
            f"Retrying {url} after {reason} "
            f"(attempt {attempt + 1}/{self.retry_config.max_retries + 1}, waiting {delay:.2f}s)"
        )
        await asyncio.sleep(delay)
