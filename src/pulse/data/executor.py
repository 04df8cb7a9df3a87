"""
Request executor for outbound provider calls.

Issues HTTP requests with a per-attempt deadline, retries transient
failures with constant or exponential backoff, and classifies responses
into the PULSE error taxonomy:

- 429            -> RateLimitError, surfaced immediately, never retried
- 5xx            -> APICallError, retried
- other non-2xx  -> APICallError, surfaced immediately
- network errors -> TransportError, retried
- retries exhausted -> DataFetchError chained from the last failure

The executor never touches the cache.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

import httpx
import orjson
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception,
    stop_after_attempt,
)

from pulse.config import Settings, get_settings
from pulse.exceptions import (
    APICallError,
    DataFetchError,
    RateLimitError,
    TransportError,
    is_retryable,
)
from pulse.logging import get_logger, log_context
from pulse.types import (
    FetchState,
    NormalizedResponse,
    RateLimitInfo,
    RequestConfig,
    generate_id,
    now_ms,
)

logger = get_logger(__name__)

RATE_LIMIT_RESET_HEADER = "X-RateLimit-Reset"
RATE_LIMIT_LIMIT_HEADER = "X-RateLimit-Limit"
RATE_LIMIT_REMAINING_HEADER = "X-RateLimit-Remaining"

# Used when a 429 carries no usable reset header
DEFAULT_RATE_LIMIT_WINDOW_MS = 60_000


def compute_backoff_delay(retry_delay: float, attempt_index: int, exponential: bool) -> float:
    """Delay in seconds before retry number attempt_index + 1.

    Args:
        retry_delay: Base delay in seconds.
        attempt_index: Zero-based index of the attempt that just failed.
        exponential: Double the delay for each further attempt.
    """
    if exponential:
        return retry_delay * (2 ** attempt_index)
    return retry_delay


def parse_rate_limit_reset(headers: httpx.Headers, now: int) -> int:
    """Reset time in epoch ms from X-RateLimit-Reset (epoch seconds)."""
    raw = headers.get(RATE_LIMIT_RESET_HEADER)
    if raw is None:
        return now + DEFAULT_RATE_LIMIT_WINDOW_MS
    try:
        return int(float(raw)) * 1000
    except (ValueError, OverflowError):
        logger.warning("Unparsable rate limit reset header", value=raw)
        return now + DEFAULT_RATE_LIMIT_WINDOW_MS


def _int_header(headers: httpx.Headers, name: str) -> int | None:
    raw = headers.get(name)
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


class RequestExecutor:
    """HTTP executor bound to one provider base URL.

    Defaults for timeout and retry behavior come from settings; each call
    can override them through a RequestConfig.
    """

    def __init__(
        self,
        base_url: str,
        default_headers: dict[str, str] | None = None,
        source: str | None = None,
        settings: Settings | None = None,
        client: httpx.AsyncClient | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        """Initialize request executor.

        Args:
            base_url: Provider base URL that endpoints are joined onto.
            default_headers: Headers sent with every request.
            source: Label used in responses and errors (defaults to base_url).
            settings: Source of default timeout/retry values.
            client: Pre-built HTTP client (not closed by close()).
            transport: Transport for an owned client (e.g. httpx.MockTransport).
            sleep: Coroutine used for backoff delays.
            clock: Returns the current time in epoch milliseconds.
        """
        self.settings = settings or get_settings()
        self.base_url = base_url
        self.default_headers = dict(default_headers or {})
        self.source = source or base_url
        self._client = client
        self._owns_client = client is None
        self._transport = transport
        self._sleep = sleep
        self._clock = clock
        self._rate_limit: RateLimitInfo | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.settings.REQUEST_TIMEOUT,
                follow_redirects=True,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client if this executor created it."""
        if self._client and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> RequestExecutor:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    def build_url(
        self,
        endpoint: str,
        params: dict[str, str | int | float | bool] | None = None,
    ) -> str:
        """Join endpoint onto the base URL and append encoded query params."""
        if endpoint.startswith(("http://", "https://")):
            url = httpx.URL(endpoint)
        else:
            url = httpx.URL(f"{self.base_url.rstrip('/')}/{endpoint.lstrip('/')}")
        if params:
            url = url.copy_merge_params(params)
        return str(url)

    def get_rate_limit_info(self) -> RateLimitInfo | None:
        """Most recent quota state reported by the provider."""
        return self._rate_limit

    def is_rate_limited(self) -> bool:
        """True while the provider reported an exhausted, not yet reset quota."""
        return self._rate_limit is not None and self._rate_limit.is_limited(self._clock())

    async def get(
        self,
        endpoint: str,
        params: dict[str, str | int | float | bool] | None = None,
    ) -> NormalizedResponse[Any]:
        return await self.request(endpoint, RequestConfig(method="GET", params=params))

    async def post(self, endpoint: str, body: Any) -> NormalizedResponse[Any]:
        return await self.request(endpoint, RequestConfig(method="POST", body=body))

    async def request(
        self,
        endpoint: str,
        config: RequestConfig | None = None,
    ) -> NormalizedResponse[Any]:
        """Execute a request with timeout, retries and error classification.

        Args:
            endpoint: Path relative to the base URL (or an absolute URL).
            config: Per-call settings; unset fields use settings defaults.

        Returns:
            NormalizedResponse with the decoded JSON body.

        Raises:
            RateLimitError: On HTTP 429 (no retry attempted).
            APICallError: On a non-retryable non-2xx status or bad JSON.
            DataFetchError: When every attempt failed with a retryable error.
        """
        config = config or RequestConfig()
        timeout = config.timeout if config.timeout is not None else self.settings.REQUEST_TIMEOUT
        retries = config.retries if config.retries is not None else self.settings.REQUEST_RETRIES
        retry_delay = (
            config.retry_delay
            if config.retry_delay is not None
            else self.settings.REQUEST_RETRY_DELAY
        )
        exponential = (
            config.exponential_backoff
            if config.exponential_backoff is not None
            else self.settings.REQUEST_EXPONENTIAL_BACKOFF
        )

        url = self.build_url(endpoint, config.params)
        headers = {**self.default_headers, **config.headers}
        content: bytes | None = None
        if config.body is not None:
            content = orjson.dumps(config.body)
            headers["Content-Type"] = "application/json"

        def wait(retry_state: RetryCallState) -> float:
            return compute_backoff_delay(
                retry_delay, retry_state.attempt_number - 1, exponential
            )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(retries + 1),
            wait=wait,
            retry=retry_if_exception(is_retryable),
            sleep=self._sleep,
            before_sleep=self._log_retry,
        )

        with log_context(request_id=generate_id("req"), source=self.source):
            logger.debug("Request", method=config.method, url=url, state=FetchState.FETCHING.value)
            try:
                async for attempt in retrying:
                    with attempt:
                        data = await self._attempt(config.method, url, headers, content, timeout)
            except RetryError as e:
                last_error = e.last_attempt.exception()
                attempts = e.last_attempt.attempt_number
                logger.warning(
                    "Request failed after retries",
                    url=url,
                    attempts=attempts,
                    state=FetchState.FETCH_EXHAUSTED.value,
                    error=str(last_error),
                )
                raise DataFetchError(
                    f"Failed after {attempts} attempts: {last_error}",
                    source=self.source,
                    fallback_used=False,
                    context={"url": url, "attempts": attempts, "last_error": str(last_error)},
                ) from last_error

            logger.debug("Request succeeded", url=url, state=FetchState.FETCH_SUCCESS.value)

        return NormalizedResponse(
            data=data,
            success=True,
            timestamp=self._clock(),
            source=self.source,
            cached=False,
        )

    def _log_retry(self, retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        logger.info(
            "Retrying request",
            attempt=retry_state.attempt_number,
            delay_s=delay,
            state=FetchState.FETCH_RETRY.value,
            error=str(error),
        )

    async def _attempt(
        self,
        method: str,
        url: str,
        headers: dict[str, str],
        content: bytes | None,
        timeout: float,
    ) -> Any:
        """One transport round trip, classified into data or a typed error."""
        client = await self._get_client()

        try:
            response = await asyncio.wait_for(
                client.request(
                    method, url, headers=headers, content=content, timeout=timeout
                ),
                timeout=timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            raise TransportError(
                f"Request timed out after {timeout}s",
                source=self.source,
                timed_out=True,
                context={"url": url},
            ) from e
        except httpx.TransportError as e:
            raise TransportError(
                f"Request failed: {e}",
                source=self.source,
                context={"url": url, "error_type": type(e).__name__},
            ) from e

        self._record_rate_limit(response.headers)

        if response.status_code == 429:
            reset_time = parse_rate_limit_reset(response.headers, self._clock())
            logger.warning("Rate limited", url=url, reset_time=reset_time)
            raise RateLimitError(
                f"Rate limit exceeded for {self.source}",
                source=self.source,
                reset_time=reset_time,
                context={"url": url},
            )

        if not response.is_success:
            raise APICallError(
                f"HTTP {response.status_code}: {response.reason_phrase}",
                code="HTTP_ERROR",
                status=response.status_code,
                source=self.source,
                context={"url": url},
            )

        if not response.content:
            return None

        try:
            return orjson.loads(response.content)
        except orjson.JSONDecodeError as e:
            raise APICallError(
                "Response body is not valid JSON",
                code="PARSE_ERROR",
                status=response.status_code,
                source=self.source,
                context={"url": url, "body": response.text[:200]},
            ) from e

    def _record_rate_limit(self, headers: httpx.Headers) -> None:
        if RATE_LIMIT_RESET_HEADER not in headers and RATE_LIMIT_REMAINING_HEADER not in headers:
            return
        self._rate_limit = RateLimitInfo(
            limit=_int_header(headers, RATE_LIMIT_LIMIT_HEADER),
            remaining=_int_header(headers, RATE_LIMIT_REMAINING_HEADER),
            reset=parse_rate_limit_reset(headers, self._clock()),
            source=self.source,
        )
