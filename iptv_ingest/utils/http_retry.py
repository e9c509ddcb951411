"""
HTTP retry utilities

Shared by every protocol client: bounded exponential backoff for transient
transport failures and 5xx answers, a single backoff for rate limiting.
4xx answers are returned to the caller untouched; deciding whether a 401 means
bad credentials or an expired session is protocol specific.
"""
from dataclasses import dataclass
import asyncio
import logging

import httpx

from iptv_ingest.config import settings
from iptv_ingest.exceptions import TransientNetworkError
from iptv_ingest.utils.logging_helpers import sanitize_url


logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RetryPolicy:
    max_retries: int = 3
    backoff_initial: float = 1.0
    backoff_factor: float = 2.0
    backoff_max: float = 30.0
    rate_limit_backoff: float = 5.0

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            max_retries=settings.http_max_retries,
            backoff_initial=settings.http_backoff_initial_sec,
            backoff_factor=settings.http_backoff_factor,
            backoff_max=settings.http_backoff_max_sec,
            rate_limit_backoff=settings.rate_limit_backoff_sec,
        )

    def backoff(self, attempt: int) -> float:
        """Wait before retry number `attempt` (0-based)"""
        return min(self.backoff_initial * (self.backoff_factor ** attempt), self.backoff_max)


def _retry_after_seconds(response: httpx.Response, default: float, ceiling: float) -> float:
    value = response.headers.get("Retry-After")
    if not value:
        return default
    try:
        return min(max(float(value), 0.0), ceiling)
    except ValueError:
        return default


async def request_with_retry(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    params: dict | None = None,
    headers: dict | None = None,
    policy: RetryPolicy | None = None,
    stream: bool = False,
) -> httpx.Response:
    """
    Send a request, retrying transient failures

    Retries on transport errors (timeouts, connection errors) and 5xx answers
    up to `policy.max_retries` times after the first attempt. A 429 answer is
    retried exactly once after waiting `Retry-After` (or the policy default).

    Args:
        client: Shared async client
        method: HTTP method
        url: Target URL
        params: Query parameters
        headers: Extra request headers
        policy: Retry policy (defaults to settings)
        stream: When True the body is not read; the caller must close the response

    Returns:
        The first non-retryable response

    Raises:
        TransientNetworkError: If retries are exhausted or rate limiting persists
    """
    policy = policy or RetryPolicy.from_settings()
    safe_url = sanitize_url(url)
    attempt = 0
    rate_limited = False

    while True:
        request = client.build_request(method, url, params=params, headers=headers)
        try:
            response = await client.send(request, stream=stream)
        except httpx.TransportError as e:
            if attempt >= policy.max_retries:
                logger.error(
                    "Request to %s failed after %s attempts (transient error): %s",
                    safe_url,
                    attempt + 1,
                    type(e).__name__,
                )
                raise TransientNetworkError(
                    f"{type(e).__name__} while requesting {safe_url}"
                ) from e
            wait_time = policy.backoff(attempt)
            attempt += 1
            logger.warning(
                "Request attempt %s/%s to %s failed (%s). Retrying in %.1fs...",
                attempt,
                policy.max_retries + 1,
                safe_url,
                type(e).__name__,
                wait_time,
            )
            await asyncio.sleep(wait_time)
            continue

        status = response.status_code

        if status == 429:
            await response.aclose()
            if rate_limited:
                logger.error("Still rate limited by %s after backoff, giving up", safe_url)
                raise TransientNetworkError(f"Rate limited by {safe_url}")
            rate_limited = True
            wait_time = _retry_after_seconds(response, policy.rate_limit_backoff, policy.backoff_max)
            logger.warning("Rate limited by %s, retrying once in %.1fs", safe_url, wait_time)
            await asyncio.sleep(wait_time)
            continue

        if status >= 500:
            await response.aclose()
            if attempt >= policy.max_retries:
                logger.error(
                    "Request to %s failed after %s attempts (HTTP %s)",
                    safe_url,
                    attempt + 1,
                    status,
                )
                raise TransientNetworkError(f"HTTP {status} from {safe_url}")
            wait_time = policy.backoff(attempt)
            attempt += 1
            logger.warning(
                "Request attempt %s/%s to %s failed (HTTP %s server error). Retrying in %.1fs...",
                attempt,
                policy.max_retries + 1,
                safe_url,
                status,
                wait_time,
            )
            await asyncio.sleep(wait_time)
            continue

        return response
