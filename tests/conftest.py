"""
Shared fixtures and helpers for the ingestion tests.
"""
from datetime import datetime, timezone

import httpx
import pytest

from iptv_ingest.utils.http_retry import RetryPolicy


# Retries without sleeping
FAST_POLICY = RetryPolicy(max_retries=3, backoff_initial=0.0, backoff_factor=2.0, backoff_max=0.0, rate_limit_backoff=0.0)


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def mock_http(handler) -> httpx.AsyncClient:
    """AsyncClient whose requests are answered by `handler(request)`"""
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.fixture
def fast_policy() -> RetryPolicy:
    return FAST_POLICY
