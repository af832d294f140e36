"""Shared httpx request helper -- classify upstream failures into domain errors."""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from abacus.core.domain.exceptions import RateLimitedError, UpstreamError

logger = logging.getLogger(__name__)

_MAX_ERROR_BODY = 300


def _retry_after(response: httpx.Response) -> Optional[float]:
    for header in ("retry-after", "x-ratelimit-reset"):
        value = response.headers.get(header)
        if value is None:
            continue
        try:
            return float(value)
        except ValueError:
            continue
    return None


def is_rate_limited(response: httpx.Response) -> bool:
    """429 anywhere; GitHub also signals exhaustion as 403 with remaining=0."""
    if response.status_code == 429:
        return True
    return response.status_code == 403 and response.headers.get("x-ratelimit-remaining") == "0"


def raise_for_upstream(provider: str, response: httpx.Response) -> None:
    if response.is_success:
        return
    body = response.text[:_MAX_ERROR_BODY]
    if is_rate_limited(response):
        raise RateLimitedError(
            provider,
            f"rate limited ({response.status_code}): {body}",
            retry_after=_retry_after(response),
        )
    raise UpstreamError(
        provider,
        f"API error: {response.status_code} - {body}",
        status_code=response.status_code,
    )


async def request_json(
    client: httpx.AsyncClient,
    provider: str,
    method: str,
    url: str,
    **kwargs: Any,
) -> Any:
    """Send one request; return decoded JSON or raise RateLimited/Upstream errors.

    Never retries -- rate limits abort the caller's run.
    """
    try:
        response = await client.request(method, url, **kwargs)
    except httpx.HTTPError as exc:
        raise UpstreamError(provider, f"Fetch error: {exc.__class__.__name__}: {exc}") from exc

    raise_for_upstream(provider, response)
    try:
        return response.json()
    except ValueError as exc:
        raise UpstreamError(provider, f"Invalid JSON from {url}", status_code=response.status_code) from exc
