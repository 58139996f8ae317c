"""Async HTTP plumbing shared by the geocoding and routing providers."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Mapping

import httpx

from ..errors import ProviderError

logger = logging.getLogger(__name__)


class MinIntervalThrottle:
    """Enforce a minimum delay between two dispatches of the same provider."""

    def __init__(self, min_interval_seconds: float) -> None:
        self.min_interval_seconds = min_interval_seconds
        self._last_dispatch: float | None = None

    async def wait(self) -> None:
        if self._last_dispatch is not None:
            elapsed = time.monotonic() - self._last_dispatch
            remaining = self.min_interval_seconds - elapsed
            if remaining > 0:
                await asyncio.sleep(remaining)
        self._last_dispatch = time.monotonic()


def _is_retryable_status(status_code: int) -> bool:
    return status_code == 429 or status_code >= 500


async def request_json(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    provider: str,
    params: Mapping[str, Any] | None = None,
    headers: Mapping[str, str] | None = None,
    json_body: Any = None,
    max_retries: int = 0,
    backoff_seconds: float = 0.5,
    throttle: MinIntervalThrottle | None = None,
) -> Any:
    """Send ``method url`` and decode the JSON answer, retrying timeouts, network errors and 5xx/429 answers.

    ``throttle`` is awaited before every attempt, retries included. Every failure
    surfaces as ``ProviderError``.
    """

    attempt = 0
    while True:
        if throttle is not None:
            await throttle.wait()
        try:
            response = await client.request(method, url, params=params, headers=headers, json=json_body)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as error:
            status_code = error.response.status_code
            attempt += 1
            if not _is_retryable_status(status_code) or attempt > max_retries:
                raise ProviderError(
                    f"{provider} returned HTTP {status_code}", provider=provider, status_code=status_code
                ) from error
            await asyncio.sleep(backoff_seconds * attempt)
        except httpx.TimeoutException as error:
            attempt += 1
            if attempt > max_retries:
                logger.warning(f"{provider} request timed out after {attempt} attempt(s): {error}")
                raise ProviderError(f"{provider} request timed out", provider=provider) from error
            wait_time = backoff_seconds * (2 ** (attempt - 1))
            logger.debug(f"{provider} timeout, retrying in {wait_time:.1f}s (attempt {attempt}/{max_retries})")
            await asyncio.sleep(wait_time)
        except httpx.HTTPError as error:
            attempt += 1
            if attempt > max_retries:
                raise ProviderError(f"Failed to reach {provider}: {error}", provider=provider) from error
            wait_time = backoff_seconds * (2 ** (attempt - 1))
            logger.debug(f"{provider} network error, retrying in {wait_time:.1f}s: {error}")
            await asyncio.sleep(wait_time)
        except ValueError as error:
            raise ProviderError(f"{provider} returned invalid JSON", provider=provider) from error


class HttpProviderMixin:
    """Owns the throttle and the optional shared client of an HTTP-backed provider."""

    name = "http"

    def _init_http(
        self,
        *,
        min_interval_seconds: float,
        timeout_seconds: float,
        max_retries: int,
        backoff_seconds: float,
        client: httpx.AsyncClient | None,
    ) -> None:
        self.throttle = MinIntervalThrottle(min_interval_seconds)
        self.timeout_seconds = timeout_seconds
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self._client = client

    async def _request_json(
        self,
        method: str,
        url: str,
        *,
        params: Mapping[str, Any] | None = None,
        headers: Mapping[str, str] | None = None,
        json_body: Any = None,
    ) -> Any:
        options = {
            "provider": self.name,
            "params": params,
            "headers": headers,
            "json_body": json_body,
            "max_retries": self.max_retries,
            "backoff_seconds": self.backoff_seconds,
            "throttle": self.throttle,
        }
        if self._client is not None:
            return await request_json(self._client, method, url, **options)
        async with httpx.AsyncClient(timeout=httpx.Timeout(self.timeout_seconds, connect=10.0)) as client:
            return await request_json(client, method, url, **options)

    async def _get_json(
        self,
        url: str,
        *,
        params: Mapping[str, Any] | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> Any:
        return await self._request_json("GET", url, params=params, headers=headers)
