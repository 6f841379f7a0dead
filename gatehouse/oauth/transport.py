"""Outbound HTTP with bounded timeouts and retry on transient failures."""

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import httpx

from ..exceptions import ProviderResponseError, ProviderTransportError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff with jitter.

    Only transport failures and 5xx responses are retried; a 4xx answer is
    definitive and raised at once.
    """

    max_retries: int = 2
    base_delay: float = 0.5
    max_delay: float = 5.0
    timeout: float = 10.0

    def delay(self, attempt: int) -> float:
        backoff = self.base_delay * (2 ** (attempt - 1))
        return min(self.max_delay, backoff + random.uniform(0, self.base_delay))


def is_transient(response: httpx.Response) -> bool:
    return response.status_code >= 500


async def send_with_retry(
    client: httpx.AsyncClient,
    provider: str,
    method: str,
    url: str,
    policy: RetryPolicy,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    **kwargs: Any,
) -> httpx.Response:
    """
    Send a request, retrying transient failures.

    Returns:
        A 2xx response

    Raises:
        ProviderTransportError: Network failure or timeout after all retries
        ProviderResponseError: Non-2xx response (immediately for 4xx)
    """
    attempt = 0
    while True:
        try:
            response = await client.request(method, url, timeout=policy.timeout, **kwargs)
        except httpx.TransportError as e:
            attempt += 1
            if attempt > policy.max_retries:
                logger.error(f"Max retries ({policy.max_retries}) exceeded for {provider} {url}: {e}")
                raise ProviderTransportError(provider, f"Request to {url} failed: {e}") from e
            delay = policy.delay(attempt)
            logger.warning(
                f"Retry {attempt}/{policy.max_retries} for {provider} {url} in {delay:.2f}s: {e}"
            )
            await sleep(delay)
            continue

        if response.is_success:
            return response

        if is_transient(response) and attempt < policy.max_retries:
            attempt += 1
            delay = policy.delay(attempt)
            logger.warning(
                f"Retry {attempt}/{policy.max_retries} for {provider} {url} in {delay:.2f}s: "
                f"HTTP {response.status_code}"
            )
            await sleep(delay)
            continue

        raise ProviderResponseError(
            provider,
            f"{url} returned HTTP {response.status_code}",
            status=response.status_code,
            details={"body": response.text[:500]},
        )
