"""
HTTP requests with exponential backoff on transient failures.

Retries 5xx, 429 and network errors: base_delay * 2^attempt + random jitter,
honouring a numeric Retry-After header. Any other 4xx fails immediately.
"""

import asyncio
import random
import logging
from typing import Awaitable, Callable, Optional

import httpx

from .errors import TerminalServiceError, TransientServiceError

logger = logging.getLogger(__name__)

# ── Retry configuration ──────────────────────────────────────────────────────
MAX_RETRIES = 3
BASE_DELAY = 1.0   # seconds, doubles each retry: 1, 2, 4
JITTER_MAX = 0.5   # kept below BASE_DELAY so successive delays still grow


def is_retryable_status(status_code: int) -> bool:
    return status_code == 429 or status_code >= 500


def backoff_delay(attempt: int, base_delay: float = BASE_DELAY, jitter: float = JITTER_MAX) -> float:
    return base_delay * (2 ** attempt) + (random.uniform(0, jitter) if jitter else 0.0)


async def request_with_backoff(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    max_retries: int = MAX_RETRIES,
    base_delay: float = BASE_DELAY,
    jitter: float = JITTER_MAX,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    label: str = "HTTP",
    **kwargs,
) -> httpx.Response:
    """
    Send a request, retrying transient failures up to `max_retries` times.

    Returns the first response with a status below 400.

    Raises:
        TerminalServiceError:  non-retryable 4xx.
        TransientServiceError: retries exhausted on 5xx/429/network errors.
    """
    last_error: Optional[str] = None

    for attempt in range(max_retries + 1):
        try:
            response = await client.request(method, url, **kwargs)
        except httpx.TransportError as e:
            last_error = f"{type(e).__name__}: {e}"
            if attempt >= max_retries:
                raise TransientServiceError(
                    f"{label} network error after {attempt + 1} attempts: {last_error}"
                ) from e
            delay = backoff_delay(attempt, base_delay, jitter)
            logger.warning(
                f"{label} request error on attempt {attempt + 1}/{max_retries + 1}: {last_error} "
                f"- retrying in {delay:.1f}s"
            )
            await sleep(delay)
            continue

        if response.status_code < 400:
            return response

        body = response.text[:300]
        if not is_retryable_status(response.status_code):
            raise TerminalServiceError(
                f"{label} HTTP {response.status_code}: {body}", response.status_code
            )

        last_error = f"HTTP {response.status_code}: {body}"
        if attempt >= max_retries:
            raise TransientServiceError(
                f"{label} failed after {attempt + 1} attempts: {last_error}",
                response.status_code,
            )

        retry_after = response.headers.get("Retry-After")
        if retry_after and retry_after.isdigit():
            delay = float(retry_after)
        else:
            delay = backoff_delay(attempt, base_delay, jitter)

        logger.warning(
            f"{label} {response.status_code} on attempt {attempt + 1}/{max_retries + 1} "
            f"- retrying in {delay:.1f}s (url={url})"
        )
        await sleep(delay)

    raise TransientServiceError(f"{label} failed after {max_retries + 1} attempts: {last_error}")
