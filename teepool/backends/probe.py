"""
Startup health probing.

A freshly created worker is polled on its health path at a fixed interval.
Connection errors, timeouts and non-200 answers inside the window are
"not ready yet"; only running out of time is a failure.
"""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Optional

import httpx

from teepool.exceptions import HealthCheckFailure

logger = logging.getLogger(__name__)


async def probe_once(client: httpx.AsyncClient, url: str, timeout: float = 2.0) -> bool:
    """Single health probe. Any transport error counts as unhealthy."""
    try:
        response = await client.get(url, timeout=timeout)
        return response.status_code == 200
    except httpx.HTTPError:
        return False


async def wait_until_healthy(
    url: str,
    timeout: float,
    interval: float = 1.0,
    client: Optional[httpx.AsyncClient] = None,
    worker_id: Optional[str] = None,
) -> int:
    """
    Poll url until it answers 200 or timeout seconds elapse.

    Returns:
        Number of probes made.

    Raises:
        HealthCheckFailure: If the worker never answered healthy in time.
    """
    owns_client = client is None
    if client is None:
        client = httpx.AsyncClient()

    deadline = time.monotonic() + timeout
    attempts = 0
    try:
        while True:
            attempts += 1
            remaining = deadline - time.monotonic()
            if await probe_once(client, url, timeout=max(0.1, min(2.0, remaining))):
                logger.debug("Health probe ok for %s after %d attempt(s)", url, attempts)
                return attempts

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise HealthCheckFailure(
                    f"{url} not healthy after {timeout:.1f}s",
                    url=url,
                    attempts=attempts,
                    worker_id=worker_id,
                )
            await asyncio.sleep(min(interval, remaining))
    finally:
        if owns_client:
            await client.aclose()
