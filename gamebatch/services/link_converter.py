"""
Link conversion - turns a primary upload URL into a mirror URL.

The conversion service needs time to scan freshly uploaded files, so it
is polled until it answers with a link or the size-scaled budget runs out.
"""
from typing import Awaitable, Callable, Optional
import asyncio
import logging
import time

import httpx

from ..models import GB
from ..utils.cancellation import CancellationToken

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 30
BASE_RETRY_DELAY = 10
MAX_RETRY_DELAY = 60
BUDGET_SECONDS_PER_GB = 60
MIN_BUDGET = 60.0
MAX_BUDGET = 1800.0
STILL_PROCESSING_MARKERS = ("LINK_DOWN", "wait")


def conversion_budget(size_bytes: int) -> float:
    """Wall-clock polling budget: 60 s per GB, between 1 and 30 minutes."""
    seconds = (max(0, size_bytes) / GB) * BUDGET_SECONDS_PER_GB
    return min(MAX_BUDGET, max(MIN_BUDGET, seconds))


def poll_delay(attempt: int) -> int:
    return min(BASE_RETRY_DELAY + attempt * 2, MAX_RETRY_DELAY)


class HTTPLinkConverter:
    """
    Posts {"link": url} to a conversion endpoint and returns the mirror link.

    Returns None when the service never produced a link within the budget.
    """

    def __init__(
        self,
        endpoint: str,
        max_attempts: int = MAX_ATTEMPTS,
        request_timeout: float = 30.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._endpoint = endpoint
        self._max_attempts = max_attempts
        self._request_timeout = request_timeout
        self._sleep = sleep
        self._clock = clock
        self._transport = transport

    @staticmethod
    def normalize(url: str) -> str:
        if url.lower().startswith("http://"):
            return "https://" + url[7:]
        return url

    async def convert(
        self,
        url: str,
        size_hint: int = 0,
        cancel_token: Optional[CancellationToken] = None
    ) -> Optional[str]:
        url = self.normalize(url)
        deadline = self._clock() + conversion_budget(size_hint)

        async with httpx.AsyncClient(timeout=self._request_timeout, transport=self._transport) as client:
            for attempt in range(1, self._max_attempts + 1):
                if cancel_token is not None and cancel_token.is_cancelled:
                    return None
                delay = BASE_RETRY_DELAY
                try:
                    logger.debug(f"Converting link (attempt {attempt}/{self._max_attempts}): {url}")
                    response = await client.post(self._endpoint, json={"link": url})
                    if response.is_success:
                        link = response.json().get("link")
                        if link:
                            logger.info(f"Converted link: {link}")
                            return link
                    elif any(m in response.text for m in STILL_PROCESSING_MARKERS):
                        delay = poll_delay(attempt)
                        logger.debug(f"Conversion service still scanning, retry in {delay}s")
                    else:
                        logger.debug(f"Conversion failed with HTTP {response.status_code}")
                except (httpx.HTTPError, ValueError) as e:
                    logger.debug(f"Conversion attempt {attempt} error: {e}")

                if attempt == self._max_attempts or self._clock() + delay > deadline:
                    break
                await self._sleep(delay)

        logger.warning(f"Link conversion gave up for {url}")
        return None
