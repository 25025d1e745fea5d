"""
Retrying sender: one logical POST of a chat request, with bounded retries.

An attempt fails on a transport error or on any non-2xx status. Failed
attempts are retried after an exponential backoff of ``backoff_base ** n``
seconds (n = attempt number, starting at 1). Only the send is retried; a
response that has been handed back to the caller is never replayed.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, Union

import httpx

from fastgpt_bridge.errors import RemoteError, TransportError
from fastgpt_bridge.models import ChatRequest

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 3
BACKOFF_BASE = 2.0

SleepFunc = Callable[[float], Awaitable[None]]


class RetryingSender:
    """POSTs chat requests to a single endpoint over a shared httpx client."""

    def __init__(
        self,
        http: httpx.AsyncClient,
        url: str,
        max_attempts: int = MAX_ATTEMPTS,
        backoff_base: float = BACKOFF_BASE,
        sleep: SleepFunc = asyncio.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._http = http
        self._url = url
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.sleep = sleep

    def backoff_delay(self, attempt: int) -> float:
        return self.backoff_base ** attempt

    async def send(self, request: ChatRequest) -> httpx.Response:
        """Send the request and return an open, unread 2xx response.

        The caller owns the returned response and must close it
        (``await response.aclose()``), or use :meth:`open` instead.
        """
        payload = request.to_payload()
        last_error: Union[RemoteError, TransportError, None] = None

        for attempt in range(1, self.max_attempts + 1):
            http_request = self._http.build_request("POST", self._url, json=payload)
            try:
                response = await self._http.send(http_request, stream=True)
            except httpx.TransportError as e:
                logger.warning(
                    "Chat request attempt %d/%d failed: %s: %s",
                    attempt, self.max_attempts, type(e).__name__, e,
                )
                last_error = TransportError(e)
            else:
                if response.is_success:
                    logger.info(
                        "Chat request attempt %d/%d: HTTP %d",
                        attempt, self.max_attempts, response.status_code,
                    )
                    return response

                body = await self._read_error_body(response)
                logger.warning(
                    "Chat request attempt %d/%d: HTTP %d: %s",
                    attempt, self.max_attempts, response.status_code, body[:200],
                )
                last_error = RemoteError(response.status_code, body)

            if attempt < self.max_attempts:
                delay = self.backoff_delay(attempt)
                logger.info("Retrying chat request in %.0fs", delay)
                await self.sleep(delay)

        logger.error("Chat request failed after %d attempts: %s", self.max_attempts, last_error)
        if isinstance(last_error, TransportError):
            raise last_error from last_error.cause
        raise last_error

    @asynccontextmanager
    async def open(self, request: ChatRequest) -> AsyncIterator[httpx.Response]:
        """Send the request and close the response when the block exits."""
        response = await self.send(request)
        try:
            yield response
        finally:
            await response.aclose()

    @staticmethod
    async def _read_error_body(response: httpx.Response) -> str:
        try:
            await response.aread()
            return response.text
        except httpx.HTTPError as e:
            return f"<error body unreadable: {e}>"
        finally:
            await response.aclose()
