"""
Admission gate: bounds the number of chat requests in flight at once.

Every outbound request holds a permit for its whole lifetime, including the
time spent reading a streamed body. Gates are built explicitly and handed to
the client, so independent clients can have independent limits.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastgpt_bridge.errors import GateClosedError

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 5


class Permit:
    """One admission slot. Released exactly once, however it goes out of scope."""

    def __init__(self, gate: "AdmissionGate"):
        self._gate = gate
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        self._gate._release()

    def __enter__(self) -> "Permit":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()

    async def __aenter__(self) -> "Permit":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()


class AdmissionGate:
    """Counting permit pool backed by an asyncio.Semaphore."""

    def __init__(self, limit: int = DEFAULT_LIMIT):
        if limit < 1:
            raise ValueError(f"admission limit must be at least 1, got {limit}")
        self._limit = limit
        self._semaphore = asyncio.Semaphore(limit)
        self._in_use = 0
        self._closed = False

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def in_use(self) -> int:
        return self._in_use

    @property
    def available(self) -> int:
        return self._limit - self._in_use

    @property
    def closed(self) -> bool:
        return self._closed

    async def acquire(self) -> Permit:
        """Wait for a free slot. Raises GateClosedError once the gate is shut down."""
        if self._closed:
            raise GateClosedError("admission gate is shut down")

        await self._semaphore.acquire()
        if self._closed:
            # Pass the wake-up on so every other waiter fails too.
            self._semaphore.release()
            raise GateClosedError("admission gate is shut down")

        self._in_use += 1
        logger.debug("Permit granted (%d/%d in use)", self._in_use, self._limit)
        return Permit(self)

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[Permit]:
        """Hold a permit for the duration of the block."""
        permit = await self.acquire()
        try:
            yield permit
        finally:
            permit.release()

    def shutdown(self) -> None:
        """Refuse all further admissions and fail anyone still waiting."""
        if self._closed:
            return
        self._closed = True
        self._semaphore.release()
        logger.info("Admission gate shut down (%d permits still held)", self._in_use)

    def _release(self) -> None:
        self._in_use -= 1
        self._semaphore.release()
        logger.debug("Permit released (%d/%d in use)", self._in_use, self._limit)
