"""
Background housekeeping: periodic image cleanup for the session store.

Runs as an asyncio task for the lifetime of the app. A failed sweep is logged
and the loop carries on with the next interval.
"""
import asyncio
import logging
from typing import Optional

from fastgpt_bridge.session_store import SessionStore

logger = logging.getLogger(__name__)

_cleanup_task: Optional[asyncio.Task] = None


async def _cleanup_loop(store: SessionStore, expiry_days: float, interval_seconds: float) -> None:
    while True:
        logger.info("Starting periodic session cleanup (expiry %s days)", expiry_days)
        try:
            await store.periodic_cleanup(expiry_days)
        except Exception:
            logger.exception("Periodic session cleanup failed")
        await asyncio.sleep(interval_seconds)


def start_cleanup(store: SessionStore, expiry_days: float, interval_hours: float) -> asyncio.Task:
    """Start the cleanup loop, replacing any loop that is already running."""
    global _cleanup_task
    if _cleanup_task and not _cleanup_task.done():
        _cleanup_task.cancel()
    _cleanup_task = asyncio.create_task(
        _cleanup_loop(store, expiry_days, interval_hours * 60 * 60),
        name="session-cleanup",
    )
    return _cleanup_task


async def stop_cleanup() -> None:
    global _cleanup_task
    task, _cleanup_task = _cleanup_task, None
    if task is None or task.done():
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        logger.debug("Cleanup task cancelled")
