# scheduler.py
import asyncio
import logging
from typing import Optional, Set

from keeper import RoundKeeper

logger = logging.getLogger(__name__)


async def keeper_loop(keeper: RoundKeeper, interval_s: float, max_ticks: Optional[int] = None):
    """
    One tick immediately, then one every interval_s on a fixed cadence.

    Each firing runs as its own task so a hung RPC call never delays the
    timer; the keeper's single-flight guard skips firings that land while
    a tick is still running. Cancelling this coroutine cancels any
    in-flight tick as well.
    """
    loop = asyncio.get_running_loop()
    inflight: Set[asyncio.Task] = set()
    next_at = loop.time()
    fired = 0
    try:
        while max_ticks is None or fired < max_ticks:
            task = asyncio.create_task(keeper.run_tick())
            inflight.add(task)
            task.add_done_callback(inflight.discard)
            task.add_done_callback(_log_task_crash)
            fired += 1

            next_at += interval_s
            await asyncio.sleep(max(0.0, next_at - loop.time()))
    finally:
        for task in inflight:
            task.cancel()
        if inflight:
            await asyncio.gather(*inflight, return_exceptions=True)


def _log_task_crash(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("[keeper_loop] tick task crashed: %s", exc, exc_info=exc)
