"""
Closing sweep.

Closes bookings whose end instant has passed. Runs once shortly after startup,
to catch bookings that elapsed while the process was down, then on a fixed
interval. Started as an asyncio task from the application lifespan.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

Sweep = Callable[[], Awaitable[Any]]
Sleep = Callable[[float], Awaitable[None]]


async def closing_sweep_loop(
    sweep: Sweep,
    *,
    interval_seconds: float,
    startup_delay_seconds: float,
    sleep: Sleep = asyncio.sleep,
) -> None:
    """Periodic loop; a failed sweep is logged and the next one still runs."""
    logger.info(
        "closing sweep loop started interval=%ss startup_delay=%ss",
        interval_seconds,
        startup_delay_seconds,
    )
    try:
        await sleep(startup_delay_seconds)
        while True:
            try:
                await sweep()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("closing sweep failed")
            await sleep(interval_seconds)
    except asyncio.CancelledError:
        logger.info("closing sweep loop cancelled")
        raise
