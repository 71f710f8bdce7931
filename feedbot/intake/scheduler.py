"""
Background loops run inside the server's event loop.

- poll loop: one ingestion cycle every N minutes (poll mode only)
- sweep loop: daily removal of aged-out approval candidates
- status loop: periodic store/queue summary in the log

Each loop logs and survives a failing iteration; cancellation ends it.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger("feedbot.intake.scheduler")

STATUS_INTERVAL_SECONDS = 300


def seconds_until_hour(hour: int, now: Optional[datetime] = None) -> float:
    """Seconds from ``now`` (local time) until the next occurrence of ``hour``:00."""
    now = now or datetime.now()
    target = now.replace(hour=hour % 24, minute=0, second=0, microsecond=0)
    if target <= now:
        target += timedelta(days=1)
    return (target - now).total_seconds()


async def run_every(
    interval_seconds: float,
    job: Callable[[], Awaitable[Any]],
    name: str,
    run_immediately: bool = True,
) -> None:
    """Await ``job()`` every ``interval_seconds`` until cancelled."""
    if not run_immediately:
        await asyncio.sleep(interval_seconds)
    while True:
        try:
            await job()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Scheduled job %s failed", name)
        await asyncio.sleep(interval_seconds)


async def run_daily(hour: int, job: Callable[[], Any], name: str) -> None:
    """Call ``job()`` once a day at ``hour``:00 local time until cancelled."""
    while True:
        await asyncio.sleep(seconds_until_hour(hour))
        try:
            result = job()
            if asyncio.iscoroutine(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Daily job %s failed", name)


async def cancel_task(task: Optional[asyncio.Task]) -> None:
    if task is None:
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
