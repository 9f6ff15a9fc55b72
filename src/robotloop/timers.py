"""Durable timers for the plan loop's suspensions.

The controller never sleeps directly: every wait goes through a timer
keyed by its logical position in the run (``cycle-7:interval``,
``cycle-7:attention``). ``StoreTimer`` persists the deadline of each key,
so a run resumed after a restart waits only for the time that remains.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable

from robotloop.store import RunStore

logger = logging.getLogger(__name__)

Sleeper = Callable[[float], Awaitable[None]]


class Timer:
    """Timer interface used by the plan controller."""

    async def sleep(self, key: str, seconds: float) -> None:
        raise NotImplementedError


class InMemoryTimer(Timer):
    """Plain in-process wait. Does not survive restarts."""

    def __init__(self, sleeper: Sleeper | None = None):
        self._sleep = sleeper or asyncio.sleep

    async def sleep(self, key: str, seconds: float) -> None:
        logger.debug(f"Timer {key}: sleeping {seconds:.1f}s")
        await self._sleep(seconds)


class StoreTimer(Timer):
    """Timer whose deadlines live in the run store."""

    def __init__(
        self,
        store: RunStore,
        run_id: str,
        clock: Callable[[], float] = time.time,
        sleeper: Sleeper | None = None,
    ):
        self._store = store
        self._run_id = run_id
        self._clock = clock
        self._sleep = sleeper or asyncio.sleep

    async def sleep(self, key: str, seconds: float) -> None:
        now = self._clock()
        due_at = self._store.timer_due_at(self._run_id, key, now + seconds)
        remaining = max(0.0, due_at - now)
        if remaining < seconds:
            logger.info(f"Timer {key} resumed: {remaining:.1f}s of {seconds:.1f}s remaining")
        else:
            logger.debug(f"Timer {key}: sleeping {seconds:.1f}s")
        if remaining > 0:
            await self._sleep(remaining)
        self._store.mark_timer_fired(self._run_id, key)
