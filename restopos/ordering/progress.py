# restopos/ordering/progress.py
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Optional, Union

from ..domain import Order, OrderStatus
from .flow import is_terminal, next_auto_status

logger = logging.getLogger(__name__)

# Progress drift (percentage points) tolerated before it is written back to the store.
PERSIST_THRESHOLD = 5


@dataclass(frozen=True)
class Advance:
    status: OrderStatus


@dataclass(frozen=True)
class Complete:
    """Due, but the sequence has no further step: stop the timer in place."""


@dataclass(frozen=True)
class PersistProgress:
    percent: int


@dataclass(frozen=True)
class RefreshProgress:
    percent: int


SweepDecision = Union[Advance, Complete, PersistProgress, RefreshProgress]


def is_sweep_candidate(order: Order) -> bool:
    return bool(order.auto_progress and order.next_auto_transition_time and not is_terminal(order.status))


def compute_progress(total_ms: int, next_at: datetime, now: datetime) -> float:
    remaining_ms = (next_at - now).total_seconds() * 1000
    if total_ms > 0:
        elapsed_ms = total_ms - remaining_ms
        return min(100.0, max(0.0, elapsed_ms / total_ms * 100))
    return 100.0 if now >= next_at else 0.0


def sweep_decision(
    order: Order,
    *,
    total_ms: int,
    now: datetime,
    persisted_percent: Optional[int] = None,
) -> Optional[SweepDecision]:
    if not is_sweep_candidate(order):
        return None

    next_at = order.next_auto_transition_time
    if now >= next_at:
        nxt = next_auto_status(order.order_type, order.status)
        return Advance(nxt) if nxt is not None else Complete()

    progress = compute_progress(total_ms, next_at, now)
    percent = round(progress)
    stored = order.current_progress_percent if persisted_percent is None else persisted_percent
    stored = stored or 0

    if (
        abs(progress - stored) > PERSIST_THRESHOLD
        or (progress == 100 and stored != 100)
        or (progress == 0 and stored != 0)
    ):
        return PersistProgress(percent)
    if percent != order.current_progress_percent:
        return RefreshProgress(percent)
    return None


class PeriodicTask:
    """
    Runs `callback` every `interval_ms` on the running event loop.

    A tick that arrives while the previous run is still going is skipped.
    """

    def __init__(self, callback: Callable[[], Awaitable[object]], interval_ms: int, name: str = "periodic") -> None:
        if interval_ms <= 0:
            raise ValueError("interval_ms must be positive")
        self._callback = callback
        self._interval = interval_ms / 1000
        self._name = name
        self._task: Optional[asyncio.Task] = None
        self._busy = False

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._loop(), name=self._name)
        logger.info("%s started (every %.1fs)", self._name, self._interval)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("%s stopped", self._name)

    async def tick(self) -> bool:
        """Run the callback once unless a run is in flight. Returns whether it ran."""
        if self._busy:
            logger.debug("%s: previous run still in progress, skipping tick", self._name)
            return False
        self._busy = True
        try:
            await self._callback()
        except Exception:
            logger.exception("%s: run failed", self._name)
        finally:
            self._busy = False
        return True

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            await self.tick()
