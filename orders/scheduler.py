"""
Order progress scheduler.

Each tracked order gets its own ``asyncio.Task`` and a stop event. The task
wakes every ``tick_interval`` seconds and awaits one tick, so ticks for the
same order never overlap while different orders progress independently.
A task ends when the tick reports the order finished, when ``stop`` is
called, when the tick raises (the failure handler runs first), or when the
order outlives ``max_lifetime``.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Optional
from uuid import UUID

import structlog

logger = structlog.get_logger(__name__)

TickHandler = Callable[[UUID], Awaitable[bool]]
FailureHandler = Callable[[UUID, Exception], Awaitable[None]]

DEFAULT_TICK_INTERVAL = 1.0
DEFAULT_MAX_LIFETIME = 24 * 60 * 60.0


class SchedulerError(Exception):
    pass


def estimated_time_remaining(progress: float, started_at: Optional[datetime], now: datetime) -> str:
    if progress >= 100:
        return "completed"
    if progress <= 0 or started_at is None:
        return "calculating"
    elapsed = max(0.0, (now - started_at).total_seconds())
    estimated_total = elapsed / (progress / 100)
    remaining = max(0.0, estimated_total - elapsed)
    minutes, seconds = divmod(int(remaining), 60)
    return f"{minutes}m {seconds}s"


@dataclass
class _TrackedOrder:
    order_id: UUID
    task: asyncio.Task
    stop_event: asyncio.Event
    deadline: float


class OrderProgressScheduler:
    def __init__(self, tick_interval: float = DEFAULT_TICK_INTERVAL, max_lifetime: float = DEFAULT_MAX_LIFETIME):
        if tick_interval <= 0:
            raise SchedulerError("tick_interval must be positive")
        self.tick_interval = tick_interval
        self.max_lifetime = max_lifetime
        self._tracked: dict[UUID, _TrackedOrder] = {}

    def start(self, order_id: UUID, tick: TickHandler, on_failure: FailureHandler) -> None:
        if order_id in self._tracked:
            raise SchedulerError(f"Order {order_id} is already being tracked")

        loop = asyncio.get_running_loop()
        stop_event = asyncio.Event()
        deadline = loop.time() + self.max_lifetime
        task = loop.create_task(
            self._run(order_id, tick, on_failure, stop_event, deadline),
            name=f"order-progress-{order_id}",
        )
        self._tracked[order_id] = _TrackedOrder(order_id, task, stop_event, deadline)
        task.add_done_callback(lambda t: self._release(order_id, t))
        logger.debug("order tracking started", order_id=str(order_id))

    def stop(self, order_id: UUID) -> bool:
        tracked = self._tracked.get(order_id)
        if tracked is None:
            return False
        tracked.stop_event.set()
        return True

    def is_tracking(self, order_id: UUID) -> bool:
        return order_id in self._tracked

    @property
    def active_count(self) -> int:
        return len(self._tracked)

    async def join(self, order_id: UUID, timeout: Optional[float] = None) -> None:
        tracked = self._tracked.get(order_id)
        if tracked is None:
            return
        await asyncio.wait_for(asyncio.shield(tracked.task), timeout=timeout)

    async def shutdown(self) -> None:
        tracked = list(self._tracked.values())
        for entry in tracked:
            entry.stop_event.set()
        if tracked:
            await asyncio.gather(*(entry.task for entry in tracked), return_exceptions=True)
        logger.info("scheduler stopped", orders=len(tracked))

    async def _run(
        self,
        order_id: UUID,
        tick: TickHandler,
        on_failure: FailureHandler,
        stop_event: asyncio.Event,
        deadline: float,
    ) -> None:
        loop = asyncio.get_running_loop()
        while not stop_event.is_set():
            remaining = deadline - loop.time()
            if remaining <= 0:
                logger.warning("order lifetime exceeded, tracking stopped", order_id=str(order_id))
                return
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=min(self.tick_interval, remaining))
                return
            except asyncio.TimeoutError:
                pass
            if loop.time() >= deadline:
                logger.warning("order lifetime exceeded, tracking stopped", order_id=str(order_id))
                return

            try:
                finished = await tick(order_id)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.exception("order tick failed", order_id=str(order_id))
                try:
                    await on_failure(order_id, exc)
                except Exception:
                    logger.exception("failure handler raised", order_id=str(order_id))
                return
            if finished:
                return

    def _release(self, order_id: UUID, task: asyncio.Task) -> None:
        tracked = self._tracked.get(order_id)
        if tracked is not None and tracked.task is task:
            del self._tracked[order_id]
        if not task.cancelled() and task.exception() is not None:
            logger.error("order progress task crashed", order_id=str(order_id), exc=task.exception())
        logger.debug("order tracking released", order_id=str(order_id))
