"""
Unit Tests for the Order Progress Scheduler

Tests cover:
1. Per-order ticking until the order finishes
2. Stop, lifetime cap and shutdown
3. Tick failures routed to the failure handler
4. Many orders progressing concurrently through the service
5. Time-remaining estimate
"""

import asyncio
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest

from conftest import CHANNEL_URL, build_harness
from orders.models import OrderStatus
from orders.scheduler import OrderProgressScheduler, SchedulerError, estimated_time_remaining


async def _no_failure(order_id, exc):
    pass


class TestSchedulerLoop:
    """Direct scheduler behavior with stub ticks."""

    async def test_ticks_until_finished(self):
        scheduler = OrderProgressScheduler(tick_interval=0.01)
        calls = []

        async def tick(order_id):
            calls.append(order_id)
            return len(calls) >= 3

        order_id = uuid4()
        scheduler.start(order_id, tick, _no_failure)
        await scheduler.join(order_id, timeout=2)

        assert calls == [order_id] * 3
        assert not scheduler.is_tracking(order_id)

    async def test_stop_ends_tracking(self):
        scheduler = OrderProgressScheduler(tick_interval=0.01)
        calls = []

        async def tick(order_id):
            calls.append(order_id)
            return False

        order_id = uuid4()
        scheduler.start(order_id, tick, _no_failure)
        await asyncio.sleep(0.05)

        assert scheduler.stop(order_id) is True
        await scheduler.join(order_id, timeout=2)
        seen = len(calls)
        await asyncio.sleep(0.05)

        assert len(calls) == seen
        assert not scheduler.is_tracking(order_id)
        assert scheduler.stop(order_id) is False

    async def test_duplicate_start_rejected(self):
        scheduler = OrderProgressScheduler(tick_interval=3600)

        async def tick(order_id):
            return False

        order_id = uuid4()
        scheduler.start(order_id, tick, _no_failure)
        with pytest.raises(SchedulerError):
            scheduler.start(order_id, tick, _no_failure)
        await scheduler.shutdown()

    def test_interval_must_be_positive(self):
        with pytest.raises(SchedulerError):
            OrderProgressScheduler(tick_interval=0)

    async def test_max_lifetime_stops_tracking(self):
        scheduler = OrderProgressScheduler(tick_interval=0.01, max_lifetime=0.05)

        async def tick(order_id):
            return False

        order_id = uuid4()
        scheduler.start(order_id, tick, _no_failure)
        await scheduler.join(order_id, timeout=2)

        assert not scheduler.is_tracking(order_id)

    async def test_tick_error_calls_failure_handler(self):
        scheduler = OrderProgressScheduler(tick_interval=0.01)
        failures = []

        async def tick(order_id):
            raise RuntimeError("provider timeout")

        async def on_failure(order_id, exc):
            failures.append((order_id, exc))

        order_id = uuid4()
        scheduler.start(order_id, tick, on_failure)
        await scheduler.join(order_id, timeout=2)

        assert len(failures) == 1
        assert failures[0][0] == order_id
        assert isinstance(failures[0][1], RuntimeError)

    async def test_shutdown_stops_everything(self):
        scheduler = OrderProgressScheduler(tick_interval=0.01)

        async def tick(order_id):
            return False

        for _ in range(3):
            scheduler.start(uuid4(), tick, _no_failure)
        assert scheduler.active_count == 3

        await scheduler.shutdown()

        assert scheduler.active_count == 0


class TestServiceProgress:
    """Orders driven by real ticks."""

    async def test_many_orders_complete(self):
        env = build_harness(tick_interval_seconds=0.01, max_progress_step=40.0)
        orders = [
            (await env.orders.create(env.user_id, CHANNEL_URL, 50 * (i + 1))).order
            for i in range(5)
        ]

        for order in orders:
            await env.orders.scheduler.join(order.id, timeout=5)

        for order in orders:
            final = env.orders.get_order(order.id, env.user_id)
            assert final.status == OrderStatus.COMPLETED
            assert final.subscribers_delivered == order.target_subscribers
        assert len(env.events("order-completed")) == 5
        assert env.orders.scheduler.active_count == 0

    async def test_progress_is_monotonic(self):
        env = build_harness(tick_interval_seconds=0.01, max_progress_step=10.0)
        order = (await env.orders.create(env.user_id, CHANNEL_URL, 500)).order

        await env.orders.scheduler.join(order.id, timeout=5)

        values = [e.progress for e in env.events("order-progress")]
        assert values == sorted(values)
        assert all(0 < v < 100 for v in values)

    async def test_tick_failure_fails_order(self):
        env = build_harness(tick_interval_seconds=0.01)

        class FlakyRandom:
            def random(self):
                raise RuntimeError("simulated provider outage")

        env.orders.rng = FlakyRandom()
        order = (await env.orders.create(env.user_id, CHANNEL_URL, 500)).order

        await env.orders.scheduler.join(order.id, timeout=2)

        final = env.orders.get_order(order.id, env.user_id)
        assert final.status == OrderStatus.FAILED
        assert "simulated provider outage" in final.notes
        assert len(env.events("order-failed")) == 1

    async def test_cancel_stops_ticks(self):
        env = build_harness(tick_interval_seconds=0.01, max_progress_step=1.0)
        order = (await env.orders.create(env.user_id, CHANNEL_URL, 500)).order
        await asyncio.sleep(0.05)

        await env.orders.cancel(order.id, env.user_id)
        await env.orders.scheduler.join(order.id, timeout=2)
        events_after_cancel = len(env.events())
        await asyncio.sleep(0.05)

        assert len(env.events()) == events_after_cancel
        assert env.orders.get_order(order.id, env.user_id).status == OrderStatus.CANCELLED


class TestTimeRemaining:
    """Estimate extrapolated from elapsed time and progress."""

    def test_edge_values(self):
        now = datetime.now(timezone.utc)

        assert estimated_time_remaining(0, now, now) == "calculating"
        assert estimated_time_remaining(50, None, now) == "calculating"
        assert estimated_time_remaining(100, now, now) == "completed"

    def test_extrapolation(self):
        now = datetime.now(timezone.utc)

        assert estimated_time_remaining(50, now - timedelta(seconds=60), now) == "1m 0s"
        assert estimated_time_remaining(25, now - timedelta(seconds=30), now) == "1m 30s"


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
