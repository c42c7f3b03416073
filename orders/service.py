import asyncio
import math
import random
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Sequence
from uuid import UUID, uuid4

import structlog

from common.config import Settings, get_settings
from ledger.models import TransactionKind, OrderPaymentMetadata, BulkOrderMetadata
from ledger.service import LedgerService
from . import pricing
from .channels import ChannelRecord, ChannelRegistry, extract_channel_id
from .models import (
    Order,
    OrderStatus,
    OrderStats,
    OrderDetail,
    OrderResponse,
    BulkOrderItem,
    BulkOrderResponse,
    CancelOrderResponse,
    OrderListResponse,
    OrderCreatedEvent,
    OrderProgressEvent,
    OrderCompletedEvent,
    OrderCancelledEvent,
    OrderFailedEvent,
    AnalyticsPeriod,
    ChannelPerformance,
    ChannelSummary,
    DailyOrderStats,
    DashboardStats,
    OrderAnalytics,
    can_transition,
)
from .notifications import InMemoryNotificationSink, NotificationSink
from .scheduler import OrderProgressScheduler, estimated_time_remaining

logger = structlog.get_logger(__name__)

MAX_BULK_ORDERS = 10
NO_REFUND_PROGRESS = 50


class OrderServiceError(Exception):
    pass


class OrderValidationError(OrderServiceError):
    pass


class OrderNotFoundError(OrderServiceError):
    pass


class InvalidOrderTransitionError(OrderServiceError):
    def __init__(self, message: str, current_status: OrderStatus):
        self.current_status = current_status
        super().__init__(message)


class ProcessingFailure(OrderServiceError):
    pass


def refund_amount(status: OrderStatus, progress: float, price: int) -> int:
    if status == OrderStatus.PENDING:
        return price
    if status == OrderStatus.PROCESSING and progress < NO_REFUND_PROGRESS:
        return math.floor(price * (100 - progress) / 100)
    return 0


def delivered_for(target_subscribers: int, progress: float) -> int:
    return math.floor(target_subscribers * progress / 100)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _append_note(existing: Optional[str], note: str) -> str:
    return f"{existing}\n{note}" if existing else note


class OrderService:
    def __init__(
        self,
        ledger: LedgerService,
        channels: ChannelRegistry,
        sink: Optional[NotificationSink] = None,
        scheduler: Optional[OrderProgressScheduler] = None,
        settings: Optional[Settings] = None,
        rng: Optional[random.Random] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.settings = settings or get_settings()
        self.ledger = ledger
        self.channels = channels
        self.sink = sink or InMemoryNotificationSink(self.settings.event_history_size)
        self.scheduler = scheduler or OrderProgressScheduler(
            tick_interval=self.settings.tick_interval_seconds,
            max_lifetime=self.settings.max_order_lifetime_seconds,
        )
        self.rng = rng or random.Random()
        self.clock = clock
        self._orders: dict[UUID, dict] = {}
        self._locks: dict[UUID, asyncio.Lock] = {}

    # Creation

    async def create(
        self,
        user_id: UUID,
        channel_url: str,
        target_subscribers: int,
        notes: Optional[str] = None,
        retry_of: Optional[UUID] = None,
        auto_start: bool = True,
    ) -> OrderResponse:
        self._validate_subscribers(target_subscribers)
        channel = self._require_verified_channel(user_id, channel_url)
        quote = pricing.quote(target_subscribers)

        payment = self.ledger.debit(
            user_id,
            quote.final_price,
            TransactionKind.ORDER_PAYMENT,
            metadata=OrderPaymentMetadata(
                channel_url=channel_url,
                subscribers=target_subscribers,
                base_price=quote.base_price,
                discount_percentage=quote.discount_percentage,
                retry_of=retry_of,
            ),
            description=(
                f"Retry payment for failed order #{retry_of}" if retry_of
                else f"Payment for {target_subscribers} YouTube subscribers"
            ),
        )

        order_id = uuid4()
        try:
            self._materialize(order_id, user_id, channel, channel_url, target_subscribers,
                              quote.final_price, payment.id, notes, retry_of, auto_start)
        except Exception:
            logger.exception("order creation failed, rolling back payment", order_id=str(order_id))
            self._discard(order_id)
            self.ledger.refund_entry(
                payment.id, quote.final_price, reason="order_creation_rollback", restore_spent=True
            )
            raise

        order = Order(**self._orders[order_id])
        logger.info(
            "order created",
            order_id=str(order_id),
            user_id=str(user_id),
            subscribers=target_subscribers,
            price=quote.final_price,
            retry_of=str(retry_of) if retry_of else None,
        )
        await self._publish(user_id, OrderCreatedEvent(
            order_id=order_id,
            subscribers=target_subscribers,
            price=order.price,
            estimated_completion=order.estimated_completion,
            emitted_at=self.clock(),
        ))
        return OrderResponse(
            order=order,
            ledger_entry=payment,
            balance=payment.balance_after,
            message="Order created successfully",
        )

    async def create_bulk(self, user_id: UUID, items: Sequence[BulkOrderItem]) -> BulkOrderResponse:
        if not items:
            raise OrderValidationError("Orders array is required")
        if len(items) > MAX_BULK_ORDERS:
            raise OrderValidationError(f"Maximum {MAX_BULK_ORDERS} orders per bulk request")

        planned = []
        for item in items:
            self._validate_subscribers(item.subscribers)
            channel = self._require_verified_channel(user_id, item.channel_url)
            planned.append((uuid4(), item, channel, pricing.price(item.subscribers)))
        total_price = sum(p[3] for p in planned)

        payment = self.ledger.debit(
            user_id,
            total_price,
            TransactionKind.ORDER_PAYMENT,
            metadata=BulkOrderMetadata(order_count=len(planned), order_ids=[p[0] for p in planned]),
            description=f"Bulk payment for {len(planned)} orders",
        )

        try:
            for order_id, item, channel, order_price in planned:
                self._materialize(order_id, user_id, channel, item.channel_url, item.subscribers,
                                  order_price, payment.id, None, None, True)
        except Exception:
            logger.exception("bulk order creation failed, rolling back payment", user_id=str(user_id))
            for order_id, *_ in planned:
                self._discard(order_id)
            self.ledger.refund_entry(payment.id, total_price, reason="order_creation_rollback", restore_spent=True)
            raise

        orders = [Order(**self._orders[p[0]]) for p in planned]
        logger.info("bulk order created", user_id=str(user_id), count=len(orders), total_price=total_price)
        for order in orders:
            await self._publish(user_id, OrderCreatedEvent(
                order_id=order.id,
                subscribers=order.target_subscribers,
                price=order.price,
                estimated_completion=order.estimated_completion,
                emitted_at=self.clock(),
            ))
        return BulkOrderResponse(
            orders=orders,
            ledger_entry=payment,
            total_price=total_price,
            balance=payment.balance_after,
            message=f"Bulk order created with {len(orders)} orders",
        )

    async def start_processing(self, order_id: UUID) -> Order:
        async with self._lock_for(order_id):
            data = self._require(order_id)
            self._check_transition(data, OrderStatus.PROCESSING, "start")
            now = self.clock()
            data.update(
                status=OrderStatus.PROCESSING,
                started_at=now,
                estimated_completion=self._estimate_completion(now, data["target_subscribers"]),
                updated_at=now,
            )
            self.scheduler.start(order_id, self._tick, self._on_tick_failure)
            return Order(**data)

    # Lifecycle

    async def advance(self, order_id: UUID, delta: Optional[float] = None) -> Order:
        async with self._lock_for(order_id):
            data = self._require(order_id)
            if data["status"] != OrderStatus.PROCESSING:
                return Order(**data)

            increment = delta if delta is not None else self.rng.random() * self.settings.max_progress_step
            if increment < 0 or math.isnan(increment):
                raise ProcessingFailure(f"Invalid progress increment {increment}")

            now = self.clock()
            progress = min(100.0, data["progress"] + increment)
            target = data["target_subscribers"]
            if progress >= 100:
                data.update(
                    status=OrderStatus.COMPLETED,
                    progress=100.0,
                    subscribers_delivered=target,
                    completed_at=now,
                    updated_at=now,
                )
                self.scheduler.stop(order_id)
                self.ledger.record_subscribers_delivered(data["user_id"], target)
                self.channels.record_delivery(data["user_id"], data["channel_id"], target)
                order = Order(**data)
                logger.info("order completed", order_id=str(order_id), subscribers=target)
                await self._publish(data["user_id"], OrderCompletedEvent(
                    order_id=order_id,
                    subscribers_delivered=target,
                    order=order,
                    emitted_at=now,
                ))
                return order

            data.update(
                progress=progress,
                subscribers_delivered=delivered_for(target, progress),
                updated_at=now,
            )
            order = Order(**data)
            await self._publish(data["user_id"], OrderProgressEvent(
                order_id=order_id,
                progress=progress,
                subscribers_delivered=order.subscribers_delivered,
                estimated_time_remaining=estimated_time_remaining(progress, order.started_at, now),
                emitted_at=now,
            ))
            return order

    async def fail(self, order_id: UUID, reason: str) -> Order:
        async with self._lock_for(order_id):
            data = self._require(order_id)
            self._check_transition(data, OrderStatus.FAILED, "fail")
            now = self.clock()
            data.update(
                status=OrderStatus.FAILED,
                notes=_append_note(data["notes"], reason),
                updated_at=now,
            )
            self.scheduler.stop(order_id)
            logger.warning("order failed", order_id=str(order_id), reason=reason)
            await self._publish(data["user_id"], OrderFailedEvent(order_id=order_id, reason=reason, emitted_at=now))
            return Order(**data)

    async def cancel(self, order_id: UUID, user_id: UUID) -> CancelOrderResponse:
        async with self._lock_for(order_id):
            data = self._require_owned(order_id, user_id)
            self._check_transition(data, OrderStatus.CANCELLED, "cancel")

            amount = refund_amount(data["status"], data["progress"], data["price"])
            refund_entry = None
            if amount > 0 and data["payment"] is not None:
                refund_entry = self.ledger.refund_entry(data["payment"], amount, order_id=order_id)

            if data["status"] == OrderStatus.PENDING:
                message = "Order cancelled successfully with full refund"
            elif amount > 0:
                message = f"Order cancelled successfully with {math.floor(100 - data['progress'])}% refund"
            else:
                message = (
                    "Order cancelled successfully. No refund available as order was "
                    f"more than {NO_REFUND_PROGRESS}% complete"
                )

            now = self.clock()
            data.update(
                status=OrderStatus.CANCELLED,
                progress=0.0,
                completed_at=now,
                notes=_append_note(data["notes"], f"Cancelled by user on {now.isoformat()}"),
                updated_at=now,
            )
            self.scheduler.stop(order_id)
            logger.info("order cancelled", order_id=str(order_id), refund_amount=amount)
            await self._publish(user_id, OrderCancelledEvent(order_id=order_id, refund_amount=amount, emitted_at=now))
            order = Order(**data)

        return CancelOrderResponse(
            order=order,
            refund_amount=amount,
            refund_entry=refund_entry,
            balance=self.ledger.get_account(user_id).balance,
            message=message,
        )

    async def retry(self, order_id: UUID, user_id: UUID) -> OrderResponse:
        data = self._require_owned(order_id, user_id)
        if data["status"] != OrderStatus.FAILED:
            raise InvalidOrderTransitionError(
                f"Only failed orders can be retried, order is {data['status'].value}", data["status"]
            )
        response = await self.create(
            user_id,
            data["channel_url"],
            data["target_subscribers"],
            notes=f"Retry of failed order #{order_id}",
            retry_of=order_id,
        )
        response.message = "Order retry initiated successfully"
        return response

    async def shutdown(self) -> None:
        await self.scheduler.shutdown()

    # Queries

    def get_order(self, order_id: UUID, user_id: UUID) -> Order:
        return Order(**self._require_owned(order_id, user_id))

    def get_order_detail(self, order_id: UUID, user_id: UUID) -> OrderDetail:
        order = self.get_order(order_id, user_id)
        return OrderDetail(order=order, time_remaining=self.time_remaining(order))

    def time_remaining(self, order: Order) -> str:
        if order.status == OrderStatus.PROCESSING:
            return estimated_time_remaining(order.progress, order.started_at, self.clock())
        return order.status.value

    def list_orders(
        self,
        user_id: UUID,
        status: Optional[OrderStatus] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> OrderListResponse:
        owned = self._owned(user_id)
        filtered = [o for o in owned if status is None or o.status == status]
        filtered.sort(key=lambda o: o.created_at, reverse=True)
        return OrderListResponse(
            orders=filtered[offset:offset + limit],
            total_count=len(filtered),
            limit=limit,
            offset=offset,
            stats=self._stats(owned),
        )

    def active_orders_count(self, user_id: UUID) -> int:
        return sum(
            1 for o in list(self._orders.values())
            if o["user_id"] == user_id and o["status"] in (OrderStatus.PENDING, OrderStatus.PROCESSING)
        )

    def order_stats(self, user_id: UUID) -> OrderStats:
        return self._stats(self._owned(user_id))

    def get_analytics(self, user_id: UUID, period: AnalyticsPeriod = AnalyticsPeriod.MONTH) -> OrderAnalytics:
        since = self.clock() - timedelta(days=period.days)
        owned = self._owned(user_id)

        performance = []
        for channel in self.channels.list_for_user(user_id):
            channel_orders = [o for o in owned if o.channel_id == channel.channel_id]
            performance.append(ChannelPerformance(
                channel_id=channel.channel_id,
                title=channel.title,
                thumbnail=channel.thumbnail,
                total_orders=channel.total_orders,
                total_subscribers_added=channel.total_subscribers_added,
                order_count=len(channel_orders),
                total_revenue=sum(o.price for o in channel_orders),
                last_order_date=max((o.created_at for o in channel_orders), default=None),
            ))
        performance.sort(key=lambda c: c.total_subscribers_added, reverse=True)

        return OrderAnalytics(
            period=period,
            start_date=since,
            order_analytics=self._daily_stats(owned, since),
            channel_performance=performance[:10],
            payment_distribution=self.ledger.deposit_breakdown(user_id, since),
        )

    def get_dashboard(self, user_id: UUID) -> DashboardStats:
        owned = self._owned(user_id)
        channels = self.channels.list_for_user(user_id)
        recent = sorted(owned, key=lambda o: o.created_at, reverse=True)[:5]
        return DashboardStats(
            user=self.ledger.get_account(user_id),
            stats=self._stats(owned),
            channels=ChannelSummary(
                total_channels=len(channels),
                total_orders=sum(c.total_orders for c in channels),
                total_subscribers_added=sum(c.total_subscribers_added for c in channels),
            ),
            recent_orders=recent,
            recent_transactions=self.ledger.get_ledger_history(user_id, limit=5).entries,
            daily_orders=self._daily_stats(owned, self.clock() - timedelta(days=AnalyticsPeriod.MONTH.days)),
        )

    # Scheduler callbacks

    async def _tick(self, order_id: UUID) -> bool:
        if order_id not in self._orders:
            return True
        try:
            order = await self.advance(order_id)
        except OrderServiceError:
            raise
        except Exception as exc:
            raise ProcessingFailure(str(exc)) from exc
        return order.status != OrderStatus.PROCESSING

    async def _on_tick_failure(self, order_id: UUID, exc: Exception) -> None:
        try:
            await self.fail(order_id, f"Processing failed: {exc}")
        except InvalidOrderTransitionError as e:
            logger.info("tick failure ignored for finished order", order_id=str(order_id),
                        status=e.current_status.value)

    # Internals

    def _materialize(
        self,
        order_id: UUID,
        user_id: UUID,
        channel: ChannelRecord,
        channel_url: str,
        target_subscribers: int,
        price: int,
        payment_id: UUID,
        notes: Optional[str],
        retry_of: Optional[UUID],
        auto_start: bool,
    ) -> None:
        now = self.clock()
        self._orders[order_id] = {
            "id": order_id,
            "user_id": user_id,
            "channel_url": channel_url,
            "channel_id": channel.channel_id,
            "channel_name": channel.title,
            "current_subscribers": channel.subscriber_count,
            "target_subscribers": target_subscribers,
            "price": price,
            "status": OrderStatus.PROCESSING if auto_start else OrderStatus.PENDING,
            "progress": 0.0,
            "subscribers_delivered": 0,
            "started_at": now if auto_start else None,
            "estimated_completion": self._estimate_completion(now, target_subscribers) if auto_start else None,
            "completed_at": None,
            "notes": notes,
            "payment": payment_id,
            "retry_of": retry_of,
            "created_at": now,
            "updated_at": now,
        }
        if auto_start:
            self.scheduler.start(order_id, self._tick, self._on_tick_failure)
        self.channels.record_order(user_id, channel.channel_id)

    def _discard(self, order_id: UUID) -> None:
        self.scheduler.stop(order_id)
        self._orders.pop(order_id, None)
        self._locks.pop(order_id, None)

    def _estimate_completion(self, start: datetime, target_subscribers: int) -> datetime:
        return start + timedelta(milliseconds=target_subscribers * self.settings.ms_per_subscriber)

    def _validate_subscribers(self, subscribers: int) -> None:
        try:
            pricing.validate_subscribers(subscribers)
        except pricing.PricingError as e:
            raise OrderValidationError(str(e)) from e

    def _require_verified_channel(self, user_id: UUID, channel_url: str) -> ChannelRecord:
        channel_id = extract_channel_id(channel_url)
        if not channel_id:
            raise OrderValidationError("Invalid YouTube channel URL")
        channel = self.channels.get(user_id, channel_id)
        if channel is None:
            raise OrderValidationError("Please verify your channel first")
        return channel

    def _check_transition(self, data: dict, target: OrderStatus, action: str) -> None:
        current = data["status"]
        if not can_transition(current, target):
            raise InvalidOrderTransitionError(f"Cannot {action} order with status: {current.value}", current)

    def _require(self, order_id: UUID) -> dict:
        data = self._orders.get(order_id)
        if data is None:
            raise OrderNotFoundError(f"Order {order_id} not found")
        return data

    def _require_owned(self, order_id: UUID, user_id: UUID) -> dict:
        data = self._orders.get(order_id)
        if data is None or data["user_id"] != user_id:
            raise OrderNotFoundError(f"Order {order_id} not found")
        return data

    def _lock_for(self, order_id: UUID) -> asyncio.Lock:
        lock = self._locks.get(order_id)
        if lock is None:
            lock = self._locks.setdefault(order_id, asyncio.Lock())
        return lock

    def _stats(self, orders: list[Order]) -> OrderStats:
        return OrderStats(
            total_orders=len(orders),
            total_subscribers=sum(o.target_subscribers for o in orders),
            total_spent=sum(o.price for o in orders),
            active_orders=sum(1 for o in orders if o.status in (OrderStatus.PENDING, OrderStatus.PROCESSING)),
            completed_orders=sum(1 for o in orders if o.status == OrderStatus.COMPLETED),
            failed_orders=sum(1 for o in orders if o.status == OrderStatus.FAILED),
            cancelled_orders=sum(1 for o in orders if o.status == OrderStatus.CANCELLED),
        )

    def _owned(self, user_id: UUID) -> list[Order]:
        return [Order(**o) for o in list(self._orders.values()) if o["user_id"] == user_id]

    def _daily_stats(self, orders: list[Order], since: datetime) -> list[DailyOrderStats]:
        days: dict[str, list[Order]] = {}
        for order in orders:
            if order.created_at >= since:
                days.setdefault(order.created_at.date().isoformat(), []).append(order)
        return [
            DailyOrderStats(
                date=day,
                orders=len(batch),
                subscribers=sum(o.target_subscribers for o in batch),
                revenue=sum(o.price for o in batch),
                avg_order_value=sum(o.price for o in batch) / len(batch),
            )
            for day, batch in sorted(days.items())
        ]

    async def _publish(self, user_id: UUID, event) -> None:
        try:
            await self.sink.publish(user_id, event)
        except Exception as exc:
            logger.warning("Failed to publish order event", user_id=str(user_id), event_type=event.type, exc=exc)
