from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, Literal, Optional, Union
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict

from ledger.models import LedgerEntry, PaymentMethodBreakdown, UserAccount


class OrderStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({OrderStatus.COMPLETED, OrderStatus.FAILED, OrderStatus.CANCELLED})

ALLOWED_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.PROCESSING, OrderStatus.FAILED, OrderStatus.CANCELLED}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.COMPLETED, OrderStatus.FAILED, OrderStatus.CANCELLED}),
    OrderStatus.COMPLETED: frozenset(),
    OrderStatus.FAILED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


class Order(BaseModel):
    id: UUID
    user_id: UUID
    channel_url: str
    channel_id: str
    channel_name: Optional[str] = None
    current_subscribers: Optional[int] = None
    target_subscribers: int = Field(..., ge=50, le=100_000)
    price: int = Field(..., ge=1)
    status: OrderStatus = OrderStatus.PENDING
    progress: float = Field(default=0.0, ge=0, le=100)
    subscribers_delivered: int = 0
    started_at: Optional[datetime] = None
    estimated_completion: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    notes: Optional[str] = None
    payment: Optional[UUID] = None
    retry_of: Optional[UUID] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def can_cancel(self) -> bool:
        return self.status in (OrderStatus.PENDING, OrderStatus.PROCESSING)

    def can_retry(self) -> bool:
        return self.status == OrderStatus.FAILED


class OrderEventType(str, Enum):
    CREATED = "order-created"
    PROGRESS = "order-progress"
    COMPLETED = "order-completed"
    CANCELLED = "order-cancelled"
    FAILED = "order-failed"


class OrderCreatedEvent(BaseModel):
    type: Literal["order-created"] = "order-created"
    order_id: UUID
    subscribers: int
    price: int
    estimated_completion: Optional[datetime] = None
    emitted_at: datetime


class OrderProgressEvent(BaseModel):
    type: Literal["order-progress"] = "order-progress"
    order_id: UUID
    progress: float
    subscribers_delivered: int
    estimated_time_remaining: str
    emitted_at: datetime


class OrderCompletedEvent(BaseModel):
    type: Literal["order-completed"] = "order-completed"
    order_id: UUID
    subscribers_delivered: int
    order: Order
    emitted_at: datetime


class OrderCancelledEvent(BaseModel):
    type: Literal["order-cancelled"] = "order-cancelled"
    order_id: UUID
    refund_amount: int
    status: OrderStatus = OrderStatus.CANCELLED
    emitted_at: datetime


class OrderFailedEvent(BaseModel):
    type: Literal["order-failed"] = "order-failed"
    order_id: UUID
    reason: str
    emitted_at: datetime


OrderEvent = Annotated[
    Union[OrderCreatedEvent, OrderProgressEvent, OrderCompletedEvent, OrderCancelledEvent, OrderFailedEvent],
    Field(discriminator="type"),
]


class PriceRequest(BaseModel):
    subscribers: int


class CreateOrderRequest(BaseModel):
    channel_url: str = Field(..., description="Channel URL, verified beforehand")
    subscribers: int
    notes: Optional[str] = Field(default=None, max_length=500)

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "channel_url": "https://www.youtube.com/@examplechannel",
            "subscribers": 500,
            "notes": "Launch week"
        }
    })


class BulkOrderItem(BaseModel):
    channel_url: str
    subscribers: int


class BulkOrderRequest(BaseModel):
    orders: list[BulkOrderItem] = Field(..., min_length=1, max_length=10)


class VerifyChannelRequest(BaseModel):
    channel_url: str


class OrderResponse(BaseModel):
    order: Order
    ledger_entry: Optional[LedgerEntry] = None
    balance: Optional[Decimal] = None
    message: str


class BulkOrderResponse(BaseModel):
    orders: list[Order]
    ledger_entry: LedgerEntry
    total_price: int
    balance: Decimal
    message: str


class CancelOrderResponse(BaseModel):
    order: Order
    refund_amount: int
    refund_entry: Optional[LedgerEntry] = None
    balance: Optional[Decimal] = None
    message: str


class OrderDetail(BaseModel):
    order: Order
    time_remaining: str


class OrderStats(BaseModel):
    total_orders: int = 0
    total_subscribers: int = 0
    total_spent: int = 0
    active_orders: int = 0
    completed_orders: int = 0
    failed_orders: int = 0
    cancelled_orders: int = 0


class OrderListResponse(BaseModel):
    orders: list[Order]
    total_count: int
    limit: int
    offset: int
    stats: OrderStats


class AnalyticsPeriod(str, Enum):
    WEEK = "7d"
    MONTH = "30d"
    QUARTER = "90d"
    YEAR = "1y"

    @property
    def days(self) -> int:
        return {"7d": 7, "30d": 30, "90d": 90, "1y": 365}[self.value]


class DailyOrderStats(BaseModel):
    date: str
    orders: int
    subscribers: int
    revenue: int
    avg_order_value: float


class ChannelPerformance(BaseModel):
    channel_id: str
    title: str
    thumbnail: Optional[str] = None
    total_orders: int
    total_subscribers_added: int
    order_count: int
    total_revenue: int
    last_order_date: Optional[datetime] = None


class OrderAnalytics(BaseModel):
    period: AnalyticsPeriod
    start_date: datetime
    order_analytics: list[DailyOrderStats]
    channel_performance: list[ChannelPerformance]
    payment_distribution: list[PaymentMethodBreakdown]


class ChannelSummary(BaseModel):
    total_channels: int = 0
    total_orders: int = 0
    total_subscribers_added: int = 0


class DashboardStats(BaseModel):
    user: UserAccount
    stats: OrderStats
    channels: ChannelSummary
    recent_orders: list[Order]
    recent_transactions: list[LedgerEntry]
    daily_orders: list[DailyOrderStats]
