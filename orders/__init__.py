"""
Order lifecycle engine for the subscriber boost service

Provides:
- Tiered pricing (single best bulk discount)
- The order state machine: create, advance, fail, cancel with proportional refund, retry
- A per-order progress scheduler on asyncio tasks
- Lifecycle events published to a pluggable notification sink
"""

from .models import Order, OrderStatus, OrderEventType
from .pricing import price, quote
from .scheduler import OrderProgressScheduler
from .service import (
    OrderService,
    OrderServiceError,
    OrderValidationError,
    OrderNotFoundError,
    InvalidOrderTransitionError,
    ProcessingFailure,
)

__all__ = [
    "Order",
    "OrderStatus",
    "OrderEventType",
    "price",
    "quote",
    "OrderProgressScheduler",
    "OrderService",
    "OrderServiceError",
    "OrderValidationError",
    "OrderNotFoundError",
    "InvalidOrderTransitionError",
    "ProcessingFailure",
]
