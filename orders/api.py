from typing import Optional
from uuid import UUID
from fastapi import APIRouter, Depends, HTTPException, status

from api.deps import current_user_id, get_channel_registry, get_order_service
from ledger.api import insufficient_funds_response
from ledger.service import InsufficientFundsError, LedgerServiceError
from .channels import ChannelError, ChannelRecord, ChannelRegistry
from .models import (
    PriceRequest, CreateOrderRequest, BulkOrderRequest, VerifyChannelRequest,
    OrderResponse, BulkOrderResponse, CancelOrderResponse, OrderDetail,
    OrderListResponse, OrderStats, OrderStatus, AnalyticsPeriod, OrderAnalytics, DashboardStats,
)
from .pricing import PriceQuote, PricingError, quote
from .service import (
    OrderService, OrderValidationError, OrderNotFoundError, InvalidOrderTransitionError,
)

router = APIRouter()


@router.post("/channels/verify", response_model=ChannelRecord, tags=["Channels"])
def verify_channel(
    request: VerifyChannelRequest,
    user_id: UUID = Depends(current_user_id),
    channels: ChannelRegistry = Depends(get_channel_registry),
) -> ChannelRecord:
    try:
        return channels.verify(user_id, request.channel_url)
    except ChannelError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@router.get("/channels", response_model=list[ChannelRecord], tags=["Channels"])
def list_channels(
    user_id: UUID = Depends(current_user_id),
    channels: ChannelRegistry = Depends(get_channel_registry),
) -> list[ChannelRecord]:
    return channels.list_for_user(user_id)


@router.post("/orders/price", response_model=PriceQuote, tags=["Orders"])
def calculate_price(request: PriceRequest) -> PriceQuote:
    try:
        return quote(request.subscribers)
    except PricingError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@router.post("/orders", response_model=OrderResponse, status_code=status.HTTP_201_CREATED, tags=["Orders"])
async def create_order(
    request: CreateOrderRequest,
    user_id: UUID = Depends(current_user_id),
    orders: OrderService = Depends(get_order_service),
) -> OrderResponse:
    try:
        return await orders.create(user_id, request.channel_url, request.subscribers, request.notes)
    except InsufficientFundsError as e:
        raise insufficient_funds_response(e)
    except OrderValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@router.post("/orders/bulk", response_model=BulkOrderResponse, status_code=status.HTTP_201_CREATED, tags=["Orders"])
async def create_bulk_order(
    request: BulkOrderRequest,
    user_id: UUID = Depends(current_user_id),
    orders: OrderService = Depends(get_order_service),
) -> BulkOrderResponse:
    try:
        return await orders.create_bulk(user_id, request.orders)
    except InsufficientFundsError as e:
        raise insufficient_funds_response(e)
    except OrderValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@router.get("/orders", response_model=OrderListResponse, tags=["Orders"])
async def list_orders(
    order_status: Optional[OrderStatus] = None,
    limit: int = 20,
    offset: int = 0,
    user_id: UUID = Depends(current_user_id),
    orders: OrderService = Depends(get_order_service),
) -> OrderListResponse:
    return orders.list_orders(user_id, order_status, limit, offset)


@router.get("/orders/active/count", tags=["Orders"])
async def active_orders_count(
    user_id: UUID = Depends(current_user_id),
    orders: OrderService = Depends(get_order_service),
) -> dict:
    return {"count": orders.active_orders_count(user_id)}


@router.get("/orders/stats", response_model=OrderStats, tags=["Orders"])
async def order_stats(
    user_id: UUID = Depends(current_user_id),
    orders: OrderService = Depends(get_order_service),
) -> OrderStats:
    return orders.order_stats(user_id)


@router.get("/orders/{order_id}", response_model=OrderDetail, tags=["Orders"])
async def get_order(
    order_id: UUID,
    user_id: UUID = Depends(current_user_id),
    orders: OrderService = Depends(get_order_service),
) -> OrderDetail:
    try:
        return orders.get_order_detail(order_id, user_id)
    except OrderNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Order {order_id} not found")


@router.post("/orders/{order_id}/cancel", response_model=CancelOrderResponse, tags=["Orders"])
async def cancel_order(
    order_id: UUID,
    user_id: UUID = Depends(current_user_id),
    orders: OrderService = Depends(get_order_service),
) -> CancelOrderResponse:
    try:
        return await orders.cancel(order_id, user_id)
    except OrderNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Order {order_id} not found")
    except InvalidOrderTransitionError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except LedgerServiceError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))


@router.post("/orders/{order_id}/retry", response_model=OrderResponse, status_code=status.HTTP_201_CREATED, tags=["Orders"])
async def retry_order(
    order_id: UUID,
    user_id: UUID = Depends(current_user_id),
    orders: OrderService = Depends(get_order_service),
) -> OrderResponse:
    try:
        return await orders.retry(order_id, user_id)
    except OrderNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Failed order {order_id} not found")
    except InvalidOrderTransitionError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except InsufficientFundsError as e:
        raise insufficient_funds_response(e)
    except OrderValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@router.get("/users/me/dashboard", response_model=DashboardStats, tags=["Dashboard"])
async def get_dashboard(
    user_id: UUID = Depends(current_user_id),
    orders: OrderService = Depends(get_order_service),
) -> DashboardStats:
    return orders.get_dashboard(user_id)


@router.get("/users/me/analytics", response_model=OrderAnalytics, tags=["Dashboard"])
async def get_analytics(
    period: AnalyticsPeriod = AnalyticsPeriod.MONTH,
    user_id: UUID = Depends(current_user_id),
    orders: OrderService = Depends(get_order_service),
) -> OrderAnalytics:
    return orders.get_analytics(user_id, period)
