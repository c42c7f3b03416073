from typing import Optional
from uuid import UUID

from fastapi import Depends, Header, HTTPException, Request, status

from ledger.service import LedgerService
from orders.channels import ChannelRegistry
from orders.notifications import InMemoryNotificationSink
from orders.service import OrderService


def get_ledger_service(request: Request) -> LedgerService:
    return request.app.state.ledger


def get_order_service(request: Request) -> OrderService:
    return request.app.state.orders


def get_channel_registry(request: Request) -> ChannelRegistry:
    return request.app.state.channels


def get_notification_sink(request: Request) -> InMemoryNotificationSink:
    return request.app.state.notifications


def current_user_id(
    x_user_id: Optional[str] = Header(default=None),
    ledger: LedgerService = Depends(get_ledger_service),
) -> UUID:
    # Token issuance lives in the auth collaborator; it forwards the verified identity here.
    if not x_user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing X-User-Id header")
    try:
        user_id = UUID(x_user_id)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Malformed X-User-Id header")
    if not ledger.has_user(user_id):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unknown user")
    return user_id
