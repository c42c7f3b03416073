from contextlib import asynccontextmanager
from typing import Optional
from uuid import UUID

from fastapi import Depends, FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from mangum import Mangum
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import structlog

from api.deps import current_user_id, get_notification_sink
from common.config import Settings, get_settings
from common.log import configure_logging
from ledger.api import router as ledger_router
from ledger.service import LedgerService
from orders.api import router as orders_router
from orders.channels import ChannelRegistry
from orders.models import OrderEventType
from orders.notifications import InMemoryNotificationSink
from orders.service import OrderService

logger = structlog.get_logger(__name__)


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.log_level, settings.log_json)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        ledger = LedgerService(settings=settings)
        channels = ChannelRegistry()
        notifications = InMemoryNotificationSink(settings.event_history_size)
        app.state.ledger = ledger
        app.state.channels = channels
        app.state.notifications = notifications
        app.state.orders = OrderService(ledger, channels, sink=notifications, settings=settings)
        logger.info("subscriber boost api started", tick_interval=settings.tick_interval_seconds)
        yield
        await app.state.orders.shutdown()

    app = FastAPI(
        title="Subscriber Boost API",
        description="Wallet ledger and order fulfillment simulator for subscriber boosting",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health", tags=["System"])
    def health_check():
        return {"status": "healthy", "service": "subscriber-boost"}

    @app.get("/users/me/events", tags=["Users"])
    async def poll_events(
        event_type: Optional[OrderEventType] = None,
        user_id: UUID = Depends(current_user_id),
        notifications: InMemoryNotificationSink = Depends(get_notification_sink),
    ) -> list[dict]:
        events = notifications.history(user_id, event_type.value if event_type else None)
        return [e.model_dump(mode="json") for e in events]

    @app.websocket("/ws/events/{user_id}")
    async def stream_events(websocket: WebSocket, user_id: UUID):
        if not websocket.app.state.ledger.has_user(user_id):
            await websocket.close(code=4401)
            return
        await websocket.accept()
        notifications: InMemoryNotificationSink = websocket.app.state.notifications
        queue = notifications.subscribe(user_id)
        try:
            while True:
                event = await queue.get()
                await websocket.send_json(event.model_dump(mode="json"))
        except WebSocketDisconnect:
            logger.info("event stream closed", user_id=str(user_id))
        finally:
            notifications.unsubscribe(user_id, queue)

    app.include_router(ledger_router)
    app.include_router(orders_router)
    return app


app = create_app()
handler = Mangum(app)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
