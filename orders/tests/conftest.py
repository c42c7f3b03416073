import random
from dataclasses import dataclass
from decimal import Decimal
from uuid import UUID

import pytest

from common.config import Settings
from ledger.models import TransactionKind, DepositMetadata
from ledger.service import LedgerService
from orders.channels import ChannelRegistry
from orders.notifications import InMemoryNotificationSink
from orders.service import OrderService

CHANNEL_URL = "https://www.youtube.com/@creatorchannel"


@dataclass
class Harness:
    settings: Settings
    ledger: LedgerService
    channels: ChannelRegistry
    sink: InMemoryNotificationSink
    orders: OrderService
    user_id: UUID

    def balance(self, user_id: UUID = None) -> Decimal:
        return self.ledger.get_account(user_id or self.user_id).balance

    def events(self, event_type: str = None, user_id: UUID = None) -> list:
        return self.sink.history(user_id or self.user_id, event_type)

    def add_user(self, email: str, funds: int = 0) -> UUID:
        user = self.ledger.register_user("Other Creator", email)
        if funds:
            self.ledger.credit(user.id, funds, TransactionKind.DEPOSIT, metadata=DepositMetadata())
        self.channels.verify(user.id, CHANNEL_URL)
        return user.id


def build_harness(funds: int = 1000, **overrides) -> Harness:
    # A long tick keeps the scheduler idle so tests drive progress explicitly.
    options = {"tick_interval_seconds": 3600.0}
    options.update(overrides)
    settings = Settings(**options)

    ledger = LedgerService(settings=settings)
    channels = ChannelRegistry(rng=random.Random(7))
    sink = InMemoryNotificationSink(settings.event_history_size)
    orders = OrderService(ledger, channels, sink=sink, settings=settings, rng=random.Random(7))

    user = ledger.register_user("Creator", "creator@example.com")
    if funds:
        ledger.credit(user.id, funds, TransactionKind.DEPOSIT, metadata=DepositMetadata())
    channels.verify(user.id, CHANNEL_URL)
    return Harness(settings, ledger, channels, sink, orders, user.id)


@pytest.fixture
async def env():
    harness = build_harness()
    yield harness
    await harness.orders.shutdown()
