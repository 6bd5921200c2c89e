from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from restopos.coordinator import PosCoordinator
from restopos.db import init_db, make_engine, make_session_factory
from restopos.domain import CartItem
from restopos.store import SqlStore

T0 = datetime(2024, 5, 17, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


def burger(quantity: int = 1, price: float = 25.0, notes=None) -> CartItem:
    return CartItem(menu_item_id="burger", name="Burger", price=price, quantity=quantity, notes=notes)


def soda(quantity: int = 1) -> CartItem:
    return CartItem(menu_item_id="soda", name="Soda", price=5.0, quantity=quantity)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def session_factory():
    engine = make_engine("sqlite://")
    init_db(engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def store(session_factory) -> SqlStore:
    return SqlStore(session_factory)


@pytest.fixture
async def pos(store, clock):
    coordinator = PosCoordinator(store, clock=clock, interval_ms=60_000)
    assert await coordinator.load()
    yield coordinator
    await coordinator.stop()


@pytest.fixture
def notices(pos):
    collected = []
    pos.on_notice(collected.append)
    return collected
