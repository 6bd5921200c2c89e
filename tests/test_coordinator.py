from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest
from conftest import T0, burger, soda
from sqlalchemy import delete

from restopos import models
from restopos.coordinator import PosCoordinator, capture_notices
from restopos.domain import (
    CashAdjustmentType,
    CashSessionStatus,
    CustomerDetails,
    ManualOrderData,
    OrderStatus,
    OrderType,
    PaymentDetails,
    PaymentMethod,
    TableStatus,
)
from restopos.errors import NoticeKind, StoreError
from restopos.printing import SpoolPrinter
from restopos.store import SqlStore


def counter_order(*items, method=PaymentMethod.CARD, amount_paid=None, name="Ana") -> ManualOrderData:
    return ManualOrderData(
        order_type=OrderType.COUNTER,
        items=list(items) or [burger()],
        customer_name=name,
        payment_method=method,
        amount_paid=amount_paid,
    )


def customer(**overrides) -> CustomerDetails:
    data = {"name": "Bruno", "phone": "555-0101", "address": "Rua A, 10", "payment_method": PaymentMethod.CARD}
    data.update(overrides)
    return CustomerDetails(**data)


async def tick(pos, clock, **delta):
    clock.advance(**delta)
    await pos.force_check_order_transitions()


# -------------------
# Lifecycle scenarios
# -------------------
async def test_counter_order_runs_to_delivered(pos, clock):
    order = await pos.create_manual_order(counter_order(burger(2)))
    assert order.status == OrderStatus.PENDING
    assert order.auto_progress is True
    assert order.next_auto_transition_time == T0 + timedelta(minutes=1)
    assert order.total_amount == 50.0
    assert len(order.items) == 1

    await tick(pos, clock, minutes=1)
    current = pos.state.find_order(order.id)
    assert current.status == OrderStatus.PREPARING
    assert current.next_auto_transition_time == clock.now + timedelta(minutes=10)

    await tick(pos, clock, minutes=10)
    assert pos.state.find_order(order.id).status == OrderStatus.READY_FOR_PICKUP

    # counter orders skip the shipping step
    await tick(pos, clock, minutes=5)
    done = pos.state.find_order(order.id)
    assert done.status == OrderStatus.DELIVERED
    assert done.auto_progress is False
    assert done.next_auto_transition_time is None
    assert done.current_progress_percent == 100

    stored = await pos.fetch_order_with_items(order.id)
    assert stored.status == OrderStatus.DELIVERED


async def test_delivery_checkout_goes_through_shipping(pos, clock):
    order = await pos.place_order(customer(), [burger(), soda()])
    assert order.order_type == OrderType.DELIVERY
    assert order.total_amount == 30.0

    seen = []
    for minutes in (1, 15, 5, 30):
        await tick(pos, clock, minutes=minutes)
        seen.append(pos.state.find_order(order.id).status)

    assert seen == [
        OrderStatus.PREPARING,
        OrderStatus.READY_FOR_PICKUP,
        OrderStatus.OUT_FOR_DELIVERY,
        OrderStatus.DELIVERED,
    ]


async def test_dine_in_waits_for_table_close(pos, clock, notices):
    table = await pos.add_table("T1", capacity=2)
    order = await pos.create_manual_order(
        ManualOrderData(order_type=OrderType.DINE_IN, table_id=table.id, items=[burger(2), soda()])
    )
    assert order.customer_name == "Table T1"
    assert order.payment_method is None
    seated = pos.state.find_table(table.id)
    assert seated.status == TableStatus.OCCUPIED
    assert seated.current_order_id == order.id

    await tick(pos, clock, minutes=1)
    await tick(pos, clock, minutes=15)
    held = pos.state.find_order(order.id)
    assert held.status == OrderStatus.READY_FOR_PICKUP
    assert held.auto_progress is False
    assert held.current_progress_percent == 100
    assert any("ready" in n.message.lower() for n in notices)

    await tick(pos, clock, hours=2)
    assert pos.state.find_order(order.id).status == OrderStatus.READY_FOR_PICKUP

    assert await pos.update_order_status(order.id, OrderStatus.DELIVERED) is None
    assert notices[-1].category == "conflict"

    closed = await pos.close_table_account(order.id, PaymentDetails(payment_method=PaymentMethod.CASH, amount_paid=60))
    assert closed.status == OrderStatus.DELIVERED
    assert closed.amount_paid == 60.0
    assert closed.change_due == 5.0
    assert closed.auto_progress is False

    freed = pos.state.find_table(table.id)
    assert freed.status == TableStatus.NEEDS_CLEANING
    assert freed.current_order_id is None


async def test_closing_a_closed_account_returns_it_unchanged(pos, notices):
    order = await pos.create_manual_order(counter_order())
    await pos.update_order_status(order.id, OrderStatus.CANCELLED)

    again = await pos.close_table_account(order.id, PaymentDetails(payment_method=PaymentMethod.CARD))
    assert again.status == OrderStatus.CANCELLED
    assert notices[-1].kind == NoticeKind.INFO


async def test_card_close_pays_exact_total(pos):
    order = await pos.create_manual_order(counter_order(burger()))
    closed = await pos.close_table_account(order.id, PaymentDetails(payment_method=PaymentMethod.CARD))
    assert closed.amount_paid == 25.0
    assert closed.change_due == 0.0
    assert closed.cash_register_session_id is None


# -------------------
# Cash register
# -------------------
async def test_cash_session_reconciles(pos, notices):
    session = await pos.open_cash_register(100.0, "morning")
    assert pos.state.active_cash_session_id == session.id

    cash = await pos.create_manual_order(counter_order(burger(2), method=PaymentMethod.CASH, amount_paid=60))
    assert cash.cash_register_session_id == session.id
    assert cash.amount_paid == 60.0
    assert cash.change_due == 10.0
    await pos.update_order_status(cash.id, OrderStatus.DELIVERED)

    card = await pos.create_manual_order(counter_order(burger(), method=PaymentMethod.CARD))
    await pos.update_order_status(card.id, OrderStatus.DELIVERED)

    # still cooking: not a sale yet
    await pos.create_manual_order(counter_order(soda(), method=PaymentMethod.INSTANT_TRANSFER))

    assert await pos.add_cash_adjustment(session.id, CashAdjustmentType.ADD, 20.0, "float")
    assert await pos.add_cash_adjustment(session.id, CashAdjustmentType.REMOVE, 5.0, "change run")

    closed = await pos.close_cash_register(session.id, 165.0, "all good")
    assert closed.status == CashSessionStatus.CLOSED
    assert closed.calculated_sales == 50.0
    assert closed.expected_in_cash == 165.0
    assert closed.difference == 0.0
    assert closed.expected_in_cash == closed.opening_balance + closed.calculated_sales + 20.0 - 5.0
    assert pos.state.active_cash_session_id is None
    assert notices[-1].kind == NoticeKind.SUCCESS


async def test_short_drawer_is_reported(pos, notices):
    session = await pos.open_cash_register(50.0)
    closed = await pos.close_cash_register(session.id, 45.5)
    assert closed.difference == -4.5
    assert notices[-1].kind == NoticeKind.INFO


async def test_only_one_open_session(pos, notices):
    assert await pos.open_cash_register(10.0)
    assert await pos.open_cash_register(20.0) is None
    assert notices[-1].category == "validation"
    assert len(pos.state.cash_sessions) == 1


async def test_adjustments_need_an_open_session(pos, notices):
    session = await pos.open_cash_register(10.0)
    assert await pos.add_cash_adjustment(session.id, CashAdjustmentType.ADD, 0) is None
    assert notices[-1].category == "validation"

    await pos.close_cash_register(session.id, 10.0)
    assert await pos.add_cash_adjustment(session.id, CashAdjustmentType.ADD, 5.0) is None
    assert await pos.close_cash_register(session.id, 10.0) is None


async def test_cash_order_without_session_is_flagged(pos, notices):
    order = await pos.create_manual_order(counter_order(method=PaymentMethod.CASH, amount_paid=10))
    assert order.cash_register_session_id is None
    # tendered less than the total: no change
    assert order.change_due is None
    assert any(n.kind == NoticeKind.INFO and "cash register" in n.message for n in notices)


# -------------------
# Auto-progress details
# -------------------
async def test_progress_is_persisted_against_stored_value(pos, clock, store):
    order = await pos.create_manual_order(counter_order())

    await tick(pos, clock, seconds=2)
    assert pos.state.find_order(order.id).current_progress_percent == 3
    assert (await store.get("orders", order.id))["current_progress_percent"] == 0

    await tick(pos, clock, seconds=2)
    assert (await store.get("orders", order.id))["current_progress_percent"] == 7
    assert pos.state.find_order(order.id).current_progress_percent == 7


def drop_order_rows(session_factory, order_id):
    # straight through SQLAlchemy, so no change notification goes out
    with session_factory() as db:
        db.execute(delete(models.OrderItem).where(models.OrderItem.order_id == order_id))
        db.execute(delete(models.Order).where(models.Order.id == order_id))
        db.commit()


async def test_progress_write_for_a_vanished_order_drops_it(pos, clock, session_factory):
    order = await pos.create_manual_order(counter_order())
    drop_order_rows(session_factory, order.id)

    await tick(pos, clock, seconds=30)
    assert pos.state.find_order(order.id) is None
    assert order.id not in pos._persisted_progress


async def test_status_change_on_a_vanished_order_is_not_found(pos, session_factory, notices):
    order = await pos.create_manual_order(counter_order())
    drop_order_rows(session_factory, order.id)

    assert await pos.update_order_status(order.id, OrderStatus.PREPARING) is None
    assert notices[-1].category == "not_found"
    assert pos.state.find_order(order.id) is None


async def test_flag_and_timer_stay_consistent(pos, clock):
    order = await pos.create_manual_order(counter_order())
    for _ in range(12):
        await tick(pos, clock, minutes=2)
        for o in pos.state.orders:
            assert 0 <= o.current_progress_percent <= 100
            if not o.auto_progress:
                assert o.next_auto_transition_time is None
    assert pos.state.find_order(order.id).status == OrderStatus.DELIVERED


async def test_terminal_orders_never_move(pos, clock):
    order = await pos.create_manual_order(counter_order())
    await pos.update_order_status(order.id, OrderStatus.CANCELLED)
    await tick(pos, clock, hours=5)
    current = pos.state.find_order(order.id)
    assert current.status == OrderStatus.CANCELLED
    assert current.auto_progress is False


async def test_toggle_auto_progress(pos, clock, notices):
    order = await pos.create_manual_order(counter_order())

    off = await pos.toggle_order_auto_progress(order.id)
    assert off.auto_progress is False
    assert off.next_auto_transition_time is None
    await tick(pos, clock, minutes=10)
    assert pos.state.find_order(order.id).status == OrderStatus.PENDING

    on = await pos.toggle_order_auto_progress(order.id)
    assert on.auto_progress is True
    assert on.next_auto_transition_time == clock.now + timedelta(minutes=1)


async def test_toggle_on_zero_duration_status_is_refused(pos, notices):
    order = await pos.create_manual_order(counter_order())
    # counter orders have no time budget for shipping
    moved = await pos.update_order_status(order.id, OrderStatus.OUT_FOR_DELIVERY)
    assert moved.auto_progress is False

    toggled = await pos.toggle_order_auto_progress(order.id)
    assert toggled.auto_progress is False
    assert toggled.current_progress_percent == 100
    assert notices[-1].kind == NoticeKind.INFO


async def test_manual_cancel_and_due_sweep_do_not_interleave(pos, clock):
    order = await pos.create_manual_order(counter_order())
    clock.advance(minutes=1)
    await asyncio.gather(
        pos.update_order_status(order.id, OrderStatus.CANCELLED),
        pos.force_check_order_transitions(),
    )
    current = pos.state.find_order(order.id)
    assert current.status == OrderStatus.CANCELLED
    assert current.auto_progress is False
    assert current.next_auto_transition_time is None


# -------------------
# Items
# -------------------
async def test_adding_items_reopens_a_ready_order(pos, clock, notices):
    order = await pos.create_manual_order(counter_order(burger()))
    await pos.update_order_status(order.id, OrderStatus.READY_FOR_PICKUP)

    clock.advance(minutes=3)
    updated = await pos.add_items_to_order(order.id, [soda(2)])
    assert updated.status == OrderStatus.PREPARING
    assert updated.total_amount == 35.0
    assert len(updated.items) == 2
    assert updated.auto_progress is True
    assert updated.next_auto_transition_time == clock.now + timedelta(minutes=10)
    assert any("preparing" in n.message for n in notices)


async def test_adding_items_restarts_the_current_timer(pos, clock):
    order = await pos.create_manual_order(counter_order())
    clock.advance(seconds=40)
    updated = await pos.add_items_to_order(order.id, [soda()])
    assert updated.status == OrderStatus.PENDING
    assert updated.next_auto_transition_time == clock.now + timedelta(minutes=1)
    assert updated.current_progress_percent == 0


async def test_adding_items_is_refused_for_finished_orders(pos, notices):
    order = await pos.create_manual_order(counter_order())
    await pos.update_order_status(order.id, OrderStatus.CANCELLED)
    assert await pos.add_items_to_order(order.id, [soda()]) is None
    assert notices[-1].category == "conflict"
    assert await pos.add_items_to_order(order.id, []) is None
    assert notices[-1].category == "validation"


# -------------------
# Creation edge cases
# -------------------
async def test_manual_order_needs_items_and_dine_in_needs_table(pos, notices):
    assert await pos.create_manual_order(ManualOrderData(order_type=OrderType.COUNTER)) is None
    assert notices[-1].category == "validation"

    assert await pos.create_manual_order(ManualOrderData(order_type=OrderType.DINE_IN, items=[burger()])) is None
    assert notices[-1].category == "validation"
    assert pos.state.orders == ()


async def test_checkout_requires_contact_details(pos, notices):
    assert await pos.place_order(customer(address="  "), [burger()]) is None
    assert "address" in notices[-1].message
    assert await pos.place_order(customer(), []) is None
    assert notices[-1].category == "validation"


async def test_equal_lines_are_merged(pos):
    order = await pos.create_manual_order(counter_order(burger(), burger(2), burger(notes="no onion")))
    quantities = sorted((i.notes or "", i.quantity) for i in order.items)
    assert quantities == [("", 3), ("no onion", 1)]
    assert order.total_amount == 100.0


class FlakyItemsStore(SqlStore):
    async def insert(self, table, values):
        if table == "order_items":
            raise StoreError("Insert into order_items failed", "disk I/O error")
        return await super().insert(table, values)


async def test_failed_items_insert_rolls_back_the_order(session_factory, clock):
    store = FlakyItemsStore(session_factory)
    pos = PosCoordinator(store, clock=clock)
    await pos.load()

    with capture_notices() as notices:
        assert await pos.create_manual_order(counter_order()) is None

    assert len(notices) == 1
    assert notices[0].kind == NoticeKind.ERROR
    assert notices[0].category == "persistence"
    assert "rolled back" in notices[0].message
    assert "disk I/O error" in notices[0].message
    assert await store.select("orders") == []
    assert pos.state.orders == ()


class FailingOrderUpdatesStore(SqlStore):
    fail_order_updates = False

    async def update(self, table, row_id, values):
        if table == "orders" and self.fail_order_updates:
            raise StoreError("Update of orders failed", "database is locked")
        return await super().update(table, row_id, values)


async def test_failed_order_update_takes_the_added_items_back(session_factory, clock):
    store = FailingOrderUpdatesStore(session_factory)
    pos = PosCoordinator(store, clock=clock)
    await pos.load()
    watcher = PosCoordinator(store, clock=clock)
    await watcher.load()

    order = await pos.create_manual_order(counter_order())
    snapshots = []
    pos.subscribe(snapshots.append)
    watcher.subscribe(snapshots.append)
    store.fail_order_updates = True

    with capture_notices() as notices:
        assert await pos.add_items_to_order(order.id, [soda()]) is None

    assert len(notices) == 1
    assert notices[0].kind == NoticeKind.ERROR
    assert notices[0].category == "persistence"
    assert len(await store.select("order_items", filters={"order_id": order.id})) == 1
    for coordinator in (pos, watcher):
        kept = coordinator.state.find_order(order.id)
        assert len(kept.items) == 1
        assert kept.total_amount == 25.0
    # the half-written order was never published
    assert all(len(o.items) == 1 for s in snapshots for o in s.orders)
    await watcher.stop()
    await pos.stop()


async def test_unknown_order(pos, notices):
    assert await pos.fetch_order_with_items("nope") is None
    assert notices[-1].category == "not_found"
    assert await pos.update_order_status("nope", OrderStatus.PREPARING) is None
    assert notices[-1].category == "not_found"


async def test_order_locks_are_released(pos, clock):
    order = await pos.create_manual_order(counter_order())
    await pos.update_order_status("nope", OrderStatus.PREPARING)
    await asyncio.gather(
        pos.toggle_order_auto_progress(order.id),
        pos.update_order_status(order.id, OrderStatus.PREPARING),
    )
    await tick(pos, clock, minutes=1)
    await pos.update_order_status(order.id, OrderStatus.DELIVERED)
    await pos.add_items_to_order(order.id, [soda()])

    assert pos._order_locks == {}
    assert pos._lock_users == {}


# -------------------
# Tables
# -------------------
async def test_table_guards(pos, notices):
    table = await pos.add_table("T9")
    order = await pos.create_manual_order(
        ManualOrderData(order_type=OrderType.DINE_IN, table_id=table.id, items=[soda()])
    )

    assert await pos.update_table(table.id, {"status": TableStatus.NEEDS_CLEANING}) is None
    assert notices[-1].category == "conflict"
    assert await pos.delete_table(table.id) is False

    renamed = await pos.update_table(table.id, {"name": "Patio 1", "capacity": 6})
    assert renamed.name == "Patio 1"
    assert renamed.current_order_id == order.id

    spare = await pos.add_table("Spare")
    assert await pos.delete_table(spare.id) is True
    assert pos.state.find_table(spare.id) is None


async def test_table_needs_a_name(pos, notices):
    assert await pos.add_table("   ") is None
    assert notices[-1].category == "validation"


# -------------------
# Settings / loading
# -------------------
async def test_settings_are_seeded_and_updatable(pos, clock, store):
    assert await store.get("app_settings", "default_settings") is not None

    settings = await pos.update_settings(
        {"store_name": "Cantina", "order_flow": {OrderType.COUNTER: {OrderStatus.PENDING: 5_000}}}
    )
    assert settings.store_name == "Cantina"
    assert pos.resolve_duration(OrderType.COUNTER, OrderStatus.PENDING) == 5_000
    # other statuses keep their defaults
    assert pos.resolve_duration(OrderType.COUNTER, OrderStatus.PREPARING) == 600_000

    order = await pos.create_manual_order(counter_order())
    assert order.next_auto_transition_time == clock.now + timedelta(seconds=5)

    fresh = PosCoordinator(store, clock=clock)
    assert await fresh.load()
    assert fresh.state.settings.store_name == "Cantina"
    assert fresh.resolve_duration(OrderType.COUNTER, OrderStatus.PENDING) == 5_000
    await fresh.stop()


async def test_load_picks_up_existing_data(pos, store, clock):
    table = await pos.add_table("T1")
    order = await pos.create_manual_order(counter_order(burger(), soda()))
    session = await pos.open_cash_register(10.0)

    other = PosCoordinator(store, clock=clock)
    assert await other.load()
    assert [o.id for o in other.state.orders] == [order.id]
    assert len(other.state.orders[0].items) == 2
    assert other.state.find_table(table.id) is not None
    assert other.state.active_cash_session_id == session.id
    await other.stop()


async def test_other_subscribers_see_new_orders(pos, store, clock):
    watcher = PosCoordinator(store, clock=clock)
    await watcher.load()
    snapshots = []
    watcher.subscribe(snapshots.append)

    order = await pos.create_manual_order(counter_order(burger(), soda()))
    seen = watcher.state.find_order(order.id)
    assert seen is not None
    assert len(seen.items) == 2
    # never published without its items
    assert all(o.items for s in snapshots for o in s.orders)
    await watcher.stop()


# -------------------
# Printing
# -------------------
async def test_orders_are_spooled(store, clock, tmp_path):
    pos = PosCoordinator(store, printer=SpoolPrinter(str(tmp_path)), clock=clock)
    await pos.load()
    order = await pos.create_manual_order(counter_order(burger(notes="well done")))

    kitchen = (tmp_path / f"{order.id}-kitchen.txt").read_text(encoding="utf-8")
    receipt = (tmp_path / f"{order.id}-order.txt").read_text(encoding="utf-8")
    assert "1x Burger" in kitchen
    assert "(well done)" in kitchen
    assert "Total: R$25.00" in receipt


async def test_receipts_follow_the_settings_currency(store, clock, tmp_path):
    pos = PosCoordinator(store, printer=SpoolPrinter(str(tmp_path)), clock=clock)
    await pos.load()
    await pos.update_settings({"currency_symbol": "€"})
    order = await pos.create_manual_order(counter_order())

    receipt = (tmp_path / f"{order.id}-order.txt").read_text(encoding="utf-8")
    assert "Total: €25.00" in receipt
    assert "R$" not in receipt


class BrokenPrinter:
    def print_order(self, order, currency_symbol=None):
        raise OSError("printer on fire")


async def test_print_failure_does_not_fail_the_order(store, clock):
    pos = PosCoordinator(store, printer=BrokenPrinter(), clock=clock)
    await pos.load()
    with capture_notices() as notices:
        order = await pos.create_manual_order(counter_order())
    assert order is not None
    assert any(n.kind == NoticeKind.ERROR and "printer on fire" in n.message for n in notices)


async def test_scheduler_start_stop(pos):
    pos.start()
    assert pos.scheduler.running
    await pos.stop()
    assert not pos.scheduler.running


@pytest.mark.parametrize("status", [OrderStatus.DELIVERED, OrderStatus.CANCELLED])
async def test_manual_terminal_on_counter_stops_timer(pos, status):
    order = await pos.create_manual_order(counter_order())
    done = await pos.update_order_status(order.id, status)
    assert done.status == status
    assert done.auto_progress is False
    assert done.current_progress_percent == 100
