from __future__ import annotations

from datetime import timedelta

import pytest
from conftest import T0

from restopos.domain import Order, OrderStatus, OrderType
from restopos.errors import ConflictError
from restopos.ordering.flow import (
    DEFAULT_ORDER_FLOW,
    merge_order_flow,
    next_auto_status,
    plan_auto_progress_toggle,
    plan_status_change,
    resolve_duration,
)


def make_order(order_type=OrderType.COUNTER, status=OrderStatus.PENDING, **extra) -> Order:
    return Order(id="a1b2c3d4", order_type=order_type, status=status, **extra)


# -------------------
# Duration resolver
# -------------------
def test_configured_duration_wins():
    flow = {OrderType.DELIVERY: {OrderStatus.PREPARING: 1234}}
    assert resolve_duration(OrderType.DELIVERY, OrderStatus.PREPARING, flow) == 1234


def test_missing_status_falls_back_to_type_default():
    flow = {OrderType.DELIVERY: {OrderStatus.PENDING: 1}}
    assert resolve_duration(OrderType.DELIVERY, OrderStatus.OUT_FOR_DELIVERY, flow) == 30 * 60_000


def test_dine_in_out_for_delivery_uses_counter_baseline():
    # dine-in has no OUT_FOR_DELIVERY entry at all
    assert resolve_duration(OrderType.DINE_IN, OrderStatus.OUT_FOR_DELIVERY) == 0


def test_unknown_type_uses_counter_baseline():
    assert resolve_duration(None, OrderStatus.PREPARING) == DEFAULT_ORDER_FLOW[OrderType.COUNTER][OrderStatus.PREPARING]


def test_negative_configured_duration_is_clamped():
    flow = {OrderType.COUNTER: {OrderStatus.PENDING: -50}}
    assert resolve_duration(OrderType.COUNTER, OrderStatus.PENDING, flow) == 0


def test_merge_order_flow_overrides_per_status_and_drops_junk():
    merged = merge_order_flow(
        {
            "counter": {"preparing": 42, "bogus": 1},
            "spaceship": {"pending": 1},
            "delivery": {"pending": "not a number"},
        }
    )
    assert merged[OrderType.COUNTER][OrderStatus.PREPARING] == 42
    assert merged[OrderType.COUNTER][OrderStatus.PENDING] == DEFAULT_ORDER_FLOW[OrderType.COUNTER][OrderStatus.PENDING]
    assert merged[OrderType.DELIVERY][OrderStatus.PENDING] == 60_000
    # defaults untouched
    assert DEFAULT_ORDER_FLOW[OrderType.COUNTER][OrderStatus.PREPARING] == 10 * 60_000


# -------------------
# Successor
# -------------------
@pytest.mark.parametrize(
    "order_type, status, expected",
    [
        (OrderType.DELIVERY, OrderStatus.READY_FOR_PICKUP, OrderStatus.OUT_FOR_DELIVERY),
        (OrderType.COUNTER, OrderStatus.READY_FOR_PICKUP, OrderStatus.DELIVERED),
        (OrderType.DINE_IN, OrderStatus.READY_FOR_PICKUP, OrderStatus.DELIVERED),
        (OrderType.DELIVERY, OrderStatus.OUT_FOR_DELIVERY, OrderStatus.DELIVERED),
        (OrderType.COUNTER, OrderStatus.PENDING, OrderStatus.PREPARING),
        (OrderType.COUNTER, OrderStatus.DELIVERED, None),
        (OrderType.COUNTER, OrderStatus.CANCELLED, None),
    ],
)
def test_next_auto_status(order_type, status, expected):
    assert next_auto_status(order_type, status) == expected


# -------------------
# Transitions
# -------------------
def test_transition_starts_timer():
    updates = plan_status_change(make_order(), OrderStatus.PREPARING, manual=True, duration_ms=600_000, now=T0)
    assert updates["status"] == OrderStatus.PREPARING
    assert updates["auto_progress"] is True
    assert updates["next_auto_transition_time"] == T0 + timedelta(minutes=10)
    assert updates["current_progress_percent"] == 0
    assert updates["last_status_change_time"] == T0


def test_zero_duration_transition_is_complete_without_timer():
    updates = plan_status_change(make_order(), OrderStatus.PREPARING, manual=True, duration_ms=0, now=T0)
    assert updates["auto_progress"] is False
    assert updates["next_auto_transition_time"] is None
    assert updates["current_progress_percent"] == 100


@pytest.mark.parametrize("status", [OrderStatus.DELIVERED, OrderStatus.CANCELLED])
def test_terminal_transition_stops_timer(status):
    updates = plan_status_change(make_order(), status, manual=False, duration_ms=999, now=T0)
    assert updates["auto_progress"] is False
    assert updates["next_auto_transition_time"] is None
    assert updates["current_progress_percent"] == 100


def test_dine_in_ready_is_held():
    order = make_order(OrderType.DINE_IN, OrderStatus.PREPARING)
    updates = plan_status_change(order, OrderStatus.READY_FOR_PICKUP, manual=False, duration_ms=300_000, now=T0)
    assert updates["auto_progress"] is False
    assert updates["next_auto_transition_time"] is None
    assert updates["current_progress_percent"] == 100


def test_manual_dine_in_delivered_is_refused():
    order = make_order(OrderType.DINE_IN, OrderStatus.READY_FOR_PICKUP)
    with pytest.raises(ConflictError):
        plan_status_change(order, OrderStatus.DELIVERED, manual=True, duration_ms=0, now=T0)


def test_manual_dine_in_cancel_is_allowed():
    order = make_order(OrderType.DINE_IN, OrderStatus.PREPARING)
    updates = plan_status_change(order, OrderStatus.CANCELLED, manual=True, duration_ms=0, now=T0)
    assert updates["status"] == OrderStatus.CANCELLED


# -------------------
# Auto-progress toggle
# -------------------
def test_toggle_off_clears_timer():
    order = make_order(auto_progress=True, next_auto_transition_time=T0)
    updates, refusal = plan_auto_progress_toggle(order, duration_ms=60_000, now=T0)
    assert updates == {"auto_progress": False, "next_auto_transition_time": None}
    assert refusal is None


def test_toggle_on_restarts_current_status():
    order = make_order(status=OrderStatus.PREPARING, current_progress_percent=40)
    updates, refusal = plan_auto_progress_toggle(order, duration_ms=60_000, now=T0)
    assert refusal is None
    assert updates["auto_progress"] is True
    assert updates["next_auto_transition_time"] == T0 + timedelta(minutes=1)
    assert updates["current_progress_percent"] == 0
    assert updates["last_status_change_time"] == T0


def test_toggle_on_zero_duration_is_forced_off():
    order = make_order(status=OrderStatus.OUT_FOR_DELIVERY)
    updates, refusal = plan_auto_progress_toggle(order, duration_ms=0, now=T0)
    assert refusal
    assert updates["auto_progress"] is False
    assert updates["next_auto_transition_time"] is None
    assert updates["current_progress_percent"] == 100


def test_toggle_on_dine_in_hold_is_refused():
    order = make_order(OrderType.DINE_IN, OrderStatus.READY_FOR_PICKUP)
    with pytest.raises(ConflictError):
        plan_auto_progress_toggle(order, duration_ms=60_000, now=T0)


def test_toggle_on_terminal_is_refused():
    with pytest.raises(ConflictError):
        plan_auto_progress_toggle(make_order(status=OrderStatus.DELIVERED), duration_ms=60_000, now=T0)
