# restopos/ordering/flow.py
"""
Order lifecycle: progression sequence, duration lookup and the transition rules.

Everything here is pure. The coordinator feeds in the current order snapshot,
the resolved duration and "now", and persists the returned field updates.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Mapping, Optional, Tuple

from ..domain import Order, OrderFlow, OrderStatus, OrderType
from ..errors import ConflictError

logger = logging.getLogger(__name__)

MINUTE_MS = 60_000

# Built-in durations. A stored order_flow is merged over these per order type.
DEFAULT_ORDER_FLOW: OrderFlow = {
    OrderType.COUNTER: {
        OrderStatus.PENDING: 1 * MINUTE_MS,
        OrderStatus.PREPARING: 10 * MINUTE_MS,
        OrderStatus.READY_FOR_PICKUP: 5 * MINUTE_MS,
        OrderStatus.OUT_FOR_DELIVERY: 0,
        OrderStatus.DELIVERED: 0,
        OrderStatus.CANCELLED: 0,
    },
    OrderType.DELIVERY: {
        OrderStatus.PENDING: 1 * MINUTE_MS,
        OrderStatus.PREPARING: 15 * MINUTE_MS,
        OrderStatus.READY_FOR_PICKUP: 5 * MINUTE_MS,
        OrderStatus.OUT_FOR_DELIVERY: 30 * MINUTE_MS,
        OrderStatus.DELIVERED: 0,
        OrderStatus.CANCELLED: 0,
    },
    OrderType.DINE_IN: {
        OrderStatus.PENDING: 1 * MINUTE_MS,
        OrderStatus.PREPARING: 15 * MINUTE_MS,
        OrderStatus.READY_FOR_PICKUP: 0,
        OrderStatus.DELIVERED: 0,
        OrderStatus.CANCELLED: 0,
    },
}

PROGRESSION_SEQUENCE: Dict[OrderStatus, OrderStatus] = {
    OrderStatus.PENDING: OrderStatus.PREPARING,
    OrderStatus.PREPARING: OrderStatus.READY_FOR_PICKUP,
    OrderStatus.READY_FOR_PICKUP: OrderStatus.OUT_FOR_DELIVERY,
    OrderStatus.OUT_FOR_DELIVERY: OrderStatus.DELIVERED,
}

TERMINAL_STATUSES = frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED})


def is_terminal(status: OrderStatus) -> bool:
    return status in TERMINAL_STATUSES


def is_dine_in_hold(order_type: Optional[OrderType], status: OrderStatus) -> bool:
    """Dine-in orders wait at READY_FOR_PICKUP until the table account is closed."""
    return order_type == OrderType.DINE_IN and status == OrderStatus.READY_FOR_PICKUP


def resolve_duration(
    order_type: Optional[OrderType],
    status: OrderStatus,
    order_flow: Optional[Mapping[OrderType, Mapping[OrderStatus, int]]] = None,
) -> int:
    if order_type is not None and order_flow:
        configured = (order_flow.get(order_type) or {}).get(status)
        if configured is not None:
            return max(0, int(configured))

    if order_type is not None:
        default = DEFAULT_ORDER_FLOW.get(order_type, {}).get(status)
        if default is not None:
            if order_flow:
                logger.warning("No configured duration for %s/%s, using type default", _v(order_type), status.value)
            return default

    logger.warning("No duration for %s/%s, falling back to counter baseline", _v(order_type), status.value)
    return DEFAULT_ORDER_FLOW[OrderType.COUNTER].get(status, 0)


def merge_order_flow(stored: Optional[Mapping[Any, Mapping[Any, Any]]]) -> OrderFlow:
    """Stored settings override the defaults per type and status; unknown keys are dropped."""
    merged: OrderFlow = {t: dict(durations) for t, durations in DEFAULT_ORDER_FLOW.items()}
    for raw_type, durations in (stored or {}).items():
        try:
            order_type = OrderType(raw_type)
        except ValueError:
            continue
        for raw_status, ms in (durations or {}).items():
            try:
                merged[order_type][OrderStatus(raw_status)] = max(0, int(ms))
            except (TypeError, ValueError):
                continue
    return merged


def next_auto_status(order_type: Optional[OrderType], status: OrderStatus) -> Optional[OrderStatus]:
    """Successor used by the scheduler, with the order-type detours applied."""
    nxt = PROGRESSION_SEQUENCE.get(status)
    if nxt is None:
        return None
    # only delivery orders go through the shipping step
    if nxt == OrderStatus.OUT_FOR_DELIVERY and order_type != OrderType.DELIVERY:
        return OrderStatus.DELIVERED
    return nxt


def timer_fields(duration_ms: int, now: datetime) -> Dict[str, Any]:
    """Fresh timer for a status that just started. Zero duration means instantly complete."""
    if duration_ms > 0:
        return {
            "auto_progress": True,
            "next_auto_transition_time": now + timedelta(milliseconds=duration_ms),
            "current_progress_percent": 0,
        }
    return {
        "auto_progress": False,
        "next_auto_transition_time": None,
        "current_progress_percent": 100,
    }


def stopped_timer_fields() -> Dict[str, Any]:
    return {
        "auto_progress": False,
        "next_auto_transition_time": None,
        "current_progress_percent": 100,
    }


def plan_status_change(
    order: Order,
    new_status: OrderStatus,
    *,
    manual: bool,
    duration_ms: int,
    now: datetime,
) -> Dict[str, Any]:
    if manual and order.order_type == OrderType.DINE_IN and new_status == OrderStatus.DELIVERED:
        raise ConflictError("Dine-in orders must be finalized by closing the table account.")

    updates: Dict[str, Any] = {"status": new_status, "last_status_change_time": now}
    if is_terminal(new_status) or is_dine_in_hold(order.order_type, new_status):
        updates.update(stopped_timer_fields())
    else:
        updates.update(timer_fields(duration_ms, now))
    return updates


def plan_auto_progress_toggle(order: Order, *, duration_ms: int, now: datetime) -> Tuple[Dict[str, Any], Optional[str]]:
    """
    Returns (updates, refusal). A refusal message means the flag was forced off
    and the caller should tell the user why.
    """
    if order.auto_progress:
        return {"auto_progress": False, "next_auto_transition_time": None}, None

    if is_dine_in_hold(order.order_type, order.status):
        raise ConflictError("This dine-in order is waiting for its table account to be closed.")
    if is_terminal(order.status):
        raise ConflictError(f"Order is already {order.status.value}; there is nothing to progress.")

    updates: Dict[str, Any] = {"last_status_change_time": now}
    if duration_ms > 0:
        updates.update(timer_fields(duration_ms, now))
        return updates, None

    updates.update(stopped_timer_fields())
    return updates, f'Auto-progress cannot be enabled for status "{order.status.value}".'


def _v(order_type: Optional[OrderType]) -> str:
    return order_type.value if order_type is not None else "unknown"
