# restopos/ordering/cash.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional

from ..domain import (
    CashAdjustment,
    CashAdjustmentType,
    CashRegisterSession,
    CashSessionStatus,
    Order,
    OrderStatus,
    PaymentMethod,
)
from ..errors import NotFoundError, ValidationError

# Payment methods whose money ends up in (or is accounted against) the drawer.
DRAWER_PAYMENT_METHODS = frozenset({PaymentMethod.CASH, PaymentMethod.INSTANT_TRANSFER})


def money(value: float) -> float:
    return round(float(value or 0.0), 2)


def settles_in_drawer(method: Optional[PaymentMethod]) -> bool:
    return method in DRAWER_PAYMENT_METHODS


@dataclass(frozen=True)
class Reconciliation:
    calculated_sales: float
    added_adjustments: float
    removed_adjustments: float
    expected_in_cash: float
    difference: float


def session_sales(session_id: str, orders: Iterable[Order]) -> float:
    return money(
        sum(
            o.total_amount
            for o in orders
            if o.cash_register_session_id == session_id
            and o.status == OrderStatus.DELIVERED
            and settles_in_drawer(o.payment_method)
        )
    )


def reconcile(
    session: CashRegisterSession,
    orders: Iterable[Order],
    adjustments: Iterable[CashAdjustment],
    closing_balance_informed: float,
) -> Reconciliation:
    sales = session_sales(session.id, orders)
    mine = [a for a in adjustments if a.session_id == session.id]
    added = money(sum(a.amount for a in mine if a.type == CashAdjustmentType.ADD))
    removed = money(sum(a.amount for a in mine if a.type == CashAdjustmentType.REMOVE))
    expected = money(session.opening_balance + sales + added - removed)
    return Reconciliation(
        calculated_sales=sales,
        added_adjustments=added,
        removed_adjustments=removed,
        expected_in_cash=expected,
        difference=money(closing_balance_informed - expected),
    )


def ensure_can_open(active: Optional[CashRegisterSession], opening_balance: float) -> None:
    if active is not None:
        raise ValidationError("A cash register session is already open.")
    if opening_balance < 0:
        raise ValidationError("Opening balance cannot be negative.")


def ensure_open(session: Optional[CashRegisterSession]) -> CashRegisterSession:
    if session is None:
        raise NotFoundError("Cash register session not found.")
    if session.status != CashSessionStatus.OPEN:
        raise ValidationError("Cash register session is already closed.")
    return session


def ensure_valid_adjustment(amount: float) -> None:
    if amount is None or amount <= 0:
        raise ValidationError("Adjustment amount must be positive.")
