# restopos/domain.py
"""
Domain snapshots handed out by the coordinator.

Every model here is frozen: consumers read them, the coordinator replaces them.
Rows coming back from the store are plain dicts and are validated into these.
"""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class OrderStatus(str, Enum):
    PENDING = "pending"
    PREPARING = "preparing"
    READY_FOR_PICKUP = "ready_for_pickup"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class OrderType(str, Enum):
    COUNTER = "counter"
    DELIVERY = "delivery"
    DINE_IN = "dine_in"


class PaymentMethod(str, Enum):
    CASH = "cash"
    CARD = "card"
    INSTANT_TRANSFER = "instant_transfer"


class TableStatus(str, Enum):
    AVAILABLE = "available"
    OCCUPIED = "occupied"
    NEEDS_CLEANING = "needs_cleaning"


class CashSessionStatus(str, Enum):
    OPEN = "open"
    CLOSED = "closed"


class CashAdjustmentType(str, Enum):
    ADD = "add"
    REMOVE = "remove"


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything we store is UTC.
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class _Snapshot(BaseModel):
    model_config = ConfigDict(frozen=True, from_attributes=True)


class OrderItem(_Snapshot):
    id: str
    order_id: str
    menu_item_id: Optional[str] = None
    name: str
    price: float
    quantity: int = 1
    notes: Optional[str] = None


class Order(_Snapshot):
    id: str
    order_type: OrderType
    status: OrderStatus
    total_amount: float = 0.0

    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    customer_address: Optional[str] = None
    notes: Optional[str] = None

    payment_method: Optional[PaymentMethod] = None
    amount_paid: Optional[float] = None
    change_due: Optional[float] = None

    created_at: Optional[datetime] = None
    order_time: Optional[datetime] = None
    last_status_change_time: Optional[datetime] = None

    auto_progress: bool = False
    current_progress_percent: int = 0
    next_auto_transition_time: Optional[datetime] = None

    cash_register_session_id: Optional[str] = None
    table_id: Optional[str] = None

    items: List[OrderItem] = Field(default_factory=list)

    @field_validator("created_at", "order_time", "last_status_change_time", "next_auto_transition_time")
    @classmethod
    def _utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return as_utc(v)


class Table(_Snapshot):
    id: str
    name: str
    capacity: int = 4
    status: TableStatus = TableStatus.AVAILABLE
    current_order_id: Optional[str] = None


class CashRegisterSession(_Snapshot):
    id: str
    opening_balance: float
    status: CashSessionStatus
    opened_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    notes_opening: Optional[str] = None
    notes_closing: Optional[str] = None

    closing_balance_informed: Optional[float] = None
    calculated_sales: Optional[float] = None
    expected_in_cash: Optional[float] = None
    difference: Optional[float] = None

    @field_validator("opened_at", "closed_at")
    @classmethod
    def _utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return as_utc(v)


class CashAdjustment(_Snapshot):
    id: str
    session_id: str
    type: CashAdjustmentType
    amount: float
    reason: str = ""
    adjusted_at: Optional[datetime] = None

    @field_validator("adjusted_at")
    @classmethod
    def _utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return as_utc(v)


# Auto-progression durations, milliseconds, per order type and status.
OrderFlow = Dict[OrderType, Dict[OrderStatus, int]]


class AppSettings(_Snapshot):
    store_name: str = "Restaurant"
    currency_symbol: str = "R$"
    order_flow: OrderFlow = Field(default_factory=dict)


class CartItem(BaseModel):
    """A line the customer (or the cashier) wants to order."""

    menu_item_id: Optional[str] = None
    name: str
    price: float = Field(..., ge=0)
    quantity: int = Field(1, ge=1)
    notes: Optional[str] = None


class CustomerDetails(BaseModel):
    name: str = ""
    phone: str = ""
    address: str = ""
    address_reference: Optional[str] = None
    notes: Optional[str] = None
    payment_method: Optional[PaymentMethod] = None


class ManualOrderData(BaseModel):
    order_type: OrderType
    items: List[CartItem] = Field(default_factory=list)
    customer_name: str = ""
    customer_phone: Optional[str] = None
    customer_address: Optional[str] = None
    address_reference: Optional[str] = None
    notes: Optional[str] = None
    table_id: Optional[str] = None
    payment_method: Optional[PaymentMethod] = None
    amount_paid: Optional[float] = Field(None, ge=0)


class PaymentDetails(BaseModel):
    payment_method: PaymentMethod
    amount_paid: Optional[float] = Field(None, ge=0)


def order_from_row(row: Dict[str, Any], items: Optional[List[Dict[str, Any]]] = None) -> Order:
    data = dict(row)
    data["items"] = [OrderItem.model_validate(i) for i in (items or [])]
    return Order.model_validate(data)
