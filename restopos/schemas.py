# restopos/schemas.py
"""Request bodies for the HTTP API."""
from __future__ import annotations

from typing import Dict, List, Optional

from pydantic import BaseModel, EmailStr, Field

from .domain import (
    CartItem,
    CashAdjustmentType,
    CustomerDetails,
    OrderStatus,
    OrderType,
    TableStatus,
)


class SignupIn(BaseModel):
    name: str
    email: EmailStr
    phone: str | None = None
    password: str = Field(..., min_length=6)


class LoginIn(BaseModel):
    email: EmailStr
    password: str


class StatusIn(BaseModel):
    status: OrderStatus


class ItemsIn(BaseModel):
    items: List[CartItem]


class CheckoutIn(BaseModel):
    customer: CustomerDetails
    cart: List[CartItem]


class CashOpenIn(BaseModel):
    opening_balance: float
    notes: Optional[str] = None


class CashCloseIn(BaseModel):
    closing_balance_informed: float
    notes: Optional[str] = None


class AdjustmentIn(BaseModel):
    type: CashAdjustmentType
    amount: float
    reason: str = ""


class TableIn(BaseModel):
    name: str
    capacity: int = 4


class TablePatch(BaseModel):
    name: Optional[str] = None
    capacity: Optional[int] = Field(None, ge=1)
    status: Optional[TableStatus] = None
    current_order_id: Optional[str] = None


class SettingsIn(BaseModel):
    store_name: Optional[str] = None
    currency_symbol: Optional[str] = None
    # milliseconds per order type and status
    order_flow: Optional[Dict[OrderType, Dict[OrderStatus, int]]] = None
