# restopos/models.py
from __future__ import annotations

from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import Boolean, Column, DateTime, Float, ForeignKey, Integer, String, Text

from .db import Base


def _new_id() -> str:
    return uuid4().hex


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class User(Base):
    __tablename__ = "users"
    id = Column(Integer, primary_key=True)
    name = Column(String, nullable=False)
    email = Column(String, unique=True, index=True, nullable=False)
    phone = Column(String, nullable=True)
    password_hash = Column(String, nullable=False)


class Order(Base):
    __tablename__ = "orders"
    id = Column(String(32), primary_key=True, default=_new_id)
    customer_name = Column(String, nullable=True)
    customer_phone = Column(String, nullable=True)
    customer_address = Column(String, nullable=True)
    notes = Column(Text, nullable=True)

    order_type = Column(String, nullable=False)  # counter | delivery | dine_in
    status = Column(String, nullable=False, index=True)
    total_amount = Column(Float, nullable=False, default=0.0)

    payment_method = Column(String, nullable=True)  # cash | card | instant_transfer
    amount_paid = Column(Float, nullable=True)
    change_due = Column(Float, nullable=True)

    created_at = Column(DateTime(timezone=True), default=_utcnow)
    order_time = Column(DateTime(timezone=True), default=_utcnow, index=True)
    last_status_change_time = Column(DateTime(timezone=True), default=_utcnow)

    auto_progress = Column(Boolean, nullable=False, default=False)
    current_progress_percent = Column(Integer, nullable=False, default=0)
    next_auto_transition_time = Column(DateTime(timezone=True), nullable=True)

    cash_register_session_id = Column(String(32), ForeignKey("cash_register_sessions.id"), nullable=True)
    table_id = Column(String(32), ForeignKey("tables.id"), nullable=True)


class OrderItem(Base):
    __tablename__ = "order_items"
    id = Column(String(32), primary_key=True, default=_new_id)
    order_id = Column(String(32), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    menu_item_id = Column(String, nullable=True)
    name = Column(String, nullable=False)
    price = Column(Float, nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)


class DiningTable(Base):
    __tablename__ = "tables"
    id = Column(String(32), primary_key=True, default=_new_id)
    name = Column(String, nullable=False)
    capacity = Column(Integer, nullable=False, default=4)
    status = Column(String, nullable=False, default="available")  # available | occupied | needs_cleaning
    # no FK: orders already point at tables, and the cycle would need use_alter
    current_order_id = Column(String(32), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)


class CashRegisterSession(Base):
    __tablename__ = "cash_register_sessions"
    id = Column(String(32), primary_key=True, default=_new_id)
    opening_balance = Column(Float, nullable=False)
    status = Column(String, nullable=False, index=True)  # open | closed
    opened_at = Column(DateTime(timezone=True), default=_utcnow)
    closed_at = Column(DateTime(timezone=True), nullable=True)
    notes_opening = Column(Text, nullable=True)
    notes_closing = Column(Text, nullable=True)

    closing_balance_informed = Column(Float, nullable=True)
    calculated_sales = Column(Float, nullable=True)
    expected_in_cash = Column(Float, nullable=True)
    difference = Column(Float, nullable=True)


class CashAdjustment(Base):
    __tablename__ = "cash_adjustments"
    id = Column(String(32), primary_key=True, default=_new_id)
    session_id = Column(String(32), ForeignKey("cash_register_sessions.id"), nullable=False, index=True)
    type = Column(String, nullable=False)  # add | remove
    amount = Column(Float, nullable=False)
    reason = Column(Text, nullable=False, default="")
    adjusted_at = Column(DateTime(timezone=True), default=_utcnow)


class AppSettingsRow(Base):
    __tablename__ = "app_settings"
    id = Column(String, primary_key=True)
    settings_json = Column(Text, default="{}")
    updated_at = Column(DateTime(timezone=True), default=_utcnow)
