# restopos/ordering/state.py
"""
In-memory collections owned by the coordinator and the pure reducer over them.

`reduce(state, action)` is the only way a new PosState is produced; store change
notifications are translated into the same actions by `change_to_action`.
"""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional, Tuple, Union

from ..domain import (
    AppSettings,
    CashAdjustment,
    CashRegisterSession,
    CashSessionStatus,
    Order,
    Table,
)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass(frozen=True)
class PosState:
    orders: Tuple[Order, ...] = ()
    tables: Tuple[Table, ...] = ()
    cash_sessions: Tuple[CashRegisterSession, ...] = ()
    cash_adjustments: Tuple[CashAdjustment, ...] = ()
    active_cash_session_id: Optional[str] = None
    settings: AppSettings = field(default_factory=AppSettings)

    def find_order(self, order_id: str) -> Optional[Order]:
        return next((o for o in self.orders if o.id == order_id), None)

    def find_table(self, table_id: str) -> Optional[Table]:
        return next((t for t in self.tables if t.id == table_id), None)

    def find_cash_session(self, session_id: str) -> Optional[CashRegisterSession]:
        return next((s for s in self.cash_sessions if s.id == session_id), None)

    @property
    def active_cash_session(self) -> Optional[CashRegisterSession]:
        if self.active_cash_session_id is None:
            return None
        return self.find_cash_session(self.active_cash_session_id)


# -------------------
# Actions
# -------------------
@dataclass(frozen=True)
class OrdersLoaded:
    orders: Tuple[Order, ...]


@dataclass(frozen=True)
class OrderSaved:
    order: Order


@dataclass(frozen=True)
class OrderRemoved:
    order_id: str


@dataclass(frozen=True)
class TablesLoaded:
    tables: Tuple[Table, ...]


@dataclass(frozen=True)
class TableSaved:
    table: Table


@dataclass(frozen=True)
class TableRemoved:
    table_id: str


@dataclass(frozen=True)
class CashSessionsLoaded:
    sessions: Tuple[CashRegisterSession, ...]


@dataclass(frozen=True)
class CashSessionSaved:
    session: CashRegisterSession


@dataclass(frozen=True)
class CashAdjustmentsLoaded:
    adjustments: Tuple[CashAdjustment, ...]


@dataclass(frozen=True)
class CashAdjustmentSaved:
    adjustment: CashAdjustment


@dataclass(frozen=True)
class SettingsLoaded:
    settings: AppSettings


Action = Union[
    OrdersLoaded,
    OrderSaved,
    OrderRemoved,
    TablesLoaded,
    TableSaved,
    TableRemoved,
    CashSessionsLoaded,
    CashSessionSaved,
    CashAdjustmentsLoaded,
    CashAdjustmentSaved,
    SettingsLoaded,
]


def _orders(items: Iterable[Order]) -> Tuple[Order, ...]:
    return tuple(sorted(items, key=lambda o: o.order_time or _EPOCH, reverse=True))


def _tables(items: Iterable[Table]) -> Tuple[Table, ...]:
    return tuple(sorted(items, key=lambda t: t.name))


def _sessions(items: Iterable[CashRegisterSession]) -> Tuple[CashRegisterSession, ...]:
    return tuple(sorted(items, key=lambda s: s.opened_at or _EPOCH, reverse=True))


def _adjustments(items: Iterable[CashAdjustment]) -> Tuple[CashAdjustment, ...]:
    return tuple(sorted(items, key=lambda a: a.adjusted_at or _EPOCH, reverse=True))


def _upsert(items: Iterable[Any], new: Any) -> list:
    return [new, *(x for x in items if x.id != new.id)]


def reduce(state: PosState, action: Action) -> PosState:
    if isinstance(action, OrdersLoaded):
        return replace(state, orders=_orders(action.orders))
    if isinstance(action, OrderSaved):
        return replace(state, orders=_orders(_upsert(state.orders, action.order)))
    if isinstance(action, OrderRemoved):
        return replace(state, orders=tuple(o for o in state.orders if o.id != action.order_id))

    if isinstance(action, TablesLoaded):
        return replace(state, tables=_tables(action.tables))
    if isinstance(action, TableSaved):
        return replace(state, tables=_tables(_upsert(state.tables, action.table)))
    if isinstance(action, TableRemoved):
        return replace(state, tables=tuple(t for t in state.tables if t.id != action.table_id))

    if isinstance(action, CashSessionsLoaded):
        sessions = _sessions(action.sessions)
        active = next((s.id for s in sessions if s.status == CashSessionStatus.OPEN), None)
        return replace(state, cash_sessions=sessions, active_cash_session_id=active)
    if isinstance(action, CashSessionSaved):
        saved = action.session
        active = state.active_cash_session_id
        if saved.status == CashSessionStatus.OPEN:
            active = saved.id
        elif active == saved.id:
            active = None
        return replace(
            state,
            cash_sessions=_sessions(_upsert(state.cash_sessions, saved)),
            active_cash_session_id=active,
        )

    if isinstance(action, CashAdjustmentsLoaded):
        return replace(state, cash_adjustments=_adjustments(action.adjustments))
    if isinstance(action, CashAdjustmentSaved):
        return replace(state, cash_adjustments=_adjustments(_upsert(state.cash_adjustments, action.adjustment)))

    if isinstance(action, SettingsLoaded):
        return replace(state, settings=action.settings)

    raise TypeError(f"Unknown action: {action!r}")


# -------------------
# Store change notifications
# -------------------
@dataclass(frozen=True)
class Change:
    table: str
    event: str  # INSERT | UPDATE | DELETE
    new: Optional[Dict[str, Any]] = None
    old: Optional[Dict[str, Any]] = None


def change_to_action(change: Change, order: Optional[Order] = None) -> Optional[Action]:
    """
    Map a store notification onto a reducer action.

    Order inserts/updates and item inserts/deletes need the (parent) order re-read with its
    items; the caller passes that in as `order` (None means it could not be read,
    so nothing changes).
    """
    deleted = change.event == "DELETE"
    row = change.old if deleted else change.new
    if not row:
        return None

    if change.table == "orders":
        if deleted:
            return OrderRemoved(row["id"])
        if order is None:
            return None
        # orders are created in two steps; publish once the items exist
        if change.event == "INSERT" and not order.items:
            return None
        return OrderSaved(order)
    if change.table == "order_items" and change.event in ("INSERT", "DELETE"):
        return OrderSaved(order) if order is not None else None
    if change.table == "tables":
        return TableRemoved(row["id"]) if deleted else TableSaved(Table.model_validate(row))
    if change.table == "cash_register_sessions" and not deleted:
        return CashSessionSaved(CashRegisterSession.model_validate(row))
    if change.table == "cash_adjustments" and change.event == "INSERT":
        return CashAdjustmentSaved(CashAdjustment.model_validate(row))
    return None
