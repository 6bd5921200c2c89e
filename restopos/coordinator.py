# restopos/coordinator.py
"""
PosCoordinator: the single owner of POS state.

Holds the immutable PosState, runs every mutating operation against the store,
republishes fresh snapshots to subscribers and drives the auto-progress sweep.
Operations never raise to the caller: failures become exactly one Notice and the
operation returns None (or False).
"""
from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager, contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable, Dict, Iterator, List, Mapping, Optional, Sequence

from .domain import (
    AppSettings,
    CartItem,
    CashAdjustment,
    CashAdjustmentType,
    CashRegisterSession,
    CashSessionStatus,
    CustomerDetails,
    ManualOrderData,
    Order,
    OrderStatus,
    OrderType,
    PaymentDetails,
    PaymentMethod,
    Table,
    TableStatus,
    order_from_row,
)
from .errors import (
    ConflictError,
    NotFoundError,
    Notice,
    NoticeKind,
    PosError,
    StoreError,
    ValidationError,
    describe_store_error,
)
from .ordering import flow
from .ordering.cart import cart_total, merge_lines
from .ordering.cash import (
    ensure_can_open,
    ensure_open,
    ensure_valid_adjustment,
    money,
    reconcile,
    settles_in_drawer,
)
from .ordering.progress import (
    Advance,
    Complete,
    PeriodicTask,
    PersistProgress,
    RefreshProgress,
    is_sweep_candidate,
    sweep_decision,
)
from .ordering.state import (
    Action,
    CashAdjustmentSaved,
    CashAdjustmentsLoaded,
    CashSessionSaved,
    CashSessionsLoaded,
    Change,
    OrderRemoved,
    OrderSaved,
    OrdersLoaded,
    PosState,
    SettingsLoaded,
    TableRemoved,
    TableSaved,
    TablesLoaded,
    change_to_action,
    reduce,
)
from .printing import NullPrinter
from .store import Row, Store

logger = logging.getLogger(__name__)

SETTINGS_ROW_ID = "default_settings"
ORDER_LOAD_LIMIT = 100

StateListener = Callable[[PosState], None]
NoticeListener = Callable[[Notice], None]

_captured: ContextVar[Optional[List[Notice]]] = ContextVar("captured_notices", default=None)


@contextmanager
def capture_notices() -> Iterator[List[Notice]]:
    """Collect the notices emitted by operations awaited inside the block."""
    bucket: List[Notice] = []
    token = _captured.set(bucket)
    try:
        yield bucket
    finally:
        _captured.reset(token)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _short(order_id: str) -> str:
    return order_id[:6]


def _with_reference(notes: Optional[str], reference: Optional[str]) -> Optional[str]:
    parts = [p.strip() for p in (notes, f"Reference: {reference}" if reference else None) if p and p.strip()]
    return "\n".join(parts) or None


def _register(listeners: List[Any], listener: Any) -> Callable[[], None]:
    listeners.append(listener)

    def unsubscribe() -> None:
        if listener in listeners:
            listeners.remove(listener)

    return unsubscribe


def _parse_status(value: Any) -> OrderStatus:
    try:
        return OrderStatus(value)
    except ValueError:
        raise ValidationError(f"Unknown order status: {value}") from None


def _item_rows(order_id: str, lines: Sequence[CartItem], now: datetime) -> List[Dict[str, Any]]:
    return [
        {
            "order_id": order_id,
            "menu_item_id": line.menu_item_id,
            "name": line.name,
            "price": line.price,
            "quantity": line.quantity,
            "notes": line.notes,
            "created_at": now,
        }
        for line in lines
    ]


class PosCoordinator:
    def __init__(
        self,
        store: Store,
        *,
        printer: Any = None,
        clock: Optional[Callable[[], datetime]] = None,
        interval_ms: int = 5000,
    ) -> None:
        self._store = store
        self._printer = printer or NullPrinter()
        self._clock = clock or utc_now
        self._state = PosState()

        self._listeners: List[StateListener] = []
        self._notice_listeners: List[NoticeListener] = []
        self._unsubscribe_store: Optional[Callable[[], None]] = None

        self._order_locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}
        self._cash_lock = asyncio.Lock()
        self._pass_lock = asyncio.Lock()
        # last progress value known to be in the store, per order
        self._persisted_progress: Dict[str, int] = {}

        self.scheduler = PeriodicTask(self.check_order_transitions, interval_ms, name="auto-progress")

    # -------------------
    # State / notices
    # -------------------
    @property
    def state(self) -> PosState:
        return self._state

    def now(self) -> datetime:
        return self._clock()

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        return _register(self._listeners, listener)

    def on_notice(self, listener: NoticeListener) -> Callable[[], None]:
        return _register(self._notice_listeners, listener)

    def _dispatch(self, action: Action, *, stored: bool = True) -> None:
        """Apply `action`. `stored=False` marks an order snapshot the store has not seen."""
        self._state = reduce(self._state, action)
        if stored and isinstance(action, OrderSaved):
            self._persisted_progress[action.order.id] = action.order.current_progress_percent
        for listener in list(self._listeners):
            try:
                listener(self._state)
            except Exception:
                logger.exception("State listener failed")

    def _notify(self, message: str, kind: NoticeKind = NoticeKind.INFO, category: Optional[str] = None) -> None:
        self._emit_notice(Notice(message, kind, category))

    def _emit_notice(self, notice: Notice) -> None:
        bucket = _captured.get()
        if bucket is not None:
            bucket.append(notice)
        for listener in list(self._notice_listeners):
            try:
                listener(notice)
            except Exception:
                logger.exception("Notice listener failed")

    def _fail(self, error: Exception, operation: str) -> None:
        if isinstance(error, StoreError):
            logger.error("%s: %s (%s)", operation, error.message, error.detail)
            message = describe_store_error(error, error.context or operation)
            self._emit_notice(Notice(message, NoticeKind.ERROR, error.category))
        elif isinstance(error, PosError):
            logger.info("%s: %s", operation, error.message)
            self._emit_notice(error.to_notice())
        else:
            logger.exception("%s: unexpected error", operation)
            self._notify(f"{operation}. Unexpected error: {error}", NoticeKind.ERROR, "unexpected")

    @asynccontextmanager
    async def _order_lock(self, order_id: str) -> AsyncIterator[None]:
        """Serialize work on one order. The lock is dropped once nobody holds or waits on it."""
        lock = self._order_locks.setdefault(order_id, asyncio.Lock())
        self._lock_users[order_id] = self._lock_users.get(order_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[order_id] -= 1
            if not self._lock_users[order_id]:
                del self._lock_users[order_id]
                del self._order_locks[order_id]

    def resolve_duration(self, order_type: Optional[OrderType], status: OrderStatus) -> int:
        return flow.resolve_duration(order_type, status, self._state.settings.order_flow)

    # -------------------
    # Loading / store notifications
    # -------------------
    async def load(self) -> bool:
        """Read everything the coordinator tracks and start following store changes."""
        try:
            await self._load_settings()

            table_rows = await self._store.select("tables", order_by="name")
            self._dispatch(TablesLoaded(tuple(Table.model_validate(r) for r in table_rows)))

            session_rows = await self._store.select("cash_register_sessions", order_by="opened_at", descending=True)
            self._dispatch(CashSessionsLoaded(tuple(CashRegisterSession.model_validate(r) for r in session_rows)))

            adjustment_rows = await self._store.select("cash_adjustments", order_by="adjusted_at", descending=True)
            self._dispatch(CashAdjustmentsLoaded(tuple(CashAdjustment.model_validate(r) for r in adjustment_rows)))

            order_rows = await self._store.select(
                "orders", order_by="order_time", descending=True, limit=ORDER_LOAD_LIMIT
            )
            orders = []
            for row in order_rows:
                items = await self._store.select("order_items", filters={"order_id": row["id"]}, order_by="created_at")
                orders.append(order_from_row(row, items))
            self._dispatch(OrdersLoaded(tuple(orders)))
            self._persisted_progress = {o.id: o.current_progress_percent for o in orders}
        except Exception as e:
            self._fail(e, "Failed to load data")
            return False

        if self._unsubscribe_store is None:
            self._unsubscribe_store = self._store.subscribe(self._on_store_change)
        logger.info(
            "Loaded %d orders, %d tables, %d cash sessions",
            len(self._state.orders),
            len(self._state.tables),
            len(self._state.cash_sessions),
        )
        return True

    async def _on_store_change(self, change: Change) -> None:
        order = None
        if change.table == "orders" and change.event != "DELETE" and change.new:
            order = await self._read_order(change.new["id"])
        elif change.table == "order_items" and (change.new or change.old):
            order = await self._read_order((change.new or change.old)["order_id"])
        action = change_to_action(change, order)
        if action is not None:
            self._dispatch(action)

    async def _read_order(self, order_id: str) -> Optional[Order]:
        row = await self._store.get("orders", order_id)
        if row is None:
            return None
        items = await self._store.select("order_items", filters={"order_id": order_id}, order_by="created_at")
        return order_from_row(row, items)

    async def _find_order(self, order_id: str) -> Order:
        order = self._state.find_order(order_id)
        if order is None:
            # older than the in-memory window
            order = await self._read_order(order_id)
        if order is None:
            raise NotFoundError(f"Order {_short(order_id)} not found.")
        return order

    async def _save_order(self, order_id: str, updates: Mapping[str, Any]) -> Order:
        row = await self._store.update("orders", order_id, updates)
        if row is None:
            self._forget_order(order_id)
            raise NotFoundError(f"Order {_short(order_id)} not found.")
        order = await self._read_order(order_id)
        if order is None:
            raise NotFoundError(f"Order {_short(order_id)} not found.")
        self._dispatch(OrderSaved(order))
        return order

    def _forget_order(self, order_id: str) -> None:
        # the row is gone from the store
        self._persisted_progress.pop(order_id, None)
        if self._state.find_order(order_id) is not None:
            self._dispatch(OrderRemoved(order_id))

    async def fetch_order_with_items(self, order_id: str) -> Optional[Order]:
        try:
            order = await self._read_order(order_id)
            if order is None:
                raise NotFoundError(f"Order {_short(order_id)} not found.")
            return order
        except Exception as e:
            self._fail(e, "Failed to fetch order")
            return None

    def _print(self, order: Order) -> None:
        try:
            self._printer.print_order(order, currency_symbol=self._state.settings.currency_symbol)
        except Exception as e:
            logger.exception("Printing order %s failed", order.id)
            self._notify(f"Failed to print order {_short(order.id)}: {e}", NoticeKind.ERROR)

    # -------------------
    # Order lifecycle
    # -------------------
    async def _change_status(self, order_id: str, new_status: OrderStatus, *, manual: bool) -> Order:
        order = await self._find_order(order_id)
        duration = self.resolve_duration(order.order_type, new_status)
        updates = flow.plan_status_change(order, new_status, manual=manual, duration_ms=duration, now=self.now())
        saved = await self._save_order(order_id, updates)

        logger.info(
            "Order %s: %s -> %s (%s)",
            order_id,
            order.status.value,
            new_status.value,
            "manual" if manual else "auto",
        )
        if flow.is_dine_in_hold(saved.order_type, saved.status):
            self._notify(
                f"Order {_short(order_id)} is ready. Waiting for the table account to be closed.",
                NoticeKind.INFO,
            )
        return saved

    async def update_order_status(self, order_id: str, new_status: OrderStatus, manual: bool = True) -> Optional[Order]:
        async with self._order_lock(order_id):
            try:
                saved = await self._change_status(order_id, _parse_status(new_status), manual=manual)
            except Exception as e:
                self._fail(e, "Failed to update order status")
                return None
        if manual:
            self._notify(f"Order {_short(order_id)} is now {saved.status.value}.", NoticeKind.SUCCESS)
        return saved

    async def toggle_order_auto_progress(self, order_id: str) -> Optional[Order]:
        async with self._order_lock(order_id):
            try:
                order = await self._find_order(order_id)
                duration = self.resolve_duration(order.order_type, order.status)
                updates, refusal = flow.plan_auto_progress_toggle(order, duration_ms=duration, now=self.now())
                saved = await self._save_order(order_id, updates)
            except Exception as e:
                self._fail(e, "Failed to toggle auto-progress")
                return None

        if refusal:
            self._notify(refusal, NoticeKind.INFO)
        else:
            state = "enabled" if saved.auto_progress else "disabled"
            self._notify(f"Auto-progress {state} for order {_short(order_id)}.", NoticeKind.SUCCESS)
        return saved

    async def check_order_transitions(self) -> None:
        """One sweep over the in-memory orders. Passes never overlap."""
        if self._pass_lock.locked():
            logger.debug("Transition pass already running, skipping")
            return
        async with self._pass_lock:
            for order_id in [o.id for o in self._state.orders if is_sweep_candidate(o)]:
                async with self._order_lock(order_id):
                    order = self._state.find_order(order_id)
                    if order is None or not is_sweep_candidate(order):
                        continue
                    try:
                        await self._sweep_one(order)
                    except Exception as e:
                        self._fail(e, f"Failed to auto-progress order {_short(order_id)}")

    async def force_check_order_transitions(self) -> None:
        await self.check_order_transitions()

    async def _sweep_one(self, order: Order) -> None:
        decision = sweep_decision(
            order,
            total_ms=self.resolve_duration(order.order_type, order.status),
            now=self.now(),
            persisted_percent=self._persisted_progress.get(order.id),
        )
        if isinstance(decision, Advance):
            await self._change_status(order.id, decision.status, manual=False)
        elif isinstance(decision, Complete):
            await self._save_order(order.id, flow.stopped_timer_fields())
            logger.info("Order %s reached the end of its flow in %s", order.id, order.status.value)
        elif isinstance(decision, PersistProgress):
            row = await self._store.update("orders", order.id, {"current_progress_percent": decision.percent})
            if row is None:
                logger.warning("Order %s vanished from the store, dropping it", order.id)
                self._forget_order(order.id)
                return
            self._dispatch(OrderSaved(order.model_copy(update={"current_progress_percent": decision.percent})))
        elif isinstance(decision, RefreshProgress):
            self._dispatch(
                OrderSaved(order.model_copy(update={"current_progress_percent": decision.percent})),
                stored=False,
            )

    # -------------------
    # Order creation
    # -------------------
    async def _insert_order_with_items(self, payload: Dict[str, Any], lines: Sequence[CartItem]) -> Order:
        async with self._store.deferred_changes():
            rows = await self._store.insert("orders", payload)
            order_id = rows[0]["id"]
            try:
                await self._store.insert("order_items", _item_rows(order_id, lines, payload["created_at"]))
            except StoreError as e:
                logger.error("Items for order %s failed, rolling back: %s", order_id, e.detail)
                await self._store.delete("orders", order_id)
                raise StoreError(
                    "order items insert failed",
                    e.detail,
                    context="Failed to save the order items. The order was rolled back",
                ) from e

            order = await self._read_order(order_id)
            if order is None:
                raise NotFoundError(f"Order {_short(order_id)} disappeared after creation.")
            self._dispatch(OrderSaved(order))
            return order

    def _new_order_payload(self, order_type: OrderType, lines: Sequence[CartItem]) -> Dict[str, Any]:
        now = self.now()
        payload: Dict[str, Any] = {
            "order_type": order_type,
            "status": OrderStatus.PENDING,
            "total_amount": cart_total(lines),
            "created_at": now,
            "order_time": now,
            "last_status_change_time": now,
        }
        payload.update(flow.timer_fields(self.resolve_duration(order_type, OrderStatus.PENDING), now))
        return payload

    async def create_manual_order(self, data: ManualOrderData) -> Optional[Order]:
        try:
            if not data.items:
                raise ValidationError("Add at least one item to the order.")

            table = None
            if data.order_type == OrderType.DINE_IN:
                if not data.table_id:
                    raise ValidationError("Dine-in orders need a table.")
                table = self._state.find_table(data.table_id)
                if table is None:
                    raise NotFoundError("Table not found.")

            lines = merge_lines(data.items)
            payload = self._new_order_payload(data.order_type, lines)

            name = (data.customer_name or "").strip()
            if table is not None and not name:
                name = f"Table {table.name}"
            payload.update(
                customer_name=name or None,
                customer_phone=data.customer_phone,
                customer_address=data.customer_address,
                notes=_with_reference(data.notes, data.address_reference),
                table_id=table.id if table is not None else None,
            )

            if table is None:
                payload.update(self._payment_fields(data.payment_method, data.amount_paid, payload["total_amount"]))

            order = await self._insert_order_with_items(payload, lines)
        except Exception as e:
            self._fail(e, "Failed to create order")
            return None

        if settles_in_drawer(order.payment_method) and order.cash_register_session_id is None:
            self._notify("No cash register is open. The order was saved without a cash session.", NoticeKind.INFO)
        if table is not None and table.status == TableStatus.AVAILABLE:
            await self._set_table(table.id, {"status": TableStatus.OCCUPIED, "current_order_id": order.id})

        logger.info("Created %s order %s (%.2f)", order.order_type.value, order.id, order.total_amount)
        self._notify(f"Order for {order.customer_name or 'customer'} created!", NoticeKind.SUCCESS)
        self._print(order)
        return order

    def _payment_fields(
        self, method: Optional[PaymentMethod], amount_paid: Optional[float], total: float
    ) -> Dict[str, Any]:
        fields: Dict[str, Any] = {"payment_method": method}
        if method == PaymentMethod.CASH and amount_paid is not None:
            fields["amount_paid"] = money(amount_paid)
            fields["change_due"] = money(amount_paid - total) if amount_paid >= total else None

        active = self._state.active_cash_session
        if settles_in_drawer(method) and active is not None:
            fields["cash_register_session_id"] = active.id
        return fields

    async def place_order(self, customer: CustomerDetails, cart: Sequence[CartItem]) -> Optional[Order]:
        """Customer-facing checkout: always a delivery order."""
        try:
            if not cart:
                raise ValidationError("Your cart is empty.")
            required = (("name", customer.name), ("phone", customer.phone), ("address", customer.address))
            missing = [label for label, value in required if not (value or "").strip()]
            if missing:
                raise ValidationError(f"Please fill in your {', '.join(missing)}.")

            lines = merge_lines(cart)
            payload = self._new_order_payload(OrderType.DELIVERY, lines)
            payload.update(
                customer_name=customer.name.strip(),
                customer_phone=customer.phone.strip(),
                customer_address=customer.address.strip(),
                notes=_with_reference(customer.notes, customer.address_reference),
                payment_method=customer.payment_method,
            )
            order = await self._insert_order_with_items(payload, lines)
        except Exception as e:
            self._fail(e, "Failed to place order")
            return None

        logger.info("Checkout order %s placed (%.2f)", order.id, order.total_amount)
        self._notify(f"Order {_short(order.id)} placed!", NoticeKind.SUCCESS)
        self._print(order)
        return order

    async def add_items_to_order(self, order_id: str, items: Sequence[CartItem]) -> Optional[Order]:
        async with self._order_lock(order_id):
            try:
                if not items:
                    raise ValidationError("No items to add.")
                order = await self._find_order(order_id)
                if flow.is_terminal(order.status):
                    raise ConflictError(f"Cannot add items to an order that is already {order.status.value}.")

                lines = merge_lines(items)
                now = self.now()
                updates: Dict[str, Any] = {
                    "total_amount": money(order.total_amount + cart_total(lines)),
                    "last_status_change_time": now,
                }
                reopened = False
                if order.status in (OrderStatus.PENDING, OrderStatus.PREPARING):
                    updates.update(flow.timer_fields(self.resolve_duration(order.order_type, order.status), now))
                elif order.status == OrderStatus.READY_FOR_PICKUP:
                    updates["status"] = OrderStatus.PREPARING
                    updates.update(flow.timer_fields(self.resolve_duration(order.order_type, OrderStatus.PREPARING), now))
                    reopened = True

                # nobody sees the new items until the order total matches them
                async with self._store.deferred_changes():
                    inserted = await self._store.insert("order_items", _item_rows(order_id, lines, now))
                    try:
                        saved = await self._save_order(order_id, updates)
                    except StoreError:
                        for row in inserted:
                            await self._store.delete("order_items", row["id"])
                        raise
            except Exception as e:
                self._fail(e, "Failed to add items to order")
                return None

        if reopened:
            self._notify(f"Order {_short(order_id)} went back to preparing.", NoticeKind.INFO)
        self._notify(f"{len(lines)} item(s) added to order {_short(order_id)}.", NoticeKind.SUCCESS)
        self._print(saved)
        return saved

    async def close_table_account(self, order_id: str, payment: PaymentDetails) -> Optional[Order]:
        async with self._order_lock(order_id):
            try:
                order = await self._find_order(order_id)
                if flow.is_terminal(order.status):
                    self._notify(f"Order {_short(order_id)} is already {order.status.value}.", NoticeKind.INFO, "conflict")
                    return order

                method = payment.payment_method
                total = order.total_amount
                if method == PaymentMethod.CASH:
                    tendered = payment.amount_paid if payment.amount_paid is not None else total
                    change_due = money(tendered - total) if tendered >= total else 0.0
                else:
                    tendered, change_due = total, 0.0

                active = self._state.active_cash_session
                updates: Dict[str, Any] = {
                    "status": OrderStatus.DELIVERED,
                    "payment_method": method,
                    "amount_paid": money(tendered),
                    "change_due": change_due,
                    "last_status_change_time": self.now(),
                    "cash_register_session_id": active.id if settles_in_drawer(method) and active else None,
                }
                updates.update(flow.stopped_timer_fields())
                saved = await self._save_order(order_id, updates)
            except Exception as e:
                self._fail(e, "Failed to close table account")
                return None

        logger.info("Account for order %s closed (%s, %.2f)", order_id, method.value, total)
        self._print(saved)
        if order.table_id:
            await self._release_table(order.table_id, order_id)
        self._notify(f"Account for order {_short(order_id)} closed!", NoticeKind.SUCCESS)
        return saved

    # -------------------
    # Tables
    # -------------------
    async def _set_table(self, table_id: str, updates: Mapping[str, Any]) -> Optional[Table]:
        """Table side effect of an order operation: failures are reported, never raised."""
        try:
            row = await self._store.update("tables", table_id, updates)
            if row is None:
                raise NotFoundError("Table not found.")
            table = Table.model_validate(row)
            self._dispatch(TableSaved(table))
            return table
        except Exception as e:
            self._fail(e, "Failed to update table")
            return None

    async def _release_table(self, table_id: str, order_id: str) -> None:
        table = self._state.find_table(table_id)
        updates: Dict[str, Any] = {"status": TableStatus.NEEDS_CLEANING}
        if table is None or table.current_order_id in (None, order_id):
            updates["current_order_id"] = None
        await self._set_table(table_id, updates)

    async def add_table(self, name: str, capacity: int = 4) -> Optional[Table]:
        try:
            name = (name or "").strip()
            if not name:
                raise ValidationError("Table name is required.")
            if capacity < 1:
                raise ValidationError("Table capacity must be at least 1.")
            rows = await self._store.insert("tables", {"name": name, "capacity": capacity, "status": TableStatus.AVAILABLE})
            table = Table.model_validate(rows[0])
            self._dispatch(TableSaved(table))
        except Exception as e:
            self._fail(e, "Failed to add table")
            return None
        self._notify(f"Table {table.name} added.", NoticeKind.SUCCESS)
        return table

    async def update_table(self, table_id: str, changes: Mapping[str, Any]) -> Optional[Table]:
        try:
            table = self._state.find_table(table_id)
            if table is None:
                raise NotFoundError("Table not found.")

            updates = {k: v for k, v in changes.items() if k in ("name", "capacity", "status", "current_order_id")}
            if updates.get("status") == TableStatus.NEEDS_CLEANING:
                current_id = updates.get("current_order_id", table.current_order_id)
                current = self._state.find_order(current_id) if current_id else None
                if current is not None and not flow.is_terminal(current.status):
                    raise ConflictError(
                        f"Table {table.name} cannot be marked for cleaning while order "
                        f"{_short(current.id)} is {current.status.value}."
                    )

            row = await self._store.update("tables", table_id, updates)
            if row is None:
                raise NotFoundError("Table not found.")
            saved = Table.model_validate(row)
            self._dispatch(TableSaved(saved))
        except Exception as e:
            self._fail(e, "Failed to update table")
            return None
        self._notify(f"Table {saved.name} updated.", NoticeKind.SUCCESS)
        return saved

    async def delete_table(self, table_id: str) -> bool:
        try:
            table = self._state.find_table(table_id)
            if table is None:
                raise NotFoundError("Table not found.")
            if table.status == TableStatus.OCCUPIED and table.current_order_id:
                raise ConflictError(f"Table {table.name} is occupied and cannot be deleted.")
            await self._store.delete("tables", table_id)
            self._dispatch(TableRemoved(table_id))
        except Exception as e:
            self._fail(e, "Failed to delete table")
            return False
        self._notify(f"Table {table.name} deleted.", NoticeKind.SUCCESS)
        return True

    # -------------------
    # Cash register
    # -------------------
    async def _load_session(self, session_id: str) -> Optional[CashRegisterSession]:
        row = await self._store.get("cash_register_sessions", session_id)
        return CashRegisterSession.model_validate(row) if row is not None else None

    async def open_cash_register(self, opening_balance: float, notes: Optional[str] = None) -> Optional[CashRegisterSession]:
        async with self._cash_lock:
            try:
                open_rows = await self._store.select(
                    "cash_register_sessions", filters={"status": CashSessionStatus.OPEN}, limit=1
                )
                active = self._state.active_cash_session
                if active is None and open_rows:
                    active = CashRegisterSession.model_validate(open_rows[0])
                ensure_can_open(active, opening_balance)

                rows = await self._store.insert(
                    "cash_register_sessions",
                    {
                        "opening_balance": money(opening_balance),
                        "status": CashSessionStatus.OPEN,
                        "opened_at": self.now(),
                        "notes_opening": notes,
                    },
                )
                session = CashRegisterSession.model_validate(rows[0])
                self._dispatch(CashSessionSaved(session))
            except Exception as e:
                self._fail(e, "Failed to open cash register")
                return None

        logger.info("Cash session %s opened with %.2f", session.id, session.opening_balance)
        self._notify("Cash register opened!", NoticeKind.SUCCESS)
        return session

    async def close_cash_register(
        self, session_id: str, closing_balance_informed: float, notes: Optional[str] = None
    ) -> Optional[CashRegisterSession]:
        async with self._cash_lock:
            try:
                session = ensure_open(await self._load_session(session_id))
                order_rows = await self._store.select("orders", filters={"cash_register_session_id": session_id})
                adjustment_rows = await self._store.select("cash_adjustments", filters={"session_id": session_id})
                result = reconcile(
                    session,
                    [order_from_row(r) for r in order_rows],
                    [CashAdjustment.model_validate(r) for r in adjustment_rows],
                    closing_balance_informed,
                )

                row = await self._store.update(
                    "cash_register_sessions",
                    session_id,
                    {
                        "status": CashSessionStatus.CLOSED,
                        "closed_at": self.now(),
                        "closing_balance_informed": money(closing_balance_informed),
                        "calculated_sales": result.calculated_sales,
                        "expected_in_cash": result.expected_in_cash,
                        "difference": result.difference,
                        "notes_closing": notes,
                    },
                )
                if row is None:
                    raise NotFoundError("Cash register session not found.")
                closed = CashRegisterSession.model_validate(row)
                self._dispatch(CashSessionSaved(closed))
            except Exception as e:
                self._fail(e, "Failed to close cash register")
                return None

        symbol = self._state.settings.currency_symbol
        logger.info(
            "Cash session %s closed: expected %.2f, informed %.2f, difference %.2f",
            session_id,
            result.expected_in_cash,
            closed.closing_balance_informed,
            result.difference,
        )
        kind = NoticeKind.SUCCESS if result.difference == 0 else NoticeKind.INFO
        self._notify(f"Cash register closed. Difference: {symbol}{result.difference:.2f}", kind)
        return closed

    async def add_cash_adjustment(
        self, session_id: str, adjustment_type: CashAdjustmentType, amount: float, reason: str = ""
    ) -> Optional[CashAdjustment]:
        try:
            ensure_valid_adjustment(amount)
            ensure_open(await self._load_session(session_id))
            rows = await self._store.insert(
                "cash_adjustments",
                {
                    "session_id": session_id,
                    "type": CashAdjustmentType(adjustment_type),
                    "amount": money(amount),
                    "reason": reason or "",
                    "adjusted_at": self.now(),
                },
            )
            adjustment = CashAdjustment.model_validate(rows[0])
            self._dispatch(CashAdjustmentSaved(adjustment))
        except Exception as e:
            self._fail(e, "Failed to add cash adjustment")
            return None

        logger.info("Cash adjustment %s %.2f on session %s", adjustment.type.value, adjustment.amount, session_id)
        self._notify("Cash adjustment recorded.", NoticeKind.SUCCESS)
        return adjustment

    # -------------------
    # Settings
    # -------------------
    @staticmethod
    def _settings_from_row(row: Optional[Row]) -> AppSettings:
        stored: Dict[str, Any] = {}
        if row is not None and row.get("settings_json"):
            try:
                parsed = json.loads(row["settings_json"])
                stored = parsed if isinstance(parsed, dict) else {}
            except ValueError:
                logger.warning("Stored settings are not valid JSON, using defaults")
        defaults = AppSettings()
        return AppSettings(
            store_name=stored.get("store_name") or defaults.store_name,
            currency_symbol=stored.get("currency_symbol") or defaults.currency_symbol,
            order_flow=flow.merge_order_flow(stored.get("order_flow")),
        )

    async def _persist_settings(self, settings: AppSettings) -> None:
        await self._store.upsert(
            "app_settings",
            {
                "id": SETTINGS_ROW_ID,
                "settings_json": json.dumps(settings.model_dump(mode="json")),
                "updated_at": self.now(),
            },
        )

    async def _load_settings(self) -> AppSettings:
        row = await self._store.get("app_settings", SETTINGS_ROW_ID)
        settings = self._settings_from_row(row)
        if row is None:
            await self._persist_settings(settings)
            logger.info("Seeded default settings")
        self._dispatch(SettingsLoaded(settings))
        return settings

    async def fetch_settings(self) -> Optional[AppSettings]:
        try:
            return await self._load_settings()
        except Exception as e:
            self._fail(e, "Failed to load settings")
            return None

    async def update_settings(self, changes: Mapping[str, Any]) -> Optional[AppSettings]:
        try:
            current = self._state.settings.model_dump(mode="json")
            order_flow = current.get("order_flow") or {}
            for raw_type, durations in (changes.get("order_flow") or {}).items():
                key = raw_type.value if isinstance(raw_type, OrderType) else str(raw_type)
                merged = dict(order_flow.get(key) or {})
                merged.update({(s.value if isinstance(s, OrderStatus) else str(s)): ms for s, ms in durations.items()})
                order_flow[key] = merged

            settings = self._settings_from_row(
                {
                    "settings_json": json.dumps(
                        {
                            "store_name": changes.get("store_name") or current["store_name"],
                            "currency_symbol": changes.get("currency_symbol") or current["currency_symbol"],
                            "order_flow": order_flow,
                        }
                    )
                }
            )
            await self._persist_settings(settings)
            self._dispatch(SettingsLoaded(settings))
        except Exception as e:
            self._fail(e, "Failed to save settings")
            return None
        self._notify("Settings saved.", NoticeKind.SUCCESS)
        return settings

    # -------------------
    # Lifecycle
    # -------------------
    def start(self) -> None:
        self.scheduler.start()

    async def stop(self) -> None:
        await self.scheduler.stop()
        if self._unsubscribe_store is not None:
            self._unsubscribe_store()
            self._unsubscribe_store = None
