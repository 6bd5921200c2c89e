# restopos/store.py
"""
Data store seam.

The coordinator only talks to `Store`: row-level CRUD by collection name plus
change notifications. `SqlStore` backs it with the SQLAlchemy models and runs
each session in a worker thread so the event loop only waits on it.
"""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from contextvars import ContextVar
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Union

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from . import models
from .errors import StoreError
from .ordering.state import Change

logger = logging.getLogger(__name__)

ChangeListener = Callable[[Change], Awaitable[None]]
Row = Dict[str, Any]

TABLES: Dict[str, Any] = {
    "orders": models.Order,
    "order_items": models.OrderItem,
    "tables": models.DiningTable,
    "cash_register_sessions": models.CashRegisterSession,
    "cash_adjustments": models.CashAdjustment,
    "app_settings": models.AppSettingsRow,
}

# changes held back by the current task's `deferred_changes` block
_pending: ContextVar[Optional[List[Change]]] = ContextVar("pending_changes", default=None)


class Store:
    """Abstract collection store. Every failure surfaces as StoreError."""

    def __init__(self) -> None:
        self._listeners: List[ChangeListener] = []

    async def insert(self, table: str, values: Union[Mapping[str, Any], Iterable[Mapping[str, Any]]]) -> List[Row]:
        raise NotImplementedError

    async def update(self, table: str, row_id: str, values: Mapping[str, Any]) -> Optional[Row]:
        raise NotImplementedError

    async def upsert(self, table: str, values: Mapping[str, Any]) -> Row:
        raise NotImplementedError

    async def delete(self, table: str, row_id: str) -> None:
        raise NotImplementedError

    async def get(self, table: str, row_id: str) -> Optional[Row]:
        raise NotImplementedError

    async def select(
        self,
        table: str,
        *,
        filters: Optional[Mapping[str, Any]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Row]:
        raise NotImplementedError

    def subscribe(self, listener: ChangeListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    @asynccontextmanager
    async def deferred_changes(self) -> AsyncIterator[None]:
        """
        Hold the notifications of writes made inside the block.

        They are delivered when the block exits cleanly and dropped when it
        raises, so a multi-step write that rolls itself back is never announced.
        Nested blocks join the outermost one.
        """
        if _pending.get() is not None:
            yield
            return

        buffer: List[Change] = []
        token = _pending.set(buffer)
        try:
            yield
        finally:
            _pending.reset(token)
        for change in buffer:
            await self._deliver(change)

    async def _emit(self, change: Change) -> None:
        buffer = _pending.get()
        if buffer is not None:
            buffer.append(change)
            return
        await self._deliver(change)

    async def _deliver(self, change: Change) -> None:
        for listener in list(self._listeners):
            try:
                await listener(change)
            except Exception:
                logger.exception("Change listener failed for %s %s", change.table, change.event)


def _plain(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


def _row(obj: Any) -> Row:
    return {c.name: getattr(obj, c.key) for c in obj.__table__.columns}


class SqlStore(Store):
    def __init__(self, session_factory: sessionmaker) -> None:
        super().__init__()
        self._session_factory = session_factory

    def _model(self, table: str) -> Any:
        try:
            return TABLES[table]
        except KeyError:
            raise StoreError(f"Unknown collection {table!r}", f"no such table: {table}") from None

    def _columns(self, model: Any, values: Mapping[str, Any]) -> Dict[str, Any]:
        known = model.__table__.columns.keys()
        return {k: _plain(v) for k, v in values.items() if k in known}

    async def _run(self, work: Callable[[], Any], failure: str) -> Any:
        try:
            return await asyncio.to_thread(work)
        except SQLAlchemyError as e:
            logger.error("%s: %s", failure, e)
            raise StoreError(failure, str(e)) from e

    async def insert(self, table, values):
        model = self._model(table)
        batch = [values] if isinstance(values, Mapping) else list(values)

        def work() -> List[Row]:
            with self._session_factory() as db:
                objs = [model(**self._columns(model, v)) for v in batch]
                db.add_all(objs)
                db.commit()
                return [_row(o) for o in objs]

        rows = await self._run(work, f"Insert into {table} failed")
        for row in rows:
            await self._emit(Change(table, "INSERT", new=row))
        return rows

    async def update(self, table, row_id, values):
        model = self._model(table)

        def work():
            with self._session_factory() as db:
                obj = db.get(model, row_id)
                if obj is None:
                    return None
                old = _row(obj)
                for k, v in self._columns(model, values).items():
                    setattr(obj, k, v)
                db.commit()
                return old, _row(obj)

        result = await self._run(work, f"Update of {table} failed")
        if result is None:
            return None
        old, row = result
        await self._emit(Change(table, "UPDATE", new=row, old=old))
        return row

    async def upsert(self, table, values):
        model = self._model(table)
        row_id = values.get("id")

        def work():
            with self._session_factory() as db:
                obj = db.get(model, row_id) if row_id is not None else None
                event = "UPDATE" if obj is not None else "INSERT"
                if obj is None:
                    obj = model(**self._columns(model, values))
                    db.add(obj)
                else:
                    for k, v in self._columns(model, values).items():
                        setattr(obj, k, v)
                db.commit()
                return event, _row(obj)

        event, row = await self._run(work, f"Upsert into {table} failed")
        await self._emit(Change(table, event, new=row))
        return row

    async def delete(self, table, row_id):
        model = self._model(table)

        def work() -> Optional[Row]:
            with self._session_factory() as db:
                obj = db.get(model, row_id)
                if obj is None:
                    return None
                old = _row(obj)
                db.delete(obj)
                db.commit()
                return old

        old = await self._run(work, f"Delete from {table} failed")
        if old is not None:
            await self._emit(Change(table, "DELETE", old=old))

    async def get(self, table, row_id):
        model = self._model(table)

        def work() -> Optional[Row]:
            with self._session_factory() as db:
                obj = db.get(model, row_id)
                return _row(obj) if obj is not None else None

        return await self._run(work, f"Read from {table} failed")

    async def select(self, table, *, filters=None, order_by=None, descending=False, limit=None):
        model = self._model(table)
        stmt = select(model)
        for k, v in (filters or {}).items():
            stmt = stmt.where(getattr(model, k) == _plain(v))
        if order_by:
            col = getattr(model, order_by)
            stmt = stmt.order_by(col.desc() if descending else col.asc())
        if limit:
            stmt = stmt.limit(limit)

        def work() -> List[Row]:
            with self._session_factory() as db:
                return [_row(o) for o in db.scalars(stmt)]

        return await self._run(work, f"Read from {table} failed")
