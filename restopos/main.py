# restopos/main.py
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Callable, List, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from .auth import authenticate, create_token, register_user, require_user_id
from .config import Settings, configure_logging
from .coordinator import PosCoordinator, capture_notices
from .db import get_db, init_db, make_engine, make_session_factory
from .domain import ManualOrderData, OrderStatus, PaymentDetails
from .errors import Notice
from .printing import make_printer
from .schemas import (
    AdjustmentIn,
    CashCloseIn,
    CashOpenIn,
    CheckoutIn,
    ItemsIn,
    LoginIn,
    SettingsIn,
    SignupIn,
    StatusIn,
    TableIn,
    TablePatch,
)
from .store import SqlStore

logger = logging.getLogger(__name__)

router = APIRouter()

# HTTP status for a failed operation, by notice category
STATUS_BY_CATEGORY = {
    "validation": 400,
    "not_found": 404,
    "conflict": 409,
    "persistence": 503,
    "unexpected": 500,
}


# -------------------
# Helpers
# -------------------
def get_pos(request: Request) -> PosCoordinator:
    return request.app.state.pos


def _notices_json(notices: List[Notice]) -> List[dict]:
    return [{"message": n.message, "kind": n.kind.value, "category": n.category} for n in notices]


def respond(result: Any, notices: List[Notice]):
    """Wrap a coordinator result: None/False means the operation was refused or failed."""
    if result is None or result is False:
        failure = next((n for n in reversed(notices) if n.category in STATUS_BY_CATEGORY), None)
        code = STATUS_BY_CATEGORY[failure.category] if failure else 500
        return JSONResponse(status_code=code, content={"ok": False, "notices": _notices_json(notices)})
    return {"ok": True, "data": jsonable_encoder(result), "notices": _notices_json(notices)}


# -------------------
# Health
# -------------------
@router.get("/")
def root(request: Request):
    pos = get_pos(request)
    return {
        "ok": True,
        "service": "restopos",
        "store": pos.state.settings.store_name,
        "auto_progress": pos.scheduler.running,
    }


# -------------------
# Auth
# -------------------
@router.post("/auth/signup")
def signup(payload: SignupIn, db: Session = Depends(get_db)):
    u = register_user(db, name=payload.name, email=payload.email, phone=payload.phone, password=payload.password)
    if u is None:
        raise HTTPException(status_code=400, detail="Email already exists")
    return {"ok": True}


@router.post("/auth/login")
def login(payload: LoginIn, db: Session = Depends(get_db)):
    u = authenticate(db, email=payload.email, password=payload.password)
    if u is None:
        raise HTTPException(status_code=401, detail="Bad credentials")
    return {"token": create_token(u.id)}


# -------------------
# Orders (staff)
# -------------------
@router.get("/orders")
def list_orders(
    status: Optional[OrderStatus] = None,
    pos: PosCoordinator = Depends(get_pos),
    _uid: int = Depends(require_user_id),
):
    orders = [o for o in pos.state.orders if status is None or o.status == status]
    return {"ok": True, "data": jsonable_encoder(orders), "notices": []}


@router.post("/orders")
async def create_order(
    payload: ManualOrderData,
    pos: PosCoordinator = Depends(get_pos),
    _uid: int = Depends(require_user_id),
):
    with capture_notices() as notices:
        order = await pos.create_manual_order(payload)
    return respond(order, notices)


@router.post("/orders/check-transitions")
async def check_transitions(pos: PosCoordinator = Depends(get_pos), _uid: int = Depends(require_user_id)):
    with capture_notices() as notices:
        await pos.force_check_order_transitions()
    return respond(list(pos.state.orders), notices)


@router.get("/orders/{order_id}")
async def get_order(order_id: str, pos: PosCoordinator = Depends(get_pos), _uid: int = Depends(require_user_id)):
    with capture_notices() as notices:
        order = await pos.fetch_order_with_items(order_id)
    return respond(order, notices)


@router.post("/orders/{order_id}/status")
async def set_order_status(
    order_id: str,
    payload: StatusIn,
    pos: PosCoordinator = Depends(get_pos),
    _uid: int = Depends(require_user_id),
):
    with capture_notices() as notices:
        order = await pos.update_order_status(order_id, payload.status, manual=True)
    return respond(order, notices)


@router.post("/orders/{order_id}/auto-progress")
async def toggle_auto_progress(
    order_id: str, pos: PosCoordinator = Depends(get_pos), _uid: int = Depends(require_user_id)
):
    with capture_notices() as notices:
        order = await pos.toggle_order_auto_progress(order_id)
    return respond(order, notices)


@router.post("/orders/{order_id}/items")
async def add_items(
    order_id: str,
    payload: ItemsIn,
    pos: PosCoordinator = Depends(get_pos),
    _uid: int = Depends(require_user_id),
):
    with capture_notices() as notices:
        order = await pos.add_items_to_order(order_id, payload.items)
    return respond(order, notices)


@router.post("/orders/{order_id}/close")
async def close_account(
    order_id: str,
    payload: PaymentDetails,
    pos: PosCoordinator = Depends(get_pos),
    _uid: int = Depends(require_user_id),
):
    with capture_notices() as notices:
        order = await pos.close_table_account(order_id, payload)
    return respond(order, notices)


# -------------------
# Checkout (guest)
# -------------------
@router.post("/checkout")
async def checkout(payload: CheckoutIn, pos: PosCoordinator = Depends(get_pos)):
    with capture_notices() as notices:
        order = await pos.place_order(payload.customer, payload.cart)
    return respond(order, notices)


# -------------------
# Tables
# -------------------
@router.get("/tables")
def list_tables(pos: PosCoordinator = Depends(get_pos), _uid: int = Depends(require_user_id)):
    return {"ok": True, "data": jsonable_encoder(pos.state.tables), "notices": []}


@router.post("/tables")
async def create_table(payload: TableIn, pos: PosCoordinator = Depends(get_pos), _uid: int = Depends(require_user_id)):
    with capture_notices() as notices:
        table = await pos.add_table(payload.name, payload.capacity)
    return respond(table, notices)


@router.patch("/tables/{table_id}")
async def patch_table(
    table_id: str,
    payload: TablePatch,
    pos: PosCoordinator = Depends(get_pos),
    _uid: int = Depends(require_user_id),
):
    with capture_notices() as notices:
        table = await pos.update_table(table_id, payload.model_dump(exclude_unset=True))
    return respond(table, notices)


@router.delete("/tables/{table_id}")
async def remove_table(table_id: str, pos: PosCoordinator = Depends(get_pos), _uid: int = Depends(require_user_id)):
    with capture_notices() as notices:
        deleted = await pos.delete_table(table_id)
    return respond(deleted, notices)


# -------------------
# Cash register
# -------------------
@router.get("/cash/sessions")
def list_cash_sessions(pos: PosCoordinator = Depends(get_pos), _uid: int = Depends(require_user_id)):
    state = pos.state
    return {
        "ok": True,
        "data": {
            "active_session_id": state.active_cash_session_id,
            "sessions": jsonable_encoder(state.cash_sessions),
            "adjustments": jsonable_encoder(state.cash_adjustments),
        },
        "notices": [],
    }


@router.post("/cash/sessions")
async def open_cash_session(
    payload: CashOpenIn, pos: PosCoordinator = Depends(get_pos), _uid: int = Depends(require_user_id)
):
    with capture_notices() as notices:
        session = await pos.open_cash_register(payload.opening_balance, payload.notes)
    return respond(session, notices)


@router.post("/cash/sessions/{session_id}/close")
async def close_cash_session(
    session_id: str,
    payload: CashCloseIn,
    pos: PosCoordinator = Depends(get_pos),
    _uid: int = Depends(require_user_id),
):
    with capture_notices() as notices:
        session = await pos.close_cash_register(session_id, payload.closing_balance_informed, payload.notes)
    return respond(session, notices)


@router.post("/cash/sessions/{session_id}/adjustments")
async def add_adjustment(
    session_id: str,
    payload: AdjustmentIn,
    pos: PosCoordinator = Depends(get_pos),
    _uid: int = Depends(require_user_id),
):
    with capture_notices() as notices:
        adjustment = await pos.add_cash_adjustment(session_id, payload.type, payload.amount, payload.reason)
    return respond(adjustment, notices)


# -------------------
# Settings
# -------------------
@router.get("/settings")
async def get_settings(pos: PosCoordinator = Depends(get_pos)):
    with capture_notices() as notices:
        settings = await pos.fetch_settings()
    return respond(settings, notices)


@router.put("/settings")
async def put_settings(payload: SettingsIn, pos: PosCoordinator = Depends(get_pos), _uid: int = Depends(require_user_id)):
    with capture_notices() as notices:
        settings = await pos.update_settings(payload.model_dump(exclude_none=True))
    return respond(settings, notices)


# -------------------
# App factory
# -------------------
def create_app(settings: Optional[Settings] = None, clock: Optional[Callable[[], datetime]] = None) -> FastAPI:
    settings = settings or Settings()
    configure_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        engine = make_engine(settings.database_url)
        init_db(engine)
        app.state.session_factory = make_session_factory(engine)

        pos = PosCoordinator(
            SqlStore(app.state.session_factory),
            printer=make_printer(settings.print_spool_dir, settings.currency_symbol, settings.printing_enabled),
            clock=clock,
            interval_ms=settings.auto_progress_interval_ms,
        )
        app.state.pos = pos
        if not await pos.load():
            logger.error("Initial load failed; serving with empty state")
        pos.start()
        try:
            yield
        finally:
            await pos.stop()
            engine.dispose()

    app = FastAPI(
        title="Restaurant POS API",
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.include_router(router)
    return app


app = create_app()
