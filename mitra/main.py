from __future__ import annotations

import asyncio
import contextlib
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, WebSocket, WebSocketDisconnect, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, EmailStr
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .auth import create_token, decode_token, hash_password, verify_password
from .chat import chat_hub, post_message, recent_messages, room_for, sender_label, serialize_message
from .config import settings
from .db import Base, SessionLocal, engine, get_db
from .errors import BackendFailure, InsufficientBalance, InvalidTransition, MitraError, OrderNotFound, ValidationFailed
from .models import COMPLETED, IN_PROGRESS, Order, Partner
from .ordering.clock import format_elapsed, work_clock
from .ordering.commission import format_rupiah
from .ordering.feed import earnings_summary, incoming_orders, my_jobs, resume_timers, serialize_order
from .ordering.invoice import INVOICE_MEDIA_TYPE, invoice_filename, render_invoice, send_invoice_to_chat
from .ordering.lifecycle import accept_order, finish_order, start_order
from .topup import list_topups, request_topup, serialize_topup

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def _resume_timers_from_db() -> None:
    db = SessionLocal()
    try:
        jobs = db.query(Order).filter(Order.status == IN_PROGRESS).all()
        resume_timers(jobs, work_clock)
        if jobs:
            logger.info("Resumed %d work timer(s)", len(jobs))
    except SQLAlchemyError:
        logger.exception("Could not resume work timers")
    finally:
        db.close()


@contextlib.asynccontextmanager
async def lifespan(app: FastAPI):
    _resume_timers_from_db()
    ticker = asyncio.create_task(work_clock.run())
    try:
        yield
    finally:
        ticker.cancel()
        await asyncio.gather(ticker, return_exceptions=True)


app = FastAPI(
    title="SmartCare Mitra API",
    lifespan=lifespan,
)

Base.metadata.create_all(bind=engine)


# -------------------
# Schemas
# -------------------
class RegisterIn(BaseModel):
    owner_name: str
    business_name: str
    business_type: str
    phone_number: str
    email: EmailStr
    address: str
    city: str
    province: str
    password: str


class LoginIn(BaseModel):
    email: EmailStr
    password: str


class TopupIn(BaseModel):
    amount: float
    name: Optional[str] = None
    whatsapp: Optional[str] = None


class ChatIn(BaseModel):
    content: str


# -------------------
# Errors
# -------------------
_STATUS_BY_ERROR = {
    ValidationFailed: status.HTTP_400_BAD_REQUEST,
    InsufficientBalance: status.HTTP_400_BAD_REQUEST,
    OrderNotFound: status.HTTP_404_NOT_FOUND,
    InvalidTransition: status.HTTP_409_CONFLICT,
    BackendFailure: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


@app.exception_handler(MitraError)
async def mitra_error_handler(request: Request, exc: MitraError) -> JSONResponse:
    code = _STATUS_BY_ERROR.get(type(exc), status.HTTP_400_BAD_REQUEST)
    body: Dict[str, Any] = {"detail": exc.message}
    if isinstance(exc, InsufficientBalance):
        body.update(
            title="Saldo Tidak Mencukupi",
            required=exc.required,
            balance=exc.balance,
            shortfall=exc.shortfall,
        )
    return JSONResponse(status_code=code, content=body)


# -------------------
# Helpers
# -------------------
def serialize_partner(p: Partner) -> Dict[str, Any]:
    return {
        "id": p.id,
        "owner_name": p.owner_name,
        "business_name": p.business_name,
        "business_type": p.business_type,
        "phone_number": p.phone_number,
        "email": p.email,
        "address": p.address,
        "city": p.city,
        "province": p.province,
        "balance": float(p.balance or 0.0),
        "commission_rate": p.commission_rate,
        "status": p.status,
        "verification_status": p.verification_status,
    }


def _bearer(authorization: str | None) -> str | None:
    if not authorization or not authorization.lower().startswith("bearer "):
        return None
    return authorization.split(" ", 1)[1].strip()


def _partner_from_token(db: Session, token: str | None) -> Partner | None:
    pid = decode_token(token) if token else None
    if not pid:
        return None
    return db.get(Partner, pid)


def require_partner(
    authorization: str | None = Header(default=None),
    db: Session = Depends(get_db),
) -> Partner:
    token = _bearer(authorization)
    if not token:
        raise HTTPException(status_code=401, detail="Missing Bearer token")

    partner = _partner_from_token(db, token)
    if not partner:
        raise HTTPException(status_code=401, detail="Invalid token")
    return partner


def _jobs_payload(db: Session, partner: Partner) -> List[Dict[str, Any]]:
    jobs = my_jobs(db, partner.id)
    resume_timers(jobs, work_clock)
    return [serialize_order(j, clock=work_clock) for j in jobs]


def _incoming_payload(db: Session, partner: Partner) -> List[Dict[str, Any]]:
    return [serialize_order(o, partner=partner) for o in incoming_orders(db)]


def _own_order(db: Session, order_id: int, partner: Partner) -> Order:
    order = db.get(Order, order_id)
    if not order or order.partner_id != partner.id:
        raise OrderNotFound()
    return order


def _completed_order(db: Session, order_id: int, partner: Partner) -> Order:
    order = _own_order(db, order_id, partner)
    if order.status != COMPLETED:
        raise InvalidTransition("Invoice hanya tersedia untuk pesanan yang sudah selesai")
    return order


def _message_payload(m: Dict[str, Any], viewer_id: str) -> Dict[str, Any]:
    return {**m, "sender_label": sender_label(m, viewer_id)}


# -------------------
# Health
# -------------------
@app.get("/")
def root():
    return {"ok": True, "service": "mitra-api"}


# -------------------
# Auth
# -------------------
@app.post("/auth/register")
def register(payload: RegisterIn, db: Session = Depends(get_db)):
    profile = payload.model_dump(exclude={"password"})
    if any(not str(v).strip() for v in profile.values()):
        raise HTTPException(status_code=400, detail="Semua data wajib diisi")
    if len(payload.password) < settings.min_password_length:
        raise HTTPException(status_code=400, detail=f"Password minimal {settings.min_password_length} karakter")

    if db.query(Partner).filter(Partner.email == payload.email).first():
        raise HTTPException(status_code=400, detail="Email sudah terdaftar")

    p = Partner(
        **{k: str(v).strip() for k, v in profile.items()},
        password_hash=hash_password(payload.password),
        status="pending",
        verification_status="pending",
        balance=0.0,
        commission_rate=settings.commission_rate,
    )
    try:
        db.add(p)
        db.commit()
        db.refresh(p)
    except SQLAlchemyError as e:
        db.rollback()
        logger.exception("Registration failed for %s", payload.email)
        raise BackendFailure("Pendaftaran gagal") from e

    logger.info("Registered partner %s (%s)", p.id, p.email)
    return {
        "ok": True,
        "message": "Akun mitra Anda telah terdaftar. Silakan tunggu verifikasi dari admin.",
        "partner": serialize_partner(p),
    }


@app.post("/auth/login")
def login(payload: LoginIn, db: Session = Depends(get_db)):
    p = db.query(Partner).filter(Partner.email == payload.email).first()
    if not p:
        raise HTTPException(status_code=401, detail="Email tidak terdaftar sebagai mitra")

    if p.verification_status != "verified":
        raise HTTPException(
            status_code=403,
            detail="Akun Anda belum diverifikasi oleh admin. Silakan tunggu konfirmasi.",
        )

    if len(payload.password) < settings.min_password_length:
        raise HTTPException(status_code=400, detail=f"Password minimal {settings.min_password_length} karakter")

    if not verify_password(payload.password, p.password_hash):
        raise HTTPException(status_code=401, detail="Password salah")

    logger.info("Partner %s logged in", p.id)
    return {
        "token": create_token(p.id),
        "partner": serialize_partner(p),
        "message": "Selamat datang di dashboard mitra SmartCare",
    }


@app.post("/auth/logout")
def logout(partner: Partner = Depends(require_partner)):
    # tokens are stateless; the client drops it
    logger.info("Partner %s logged out", partner.id)
    return {"ok": True}


@app.get("/me")
def me(partner: Partner = Depends(require_partner)):
    return serialize_partner(partner)


# -------------------
# Orders
# -------------------
@app.get("/orders/incoming")
def orders_incoming(partner: Partner = Depends(require_partner), db: Session = Depends(get_db)):
    return {"orders": _incoming_payload(db, partner), "balance": float(partner.balance or 0.0)}


@app.get("/orders/mine")
def orders_mine(partner: Partner = Depends(require_partner), db: Session = Depends(get_db)):
    return {"jobs": _jobs_payload(db, partner)}


@app.post("/orders/{order_id}/accept")
def order_accept(order_id: int, partner: Partner = Depends(require_partner), db: Session = Depends(get_db)):
    result = accept_order(db, order_id, partner)
    if result.claimed:
        message = "Anda telah menerima pesanan ini"
    else:
        message = "Pesanan sudah diambil mitra lain"
    return {
        "ok": result.claimed,
        "claimed": result.claimed,
        "message": message,
        "order": serialize_order(result.order),
        "incoming": _incoming_payload(db, partner),
        "jobs": _jobs_payload(db, partner),
    }


@app.post("/orders/{order_id}/start")
def order_start(order_id: int, partner: Partner = Depends(require_partner), db: Session = Depends(get_db)):
    result = start_order(db, order_id, partner, work_clock)
    return {
        "ok": True,
        "message": "Timer telah dimulai",
        "order": serialize_order(result.order, clock=work_clock),
        "timer": {"elapsed": result.elapsed, "display": format_elapsed(result.elapsed)},
        "jobs": _jobs_payload(db, partner),
    }


@app.post("/orders/{order_id}/finish")
def order_finish(order_id: int, partner: Partner = Depends(require_partner), db: Session = Depends(get_db)):
    result = finish_order(db, order_id, partner, work_clock)
    return {
        "ok": True,
        "already_completed": result.already_completed,
        "message": f"Komisi {format_rupiah(result.commission)} telah dipotong dari saldo Anda",
        "commission": result.commission,
        "balance": result.balance,
        "elapsed": result.elapsed,
        "elapsed_display": result.elapsed_display,
        "order": serialize_order(result.order),
        "invoice_url": f"/orders/{order_id}/invoice",
        "jobs": _jobs_payload(db, partner),
    }


@app.get("/orders/{order_id}/timer")
def order_timer(order_id: int, partner: Partner = Depends(require_partner), db: Session = Depends(get_db)):
    _own_order(db, order_id, partner)
    timer = work_clock.get(order_id)
    if timer is None:
        raise HTTPException(status_code=404, detail="Timer tidak aktif")
    return {"order_id": order_id, "elapsed": timer.elapsed, "display": format_elapsed(timer.elapsed), "running": timer.running}


# -------------------
# Invoices
# -------------------
@app.get("/orders/{order_id}/invoice")
def order_invoice(order_id: int, partner: Partner = Depends(require_partner), db: Session = Depends(get_db)):
    order = _completed_order(db, order_id, partner)
    text = render_invoice(order, partner, datetime.now())
    return Response(
        content=text.encode("utf-8"),
        media_type=INVOICE_MEDIA_TYPE,
        headers={"Content-Disposition": f'attachment; filename="{invoice_filename(order)}"'},
    )


@app.post("/orders/{order_id}/invoice/send")
async def order_invoice_send(order_id: int, partner: Partner = Depends(require_partner), db: Session = Depends(get_db)):
    order = await run_in_threadpool(_completed_order, db, order_id, partner)
    return await send_invoice_to_chat(order)


# -------------------
# Earnings
# -------------------
@app.get("/earnings")
def earnings(
    period: str = Query(default="today"),
    partner: Partner = Depends(require_partner),
    db: Session = Depends(get_db),
):
    return earnings_summary(db, partner, period)


# -------------------
# Top up
# -------------------
@app.post("/topup")
def topup_create(payload: TopupIn, partner: Partner = Depends(require_partner), db: Session = Depends(get_db)):
    req = request_topup(db, partner, payload.amount, name=payload.name, whatsapp=payload.whatsapp)
    return {
        "ok": True,
        "message": f"Silakan hubungi admin di {settings.admin_hotline}",
        "request": serialize_topup(req),
    }


@app.get("/topup")
def topup_list(partner: Partner = Depends(require_partner), db: Session = Depends(get_db)):
    return {"requests": [serialize_topup(t) for t in list_topups(db, partner.id)]}


# -------------------
# Chat
# -------------------
@app.get("/chat/messages")
def chat_messages(partner: Partner = Depends(require_partner), db: Session = Depends(get_db)):
    room_id = room_for(partner.id)
    viewer = str(partner.id)
    try:
        rows = recent_messages(db, room_id)
    except SQLAlchemyError as e:
        logger.exception("Failed to load chat for %s", room_id)
        raise BackendFailure("Gagal memuat pesan chat") from e
    return {
        "room_id": room_id,
        "messages": [_message_payload(serialize_message(m), viewer) for m in rows],
    }


@app.post("/chat/messages")
def chat_send(payload: ChatIn, partner: Partner = Depends(require_partner), db: Session = Depends(get_db)):
    msg = post_message(db, partner, payload.content, chat_hub)
    return {"ok": True, "message": _message_payload(serialize_message(msg), str(partner.id))}


def _load_history(db: Session, room_id: str) -> List[Dict[str, Any]]:
    return [serialize_message(m) for m in recent_messages(db, room_id)]


async def _pump_room(websocket: WebSocket, sub, viewer: str) -> None:
    while True:
        m = await sub.queue.get()
        if m["id"] in sub.seen:
            continue
        sub.seen.add(m["id"])
        await websocket.send_json({"type": "message", "message": _message_payload(m, viewer)})


@app.websocket("/chat/ws")
async def chat_ws(
    websocket: WebSocket,
    token: str | None = Query(default=None),
    authorization: str | None = Header(default=None),
    db: Session = Depends(get_db),
):
    partner = await run_in_threadpool(_partner_from_token, db, token or _bearer(authorization))
    if not partner:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    room_id = room_for(partner.id)
    viewer = str(partner.id)

    # subscribe before loading history so nothing inserted in between is missed
    sub = chat_hub.subscribe(room_id)
    try:
        history = await run_in_threadpool(_load_history, db, room_id)
        sub.seen.update(m["id"] for m in history)
        await websocket.send_json(
            {"type": "history", "room_id": room_id, "messages": [_message_payload(m, viewer) for m in history]}
        )

        sender = asyncio.create_task(_pump_room(websocket, sub, viewer))
        try:
            while True:
                text = await websocket.receive_text()
                try:
                    await run_in_threadpool(post_message, db, partner, text, chat_hub)
                except MitraError as e:
                    await websocket.send_json({"type": "error", "detail": e.message})
        except WebSocketDisconnect:
            logger.debug("Chat socket closed for %s", room_id)
        finally:
            sender.cancel()
            await asyncio.gather(sender, return_exceptions=True)
    finally:
        chat_hub.unsubscribe(sub)
