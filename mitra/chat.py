from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .config import settings
from .errors import BackendFailure, ValidationFailed
from .models import ChatMessage, Partner

logger = logging.getLogger(__name__)


def room_for(partner_id: int) -> str:
    # Rooms are always derived from the authenticated partner, never taken from a request.
    return f"partner_{partner_id}_general"


def sender_label(message: Dict[str, Any], viewer_id: Optional[str] = None) -> str:
    sender_type = message.get("sender_type")
    if sender_type == "admin":
        return "Admin SmartCare"
    if sender_type == "partner" and viewer_id is not None and str(message.get("sender_id")) == str(viewer_id):
        return "Anda"
    if sender_type == "member":
        return "Pelanggan"
    return "System"


def serialize_message(m: ChatMessage) -> Dict[str, Any]:
    return {
        "id": m.id,
        "content": m.content,
        "sender_id": m.sender_id,
        "sender_type": m.sender_type,
        "room_id": m.room_id,
        "message_type": m.message_type,
        "is_read": bool(m.is_read),
        "created_at": m.created_at.isoformat() if m.created_at else None,
    }


def recent_messages(db: Session, room_id: str, limit: Optional[int] = None) -> List[ChatMessage]:
    """Latest ``limit`` messages of a room, oldest first."""
    rows = (
        db.query(ChatMessage)
        .filter(ChatMessage.room_id == room_id)
        .order_by(ChatMessage.created_at.desc(), ChatMessage.id.desc())
        .limit(limit or settings.chat_history_limit)
        .all()
    )
    rows.reverse()
    return rows


@dataclass(eq=False)
class Subscription:
    room_id: str
    queue: asyncio.Queue
    loop: asyncio.AbstractEventLoop
    seen: Set[int] = field(default_factory=set)


class ChatHub:
    """Fan-out of newly inserted chat rows to the subscribers of their room."""

    def __init__(self) -> None:
        self._rooms: Dict[str, Set[Subscription]] = {}
        self._lock = threading.Lock()

    def subscribe(self, room_id: str) -> Subscription:
        sub = Subscription(room_id=room_id, queue=asyncio.Queue(), loop=asyncio.get_running_loop())
        with self._lock:
            self._rooms.setdefault(room_id, set()).add(sub)
        logger.debug("Subscribed to %s", room_id)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        with self._lock:
            subs = self._rooms.get(sub.room_id)
            if subs is None:
                return
            subs.discard(sub)
            if not subs:
                del self._rooms[sub.room_id]
        logger.debug("Unsubscribed from %s", sub.room_id)

    def subscriber_count(self, room_id: str) -> int:
        with self._lock:
            return len(self._rooms.get(room_id, ()))

    def publish(self, message: Dict[str, Any]) -> int:
        room_id = message.get("room_id")
        with self._lock:
            subs = list(self._rooms.get(room_id, ()))

        delivered = 0
        for sub in subs:
            try:
                sub.loop.call_soon_threadsafe(sub.queue.put_nowait, message)
                delivered += 1
            except RuntimeError:
                # subscriber's loop is gone
                logger.warning("Dropping dead subscriber on %s", room_id)
                self.unsubscribe(sub)
        return delivered


chat_hub = ChatHub()


def post_message(db: Session, partner: Partner, content: str, hub: Optional[ChatHub] = None) -> ChatMessage:
    text = (content or "").strip()
    if not text:
        raise ValidationFailed("Pesan tidak boleh kosong")

    msg = ChatMessage(
        content=text,
        sender_id=str(partner.id),
        sender_type="partner",
        room_id=room_for(partner.id),
        message_type="text",
        is_read=False,
    )
    try:
        db.add(msg)
        db.commit()
        db.refresh(msg)
    except SQLAlchemyError as e:
        db.rollback()
        logger.exception("Failed to insert chat message for partner %s", partner.id)
        raise BackendFailure("Gagal mengirim pesan") from e

    (hub or chat_hub).publish(serialize_message(msg))
    return msg
