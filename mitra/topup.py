from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .config import settings
from .errors import BackendFailure, ValidationFailed
from .models import Partner, TopupRequest
from .ordering.commission import format_rupiah

logger = logging.getLogger(__name__)


def request_topup(
    db: Session,
    partner: Partner,
    amount: float,
    name: Optional[str] = None,
    whatsapp: Optional[str] = None,
) -> TopupRequest:
    """File a pending top-up; an admin credits the balance out-of-band."""
    if amount is None or float(amount) < settings.min_topup:
        raise ValidationFailed(f"Minimal top up {format_rupiah(settings.min_topup)}")

    req = TopupRequest(
        user_id=partner.id,
        user_type="partner",
        amount=float(amount),
        payment_method="transfer",
        partner_name=(name or "").strip() or partner.owner_name,
        whatsapp=(whatsapp or "").strip() or partner.phone_number,
        status="pending",
    )
    try:
        db.add(req)
        db.commit()
        db.refresh(req)
    except SQLAlchemyError as e:
        db.rollback()
        logger.exception("Failed to insert top-up request for partner %s", partner.id)
        raise BackendFailure("Gagal mengirim permintaan top up") from e

    logger.info("Partner %s requested top-up of %s", partner.id, req.amount)
    return req


def list_topups(db: Session, partner_id: int) -> List[TopupRequest]:
    return (
        db.query(TopupRequest)
        .filter(TopupRequest.user_id == partner_id)
        .order_by(TopupRequest.created_at.desc(), TopupRequest.id.desc())
        .all()
    )


def serialize_topup(t: TopupRequest) -> Dict[str, Any]:
    return {
        "id": t.id,
        "amount": t.amount,
        "status": t.status,
        "payment_method": t.payment_method,
        "partner_name": t.partner_name,
        "whatsapp": t.whatsapp,
        "created_at": t.created_at.isoformat() if t.created_at else None,
    }
