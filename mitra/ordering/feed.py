from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from ..config import settings
from ..errors import ValidationFailed
from ..models import ACTIVE_JOB_STATUSES, COMPLETED, IN_PROGRESS, PENDING, Order, Partner
from .clock import WorkClock, format_elapsed
from .commission import can_accept, commission_for, order_total, shortfall

EARNINGS_PERIODS = ("today", "week", "month", "all")


def incoming_orders(db: Session, limit: Optional[int] = None) -> List[Order]:
    return (
        db.query(Order)
        .filter(Order.status == PENDING)
        .order_by(Order.created_at.desc(), Order.id.desc())
        .limit(limit or settings.incoming_orders_limit)
        .all()
    )


def my_jobs(db: Session, partner_id: int) -> List[Order]:
    return (
        db.query(Order)
        .filter(Order.partner_id == partner_id, Order.status.in_(ACTIVE_JOB_STATUSES))
        .order_by(Order.created_at.desc(), Order.id.desc())
        .all()
    )


def resume_timers(jobs: List[Order], clock: WorkClock, now: Optional[datetime] = None) -> None:
    """Give in-progress jobs without a timer one, counted from their start_time."""
    now = now or datetime.utcnow()
    for job in jobs:
        if job.status != IN_PROGRESS or job.id in clock:
            continue
        elapsed = int((now - job.start_time).total_seconds()) if job.start_time else 0
        clock.resume(job.id, elapsed)


def _iso(v: Optional[datetime]) -> Optional[str]:
    return v.isoformat() if v else None


def serialize_order(order: Order, partner: Optional[Partner] = None, clock: Optional[WorkClock] = None) -> Dict[str, Any]:
    price = float(order.price_per_hour or 0.0)
    out: Dict[str, Any] = {
        "id": order.id,
        "order_number": order.order_number,
        "service_name": order.service_name,
        "price_per_hour": price,
        "total_amount": order.total_amount,
        "total": order_total(price, order.total_amount),
        "commission": commission_for(price),
        "status": order.status,
        "partner_id": order.partner_id,
        "customer_name": order.customer_name,
        "address": order.address,
        "scheduled_date": order.scheduled_date,
        "scheduled_time": order.scheduled_time,
        "notes": order.notes,
        "estimated_duration": order.estimated_duration,
        "actual_duration": order.actual_duration,
        "start_time": _iso(order.start_time),
        "end_time": _iso(order.end_time),
        "rating": order.rating,
        "review": order.review,
        "created_at": _iso(order.created_at),
    }

    if partner is not None and order.status == PENDING:
        balance = float(partner.balance or 0.0)
        out["can_accept"] = can_accept(price, balance)
        out["shortfall"] = shortfall(price, balance)

    if clock is not None:
        timer = clock.get(order.id)
        out["timer"] = {"elapsed": timer.elapsed, "display": format_elapsed(timer.elapsed)} if timer else None

    return out


def _period_start(period: str, now: datetime) -> Optional[datetime]:
    day = now.replace(hour=0, minute=0, second=0, microsecond=0)
    if period == "today":
        return day
    if period == "week":
        return day - timedelta(days=day.weekday())
    if period == "month":
        return day.replace(day=1)
    return None


def earnings_summary(db: Session, partner: Partner, period: str = "today", now: Optional[datetime] = None) -> Dict[str, Any]:
    period = (period or "today").strip().lower()
    if period not in EARNINGS_PERIODS:
        raise ValidationFailed("Periode tidak dikenal")

    now = now or datetime.utcnow()
    q = db.query(Order).filter(Order.partner_id == partner.id, Order.status == COMPLETED)
    start = _period_start(period, now)
    if start is not None:
        q = q.filter(Order.end_time >= start)
    jobs = q.order_by(Order.end_time.desc(), Order.id.desc()).all()

    total_paid = 0.0
    total_commission = 0.0
    for job in jobs:
        total_paid += order_total(job.price_per_hour, job.total_amount)
        # persisted commission_amount is trusted only when present
        total_commission += float(job.commission_amount if job.commission_amount is not None else commission_for(job.price_per_hour))

    return {
        "period": period,
        "completed_jobs": len(jobs),
        "total_paid": round(total_paid, 2),
        "total_commission": round(total_commission, 2),
        "balance": float(partner.balance or 0.0),
        "jobs": [serialize_order(j) for j in jobs],
    }
