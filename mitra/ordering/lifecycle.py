from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..errors import BackendFailure, InsufficientBalance, InvalidTransition, OrderNotFound
from ..models import COMPLETED, CONFIRMED, IN_PROGRESS, PENDING, Order, Partner
from .clock import WorkClock, format_elapsed
from .commission import can_accept, commission_for, format_rupiah, rate_label, required_balance, shortfall

logger = logging.getLogger(__name__)


@dataclass
class AcceptResult:
    order: Order
    claimed: bool


@dataclass
class StartResult:
    order: Order
    elapsed: int


@dataclass
class FinishResult:
    order: Order
    commission: float
    balance: float
    elapsed: int
    already_completed: bool = False

    @property
    def elapsed_display(self) -> str:
        return format_elapsed(self.elapsed)


def _load_order(db: Session, order_id: int) -> Order:
    order = db.get(Order, order_id)
    if not order:
        raise OrderNotFound()
    return order


def _load_own_order(db: Session, order_id: int, partner: Partner) -> Order:
    order = _load_order(db, order_id)
    if order.partner_id != partner.id:
        raise OrderNotFound()
    return order


def _backend_failure(db: Session, what: str, message: str) -> BackendFailure:
    db.rollback()
    logger.exception("Backend call failed while %s", what)
    return BackendFailure(message)


def accept_order(db: Session, order_id: int, partner: Partner) -> AcceptResult:
    """Claim a pending order for ``partner``.

    The balance must cover the commission up front, though nothing is debited
    until the job is finished. The claim is a single conditional write, so when
    two partners race for the same order exactly one of them gets it; the loser
    sees ``claimed=False`` and should just refresh its feeds.
    """
    try:
        order = _load_order(db, order_id)
        if order.status != PENDING or order.partner_id is not None:
            logger.info("Order %s already taken, partner %s refused", order.order_number, partner.id)
            return AcceptResult(order=order, claimed=False)

        price = float(order.price_per_hour or 0.0)
        balance = float(partner.balance or 0.0)
        if not can_accept(price, balance):
            required = required_balance(price)
            missing = shortfall(price, balance)
            raise InsufficientBalance(
                required=required,
                balance=balance,
                shortfall=missing,
                message=(
                    f"Maaf, saldo anda kurang dari {rate_label()} dari pesanan ({format_rupiah(required)}). "
                    f"Kurang {format_rupiah(missing)}. Silakan top up terlebih dahulu."
                ),
            )

        now = datetime.utcnow()
        rows = (
            db.query(Order)
            .filter(Order.id == order_id, Order.status == PENDING, Order.partner_id.is_(None))
            .update(
                {Order.partner_id: partner.id, Order.status: CONFIRMED, Order.updated_at: now},
                synchronize_session=False,
            )
        )
        db.commit()
        db.refresh(order)
    except SQLAlchemyError as e:
        raise _backend_failure(db, f"accepting order {order_id}", "Gagal menerima pesanan") from e

    if not rows:
        logger.info("Partner %s lost the claim on order %s", partner.id, order.order_number)
        return AcceptResult(order=order, claimed=False)

    logger.info("Partner %s accepted order %s", partner.id, order.order_number)
    return AcceptResult(order=order, claimed=True)


def start_order(db: Session, order_id: int, partner: Partner, clock: WorkClock) -> StartResult:
    try:
        order = _load_own_order(db, order_id, partner)

        if order.status == IN_PROGRESS:
            # already running (e.g. after a restart): keep counting from start_time
            elapsed = int((datetime.utcnow() - order.start_time).total_seconds()) if order.start_time else 0
            timer = clock.resume(order.id, elapsed)
            return StartResult(order=order, elapsed=timer.elapsed)

        now = datetime.utcnow()
        rows = (
            db.query(Order)
            .filter(Order.id == order_id, Order.partner_id == partner.id, Order.status == CONFIRMED)
            .update(
                {Order.status: IN_PROGRESS, Order.start_time: now, Order.updated_at: now},
                synchronize_session=False,
            )
        )
        db.commit()
        db.refresh(order)
    except SQLAlchemyError as e:
        raise _backend_failure(db, f"starting order {order_id}", "Gagal memulai pekerjaan") from e

    if not rows:
        raise InvalidTransition("Pesanan belum diterima atau sudah selesai")

    timer = clock.start(order.id)
    logger.info("Partner %s started order %s", partner.id, order.order_number)
    return StartResult(order=order, elapsed=timer.elapsed)


def finish_order(db: Session, order_id: int, partner: Partner, clock: WorkClock) -> FinishResult:
    """Complete an in-progress job and debit the commission from the balance.

    The status change and the debit commit in one transaction, and the status
    change only applies to a job that is still in progress, so repeating the
    call never debits twice.
    """
    try:
        order = _load_own_order(db, order_id, partner)

        if order.status == COMPLETED:
            commission = order.commission_amount
            if commission is None:
                commission = commission_for(order.price_per_hour)
            clock.remove(order.id)
            return FinishResult(
                order=order,
                commission=float(commission),
                balance=float(partner.balance or 0.0),
                elapsed=int(order.actual_duration or 0),
                already_completed=True,
            )

        now = datetime.utcnow()
        timer = clock.get(order.id)
        if timer is not None:
            elapsed = timer.elapsed
        elif order.start_time:
            elapsed = int((now - order.start_time).total_seconds())
        else:
            elapsed = 0

        commission = commission_for(order.price_per_hour)
        rows = (
            db.query(Order)
            .filter(Order.id == order_id, Order.partner_id == partner.id, Order.status == IN_PROGRESS)
            .update(
                {
                    Order.status: COMPLETED,
                    Order.end_time: now,
                    Order.actual_duration: elapsed,
                    Order.commission_amount: commission,
                    Order.updated_at: now,
                },
                synchronize_session=False,
            )
        )
        if not rows:
            db.rollback()
            raise InvalidTransition("Pekerjaan belum dimulai")

        # balance has no floor: a debit may take it below zero
        db.query(Partner).filter(Partner.id == partner.id).update(
            {Partner.balance: Partner.balance - commission, Partner.updated_at: now},
            synchronize_session=False,
        )
        db.commit()
        db.refresh(order)
        db.refresh(partner)
    except SQLAlchemyError as e:
        raise _backend_failure(db, f"finishing order {order_id}", "Gagal menyelesaikan pekerjaan") from e

    clock.remove(order.id)
    logger.info(
        "Partner %s finished order %s after %s, debited %s (balance %s)",
        partner.id,
        order.order_number,
        format_elapsed(elapsed),
        commission,
        partner.balance,
    )
    return FinishResult(order=order, commission=commission, balance=float(partner.balance), elapsed=elapsed)
