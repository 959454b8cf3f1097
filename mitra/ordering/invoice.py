from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from ..config import settings
from ..models import Order, Partner
from .commission import commission_for, format_rupiah, order_total, rate_label

logger = logging.getLogger(__name__)

_DAYS = ["Senin", "Selasa", "Rabu", "Kamis", "Jumat", "Sabtu", "Minggu"]
_MONTHS = [
    "Januari", "Februari", "Maret", "April", "Mei", "Juni",
    "Juli", "Agustus", "September", "Oktober", "November", "Desember",
]

_RULE = "━" * 40

INVOICE_MEDIA_TYPE = "text/plain; charset=utf-8"


def format_date_id(dt: datetime) -> str:
    """Long Indonesian date, e.g. ``Sabtu, 18 Oktober 2026 14.05``."""
    return f"{_DAYS[dt.weekday()]}, {dt.day} {_MONTHS[dt.month - 1]} {dt.year} {dt.hour:02d}.{dt.minute:02d}"


def invoice_filename(order: Order) -> str:
    return f"Invoice_{order.order_number}.txt"


def invoice_amounts(order: Order) -> Dict[str, float]:
    # the dashboard recomputes commission instead of trusting the stored field
    price = float(order.price_per_hour or 0.0)
    return {"price": price, "commission": commission_for(price), "total": order_total(price, order.total_amount)}


def render_invoice(order: Order, partner: Partner, generated_at: Optional[datetime] = None) -> str:
    """Plain-text receipt for a completed job.

    ``generated_at`` is the wall-clock render time, not the job's end time.
    """
    generated_at = generated_at or datetime.now()
    amounts = invoice_amounts(order)

    lines = [
        "╔══════════════════════════════════════╗",
        "║           INVOICE SMARTCARE          ║",
        "║        Indonesia Healthcare          ║",
        "╚══════════════════════════════════════╝",
        "",
        "📋 DETAIL PEKERJAAN",
        _RULE,
        f"No. Pesanan     : {order.order_number}",
        f"Layanan         : {order.service_name}",
        f"Mitra           : {partner.business_name}",
        f"PIC             : {partner.owner_name}",
        "Status          : Selesai ✅",
        "",
        "💰 RINCIAN BIAYA",
        _RULE,
        f"Tarif Layanan   : {format_rupiah(amounts['price'])}",
        f"Komisi Mitra    : {format_rupiah(amounts['commission'])} ({rate_label()})",
        f"Total Dibayar   : {format_rupiah(amounts['total'])}",
        "",
        "📅 INFORMASI WAKTU",
        _RULE,
        f"Tanggal Selesai : {format_date_id(generated_at)}",
        "Durasi Kerja    : Sesuai kebutuhan",
        "",
        "🏥 SMARTCARE INDONESIA",
        _RULE,
        "Layanan Kesehatan Terpercaya",
        "Website: smartcare.id",
        f"Hotline: {settings.admin_hotline}",
        "",
        "Terima kasih telah bergabung dengan",
        "SmartCare Indonesia! 🙏",
        "",
        "═" * 40,
    ]
    return "\n".join(lines) + "\n"


async def send_invoice_to_chat(order: Order) -> Dict[str, Any]:
    # Simulated: nothing is inserted into the chat.
    await asyncio.sleep(settings.invoice_send_delay)
    logger.info("Invoice %s marked as sent to chat (simulated)", order.order_number)
    return {
        "ok": True,
        "title": "Invoice Terkirim!",
        "message": "Invoice telah dikirim ke live chat admin & pelanggan",
    }
