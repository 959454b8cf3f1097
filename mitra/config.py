from __future__ import annotations

import os

from dotenv import load_dotenv
from pydantic import BaseModel

# Load .env locally (safe in prod too)
load_dotenv()


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


# -------------------
# Config (env-driven)
# -------------------
class Settings(BaseModel):
    database_url: str = os.getenv("DATABASE_URL", "sqlite:///./mitra.db")

    # flat percentage debited from the partner balance per completed job
    commission_rate: float = _env_float("COMMISSION_RATE", 15.0)

    min_topup: float = _env_float("MIN_TOPUP", 50000.0)
    min_password_length: int = _env_int("MIN_PASSWORD_LENGTH", 6)

    incoming_orders_limit: int = _env_int("INCOMING_ORDERS_LIMIT", 100)
    chat_history_limit: int = _env_int("CHAT_HISTORY_LIMIT", 50)

    invoice_send_delay: float = _env_float("INVOICE_SEND_DELAY", 1.0)

    admin_hotline: str = os.getenv("ADMIN_HOTLINE", "081299660660")
    log_level: str = os.getenv("LOG_LEVEL", "INFO").strip().upper()


settings = Settings()
