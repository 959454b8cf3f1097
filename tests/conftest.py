from __future__ import annotations

import itertools
import os
from datetime import datetime, timedelta

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["INVOICE_SEND_DELAY"] = "0"

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from mitra.auth import create_token, hash_password
from mitra.db import Base, get_db
from mitra.main import app
from mitra.models import Order, Partner
from mitra.ordering.clock import work_clock

PASSWORD = "rahasia123"

# argon2 is slow on purpose; hash once for every factory-made partner
_PASSWORD_HASH = hash_password(PASSWORD)


@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def db(session_factory):
    s = session_factory()
    try:
        yield s
    finally:
        s.close()


@pytest.fixture
def client(session_factory):
    def _get_db():
        s = session_factory()
        try:
            yield s
        finally:
            s.close()

    app.dependency_overrides[get_db] = _get_db
    work_clock.clear()
    yield TestClient(app)
    app.dependency_overrides.clear()
    work_clock.clear()


@pytest.fixture
def make_partner(db):
    counter = itertools.count(1)

    def _make(balance: float = 0.0, verified: bool = True, email: str | None = None) -> Partner:
        n = next(counter)
        p = Partner(
            owner_name=f"Budi {n}",
            business_name=f"Bersih Jaya {n}",
            business_type="Cleaning",
            phone_number=f"08129966{n:04d}",
            email=email or f"mitra{n}@example.com",
            address="Jl. Merdeka No. 1",
            city="Jakarta",
            province="DKI Jakarta",
            password_hash=_PASSWORD_HASH,
            balance=balance,
            commission_rate=15.0,
            status="active" if verified else "pending",
            verification_status="verified" if verified else "pending",
        )
        db.add(p)
        db.commit()
        db.refresh(p)
        return p

    return _make


@pytest.fixture
def make_order(db):
    counter = itertools.count(1)

    def _make(
        price: float = 100000.0,
        status: str = "pending",
        partner: Partner | None = None,
        created_at: datetime | None = None,
        **extra,
    ) -> Order:
        n = next(counter)
        o = Order(
            order_number=f"SC-2026-{n:05d}",
            service_name="SmartClean",
            price_per_hour=price,
            status=status,
            partner_id=partner.id if partner else None,
            customer_name="Siti",
            address="Jl. Sudirman No. 5",
            created_at=created_at or datetime.utcnow() + timedelta(seconds=n),
            **extra,
        )
        db.add(o)
        db.commit()
        db.refresh(o)
        return o

    return _make


@pytest.fixture
def auth_headers():
    def _headers(partner: Partner) -> dict:
        return {"Authorization": f"Bearer {create_token(partner.id)}"}

    return _headers
