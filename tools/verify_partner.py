from __future__ import annotations

import sys
from datetime import datetime

from mitra.db import Base, SessionLocal, engine
from mitra.models import Partner


def verify(email: str) -> Partner | None:
    db = SessionLocal()
    try:
        p = db.query(Partner).filter(Partner.email == email.strip()).first()
        if not p:
            return None
        p.verification_status = "verified"
        p.status = "active"
        p.updated_at = datetime.utcnow()
        db.commit()
        db.refresh(p)
        return p
    finally:
        db.close()


def main() -> None:
    if len(sys.argv) != 2:
        raise SystemExit("usage: python tools/verify_partner.py EMAIL")

    Base.metadata.create_all(bind=engine)

    email = sys.argv[1]
    p = verify(email)
    if not p:
        raise SystemExit(f"No partner registered with {email}")

    print(f"OK  {p.email}  ->  verified  (partner #{p.id}, {p.business_name})")


if __name__ == "__main__":
    main()
