from datetime import datetime, timedelta

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from mitra.models import Order, Partner
from mitra.ordering.clock import work_clock


def _tick(seconds):
    for _ in range(seconds):
        work_clock.tick()


def test_accept_refused_when_balance_below_commission(client, db, make_partner, make_order, auth_headers):
    partner = make_partner(balance=10000)
    order = make_order(price=100000)

    r = client.post(f"/orders/{order.id}/accept", headers=auth_headers(partner))
    assert r.status_code == 400
    body = r.json()
    assert body["title"] == "Saldo Tidak Mencukupi"
    assert body["required"] == 15000
    assert body["shortfall"] == 5000
    assert "Rp 5.000" in body["detail"]

    db.expire_all()
    order = db.get(Order, order.id)
    assert order.status == "pending"
    assert order.partner_id is None
    assert db.get(Partner, partner.id).balance == 10000


def test_incoming_feed_is_newest_first_with_accept_flags(client, make_partner, make_order, auth_headers):
    partner = make_partner(balance=20000)
    cheap = make_order(price=100000, created_at=datetime(2026, 10, 1))
    pricey = make_order(price=200000, created_at=datetime(2026, 10, 2))
    make_order(status="confirmed", partner=make_partner(balance=0))

    r = client.get("/orders/incoming", headers=auth_headers(partner))
    assert r.status_code == 200
    orders = r.json()["orders"]
    assert [o["id"] for o in orders] == [pricey.id, cheap.id]
    assert orders[0]["can_accept"] is False
    assert orders[0]["shortfall"] == 10000
    assert orders[1]["can_accept"] is True
    assert orders[1]["commission"] == 15000


def test_full_job_lifecycle(client, db, make_partner, make_order, auth_headers):
    partner = make_partner(balance=20000)
    order = make_order(price=100000)
    headers = auth_headers(partner)

    r = client.post(f"/orders/{order.id}/accept", headers=headers)
    assert r.status_code == 200
    body = r.json()
    assert body["claimed"] is True
    assert body["order"]["status"] == "confirmed"
    assert order.id not in [o["id"] for o in body["incoming"]]
    assert [j["id"] for j in body["jobs"]] == [order.id]
    # nothing is debited at accept time
    assert client.get("/me", headers=headers).json()["balance"] == 20000

    r = client.post(f"/orders/{order.id}/start", headers=headers)
    assert r.status_code == 200
    assert r.json()["timer"]["display"] == "00:00:00"
    assert r.json()["order"]["status"] == "in_progress"

    _tick(65)
    r = client.get(f"/orders/{order.id}/timer", headers=headers)
    assert r.json()["display"] == "00:01:05"

    r = client.post(f"/orders/{order.id}/finish", headers=headers)
    assert r.status_code == 200
    body = r.json()
    assert body["commission"] == 15000
    assert body["balance"] == 5000
    assert body["elapsed_display"] == "00:01:05"
    assert body["already_completed"] is False
    assert "Rp 15.000" in body["message"]
    assert body["order"]["status"] == "completed"

    assert order.id not in work_clock
    assert client.get(f"/orders/{order.id}/timer", headers=headers).status_code == 404

    jobs = client.get("/orders/mine", headers=headers).json()["jobs"]
    assert jobs[0]["status"] == "completed"
    assert jobs[0]["timer"] is None
    assert jobs[0]["actual_duration"] == 65

    incoming = client.get("/orders/incoming", headers=headers).json()["orders"]
    assert order.id not in [o["id"] for o in incoming]

    db.expire_all()
    assert db.get(Partner, partner.id).balance == 5000
    assert db.get(Order, order.id).commission_amount == 15000


def test_finish_is_idempotent(client, db, make_partner, make_order, auth_headers):
    partner = make_partner(balance=20000)
    order = make_order(price=100000, status="in_progress", partner=partner, start_time=datetime.utcnow())
    headers = auth_headers(partner)

    first = client.post(f"/orders/{order.id}/finish", headers=headers)
    second = client.post(f"/orders/{order.id}/finish", headers=headers)

    assert first.json()["balance"] == 5000
    assert second.status_code == 200
    assert second.json()["already_completed"] is True
    assert second.json()["commission"] == 15000

    db.expire_all()
    assert db.get(Partner, partner.id).balance == 5000


def test_balance_may_go_negative_on_finish(client, db, make_partner, make_order, auth_headers):
    partner = make_partner(balance=1000)
    order = make_order(price=100000, status="in_progress", partner=partner)

    r = client.post(f"/orders/{order.id}/finish", headers=auth_headers(partner))
    assert r.json()["balance"] == -14000


def test_losing_an_accept_race_is_a_refresh_not_an_error(client, db, make_partner, make_order, auth_headers):
    winner = make_partner(balance=20000)
    loser = make_partner(balance=20000)
    order = make_order(price=100000)

    assert client.post(f"/orders/{order.id}/accept", headers=auth_headers(winner)).json()["claimed"] is True

    r = client.post(f"/orders/{order.id}/accept", headers=auth_headers(loser))
    assert r.status_code == 200
    body = r.json()
    assert body["claimed"] is False
    assert body["message"] == "Pesanan sudah diambil mitra lain"
    assert body["jobs"] == []
    assert order.id not in [o["id"] for o in body["incoming"]]

    db.expire_all()
    assert db.get(Order, order.id).partner_id == winner.id


def test_start_requires_confirmed_own_order(client, make_partner, make_order, auth_headers):
    partner = make_partner(balance=20000)
    other = make_partner(balance=20000)
    pending = make_order()
    theirs = make_order(status="confirmed", partner=other)
    done = make_order(status="completed", partner=partner)
    headers = auth_headers(partner)

    assert client.post(f"/orders/{pending.id}/start", headers=headers).status_code == 404
    assert client.post(f"/orders/{theirs.id}/start", headers=headers).status_code == 404
    assert client.post(f"/orders/{done.id}/start", headers=headers).status_code == 409
    assert client.post("/orders/9999/start", headers=headers).status_code == 404
    assert len(work_clock) == 0


def test_finish_before_start_is_refused(client, db, make_partner, make_order, auth_headers):
    partner = make_partner(balance=20000)
    order = make_order(status="confirmed", partner=partner)

    r = client.post(f"/orders/{order.id}/finish", headers=auth_headers(partner))
    assert r.status_code == 409

    db.expire_all()
    assert db.get(Order, order.id).status == "confirmed"
    assert db.get(Partner, partner.id).balance == 20000


def test_other_partner_cannot_finish(client, make_partner, make_order, auth_headers):
    owner = make_partner(balance=20000)
    intruder = make_partner(balance=20000)
    order = make_order(status="in_progress", partner=owner)

    r = client.post(f"/orders/{order.id}/finish", headers=auth_headers(intruder))
    assert r.status_code == 404


def test_listing_resumes_timer_after_restart(client, make_partner, make_order, auth_headers):
    partner = make_partner(balance=20000)
    started = datetime.utcnow() - timedelta(seconds=30)
    order = make_order(status="in_progress", partner=partner, start_time=started)

    jobs = client.get("/orders/mine", headers=auth_headers(partner)).json()["jobs"]
    assert jobs[0]["timer"]["elapsed"] >= 30
    assert order.id in work_clock


def test_invoice_download(client, make_partner, make_order, auth_headers):
    partner = make_partner(balance=0)
    order = make_order(status="completed", partner=partner)

    r = client.get(f"/orders/{order.id}/invoice", headers=auth_headers(partner))
    assert r.status_code == 200
    assert r.headers["content-type"].startswith("text/plain")
    assert f'filename="Invoice_{order.order_number}.txt"' in r.headers["content-disposition"]
    assert order.order_number in r.text
    assert partner.business_name in r.text


def test_invoice_only_for_completed_orders(client, make_partner, make_order, auth_headers):
    partner = make_partner(balance=20000)
    order = make_order(status="in_progress", partner=partner)

    assert client.get(f"/orders/{order.id}/invoice", headers=auth_headers(partner)).status_code == 409
    assert client.post(f"/orders/{order.id}/invoice/send", headers=auth_headers(partner)).status_code == 409


def test_invoice_send_is_simulated(client, db, make_partner, make_order, auth_headers):
    partner = make_partner(balance=0)
    order = make_order(status="completed", partner=partner)

    r = client.post(f"/orders/{order.id}/invoice/send", headers=auth_headers(partner))
    assert r.status_code == 200
    assert r.json()["ok"] is True
    assert client.get("/chat/messages", headers=auth_headers(partner)).json()["messages"] == []


def test_earnings_summary(client, make_partner, make_order, auth_headers):
    partner = make_partner(balance=50000)
    headers = auth_headers(partner)
    for price in (100000, 200000):
        order = make_order(price=price, status="in_progress", partner=partner)
        client.post(f"/orders/{order.id}/finish", headers=headers)

    make_order(status="completed", partner=partner, end_time=datetime(2020, 1, 1), commission_amount=9000)

    today = client.get("/earnings", params={"period": "today"}, headers=headers).json()
    assert today["completed_jobs"] == 2
    assert today["total_commission"] == 45000
    assert today["total_paid"] == 300000
    assert today["balance"] == 5000

    everything = client.get("/earnings", params={"period": "all"}, headers=headers).json()
    assert everything["completed_jobs"] == 3
    assert everything["total_commission"] == 54000

    assert client.get("/earnings", params={"period": "year"}, headers=headers).status_code == 400


def test_orders_require_login(client):
    assert client.get("/orders/incoming").status_code == 401
    assert client.get("/orders/mine", headers={"Authorization": "Bearer nope"}).status_code == 401


def test_accept_refused_half_a_rupiah_short(client, db, make_partner, make_order, auth_headers):
    # commission on 100030 is exactly 15004.5
    partner = make_partner(balance=15004)
    order = make_order(price=100030)

    r = client.post(f"/orders/{order.id}/accept", headers=auth_headers(partner))
    assert r.status_code == 400
    assert r.json()["required"] == 15004.5
    assert r.json()["shortfall"] == 0.5

    db.expire_all()
    assert db.get(Order, order.id).status == "pending"


def test_earnings_total_uses_amount_paid(client, make_partner, make_order, auth_headers):
    partner = make_partner(balance=0)
    headers = auth_headers(partner)
    make_order(price=100000, status="completed", partner=partner, end_time=datetime.utcnow(), total_amount=250000)
    make_order(price=80000, status="completed", partner=partner, end_time=datetime.utcnow())

    summary = client.get("/earnings", params={"period": "all"}, headers=headers).json()
    assert summary["total_paid"] == 330000
    assert summary["total_commission"] == 27000


def test_failed_debit_leaves_job_running(client, db, make_partner, make_order, auth_headers, monkeypatch):
    partner = make_partner(balance=20000)
    order = make_order(price=100000, status="in_progress", partner=partner, start_time=datetime.utcnow())
    work_clock.start(order.id)

    real_query = Session.query

    def failing_query(self, *entities, **kwargs):
        if entities and entities[0] is Partner:
            raise OperationalError("UPDATE partners", {}, Exception("database is locked"))
        return real_query(self, *entities, **kwargs)

    with monkeypatch.context() as m:
        m.setattr(Session, "query", failing_query)
        r = client.post(f"/orders/{order.id}/finish", headers=auth_headers(partner))

    assert r.status_code == 500
    assert r.json()["detail"] == "Gagal menyelesaikan pekerjaan"

    db.expire_all()
    assert db.get(Order, order.id).status == "in_progress"
    assert db.get(Order, order.id).commission_amount is None
    assert db.get(Partner, partner.id).balance == 20000
    assert order.id in work_clock


def test_failed_claim_is_reported(client, db, make_partner, make_order, auth_headers, monkeypatch):
    partner = make_partner(balance=20000)
    order = make_order(price=100000)

    def failing_commit(self):
        raise OperationalError("UPDATE orders", {}, Exception("database is locked"))

    with monkeypatch.context() as m:
        m.setattr(Session, "commit", failing_commit)
        r = client.post(f"/orders/{order.id}/accept", headers=auth_headers(partner))

    assert r.status_code == 500
    assert r.json()["detail"] == "Gagal menerima pesanan"

    db.expire_all()
    assert db.get(Order, order.id).status == "pending"
    assert db.get(Order, order.id).partner_id is None
