from datetime import date

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool

from database import Base, build_engine, make_sessionmaker
from fx_rates import StaticRateSource
from main import app, get_db, get_rate_source


@pytest.fixture()
def client():
    engine = build_engine("sqlite+pysqlite:///:memory:", poolclass=StaticPool)
    Base.metadata.create_all(engine)
    SessionLocal = make_sessionmaker(engine)

    def override_get_db():
        db = SessionLocal()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_rate_source] = lambda: StaticRateSource({})
    # Not used as a context manager so the billing scheduler stays off.
    yield TestClient(app)
    app.dependency_overrides.clear()


def create_account(client, headers=None, **fields):
    payload = {"name": "Checking", "type": "checking", "currency": "INR"}
    payload.update(fields)
    response = client.post("/accounts", json=payload, headers=headers or {})
    assert response.status_code == 201, response.text
    return response.json()


def account_balance(client, account_id: int, headers=None) -> int:
    accounts = client.get("/accounts", headers=headers or {}).json()
    return next(a["current_balance"] for a in accounts if a["id"] == account_id)


def test_health(client) -> None:
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_transaction_lifecycle_keeps_balance_in_step(client) -> None:
    account = create_account(client, initial_balance=100_000)
    assert account["current_balance"] == 100_000

    response = client.post(
        "/transactions",
        json={
            "type": "withdrawal",
            "account_id": account["id"],
            "amount": 2_500,
            "date": "2025-01-10",
        },
    )
    assert response.status_code == 201
    txn = response.json()
    assert account_balance(client, account["id"]) == 97_500

    response = client.patch(f"/transactions/{txn['id']}", json={"amount": 4_000})
    assert response.status_code == 200
    assert response.json()["amount"] == 4_000
    assert account_balance(client, account["id"]) == 96_000

    assert client.delete(f"/transactions/{txn['id']}").status_code == 204
    assert client.get(f"/transactions/{txn['id']}").status_code == 404
    assert account_balance(client, account["id"]) == 100_000

    response = client.post(f"/transactions/{txn['id']}/restore")
    assert response.status_code == 200
    assert account_balance(client, account["id"]) == 96_000

    listing = client.get("/transactions", params={"account_id": account["id"]}).json()
    assert [item["id"] for item in listing["items"]] == [txn["id"]]
    assert listing["has_more"] is False


def test_errors_carry_codes_and_statuses(client) -> None:
    account = create_account(client)

    missing = client.post(
        "/transactions",
        json={"type": "deposit", "account_id": 999, "amount": 100, "date": "2025-01-10"},
    )
    assert missing.status_code == 409
    assert missing.json()["detail"]["code"] == "REFERENTIAL_INTEGRITY"

    duplicate = client.post(
        "/accounts", json={"name": "checking", "type": "savings", "currency": "INR"}
    )
    assert duplicate.status_code == 400
    assert duplicate.json()["detail"]["code"] == "VALIDATION_ERROR"

    negative = client.post(
        "/transactions",
        json={
            "type": "deposit",
            "account_id": account["id"],
            "amount": -5,
            "date": "2025-01-10",
        },
    )
    assert negative.status_code == 422

    assert client.get("/transactions/12345").status_code == 404
    bad_period = client.get("/transactions", params={"period": "custom"})
    assert bad_period.status_code == 400
    assert bad_period.json()["detail"]["code"] == "VALIDATION_ERROR"

    huge_window = client.get("/summary", params={"window_days": 1_000_000})
    assert huge_window.status_code == 400
    assert huge_window.json()["detail"]["code"] == "VALIDATION_ERROR"


def test_owner_header_scopes_every_lookup(client) -> None:
    theirs = create_account(client, headers={"X-User-Id": "2"}, name="Theirs")

    assert client.get("/accounts").json() == []
    assert [a["id"] for a in client.get("/accounts", headers={"X-User-Id": "2"}).json()] == [
        theirs["id"]
    ]

    response = client.post(
        "/transactions",
        json={
            "type": "deposit",
            "account_id": theirs["id"],
            "amount": 100,
            "date": "2025-01-10",
        },
    )
    assert response.status_code == 409


def test_summary_reports_missing_rates(client) -> None:
    create_account(client, initial_balance=10_000)
    create_account(client, name="Euro", currency="EUR", initial_balance=500)

    response = client.get("/summary", params={"currency": "INR"})

    assert response.status_code == 200
    body = response.json()
    assert body["total_balance"] == 10_500
    assert body["conversion_status"]["failed_currencies"] == ["EUR"]
    assert body["conversion_status"]["success"] is False


def test_bill_generation_and_payment(client, monkeypatch) -> None:
    monkeypatch.setattr("services.local_today", lambda: date(2025, 2, 10))
    card = create_account(
        client,
        name="Card",
        type="credit_card",
        credit_limit=100_000,
        bill_generation_day=5,
        payment_due_day=25,
    )
    client.post(
        "/transactions",
        json={
            "type": "withdrawal",
            "account_id": card["id"],
            "amount": 12_000,
            "date": "2025-01-15",
        },
    )

    url = f"/credit-cards/{card['id']}/bills/generate"
    first = client.post(url).json()
    # The cycle always follows the server's date, never the caller's.
    second = client.post(url, params={"today": "2099-06-06"}).json()

    assert first["created"] is True
    assert second["created"] is False
    bill = first["bill"]
    assert second["bill"]["id"] == bill["id"]
    assert bill["amount_due"] == 12_000
    assert bill["due_date"] == "2025-02-25"
    assert bill["cycle_end"] == "2025-02-05"
    assert bill["minimum_payment"] == 2_500

    response = client.post(
        f"/credit-card-bills/{bill['id']}/payment",
        json={"amount": 12_000, "paid_on": "2025-02-20"},
    )
    assert response.status_code == 200
    assert response.json()["status"] == "paid"


def test_bills_summary_fails_loudly_without_a_rate(client, monkeypatch) -> None:
    monkeypatch.setattr("services.local_today", lambda: date(2025, 2, 10))
    card = create_account(
        client,
        name="Travel card",
        type="credit_card",
        currency="USD",
        credit_limit=100_000,
        bill_generation_day=5,
        payment_due_day=25,
    )
    client.post(
        "/transactions",
        json={
            "type": "withdrawal",
            "account_id": card["id"],
            "amount": 100,
            "date": "2025-01-15",
        },
    )
    client.post(f"/credit-cards/{card['id']}/bills/generate")

    response = client.get("/credit-card-bills/summary", params={"currency": "INR"})

    assert response.status_code == 502
    assert response.json()["detail"]["code"] == "CONVERSION_FAILURE"
