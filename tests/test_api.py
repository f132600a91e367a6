from datetime import datetime

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from conftest import FixedClock
from database import Base, create_db_engine
from main import app, get_clock, get_db


@pytest.fixture
def client():
    engine = create_db_engine("sqlite://", poolclass=StaticPool)
    Base.metadata.create_all(engine)
    TestingSession = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    clock = FixedClock(datetime(2026, 3, 15, 12, 0))

    def override_db():
        db = TestingSession()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_clock] = lambda: clock
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
    engine.dispose()


def new_team(client, name, email):
    response = client.post(
        "/teams", json={"name": name, "founder": {"name": name, "email": email}}
    )
    assert response.status_code == 201
    body = response.json()
    return {
        "X-Team-Id": str(body["team"]["id"]),
        "X-User-Id": str(body["member"]["id"]),
        "X-User-Role": body["member"]["role"],
    }


def test_transaction_lifecycle(client) -> None:
    headers = new_team(client, "Casa", "ana@example.com")
    category = client.post("/categories", json={"name": "Comida"}, headers=headers)
    assert category.status_code == 201
    category_id = category.json()["id"]

    created = client.post(
        "/transactions",
        json={
            "description": "Mercado",
            "amount": "-120.5",
            "date": "2026-03-10",
            "category_id": category_id,
        },
        headers=headers,
    )
    assert created.status_code == 201
    txn = created.json()
    assert txn["amount"] == "120.50"
    assert txn["category"] == "Comida"

    listing = client.get("/transactions", params={"q": "merc"}, headers=headers)
    assert listing.json()["total"] == 1

    patched = client.patch(
        f"/transactions/{txn['id']}", json={"description": "Mercado Juárez"}, headers=headers
    )
    assert patched.json()["description"] == "Mercado Juárez"

    assert client.delete(f"/transactions/{txn['id']}", headers=headers).json() == {
        "deleted": True
    }
    assert client.get(f"/transactions/{txn['id']}", headers=headers).status_code == 404

    history = client.get(f"/transactions/{txn['id']}/history", headers=headers).json()
    assert [e["change_type"] for e in history] == ["deleted", "updated", "created"]


def test_error_mapping(client) -> None:
    headers = new_team(client, "Casa", "ana@example.com")
    other = new_team(client, "Otra", "bob@example.com")

    assert client.get("/transactions").status_code == 401

    missing_category = client.post(
        "/transactions",
        json={"description": "x", "amount": "10", "date": "2026-03-01", "category_id": 77},
        headers=headers,
    )
    assert missing_category.status_code == 422

    zero = client.post(
        "/transactions",
        json={"description": "x", "amount": "0", "date": "2026-03-01"},
        headers=headers,
    )
    assert zero.status_code == 422

    bad_bank = client.post(
        "/transactions",
        json={"description": "x", "amount": "10", "date": "2026-03-01", "bank": "Banco Azteca"},
        headers=headers,
    )
    assert bad_bank.status_code == 400

    category_id = client.post("/categories", json={"name": "Hogar"}, headers=headers).json()["id"]
    client.post(
        "/transactions",
        json={"description": "Focos", "amount": "80", "date": "2026-03-01", "category_id": category_id},
        headers=headers,
    )
    assert client.delete(f"/categories/{category_id}", headers=headers).status_code == 409
    assert client.delete(f"/categories/{category_id}", headers=other).status_code == 404

    member_headers = {**headers, "X-User-Role": "member"}
    assert client.post("/team/invite-code", headers=member_headers).status_code == 403


def test_budget_status_and_notifications(client) -> None:
    headers = new_team(client, "Casa", "ana@example.com")
    category_id = client.post("/categories", json={"name": "Comida"}, headers=headers).json()["id"]
    budget = client.post(
        "/budgets",
        json={
            "category_id": category_id,
            "amount": "500",
            "period": "monthly",
            "start_date": "2026-01-01",
        },
        headers=headers,
    )
    assert budget.status_code == 201
    client.post(
        "/transactions",
        json={"description": "Despensa", "amount": "450", "date": "2026-03-02", "category_id": category_id},
        headers=headers,
    )

    status = client.get("/budgets/status", headers=headers).json()
    [line] = status["budgets"]
    assert line["status"] == "warning"
    assert line["percentage"] == "90.00"
    assert status["summary"]["remaining"] == "50.00"

    assert client.get("/budgets/status", params={"month": 13}, headers=headers).status_code == 400

    inbox = client.get("/notifications", headers=headers).json()
    assert [n["title"] for n in inbox["items"]] == ["Budget warning: Comida"]
    assert inbox["unread"] == 1
    assert client.post("/notifications/read-all", headers=headers).json() == {"updated": 1}


def test_join_and_ingest(client) -> None:
    headers = new_team(client, "Casa", "ana@example.com")
    code = client.get("/team", headers=headers).json()["invite_code"]

    joined = client.post(
        "/teams/join",
        json={"invite_code": code, "member": {"name": "Caro", "email": "caro@example.com"}},
    )
    assert joined.status_code == 201
    assert joined.json()["role"] == "member"

    ingested = client.post(
        "/ingest",
        json={
            "filename": "marzo.csv",
            "rows": [
                {"description": "Tacos", "amount": "90", "date": "2026-03-03", "category": "Comida"},
                {"description": "Roto", "amount": "abc", "date": "2026-03-03"},
            ],
        },
        headers=headers,
    )
    body = ingested.json()
    assert len(body["created"]) == 1
    assert body["created"][0]["category"] == "Comida"
    assert body["errors"][0].startswith("Row 2:")
