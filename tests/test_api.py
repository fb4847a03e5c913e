import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

import main
from ai_client import AIClient, AIServiceError
from database import Base, make_engine
from schemas import ParsedTransaction
from services import seed_default_categories
from sessions import SESSION_COOKIE_NAME, issue_session_token


@pytest.fixture()
def client():
    engine = make_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    with factory() as session:
        seed_default_categories(session)

    def override_get_db():
        db = factory()
        try:
            yield db
        finally:
            db.close()

    main.app.dependency_overrides[main.get_db] = override_get_db
    try:
        yield TestClient(main.app)
    finally:
        main.app.dependency_overrides.clear()
        engine.dispose()


def _auth(user_id: str = "user-1") -> dict:
    return {"Authorization": f"Bearer {issue_session_token(user_id)}"}


def _create(client, **fields) -> dict:
    body = {"description": "Cafe", "amount": 25000, "category": "Food & Dining"}
    body.update(fields)
    resp = client.post("/api/transactions", json=body, headers=_auth())
    assert resp.status_code == 201, resp.text
    return resp.json()["transaction"]


def test_requests_without_session_are_rejected(client) -> None:
    resp = client.get("/api/analytics")

    assert resp.status_code == 401
    assert resp.json() == {"detail": "Unauthorized - Please login"}
    assert client.get("/api/transactions", headers={"Authorization": "Bearer nope"}).status_code == 401


def test_session_cookie_is_accepted(client) -> None:
    client.cookies.set(SESSION_COOKIE_NAME, issue_session_token("cookie-user"))

    resp = client.get("/api/auth/me")

    assert resp.status_code == 200
    assert resp.json() == {"user": {"id": "cookie-user"}}


def test_analytics_payload_shape(client) -> None:
    _create(client, description="Bún bò", amount=45000, occurredAt="2024-01-01T08:00:00")
    _create(
        client,
        description="Salary",
        amount=1000000,
        type="income",
        category="Salary",
        occurredAt="2024-01-05T09:00:00",
    )

    resp = client.get(
        "/api/analytics",
        params={"startDate": "2024-01-01", "endDate": "2024-01-31"},
        headers=_auth(),
    )

    assert resp.status_code == 200
    data = resp.json()
    assert set(data) == {
        "stats",
        "categoryBreakdown",
        "trendData",
        "recentTransactions",
        "dateRange",
    }
    assert data["stats"]["totalIncome"] == 1000000
    assert data["stats"]["totalExpense"] == 45000
    assert data["stats"]["balance"] == 955000
    assert data["stats"]["monthBalance"] == 955000
    assert data["stats"]["transactionCount"] == 2
    assert data["categoryBreakdown"] == [
        {"category": "Food & Dining", "amount": 45000, "percentage": 100.0}
    ]
    assert [p["month"] for p in data["trendData"]][:2] == ["01/01", "08/01"]
    assert data["recentTransactions"][0]["description"] == "Salary"
    assert data["dateRange"]["from"].startswith("2024-01-01T00:00:00")
    assert data["dateRange"]["to"].startswith("2024-01-31T23:59:59")


def test_analytics_rejects_bad_dates(client) -> None:
    resp = client.get("/api/analytics", params={"startDate": "soon"}, headers=_auth())

    assert resp.status_code == 400


@pytest.mark.parametrize(
    "params", [{"limit": "0"}, {"limit": "101"}, {"page": "0"}, {"page": "x"}]
)
def test_transaction_list_validates_pagination(client, params) -> None:
    resp = client.get("/api/transactions", params=params, headers=_auth())

    assert resp.status_code == 400
    assert resp.json() == {"detail": "Invalid pagination parameters"}


def test_transaction_list_pages_and_filters(client) -> None:
    for day in range(1, 4):
        _create(client, description=f"Lunch {day}", occurredAt=f"2024-03-0{day}T12:00:00")
    _create(client, description="Bus", category="Transportation", occurredAt="2024-03-02T08:00:00")

    resp = client.get(
        "/api/transactions",
        params={"page": "1", "limit": "2", "category": "Food & Dining"},
        headers=_auth(),
    )
    data = resp.json()

    assert resp.status_code == 200
    assert data["total"] == 3
    assert data["totalPages"] == 2
    assert data["hasMore"] is True
    assert [t["description"] for t in data["transactions"]] == ["Lunch 3", "Lunch 2"]

    everything = client.get(
        "/api/transactions", params={"category": "all"}, headers=_auth()
    ).json()
    assert everything["total"] == 4

    categories = client.get("/api/transactions/categories", headers=_auth()).json()
    assert categories == {"categories": ["Food & Dining", "Transportation"]}


def test_create_rejects_zero_amount(client) -> None:
    resp = client.post(
        "/api/transactions",
        json={"description": "Free", "amount": 0, "category": "Other"},
        headers=_auth(),
    )

    assert resp.status_code == 400


def test_update_and_delete_are_scoped_to_owner(client) -> None:
    txn = _create(client)

    foreign = client.patch(
        f"/api/transactions/{txn['id']}", json={"amount": 1}, headers=_auth("intruder")
    )
    assert foreign.status_code == 404
    assert foreign.json() == {"detail": "Transaction not found"}

    updated = client.patch(
        f"/api/transactions/{txn['id']}",
        json={"amount": 27000, "category": "Shopping"},
        headers=_auth(),
    )
    assert updated.status_code == 200
    assert updated.json()["transaction"]["amount"] == 27000
    assert updated.json()["transaction"]["categorizationSource"] == "manual"

    assert client.delete(f"/api/transactions/{txn['id']}", headers=_auth("intruder")).status_code == 404
    assert client.delete(f"/api/transactions/{txn['id']}", headers=_auth()).status_code == 200
    assert client.delete(f"/api/transactions/{txn['id']}", headers=_auth()).status_code == 404


def test_categories_list_and_create(client) -> None:
    listed = client.get("/api/categories/all", headers=_auth()).json()["categories"]
    assert "Food & Dining" in [c["name"] for c in listed]
    assert all(c["isDefault"] for c in listed)

    created = client.post(
        "/api/categories", json={"name": "Pets", "type": "expense"}, headers=_auth()
    )
    assert created.status_code == 201
    assert created.json()["category"]["isDefault"] is False

    duplicate = client.post(
        "/api/categories", json={"name": "pets", "type": "expense"}, headers=_auth()
    )
    assert duplicate.status_code == 400


def test_chat_saves_parsed_transactions(client, monkeypatch) -> None:
    def fake_parse(self, text, category_names):
        return [
            ParsedTransaction(description="Cafe", amount=25000, category="Food & Dining", confidence=0.9),
            ParsedTransaction(description="Grab", amount=30000, category="Transportation", confidence=0.9),
        ]

    monkeypatch.setattr(AIClient, "parse", fake_parse)

    resp = client.post("/api/chat", json={"message": "cafe 25k - grab 30k"}, headers=_auth())

    assert resp.status_code == 200
    data = resp.json()
    assert data["success"] is True
    assert data["count"] == 2
    assert data["failures"] == []
    assert sum(t["amount"] for t in data["transactions"]) == 55000

    listed = client.get("/api/transactions", params={"category": "all"}, headers=_auth()).json()
    assert listed["total"] == 2


def test_chat_parse_failure_is_bad_gateway(client, monkeypatch) -> None:
    def fake_parse(self, text, category_names):
        raise AIServiceError("AI response is not valid JSON")

    monkeypatch.setattr(AIClient, "parse", fake_parse)

    resp = client.post("/api/chat", json={"message": "cafe 25k"}, headers=_auth())

    assert resp.status_code == 502
    assert resp.json() == {"detail": "AI response is not valid JSON"}
    assert client.get("/api/transactions", headers=_auth()).json()["total"] == 0


def test_chat_invalid_amount_is_bad_request(client, monkeypatch) -> None:
    def fake_parse(self, text, category_names):
        return [ParsedTransaction(description="???", amount=0, category="Other", confidence=0.2)]

    monkeypatch.setattr(AIClient, "parse", fake_parse)

    resp = client.post("/api/chat", json={"message": "something"}, headers=_auth())

    assert resp.status_code == 400
    assert "valid amount" in resp.json()["detail"]


def test_chat_requires_message(client) -> None:
    assert client.post("/api/chat", json={}, headers=_auth()).status_code == 400
    assert client.post("/api/chat", json={"message": "  "}, headers=_auth()).status_code == 400


def test_blank_text_fields_are_bad_requests(client) -> None:
    created = client.post(
        "/api/transactions",
        json={"description": "   ", "amount": 10000, "category": "Other"},
        headers=_auth(),
    )
    assert created.status_code == 400

    txn = _create(client)
    for body in ({"description": "  "}, {"category": "\t"}):
        resp = client.patch(f"/api/transactions/{txn['id']}", json=body, headers=_auth())
        assert resp.status_code == 400

    stored = client.get("/api/transactions", headers=_auth()).json()["transactions"][0]
    assert (stored["description"], stored["category"]) == ("Cafe", "Food & Dining")
