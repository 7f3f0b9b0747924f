from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from database import Base, build_session_factory
from identity import ExternalPrincipal, issue_principal_token
from main import create_app


def _client() -> TestClient:
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return TestClient(create_app(build_session_factory(engine)))


def _headers(client: TestClient, name: str) -> dict[str, str]:
    token = issue_principal_token(
        ExternalPrincipal(external_id=f"ext-{name}", email=f"{name}@example.com")
    )
    headers = {"Authorization": f"Bearer {token}"}
    resp = client.post("/api/session", headers=headers)
    assert resp.status_code == 200
    assert resp.json()["user"]["name"] == name
    return headers


def test_requests_without_token_are_401() -> None:
    client = _client()

    assert client.get("/api/health").json() == {"status": "ok"}
    resp = client.get("/api/groups")
    assert resp.status_code == 401
    assert resp.json()["code"] == "not_authenticated"

    resp = client.get("/api/groups", headers={"Authorization": "Bearer forged"})
    assert resp.status_code == 401


def test_couple_shares_expenses_through_invite() -> None:
    client = _client()
    alice = _headers(client, "alice")
    bob = _headers(client, "bob")

    resp = client.post("/api/groups", json={"name": "Home"}, headers=alice)
    group_id = resp.json()["group_id"]
    resp = client.post(f"/api/groups/{group_id}/invites", headers=alice)
    code = resp.json()["invite_code"]
    resp = client.post("/api/invites/accept", json={"code": code}, headers=bob)
    assert resp.status_code == 200
    assert resp.json()["group_name"] == "Home"

    resp = client.post("/api/invites/accept", json={"code": code}, headers=bob)
    assert resp.status_code == 409

    category_id = client.post(
        "/api/categories",
        json={"name": "Groceries", "group_id": group_id},
        headers=alice,
    ).json()["category_id"]
    resp = client.post(
        "/api/expenses",
        json={
            "amount": "42.50",
            "date": "2024-03-01",
            "category_id": category_id,
            "group_id": group_id,
        },
        headers=bob,
    )
    assert resp.status_code == 200

    expenses = client.get(
        "/api/expenses", params={"group_id": group_id}, headers=alice
    ).json()["expenses"]
    assert [e["amount"] for e in expenses] == ["42.50"]

    resp = client.delete(f"/api/categories/{category_id}", headers=bob)
    assert resp.status_code == 409
    assert resp.json()["error"] == "Cannot delete category that is being used"

    summary = client.get("/api/summary", headers=bob).json()
    assert summary["total_expenses_cents"] == 4250


def test_outsider_gets_403_and_validation_gets_422() -> None:
    client = _client()
    alice = _headers(client, "alice")
    mallory = _headers(client, "mallory")

    category_id = client.post(
        "/api/categories", json={"name": "Coffee"}, headers=alice
    ).json()["category_id"]

    resp = client.patch(
        f"/api/categories/{category_id}", json={"name": "Mine"}, headers=mallory
    )
    assert resp.status_code == 403

    resp = client.patch(
        f"/api/categories/{category_id}", json={"name": ""}, headers=mallory
    )
    assert resp.status_code == 422
    assert resp.json()["code"] == "validation_error"

    resp = client.delete("/api/categories/9999", headers=alice)
    assert resp.status_code == 404


def test_out_of_range_ids_and_amounts_get_422() -> None:
    client = _client()
    alice = _headers(client, "alice")

    resp = client.delete("/api/categories/99999999999999999999", headers=alice)
    assert resp.status_code == 422
    assert resp.json()["code"] == "validation_error"

    resp = client.get(
        "/api/expenses", params={"group_id": 10**20}, headers=alice
    )
    assert resp.status_code == 422

    category_id = client.post(
        "/api/categories", json={"name": "Coffee"}, headers=alice
    ).json()["category_id"]
    resp = client.post(
        "/api/expenses",
        json={"amount": "1e30", "date": "2024-03-01", "category_id": category_id},
        headers=alice,
    )
    assert resp.status_code == 422
    assert resp.json() == {
        "error": "amount: Amount too large",
        "code": "validation_error",
    }
