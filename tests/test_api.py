from datetime import date

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from auth import issue_token
from cache import CacheError, MemoryCacheStore, ReadThroughCache
from conftest import make_category, make_transaction, make_user
from main import app, get_cache, get_db, get_rate_limiter
from models import Role, TransactionType
from ratelimit import RateLimiter
from services import STALE_CACHE_WARNING


class BrokenStore(MemoryCacheStore):
    def get(self, key):
        raise CacheError("connection refused")

    def get_many(self, keys):
        raise CacheError("connection refused")

    def set(self, key, value, ttl):
        raise CacheError("connection refused")

    def incr(self, key, ttl=None):
        raise CacheError("connection refused")

    def ping(self) -> bool:
        return False


@pytest.fixture
def cache():
    return ReadThroughCache(MemoryCacheStore())


@pytest.fixture
def client(session_factory, cache):
    def override_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_cache] = lambda: cache
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def ledger(session):
    """Seed one user per role and a shared category; return auth headers."""
    admin = make_user(session, "admin", Role.admin)
    user = make_user(session, "user", Role.user)
    viewer = make_user(session, "viewer", Role.read_only)
    food = make_category(session, "Food")
    return {
        "admin": _headers(admin.id, Role.admin),
        "user": _headers(user.id, Role.user),
        "viewer": _headers(viewer.id, Role.read_only),
        "user_id": user.id,
        "food_id": food.id,
    }


def _headers(user_id: int, role: Role) -> dict[str, str]:
    return {"Authorization": f"Bearer {issue_token(user_id, role)}"}


def _expense(category_id: int, amount: float = 25.5, **extra) -> dict[str, object]:
    body = {
        "amount": amount,
        "type": "expense",
        "category_id": category_id,
        "date": date.today().isoformat(),
        "description": "Lunch",
    }
    body.update(extra)
    return body


def test_health(client) -> None:
    res = client.get("/health")
    assert res.status_code == 200
    assert res.json()["status"] == "OK"
    assert res.json()["cache"] == "up"


def test_missing_or_bad_token_is_401(client, ledger) -> None:
    res = client.get("/analytics/overview")
    assert res.status_code == 401
    assert res.json() == {"error": "Access token required"}

    res = client.get("/analytics/overview", headers={"Authorization": "Bearer nope"})
    assert res.status_code == 401


def test_overview_reflects_new_transaction_after_cached_read(client, ledger) -> None:
    before = client.get("/analytics/overview", headers=ledger["user"])
    assert before.status_code == 200
    assert before.json()["overview"]["totalExpenses"] == 0.0
    assert before.json()["period"]["type"] == "month"

    created = client.post(
        "/transactions", json=_expense(ledger["food_id"]), headers=ledger["user"]
    )
    assert created.status_code == 201
    body = created.json()
    assert body["message"] == "Transaction created successfully"
    assert body["transaction"]["amount"] == 25.5
    assert body["transaction"]["category"]["name"] == "Food"
    assert "warnings" not in body

    after = client.get("/analytics/overview", headers=ledger["user"])
    assert after.json()["overview"]["totalExpenses"] == 25.5
    assert after.json()["overview"]["savingsRate"] == 0


def test_cached_reads_are_byte_identical(client, ledger) -> None:
    client.post("/transactions", json=_expense(ledger["food_id"]), headers=ledger["user"])
    first = client.get("/analytics/expenses-by-category", headers=ledger["user"])
    second = client.get("/analytics/expenses-by-category", headers=ledger["user"])
    assert first.status_code == second.status_code == 200
    assert first.content == second.content
    assert first.json()["categories"][0]["percentage"] == 100.0


def test_read_only_role_cannot_write(client, ledger) -> None:
    res = client.post(
        "/transactions", json=_expense(ledger["food_id"]), headers=ledger["viewer"]
    )
    assert res.status_code == 403
    assert "error" in res.json()

    assert client.get("/transactions", headers=ledger["viewer"]).status_code == 200
    assert client.get("/categories", headers=ledger["viewer"]).status_code == 200


def test_only_admin_manages_categories(client, ledger) -> None:
    payload = {"name": "Travel", "color": "#FF0000"}
    assert client.post("/categories", json=payload, headers=ledger["user"]).status_code == 403

    res = client.post("/categories", json=payload, headers=ledger["admin"])
    assert res.status_code == 201
    assert res.json()["category"]["name"] == "Travel"

    dup = client.post("/categories", json={"name": "travel"}, headers=ledger["admin"])
    assert dup.status_code == 409


def test_category_in_use_cannot_be_deleted(client, ledger, session) -> None:
    client.post("/transactions", json=_expense(ledger["food_id"]), headers=ledger["user"])
    res = client.delete(f"/categories/{ledger['food_id']}", headers=ledger["admin"])
    assert res.status_code == 409
    assert res.json() == {
        "error": "Cannot delete category that is being used by transactions"
    }
    assert client.get(
        f"/categories/{ledger['food_id']}", headers=ledger["admin"]
    ).status_code == 200

    spare = make_category(session, "Spare")
    res = client.delete(f"/categories/{spare.id}", headers=ledger["admin"])
    assert res.status_code == 200


def test_category_rename_reaches_other_users_cached_listings(client, ledger) -> None:
    client.post("/transactions", json=_expense(ledger["food_id"]), headers=ledger["user"])
    listing = client.get("/transactions", headers=ledger["user"])
    assert listing.json()["transactions"][0]["category"]["name"] == "Food"

    res = client.put(
        f"/categories/{ledger['food_id']}",
        json={"name": "Dining"},
        headers=ledger["admin"],
    )
    assert res.status_code == 200

    listing = client.get("/transactions", headers=ledger["user"])
    assert listing.json()["transactions"][0]["category"]["name"] == "Dining"


def test_validation_errors_are_400(client, ledger) -> None:
    res = client.post(
        "/transactions", json=_expense(ledger["food_id"], amount=-5), headers=ledger["user"]
    )
    assert res.status_code == 400
    assert res.json()["error"] == "Validation failed"
    assert res.json()["details"][0]["field"] == "amount"

    res = client.post(
        "/transactions", json=_expense(999), headers=ledger["user"]
    )
    assert res.status_code == 400
    assert res.json() == {"error": "Invalid category ID"}

    res = client.get(
        "/analytics/overview?start_date=2024-02-01&end_date=2024-01-01",
        headers=ledger["user"],
    )
    assert res.status_code == 400
    assert res.json() == {"error": "Start date cannot be after end date"}

    res = client.get("/analytics/monthly-trends?months=13", headers=ledger["user"])
    assert res.status_code == 400


def test_monthly_trends_defaults_to_twelve_months(client, ledger) -> None:
    res = client.get("/analytics/monthly-trends?year=2023", headers=ledger["user"])
    assert res.status_code == 200
    assert res.json()["year"] == 2023
    assert len(res.json()["months"]) == 12


def test_recent_transactions_limit_bounds(client, ledger) -> None:
    for amount in (1, 2, 3):
        client.post(
            "/transactions",
            json=_expense(ledger["food_id"], amount=amount),
            headers=ledger["user"],
        )
    res = client.get("/analytics/recent-transactions?limit=2", headers=ledger["user"])
    assert res.status_code == 200
    assert len(res.json()["transactions"]) == 2
    res = client.get("/analytics/recent-transactions?limit=51", headers=ledger["user"])
    assert res.status_code == 400


def test_transactions_of_other_users_are_not_found(client, ledger, session) -> None:
    other = make_user(session, "other")
    food = make_category(session, "Groceries")
    txn = make_transaction(
        session, other, food, 1_000, TransactionType.expense, date(2024, 1, 1)
    )
    res = client.get(f"/transactions/{txn.id}", headers=ledger["user"])
    assert res.status_code == 404
    res = client.delete(f"/transactions/{txn.id}", headers=ledger["user"])
    assert res.status_code == 404


def test_update_and_delete_transaction(client, ledger) -> None:
    created = client.post(
        "/transactions", json=_expense(ledger["food_id"]), headers=ledger["user"]
    ).json()["transaction"]
    url = f"/transactions/{created['id']}"

    res = client.put(url, json={"amount": 40}, headers=ledger["user"])
    assert res.status_code == 200
    assert res.json()["transaction"]["amount"] == 40.0
    assert res.json()["transaction"]["description"] == "Lunch"

    assert client.put(url, json={}, headers=ledger["user"]).status_code == 400
    assert client.get(url, headers=ledger["user"]).json()["amount"] == 40.0

    assert client.delete(url, headers=ledger["user"]).status_code == 200
    assert client.get(url, headers=ledger["user"]).status_code == 404


def test_register_login_and_profile(client) -> None:
    res = client.post(
        "/auth/register",
        json={
            "email": "Nina@Example.com",
            "username": "nina",
            "password": "Passw0rd",
            "firstName": "Nina",
        },
    )
    assert res.status_code == 201
    assert res.json()["user"]["role"] == "user"
    assert res.json()["user"]["firstName"] == "Nina"

    weak = client.post(
        "/auth/register",
        json={"email": "x@example.com", "username": "xx_x", "password": "password"},
    )
    assert weak.status_code == 400

    login = client.post(
        "/auth/login", json={"email": "nina@example.com", "password": "Passw0rd"}
    )
    assert login.status_code == 200
    headers = {"Authorization": f"Bearer {login.json()['token']}"}

    assert client.get("/auth/profile", headers=headers).json()["user"]["username"] == "nina"
    res = client.put("/auth/profile", json={"lastName": "Simone"}, headers=headers)
    assert res.status_code == 200
    profile = client.get("/auth/profile", headers=headers).json()["user"]
    assert profile["lastName"] == "Simone"

    bad = client.post("/auth/login", json={"email": "nina@example.com", "password": "x"})
    assert bad.status_code == 401


def test_auth_routes_are_rate_limited(client) -> None:
    limiter = RateLimiter(MemoryCacheStore())
    app.dependency_overrides[get_rate_limiter] = lambda: limiter
    creds = {"email": "ghost@example.com", "password": "Nope1234"}
    for _ in range(5):
        assert client.post("/auth/login", json=creds).status_code == 401

    res = client.post("/auth/login", json=creds)
    assert res.status_code == 429
    assert res.json()["retryAfter"] == "15 minutes"
    assert int(res.headers["Retry-After"]) > 0


@pytest.mark.parametrize("cache", [ReadThroughCache(BrokenStore())])
def test_cache_outage_degrades_to_direct_reads(client, ledger, cache) -> None:
    res = client.post(
        "/transactions", json=_expense(ledger["food_id"]), headers=ledger["user"]
    )
    assert res.status_code == 201
    assert res.json()["warnings"] == [STALE_CACHE_WARNING]

    res = client.get("/analytics/overview", headers=ledger["user"])
    assert res.status_code == 200
    assert res.json()["overview"]["totalExpenses"] == 25.5
    assert client.get("/health").json()["cache"] == "down"


@pytest.mark.parametrize(
    "failure",
    [
        OperationalError("SELECT 1", {}, Exception("database is locked")),
        PoolTimeoutError("QueuePool limit of size 5 overflow 10 reached"),
    ],
)
def test_store_outage_is_retryable_503(client, ledger, session_factory, failure) -> None:
    def unavailable_db():
        db = session_factory()

        def fail(*args, **kwargs):
            raise failure

        db.execute = fail
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = unavailable_db
    res = client.get("/analytics/overview", headers=ledger["user"])
    assert res.status_code == 503
    assert res.json() == {"error": "Service temporarily unavailable, please retry"}


def test_blank_category_name_is_400(client, ledger) -> None:
    res = client.post("/categories", json={"name": "   "}, headers=ledger["admin"])
    assert res.status_code == 400
    assert res.json()["details"][0]["field"] == "name"

    res = client.put(
        f"/categories/{ledger['food_id']}", json={"name": " "}, headers=ledger["admin"]
    )
    assert res.status_code == 400
