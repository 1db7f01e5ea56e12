from __future__ import annotations

import pytest
from fastapi import FastAPI, HTTPException
from fastapi.testclient import TestClient

from credit_ledger.api.app import create_app
from credit_ledger.api.router import ledger_error_handler
from credit_ledger.api.middleware import TaskChargingMiddleware
from credit_ledger.config import Settings
from credit_ledger.db.memory import InMemoryDBManager


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        MONGO_URI=None,
        LEDGER_LOG_PATH=str(tmp_path / "ledger.log"),
        SWEEPER_ENABLED=False,
        CHARGED_PATH_PREFIX="/api",
        DEFAULT_TASK_COST=5,
    )


@pytest.fixture
def app(settings):
    app = create_app(settings, db=InMemoryDBManager())

    @app.post("/api/enhance")
    async def enhance():
        return {"status": "ok"}

    @app.post("/api/broken")
    async def broken():
        raise HTTPException(status_code=502, detail="upstream model unavailable")

    return app


@pytest.fixture
def client(app):
    with TestClient(app) as client:
        yield client


def _purchase(client, amount=100, ref="pay-1", account="acct-1"):
    return client.post(
        "/credits/grants/purchase",
        json={"account_id": account, "amount": amount, "payment_ref": ref},
    )


def test_purchase_then_balance(client):
    resp = _purchase(client)
    assert resp.status_code == 200
    assert resp.json()["transaction"]["balance_after"] == 100

    resp = client.get("/credits/balance/acct-1")
    assert resp.status_code == 200
    balance = resp.json()["balance"]
    assert balance["total"] == balance["available"] == 100
    assert balance["breakdown"]["permanent"] == 100


def test_reserve_commit_release_flow(client):
    _purchase(client)

    resp = client.post("/credits/tasks/t-1/reserve", json={"account_id": "acct-1", "amount": 30})
    assert resp.status_code == 200
    reservation_id = resp.json()["reservation"]["id"]

    resp = client.post(f"/credits/reservations/{reservation_id}/commit")
    assert resp.status_code == 200
    assert resp.json()["transaction"]["amount"] == -30

    resp = client.post(f"/credits/reservations/{reservation_id}/release")
    assert resp.status_code == 409
    assert resp.json()["code"] == "RESERVATION_CLOSED"

    resp = client.post("/credits/tasks/t-2/reserve", json={"account_id": "acct-1", "amount": 10})
    resp = client.post("/credits/tasks/t-2/cancel", json={"account_id": "acct-1"})
    assert resp.status_code == 200
    assert resp.json()["transaction"]["kind"] == "release"

    assert client.get("/credits/balance/acct-1").json()["balance"]["total"] == 70


def test_error_mapping(client):
    resp = client.post("/credits/tasks/t-1/reserve", json={"account_id": "acct-1", "amount": 30})
    assert resp.status_code == 402
    assert resp.json()["code"] == "INSUFFICIENT_CREDITS"

    resp = _purchase(client, amount=0)
    assert resp.status_code == 400
    assert resp.json()["code"] == "INVALID_AMOUNT"

    resp = client.post("/credits/reservations/nope/commit")
    assert resp.status_code == 404

    resp = client.get("/credits/history/acct-1", params={"cursor": "garbage"})
    assert resp.status_code == 400
    assert resp.json()["code"] == "INVALID_CURSOR"


def test_history_pagination(client):
    for i in range(3):
        _purchase(client, amount=10, ref=f"pay-{i}")

    resp = client.get("/credits/history/acct-1", params={"limit": 2})
    body = resp.json()
    assert [t["sequence"] for t in body["items"]] == [3, 2]

    resp = client.get("/credits/history/acct-1", params={"limit": 2, "cursor": body["next_cursor"]})
    body = resp.json()
    assert [t["sequence"] for t in body["items"]] == [1]
    assert body["next_cursor"] is None

    resp = client.get("/credits/history/acct-1", params={"kind": "debit"})
    assert resp.json()["items"] == []


def test_sweep_endpoint(client):
    resp = client.post("/credits/sweep")
    assert resp.status_code == 200
    assert resp.json()["accounts_swept"] == 0


def test_frozen_account_returns_423(client, app):
    _purchase(client)
    db = app.state.services.db
    client.portal.call(db.set_account_frozen, "acct-1", True, "manual hold")

    resp = _purchase(client, ref="pay-2")
    assert resp.status_code == 423

    resp = client.post("/credits/accounts/acct-1/unfreeze", json={"operator": "ops"})
    assert resp.status_code == 204
    assert _purchase(client, ref="pay-2").status_code == 200


def test_middleware_commits_successful_task(client):
    _purchase(client)

    resp = client.post(
        "/api/enhance", headers={"X-Account-Id": "acct-1", "X-Task-Id": "img-1", "X-Task-Cost": "12"}
    )
    assert resp.status_code == 200
    assert resp.headers["X-Credits-Charged"] == "12"
    assert resp.headers["X-Task-Id"] == "img-1"
    assert client.get("/credits/balance/acct-1").json()["balance"]["total"] == 88


def test_middleware_releases_failed_task(client):
    _purchase(client)

    resp = client.post("/api/broken", headers={"X-Account-Id": "acct-1"})
    assert resp.status_code == 502
    balance = client.get("/credits/balance/acct-1").json()["balance"]
    assert balance["total"] == balance["available"] == 100


def test_middleware_rejects_unfunded_or_anonymous_requests(client):
    assert client.post("/api/enhance").status_code == 401

    resp = client.post("/api/enhance", headers={"X-Account-Id": "broke"})
    assert resp.status_code == 402
    assert resp.json()["code"] == "INSUFFICIENT_CREDITS"


def test_middleware_ignores_other_paths(settings):
    app = FastAPI()
    app.add_middleware(TaskChargingMiddleware, tasks=None, path_prefix="/api")

    @app.get("/health")
    async def health():
        return {"ok": True}

    with TestClient(app) as client:
        assert client.get("/health").json() == {"ok": True}


def test_check_credits_endpoint(client):
    _purchase(client, amount=40)

    resp = client.get("/credits/check/acct-1", params={"amount": 40})
    assert resp.status_code == 200
    assert resp.json() == {"account_id": "acct-1", "amount": 40, "has_enough": True}

    client.post("/credits/tasks/t-1/reserve", json={"account_id": "acct-1", "amount": 10})
    assert client.get("/credits/check/acct-1", params={"amount": 40}).json()["has_enough"] is False
    assert client.get("/credits/check/acct-1", params={"amount": 0}).status_code == 422


def test_expiring_credits_endpoint(client):
    _purchase(client, amount=100)
    resp = client.post(
        "/credits/grants/bonus",
        json={"account_id": "acct-1", "amount": 25, "expires_in_days": 3},
    )
    assert resp.status_code == 200

    resp = client.get("/credits/expiring/acct-1")
    assert resp.status_code == 200
    body = resp.json()
    assert body["days_ahead"] == 7
    assert body["total"] == 25
    assert [item["amount"] for item in body["items"]] == [25]

    body = client.get("/credits/expiring/acct-1", params={"days_ahead": 1}).json()
    assert body["total"] == 0
    assert body["items"] == []


def test_notification_history_is_bounded(settings):
    bounded = settings.model_copy(update={"NOTIFICATION_HISTORY_SIZE": 5})
    app = create_app(bounded, db=InMemoryDBManager())

    with TestClient(app) as client:
        for n in range(20):
            assert _purchase(client, amount=10, ref=f"pay-{n}").status_code == 200
        queue = app.state.services.queue
        assert len(queue.messages) == 5
        assert queue.messages[-1]["payload"]["balance_after"] == 200


@pytest.mark.asyncio
async def test_error_handler_reraises_foreign_exceptions():
    with pytest.raises(KeyError):
        await ledger_error_handler(None, KeyError("not a ledger error"))
