import dataclasses
from decimal import Decimal

import pytest
from sqlalchemy import inspect as sa_inspect
from sqlalchemy.exc import OperationalError

from app import create_app
from extensions import db

from conftest import OTHER_WALLET, TREAT_CONTRACT, WALLET


def _claim(client, wallet=WALLET, asset="BONE"):
    return client.post("/api/faucet/claim", json={"walletAddress": wallet, "asset": asset})


def test_test_endpoint(client):
    resp = client.get("/api/faucet/test")
    assert resp.status_code == 200
    assert resp.get_json()["success"] is True


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.get_json() == {"status": "OK", "database": True}
    assert resp.headers["Cache-Control"] == "no-store"


def test_schema_comes_from_models(app):
    with app.app_context():
        columns = {c["name"] for c in sa_inspect(db.engine).get_columns("claims")}
    assert {"submitted_tx_hash", "failure_reason", "confirmed_at"} <= columns


def test_short_lock_wait_is_logged(cfg, ledger, clock, caplog):
    short = dataclasses.replace(cfg, claim_lock_timeout_seconds=1)
    application = create_app(short, ledger=ledger, clock=clock)
    assert "CLAIM_LOCK_TIMEOUT_SECONDS=1" in caplog.text
    with application.app_context():
        db.engine.dispose()


@pytest.mark.parametrize("payload, message", [
    ({}, "walletAddress and asset are required"),
    ({"walletAddress": WALLET}, "walletAddress and asset are required"),
    ({"walletAddress": "0x1234", "asset": "BONE"}, "Invalid wallet address format"),
    ({"walletAddress": 123, "asset": "BONE"}, "walletAddress and asset must be strings"),
    ({"walletAddress": WALLET, "asset": ["BONE"]}, "walletAddress and asset must be strings"),
    (["x"], "walletAddress and asset are required"),
    ("BONE", "walletAddress and asset are required"),
])
def test_claim_validation(client, payload, message):
    resp = client.post("/api/faucet/claim", json=payload)
    assert resp.status_code == 400
    body = resp.get_json()
    assert body["error"] == "Validation Error"
    assert body["message"] == message


def test_claim_then_cooldown(client, ledger):
    resp = _claim(client)
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["success"] is True
    assert body["status"] == "success"
    assert body["data"]["amount"] == "0.1"
    assert body["data"]["transactionHash"] == ledger.submitted[0][3]
    assert body["data"]["nextClaimAt"] == "2026-01-01T20:00:00Z"

    resp = _claim(client)
    assert resp.status_code == 429
    body = resp.get_json()
    assert body["error"] == "Cooldown Active"
    assert body["remainingTime"] == 8 * 3600 * 1000
    assert len(ledger.submitted) == 1


def test_unsupported_asset(client):
    resp = _claim(client, asset="DOGE")
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "Invalid Asset"


def test_insufficient_balance(client, ledger):
    ledger.balances[TREAT_CONTRACT] = Decimal("4")
    resp = _claim(client, asset="TREAT")
    assert resp.status_code == 503
    assert resp.get_json()["status"] == "insufficient_pool_balance"


def test_transfer_failure(client, ledger):
    ledger.confirm = False
    resp = _claim(client)
    assert resp.status_code == 502
    body = resp.get_json()
    assert body["error"] == "Transaction Failed"
    assert body["claimId"] == 1


def test_storage_failure_sets_retry_after(app, client, monkeypatch):
    cooldowns = app.extensions["faucet"]["cooldowns"]

    def broken(*args, **kwargs):
        raise OperationalError("UPDATE cooldowns", {}, Exception("disk I/O error"))

    monkeypatch.setattr(cooldowns, "mark_claimed", broken)
    resp = _claim(client)
    assert resp.status_code == 503
    assert resp.headers["Retry-After"] == "30"
    assert resp.get_json()["status"] == "storage_unavailable"


def test_status(client):
    _claim(client)
    resp = client.get(f"/api/faucet/status/{WALLET.upper().replace('0X', '0x')}")
    assert resp.status_code == 200
    data = resp.get_json()["data"]
    assert data["walletAddress"] == WALLET

    assets = {a["asset"]: a for a in data["assets"]}
    assert assets["BONE"]["canClaim"] is False
    assert assets["BONE"]["remainingTime"] == "8h 0m"
    assert assets["SHIB"]["canClaim"] is True
    assert [c["asset"] for c in data["recentClaims"]] == ["BONE"]


def test_status_rejects_bad_address(client):
    assert client.get("/api/faucet/status/nope").status_code == 400


def test_history(client, clock):
    _claim(client)
    clock.advance(minutes=1)
    _claim(client, asset="SHIB")
    _claim(client, wallet=OTHER_WALLET)

    resp = client.get(f"/api/faucet/history/{WALLET}")
    claims = resp.get_json()["data"]["claims"]
    assert [c["asset"] for c in claims] == ["SHIB", "BONE"]
    assert all(c["status"] == "confirmed" for c in claims)

    resp = client.get(f"/api/faucet/history/{WALLET}?limit=1")
    assert len(resp.get_json()["data"]["claims"]) == 1

    resp = client.get(f"/api/faucet/history/{WALLET}?limit=0")
    assert len(resp.get_json()["data"]["claims"]) == 1

    assert client.get(f"/api/faucet/history/{WALLET}?limit=abc").status_code == 400


def test_assets(client):
    resp = client.get("/api/faucet/assets")
    data = resp.get_json()["data"]
    assert [a["symbol"] for a in data["supportedAssets"]] == ["BONE", "SHIB", "TREAT"]
    assert data["chainId"] == 157


def test_info(client, ledger):
    ledger.balances["native"] = Decimal("12.5")
    resp = client.get("/api/faucet/info")
    data = resp.get_json()["data"]
    assert data["faucetAddress"] == ledger.faucet_address
    balances = {b["asset"]: b["balance"] for b in data["balances"]}
    assert balances["BONE"] == "12.5"
    assert data["cooldownPeriod"] == "8 hours"


@pytest.fixture
def limited_app(cfg, ledger, clock):
    limited = dataclasses.replace(cfg, rate_limit_enabled=True, claim_rate_limit="2 per minute")
    application = create_app(limited, ledger=ledger, clock=clock)
    yield application
    with application.app_context():
        db.session.remove()
        db.engine.dispose()


def test_claim_rate_limit(limited_app):
    client = limited_app.test_client()
    for _ in range(2):
        assert client.post("/api/faucet/claim", json={}).status_code == 400

    resp = client.post("/api/faucet/claim", json={})
    assert resp.status_code == 429
    assert resp.get_json()["error"] == "Rate Limited"


@pytest.mark.parametrize("payload", [["x"], {"walletAddress": 123, "asset": "BONE"}])
def test_wallet_limit_key_tolerates_malformed_bodies(limited_app, payload):
    resp = limited_app.test_client().post("/api/faucet/claim", json=payload)
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "Validation Error"
