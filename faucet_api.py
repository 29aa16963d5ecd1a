"""Faucet HTTP API.

Routes:
- POST /api/faucet/claim            {walletAddress, asset}
- GET  /api/faucet/status/<address>
- GET  /api/faucet/history/<address>?limit=20
- GET  /api/faucet/assets
- GET  /api/faucet/info
- GET  /api/faucet/test
"""

import re

from flask import Blueprint, current_app, jsonify, request
from sqlalchemy.exc import SQLAlchemyError

from extensions import db, get_client_ip, limiter, utcnow
from ledger_client import LedgerError


faucet_api = Blueprint("faucet_api", __name__)

_WALLET_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")


def _normalize_wallet(wallet: str) -> str:
    return (wallet or "").strip().lower()


def _is_valid_wallet(wallet: str) -> bool:
    return bool(_WALLET_RE.match(wallet or ""))


def _faucet():
    return current_app.extensions["faucet"]


def _cfg():
    return _faucet()["config"]


def _json_body() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _wallet_key() -> str:
    """Rate-limit key for wallet-level limits.

    Requests without a wallet fall back to the client IP instead of skipping
    the limit altogether.
    """
    wallet = _json_body().get("walletAddress") or (request.view_args or {}).get("address")
    wallet = _normalize_wallet(wallet) if isinstance(wallet, str) else ""
    if wallet:
        return f"wallet:{wallet}"
    return f"ip:{get_client_ip()}"


def _now_iso() -> str:
    return utcnow().isoformat() + "Z"


def _validation_error(message: str):
    return jsonify({"success": False, "error": "Validation Error", "message": message}), 400


@faucet_api.get("/api/faucet/test")
def faucet_test():
    return jsonify({
        "success": True,
        "message": "Faucet API is working!",
        "timestamp": _now_iso(),
        "endpoints": {
            "POST /api/faucet/claim": "Claim tokens",
            "GET /api/faucet/status/:address": "Check cooldowns",
            "GET /api/faucet/history/:address": "Claim history",
            "GET /api/faucet/assets": "Get supported assets",
            "GET /api/faucet/info": "Get faucet info",
        },
    })


@faucet_api.post("/api/faucet/claim")
@limiter.limit(lambda: _cfg().claim_rate_limit)
@limiter.limit(lambda: _cfg().wallet_rate_limit, key_func=_wallet_key)
def faucet_claim():
    data = _json_body()
    raw_wallet = data.get("walletAddress") or ""
    asset = data.get("asset") or ""
    if not isinstance(raw_wallet, str) or not isinstance(asset, str):
        return _validation_error("walletAddress and asset must be strings")
    raw_wallet = raw_wallet.strip()
    asset = asset.strip()

    if not raw_wallet or not asset:
        return _validation_error("walletAddress and asset are required")
    if not _is_valid_wallet(raw_wallet):
        return _validation_error("Invalid wallet address format")

    current_app.logger.info("Claim request: %s for %s", asset.upper(), raw_wallet.lower())
    outcome = _faucet()["orchestrator"].attempt_claim(raw_wallet, asset)

    body = outcome.to_dict()
    body["timestamp"] = _now_iso()
    resp = jsonify(body)
    resp.status_code = outcome.http_status
    if outcome.status == "storage_unavailable":
        resp.headers["Retry-After"] = str(outcome.retry_after_seconds)
    return resp


@faucet_api.get("/api/faucet/status/<address>")
@limiter.limit(lambda: _cfg().ip_rate_limit)
def faucet_status(address):
    if not _is_valid_wallet(address):
        return _validation_error("Invalid wallet address format")
    wallet = _normalize_wallet(address)
    faucet = _faucet()
    try:
        assets = faucet["orchestrator"].wallet_status(wallet)
        recent = faucet["claims"].history_for(wallet, limit=10)
    except SQLAlchemyError:
        current_app.logger.exception("Status lookup failed for %s", wallet)
        db.session.rollback()
        return jsonify({"success": False, "error": "Internal Server Error",
                        "message": "An unexpected error occurred. Please try again later."}), 500

    return jsonify({
        "success": True,
        "data": {
            "walletAddress": wallet,
            "assets": assets,
            "recentClaims": [c.to_dict() for c in recent],
            "timestamp": _now_iso(),
        },
    })


@faucet_api.get("/api/faucet/history/<address>")
@limiter.limit(lambda: _cfg().ip_rate_limit)
def faucet_history(address):
    if not _is_valid_wallet(address):
        return _validation_error("Invalid wallet address format")
    try:
        limit = int(request.args.get("limit") or 20)
    except ValueError:
        return _validation_error("limit must be an integer")
    wallet = _normalize_wallet(address)
    claims = _faucet()["claims"].history_for(wallet, limit=limit)
    return jsonify({
        "success": True,
        "data": {"walletAddress": wallet, "claims": [c.to_dict() for c in claims]},
    })


@faucet_api.get("/api/faucet/assets")
def faucet_assets():
    cfg = _cfg()
    assets = _faucet()["registry"].list_active()
    return jsonify({
        "success": True,
        "data": {
            "supportedAssets": [a.to_dict() for a in assets],
            "network": cfg.network_name,
            "chainId": cfg.chain_id,
            "timestamp": _now_iso(),
        },
    })


@faucet_api.get("/api/faucet/info")
def faucet_info():
    faucet = _faucet()
    cfg = faucet["config"]
    ledger = faucet["ledger"]

    balances = []
    for asset in faucet["registry"].list_active():
        try:
            balance = str(ledger.get_pool_balance(asset.pool_ref))
        except LedgerError as e:
            current_app.logger.warning("Balance lookup failed for %s: %s", asset.symbol, e)
            balance = "Error"
        balances.append({"asset": asset.symbol, "balance": balance, "contractAddress": asset.pool_ref})

    return jsonify({
        "success": True,
        "data": {
            "faucetAddress": ledger.faucet_address,
            "network": cfg.network_name,
            "chainId": cfg.chain_id,
            "balances": balances,
            "cooldownPeriod": f"{cfg.default_cooldown_hours} hours",
            "timestamp": _now_iso(),
        },
    })
