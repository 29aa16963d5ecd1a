"""Token faucet service.

    python app.py                # dev server
    gunicorn 'app:create_app()'  # production
"""

from __future__ import annotations

import logging
import os
from typing import Optional

import redis
from flask import Flask, jsonify
from flask_cors import CORS
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.middleware.proxy_fix import ProxyFix

from assets import AssetRegistry
from claim_records import ClaimRecordStore
from config import FaucetConfig
from cooldowns import CooldownLedger
from extensions import db, limiter, utcnow
from faucet_api import faucet_api
from keyed_locks import KeyedLocks
from ledger_client import LedgerClient
from orchestrator import ClaimOrchestrator
from reconcile import ClaimReconciler

# Register models with the metadata before create_all().
import models_assets  # noqa: F401
import models_claims  # noqa: F401


def _is_production() -> bool:
    return os.getenv("FLASK_ENV") == "production"


def _check_rate_limit_storage(url: str) -> None:
    """Fail fast on an unreachable Redis limiter store in production."""
    if not url.startswith(("redis://", "rediss://")):
        return
    try:
        redis.from_url(url).ping()
    except redis.RedisError as e:
        if _is_production():
            raise RuntimeError(f"Rate limit storage unreachable: {e}") from e
        logging.getLogger(__name__).warning("Rate limit storage unreachable: %s", e)


def create_app(cfg: Optional[FaucetConfig] = None, ledger=None, clock=utcnow) -> Flask:
    cfg = cfg or FaucetConfig.from_env()

    app = Flask(__name__)
    if cfg.claim_lock_timeout_seconds < cfg.worst_case_claim_seconds():
        app.logger.warning(
            "CLAIM_LOCK_TIMEOUT_SECONDS=%s is shorter than the slowest claim (%ss); "
            "same-wallet retries may see 409 instead of a cooldown",
            cfg.claim_lock_timeout_seconds, cfg.worst_case_claim_seconds(),
        )
    app.config["SECRET_KEY"] = cfg.secret_key
    app.config["SQLALCHEMY_DATABASE_URI"] = cfg.database_url
    if not cfg.database_url.startswith("sqlite"):
        app.config["SQLALCHEMY_ENGINE_OPTIONS"] = {"pool_recycle": 300, "pool_pre_ping": True}
    app.config["RATELIMIT_ENABLED"] = cfg.rate_limit_enabled
    app.config["RATELIMIT_STORAGE_URI"] = cfg.rate_limit_storage_url
    app.config["RATELIMIT_DEFAULT"] = cfg.ip_rate_limit

    # Behind Render's edge proxy remote_addr is the proxy; trust one hop.
    if _is_production():
        app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1)

    db.init_app(app)
    CORS(app)
    if cfg.rate_limit_enabled:
        _check_rate_limit_storage(cfg.rate_limit_storage_url)
    limiter.init_app(app)

    app.register_blueprint(faucet_api)

    locks = KeyedLocks()
    registry = AssetRegistry()
    cooldowns = CooldownLedger(clock=clock)
    claims = ClaimRecordStore(clock=clock)
    ledger = ledger if ledger is not None else LedgerClient(cfg)
    app.extensions["faucet"] = {
        "config": cfg,
        "locks": locks,
        "registry": registry,
        "cooldowns": cooldowns,
        "claims": claims,
        "ledger": ledger,
        "clock": clock,
        "orchestrator": ClaimOrchestrator(cfg, registry, cooldowns, claims, ledger, locks=locks, clock=clock),
    }

    @app.errorhandler(429)
    def _rate_limited(e):
        return jsonify({
            "success": False,
            "error": "Rate Limited",
            "message": f"Too many requests. Limit: {e.description}",
            "timestamp": utcnow().isoformat() + "Z",
        }), 429

    @app.after_request
    def _no_store(resp):
        resp.headers.setdefault("Cache-Control", "no-store")
        resp.headers.setdefault("X-Content-Type-Options", "nosniff")
        return resp

    @app.get("/health")
    def health():
        try:
            db.session.execute(text("SELECT 1"))
            db_ok = True
        except SQLAlchemyError:
            app.logger.exception("Health check: database unreachable")
            db.session.rollback()
            db_ok = False
        return jsonify({"status": "OK" if db_ok else "DEGRADED", "database": db_ok}), (200 if db_ok else 503)

    with app.app_context():
        db.create_all()

    return app


def build_reconciler(app: Flask) -> ClaimReconciler:
    faucet = app.extensions["faucet"]
    return ClaimReconciler(
        faucet["config"],
        faucet["cooldowns"],
        faucet["claims"],
        faucet["ledger"],
        locks=faucet["locks"],
        clock=faucet["clock"],
    )


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    application = create_app()
    port = int(os.getenv("PORT", 3000))
    debug = os.getenv("FLASK_ENV", "development") == "development"

    faucet = application.extensions["faucet"]
    print("=" * 60)
    print("Token Faucet")
    print("=" * 60)
    print(f"Network: {faucet['config'].network_name} (chain {faucet['config'].chain_id})")
    print(f"Faucet wallet: {faucet['ledger'].faucet_address}")
    print(f"API: http://localhost:{port}/api/faucet/test")
    print("=" * 60)
    application.run(host="0.0.0.0", port=port, debug=debug, threaded=True)
