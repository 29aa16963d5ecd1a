"""Shared Flask extensions.

Imported by the models and services so they never import the app module
(prevents circular imports when the app is started as a script).
"""

from datetime import datetime, timezone

from flask import request
from flask_limiter import Limiter
from flask_sqlalchemy import SQLAlchemy


db = SQLAlchemy()


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def get_client_ip() -> str:
    """Return the best-effort client IP.

    After ProxyFix, request.access_route[0] should be the real client IP.
    Falls back to request.remote_addr for local development.
    """
    if request.access_route:
        return request.access_route[0]
    return request.remote_addr or "0.0.0.0"


# Storage and default limits are taken from app.config (RATELIMIT_*) in create_app.
limiter = Limiter(get_client_ip)
