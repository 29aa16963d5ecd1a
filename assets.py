"""Asset registry: read path over the `assets` table.

Callers get frozen `AssetInfo` snapshots, never live ORM rows, so an admin
edit made while a claim is in flight cannot leak into that claim.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from typing import Iterable, Optional

from extensions import db, utcnow
from models_assets import Asset
from config import NATIVE_POOL, FaucetConfig


ASSET_UNKNOWN = "unknown"
ASSET_INACTIVE = "inactive"


@dataclass(frozen=True)
class AssetInfo:
    symbol: str
    name: str
    amount: Decimal
    cooldown: timedelta
    pool_ref: str
    is_active: bool

    @property
    def is_native(self) -> bool:
        return self.pool_ref == NATIVE_POOL

    @classmethod
    def from_row(cls, row: Asset) -> "AssetInfo":
        return cls(
            symbol=row.symbol,
            name=row.name,
            amount=Decimal(row.amount),
            cooldown=timedelta(hours=int(row.cooldown_hours)),
            pool_ref=row.pool_ref or NATIVE_POOL,
            is_active=bool(row.is_active),
        )

    def to_dict(self):
        return {
            "symbol": self.symbol,
            "name": self.name,
            "amount": str(self.amount),
            "cooldownHours": int(self.cooldown.total_seconds() // 3600),
            "contractAddress": self.pool_ref,
            "isActive": self.is_active,
        }


def normalize_symbol(symbol: str) -> str:
    return (symbol or "").strip().upper()


class AssetRegistry:
    def get_asset(self, symbol: str) -> Optional[AssetInfo]:
        """Return the asset whether or not it is active; None if unknown."""
        row = db.session.get(Asset, normalize_symbol(symbol))
        return AssetInfo.from_row(row) if row else None

    def resolve_claimable(self, symbol: str):
        """Return (asset, None) for a claimable symbol, else (None, reason).

        reason is ASSET_UNKNOWN or ASSET_INACTIVE; callers treat both as
        unsupported but the distinction is kept for logs.
        """
        asset = self.get_asset(symbol)
        if asset is None:
            return None, ASSET_UNKNOWN
        if not asset.is_active:
            return None, ASSET_INACTIVE
        return asset, None

    def list_active(self) -> list[AssetInfo]:
        rows = Asset.query.filter_by(is_active=True).order_by(Asset.symbol.asc()).all()
        return [AssetInfo.from_row(r) for r in rows]

    def upsert(self, symbol: str, name: str, amount: str, cooldown_hours: int,
               pool_ref: str = NATIVE_POOL, is_active: bool = True) -> AssetInfo:
        """Administrative write. Commits."""
        symbol = normalize_symbol(symbol)
        Decimal(amount)  # reject garbage before it reaches the table
        row = db.session.get(Asset, symbol)
        if row is None:
            row = Asset(symbol=symbol, created_at=utcnow())
        row.name = name
        row.amount = str(amount)
        row.cooldown_hours = int(cooldown_hours)
        row.pool_ref = pool_ref or NATIVE_POOL
        row.is_active = bool(is_active)
        row.updated_at = utcnow()
        db.session.add(row)
        db.session.commit()
        return AssetInfo.from_row(row)

    def set_active(self, symbol: str, active: bool) -> bool:
        row = db.session.get(Asset, normalize_symbol(symbol))
        if row is None:
            return False
        row.is_active = bool(active)
        row.updated_at = utcnow()
        db.session.commit()
        return True


def default_assets(cfg: FaucetConfig) -> Iterable[dict]:
    hours = cfg.default_cooldown_hours
    return [
        {"symbol": "BONE", "name": "BONE", "amount": "0.1", "cooldown_hours": hours, "pool_ref": NATIVE_POOL},
        {"symbol": "SHIB", "name": "Shiba Inu", "amount": "1000", "cooldown_hours": hours, "pool_ref": cfg.contract_for("SHIB")},
        {"symbol": "TREAT", "name": "TREAT", "amount": "5", "cooldown_hours": hours, "pool_ref": cfg.contract_for("TREAT")},
        {"symbol": "USDT", "name": "Tether USD", "amount": "1", "cooldown_hours": hours, "pool_ref": cfg.contract_for("USDT")},
        {"symbol": "USDC", "name": "USD Coin", "amount": "1", "cooldown_hours": hours, "pool_ref": cfg.contract_for("USDC")},
    ]


def seed_assets(registry: AssetRegistry, cfg: FaucetConfig) -> int:
    """Insert or refresh the default catalog. Tokens without a configured
    contract are seeded inactive."""
    n = 0
    for entry in default_assets(cfg):
        pool_ref = entry["pool_ref"]
        registry.upsert(
            entry["symbol"],
            entry["name"],
            entry["amount"],
            entry["cooldown_hours"],
            pool_ref=pool_ref or NATIVE_POOL,
            is_active=bool(pool_ref),
        )
        n += 1
    return n
