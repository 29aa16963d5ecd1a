"""Faucet configuration.

Read once from the environment (and .env) at start-up, then handed to every
component as an immutable value. The claim path never calls os.getenv.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping, Optional

from dotenv import load_dotenv


NATIVE_POOL = "native"

CONTRACT_SYMBOLS = ("SHIB", "TREAT", "USDT", "USDC", "ETH")

# Blocking RPC calls one claim can make while holding its lock: balance,
# decimals, gas price, gas estimate, nonce, broadcast and the last receipt poll
# (receipt + block number).
RPC_CALLS_PER_CLAIM = 8
LOCK_WAIT_MARGIN_SECONDS = 5


def _int_env(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    return int(raw) if raw else default


def _optional_int_env(name: str) -> Optional[int]:
    raw = (os.getenv(name) or "").strip()
    return int(raw) if raw else None


def _database_url() -> str:
    url = os.getenv("DATABASE_URL")
    if not url:
        if os.getenv("FLASK_ENV") == "production":
            raise RuntimeError("DATABASE_URL missing in production; refusing to use SQLite.")
        url = "sqlite:///faucet.db"
    if url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql://", 1)
    return url


@dataclass(frozen=True)
class FaucetConfig:
    database_url: str = "sqlite:///faucet.db"
    secret_key: str = "dev-secret-key-change-me"

    rpc_url: str = ""
    private_key: str = ""
    chain_id: int = 157
    network_name: str = "Shibarium Puppynet"
    # symbol -> ERC-20 contract address
    contracts: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))

    default_cooldown_hours: int = 8
    confirmations: int = 1
    confirmation_timeout_seconds: int = 60
    confirmation_poll_seconds: float = 2.0
    rpc_timeout_seconds: int = 12
    # None: long enough to outlast the slowest lock holder (see __post_init__)
    claim_lock_timeout_seconds: Optional[float] = None

    stale_pending_minutes: int = 15
    reconcile_lookback_hours: int = 48
    reconcile_interval_seconds: int = 60

    ip_rate_limit: str = "10 per hour"
    wallet_rate_limit: str = "5 per 8 hours"
    claim_rate_limit: str = "3 per 30 minutes"
    rate_limit_storage_url: str = "memory://"
    rate_limit_enabled: bool = True

    def __post_init__(self):
        if self.claim_lock_timeout_seconds is None:
            object.__setattr__(self, "claim_lock_timeout_seconds", self.worst_case_claim_seconds() + LOCK_WAIT_MARGIN_SECONDS)

    def worst_case_claim_seconds(self) -> float:
        """Longest a claim can hold its (wallet, asset) lock."""
        return (
            self.confirmation_timeout_seconds
            + self.confirmation_poll_seconds
            + RPC_CALLS_PER_CLAIM * self.rpc_timeout_seconds
        )

    def contract_for(self, symbol: str) -> str:
        return self.contracts.get((symbol or "").upper(), "")

    @classmethod
    def from_env(cls) -> "FaucetConfig":
        load_dotenv()

        secret_key = os.getenv("SECRET_KEY") or os.getenv("FLASK_SECRET_KEY")
        if not secret_key:
            if os.getenv("FLASK_ENV") == "production":
                raise RuntimeError("SECRET_KEY must be set to a strong random value in production.")
            secret_key = cls.secret_key

        contracts = {}
        for symbol in CONTRACT_SYMBOLS:
            addr = (os.getenv(f"{symbol}_CONTRACT") or "").strip()
            if addr:
                contracts[symbol] = addr

        return cls(
            database_url=_database_url(),
            secret_key=secret_key,
            rpc_url=(os.getenv("TESTNET_RPC_URL") or "").strip(),
            private_key=(os.getenv("PRIVATE_KEY") or "").strip(),
            chain_id=_int_env("CHAIN_ID", 157),
            network_name=os.getenv("NETWORK_NAME", "Shibarium Puppynet"),
            contracts=MappingProxyType(contracts),
            default_cooldown_hours=_int_env("DEFAULT_COOLDOWN_HOURS", 8),
            confirmations=_int_env("CONFIRMATIONS", 1),
            confirmation_timeout_seconds=_int_env("CONFIRMATION_TIMEOUT_SECONDS", 60),
            rpc_timeout_seconds=_int_env("RPC_TIMEOUT_SECONDS", 12),
            claim_lock_timeout_seconds=_optional_int_env("CLAIM_LOCK_TIMEOUT_SECONDS"),
            stale_pending_minutes=_int_env("STALE_PENDING_MINUTES", 15),
            reconcile_lookback_hours=_int_env("RECONCILE_LOOKBACK_HOURS", 48),
            reconcile_interval_seconds=_int_env("RECONCILE_INTERVAL_SECONDS", 60),
            ip_rate_limit=os.getenv("IP_RATE_LIMIT", "10 per hour"),
            wallet_rate_limit=os.getenv("WALLET_RATE_LIMIT", "5 per 8 hours"),
            claim_rate_limit=os.getenv("CLAIM_RATE_LIMIT", "3 per 30 minutes"),
            rate_limit_storage_url=os.getenv("RATE_LIMIT_STORAGE_URL", "memory://"),
            rate_limit_enabled=os.getenv("RATE_LIMIT_ENABLED", "1") == "1",
        )
