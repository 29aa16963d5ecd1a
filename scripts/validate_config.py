#!/usr/bin/env python3
"""Check required settings, RPC connectivity and the faucet wallet balance.

Run from the repo root: python -m scripts.validate_config
"""

import os
import sys
from decimal import Decimal

from config import NATIVE_POOL, FaucetConfig
from ledger_client import LedgerClient, LedgerError

REQUIRED_VARS = ("TESTNET_RPC_URL", "PRIVATE_KEY", "DATABASE_URL")
MIN_GAS_BALANCE = Decimal("0.01")


def main() -> int:
    cfg = FaucetConfig.from_env()
    missing = [name for name in REQUIRED_VARS if not os.getenv(name)]
    if missing:
        print("Missing required environment variables:")
        for name in missing:
            print(f"   - {name}")
        return 1

    try:
        client = LedgerClient(cfg)
    except LedgerError as e:
        print(f"Ledger client misconfigured: {e}")
        return 1
    if not client.test_connection():
        return 1

    balance = client.get_pool_balance(NATIVE_POOL)
    print(f"Faucet wallet: {client.faucet_address}")
    print(f"Native balance: {balance}")
    if balance < MIN_GAS_BALANCE:
        print(f"Low wallet balance! Keep at least {MIN_GAS_BALANCE} for gas fees.")
    for symbol, contract in sorted(cfg.contracts.items()):
        try:
            print(f"{symbol}: {client.get_pool_balance(contract)} ({contract})")
        except LedgerError as e:
            print(f"{symbol}: balance lookup failed: {e}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
