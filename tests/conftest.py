"""
Pytest fixtures for the faucet tests.
"""
import threading
import time
from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from app import create_app
from config import FaucetConfig
from extensions import db
from ledger_client import TransferReceipt


T0 = datetime(2026, 1, 1, 12, 0, 0)
WALLET = "0x" + "ab" * 20
OTHER_WALLET = "0x" + "cd" * 20
SHIB_CONTRACT = "0x" + "51" * 20
TREAT_CONTRACT = "0x" + "73" * 20
USDC_CONTRACT = "0x" + "c0" * 20


class FakeClock:
    """Controllable naive-UTC clock shared by every component."""

    def __init__(self, now=T0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class FakeLedger:
    """In-memory stand-in for LedgerClient."""

    faucet_address = "0x" + "fa" * 20

    def __init__(self):
        self.balances = {}
        self.default_balance = Decimal("1000000")
        self.balance_error = None
        self.submit_error = None
        self.submit_delay = 0.0
        self.confirm_delay = 0.0
        self.on_submit = None
        # True: confirmed, False: reverted, None: no confirmation in time
        self.confirm = True
        self.receipts = {}
        self.submitted = []
        self._lock = threading.Lock()

    def get_pool_balance(self, pool_ref):
        if self.balance_error:
            raise self.balance_error
        return self.balances.get(pool_ref, self.default_balance)

    def submit_transfer(self, pool_ref, to_addr, amount):
        if self.submit_error:
            raise self.submit_error
        with self._lock:
            tx_hash = "0x%064x" % (len(self.submitted) + 1)
            self.submitted.append((pool_ref, to_addr, amount, tx_hash))
        if self.submit_delay:
            time.sleep(self.submit_delay)
        if self.on_submit:
            self.on_submit()
        return tx_hash

    def wait_for_confirmation(self, tx_hash, timeout=None):
        if self.confirm_delay:
            time.sleep(self.confirm_delay)
        if self.confirm is None:
            return None
        return TransferReceipt(tx_hash=tx_hash, success=bool(self.confirm), block_number=100, confirmations=1)

    def get_receipt(self, tx_hash):
        return self.receipts.get(tx_hash)

    def land(self, tx_hash, success=True):
        self.receipts[tx_hash] = TransferReceipt(tx_hash=tx_hash, success=success, block_number=101, confirmations=3)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def cfg(tmp_path):
    return FaucetConfig(
        database_url=f"sqlite:///{tmp_path / 'faucet.db'}",
        rpc_url="http://127.0.0.1:8545",
        rate_limit_enabled=False,
        confirmation_timeout_seconds=0,
    )


def _seed(faucet):
    registry = faucet["registry"]
    registry.upsert("BONE", "BONE", "0.1", 8)
    registry.upsert("SHIB", "Shiba Inu", "1000", 8, pool_ref=SHIB_CONTRACT)
    registry.upsert("TREAT", "TREAT", "5", 8, pool_ref=TREAT_CONTRACT)
    registry.upsert("USDC", "USD Coin", "1", 8, pool_ref=USDC_CONTRACT, is_active=False)


@pytest.fixture
def app(cfg, ledger, clock):
    application = create_app(cfg, ledger=ledger, clock=clock)
    with application.app_context():
        _seed(application.extensions["faucet"])
    yield application
    with application.app_context():
        db.session.remove()
        db.engine.dispose()


@pytest.fixture
def faucet(app):
    """Faucet components with an app context pushed for the test body."""
    with app.app_context():
        yield app.extensions["faucet"]


@pytest.fixture
def client(app):
    return app.test_client()
