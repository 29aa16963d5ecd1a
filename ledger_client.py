"""Ledger client: talks to the chain for the faucet's hot wallet.

Plain JSON-RPC over HTTP (no web3.py) plus eth_account for signing.
Transfers are two explicit phases: `submit_transfer` broadcasts and returns
the hash, `wait_for_confirmation` polls for a receipt up to a bound.
"""

from __future__ import annotations

import json
import logging
import re
import threading
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Optional
from urllib import request as urlrequest
from urllib.error import URLError

from eth_account import Account
from eth_utils import is_address, to_checksum_address

from config import NATIVE_POOL, FaucetConfig


logger = logging.getLogger(__name__)

_WALLET_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")

NATIVE_DECIMALS = 18
NATIVE_GAS_LIMIT = 21000
TOKEN_GAS_BUFFER = 10000

# function selectors
SEL_TRANSFER = "a9059cbb"     # transfer(address,uint256)
SEL_BALANCE_OF = "70a08231"   # balanceOf(address)
SEL_DECIMALS = "313ce567"     # decimals()


class LedgerError(Exception):
    pass


class RpcError(LedgerError):
    pass


class InvalidAddressError(LedgerError):
    pass


class TransferSubmissionError(LedgerError):
    pass


@dataclass(frozen=True)
class TransferReceipt:
    tx_hash: str
    success: bool
    block_number: int
    confirmations: int


# -------------------------------
# JSON-RPC helpers
# -------------------------------
def _rpc_post(url: str, method: str, params=None, timeout=12):
    params = params or []
    payload = json.dumps({"jsonrpc": "2.0", "id": 1, "method": method, "params": params}).encode("utf-8")
    req = urlrequest.Request(url, data=payload, headers={"Content-Type": "application/json"})
    try:
        with urlrequest.urlopen(req, timeout=timeout) as resp:
            data = json.loads(resp.read().decode("utf-8"))
    except (URLError, OSError, ValueError) as e:
        raise RpcError(f"{method} failed: {e}") from e
    if "error" in data:
        raise RpcError(f"{method} failed: {data['error']}")
    return data.get("result")


def _hex_to_int(x):
    if x is None or x in ("0x", ""):
        return 0
    return int(x, 16)


def _normalize_addr(a: str) -> str:
    return (a or "").lower()


def _word(value: int) -> str:
    return format(value, "064x")


def _encode_address(addr: str) -> str:
    return _word(int(addr, 16))


def encode_erc20_transfer(to_addr: str, amount_units: int) -> str:
    return "0x" + SEL_TRANSFER + _encode_address(to_addr) + _word(amount_units)


def to_base_units(amount: Decimal, decimals: int) -> int:
    """Exact Decimal -> integer base units; refuses to round away dust."""
    scaled = Decimal(amount).scaleb(decimals)
    if scaled != scaled.to_integral_value():
        raise ValueError(f"{amount} has more than {decimals} decimal places")
    if scaled <= 0:
        raise ValueError("amount must be positive")
    return int(scaled)


def from_base_units(units: int, decimals: int) -> Decimal:
    return Decimal(units).scaleb(-decimals)


class LedgerClient:
    def __init__(self, cfg: FaucetConfig):
        if not cfg.rpc_url:
            raise LedgerError("TESTNET_RPC_URL is required")
        if not cfg.private_key:
            raise LedgerError("PRIVATE_KEY is required")
        self.cfg = cfg
        self._account = Account.from_key(cfg.private_key)
        self._send_lock = threading.Lock()
        self._next_nonce: Optional[int] = None
        self._decimals: Dict[str, int] = {}

    @property
    def faucet_address(self) -> str:
        return self._account.address

    def _rpc(self, method: str, params=None):
        return _rpc_post(self.cfg.rpc_url, method, params, timeout=self.cfg.rpc_timeout_seconds)

    @staticmethod
    def is_valid_address(address: str) -> bool:
        return bool(_WALLET_RE.match(address or "")) and is_address(address)

    # ---- balances ----

    def token_decimals(self, contract: str) -> int:
        contract = _normalize_addr(contract)
        if contract not in self._decimals:
            raw = self._rpc("eth_call", [{"to": contract, "data": "0x" + SEL_DECIMALS}, "latest"])
            self._decimals[contract] = _hex_to_int(raw)
        return self._decimals[contract]

    def get_pool_balance(self, pool_ref: str) -> Decimal:
        """Hot-wallet balance for a pool ("native" or a token contract)."""
        if pool_ref == NATIVE_POOL:
            wei = _hex_to_int(self._rpc("eth_getBalance", [self.faucet_address, "latest"]))
            return from_base_units(wei, NATIVE_DECIMALS)
        data = "0x" + SEL_BALANCE_OF + _encode_address(self.faucet_address)
        raw = self._rpc("eth_call", [{"to": _normalize_addr(pool_ref), "data": data}, "latest"])
        return from_base_units(_hex_to_int(raw), self.token_decimals(pool_ref))

    # ---- phase 1: submit ----

    def _allocate_nonce(self) -> int:
        chain_nonce = _hex_to_int(self._rpc("eth_getTransactionCount", [self.faucet_address, "pending"]))
        if self._next_nonce is None or chain_nonce > self._next_nonce:
            self._next_nonce = chain_nonce
        nonce = self._next_nonce
        self._next_nonce += 1
        return nonce

    def _build_tx(self, pool_ref: str, to_addr: str, amount: Decimal) -> dict:
        to_checksum = to_checksum_address(to_addr)
        gas_price = _hex_to_int(self._rpc("eth_gasPrice", []))
        if pool_ref == NATIVE_POOL:
            return {
                "to": to_checksum,
                "value": to_base_units(amount, NATIVE_DECIMALS),
                "gas": NATIVE_GAS_LIMIT,
                "gasPrice": gas_price,
                "data": "0x",
                "chainId": self.cfg.chain_id,
            }
        contract = to_checksum_address(pool_ref)
        data = encode_erc20_transfer(to_addr, to_base_units(amount, self.token_decimals(pool_ref)))
        estimate = _hex_to_int(self._rpc(
            "eth_estimateGas",
            [{"from": self.faucet_address, "to": contract, "data": data}],
        ))
        return {
            "to": contract,
            "value": 0,
            "gas": estimate + TOKEN_GAS_BUFFER,
            "gasPrice": gas_price,
            "data": data,
            "chainId": self.cfg.chain_id,
        }

    def submit_transfer(self, pool_ref: str, to_addr: str, amount: Decimal) -> str:
        """Sign and broadcast. Returns the tx hash; raises LedgerError."""
        if not self.is_valid_address(to_addr):
            raise InvalidAddressError(f"invalid wallet address: {to_addr!r}")
        try:
            tx = self._build_tx(pool_ref, to_addr, amount)
        except ValueError as e:
            raise TransferSubmissionError(str(e)) from e

        # Nonce allocation and broadcast must not interleave across claims.
        with self._send_lock:
            tx["nonce"] = self._allocate_nonce()
            signed = self._account.sign_transaction(tx)
            raw = "0x" + bytes(signed.raw_transaction).hex()
            try:
                tx_hash = self._rpc("eth_sendRawTransaction", [raw])
            except RpcError as e:
                # The nonce may not have been consumed; resync from the node next time.
                self._next_nonce = None
                raise TransferSubmissionError(str(e)) from e

        if not tx_hash:
            raise TransferSubmissionError("node returned no transaction hash")
        logger.info("Transfer broadcast: %s %s -> %s (%s)", amount, pool_ref, _normalize_addr(to_addr), tx_hash)
        return tx_hash.lower()

    # ---- phase 2: confirm ----

    def get_receipt(self, tx_hash: str) -> Optional[TransferReceipt]:
        receipt = self._rpc("eth_getTransactionReceipt", [tx_hash])
        if not receipt or not receipt.get("blockNumber"):
            return None
        block = _hex_to_int(receipt.get("blockNumber"))
        latest = _hex_to_int(self._rpc("eth_blockNumber", []))
        return TransferReceipt(
            tx_hash=_normalize_addr(tx_hash),
            success=_hex_to_int(receipt.get("status")) == 1,
            block_number=block,
            confirmations=max(0, latest - block) + 1,
        )

    def wait_for_confirmation(self, tx_hash: str, timeout: Optional[float] = None) -> Optional[TransferReceipt]:
        """Poll until the receipt has enough confirmations.

        Returns None when the bound elapses; a reverted receipt is returned
        as-is (success=False).
        """
        timeout = self.cfg.confirmation_timeout_seconds if timeout is None else timeout
        deadline = time.monotonic() + timeout
        while True:
            try:
                receipt = self.get_receipt(tx_hash)
            except RpcError as e:
                logger.warning("Receipt lookup failed for %s: %s", tx_hash, e)
                receipt = None
            if receipt is not None and (not receipt.success or receipt.confirmations >= self.cfg.confirmations):
                return receipt
            if time.monotonic() >= deadline:
                return None
            time.sleep(self.cfg.confirmation_poll_seconds)

    # ---- diagnostics ----

    def test_connection(self) -> bool:
        try:
            chain_id = _hex_to_int(self._rpc("eth_chainId", []))
            balance = self.get_pool_balance(NATIVE_POOL)
        except LedgerError as e:
            logger.error("Ledger connection test failed: %s", e)
            return False
        logger.info("Connected to chain %s, faucet %s holds %s", chain_id, self.faucet_address, balance)
        if chain_id != self.cfg.chain_id:
            logger.warning("Configured CHAIN_ID %s does not match node chain id %s", self.cfg.chain_id, chain_id)
        return True
