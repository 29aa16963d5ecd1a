"""Claim orchestration.

attempt_claim() runs admission, records intent, dispatches the transfer and
settles the claim, all while holding the lock for its (wallet, asset) key:

    resolve asset  (no lock)
    -- lock --
    cooldown check -> balance check -> create pending (commit)
    submit -> record hash (commit) -> wait for confirmation
    confirmed + cooldown (one commit)  |  failed (commit)
    -- unlock --

Two calls for the same key can therefore never both see "eligible". Calls for
different keys only share the ledger client's nonce lock.
"""

from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError

from assets import AssetInfo, AssetRegistry, normalize_symbol
from claim_outcomes import (
    ClaimOutcome,
    ConcurrencyConflict,
    CooldownActive,
    InsufficientPoolBalance,
    StorageUnavailable,
    Success,
    TransferFailed,
    UnsupportedAsset,
    format_remaining,
)
from claim_records import ClaimRecordStore, ClaimStateConflict
from config import FaucetConfig
from cooldowns import CooldownLedger, normalize_wallet
from extensions import db, utcnow
from keyed_locks import KeyedLocks, LockTimeout
from ledger_client import LedgerError


logger = logging.getLogger(__name__)


class ClaimOrchestrator:
    def __init__(
        self,
        cfg: FaucetConfig,
        registry: AssetRegistry,
        cooldowns: CooldownLedger,
        claims: ClaimRecordStore,
        ledger,
        locks: Optional[KeyedLocks] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.cfg = cfg
        self.registry = registry
        self.cooldowns = cooldowns
        self.claims = claims
        self.ledger = ledger
        self.locks = locks or KeyedLocks()
        self.clock = clock

    def attempt_claim(self, wallet: str, asset_symbol: str) -> ClaimOutcome:
        wallet = normalize_wallet(wallet)
        symbol = normalize_symbol(asset_symbol)

        try:
            asset, reason = self.registry.resolve_claimable(symbol)
        except SQLAlchemyError:
            logger.exception("Asset lookup failed for %s", symbol)
            db.session.rollback()
            return StorageUnavailable(asset=symbol)
        if asset is None:
            logger.info("Claim rejected: %s is %s (wallet %s)", symbol, reason, wallet)
            return UnsupportedAsset(asset=symbol, reason=reason)

        try:
            with self.locks.hold((wallet, symbol), timeout=self.cfg.claim_lock_timeout_seconds):
                return self._attempt_locked(wallet, asset)
        except LockTimeout:
            logger.warning("Claim lock timed out for %s/%s", wallet, symbol)
            self.claims.record_event(wallet, symbol, "concurrency_conflict", "lock wait timed out")
            return ConcurrencyConflict(asset=symbol)

    # ---- critical section ----

    def _attempt_locked(self, wallet: str, asset: AssetInfo) -> ClaimOutcome:
        symbol = asset.symbol
        # Another thread may have committed since this session last read.
        db.session.expire_all()

        try:
            if not self.cooldowns.is_eligible(wallet, symbol, asset.cooldown):
                remaining = self.cooldowns.remaining(wallet, symbol, asset.cooldown)
                db.session.rollback()
                self.claims.record_event(
                    wallet, symbol, "cooldown_active", f"remaining {format_remaining(remaining)}"
                )
                return CooldownActive(
                    asset=symbol,
                    remaining=remaining,
                    next_eligible_at=self.clock() + remaining,
                )
        except SQLAlchemyError:
            logger.exception("Cooldown lookup failed for %s/%s", wallet, symbol)
            db.session.rollback()
            return StorageUnavailable(asset=symbol)

        available = self._pool_balance(asset)
        if available < asset.amount:
            logger.warning("Pool for %s too low: %s < %s", symbol, available, asset.amount)
            self.claims.record_event(
                wallet, symbol, "insufficient_pool_balance", f"available {available}, need {asset.amount}"
            )
            return InsufficientPoolBalance(asset=symbol, required=asset.amount, available=available)

        try:
            claim = self.claims.create(wallet, symbol, asset.amount)
            claim_id = claim.id
            db.session.commit()
        except SQLAlchemyError:
            logger.exception("Could not record pending claim for %s/%s", wallet, symbol)
            db.session.rollback()
            return StorageUnavailable(asset=symbol)

        logger.info("Claim %s pending: %s %s -> %s", claim_id, asset.amount, symbol, wallet)
        return self._dispatch(claim_id, wallet, asset)

    def _pool_balance(self, asset: AssetInfo) -> Decimal:
        try:
            return self.ledger.get_pool_balance(asset.pool_ref)
        except LedgerError as e:
            # An unreadable pool is treated as an empty one.
            logger.warning("Balance lookup failed for %s: %s", asset.symbol, e)
            return Decimal("0")

    def _dispatch(self, claim_id: int, wallet: str, asset: AssetInfo) -> ClaimOutcome:
        symbol = asset.symbol
        amount = asset.amount

        try:
            tx_hash = self.ledger.submit_transfer(asset.pool_ref, wallet, amount)
        except LedgerError as e:
            return self._fail(claim_id, asset, f"submit: {e}")
        except Exception as e:
            logger.exception("Unexpected ledger error submitting claim %s", claim_id)
            return self._fail(claim_id, asset, f"submit: {e}")

        try:
            self.claims.record_submission(claim_id, tx_hash)
            db.session.commit()
        except SQLAlchemyError:
            # The transfer is already in flight; keep going and retry the write on settle.
            logger.exception("Could not record tx %s for claim %s", tx_hash, claim_id)
            db.session.rollback()

        try:
            receipt = self.ledger.wait_for_confirmation(tx_hash, self.cfg.confirmation_timeout_seconds)
        except Exception:
            logger.exception("Confirmation wait failed for %s", tx_hash)
            receipt = None

        if receipt is None:
            return self._fail(
                claim_id, asset,
                f"no confirmation within {self.cfg.confirmation_timeout_seconds}s",
                tx_hash=tx_hash,
            )
        if not receipt.success:
            return self._fail(claim_id, asset, "transfer reverted", tx_hash=tx_hash)

        now = self.clock()
        try:
            self.claims.transition_to_confirmed(claim_id, tx_hash, at=now)
            self.cooldowns.mark_claimed(wallet, symbol, at=now)
            db.session.commit()
        except ClaimStateConflict as e:
            db.session.rollback()
            logger.error("Claim %s settled elsewhere: %s", claim_id, e)
            return ConcurrencyConflict(asset=symbol)
        except SQLAlchemyError:
            # Funds went out but neither row changed; the reconciler repairs this.
            logger.exception("Could not finalize confirmed claim %s (tx %s)", claim_id, tx_hash)
            db.session.rollback()
            return StorageUnavailable(asset=symbol, claim_id=claim_id)

        logger.info("Claim %s confirmed: %s %s -> %s (%s)", claim_id, amount, symbol, wallet, tx_hash)
        return Success(
            claim_id=claim_id,
            wallet=wallet,
            asset=symbol,
            amount=amount,
            transfer_ref=tx_hash,
            next_eligible_at=now + asset.cooldown,
        )

    def _fail(self, claim_id: int, asset: AssetInfo, reason: str, tx_hash: Optional[str] = None) -> ClaimOutcome:
        logger.warning("Claim %s failed: %s", claim_id, reason)
        try:
            self.claims.transition_to_failed(claim_id, reason, submitted_tx_hash=tx_hash)
            db.session.commit()
        except ClaimStateConflict as e:
            db.session.rollback()
            logger.error("Claim %s settled elsewhere: %s", claim_id, e)
        except SQLAlchemyError:
            # Left pending; the reconciler closes it out.
            logger.exception("Could not mark claim %s failed", claim_id)
            db.session.rollback()
        return TransferFailed(claim_id=claim_id, asset=asset.symbol, amount=asset.amount, reason=reason)

    # ---- read-only views ----

    def wallet_status(self, wallet: str) -> list[dict]:
        wallet = normalize_wallet(wallet)
        now = self.clock()
        out = []
        for asset in self.registry.list_active():
            can_claim = self.cooldowns.is_eligible(wallet, asset.symbol, asset.cooldown)
            remaining = self.cooldowns.remaining(wallet, asset.symbol, asset.cooldown)
            out.append({
                "asset": asset.symbol,
                "name": asset.name,
                "amount": str(asset.amount),
                "cooldownHours": int(asset.cooldown.total_seconds() // 3600),
                "canClaim": can_claim,
                "remainingCooldown": int(remaining.total_seconds() * 1000),
                "remainingTime": format_remaining(remaining) if not can_claim else None,
                "nextClaimAt": (now + remaining).isoformat() + "Z" if not can_claim else None,
            })
        return out
