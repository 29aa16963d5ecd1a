"""Claim reconciler (run as a background worker).

  python reconcile.py

Closes the gaps the request path cannot close on its own:
- pending claims abandoned by a crash or a failed settle write
- failed claims whose transfer landed after we stopped waiting
- confirmed claims whose cooldown write never made it

Within one process every repair takes the same per-(wallet, asset) lock as
the request path. Run as its own worker it has its own locks, so safety
against a live request comes from the guarded status UPDATEs and from only
touching pending claims older than STALE_PENDING_MINUTES.
Safe to run repeatedly; each pass is idempotent.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError

from claim_records import ClaimRecordStore, ClaimStateConflict
from config import FaucetConfig
from cooldowns import CooldownLedger
from extensions import db, utcnow
from keyed_locks import KeyedLocks, LockTimeout
from ledger_client import LedgerError
from models_claims import CLAIM_PENDING


logger = logging.getLogger(__name__)

# Reconciler never waits long for a key a live request is holding.
LOCK_WAIT_SECONDS = 1.0


class ClaimReconciler:
    def __init__(
        self,
        cfg: FaucetConfig,
        cooldowns: CooldownLedger,
        claims: ClaimRecordStore,
        ledger,
        locks: Optional[KeyedLocks] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.cfg = cfg
        self.cooldowns = cooldowns
        self.claims = claims
        self.ledger = ledger
        self.locks = locks or KeyedLocks()
        self.clock = clock

    def _receipt(self, tx_hash: str):
        try:
            return self.ledger.get_receipt(tx_hash)
        except LedgerError as e:
            logger.warning("Receipt lookup failed for %s: %s", tx_hash, e)
            raise

    def resolve_stale_pending(self) -> Dict[str, int]:
        now = self.clock()
        cutoff = now - timedelta(minutes=self.cfg.stale_pending_minutes)
        counts = {"confirmed": 0, "failed": 0, "skipped": 0}

        stale = [(c.id, c.wallet, c.asset) for c in self.claims.stale_pending(cutoff)]
        for claim_id, wallet, asset in stale:
            try:
                with self.locks.hold((wallet, asset), timeout=LOCK_WAIT_SECONDS):
                    db.session.expire_all()
                    claim = self.claims.get(claim_id)
                    if claim is None or claim.status != CLAIM_PENDING:
                        counts["skipped"] += 1
                        continue
                    tx_hash = claim.submitted_tx_hash
                    receipt = self._receipt(tx_hash) if tx_hash else None

                    if receipt is not None and receipt.success:
                        self.claims.transition_to_confirmed(claim_id, tx_hash, at=now)
                        self.cooldowns.advance_to(wallet, asset, now)
                        db.session.commit()
                        counts["confirmed"] += 1
                        logger.info("Reconciled pending claim %s as confirmed (%s)", claim_id, tx_hash)
                        continue

                    if receipt is not None:
                        reason = "transfer reverted"
                    elif tx_hash:
                        reason = "no confirmation before reconciliation"
                    else:
                        reason = "abandoned before submission"
                    self.claims.transition_to_failed(claim_id, reason)
                    db.session.commit()
                    counts["failed"] += 1
                    logger.info("Reconciled pending claim %s as failed: %s", claim_id, reason)
            except (LockTimeout, LedgerError, ClaimStateConflict):
                db.session.rollback()
                counts["skipped"] += 1
        return counts

    def upgrade_late_confirmations(self) -> Dict[str, int]:
        now = self.clock()
        since = now - timedelta(hours=self.cfg.reconcile_lookback_hours)
        counts = {"upgraded": 0, "skipped": 0}

        candidates = [
            (c.id, c.wallet, c.asset, c.submitted_tx_hash)
            for c in self.claims.failed_with_submission(since)
        ]
        for claim_id, wallet, asset, tx_hash in candidates:
            try:
                receipt = self._receipt(tx_hash)
            except LedgerError:
                counts["skipped"] += 1
                continue
            if receipt is None or not receipt.success:
                continue
            try:
                with self.locks.hold((wallet, asset), timeout=LOCK_WAIT_SECONDS):
                    if self.claims.upgrade_late_confirmation(claim_id, tx_hash, at=now):
                        self.cooldowns.advance_to(wallet, asset, now)
                        db.session.commit()
                        counts["upgraded"] += 1
                        logger.warning("Late confirmation: claim %s upgraded to confirmed (%s)", claim_id, tx_hash)
                    else:
                        db.session.rollback()
            except LockTimeout:
                counts["skipped"] += 1
        return counts

    def repair_cooldowns(self) -> Dict[str, int]:
        since = self.clock() - timedelta(hours=self.cfg.reconcile_lookback_hours)
        counts = {"repaired": 0, "skipped": 0}

        for wallet, asset, confirmed_at in self.claims.cooldown_gaps(since):
            try:
                with self.locks.hold((wallet, asset), timeout=LOCK_WAIT_SECONDS):
                    db.session.expire_all()
                    if self.cooldowns.advance_to(wallet, asset, confirmed_at):
                        db.session.commit()
                        counts["repaired"] += 1
                        logger.warning("Repaired cooldown for %s/%s -> %s", wallet, asset, confirmed_at)
                    else:
                        db.session.rollback()
            except LockTimeout:
                counts["skipped"] += 1
        return counts

    def run_once(self) -> Dict[str, Dict[str, int]]:
        return {
            "pending": self.resolve_stale_pending(),
            "late": self.upgrade_late_confirmations(),
            "cooldowns": self.repair_cooldowns(),
        }


def main():
    from app import build_reconciler, create_app

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    app = create_app()
    reconciler = build_reconciler(app)
    interval = app.extensions["faucet"]["config"].reconcile_interval_seconds
    logger.info("Reconciler started (every %ss)", interval)
    while True:
        with app.app_context():
            try:
                logger.info("Reconcile pass: %s", reconciler.run_once())
            except SQLAlchemyError:
                logger.exception("Reconcile pass failed")
                db.session.rollback()
        time.sleep(interval)


if __name__ == "__main__":
    main()
