"""Claim record store.

Claims are created `pending` and move to exactly one terminal state. Each
transition is a single guarded UPDATE (`WHERE status = 'pending'`); the
rowcount tells us whether we won. Nothing here commits: the orchestrator and
the reconciler decide transaction boundaries.
"""

from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional

from sqlalchemy import func, update
from sqlalchemy.exc import SQLAlchemyError

from extensions import db, utcnow
from models_claims import (
    Claim,
    ClaimEvent,
    CooldownEntry,
    CLAIM_CONFIRMED,
    CLAIM_FAILED,
    CLAIM_PENDING,
)


logger = logging.getLogger(__name__)

HISTORY_MAX = 50


class ClaimNotFound(LookupError):
    pass


class ClaimStateConflict(RuntimeError):
    """Transition refused because the claim already left `pending`."""

    def __init__(self, claim_id: int, status: str, target: str):
        super().__init__(f"claim {claim_id} is {status}; refusing transition to {target}")
        self.claim_id = claim_id
        self.status = status
        self.target = target


class ClaimRecordStore:
    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self.clock = clock

    def create(self, wallet: str, asset: str, amount: Decimal) -> Claim:
        now = self.clock()
        claim = Claim(
            wallet=wallet,
            asset=asset,
            amount=format(Decimal(amount), "f"),
            status=CLAIM_PENDING,
            created_at=now,
            updated_at=now,
        )
        db.session.add(claim)
        db.session.flush()
        return claim

    def get(self, claim_id: int) -> Optional[Claim]:
        return db.session.get(Claim, claim_id)

    def _guarded_update(self, claim_id: int, from_status: str, target: str, values: dict) -> None:
        stmt = (
            update(Claim)
            .where(Claim.id == claim_id, Claim.status == from_status)
            .values(status=target, updated_at=self.clock(), **values)
            .execution_options(synchronize_session="fetch")
        )
        res = db.session.execute(stmt)
        if res.rowcount == 1:
            return
        current = db.session.get(Claim, claim_id)
        if current is None:
            raise ClaimNotFound(claim_id)
        db.session.refresh(current)
        raise ClaimStateConflict(claim_id, current.status, target)

    def record_submission(self, claim_id: int, tx_hash: str) -> None:
        """Remember the broadcast hash of a still-pending claim."""
        res = db.session.execute(
            update(Claim)
            .where(Claim.id == claim_id, Claim.status == CLAIM_PENDING)
            .values(submitted_tx_hash=tx_hash, updated_at=self.clock())
            .execution_options(synchronize_session="fetch")
        )
        if res.rowcount != 1:
            current = db.session.get(Claim, claim_id)
            if current is None:
                raise ClaimNotFound(claim_id)
            raise ClaimStateConflict(claim_id, current.status, CLAIM_PENDING)

    def transition_to_confirmed(self, claim_id: int, tx_hash: str, at: Optional[datetime] = None) -> None:
        self._guarded_update(
            claim_id,
            CLAIM_PENDING,
            CLAIM_CONFIRMED,
            {"tx_hash": tx_hash, "submitted_tx_hash": tx_hash, "confirmed_at": at or self.clock()},
        )

    def transition_to_failed(self, claim_id: int, reason: str = "", submitted_tx_hash: Optional[str] = None) -> None:
        values = {"failure_reason": (reason or "")[:200]}
        if submitted_tx_hash:
            values["submitted_tx_hash"] = submitted_tx_hash
        self._guarded_update(claim_id, CLAIM_PENDING, CLAIM_FAILED, values)

    def upgrade_late_confirmation(self, claim_id: int, tx_hash: str, at: Optional[datetime] = None) -> bool:
        """failed -> confirmed for a transfer that landed after we gave up on it.

        Only matches when the confirmed hash is the one we broadcast. Returns
        False (no error) when the claim was already upgraded.
        """
        res = db.session.execute(
            update(Claim)
            .where(
                Claim.id == claim_id,
                Claim.status == CLAIM_FAILED,
                Claim.submitted_tx_hash == tx_hash,
            )
            .values(
                status=CLAIM_CONFIRMED,
                tx_hash=tx_hash,
                confirmed_at=at or self.clock(),
                updated_at=self.clock(),
            )
            .execution_options(synchronize_session="fetch")
        )
        return res.rowcount == 1

    def history_for(self, wallet: str, limit: int = HISTORY_MAX) -> list[Claim]:
        limit = max(1, min(int(limit), HISTORY_MAX))
        return (
            Claim.query.filter(Claim.wallet == wallet)
            .order_by(Claim.created_at.desc(), Claim.id.desc())
            .limit(limit)
            .all()
        )

    def count_for(self, wallet: str, asset: Optional[str] = None) -> int:
        q = Claim.query.filter(Claim.wallet == wallet)
        if asset:
            q = q.filter(Claim.asset == asset)
        return q.count()

    # ---- reconciliation queries ----

    def stale_pending(self, older_than: datetime) -> list[Claim]:
        return (
            Claim.query.filter(Claim.status == CLAIM_PENDING, Claim.created_at < older_than)
            .order_by(Claim.created_at.asc())
            .all()
        )

    def failed_with_submission(self, since: datetime) -> list[Claim]:
        return (
            Claim.query.filter(
                Claim.status == CLAIM_FAILED,
                Claim.submitted_tx_hash.isnot(None),
                Claim.created_at >= since,
            )
            .order_by(Claim.created_at.asc())
            .all()
        )

    def cooldown_gaps(self, since: datetime):
        """(wallet, asset, newest confirmed_at) where the cooldown entry is
        missing or older than the newest confirmed claim."""
        newest = (
            db.session.query(
                Claim.wallet.label("wallet"),
                Claim.asset.label("asset"),
                func.max(Claim.confirmed_at).label("confirmed_at"),
            )
            .filter(Claim.status == CLAIM_CONFIRMED, Claim.confirmed_at >= since)
            .group_by(Claim.wallet, Claim.asset)
            .subquery()
        )
        rows = (
            db.session.query(newest.c.wallet, newest.c.asset, newest.c.confirmed_at)
            .outerjoin(
                CooldownEntry,
                (CooldownEntry.wallet == newest.c.wallet) & (CooldownEntry.asset == newest.c.asset),
            )
            .filter(
                (CooldownEntry.last_claim_at.is_(None))
                | (CooldownEntry.last_claim_at < newest.c.confirmed_at)
            )
            .all()
        )
        return [(r[0], r[1], r[2]) for r in rows]

    # ---- audit ----

    def record_event(self, wallet: str, asset: str, event_type: str, message: str = "") -> None:
        """Best-effort audit row for a rejected attempt (never raises)."""
        try:
            db.session.add(ClaimEvent(
                wallet=wallet,
                asset=asset,
                type=(event_type or "event")[:32],
                message=(message or "")[:500],
                created_at=self.clock(),
            ))
            db.session.commit()
        except SQLAlchemyError:
            logger.warning("Could not record %s event for %s/%s", event_type, wallet, asset, exc_info=True)
            db.session.rollback()

    def events_for(self, wallet: str, limit: int = HISTORY_MAX) -> list[ClaimEvent]:
        return (
            ClaimEvent.query.filter(ClaimEvent.wallet == wallet)
            .order_by(ClaimEvent.created_at.desc(), ClaimEvent.id.desc())
            .limit(limit)
            .all()
        )
