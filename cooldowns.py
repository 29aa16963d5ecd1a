"""Cooldown ledger: (wallet, asset) -> last successful claim time.

Writes go through the caller's session and are committed by the caller, so
a cooldown upsert can share a transaction with the claim confirmation.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, Optional

from extensions import db, utcnow
from models_claims import CooldownEntry


def normalize_wallet(wallet: str) -> str:
    return (wallet or "").strip().lower()


class CooldownLedger:
    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self.clock = clock

    def last_claim_at(self, wallet: str, asset: str) -> Optional[datetime]:
        entry = db.session.get(CooldownEntry, (normalize_wallet(wallet), asset))
        return entry.last_claim_at if entry else None

    def is_eligible(self, wallet: str, asset: str, cooldown: timedelta) -> bool:
        last = self.last_claim_at(wallet, asset)
        if last is None:
            return True
        # Strict: exactly at the boundary is still cooling down.
        return self.clock() - last > cooldown

    def remaining(self, wallet: str, asset: str, cooldown: timedelta) -> timedelta:
        last = self.last_claim_at(wallet, asset)
        if last is None:
            return timedelta(0)
        return max(timedelta(0), cooldown - (self.clock() - last))

    def next_eligible_at(self, wallet: str, asset: str, cooldown: timedelta) -> Optional[datetime]:
        last = self.last_claim_at(wallet, asset)
        return last + cooldown if last else None

    def mark_claimed(self, wallet: str, asset: str, at: Optional[datetime] = None) -> CooldownEntry:
        """Upsert the entry. Last writer wins; no commit."""
        at = at or self.clock()
        key = (normalize_wallet(wallet), asset)
        entry = db.session.get(CooldownEntry, key)
        if entry is None:
            entry = CooldownEntry(wallet=key[0], asset=asset, last_claim_at=at)
        else:
            entry.last_claim_at = at
        db.session.add(entry)
        db.session.flush()
        return entry

    def advance_to(self, wallet: str, asset: str, at: datetime) -> bool:
        """Like mark_claimed, but never moves an entry backwards."""
        last = self.last_claim_at(wallet, asset)
        if last is not None and last >= at:
            return False
        self.mark_claimed(wallet, asset, at=at)
        return True
