from sqlalchemy import Column, DateTime, Index, Integer, String

from extensions import db, utcnow


CLAIM_PENDING = "pending"
CLAIM_CONFIRMED = "confirmed"
CLAIM_FAILED = "failed"

TERMINAL_STATUSES = (CLAIM_CONFIRMED, CLAIM_FAILED)


class CooldownEntry(db.Model):
    """Last successful claim per (wallet, asset)."""

    __tablename__ = "cooldowns"

    wallet = Column(String(42), primary_key=True)
    asset = Column(String(10), primary_key=True)
    last_claim_at = Column(DateTime, nullable=False)

    __table_args__ = (
        Index("idx_cooldowns_last_claim_at", "last_claim_at"),
    )


class Claim(db.Model):
    """One attempt by a wallet to receive an asset.

    `amount` is copied from the asset when the row is created and never
    re-read. `submitted_tx_hash` is set as soon as the transfer is broadcast;
    `tx_hash` only once the transfer is known to be confirmed.
    """

    __tablename__ = "claims"

    id = Column(Integer, primary_key=True)
    wallet = Column(String(42), nullable=False, index=True)
    asset = Column(String(10), nullable=False)
    amount = Column(String(40), nullable=False)

    status = Column(String(20), nullable=False, default=CLAIM_PENDING)
    submitted_tx_hash = Column(String(80), nullable=True, index=True)
    tx_hash = Column(String(80), nullable=True, unique=True)
    failure_reason = Column(String(200), nullable=False, default="")

    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    updated_at = Column(DateTime, nullable=False, default=utcnow)
    confirmed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("idx_claims_wallet_created", "wallet", "created_at"),
        Index("idx_claims_status_created", "status", "created_at"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "walletAddress": self.wallet,
            "asset": self.asset,
            "amount": self.amount,
            "status": self.status,
            "transactionHash": self.tx_hash,
            "claimedAt": self.created_at.isoformat() if self.created_at else None,
            "confirmedAt": self.confirmed_at.isoformat() if self.confirmed_at else None,
        }


class ClaimEvent(db.Model):
    """Append-only audit trail for attempts that never became a Claim."""

    __tablename__ = "claim_events"

    id = Column(Integer, primary_key=True)
    wallet = Column(String(42), nullable=False)
    asset = Column(String(10), nullable=False)
    # cooldown_active / insufficient_pool_balance / concurrency_conflict
    type = Column(String(32), nullable=False)
    message = Column(String(500), nullable=False, default="")
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("idx_claim_events_wallet_created", "wallet", "created_at"),
    )
