"""Claimable asset catalog."""

from sqlalchemy import Boolean, Column, DateTime, Integer, String

from extensions import db, utcnow


class Asset(db.Model):
    __tablename__ = "assets"

    symbol = Column(String(10), primary_key=True)
    name = Column(String(50), nullable=False)
    # Decimal string ("0.1"); never stored as a float.
    amount = Column(String(40), nullable=False)
    cooldown_hours = Column(Integer, nullable=False, default=8)
    # "native" for the chain coin, otherwise the ERC-20 contract address
    pool_ref = Column(String(42), nullable=False, default="native")
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)
