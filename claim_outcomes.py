"""Result values returned by ClaimOrchestrator.attempt_claim.

Every expected result of a claim attempt is one of these; none of them is an
exception. `http_status` is what the faucet API answers with.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional


def format_remaining(remaining: timedelta) -> str:
    total = max(0, int(remaining.total_seconds()))
    hours, rem = divmod(total, 3600)
    return f"{hours}h {rem // 60}m"


class ClaimOutcome:
    status = "unknown"
    http_status = 500
    ok = False

    def to_dict(self) -> dict:
        return {"success": self.ok, "status": self.status}


@dataclass(frozen=True)
class Success(ClaimOutcome):
    claim_id: int
    wallet: str
    asset: str
    amount: Decimal
    transfer_ref: str
    next_eligible_at: datetime

    status = "success"
    http_status = 200
    ok = True

    def to_dict(self) -> dict:
        return {
            "success": True,
            "status": self.status,
            "message": f"Successfully claimed {self.amount} {self.asset}!",
            "data": {
                "claimId": self.claim_id,
                "asset": self.asset,
                "amount": str(self.amount),
                "walletAddress": self.wallet,
                "transactionHash": self.transfer_ref,
                "nextClaimAt": self.next_eligible_at.isoformat() + "Z",
            },
        }


@dataclass(frozen=True)
class CooldownActive(ClaimOutcome):
    asset: str
    remaining: timedelta
    next_eligible_at: datetime

    status = "cooldown_active"
    http_status = 429

    def to_dict(self) -> dict:
        return {
            "success": False,
            "status": self.status,
            "error": "Cooldown Active",
            "message": f"Please wait {format_remaining(self.remaining)} before claiming {self.asset} again",
            "remainingTime": int(self.remaining.total_seconds() * 1000),
            "canClaimAt": self.next_eligible_at.isoformat() + "Z",
        }


@dataclass(frozen=True)
class InsufficientPoolBalance(ClaimOutcome):
    asset: str
    required: Decimal
    available: Decimal

    status = "insufficient_pool_balance"
    http_status = 503

    def to_dict(self) -> dict:
        return {
            "success": False,
            "status": self.status,
            "error": "Insufficient Faucet Balance",
            "message": f"Faucet does not have enough {self.asset}. Please try again later.",
        }


@dataclass(frozen=True)
class UnsupportedAsset(ClaimOutcome):
    asset: str
    reason: str

    status = "unsupported_asset"
    http_status = 400

    def to_dict(self) -> dict:
        return {
            "success": False,
            "status": self.status,
            "error": "Invalid Asset",
            "message": f"Asset {self.asset} is not supported or currently inactive",
        }


@dataclass(frozen=True)
class TransferFailed(ClaimOutcome):
    claim_id: int
    asset: str
    amount: Decimal
    reason: str

    status = "transfer_failed"
    http_status = 502

    def to_dict(self) -> dict:
        return {
            "success": False,
            "status": self.status,
            "error": "Transaction Failed",
            "message": "Failed to send transaction to blockchain. Please try again later.",
            "claimId": self.claim_id,
        }


@dataclass(frozen=True)
class ConcurrencyConflict(ClaimOutcome):
    asset: str

    status = "concurrency_conflict"
    http_status = 409

    def to_dict(self) -> dict:
        return {
            "success": False,
            "status": self.status,
            "error": "Claim In Progress",
            "message": f"Another {self.asset} claim for this wallet is still being processed",
        }


@dataclass(frozen=True)
class StorageUnavailable(ClaimOutcome):
    asset: str
    claim_id: Optional[int] = None
    retry_after_seconds: int = 30

    status = "storage_unavailable"
    http_status = 503

    def to_dict(self) -> dict:
        body = {
            "success": False,
            "status": self.status,
            "error": "Service Unavailable",
            "message": "Claim storage is unavailable. Please try again later.",
        }
        if self.claim_id is not None:
            body["claimId"] = self.claim_id
        return body
