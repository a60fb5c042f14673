"""Domain types shared by the store, the lifecycle manager and the HTTP layer."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from flowpay.errors import TransferError


class TransferStatus(str, Enum):
    PENDING = "pending"
    CLAIMING = "claiming"
    REFUNDING = "refunding"
    CLAIMED = "claimed"
    REFUNDED = "refunded"
    FAILED = "failed"
    # Display only; never persisted.
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in (TransferStatus.CLAIMED, TransferStatus.REFUNDED, TransferStatus.FAILED)

    @property
    def is_in_flight(self) -> bool:
        return self in (TransferStatus.CLAIMING, TransferStatus.REFUNDING)


class PayoutMethod(str, Enum):
    CRYPTO = "crypto"
    FIAT = "fiat"

    @classmethod
    def parse(cls, value: Any) -> "PayoutMethod":
        """Return the enum member for ``value`` or raise ``ValueError``."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            allowed = ", ".join(repr(m.value) for m in cls)
            raise ValueError(f"Payout method must be one of {allowed}") from None


@dataclass(frozen=True)
class Transfer:
    """Snapshot of a persisted transfer record."""

    id: str
    sender_id: str
    sender_address: str
    amount: Decimal
    token: str
    claim_token: str
    claim_link: str
    status: TransferStatus
    expires_at: datetime
    created_at: datetime
    updated_at: datetime
    recipient_email: Optional[str] = None
    sender_email: Optional[str] = None
    note: Optional[str] = None
    payout_method: Optional[PayoutMethod] = None
    escrow_tx_ref: Optional[str] = None
    claim_tx_ref: Optional[str] = None
    inflight_tx_ref: Optional[str] = None
    claimed_by_address: Optional[str] = None
    claimed_at: Optional[datetime] = None
    reminder_sent_at: Optional[datetime] = None
    failure_reason: Optional[str] = None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "sender_id": self.sender_id,
            "sender_address": self.sender_address,
            "recipient_email": self.recipient_email,
            "amount": str(self.amount),
            "token": self.token,
            "claim_link": self.claim_link,
            "note": self.note,
            "status": self.status.value,
            "payout_method": self.payout_method.value if self.payout_method else None,
            "escrow_tx_ref": self.escrow_tx_ref,
            "claim_tx_ref": self.claim_tx_ref,
            "claimed_by_address": self.claimed_by_address,
            "claimed_at": self.claimed_at.isoformat() if self.claimed_at else None,
            "expires_at": self.expires_at.isoformat(),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass(frozen=True)
class EscrowMetrics:
    total_locked: Decimal
    transfer_count: int
    active_transfers: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_locked": str(self.total_locked),
            "transfer_count": self.transfer_count,
            "active_transfers": self.active_transfers,
        }


@dataclass
class TransferResult:
    """Outcome of a lifecycle operation, returned instead of raising."""

    success: bool
    transfer: Optional[Transfer] = None
    error: Optional[TransferError] = None

    @classmethod
    def ok(cls, transfer: Optional[Transfer] = None) -> "TransferResult":
        return cls(success=True, transfer=transfer)

    @classmethod
    def fail(cls, error: TransferError, transfer: Optional[Transfer] = None) -> "TransferResult":
        return cls(success=False, transfer=transfer, error=error)


@dataclass
class SweepReport:
    scanned: int = 0
    refunded: int = 0
    failed: int = 0
    skipped: int = 0
    errors: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "scanned": self.scanned,
            "refunded": self.refunded,
            "failed": self.failed,
            "skipped": self.skipped,
            "errors": dict(self.errors),
        }


@dataclass
class ReconciliationReport:
    ledger_total_locked: Decimal
    expected_total_locked: Decimal
    ledger_active_transfers: int
    expected_active_transfers: int

    @property
    def balanced(self) -> bool:
        return (
            self.ledger_total_locked == self.expected_total_locked
            and self.ledger_active_transfers == self.expected_active_transfers
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "balanced": self.balanced,
            "ledger_total_locked": str(self.ledger_total_locked),
            "expected_total_locked": str(self.expected_total_locked),
            "ledger_active_transfers": self.ledger_active_transfers,
            "expected_active_transfers": self.expected_active_transfers,
        }
