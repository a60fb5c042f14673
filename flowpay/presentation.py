"""Claim-page presentation helpers.

Everything here is a pure function of a transfer snapshot and the current
time; nothing is cached, so the answer changes the moment a transfer expires.
The authoritative claimability check still happens in ``TransferService``.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from flowpay.domain import PayoutMethod, Transfer, TransferStatus
from flowpay.errors import AlreadySettled, Expired, NotFound, TransferError


@dataclass(frozen=True)
class TimeRemaining:
    expired: bool
    text: str


def _now(now: Optional[datetime]) -> datetime:
    return now or datetime.now(timezone.utc)


def compute_time_remaining(expires_at: datetime, now: Optional[datetime] = None) -> TimeRemaining:
    """Day/hour/minute countdown, collapsing to ``Expired`` at ``expires_at``."""
    diff = int((expires_at - _now(now)).total_seconds())
    if diff <= 0:
        return TimeRemaining(expired=True, text="Expired")

    days, rest = divmod(diff, 86400)
    hours, rest = divmod(rest, 3600)
    minutes = rest // 60

    if days > 0:
        return TimeRemaining(expired=False, text=f"{days}d {hours}h remaining")
    if hours > 0:
        return TimeRemaining(expired=False, text=f"{hours}h {minutes}m remaining")
    return TimeRemaining(expired=False, text=f"{minutes}m remaining")


def _plural(count: int, unit: str) -> str:
    return f"{count} {unit}{'s' if count != 1 else ''}"


def format_time_until(expires_at: datetime, now: Optional[datetime] = None) -> str:
    """Long-form wording used in emails, e.g. ``6 days and 23 hours``."""
    diff = int((expires_at - _now(now)).total_seconds())
    if diff <= 0:
        return "less than 1 hour"

    days, rest = divmod(diff, 86400)
    hours, rest = divmod(rest, 3600)
    if days > 0:
        return f"{_plural(days, 'day')} and {_plural(hours, 'hour')}"
    if hours > 0:
        return _plural(hours, "hour")
    return _plural(rest // 60, "minute")


def format_address(address: Optional[str]) -> str:
    if not address:
        return ""
    if len(address) < 12:
        return address
    return f"{address[:6]}...{address[-4:]}"


def is_claimable(transfer: Transfer, now: Optional[datetime] = None) -> bool:
    return transfer.status is TransferStatus.PENDING and not transfer.is_expired(_now(now))


def display_status(transfer: Transfer, now: Optional[datetime] = None) -> TransferStatus:
    """Status as a recipient should see it.

    A pending transfer past its expiry reads as ``expired`` even before a
    sweep has refunded it. In-flight reservations read as ``pending``.
    """
    if transfer.status in (TransferStatus.PENDING, TransferStatus.CLAIMING, TransferStatus.REFUNDING):
        if transfer.is_expired(_now(now)) and transfer.status is not TransferStatus.CLAIMING:
            return TransferStatus.EXPIRED
        return TransferStatus.PENDING
    return transfer.status


def available_payout_methods(transfer: Transfer, now: Optional[datetime] = None) -> List[str]:
    if not is_claimable(transfer, now):
        return []
    return [method.value for method in PayoutMethod]


def public_view(transfer: Transfer) -> Dict[str, Any]:
    """Fields safe to show to anyone holding the claim link."""
    return {
        "id": transfer.id,
        "sender_address": transfer.sender_address,
        "recipient_email": transfer.recipient_email,
        "amount": str(transfer.amount),
        "token": transfer.token,
        "note": transfer.note,
        "status": transfer.status.value,
        "expires_at": transfer.expires_at.isoformat(),
        "created_at": transfer.created_at.isoformat(),
        "claimed_at": transfer.claimed_at.isoformat() if transfer.claimed_at else None,
        "claimed_by_address": transfer.claimed_by_address,
    }


def sender_view(transfer: Transfer) -> Dict[str, Any]:
    """Listing entry for a sender; the claim link is only handed out at creation."""
    view = transfer.to_dict()
    view.pop("claim_link", None)
    return view


def claim_view(transfer: Transfer, now: Optional[datetime] = None) -> Dict[str, Any]:
    now = _now(now)
    remaining = compute_time_remaining(transfer.expires_at, now)
    view = public_view(transfer)
    view.update(
        {
            "display_status": display_status(transfer, now).value,
            "time_remaining": {"expired": remaining.expired, "text": remaining.text},
            "can_claim": is_claimable(transfer, now),
            "payout_methods": available_payout_methods(transfer, now),
            "sender_display": format_address(transfer.sender_address),
        }
    )
    return view


def error_message(error: TransferError) -> str:
    """User-facing wording; each case implies a different next step."""
    if isinstance(error, NotFound):
        return "This transfer link is invalid. Check that you copied the whole link."
    if isinstance(error, AlreadySettled):
        if error.status == TransferStatus.REFUNDED.value:
            return "This transfer was refunded to the sender because it expired."
        if error.status == TransferStatus.CLAIMED.value:
            return "This transfer has already been claimed. There is nothing left to do."
        return "This transfer is no longer available to claim."
    if isinstance(error, Expired):
        return "This transfer has expired and can no longer be claimed. Contact the sender."
    return error.message
