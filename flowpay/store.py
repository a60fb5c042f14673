"""
Database-backed transfer store for FlowPay.

The store is the single source of truth for transfer status. Every status
transition goes through ``compare_and_set``, a conditional UPDATE guarded on
the expected current status, so concurrent claims, refunds and sweeps race on
the database row rather than on process memory.
"""

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import func, text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from flowpay.domain import PayoutMethod, Transfer, TransferStatus
from flowpay.errors import ClaimTokenCollision, StoreError
from flowpay.models import TransferRecord, utc_now

logger = logging.getLogger(__name__)

# Statuses whose funds still sit in escrow on the ledger.
CUSTODY_STATUSES = (TransferStatus.PENDING, TransferStatus.CLAIMING, TransferStatus.REFUNDING)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything stored is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _column_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    return value


def to_transfer(record: TransferRecord) -> Transfer:
    """Convert an ORM row into an immutable ``Transfer`` snapshot."""
    return Transfer(
        id=record.id,
        sender_id=record.sender_id,
        sender_address=record.sender_address,
        sender_email=record.sender_email,
        recipient_email=record.recipient_email,
        amount=Decimal(record.amount),
        token=record.token,
        claim_token=record.claim_token,
        claim_link=record.claim_link,
        note=record.note,
        status=TransferStatus(record.status),
        payout_method=PayoutMethod(record.payout_method) if record.payout_method else None,
        escrow_tx_ref=record.escrow_tx_ref,
        claim_tx_ref=record.claim_tx_ref,
        inflight_tx_ref=record.inflight_tx_ref,
        claimed_by_address=record.claimed_by_address,
        claimed_at=_as_utc(record.claimed_at),
        expires_at=_as_utc(record.expires_at),
        reminder_sent_at=_as_utc(record.reminder_sent_at),
        failure_reason=record.failure_reason,
        created_at=_as_utc(record.created_at),
        updated_at=_as_utc(record.updated_at),
    )


class TransferStore:
    """Persistence for transfer records.

    Args:
        session_factory: Callable returning a new SQLAlchemy session, e.g. the
            scoped factory from ``flowpay.database.get_session_factory()``.
    """

    def __init__(self, session_factory):
        self._session_factory = session_factory

    @contextmanager
    def _scope(self):
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except IntegrityError:
            session.rollback()
            raise
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Transfer store operation failed: {e}")
            raise StoreError(f"Database error: {e}") from e
        finally:
            session.close()

    def ping(self) -> None:
        """Round-trip to the database; raises StoreError when unreachable."""
        with self._scope() as session:
            session.execute(text("SELECT 1"))

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def insert(self, **fields: Any) -> Transfer:
        """
        Insert a new transfer record.

        Raises:
            ClaimTokenCollision: The id or claim token already exists.
            StoreError: Any other database failure.
        """
        now = utc_now()
        values = {key: _column_value(value) for key, value in fields.items()}
        values.setdefault("status", TransferStatus.PENDING.value)
        values.setdefault("created_at", now)
        values.setdefault("updated_at", now)
        try:
            with self._scope() as session:
                record = TransferRecord(**values)
                session.add(record)
                session.flush()
                return to_transfer(record)
        except IntegrityError as e:
            raise ClaimTokenCollision("Transfer id or claim token already exists") from e

    def compare_and_set(
        self,
        transfer_id: str,
        expected: TransferStatus,
        new_status: TransferStatus,
        *,
        expires_after: Optional[datetime] = None,
        expires_not_after: Optional[datetime] = None,
        **fields: Any,
    ) -> bool:
        """
        Atomically move a record from ``expected`` to ``new_status``.

        Optional expiry guards are evaluated in the same UPDATE statement.

        Returns:
            True if this call performed the transition, False if the row was
            not in ``expected`` state (someone else won, or it never was).
        """
        values = {key: _column_value(value) for key, value in fields.items()}
        values["status"] = new_status.value
        values["updated_at"] = utc_now()

        with self._scope() as session:
            query = session.query(TransferRecord).filter(
                TransferRecord.id == transfer_id,
                TransferRecord.status == expected.value,
            )
            if expires_after is not None:
                query = query.filter(TransferRecord.expires_at > expires_after)
            if expires_not_after is not None:
                query = query.filter(TransferRecord.expires_at <= expires_not_after)
            updated = query.update(values, synchronize_session=False)

        return updated == 1

    def update_fields(self, transfer_id: str, expected: TransferStatus, **fields: Any) -> bool:
        """Set non-status fields on a record that is still in ``expected`` state."""
        values = {key: _column_value(value) for key, value in fields.items()}
        values["updated_at"] = utc_now()
        with self._scope() as session:
            updated = (
                session.query(TransferRecord)
                .filter(TransferRecord.id == transfer_id, TransferRecord.status == expected.value)
                .update(values, synchronize_session=False)
            )
        return updated == 1

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_by_id(self, transfer_id: str) -> Optional[Transfer]:
        with self._scope() as session:
            record = session.get(TransferRecord, transfer_id)
            return to_transfer(record) if record else None

    def get_by_claim_token(self, claim_token: str) -> Optional[Transfer]:
        with self._scope() as session:
            record = session.query(TransferRecord).filter_by(claim_token=claim_token).first()
            return to_transfer(record) if record else None

    def list_by_sender(self, sender_id: str) -> List[Transfer]:
        with self._scope() as session:
            records = (
                session.query(TransferRecord)
                .filter_by(sender_id=sender_id)
                .order_by(TransferRecord.created_at.desc())
                .all()
            )
            return [to_transfer(r) for r in records]

    def list_expired_pending(self, now: datetime, limit: int = 500) -> List[Transfer]:
        with self._scope() as session:
            records = (
                session.query(TransferRecord)
                .filter(
                    TransferRecord.status == TransferStatus.PENDING.value,
                    TransferRecord.expires_at < now,
                )
                .order_by(TransferRecord.expires_at.asc())
                .limit(limit)
                .all()
            )
            return [to_transfer(r) for r in records]

    def list_expiring_unreminded(self, now: datetime, until: datetime) -> List[Transfer]:
        """Live transfers with a recipient email expiring in ``(now, until]``."""
        with self._scope() as session:
            records = (
                session.query(TransferRecord)
                .filter(
                    TransferRecord.status == TransferStatus.PENDING.value,
                    TransferRecord.expires_at > now,
                    TransferRecord.expires_at <= until,
                    TransferRecord.recipient_email.isnot(None),
                    TransferRecord.reminder_sent_at.is_(None),
                    TransferRecord.escrow_tx_ref.isnot(None),
                )
                .order_by(TransferRecord.expires_at.asc())
                .all()
            )
            return [to_transfer(r) for r in records]

    def list_with_inflight_ref(self, statuses: Iterable[TransferStatus]) -> List[Transfer]:
        with self._scope() as session:
            records = (
                session.query(TransferRecord)
                .filter(
                    TransferRecord.status.in_([s.value for s in statuses]),
                    TransferRecord.inflight_tx_ref.isnot(None),
                )
                .all()
            )
            return [to_transfer(r) for r in records]

    def list_in_flight(self, updated_before: datetime) -> List[Transfer]:
        """Reservations with no submitted ledger reference older than ``updated_before``."""
        with self._scope() as session:
            records = (
                session.query(TransferRecord)
                .filter(
                    TransferRecord.status.in_([TransferStatus.CLAIMING.value, TransferStatus.REFUNDING.value]),
                    TransferRecord.inflight_tx_ref.is_(None),
                    TransferRecord.updated_at < updated_before,
                )
                .all()
            )
            return [to_transfer(r) for r in records]

    def stats_for_sender(self, sender_id: str) -> Dict[str, Any]:
        """Per-status counts and per-token amounts for one sender."""
        with self._scope() as session:
            rows = (
                session.query(
                    TransferRecord.status,
                    TransferRecord.token,
                    func.count(TransferRecord.id),
                    func.coalesce(func.sum(TransferRecord.amount), 0),
                )
                .filter(TransferRecord.sender_id == sender_id)
                .group_by(TransferRecord.status, TransferRecord.token)
                .all()
            )

        by_status: Dict[str, int] = {}
        sent: Dict[str, Decimal] = {}
        claimed: Dict[str, Decimal] = {}
        refunded: Dict[str, Decimal] = {}
        total = 0
        for status, token, count, amount in rows:
            amount = Decimal(str(amount))
            total += count
            by_status[status] = by_status.get(status, 0) + count
            if status == TransferStatus.FAILED.value:
                continue
            sent[token] = sent.get(token, Decimal("0")) + amount
            if status == TransferStatus.CLAIMED.value:
                claimed[token] = claimed.get(token, Decimal("0")) + amount
            elif status == TransferStatus.REFUNDED.value:
                refunded[token] = refunded.get(token, Decimal("0")) + amount

        return {
            "sender_id": sender_id,
            "total_transfers": total,
            "by_status": by_status,
            "amount_sent": {k: str(v) for k, v in sent.items()},
            "amount_claimed": {k: str(v) for k, v in claimed.items()},
            "amount_refunded": {k: str(v) for k, v in refunded.items()},
        }

    def expected_custody(self) -> Dict[str, Any]:
        """
        Amount the ledger escrow should hold according to the store.

        Counts funded records that have not left custody: pending, in-flight,
        and fiat claims awaiting bridge reconciliation (no ledger release).
        """
        with self._scope() as session:
            base = session.query(
                func.count(TransferRecord.id),
                func.coalesce(func.sum(TransferRecord.amount), 0),
            ).filter(TransferRecord.escrow_tx_ref.isnot(None))

            live_count, live_amount = base.filter(
                TransferRecord.status.in_([s.value for s in CUSTODY_STATUSES])
            ).one()
            fiat_count, fiat_amount = base.filter(
                TransferRecord.status == TransferStatus.CLAIMED.value,
                TransferRecord.payout_method == PayoutMethod.FIAT.value,
                TransferRecord.claim_tx_ref.is_(None),
            ).one()

        return {
            "total_locked": Decimal(str(live_amount)) + Decimal(str(fiat_amount)),
            "active_transfers": int(live_count) + int(fiat_count),
        }
