"""
SQLAlchemy database models for FlowPay.

Durable record of every escrowed transfer. Rows are never deleted; terminal
states are kept for audit.
"""

from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Index, Numeric, String, Text
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def utc_now():
    """Generate timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


class TransferRecord(Base):
    """
    Escrowed peer-to-peer transfer, claimable by link until it expires.
    """

    __tablename__ = "transfers"

    id = Column(String(64), primary_key=True)
    sender_id = Column(String(255), nullable=False, index=True)
    sender_address = Column(String(64), nullable=False)
    sender_email = Column(String(320))
    recipient_email = Column(String(320))
    amount = Column(Numeric(20, 8), nullable=False)
    token = Column(String(16), nullable=False)
    claim_token = Column(String(128), nullable=False, unique=True)  # bearer secret
    claim_link = Column(Text, nullable=False)
    note = Column(Text)
    status = Column(String(16), nullable=False, default="pending")
    payout_method = Column(String(16))
    escrow_tx_ref = Column(String(128))
    claim_tx_ref = Column(String(128))
    inflight_tx_ref = Column(String(128))  # submitted to the ledger, not yet sealed
    claimed_by_address = Column(String(64))
    claimed_at = Column(DateTime(timezone=True))
    expires_at = Column(DateTime(timezone=True), nullable=False)
    reminder_sent_at = Column(DateTime(timezone=True))
    failure_reason = Column(Text)
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False)

    __table_args__ = (
        Index("idx_transfer_status_expires", "status", "expires_at"),
        Index("idx_transfer_sender_created", "sender_id", "created_at"),
    )

    def __repr__(self):
        return f"<TransferRecord(id={self.id}, status={self.status}, amount={self.amount} {self.token})>"
