"""
Unit tests for the database-backed transfer store.
"""

from datetime import timedelta
from decimal import Decimal

import pytest
from conftest import NOW, SENDER_ADDRESS, SENDER_ID
from sqlalchemy.exc import OperationalError

from flowpay.domain import PayoutMethod, TransferStatus
from flowpay.errors import ClaimTokenCollision, StoreError


def _insert(store, transfer_id="transfer_1", claim_token="claim-token-0001", **overrides):
    fields = dict(
        id=transfer_id,
        sender_id=SENDER_ID,
        sender_address=SENDER_ADDRESS,
        amount=Decimal("10"),
        token="FLOW",
        claim_token=claim_token,
        claim_link=f"http://localhost:5000/claim/{claim_token}",
        status=TransferStatus.PENDING,
        expires_at=NOW + timedelta(days=7),
        created_at=NOW,
        updated_at=NOW,
    )
    fields.update(overrides)
    return store.insert(**fields)


class TestInsertAndRead:
    def test_round_trip_keeps_utc_datetimes(self, store):
        _insert(store)

        transfer = store.get_by_id("transfer_1")

        assert transfer.status is TransferStatus.PENDING
        assert transfer.amount == Decimal("10")
        assert transfer.expires_at == NOW + timedelta(days=7)
        assert transfer.expires_at.tzinfo is not None

    def test_lookup_by_claim_token(self, store):
        _insert(store)

        assert store.get_by_claim_token("claim-token-0001").id == "transfer_1"
        assert store.get_by_claim_token("unknown") is None

    def test_duplicate_claim_token_is_a_collision(self, store):
        _insert(store)

        with pytest.raises(ClaimTokenCollision):
            _insert(store, transfer_id="transfer_2")

    def test_duplicate_id_is_a_collision(self, store):
        _insert(store)

        with pytest.raises(ClaimTokenCollision):
            _insert(store, claim_token="claim-token-0002")


class TestCompareAndSet:
    """Conditional status transitions."""

    def test_only_one_of_two_reservations_wins(self, store):
        _insert(store)

        first = store.compare_and_set("transfer_1", TransferStatus.PENDING, TransferStatus.CLAIMING)
        second = store.compare_and_set("transfer_1", TransferStatus.PENDING, TransferStatus.REFUNDING)

        assert first is True
        assert second is False
        assert store.get_by_id("transfer_1").status is TransferStatus.CLAIMING

    def test_expiry_guard_blocks_late_claim(self, store):
        _insert(store)
        expires_at = NOW + timedelta(days=7)

        assert store.compare_and_set(
            "transfer_1", TransferStatus.PENDING, TransferStatus.CLAIMING, expires_after=expires_at
        ) is False
        assert store.compare_and_set(
            "transfer_1", TransferStatus.PENDING, TransferStatus.CLAIMING, expires_after=expires_at - timedelta(seconds=1)
        ) is True

    def test_expiry_guard_blocks_early_refund(self, store):
        _insert(store)
        expires_at = NOW + timedelta(days=7)

        assert store.compare_and_set(
            "transfer_1", TransferStatus.PENDING, TransferStatus.REFUNDING, expires_not_after=NOW
        ) is False
        assert store.compare_and_set(
            "transfer_1", TransferStatus.PENDING, TransferStatus.REFUNDING, expires_not_after=expires_at
        ) is True

    def test_fields_are_written_with_the_transition(self, store):
        _insert(store)

        store.compare_and_set(
            "transfer_1",
            TransferStatus.PENDING,
            TransferStatus.CLAIMED,
            payout_method=PayoutMethod.FIAT,
            claimed_at=NOW,
        )

        transfer = store.get_by_id("transfer_1")
        assert transfer.payout_method is PayoutMethod.FIAT
        assert transfer.claimed_at == NOW

    def test_update_fields_requires_expected_status(self, store):
        _insert(store)

        assert store.update_fields("transfer_1", TransferStatus.CLAIMING, escrow_tx_ref="tx") is False
        assert store.update_fields("transfer_1", TransferStatus.PENDING, escrow_tx_ref="tx") is True
        assert store.get_by_id("transfer_1").escrow_tx_ref == "tx"


class TestQueries:
    def test_list_expired_pending(self, store):
        _insert(store, "transfer_old", "claim-token-old1", expires_at=NOW - timedelta(hours=1))
        _insert(store, "transfer_new", "claim-token-new1")
        _insert(
            store, "transfer_done", "claim-token-done", expires_at=NOW - timedelta(hours=1), status=TransferStatus.CLAIMED
        )

        assert [t.id for t in store.list_expired_pending(NOW)] == ["transfer_old"]

    def test_expected_custody_counts_fiat_awaiting_bridge(self, store):
        _insert(store, "transfer_a", "claim-token-aaaa", escrow_tx_ref="tx_a")
        _insert(
            store,
            "transfer_b",
            "claim-token-bbbb",
            escrow_tx_ref="tx_b",
            amount=Decimal("4"),
            status=TransferStatus.CLAIMED,
            payout_method=PayoutMethod.FIAT,
        )
        _insert(
            store,
            "transfer_c",
            "claim-token-cccc",
            escrow_tx_ref="tx_c",
            status=TransferStatus.CLAIMED,
            payout_method=PayoutMethod.CRYPTO,
            claim_tx_ref="tx_c2",
        )
        _insert(store, "transfer_d", "claim-token-dddd", status=TransferStatus.FAILED)

        custody = store.expected_custody()

        assert custody["total_locked"] == Decimal("14")
        assert custody["active_transfers"] == 2

    def test_stats_exclude_failed_from_amount_sent(self, store):
        _insert(store, "transfer_a", "claim-token-aaaa")
        _insert(store, "transfer_b", "claim-token-bbbb", status=TransferStatus.FAILED)

        stats = store.stats_for_sender(SENDER_ID)

        assert stats["total_transfers"] == 2
        assert stats["by_status"] == {"pending": 1, "failed": 1}
        assert Decimal(stats["amount_sent"]["FLOW"]) == Decimal("10")


class TestErrors:
    def test_database_errors_become_store_errors(self, store):
        with pytest.raises(StoreError):
            with store._scope():
                raise OperationalError("SELECT 1", {}, Exception("database is locked"))

    def test_ping(self, store):
        store.ping()
