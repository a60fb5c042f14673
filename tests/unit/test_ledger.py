"""
Unit tests for the escrow ledger backends.
"""

from decimal import Decimal
from unittest.mock import MagicMock

import pytest
import requests

from flowpay.errors import LedgerError, LedgerTimeout
from flowpay.ledger import (
    TX_FAILED,
    TX_PENDING,
    TX_SEALED,
    FlowEscrowLedger,
    InMemoryLedger,
    build_ledger,
    cadence_arg,
    format_ufix64,
)


def _response(status_code=200, payload=None, text=""):
    resp = MagicMock()
    resp.status_code = status_code
    resp.json.return_value = payload or {}
    resp.text = text
    return resp


def _unreadable(status_code=200):
    resp = _response(status_code=status_code, text="<html>gateway</html>")
    resp.json.side_effect = ValueError("Expecting value: line 1 column 1 (char 0)")
    return resp


class TestCadenceEncoding:
    def test_format_ufix64_truncates_to_eight_places(self):
        assert format_ufix64(Decimal("10")) == "10.00000000"
        assert format_ufix64(Decimal("0.123456789")) == "0.12345678"

    def test_cadence_arg(self):
        assert cadence_arg("String", "abc") == {"type": "String", "value": "abc"}
        assert cadence_arg("UFix64", Decimal("1.5")) == {"type": "UFix64", "value": "1.50000000"}
        assert cadence_arg("Optional(UFix64)", None) == {"type": "Optional", "value": None}
        assert cadence_arg("Optional(UFix64)", Decimal("2")) == {
            "type": "Optional",
            "value": {"type": "UFix64", "value": "2.00000000"},
        }


class TestFlowEscrowLedger:
    """Submit through the signing relay, confirm against the access node."""

    @pytest.fixture
    def session(self):
        session = MagicMock(spec=requests.Session)
        session.post.return_value = _response(payload={"id": "tx_1"})
        session.get.return_value = _response(payload={"status": "Sealed", "status_code": 0})
        return session

    @pytest.fixture
    def sleeps(self):
        return []

    @pytest.fixture
    def ledger(self, session, sleeps):
        return FlowEscrowLedger(
            access_node_url="https://rest-testnet.onflow.org/",
            signer_url="https://signer.internal/",
            signer_api_key="signer-key",
            escrow_contract="0xESCROW",
            seal_timeout=10,
            poll_interval=2,
            session=session,
            sleep=sleeps.append,
        )

    def test_lock_submits_and_waits_for_seal(self, ledger, session):
        tx_ref = ledger.lock("transfer_1", "claim-token", Decimal("10"), "FLOW", "0xA")

        assert tx_ref == "tx_1"
        url = session.post.call_args[0][0]
        body = session.post.call_args[1]["json"]
        headers = session.post.call_args[1]["headers"]
        assert url == "https://signer.internal/v1/transactions"
        assert body["template"] == FlowEscrowLedger.CREATE_TEMPLATE
        assert body["contract"] == "0xESCROW"
        assert {"type": "UFix64", "value": "10.00000000"} in body["arguments"]
        assert headers["Authorization"] == "Bearer signer-key"
        session.get.assert_called_once_with(
            "https://rest-testnet.onflow.org/v1/transaction_results/tx_1", timeout=10
        )

    def test_polls_until_sealed(self, ledger, session, sleeps):
        session.get.side_effect = [
            _response(status_code=404),
            _response(payload={"status": "Pending"}),
            _response(payload={"status": "SEALED"}),
        ]

        assert ledger.release("claim-token", "FLOW", "0xB") == "tx_1"
        assert sleeps == [2, 2]

    def test_poll_errors_keep_waiting(self, ledger, session):
        session.get.side_effect = [
            requests.ConnectionError("reset"),
            _response(payload={"status": "Sealed"}),
        ]

        assert ledger.return_to_sender("transfer_1", "FLOW", "0xA") == "tx_1"

    def test_submit_rejected_is_a_ledger_error(self, ledger, session):
        session.post.return_value = _response(status_code=400, text="insufficient balance")

        with pytest.raises(LedgerError, match="insufficient balance") as exc_info:
            ledger.lock("transfer_1", "claim-token", Decimal("10"), "FLOW", "0xA")

        assert not isinstance(exc_info.value, LedgerTimeout)
        assert exc_info.value.tx_ref is None

    def test_relay_unreachable_is_a_ledger_error(self, ledger, session):
        session.post.side_effect = requests.ConnectionError("refused")

        with pytest.raises(LedgerError, match="unreachable"):
            ledger.release("claim-token", "FLOW", "0xB")

    def test_missing_transaction_id(self, ledger, session):
        session.post.return_value = _response(payload={})

        with pytest.raises(LedgerError, match="missing transaction id"):
            ledger.release("claim-token", "FLOW", "0xB")

    def test_unreadable_submit_response_leaves_outcome_unknown(self, ledger, session):
        session.post.return_value = _unreadable()

        with pytest.raises(LedgerTimeout, match="unreadable response") as exc_info:
            ledger.release("claim-token", "FLOW", "0xB")

        assert exc_info.value.tx_ref is None
        session.get.assert_not_called()

    def test_sealed_with_error_is_rejected(self, ledger, session):
        session.get.return_value = _response(
            payload={"status": "Sealed", "status_code": 1, "error_message": "pre-condition failed"}
        )

        with pytest.raises(LedgerError, match="pre-condition failed") as exc_info:
            ledger.release("claim-token", "FLOW", "0xB")

        assert exc_info.value.tx_ref == "tx_1"

    def test_unsealed_past_deadline_times_out(self, session, sleeps):
        clock = iter([0, 5, 11])
        ledger = FlowEscrowLedger(
            access_node_url="https://access",
            signer_url="https://signer",
            seal_timeout=10,
            session=session,
            sleep=sleeps.append,
            monotonic=lambda: next(clock),
        )
        session.get.return_value = _response(payload={"status": "Pending"})

        with pytest.raises(LedgerTimeout) as exc_info:
            ledger.release("claim-token", "FLOW", "0xB")

        assert exc_info.value.tx_ref == "tx_1"
        assert len(sleeps) == 1

    def test_unreadable_poll_response_keeps_waiting(self, ledger, session, sleeps):
        session.get.side_effect = [_unreadable(), _response(payload={"status": "Sealed"})]

        assert ledger.release("claim-token", "FLOW", "0xB") == "tx_1"
        assert sleeps == [2]

    def test_unreadable_poll_until_deadline_times_out(self, session, sleeps):
        clock = iter([0, 5, 11])
        ledger = FlowEscrowLedger(
            access_node_url="https://access",
            signer_url="https://signer",
            seal_timeout=10,
            session=session,
            sleep=sleeps.append,
            monotonic=lambda: next(clock),
        )
        session.get.return_value = _unreadable()

        with pytest.raises(LedgerTimeout) as exc_info:
            ledger.release("claim-token", "FLOW", "0xB")

        assert exc_info.value.tx_ref == "tx_1"

    @pytest.mark.parametrize(
        "result, outcome",
        [
            ({"status": "Sealed", "status_code": 0}, TX_SEALED),
            ({"status": "Sealed", "error_message": "panic"}, TX_FAILED),
            ({"status": "Expired"}, TX_FAILED),
            ({"status": "Executed"}, TX_PENDING),
            ({}, TX_PENDING),
        ],
    )
    def test_classify(self, result, outcome):
        assert FlowEscrowLedger._classify(result) == outcome

    def test_transaction_status(self, ledger, session):
        session.get.return_value = _response(payload={"status": "Expired"})

        assert ledger.transaction_status("tx_9") == TX_FAILED

    def test_get_metrics(self, ledger, session):
        session.post.return_value = _response(
            payload={"value": {"totalLocked": "25.5", "transferCount": 4, "activeTransfers": 2}}
        )

        metrics = ledger.get_metrics()

        assert metrics.total_locked == Decimal("25.5")
        assert metrics.transfer_count == 4
        assert metrics.active_transfers == 2
        assert session.post.call_args[0][0] == "https://signer.internal/v1/scripts"

    def test_script_failure(self, ledger, session):
        session.post.return_value = _response(status_code=500, text="boom")

        with pytest.raises(LedgerError):
            ledger.get_by_claim_token("claim-token")

    def test_unreadable_script_response(self, ledger, session):
        session.post.return_value = _unreadable()

        with pytest.raises(LedgerError, match="unreadable response") as exc_info:
            ledger.get_metrics()

        assert not isinstance(exc_info.value, LedgerTimeout)


class TestInMemoryLedger:
    @pytest.fixture
    def ledger(self):
        return InMemoryLedger()

    def test_lock_then_release(self, ledger):
        ledger.lock("t1", "c1", Decimal("10"), "FLOW", "0xA")

        tx_ref = ledger.release("c1", "FLOW", "0xB")

        assert ledger.transaction_status(tx_ref) == TX_SEALED
        assert ledger.balance_of("0xB", "FLOW") == Decimal("10")
        assert ledger.get_metrics().active_transfers == 0

    def test_cannot_settle_twice(self, ledger):
        ledger.lock("t1", "c1", Decimal("10"), "FLOW", "0xA")
        ledger.release("c1", "FLOW", "0xB")

        with pytest.raises(LedgerError):
            ledger.return_to_sender("t1", "FLOW", "0xA")
        with pytest.raises(LedgerError):
            ledger.release("c1", "FLOW", "0xB")

    def test_return_checks_owner(self, ledger):
        ledger.lock("t1", "c1", Decimal("10"), "FLOW", "0xA")

        with pytest.raises(LedgerError, match="different sender"):
            ledger.return_to_sender("t1", "FLOW", "0xC")

    def test_duplicate_lock_rejected(self, ledger):
        ledger.lock("t1", "c1", Decimal("10"), "FLOW", "0xA")

        with pytest.raises(LedgerError):
            ledger.lock("t1", "c2", Decimal("10"), "FLOW", "0xA")

    def test_metrics_track_locked_escrow(self, ledger):
        ledger.lock("t1", "c1", Decimal("10"), "FLOW", "0xA")
        ledger.lock("t2", "c2", Decimal("2.5"), "FLOW", "0xA")

        metrics = ledger.get_metrics()

        assert metrics.total_locked == Decimal("12.5")
        assert metrics.transfer_count == 2
        assert ledger.get_by_claim_token("c2")["amount"] == Decimal("2.5")
        assert ledger.transaction_status("unknown") == TX_PENDING


class TestBuildLedger:
    def test_memory_backend(self):
        assert isinstance(build_ledger({"LEDGER_BACKEND": "memory"}), InMemoryLedger)

    def test_flow_backend(self):
        ledger = build_ledger(
            {"LEDGER_BACKEND": "flow", "FLOW_ACCESS_NODE": "https://access", "FLOW_SIGNER_URL": "https://signer"}
        )

        assert isinstance(ledger, FlowEscrowLedger)

    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            build_ledger({"LEDGER_BACKEND": "ethereum"})
