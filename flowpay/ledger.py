"""Flow escrow ledger integration for FlowPay.

Two backends share the ``LedgerGateway`` contract:

* ``FlowEscrowLedger`` submits escrow transactions through a signing relay
  and waits on the Flow Access REST API until they are sealed.
* ``InMemoryLedger`` simulates escrow custody for local development and tests.

Every mutating call returns only once the outcome is definitive: a sealed
transaction reference, ``LedgerError`` for a rejection, or ``LedgerTimeout``
when a submitted transaction did not seal in time.
"""

import logging
import secrets
import threading
import time
from abc import ABC, abstractmethod
from datetime import datetime
from decimal import ROUND_DOWN, Decimal
from typing import Any, Callable, Dict, List, Mapping, Optional

import requests

from flowpay.domain import EscrowMetrics
from flowpay.errors import LedgerError, LedgerTimeout
from flowpay.tokens import fingerprint

logger = logging.getLogger(__name__)

TX_SEALED = "sealed"
TX_FAILED = "failed"
TX_PENDING = "pending"

UFIX64_QUANTUM = Decimal("0.00000001")


class LedgerGateway(ABC):
    """Custody operations the transfer lifecycle depends on."""

    @abstractmethod
    def lock(
        self,
        transfer_id: str,
        claim_token: str,
        amount: Decimal,
        token: str,
        sender_address: str,
        expires_at: Optional[datetime] = None,
    ) -> str:
        """Move ``amount`` of ``token`` from the sender into escrow."""

    @abstractmethod
    def release(self, claim_token: str, token: str, recipient_address: str) -> str:
        """Release the escrow identified by ``claim_token`` to the recipient."""

    @abstractmethod
    def return_to_sender(self, transfer_id: str, token: str, sender_address: str) -> str:
        """Return an escrow to its sender."""

    @abstractmethod
    def get_by_claim_token(self, claim_token: str) -> Optional[Dict[str, Any]]:
        """Read-only view of the on-ledger escrow, or None."""

    @abstractmethod
    def get_metrics(self) -> EscrowMetrics:
        """Aggregate custody metrics."""

    @abstractmethod
    def transaction_status(self, tx_ref: str) -> str:
        """Return ``sealed``, ``failed`` or ``pending`` for a submitted transaction."""


# ============================================================================
# Flow Access API + signing relay
# ============================================================================


def format_ufix64(amount: Decimal) -> str:
    """Cadence UFix64 literal: exactly eight decimal places."""
    return str(Decimal(amount).quantize(UFIX64_QUANTUM, rounding=ROUND_DOWN))


def cadence_arg(type_name: str, value: Any) -> Dict[str, Any]:
    """Encode a single JSON-Cadence argument."""
    if type_name.startswith("Optional"):
        inner = type_name[len("Optional(") : -1]
        return {"type": "Optional", "value": None if value is None else cadence_arg(inner, value)}
    if type_name == "UFix64":
        return {"type": "UFix64", "value": format_ufix64(value)}
    return {"type": type_name, "value": str(value)}


class FlowEscrowLedger(LedgerGateway):
    """
    Escrow backend on the Flow blockchain.

    Transactions are signed and submitted by the platform signing relay
    (which holds the escrow account keys); confirmation is read straight from
    a Flow Access node so the relay's word is not taken for sealing.
    """

    CREATE_TEMPLATE = "flowpay_escrow/create_transfer"
    CLAIM_TEMPLATE = "flowpay_escrow/claim_transfer"
    REFUND_TEMPLATE = "flowpay_escrow/refund_expired_transfer"
    BY_CLAIM_TOKEN_SCRIPT = "flowpay_escrow/get_transfer_by_claim_token"
    METRICS_SCRIPT = "flowpay_escrow/get_metrics"

    def __init__(
        self,
        access_node_url: str,
        signer_url: str,
        signer_api_key: Optional[str] = None,
        escrow_contract: str = "",
        seal_timeout: float = 90,
        poll_interval: float = 2,
        http_timeout: float = 10,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.access_node_url = access_node_url.rstrip("/")
        self.signer_url = signer_url.rstrip("/")
        self.signer_api_key = signer_api_key
        self.escrow_contract = escrow_contract
        self.seal_timeout = seal_timeout
        self.poll_interval = poll_interval
        self.http_timeout = http_timeout
        self.session = session or requests.Session()
        self._sleep = sleep
        self._monotonic = monotonic

    @classmethod
    def from_config(cls, cfg: Mapping[str, Any]) -> "FlowEscrowLedger":
        return cls(
            access_node_url=cfg["FLOW_ACCESS_NODE"],
            signer_url=cfg["FLOW_SIGNER_URL"],
            signer_api_key=cfg.get("FLOW_SIGNER_API_KEY"),
            escrow_contract=cfg.get("FLOW_ESCROW_CONTRACT", ""),
            seal_timeout=cfg.get("LEDGER_SEAL_TIMEOUT_SECONDS", 90),
            poll_interval=cfg.get("LEDGER_POLL_INTERVAL_SECONDS", 2),
            http_timeout=cfg.get("LEDGER_HTTP_TIMEOUT_SECONDS", 10),
        )

    def _signer_headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.signer_api_key:
            headers["Authorization"] = f"Bearer {self.signer_api_key}"
        return headers

    def _submit(self, template: str, arguments: List[Dict[str, Any]]) -> str:
        payload = {
            "template": template,
            "contract": self.escrow_contract,
            "arguments": arguments,
            "gas_limit": 1000,
        }
        try:
            resp = self.session.post(
                f"{self.signer_url}/v1/transactions",
                json=payload,
                headers=self._signer_headers(),
                timeout=self.http_timeout,
            )
        except requests.RequestException as e:
            # No transaction id came back, so there is nothing to track.
            raise LedgerError(f"Signing relay unreachable: {e}") from e

        if resp.status_code >= 300:
            raise LedgerError(f"Transaction submit failed: {resp.status_code} {resp.text}")

        try:
            data = resp.json()
        except ValueError as e:
            # The relay accepted the submission, so it may still reach the chain.
            raise LedgerTimeout(f"Signing relay returned an unreadable response: {e}") from e
        tx_id = data.get("id") or data.get("transaction_id")
        if not tx_id:
            raise LedgerError("Signing relay response missing transaction id.")
        return tx_id

    def _fetch_result(self, tx_id: str) -> Dict[str, Any]:
        """Latest result for ``tx_id``; lookup failures read as still pending."""
        try:
            resp = self.session.get(
                f"{self.access_node_url}/v1/transaction_results/{tx_id}",
                timeout=self.http_timeout,
            )
        except requests.RequestException as e:
            logger.warning(f"Transaction result poll failed for {tx_id}: {e}")
            return {"status": "Pending"}
        if resp.status_code >= 300:
            # 404 until the access node has indexed the transaction
            if resp.status_code != 404:
                logger.warning(f"Transaction result lookup for {tx_id} returned {resp.status_code}")
            return {"status": "Pending"}
        try:
            return resp.json()
        except ValueError as e:
            logger.warning(f"Unreadable transaction result for {tx_id}: {e}")
            return {"status": "Pending"}

    @staticmethod
    def _classify(result: Mapping[str, Any]) -> str:
        status = str(result.get("status", "")).lower()
        if status == "expired":
            return TX_FAILED
        if status == "sealed":
            if result.get("error_message") or result.get("status_code") not in (None, 0, "0"):
                return TX_FAILED
            return TX_SEALED
        return TX_PENDING

    def _wait_for_seal(self, tx_id: str) -> str:
        deadline = self._monotonic() + self.seal_timeout
        while True:
            result = self._fetch_result(tx_id)
            outcome = self._classify(result)
            if outcome == TX_SEALED:
                return tx_id
            if outcome == TX_FAILED:
                reason = result.get("error_message") or result.get("status")
                raise LedgerError(f"Transaction {tx_id} rejected: {reason}", tx_ref=tx_id)

            if self._monotonic() >= deadline:
                raise LedgerTimeout(f"Transaction {tx_id} not sealed after {self.seal_timeout}s", tx_ref=tx_id)
            self._sleep(self.poll_interval)

    def _run_script(self, script: str, arguments: List[Dict[str, Any]]) -> Any:
        try:
            resp = self.session.post(
                f"{self.signer_url}/v1/scripts",
                json={"script": script, "contract": self.escrow_contract, "arguments": arguments},
                headers=self._signer_headers(),
                timeout=self.http_timeout,
            )
        except requests.RequestException as e:
            raise LedgerError(f"Script execution failed: {e}") from e
        if resp.status_code >= 300:
            raise LedgerError(f"Script execution failed: {resp.status_code} {resp.text}")
        try:
            return resp.json().get("value")
        except ValueError as e:
            raise LedgerError(f"Script execution returned an unreadable response: {e}") from e

    def lock(self, transfer_id, claim_token, amount, token, sender_address, expires_at=None):
        logger.info(f"Locking escrow {transfer_id}: {amount} {token} from {sender_address}")
        tx_id = self._submit(
            self.CREATE_TEMPLATE,
            [
                cadence_arg("String", transfer_id),
                cadence_arg("String", claim_token),
                cadence_arg("UFix64", amount),
                cadence_arg("String", token),
                cadence_arg("Address", sender_address),
                cadence_arg("Optional(UFix64)", Decimal(int(expires_at.timestamp())) if expires_at else None),
            ],
        )
        return self._wait_for_seal(tx_id)

    def release(self, claim_token, token, recipient_address):
        logger.info(f"Releasing escrow claim={fingerprint(claim_token)} {token} to {recipient_address}")
        tx_id = self._submit(
            self.CLAIM_TEMPLATE,
            [
                cadence_arg("String", claim_token),
                cadence_arg("String", token),
                cadence_arg("Address", recipient_address),
            ],
        )
        return self._wait_for_seal(tx_id)

    def return_to_sender(self, transfer_id, token, sender_address):
        logger.info(f"Returning escrow {transfer_id} ({token}) to {sender_address}")
        tx_id = self._submit(
            self.REFUND_TEMPLATE,
            [
                cadence_arg("String", transfer_id),
                cadence_arg("String", token),
                cadence_arg("Address", sender_address),
            ],
        )
        return self._wait_for_seal(tx_id)

    def get_by_claim_token(self, claim_token):
        return self._run_script(self.BY_CLAIM_TOKEN_SCRIPT, [cadence_arg("String", claim_token)])

    def get_metrics(self):
        value = self._run_script(self.METRICS_SCRIPT, []) or {}
        return EscrowMetrics(
            total_locked=Decimal(str(value.get("totalLocked", "0"))),
            transfer_count=int(value.get("transferCount", 0)),
            active_transfers=int(value.get("activeTransfers", 0)),
        )

    def transaction_status(self, tx_ref):
        return self._classify(self._fetch_result(tx_ref))


# ============================================================================
# In-memory custody simulator
# ============================================================================


class InMemoryLedger(LedgerGateway):
    """
    Escrow simulator keeping custody in Python dictionaries.

    Balances only track credits paid out of escrow (releases and returns);
    sender debits are recorded per escrow.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self.escrows: Dict[str, Dict[str, Any]] = {}
        self.balances: Dict[tuple, Decimal] = {}
        self.transactions: Dict[str, str] = {}
        self._transfer_count = 0

    def _new_tx(self) -> str:
        tx_ref = f"memtx_{secrets.token_hex(16)}"
        self.transactions[tx_ref] = TX_SEALED
        return tx_ref

    def _credit(self, address: str, token: str, amount: Decimal) -> None:
        key = (address, token)
        self.balances[key] = self.balances.get(key, Decimal("0")) + amount

    def balance_of(self, address: str, token: str) -> Decimal:
        return self.balances.get((address, token), Decimal("0"))

    def lock(self, transfer_id, claim_token, amount, token, sender_address, expires_at=None):
        with self._lock:
            if transfer_id in self.escrows:
                raise LedgerError(f"Escrow {transfer_id} already exists")
            self.escrows[transfer_id] = {
                "id": transfer_id,
                "claim_token": claim_token,
                "amount": Decimal(amount),
                "token": token,
                "sender": sender_address,
                "expires_at": expires_at,
                "state": "locked",
            }
            self._transfer_count += 1
            return self._new_tx()

    def _find_by_claim_token(self, claim_token: str) -> Optional[Dict[str, Any]]:
        for escrow in self.escrows.values():
            if escrow["claim_token"] == claim_token:
                return escrow
        return None

    def release(self, claim_token, token, recipient_address):
        with self._lock:
            escrow = self._find_by_claim_token(claim_token)
            if escrow is None or escrow["state"] != "locked":
                raise LedgerError("No locked escrow for claim token")
            if escrow["token"] != token:
                raise LedgerError(f"Escrow holds {escrow['token']}, not {token}")
            escrow["state"] = "released"
            escrow["settled_to"] = recipient_address
            self._credit(recipient_address, token, escrow["amount"])
            return self._new_tx()

    def return_to_sender(self, transfer_id, token, sender_address):
        with self._lock:
            escrow = self.escrows.get(transfer_id)
            if escrow is None or escrow["state"] != "locked":
                raise LedgerError(f"No locked escrow {transfer_id}")
            if escrow["sender"] != sender_address:
                raise LedgerError("Escrow belongs to a different sender")
            escrow["state"] = "returned"
            escrow["settled_to"] = sender_address
            self._credit(sender_address, token, escrow["amount"])
            return self._new_tx()

    def get_by_claim_token(self, claim_token):
        with self._lock:
            escrow = self._find_by_claim_token(claim_token)
            return dict(escrow) if escrow else None

    def get_metrics(self):
        with self._lock:
            locked = [e for e in self.escrows.values() if e["state"] == "locked"]
            return EscrowMetrics(
                total_locked=sum((e["amount"] for e in locked), Decimal("0")),
                transfer_count=self._transfer_count,
                active_transfers=len(locked),
            )

    def transaction_status(self, tx_ref):
        return self.transactions.get(tx_ref, TX_PENDING)


def build_ledger(cfg: Mapping[str, Any]) -> LedgerGateway:
    """Select the ledger backend named by ``LEDGER_BACKEND``."""
    backend = str(cfg.get("LEDGER_BACKEND", "memory")).lower()
    if backend == "flow":
        return FlowEscrowLedger.from_config(cfg)
    if backend == "memory":
        logger.warning("Using in-memory ledger; escrowed funds are simulated")
        return InMemoryLedger()
    raise ValueError(f"Unknown LEDGER_BACKEND {backend!r}")
