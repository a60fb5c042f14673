"""
Transfer lifecycle orchestration for FlowPay.

``TransferService`` drives a transfer from creation through claim or refund.
Each status change is a conditional write on the store; ledger calls happen
between a reservation (``claiming``/``refunding``) and the terminal write, and
every ledger failure branch has an explicit compensating write:

    create:  insert pending -> ledger.lock   -> set escrow ref | mark failed
    claim:   pending -> claiming -> ledger.release -> claimed | back to pending
    refund:  pending -> refunding -> ledger.return -> refunded | back to pending

A ledger call that was submitted but did not seal in time leaves the record
in its reservation with ``inflight_tx_ref`` set; ``reconcile_in_flight``
resolves it once the ledger has a definitive answer.
"""

import functools
import logging
import re
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from redis.exceptions import LockError, RedisError

from flowpay.audit_logger import AuditLogger, get_audit_logger
from flowpay.domain import (
    PayoutMethod,
    ReconciliationReport,
    SweepReport,
    Transfer,
    TransferResult,
    TransferStatus,
)
from flowpay.errors import (
    AlreadySettled,
    ClaimTokenCollision,
    Expired,
    LedgerError,
    LedgerTimeout,
    NotFound,
    NotifierError,
    NotYetExpired,
    StoreError,
    TransferError,
    Unauthorized,
    ValidationError,
)
from flowpay.ledger import TX_PENDING, TX_SEALED, LedgerGateway
from flowpay.models import utc_now
from flowpay.notifier import ClaimConfirmation, ClaimNotice, ExpiryReminder, Notifier
from flowpay.store import TransferStore
from flowpay.tokens import build_claim_link, fingerprint, generate_claim_token, generate_transfer_id

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
MAX_DECIMALS = 8  # UFix64
FIAT_NOTE_SUFFIX = "[Fiat payout initiated]"
SWEEP_LOCK_NAME = "flowpay:sweep-expired"

_SETTLED_MESSAGES = {
    TransferStatus.CLAIMED: "Transfer has already been claimed",
    TransferStatus.REFUNDED: "Transfer has already been refunded",
    TransferStatus.FAILED: "Transfer failed and cannot be settled",
    TransferStatus.CLAIMING: "Transfer is already being settled",
    TransferStatus.REFUNDING: "Transfer is already being settled",
}


@dataclass(frozen=True)
class TransferSettings:
    app_url: str = "http://localhost:5000"
    expiry: timedelta = timedelta(days=7)
    supported_tokens: Tuple[str, ...] = ("FLOW", "USDC")
    max_insert_attempts: int = 3
    reminder_window: timedelta = timedelta(hours=24)
    stale_in_flight_after: timedelta = timedelta(minutes=15)
    sweep_batch_size: int = 500

    @classmethod
    def from_config(cls, cfg: Mapping[str, Any]) -> "TransferSettings":
        return cls(
            app_url=cfg.get("APP_URL", "http://localhost:5000"),
            expiry=timedelta(days=cfg.get("TRANSFER_EXPIRY_DAYS", 7)),
            supported_tokens=tuple(cfg.get("SUPPORTED_TOKENS") or ("FLOW", "USDC")),
            reminder_window=timedelta(hours=cfg.get("REMINDER_WINDOW_HOURS", 24)),
            # A reservation outlives any single seal wait by a wide margin.
            stale_in_flight_after=timedelta(seconds=max(cfg.get("LEDGER_SEAL_TIMEOUT_SECONDS", 90) * 10, 600)),
        )


def _already_settled(status: TransferStatus) -> AlreadySettled:
    return AlreadySettled(_SETTLED_MESSAGES.get(status, "Transfer is already settled"), status=status.value)


def _returns_result(operation: str):
    """Convert ``TransferError`` raised by ``func`` into a failed ``TransferResult``."""

    def decorator(func):
        @functools.wraps(func)
        def wrapper(self, *args, **kwargs):
            try:
                return TransferResult.ok(func(self, *args, **kwargs))
            except TransferError as e:
                return self._rejected(operation, e)

        return wrapper

    return decorator


class TransferService:
    """
    Orchestrates creating, claiming and refunding escrowed transfers.

    Args:
        store: Transfer persistence (source of truth for status).
        ledger: Escrow custody backend.
        notifier: Best-effort email gateway.
        settings: Expiry window, supported tokens, claim link base URL.
        clock: Returns the current UTC time; injectable for tests.
        redis_client: Optional Redis used to keep sweeps single-flight.
    """

    def __init__(
        self,
        store: TransferStore,
        ledger: LedgerGateway,
        notifier: Notifier,
        settings: Optional[TransferSettings] = None,
        clock: Callable[[], datetime] = utc_now,
        redis_client=None,
        audit: Optional[AuditLogger] = None,
    ):
        self.store = store
        self.ledger = ledger
        self.notifier = notifier
        self.settings = settings or TransferSettings()
        self.clock = clock
        self.redis = redis_client
        self.audit = audit or get_audit_logger()

    # ------------------------------------------------------------------
    # Validation helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _parse_amount(amount: Any) -> Decimal:
        if isinstance(amount, bool) or amount is None or amount == "":
            raise ValidationError("Amount is required")
        try:
            value = Decimal(str(amount))
        except (InvalidOperation, ValueError):
            raise ValidationError(f"Amount must be a number (got {amount!r})") from None
        if not value.is_finite():
            raise ValidationError("Amount must be a finite number")
        if value <= 0:
            raise ValidationError("Amount must be greater than 0")
        if -value.as_tuple().exponent > MAX_DECIMALS:
            raise ValidationError(f"Amount supports at most {MAX_DECIMALS} decimal places")
        return value

    def _parse_token(self, token: Any) -> str:
        symbol = str(token or "").strip().upper()
        if symbol not in self.settings.supported_tokens:
            raise ValidationError(f"Token must be one of {', '.join(self.settings.supported_tokens)}")
        return symbol

    @staticmethod
    def _parse_email(email: Optional[str], field: str) -> Optional[str]:
        if email is None or str(email).strip() == "":
            return None
        email = str(email).strip()
        if not EMAIL_RE.match(email):
            raise ValidationError(f"Invalid email format for {field}")
        return email

    @staticmethod
    def _require(value: Optional[str], message: str) -> str:
        if value is None or str(value).strip() == "":
            raise ValidationError(message)
        return str(value).strip()

    def _rejected(self, operation: str, error: TransferError) -> TransferResult:
        if isinstance(error, (LedgerError, StoreError)):
            logger.error(f"{operation} failed: {error.code}: {error.message}")
        else:
            logger.info(f"{operation} rejected: {error.code}: {error.message}")
        self.audit.log_transition_rejected(operation, error.code, message=error.message)
        return TransferResult.fail(error)

    def _notify(self, send: Callable, payload: Any, transfer_id: str) -> bool:
        """Send a notification; failures are logged and never raised."""
        try:
            result = send(payload)
        except Exception as e:
            logger.error(f"Notifier raised for transfer {transfer_id}: {e}", exc_info=True)
            return False
        if not result.success:
            logger.warning(f"Notification for transfer {transfer_id} failed: {result.error}")
        return result.success

    def _call_ledger(self, transfer_id: str, call: Callable, *args: Any, **kwargs: Any) -> str:
        """Run a mutating ledger call; unexpected errors leave the outcome unknown."""
        try:
            return call(*args, **kwargs)
        except LedgerError:
            raise
        except Exception as e:
            logger.error(f"Ledger call for transfer {transfer_id} raised {type(e).__name__}: {e}", exc_info=True)
            self.audit.log_error(type(e).__name__, str(e), {"transfer_id": transfer_id})
            raise LedgerTimeout(f"Ledger outcome unknown: {e}") from e

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    @_returns_result("create")
    def create_transfer(
        self,
        sender_id: str,
        sender_address: str,
        amount: Any,
        token: str,
        recipient_email: Optional[str] = None,
        note: Optional[str] = None,
        notify: bool = False,
        sender_email: Optional[str] = None,
    ) -> Transfer:
        """
        Record a pending transfer, then lock its funds in escrow.

        The record is written before the ledger is touched so every escrow
        has an owning row; a failed lock marks that row ``failed``.
        """
        sender_id = self._require(sender_id, "Sender id is required")
        sender_address = self._require(sender_address, "Sender address is required")
        value = self._parse_amount(amount)
        symbol = self._parse_token(token)
        recipient_email = self._parse_email(recipient_email, "recipient")
        sender_email = self._parse_email(sender_email, "sender")
        note = str(note).strip() if note is not None and str(note).strip() else None

        now = self.clock()
        expires_at = now + self.settings.expiry
        transfer = self._insert_pending(
            sender_id=sender_id,
            sender_address=sender_address,
            sender_email=sender_email,
            recipient_email=recipient_email,
            amount=value,
            token=symbol,
            note=note,
            expires_at=expires_at,
            created_at=now,
            updated_at=now,
        )
        self.audit.log_transfer_created(transfer.id, sender_id, value, symbol, transfer.claim_token)

        try:
            escrow_tx_ref = self._call_ledger(
                transfer.id,
                self.ledger.lock,
                transfer.id,
                transfer.claim_token,
                transfer.amount,
                transfer.token,
                transfer.sender_address,
                expires_at=transfer.expires_at,
            )
        except LedgerError as e:
            self._mark_failed(transfer, e)
            raise LedgerError(f"Escrow transaction failed: {e.message}", tx_ref=e.tx_ref) from e

        logger.info(f"Escrow locked for transfer {transfer.id}: {escrow_tx_ref}")
        try:
            if not self.store.update_fields(transfer.id, TransferStatus.PENDING, escrow_tx_ref=escrow_tx_ref):
                logger.error(f"Transfer {transfer.id} left pending before escrow ref could be recorded")
        except StoreError as e:
            # Funds are locked; the record stays pending and claimable.
            logger.error(f"Error updating transfer {transfer.id} with escrow ref {escrow_tx_ref}: {e}")
        transfer = replace(transfer, escrow_tx_ref=escrow_tx_ref)

        if notify and transfer.recipient_email:
            sent = self._notify(
                self.notifier.send_claim_notice,
                ClaimNotice(
                    recipient_email=transfer.recipient_email,
                    sender_address=transfer.sender_address,
                    amount=transfer.amount,
                    token=transfer.token,
                    claim_link=transfer.claim_link,
                    expires_at=transfer.expires_at,
                    note=transfer.note,
                    now=now,
                ),
                transfer.id,
            )
            if sent:
                logger.info(f"Claim email sent for transfer {transfer.id}")

        return transfer

    def _insert_pending(self, **fields: Any) -> Transfer:
        for attempt in range(1, self.settings.max_insert_attempts + 1):
            transfer_id = generate_transfer_id()
            claim_token = generate_claim_token()
            try:
                return self.store.insert(
                    id=transfer_id,
                    claim_token=claim_token,
                    claim_link=build_claim_link(self.settings.app_url, claim_token),
                    status=TransferStatus.PENDING,
                    **fields,
                )
            except ClaimTokenCollision:
                logger.warning(f"Transfer id/claim token collision on attempt {attempt}; regenerating")
        raise StoreError("Could not allocate a unique claim token")

    def _mark_failed(self, transfer: Transfer, error: Exception) -> None:
        reason = error.message if isinstance(error, TransferError) else str(error)
        tx_ref = error.tx_ref if isinstance(error, LedgerTimeout) else None
        self.audit.log_transfer_failed(transfer.id, reason, tx_ref=tx_ref)
        try:
            marked = self.store.compare_and_set(
                transfer.id,
                TransferStatus.PENDING,
                TransferStatus.FAILED,
                failure_reason=reason[:1000],
                inflight_tx_ref=tx_ref,
            )
        except StoreError as e:
            logger.critical(f"Could not mark transfer {transfer.id} failed after escrow error: {e}")
            return
        if not marked:
            logger.critical(f"Transfer {transfer.id} was not pending when marking escrow failure")

    # ------------------------------------------------------------------
    # Claim
    # ------------------------------------------------------------------

    @_returns_result("claim")
    def claim_transfer(
        self,
        claim_token: str,
        payout_method: Any = PayoutMethod.CRYPTO,
        recipient_address: Optional[str] = None,
        recipient_email: Optional[str] = None,
    ) -> Transfer:
        """Settle a pending transfer to the holder of its claim token."""
        claim_token = self._require(claim_token, "Claim token is required")
        try:
            method = PayoutMethod.parse(payout_method)
        except ValueError as e:
            raise ValidationError(str(e)) from None
        if method is PayoutMethod.CRYPTO:
            recipient_address = self._require(recipient_address, "Recipient address is required for crypto payout")
        recipient_email = self._parse_email(recipient_email, "recipient")

        transfer = self.store.get_by_claim_token(claim_token)
        if transfer is None:
            raise NotFound("Transfer not found")

        now = self.clock()
        if transfer.status is not TransferStatus.PENDING:
            raise _already_settled(transfer.status)
        if transfer.is_expired(now):
            raise Expired("Transfer has expired")

        if method is PayoutMethod.CRYPTO:
            claimed = self._claim_crypto(transfer, recipient_address, now)
        elif method is PayoutMethod.FIAT:
            claimed = self._claim_fiat(transfer, recipient_email, now)
        else:
            raise AssertionError(f"Unhandled payout method {method!r}")

        self.audit.log_transfer_claimed(
            claimed.id, method.value, claimed.claimed_by_address, claimed.claim_tx_ref
        )
        self._confirm_to_sender(claimed)
        return claimed

    def _claim_crypto(self, transfer: Transfer, recipient_address: str, now: datetime) -> Transfer:
        if not self.store.compare_and_set(
            transfer.id, TransferStatus.PENDING, TransferStatus.CLAIMING, expires_after=now
        ):
            raise self._lost_race(transfer.id)

        logger.info(f"Releasing escrow for transfer {transfer.id} (claim={fingerprint(transfer.claim_token)})")
        try:
            claim_tx_ref = self._call_ledger(
                transfer.id, self.ledger.release, transfer.claim_token, transfer.token, recipient_address
            )
        except LedgerTimeout as e:
            self.store.update_fields(
                transfer.id,
                TransferStatus.CLAIMING,
                inflight_tx_ref=e.tx_ref,
                claimed_by_address=recipient_address,
            )
            logger.error(f"Release for transfer {transfer.id} unconfirmed ({e.tx_ref}); left for reconciliation")
            raise
        except LedgerError:
            self.store.compare_and_set(transfer.id, TransferStatus.CLAIMING, TransferStatus.PENDING)
            raise

        claimed_at = self.clock()
        if not self.store.compare_and_set(
            transfer.id,
            TransferStatus.CLAIMING,
            TransferStatus.CLAIMED,
            claim_tx_ref=claim_tx_ref,
            claimed_by_address=recipient_address,
            claimed_at=claimed_at,
            payout_method=PayoutMethod.CRYPTO,
            inflight_tx_ref=None,
        ):
            logger.critical(f"Transfer {transfer.id} released on ledger ({claim_tx_ref}) but lost its reservation")
        return self._reload(transfer.id)

    def _claim_fiat(self, transfer: Transfer, recipient_email: Optional[str], now: datetime) -> Transfer:
        if not (recipient_email or transfer.recipient_email):
            raise ValidationError("Recipient email is required for fiat payout")

        # Funds stay in escrow until the fiat bridge reconciles them.
        note = f"{transfer.note} {FIAT_NOTE_SUFFIX}" if transfer.note else FIAT_NOTE_SUFFIX
        if not self.store.compare_and_set(
            transfer.id,
            TransferStatus.PENDING,
            TransferStatus.CLAIMED,
            expires_after=now,
            claimed_at=now,
            payout_method=PayoutMethod.FIAT,
            note=note,
        ):
            raise self._lost_race(transfer.id)
        logger.info(f"Fiat payout initiated for transfer {transfer.id}")
        return self._reload(transfer.id)

    def _confirm_to_sender(self, transfer: Transfer) -> None:
        if not transfer.sender_email:
            logger.info(f"No sender email for transfer {transfer.id}; skipping claim confirmation")
            return
        self._notify(
            self.notifier.send_claim_confirmation,
            ClaimConfirmation(
                sender_email=transfer.sender_email,
                transfer_id=transfer.id,
                amount=transfer.amount,
                token=transfer.token,
                claimed_by=transfer.claimed_by_address or "",
            ),
            transfer.id,
        )

    def _lost_race(self, transfer_id: str) -> TransferError:
        """Explain why a conditional write matched no row."""
        current = self.store.get_by_id(transfer_id)
        if current is None:
            return NotFound("Transfer not found")
        if current.status is not TransferStatus.PENDING:
            return _already_settled(current.status)
        if current.is_expired(self.clock()):
            return Expired("Transfer has expired")
        return NotYetExpired("Transfer has not yet expired")

    def _reload(self, transfer_id: str) -> Transfer:
        transfer = self.store.get_by_id(transfer_id)
        if transfer is None:
            raise StoreError(f"Transfer {transfer_id} disappeared")
        return transfer

    # ------------------------------------------------------------------
    # Refund
    # ------------------------------------------------------------------

    @_returns_result("refund")
    def refund_transfer(self, transfer_id: str, sender_address: str) -> Transfer:
        """Return an expired, unclaimed transfer to its sender."""
        return self._refund(transfer_id, sender_address, trigger="sender")

    def _refund(self, transfer_id: str, sender_address: str, trigger: str) -> Transfer:
        transfer_id = self._require(transfer_id, "Transfer id is required")
        sender_address = self._require(sender_address, "Sender address is required")

        transfer = self.store.get_by_id(transfer_id)
        if transfer is None:
            raise NotFound("Transfer not found")
        if transfer.sender_address != sender_address:
            self.audit.log_security_event(
                "refund_wrong_owner", "medium", {"transfer_id": transfer_id, "address": sender_address}
            )
            raise Unauthorized("Transfer does not belong to this sender")

        now = self.clock()
        if not transfer.is_expired(now):
            raise NotYetExpired("Transfer has not yet expired")
        if transfer.status is not TransferStatus.PENDING:
            raise _already_settled(transfer.status)

        if not self.store.compare_and_set(
            transfer.id, TransferStatus.PENDING, TransferStatus.REFUNDING, expires_not_after=now
        ):
            raise self._lost_race(transfer.id)

        try:
            refund_tx_ref = self._call_ledger(
                transfer.id, self.ledger.return_to_sender, transfer.id, transfer.token, transfer.sender_address
            )
        except LedgerTimeout as e:
            self.store.update_fields(transfer.id, TransferStatus.REFUNDING, inflight_tx_ref=e.tx_ref)
            logger.error(f"Refund for transfer {transfer.id} unconfirmed ({e.tx_ref}); left for reconciliation")
            raise
        except LedgerError:
            self.store.compare_and_set(transfer.id, TransferStatus.REFUNDING, TransferStatus.PENDING)
            raise

        if not self.store.compare_and_set(
            transfer.id,
            TransferStatus.REFUNDING,
            TransferStatus.REFUNDED,
            claim_tx_ref=refund_tx_ref,
            claimed_at=self.clock(),
            inflight_tx_ref=None,
        ):
            logger.critical(f"Transfer {transfer.id} returned on ledger ({refund_tx_ref}) but lost its reservation")

        self.audit.log_transfer_refunded(transfer.id, transfer.sender_address, refund_tx_ref, trigger)
        return self._reload(transfer.id)

    # ------------------------------------------------------------------
    # Periodic jobs
    # ------------------------------------------------------------------

    @contextmanager
    def _single_flight(self, name: str, timeout: int = 900):
        """Yield True if this worker holds the Redis lock (or Redis is absent)."""
        if self.redis is None:
            yield True
            return

        try:
            lock = self.redis.lock(name, timeout=timeout)
            acquired = lock.acquire(blocking=False)
        except RedisError as e:
            logger.warning(f"Redis lock {name} unavailable ({e}); continuing without it")
            yield True
            return

        try:
            yield acquired
        finally:
            if acquired:
                try:
                    lock.release()
                except LockError:
                    logger.warning(f"Lock {name} expired before release")

    def sweep_expired_transfers(self) -> SweepReport:
        """Refund every pending transfer past its expiry.

        A failure on one transfer is logged and counted; the sweep goes on.
        """
        report = SweepReport()
        with self._single_flight(SWEEP_LOCK_NAME) as acquired:
            if not acquired:
                logger.info("Another sweep holds the lock; skipping")
                return report

            now = self.clock()
            for transfer in self.store.list_expired_pending(now, limit=self.settings.sweep_batch_size):
                report.scanned += 1
                try:
                    self._refund(transfer.id, transfer.sender_address, trigger="sweep")
                    report.refunded += 1
                except AlreadySettled:
                    # Claimed or refunded between listing and reservation.
                    report.skipped += 1
                except TransferError as e:
                    report.failed += 1
                    report.errors[transfer.id] = e.message
                    logger.error(f"Sweep refund failed for {transfer.id}: {e.code}: {e.message}")
                except Exception as e:
                    report.failed += 1
                    report.errors[transfer.id] = str(e)
                    logger.error(f"Sweep refund crashed for {transfer.id}: {e}", exc_info=True)
                    self.audit.log_error(type(e).__name__, str(e), {"transfer_id": transfer.id, "job": "sweep"})

        self.audit.log_event("transfer.sweep", **report.to_dict())
        logger.info(f"Sweep finished: {report.to_dict()}")
        return report

    def send_expiry_reminders(self, within: Optional[timedelta] = None) -> Dict[str, int]:
        """Email recipients whose unclaimed transfer expires within ``within``."""
        now = self.clock()
        until = now + (within or self.settings.reminder_window)
        candidates = self.store.list_expiring_unreminded(now, until)
        sent = 0
        for transfer in candidates:
            delivered = self._notify(
                self.notifier.send_expiry_reminder,
                ExpiryReminder(
                    recipient_email=transfer.recipient_email,
                    transfer_id=transfer.id,
                    amount=transfer.amount,
                    token=transfer.token,
                    claim_link=transfer.claim_link,
                    expires_at=transfer.expires_at,
                    now=now,
                ),
                transfer.id,
            )
            if delivered and self.store.update_fields(transfer.id, TransferStatus.PENDING, reminder_sent_at=now):
                sent += 1
        logger.info(f"Expiry reminders: {sent}/{len(candidates)} sent")
        return {"candidates": len(candidates), "sent": sent}

    def reconcile_in_flight(self) -> Dict[str, int]:
        """
        Resolve records whose ledger transaction outcome was unknown.

        Sealed transactions complete their transition; rejected ones are
        compensated; still-pending ones are left for the next run.
        """
        counts = {"finalized": 0, "reverted": 0, "restored": 0, "unresolved": 0, "stale": 0}
        statuses = (TransferStatus.CLAIMING, TransferStatus.REFUNDING, TransferStatus.FAILED)

        for transfer in self.store.list_with_inflight_ref(statuses):
            outcome = self.ledger.transaction_status(transfer.inflight_tx_ref)
            if outcome == TX_PENDING:
                counts["unresolved"] += 1
                continue
            sealed = outcome == TX_SEALED
            now = self.clock()

            if transfer.status is TransferStatus.CLAIMING:
                if sealed:
                    done = self.store.compare_and_set(
                        transfer.id,
                        TransferStatus.CLAIMING,
                        TransferStatus.CLAIMED,
                        claim_tx_ref=transfer.inflight_tx_ref,
                        claimed_at=now,
                        payout_method=PayoutMethod.CRYPTO,
                        inflight_tx_ref=None,
                    )
                    if done:
                        self._confirm_to_sender(self._reload(transfer.id))
                else:
                    done = self.store.compare_and_set(
                        transfer.id,
                        TransferStatus.CLAIMING,
                        TransferStatus.PENDING,
                        inflight_tx_ref=None,
                        claimed_by_address=None,
                    )
            elif transfer.status is TransferStatus.REFUNDING:
                if sealed:
                    done = self.store.compare_and_set(
                        transfer.id,
                        TransferStatus.REFUNDING,
                        TransferStatus.REFUNDED,
                        claim_tx_ref=transfer.inflight_tx_ref,
                        claimed_at=now,
                        inflight_tx_ref=None,
                    )
                else:
                    done = self.store.compare_and_set(
                        transfer.id, TransferStatus.REFUNDING, TransferStatus.PENDING, inflight_tx_ref=None
                    )
            else:
                if sealed:
                    # The lock did land after all; the transfer is live.
                    done = self.store.compare_and_set(
                        transfer.id,
                        TransferStatus.FAILED,
                        TransferStatus.PENDING,
                        escrow_tx_ref=transfer.inflight_tx_ref,
                        inflight_tx_ref=None,
                        failure_reason=None,
                    )
                    counts["restored" if done else "unresolved"] += 1
                    continue
                done = self.store.update_fields(transfer.id, TransferStatus.FAILED, inflight_tx_ref=None)

            key = "finalized" if sealed else "reverted"
            counts[key if done else "unresolved"] += 1
            self.audit.log_event(
                "transfer.reconciled",
                transfer_id=transfer.id,
                status=transfer.status.value,
                outcome=outcome,
                tx_ref=transfer.inflight_tx_ref,
            )

        stale_before = self.clock() - self.settings.stale_in_flight_after
        for transfer in self.store.list_in_flight(stale_before):
            counts["stale"] += 1
            logger.warning(
                f"Transfer {transfer.id} stuck in {transfer.status.value} with no ledger reference; needs manual review"
            )

        logger.info(f"In-flight reconciliation: {counts}")
        return counts

    def check_escrow_reconciliation(self) -> ReconciliationReport:
        """Compare ledger custody with what the store says should be locked."""
        metrics = self.ledger.get_metrics()
        expected = self.store.expected_custody()
        report = ReconciliationReport(
            ledger_total_locked=metrics.total_locked,
            expected_total_locked=expected["total_locked"],
            ledger_active_transfers=metrics.active_transfers,
            expected_active_transfers=expected["active_transfers"],
        )
        if not report.balanced:
            logger.warning(f"Escrow custody mismatch: {report.to_dict()}")
            self.audit.log_security_event("escrow_mismatch", "high", report.to_dict())
        return report

    # ------------------------------------------------------------------
    # Queries and resend
    # ------------------------------------------------------------------

    @_returns_result("details")
    def get_transfer_details(self, claim_token: str) -> Transfer:
        claim_token = self._require(claim_token, "Claim token is required")
        transfer = self.store.get_by_claim_token(claim_token)
        if transfer is None:
            raise NotFound("Transfer not found")
        return transfer

    def list_transfers_by_sender(self, sender_id: str) -> List[Transfer]:
        return self.store.list_by_sender(self._require(sender_id, "Sender id is required"))

    def get_transfer_stats(self, sender_id: str) -> Dict[str, Any]:
        return self.store.stats_for_sender(self._require(sender_id, "Sender id is required"))

    @_returns_result("send_email")
    def send_claim_email(self, transfer_id: str, recipient_email: str, sender_address: str) -> Transfer:
        """(Re)send the claim notice for a live transfer owned by ``sender_address``."""
        transfer_id = self._require(transfer_id, "Transfer id is required")
        email = self._parse_email(recipient_email, "recipient")
        if email is None:
            raise ValidationError("Recipient email is required")

        transfer = self.store.get_by_id(transfer_id)
        if transfer is None:
            raise NotFound("Transfer not found")
        if transfer.sender_address != sender_address:
            raise Unauthorized("Transfer does not belong to this sender")
        if transfer.status is not TransferStatus.PENDING:
            raise _already_settled(transfer.status)
        now = self.clock()
        if transfer.is_expired(now):
            raise Expired("Transfer has expired")

        result = self.notifier.send_claim_notice(
            ClaimNotice(
                recipient_email=email,
                sender_address=transfer.sender_address,
                amount=transfer.amount,
                token=transfer.token,
                claim_link=transfer.claim_link,
                expires_at=transfer.expires_at,
                note=transfer.note,
                now=now,
            )
        )
        if not result.success:
            raise NotifierError(result.error or "Failed to send email")
        return transfer
