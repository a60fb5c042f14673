"""
Audit logging for FlowPay transfers.

Every lifecycle transition is written as one JSON line on the ``audit``
logger. Claim tokens are bearer credentials and only ever appear as a
fingerprint.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from flowpay.tokens import fingerprint

_logger = logging.getLogger("audit")
_audit_logger = None  # Will be initialized by init_audit_logger

_SECRET_KEYS = ("claim_token", "claim_link")


def init_audit_logger():
    """Initialize the audit logger."""
    global _audit_logger

    _logger.setLevel(logging.INFO)

    # Add console handler if not already present
    if not _logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(asctime)s - AUDIT - %(levelname)s - %(message)s"))
        _logger.addHandler(handler)

    _audit_logger = AuditLogger()

    _logger.info("Audit logger initialized")


def get_audit_logger():
    """Get the audit logger instance."""
    global _audit_logger

    if _audit_logger is None:
        init_audit_logger()
    return _audit_logger


def _scrub(details: Dict[str, Any]) -> Dict[str, Any]:
    clean = {}
    for key, value in details.items():
        if key in _SECRET_KEYS:
            if key == "claim_token":
                clean["claim_fp"] = fingerprint(value)
            continue
        clean[key] = str(value) if not isinstance(value, (str, int, float, bool, type(None))) else value
    return clean


class AuditLogger:
    """
    Audit logging interface for transfer lifecycle events.
    """

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or _logger

    def log_event(self, event: str, **details: Any) -> None:
        """Generic structured audit event."""

        payload = {"event": event, **_scrub(details), "timestamp": datetime.now(timezone.utc).isoformat()}
        self.logger.info(json.dumps(payload))

    def log_transfer_created(self, transfer_id: str, sender_id: str, amount: Any, token: str, claim_token: str):
        self.log_event(
            "transfer.created",
            transfer_id=transfer_id,
            sender_id=sender_id,
            amount=amount,
            token=token,
            claim_token=claim_token,
        )

    def log_transfer_failed(self, transfer_id: str, reason: str, tx_ref: Optional[str] = None):
        payload = {"event": "transfer.failed", "transfer_id": transfer_id, "reason": reason, "tx_ref": tx_ref}
        payload["timestamp"] = datetime.now(timezone.utc).isoformat()
        self.logger.warning(json.dumps(payload))

    def log_transfer_claimed(self, transfer_id: str, payout_method: str, claimed_by: Optional[str], tx_ref: Optional[str]):
        self.log_event(
            "transfer.claimed",
            transfer_id=transfer_id,
            payout_method=payout_method,
            claimed_by=claimed_by,
            tx_ref=tx_ref,
        )

    def log_transfer_refunded(self, transfer_id: str, sender_address: str, tx_ref: str, trigger: str):
        self.log_event(
            "transfer.refunded",
            transfer_id=transfer_id,
            sender_address=sender_address,
            tx_ref=tx_ref,
            trigger=trigger,
        )

    def log_transition_rejected(self, operation: str, reason: str, transfer_id: Optional[str] = None, **details: Any):
        self.log_event(
            "transfer.rejected",
            operation=operation,
            reason=reason,
            transfer_id=transfer_id,
            **details,
        )

    def log_security_event(self, event_type: str, severity: str, details: Dict[str, Any]):
        """Log security event."""
        self.logger.warning(f"SECURITY_EVENT | type={event_type} | severity={severity} | details={_scrub(details)}")

    def log_error(self, error_type: str, error_msg: str, context: Optional[Dict[str, Any]] = None):
        """Log application error."""
        msg = f"ERROR | type={error_type} | msg={error_msg}"
        if context:
            msg += f" | context={_scrub(context)}"
        self.logger.error(msg)
