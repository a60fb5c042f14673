"""Error taxonomy for the transfer lifecycle."""

from typing import Optional


class TransferError(Exception):
    """Base exception for transfer lifecycle errors."""

    code = "transfer_error"
    http_status = 500

    def __init__(self, message: str = ""):
        super().__init__(message or self.code)
        self.message = message or self.code

    def to_dict(self) -> dict:
        return {"success": False, "error": self.code, "message": self.message}


class ValidationError(TransferError):
    """Bad input. Never mutates state."""

    code = "validation_error"
    http_status = 400


class NotFound(TransferError):
    code = "not_found"
    http_status = 404


class Unauthorized(TransferError):
    code = "unauthorized"
    http_status = 403


class AlreadySettled(TransferError):
    """The transfer is not pending; the requested transition is illegal."""

    code = "already_settled"
    http_status = 409

    def __init__(self, message: str = "", status: Optional[str] = None):
        super().__init__(message or (f"Transfer has already been {status}" if status else "Transfer is already settled"))
        self.status = status


class Expired(TransferError):
    code = "expired"
    http_status = 410


class NotYetExpired(TransferError):
    code = "not_yet_expired"
    http_status = 409


class LedgerError(TransferError):
    """The custody operation failed or could not be confirmed."""

    code = "ledger_error"
    http_status = 502

    def __init__(self, message: str = "", tx_ref: Optional[str] = None):
        super().__init__(message)
        self.tx_ref = tx_ref


class LedgerTimeout(LedgerError):
    """The outcome of a submitted ledger call is unknown.

    Usually the transaction did not seal before the deadline. ``tx_ref``
    carries the submitted reference when there is one; the transaction may
    still seal.
    """

    code = "ledger_timeout"


class NotifierError(TransferError):
    code = "notifier_error"
    http_status = 502


class StoreError(TransferError):
    code = "store_error"
    http_status = 503


class ClaimTokenCollision(StoreError):
    code = "claim_token_collision"
