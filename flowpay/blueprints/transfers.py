"""
Transfers Blueprint - Escrowed Peer-to-Peer Transfers

Create a transfer, look it up by claim token, claim it, refund it, and
resend the claim email. Request bodies use camelCase keys.
"""

import logging
from typing import Any, Dict, Optional

from flask import Blueprint, jsonify, request

from flowpay.domain import PayoutMethod, TransferResult
from flowpay.errors import TransferError, Unauthorized, ValidationError
from flowpay.factory import get_service
from flowpay.metrics import record_operation
from flowpay.presentation import claim_view, error_message, public_view, sender_view
from flowpay.security import limiter

logger = logging.getLogger(__name__)

transfers_bp = Blueprint("transfers", __name__)

CREATE_RATE_LIMIT = "10 per minute"
CLAIM_RATE_LIMIT = "20 per minute"
LOOKUP_RATE_LIMIT = "60 per minute"
MIN_CLAIM_TOKEN_LENGTH = 10


def _json_body() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def _sender_id() -> Optional[str]:
    header = request.headers.get("X-Sender-Id")
    query = request.args.get("senderId")
    if header and query and header != query:
        raise Unauthorized("senderId does not match the authenticated sender")
    return header or query


def _fail(result: TransferResult):
    error: TransferError = result.error
    body = error.to_dict()
    body["user_message"] = error_message(error)
    return jsonify(body), error.http_status


@transfers_bp.route("", methods=["POST"])
@limiter.limit(CREATE_RATE_LIMIT)
def create_transfer():
    """
    Create an escrowed transfer.

    Headers:
        X-Sender-Id: Authenticated sender identity
        X-Sender-Address: Sender's ledger address

    Returns:
        201 with the created transfer, including its claim link
    """
    data = _json_body()
    result = get_service().create_transfer(
        sender_id=request.headers.get("X-Sender-Id"),
        sender_address=request.headers.get("X-Sender-Address"),
        amount=data.get("amount"),
        token=data.get("token"),
        recipient_email=data.get("recipientEmail"),
        note=data.get("note"),
        notify=bool(data.get("sendEmail")),
        sender_email=data.get("senderEmail"),
    )
    record_operation("create", result)
    if not result.success:
        return _fail(result)
    return jsonify({"success": True, "transfer": result.transfer.to_dict()}), 201


@transfers_bp.route("", methods=["GET"])
def list_transfers():
    """List a sender's transfers, newest first."""
    sender_id = _sender_id()
    if not sender_id:
        raise ValidationError("senderId is required")
    transfers = get_service().list_transfers_by_sender(sender_id)
    return jsonify({"success": True, "transfers": [sender_view(t) for t in transfers], "count": len(transfers)})


@transfers_bp.route("/stats", methods=["GET"])
def transfer_stats():
    sender_id = _sender_id()
    if not sender_id:
        raise ValidationError("senderId is required")
    return jsonify({"success": True, "stats": get_service().get_transfer_stats(sender_id)})


@transfers_bp.route("/<claim_token>", methods=["GET"])
@limiter.limit(LOOKUP_RATE_LIMIT)
def transfer_details(claim_token: str):
    """
    Public claim-page view of a transfer.

    Args:
        claim_token: Bearer token from the claim link

    Returns:
        JSON with the transfer, its display status, countdown and payout options
    """
    if len(claim_token) < MIN_CLAIM_TOKEN_LENGTH:
        raise ValidationError("Invalid claim token")

    service = get_service()
    result = service.get_transfer_details(claim_token)
    if not result.success:
        return _fail(result)
    return jsonify({"success": True, "transfer": claim_view(result.transfer, now=service.clock())})


@transfers_bp.route("/claim", methods=["POST"])
@limiter.limit(CLAIM_RATE_LIMIT)
def claim_transfer():
    """
    Claim a transfer to a wallet (crypto) or via the fiat bridge.

    Body:
        claimToken, payoutMethod ("crypto" | "fiat"),
        recipientAddress (crypto), recipientEmail (fiat)
    """
    data = _json_body()
    payout_method = data.get("payoutMethod") or PayoutMethod.CRYPTO.value
    result = get_service().claim_transfer(
        claim_token=data.get("claimToken"),
        payout_method=payout_method,
        recipient_address=data.get("recipientAddress"),
        recipient_email=data.get("recipientEmail"),
    )
    record_operation("claim", result)
    if not result.success:
        return _fail(result)

    transfer = result.transfer
    if transfer.payout_method is PayoutMethod.FIAT:
        message = "Fiat payout initiated. Funds will arrive in 1-3 business days."
    else:
        message = "Transfer claimed successfully"
    return jsonify({"success": True, "message": message, "transfer": public_view(transfer)})


@transfers_bp.route("/refund", methods=["POST"])
@limiter.limit(CLAIM_RATE_LIMIT)
def refund_transfer():
    """Return an expired, unclaimed transfer to its sender."""
    data = _json_body()
    result = get_service().refund_transfer(
        transfer_id=data.get("transferId"),
        sender_address=data.get("senderAddress") or request.headers.get("X-Sender-Address"),
    )
    record_operation("refund", result)
    if not result.success:
        return _fail(result)
    return jsonify(
        {"success": True, "message": "Transfer refunded successfully", "transfer": public_view(result.transfer)}
    )


@transfers_bp.route("/send-email", methods=["POST"])
@limiter.limit(CREATE_RATE_LIMIT)
def send_claim_email():
    """Resend the claim email for one of the caller's live transfers."""
    data = _json_body()
    result = get_service().send_claim_email(
        transfer_id=data.get("transferId"),
        recipient_email=data.get("recipientEmail"),
        sender_address=request.headers.get("X-Sender-Address"),
    )
    record_operation("send_email", result)
    if not result.success:
        return _fail(result)
    return jsonify({"success": True, "message": "Email sent successfully"})
