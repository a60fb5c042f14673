"""Helpers for issuing claim tokens and transfer identifiers."""

from __future__ import annotations

import hashlib
import secrets
import uuid

CLAIM_TOKEN_BYTES = 24  # 32 URL-safe characters


def generate_claim_token() -> str:
    """Return a high-entropy, URL-safe bearer token for a claimable transfer."""
    return secrets.token_urlsafe(CLAIM_TOKEN_BYTES)


def generate_transfer_id() -> str:
    return f"transfer_{uuid.uuid4().hex}"


def build_claim_link(base_url: str, claim_token: str) -> str:
    return f"{base_url.rstrip('/')}/claim/{claim_token}"


def fingerprint(claim_token: str) -> str:
    """Short, non-reversible identifier safe to put in logs."""
    if not claim_token:
        return "-"
    return hashlib.sha256(claim_token.encode("utf-8")).hexdigest()[:12]


__all__ = ["generate_claim_token", "generate_transfer_id", "build_claim_link", "fingerprint"]
