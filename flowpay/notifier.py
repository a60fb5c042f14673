"""Transfer email notifications via Resend.

Notification is best-effort: every method returns a ``NotificationResult``
and never raises, so a mail outage cannot undo a transfer that is already
committed.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Mapping, Optional

import requests
from jinja2 import Environment, select_autoescape
from markupsafe import Markup

from flowpay.errors import NotifierError
from flowpay.presentation import format_address, format_time_until

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClaimNotice:
    recipient_email: str
    sender_address: str
    amount: Decimal
    token: str
    claim_link: str
    expires_at: datetime
    note: Optional[str] = None
    now: Optional[datetime] = None


@dataclass(frozen=True)
class ClaimConfirmation:
    sender_email: str
    transfer_id: str
    amount: Decimal
    token: str
    claimed_by: str


@dataclass(frozen=True)
class ExpiryReminder:
    recipient_email: str
    transfer_id: str
    amount: Decimal
    token: str
    claim_link: str
    expires_at: datetime
    now: Optional[datetime] = None


@dataclass(frozen=True)
class NotificationResult:
    success: bool
    error: Optional[str] = None
    message_id: Optional[str] = None


class Notifier(ABC):
    @abstractmethod
    def send_claim_notice(self, data: ClaimNotice) -> NotificationResult:
        """Tell a recipient funds are waiting."""

    @abstractmethod
    def send_claim_confirmation(self, data: ClaimConfirmation) -> NotificationResult:
        """Tell a sender their transfer was claimed."""

    @abstractmethod
    def send_expiry_reminder(self, data: ExpiryReminder) -> NotificationResult:
        """Tell a recipient an unclaimed transfer expires soon."""


_env = Environment(autoescape=select_autoescape(default=True, default_for_string=True))
_text_env = Environment(autoescape=False)

_LAYOUT = """<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>{{ title }}</title></head>
<body style="font-family: -apple-system, 'Segoe UI', Roboto, sans-serif; background-color: #f5f5f5;">
  <div style="max-width: 600px; margin: 0 auto; background-color: #ffffff;">
    <div style="background: #000000; padding: 40px 20px; text-align: center;">
      <div style="color: #97F11D; font-size: 28px; font-weight: bold;">FlowPay</div>
    </div>
    <div style="padding: 40px 20px;">{{ body }}</div>
    <div style="background-color: #f8f9fa; padding: 20px; text-align: center; font-size: 14px; color: #666666;">
      This email was sent by FlowPay. If you didn't expect it, please ignore this email.
    </div>
  </div>
</body>
</html>
"""

_CLAIM_NOTICE_HTML = _env.from_string(
    """<h1 style="text-align: center;">You have money waiting!</h1>
<div style="font-size: 48px; font-weight: bold; color: #97F11D; text-align: center;">{{ amount }} {{ token }}</div>
<p><strong>From:</strong> {{ sender }}</p>
{% if note %}<div style="background-color: #f8f9fa; padding: 20px; border-left: 4px solid #97F11D;">
<strong>Message:</strong><br>{{ note }}</div>{% endif %}
<p style="text-align: center;"><a href="{{ claim_link }}"
   style="background-color: #97F11D; color: #000000; padding: 16px 32px; text-decoration: none; border-radius: 8px;">
   Claim Your Money</a></p>
<p><strong>Important:</strong> This transfer expires in {{ expires_in }}.
If not claimed by then, the funds will be returned to the sender.</p>
<p>No FlowPay account required! You can claim to your crypto wallet or bank account.</p>"""
)

_CLAIM_NOTICE_TEXT = _text_env.from_string(
    """You have money waiting!

Amount: {{ amount }} {{ token }}
From: {{ sender }}
{% if note %}Message: {{ note }}
{% endif %}
Claim your money: {{ claim_link }}

Important: This transfer expires in {{ expires_in }}.
If not claimed by then, the funds will be returned to the sender."""
)

_CONFIRMATION_HTML = _env.from_string(
    """<h1 style="text-align: center;">Your transfer has been claimed</h1>
<div style="font-size: 48px; font-weight: bold; color: #97F11D; text-align: center;">{{ amount }} {{ token }}</div>
<p>Claimed by: {{ claimed_by }}</p>
<p>Transfer ID: {{ transfer_id }}</p>"""
)

_CONFIRMATION_TEXT = _text_env.from_string(
    """Your transfer has been claimed

Amount: {{ amount }} {{ token }}
Claimed by: {{ claimed_by }}
Transfer ID: {{ transfer_id }}"""
)

_REMINDER_HTML = _env.from_string(
    """<h1 style="text-align: center;">Your transfer expires soon</h1>
<div style="font-size: 48px; font-weight: bold; color: #97F11D; text-align: center;">{{ amount }} {{ token }}</div>
<p>This transfer expires in {{ expires_in }}.</p>
<p style="text-align: center;"><a href="{{ claim_link }}">Claim Now</a></p>
<p>If not claimed by then, the funds will be returned to the sender.</p>"""
)

_REMINDER_TEXT = _text_env.from_string(
    """Your transfer expires soon

Amount: {{ amount }} {{ token }}
This transfer expires in {{ expires_in }}.

Claim now: {{ claim_link }}

If not claimed by then, the funds will be returned to the sender."""
)

_LAYOUT_TEMPLATE = _env.from_string(_LAYOUT)


def _render_html(title: str, body_template, **context: Any) -> str:
    # body was rendered with autoescape on
    body = body_template.render(**context)
    return _LAYOUT_TEMPLATE.render(title=title, body=Markup(body))


class EmailNotifier(Notifier):
    """Sends transfer emails through the Resend HTTP API."""

    def __init__(
        self,
        api_key: Optional[str],
        from_email: str,
        api_url: str = "https://api.resend.com",
        timeout: float = 10,
        session: Optional[requests.Session] = None,
    ):
        self.api_key = api_key if api_key and "placeholder" not in api_key else None
        self.from_email = from_email
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        if self.api_key is None:
            logger.warning("Resend API key not configured, email service disabled")

    @classmethod
    def from_config(cls, cfg: Mapping[str, Any]) -> "EmailNotifier":
        return cls(
            api_key=cfg.get("RESEND_API_KEY"),
            from_email=cfg.get("FROM_EMAIL", "noreply@useflopay.xyz"),
            api_url=cfg.get("RESEND_API_URL", "https://api.resend.com"),
        )

    def _send(self, to: str, subject: str, html: str, text: str) -> NotificationResult:
        try:
            if self.api_key is None:
                raise NotifierError("Email service not configured")

            resp = self.session.post(
                f"{self.api_url}/emails",
                json={"from": self.from_email, "to": [to], "subject": subject, "html": html, "text": text},
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=self.timeout,
            )
            if resp.status_code >= 300:
                raise NotifierError(f"Resend rejected email: {resp.status_code} {resp.text}")

            message_id = resp.json().get("id")
            logger.info(f"Email sent: subject={subject!r} id={message_id}")
            return NotificationResult(success=True, message_id=message_id)
        except (NotifierError, requests.RequestException, ValueError) as e:
            logger.error(f"Error sending email {subject!r}: {e}")
            return NotificationResult(success=False, error=str(e))

    def send_claim_notice(self, data):
        context = {
            "amount": data.amount,
            "token": data.token,
            "sender": format_address(data.sender_address),
            "note": data.note,
            "claim_link": data.claim_link,
            "expires_in": format_time_until(data.expires_at, now=data.now),
        }
        return self._send(
            data.recipient_email,
            f"💰 You have {data.amount} {data.token} waiting for you!",
            _render_html("You have money waiting!", _CLAIM_NOTICE_HTML, **context),
            _CLAIM_NOTICE_TEXT.render(**context),
        )

    def send_claim_confirmation(self, data):
        context = {
            "amount": data.amount,
            "token": data.token,
            "claimed_by": format_address(data.claimed_by) or "fiat payout",
            "transfer_id": data.transfer_id,
        }
        return self._send(
            data.sender_email,
            f"✅ Your transfer of {data.amount} {data.token} has been claimed!",
            _render_html("Transfer Claimed", _CONFIRMATION_HTML, **context),
            _CONFIRMATION_TEXT.render(**context),
        )

    def send_expiry_reminder(self, data):
        context = {
            "amount": data.amount,
            "token": data.token,
            "claim_link": data.claim_link,
            "expires_in": format_time_until(data.expires_at, now=data.now),
        }
        return self._send(
            data.recipient_email,
            f"⏰ Your {data.amount} {data.token} transfer expires soon!",
            _render_html("Transfer expiring soon", _REMINDER_HTML, **context),
            _REMINDER_TEXT.render(**context),
        )
