"""
Unit tests for Resend email notifications.
"""

from datetime import timedelta
from decimal import Decimal
from unittest.mock import MagicMock

import pytest
import requests
from conftest import NOW

from flowpay.notifier import ClaimConfirmation, ClaimNotice, EmailNotifier, ExpiryReminder


def _notice(**overrides):
    fields = dict(
        recipient_email="bob@example.com",
        sender_address="0xf8d6e0586b0a20c7",
        amount=Decimal("10"),
        token="FLOW",
        claim_link="https://useflopay.xyz/claim/abc",
        expires_at=NOW + timedelta(days=3, minutes=5),
        note=None,
        now=NOW,
    )
    fields.update(overrides)
    return ClaimNotice(**fields)


class TestEmailNotifier:
    @pytest.fixture
    def session(self):
        session = MagicMock(spec=requests.Session)
        resp = MagicMock(status_code=200)
        resp.json.return_value = {"id": "email_1"}
        session.post.return_value = resp
        return session

    @pytest.fixture
    def notifier(self, session):
        return EmailNotifier(api_key="re_test_key", from_email="noreply@useflopay.xyz", session=session)

    def _sent(self, session):
        return session.post.call_args[1]["json"]

    def test_claim_notice(self, notifier, session):
        result = notifier.send_claim_notice(_notice())

        assert result.success is True
        assert result.message_id == "email_1"
        assert session.post.call_args[0][0] == "https://api.resend.com/emails"
        assert session.post.call_args[1]["headers"]["Authorization"] == "Bearer re_test_key"
        payload = self._sent(session)
        assert payload["to"] == ["bob@example.com"]
        assert payload["from"] == "noreply@useflopay.xyz"
        assert "10 FLOW" in payload["subject"]
        assert "https://useflopay.xyz/claim/abc" in payload["html"]
        assert "0xf8d6...20c7" in payload["text"]
        assert "3 days" in payload["text"]

    def test_countdown_is_measured_from_notice_time(self, notifier, session):
        notifier.send_claim_notice(_notice(expires_at=NOW + timedelta(days=2, hours=3)))

        assert "2 days and 3 hours" in self._sent(session)["text"]

    def test_note_is_escaped_in_html_only(self, notifier, session):
        notifier.send_claim_notice(_notice(note="<b>lunch</b> & coffee"))

        payload = self._sent(session)
        assert "&lt;b&gt;lunch&lt;/b&gt; &amp; coffee" in payload["html"]
        assert "<b>lunch</b>" not in payload["html"]
        assert "Message: <b>lunch</b> & coffee" in payload["text"]

    def test_claim_confirmation(self, notifier, session):
        result = notifier.send_claim_confirmation(
            ClaimConfirmation(
                sender_email="alice@example.com",
                transfer_id="transfer_1",
                amount=Decimal("10"),
                token="FLOW",
                claimed_by="0x01cf0e2f2f715450",
            )
        )

        assert result.success is True
        payload = self._sent(session)
        assert payload["to"] == ["alice@example.com"]
        assert "transfer_1" in payload["text"]

    def test_fiat_confirmation_names_payout(self, notifier, session):
        notifier.send_claim_confirmation(
            ClaimConfirmation(
                sender_email="alice@example.com",
                transfer_id="transfer_1",
                amount=Decimal("10"),
                token="FLOW",
                claimed_by=None,
            )
        )

        assert "Claimed by: fiat payout" in self._sent(session)["text"]

    def test_expiry_reminder(self, notifier, session):
        result = notifier.send_expiry_reminder(
            ExpiryReminder(
                recipient_email="bob@example.com",
                transfer_id="transfer_1",
                amount=Decimal("10"),
                token="FLOW",
                claim_link="https://useflopay.xyz/claim/abc",
                expires_at=NOW + timedelta(hours=5, minutes=5),
                now=NOW,
            )
        )

        assert result.success is True
        assert "5 hours" in self._sent(session)["text"]

    @pytest.mark.parametrize("api_key", [None, "", "re_placeholder_key"])
    def test_unconfigured_key_fails_without_sending(self, api_key, session):
        notifier = EmailNotifier(api_key=api_key, from_email="noreply@useflopay.xyz", session=session)

        result = notifier.send_claim_notice(_notice())

        assert result.success is False
        assert "not configured" in result.error
        session.post.assert_not_called()

    def test_rejected_by_provider(self, notifier, session):
        session.post.return_value = MagicMock(status_code=422, text="invalid to address")

        result = notifier.send_claim_notice(_notice())

        assert result.success is False
        assert "422" in result.error

    def test_network_failure_does_not_raise(self, notifier, session):
        session.post.side_effect = requests.Timeout("timed out")

        result = notifier.send_claim_notice(_notice())

        assert result.success is False
        assert "timed out" in result.error

    def test_from_config(self):
        notifier = EmailNotifier.from_config({"RESEND_API_KEY": "re_live", "FROM_EMAIL": "pay@example.com"})

        assert notifier.api_key == "re_live"
        assert notifier.from_email == "pay@example.com"
        assert notifier.api_url == "https://api.resend.com"
