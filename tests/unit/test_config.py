"""
Unit tests for configuration management.
"""

import os
from unittest.mock import patch

import pytest

from flowpay.config import DEV_SECRET, get_config, validate_config


class TestGetConfig:
    """Test configuration loading from environment variables."""

    def test_get_config_defaults(self):
        """Test that get_config returns default values when env vars not set."""
        config = get_config()

        assert config["FLASK_ENV"] == "testing"  # Set in conftest
        assert config["TRANSFER_EXPIRY_DAYS"] == 7
        assert config["SUPPORTED_TOKENS"] == ["FLOW", "USDC"]
        assert config["LEDGER_BACKEND"] == "memory"
        assert config["APP_NAME"] == "FlowPay"

    def test_get_config_custom_values(self):
        """Test that get_config uses environment variables when provided."""
        with patch.dict(
            os.environ,
            {"TRANSFER_EXPIRY_DAYS": "3", "SUPPORTED_TOKENS": "flow, usdc, fusd", "APP_URL": "https://pay.example/"},
        ):
            config = get_config()

            assert config["TRANSFER_EXPIRY_DAYS"] == 3
            assert config["SUPPORTED_TOKENS"] == ["FLOW", "USDC", "FUSD"]
            assert config["APP_URL"] == "https://pay.example"

    def test_app_url_falls_back_to_public_url(self):
        env = {k: v for k, v in os.environ.items() if k != "APP_URL"}
        env["NEXT_PUBLIC_APP_URL"] = "https://useflopay.xyz"
        with patch.dict(os.environ, env, clear=True):
            assert get_config()["APP_URL"] == "https://useflopay.xyz"

    def test_get_config_boolean_parsing(self):
        """Test that boolean environment variables are parsed correctly."""
        with patch.dict(os.environ, {"FLASK_DEBUG": "1", "RATE_LIMIT_ENABLED": "true", "FORCE_HTTPS": "yes"}):
            config = get_config()

            assert config["FLASK_DEBUG"] is True
            assert config["RATE_LIMIT_ENABLED"] is True
            assert config["FORCE_HTTPS"] is True

    def test_get_config_integer_parsing(self):
        """Test that integer environment variables are parsed correctly."""
        with patch.dict(os.environ, {"LEDGER_SEAL_TIMEOUT_SECONDS": "120", "REMINDER_WINDOW_HOURS": "48"}):
            config = get_config()

            assert config["LEDGER_SEAL_TIMEOUT_SECONDS"] == 120
            assert config["REMINDER_WINDOW_HOURS"] == 48

    def test_get_config_invalid_integer_raises(self):
        """Invalid integer inputs should surface a helpful error."""
        with patch.dict(os.environ, {"TRANSFER_EXPIRY_DAYS": "seven"}):
            with pytest.raises(ValueError, match="TRANSFER_EXPIRY_DAYS"):
                get_config()


class TestValidateConfig:
    """Test configuration validation for production."""

    @pytest.fixture
    def production(self):
        return {
            "FLASK_ENV": "production",
            "FLASK_SECRET_KEY": "secure_flask_secret_key",
            "CRON_SECRET": "secure_cron_secret",
            "LEDGER_BACKEND": "flow",
            "DATABASE_URL": "postgresql://flowpay:pw@db/flowpay",
            "RESEND_API_KEY": "re_live_key",
            "TRANSFER_EXPIRY_DAYS": 7,
        }

    def test_validate_config_development_passes(self):
        """Test that development config validation passes."""
        config = {"FLASK_ENV": "development", "CRON_SECRET": DEV_SECRET, "FLASK_SECRET_KEY": None}

        assert validate_config(config) is True

    def test_non_positive_expiry_fails(self):
        with pytest.raises(ValueError, match="TRANSFER_EXPIRY_DAYS"):
            validate_config({"FLASK_ENV": "development", "TRANSFER_EXPIRY_DAYS": 0})

    def test_unknown_ledger_backend_fails(self):
        with pytest.raises(ValueError, match="LEDGER_BACKEND"):
            validate_config({"FLASK_ENV": "development", "LEDGER_BACKEND": "ethereum"})

    def test_validate_config_production_fails_flask_secret(self, production):
        """Test that production validation fails without Flask secret."""
        production["FLASK_SECRET_KEY"] = None

        with pytest.raises(ValueError, match="FLASK_SECRET_KEY must be set"):
            validate_config(production)

    def test_validate_config_production_fails_cron_secret(self, production):
        production["CRON_SECRET"] = DEV_SECRET

        with pytest.raises(ValueError, match="CRON_SECRET must be changed"):
            validate_config(production)

    def test_validate_config_production_rejects_memory_ledger(self, production):
        production["LEDGER_BACKEND"] = "memory"

        with pytest.raises(ValueError, match="LEDGER_BACKEND=memory"):
            validate_config(production)

    def test_missing_email_key_only_warns(self, production):
        production["RESEND_API_KEY"] = None

        with pytest.warns(UserWarning, match="RESEND_API_KEY"):
            assert validate_config(production) is True

    def test_validate_config_production_passes(self, production):
        """Test that production validation passes with secure values."""
        assert validate_config(production) is True
