"""
Flask CLI commands for FlowPay operations.

Run with ``flask --app wsgi <command>``; each command is one unit of work
against the service wired up by ``create_app``.
"""

import json
import logging
from datetime import timedelta

import click
from flask import Flask

from flowpay.database import get_engine, get_health_status
from flowpay.errors import LedgerError
from flowpay.factory import get_service
from flowpay.models import Base

logger = logging.getLogger(__name__)


def _echo_json(payload) -> None:
    click.echo(json.dumps(payload, indent=2, default=str))


def register_cli(app: Flask) -> None:
    """Attach the operational commands to ``app.cli``."""

    @app.cli.command("init-db")
    def init_db():
        """Create all tables (use migrations for production schema changes)."""
        Base.metadata.create_all(get_engine())
        click.echo("✅ All tables created successfully")
        health = get_health_status()
        click.echo(f"  Database: {health['database']['status']}")
        click.echo(f"  Redis: {health['redis']['status']}")

    @app.cli.command("sweep-expired")
    def sweep_expired():
        """Refund every pending transfer past its expiry."""
        report = get_service().sweep_expired_transfers()
        _echo_json(report.to_dict())
        if report.failed:
            raise click.exceptions.Exit(1)

    @app.cli.command("send-expiry-reminders")
    @click.option("--within-hours", type=int, default=None, help="Reminder window (defaults to REMINDER_WINDOW_HOURS).")
    def send_expiry_reminders(within_hours):
        """Email recipients whose transfers expire soon."""
        within = timedelta(hours=within_hours) if within_hours else None
        _echo_json(get_service().send_expiry_reminders(within=within))

    @app.cli.command("reconcile")
    def reconcile():
        """Resolve in-flight ledger transactions and compare escrow custody."""
        service = get_service()
        _echo_json({"in_flight": service.reconcile_in_flight()})
        try:
            report = service.check_escrow_reconciliation()
        except LedgerError as e:
            click.echo(f"❌ Escrow metrics unavailable: {e.message}", err=True)
            raise click.exceptions.Exit(2)
        _echo_json({"escrow": report.to_dict()})
        if not report.balanced:
            click.echo("⚠️  Escrow custody does not match the transfer store", err=True)
            raise click.exceptions.Exit(1)
