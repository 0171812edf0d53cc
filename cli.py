"""Flask CLI commands for admin bootstrap and billing maintenance.

Usage:
    flask --app app create-admin --email ops@example.com
    flask --app app sync-catalog --dry-run
    flask --app app backfill-invoices --limit 500
"""

from __future__ import annotations

import json
import sys
from typing import Optional

import click
from flask import current_app
from werkzeug.security import generate_password_hash

from extensions import db
from models import User
from services.audit import log_action
from services.billing import DEFAULT_BACKFILL_LIMIT, backfill_invoices, sync_catalog
from services.billing_providers import get_billing_provider
from services.errors import DesklyError


def _echo_result(result: dict) -> None:
    click.echo(json.dumps(result, indent=2, default=str))


def register_cli(app):
    """Attach the Deskly commands to ``app.cli``."""

    @app.cli.command("create-admin")
    @click.option("--email", required=True, help="Login email of the admin")
    @click.option("--name", default="", help="Display name")
    @click.password_option(help="Password (prompted when omitted)")
    def create_admin(email: str, name: str, password: str):
        """Create an admin account, or promote an existing user to admin."""
        email = email.strip().lower()
        user = User.query.filter_by(email=email).first()
        if user is None:
            user = User(email=email, full_name=name.strip() or None, role="admin")
            db.session.add(user)
            action = "created"
        else:
            user.role = "admin"
            user.is_active = True
            action = "promoted"
        user.password_hash = generate_password_hash(password)
        db.session.flush()
        log_action("create_admin", "user", user.id, f"{action} via CLI")
        db.session.commit()
        click.echo(f"Admin {email} {action}.")

    @app.cli.command("sync-catalog")
    @click.option("--dry-run", is_flag=True, help="Report outcomes without creating prices")
    @click.option("--currency", default=None, help="Override the default billing currency")
    def sync_catalog_command(dry_run: bool, currency: Optional[str]):
        """Create provider prices for active products whose price changed."""
        config = current_app.config["BILLING_CONFIG"]
        try:
            result = sync_catalog(
                get_billing_provider(config), config, {"dry_run": dry_run, "currency": currency}
            )
        except DesklyError as e:
            db.session.rollback()
            click.echo(f"Error: {e.message}", err=True)
            sys.exit(1)
        _echo_result(result)

    @app.cli.command("backfill-invoices")
    @click.option("--limit", default=DEFAULT_BACKFILL_LIMIT, show_default=True, type=int)
    @click.option("--dry-run", is_flag=True, help="Fetch and link without writing")
    def backfill_invoices_command(limit: int, dry_run: bool):
        """Mirror historical provider invoices into the local invoice table."""
        provider = get_billing_provider(current_app.config["BILLING_CONFIG"])
        try:
            result = backfill_invoices(provider, {"limit": limit, "dry_run": dry_run})
        except DesklyError as e:
            db.session.rollback()
            click.echo(f"Error: {e.message}", err=True)
            sys.exit(1)
        _echo_result(result)
