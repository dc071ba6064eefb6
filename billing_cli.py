#!/usr/bin/env python3
"""Command line tools for billing operations.

Usage:
    python billing_cli.py --help
    python billing_cli.py init-db
    python billing_cli.py scan-renewals --dry-run
    python billing_cli.py reconcile 42
"""

from __future__ import annotations

import json
import sys

import click

from services.errors import EntitlementError


def get_app_context():
    """Get Flask application context."""
    from app import create_app
    app = create_app()
    return app.app_context()


class EchoQueue:
    """Job queue that prints jobs instead of sending them (``--dry-run``)."""

    def __init__(self):
        self.jobs = []

    def enqueue(self, task_name: str, *args) -> None:
        self.jobs.append((task_name, args))
        click.echo(f"  {task_name}{args!r}")


def _queue(dry_run: bool):
    from flask import current_app

    from services.scheduler import CeleryJobQueue

    if dry_run:
        return EchoQueue()
    return CeleryJobQueue(current_app.extensions["celery"])


# ---------------------------------------------------------------------------
# Click CLI Group
# ---------------------------------------------------------------------------

@click.group()
def cli():
    """Billing maintenance tools for the entitlement engine."""
    pass


@cli.command("init-db")
def init_db():
    """Create all database tables."""
    with get_app_context():
        from extensions import db

        db.create_all()
        click.echo("Database tables created.")


@cli.command("scan-renewals")
@click.option("--dry-run", is_flag=True, help="Print jobs instead of enqueuing them")
def scan_renewals(dry_run: bool):
    """Enqueue renewals for subscriptions whose period ends soon."""
    with get_app_context():
        from services import scheduler

        count = scheduler.scan_renewals(_queue(dry_run))
        click.echo(f"{count} renewal job(s).")


@cli.command("scan-retries")
@click.option("--dry-run", is_flag=True, help="Print jobs instead of enqueuing them")
def scan_retries(dry_run: bool):
    """Enqueue retries for failed payments that are due."""
    with get_app_context():
        from services import scheduler

        count = scheduler.scan_payment_retries(_queue(dry_run))
        click.echo(f"{count} retry job(s).")


@cli.command("scan-notices")
@click.option("--dry-run", is_flag=True, help="Print jobs instead of enqueuing them")
def scan_notices(dry_run: bool):
    """Enqueue expiration notices for licenses about to lapse."""
    with get_app_context():
        from services import scheduler

        count = scheduler.scan_expiration_notices(_queue(dry_run))
        click.echo(f"{count} notice job(s).")


@cli.command("expire-licenses")
def expire_licenses():
    """Expire licenses whose validity has passed."""
    with get_app_context():
        from services import scheduler

        count = scheduler.expire_licenses()
        click.echo(f"{count} license(s) expired.")


@cli.command("expire-lapsed")
def expire_lapsed():
    """Expire subscriptions past period end (cancelled) or past the grace period."""
    with get_app_context():
        from services import scheduler

        count = scheduler.expire_lapsed_subscriptions()
        click.echo(f"{count} subscription(s) expired.")


@cli.command()
@click.argument("subscription_id", type=int)
def reconcile(subscription_id: int):
    """Pull a subscription from Stripe and apply it locally."""
    with get_app_context():
        from services.webhooks import reconcile_subscription

        try:
            result = reconcile_subscription(subscription_id)
        except EntitlementError as e:
            click.echo(f"Error: {e.message}", err=True)
            sys.exit(1)
        click.echo(json.dumps(result, indent=2))


@cli.command()
@click.argument("organization_id", type=int)
def stats(organization_id: int):
    """Show license usage and renewal date for an organization."""
    with get_app_context():
        from services import entitlements

        try:
            data = entitlements.get_stats(organization_id)
        except EntitlementError as e:
            click.echo(f"Error: {e.message}", err=True)
            sys.exit(1)
        flag = click.style(" (expiring soon)", fg="yellow") if data["expiring_soon"] else ""
        click.echo(f"Subscription {data['subscription_id']}: {data['status']}")
        click.echo(f"  Licenses: {data['licenses_used']}/{data['capacity']} used, "
                   f"{data['available_licenses']} available")
        click.echo(f"  Next billing: {data['next_billing_date']} "
                   f"({data['days_until_renewal']} days){flag}")


if __name__ == "__main__":
    cli()
