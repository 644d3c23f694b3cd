# Overview: Flask CLI command groups for plan seeding and scheduled maintenance.

# backend/marketcore/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# Plans:
# - python -m flask plans seed [--currency ETB]
#   Insert the starter, growth, pro and enterprise plans (skips existing slugs).
# - python -m flask plans list [--all]
#   List plans with prices in cents (use --all to include inactive).
#
# Users:
# - python -m flask users set-role 4 seller
#   Change a mirrored user's role (buyer, seller, admin).
#
# Maintenance (same jobs the /api/cron endpoints run):
# - python -m flask maintenance process-subscriptions
#   Expire trials, finalize scheduled cancellations, mark lapsed periods past_due.
# - python -m flask maintenance cleanup-webhook-events --older-than-days 30
#   Delete webhook dedup rows older than the retention window, batch by batch.

import click
from flask import current_app
from flask.cli import with_appcontext

from .models.users import VALID_ROLES
from .services import identity_service, maintenance_service, plan_service
from .validation import MarketError


@click.group('plans')
def plans_group():
    """Subscription plan catalog commands."""


@plans_group.command('seed')
@click.option('--currency', default=None, help='Plan currency (defaults to DEFAULT_CURRENCY)')
@with_appcontext
def seed_plans_cli(currency):
    """Seed the default plan tiers. Safe to run repeatedly."""
    currency = (currency or current_app.config["DEFAULT_CURRENCY"]).upper()
    created = plan_service.seed_default_plans(currency=currency)
    if created:
        click.echo(f"PASS Created {created} plan(s) in {currency}")
    else:
        click.echo("PASS All default plans already exist")


@plans_group.command('list')
@click.option('--all', 'include_inactive', is_flag=True, help='Include inactive plans')
@with_appcontext
def list_plans_cli(include_inactive):
    plans = plan_service.list_plans(active_only=not include_inactive)
    if not plans:
        click.echo("No plans found. Run: python -m flask plans seed")
        return

    click.echo("\n" + "="*80)
    click.echo(f"{'ID':<5} {'Slug':<15} {'Name':<15} {'Monthly':>12} {'Annual':>12} {'Cur':<5} {'Active'}")
    click.echo("="*80)
    for plan in plans:
        click.echo(
            f"{plan.id:<5} {plan.slug:<15} {plan.name:<15} {plan.monthly_price_cents:>12} "
            f"{plan.annual_price_cents:>12} {plan.currency:<5} {'yes' if plan.is_active else 'no'}"
        )
    click.echo("="*80 + "\n")


@click.group('users')
def users_group():
    """Identity mirror commands."""


@users_group.command('set-role')
@click.argument('user_id', type=int)
@click.argument('role', type=click.Choice(VALID_ROLES))
@with_appcontext
def set_role_cli(user_id, role):
    try:
        user = identity_service.set_role(user_id, role)
    except MarketError as e:
        raise click.ClickException(e.message)
    click.echo(f"PASS User {user.id} ({user.display_name}) is now {user.role}")


@click.group('maintenance')
def maintenance_group():
    """Maintenance commands."""


@maintenance_group.command('process-subscriptions')
@with_appcontext
def process_subscriptions_cli():
    """Advance subscriptions whose current period has ended."""
    result = maintenance_service.process_subscriptions()
    click.echo(
        f"Processed {result['processed']} subscription(s): "
        f"{result['expired']} expired, {result['cancelled']} cancelled, {result['past_due']} past due."
    )


@maintenance_group.command('cleanup-webhook-events')
@click.option('--older-than-days', type=int, default=None, help='Retention window (defaults to WEBHOOK_RETENTION_DAYS)')
@click.option('--batch-size', type=int, default=None, help='Rows per batch (defaults to WEBHOOK_CLEANUP_BATCH_SIZE)')
@with_appcontext
def cleanup_webhook_events_cli(older_than_days, batch_size):
    """
    Delete old webhook dedup rows.

    Runs batches until nothing older than the window remains.
    """
    if older_than_days is None:
        older_than_days = current_app.config["WEBHOOK_RETENTION_DAYS"]
    if batch_size is None:
        batch_size = current_app.config["WEBHOOK_CLEANUP_BATCH_SIZE"]

    total = 0
    while True:
        try:
            result = maintenance_service.cleanup_webhook_events(
                older_than_days=older_than_days,
                batch_size=batch_size,
            )
        except MarketError as e:
            raise click.ClickException(e.message)
        total += result["deleted"]
        if not result["has_more"]:
            break
    click.echo(f"Deleted {total} webhook events older than {older_than_days} days.")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(plans_group)
    app.cli.add_command(users_group)
    app.cli.add_command(maintenance_group)
