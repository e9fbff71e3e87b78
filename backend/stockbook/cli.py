# Overview: Flask CLI command groups for bootstrap, ledger inspection and alert maintenance.

# backend/stockbook/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap:
# - python -m flask system init-db
#   Create all tables (idempotent) and seed the default chart of accounts.
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Chart of accounts / reports:
# - python -m flask accounts seed
#   Create the default chart of accounts (skips codes that already exist).
# - python -m flask accounts list
# - python -m flask accounts trial-balance [--as-of 2026-01-31]
#   Prints per-account debit/credit totals and exits non-zero when unbalanced.
# - python -m flask accounts balance-sheet [--as-of 2026-01-31]
#
# Stock:
# - python -m flask stock low
#   List products at or below their min_stock.
#
# Alerts (schedule these, e.g. cron every 15 minutes / nightly):
# - python -m flask alerts sweep [--as-of 2026-01-31]
#   Low-stock and expired-lot scan. Skipped if another sweep holds the lock.
# - python -m flask alerts cleanup --retention-days 30 [--include-unread]
#   Delete notifications older than the retention window.
# - python -m flask alerts expire-quotations
#   Mark quotations past valid_until as expired.

import click
from flask.cli import with_appcontext

from .extensions import db
from .models import Account
from .services import alert_service, ledger_service, quotation_service, stock_service
from .time_utils import parse_iso_date


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create tables and seed the default chart of accounts."""
    db.create_all()
    created = ledger_service.seed_chart_of_accounts()
    click.echo(f"PASS Tables ready, {created} accounts created")


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Confirm destructive reset')
@with_appcontext
def reset_db(yes):
    """DEV/TEST only: drop and recreate all tables."""
    if not yes:
        click.echo("FAIL Refusing to reset without --yes")
        raise SystemExit(1)
    db.drop_all()
    db.create_all()
    created = ledger_service.seed_chart_of_accounts()
    click.echo(f"PASS Database reset, {created} accounts created")


@click.group('accounts')
def accounts_group():
    """Chart of accounts and financial reports."""


@accounts_group.command('seed')
@with_appcontext
def seed_accounts():
    created = ledger_service.seed_chart_of_accounts()
    click.echo(f"PASS {created} accounts created")


@accounts_group.command('list')
@with_appcontext
def list_accounts():
    accounts = Account.query.order_by(Account.code).all()
    if not accounts:
        click.echo("No accounts. Run: flask accounts seed")
        return
    for account in accounts:
        balance = ledger_service.balance_of(account.id)
        status = "" if account.is_active else " (inactive)"
        click.echo(f"{account.code:<6} {account.name:<28} {account.type:<10} {balance:>14}{status}")


@accounts_group.command('trial-balance')
@click.option('--as-of', default=None, help='Inclusive ISO date (YYYY-MM-DD)')
@with_appcontext
def trial_balance_cli(as_of):
    """Print the trial balance; exit code 1 when debits and credits differ."""
    report = ledger_service.trial_balance(as_of=as_of)
    for row in report["accounts"]:
        click.echo(f"{row['code']:<6} {row['name']:<28} {row['debit']:>14} {row['credit']:>14}")
    click.echo(f"{'TOTAL':<35} {report['total_debit']:>14} {report['total_credit']:>14}")
    if not report["balanced"]:
        click.echo("FAIL Trial balance does not balance")
        raise SystemExit(1)
    click.echo("PASS Trial balance is balanced")


@accounts_group.command('balance-sheet')
@click.option('--as-of', default=None, help='Inclusive ISO date (YYYY-MM-DD)')
@with_appcontext
def balance_sheet_cli(as_of):
    report = ledger_service.balance_sheet(as_of)
    for section in ("asset", "liability", "equity"):
        click.echo(section.upper())
        for row in report[section]:
            click.echo(f"  {row['code']:<6} {row['name']:<28} {row['balance']:>14}")
        click.echo(f"  {'Total':<35} {report['totals']['total_' + section]:>14}")


@click.group('stock')
def stock_group():
    """Stock inspection commands."""


@stock_group.command('low')
@with_appcontext
def low_stock_cli():
    rows = stock_service.get_low_stock_products()
    if not rows:
        click.echo("No products at or below min_stock.")
        return
    for row in rows:
        click.echo(f"{row['sku']:<16} {row['name']:<28} {row['total_quantity']:>10} / {row['min_stock']}")


@click.group('alerts')
def alerts_group():
    """Alert sweeps and notification maintenance."""


@alerts_group.command('sweep')
@click.option('--as-of', default=None, help='Treat this ISO date as today for expiry checks')
@with_appcontext
def alert_sweep_cli(as_of):
    result = alert_service.run_alert_sweep(as_of=parse_iso_date(as_of))
    if result["skipped"]:
        click.echo("SKIP Another alert sweep holds the lock.")
        return
    click.echo(
        f"Low stock: {result['low_stock_products']} products, {result['low_stock_notifications']} new notifications. "
        f"Expired: {result['expired_lots']} lots, {result['expired_notifications']} new notifications."
    )


@alerts_group.command('cleanup')
@click.option('--retention-days', type=int, default=None, help='Defaults to NOTIFICATION_RETENTION_DAYS (30)')
@click.option('--include-unread', is_flag=True, help='Also delete unread notifications past retention')
@with_appcontext
def cleanup_notifications_cli(retention_days, include_unread):
    """Cleanup old notifications. Only read notifications are deleted unless --include-unread."""
    result = alert_service.run_notification_cleanup(retention_days=retention_days, include_unread=include_unread)
    if result["skipped"]:
        click.echo("SKIP Another cleanup holds the lock.")
        return
    click.echo(f"Deleted {result['deleted']} notifications older than {result['retention_days']} days.")


@alerts_group.command('expire-quotations')
@with_appcontext
def expire_quotations_cli():
    updated = quotation_service.expire_quotations()
    click.echo(f"Marked {updated} quotations as expired.")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(accounts_group)
    app.cli.add_command(stock_group)
    app.cli.add_command(alerts_group)
