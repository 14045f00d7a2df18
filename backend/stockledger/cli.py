# Overview: Flask CLI command groups for sales sync, ledger maintenance, and backfills.

# backend/stockledger/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System:
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Inventory ledger:
# - python -m flask inventory sync-sales --start 2024-03-01 --end 2024-03-01 [--branch-id 1] [--dry-run]
#   Deduct recipe usage of POS sales. Safe to re-run; posted rows are skipped.
# - python -m flask inventory sync-sales --yesterday
#   Scheduled form: sync the previous local business day for every branch.
# - python -m flask inventory verify [--product-id 1] [--department-id 1]
#   Check the balance chain and the balance table; exits 1 on issues.
# - python -m flask inventory rebuild-balances
#   Reset balance rows to the ledger tail.
# - python -m flask inventory delete-sales --start 2024-03-01 --end 2024-03-01 --yes
#   DANGER: delete sale movements in the range and re-chain later entries.
#
# Backfills (dry run unless --execute):
# - python -m flask backfill receiving [--start 2024-01-01] [--end 2024-01-31] [--execute]
#   Post missing receive entries for received order items.
# - python -m flask backfill internal-transfers [--start ...] [--end ...] [--execute]
#   Post storage-side transfers for receipts of internal product groups.
#
# Ctrl+C requests cancellation between items. Sync rows already posted stay
# posted; a cancelled backfill execute commits nothing.

import json
import signal
import sys
import threading

import click
from flask import current_app
from flask.cli import with_appcontext

from .extensions import db
from .services import backfill_service, ledger_service, sales_sync_service
from .services.analytics_client import AnalyticsUnavailableError
from .time_utils import parse_business_date
from .validation import ValidationError


def _echo_json(payload) -> None:
    click.echo(json.dumps(payload, indent=2, default=str))


def _business_date(ctx, param, value):
    if value is None:
        return None
    try:
        return parse_business_date(value)
    except ValueError:
        raise click.BadParameter("expected YYYY-MM-DD")


def _cancel_on_interrupt() -> threading.Event:
    cancel_event = threading.Event()

    def _handler(signum, frame):
        click.echo("\nWARN Cancellation requested; finishing current item...", err=True)
        cancel_event.set()

    signal.signal(signal.SIGINT, _handler)
    return cancel_event


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def reset_db(yes):
    """
    DANGER: Drop all tables and recreate schema.

    This will DELETE ALL DATA!
    """
    if not yes:
        click.confirm("WARN This will DELETE ALL DATA. Are you sure?", abort=True)

    click.echo("DELETE  Dropping all tables...")
    db.drop_all()

    click.echo("BUILD  Creating all tables...")
    db.create_all()

    click.echo("PASS Database reset complete.")


# =============================================================================
# INVENTORY LEDGER COMMANDS
# =============================================================================

@click.group('inventory')
def inventory_group():
    """Inventory ledger commands."""


@inventory_group.command('sync-sales')
@click.option('--start', callback=_business_date, help='First business date (YYYY-MM-DD)')
@click.option('--end', callback=_business_date, help='Last business date (defaults to --start)')
@click.option('--branch-id', type=int, help='Limit to one branch')
@click.option('--dry-run', is_flag=True, help='Plan only; post nothing')
@click.option('--yesterday', is_flag=True, help='Sync the previous business day')
@with_appcontext
def sync_sales_cli(start, end, branch_id, dry_run, yesterday):
    """Deduct recipe ingredient usage for POS sales."""
    if yesterday and start:
        raise click.UsageError("Use either --yesterday or --start/--end")
    if not yesterday and not start:
        raise click.UsageError("--start is required (or pass --yesterday)")

    cancel_event = _cancel_on_interrupt()
    source = current_app.extensions.get("analytics_source")
    try:
        if yesterday:
            result = sales_sync_service.sync_previous_day(
                branch_id=branch_id, dry_run=dry_run, cancel_event=cancel_event, source=source,
            )
        else:
            result = sales_sync_service.sync_sales(
                start, end or start, branch_id, dry_run=dry_run, cancel_event=cancel_event, source=source,
            )
    except AnalyticsUnavailableError as e:
        click.echo(f"FAIL Analytics unavailable after {e.attempts} attempts: {e}", err=True)
        sys.exit(2)
    except sales_sync_service.SalesSyncError as e:
        click.echo(f"FAIL {e}", err=True)
        sys.exit(1)

    _echo_json(result.to_dict())
    label = "DRY-RUN" if dry_run else "PASS"
    click.echo(
        f"{label} planned={result.planned_deductions} applied={result.applied_deductions} "
        f"skipped_existing={result.skipped_existing} unresolved={len(result.unresolved_items)}"
    )


@inventory_group.command('verify')
@click.option('--product-id', type=int)
@click.option('--department-id', type=int)
@with_appcontext
def verify_cli(product_id, department_id):
    """Verify chain arithmetic, chain continuity and balance rows."""
    report = ledger_service.verify_ledger(product_id=product_id, department_id=department_id)
    _echo_json(report.to_dict())
    if not report.ok:
        click.echo(f"FAIL {len(report.issues)} issues found", err=True)
        sys.exit(1)
    click.echo(f"PASS {report.keys_checked} keys, {report.entries_checked} entries")


@inventory_group.command('rebuild-balances')
@click.option('--product-id', type=int)
@click.option('--department-id', type=int)
@with_appcontext
def rebuild_balances_cli(product_id, department_id):
    """Reset balance rows to the latest ledger entry of each key."""
    summary = ledger_service.rebuild_balances(product_id=product_id, department_id=department_id)
    _echo_json(summary)
    click.echo(f"PASS {len(summary['repaired'])} of {summary['keys_checked']} balances repaired")


@inventory_group.command('delete-sales')
@click.option('--start', callback=_business_date, required=True)
@click.option('--end', callback=_business_date, required=True)
@click.option('--department-id', type=int)
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def delete_sales_cli(start, end, department_id, yes):
    """
    DANGER: Delete sale movements in a business-date range.

    Later movements of each affected key are re-chained.
    """
    if not yes:
        click.confirm(f"WARN Delete all sale movements {start}..{end}?", abort=True)
    summary = ledger_service.delete_sale_movements(start, end, department_id=department_id)
    _echo_json(summary)
    click.echo(f"PASS Deleted {summary['deleted']} sale movements")


# =============================================================================
# BACKFILL COMMANDS
# =============================================================================

@click.group('backfill')
def backfill_group():
    """Historical ledger backfills (dry run by default)."""


def _run_backfill(job, start, end, execute):
    cancel_event = _cancel_on_interrupt()
    mode_label = "EXECUTE" if execute else "DRY-RUN"
    click.echo(f"\n{mode_label} backfill {job.__name__}...\n")
    try:
        summary = job(start=start, end=end, dry_run=not execute, cancel_event=cancel_event)
    except backfill_service.BackfillError as e:
        _echo_json(e.summary.to_dict())
        click.echo(f"FAIL {e}", err=True)
        sys.exit(1)
    except ValidationError as e:
        click.echo(f"FAIL {e}", err=True)
        sys.exit(1)
    _echo_json(summary.to_dict())
    if not execute:
        click.echo("\nNo changes applied (dry run).")


@backfill_group.command('receiving')
@click.option('--start', callback=_business_date)
@click.option('--end', callback=_business_date)
@click.option('--execute', is_flag=True, help='Apply changes (default is dry run)')
@with_appcontext
def backfill_receiving_cli(start, end, execute):
    """Post missing receive entries for received order items."""
    _run_backfill(backfill_service.backfill_receiving, start, end, execute)


@backfill_group.command('internal-transfers')
@click.option('--start', callback=_business_date)
@click.option('--end', callback=_business_date)
@click.option('--execute', is_flag=True, help='Apply changes (default is dry run)')
@with_appcontext
def backfill_internal_transfers_cli(start, end, execute):
    """Post storage-side transfers for internal product group receipts."""
    _run_backfill(backfill_service.backfill_internal_transfers, start, end, execute)


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(inventory_group)
    app.cli.add_command(backfill_group)
