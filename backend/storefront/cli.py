# Overview: Flask CLI command groups for payment and inventory maintenance.

# backend/storefront/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# Payments:
# - python -m flask payments sweep
#   Re-query orders whose payment token expired without a notification and
#   compensate gateway orders that never received a token. Schedule it (cron)
#   every few minutes.
#
# Inventory:
# - python -m flask inventory verify [--product-id 1]
#   Re-derive stock from the ledger and report products whose cached
#   quantity disagrees. Exits 1 when any product is inconsistent.

import click
from flask.cli import with_appcontext

from .registry import get_services
from .services import inventory_service


@click.group('payments')
def payments_group():
    """Payment reconciliation commands."""


@payments_group.command('sweep')
@with_appcontext
def sweep_payments_cli():
    """
    Resolve gateway orders stuck in PENDING_PAYMENT.

    Example:
        flask payments sweep
    """
    report = get_services().sweeper.sweep()

    click.echo(f"Reconciled:  {len(report.reconciled)} {', '.join(report.reconciled)}")
    click.echo(f"Expired:     {len(report.expired)} {', '.join(report.expired)}")
    click.echo(f"Compensated: {len(report.compensated)} {', '.join(report.compensated)}")
    if report.errors:
        click.echo(f"Errors:      {len(report.errors)} {', '.join(report.errors)}", err=True)


@click.group('inventory')
def inventory_group():
    """Inventory ledger commands."""


@inventory_group.command('verify')
@click.option('--product-id', type=int, help='Check a single product')
@with_appcontext
def verify_inventory_cli(product_id):
    """
    Check every tracked product against its ledger.

    Example:
        flask inventory verify
        flask inventory verify --product-id 3
    """
    report = inventory_service.verify_ledger(product_id)

    if not report:
        click.echo("No tracked products found.")
        return

    click.echo("\n" + "="*80)
    click.echo(f"{'ID':<6} {'SKU':<20} {'Entries':<8} {'Expected':<10} {'Actual':<10} {'Status'}")
    click.echo("="*80)

    inconsistent = 0
    for row in report:
        status = "OK" if row["consistent"] else "MISMATCH"
        if not row["consistent"]:
            inconsistent += 1
        click.echo(
            f"{row['product_id']:<6} {row['sku']:<20} {row['entries']:<8} "
            f"{row['expected_stock']:<10} {row['actual_stock']:<10} {status}"
        )
        for brk in row["breaks"]:
            click.echo(f"       log {brk['log_id']}: {brk['problem']}")

    click.echo("="*80 + "\n")

    if inconsistent:
        raise click.ClickException(f"{inconsistent} product(s) disagree with the ledger")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(payments_group)
    app.cli.add_command(inventory_group)
