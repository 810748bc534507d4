# Overview: Flask CLI command groups for bootstrap, inspection, and maintenance.

# backend/quotebook/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init-db
#   Create any missing tables (idempotent).
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Numbering inspection:
# - python -m flask numbering peek --business-id 1 --type invoice [--year 2026]
#   Show the next number without allocating it.
# - python -m flask numbering counters --business-id 1
#   List the counter rows for a business.
#
# Quote maintenance:
# - python -m flask quotes expire-stale [--business-id 1] [--as-of 2026-03-01]
#   Move sent quotes past their validity date to expired.
#
# Invoice inspection:
# - python -m flask invoices overdue [--business-id 1] [--as-of 2026-03-01]
#   List open invoices past due with a balance outstanding.
#
# Audit inspection:
# - python -m flask audit list --entity quote --id 5
#   Show the audit trail of one quote or invoice.

import click
from flask.cli import with_appcontext

from .extensions import db
from .models import DocumentCounter
from .services import audit_service, invoice_service, numbering_service, quote_service
from .errors import QuotebookError


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create all tables that do not exist yet."""
    db.create_all()
    click.echo("PASS Database schema is up to date.")


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


@click.group('numbering')
def numbering_group():
    """Document numbering inspection."""


@numbering_group.command('peek')
@click.option('--business-id', type=int, required=True, help='Business ID')
@click.option('--type', 'document_type', type=click.Choice(['quote', 'invoice']), required=True, help='Document type')
@click.option('--year', type=int, help='Year (defaults to the current year)')
@with_appcontext
def peek_number(business_id, document_type, year):
    """Show the next document number without allocating it."""
    try:
        preview = numbering_service.peek_next_document_number(
            business_id=business_id,
            document_type=document_type,
            year=year,
        )
    except QuotebookError as e:
        raise click.ClickException(e.message)
    click.echo(preview["next_number"])


@numbering_group.command('counters')
@click.option('--business-id', type=int, required=True, help='Business ID')
@with_appcontext
def list_counters(business_id):
    """List numbering counters for a business."""
    counters = (
        db.session.query(DocumentCounter)
        .filter_by(business_id=business_id)
        .order_by(DocumentCounter.year.desc(), DocumentCounter.document_type.asc())
        .all()
    )
    if not counters:
        click.echo("No counters found.")
        return

    click.echo("\n" + "="*60)
    click.echo(f"{'Year':<8} {'Type':<12} {'Next':<10} {'Updated'}")
    click.echo("="*60)
    for counter in counters:
        click.echo(f"{counter.year:<8} {counter.document_type:<12} {counter.next_number:<10} {counter.updated_at}")
    click.echo("="*60 + "\n")


@click.group('quotes')
def quotes_group():
    """Quote maintenance."""


@quotes_group.command('expire-stale')
@click.option('--business-id', type=int, help='Limit to one business')
@click.option('--as-of', type=click.DateTime(formats=['%Y-%m-%d']), help='Reference date (default today)')
@with_appcontext
def expire_stale(business_id, as_of):
    """Expire sent quotes whose validity date has passed."""
    expired = quote_service.expire_stale_quotes(
        business_id=business_id,
        as_of=as_of.date() if as_of else None,
    )
    click.echo(f"PASS Expired {len(expired)} quote(s).")
    for quote_id in expired:
        click.echo(f"  - quote {quote_id}")


@click.group('invoices')
def invoices_group():
    """Invoice inspection."""


@invoices_group.command('overdue')
@click.option('--business-id', type=int, help='Limit to one business')
@click.option('--as-of', type=click.DateTime(formats=['%Y-%m-%d']), help='Reference date (default today)')
@with_appcontext
def list_overdue(business_id, as_of):
    """List overdue invoices with their outstanding balance."""
    as_of_date = as_of.date() if as_of else None
    invoices = invoice_service.list_overdue_invoices(business_id=business_id, as_of=as_of_date)
    if not invoices:
        click.echo("No overdue invoices.")
        return

    click.echo("\n" + "="*80)
    click.echo(f"{'ID':<6} {'Business':<10} {'Number':<20} {'Due':<12} {'Status':<16} {'Balance'}")
    click.echo("="*80)
    for invoice in invoices:
        totals = invoice_service.invoice_totals(invoice)
        click.echo(
            f"{invoice.id:<6} {invoice.business_id:<10} {invoice.number:<20} "
            f"{invoice.due_date.isoformat():<12} {invoice.status:<16} {totals.balance_due:.2f}"
        )
    click.echo("="*80 + "\n")


@click.group('audit')
def audit_group():
    """Audit trail inspection."""


@audit_group.command('list')
@click.option('--entity', 'entity_type', type=click.Choice(['quote', 'invoice']), required=True, help='Entity type')
@click.option('--id', 'entity_id', type=int, required=True, help='Entity ID')
@with_appcontext
def list_audit(entity_type, entity_id):
    """Show the audit trail of one quote or invoice, oldest first."""
    events = audit_service.list_events(entity_type=entity_type, entity_id=entity_id)
    if not events:
        click.echo("No audit events found.")
        return

    click.echo("\n" + "="*100)
    click.echo(f"{'When':<22} {'Action':<28} {'Actor':<8} {'From':<12} {'To':<12} {'Note'}")
    click.echo("="*100)
    for ev in events:
        click.echo(
            f"{ev.occurred_at.isoformat(timespec='seconds'):<22} {ev.action:<28} "
            f"{str(ev.actor_id or '-'):<8} {ev.prior_state or '-':<12} {ev.new_state or '-':<12} {ev.note or ''}"
        )
    click.echo("="*100 + "\n")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(numbering_group)
    app.cli.add_command(quotes_group)
    app.cli.add_command(invoices_group)
    app.cli.add_command(audit_group)
