# Overview: Flask CLI command groups for bootstrap and ledger maintenance.

# backend/matreq/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init [--site "Main Site"] [--store "Central Store"]
#   Idempotent bootstrap: creates default roles, a default site and a default store.
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Ledger maintenance:
# - python -m flask ledger verify [--stock-id 3]
#   Walk movement chains and report breaks (exit code 1 when any chain is broken).
# - python -m flask ledger reevaluate-thresholds
#   Recompute low_stock_alert on every stock record.

import click
from flask.cli import with_appcontext

from .extensions import db
from .models import Site, Store, StockRecord
from .services.identity_service import create_default_roles
from .services.stock_ledger_service import verify_chain
from .services.threshold_service import ThresholdMonitor
from .services.concurrency import run_with_retry


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init')
@click.option('--site', 'site_name', default='Main Site', help='Default site name')
@click.option('--store', 'store_name', default='Central Store', help='Default store name')
@with_appcontext
def init_system(site_name, store_name):
    """
    Initialize reference data: roles, a default site and a default store.

    Safe to run repeatedly.
    """
    click.echo("START Initializing material requisition system...")

    roles = create_default_roles()
    db.session.commit()
    click.echo(f"PASS Roles ready: {', '.join(role.name for role in roles)}")

    site = db.session.query(Site).filter_by(name=site_name).first()
    if not site:
        site = Site(name=site_name, code="SITE-1", is_active=True)
        db.session.add(site)
        db.session.commit()
        click.echo(f"PASS Created site: {site.name} (ID: {site.id})")
    else:
        click.echo(f"PASS Using existing site: {site.name} (ID: {site.id})")

    store = db.session.query(Store).filter_by(name=store_name).first()
    if not store:
        store = Store(name=store_name, code="STORE-1", is_active=True)
        db.session.add(store)
        db.session.commit()
        click.echo(f"PASS Created store: {store.name} (ID: {store.id})")
    else:
        click.echo(f"PASS Using existing store: {store.name} (ID: {store.id})")

    click.echo("DONE System initialized")


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
    click.echo("PASS Database reset complete")


@click.group('ledger')
def ledger_group():
    """Stock ledger verification and maintenance."""


@ledger_group.command('verify')
@click.option('--stock-id', type=int, default=None, help='Verify a single stock record')
@with_appcontext
def verify_ledger(stock_id):
    """Verify movement chains against cached on-hand quantities."""
    if stock_id is not None:
        stock_ids = [stock_id]
    else:
        stock_ids = [row.id for row in db.session.query(StockRecord.id).order_by(StockRecord.id).all()]

    broken = 0
    for sid in stock_ids:
        report = verify_chain(sid)
        frozen = " (frozen)" if db.session.get(StockRecord, sid).is_frozen else ""
        if report.ok:
            click.echo(f"PASS stock {sid}: {report.movement_count} movements, on hand {report.cached_quantity}{frozen}")
        else:
            broken += 1
            click.echo(f"FAIL stock {sid}{frozen}:")
            for problem in report.problems:
                click.echo(f"  - {problem}")

    click.echo(f"Checked {len(stock_ids)} stock record(s), {broken} broken")
    if broken:
        raise SystemExit(1)


@ledger_group.command('reevaluate-thresholds')
@with_appcontext
def reevaluate_thresholds():
    """Recompute the low-stock flag on every stock record."""
    monitor = ThresholdMonitor()

    def _op():
        changed = 0
        for stock in db.session.query(StockRecord).order_by(StockRecord.id).all():
            before = stock.low_stock_alert
            if monitor.evaluate(stock) != before:
                changed += 1
        db.session.commit()
        return changed

    changed = run_with_retry(_op)
    click.echo(f"PASS Re-evaluated thresholds, {changed} flag(s) changed")


def register_commands(app):
    app.cli.add_command(system_group)
    app.cli.add_command(ledger_group)
