# Overview: Flask CLI command groups for bootstrap and externally triggered batch jobs.

# backend/territory_engine/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init-db
#   Create any missing tables (use `flask db upgrade` for migrated deployments).
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Protection (run from cron; nothing in the engine self-schedules):
# - python -m flask protection reevaluate [--timeout 300]
#   Re-check every protected territory and lapse the ones that no longer qualify.
#
# Commissions:
# - python -m flask commissions payout --period 2026-09 --reference PAY-2026-09 [--timeout 600]
#   Pay every approved transaction of the period, committing per chunk.
# - python -m flask commissions owed --rep-id rep-1 [--period 2026-09]
#   Show a rep's commission totals by status.
#
# Reference rep profiles:
# - python -m flask reps upsert --rep-id rep-1 --rate 5 [--tier gold] [--quota-cents 5000000]
#   Create or update a sales rep profile.
# - python -m flask reps list
#   List sales reps.

from decimal import Decimal, InvalidOperation

import click
from flask.cli import with_appcontext

from .errors import EngineError
from .extensions import db
from .models import SalesRep
from .services import build_services
from .services.concurrency import Deadline


def _fail(e: EngineError):
    raise click.ClickException(f"{e.code}: {e.message}")


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create missing tables from the model metadata."""
    db.create_all()
    click.echo("PASS Tables created")


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
    click.echo("START Recreating schema...")
    db.create_all()
    click.echo("PASS Database reset complete")


@click.group('protection')
def protection_group():
    """Territory protection batch jobs."""


@protection_group.command('reevaluate')
@click.option('--timeout', type=float, default=None, help='Deadline in seconds; unprocessed territories are left as-is')
@with_appcontext
def reevaluate_protections(timeout):
    """
    Lapse protections whose rule no longer holds.

    Example:
        flask protection reevaluate
        flask protection reevaluate --timeout 300
    """
    services = build_services()
    try:
        report = services.protection.reevaluate_protections(
            services.metrics.protection_metrics, deadline=Deadline(timeout)
        )
    except EngineError as e:
        _fail(e)

    click.echo(f"Evaluated: {len(report.evaluated)}")
    click.echo(f"Lapsed:    {len(report.lapsed)} {report.lapsed if report.lapsed else ''}")
    if not report.completed:
        click.echo("WARN Stopped at deadline; re-run to finish")


@click.group('commissions')
def commissions_group():
    """Commission ledger batch jobs."""


@commissions_group.command('payout')
@click.option('--period', required=True, help='Commission period (YYYY-MM)')
@click.option('--reference', 'payment_reference', required=True, help='Payment reference stamped on each row')
@click.option('--timeout', type=float, default=None, help='Deadline in seconds; committed chunks stay paid')
@click.option('--chunk-size', type=int, default=None, help='Rows per committed chunk')
@with_appcontext
def payout(period, payment_reference, timeout, chunk_size):
    """
    Pay every approved transaction of a period.

    Safe to re-run: an already paid period pays nothing.

    Example:
        flask commissions payout --period 2026-09 --reference PAY-2026-09
    """
    try:
        result = build_services().ledger.payout(
            period, payment_reference, deadline=Deadline(timeout), chunk_size=chunk_size
        )
    except EngineError as e:
        _fail(e)

    click.echo(f"Paid:      {result.paid_count}")
    click.echo(f"Remaining: {result.remaining_count}")
    if not result.completed:
        click.echo("WARN Payout incomplete; re-run with the same reference to finish")


@commissions_group.command('owed')
@click.option('--rep-id', required=True)
@click.option('--period', default=None, help='Commission period (YYYY-MM)')
@with_appcontext
def owed(rep_id, period):
    """Show a rep's commission totals by status."""
    try:
        totals = build_services().ledger.commission_owed(rep_id, period)
    except EngineError as e:
        _fail(e)
    for key in ("pending_cents", "approved_cents", "paid_cents", "total_cents"):
        click.echo(f"{key:<16} {totals[key]}")


@click.group('reps')
def reps_group():
    """Reference sales rep profiles."""


@reps_group.command('upsert')
@click.option('--rep-id', required=True)
@click.option('--rate', required=True, help='Base commission rate in percent')
@click.option('--tier', default='standard')
@click.option('--quota-cents', type=int, default=None)
@click.option('--first-name', default=None)
@click.option('--last-name', default=None)
@click.option('--email', default=None)
@click.option('--inactive', is_flag=True, help='Mark the rep inactive')
@with_appcontext
def upsert_rep(rep_id, rate, tier, quota_cents, first_name, last_name, email, inactive):
    """
    Create or update a sales rep profile.

    Example:
        flask reps upsert --rep-id rep-1 --rate 5 --tier gold --quota-cents 5000000
    """
    try:
        commission_rate = Decimal(rate)
    except InvalidOperation:
        raise click.BadParameter("rate must be a number", param_hint="--rate")
    if commission_rate < 0 or commission_rate > 100:
        raise click.BadParameter("rate must be between 0 and 100", param_hint="--rate")

    rep = db.session.get(SalesRep, rep_id)
    created = rep is None
    if created:
        rep = SalesRep(id=rep_id)
        db.session.add(rep)
    rep.commission_rate = commission_rate
    rep.commission_tier = tier
    rep.monthly_quota_cents = quota_cents
    rep.is_active = not inactive
    if first_name is not None:
        rep.first_name = first_name
    if last_name is not None:
        rep.last_name = last_name
    if email is not None:
        rep.email = email
    db.session.commit()
    click.echo(f"PASS {'Created' if created else 'Updated'} rep {rep.id} (rate {rep.commission_rate}%)")


@reps_group.command('list')
@with_appcontext
def list_reps():
    """List sales reps."""
    reps = db.session.query(SalesRep).order_by(SalesRep.id).all()
    if not reps:
        click.echo("No reps found.")
        return

    click.echo("\n" + "="*72)
    click.echo(f"{'ID':<20} {'Rate':<10} {'Tier':<12} {'Quota (cents)':<16} {'Active'}")
    click.echo("="*72)
    for rep in reps:
        quota = rep.monthly_quota_cents if rep.monthly_quota_cents is not None else "-"
        click.echo(f"{rep.id:<20} {str(rep.commission_rate):<10} {rep.commission_tier:<12} {str(quota):<16} {rep.is_active}")
    click.echo("="*72 + "\n")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(protection_group)
    app.cli.add_command(commissions_group)
    app.cli.add_command(reps_group)
