# Overview: Flask CLI command groups for bootstrap, series administration, and cashier operations.

# backend/orseries/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to orseries (PowerShell: $env:FLASK_APP="orseries").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap:
# - python -m flask system init
#   Create all tables (idempotent). Use `flask db upgrade` for managed schemas.
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Users (attribution only, no authentication):
# - python -m flask users create --username cashier1 --name "Cashier One"
# - python -m flask users list
#
# Series administration:
# - python -m flask series list [--active-only]
# - python -m flask series create --name "2025 Main" --prefix CR --start 1 --end 999999 --format "{PREFIX}{NUMBER:10}" --from 2025-01-01 [--activate]
# - python -m flask series activate 1 / deactivate 1 / delete 1
# - python -m flask series stats 1
# - python -m flask series suggest-range --size 1000000
# - python -m flask series counters 1
# - python -m flask series set-offset 1 --user-id 2 --offset 100000
#
# Cashier operations:
# - python -m flask series allocate --user-id 2 [--series-id 1]
# - python -m flask series use 15 --transaction-id 9001
# - python -m flask series void 15 --user-id 2 --reason "Printer jam"
# - python -m flask series issued --series-id 1 --status voided
# - python -m flask series check-or CR0000000042

import click
from flask import current_app
from flask.cli import with_appcontext

from .extensions import db
from .errors import OrSeriesError
from .models import User
from .services import (
    allocation_service,
    counter_service,
    issued_number_service,
    series_service,
)
from .time_utils import parse_iso_date
from .validation import ValidationError, ConflictError


def _fail(exc: Exception) -> None:
    click.echo(f"FAIL {exc.__class__.__name__}: {exc}")


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init')
@with_appcontext
def init_system():
    """Create all tables that do not exist yet."""
    db.create_all()
    click.echo("PASS Database tables created")


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Confirm destructive reset')
@with_appcontext
def reset_db(yes):
    """DEV/TEST only: drop and recreate all tables."""
    if not yes:
        click.echo("FAIL Refusing to reset without --yes")
        return
    db.drop_all()
    db.create_all()
    click.echo("PASS Database reset")


# =============================================================================
# USERS
# =============================================================================

@click.group('users')
def users_group():
    """User reference management."""


@users_group.command('create')
@click.option('--username', prompt=True, help='Username')
@click.option('--name', default=None, help='Display name')
@click.option('--email', default=None, help='Email address')
@with_appcontext
def create_user_cli(username, name, email):
    """Create a user row for attribution."""
    if db.session.query(User).filter_by(username=username).first():
        click.echo(f"FAIL User '{username}' already exists")
        return
    user = User(username=username, name=name, email=email, is_active=True)
    db.session.add(user)
    db.session.commit()
    click.echo(f"PASS Created user: {user.username} (ID: {user.id})")


@users_group.command('list')
@with_appcontext
def list_users():
    """List all users."""
    users = db.session.query(User).order_by(User.id).all()
    if not users:
        click.echo("No users found.")
        return

    click.echo("\n" + "="*60)
    click.echo(f"{'ID':<5} {'Username':<20} {'Name':<25} {'Active'}")
    click.echo("="*60)
    for user in users:
        click.echo(f"{user.id:<5} {user.username:<20} {user.name or '-':<25} {'Yes' if user.is_active else 'No'}")
    click.echo("="*60 + "\n")


# =============================================================================
# SERIES
# =============================================================================

@click.group('series')
def series_group():
    """OR series administration and cashier operations."""


@series_group.command('list')
@click.option('--active-only', is_flag=True, help='Only active series')
@with_appcontext
def list_series_cli(active_only):
    """List series with usage."""
    rows = series_service.list_series(active_only=active_only)
    if not rows:
        click.echo("No series found.")
        return

    click.echo("\n" + "="*100)
    click.echo(f"{'ID':<5} {'Name':<25} {'Range':<28} {'Current':<16} {'Used %':<8} {'Active':<7} {'Effective'}")
    click.echo("="*100)
    for s in rows:
        rng = f"{s.start_number}-{s.end_number if s.end_number is not None else 'open'}"
        window = f"{s.effective_from.isoformat()}..{s.effective_to.isoformat() if s.effective_to else ''}"
        click.echo(
            f"{s.id:<5} {s.series_name[:25]:<25} {rng:<28} {s.current_number:<16} "
            f"{series_service.usage_percentage(s):<8.1f} {'Yes' if s.is_active else 'No':<7} {window}"
        )
    click.echo("="*100 + "\n")


@series_group.command('create')
@click.option('--name', 'series_name', required=True, help='Series name')
@click.option('--prefix', default=None, help='Prefix, e.g. CR')
@click.option('--start', 'start_number', type=int, default=1, show_default=True)
@click.option('--end', 'end_number', type=int, default=None, help='End number (omit for format capacity/unbounded)')
@click.option('--format', 'fmt', default=series_service.DEFAULT_FORMAT, show_default=True)
@click.option('--from', 'effective_from', required=True, help='Effective from (YYYY-MM-DD)')
@click.option('--to', 'effective_to', default=None, help='Effective to (YYYY-MM-DD)')
@click.option('--activate', is_flag=True, help='Activate immediately')
@click.option('--notes', default=None)
@click.option('--created-by', 'created_by', type=int, default=None, help='Creator user ID')
@with_appcontext
def create_series_cli(series_name, prefix, start_number, end_number, fmt, effective_from, effective_to, activate, notes, created_by):
    """Create a new series."""
    payload = {
        "series_name": series_name,
        "prefix": prefix,
        "start_number": start_number,
        "end_number": end_number,
        "format": fmt,
        "effective_from": effective_from,
        "effective_to": effective_to,
        "is_active": activate,
        "notes": notes,
    }
    try:
        series = series_service.create_series(payload, created_by_user_id=created_by)
    except (OrSeriesError, ValidationError) as e:
        _fail(e)
        return
    click.echo(
        f"PASS Created series: {series.series_name} (ID: {series.id}, "
        f"range {series.start_number}-{series.end_number}, active={series.is_active})"
    )


@series_group.command('activate')
@click.argument('series_id', type=int)
@with_appcontext
def activate_series_cli(series_id):
    """Activate a series (supersedes overlapping active series)."""
    try:
        series = series_service.activate_series(series_id)
    except OrSeriesError as e:
        _fail(e)
        return
    click.echo(f"PASS Activated series {series.id} ({series.series_name})")


@series_group.command('deactivate')
@click.argument('series_id', type=int)
@with_appcontext
def deactivate_series_cli(series_id):
    """Deactivate a series."""
    try:
        series = series_service.deactivate_series(series_id)
    except OrSeriesError as e:
        _fail(e)
        return
    click.echo(f"PASS Deactivated series {series.id} ({series.series_name})")


@series_group.command('delete')
@click.argument('series_id', type=int)
@with_appcontext
def delete_series_cli(series_id):
    """Soft-delete a series with no issued numbers."""
    try:
        series = series_service.delete_series(series_id)
    except (OrSeriesError, ConflictError) as e:
        _fail(e)
        return
    click.echo(f"PASS Deleted series {series.id} ({series.series_name})")


@series_group.command('stats')
@click.argument('series_id', type=int)
@with_appcontext
def series_stats_cli(series_id):
    """Show usage statistics for a series."""
    try:
        series = series_service.get_series(series_id)
    except OrSeriesError as e:
        _fail(e)
        return
    stats = series_service.get_series_statistics(series)
    for key, value in stats.items():
        click.echo(f"{key:<22} {value}")
    if stats["is_near_limit"]:
        click.echo("WARN  Series is near its limit; open a new series soon.")


@series_group.command('suggest-range')
@click.option('--size', 'range_size', type=int, default=1_000_000_000, show_default=True)
@with_appcontext
def suggest_range_cli(range_size):
    """Suggest the next free numeric range."""
    try:
        rng = series_service.suggest_range(range_size)
    except OrSeriesError as e:
        _fail(e)
        return
    click.echo(f"Suggested range: {rng['start_number']} - {rng['end_number']}")


@series_group.command('counters')
@click.argument('series_id', type=int)
@with_appcontext
def list_counters_cli(series_id):
    """List cashier counters of a series."""
    counters = counter_service.list_counters(series_id)
    if not counters:
        click.echo("No counters found.")
        return
    size = counter_service.band_size()
    click.echo("\n" + "="*90)
    click.echo(f"{'User':<8} {'Offset':<16} {'Band':<34} {'Next':<16} {'Auto'}")
    click.echo("="*90)
    for c in counters:
        band = f"{c.band_first()}-{c.band_last(size)}"
        click.echo(f"{c.user_id:<8} {c.start_offset:<16} {band:<34} {c.next_number():<16} {'Yes' if c.is_auto_assigned else 'No'}")
    click.echo("="*90 + "\n")


@series_group.command('set-offset')
@click.argument('series_id', type=int)
@click.option('--user-id', type=int, required=True)
@click.option('--offset', type=int, required=True)
@click.option('--force', is_flag=True, help='Skip the nearby-offset confirmation')
@with_appcontext
def set_offset_cli(series_id, user_id, offset, force):
    """Assign a cashier an explicit offset band."""
    try:
        check = counter_service.check_offset(series_id, user_id, offset)
        for line in check["warnings"]:
            click.echo(f"WARN  {line}")
        for line in check["info"]:
            click.echo(f"INFO  {line}")
        if check["has_conflicts"] and not force:
            if not click.confirm("Continue with this offset?", default=False):
                click.echo("Aborted.")
                return
        counter = counter_service.reassign_offset(series_id, user_id, offset)
    except OrSeriesError as e:
        _fail(e)
        return
    click.echo(f"PASS User {user_id} now starts at {counter.next_number()} in series {series_id}")


@series_group.command('allocate')
@click.option('--user-id', type=int, required=True)
@click.option('--series-id', type=int, default=None, help='Defaults to the active series')
@click.option('--date', 'as_of', default=None, help='Business date (YYYY-MM-DD)')
@click.option('--manual', is_flag=True, help='Record generation method as manual')
@with_appcontext
def allocate_cli(user_id, series_id, as_of, manual):
    """Issue the next OR number to a cashier."""
    method = "manual" if manual else "auto"
    try:
        as_of_date = parse_iso_date(as_of)
        if series_id is None:
            issued = allocation_service.allocate_for_active_series(user_id, as_of_date, method)
        else:
            issued = allocation_service.allocate(series_id, user_id, as_of_date, method)
    except (OrSeriesError, ValidationError) as e:
        _fail(e)
        return
    except ValueError as e:
        click.echo(f"FAIL Invalid date: {e}")
        return
    except Exception:
        current_app.logger.exception("Failed to allocate OR number")
        click.echo("FAIL Internal error while allocating; see log")
        return
    click.echo(f"PASS {issued.or_number} (raw {issued.actual_number}, id {issued.id})")


@series_group.command('use')
@click.argument('issued_number_id', type=int)
@click.option('--transaction-id', type=int, required=True)
@with_appcontext
def use_cli(issued_number_id, transaction_id):
    """Bind an issued OR number to a finalized transaction."""
    try:
        issued = issued_number_service.mark_used(issued_number_id, transaction_id)
    except (OrSeriesError, ValidationError) as e:
        _fail(e)
        return
    click.echo(f"PASS {issued.or_number} used by transaction {transaction_id}")


@series_group.command('void')
@click.argument('issued_number_id', type=int)
@click.option('--user-id', type=int, required=True)
@click.option('--reason', required=True)
@with_appcontext
def void_cli(issued_number_id, user_id, reason):
    """Void an issued, unused OR number."""
    try:
        issued = issued_number_service.mark_voided(issued_number_id, user_id, reason)
    except (OrSeriesError, ValidationError) as e:
        _fail(e)
        return
    click.echo(f"PASS {issued.or_number} voided")


@series_group.command('issued')
@click.option('--series-id', type=int, default=None)
@click.option('--status', type=click.Choice(sorted(issued_number_service.VALID_STATUSES)), default=None)
@click.option('--user-id', type=int, default=None)
@click.option('--limit', type=int, default=20, show_default=True)
@with_appcontext
def list_issued_cli(series_id, status, user_id, limit):
    """List issued OR numbers, newest first."""
    rows, total = issued_number_service.list_issued_numbers(
        series_id=series_id, status=status, user_id=user_id, limit=limit
    )
    click.echo(f"{total} issued number(s)")
    for row in rows:
        click.echo(
            f"{row.id:<6} {row.or_number:<24} {row.status:<10} user={row.generated_by_user_id} "
            f"tx={row.transaction_id or '-'}"
        )


@series_group.command('check-or')
@click.argument('or_number')
@with_appcontext
def check_or_cli(or_number):
    """Check whether a hand-entered OR number is still free."""
    if issued_number_service.is_or_number_available(or_number):
        click.echo(f"PASS {or_number} is available")
    else:
        click.echo(f"FAIL {or_number} was already issued")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(users_group)
    app.cli.add_command(series_group)
