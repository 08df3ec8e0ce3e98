# Overview: Flask CLI command groups for bootstrap, integrity runs, outbox replay and maintenance.

# backend/opscore/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init [--admin-username admin] [--admin-email admin@opscore.local]
#   Idempotent bootstrap: creates tables and the first admin user.
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# User inspection/bootstrap:
# - python -m flask users list [--role admin]
#   List users with roles and active status.
# - python -m flask users create --username ops --role production [--email ...] [--name ...]
#   Create a user. Identity is handled upstream; only the role record lives here.
#
# Data integrity:
# - python -m flask integrity run
#   Run every integrity check, store new issues and raise threshold alerts.
#
# Inventory outbox:
# - python -m flask outbox drain [--limit 50]
#   Replay queued inventory writes that failed after their order committed.
#
# Maintenance:
# - python -m flask maintenance purge-login-attempts
#   Delete expired failed-login counters.

import click
from flask.cli import with_appcontext

from .authorization import ALL_ROLES, ROLE_ADMIN
from .extensions import db
from .models import User
from .services import integrity_service, login_throttle_service, outbox_service


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init')
@click.option('--admin-username', default='admin', show_default=True, help='Username of the first admin')
@click.option('--admin-email', default='admin@opscore.local', show_default=True, help='Email of the first admin')
@with_appcontext
def init_system(admin_username, admin_email):
    """
    Create tables and make sure at least one active admin exists.

    Safe to run repeatedly.
    """
    click.echo("START Initializing opscore...")
    db.create_all()
    click.echo("PASS Tables ready")

    admin = db.session.query(User).filter_by(role=ROLE_ADMIN, is_active=True).first()
    if admin:
        click.echo(f"PASS Using existing admin: {admin.username} (ID: {admin.id})")
        return

    admin = User(username=admin_username, email=admin_email, name="Administrator", role=ROLE_ADMIN)
    db.session.add(admin)
    db.session.commit()
    click.echo(f"PASS Created admin user: {admin.username} (ID: {admin.id})")


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

    click.echo("PASS Database reset complete. Run 'flask system init' to create the first admin.")


@click.group('users')
def users_group():
    """User inspection and bootstrap commands."""


@users_group.command('list')
@click.option('--role', type=click.Choice(ALL_ROLES), help='Filter by role')
@with_appcontext
def list_users_cli(role):
    """List users with roles and active status."""
    query = db.session.query(User)
    if role:
        query = query.filter_by(role=role)
    users = query.order_by(User.id).all()

    if not users:
        click.echo("No users found.")
        return

    for user in users:
        status = "active" if user.is_active else "inactive"
        click.echo(f"{user.id:>5}  {user.username:<24} {user.role:<14} {status}")


@users_group.command('create')
@click.option('--username', prompt=True, help='Username')
@click.option('--role', type=click.Choice(ALL_ROLES), prompt=True, help='Role')
@click.option('--email', default=None, help='Email address')
@click.option('--name', default=None, help='Display name')
@with_appcontext
def create_user_cli(username, role, email, name):
    """Create a user record with a role."""
    if db.session.query(User).filter_by(username=username).first():
        raise click.ClickException(f"User {username!r} already exists")

    user = User(username=username, email=email, name=name, role=role)
    db.session.add(user)
    db.session.commit()
    click.echo(f"PASS Created user: {user.username} (ID: {user.id}, Role: {user.role})")


@click.group('integrity')
def integrity_group():
    """Data integrity commands."""


@integrity_group.command('run')
@with_appcontext
def run_integrity_cli():
    """Run every integrity check and report findings and alerts."""
    result = integrity_service.run_all_checks()

    click.echo(f"Checked at {result['check_time']}: {len(result['issues'])} issue(s)")
    for issue in result["issues"]:
        click.echo(f"  [{issue['severity']:<8}] {issue['issue_type']}: {issue['description']}")
    for alert in result["alerts"]:
        state = "new" if alert["dispatched"] else "repeat"
        click.echo(f"  ALERT ({state}) {alert['issue_type']}: {alert['message']}")
    for failed in result["failed_checks"]:
        click.echo(f"  FAIL {failed['check']}: {failed['error']}", err=True)

    if not result["success"]:
        raise SystemExit(1)


@click.group('outbox')
def outbox_group():
    """Inventory outbox commands."""


@outbox_group.command('drain')
@click.option('--limit', type=int, default=50, show_default=True, help='Maximum rows to replay')
@with_appcontext
def drain_outbox_cli(limit):
    """Replay due inventory writes."""
    summary = outbox_service.drain_outbox(limit=limit)
    click.echo(
        f"Processed {summary['processed']}: {summary['succeeded']} succeeded, "
        f"{summary['rescheduled']} rescheduled, {summary['failed']} failed."
    )


@click.group('maintenance')
def maintenance_group():
    """Maintenance commands."""


@maintenance_group.command('purge-login-attempts')
@with_appcontext
def purge_login_attempts_cli():
    """Delete expired failed-login counters."""
    deleted = login_throttle_service.purge_expired_attempts()
    click.echo(f"Deleted {deleted} expired login attempt counter(s).")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(users_group)
    app.cli.add_command(integrity_group)
    app.cli.add_command(outbox_group)
    app.cli.add_command(maintenance_group)
