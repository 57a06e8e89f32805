# Overview: Flask CLI command groups for bootstrap, inspection, and maintenance.

# backend/pharmaflow/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init
#   Full idempotent bootstrap: roles, permissions, default users and the default workflow.
# - python -m flask system seed-workflow
#   Create the default QC and warehouse stages/transitions only.
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# User inspection/bootstrap:
# - python -m flask users list
#   List all users with roles and active status.
# - python -m flask users create --username qc1 --email qc1@pharmaflow.local --password "Password123!" --role qc_inspector
#   Create a user (prompts if options are omitted).
#
# Permission inspection/repair:
# - python -m flask perms grant manager RETURN_RECORD
#   Grant a permission to a role.
# - python -m flask perms revoke manager RETURN_RECORD
#   Revoke a permission from a role.
# - python -m flask perms check qc1 DECIDE_LINE_ITEMS [--stage QC_PENDING]
#   Check whether a user has a permission (globally or on a stage).
# - python -m flask perms stage-grant qc1 QC_PENDING DECIDE_LINE_ITEMS SUBMIT_RECORD
#   Grant per-stage permissions to a user.
#
# Workflow inspection:
# - python -m flask workflow graph [--format mermaid]
#   Print the stage graph.
#
# Maintenance:
# - python -m flask maintenance cleanup-security-events --retention-days 90
#   Delete security events older than the retention window.

import json
from datetime import timedelta

import click
from flask.cli import with_appcontext

from .extensions import db
from .models import Role, SecurityEvent, User
from .permissions import DEFAULT_ROLES
from .services.auth_service import create_user, create_default_roles, assign_role, PasswordValidationError
from .services.errors import WorkflowError
from .services import permission_service, workflow_service
from .time_utils import utcnow


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init')
@click.option('--password', default='Password123!', show_default=True, help='Password for the default users')
@with_appcontext
def init_system(password):
    """
    Initialize PharmaFlow: roles, permissions, default users and the default workflow.

    Creates:
    - Roles: admin, manager, qc_inspector, warehouse_staff
    - Users: admin, manager, inspector, storekeeper (all @pharmaflow.local)
    - Stage grants so the inspector can work QC_PENDING and the storekeeper WAREHOUSE_REVIEW

    SECURITY: Change passwords immediately in production!
    """
    click.echo("START Initializing PharmaFlow...")

    click.echo("\nLIST Creating roles...")
    create_default_roles()
    roles = db.session.query(Role).all()
    click.echo(f"PASS Roles created: {', '.join(r.name for r in roles)}")

    click.echo("\nSECURITY Initializing permissions...")
    perm_count = permission_service.initialize_permissions()
    assignment_count = permission_service.assign_default_role_permissions()
    click.echo(f"PASS Created {perm_count} permissions, {assignment_count} role assignments")

    click.echo("\nWORKFLOW Seeding default workflow...")
    counts = workflow_service.seed_default_workflow()
    click.echo(f"PASS Created {counts['stages']} stages, {counts['transitions']} transitions")

    click.echo("\nUSERS Creating default users...")
    default_users = [
        ("admin", "admin@pharmaflow.local", "admin", None),
        ("manager", "manager@pharmaflow.local", "manager", None),
        ("inspector", "inspector@pharmaflow.local", "qc_inspector", "QC_PENDING"),
        ("storekeeper", "storekeeper@pharmaflow.local", "warehouse_staff", "WAREHOUSE_REVIEW"),
    ]

    admin_id = None
    for username, email, role_name, stage_code in default_users:
        user = db.session.query(User).filter_by(username=username).first()
        if user:
            click.echo(f"WARN  User '{username}' already exists, skipping...")
        else:
            try:
                user = create_user(username=username, email=email, password=password)
            except (PasswordValidationError, ValueError) as e:
                click.echo(f"FAIL Failed to create user '{username}': {str(e)}")
                continue
            assign_role(user.id, role_name)
            click.echo(f"PASS Created user: {username} ({email}) with role '{role_name}'")

        if role_name == "admin":
            admin_id = user.id
        if stage_code and admin_id:
            stage = workflow_service.get_stage_by_code(stage_code)
            permission_service.assign_stage_permission(
                user_id=user.id,
                stage_id=stage.id,
                permission_codes=["DECIDE_LINE_ITEMS", "SUBMIT_RECORD"],
                assigned_by_user_id=admin_id,
                remarks="Default stage assignment",
            )
            click.echo(f"PASS Granted stage {stage_code} to '{username}'")

    click.echo("\n" + "="*60)
    click.echo("DONE PharmaFlow Initialized Successfully!")
    click.echo("="*60)
    click.echo("\nSECURITY WARNING: change the default passwords in production!")
    click.echo("")


@system_group.command('seed-workflow')
@with_appcontext
def seed_workflow():
    """Create the default QC and warehouse workflow (idempotent)."""
    counts = workflow_service.seed_default_workflow()
    click.echo(f"PASS Created {counts['stages']} stages, {counts['transitions']} transitions")


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def reset_db(yes):
    """DEV/TEST only: drop and recreate all tables."""
    if not yes:
        click.confirm("This deletes ALL data. Continue?", abort=True)
    db.drop_all()
    db.create_all()
    click.echo("PASS Database reset")


# =============================================================================
# USER COMMANDS
# =============================================================================

@click.group('users')
def users_group():
    """User inspection and bootstrap commands."""


@users_group.command('create')
@click.option('--username', prompt=True, help='Username')
@click.option('--email', prompt=True, help='Email address')
@click.option('--password', prompt=True, hide_input=True, confirmation_prompt=True, help='Password')
@click.option('--role', type=click.Choice(sorted(DEFAULT_ROLES)), prompt=True, help='Role')
@click.option('--full-name', help='Display name')
@with_appcontext
def create_user_cli(username, email, password, role, full_name):
    """Create a user and assign a role."""
    create_default_roles()
    try:
        user = create_user(username=username, email=email, password=password, full_name=full_name)
        assign_role(user.id, role)
        click.echo(f"PASS Created user '{username}' (ID: {user.id}) with role '{role}'")
    except PasswordValidationError as e:
        click.echo(f"FAIL Password validation failed: {str(e)}")
    except ValueError as e:
        click.echo(f"FAIL Error: {str(e)}")


@users_group.command('list')
@with_appcontext
def list_users():
    """List all users with their roles."""
    users = db.session.query(User).order_by(User.id).all()

    if not users:
        click.echo("No users found.")
        return

    click.echo("\n" + "="*90)
    click.echo(f"{'ID':<5} {'Username':<20} {'Email':<32} {'Active':<8} {'Roles'}")
    click.echo("="*90)

    for user in users:
        roles = permission_service.get_user_role_names(user.id)
        roles_str = ", ".join(roles) if roles else "none"
        active_str = "Yes" if user.is_active else "No"
        click.echo(f"{user.id:<5} {user.username:<20} {user.email:<32} {active_str:<8} {roles_str}")

    click.echo("="*90 + "\n")


# =============================================================================
# PERMISSION COMMANDS
# =============================================================================

@click.group('perms')
def perms_group():
    """Permission inspection and repair commands."""


@perms_group.command('grant')
@click.argument('role_name')
@click.argument('permission_code')
@with_appcontext
def grant_permission_cli(role_name, permission_code):
    """Grant a permission to a role."""
    try:
        permission_service.grant_permission_to_role(role_name, permission_code)
        click.echo(f"PASS Granted '{permission_code}' to role '{role_name}'")
    except ValueError as e:
        click.echo(f"FAIL Error: {str(e)}")


@perms_group.command('revoke')
@click.argument('role_name')
@click.argument('permission_code')
@with_appcontext
def revoke_permission_cli(role_name, permission_code):
    """Revoke a permission from a role."""
    try:
        revoked = permission_service.revoke_permission_from_role(role_name, permission_code)
        if revoked:
            click.echo(f"PASS Revoked '{permission_code}' from role '{role_name}'")
        else:
            click.echo(f"WARN  Permission '{permission_code}' was not granted to '{role_name}'")
    except ValueError as e:
        click.echo(f"FAIL Error: {str(e)}")


@perms_group.command('check')
@click.argument('username')
@click.argument('permission_code')
@click.option('--stage', 'stage_code', help='Check against a stage grant as well')
@with_appcontext
def check_permission_cli(username, permission_code, stage_code):
    """Check if a user has a specific permission."""
    user = db.session.query(User).filter_by(username=username).first()

    if not user:
        click.echo(f"FAIL User '{username}' not found")
        return

    stage_id = None
    if stage_code:
        stage = workflow_service.get_stage_by_code(stage_code)
        if stage is None:
            click.echo(f"FAIL Stage '{stage_code}' not found")
            return
        stage_id = stage.id

    actor = permission_service.actor_for_user(user)
    scope = f" on stage '{stage_code}'" if stage_code else ""
    if permission_service.has_permission(actor, stage_id, permission_code):
        click.echo(f"PASS User '{username}' HAS permission '{permission_code}'{scope}")
    else:
        click.echo(f"FAIL User '{username}' DOES NOT HAVE permission '{permission_code}'{scope}")

    click.echo(f"\nUser roles: {', '.join(actor.role_names)}")
    click.echo(f"Total permissions: {len(actor.global_permissions)}")


@perms_group.command('stage-grant')
@click.argument('username')
@click.argument('stage_code')
@click.argument('permission_codes', nargs=-1, required=True)
@click.option('--granted-by', default='admin', show_default=True, help='Username recorded as the assigner')
@click.option('--days', type=int, help='Expire the grant after this many days')
@with_appcontext
def stage_grant_cli(username, stage_code, permission_codes, granted_by, days):
    """Grant per-stage permissions to a user."""
    user = db.session.query(User).filter_by(username=username).first()
    assigner = db.session.query(User).filter_by(username=granted_by).first()
    stage = workflow_service.get_stage_by_code(stage_code)
    if not user or not assigner or stage is None:
        click.echo("FAIL Unknown user, assigner or stage")
        return

    expires_at = utcnow() + timedelta(days=days) if days else None
    try:
        grant = permission_service.assign_stage_permission(
            user_id=user.id,
            stage_id=stage.id,
            permission_codes=list(permission_codes),
            assigned_by_user_id=assigner.id,
            expires_at=expires_at,
        )
    except WorkflowError as e:
        click.echo(f"FAIL Error: {e.message}")
        return
    click.echo(f"PASS '{username}' now holds {', '.join(sorted(grant.permission_codes))} on {stage_code}")


# =============================================================================
# WORKFLOW COMMANDS
# =============================================================================

@click.group('workflow')
def workflow_group():
    """Workflow inspection commands."""


@workflow_group.command('graph')
@click.option('--format', 'fmt', type=click.Choice(['json', 'mermaid']), default='mermaid', show_default=True)
@click.option('--all', 'include_inactive', is_flag=True, help='Include inactive stages')
@with_appcontext
def workflow_graph_cli(fmt, include_inactive):
    """Print the workflow stage graph."""
    graph = workflow_service.workflow_graph(fmt=fmt, include_inactive=include_inactive)
    if fmt == 'json':
        click.echo(json.dumps(graph, indent=2))
    else:
        click.echo(graph)


# =============================================================================
# MAINTENANCE COMMANDS
# =============================================================================

@click.group('maintenance')
def maintenance_group():
    """Maintenance commands."""


@maintenance_group.command('cleanup-security-events')
@click.option('--retention-days', type=int, default=90, show_default=True)
@with_appcontext
def cleanup_security_events_cli(retention_days):
    """
    Cleanup old security events.

    Default retention: 90 days.
    """
    cutoff = utcnow() - timedelta(days=retention_days)
    deleted = db.session.query(SecurityEvent).filter(SecurityEvent.occurred_at < cutoff).delete(
        synchronize_session=False
    )
    db.session.commit()
    click.echo(f"Deleted {deleted} security events older than {retention_days} days.")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(users_group)
    app.cli.add_command(perms_group)
    app.cli.add_command(workflow_group)
    app.cli.add_command(maintenance_group)
