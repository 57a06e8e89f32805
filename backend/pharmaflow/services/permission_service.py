# Overview: Service-layer operations for permission; encapsulates business logic and database work.

"""
Permission Checking, Stage Grants and Security Event Logging

WHY: Which user may act on which workflow stage is configuration, not code.
A user holds a permission on a stage when either:
- one of their roles grants it globally (RolePermission), or
- an active, unexpired StagePermission for that stage contains it.

DESIGN PRINCIPLES:
- Fail closed: Deny by default, require explicit permission grant
- Log denials only: Permission grants are not logged
- Idempotent grants: assigning twice or revoking a missing grant is a no-op
- Expiry is evaluated with the wall clock at check time
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from ..extensions import db
from ..models import (
    User,
    UserRole,
    Role,
    RolePermission,
    Permission,
    SecurityEvent,
    StagePermission,
    WorkflowStage,
)
from ..permissions import PERMISSION_DEFINITIONS, DEFAULT_ROLE_PERMISSIONS
from pharmaflow.time_utils import is_expired, to_naive_utc, to_utc_z, utcnow
from .errors import PermissionDeniedError, RecordNotFoundError, WorkflowValidationError


@dataclass(frozen=True)
class ActorContext:
    """
    Explicit identity passed to every workflow operation.

    global_permissions are the role-derived codes resolved once per request;
    stage grants are always looked up at check time.
    """
    user_id: int
    role_names: frozenset = field(default_factory=frozenset)
    global_permissions: frozenset = field(default_factory=frozenset)
    ip_address: str | None = None
    user_agent: str | None = None


def actor_for_user(user: User, ip_address: str | None = None, user_agent: str | None = None) -> ActorContext:
    return ActorContext(
        user_id=user.id,
        role_names=frozenset(get_user_role_names(user.id)),
        global_permissions=frozenset(get_user_permissions(user.id)),
        ip_address=ip_address,
        user_agent=user_agent,
    )


def log_security_event(
    user_id: int | None,
    event_type: str,
    success: bool,
    resource: str | None = None,
    action: str | None = None,
    reason: str | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> SecurityEvent:
    """
    Log security event to audit trail.

    event_type examples:
    - PERMISSION_DENIED
    - STAGE_PERMISSION_DENIED
    - LOGIN_FAILED
    - LOGOUT
    - STAGE_PERMISSION_ASSIGNED
    """
    event = SecurityEvent(
        user_id=user_id,
        event_type=event_type,
        resource=resource,
        action=action,
        success=success,
        reason=reason,
        ip_address=ip_address,
        user_agent=user_agent,
        occurred_at=utcnow()
    )

    db.session.add(event)
    db.session.commit()

    return event


def get_user_permissions(user_id: int) -> set[str]:
    """
    Get all global (role-derived) permission codes for a user.

    Stage grants are not included; see has_permission().
    """
    rows = (
        db.session.query(Permission.code)
        .join(RolePermission, RolePermission.permission_id == Permission.id)
        .join(UserRole, UserRole.role_id == RolePermission.role_id)
        .filter(UserRole.user_id == user_id)
        .distinct()
        .all()
    )
    return {code for (code,) in rows}


def get_user_role_names(user_id: int) -> list[str]:
    """Get list of role names for a user."""
    rows = (
        db.session.query(Role.name)
        .join(UserRole, UserRole.role_id == Role.id)
        .filter(UserRole.user_id == user_id)
        .order_by(Role.name)
        .all()
    )
    return [name for (name,) in rows]


def user_has_permission(user_id: int, permission_code: str) -> bool:
    return permission_code in get_user_permissions(user_id)


def require_permission(
    user_id: int,
    permission_code: str,
    resource: str | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> None:
    """
    Require a global permission, raise PermissionDeniedError if missing.

    Only denials are written to security_events.
    """
    if not user_has_permission(user_id, permission_code):
        log_security_event(
            user_id=user_id,
            event_type="PERMISSION_DENIED",
            success=False,
            resource=resource,
            action=permission_code,
            reason=f"Missing permission: {permission_code}",
            ip_address=ip_address,
            user_agent=user_agent,
        )
        raise PermissionDeniedError(
            f"Permission denied: {permission_code}",
            user_id=user_id,
            permission=permission_code,
        )


# =============================================================================
# Stage-scoped permissions
# =============================================================================

def _get_stage_grant(user_id: int, stage_id: int) -> StagePermission | None:
    return db.session.query(StagePermission).filter_by(user_id=user_id, stage_id=stage_id).first()


def has_permission(actor: ActorContext, stage_id: int | None, permission_code: str, now: datetime | None = None) -> bool:
    """
    True when the actor holds permission_code globally or through a valid
    grant on stage_id. `now` defaults to the wall clock at call time.
    """
    if permission_code in actor.global_permissions:
        return True
    if stage_id is None:
        return False
    grant = _get_stage_grant(actor.user_id, stage_id)
    if grant is None or not grant.is_valid(now):
        return False
    return permission_code in grant.permission_codes


def missing_permissions(actor: ActorContext, stage_id: int | None, permission_codes, now=None) -> list[str]:
    return [code for code in permission_codes if not has_permission(actor, stage_id, code, now)]


def ensure_permissions(
    actor: ActorContext,
    stage_id: int | None,
    permission_codes,
    *,
    resource: str | None = None,
) -> None:
    """
    Raise PermissionDeniedError (after logging the denial) unless the actor
    holds every code on the stage.
    """
    codes = list(dict.fromkeys(permission_codes))
    missing = missing_permissions(actor, stage_id, codes)
    if not missing:
        return

    log_security_event(
        user_id=actor.user_id,
        event_type="STAGE_PERMISSION_DENIED",
        success=False,
        resource=resource,
        action=",".join(codes),
        reason=f"Missing on stage {stage_id}: {', '.join(missing)}",
        ip_address=actor.ip_address,
        user_agent=actor.user_agent,
    )
    raise PermissionDeniedError(
        f"Permission denied: {', '.join(missing)}",
        user_id=actor.user_id,
        stage_id=stage_id,
        missing_permissions=missing,
    )


def resolve_permission_codes(permission_codes) -> list[Permission]:
    """Permission rows for the given codes; unknown codes raise WorkflowValidationError."""
    codes = sorted({str(c).strip().upper() for c in (permission_codes or []) if str(c).strip()})
    if not codes:
        return []
    found = db.session.query(Permission).filter(Permission.code.in_(codes)).all()
    unknown = sorted(set(codes) - {p.code for p in found})
    if unknown:
        raise WorkflowValidationError(
            f"Unknown permission code(s): {', '.join(unknown)}",
            unknown_permissions=unknown,
        )
    return found


def _require_stage(stage_id: int) -> WorkflowStage:
    stage = db.session.get(WorkflowStage, stage_id)
    if stage is None:
        raise RecordNotFoundError("Workflow stage not found", stage_id=stage_id)
    return stage


def _require_user(user_id: int) -> User:
    user = db.session.get(User, user_id)
    if user is None:
        raise RecordNotFoundError("User not found", user_id=user_id)
    return user


def _apply_assignment(
    *,
    user_id: int,
    stage_id: int,
    permissions: list[Permission],
    assigned_by_user_id: int,
    expires_at: datetime | None,
    remarks: str | None,
) -> StagePermission:
    grant = _get_stage_grant(user_id, stage_id)
    now = utcnow()

    if grant is None:
        grant = StagePermission(
            user_id=user_id,
            stage_id=stage_id,
            expires_at=expires_at,
            is_active=True,
            remarks=remarks,
            assigned_by_user_id=assigned_by_user_id,
            assigned_at=now,
        )
        grant.permissions = list(permissions)
        db.session.add(grant)
        return grant

    if not grant.is_valid(now):
        # Revoked or expired grants start over with the new code set
        grant.permissions = list(permissions)
    else:
        existing = grant.permission_codes
        grant.permissions = list(grant.permissions) + [p for p in permissions if p.code not in existing]

    grant.is_active = True
    grant.expires_at = expires_at
    grant.assigned_by_user_id = assigned_by_user_id
    grant.assigned_at = now
    grant.revoked_by_user_id = None
    grant.revoked_at = None
    if remarks is not None:
        grant.remarks = remarks
    return grant


def assign_stage_permission(
    *,
    user_id: int,
    stage_id: int,
    permission_codes,
    assigned_by_user_id: int,
    expires_at: datetime | None = None,
    remarks: str | None = None,
) -> StagePermission:
    """
    Grant permission codes on a stage to a user.

    Idempotent: codes already held are kept, an existing grant is reactivated
    rather than duplicated (one row per user/stage).
    """
    _require_stage(stage_id)
    _require_user(user_id)
    permissions = resolve_permission_codes(permission_codes)
    if not permissions:
        raise WorkflowValidationError("At least one permission code is required")

    expires_at = to_naive_utc(expires_at)
    if expires_at is not None and is_expired(expires_at):
        raise WorkflowValidationError("expires_at must be in the future", expires_at=str(expires_at))

    grant = _apply_assignment(
        user_id=user_id,
        stage_id=stage_id,
        permissions=permissions,
        assigned_by_user_id=assigned_by_user_id,
        expires_at=expires_at,
        remarks=remarks,
    )
    db.session.commit()
    return grant


def _apply_revocation(grant: StagePermission, *, revoked_by_user_id: int, permission_codes=None) -> None:
    if permission_codes:
        drop = {str(c).strip().upper() for c in permission_codes}
        grant.permissions = [p for p in grant.permissions if p.code not in drop]
        if grant.permissions:
            return
    grant.is_active = False
    grant.revoked_by_user_id = revoked_by_user_id
    grant.revoked_at = utcnow()


def revoke_stage_permission(
    *,
    user_id: int,
    stage_id: int,
    revoked_by_user_id: int,
    permission_codes=None,
) -> StagePermission | None:
    """
    Revoke a user's grant on a stage (or only some codes of it).

    Revoking a grant that does not exist, or is already inactive, is a no-op
    and returns None. A grant left with no codes is deactivated.
    """
    grant = _get_stage_grant(user_id, stage_id)
    if grant is None or not grant.is_active:
        return None

    _apply_revocation(grant, revoked_by_user_id=revoked_by_user_id, permission_codes=permission_codes)
    db.session.commit()
    return grant


def update_stage_assignments(
    *,
    stage_id: int,
    user_ids,
    permission_codes,
    assigned_by_user_id: int,
    expires_at: datetime | None = None,
) -> dict:
    """
    Make the set of users holding a valid grant on stage_id equal user_ids.

    Issues exactly one assign per newly added user and one revoke per removed
    user; users already holding a valid grant are left untouched.
    Returns {"assigned": [...], "revoked": [...]}.
    """
    _require_stage(stage_id)
    permissions = resolve_permission_codes(permission_codes)
    desired = {int(u) for u in (user_ids or [])}
    if desired and not permissions:
        raise WorkflowValidationError("At least one permission code is required")

    expires_at = to_naive_utc(expires_at)
    if expires_at is not None and is_expired(expires_at):
        raise WorkflowValidationError("expires_at must be in the future", expires_at=str(expires_at))

    now = utcnow()
    grants = db.session.query(StagePermission).filter_by(stage_id=stage_id).all()
    current = {g.user_id: g for g in grants if g.is_valid(now)}

    to_assign = sorted(desired - set(current))
    to_revoke = sorted(set(current) - desired)

    for user_id in to_assign:
        _require_user(user_id)
        _apply_assignment(
            user_id=user_id,
            stage_id=stage_id,
            permissions=permissions,
            assigned_by_user_id=assigned_by_user_id,
            expires_at=expires_at,
            remarks=None,
        )
    for user_id in to_revoke:
        _apply_revocation(current[user_id], revoked_by_user_id=assigned_by_user_id)

    if to_assign or to_revoke:
        db.session.commit()

    return {"assigned": to_assign, "revoked": to_revoke}


def list_stage_users(stage_id: int, include_inactive: bool = False) -> list[dict]:
    """Users holding a grant on a stage, with their codes and validity."""
    _require_stage(stage_id)
    now = utcnow()
    grants = (
        db.session.query(StagePermission)
        .filter_by(stage_id=stage_id)
        .order_by(StagePermission.user_id)
        .all()
    )
    results = []
    for grant in grants:
        if not include_inactive and not grant.is_valid(now):
            continue
        data = grant.to_dict()
        data["username"] = grant.user.username if grant.user else None
        results.append(data)
    return results


def get_user_stage_permissions(user_id: int, stage_id: int) -> dict:
    """Effective permission codes for a user on a stage, split by source."""
    global_codes = get_user_permissions(user_id)
    grant = _get_stage_grant(user_id, stage_id)
    stage_codes = grant.permission_codes if grant is not None and grant.is_valid() else set()
    return {
        "user_id": user_id,
        "stage_id": stage_id,
        "global": sorted(global_codes),
        "stage": sorted(stage_codes),
        "effective": sorted(global_codes | stage_codes),
        "expires_at": to_utc_z(grant.expires_at) if grant is not None else None,
    }


# =============================================================================
# Bootstrap
# =============================================================================

def initialize_permissions():
    """
    Initialize all permission definitions in database.

    Idempotent: Safe to run multiple times.
    """
    created_count = 0

    for code, name, description, category in PERMISSION_DEFINITIONS:
        existing = db.session.query(Permission).filter_by(code=code).first()

        if not existing:
            permission = Permission(
                code=code,
                name=name,
                description=description,
                category=category
            )
            db.session.add(permission)
            created_count += 1

    db.session.commit()
    return created_count


def assign_default_role_permissions():
    """
    Assign default permissions to roles based on DEFAULT_ROLE_PERMISSIONS.

    Idempotent: Safe to run multiple times (skips existing).
    """
    created_count = 0

    for role_name, permission_codes in DEFAULT_ROLE_PERMISSIONS.items():
        role = db.session.query(Role).filter_by(name=role_name).first()

        if not role:
            continue  # Role doesn't exist, skip

        for permission_code in permission_codes:
            permission = db.session.query(Permission).filter_by(code=permission_code).first()

            if not permission:
                continue

            existing = db.session.query(RolePermission).filter_by(
                role_id=role.id,
                permission_id=permission.id
            ).first()

            if not existing:
                db.session.add(RolePermission(role_id=role.id, permission_id=permission.id))
                created_count += 1

    db.session.commit()
    return created_count


def grant_permission_to_role(role_name: str, permission_code: str):
    """Grant a global permission to a role."""
    role = db.session.query(Role).filter_by(name=role_name).first()
    if not role:
        raise ValueError(f"Role '{role_name}' not found")

    permission = db.session.query(Permission).filter_by(code=permission_code).first()
    if not permission:
        raise ValueError(f"Permission '{permission_code}' not found")

    existing = db.session.query(RolePermission).filter_by(
        role_id=role.id,
        permission_id=permission.id
    ).first()

    if existing:
        return existing  # Already granted

    role_permission = RolePermission(role_id=role.id, permission_id=permission.id)
    db.session.add(role_permission)
    db.session.commit()

    return role_permission


def revoke_permission_from_role(role_name: str, permission_code: str):
    """Revoke a global permission from a role."""
    role = db.session.query(Role).filter_by(name=role_name).first()
    if not role:
        raise ValueError(f"Role '{role_name}' not found")

    permission = db.session.query(Permission).filter_by(code=permission_code).first()
    if not permission:
        raise ValueError(f"Permission '{permission_code}' not found")

    role_permission = db.session.query(RolePermission).filter_by(
        role_id=role.id,
        permission_id=permission.id
    ).first()

    if role_permission:
        db.session.delete(role_permission)
        db.session.commit()
        return True

    return False  # Wasn't granted in the first place
