from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import func
from werkzeug.security import generate_password_hash

from app.backoffice.audit import record_event
from app.backoffice.constants import SYSTEM_PERMISSION_KEYS, SYSTEM_ROLES
from app.backoffice.models import Permission, Role, User, user_roles
from app.backoffice.rbac import ADMIN_ROLE_KEY, user_is_admin
from app.backoffice.utils import is_valid_email

if TYPE_CHECKING:
    from sqlalchemy.orm import Session


class AccessRuleError(ValueError):
    """A request that is well-formed but breaks an access-control rule."""


MIN_PASSWORD_LENGTH = 8


def _ids(raw) -> list[int]:
    out: list[int] = []
    for v in raw or []:
        try:
            out.append(int(v))
        except (TypeError, ValueError):
            continue
    return out


def admin_user_count(s: "Session") -> int:
    return (
        s.query(func.count(func.distinct(user_roles.c.user_id)))
        .select_from(user_roles)
        .join(Role, Role.id == user_roles.c.role_id)
        .filter(Role.key == ADMIN_ROLE_KEY)
        .scalar()
        or 0
    )


def is_system_role(role: Role) -> bool:
    return role.key in SYSTEM_ROLES


def is_system_permission(permission: Permission) -> bool:
    return permission.key in SYSTEM_PERMISSION_KEYS


# ---------- Users ----------
def validate_user_payload(s: "Session", payload: dict, *, user: User | None = None) -> list[str]:
    """Validate user create/update payload. Returns list of errors."""
    errors: list[str] = []
    name = (payload.get("name") or "").strip()
    email = (payload.get("email") or "").strip().lower()
    password = payload.get("password") or ""
    confirm = payload.get("password_confirm") or ""

    if not name:
        errors.append("Name is required.")
    elif len(name) > 255:
        errors.append("Name must be at most 255 characters.")

    if not email:
        errors.append("Email is required.")
    elif not is_valid_email(email):
        errors.append("Invalid email format.")
    else:
        q = s.query(User).filter(User.email == email)
        if user is not None:
            q = q.filter(User.id != user.id)
        if q.first():
            errors.append("An account with this email already exists.")

    password_required = user is None
    if password or password_required:
        if not password:
            errors.append("Password is required.")
        elif len(password) < MIN_PASSWORD_LENGTH:
            errors.append(f"Password must be at least {MIN_PASSWORD_LENGTH} characters.")
        elif password != confirm:
            errors.append("Passwords do not match.")
    return errors


def create_user(s: "Session", payload: dict, actor: User) -> User:
    now = datetime.utcnow()
    user = User(
        name=(payload.get("name") or "").strip(),
        email=(payload.get("email") or "").strip().lower(),
        password_hash=generate_password_hash(payload["password"]),
        is_active=payload.get("is_active", True) not in (False, "0", "off"),
        created_at=now,
        updated_at=now,
    )
    role_ids = _ids(payload.get("role_ids"))
    if role_ids:
        user.roles = s.query(Role).filter(Role.id.in_(role_ids)).all()
    s.add(user)
    s.flush()

    record_event(
        s,
        actor=actor,
        action="user.create",
        entity_type="User",
        entity_id=str(user.id),
        metadata={"email": user.email, "roles": [r.key for r in user.roles]},
    )
    return user


def update_user(s: "Session", user: User, payload: dict, actor: User) -> User:
    before = {"name": user.name, "email": user.email, "is_active": user.is_active, "roles": [r.key for r in user.roles]}

    new_roles = s.query(Role).filter(Role.id.in_(_ids(payload.get("role_ids")))).all()
    new_active = payload.get("is_active") in (True, "1", "on", "true")
    loses_admin = user.has_role(ADMIN_ROLE_KEY) and not any(r.key == ADMIN_ROLE_KEY for r in new_roles)

    if user.id == actor.id and not new_active:
        raise AccessRuleError("You cannot deactivate your own account.")
    if loses_admin and admin_user_count(s) <= 1:
        raise AccessRuleError("Cannot remove the admin role from the last admin user.")

    user.name = (payload.get("name") or "").strip() or user.name
    user.email = (payload.get("email") or "").strip().lower() or user.email
    user.is_active = new_active
    user.roles = new_roles
    password = payload.get("password") or ""
    if password:
        user.password_hash = generate_password_hash(password)
    user.updated_at = datetime.utcnow()

    after = {"name": user.name, "email": user.email, "is_active": user.is_active, "roles": [r.key for r in user.roles]}
    record_event(
        s,
        actor=actor,
        action="user.update",
        entity_type="User",
        entity_id=str(user.id),
        metadata={"before": before, "after": after, "password_changed": bool(password)},
    )
    return user


def delete_user(s: "Session", user: User, actor: User) -> None:
    if user.id == actor.id:
        raise AccessRuleError("You cannot delete your own account.")
    if user.has_role(ADMIN_ROLE_KEY) and admin_user_count(s) <= 1:
        raise AccessRuleError("Cannot delete the last admin user.")

    record_event(
        s,
        actor=actor,
        action="user.delete",
        entity_type="User",
        entity_id=str(user.id),
        metadata={"email": user.email, "roles": [r.key for r in user.roles]},
    )
    s.delete(user)


# ---------- Roles ----------
def validate_role_payload(s: "Session", payload: dict, *, role: Role | None = None) -> list[str]:
    errors: list[str] = []
    key = (payload.get("key") or "").strip().lower()
    name = (payload.get("name") or "").strip()
    description = (payload.get("description") or "").strip()

    if role is None:
        if not key:
            errors.append("Key is required.")
        elif not key.replace("_", "").replace("-", "").isalnum():
            errors.append("Key may only contain letters, digits, '-' and '_'.")
        elif s.query(Role).filter(Role.key == key).first():
            errors.append("A role with this key already exists.")
    if not name:
        errors.append("Name is required.")
    elif len(name) > 128:
        errors.append("Name must be at most 128 characters.")
    if len(description) > 500:
        errors.append("Description must be at most 500 characters.")
    return errors


def _guard_admin_role_permissions(role: Role, actor: User) -> None:
    if role.key == ADMIN_ROLE_KEY and not user_is_admin(actor):
        raise AccessRuleError("Only administrators can modify the admin role's permissions.")


def create_role(s: "Session", payload: dict, actor: User) -> Role:
    role = Role(
        key=(payload.get("key") or "").strip().lower(),
        name=(payload.get("name") or "").strip(),
        description=(payload.get("description") or "").strip() or None,
    )
    perm_ids = _ids(payload.get("permission_ids"))
    if perm_ids:
        role.permissions = s.query(Permission).filter(Permission.id.in_(perm_ids)).all()
    s.add(role)
    s.flush()
    record_event(
        s,
        actor=actor,
        action="role.create",
        entity_type="Role",
        entity_id=str(role.id),
        metadata={"key": role.key, "permissions": sorted(p.key for p in role.permissions)},
    )
    return role


def update_role(s: "Session", role: Role, payload: dict, actor: User) -> Role:
    changes: dict[str, dict] = {}
    new_name = (payload.get("name") or "").strip()
    if new_name and new_name != role.name:
        changes["name"] = {"old": role.name, "new": new_name}
        role.name = new_name
    new_description = (payload.get("description") or "").strip() or None
    if new_description != role.description:
        changes["description"] = {"old": role.description, "new": new_description}
        role.description = new_description

    if "permission_ids" in payload:
        new_perms = s.query(Permission).filter(Permission.id.in_(_ids(payload.get("permission_ids")))).all()
        old_keys = sorted(p.key for p in role.permissions)
        new_keys = sorted(p.key for p in new_perms)
        if old_keys != new_keys:
            _guard_admin_role_permissions(role, actor)
            changes["permissions"] = {"old": old_keys, "new": new_keys}
            role.permissions = new_perms

    record_event(
        s,
        actor=actor,
        action="role.update",
        entity_type="Role",
        entity_id=str(role.id),
        metadata={"key": role.key, "changes": changes},
    )
    return role


def delete_role(s: "Session", role: Role, actor: User) -> None:
    if is_system_role(role):
        raise AccessRuleError(f"System role '{role.key}' cannot be deleted.")
    record_event(
        s,
        actor=actor,
        action="role.delete",
        entity_type="Role",
        entity_id=str(role.id),
        metadata={"key": role.key, "user_count": len(role.users)},
    )
    s.delete(role)


def update_permission_matrix(s: "Session", matrix: dict[int, list[int]], actor: User) -> int:
    """
    Replace each listed role's permission set. Returns the number of roles changed.
    Roles absent from ``matrix`` are left alone.
    """
    roles = s.query(Role).filter(Role.id.in_(list(matrix))).all() if matrix else []
    perms_by_id = {p.id: p for p in s.query(Permission).all()}
    changed = 0
    for role in roles:
        wanted = [perms_by_id[i] for i in matrix.get(role.id, []) if i in perms_by_id]
        old_keys = sorted(p.key for p in role.permissions)
        new_keys = sorted(p.key for p in wanted)
        if old_keys == new_keys:
            continue
        _guard_admin_role_permissions(role, actor)
        role.permissions = wanted
        changed += 1
        record_event(
            s,
            actor=actor,
            action="role.permissions_update",
            entity_type="Role",
            entity_id=str(role.id),
            metadata={"key": role.key, "old": old_keys, "new": new_keys},
        )
    return changed


def bulk_assign_users(s: "Session", user_ids, role_ids, action: str, actor: User) -> str:
    """Assign or remove every selected role for every selected user. Returns a summary message."""
    if action not in ("assign", "remove"):
        raise AccessRuleError("Action must be 'assign' or 'remove'.")
    users = s.query(User).filter(User.id.in_(_ids(user_ids))).all()
    roles = s.query(Role).filter(Role.id.in_(_ids(role_ids))).all()
    if not users or not roles:
        raise AccessRuleError("Select at least one user and one role.")

    if action == "remove" and any(r.key == ADMIN_ROLE_KEY for r in roles):
        remaining = admin_user_count(s) - sum(1 for u in users if u.has_role(ADMIN_ROLE_KEY))
        if remaining < 1:
            raise AccessRuleError("Cannot remove the admin role from the last admin user.")

    for user in users:
        for role in roles:
            if action == "assign" and role not in user.roles:
                user.roles.append(role)
            elif action == "remove" and role in user.roles:
                user.roles.remove(role)

    record_event(
        s,
        actor=actor,
        action=f"role.bulk_{action}",
        entity_type="Role",
        entity_id=",".join(str(r.id) for r in roles),
        metadata={"users": [u.email for u in users], "roles": [r.key for r in roles]},
    )
    verb = "assigned to" if action == "assign" else "removed from"
    return f"{len(users)} user(s) {verb} {len(roles)} role(s) successfully."


# ---------- Permissions ----------
def validate_permission_payload(s: "Session", payload: dict, *, permission: Permission | None = None) -> list[str]:
    errors: list[str] = []
    key = (payload.get("key") or "").strip()
    name = (payload.get("name") or "").strip()
    description = (payload.get("description") or "").strip()
    if not key:
        errors.append("Permission name is required.")
    elif len(key) > 255:
        errors.append("Permission name must be at most 255 characters.")
    else:
        q = s.query(Permission).filter(Permission.key == key)
        if permission is not None:
            q = q.filter(Permission.id != permission.id)
        if q.first():
            errors.append("A permission with this name already exists.")
    if len(name) > 128:
        errors.append("Display name must be at most 128 characters.")
    if len(description) > 500:
        errors.append("Description must be at most 500 characters.")
    return errors


def create_permission(s: "Session", payload: dict, actor: User) -> Permission:
    key = (payload.get("key") or "").strip()
    perm = Permission(
        key=key,
        name=(payload.get("name") or "").strip() or key,
        description=(payload.get("description") or "").strip() or None,
    )
    role_ids = _ids(payload.get("role_ids"))
    if role_ids:
        perm.roles = s.query(Role).filter(Role.id.in_(role_ids)).all()
    s.add(perm)
    s.flush()
    record_event(
        s,
        actor=actor,
        action="permission.create",
        entity_type="Permission",
        entity_id=str(perm.id),
        metadata={"key": perm.key, "roles": [r.key for r in perm.roles]},
    )
    return perm


def update_permission(s: "Session", perm: Permission, payload: dict, actor: User) -> Permission:
    changes: dict[str, dict] = {}
    new_key = (payload.get("key") or "").strip()
    if new_key and new_key != perm.key:
        if is_system_permission(perm):
            raise AccessRuleError("System permissions cannot be renamed.")
        changes["key"] = {"old": perm.key, "new": new_key}
        perm.key = new_key
    new_name = (payload.get("name") or "").strip() or perm.key
    if new_name != perm.name:
        changes["name"] = {"old": perm.name, "new": new_name}
        perm.name = new_name
    new_description = (payload.get("description") or "").strip() or None
    if new_description != perm.description:
        changes["description"] = {"old": perm.description, "new": new_description}
        perm.description = new_description

    if "role_ids" in payload:
        new_roles = s.query(Role).filter(Role.id.in_(_ids(payload.get("role_ids")))).all()
        old_keys = sorted(r.key for r in perm.roles)
        new_keys = sorted(r.key for r in new_roles)
        if old_keys != new_keys:
            admin_touched = (ADMIN_ROLE_KEY in old_keys) != (ADMIN_ROLE_KEY in new_keys)
            if admin_touched and not user_is_admin(actor):
                raise AccessRuleError("Only administrators can modify the admin role's permissions.")
            changes["roles"] = {"old": old_keys, "new": new_keys}
            perm.roles = new_roles

    record_event(
        s,
        actor=actor,
        action="permission.update",
        entity_type="Permission",
        entity_id=str(perm.id),
        metadata={"key": perm.key, "changes": changes},
    )
    return perm


def delete_permission(s: "Session", perm: Permission, actor: User) -> None:
    if is_system_permission(perm):
        raise AccessRuleError(f"System permission '{perm.key}' cannot be deleted.")
    record_event(
        s,
        actor=actor,
        action="permission.delete",
        entity_type="Permission",
        entity_id=str(perm.id),
        metadata={"key": perm.key},
    )
    s.delete(perm)
