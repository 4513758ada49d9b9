from __future__ import annotations

from flask import Blueprint, abort, flash, g, redirect, render_template, request, url_for
from sqlalchemy import or_

from app.backoffice.db import db_session
from app.backoffice.models import Permission, Role, User
from app.backoffice.modules.access.permissions import group_by_module, parse_permission_name
from app.backoffice.modules.access.service import (
    AccessRuleError,
    bulk_assign_users,
    create_permission,
    create_role,
    create_user,
    delete_permission,
    delete_role,
    delete_user,
    is_system_permission,
    is_system_role,
    update_permission,
    update_permission_matrix,
    update_role,
    update_user,
    validate_permission_payload,
    validate_role_payload,
    validate_user_payload,
)
from app.backoffice.rbac import require_permission
from app.backoffice.utils import paginate, page_urls, parse_int

bp = Blueprint("access", __name__)

USERS_PER_PAGE = 15


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _user_form() -> dict:
    return {
        "name": request.form.get("name"),
        "email": request.form.get("email"),
        "password": request.form.get("password"),
        "password_confirm": request.form.get("password_confirm"),
        "is_active": request.form.get("is_active"),
        "role_ids": request.form.getlist("role_ids"),
    }


def _all_roles():
    return db_session().query(Role).order_by(Role.name.asc()).all()


# ============================================================================
# USERS
# ============================================================================

@bp.get("/users")
@require_permission("users.view")
def users_list():
    s = db_session()
    search = (request.args.get("q") or "").strip()
    role_filter = (request.args.get("role") or "").strip()
    page = parse_int(request.args.get("page"), 1) or 1

    q = s.query(User)
    if search:
        like = f"%{search}%"
        q = q.filter(or_(User.name.ilike(like), User.email.ilike(like)))
    if role_filter:
        q = q.filter(User.roles.any(Role.key == role_filter))

    result = paginate(q.order_by(User.created_at.desc(), User.id.desc()), page=page, per_page=USERS_PER_PAGE)
    filters = {"q": search, "role": role_filter}
    return render_template(
        "admin/users/list.html",
        result=result,
        roles=_all_roles(),
        filters=filters,
        **page_urls("access.users_list", result, filters),
    )


@bp.get("/users/new")
@require_permission("users.create")
def users_new_get():
    return render_template("admin/users/form.html", account=None, form={}, roles=_all_roles())


@bp.post("/users/new")
@require_permission("users.create")
def users_new_post():
    s = db_session()
    payload = _user_form()
    errors = validate_user_payload(s, payload)
    if errors:
        for e in errors:
            flash(e, "danger")
        return render_template("admin/users/form.html", account=None, form=payload, roles=_all_roles()), 400

    user = create_user(s, payload, _current_user())
    s.commit()
    flash(f"User {user.email} created successfully.", "success")
    return redirect(url_for("access.user_detail", user_id=user.id))


@bp.get("/users/<int:user_id>")
@require_permission("users.view")
def user_detail(user_id: int):
    s = db_session()
    user = s.get(User, user_id)
    if not user:
        abort(404)
    return render_template("admin/users/detail.html", account=user)


@bp.get("/users/<int:user_id>/edit")
@require_permission("users.edit")
def user_edit_get(user_id: int):
    s = db_session()
    user = s.get(User, user_id)
    if not user:
        abort(404)
    form = {
        "name": user.name,
        "email": user.email,
        "is_active": "1" if user.is_active else "",
        "role_ids": [str(r.id) for r in user.roles],
    }
    return render_template("admin/users/form.html", account=user, form=form, roles=_all_roles())


@bp.post("/users/<int:user_id>/edit")
@require_permission("users.edit")
def user_edit_post(user_id: int):
    s = db_session()
    user = s.get(User, user_id)
    if not user:
        abort(404)

    payload = _user_form()
    errors = validate_user_payload(s, payload, user=user)
    if errors:
        for e in errors:
            flash(e, "danger")
        return render_template("admin/users/form.html", account=user, form=payload, roles=_all_roles()), 400

    try:
        update_user(s, user, payload, _current_user())
    except AccessRuleError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("access.user_edit_get", user_id=user_id))
    s.commit()
    flash(f"User {user.email} updated successfully.", "success")
    return redirect(url_for("access.user_detail", user_id=user_id))


@bp.post("/users/<int:user_id>/delete")
@require_permission("users.delete")
def user_delete(user_id: int):
    s = db_session()
    user = s.get(User, user_id)
    if not user:
        abort(404)
    email = user.email
    try:
        delete_user(s, user, _current_user())
    except AccessRuleError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("access.users_list"))
    s.commit()
    flash(f"User {email} deleted successfully.", "success")
    return redirect(url_for("access.users_list"))


# ============================================================================
# ROLES
# ============================================================================

def _role_form() -> dict:
    payload = {
        "key": request.form.get("key"),
        "name": request.form.get("name"),
        "description": request.form.get("description"),
    }
    if request.form.get("permissions_submitted"):
        payload["permission_ids"] = request.form.getlist("permission_ids")
    return payload


def _permission_groups():
    return group_by_module(db_session().query(Permission).all())


@bp.get("/roles")
@require_permission("roles.view")
def roles_list():
    s = db_session()
    search = (request.args.get("q") or "").strip()
    q = s.query(Role)
    if search:
        like = f"%{search}%"
        q = q.filter(or_(Role.name.ilike(like), Role.key.ilike(like)))
    roles = q.order_by(Role.name.asc()).all()
    users = s.query(User).filter(User.is_active.is_(True)).order_by(User.email.asc()).all()
    return render_template(
        "admin/roles/list.html",
        roles=roles,
        users=users,
        search=search,
        is_system_role=is_system_role,
    )


@bp.get("/roles/new")
@require_permission("roles.create")
def roles_new_get():
    return render_template("admin/roles/form.html", role=None, form={}, permission_groups=_permission_groups())


@bp.post("/roles/new")
@require_permission("roles.create")
def roles_new_post():
    s = db_session()
    payload = _role_form()
    errors = validate_role_payload(s, payload)
    if errors:
        for e in errors:
            flash(e, "danger")
        return (
            render_template("admin/roles/form.html", role=None, form=payload, permission_groups=_permission_groups()),
            400,
        )
    role = create_role(s, payload, _current_user())
    s.commit()
    flash(f"Role {role.name} created successfully.", "success")
    return redirect(url_for("access.role_detail", role_id=role.id))


@bp.get("/roles/<int:role_id>")
@require_permission("roles.view")
def role_detail(role_id: int):
    s = db_session()
    role = s.get(Role, role_id)
    if not role:
        abort(404)
    return render_template(
        "admin/roles/detail.html",
        role=role,
        permission_groups=group_by_module(role.permissions),
        is_system=is_system_role(role),
    )


@bp.get("/roles/<int:role_id>/edit")
@require_permission("roles.edit")
def role_edit_get(role_id: int):
    s = db_session()
    role = s.get(Role, role_id)
    if not role:
        abort(404)
    form = {
        "key": role.key,
        "name": role.name,
        "description": role.description,
        "permission_ids": [str(p.id) for p in role.permissions],
    }
    return render_template("admin/roles/form.html", role=role, form=form, permission_groups=_permission_groups())


@bp.post("/roles/<int:role_id>/edit")
@require_permission("roles.edit")
def role_edit_post(role_id: int):
    s = db_session()
    role = s.get(Role, role_id)
    if not role:
        abort(404)
    payload = _role_form()
    errors = validate_role_payload(s, payload, role=role)
    if errors:
        for e in errors:
            flash(e, "danger")
        return (
            render_template("admin/roles/form.html", role=role, form=payload, permission_groups=_permission_groups()),
            400,
        )
    try:
        update_role(s, role, payload, _current_user())
    except AccessRuleError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("access.role_edit_get", role_id=role_id))
    s.commit()
    flash(f"Role {role.name} updated successfully.", "success")
    return redirect(url_for("access.role_detail", role_id=role_id))


@bp.post("/roles/<int:role_id>/delete")
@require_permission("roles.delete")
def role_delete(role_id: int):
    s = db_session()
    role = s.get(Role, role_id)
    if not role:
        abort(404)
    name = role.name
    try:
        delete_role(s, role, _current_user())
    except AccessRuleError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("access.roles_list"))
    s.commit()
    flash(f"Role {name} deleted successfully.", "success")
    return redirect(url_for("access.roles_list"))


@bp.get("/roles/matrix")
@require_permission("roles.view")
def roles_matrix_get():
    s = db_session()
    roles = s.query(Role).order_by(Role.name.asc()).all()
    granted = {(r.id, p.id) for r in roles for p in r.permissions}
    return render_template(
        "admin/roles/matrix.html",
        roles=roles,
        permission_groups=_permission_groups(),
        granted=granted,
    )


@bp.post("/roles/matrix")
@require_permission("roles.edit")
def roles_matrix_post():
    """
    Form fields are named ``perm_<role_id>`` (multi-valued permission ids); every
    role listed in ``role_ids`` gets its permission set replaced.
    """
    s = db_session()
    matrix: dict[int, list[int]] = {}
    for raw_role_id in request.form.getlist("role_ids"):
        role_id = parse_int(raw_role_id)
        if role_id is None:
            continue
        matrix[role_id] = [pid for pid in (parse_int(v) for v in request.form.getlist(f"perm_{role_id}")) if pid]
    try:
        changed = update_permission_matrix(s, matrix, _current_user())
    except AccessRuleError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("access.roles_matrix_get"))
    s.commit()
    flash(f"Permission matrix updated ({changed} role(s) changed).", "success")
    return redirect(url_for("access.roles_matrix_get"))


@bp.post("/roles/assign-users")
@require_permission("roles.edit")
def roles_bulk_assign():
    s = db_session()
    try:
        message = bulk_assign_users(
            s,
            request.form.getlist("user_ids"),
            request.form.getlist("role_ids"),
            (request.form.get("action") or "").strip(),
            _current_user(),
        )
    except AccessRuleError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("access.roles_list"))
    s.commit()
    flash(message, "success")
    return redirect(url_for("access.roles_list"))


# ============================================================================
# PERMISSIONS
# ============================================================================

def _permission_form() -> dict:
    payload = {
        "key": request.form.get("key"),
        "name": request.form.get("name"),
        "description": request.form.get("description"),
    }
    if request.form.get("roles_submitted"):
        payload["role_ids"] = request.form.getlist("role_ids")
    return payload


@bp.get("/permissions")
@require_permission("permissions.view")
def permissions_list():
    s = db_session()
    search = (request.args.get("q") or "").strip()
    module_filter = (request.args.get("module") or "").strip()
    q = s.query(Permission)
    if search:
        q = q.filter(Permission.key.ilike(f"%{search}%"))
    perms = q.all()
    if module_filter:
        perms = [p for p in perms if parse_permission_name(p.key).module == module_filter]
    return render_template(
        "admin/permissions/list.html",
        permission_groups=group_by_module(perms),
        total=len(perms),
        search=search,
        module_filter=module_filter,
        is_system_permission=is_system_permission,
        parse_permission_name=parse_permission_name,
    )


@bp.get("/permissions/new")
@require_permission("permissions.create")
def permissions_new_get():
    return render_template("admin/permissions/form.html", permission=None, form={}, roles=_all_roles())


@bp.post("/permissions/new")
@require_permission("permissions.create")
def permissions_new_post():
    s = db_session()
    payload = _permission_form()
    errors = validate_permission_payload(s, payload)
    if errors:
        for e in errors:
            flash(e, "danger")
        return render_template("admin/permissions/form.html", permission=None, form=payload, roles=_all_roles()), 400
    try:
        perm = create_permission(s, payload, _current_user())
    except AccessRuleError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("access.permissions_new_get"))
    s.commit()
    flash(f"Permission {perm.key} created successfully.", "success")
    return redirect(url_for("access.permissions_list"))


@bp.get("/permissions/<int:permission_id>/edit")
@require_permission("permissions.edit")
def permission_edit_get(permission_id: int):
    s = db_session()
    perm = s.get(Permission, permission_id)
    if not perm:
        abort(404)
    form = {
        "key": perm.key,
        "name": perm.name,
        "description": perm.description,
        "role_ids": [str(r.id) for r in perm.roles],
    }
    return render_template("admin/permissions/form.html", permission=perm, form=form, roles=_all_roles())


@bp.post("/permissions/<int:permission_id>/edit")
@require_permission("permissions.edit")
def permission_edit_post(permission_id: int):
    s = db_session()
    perm = s.get(Permission, permission_id)
    if not perm:
        abort(404)
    payload = _permission_form()
    errors = validate_permission_payload(s, payload, permission=perm)
    if errors:
        for e in errors:
            flash(e, "danger")
        return render_template("admin/permissions/form.html", permission=perm, form=payload, roles=_all_roles()), 400
    try:
        update_permission(s, perm, payload, _current_user())
    except AccessRuleError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("access.permission_edit_get", permission_id=permission_id))
    s.commit()
    flash(f"Permission {perm.key} updated successfully.", "success")
    return redirect(url_for("access.permissions_list"))


@bp.post("/permissions/<int:permission_id>/delete")
@require_permission("permissions.delete")
def permission_delete(permission_id: int):
    s = db_session()
    perm = s.get(Permission, permission_id)
    if not perm:
        abort(404)
    key = perm.key
    try:
        delete_permission(s, perm, _current_user())
    except AccessRuleError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("access.permissions_list"))
    s.commit()
    flash(f"Permission {key} deleted successfully.", "success")
    return redirect(url_for("access.permissions_list"))
