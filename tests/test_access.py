"""Users, roles and permissions administration."""
import pytest

from app.backoffice.db import session_scope
from app.backoffice.models import Permission, Role, User
from app.backoffice.modules.access.permissions import group_by_module, parse_permission_name
from app.backoffice.modules.access.service import AccessRuleError, update_role

from conftest import login, post, user_id


def _role_id(app, key):
    with session_scope(app) as s:
        return s.query(Role).filter(Role.key == key).one().id


def test_users_list_ok(client):
    login(client)
    r = client.get("/admin/users")
    assert r.status_code == 200
    assert b"admin@example.com" in r.data
    assert b"Showing" in r.data


def test_users_list_search(client):
    login(client)
    r = client.get("/admin/users?q=staff")
    assert r.status_code == 200
    assert b"staff@example.com" in r.data


def test_user_create(client, app):
    login(client)
    staff_role = _role_id(app, "staff")
    r = post(
        client,
        "/admin/users/new",
        data={
            "name": "New Person",
            "email": "New.Person@Example.com",
            "password": "longenough",
            "password_confirm": "longenough",
            "is_active": "1",
            "role_ids": [str(staff_role)],
        },
    )
    assert r.status_code == 302
    with session_scope(app) as s:
        u = s.query(User).filter(User.email == "new.person@example.com").one()
        assert [r.key for r in u.roles] == ["staff"]


def test_user_create_validation(client):
    login(client)
    r = post(
        client,
        "/admin/users/new",
        data={"name": "", "email": "admin@example.com", "password": "short", "password_confirm": "short"},
    )
    assert r.status_code == 400
    assert b"Name is required." in r.data
    assert b"already exists" in r.data
    assert b"at least 8 characters" in r.data


def test_cannot_delete_self(client, app):
    login(client)
    admin_id = user_id(app, "admin@example.com")
    r = post(client, f"/admin/users/{admin_id}/delete", follow_redirects=True)
    assert b"You cannot delete your own account." in r.data
    with session_scope(app) as s:
        assert s.get(User, admin_id) is not None


def test_cannot_delete_last_admin(client, app):
    with session_scope(app) as s:
        staff_role = s.query(Role).filter(Role.key == "staff").one()
        for key in ("users.view", "users.delete"):
            staff_role.permissions.append(s.query(Permission).filter(Permission.key == key).one())
    admin_id = user_id(app, "admin@example.com")

    login(client, email="staff@example.com")
    r = post(client, f"/admin/users/{admin_id}/delete", follow_redirects=True)
    assert r.status_code == 200
    assert b"Cannot delete the last admin user." in r.data
    with session_scope(app) as s:
        assert s.get(User, admin_id) is not None


def test_cannot_remove_last_admin_role(client, app):
    login(client)
    admin_id = user_id(app, "admin@example.com")
    r = post(
        client,
        f"/admin/users/{admin_id}/edit",
        data={"name": "Admin", "email": "admin@example.com", "is_active": "1", "role_ids": []},
        follow_redirects=True,
    )
    assert b"last admin user" in r.data
    with session_scope(app) as s:
        assert s.get(User, admin_id).has_role("admin")


def test_delete_other_user(client, app):
    login(client)
    staff_id = user_id(app, "staff@example.com")
    r = post(client, f"/admin/users/{staff_id}/delete")
    assert r.status_code == 302
    with session_scope(app) as s:
        assert s.get(User, staff_id) is None


def test_role_create_and_system_role_protected(client, app):
    login(client)
    with session_scope(app) as s:
        perm_id = s.query(Permission).filter(Permission.key == "projects.view").one().id
    r = post(
        client,
        "/admin/roles/new",
        data={
            "key": "auditor",
            "name": "Auditor",
            "permissions_submitted": "1",
            "permission_ids": [str(perm_id)],
        },
    )
    assert r.status_code == 302
    with session_scope(app) as s:
        role = s.query(Role).filter(Role.key == "auditor").one()
        assert [p.key for p in role.permissions] == ["projects.view"]

    r = post(client, f"/admin/roles/{_role_id(app, 'manager')}/delete", follow_redirects=True)
    assert b"cannot be deleted" in r.data


def test_role_duplicate_key_rejected(client):
    login(client)
    r = post(client, "/admin/roles/new", data={"key": "staff", "name": "Another staff"})
    assert r.status_code == 400
    assert b"already exists" in r.data


def test_permission_matrix_update(client, app):
    login(client)
    customer_id = _role_id(app, "customer")
    with session_scope(app) as s:
        pid = s.query(Permission).filter(Permission.key == "chat.view").one().id
    r = post(
        client,
        "/admin/roles/matrix",
        data={"role_ids": [str(customer_id)], f"perm_{customer_id}": [str(pid)]},
        follow_redirects=True,
    )
    assert b"1 role(s) changed" in r.data
    with session_scope(app) as s:
        assert [p.key for p in s.get(Role, customer_id).permissions] == ["chat.view"]


def test_non_admin_cannot_change_admin_role_permissions(app):
    with session_scope(app) as s:
        admin_role = s.query(Role).filter(Role.key == "admin").one()
        staff = s.query(User).filter(User.email == "staff@example.com").one()
        with pytest.raises(AccessRuleError):
            update_role(s, admin_role, {"name": "Administrator", "permission_ids": []}, staff)
        # renaming alone is allowed
        update_role(s, admin_role, {"name": "Admins"}, staff)
        assert admin_role.name == "Admins"


def test_bulk_assign_roles(client, app):
    login(client)
    staff_id = user_id(app, "staff@example.com")
    manager_id = _role_id(app, "manager")
    r = post(
        client,
        "/admin/roles/assign-users",
        data={"user_ids": [str(staff_id)], "role_ids": [str(manager_id)], "action": "assign"},
        follow_redirects=True,
    )
    assert b"1 user(s) assigned to 1 role(s) successfully." in r.data
    with session_scope(app) as s:
        assert s.get(User, staff_id).has_role("manager")


def test_bulk_remove_last_admin_blocked(client, app):
    login(client)
    admin_id = user_id(app, "admin@example.com")
    r = post(
        client,
        "/admin/roles/assign-users",
        data={"user_ids": [str(admin_id)], "role_ids": [str(_role_id(app, "admin"))], "action": "remove"},
        follow_redirects=True,
    )
    assert b"last admin user" in r.data


def test_permissions_create_and_system_delete_blocked(client, app):
    login(client)
    r = post(client, "/admin/permissions/new", data={"key": "reports.view", "name": "Reports: view"})
    assert r.status_code == 302
    with session_scope(app) as s:
        assert s.query(Permission).filter(Permission.key == "reports.view").one().name == "Reports: view"
        users_view = s.query(Permission).filter(Permission.key == "users.view").one().id
    r = post(client, f"/admin/permissions/{users_view}/delete", follow_redirects=True)
    assert b"cannot be deleted" in r.data


def test_permissions_list_grouped(client):
    login(client)
    r = client.get("/admin/permissions?module=finance")
    assert r.status_code == 200
    assert b"invoices.create" in r.data
    assert b"projects.view" not in r.data


def test_parse_permission_name():
    assert parse_permission_name("invoices.create") == ("finance", "create", "invoices")
    assert parse_permission_name("view users") == ("admin", "view", "users")
    assert parse_permission_name("access customer portal") == ("customer", "access", "customer_portal")
    assert parse_permission_name("something odd") == ("system", "something odd", "something odd")


def test_group_by_module_orders_known_modules_first():
    grouped = group_by_module(["zeta.view", "tasks.view", "users.view", "invoices.view"])
    assert list(grouped) == ["finance", "projects", "admin", "system"]
