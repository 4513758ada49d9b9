import os
import sys
from pathlib import Path

from werkzeug.security import generate_password_hash

# allow `python scripts/init_db.py` from the repo root
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.backoffice.constants import (  # noqa: E402
    DEFAULT_FINANCE_CATEGORIES,
    DEFAULT_TICKET_CATEGORIES,
    PERMISSIONS,
    SYSTEM_ROLES,
    default_role_permissions,
)
from app.backoffice.models import Permission, Role, User  # noqa: E402
from app.backoffice.rbac import ADMIN_ROLE_KEY  # noqa: E402
from app.backoffice.modules.finance.models import FinanceCategory  # noqa: E402
from app.backoffice.modules.support.models import TicketCategory  # noqa: E402
from app.backoffice.db import script_session  # noqa: E402


def seed_session(s) -> None:
    """Permissions, system roles, default finance and ticket categories. Idempotent."""
    perms: dict[str, Permission] = {}
    for key, name in PERMISSIONS:
        p = s.query(Permission).filter(Permission.key == key).one_or_none()
        if not p:
            p = Permission(key=key, name=name)
            s.add(p)
        perms[key] = p

    for role_key, role_name in SYSTEM_ROLES.items():
        role = s.query(Role).filter(Role.key == role_key).one_or_none()
        if not role:
            role = Role(key=role_key, name=role_name)
            s.add(role)
        for key in default_role_permissions(role_key):
            if perms[key] not in role.permissions:
                role.permissions.append(perms[key])

    if not s.query(FinanceCategory.id).first():
        for name, type_, color in DEFAULT_FINANCE_CATEGORIES:
            s.add(FinanceCategory(name=name, type=type_, color=color, is_active=True))

    if not s.query(TicketCategory.id).first():
        for order, (name, color) in enumerate(DEFAULT_TICKET_CATEGORIES, start=1):
            s.add(TicketCategory(name=name, color=color, is_active=True, sort_order=order))


def ensure_admin(s, email: str, password: str) -> tuple[User, bool]:
    """Give ``email`` the admin role, creating the account if needed.

    An existing account keeps its password.
    """
    admin_role = s.query(Role).filter(Role.key == ADMIN_ROLE_KEY).one()
    user = s.query(User).filter(User.email == email).one_or_none()
    created = user is None
    if created:
        user = User(email=email, name="Administrator", password_hash=generate_password_hash(password), is_active=True)
        s.add(user)
    if admin_role not in user.roles:
        user.roles.append(admin_role)
    return user, created


def seed_only(*, database_url: str | None = None) -> None:
    """Seed RBAC, finance categories and the first admin without touching existing passwords."""
    email = (os.environ.get("ADMIN_EMAIL") or "admin@example.com").strip().lower()
    password = os.environ.get("ADMIN_PASSWORD") or "change-me"
    url = (database_url or os.environ.get("DATABASE_URL") or "sqlite:///backoffice.db").strip()

    # plain engine so release can seed before the web app is importable
    with script_session(url) as s:
        seed_session(s)
        s.flush()
        _, created = ensure_admin(s, email, password)

    state = "created" if created else "already present, password unchanged"
    print(f"[seed] {len(PERMISSIONS)} permissions, {len(SYSTEM_ROLES)} roles; admin {email} {state}", flush=True)


if __name__ == "__main__":
    seed_only()
