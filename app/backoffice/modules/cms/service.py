from __future__ import annotations

from collections import defaultdict
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import func

from app.backoffice.audit import record_event
from app.backoffice.modules.cms.models import Menu, MenuItem
from app.backoffice.rbac import user_has_permission
from app.backoffice.utils import clean, parse_int, slugify

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

    from app.backoffice.models import User

LOCATIONS: dict[str, str] = {
    "header": "Header Navigation",
    "footer": "Footer Navigation",
    "sidebar": "Sidebar Navigation",
    "mobile": "Mobile Navigation",
    "breadcrumb": "Breadcrumb Navigation",
}
TARGETS = ("_self", "_blank", "_parent", "_top")


class MenuRuleError(ValueError):
    pass


def _truthy(raw: Any) -> bool:
    return raw in (True, "1", "on", "true", "yes")


def unique_menu_slug(s: "Session", name: str, menu: Menu | None = None) -> str:
    """slugify(name), then name-1, name-2 ... until unused by another menu."""
    base = slugify(name) or "menu"
    slug = base
    n = 1
    while True:
        q = s.query(Menu.id).filter(Menu.slug == slug)
        if menu is not None and menu.id is not None:
            q = q.filter(Menu.id != menu.id)
        if not q.first():
            return slug
        slug = f"{base}-{n}"
        n += 1


# ============================================================================
# MENUS
# ============================================================================


def validate_menu_payload(payload: dict) -> list[str]:
    errors: list[str] = []
    name = clean(payload.get("name"))
    if not name:
        errors.append("Name is required.")
    elif len(name) > 255:
        errors.append("Name must be at most 255 characters.")
    if payload.get("location") not in LOCATIONS:
        errors.append(f"Location must be one of: {', '.join(LOCATIONS)}.")
    return errors


def create_menu(s: "Session", payload: dict, user: "User") -> Menu:
    name = clean(payload.get("name"))
    menu = Menu(
        name=name,
        slug=unique_menu_slug(s, name),
        description=clean(payload.get("description")),
        location=payload["location"],
        is_active=_truthy(payload.get("is_active", "1")),
        created_by_user_id=user.id,
    )
    s.add(menu)
    s.flush()
    record_event(
        s,
        actor=user,
        action="cms_menu.create",
        entity_type="Menu",
        entity_id=str(menu.id),
        metadata={"slug": menu.slug, "location": menu.location},
    )
    return menu


def update_menu(s: "Session", menu: Menu, payload: dict, actor: "User") -> Menu:
    name = clean(payload.get("name"))
    if name and name != menu.name:
        menu.name = name
        menu.slug = unique_menu_slug(s, name, menu)
    menu.description = clean(payload.get("description"))
    menu.location = payload.get("location") or menu.location
    menu.is_active = _truthy(payload.get("is_active"))
    menu.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=actor,
        action="cms_menu.update",
        entity_type="Menu",
        entity_id=str(menu.id),
        metadata={"slug": menu.slug, "location": menu.location, "is_active": menu.is_active},
    )
    return menu


def delete_menu(s: "Session", menu: Menu, actor: "User") -> None:
    record_event(
        s,
        actor=actor,
        action="cms_menu.delete",
        entity_type="Menu",
        entity_id=str(menu.id),
        metadata={"slug": menu.slug, "items": len(menu.items)},
    )
    s.delete(menu)


# ============================================================================
# ITEMS
# ============================================================================


def _would_cycle(item: MenuItem, new_parent: MenuItem | None) -> bool:
    node = new_parent
    while node is not None:
        if node.id == item.id:
            return True
        node = node.parent
    return False


def validate_item_payload(s: "Session", menu: Menu, payload: dict, item: MenuItem | None = None) -> list[str]:
    errors: list[str] = []
    title = clean(payload.get("title"))
    if not title:
        errors.append("Title is required.")
    elif len(title) > 255:
        errors.append("Title must be at most 255 characters.")
    url = clean(payload.get("url")) or ""
    if len(url) > 500:
        errors.append("URL must be at most 500 characters.")
    if (payload.get("target") or "_self") not in TARGETS:
        errors.append(f"Target must be one of: {', '.join(TARGETS)}.")

    parent_id = parse_int(payload.get("parent_id"))
    if parent_id is not None:
        parent = s.get(MenuItem, parent_id)
        if parent is None or parent.menu_id != menu.id:
            errors.append("Parent item must belong to the same menu.")
        elif item is not None and _would_cycle(item, parent):
            errors.append("An item cannot be moved under itself or one of its children.")
    return errors


def _siblings(s: "Session", menu_id: int, parent_id: int | None):
    q = s.query(MenuItem).filter(MenuItem.menu_id == menu_id)
    return q.filter(MenuItem.parent_id.is_(None)) if parent_id is None else q.filter(MenuItem.parent_id == parent_id)


def _next_sort_order(s: "Session", menu: Menu, parent_id: int | None) -> int:
    current = _siblings(s, menu.id, parent_id).with_entities(func.max(MenuItem.sort_order)).scalar()
    return (current or 0) + 1


def _permission_keys(raw: Any) -> list[str] | None:
    if raw is None:
        return None
    if isinstance(raw, str):
        raw = raw.replace("\n", ",").split(",")
    keys = [k.strip() for k in raw if k and k.strip()]
    return keys or None


def add_item(s: "Session", menu: Menu, payload: dict, actor: "User") -> MenuItem:
    parent_id = parse_int(payload.get("parent_id"))
    sort_order = parse_int(payload.get("sort_order"))
    item = MenuItem(
        menu=menu,
        parent_id=parent_id,
        title=clean(payload.get("title")),
        url=clean(payload.get("url")),
        target=payload.get("target") or "_self",
        icon=clean(payload.get("icon")),
        css_class=clean(payload.get("css_class")),
        sort_order=sort_order if sort_order is not None else _next_sort_order(s, menu, parent_id),
        is_active=_truthy(payload.get("is_active", "1")),
        require_auth=_truthy(payload.get("require_auth")),
        permissions=_permission_keys(payload.get("permissions")),
    )
    s.add(item)
    s.flush()
    record_event(
        s,
        actor=actor,
        action="cms_menu_item.create",
        entity_type="MenuItem",
        entity_id=str(item.id),
        metadata={"menu_id": menu.id, "title": item.title},
    )
    return item


def update_item(s: "Session", item: MenuItem, payload: dict, actor: "User") -> MenuItem:
    parent_id = parse_int(payload.get("parent_id"))
    if parent_id is not None:
        parent = s.get(MenuItem, parent_id)
        if parent is None or parent.menu_id != item.menu_id or _would_cycle(item, parent):
            raise MenuRuleError("An item cannot be moved under itself or one of its children.")
    item.parent_id = parent_id
    item.title = clean(payload.get("title")) or item.title
    item.url = clean(payload.get("url"))
    item.target = payload.get("target") or "_self"
    item.icon = clean(payload.get("icon"))
    item.css_class = clean(payload.get("css_class"))
    sort_order = parse_int(payload.get("sort_order"))
    if sort_order is not None:
        item.sort_order = sort_order
    item.is_active = _truthy(payload.get("is_active"))
    item.require_auth = _truthy(payload.get("require_auth"))
    item.permissions = _permission_keys(payload.get("permissions"))
    item.updated_at = datetime.utcnow()
    record_event(s, actor=actor, action="cms_menu_item.update", entity_type="MenuItem", entity_id=str(item.id))
    return item


def delete_item(s: "Session", item: MenuItem, actor: "User") -> None:
    """Children move up to the deleted item's parent."""
    for child in s.query(MenuItem).filter(MenuItem.parent_id == item.id).all():
        child.parent_id = item.parent_id
    record_event(
        s,
        actor=actor,
        action="cms_menu_item.delete",
        entity_type="MenuItem",
        entity_id=str(item.id),
        metadata={"menu_id": item.menu_id, "title": item.title},
    )
    item.menu.items.remove(item)
    s.delete(item)


def _shift(s: "Session", item: MenuItem, parent_id: int | None, delta: int, low: int, high: int | None = None) -> None:
    q = _siblings(s, item.menu_id, parent_id).filter(MenuItem.id != item.id, MenuItem.sort_order >= low)
    if high is not None:
        q = q.filter(MenuItem.sort_order <= high)
    q.update({MenuItem.sort_order: MenuItem.sort_order + delta}, synchronize_session="fetch")


def move_item(s: "Session", item: MenuItem, parent_id: Any, sort_order: Any, actor: "User") -> MenuItem:
    """
    Place item at sort_order under parent_id, renumbering siblings so positions stay distinct.

    Leaving a parent closes the gap behind the item; entering one opens a slot at the
    target position. Within the same parent only the range between the two positions shifts.
    """
    new_parent_id = parse_int(parent_id)
    new_parent = s.get(MenuItem, new_parent_id) if new_parent_id is not None else None
    if new_parent_id is not None and (new_parent is None or new_parent.menu_id != item.menu_id):
        raise MenuRuleError("Parent item must belong to the same menu.")
    if _would_cycle(item, new_parent):
        raise MenuRuleError("An item cannot be moved under itself or one of its children.")
    order = parse_int(sort_order)
    if order is not None and order < 0:
        raise MenuRuleError("Sort order must be zero or greater.")

    old_parent_id, old_order = item.parent_id, item.sort_order
    if new_parent_id != old_parent_id:
        if order is None:
            order = _next_sort_order(s, item.menu, new_parent_id)
        _shift(s, item, old_parent_id, -1, old_order + 1)
        _shift(s, item, new_parent_id, 1, order)
    elif order is None:
        order = old_order
    elif order > old_order:
        _shift(s, item, old_parent_id, -1, old_order + 1, order)
    elif order < old_order:
        _shift(s, item, old_parent_id, 1, order, old_order - 1)

    item.parent_id = new_parent_id
    item.sort_order = order
    item.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=actor,
        action="cms_menu_item.move",
        entity_type="MenuItem",
        entity_id=str(item.id),
        metadata={"parent_id": new_parent_id, "sort_order": item.sort_order},
    )
    return item


# ============================================================================
# STRUCTURE
# ============================================================================


def item_visible_to(item: MenuItem, viewer: "User | None") -> bool:
    if not item.is_active:
        return False
    if item.require_auth and viewer is None:
        return False
    if item.permissions:
        # any one of the listed keys grants access
        return any(user_has_permission(viewer, key) for key in item.permissions)
    return True


def menu_structure(menu: Menu, viewer: "User | None" = None, *, include_hidden: bool = False) -> list[dict[str, Any]]:
    """
    Nested items ordered by sort_order. Unless include_hidden, items the viewer may not see
    are dropped together with their children.
    """
    children: dict[int | None, list[MenuItem]] = defaultdict(list)
    for item in sorted(menu.items, key=lambda i: (i.sort_order, i.id)):
        children[item.parent_id].append(item)

    def build(parent_id: int | None, seen: frozenset[int]) -> list[dict[str, Any]]:
        out = []
        for item in children.get(parent_id, []):
            if item.id in seen:
                continue
            if not include_hidden and not item_visible_to(item, viewer):
                continue
            out.append(item.to_dict(build(item.id, seen | {item.id})))
        return out

    return build(None, frozenset())


def active_menu_for_location(s: "Session", location: str) -> Menu | None:
    return (
        s.query(Menu)
        .filter(Menu.location == location, Menu.is_active.is_(True))
        .order_by(Menu.updated_at.desc(), Menu.id.desc())
        .first()
    )
