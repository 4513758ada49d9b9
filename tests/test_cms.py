"""Navigation menus: admin editing and the public menu feed."""
import pytest

from app.backoffice.db import session_scope
from app.backoffice.models import User
from app.backoffice.modules.cms.models import Menu, MenuItem
from app.backoffice.modules.cms.service import (
    MenuRuleError,
    add_item,
    create_menu,
    menu_structure,
    move_item,
    unique_menu_slug,
    validate_item_payload,
)

from conftest import login, post


def _admin(s):
    return s.query(User).filter(User.email == "admin@example.com").one()


def _header_menu(app) -> int:
    """Header menu: Home, Products > (Widgets, Members only), Hidden."""
    with session_scope(app) as s:
        admin = _admin(s)
        menu = create_menu(s, {"name": "Main Menu", "location": "header"}, admin)
        add_item(s, menu, {"title": "Home", "url": "/"}, admin)
        products = add_item(s, menu, {"title": "Products"}, admin)
        add_item(s, menu, {"title": "Widgets", "url": "/widgets", "parent_id": str(products.id)}, admin)
        add_item(
            s,
            menu,
            {"title": "Members only", "url": "/members", "parent_id": str(products.id), "require_auth": "1"},
            admin,
        )
        add_item(s, menu, {"title": "Hidden", "url": "/hidden", "is_active": "0"}, admin)
        return menu.id


def test_unique_menu_slug(app):
    with session_scope(app) as s:
        admin = _admin(s)
        first = create_menu(s, {"name": "Main Menu", "location": "header"}, admin)
        second = create_menu(s, {"name": "Main Menu", "location": "footer"}, admin)
        third = create_menu(s, {"name": "Main Menu", "location": "sidebar"}, admin)
        assert [first.slug, second.slug, third.slug] == ["main-menu", "main-menu-1", "main-menu-2"]
        # a menu keeps its own slug when renamed to the same name
        assert unique_menu_slug(s, "Main Menu", first) == "main-menu"


def test_menu_routes(client, app):
    login(client)
    r = post(client, "/admin/cms/menus/new", data={"name": "Footer Links", "location": "footer"}, follow_redirects=True)
    assert b"Footer Links" in r.data

    r = post(client, "/admin/cms/menus/new", data={"name": "", "location": "ceiling"})
    assert r.status_code == 400
    assert b"Name is required." in r.data
    assert b"Location must be one of" in r.data

    with session_scope(app) as s:
        menu_id = s.query(Menu).filter(Menu.slug == "footer-links").one().id
    r = client.get("/admin/cms/menus?location=footer")
    assert b"Footer Links" in r.data

    r = post(
        client,
        f"/admin/cms/menus/{menu_id}/edit",
        data={"name": "Legal Links", "location": "footer", "is_active": "1"},
        follow_redirects=True,
    )
    assert b"Menu updated successfully." in r.data
    with session_scope(app) as s:
        assert s.get(Menu, menu_id).slug == "legal-links"

    r = post(client, f"/admin/cms/menus/{menu_id}/delete", follow_redirects=True)
    assert b"Menu deleted successfully." in r.data


def test_item_add_route_and_validation(client, app):
    menu_id = _header_menu(app)
    login(client)
    r = post(client, f"/admin/cms/menus/{menu_id}/items", data={"title": "Contact", "url": "/contact"}, follow_redirects=True)
    assert r.status_code == 200
    assert b"Contact" in r.data

    r = post(client, f"/admin/cms/menus/{menu_id}/items", data={"title": "", "target": "_window"})
    assert r.status_code == 400
    assert b"Title is required." in r.data
    assert b"Target must be one of" in r.data

    with session_scope(app) as s:
        contact = s.query(MenuItem).filter(MenuItem.title == "Contact").one()
        # top level already holds Home, Products and Hidden at 1..3
        assert contact.sort_order == 4
        assert contact.target == "_self"


def test_move_item_rejects_cycles(app):
    menu_id = _header_menu(app)
    with session_scope(app) as s:
        admin = _admin(s)
        products = s.query(MenuItem).filter(MenuItem.title == "Products").one()
        widgets = s.query(MenuItem).filter(MenuItem.title == "Widgets").one()
        with pytest.raises(MenuRuleError):
            move_item(s, products, widgets.id, None, admin)
        with pytest.raises(MenuRuleError):
            move_item(s, products, products.id, None, admin)

        errors = validate_item_payload(s, s.get(Menu, menu_id), {"title": "Products", "parent_id": str(widgets.id)}, products)
        assert "An item cannot be moved under itself or one of its children." in errors

        move_item(s, widgets, None, "0", admin)
        assert widgets.parent_id is None
        assert widgets.sort_order == 0


def test_move_to_front_renumbers_siblings(app):
    with session_scope(app) as s:
        admin = _admin(s)
        menu = create_menu(s, {"name": "Footer", "location": "footer"}, admin)
        a, b, c = (add_item(s, menu, {"title": t}, admin) for t in ("A", "B", "C"))
        assert [a.sort_order, b.sort_order, c.sort_order] == [1, 2, 3]

        move_item(s, c, "", "0", admin)
        assert [i["title"] for i in menu_structure(menu)] == ["C", "A", "B"]
        assert [c.sort_order, a.sort_order, b.sort_order] == [0, 2, 3]

        # moving down only shifts the items it passes
        move_item(s, c, "", "3", admin)
        assert [i["title"] for i in menu_structure(menu)] == ["A", "B", "C"]
        assert [a.sort_order, b.sort_order, c.sort_order] == [1, 2, 3]


def test_move_across_parents_closes_and_opens_gaps(app):
    menu_id = _header_menu(app)
    with session_scope(app) as s:
        admin = _admin(s)
        menu = s.get(Menu, menu_id)
        widgets = s.query(MenuItem).filter(MenuItem.title == "Widgets").one()
        move_item(s, widgets, None, "2", admin)

        structure = menu_structure(menu, include_hidden=True)
        assert [i["title"] for i in structure] == ["Home", "Widgets", "Products", "Hidden"]
        products = structure[2]
        assert [c["title"] for c in products["children"]] == ["Members only"]
        members = s.query(MenuItem).filter(MenuItem.title == "Members only").one()
        assert members.sort_order == 1

        with pytest.raises(MenuRuleError):
            move_item(s, widgets, None, "-1", admin)


def test_move_item_json(client, app):
    menu_id = _header_menu(app)
    with session_scope(app) as s:
        products_id = s.query(MenuItem).filter(MenuItem.title == "Products").one().id
        widgets_id = s.query(MenuItem).filter(MenuItem.title == "Widgets").one().id
    login(client)
    r = post(
        client,
        f"/admin/cms/menus/{menu_id}/items/{products_id}/move",
        data={"parent_id": str(widgets_id)},
        headers={"Accept": "application/json"},
    )
    assert r.status_code == 400
    assert r.json["success"] is False

    r = post(
        client,
        f"/admin/cms/menus/{menu_id}/items/{widgets_id}/move",
        data={"parent_id": "", "sort_order": "5"},
        headers={"Accept": "application/json"},
    )
    assert r.json == {"success": True, "message": "Menu item moved successfully."}


def test_delete_item_promotes_children(client, app):
    menu_id = _header_menu(app)
    with session_scope(app) as s:
        products_id = s.query(MenuItem).filter(MenuItem.title == "Products").one().id
    login(client)
    r = post(client, f"/admin/cms/menus/{menu_id}/items/{products_id}/delete", follow_redirects=True)
    assert b"Menu item deleted successfully." in r.data
    with session_scope(app) as s:
        widgets = s.query(MenuItem).filter(MenuItem.title == "Widgets").one()
        assert widgets.parent_id is None


def test_menu_structure_visibility(app):
    menu_id = _header_menu(app)
    with session_scope(app) as s:
        menu = s.get(Menu, menu_id)
        anonymous = menu_structure(menu)
        assert [i["title"] for i in anonymous] == ["Home", "Products"]
        assert [c["title"] for c in anonymous[1]["children"]] == ["Widgets"]
        assert anonymous[1]["url"] == "#"

        signed_in = menu_structure(menu, _admin(s))
        assert [c["title"] for c in signed_in[1]["children"]] == ["Widgets", "Members only"]

        everything = menu_structure(menu, include_hidden=True)
        assert [i["title"] for i in everything] == ["Home", "Products", "Hidden"]


def test_permission_gated_item(app):
    menu_id = _header_menu(app)
    with session_scope(app) as s:
        admin = _admin(s)
        staff = s.query(User).filter(User.email == "staff@example.com").one()
        menu = s.get(Menu, menu_id)
        add_item(s, menu, {"title": "Users", "url": "/admin/users", "permissions": "users.view"}, admin)
        assert "Users" in [i["title"] for i in menu_structure(menu, admin)]
        assert "Users" not in [i["title"] for i in menu_structure(menu, staff)]

        # any one listed permission is enough
        add_item(s, menu, {"title": "Support", "url": "/admin/chat", "permissions": "users.view, chat.view"}, admin)
        assert "Support" in [i["title"] for i in menu_structure(menu, staff)]


def test_public_menu_feed(client, app):
    _header_menu(app)
    r = client.get("/menus/header")
    assert r.status_code == 200
    assert r.json["menu"]["slug"] == "main-menu"
    assert [i["title"] for i in r.json["items"]] == ["Home", "Products"]

    r = client.get("/menus/footer")
    assert r.status_code == 404
    assert r.json["error"] == "No active menu for this location."

    r = client.get("/menus/basement")
    assert r.status_code == 404
    assert "header" in r.json["locations"]


def test_staff_can_view_menus_only(client, app):
    menu_id = _header_menu(app)
    login(client, email="staff@example.com")
    assert client.get(f"/admin/cms/menus/{menu_id}").status_code == 200
    r = post(client, f"/admin/cms/menus/{menu_id}/delete")
    assert r.status_code == 403
