from __future__ import annotations

from flask import Blueprint, abort, flash, g, jsonify, redirect, render_template, request, url_for

from app.backoffice.db import db_session
from app.backoffice.models import User
from app.backoffice.modules.cms.models import Menu, MenuItem
from app.backoffice.modules.cms.service import (
    LOCATIONS,
    TARGETS,
    MenuRuleError,
    active_menu_for_location,
    add_item,
    create_menu,
    delete_item,
    delete_menu,
    menu_structure,
    move_item,
    update_item,
    update_menu,
    validate_item_payload,
    validate_menu_payload,
)
from app.backoffice.rbac import require_permission
from app.backoffice.utils import page_urls, paginate, parse_int

bp = Blueprint("cms", __name__)
public_bp = Blueprint("menus", __name__)

PER_PAGE = 15


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _get_menu(menu_id: int) -> Menu:
    menu = db_session().get(Menu, menu_id)
    if not menu:
        abort(404)
    return menu


def _get_item(menu: Menu, item_id: int) -> MenuItem:
    item = db_session().get(MenuItem, item_id)
    if not item or item.menu_id != menu.id:
        abort(404)
    return item


def _item_form(item: MenuItem) -> dict:
    return {
        "title": item.title,
        "url": item.url or "",
        "target": item.target,
        "icon": item.icon or "",
        "css_class": item.css_class or "",
        "parent_id": item.parent_id or "",
        "sort_order": item.sort_order,
        "is_active": "1" if item.is_active else "",
        "require_auth": "1" if item.require_auth else "",
        "permissions": ", ".join(item.permissions or []),
    }


def _menu_detail(menu: Menu, *, item_form: dict | None = None, status: int = 200):
    ctx = {
        "menu": menu,
        "tree": menu_structure(menu, include_hidden=True),
        "items_by_id": {i.id: i for i in menu.items},
        "item_form": item_form or {"target": "_self", "is_active": "1"},
        "targets": TARGETS,
        "locations": LOCATIONS,
    }
    return render_template("admin/cms/menus/detail.html", **ctx), status


# ============================================================================
# MENUS
# ============================================================================


@bp.get("/menus")
@require_permission("cms_menus.view")
def menus_list():
    s = db_session()
    filters = {
        "q": (request.args.get("q") or "").strip(),
        "location": (request.args.get("location") or "").strip(),
    }
    q = s.query(Menu)
    if filters["q"]:
        q = q.filter(Menu.name.ilike(f"%{filters['q']}%"))
    if filters["location"] in LOCATIONS:
        q = q.filter(Menu.location == filters["location"])
    page = parse_int(request.args.get("page"), 1) or 1
    result = paginate(q.order_by(Menu.location.asc(), Menu.name.asc()), page=page, per_page=PER_PAGE)
    return render_template(
        "admin/cms/menus/list.html",
        result=result,
        filters=filters,
        locations=LOCATIONS,
        **page_urls("cms.menus_list", result, filters),
    )


@bp.get("/menus/new")
@require_permission("cms_menus.create")
def menus_new_get():
    return render_template(
        "admin/cms/menus/form.html", menu=None, form={"location": "header", "is_active": "1"}, locations=LOCATIONS
    )


@bp.post("/menus/new")
@require_permission("cms_menus.create")
def menus_new_post():
    s = db_session()
    payload = request.form.to_dict()
    errors = validate_menu_payload(payload)
    if errors:
        for e in errors:
            flash(e, "danger")
        return render_template("admin/cms/menus/form.html", menu=None, form=payload, locations=LOCATIONS), 400
    menu = create_menu(s, payload, _current_user())
    s.commit()
    flash(f"Menu '{menu.name}' created.", "success")
    return redirect(url_for("cms.menu_detail", menu_id=menu.id))


@bp.get("/menus/<int:menu_id>")
@require_permission("cms_menus.view")
def menu_detail(menu_id: int):
    return _menu_detail(_get_menu(menu_id))


@bp.get("/menus/<int:menu_id>/edit")
@require_permission("cms_menus.edit")
def menu_edit_get(menu_id: int):
    menu = _get_menu(menu_id)
    form = {
        "name": menu.name,
        "description": menu.description or "",
        "location": menu.location,
        "is_active": "1" if menu.is_active else "",
    }
    return render_template("admin/cms/menus/form.html", menu=menu, form=form, locations=LOCATIONS)


@bp.post("/menus/<int:menu_id>/edit")
@require_permission("cms_menus.edit")
def menu_edit_post(menu_id: int):
    s = db_session()
    menu = _get_menu(menu_id)
    payload = request.form.to_dict()
    errors = validate_menu_payload(payload)
    if errors:
        for e in errors:
            flash(e, "danger")
        return render_template("admin/cms/menus/form.html", menu=menu, form=payload, locations=LOCATIONS), 400
    update_menu(s, menu, payload, _current_user())
    s.commit()
    flash("Menu updated successfully.", "success")
    return redirect(url_for("cms.menu_detail", menu_id=menu.id))


@bp.post("/menus/<int:menu_id>/delete")
@require_permission("cms_menus.delete")
def menu_delete(menu_id: int):
    s = db_session()
    delete_menu(s, _get_menu(menu_id), _current_user())
    s.commit()
    flash("Menu deleted successfully.", "success")
    return redirect(url_for("cms.menus_list"))


# ============================================================================
# ITEMS
# ============================================================================


@bp.post("/menus/<int:menu_id>/items")
@require_permission("cms_menus.edit")
def item_add(menu_id: int):
    s = db_session()
    menu = _get_menu(menu_id)
    payload = request.form.to_dict()
    errors = validate_item_payload(s, menu, payload)
    if errors:
        for e in errors:
            flash(e, "danger")
        return _menu_detail(menu, item_form=payload, status=400)
    item = add_item(s, menu, payload, _current_user())
    s.commit()
    flash(f"Menu item '{item.title}' added.", "success")
    return redirect(url_for("cms.menu_detail", menu_id=menu.id))


@bp.get("/menus/<int:menu_id>/items/<int:item_id>/edit")
@require_permission("cms_menus.edit")
def item_edit_get(menu_id: int, item_id: int):
    menu = _get_menu(menu_id)
    item = _get_item(menu, item_id)
    return render_template(
        "admin/cms/menus/item_form.html",
        menu=menu,
        item=item,
        form=_item_form(item),
        parents=[i for i in menu.items if i.id != item.id],
        targets=TARGETS,
    )


@bp.post("/menus/<int:menu_id>/items/<int:item_id>/edit")
@require_permission("cms_menus.edit")
def item_edit_post(menu_id: int, item_id: int):
    s = db_session()
    menu = _get_menu(menu_id)
    item = _get_item(menu, item_id)
    payload = request.form.to_dict()
    errors = validate_item_payload(s, menu, payload, item=item)
    if not errors:
        try:
            update_item(s, item, payload, _current_user())
        except MenuRuleError as e:
            errors = [str(e)]
    if errors:
        for e in errors:
            flash(e, "danger")
        return (
            render_template(
                "admin/cms/menus/item_form.html",
                menu=menu,
                item=item,
                form=payload,
                parents=[i for i in menu.items if i.id != item.id],
                targets=TARGETS,
            ),
            400,
        )
    s.commit()
    flash("Menu item updated successfully.", "success")
    return redirect(url_for("cms.menu_detail", menu_id=menu.id))


@bp.post("/menus/<int:menu_id>/items/<int:item_id>/delete")
@require_permission("cms_menus.edit")
def item_delete(menu_id: int, item_id: int):
    s = db_session()
    menu = _get_menu(menu_id)
    delete_item(s, _get_item(menu, item_id), _current_user())
    s.commit()
    flash("Menu item deleted successfully.", "success")
    return redirect(url_for("cms.menu_detail", menu_id=menu.id))


@bp.post("/menus/<int:menu_id>/items/<int:item_id>/move")
@require_permission("cms_menus.edit")
def item_move(menu_id: int, item_id: int):
    s = db_session()
    menu = _get_menu(menu_id)
    item = _get_item(menu, item_id)
    try:
        move_item(s, item, request.form.get("parent_id"), request.form.get("sort_order"), _current_user())
    except MenuRuleError as e:
        if request.is_json or request.accept_mimetypes.best == "application/json":
            return jsonify({"success": False, "message": str(e)}), 400
        flash(str(e), "danger")
        return redirect(url_for("cms.menu_detail", menu_id=menu.id))
    s.commit()
    if request.is_json or request.accept_mimetypes.best == "application/json":
        return jsonify({"success": True, "message": "Menu item moved successfully."})
    flash("Menu item moved successfully.", "success")
    return redirect(url_for("cms.menu_detail", menu_id=menu.id))


# ============================================================================
# PUBLIC
# ============================================================================


@public_bp.get("/menus/<location>")
def menu_for_location(location: str):
    if location not in LOCATIONS:
        return jsonify({"error": "Unknown menu location.", "locations": list(LOCATIONS)}), 404
    menu = active_menu_for_location(db_session(), location)
    if menu is None:
        return jsonify({"error": "No active menu for this location."}), 404
    viewer = getattr(g, "current_user", None)
    return jsonify(
        {
            "menu": {"id": menu.id, "name": menu.name, "slug": menu.slug, "location": menu.location},
            "items": menu_structure(menu, viewer),
        }
    )
