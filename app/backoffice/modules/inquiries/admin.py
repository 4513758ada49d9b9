from __future__ import annotations

import json
from datetime import datetime

from flask import Blueprint, abort, flash, g, redirect, render_template, request, url_for

from app.backoffice.audit import entity_history, record_event
from app.backoffice.db import db_session
from app.backoffice.models import User
from app.backoffice.modules.inquiries.models import GuestInquiry
from app.backoffice.modules.inquiries.service import (
    CSV_HEADER,
    STATUSES,
    TYPES,
    URGENCIES,
    assign_inquiry,
    bulk_update,
    delete_inquiry,
    export_rows,
    inquiry_stats,
    mark_responded,
    parse_inquiry_filters,
    query_inquiries,
    update_inquiry,
    validate_update_payload,
)
from app.backoffice.rbac import require_permission
from app.backoffice.utils import csv_download, page_urls, paginate, parse_int

bp = Blueprint("inquiries", __name__)

PER_PAGE = 15


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _staff_users():
    return db_session().query(User).filter(User.is_active.is_(True)).order_by(User.email.asc()).all()


def _get_inquiry(inquiry_id: int) -> GuestInquiry:
    inquiry = db_session().get(GuestInquiry, inquiry_id)
    if not inquiry:
        abort(404)
    return inquiry


@bp.get("/inquiries")
@require_permission("inquiries.view")
def inquiries_list():
    s = db_session()
    filters = parse_inquiry_filters(request.args)
    page = parse_int(request.args.get("page"), 1) or 1
    result = paginate(query_inquiries(s, filters), page=page, per_page=PER_PAGE)
    export_params = {k: v for k, v in filters.items() if v}
    return render_template(
        "admin/inquiries/list.html",
        result=result,
        filters=filters,
        stats=inquiry_stats(s),
        staff=_staff_users(),
        types=TYPES,
        statuses=STATUSES,
        urgencies=URGENCIES,
        export_url=url_for("inquiries.inquiries_export", **export_params),
        **page_urls("inquiries.inquiries_list", result, filters),
    )


@bp.get("/inquiries/export")
@require_permission("inquiries.export")
def inquiries_export():
    s = db_session()
    filters = parse_inquiry_filters(request.args)
    inquiries = query_inquiries(s, filters).all()

    record_event(
        s,
        actor=_current_user(),
        action="inquiry.export",
        entity_type="GuestInquiry",
        entity_id="export",
        metadata={"filters": {k: v for k, v in filters.items() if v}, "row_count": len(inquiries)},
    )
    s.commit()

    filename = f"guest_inquiries_{datetime.utcnow().strftime('%Y-%m-%d_%H-%M-%S')}.csv"
    return csv_download(CSV_HEADER, export_rows(inquiries), filename)


@bp.get("/inquiries/<int:inquiry_id>")
@require_permission("inquiries.view")
def inquiry_detail(inquiry_id: int):
    inquiry = _get_inquiry(inquiry_id)
    meta = json.loads(inquiry.metadata_json) if inquiry.metadata_json else {}
    return render_template(
        "admin/inquiries/detail.html",
        inquiry=inquiry,
        meta=meta,
        staff=_staff_users(),
        statuses=STATUSES,
        history=entity_history(db_session(), "GuestInquiry", inquiry.id),
    )


@bp.post("/inquiries/<int:inquiry_id>/update")
@require_permission("inquiries.edit")
def inquiry_update(inquiry_id: int):
    s = db_session()
    inquiry = _get_inquiry(inquiry_id)
    payload = {
        "status": request.form.get("status"),
        "assigned_to": request.form.get("assigned_to"),
        "internal_notes": request.form.get("internal_notes"),
    }
    errors = validate_update_payload(s, payload)
    if errors:
        for e in errors:
            flash(e, "danger")
        return redirect(url_for("inquiries.inquiry_detail", inquiry_id=inquiry_id))

    update_inquiry(s, inquiry, payload, _current_user())
    s.commit()
    flash("Inquiry updated successfully.", "success")
    return redirect(url_for("inquiries.inquiry_detail", inquiry_id=inquiry_id))


@bp.post("/inquiries/<int:inquiry_id>/assign")
@require_permission("inquiries.edit")
def inquiry_assign(inquiry_id: int):
    s = db_session()
    inquiry = _get_inquiry(inquiry_id)
    u = _current_user()
    raw = (request.form.get("user_id") or "").strip()
    # No explicit assignee means "assign to me".
    assignee = s.get(User, int(raw)) if raw.isdigit() else (u if not raw else None)
    if not assignee:
        flash("Selected assignee does not exist.", "danger")
        return redirect(url_for("inquiries.inquiry_detail", inquiry_id=inquiry_id))
    assign_inquiry(s, inquiry, assignee, u)
    s.commit()
    flash(f"Inquiry assigned to {assignee.display_name}.", "success")
    return redirect(url_for("inquiries.inquiry_detail", inquiry_id=inquiry_id))


@bp.post("/inquiries/<int:inquiry_id>/responded")
@require_permission("inquiries.edit")
def inquiry_mark_responded(inquiry_id: int):
    s = db_session()
    inquiry = _get_inquiry(inquiry_id)
    mark_responded(s, inquiry, _current_user())
    s.commit()
    flash("Inquiry marked as responded.", "success")
    return redirect(url_for("inquiries.inquiry_detail", inquiry_id=inquiry_id))


@bp.post("/inquiries/<int:inquiry_id>/delete")
@require_permission("inquiries.delete")
def inquiry_delete(inquiry_id: int):
    s = db_session()
    inquiry = _get_inquiry(inquiry_id)
    delete_inquiry(s, inquiry, _current_user())
    s.commit()
    flash("Inquiry deleted successfully.", "success")
    return redirect(url_for("inquiries.inquiries_list"))


@bp.post("/inquiries/bulk")
@require_permission("inquiries.edit")
def inquiries_bulk():
    from app.backoffice.rbac import user_has_permission

    s = db_session()
    u = _current_user()
    action = (request.form.get("action") or "").strip()
    if action == "delete" and not user_has_permission(u, "inquiries.delete"):
        g.missing_permission = "inquiries.delete"
        abort(403)

    ids = [i for i in (parse_int(v) for v in request.form.getlist("ids")) if i]
    value = (request.form.get("value") or "").strip() or None
    try:
        count = bulk_update(s, ids, action, value, u)
    except ValueError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("inquiries.inquiries_list"))
    s.commit()
    flash(f"{count} inquiry(ies) updated successfully.", "success")
    return redirect(url_for("inquiries.inquiries_list"))
