from __future__ import annotations

from flask import Blueprint, abort, flash, g, jsonify, redirect, render_template, request, url_for

from app.backoffice.audit import entity_history
from app.backoffice.db import db_session
from app.backoffice.models import User
from app.backoffice.modules.support.models import Ticket, TicketCategory
from app.backoffice.modules.support.service import (
    PRIORITIES,
    TICKET_STATUSES,
    SupportRuleError,
    active_categories,
    add_comment,
    assign_ticket,
    close_ticket,
    create_ticket,
    delete_ticket,
    escalate_ticket,
    query_tickets,
    reopen_ticket,
    ticket_stats,
    update_ticket,
    validate_ticket_payload,
)
from app.backoffice.rbac import require_permission, wants_json
from app.backoffice.utils import page_urls, paginate, parse_int

bp = Blueprint("support", __name__)

PER_PAGE = 15


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _staff_users():
    return db_session().query(User).filter(User.is_active.is_(True)).order_by(User.email.asc()).all()


def _get_ticket(ticket_id: int) -> Ticket:
    ticket = db_session().get(Ticket, ticket_id)
    if not ticket:
        abort(404)
    return ticket


def _payload() -> dict:
    if request.is_json:
        return request.get_json(silent=True) or {}
    return request.form.to_dict()


def _form_context(ticket: Ticket | None, form: dict) -> dict:
    return {
        "ticket": ticket,
        "form": form,
        "staff": _staff_users(),
        "categories": active_categories(db_session()),
        "statuses": TICKET_STATUSES,
        "priorities": PRIORITIES,
    }


def _action_result(ticket: Ticket, message: str, error: SupportRuleError | None = None):
    """JSON for API callers, flash and redirect back to the ticket otherwise."""
    if wants_json():
        if error is not None:
            return jsonify({"success": False, "message": str(error)}), 400
        return jsonify({"success": True, "message": message, "status": ticket.status})
    flash(str(error) if error is not None else message, "danger" if error is not None else "success")
    return redirect(url_for("support.ticket_detail", ticket_id=ticket.id))


@bp.get("/tickets")
@require_permission("tickets.view")
def tickets_list():
    s = db_session()
    filters = {
        "q": (request.args.get("q") or "").strip(),
        "status": (request.args.get("status") or "").strip(),
        "priority": (request.args.get("priority") or "").strip(),
        "category_id": (request.args.get("category_id") or "").strip(),
        "assigned": (request.args.get("assigned") or "").strip(),
        "overdue": (request.args.get("overdue") or "").strip(),
    }
    page = parse_int(request.args.get("page"), 1) or 1
    result = paginate(query_tickets(s, filters), page=page, per_page=PER_PAGE)
    return render_template(
        "admin/support/list.html",
        result=result,
        filters=filters,
        stats=ticket_stats(s),
        categories=s.query(TicketCategory).order_by(TicketCategory.sort_order, TicketCategory.name).all(),
        staff=_staff_users(),
        statuses=TICKET_STATUSES,
        priorities=PRIORITIES,
        **page_urls("support.tickets_list", result, filters),
    )


@bp.get("/tickets/new")
@require_permission("tickets.create")
def ticket_new_get():
    return render_template("admin/support/form.html", **_form_context(None, {"priority": "medium"}))


@bp.post("/tickets/new")
@require_permission("tickets.create")
def ticket_new_post():
    s = db_session()
    payload = request.form.to_dict()
    errors = validate_ticket_payload(s, payload)
    if errors:
        for e in errors:
            flash(e, "danger")
        return render_template("admin/support/form.html", **_form_context(None, payload)), 400
    ticket = create_ticket(s, payload, _current_user())
    s.commit()
    flash(f"Ticket {ticket.ticket_number} created.", "success")
    return redirect(url_for("support.ticket_detail", ticket_id=ticket.id))


@bp.get("/tickets/<int:ticket_id>")
@require_permission("tickets.view")
def ticket_detail(ticket_id: int):
    ticket = _get_ticket(ticket_id)
    return render_template(
        "admin/support/detail.html",
        ticket=ticket,
        staff=_staff_users(),
        history=entity_history(db_session(), "Ticket", ticket.id),
    )


@bp.get("/tickets/<int:ticket_id>/edit")
@require_permission("tickets.edit")
def ticket_edit_get(ticket_id: int):
    ticket = _get_ticket(ticket_id)
    form = {
        "title": ticket.title,
        "description": ticket.description,
        "status": ticket.status,
        "priority": ticket.priority,
        "category_id": ticket.category_id or "",
        "assigned_to_user_id": ticket.assigned_to_user_id or "",
        "due_date": ticket.due_date.isoformat() if ticket.due_date else "",
        "tags": ", ".join(ticket.tags or []),
    }
    return render_template("admin/support/form.html", **_form_context(ticket, form))


@bp.post("/tickets/<int:ticket_id>/edit")
@require_permission("tickets.edit")
def ticket_edit_post(ticket_id: int):
    s = db_session()
    ticket = _get_ticket(ticket_id)
    payload = request.form.to_dict()
    errors = validate_ticket_payload(s, payload, ticket=ticket)
    if errors:
        for e in errors:
            flash(e, "danger")
        return render_template("admin/support/form.html", **_form_context(ticket, payload)), 400
    update_ticket(s, ticket, payload, _current_user())
    s.commit()
    flash("Ticket updated successfully.", "success")
    return redirect(url_for("support.ticket_detail", ticket_id=ticket.id))


@bp.post("/tickets/<int:ticket_id>/delete")
@require_permission("tickets.delete")
def ticket_delete(ticket_id: int):
    s = db_session()
    delete_ticket(s, _get_ticket(ticket_id), _current_user())
    s.commit()
    flash("Ticket deleted successfully.", "success")
    return redirect(url_for("support.tickets_list"))


@bp.post("/tickets/<int:ticket_id>/assign")
@require_permission("tickets.edit")
def ticket_assign(ticket_id: int):
    s = db_session()
    ticket = _get_ticket(ticket_id)
    try:
        assign_ticket(s, ticket, _payload().get("assigned_to_user_id"), _current_user())
    except SupportRuleError as e:
        return _action_result(ticket, "", e)
    s.commit()
    return _action_result(ticket, "Ticket assigned successfully.")


@bp.post("/tickets/<int:ticket_id>/escalate")
@require_permission("tickets.edit")
def ticket_escalate(ticket_id: int):
    s = db_session()
    ticket = _get_ticket(ticket_id)
    payload = _payload()
    try:
        escalate_ticket(s, ticket, payload.get("escalate_to_user_id"), payload.get("reason"), _current_user())
    except SupportRuleError as e:
        return _action_result(ticket, "", e)
    s.commit()
    return _action_result(ticket, "Ticket escalated successfully.")


@bp.post("/tickets/<int:ticket_id>/close")
@require_permission("tickets.edit")
def ticket_close(ticket_id: int):
    s = db_session()
    ticket = _get_ticket(ticket_id)
    try:
        close_ticket(s, ticket, _current_user(), _payload().get("resolution_notes"))
    except SupportRuleError as e:
        return _action_result(ticket, "", e)
    s.commit()
    return _action_result(ticket, "Ticket closed successfully.")


@bp.post("/tickets/<int:ticket_id>/reopen")
@require_permission("tickets.edit")
def ticket_reopen(ticket_id: int):
    s = db_session()
    ticket = _get_ticket(ticket_id)
    try:
        reopen_ticket(s, ticket, _payload().get("reason"), _current_user())
    except SupportRuleError as e:
        return _action_result(ticket, "", e)
    s.commit()
    return _action_result(ticket, "Ticket reopened successfully.")


@bp.post("/tickets/<int:ticket_id>/comments")
@require_permission("tickets.view")
def ticket_comment(ticket_id: int):
    s = db_session()
    ticket = _get_ticket(ticket_id)
    try:
        add_comment(s, ticket, _payload(), _current_user())
    except SupportRuleError as e:
        return _action_result(ticket, "", e)
    s.commit()
    return _action_result(ticket, "Comment added successfully.")
