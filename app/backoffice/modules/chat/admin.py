from __future__ import annotations

from flask import Blueprint, abort, flash, g, jsonify, redirect, render_template, request, url_for

from app.backoffice.db import db_session
from app.backoffice.models import User
from app.backoffice.modules.chat.models import ChatSession
from app.backoffice.modules.chat.service import (
    ChatRuleError,
    agent_reply,
    can_access_session,
    claim_session,
    close_session,
    messages_after,
    queue_query,
)
from app.backoffice.rbac import require_permission
from app.backoffice.utils import page_urls, paginate, parse_int

bp = Blueprint("chat", __name__)

PER_PAGE = 15


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _get_session(session_id: int) -> ChatSession:
    chat = db_session().get(ChatSession, session_id)
    if not chat:
        abort(404)
    # Waiting chats are visible to every agent; claimed ones only to their agent and supervisors.
    if chat.status != "waiting" and not can_access_session(_current_user(), chat):
        abort(403)
    return chat


@bp.get("/")
@require_permission("chat.view")
def queue():
    filters = {"status": (request.args.get("status") or "").strip()}
    page = parse_int(request.args.get("page"), 1) or 1
    result = paginate(queue_query(db_session(), _current_user(), filters["status"]), page=page, per_page=PER_PAGE)
    return render_template(
        "admin/chat/queue.html",
        result=result,
        filters=filters,
        **page_urls("chat.queue", result, filters),
    )


@bp.get("/sessions/<int:session_id>")
@require_permission("chat.view")
def session_detail(session_id: int):
    chat = _get_session(session_id)
    return render_template("admin/chat/session.html", chat=chat)


@bp.get("/sessions/<int:session_id>/messages")
@require_permission("chat.view")
def session_messages(session_id: int):
    chat = _get_session(session_id)
    after = parse_int(request.args.get("after"))
    return jsonify({"status": chat.status, "messages": [m.to_dict() for m in messages_after(chat, after)]})


@bp.post("/sessions/<int:session_id>/claim")
@require_permission("chat.view")
def session_claim(session_id: int):
    s = db_session()
    chat = _get_session(session_id)
    try:
        claim_session(s, chat, _current_user())
    except ChatRuleError as e:
        flash(str(e), "danger")
        return redirect(url_for("chat.queue"))
    s.commit()
    flash("Chat claimed.", "success")
    return redirect(url_for("chat.session_detail", session_id=chat.id))


@bp.post("/sessions/<int:session_id>/reply")
@require_permission("chat.view")
def session_reply(session_id: int):
    s = db_session()
    chat = _get_session(session_id)
    body = request.get_json(silent=True) if request.is_json else request.form
    try:
        message = agent_reply(s, chat, _current_user(), (body or {}).get("body"))
    except ChatRuleError as e:
        if request.is_json:
            return jsonify({"success": False, "message": str(e)}), 400
        flash(str(e), "danger")
        return redirect(url_for("chat.session_detail", session_id=chat.id))
    s.commit()
    if request.is_json:
        return jsonify({"success": True, "message": message.to_dict()}), 201
    return redirect(url_for("chat.session_detail", session_id=chat.id))


@bp.post("/sessions/<int:session_id>/close")
@require_permission("chat.view")
def session_close(session_id: int):
    s = db_session()
    chat = _get_session(session_id)
    try:
        close_session(s, chat, _current_user())
    except ChatRuleError as e:
        flash(str(e), "danger")
        return redirect(url_for("chat.session_detail", session_id=chat.id))
    s.commit()
    flash("Chat closed.", "success")
    return redirect(url_for("chat.queue"))
