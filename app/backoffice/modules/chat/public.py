from __future__ import annotations

from flask import Blueprint, abort, current_app, g, jsonify, request

from app.backoffice.db import db_session
from app.backoffice.modules.chat.service import (
    ChatRuleError,
    authorize_channel,
    channel_auth_response,
    messages_after,
    post_visitor_message,
    session_by_token,
    start_session,
    valid_socket_id,
    validate_start_payload,
)
from app.backoffice.security import SlidingWindowLimiter
from app.backoffice.utils import parse_int

bp = Blueprint("livechat", __name__)
broadcasting_bp = Blueprint("broadcasting", __name__)

session_limiter = SlidingWindowLimiter(limit=5, window_seconds=3600)
message_limiter = SlidingWindowLimiter(limit=30, window_seconds=60)


def _payload() -> dict | None:
    payload = request.get_json(silent=True) if request.is_json else request.form.to_dict()
    return payload if isinstance(payload, dict) else None


def _session_or_404(token: str):
    chat = session_by_token(db_session(), token)
    if chat is None:
        abort(404)
    return chat


@bp.post("/sessions")
def session_start():
    payload = _payload()
    if payload is None:
        return jsonify({"success": False, "errors": {"_": "Request body must be an object."}}), 422

    ip = request.remote_addr or "unknown"
    if session_limiter.is_limited(ip):
        return jsonify({"success": False, "message": "Too many chats started. Please try again later."}), 429

    errors = validate_start_payload(payload)
    if errors:
        return jsonify({"success": False, "errors": errors}), 422

    session_limiter.record(ip)
    s = db_session()
    chat = start_session(s, payload, ip_address=request.remote_addr)
    s.commit()
    current_app.logger.info("Live chat session started id=%s", chat.id)
    return (
        jsonify(
            {
                "success": True,
                "token": chat.token,
                "session_id": chat.id,
                "status": chat.status,
                "messages": [m.to_dict() for m in chat.messages],
            }
        ),
        201,
    )


@bp.post("/sessions/<token>/messages")
def session_post_message(token: str):
    chat = _session_or_404(token)
    payload = _payload() or {}
    if message_limiter.is_limited(token):
        return jsonify({"success": False, "message": "You are sending messages too quickly."}), 429
    s = db_session()
    try:
        message = post_visitor_message(s, chat, payload.get("body"))
    except ChatRuleError as e:
        status = 409 if chat.status == "closed" else 422
        return jsonify({"success": False, "message": str(e)}), status
    message_limiter.record(token)
    s.commit()
    return jsonify({"success": True, "message": message.to_dict()}), 201


@bp.get("/sessions/<token>/messages")
def session_poll(token: str):
    chat = _session_or_404(token)
    after = parse_int(request.args.get("after"))
    return jsonify(
        {
            "status": chat.status,
            "agent": (chat.assigned_agent.name or "Support") if chat.assigned_agent else None,
            "messages": [m.to_dict() for m in messages_after(chat, after)],
        }
    )


@broadcasting_bp.post("/broadcasting/auth")
def broadcasting_auth():
    payload = _payload() or {}
    channel_name = (payload.get("channel_name") or "").strip()
    socket_id = (payload.get("socket_id") or "").strip()
    if not channel_name or not valid_socket_id(socket_id):
        return jsonify({"error": "channel_name and a valid socket_id are required."}), 400

    user = getattr(g, "current_user", None)
    allowed, member = authorize_channel(db_session(), user, channel_name)
    if not allowed:
        current_app.logger.info(
            "Channel auth denied channel=%s user_id=%s", channel_name, getattr(user, "id", None)
        )
        return jsonify({"error": "Forbidden."}), 403

    cfg = current_app.config
    return jsonify(
        channel_auth_response(cfg["BROADCAST_KEY"], cfg["BROADCAST_SECRET"], socket_id, channel_name, member)
    )
