from __future__ import annotations

import hashlib
import hmac
import json
import re
import secrets
from datetime import datetime
from typing import TYPE_CHECKING, Any

from app.backoffice.audit import record_event
from app.backoffice.modules.chat.models import ChatMessage, ChatSession
from app.backoffice.rbac import user_has_permission
from app.backoffice.utils import clean, is_valid_email

if TYPE_CHECKING:
    from sqlalchemy.orm import Query, Session

    from app.backoffice.models import User

MAX_MESSAGE_LENGTH = 2000
AGENTS_PRESENCE_CHANNEL = "presence-chat.agents"

_USER_CHANNEL = re.compile(r"^private-user\.(\d+)$")
_SESSION_CHANNEL = re.compile(r"^private-chat\.session\.(\d+)$")
_SOCKET_ID = re.compile(r"^\d+\.\d+$")


class ChatRuleError(ValueError):
    pass


# ============================================================================
# SESSIONS AND MESSAGES
# ============================================================================


def validate_start_payload(payload: dict) -> dict[str, str]:
    errors: dict[str, str] = {}
    name = clean(payload.get("visitor_name"))
    if not name:
        errors["visitor_name"] = "Your name is required."
    elif len(name) > 255:
        errors["visitor_name"] = "Name must be at most 255 characters."
    email = clean(payload.get("visitor_email"))
    if email and not is_valid_email(email):
        errors["visitor_email"] = "Please enter a valid email address."
    message = clean(payload.get("message"))
    if message and len(message) > MAX_MESSAGE_LENGTH:
        errors["message"] = f"Message must be at most {MAX_MESSAGE_LENGTH} characters."
    return errors


def _clean_body(raw: Any) -> str:
    body = clean(raw)
    if not body:
        raise ChatRuleError("Message cannot be empty.")
    if len(body) > MAX_MESSAGE_LENGTH:
        raise ChatRuleError(f"Message must be at most {MAX_MESSAGE_LENGTH} characters.")
    return body


def start_session(s: "Session", payload: dict, *, ip_address: str | None = None) -> ChatSession:
    chat = ChatSession(
        token=secrets.token_urlsafe(32),
        visitor_name=clean(payload.get("visitor_name")),
        visitor_email=(clean(payload.get("visitor_email")) or "").lower() or None,
        status="waiting",
        ip_address=ip_address,
    )
    s.add(chat)
    s.flush()
    first = clean(payload.get("message"))
    if first:
        post_visitor_message(s, chat, first)
    record_event(
        s,
        actor=None,
        action="chat.session_start",
        entity_type="ChatSession",
        entity_id=str(chat.id),
        metadata={"visitor_email": chat.visitor_email},
    )
    return chat


def session_by_token(s: "Session", token: str) -> ChatSession | None:
    if not token:
        return None
    return s.query(ChatSession).filter(ChatSession.token == token).one_or_none()


def _append(s: "Session", chat: ChatSession, sender_type: str, body: str, user: "User | None" = None) -> ChatMessage:
    message = ChatMessage(sender_type=sender_type, sender_user_id=user.id if user else None, body=body)
    chat.messages.append(message)
    s.flush()
    return message


def post_visitor_message(s: "Session", chat: ChatSession, raw_body: Any) -> ChatMessage:
    if chat.status == "closed":
        raise ChatRuleError("This chat has been closed.")
    return _append(s, chat, "visitor", _clean_body(raw_body))


def messages_after(chat: ChatSession, after_id: int | None) -> list[ChatMessage]:
    return [m for m in chat.messages if after_id is None or m.id > after_id]


def can_access_session(user: "User | None", chat: ChatSession) -> bool:
    if user is None:
        return False
    if user_has_permission(user, "chat.manage"):
        return True
    return chat.assigned_agent_id == user.id


def claim_session(s: "Session", chat: ChatSession, agent: "User") -> ChatSession:
    if chat.status != "waiting":
        raise ChatRuleError("Only waiting chats can be claimed.")
    chat.status = "active"
    chat.assigned_agent_id = agent.id
    chat.claimed_at = datetime.utcnow()
    _append(s, chat, "system", f"{agent.name or agent.email} joined the chat.")
    record_event(s, actor=agent, action="chat.claim", entity_type="ChatSession", entity_id=str(chat.id))
    return chat


def agent_reply(s: "Session", chat: ChatSession, agent: "User", raw_body: Any) -> ChatMessage:
    if chat.status != "active":
        raise ChatRuleError("Only active chats accept replies.")
    if not can_access_session(agent, chat):
        raise ChatRuleError("This chat is assigned to another agent.")
    return _append(s, chat, "agent", _clean_body(raw_body), agent)


def close_session(s: "Session", chat: ChatSession, agent: "User") -> ChatSession:
    if chat.status == "closed":
        raise ChatRuleError("This chat is already closed.")
    if chat.status == "active" and not can_access_session(agent, chat):
        raise ChatRuleError("This chat is assigned to another agent.")
    chat.status = "closed"
    chat.closed_at = datetime.utcnow()
    _append(s, chat, "system", "The chat has been closed.")
    record_event(s, actor=agent, action="chat.close", entity_type="ChatSession", entity_id=str(chat.id))
    return chat


def queue_query(s: "Session", agent: "User", status: str = "") -> "Query":
    q = s.query(ChatSession)
    if status in ("waiting", "active", "closed"):
        q = q.filter(ChatSession.status == status)
    else:
        q = q.filter(ChatSession.status != "closed")
    if not user_has_permission(agent, "chat.manage"):
        # Agents see the shared waiting queue plus their own chats.
        q = q.filter((ChatSession.status == "waiting") | (ChatSession.assigned_agent_id == agent.id))
    return q.order_by(ChatSession.created_at.asc())


# ============================================================================
# CHANNEL AUTHORIZATION
# ============================================================================


def authorize_channel(s: "Session", user: "User | None", channel_name: str) -> tuple[bool, dict | None]:
    """
    Decide whether user may subscribe to channel_name.
    Returns (allowed, presence member info or None).
    """
    if user is None or not user.is_active:
        return False, None

    m = _USER_CHANNEL.match(channel_name or "")
    if m:
        return int(m.group(1)) == user.id, None

    m = _SESSION_CHANNEL.match(channel_name or "")
    if m:
        chat = s.get(ChatSession, int(m.group(1)))
        return (chat is not None and can_access_session(user, chat)), None

    if channel_name == AGENTS_PRESENCE_CHANNEL:
        if not user_has_permission(user, "chat.view"):
            return False, None
        return True, {"user_id": user.id, "user_info": {"id": user.id, "name": user.name or user.email}}

    return False, None


def valid_socket_id(socket_id: str) -> bool:
    return bool(_SOCKET_ID.match(socket_id or ""))


def sign_channel(key: str, secret: str, socket_id: str, channel_name: str, channel_data: str | None = None) -> str:
    """Pusher auth signature: HMAC-SHA256 over socket_id:channel_name[:channel_data]."""
    to_sign = f"{socket_id}:{channel_name}"
    if channel_data is not None:
        to_sign += f":{channel_data}"
    digest = hmac.new(secret.encode("utf-8"), to_sign.encode("utf-8"), hashlib.sha256).hexdigest()
    return f"{key}:{digest}"


def channel_auth_response(key: str, secret: str, socket_id: str, channel_name: str, member: dict | None) -> dict:
    if member is None:
        return {"auth": sign_channel(key, secret, socket_id, channel_name)}
    channel_data = json.dumps(member, separators=(",", ":"))
    return {"auth": sign_channel(key, secret, socket_id, channel_name, channel_data), "channel_data": channel_data}
