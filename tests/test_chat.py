"""Live chat: visitor endpoints, the agent console and private channel auth."""
import hashlib
import hmac
import json

from app.backoffice.db import session_scope
from app.backoffice.models import User
from app.backoffice.modules.chat.models import ChatSession
from app.backoffice.modules.chat.service import (
    AGENTS_PRESENCE_CHANNEL,
    authorize_channel,
    channel_auth_response,
    sign_channel,
    valid_socket_id,
)

from conftest import CSRF, login, post, post_json, user_id


def _start(client, **overrides):
    payload = {"visitor_name": "Val Visitor", "visitor_email": "Val@Example.com", "message": "Is anyone there?"}
    payload.update(overrides)
    return client.post("/chat/sessions", json=payload)


def test_visitor_starts_chat(client, app):
    r = _start(client)
    assert r.status_code == 201
    body = r.json
    assert body["status"] == "waiting"
    assert len(body["token"]) >= 32
    assert [m["body"] for m in body["messages"]] == ["Is anyone there?"]
    assert body["messages"][0]["sender_type"] == "visitor"
    with session_scope(app) as s:
        chat = s.get(ChatSession, body["session_id"])
        assert chat.visitor_email == "val@example.com"


def test_start_validation_and_limit(client):
    r = _start(client, visitor_name="", visitor_email="nope", message="x" * 2001)
    assert r.status_code == 422
    assert set(r.json["errors"]) == {"visitor_name", "visitor_email", "message"}

    for _ in range(5):
        assert _start(client).status_code == 201
    assert _start(client).status_code == 429


def test_visitor_messages_and_polling(client):
    token = _start(client).json["token"]
    r = client.post(f"/chat/sessions/{token}/messages", json={"body": "Hello?"})
    assert r.status_code == 201
    last_id = r.json["message"]["id"]

    r = client.post(f"/chat/sessions/{token}/messages", json={"body": "   "})
    assert r.status_code == 422

    r = client.get(f"/chat/sessions/{token}/messages")
    assert r.json["status"] == "waiting"
    assert r.json["agent"] is None
    assert [m["body"] for m in r.json["messages"]] == ["Is anyone there?", "Hello?"]

    r = client.get(f"/chat/sessions/{token}/messages?after={last_id}")
    assert r.json["messages"] == []

    assert client.get("/chat/sessions/not-a-token/messages").status_code == 404


def test_agent_claim_reply_close(client, app):
    start = _start(client).json
    token, session_id = start["token"], start["session_id"]

    login(client, email="staff@example.com")
    r = client.get("/admin/chat/")
    assert r.status_code == 200
    assert b"Val Visitor" in r.data

    r = post(client, f"/admin/chat/sessions/{session_id}/claim", follow_redirects=True)
    assert b"Chat claimed." in r.data
    r = post(client, f"/admin/chat/sessions/{session_id}/claim", follow_redirects=True)
    assert b"Only waiting chats can be claimed." in r.data

    r = post_json(client, f"/admin/chat/sessions/{session_id}/reply", {"body": "Hi Val, how can I help?"})
    assert r.status_code == 201
    assert r.json["message"]["sender_name"] == "Staff Member"

    # the visitor sees the system notice and the reply
    r = client.get(f"/chat/sessions/{token}/messages")
    assert r.json["status"] == "active"
    assert r.json["agent"] == "Staff Member"
    assert [m["sender_type"] for m in r.json["messages"]] == ["visitor", "system", "agent"]

    r = post(client, f"/admin/chat/sessions/{session_id}/close", follow_redirects=True)
    assert b"Chat closed." in r.data

    r = client.post(f"/chat/sessions/{token}/messages", json={"body": "Wait!"})
    assert r.status_code == 409

    r = post_json(client, f"/admin/chat/sessions/{session_id}/reply", {"body": "too late"})
    assert r.status_code == 400
    assert r.json["message"] == "Only active chats accept replies."

    staff_id = user_id(app, "staff@example.com")

    with session_scope(app) as s:
        chat = s.get(ChatSession, session_id)
        assert chat.status == "closed"
        assert chat.assigned_agent_id == staff_id
        assert chat.closed_at is not None


def test_claimed_chat_hidden_from_other_agents(client, app):
    session_id = _start(client).json["session_id"]
    login(client)
    post(client, f"/admin/chat/sessions/{session_id}/claim")
    client.get("/auth/logout")

    login(client, email="staff@example.com")
    assert client.get(f"/admin/chat/sessions/{session_id}").status_code == 403
    r = client.get("/admin/chat/")
    assert b"Val Visitor" not in r.data


# ---------- channel auth ----------
def test_sign_channel_matches_hmac():
    expected = hmac.new(b"secret", b"123.456:private-user.1", hashlib.sha256).hexdigest()
    assert sign_channel("key", "secret", "123.456", "private-user.1") == f"key:{expected}"

    with_data = hmac.new(b"secret", b'123.456:presence-x:{"user_id":1}', hashlib.sha256).hexdigest()
    assert sign_channel("key", "secret", "123.456", "presence-x", '{"user_id":1}') == f"key:{with_data}"


def test_channel_auth_response_presence_payload():
    member = {"user_id": 7, "user_info": {"id": 7, "name": "Ann"}}
    resp = channel_auth_response("key", "secret", "1.2", AGENTS_PRESENCE_CHANNEL, member)
    assert json.loads(resp["channel_data"]) == member
    assert resp["auth"] == sign_channel("key", "secret", "1.2", AGENTS_PRESENCE_CHANNEL, resp["channel_data"])
    assert "channel_data" not in channel_auth_response("key", "secret", "1.2", "private-user.7", None)


def test_valid_socket_id():
    assert valid_socket_id("1234.5678")
    assert not valid_socket_id("1234")
    assert not valid_socket_id("abc.def")


def test_authorize_channel_rules(client, app):
    session_id = _start(client).json["session_id"]
    with session_scope(app) as s:
        admin = s.query(User).filter(User.email == "admin@example.com").one()
        staff = s.query(User).filter(User.email == "staff@example.com").one()

        assert authorize_channel(s, staff, f"private-user.{staff.id}") == (True, None)
        assert authorize_channel(s, staff, f"private-user.{admin.id}") == (False, None)
        assert authorize_channel(s, None, f"private-user.{staff.id}") == (False, None)

        # unclaimed chats belong to nobody yet; supervisors may always listen
        assert authorize_channel(s, staff, f"private-chat.session.{session_id}")[0] is False
        assert authorize_channel(s, admin, f"private-chat.session.{session_id}")[0] is True
        s.get(ChatSession, session_id).assigned_agent_id = staff.id
        assert authorize_channel(s, staff, f"private-chat.session.{session_id}")[0] is True

        allowed, member = authorize_channel(s, staff, AGENTS_PRESENCE_CHANNEL)
        assert allowed is True
        assert member == {"user_id": staff.id, "user_info": {"id": staff.id, "name": "Staff Member"}}

        assert authorize_channel(s, admin, "private-secret-things") == (False, None)


def test_broadcasting_auth_endpoint(client, app):
    login(client, email="staff@example.com")
    staff_id = user_id(app, "staff@example.com")

    r = post(client, "/broadcasting/auth", data={"socket_id": "1.2", "channel_name": f"private-user.{staff_id}"})
    assert r.status_code == 200
    cfg = app.config
    assert r.json["auth"] == sign_channel(
        cfg["BROADCAST_KEY"], cfg["BROADCAST_SECRET"], "1.2", f"private-user.{staff_id}"
    )

    r = post_json(client, "/broadcasting/auth", {"socket_id": "1.2", "channel_name": AGENTS_PRESENCE_CHANNEL})
    assert r.status_code == 200
    assert json.loads(r.json["channel_data"])["user_id"] == staff_id

    r = post(client, "/broadcasting/auth", data={"socket_id": "1.2", "channel_name": "private-user.99999"})
    assert r.status_code == 403

    r = post(client, "/broadcasting/auth", data={"socket_id": "bogus", "channel_name": f"private-user.{staff_id}"})
    assert r.status_code == 400


def test_broadcasting_auth_rejects_anonymous(client):
    with client.session_transaction() as sess:
        sess["csrf_token"] = CSRF
    r = post(client, "/broadcasting/auth", data={"socket_id": "1.2", "channel_name": "private-user.1"})
    assert r.status_code == 403
    assert r.json["error"] == "Forbidden."
