"""AI services, models, prompt templates and conversation logs."""
import io
import json
import urllib.error
from decimal import Decimal

import pytest

from app.backoffice.db import session_scope
from app.backoffice.models import User
from app.backoffice.modules.ai import client as ai_client
from app.backoffice.modules.ai.models import AIModel, AIService, Conversation, PromptTemplate
from app.backoffice.modules.ai.service import (
    AIRuleError,
    MissingVariablesError,
    add_message,
    create_conversation,
    create_model,
    create_service,
    create_template,
    estimate_tokens,
    extract_variables,
    rate_template,
    render_prompt,
    set_default_model,
    toggle_service,
)

from conftest import login, post, post_json


def _users(s):
    admin = s.query(User).filter(User.email == "admin@example.com").one()
    staff = s.query(User).filter(User.email == "staff@example.com").one()
    return admin, staff


def _service_and_model(app, **model_extra) -> tuple[int, int]:
    with session_scope(app) as s:
        admin, _ = _users(s)
        service = create_service(s, {"name": "OpenAI", "provider": "openai", "is_enabled": "1"}, admin)
        model = create_model(
            s,
            {
                "service_id": str(service.id),
                "name": "GPT Test",
                "model_identifier": "gpt-test",
                "type": "chat",
                "is_enabled": "1",
                "cost_per_input_token": "0.001",
                "cost_per_output_token": "0.002",
                **model_extra,
            },
            admin,
        )
        return service.id, model.id


def _template(app, owner="admin@example.com", **extra) -> int:
    with session_scope(app) as s:
        user = s.query(User).filter(User.email == owner).one()
        t = create_template(
            s,
            {
                "name": "Follow-up email",
                "category": "Sales",
                "template": "Hi {{ name }}, thanks for asking about {{product}}. Regards, {{name}}",
                **extra,
            },
            user,
        )
        return t.id


# ---------- services ----------
def test_service_routes(client, app):
    login(client)
    r = post(
        client,
        "/admin/ai/services/new",
        data={"name": "Claude", "provider": "anthropic", "is_enabled": "1", "configuration": '{"region": "eu"}'},
        follow_redirects=True,
    )
    assert b"AI service created successfully." in r.data
    with session_scope(app) as s:
        service = s.query(AIService).filter(AIService.slug == "claude").one()
        assert service.configuration == {"region": "eu"}
        service_id = service.id

    r = post(client, "/admin/ai/services/new", data={"name": "", "provider": "skynet", "configuration": "[1]"})
    assert r.status_code == 400
    assert b"Provider must be one of" in r.data
    assert b"Configuration must be a JSON object." in r.data

    r = post(client, f"/admin/ai/services/{service_id}/set-default")
    assert r.json["success"] is True

    # no API key stored, so nothing goes over the network
    r = post(client, f"/admin/ai/services/{service_id}/test")
    assert r.json == {"success": False, "message": "API key not configured."}

    r = client.get("/admin/ai/services?provider=anthropic")
    assert b"Claude" in r.data


def test_disabling_default_service_promotes_another(app):
    with session_scope(app) as s:
        admin, _ = _users(s)
        first = create_service(s, {"name": "Primary", "provider": "openai", "is_enabled": "1", "is_default": "1"}, admin)
        second = create_service(s, {"name": "Backup", "provider": "mistral", "is_enabled": "1"}, admin)
        assert first.is_default and not second.is_default

        toggle_service(s, first, admin)
        assert first.is_enabled is False
        assert first.is_default is False
        assert second.is_default is True


def test_cannot_delete_service_with_models(client, app):
    service_id, _ = _service_and_model(app)
    login(client)
    r = post(client, f"/admin/ai/services/{service_id}/delete", follow_redirects=True)
    assert b"Cannot delete service that has associated models." in r.data


def test_provider_client_connection(monkeypatch):
    class FakeResponse(io.BytesIO):
        def __enter__(self):
            return self

        def __exit__(self, *exc):
            return False

    seen = {}

    def fake_urlopen(req, timeout):
        seen["url"] = req.full_url
        seen["key"] = req.get_header("X-api-key")
        return FakeResponse(json.dumps({"data": [{"id": "a"}, {"id": "b"}]}).encode("utf-8"))

    monkeypatch.setattr(ai_client.urllib.request, "urlopen", fake_urlopen)
    c = ai_client.ProviderClient(api_url="https://api.example.com/v1/", api_key="k", provider="anthropic")
    assert c.test_connection() == {"success": True, "message": "Connection successful (2 models available)."}
    assert seen == {"url": "https://api.example.com/v1/models", "key": "k"}

    def refusing_urlopen(req, timeout):
        raise urllib.error.URLError("connection refused")

    monkeypatch.setattr(ai_client.urllib.request, "urlopen", refusing_urlopen)
    result = c.test_connection()
    assert result["success"] is False
    assert "connection refused" in result["message"]


# ---------- models ----------
def test_model_validation(client, app):
    service_id, _ = _service_and_model(app)
    login(client)
    r = post(
        client,
        "/admin/ai/models/new",
        data={
            "service_id": str(service_id),
            "name": "Bad",
            "model_identifier": "bad",
            "type": "hologram",
            "temperature": "3",
            "max_tokens": "0",
        },
    )
    assert r.status_code == 400
    assert b"Type must be one of" in r.data
    assert b"Temperature must be between 0 and 2." in r.data
    assert b"Max tokens must be at least 1." in r.data

    r = post(
        client,
        "/admin/ai/models/new",
        data={
            "service_id": str(service_id),
            "name": "Odd",
            "model_identifier": "odd",
            "type": "chat",
            "temperature": "NaN",
            "cost_per_input_token": "1e30",
        },
    )
    assert r.status_code == 400
    assert b"Temperature must be between 0 and 2." in r.data
    assert b"Input token cost must be zero or more." in r.data


def test_default_model_is_per_type(app):
    service_id, model_id = _service_and_model(app)
    with session_scope(app) as s:
        admin, _ = _users(s)
        chat_a = s.get(AIModel, model_id)
        set_default_model(s, chat_a, admin)
        chat_b = create_model(
            s,
            {"service_id": str(service_id), "name": "Chat B", "model_identifier": "b", "type": "chat", "is_enabled": "1"},
            admin,
        )
        embed = create_model(
            s,
            {
                "service_id": str(service_id),
                "name": "Embedder",
                "model_identifier": "e",
                "type": "embedding",
                "is_enabled": "1",
                "is_default": "1",
            },
            admin,
        )
        set_default_model(s, chat_b, admin)
        s.flush()
        s.refresh(chat_a)
        assert chat_a.is_default is False
        assert chat_b.is_default is True
        assert embed.is_default is True

        disabled = create_model(
            s, {"service_id": str(service_id), "name": "Off", "model_identifier": "off", "type": "chat"}, admin
        )
        with pytest.raises(AIRuleError):
            set_default_model(s, disabled, admin)


# ---------- prompt templates ----------
def test_extract_variables():
    assert extract_variables("Hi {{ name }}, {{product}} and {{name}} again; {{ 9bad }}") == ["name", "product"]


def test_render_prompt_counts_successful_uses(app):
    template_id = _template(app)
    with session_scope(app) as s:
        t = s.get(PromptTemplate, template_id)
        assert t.variables == ["name", "product"]
        with pytest.raises(MissingVariablesError) as exc:
            render_prompt(t, {"name": "Ana"})
        assert exc.value.missing == ["product"]
        assert t.usage_count == 0

        rendered = render_prompt(t, {"name": "Ana", "product": "CRM"})
        assert rendered == "Hi Ana, thanks for asking about CRM. Regards, Ana"
        assert t.usage_count == 1


def test_render_route(client, app):
    template_id = _template(app)
    login(client)
    r = post_json(client, f"/admin/ai/prompt-templates/{template_id}/render", {"data": {"name": "Bo"}})
    assert r.status_code == 400
    assert r.json["missing_variables"] == ["product"]
    assert r.json["required_variables"] == ["name", "product"]

    r = post(
        client,
        f"/admin/ai/prompt-templates/{template_id}/render",
        data={"data[name]": "Bo", "data[product]": "ERP"},
    )
    assert r.json["rendered_template"].startswith("Hi Bo, thanks for asking about ERP.")
    assert r.json["usage_count"] == 1


def test_rating(client, app):
    template_id = _template(app)
    with session_scope(app) as s:
        admin, _ = _users(s)
        t = s.get(PromptTemplate, template_id)
        assert rate_template(s, t, "5", admin) == 5.0
        assert rate_template(s, t, 2, admin) == 3.5
        with pytest.raises(AIRuleError):
            rate_template(s, t, "6", admin)

    login(client)
    r = post_json(client, f"/admin/ai/prompt-templates/{template_id}/rate", {"rating": 5})
    assert r.json["avg_rating"] == 4.0
    r = post_json(client, f"/admin/ai/prompt-templates/{template_id}/rate", {"rating": 0})
    assert r.status_code == 400


def test_template_create_duplicate_and_visibility(client, app):
    login(client)
    r = post(
        client,
        "/admin/ai/prompt-templates/new",
        data={"name": "Summary", "category": "Support", "template": "Summarise {{ticket}}", "tags": "Support, Short"},
        follow_redirects=True,
    )
    assert b"Prompt template created successfully." in r.data
    with session_scope(app) as s:
        t = s.query(PromptTemplate).filter(PromptTemplate.slug == "summary").one()
        assert t.category == "support"
        assert t.tags == ["support", "short"]
        assert t.is_public is False
        template_id = t.id

    r = post(client, f"/admin/ai/prompt-templates/{template_id}/duplicate", follow_redirects=True)
    assert b"Template duplicated successfully." in r.data
    with session_scope(app) as s:
        copy = s.query(PromptTemplate).filter(PromptTemplate.name == "Summary (Copy)").one()
        assert copy.slug == "summary-copy"
        assert copy.usage_count == 0

    r = client.get("/admin/ai/prompt-templates?tag=short")
    assert b"Summary" in r.data

    # a private template is invisible to other users
    client.get("/auth/logout")
    login(client, email="staff@example.com")
    assert client.get(f"/admin/ai/prompt-templates/{template_id}").status_code == 404


def test_system_template_cannot_be_deleted(client, app):
    template_id = _template(app)
    with session_scope(app) as s:
        s.get(PromptTemplate, template_id).is_system = True
    login(client)
    r = post(client, f"/admin/ai/prompt-templates/{template_id}/delete")
    assert r.status_code == 403


# ---------- conversations ----------
def test_estimate_tokens():
    assert estimate_tokens("") == 1
    assert estimate_tokens("abcd") == 1
    assert estimate_tokens("abcde") == 2


def test_messages_accumulate_tokens_and_cost(app):
    _, model_id = _service_and_model(app)
    with session_scope(app) as s:
        admin, _ = _users(s)
        conv = create_conversation(
            s, {"title": "Pricing help", "model_id": str(model_id), "initial_message": "abcdefgh"}, admin
        )
        assert conv.message_count == 1
        assert conv.total_tokens == 2
        add_message(s, conv, "assistant", "reply", tokens="10")
        assert conv.message_count == 2
        assert conv.total_tokens == 12
        # 2 input tokens at 0.001 plus 10 output tokens at 0.002
        assert conv.total_cost == Decimal("0.022")

        with pytest.raises(AIRuleError):
            add_message(s, conv, "robot", "hi")
        with pytest.raises(AIRuleError):
            add_message(s, conv, "user", "   ")


def test_conversation_routes(client, app):
    _, model_id = _service_and_model(app)
    login(client)
    r = post(
        client,
        "/admin/ai/conversations/new",
        data={"title": "Invoice question", "model_id": str(model_id), "context_type": "finance", "context_id": "12"},
        follow_redirects=True,
    )
    assert b"Conversation created successfully." in r.data
    with session_scope(app) as s:
        conversation_id = s.query(Conversation).one().id

    r = post_json(client, f"/admin/ai/conversations/{conversation_id}/messages", {"role": "user", "content": "Hello there"})
    assert r.json["success"] is True
    assert r.json["conversation"]["message_count"] == 1
    assert r.json["message"]["tokens"] == 3

    r = post_json(client, f"/admin/ai/conversations/{conversation_id}/messages", {"role": "user", "content": ""})
    assert r.status_code == 400

    r = post(client, f"/admin/ai/conversations/{conversation_id}/rename", data={"title": ""}, follow_redirects=True)
    assert b"Title is required." in r.data

    r = post_json(client, f"/admin/ai/conversations/{conversation_id}/archive")
    assert r.json["success"] is True
    r = client.get("/admin/ai/conversations?status=archived")
    assert b"Invoice question" in r.data

    r = client.get("/admin/ai/conversations/statistics")
    stats = r.json["stats"]
    assert stats["total_conversations"] == 1
    assert stats["archived_conversations"] == 1
    assert stats["total_messages"] == 1
    assert r.json["by_context_type"] == {"finance": 1}
    assert r.json["by_model"][0]["model_name"] == "GPT Test"


def test_conversation_validation(client, app):
    login(client)
    r = post(client, "/admin/ai/conversations/new", data={"title": "", "model_id": "999", "context_type": "weather"})
    assert r.status_code == 400
    assert b"Title is required." in r.data
    assert b"AI model is required." in r.data
    assert b"Context type must be one of" in r.data


def test_conversation_export(client, app):
    _, model_id = _service_and_model(app)
    with session_scope(app) as s:
        admin, _ = _users(s)
        create_conversation(s, {"title": "Exported chat", "model_id": str(model_id), "initial_message": "hi"}, admin)
    login(client)

    r = client.get("/admin/ai/conversations/export?format=json")
    assert r.status_code == 200
    assert "attachment" in r.headers["Content-Disposition"]
    body = r.json
    assert body["total_conversations"] == 1
    assert body["conversations"][0]["messages"][0]["content"] == "hi"

    r = client.get("/admin/ai/conversations/export?format=csv")
    lines = r.data.decode("utf-8").splitlines()
    assert lines[0].startswith("ID,Title,User,AI Model,Service")
    assert "Exported chat" in lines[1]
    assert "OpenAI" in lines[1]

    r = client.get("/admin/ai/conversations/export?format=xml")
    assert r.status_code == 400
    assert r.json["formats"] == ["json", "csv"]


def test_staff_can_view_but_not_export_conversations(client):
    login(client, email="staff@example.com")
    assert client.get("/admin/ai/conversations").status_code == 200
    assert client.get("/admin/ai/conversations/export").status_code == 403
