from __future__ import annotations

import json
import logging
import math
import re
from datetime import datetime, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from sqlalchemy import String, cast, func, or_

from app.backoffice.audit import record_event
from app.backoffice.models import User
from app.backoffice.modules.ai.client import DEFAULT_API_URLS, ProviderClient
from app.backoffice.modules.ai.models import AIModel, AIService, Conversation, ConversationMessage, PromptTemplate
from app.backoffice.rbac import user_is_admin
from app.backoffice.utils import clean, parse_decimal, parse_int, slugify

if TYPE_CHECKING:
    from sqlalchemy.orm import Query, Session

logger = logging.getLogger(__name__)

PROVIDERS = ("openai", "anthropic", "mistral")
MODEL_TYPES = ("chat", "completion", "embedding", "image", "audio")
CONTEXT_TYPES = ("crm", "finance", "support", "general")
MESSAGE_ROLES = ("user", "assistant", "system")
EXPORT_FORMATS = ("json", "csv")
# Numeric(12, 8) cost columns
MAX_TOKEN_COST = Decimal("1e4")

_VARIABLE_RE = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")


class AIRuleError(ValueError):
    pass


class MissingVariablesError(AIRuleError):
    def __init__(self, missing: list[str]):
        self.missing = missing
        super().__init__(f"Missing required variables: {', '.join(missing)}")


def _truthy(raw: Any) -> bool:
    return raw in (True, "1", "on", "true", "yes")


def _split_list(raw: Any) -> list[str]:
    if raw is None:
        return []
    if isinstance(raw, str):
        raw = raw.replace("\n", ",").split(",")
    return [str(v).strip() for v in raw if v is not None and str(v).strip()]


def _json_object(raw: Any, label: str, errors: list[str]) -> dict | None:
    if raw is None or raw == "":
        return None
    if isinstance(raw, dict):
        return raw
    try:
        value = json.loads(raw)
    except ValueError:
        errors.append(f"{label} must be valid JSON.")
        return None
    if not isinstance(value, dict):
        errors.append(f"{label} must be a JSON object.")
        return None
    return value


def unique_slug(s: "Session", model: type, name: str, obj: Any = None) -> str:
    base = slugify(name) or "item"
    slug = base
    n = 1
    while True:
        q = s.query(model.id).filter(model.slug == slug)
        if obj is not None and obj.id is not None:
            q = q.filter(model.id != obj.id)
        if not q.first():
            return slug
        slug = f"{base}-{n}"
        n += 1


# ============================================================================
# SERVICES
# ============================================================================


def validate_service_payload(payload: dict) -> list[str]:
    errors: list[str] = []
    name = clean(payload.get("name"))
    if not name:
        errors.append("Name is required.")
    elif len(name) > 255:
        errors.append("Name must be at most 255 characters.")
    if payload.get("provider") not in PROVIDERS:
        errors.append(f"Provider must be one of: {', '.join(PROVIDERS)}.")
    api_url = clean(payload.get("api_url"))
    if api_url and not re.match(r"^https?://", api_url):
        errors.append("API URL must start with http:// or https://.")
    if clean(payload.get("cost_per_token")) is not None:
        cost = parse_decimal(payload.get("cost_per_token"), max_abs=MAX_TOKEN_COST)
        if cost is None or cost < 0:
            errors.append("Cost per token must be zero or more.")
    if clean(payload.get("priority")) is not None:
        priority = parse_int(payload.get("priority"))
        if priority is None or priority < 0:
            errors.append("Priority must be zero or more.")
    _json_object(payload.get("configuration"), "Configuration", errors)
    return errors


def _apply_service_fields(service: AIService, payload: dict) -> None:
    service.name = clean(payload.get("name"))
    service.provider = payload["provider"]
    service.api_url = clean(payload.get("api_url"))
    api_key = clean(payload.get("api_key"))
    # Blank key on edit keeps the stored one.
    if api_key:
        service.api_key = api_key
    service.description = clean(payload.get("description"))
    service.is_enabled = _truthy(payload.get("is_enabled"))
    service.priority = parse_int(payload.get("priority"), 0) or 0
    service.configuration = _json_object(payload.get("configuration"), "Configuration", [])
    service.supported_features = _split_list(payload.get("supported_features")) or None
    service.cost_per_token = parse_decimal(payload.get("cost_per_token"), max_abs=MAX_TOKEN_COST)


def set_default_service(s: "Session", service: AIService, actor: User) -> AIService:
    if not service.is_enabled:
        raise AIRuleError("Cannot set disabled service as default.")
    s.query(AIService).filter(AIService.id != service.id, AIService.is_default.is_(True)).update(
        {AIService.is_default: False}, synchronize_session="fetch"
    )
    service.is_default = True
    record_event(s, actor=actor, action="ai_service.set_default", entity_type="AIService", entity_id=str(service.id))
    return service


def create_service(s: "Session", payload: dict, actor: User) -> AIService:
    service = AIService(is_default=False)
    _apply_service_fields(service, payload)
    service.slug = unique_slug(s, AIService, service.name)
    s.add(service)
    s.flush()
    record_event(
        s,
        actor=actor,
        action="ai_service.create",
        entity_type="AIService",
        entity_id=str(service.id),
        metadata={"name": service.name, "provider": service.provider},
    )
    if _truthy(payload.get("is_default")) and service.is_enabled:
        set_default_service(s, service, actor)
    return service


def update_service(s: "Session", service: AIService, payload: dict, actor: User) -> AIService:
    old_name = service.name
    _apply_service_fields(service, payload)
    if service.name != old_name:
        service.slug = unique_slug(s, AIService, service.name, service)
    service.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=actor,
        action="ai_service.update",
        entity_type="AIService",
        entity_id=str(service.id),
        metadata={"name": service.name, "provider": service.provider, "is_enabled": service.is_enabled},
    )
    if _truthy(payload.get("is_default")) and service.is_enabled:
        set_default_service(s, service, actor)
    return service


def delete_service(s: "Session", service: AIService, actor: User) -> None:
    if s.query(AIModel.id).filter(AIModel.service_id == service.id).first():
        raise AIRuleError("Cannot delete service that has associated models.")
    record_event(
        s,
        actor=actor,
        action="ai_service.delete",
        entity_type="AIService",
        entity_id=str(service.id),
        metadata={"name": service.name},
    )
    s.delete(service)


def toggle_service(s: "Session", service: AIService, actor: User) -> AIService:
    enable = not service.is_enabled
    if not enable and service.is_default:
        alternative = (
            s.query(AIService)
            .filter(AIService.id != service.id, AIService.is_enabled.is_(True))
            .order_by(AIService.priority.asc(), AIService.id.asc())
            .first()
        )
        service.is_default = False
        if alternative is not None:
            alternative.is_default = True
        else:
            logger.warning("Default AI service %s disabled with no enabled replacement", service.id)
    service.is_enabled = enable
    service.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=actor,
        action="ai_service.toggle",
        entity_type="AIService",
        entity_id=str(service.id),
        metadata={"is_enabled": enable},
    )
    return service


def test_service_connection(service: AIService) -> dict[str, Any]:
    if not service.api_key:
        return {"success": False, "message": "API key not configured."}
    api_url = service.api_url or DEFAULT_API_URLS.get(service.provider)
    if not api_url:
        return {"success": False, "message": "API URL not configured."}
    return ProviderClient(api_url=api_url, api_key=service.api_key, provider=service.provider).test_connection()


def query_services(s: "Session", filters: dict[str, str]) -> "Query":
    q = s.query(AIService)
    if filters.get("q"):
        like = f"%{filters['q']}%"
        q = q.filter(or_(AIService.name.ilike(like), AIService.provider.ilike(like), AIService.description.ilike(like)))
    if filters.get("provider") in PROVIDERS:
        q = q.filter(AIService.provider == filters["provider"])
    if filters.get("status") in ("enabled", "disabled"):
        q = q.filter(AIService.is_enabled.is_(filters["status"] == "enabled"))
    return q.order_by(AIService.priority.asc(), AIService.name.asc())


# ============================================================================
# MODELS
# ============================================================================

_MODEL_RANGES = {
    "temperature": ("Temperature", 0, 2),
    "top_p": ("Top P", 0, 1),
    "frequency_penalty": ("Frequency penalty", -2, 2),
    "presence_penalty": ("Presence penalty", -2, 2),
}


def validate_model_payload(s: "Session", payload: dict) -> list[str]:
    errors: list[str] = []
    if s.get(AIService, parse_int(payload.get("service_id")) or 0) is None:
        errors.append("Service is required.")
    if not clean(payload.get("name")):
        errors.append("Name is required.")
    if not clean(payload.get("model_identifier")):
        errors.append("Model identifier is required.")
    if payload.get("type") not in MODEL_TYPES:
        errors.append(f"Type must be one of: {', '.join(MODEL_TYPES)}.")
    if clean(payload.get("max_tokens")) is not None:
        max_tokens = parse_int(payload.get("max_tokens"))
        if max_tokens is None or max_tokens < 1:
            errors.append("Max tokens must be at least 1.")
    for field, (label, lo, hi) in _MODEL_RANGES.items():
        if clean(payload.get(field)) is None:
            continue
        value = parse_decimal(payload.get(field))
        if value is None or not lo <= value <= hi:
            errors.append(f"{label} must be between {lo} and {hi}.")
    for field, label in (("cost_per_input_token", "Input token cost"), ("cost_per_output_token", "Output token cost")):
        if clean(payload.get(field)) is not None:
            cost = parse_decimal(payload.get(field), max_abs=MAX_TOKEN_COST)
            if cost is None or cost < 0:
                errors.append(f"{label} must be zero or more.")
    return errors


def _float_or_none(raw: Any) -> float | None:
    value = parse_decimal(raw)
    return float(value) if value is not None else None


def _apply_model_fields(model: AIModel, payload: dict) -> None:
    model.service_id = parse_int(payload.get("service_id"))
    model.name = clean(payload.get("name"))
    model.model_identifier = clean(payload.get("model_identifier"))
    model.type = payload["type"]
    model.description = clean(payload.get("description"))
    model.is_enabled = _truthy(payload.get("is_enabled"))
    model.max_tokens = parse_int(payload.get("max_tokens"))
    model.temperature = _float_or_none(payload.get("temperature"))
    model.top_p = _float_or_none(payload.get("top_p"))
    model.frequency_penalty = _float_or_none(payload.get("frequency_penalty"))
    model.presence_penalty = _float_or_none(payload.get("presence_penalty"))
    model.cost_per_input_token = parse_decimal(payload.get("cost_per_input_token"), max_abs=MAX_TOKEN_COST)
    model.cost_per_output_token = parse_decimal(payload.get("cost_per_output_token"), max_abs=MAX_TOKEN_COST)


def set_default_model(s: "Session", model: AIModel, actor: User) -> AIModel:
    """Default is per type: other models of the same type lose the flag."""
    if not model.is_enabled:
        raise AIRuleError("Cannot set disabled model as default.")
    s.query(AIModel).filter(
        AIModel.id != model.id, AIModel.type == model.type, AIModel.is_default.is_(True)
    ).update({AIModel.is_default: False}, synchronize_session="fetch")
    model.is_default = True
    record_event(s, actor=actor, action="ai_model.set_default", entity_type="AIModel", entity_id=str(model.id))
    return model


def create_model(s: "Session", payload: dict, actor: User) -> AIModel:
    model = AIModel(is_default=False)
    _apply_model_fields(model, payload)
    model.slug = unique_slug(s, AIModel, model.name)
    s.add(model)
    s.flush()
    record_event(
        s,
        actor=actor,
        action="ai_model.create",
        entity_type="AIModel",
        entity_id=str(model.id),
        metadata={"name": model.name, "type": model.type, "service_id": model.service_id},
    )
    if _truthy(payload.get("is_default")) and model.is_enabled:
        set_default_model(s, model, actor)
    return model


def update_model(s: "Session", model: AIModel, payload: dict, actor: User) -> AIModel:
    old_name = model.name
    _apply_model_fields(model, payload)
    if model.name != old_name:
        model.slug = unique_slug(s, AIModel, model.name, model)
    model.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=actor,
        action="ai_model.update",
        entity_type="AIModel",
        entity_id=str(model.id),
        metadata={"name": model.name, "type": model.type, "is_enabled": model.is_enabled},
    )
    if _truthy(payload.get("is_default")) and model.is_enabled:
        set_default_model(s, model, actor)
    return model


def delete_model(s: "Session", model: AIModel, actor: User) -> None:
    if s.query(Conversation.id).filter(Conversation.model_id == model.id).first():
        raise AIRuleError("Cannot delete model that has associated conversations.")
    record_event(
        s,
        actor=actor,
        action="ai_model.delete",
        entity_type="AIModel",
        entity_id=str(model.id),
        metadata={"name": model.name},
    )
    s.delete(model)


def toggle_model_status(s: "Session", model: AIModel, actor: User) -> AIModel:
    enable = not model.is_enabled
    if not enable and model.is_default:
        alternative = (
            s.query(AIModel)
            .filter(AIModel.id != model.id, AIModel.type == model.type, AIModel.is_enabled.is_(True))
            .order_by(AIModel.id.asc())
            .first()
        )
        model.is_default = False
        if alternative is not None:
            alternative.is_default = True
        else:
            logger.warning("Default %s model %s disabled with no enabled replacement", model.type, model.id)
    model.is_enabled = enable
    model.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=actor,
        action="ai_model.toggle",
        entity_type="AIModel",
        entity_id=str(model.id),
        metadata={"is_enabled": enable},
    )
    return model


def query_models(s: "Session", filters: dict[str, str]) -> "Query":
    q = s.query(AIModel)
    if filters.get("q"):
        like = f"%{filters['q']}%"
        q = q.filter(
            or_(AIModel.name.ilike(like), AIModel.model_identifier.ilike(like), AIModel.description.ilike(like))
        )
    service_id = parse_int(filters.get("service_id"))
    if service_id:
        q = q.filter(AIModel.service_id == service_id)
    if filters.get("type") in MODEL_TYPES:
        q = q.filter(AIModel.type == filters["type"])
    if filters.get("status") in ("enabled", "disabled"):
        q = q.filter(AIModel.is_enabled.is_(filters["status"] == "enabled"))
    return q.order_by(AIModel.is_default.desc(), AIModel.name.asc())


# ============================================================================
# PROMPT TEMPLATES
# ============================================================================


def extract_variables(template: str) -> list[str]:
    """{{name}} placeholders in first-seen order, without duplicates."""
    seen: list[str] = []
    for name in _VARIABLE_RE.findall(template or ""):
        if name not in seen:
            seen.append(name)
    return seen


def missing_variables(template: PromptTemplate, data: dict[str, Any]) -> list[str]:
    required = template.variables or extract_variables(template.template)
    return [v for v in required if data.get(v) in (None, "")]


def render_text(template: PromptTemplate, data: dict[str, Any]) -> str:
    missing = missing_variables(template, data)
    if missing:
        raise MissingVariablesError(missing)
    return _VARIABLE_RE.sub(lambda m: str(data.get(m.group(1), m.group(0))), template.template)


def render_prompt(template: PromptTemplate, data: dict[str, Any]) -> str:
    """Render and count one use. Missing variables raise before the count changes."""
    rendered = render_text(template, data)
    template.usage_count = (template.usage_count or 0) + 1
    return rendered


def rate_template(s: "Session", template: PromptTemplate, rating_raw: Any, actor: User) -> float:
    rating = parse_int(rating_raw)
    if rating is None or not 1 <= rating <= 5:
        raise AIRuleError("Rating must be between 1 and 5.")
    count = template.rating_count or 0
    current = template.avg_rating or 0.0
    template.avg_rating = round((current * count + rating) / (count + 1), 2)
    template.rating_count = count + 1
    record_event(
        s,
        actor=actor,
        action="prompt_template.rate",
        entity_type="PromptTemplate",
        entity_id=str(template.id),
        metadata={"rating": rating},
    )
    return template.avg_rating


def can_edit_template(template: PromptTemplate, user: User) -> bool:
    if template.is_system:
        return False
    return template.user_id == user.id or template.is_public


def can_delete_template(template: PromptTemplate, user: User) -> bool:
    if template.is_system:
        return False
    return template.user_id == user.id or user_is_admin(user)


def validate_template_payload(payload: dict) -> list[str]:
    errors: list[str] = []
    name = clean(payload.get("name"))
    if not name:
        errors.append("Name is required.")
    elif len(name) > 255:
        errors.append("Name must be at most 255 characters.")
    category = clean(payload.get("category"))
    if not category:
        errors.append("Category is required.")
    elif len(category) > 100:
        errors.append("Category must be at most 100 characters.")
    if not clean(payload.get("template")):
        errors.append("Template text is required.")
    _json_object(payload.get("example_data"), "Example data", errors)
    return errors


def _apply_template_fields(template: PromptTemplate, payload: dict) -> None:
    template.name = clean(payload.get("name"))
    template.category = clean(payload.get("category")).lower()
    template.description = clean(payload.get("description"))
    template.template = payload.get("template").strip()
    template.variables = _split_list(payload.get("variables")) or extract_variables(template.template)
    template.example_data = _json_object(payload.get("example_data"), "Example data", [])
    template.tags = [t.lower() for t in _split_list(payload.get("tags"))] or None
    template.is_public = _truthy(payload.get("is_public"))


def create_template(s: "Session", payload: dict, user: User) -> PromptTemplate:
    template = PromptTemplate(user_id=user.id, is_system=False, usage_count=0, rating_count=0)
    _apply_template_fields(template, payload)
    template.slug = unique_slug(s, PromptTemplate, template.name)
    s.add(template)
    s.flush()
    record_event(
        s,
        actor=user,
        action="prompt_template.create",
        entity_type="PromptTemplate",
        entity_id=str(template.id),
        metadata={"name": template.name, "variables": template.variables},
    )
    return template


def update_template(s: "Session", template: PromptTemplate, payload: dict, actor: User) -> PromptTemplate:
    if not can_edit_template(template, actor):
        raise AIRuleError("You do not have permission to edit this template.")
    old_name = template.name
    _apply_template_fields(template, payload)
    if template.name != old_name:
        template.slug = unique_slug(s, PromptTemplate, template.name, template)
    template.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=actor,
        action="prompt_template.update",
        entity_type="PromptTemplate",
        entity_id=str(template.id),
        metadata={"name": template.name, "variables": template.variables},
    )
    return template


def delete_template(s: "Session", template: PromptTemplate, actor: User) -> None:
    if not can_delete_template(template, actor):
        raise AIRuleError("You do not have permission to delete this template.")
    record_event(
        s,
        actor=actor,
        action="prompt_template.delete",
        entity_type="PromptTemplate",
        entity_id=str(template.id),
        metadata={"name": template.name},
    )
    s.delete(template)


def duplicate_template(s: "Session", template: PromptTemplate, user: User) -> PromptTemplate:
    copy = PromptTemplate(
        name=f"{template.name} (Copy)",
        description=template.description,
        category=template.category,
        template=template.template,
        variables=list(template.variables or []),
        example_data=dict(template.example_data) if template.example_data else None,
        tags=list(template.tags) if template.tags else None,
        is_public=False,
        is_system=False,
        usage_count=0,
        avg_rating=None,
        rating_count=0,
        user_id=user.id,
    )
    copy.slug = unique_slug(s, PromptTemplate, copy.name)
    s.add(copy)
    s.flush()
    record_event(
        s,
        actor=user,
        action="prompt_template.duplicate",
        entity_type="PromptTemplate",
        entity_id=str(copy.id),
        metadata={"source_id": template.id},
    )
    return copy


def query_templates(s: "Session", user: User, filters: dict[str, str]) -> "Query":
    q = s.query(PromptTemplate)
    if filters.get("q"):
        like = f"%{filters['q']}%"
        q = q.filter(
            or_(
                PromptTemplate.name.ilike(like),
                PromptTemplate.description.ilike(like),
                PromptTemplate.template.ilike(like),
            )
        )
    if filters.get("category"):
        q = q.filter(PromptTemplate.category == filters["category"].lower())
    visibility = filters.get("visibility")
    if visibility == "public":
        q = q.filter(PromptTemplate.is_public.is_(True))
    elif visibility == "private":
        q = q.filter(PromptTemplate.is_public.is_(False), PromptTemplate.user_id == user.id)
    elif visibility == "system":
        q = q.filter(PromptTemplate.is_system.is_(True))
    else:
        q = q.filter(
            or_(
                PromptTemplate.is_public.is_(True),
                PromptTemplate.is_system.is_(True),
                PromptTemplate.user_id == user.id,
            )
        )
    for tag in _split_list(filters.get("tag")):
        # JSON arrays serialize as ["a", "b"] on both SQLite and Postgres.
        q = q.filter(cast(PromptTemplate.tags, String).ilike(f'%"{tag.lower()}"%'))
    min_uses = parse_int(filters.get("popular"))
    if min_uses:
        q = q.filter(PromptTemplate.usage_count >= min_uses)
    min_rating = parse_decimal(filters.get("rating"))
    if min_rating is not None:
        q = q.filter(PromptTemplate.avg_rating >= float(min_rating))
    return q.order_by(PromptTemplate.usage_count.desc(), PromptTemplate.name.asc())


def template_categories(s: "Session") -> list[str]:
    rows = s.query(PromptTemplate.category).distinct().order_by(PromptTemplate.category.asc()).all()
    return [r[0] for r in rows if r[0]]


# ============================================================================
# CONVERSATIONS
# ============================================================================


def estimate_tokens(content: str) -> int:
    """Roughly four characters per token."""
    return max(1, math.ceil(len(content or "") / 4))


def _message_cost(model: AIModel | None, role: str, tokens: int) -> Decimal:
    if model is None:
        return Decimal("0")
    rate = model.cost_per_output_token if role == "assistant" else model.cost_per_input_token
    return (rate or Decimal("0")) * tokens


def add_message(
    s: "Session", conversation: Conversation, role: str, content: str, tokens: Any = None
) -> ConversationMessage:
    if role not in MESSAGE_ROLES:
        raise AIRuleError(f"Role must be one of: {', '.join(MESSAGE_ROLES)}.")
    content = (content or "").strip()
    if not content:
        raise AIRuleError("Message content is required.")
    count = parse_int(tokens)
    if count is None or count < 0:
        count = estimate_tokens(content)
    message = ConversationMessage(role=role, content=content, tokens=count, created_at=datetime.utcnow())
    conversation.messages.append(message)
    conversation.message_count = (conversation.message_count or 0) + 1
    conversation.total_tokens = (conversation.total_tokens or 0) + count
    conversation.total_cost = (conversation.total_cost or Decimal("0")) + _message_cost(conversation.model, role, count)
    conversation.last_message_at = message.created_at
    conversation.updated_at = message.created_at
    s.flush()
    return message


def validate_conversation_payload(s: "Session", payload: dict) -> list[str]:
    errors: list[str] = []
    title = clean(payload.get("title"))
    if not title:
        errors.append("Title is required.")
    elif len(title) > 255:
        errors.append("Title must be at most 255 characters.")
    if s.get(AIModel, parse_int(payload.get("model_id")) or 0) is None:
        errors.append("AI model is required.")
    context_type = clean(payload.get("context_type"))
    if context_type and context_type not in CONTEXT_TYPES:
        errors.append(f"Context type must be one of: {', '.join(CONTEXT_TYPES)}.")
    if clean(payload.get("context_id")) is not None and parse_int(payload.get("context_id")) is None:
        errors.append("Context id must be a number.")
    _json_object(payload.get("metadata"), "Metadata", errors)
    return errors


def create_conversation(s: "Session", payload: dict, user: User) -> Conversation:
    now = datetime.utcnow()
    conversation = Conversation(
        user_id=user.id,
        model=s.get(AIModel, parse_int(payload.get("model_id"))),
        title=clean(payload.get("title")),
        context_type=clean(payload.get("context_type")),
        context_id=parse_int(payload.get("context_id")),
        meta=_json_object(payload.get("metadata"), "Metadata", []) or {},
        is_archived=False,
        message_count=0,
        total_tokens=0,
        total_cost=Decimal("0"),
        last_message_at=now,
    )
    s.add(conversation)
    s.flush()
    initial = clean(payload.get("initial_message"))
    if initial:
        add_message(s, conversation, "user", initial)
    record_event(
        s,
        actor=user,
        action="conversation.create",
        entity_type="Conversation",
        entity_id=str(conversation.id),
        metadata={"model_id": conversation.model_id, "context_type": conversation.context_type},
    )
    return conversation


def rename_conversation(s: "Session", conversation: Conversation, title_raw: Any, actor: User) -> Conversation:
    title = clean(title_raw)
    if not title:
        raise AIRuleError("Title is required.")
    if len(title) > 255:
        raise AIRuleError("Title must be at most 255 characters.")
    old = conversation.title
    conversation.title = title
    conversation.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=actor,
        action="conversation.rename",
        entity_type="Conversation",
        entity_id=str(conversation.id),
        metadata={"from": old, "to": title},
    )
    return conversation


def set_archived(s: "Session", conversation: Conversation, archived: bool, actor: User) -> Conversation:
    conversation.is_archived = archived
    conversation.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=actor,
        action="conversation.archive" if archived else "conversation.unarchive",
        entity_type="Conversation",
        entity_id=str(conversation.id),
    )
    return conversation


def delete_conversation(s: "Session", conversation: Conversation, actor: User) -> None:
    record_event(
        s,
        actor=actor,
        action="conversation.delete",
        entity_type="Conversation",
        entity_id=str(conversation.id),
        metadata={"title": conversation.title, "messages": conversation.message_count},
    )
    s.delete(conversation)


def query_conversations(s: "Session", filters: dict[str, str]) -> "Query":
    q = s.query(Conversation).join(User, Conversation.user_id == User.id)
    if filters.get("q"):
        like = f"%{filters['q']}%"
        q = q.filter(or_(Conversation.title.ilike(like), User.name.ilike(like), User.email.ilike(like)))
    model_id = parse_int(filters.get("model_id"))
    if model_id:
        q = q.filter(Conversation.model_id == model_id)
    if filters.get("context_type") in CONTEXT_TYPES:
        q = q.filter(Conversation.context_type == filters["context_type"])
    if filters.get("status") == "archived":
        q = q.filter(Conversation.is_archived.is_(True))
    elif filters.get("status") == "active":
        q = q.filter(Conversation.is_archived.is_(False))
    return q.order_by(Conversation.last_message_at.desc(), Conversation.id.desc())


def _period_query(s: "Session", days: int | None, user_id: int | None) -> "Query":
    q = s.query(Conversation)
    if user_id:
        q = q.filter(Conversation.user_id == user_id)
    if days:
        q = q.filter(Conversation.created_at >= datetime.utcnow() - timedelta(days=days))
    return q


def conversation_statistics(s: "Session", *, days: int | None = 30, user_id: int | None = None) -> dict[str, Any]:
    base = _period_query(s, days, user_id)
    total = base.count()
    archived = base.filter(Conversation.is_archived.is_(True)).count()
    sums = base.with_entities(
        func.coalesce(func.sum(Conversation.message_count), 0),
        func.coalesce(func.sum(Conversation.total_tokens), 0),
        func.coalesce(func.sum(Conversation.total_cost), 0),
    ).one()
    total_messages, total_tokens, total_cost = int(sums[0]), int(sums[1]), Decimal(str(sums[2]))

    by_context = {
        (ctx or "none"): n
        for ctx, n in base.with_entities(Conversation.context_type, func.count(Conversation.id))
        .group_by(Conversation.context_type)
        .all()
    }
    by_model = [
        {"model_id": model_id, "model_name": name or "Unknown", "count": n}
        for model_id, name, n in base.outerjoin(AIModel, Conversation.model_id == AIModel.id)
        .with_entities(Conversation.model_id, AIModel.name, func.count(Conversation.id))
        .group_by(Conversation.model_id, AIModel.name)
        .order_by(func.count(Conversation.id).desc())
        .all()
    ]
    return {
        "period_days": days,
        "stats": {
            "total_conversations": total,
            "active_conversations": total - archived,
            "archived_conversations": archived,
            "total_messages": total_messages,
            "total_tokens": total_tokens,
            "total_cost": float(total_cost),
            "avg_messages_per_conversation": round(total_messages / total, 2) if total else 0,
            "avg_cost_per_conversation": round(float(total_cost) / total, 6) if total else 0,
        },
        "by_context_type": by_context,
        "by_model": by_model,
    }


EXPORT_HEADER = [
    "ID",
    "Title",
    "User",
    "AI Model",
    "Service",
    "Context Type",
    "Message Count",
    "Total Tokens",
    "Total Cost",
    "Created At",
    "Last Message At",
]


def export_rows(conversations: list[Conversation]) -> list[list[Any]]:
    rows = []
    for c in conversations:
        rows.append(
            [
                c.id,
                c.title,
                (c.user.name or c.user.email) if c.user else "",
                c.model.name if c.model else "",
                c.model.service.name if c.model and c.model.service else "",
                c.context_type or "",
                c.message_count,
                c.total_tokens,
                c.total_cost,
                c.created_at.isoformat(sep=" ", timespec="seconds") if c.created_at else "",
                c.last_message_at.isoformat(sep=" ", timespec="seconds") if c.last_message_at else "",
            ]
        )
    return rows


def export_payload(conversations: list[Conversation]) -> dict[str, Any]:
    return {
        "export_date": datetime.utcnow().isoformat(),
        "total_conversations": len(conversations),
        "conversations": [
            {
                "id": c.id,
                "title": c.title,
                "user": c.user.email if c.user else None,
                "model": c.model.name if c.model else None,
                "context_type": c.context_type,
                "context_id": c.context_id,
                "is_archived": c.is_archived,
                "message_count": c.message_count,
                "total_tokens": c.total_tokens,
                "total_cost": float(c.total_cost or 0),
                "created_at": c.created_at.isoformat() if c.created_at else None,
                "last_message_at": c.last_message_at.isoformat() if c.last_message_at else None,
                "messages": [m.to_dict() for m in c.messages],
            }
            for c in conversations
        ],
    }
