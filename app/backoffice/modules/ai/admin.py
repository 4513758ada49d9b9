from __future__ import annotations

from datetime import datetime, timedelta

from flask import Blueprint, abort, flash, g, jsonify, redirect, render_template, request, url_for

from app.backoffice.audit import record_event
from app.backoffice.db import db_session
from app.backoffice.models import User
from app.backoffice.modules.ai.models import AIModel, AIService, Conversation, PromptTemplate
from app.backoffice.modules.ai.service import (
    CONTEXT_TYPES,
    EXPORT_FORMATS,
    EXPORT_HEADER,
    MESSAGE_ROLES,
    MODEL_TYPES,
    PROVIDERS,
    AIRuleError,
    MissingVariablesError,
    add_message,
    can_delete_template,
    can_edit_template,
    conversation_statistics,
    create_conversation,
    create_model,
    create_service,
    create_template,
    delete_conversation,
    delete_model,
    delete_service,
    delete_template,
    duplicate_template,
    export_payload,
    export_rows,
    query_conversations,
    query_models,
    query_services,
    query_templates,
    rate_template,
    rename_conversation,
    render_prompt,
    set_archived,
    set_default_model,
    set_default_service,
    template_categories,
    test_service_connection,
    toggle_model_status,
    toggle_service,
    update_model,
    update_service,
    update_template,
    validate_conversation_payload,
    validate_model_payload,
    validate_service_payload,
    validate_template_payload,
)
from app.backoffice.rbac import require_permission
from app.backoffice.utils import csv_download, page_urls, paginate, parse_int

bp = Blueprint("ai", __name__)

PER_PAGE = 10


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _get(model: type, obj_id: int):
    obj = db_session().get(model, obj_id)
    if not obj:
        abort(404)
    return obj


def _flash_errors(errors: list[str]) -> None:
    for e in errors:
        flash(e, "danger")


def _enabled_services():
    return db_session().query(AIService).filter(AIService.is_enabled.is_(True)).order_by(AIService.name.asc()).all()


def _enabled_models():
    return db_session().query(AIModel).filter(AIModel.is_enabled.is_(True)).order_by(AIModel.name.asc()).all()


# ============================================================================
# SERVICES
# ============================================================================


def _service_form(service: AIService) -> dict:
    return {
        "name": service.name,
        "provider": service.provider,
        "api_url": service.api_url or "",
        "api_key": "",
        "description": service.description or "",
        "is_enabled": "1" if service.is_enabled else "",
        "is_default": "1" if service.is_default else "",
        "priority": service.priority,
        "supported_features": ", ".join(service.supported_features or []),
        "cost_per_token": service.cost_per_token if service.cost_per_token is not None else "",
        "configuration": "",
    }


@bp.get("/services")
@require_permission("ai_services.view")
def services_list():
    filters = {
        "q": (request.args.get("q") or "").strip(),
        "provider": (request.args.get("provider") or "").strip(),
        "status": (request.args.get("status") or "").strip(),
    }
    page = parse_int(request.args.get("page"), 1) or 1
    result = paginate(query_services(db_session(), filters), page=page, per_page=PER_PAGE)
    return render_template(
        "admin/ai/services/list.html",
        result=result,
        filters=filters,
        providers=PROVIDERS,
        **page_urls("ai.services_list", result, filters),
    )


@bp.get("/services/new")
@require_permission("ai_services.manage")
def services_new_get():
    form = {"provider": "openai", "is_enabled": "1", "priority": 0}
    return render_template("admin/ai/services/form.html", service=None, form=form, providers=PROVIDERS)


@bp.post("/services/new")
@require_permission("ai_services.manage")
def services_new_post():
    s = db_session()
    payload = request.form.to_dict()
    errors = validate_service_payload(payload)
    if errors:
        _flash_errors(errors)
        return render_template("admin/ai/services/form.html", service=None, form=payload, providers=PROVIDERS), 400
    service = create_service(s, payload, _current_user())
    s.commit()
    flash("AI service created successfully.", "success")
    return redirect(url_for("ai.service_detail", service_id=service.id))


@bp.get("/services/<int:service_id>")
@require_permission("ai_services.view")
def service_detail(service_id: int):
    service = _get(AIService, service_id)
    models = sorted(service.models, key=lambda m: (not m.is_default, m.name))
    return render_template("admin/ai/services/detail.html", service=service, models=models)


@bp.get("/services/<int:service_id>/edit")
@require_permission("ai_services.manage")
def service_edit_get(service_id: int):
    service = _get(AIService, service_id)
    return render_template(
        "admin/ai/services/form.html", service=service, form=_service_form(service), providers=PROVIDERS
    )


@bp.post("/services/<int:service_id>/edit")
@require_permission("ai_services.manage")
def service_edit_post(service_id: int):
    s = db_session()
    service = _get(AIService, service_id)
    payload = request.form.to_dict()
    errors = validate_service_payload(payload)
    if errors:
        _flash_errors(errors)
        return render_template("admin/ai/services/form.html", service=service, form=payload, providers=PROVIDERS), 400
    update_service(s, service, payload, _current_user())
    s.commit()
    flash("AI service updated successfully.", "success")
    return redirect(url_for("ai.service_detail", service_id=service.id))


@bp.post("/services/<int:service_id>/delete")
@require_permission("ai_services.manage")
def service_delete(service_id: int):
    s = db_session()
    try:
        delete_service(s, _get(AIService, service_id), _current_user())
    except AIRuleError as e:
        flash(str(e), "danger")
        return redirect(url_for("ai.services_list"))
    s.commit()
    flash("AI service deleted successfully.", "success")
    return redirect(url_for("ai.services_list"))


@bp.post("/services/<int:service_id>/test")
@require_permission("ai_services.manage")
def service_test(service_id: int):
    s = db_session()
    service = _get(AIService, service_id)
    result = test_service_connection(service)
    record_event(
        s,
        actor=_current_user(),
        action="ai_service.test_connection",
        entity_type="AIService",
        entity_id=str(service.id),
        metadata={"success": result["success"]},
    )
    s.commit()
    return jsonify(result)


@bp.post("/services/<int:service_id>/set-default")
@require_permission("ai_services.manage")
def service_set_default(service_id: int):
    s = db_session()
    try:
        set_default_service(s, _get(AIService, service_id), _current_user())
    except AIRuleError as e:
        return jsonify({"success": False, "message": str(e)}), 400
    s.commit()
    return jsonify({"success": True, "message": "Service set as default successfully."})


@bp.post("/services/<int:service_id>/toggle")
@require_permission("ai_services.manage")
def service_toggle(service_id: int):
    s = db_session()
    service = toggle_service(s, _get(AIService, service_id), _current_user())
    s.commit()
    state = "enabled" if service.is_enabled else "disabled"
    return jsonify({"success": True, "message": f"Service {state} successfully.", "is_enabled": service.is_enabled})


# ============================================================================
# MODELS
# ============================================================================


def _model_form(model: AIModel) -> dict:
    form = {
        "service_id": model.service_id,
        "name": model.name,
        "model_identifier": model.model_identifier,
        "type": model.type,
        "description": model.description or "",
        "is_enabled": "1" if model.is_enabled else "",
        "is_default": "1" if model.is_default else "",
    }
    for field in (
        "max_tokens",
        "temperature",
        "top_p",
        "frequency_penalty",
        "presence_penalty",
        "cost_per_input_token",
        "cost_per_output_token",
    ):
        value = getattr(model, field)
        form[field] = "" if value is None else value
    return form


def _model_form_page(model: AIModel | None, form: dict, status: int = 200):
    return (
        render_template(
            "admin/ai/models/form.html",
            model=model,
            form=form,
            services=_enabled_services(),
            model_types=MODEL_TYPES,
        ),
        status,
    )


@bp.get("/models")
@require_permission("ai_models.view")
def models_list():
    filters = {
        "q": (request.args.get("q") or "").strip(),
        "service_id": (request.args.get("service_id") or "").strip(),
        "type": (request.args.get("type") or "").strip(),
        "status": (request.args.get("status") or "").strip(),
    }
    page = parse_int(request.args.get("page"), 1) or 1
    result = paginate(query_models(db_session(), filters), page=page, per_page=PER_PAGE)
    return render_template(
        "admin/ai/models/list.html",
        result=result,
        filters=filters,
        services=_enabled_services(),
        model_types=MODEL_TYPES,
        **page_urls("ai.models_list", result, filters),
    )


@bp.get("/models/new")
@require_permission("ai_models.manage")
def models_new_get():
    return _model_form_page(None, {"type": "chat", "is_enabled": "1"})


@bp.post("/models/new")
@require_permission("ai_models.manage")
def models_new_post():
    s = db_session()
    payload = request.form.to_dict()
    errors = validate_model_payload(s, payload)
    if errors:
        _flash_errors(errors)
        return _model_form_page(None, payload, 400)
    model = create_model(s, payload, _current_user())
    s.commit()
    flash("AI model created successfully.", "success")
    return redirect(url_for("ai.model_detail", model_id=model.id))


@bp.get("/models/<int:model_id>")
@require_permission("ai_models.view")
def model_detail(model_id: int):
    s = db_session()
    model = _get(AIModel, model_id)
    conversations = s.query(Conversation).filter(Conversation.model_id == model.id).count()
    return render_template("admin/ai/models/detail.html", model=model, conversation_count=conversations)


@bp.get("/models/<int:model_id>/edit")
@require_permission("ai_models.manage")
def model_edit_get(model_id: int):
    model = _get(AIModel, model_id)
    return _model_form_page(model, _model_form(model))


@bp.post("/models/<int:model_id>/edit")
@require_permission("ai_models.manage")
def model_edit_post(model_id: int):
    s = db_session()
    model = _get(AIModel, model_id)
    payload = request.form.to_dict()
    errors = validate_model_payload(s, payload)
    if errors:
        _flash_errors(errors)
        return _model_form_page(model, payload, 400)
    update_model(s, model, payload, _current_user())
    s.commit()
    flash("AI model updated successfully.", "success")
    return redirect(url_for("ai.model_detail", model_id=model.id))


@bp.post("/models/<int:model_id>/delete")
@require_permission("ai_models.manage")
def model_delete(model_id: int):
    s = db_session()
    try:
        delete_model(s, _get(AIModel, model_id), _current_user())
    except AIRuleError as e:
        flash(str(e), "danger")
        return redirect(url_for("ai.models_list"))
    s.commit()
    flash("AI model deleted successfully.", "success")
    return redirect(url_for("ai.models_list"))


@bp.post("/models/<int:model_id>/set-default")
@require_permission("ai_models.manage")
def model_set_default(model_id: int):
    s = db_session()
    try:
        set_default_model(s, _get(AIModel, model_id), _current_user())
    except AIRuleError as e:
        return jsonify({"success": False, "message": str(e)}), 400
    s.commit()
    return jsonify({"success": True, "message": "Model set as default successfully."})


@bp.post("/models/<int:model_id>/toggle")
@require_permission("ai_models.manage")
def model_toggle(model_id: int):
    s = db_session()
    model = toggle_model_status(s, _get(AIModel, model_id), _current_user())
    s.commit()
    state = "enabled" if model.is_enabled else "disabled"
    return jsonify({"success": True, "message": f"Model {state} successfully.", "is_enabled": model.is_enabled})


# ============================================================================
# PROMPT TEMPLATES
# ============================================================================


def _template_form(t: PromptTemplate) -> dict:
    return {
        "name": t.name,
        "category": t.category,
        "description": t.description or "",
        "template": t.template,
        "variables": ", ".join(t.variables or []),
        "tags": ", ".join(t.tags or []),
        "is_public": "1" if t.is_public else "",
        "example_data": "",
    }


def _template_form_page(template: PromptTemplate | None, form: dict, status: int = 200):
    return (
        render_template(
            "admin/ai/templates/form.html",
            template=template,
            form=form,
            categories=template_categories(db_session()),
        ),
        status,
    )


@bp.get("/prompt-templates")
@require_permission("prompt_templates.view")
def templates_list():
    s = db_session()
    filters = {
        "q": (request.args.get("q") or "").strip(),
        "category": (request.args.get("category") or "").strip(),
        "visibility": (request.args.get("visibility") or "").strip(),
        "tag": (request.args.get("tag") or "").strip(),
        "popular": (request.args.get("popular") or "").strip(),
        "rating": (request.args.get("rating") or "").strip(),
    }
    page = parse_int(request.args.get("page"), 1) or 1
    result = paginate(query_templates(s, _current_user(), filters), page=page, per_page=PER_PAGE)
    return render_template(
        "admin/ai/templates/list.html",
        result=result,
        filters=filters,
        categories=template_categories(s),
        **page_urls("ai.templates_list", result, filters),
    )


@bp.get("/prompt-templates/new")
@require_permission("prompt_templates.manage")
def templates_new_get():
    return _template_form_page(None, {"category": "general"})


@bp.post("/prompt-templates/new")
@require_permission("prompt_templates.manage")
def templates_new_post():
    s = db_session()
    payload = request.form.to_dict()
    errors = validate_template_payload(payload)
    if errors:
        _flash_errors(errors)
        return _template_form_page(None, payload, 400)
    template = create_template(s, payload, _current_user())
    s.commit()
    flash("Prompt template created successfully.", "success")
    return redirect(url_for("ai.template_detail", template_id=template.id))


@bp.get("/prompt-templates/<int:template_id>")
@require_permission("prompt_templates.view")
def template_detail(template_id: int):
    template = _get(PromptTemplate, template_id)
    user = _current_user()
    if not (template.is_public or template.is_system or template.user_id == user.id):
        abort(404)
    return render_template(
        "admin/ai/templates/detail.html",
        template=template,
        can_edit=can_edit_template(template, user),
        can_delete=can_delete_template(template, user),
    )


@bp.get("/prompt-templates/<int:template_id>/edit")
@require_permission("prompt_templates.manage")
def template_edit_get(template_id: int):
    template = _get(PromptTemplate, template_id)
    if not can_edit_template(template, _current_user()):
        abort(403)
    return _template_form_page(template, _template_form(template))


@bp.post("/prompt-templates/<int:template_id>/edit")
@require_permission("prompt_templates.manage")
def template_edit_post(template_id: int):
    s = db_session()
    template = _get(PromptTemplate, template_id)
    if not can_edit_template(template, _current_user()):
        abort(403)
    payload = request.form.to_dict()
    errors = validate_template_payload(payload)
    if errors:
        _flash_errors(errors)
        return _template_form_page(template, payload, 400)
    update_template(s, template, payload, _current_user())
    s.commit()
    flash("Prompt template updated successfully.", "success")
    return redirect(url_for("ai.template_detail", template_id=template.id))


@bp.post("/prompt-templates/<int:template_id>/delete")
@require_permission("prompt_templates.manage")
def template_delete(template_id: int):
    s = db_session()
    template = _get(PromptTemplate, template_id)
    try:
        delete_template(s, template, _current_user())
    except AIRuleError:
        abort(403)
    s.commit()
    flash("Prompt template deleted successfully.", "success")
    return redirect(url_for("ai.templates_list"))


@bp.post("/prompt-templates/<int:template_id>/duplicate")
@require_permission("prompt_templates.manage")
def template_duplicate(template_id: int):
    s = db_session()
    copy = duplicate_template(s, _get(PromptTemplate, template_id), _current_user())
    s.commit()
    flash("Template duplicated successfully.", "success")
    return redirect(url_for("ai.template_detail", template_id=copy.id))


@bp.post("/prompt-templates/<int:template_id>/rate")
@require_permission("prompt_templates.view")
def template_rate(template_id: int):
    s = db_session()
    template = _get(PromptTemplate, template_id)
    body = request.get_json(silent=True) or request.form
    try:
        avg = rate_template(s, template, body.get("rating"), _current_user())
    except AIRuleError as e:
        return jsonify({"success": False, "message": str(e)}), 400
    s.commit()
    return jsonify({"success": True, "message": "Rating added successfully.", "avg_rating": avg})


@bp.post("/prompt-templates/<int:template_id>/render")
@require_permission("prompt_templates.view")
def template_render(template_id: int):
    s = db_session()
    template = _get(PromptTemplate, template_id)
    body = request.get_json(silent=True)
    if isinstance(body, dict) and isinstance(body.get("data"), dict):
        data = body["data"]
    else:
        # Form posts send data[<variable>] fields.
        data = {k[5:-1]: v for k, v in request.form.items() if k.startswith("data[") and k.endswith("]")}
    try:
        rendered = render_prompt(template, data)
    except MissingVariablesError as e:
        return (
            jsonify(
                {
                    "success": False,
                    "message": str(e),
                    "missing_variables": e.missing,
                    "required_variables": template.variables or [],
                }
            ),
            400,
        )
    s.commit()
    return jsonify({"success": True, "rendered_template": rendered, "usage_count": template.usage_count})


# ============================================================================
# CONVERSATIONS
# ============================================================================


@bp.get("/conversations")
@require_permission("conversations.view")
def conversations_list():
    filters = {
        "q": (request.args.get("q") or "").strip(),
        "model_id": (request.args.get("model_id") or "").strip(),
        "context_type": (request.args.get("context_type") or "").strip(),
        "status": (request.args.get("status") or "").strip(),
    }
    page = parse_int(request.args.get("page"), 1) or 1
    result = paginate(query_conversations(db_session(), filters), page=page, per_page=PER_PAGE)
    return render_template(
        "admin/ai/conversations/list.html",
        result=result,
        filters=filters,
        models=_enabled_models(),
        context_types=CONTEXT_TYPES,
        **page_urls("ai.conversations_list", result, filters),
    )


@bp.get("/conversations/new")
@require_permission("conversations.manage")
def conversations_new_get():
    return render_template(
        "admin/ai/conversations/new.html",
        form={"context_type": "general"},
        models=_enabled_models(),
        context_types=CONTEXT_TYPES,
    )


@bp.post("/conversations/new")
@require_permission("conversations.manage")
def conversations_new_post():
    s = db_session()
    payload = request.form.to_dict()
    errors = validate_conversation_payload(s, payload)
    if errors:
        _flash_errors(errors)
        return (
            render_template(
                "admin/ai/conversations/new.html",
                form=payload,
                models=_enabled_models(),
                context_types=CONTEXT_TYPES,
            ),
            400,
        )
    conversation = create_conversation(s, payload, _current_user())
    s.commit()
    flash("Conversation created successfully.", "success")
    return redirect(url_for("ai.conversation_detail", conversation_id=conversation.id))


@bp.get("/conversations/statistics")
@require_permission("conversations.view")
def conversations_statistics():
    days = parse_int(request.args.get("days"), 30)
    user_id = parse_int(request.args.get("user_id"))
    return jsonify(conversation_statistics(db_session(), days=days if days and days > 0 else None, user_id=user_id))


@bp.get("/conversations/export")
@require_permission("conversations.manage")
def conversations_export():
    s = db_session()
    fmt = (request.args.get("format") or "json").strip().lower()
    if fmt not in EXPORT_FORMATS:
        return jsonify({"error": "Invalid format", "formats": list(EXPORT_FORMATS)}), 400
    q = s.query(Conversation)
    user_id = parse_int(request.args.get("user_id"))
    if user_id:
        q = q.filter(Conversation.user_id == user_id)
    days = parse_int(request.args.get("days"))
    if days and days > 0:
        q = q.filter(Conversation.created_at >= datetime.utcnow() - timedelta(days=days))
    conversations = q.order_by(Conversation.id.asc()).all()
    stamp = datetime.utcnow().strftime("%Y-%m-%d_%H-%M-%S")

    record_event(
        s,
        actor=_current_user(),
        action="conversation.export",
        entity_type="Conversation",
        metadata={"format": fmt, "count": len(conversations)},
    )
    s.commit()

    if fmt == "csv":
        return csv_download(EXPORT_HEADER, export_rows(conversations), f"conversations_export_{stamp}.csv")
    resp = jsonify(export_payload(conversations))
    resp.headers["Content-Disposition"] = f'attachment; filename="conversations_export_{stamp}.json"'
    return resp


@bp.get("/conversations/<int:conversation_id>")
@require_permission("conversations.view")
def conversation_detail(conversation_id: int):
    conversation = _get(Conversation, conversation_id)
    return render_template(
        "admin/ai/conversations/detail.html", conversation=conversation, roles=MESSAGE_ROLES
    )


@bp.post("/conversations/<int:conversation_id>/rename")
@require_permission("conversations.manage")
def conversation_rename(conversation_id: int):
    s = db_session()
    conversation = _get(Conversation, conversation_id)
    try:
        rename_conversation(s, conversation, request.form.get("title"), _current_user())
    except AIRuleError as e:
        flash(str(e), "danger")
    else:
        s.commit()
        flash("Conversation updated successfully.", "success")
    return redirect(url_for("ai.conversation_detail", conversation_id=conversation.id))


@bp.post("/conversations/<int:conversation_id>/delete")
@require_permission("conversations.manage")
def conversation_delete(conversation_id: int):
    s = db_session()
    delete_conversation(s, _get(Conversation, conversation_id), _current_user())
    s.commit()
    flash("Conversation deleted successfully.", "success")
    return redirect(url_for("ai.conversations_list"))


@bp.post("/conversations/<int:conversation_id>/archive")
@require_permission("conversations.manage")
def conversation_archive(conversation_id: int):
    s = db_session()
    set_archived(s, _get(Conversation, conversation_id), True, _current_user())
    s.commit()
    return jsonify({"success": True, "message": "Conversation archived successfully."})


@bp.post("/conversations/<int:conversation_id>/unarchive")
@require_permission("conversations.manage")
def conversation_unarchive(conversation_id: int):
    s = db_session()
    set_archived(s, _get(Conversation, conversation_id), False, _current_user())
    s.commit()
    return jsonify({"success": True, "message": "Conversation unarchived successfully."})


@bp.post("/conversations/<int:conversation_id>/messages")
@require_permission("conversations.manage")
def conversation_add_message(conversation_id: int):
    s = db_session()
    conversation = _get(Conversation, conversation_id)
    body = request.get_json(silent=True) or request.form
    try:
        message = add_message(s, conversation, (body.get("role") or "").strip(), body.get("content"), body.get("tokens"))
    except AIRuleError as e:
        return jsonify({"success": False, "message": str(e)}), 400
    s.commit()
    return jsonify(
        {
            "success": True,
            "message": message.to_dict(),
            "conversation": {
                "id": conversation.id,
                "message_count": conversation.message_count,
                "total_tokens": conversation.total_tokens,
                "total_cost": float(conversation.total_cost or 0),
            },
        }
    )
