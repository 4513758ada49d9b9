from __future__ import annotations

from datetime import datetime

from flask import Blueprint, current_app, g, jsonify, render_template

from app.backoffice.audit import record_event
from app.backoffice.db import db_session
from app.backoffice.modules.integrations.service import CHECKS, health_score, run_all, run_check
from app.backoffice.rbac import require_permission

bp = Blueprint("integrations", __name__)


@bp.get("/integrations")
@require_permission("integrations.view")
def integrations_index():
    results = run_all(db_session(), current_app.config)
    return render_template(
        "admin/integrations/index.html",
        results=results,
        health_score=health_score(results),
        checked_at=datetime.utcnow(),
    )


@bp.get("/integrations/check")
@require_permission("integrations.view")
def integrations_check_all():
    results = run_all(db_session(), current_app.config)
    return jsonify(
        {
            "results": results,
            "health_score": health_score(results),
            "checked_at": datetime.utcnow().isoformat(),
        }
    )


@bp.post("/integrations/check/<name>")
@require_permission("integrations.view")
def integrations_check_one(name: str):
    if name not in CHECKS:
        return jsonify({"error": f"Unknown integration '{name}'.", "available": list(CHECKS)}), 404
    s = db_session()
    result = run_check(name, s, current_app.config)
    record_event(
        s,
        actor=getattr(g, "current_user", None),
        action="integration.check",
        entity_type="Integration",
        entity_id=name,
        metadata={"status": result["status"]},
    )
    s.commit()
    return jsonify({"integration": name, "result": result})
