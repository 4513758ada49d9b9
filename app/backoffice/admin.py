from datetime import date, datetime, time, timedelta

from flask import Blueprint, current_app, flash, g, render_template, request
from sqlalchemy import func, text
from sqlalchemy.exc import SQLAlchemyError

from app.backoffice.db import db_session
from app.backoffice.models import AuditEvent
from app.backoffice.modules.chat.models import ChatSession
from app.backoffice.modules.finance.models import BankStatement, Expense, Invoice
from app.backoffice.modules.inquiries.models import GuestInquiry
from app.backoffice.modules.projects.models import Project, ProjectTask
from app.backoffice.modules.support.models import Ticket
from app.backoffice.rbac import permission_keys, require_permission
from app.backoffice.utils import page_urls, paginate, parse_date, parse_int

bp = Blueprint("admin", __name__)

AUDIT_PER_PAGE = 50


def _work_queue(s, user) -> list[tuple[str, int]]:
    """Counters for the dashboard, limited to the areas the viewer may open."""
    granted = permission_keys(user)
    today = date.today()
    rows: list[tuple[str, str, object]] = [
        (
            "inquiries.view",
            "Open inquiries",
            s.query(func.count(GuestInquiry.id)).filter(GuestInquiry.status.in_(("new", "in_progress"))),
        ),
        ("chat.view", "Chats waiting", s.query(func.count(ChatSession.id)).filter(ChatSession.status == "waiting")),
        (
            "tickets.view",
            "Unassigned tickets",
            s.query(func.count(Ticket.id)).filter(
                Ticket.assigned_to_user_id.is_(None), Ticket.status.notin_(("resolved", "closed"))
            ),
        ),
        (
            "tickets.view",
            "My open tickets",
            s.query(func.count(Ticket.id)).filter(
                Ticket.assigned_to_user_id == user.id, Ticket.status.notin_(("resolved", "closed"))
            ),
        ),
        (
            "tasks.view",
            "My open tasks",
            s.query(func.count(ProjectTask.id)).filter(
                ProjectTask.assigned_to_user_id == user.id,
                ProjectTask.status.notin_(("done", "cancelled")),
            ),
        ),
        (
            "tasks.view",
            "My overdue tasks",
            s.query(func.count(ProjectTask.id)).filter(
                ProjectTask.assigned_to_user_id == user.id,
                ProjectTask.status.notin_(("done", "cancelled")),
                ProjectTask.due_date < today,
            ),
        ),
        ("projects.view", "Active projects", s.query(func.count(Project.id)).filter(Project.status == "active")),
        ("invoices.view", "Draft invoices", s.query(func.count(Invoice.id)).filter(Invoice.status == "draft")),
        ("expenses.view", "Expenses awaiting approval", s.query(func.count(Expense.id)).filter(Expense.status == "pending")),
        (
            "bank_statements.view",
            "Failed statement imports",
            s.query(func.count(BankStatement.id)).filter(
                BankStatement.user_id == user.id, BankStatement.status == "failed"
            ),
        ),
    ]
    return [(label, q.scalar() or 0) for key, label, q in rows if key in granted]


@bp.get("/")
@require_permission("admin.view")
def index():
    s = db_session()
    cfg = current_app.config
    system = {
        "env": (cfg.get("ENV") or "development").lower(),
        "storage_backend": (cfg.get("STORAGE_BACKEND") or "local").lower(),
        "cache_backend": (cfg.get("CACHE_BACKEND") or "simple").lower(),
        "db_error": None,
    }
    try:
        s.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        s.rollback()
        system["db_error"] = str(e)
        current_app.logger.error("Dashboard database check failed: %s", e)
        return render_template("admin/index.html", system=system, queue=[])
    return render_template("admin/index.html", system=system, queue=_work_queue(s, g.current_user))


@bp.get("/me")
@require_permission("admin.view")
def me():
    user = g.current_user
    return render_template(
        "admin/me.html",
        user=user,
        role_keys=sorted(r.key for r in user.roles),
        perm_keys=sorted(permission_keys(user)),
    )


@bp.get("/audit")
@require_permission("audit.view")
def audit_list():
    s = db_session()
    filters = {
        "action": (request.args.get("action") or "").strip(),
        "actor_email": (request.args.get("actor_email") or "").strip().lower(),
        "entity_type": (request.args.get("entity_type") or "").strip(),
        "date_from": (request.args.get("date_from") or "").strip(),
        "date_to": (request.args.get("date_to") or "").strip(),
    }

    q = s.query(AuditEvent)
    if filters["action"]:
        q = q.filter(AuditEvent.action.like(f"%{filters['action']}%"))
    if filters["actor_email"]:
        q = q.filter(AuditEvent.actor_user_email.like(f"%{filters['actor_email']}%"))
    if filters["entity_type"]:
        q = q.filter(AuditEvent.entity_type == filters["entity_type"])
    for field in ("date_from", "date_to"):
        raw = filters[field]
        if not raw:
            continue
        day = parse_date(raw)
        if day is None:
            flash(f"{field} must be YYYY-MM-DD", "danger")
        elif field == "date_from":
            q = q.filter(AuditEvent.created_at >= datetime.combine(day, time.min))
        else:
            q = q.filter(AuditEvent.created_at < datetime.combine(day + timedelta(days=1), time.min))

    entity_types = [row[0] for row in s.query(AuditEvent.entity_type).distinct().order_by(AuditEvent.entity_type) if row[0]]
    page = paginate(
        q.order_by(AuditEvent.created_at.desc(), AuditEvent.id.desc()),
        page=parse_int(request.args.get("page"), 1) or 1,
        per_page=AUDIT_PER_PAGE,
    )
    return render_template(
        "admin/audit/list.html",
        page=page,
        filters=filters,
        entity_types=entity_types,
        **page_urls("admin.audit_list", page, filters),
    )
