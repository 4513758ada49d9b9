from __future__ import annotations

import re
from datetime import date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, or_

from app.backoffice.audit import record_event
from app.backoffice.models import User
from app.backoffice.modules.projects.models import Project, ProjectTask
from app.backoffice.utils import clean, money, parse_date, parse_decimal, parse_int

if TYPE_CHECKING:
    from sqlalchemy.orm import Query, Session

PROJECT_STATUSES = ("planning", "active", "on_hold", "completed", "cancelled")
PRIORITIES = ("low", "medium", "high", "critical")
TASK_TYPES = ("task", "issue", "bug", "feature", "improvement")
TASK_STATUSES = ("todo", "in-progress", "review", "testing", "done", "cancelled")
MAX_HOURS = Decimal("1e6")


class ProjectRuleError(ValueError):
    pass


def _user_exists(s: "Session", raw: Any) -> bool:
    uid = parse_int(raw)
    return uid is None or s.get(User, uid) is not None


# ============================================================================
# PROJECTS
# ============================================================================


def suggest_project_code(s: "Session", name: str) -> str:
    """Initials of the name (up to 4 letters) plus a 3-digit sequence, e.g. WR-001."""
    letters = "".join(w[0] for w in re.findall(r"[A-Za-z0-9]+", name or ""))[:4].upper() or "PRJ"
    n = 1
    while True:
        code = f"{letters}-{n:03d}"
        if not s.query(Project.id).filter(Project.code == code).first():
            return code
        n += 1


def validate_project_payload(s: "Session", payload: dict, project: Project | None = None) -> list[str]:
    errors: list[str] = []
    if not clean(payload.get("name")):
        errors.append("Name is required.")
    code = clean(payload.get("code"))
    if code:
        if not re.match(r"^[A-Za-z0-9_-]{2,32}$", code):
            errors.append("Code must be 2-32 letters, digits, dashes or underscores.")
        q = s.query(Project.id).filter(func.upper(Project.code) == code.upper())
        if project is not None:
            q = q.filter(Project.id != project.id)
        if q.first():
            errors.append(f"Project code {code.upper()} is already in use.")
    if (payload.get("status") or "planning") not in PROJECT_STATUSES:
        errors.append("Invalid project status.")
    if (payload.get("priority") or "medium") not in PRIORITIES:
        errors.append("Invalid priority.")

    start = parse_date(payload.get("start_date"))
    end = parse_date(payload.get("end_date"))
    if clean(payload.get("start_date")) and start is None:
        errors.append("Start date must be YYYY-MM-DD.")
    if clean(payload.get("end_date")) and end is None:
        errors.append("End date must be YYYY-MM-DD.")
    if start and end and end < start:
        errors.append("End date must be on or after the start date.")

    if clean(payload.get("budget")) is not None:
        budget = parse_decimal(payload.get("budget"))
        if budget is None or budget < 0:
            errors.append("Budget must be zero or more.")
    if not _user_exists(s, payload.get("owner_user_id")):
        errors.append("Owner not found.")
    return errors


def _apply_project_fields(project: Project, payload: dict) -> None:
    project.name = clean(payload.get("name"))
    project.description = clean(payload.get("description"))
    project.status = payload.get("status") or "planning"
    project.priority = payload.get("priority") or "medium"
    project.start_date = parse_date(payload.get("start_date"))
    project.end_date = parse_date(payload.get("end_date"))
    budget = parse_decimal(payload.get("budget"))
    project.budget = money(budget) if budget is not None else None
    project.owner_user_id = parse_int(payload.get("owner_user_id"))


def create_project(s: "Session", payload: dict, user: User) -> Project:
    project = Project(created_by_user_id=user.id)
    _apply_project_fields(project, payload)
    project.code = (clean(payload.get("code")) or suggest_project_code(s, project.name)).upper()
    if project.owner_user_id is None:
        project.owner_user_id = user.id
    s.add(project)
    s.flush()
    record_event(
        s,
        actor=user,
        action="project.create",
        entity_type="Project",
        entity_id=str(project.id),
        metadata={"code": project.code, "name": project.name},
    )
    return project


def update_project(s: "Session", project: Project, payload: dict, actor: User) -> Project:
    before = {"status": project.status, "priority": project.priority}
    _apply_project_fields(project, payload)
    code = clean(payload.get("code"))
    if code:
        project.code = code.upper()
    project.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=actor,
        action="project.update",
        entity_type="Project",
        entity_id=str(project.id),
        metadata={"before": before, "after": {"status": project.status, "priority": project.priority}},
    )
    return project


def delete_project(s: "Session", project: Project, actor: User) -> None:
    record_event(
        s,
        actor=actor,
        action="project.delete",
        entity_type="Project",
        entity_id=str(project.id),
        metadata={"code": project.code, "tasks": len(project.tasks)},
    )
    s.delete(project)


def query_projects(s: "Session", filters: dict[str, str]) -> "Query":
    q = s.query(Project)
    if filters.get("q"):
        like = f"%{filters['q']}%"
        q = q.filter(or_(Project.name.ilike(like), Project.code.ilike(like), Project.description.ilike(like)))
    if filters.get("status") in PROJECT_STATUSES:
        q = q.filter(Project.status == filters["status"])
    if filters.get("priority") in PRIORITIES:
        q = q.filter(Project.priority == filters["priority"])
    return q.order_by(Project.created_at.desc())


def task_counts(project: Project) -> dict[str, int]:
    counts = {st: 0 for st in TASK_STATUSES}
    for t in project.tasks:
        counts[t.status] = counts.get(t.status, 0) + 1
    counts["total"] = len(project.tasks)
    counts["overdue"] = sum(1 for t in project.tasks if t.is_overdue)
    return counts


# ============================================================================
# TASKS
# ============================================================================


def validate_task_payload(s: "Session", project: Project, payload: dict, task: ProjectTask | None = None) -> list[str]:
    errors: list[str] = []
    if not clean(payload.get("title")):
        errors.append("Title is required.")
    if (payload.get("type") or "task") not in TASK_TYPES:
        errors.append("Invalid task type.")
    if (payload.get("status") or "todo") not in TASK_STATUSES:
        errors.append("Invalid task status.")
    if (payload.get("priority") or "medium") not in PRIORITIES:
        errors.append("Invalid priority.")

    start = parse_date(payload.get("start_date"))
    due = parse_date(payload.get("due_date"))
    if start and due and due < start:
        errors.append("Due date must be on or after the start date.")

    if clean(payload.get("progress")) is not None:
        progress = parse_int(payload.get("progress"))
        if progress is None or not 0 <= progress <= 100:
            errors.append("Progress must be between 0 and 100.")
    for field, label in (("estimated_hours", "Estimated hours"), ("actual_hours", "Actual hours")):
        if clean(payload.get(field)) is not None:
            hours = parse_decimal(payload.get(field), max_abs=MAX_HOURS)
            if hours is None or hours < 0:
                errors.append(f"{label} must be zero or more.")

    parent_id = parse_int(payload.get("parent_task_id"))
    if parent_id is not None:
        parent = s.get(ProjectTask, parent_id)
        if parent is None or parent.project_id != project.id:
            errors.append("Parent task must belong to the same project.")
        elif task is not None:
            node = parent
            while node is not None:
                if node.id == task.id:
                    errors.append("A task cannot be nested under itself or its subtasks.")
                    break
                node = node.parent
    if not _user_exists(s, payload.get("assigned_to_user_id")):
        errors.append("Assignee not found.")
    return errors


def _next_sort_order(s: "Session", project: Project) -> int:
    current = s.query(func.max(ProjectTask.sort_order)).filter(ProjectTask.project_id == project.id).scalar()
    return (current or 0) + 1


def _apply_status(task: ProjectTask, status: str, progress: int | None = None) -> None:
    if progress is not None:
        task.progress = progress
    if status == "done":
        task.status = "done"
        task.progress = 100
        task.completed_date = task.completed_date or date.today()
        return
    task.status = status
    task.completed_date = None
    if task.status == "todo" and task.progress > 0:
        task.status = "in-progress"


def _apply_task_fields(task: ProjectTask, payload: dict) -> None:
    task.title = clean(payload.get("title"))
    task.description = clean(payload.get("description"))
    task.type = payload.get("type") or "task"
    task.priority = payload.get("priority") or "medium"
    task.parent_task_id = parse_int(payload.get("parent_task_id"))
    task.assigned_to_user_id = parse_int(payload.get("assigned_to_user_id"))
    task.start_date = parse_date(payload.get("start_date"))
    task.due_date = parse_date(payload.get("due_date"))
    task.estimated_hours = parse_decimal(payload.get("estimated_hours"), max_abs=MAX_HOURS)
    task.actual_hours = parse_decimal(payload.get("actual_hours"), max_abs=MAX_HOURS)
    _apply_status(task, payload.get("status") or "todo", parse_int(payload.get("progress")))


def create_task(s: "Session", project: Project, payload: dict, user: User) -> ProjectTask:
    task = ProjectTask(project=project, created_by_user_id=user.id, progress=0)
    _apply_task_fields(task, payload)
    task.sort_order = parse_int(payload.get("sort_order")) or _next_sort_order(s, project)
    s.add(task)
    s.flush()
    record_event(
        s,
        actor=user,
        action="task.create",
        entity_type="ProjectTask",
        entity_id=str(task.id),
        metadata={"project_id": project.id, "title": task.title},
    )
    return task


def update_task(s: "Session", task: ProjectTask, payload: dict, actor: User) -> ProjectTask:
    before = {"status": task.status, "assignee": task.assigned_to_user_id}
    _apply_task_fields(task, payload)
    sort_order = parse_int(payload.get("sort_order"))
    if sort_order is not None:
        task.sort_order = sort_order
    task.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=actor,
        action="task.update",
        entity_type="ProjectTask",
        entity_id=str(task.id),
        metadata={"before": before, "after": {"status": task.status, "assignee": task.assigned_to_user_id}},
    )
    return task


def update_task_status(s: "Session", task: ProjectTask, status: str, actor: User, progress: Any = None) -> ProjectTask:
    if status not in TASK_STATUSES:
        raise ProjectRuleError("Invalid task status.")
    new_progress = parse_int(progress)
    if new_progress is not None and not 0 <= new_progress <= 100:
        raise ProjectRuleError("Progress must be between 0 and 100.")
    old = task.status
    _apply_status(task, status, new_progress)
    task.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=actor,
        action="task.status",
        entity_type="ProjectTask",
        entity_id=str(task.id),
        metadata={"from": old, "to": task.status, "progress": task.progress},
    )
    return task


def delete_task(s: "Session", task: ProjectTask, actor: User) -> None:
    # Subtasks move up to the deleted task's parent.
    for sub in s.query(ProjectTask).filter(ProjectTask.parent_task_id == task.id).all():
        sub.parent_task_id = task.parent_task_id
    record_event(
        s,
        actor=actor,
        action="task.delete",
        entity_type="ProjectTask",
        entity_id=str(task.id),
        metadata={"project_id": task.project_id, "title": task.title},
    )
    s.delete(task)


def query_my_tasks(s: "Session", user: User, filters: dict[str, str]) -> "Query":
    q = s.query(ProjectTask).filter(ProjectTask.assigned_to_user_id == user.id)
    if filters.get("status") in TASK_STATUSES:
        q = q.filter(ProjectTask.status == filters["status"])
    elif filters.get("status") != "all":
        q = q.filter(ProjectTask.status.notin_(("done", "cancelled")))
    if filters.get("overdue") == "1":
        q = q.filter(
            ProjectTask.due_date < date.today(),
            ProjectTask.status.notin_(("done", "cancelled")),
        )
    return q.order_by(ProjectTask.due_date.is_(None), ProjectTask.due_date.asc(), ProjectTask.id.asc())
