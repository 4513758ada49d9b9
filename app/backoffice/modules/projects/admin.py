from __future__ import annotations

from flask import Blueprint, abort, flash, g, redirect, render_template, request, url_for

from app.backoffice.audit import entity_history
from app.backoffice.db import db_session
from app.backoffice.models import User
from app.backoffice.modules.projects.models import Project, ProjectTask
from app.backoffice.modules.projects.service import (
    PRIORITIES,
    PROJECT_STATUSES,
    TASK_STATUSES,
    TASK_TYPES,
    ProjectRuleError,
    create_project,
    create_task,
    delete_project,
    delete_task,
    query_my_tasks,
    query_projects,
    task_counts,
    update_project,
    update_task,
    update_task_status,
    validate_project_payload,
    validate_task_payload,
)
from app.backoffice.rbac import require_permission
from app.backoffice.utils import page_urls, paginate, parse_int

bp = Blueprint("projects", __name__)

PER_PAGE = 15


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _staff_users():
    return db_session().query(User).filter(User.is_active.is_(True)).order_by(User.email.asc()).all()


def _get_project(project_id: int) -> Project:
    project = db_session().get(Project, project_id)
    if not project:
        abort(404)
    return project


def _get_task(project: Project, task_id: int) -> ProjectTask:
    task = db_session().get(ProjectTask, task_id)
    if not task or task.project_id != project.id:
        abort(404)
    return task


def _project_form_context(project: Project | None, form: dict) -> dict:
    return {
        "project": project,
        "form": form,
        "staff": _staff_users(),
        "statuses": PROJECT_STATUSES,
        "priorities": PRIORITIES,
    }


def _task_form_context(project: Project, task: ProjectTask | None, form: dict) -> dict:
    parents = [t for t in project.tasks if task is None or t.id != task.id]
    return {
        "project": project,
        "task": task,
        "form": form,
        "parents": parents,
        "staff": _staff_users(),
        "task_types": TASK_TYPES,
        "statuses": TASK_STATUSES,
        "priorities": PRIORITIES,
    }


# ============================================================================
# PROJECTS
# ============================================================================


@bp.get("/projects")
@require_permission("projects.view")
def projects_list():
    s = db_session()
    filters = {
        "q": (request.args.get("q") or "").strip(),
        "status": (request.args.get("status") or "").strip(),
        "priority": (request.args.get("priority") or "").strip(),
    }
    page = parse_int(request.args.get("page"), 1) or 1
    result = paginate(query_projects(s, filters), page=page, per_page=PER_PAGE)
    return render_template(
        "admin/projects/list.html",
        result=result,
        filters=filters,
        statuses=PROJECT_STATUSES,
        priorities=PRIORITIES,
        **page_urls("projects.projects_list", result, filters),
    )


@bp.get("/projects/new")
@require_permission("projects.create")
def projects_new_get():
    form = {"status": "planning", "priority": "medium", "owner_user_id": _current_user().id}
    return render_template("admin/projects/form.html", **_project_form_context(None, form))


@bp.post("/projects/new")
@require_permission("projects.create")
def projects_new_post():
    s = db_session()
    payload = request.form.to_dict()
    errors = validate_project_payload(s, payload)
    if errors:
        for e in errors:
            flash(e, "danger")
        return render_template("admin/projects/form.html", **_project_form_context(None, payload)), 400
    project = create_project(s, payload, _current_user())
    s.commit()
    flash(f"Project {project.code} created.", "success")
    return redirect(url_for("projects.project_detail", project_id=project.id))


@bp.get("/projects/<int:project_id>")
@require_permission("projects.view")
def project_detail(project_id: int):
    project = _get_project(project_id)
    return render_template(
        "admin/projects/detail.html",
        project=project,
        counts=task_counts(project),
        statuses=TASK_STATUSES,
        history=entity_history(db_session(), "Project", project.id),
    )


@bp.get("/projects/<int:project_id>/edit")
@require_permission("projects.edit")
def project_edit_get(project_id: int):
    project = _get_project(project_id)
    form = {
        "name": project.name,
        "code": project.code,
        "description": project.description or "",
        "status": project.status,
        "priority": project.priority,
        "start_date": project.start_date.isoformat() if project.start_date else "",
        "end_date": project.end_date.isoformat() if project.end_date else "",
        "budget": project.budget if project.budget is not None else "",
        "owner_user_id": project.owner_user_id or "",
    }
    return render_template("admin/projects/form.html", **_project_form_context(project, form))


@bp.post("/projects/<int:project_id>/edit")
@require_permission("projects.edit")
def project_edit_post(project_id: int):
    s = db_session()
    project = _get_project(project_id)
    payload = request.form.to_dict()
    errors = validate_project_payload(s, payload, project=project)
    if errors:
        for e in errors:
            flash(e, "danger")
        return render_template("admin/projects/form.html", **_project_form_context(project, payload)), 400
    update_project(s, project, payload, _current_user())
    s.commit()
    flash("Project updated successfully.", "success")
    return redirect(url_for("projects.project_detail", project_id=project.id))


@bp.post("/projects/<int:project_id>/delete")
@require_permission("projects.delete")
def project_delete(project_id: int):
    s = db_session()
    delete_project(s, _get_project(project_id), _current_user())
    s.commit()
    flash("Project deleted successfully.", "success")
    return redirect(url_for("projects.projects_list"))


# ============================================================================
# TASKS
# ============================================================================


@bp.get("/projects/<int:project_id>/tasks/new")
@require_permission("tasks.create")
def task_new_get(project_id: int):
    project = _get_project(project_id)
    form = {
        "type": "task",
        "status": "todo",
        "priority": "medium",
        "progress": "0",
        "parent_task_id": request.args.get("parent_id") or "",
    }
    return render_template("admin/projects/task_form.html", **_task_form_context(project, None, form))


@bp.post("/projects/<int:project_id>/tasks/new")
@require_permission("tasks.create")
def task_new_post(project_id: int):
    s = db_session()
    project = _get_project(project_id)
    payload = request.form.to_dict()
    errors = validate_task_payload(s, project, payload)
    if errors:
        for e in errors:
            flash(e, "danger")
        return render_template("admin/projects/task_form.html", **_task_form_context(project, None, payload)), 400
    task = create_task(s, project, payload, _current_user())
    s.commit()
    flash(f"Task '{task.title}' created.", "success")
    return redirect(url_for("projects.project_detail", project_id=project.id))


@bp.get("/projects/<int:project_id>/tasks/<int:task_id>/edit")
@require_permission("tasks.edit")
def task_edit_get(project_id: int, task_id: int):
    project = _get_project(project_id)
    task = _get_task(project, task_id)
    form = {
        "title": task.title,
        "description": task.description or "",
        "type": task.type,
        "status": task.status,
        "priority": task.priority,
        "parent_task_id": task.parent_task_id or "",
        "assigned_to_user_id": task.assigned_to_user_id or "",
        "start_date": task.start_date.isoformat() if task.start_date else "",
        "due_date": task.due_date.isoformat() if task.due_date else "",
        "progress": task.progress,
        "estimated_hours": task.estimated_hours if task.estimated_hours is not None else "",
        "actual_hours": task.actual_hours if task.actual_hours is not None else "",
        "sort_order": task.sort_order,
    }
    return render_template("admin/projects/task_form.html", **_task_form_context(project, task, form))


@bp.post("/projects/<int:project_id>/tasks/<int:task_id>/edit")
@require_permission("tasks.edit")
def task_edit_post(project_id: int, task_id: int):
    s = db_session()
    project = _get_project(project_id)
    task = _get_task(project, task_id)
    payload = request.form.to_dict()
    errors = validate_task_payload(s, project, payload, task=task)
    if errors:
        for e in errors:
            flash(e, "danger")
        return render_template("admin/projects/task_form.html", **_task_form_context(project, task, payload)), 400
    update_task(s, task, payload, _current_user())
    s.commit()
    flash("Task updated successfully.", "success")
    return redirect(url_for("projects.project_detail", project_id=project.id))


@bp.post("/projects/<int:project_id>/tasks/<int:task_id>/status")
@require_permission("tasks.edit")
def task_status(project_id: int, task_id: int):
    s = db_session()
    project = _get_project(project_id)
    task = _get_task(project, task_id)
    try:
        update_task_status(
            s, task, (request.form.get("status") or "").strip(), _current_user(), request.form.get("progress")
        )
    except ProjectRuleError as e:
        flash(str(e), "danger")
    else:
        s.commit()
        flash("Task status updated successfully.", "success")
    nxt = request.form.get("next")
    if nxt == "my_tasks":
        return redirect(url_for("projects.my_tasks"))
    return redirect(url_for("projects.project_detail", project_id=project.id))


@bp.post("/projects/<int:project_id>/tasks/<int:task_id>/delete")
@require_permission("tasks.delete")
def task_delete(project_id: int, task_id: int):
    s = db_session()
    project = _get_project(project_id)
    delete_task(s, _get_task(project, task_id), _current_user())
    s.commit()
    flash("Task deleted successfully.", "success")
    return redirect(url_for("projects.project_detail", project_id=project.id))


@bp.get("/my-tasks")
@require_permission("tasks.view")
def my_tasks():
    s = db_session()
    filters = {
        "status": (request.args.get("status") or "").strip(),
        "overdue": "1" if request.args.get("overdue") in ("1", "on", "true") else "",
    }
    page = parse_int(request.args.get("page"), 1) or 1
    result = paginate(query_my_tasks(s, _current_user(), filters), page=page, per_page=PER_PAGE)
    return render_template(
        "admin/projects/my_tasks.html",
        result=result,
        filters=filters,
        statuses=TASK_STATUSES,
        **page_urls("projects.my_tasks", result, filters),
    )
