from datetime import date, timedelta

import pytest

from app.backoffice.db import session_scope
from app.backoffice.models import User
from app.backoffice.modules.projects.models import Project, ProjectTask
from app.backoffice.modules.projects.service import (
    ProjectRuleError,
    create_project,
    create_task,
    suggest_project_code,
    update_task_status,
    validate_project_payload,
    validate_task_payload,
)

from conftest import login, post, user_id


def _users(s):
    admin = s.query(User).filter(User.email == "admin@example.com").one()
    staff = s.query(User).filter(User.email == "staff@example.com").one()
    return admin, staff


def _project(app, name="Website Redesign", **extra) -> int:
    with session_scope(app) as s:
        admin, _ = _users(s)
        return create_project(s, {"name": name, **extra}, admin).id


def test_suggest_project_code(app):
    with session_scope(app) as s:
        assert suggest_project_code(s, "Website Redesign") == "WR-001"
        assert suggest_project_code(s, "") == "PRJ-001"
        admin, _ = _users(s)
        create_project(s, {"name": "Website Redesign"}, admin)
        s.flush()
        assert suggest_project_code(s, "Web Refresh") == "WR-002"


def test_create_project_defaults(app):
    with session_scope(app) as s:
        admin, _ = _users(s)
        project = create_project(s, {"name": "Data Warehouse", "budget": "1500"}, admin)
        assert project.code == "DW-001"
        assert project.status == "planning"
        assert project.priority == "medium"
        assert project.owner_user_id == admin.id
        assert str(project.budget) == "1500.00"


def test_validate_project_payload(app):
    with session_scope(app) as s:
        admin, _ = _users(s)
        create_project(s, {"name": "Alpha", "code": "alpha"}, admin)
        s.flush()
        errors = validate_project_payload(
            s,
            {
                "name": "",
                "code": "ALPHA",
                "status": "dreaming",
                "start_date": "2026-05-01",
                "end_date": "2026-04-01",
                "budget": "-5",
                "owner_user_id": "9999",
            },
        )
    assert "Name is required." in errors
    assert "Project code ALPHA is already in use." in errors
    assert "Invalid project status." in errors
    assert "End date must be on or after the start date." in errors
    assert "Budget must be zero or more." in errors
    assert "Owner not found." in errors


def test_project_routes(client, app):
    login(client)
    r = post(client, "/admin/projects/new", data={"name": "Mobile App", "priority": "high"}, follow_redirects=True)
    assert b"Project MA-001 created." in r.data

    r = client.get("/admin/projects?priority=high")
    assert b"Mobile App" in r.data
    r = client.get("/admin/projects?q=nothing-like-this")
    assert b"Mobile App" not in r.data

    r = post(client, "/admin/projects/new", data={"name": ""})
    assert r.status_code == 400
    assert b"Name is required." in r.data

    with session_scope(app) as s:
        project_id = s.query(Project).filter(Project.code == "MA-001").one().id
    r = post(
        client,
        f"/admin/projects/{project_id}/edit",
        data={"name": "Mobile App v2", "status": "active", "priority": "high"},
        follow_redirects=True,
    )
    assert b"Project updated successfully." in r.data
    r = post(client, f"/admin/projects/{project_id}/delete", follow_redirects=True)
    assert b"Project deleted successfully." in r.data
    with session_scope(app) as s:
        assert s.get(Project, project_id) is None


def test_staff_can_view_but_not_create_projects(client, app):
    _project(app)
    login(client, email="staff@example.com")
    assert client.get("/admin/projects").status_code == 200
    r = post(client, "/admin/projects/new", data={"name": "Sneaky"})
    assert r.status_code == 403


def test_task_lifecycle_and_progress(client, app):
    project_id = _project(app)
    staff_id = user_id(app, "staff@example.com")
    login(client)
    for title in ("Wireframes", "Build pages"):
        r = post(
            client,
            f"/admin/projects/{project_id}/tasks/new",
            data={"title": title, "assigned_to_user_id": str(staff_id)},
            follow_redirects=True,
        )
        assert r.status_code == 200
        assert title.encode() in r.data

    with session_scope(app) as s:
        tasks = s.query(ProjectTask).filter(ProjectTask.project_id == project_id).order_by(ProjectTask.sort_order).all()
        assert [t.sort_order for t in tasks] == [1, 2]
        first_id = tasks[0].id

    r = post(
        client,
        f"/admin/projects/{project_id}/tasks/{first_id}/status",
        data={"status": "done"},
        follow_redirects=True,
    )
    assert b"Task status updated successfully." in r.data
    with session_scope(app) as s:
        task = s.get(ProjectTask, first_id)
        assert task.progress == 100
        assert task.completed_date == date.today()
        assert s.get(Project, project_id).progress == 50

    r = post(client, f"/admin/projects/{project_id}/tasks/{first_id}/status", data={"status": "sleeping"}, follow_redirects=True)
    assert b"Invalid task status." in r.data


def test_status_rules(app):
    project_id = _project(app)
    with session_scope(app) as s:
        admin, _ = _users(s)
        task = create_task(s, s.get(Project, project_id), {"title": "Wireframes"}, admin)
        update_task_status(s, task, "todo", admin, progress="30")
        # progress on a todo task moves it along
        assert task.status == "in-progress"

        update_task_status(s, task, "done", admin)
        assert task.completed_date is not None
        update_task_status(s, task, "review", admin)
        assert task.completed_date is None

        with pytest.raises(ProjectRuleError):
            update_task_status(s, task, "review", admin, progress="150")


def test_task_cannot_nest_under_its_subtask(app):
    project_id = _project(app)
    with session_scope(app) as s:
        admin, _ = _users(s)
        project = s.get(Project, project_id)
        parent = create_task(s, project, {"title": "Epic"}, admin)
        child = create_task(s, project, {"title": "Story", "parent_task_id": str(parent.id)}, admin)
        errors = validate_task_payload(s, project, {"title": "Epic", "parent_task_id": str(child.id)}, task=parent)
        assert "A task cannot be nested under itself or its subtasks." in errors

        other = create_project(s, {"name": "Other"}, admin)
        foreign = create_task(s, other, {"title": "Elsewhere"}, admin)
        errors = validate_task_payload(s, project, {"title": "x", "parent_task_id": str(foreign.id)})
        assert "Parent task must belong to the same project." in errors


def test_deleting_task_promotes_subtasks(client, app):
    project_id = _project(app)
    with session_scope(app) as s:
        admin, _ = _users(s)
        project = s.get(Project, project_id)
        parent = create_task(s, project, {"title": "Epic"}, admin)
        child = create_task(s, project, {"title": "Story", "parent_task_id": str(parent.id)}, admin)
        parent_id, child_id = parent.id, child.id
    login(client)
    r = post(client, f"/admin/projects/{project_id}/tasks/{parent_id}/delete", follow_redirects=True)
    assert b"Task deleted successfully." in r.data
    with session_scope(app) as s:
        assert s.get(ProjectTask, parent_id) is None
        assert s.get(ProjectTask, child_id).parent_task_id is None


def test_my_tasks(client, app):
    project_id = _project(app)
    yesterday = (date.today() - timedelta(days=1)).isoformat()
    with session_scope(app) as s:
        admin, staff = _users(s)
        project = s.get(Project, project_id)
        create_task(s, project, {"title": "Late report", "assigned_to_user_id": str(staff.id), "due_date": yesterday}, admin)
        create_task(s, project, {"title": "Finished thing", "assigned_to_user_id": str(staff.id), "status": "done"}, admin)
        create_task(s, project, {"title": "Someone else's", "assigned_to_user_id": str(admin.id)}, admin)

    login(client, email="staff@example.com")
    r = client.get("/admin/my-tasks")
    assert r.status_code == 200
    assert b"Late report" in r.data
    assert b"Finished thing" not in r.data
    assert b"Someone else" not in r.data

    r = client.get("/admin/my-tasks?status=all")
    assert b"Finished thing" in r.data

    r = client.get("/admin/my-tasks?overdue=1")
    assert b"Late report" in r.data
    assert b"<strong>overdue</strong>" in r.data
