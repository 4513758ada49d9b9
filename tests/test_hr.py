from datetime import date

import pytest

from app.backoffice.db import session_scope
from app.backoffice.models import User
from app.backoffice.modules.hr.models import Department, Employee
from app.backoffice.modules.hr.service import (
    HRRuleError,
    create_department,
    create_employee,
    delete_department,
    next_employee_number,
    query_employees,
    set_department_active,
    set_employee_active,
    terminate_employee,
    validate_department_payload,
    validate_employee_payload,
)

from conftest import login, post, user_id


def _users(s):
    admin = s.query(User).filter(User.email == "admin@example.com").one()
    staff = s.query(User).filter(User.email == "staff@example.com").one()
    return admin, staff


def _hire(s, user, actor, **extra):
    payload = {"user_id": str(user.id), "job_title": "Engineer", "hire_date": "2024-01-15", **extra}
    return create_employee(s, payload, actor)


def test_department_code_rules(app):
    with session_scope(app) as s:
        admin, _ = _users(s)
        eng = create_department(s, {"name": "Engineering", "code": "eng", "budget": "250000"}, admin)
        s.flush()
        assert eng.code == "ENG"
        assert eng.is_active is True
        assert str(eng.budget) == "250000.00"

        errors = validate_department_payload(s, {"name": "Engineers", "code": "Eng"})
        assert "Department code ENG is already in use." in errors
        assert validate_department_payload(s, {"name": "Engineering", "code": "ENG"}, department=eng) == []

        errors = validate_department_payload(s, {"name": "", "code": "WAYTOOLONG1", "budget": "-1"})
        assert "Name is required." in errors
        assert "Code must be at most 10 letters, digits, dashes or underscores." in errors
        assert "Budget must be zero or more." in errors


def test_department_cannot_move_under_itself_or_descendants(app):
    with session_scope(app) as s:
        admin, _ = _users(s)
        top = create_department(s, {"name": "Operations", "code": "OPS"}, admin)
        s.flush()
        mid = create_department(s, {"name": "Logistics", "code": "LOG", "parent_department_id": str(top.id)}, admin)
        s.flush()
        leaf = create_department(s, {"name": "Fleet", "code": "FLT", "parent_department_id": str(mid.id)}, admin)
        s.flush()
        assert leaf.full_path == "Operations / Logistics / Fleet"

        circular = "Cannot set a child department as parent (circular reference)."
        for parent in (leaf, mid, top):
            errors = validate_department_payload(
                s, {"name": "Operations", "code": "OPS", "parent_department_id": str(parent.id)}, department=top
            )
            assert circular in errors
        assert validate_department_payload(
            s, {"name": "Fleet", "code": "FLT", "parent_department_id": str(top.id)}, department=leaf
        ) == []


def test_department_delete_and_deactivate_guards(app):
    with session_scope(app) as s:
        admin, staff = _users(s)
        parent = create_department(s, {"name": "Sales", "code": "SAL"}, admin)
        s.flush()
        child = create_department(s, {"name": "Inside Sales", "code": "ISL", "parent_department_id": str(parent.id)}, admin)
        s.flush()
        with pytest.raises(HRRuleError, match="child departments"):
            delete_department(s, parent, admin)

        employee = _hire(s, staff, admin, department_id=str(child.id))
        s.flush()
        with pytest.raises(HRRuleError, match="Cannot delete department with active employees."):
            delete_department(s, child, admin)
        with pytest.raises(HRRuleError, match="Cannot deactivate department with active employees."):
            set_department_active(s, child, False, admin)

        terminate_employee(s, employee, admin, "Moved on")
        set_department_active(s, child, False, admin)
        assert child.is_active is False
        delete_department(s, child, admin)
        s.flush()
        assert s.get(Department, child.id) is None
        assert s.get(Employee, employee.id).department_id is None


def test_employee_numbers_and_validation(app):
    with session_scope(app) as s:
        admin, staff = _users(s)
        assert next_employee_number(s) == "EMP-0001"
        first = _hire(s, staff, admin, salary="52000", salary_currency="eur")
        s.flush()
        assert first.employee_number == "EMP-0001"
        assert first.salary_currency == "EUR"
        assert first.employment_status == "active"
        assert first.full_name == "Staff Member"
        assert next_employee_number(s) == "EMP-0002"

        errors = validate_employee_payload(
            s,
            {
                "user_id": str(staff.id),
                "job_title": "",
                "employment_type": "freelance",
                "hire_date": "2024-03-01",
                "probation_end_date": "2024-02-01",
                "salary": "NaN",
                "salary_currency": "US",
                "phone": "1" * 21,
            },
        )
        assert "This user already has an employee record." in errors
        assert "Job title is required." in errors
        assert "Invalid employment type." in errors
        assert "Probation end date must be after the hire date." in errors
        assert "Salary must be zero or more." in errors
        assert "Salary currency must be a 3-letter code." in errors
        assert "Phone must be at most 20 characters." in errors

        errors = validate_employee_payload(s, {"user_id": str(admin.id), "job_title": "CEO"})
        assert errors == ["Hire date is required (YYYY-MM-DD)."]


def test_employee_cannot_report_to_own_reports(app):
    with session_scope(app) as s:
        admin, staff = _users(s)
        boss = _hire(s, admin, admin, job_title="Director")
        s.flush()
        report = _hire(s, staff, admin, manager_employee_id=str(boss.id))
        s.flush()
        assert report.manager is boss

        base = {"job_title": "Director", "hire_date": "2024-01-15"}
        cycle = "An employee cannot report to themselves or their own reports."
        assert cycle in validate_employee_payload(s, {**base, "manager_employee_id": str(report.id)}, employee=boss)
        assert cycle in validate_employee_payload(s, {**base, "manager_employee_id": str(boss.id)}, employee=boss)
        assert validate_employee_payload(s, {**base, "manager_employee_id": str(boss.id)}, employee=report) == []


def test_terminate_and_reactivate_employee(app):
    with session_scope(app) as s:
        admin, staff = _users(s)
        employee = _hire(s, staff, admin)
        s.flush()
        terminate_employee(s, employee, admin, "Contract ended")
        assert employee.employment_status == "terminated"
        assert employee.termination_date == date.today()
        assert employee.termination_reason == "Contract ended"
        with pytest.raises(HRRuleError):
            terminate_employee(s, employee, admin)

        set_employee_active(s, employee, True, admin)
        assert employee.employment_status == "active"
        assert employee.termination_date is None
        assert employee.termination_reason is None
        set_employee_active(s, employee, False, admin)
        assert employee.employment_status == "inactive"


def test_query_employees_filters(app):
    with session_scope(app) as s:
        admin, staff = _users(s)
        eng = create_department(s, {"name": "Engineering", "code": "ENG"}, admin)
        s.flush()
        _hire(s, admin, admin, job_title="CTO", employment_type="contract", department_id=str(eng.id))
        _hire(s, staff, admin, job_title="Support agent", employment_type="part_time")
        s.flush()
        assert [e.job_title for e in query_employees(s, {"q": "staff@"}).all()] == ["Support agent"]
        assert [e.job_title for e in query_employees(s, {"q": "emp-0001"}).all()] == ["CTO"]
        assert [e.job_title for e in query_employees(s, {"department_id": str(eng.id)}).all()] == ["CTO"]
        assert [e.job_title for e in query_employees(s, {"type": "part_time"}).all()] == ["Support agent"]
        assert query_employees(s, {"status": "terminated"}).count() == 0


def test_hr_pages(client, app):
    login(client)
    r = post(client, "/admin/hr/departments/new", {"name": "Engineering", "code": ""})
    assert r.status_code == 400
    assert b"Code is required." in r.data

    r = post(client, "/admin/hr/departments/new", {"name": "Engineering", "code": "eng"})
    assert r.status_code == 302
    r = post(client, "/admin/hr/departments/new", {"name": "Platform", "code": "plt"})
    assert r.status_code == 302
    with session_scope(app) as s:
        eng_id = s.query(Department).filter(Department.code == "ENG").one().id
        plt_id = s.query(Department).filter(Department.code == "PLT").one().id
    r = post(
        client,
        f"/admin/hr/departments/{plt_id}/edit",
        {"name": "Platform", "code": "PLT", "parent_department_id": str(eng_id)},
    )
    assert r.status_code == 302
    assert b"ENG" in client.get("/admin/hr/departments").data

    chart = client.get(f"/admin/hr/departments/{eng_id}/org-chart").get_json()
    assert chart["code"] == "ENG"
    assert [c["code"] for c in chart["children"]] == ["PLT"]

    staff_id = user_id(app, "staff@example.com")
    r = post(
        client,
        "/admin/hr/employees/new",
        {"user_id": str(staff_id), "job_title": "Engineer", "hire_date": "2024-05-01", "department_id": str(plt_id)},
    )
    assert r.status_code == 302
    r = client.get("/admin/hr/employees")
    assert b"EMP-0001" in r.data
    assert b"Staff Member" in r.data

    with session_scope(app) as s:
        emp_id = s.query(Employee).one().id
    r = post(client, f"/admin/hr/departments/{plt_id}/delete", follow_redirects=True)
    assert b"Cannot delete department with active employees." in r.data
    r = post(client, f"/admin/hr/employees/{emp_id}/terminate", {"termination_reason": "Restructure"}, follow_redirects=True)
    assert b"Employee terminated successfully." in r.data
    with session_scope(app) as s:
        assert s.get(Employee, emp_id).employment_status == "terminated"


def test_staff_sees_departments_but_not_employee_records(client):
    login(client, email="staff@example.com")
    assert client.get("/admin/hr/departments").status_code == 200
    assert client.get("/admin/hr/employees").status_code == 403
    assert post(client, "/admin/hr/departments/new", {"name": "Rogue", "code": "RGE"}).status_code == 403
