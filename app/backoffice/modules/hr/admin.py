from __future__ import annotations

from flask import Blueprint, abort, flash, g, jsonify, redirect, render_template, request, url_for
from sqlalchemy import select

from app.backoffice.audit import entity_history
from app.backoffice.db import db_session
from app.backoffice.models import User
from app.backoffice.modules.hr.models import Department, Employee
from app.backoffice.modules.hr.service import (
    EMPLOYMENT_STATUSES,
    EMPLOYMENT_TYPES,
    PAY_FREQUENCIES,
    HRRuleError,
    create_department,
    create_employee,
    delete_department,
    department_stats,
    org_chart,
    query_departments,
    query_employees,
    set_department_active,
    set_employee_active,
    terminate_employee,
    update_department,
    update_employee,
    validate_department_payload,
    validate_employee_payload,
)
from app.backoffice.rbac import require_permission
from app.backoffice.utils import page_urls, paginate, parse_int

bp = Blueprint("hr", __name__)

PER_PAGE = 15


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _staff_users():
    return db_session().query(User).filter(User.is_active.is_(True)).order_by(User.email.asc()).all()


def _get_department(department_id: int) -> Department:
    department = db_session().get(Department, department_id)
    if not department:
        abort(404)
    return department


def _get_employee(employee_id: int) -> Employee:
    employee = db_session().get(Employee, employee_id)
    if not employee:
        abort(404)
    return employee


def _department_form_context(department: Department | None, form: dict) -> dict:
    parents = db_session().query(Department).order_by(Department.name.asc()).all()
    if department is not None:
        parents = [d for d in parents if d.id != department.id]
    return {"department": department, "form": form, "parents": parents, "staff": _staff_users()}


def _employee_form_context(employee: Employee | None, form: dict) -> dict:
    s = db_session()
    users = []
    if employee is None:
        users = s.query(User).filter(User.id.notin_(select(Employee.user_id))).order_by(User.email.asc()).all()
    managers = s.query(Employee).filter(Employee.employment_status == "active").order_by(Employee.employee_number).all()
    if employee is not None:
        managers = [m for m in managers if m.id != employee.id]
    return {
        "employee": employee,
        "form": form,
        "users": users,
        "managers": managers,
        "departments": s.query(Department).filter(Department.is_active.is_(True)).order_by(Department.name).all(),
        "employment_types": EMPLOYMENT_TYPES,
        "statuses": EMPLOYMENT_STATUSES,
        "pay_frequencies": PAY_FREQUENCIES,
    }


# ============================================================================
# DEPARTMENTS
# ============================================================================


@bp.get("/departments")
@require_permission("departments.view")
def departments_list():
    s = db_session()
    filters = {
        "q": (request.args.get("q") or "").strip(),
        "is_active": (request.args.get("is_active") or "").strip(),
        "parent": (request.args.get("parent") or "").strip(),
    }
    page = parse_int(request.args.get("page"), 1) or 1
    result = paginate(query_departments(s, filters), page=page, per_page=PER_PAGE)
    return render_template(
        "admin/hr/departments.html",
        result=result,
        filters=filters,
        **page_urls("hr.departments_list", result, filters),
    )


@bp.get("/departments/new")
@require_permission("departments.create")
def department_new_get():
    return render_template("admin/hr/department_form.html", **_department_form_context(None, {}))


@bp.post("/departments/new")
@require_permission("departments.create")
def department_new_post():
    s = db_session()
    payload = request.form.to_dict()
    errors = validate_department_payload(s, payload)
    if errors:
        for e in errors:
            flash(e, "danger")
        return render_template("admin/hr/department_form.html", **_department_form_context(None, payload)), 400
    department = create_department(s, payload, _current_user())
    s.commit()
    flash("Department created successfully.", "success")
    return redirect(url_for("hr.department_detail", department_id=department.id))


@bp.get("/departments/<int:department_id>")
@require_permission("departments.view")
def department_detail(department_id: int):
    department = _get_department(department_id)
    return render_template(
        "admin/hr/department_detail.html",
        department=department,
        stats=department_stats(department),
        history=entity_history(db_session(), "Department", department.id),
    )


@bp.get("/departments/<int:department_id>/org-chart")
@require_permission("departments.view")
def department_org_chart(department_id: int):
    return jsonify(org_chart(_get_department(department_id)))


@bp.get("/departments/<int:department_id>/edit")
@require_permission("departments.edit")
def department_edit_get(department_id: int):
    department = _get_department(department_id)
    form = {
        "name": department.name,
        "code": department.code,
        "description": department.description or "",
        "manager_user_id": department.manager_user_id or "",
        "parent_department_id": department.parent_department_id or "",
        "location": department.location or "",
        "budget": department.budget if department.budget is not None else "",
    }
    return render_template("admin/hr/department_form.html", **_department_form_context(department, form))


@bp.post("/departments/<int:department_id>/edit")
@require_permission("departments.edit")
def department_edit_post(department_id: int):
    s = db_session()
    department = _get_department(department_id)
    payload = request.form.to_dict()
    errors = validate_department_payload(s, payload, department=department)
    if errors:
        for e in errors:
            flash(e, "danger")
        return render_template("admin/hr/department_form.html", **_department_form_context(department, payload)), 400
    update_department(s, department, payload, _current_user())
    s.commit()
    flash("Department updated successfully.", "success")
    return redirect(url_for("hr.department_detail", department_id=department.id))


@bp.post("/departments/<int:department_id>/delete")
@require_permission("departments.delete")
def department_delete(department_id: int):
    s = db_session()
    department = _get_department(department_id)
    try:
        delete_department(s, department, _current_user())
    except HRRuleError as e:
        flash(str(e), "danger")
        return redirect(url_for("hr.department_detail", department_id=department.id))
    s.commit()
    flash("Department deleted successfully.", "success")
    return redirect(url_for("hr.departments_list"))


@bp.post("/departments/<int:department_id>/activate")
@require_permission("departments.edit")
def department_activate(department_id: int):
    s = db_session()
    department = _get_department(department_id)
    set_department_active(s, department, True, _current_user())
    s.commit()
    flash("Department activated successfully.", "success")
    return redirect(url_for("hr.department_detail", department_id=department.id))


@bp.post("/departments/<int:department_id>/deactivate")
@require_permission("departments.edit")
def department_deactivate(department_id: int):
    s = db_session()
    department = _get_department(department_id)
    try:
        set_department_active(s, department, False, _current_user())
    except HRRuleError as e:
        flash(str(e), "danger")
        return redirect(url_for("hr.department_detail", department_id=department.id))
    s.commit()
    flash("Department deactivated successfully.", "success")
    return redirect(url_for("hr.department_detail", department_id=department.id))


# ============================================================================
# EMPLOYEES
# ============================================================================


@bp.get("/employees")
@require_permission("employees.view")
def employees_list():
    s = db_session()
    filters = {
        "q": (request.args.get("q") or "").strip(),
        "department_id": (request.args.get("department_id") or "").strip(),
        "status": (request.args.get("status") or "").strip(),
        "type": (request.args.get("type") or "").strip(),
    }
    page = parse_int(request.args.get("page"), 1) or 1
    result = paginate(query_employees(s, filters), page=page, per_page=PER_PAGE)
    return render_template(
        "admin/hr/employees.html",
        result=result,
        filters=filters,
        departments=s.query(Department).order_by(Department.name).all(),
        statuses=EMPLOYMENT_STATUSES,
        employment_types=EMPLOYMENT_TYPES,
        **page_urls("hr.employees_list", result, filters),
    )


@bp.get("/employees/new")
@require_permission("employees.create")
def employee_new_get():
    form = {
        "employment_type": "full_time",
        "employment_status": "active",
        "pay_frequency": "monthly",
        "salary_currency": "USD",
        "department_id": request.args.get("department_id") or "",
    }
    return render_template("admin/hr/employee_form.html", **_employee_form_context(None, form))


@bp.post("/employees/new")
@require_permission("employees.create")
def employee_new_post():
    s = db_session()
    payload = request.form.to_dict()
    errors = validate_employee_payload(s, payload)
    if errors:
        for e in errors:
            flash(e, "danger")
        return render_template("admin/hr/employee_form.html", **_employee_form_context(None, payload)), 400
    employee = create_employee(s, payload, _current_user())
    s.commit()
    flash(f"Employee {employee.employee_number} created.", "success")
    return redirect(url_for("hr.employee_detail", employee_id=employee.id))


@bp.get("/employees/<int:employee_id>")
@require_permission("employees.view")
def employee_detail(employee_id: int):
    employee = _get_employee(employee_id)
    return render_template(
        "admin/hr/employee_detail.html",
        employee=employee,
        history=entity_history(db_session(), "Employee", employee.id),
    )


@bp.get("/employees/<int:employee_id>/edit")
@require_permission("employees.edit")
def employee_edit_get(employee_id: int):
    e = _get_employee(employee_id)
    form = {
        "department_id": e.department_id or "",
        "job_title": e.job_title,
        "employment_type": e.employment_type,
        "employment_status": e.employment_status,
        "hire_date": e.hire_date.isoformat() if e.hire_date else "",
        "probation_end_date": e.probation_end_date.isoformat() if e.probation_end_date else "",
        "termination_date": e.termination_date.isoformat() if e.termination_date else "",
        "termination_reason": e.termination_reason or "",
        "salary": e.salary if e.salary is not None else "",
        "salary_currency": e.salary_currency,
        "pay_frequency": e.pay_frequency,
        "manager_employee_id": e.manager_employee_id or "",
        "work_location": e.work_location or "",
        "phone": e.phone or "",
        "emergency_contact_name": e.emergency_contact_name or "",
        "emergency_contact_phone": e.emergency_contact_phone or "",
        "emergency_contact_relationship": e.emergency_contact_relationship or "",
    }
    return render_template("admin/hr/employee_form.html", **_employee_form_context(e, form))


@bp.post("/employees/<int:employee_id>/edit")
@require_permission("employees.edit")
def employee_edit_post(employee_id: int):
    s = db_session()
    employee = _get_employee(employee_id)
    payload = request.form.to_dict()
    errors = validate_employee_payload(s, payload, employee=employee)
    if errors:
        for e in errors:
            flash(e, "danger")
        return render_template("admin/hr/employee_form.html", **_employee_form_context(employee, payload)), 400
    update_employee(s, employee, payload, _current_user())
    s.commit()
    flash("Employee updated successfully.", "success")
    return redirect(url_for("hr.employee_detail", employee_id=employee.id))


@bp.post("/employees/<int:employee_id>/terminate")
@require_permission("employees.delete")
def employee_terminate(employee_id: int):
    s = db_session()
    employee = _get_employee(employee_id)
    try:
        terminate_employee(s, employee, _current_user(), request.form.get("termination_reason"))
    except HRRuleError as e:
        flash(str(e), "danger")
        return redirect(url_for("hr.employee_detail", employee_id=employee.id))
    s.commit()
    flash("Employee terminated successfully.", "success")
    return redirect(url_for("hr.employees_list"))


@bp.post("/employees/<int:employee_id>/activate")
@require_permission("employees.edit")
def employee_activate(employee_id: int):
    s = db_session()
    employee = _get_employee(employee_id)
    set_employee_active(s, employee, True, _current_user())
    s.commit()
    flash("Employee activated successfully.", "success")
    return redirect(url_for("hr.employee_detail", employee_id=employee.id))


@bp.post("/employees/<int:employee_id>/deactivate")
@require_permission("employees.edit")
def employee_deactivate(employee_id: int):
    s = db_session()
    employee = _get_employee(employee_id)
    set_employee_active(s, employee, False, _current_user())
    s.commit()
    flash("Employee deactivated successfully.", "success")
    return redirect(url_for("hr.employee_detail", employee_id=employee.id))
