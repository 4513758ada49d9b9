from __future__ import annotations

import re
from datetime import date, datetime, timedelta
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, or_

from app.backoffice.audit import record_event
from app.backoffice.models import User
from app.backoffice.modules.hr.models import Department, Employee
from app.backoffice.utils import clean, money, parse_date, parse_decimal, parse_int

if TYPE_CHECKING:
    from sqlalchemy.orm import Query, Session

EMPLOYMENT_TYPES = ("full_time", "part_time", "contract", "intern")
EMPLOYMENT_STATUSES = ("active", "inactive", "terminated", "on_leave")
PAY_FREQUENCIES = ("weekly", "bi_weekly", "monthly", "annually")


class HRRuleError(ValueError):
    pass


def _too_long(payload: dict, field: str, limit: int) -> bool:
    value = clean(payload.get(field))
    return value is not None and len(value) > limit


# ============================================================================
# DEPARTMENTS
# ============================================================================


def _is_descendant(candidate: Department, department: Department) -> bool:
    node: Department | None = candidate
    while node is not None:
        if node.id == department.id:
            return True
        node = node.parent
    return False


def validate_department_payload(s: "Session", payload: dict, department: Department | None = None) -> list[str]:
    errors: list[str] = []
    if not clean(payload.get("name")):
        errors.append("Name is required.")
    elif _too_long(payload, "name", 255):
        errors.append("Name must be at most 255 characters.")

    code = clean(payload.get("code"))
    if not code:
        errors.append("Code is required.")
    elif not re.match(r"^[A-Za-z0-9_-]{1,10}$", code):
        errors.append("Code must be at most 10 letters, digits, dashes or underscores.")
    else:
        q = s.query(Department.id).filter(func.upper(Department.code) == code.upper())
        if department is not None:
            q = q.filter(Department.id != department.id)
        if q.first():
            errors.append(f"Department code {code.upper()} is already in use.")

    manager_id = parse_int(payload.get("manager_user_id"))
    if manager_id is not None and s.get(User, manager_id) is None:
        errors.append("Manager not found.")

    parent_id = parse_int(payload.get("parent_department_id"))
    if parent_id is not None:
        parent = s.get(Department, parent_id)
        if parent is None:
            errors.append("Parent department not found.")
        elif department is not None and _is_descendant(parent, department):
            errors.append("Cannot set a child department as parent (circular reference).")

    if _too_long(payload, "location", 255):
        errors.append("Location must be at most 255 characters.")
    if clean(payload.get("budget")) is not None:
        budget = parse_decimal(payload.get("budget"))
        if budget is None or budget < 0:
            errors.append("Budget must be zero or more.")
    return errors


def _apply_department_fields(department: Department, payload: dict) -> None:
    department.name = clean(payload.get("name"))
    department.code = clean(payload.get("code")).upper()
    department.description = clean(payload.get("description"))
    department.manager_user_id = parse_int(payload.get("manager_user_id"))
    department.parent_department_id = parse_int(payload.get("parent_department_id"))
    department.location = clean(payload.get("location"))
    budget = parse_decimal(payload.get("budget"))
    department.budget = money(budget) if budget is not None else None


def create_department(s: "Session", payload: dict, actor: User) -> Department:
    department = Department(is_active=True)
    _apply_department_fields(department, payload)
    s.add(department)
    s.flush()
    record_event(
        s,
        actor=actor,
        action="department.create",
        entity_type="Department",
        entity_id=str(department.id),
        metadata={"code": department.code, "name": department.name},
    )
    return department


def update_department(s: "Session", department: Department, payload: dict, actor: User) -> Department:
    before = {"code": department.code, "parent": department.parent_department_id}
    _apply_department_fields(department, payload)
    department.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=actor,
        action="department.update",
        entity_type="Department",
        entity_id=str(department.id),
        metadata={"before": before, "after": {"code": department.code, "parent": department.parent_department_id}},
    )
    return department


def delete_department(s: "Session", department: Department, actor: User) -> None:
    if department.active_employees:
        raise HRRuleError("Cannot delete department with active employees.")
    if department.children:
        raise HRRuleError("Cannot delete department with child departments.")
    record_event(
        s,
        actor=actor,
        action="department.delete",
        entity_type="Department",
        entity_id=str(department.id),
        metadata={"code": department.code, "name": department.name},
    )
    s.delete(department)


def set_department_active(s: "Session", department: Department, active: bool, actor: User) -> Department:
    if not active and department.active_employees:
        raise HRRuleError("Cannot deactivate department with active employees.")
    department.is_active = active
    department.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=actor,
        action="department.activate" if active else "department.deactivate",
        entity_type="Department",
        entity_id=str(department.id),
    )
    return department


def query_departments(s: "Session", filters: dict[str, str]) -> "Query":
    q = s.query(Department)
    if filters.get("q"):
        like = f"%{filters['q']}%"
        q = q.filter(or_(Department.name.ilike(like), Department.code.ilike(like), Department.description.ilike(like)))
    if filters.get("is_active") in ("0", "1"):
        q = q.filter(Department.is_active.is_(filters["is_active"] == "1"))
    if filters.get("parent") == "root":
        q = q.filter(Department.parent_department_id.is_(None))
    elif parse_int(filters.get("parent")) is not None:
        q = q.filter(Department.parent_department_id == parse_int(filters["parent"]))
    return q.order_by(Department.name.asc())


def department_stats(department: Department) -> dict[str, Any]:
    active = department.active_employees
    salaries = [e.salary for e in active if e.salary is not None]
    since = date.today() - timedelta(days=30)
    return {
        "total_employees": len(active),
        "child_departments": len(department.children),
        "average_salary": money(sum(salaries) / len(salaries)) if salaries else None,
        "recent_hires": sum(1 for e in active if e.hire_date and e.hire_date >= since),
    }


def org_chart(department: Department) -> dict[str, Any]:
    """Nested dict of a department and its active sub-departments."""
    return {
        "id": department.id,
        "name": department.name,
        "code": department.code,
        "manager": department.manager.display_name if department.manager else None,
        "employees": len(department.active_employees),
        "children": [org_chart(c) for c in department.children if c.is_active],
    }


# ============================================================================
# EMPLOYEES
# ============================================================================


def next_employee_number(s: "Session") -> str:
    highest = 0
    for (number,) in s.query(Employee.employee_number).filter(Employee.employee_number.like("EMP-%")):
        n = parse_int(number[4:])
        if n is not None and n > highest:
            highest = n
    return f"EMP-{highest + 1:04d}"


def validate_employee_payload(s: "Session", payload: dict, employee: Employee | None = None) -> list[str]:
    errors: list[str] = []
    if employee is None:
        user_id = parse_int(payload.get("user_id"))
        if user_id is None:
            errors.append("User is required.")
        elif s.get(User, user_id) is None:
            errors.append("User not found.")
        elif s.query(Employee.id).filter(Employee.user_id == user_id).first():
            errors.append("This user already has an employee record.")

    dept_id = parse_int(payload.get("department_id"))
    if dept_id is not None and s.get(Department, dept_id) is None:
        errors.append("Department not found.")
    if not clean(payload.get("job_title")):
        errors.append("Job title is required.")
    elif _too_long(payload, "job_title", 255):
        errors.append("Job title must be at most 255 characters.")
    if (payload.get("employment_type") or "full_time") not in EMPLOYMENT_TYPES:
        errors.append("Invalid employment type.")
    if (payload.get("employment_status") or "active") not in EMPLOYMENT_STATUSES:
        errors.append("Invalid employment status.")
    if (payload.get("pay_frequency") or "monthly") not in PAY_FREQUENCIES:
        errors.append("Invalid pay frequency.")

    hire = parse_date(payload.get("hire_date"))
    if hire is None:
        errors.append("Hire date is required (YYYY-MM-DD).")
    probation = parse_date(payload.get("probation_end_date"))
    if clean(payload.get("probation_end_date")) and probation is None:
        errors.append("Probation end date must be YYYY-MM-DD.")
    elif hire and probation and probation <= hire:
        errors.append("Probation end date must be after the hire date.")
    termination = parse_date(payload.get("termination_date"))
    if clean(payload.get("termination_date")) and termination is None:
        errors.append("Termination date must be YYYY-MM-DD.")
    elif hire and termination and termination <= hire:
        errors.append("Termination date must be after the hire date.")

    if clean(payload.get("salary")) is not None:
        salary = parse_decimal(payload.get("salary"))
        if salary is None or salary < 0:
            errors.append("Salary must be zero or more.")
    currency = clean(payload.get("salary_currency"))
    if currency and not re.match(r"^[A-Za-z]{3}$", currency):
        errors.append("Salary currency must be a 3-letter code.")

    manager_id = parse_int(payload.get("manager_employee_id"))
    if manager_id is not None:
        manager = s.get(Employee, manager_id)
        if manager is None:
            errors.append("Manager not found.")
        elif employee is not None:
            node: Employee | None = manager
            while node is not None:
                if node.id == employee.id:
                    errors.append("An employee cannot report to themselves or their own reports.")
                    break
                node = node.manager

    for field, label in (("phone", "Phone"), ("emergency_contact_phone", "Emergency contact phone")):
        if _too_long(payload, field, 20):
            errors.append(f"{label} must be at most 20 characters.")
    for field, label, limit in (
        ("work_location", "Work location", 255),
        ("emergency_contact_name", "Emergency contact name", 255),
        ("emergency_contact_relationship", "Emergency contact relationship", 100),
    ):
        if _too_long(payload, field, limit):
            errors.append(f"{label} must be at most {limit} characters.")
    return errors


def _apply_employee_fields(employee: Employee, payload: dict) -> None:
    employee.department_id = parse_int(payload.get("department_id"))
    employee.job_title = clean(payload.get("job_title"))
    employee.employment_type = payload.get("employment_type") or "full_time"
    employee.employment_status = payload.get("employment_status") or "active"
    employee.hire_date = parse_date(payload.get("hire_date"))
    employee.probation_end_date = parse_date(payload.get("probation_end_date"))
    employee.termination_date = parse_date(payload.get("termination_date"))
    employee.termination_reason = clean(payload.get("termination_reason"))
    salary = parse_decimal(payload.get("salary"))
    employee.salary = money(salary) if salary is not None else None
    employee.salary_currency = (clean(payload.get("salary_currency")) or "USD").upper()
    employee.pay_frequency = payload.get("pay_frequency") or "monthly"
    employee.manager_employee_id = parse_int(payload.get("manager_employee_id"))
    employee.work_location = clean(payload.get("work_location"))
    employee.phone = clean(payload.get("phone"))
    employee.emergency_contact_name = clean(payload.get("emergency_contact_name"))
    employee.emergency_contact_phone = clean(payload.get("emergency_contact_phone"))
    employee.emergency_contact_relationship = clean(payload.get("emergency_contact_relationship"))


def create_employee(s: "Session", payload: dict, actor: User) -> Employee:
    employee = Employee(user_id=parse_int(payload.get("user_id")), employee_number=next_employee_number(s))
    _apply_employee_fields(employee, payload)
    s.add(employee)
    s.flush()
    record_event(
        s,
        actor=actor,
        action="employee.create",
        entity_type="Employee",
        entity_id=str(employee.id),
        metadata={"employee_number": employee.employee_number, "user_id": employee.user_id},
    )
    return employee


def update_employee(s: "Session", employee: Employee, payload: dict, actor: User) -> Employee:
    before = {"department": employee.department_id, "status": employee.employment_status}
    _apply_employee_fields(employee, payload)
    employee.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=actor,
        action="employee.update",
        entity_type="Employee",
        entity_id=str(employee.id),
        metadata={
            "before": before,
            "after": {"department": employee.department_id, "status": employee.employment_status},
        },
    )
    return employee


def terminate_employee(s: "Session", employee: Employee, actor: User, reason: str | None = None) -> Employee:
    """Employees are never removed; termination keeps the record for history and payroll."""
    if employee.employment_status == "terminated":
        raise HRRuleError("Employee is already terminated.")
    employee.employment_status = "terminated"
    employee.termination_date = date.today()
    employee.termination_reason = clean(reason) or employee.termination_reason
    employee.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=actor,
        action="employee.terminate",
        entity_type="Employee",
        entity_id=str(employee.id),
        reason=employee.termination_reason,
    )
    return employee


def set_employee_active(s: "Session", employee: Employee, active: bool, actor: User) -> Employee:
    old = employee.employment_status
    if active:
        employee.employment_status = "active"
        employee.termination_date = None
        employee.termination_reason = None
    else:
        employee.employment_status = "inactive"
    employee.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=actor,
        action="employee.activate" if active else "employee.deactivate",
        entity_type="Employee",
        entity_id=str(employee.id),
        metadata={"from": old, "to": employee.employment_status},
    )
    return employee


def query_employees(s: "Session", filters: dict[str, str]) -> "Query":
    q = s.query(Employee).join(User, Employee.user_id == User.id)
    if filters.get("q"):
        like = f"%{filters['q']}%"
        q = q.filter(
            or_(
                User.name.ilike(like),
                User.email.ilike(like),
                Employee.employee_number.ilike(like),
                Employee.job_title.ilike(like),
            )
        )
    dept_id = parse_int(filters.get("department_id"))
    if dept_id is not None:
        q = q.filter(Employee.department_id == dept_id)
    if filters.get("status") in EMPLOYMENT_STATUSES:
        q = q.filter(Employee.employment_status == filters["status"])
    if filters.get("type") in EMPLOYMENT_TYPES:
        q = q.filter(Employee.employment_type == filters["type"])
    return q.order_by(Employee.created_at.desc(), Employee.id.desc())
