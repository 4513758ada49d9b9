from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy import Boolean, CheckConstraint, Date, DateTime, ForeignKey, Index, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.backoffice.models import Base

if TYPE_CHECKING:
    from app.backoffice.models import User


class Department(Base):
    __tablename__ = "hr_departments"
    __table_args__ = (
        Index("idx_hr_departments_parent", "parent_department_id"),
        CheckConstraint("budget IS NULL OR budget >= 0", name="ck_hr_departments_budget"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    code: Mapped[str] = mapped_column(String(10), nullable=False, unique=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    manager_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    parent_department_id: Mapped[int | None] = mapped_column(
        ForeignKey("hr_departments.id", ondelete="SET NULL"), nullable=True
    )
    location: Mapped[str | None] = mapped_column(String(255), nullable=True)
    budget: Mapped[Decimal | None] = mapped_column(Numeric(precision=15, scale=2), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    manager: Mapped["User | None"] = relationship("User", foreign_keys=[manager_user_id], lazy="selectin")
    parent: Mapped["Department | None"] = relationship(
        "Department", remote_side="Department.id", back_populates="children"
    )
    children: Mapped[list["Department"]] = relationship(
        "Department", back_populates="parent", order_by="Department.name"
    )
    employees: Mapped[list["Employee"]] = relationship("Employee", back_populates="department")

    @property
    def active_employees(self) -> list["Employee"]:
        return [e for e in self.employees if e.employment_status == "active"]

    @property
    def full_path(self) -> str:
        names = []
        node: Department | None = self
        while node is not None:
            names.append(node.name)
            node = node.parent
        return " / ".join(reversed(names))


class Employee(Base):
    __tablename__ = "hr_employees"
    __table_args__ = (
        Index("idx_hr_employees_department", "department_id"),
        Index("idx_hr_employees_status", "employment_status"),
        CheckConstraint(
            "employment_type IN ('full_time','part_time','contract','intern')", name="ck_hr_employees_type"
        ),
        CheckConstraint(
            "employment_status IN ('active','inactive','terminated','on_leave')", name="ck_hr_employees_status"
        ),
        CheckConstraint("salary IS NULL OR salary >= 0", name="ck_hr_employees_salary"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    employee_number: Mapped[str] = mapped_column(String(20), nullable=False, unique=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True)
    department_id: Mapped[int | None] = mapped_column(
        ForeignKey("hr_departments.id", ondelete="SET NULL"), nullable=True
    )
    job_title: Mapped[str] = mapped_column(String(255), nullable=False)
    employment_type: Mapped[str] = mapped_column(String(16), nullable=False, default="full_time")
    employment_status: Mapped[str] = mapped_column(String(16), nullable=False, default="active")

    hire_date: Mapped[date] = mapped_column(Date, nullable=False)
    probation_end_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    termination_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    termination_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    salary: Mapped[Decimal | None] = mapped_column(Numeric(precision=15, scale=2), nullable=True)
    salary_currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    pay_frequency: Mapped[str] = mapped_column(String(16), nullable=False, default="monthly")

    manager_employee_id: Mapped[int | None] = mapped_column(
        ForeignKey("hr_employees.id", ondelete="SET NULL"), nullable=True
    )
    work_location: Mapped[str | None] = mapped_column(String(255), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(20), nullable=True)
    emergency_contact_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    emergency_contact_phone: Mapped[str | None] = mapped_column(String(20), nullable=True)
    emergency_contact_relationship: Mapped[str | None] = mapped_column(String(100), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    user: Mapped["User"] = relationship("User", foreign_keys=[user_id], lazy="selectin")
    department: Mapped["Department | None"] = relationship("Department", back_populates="employees")
    manager: Mapped["Employee | None"] = relationship(
        "Employee", remote_side="Employee.id", back_populates="reports"
    )
    reports: Mapped[list["Employee"]] = relationship("Employee", back_populates="manager")

    @property
    def full_name(self) -> str:
        return self.user.display_name if self.user else self.employee_number

    @property
    def on_probation(self) -> bool:
        return bool(self.probation_end_date and self.probation_end_date >= date.today())
