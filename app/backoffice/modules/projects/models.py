from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy import CheckConstraint, Date, DateTime, ForeignKey, Index, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.backoffice.models import Base

if TYPE_CHECKING:
    from app.backoffice.models import User


class Project(Base):
    __tablename__ = "projects"
    __table_args__ = (
        Index("idx_projects_status", "status"),
        CheckConstraint(
            "status IN ('planning','active','on_hold','completed','cancelled')", name="ck_projects_status"
        ),
        CheckConstraint("priority IN ('low','medium','high','critical')", name="ck_projects_priority"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    code: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="planning")
    priority: Mapped[str] = mapped_column(String(16), nullable=False, default="medium")
    start_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    end_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    budget: Mapped[Decimal | None] = mapped_column(Numeric(precision=15, scale=2), nullable=True)

    owner_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_by_user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    owner: Mapped["User | None"] = relationship("User", foreign_keys=[owner_user_id], lazy="selectin")
    created_by: Mapped["User"] = relationship("User", foreign_keys=[created_by_user_id])
    tasks: Mapped[list["ProjectTask"]] = relationship(
        "ProjectTask",
        back_populates="project",
        cascade="all, delete-orphan",
        order_by="ProjectTask.sort_order",
    )

    @property
    def progress(self) -> int:
        """Share of non-cancelled tasks that are done."""
        counted = [t for t in self.tasks if t.status != "cancelled"]
        if not counted:
            return 0
        done = sum(1 for t in counted if t.status == "done")
        return round(done / len(counted) * 100)

    @property
    def is_overdue(self) -> bool:
        return bool(self.end_date and self.end_date < date.today() and self.status not in ("completed", "cancelled"))


class ProjectTask(Base):
    __tablename__ = "project_tasks"
    __table_args__ = (
        Index("idx_project_tasks_project", "project_id"),
        Index("idx_project_tasks_assignee", "assigned_to_user_id"),
        CheckConstraint(
            "status IN ('todo','in-progress','review','testing','done','cancelled')", name="ck_project_tasks_status"
        ),
        CheckConstraint("progress >= 0 AND progress <= 100", name="ck_project_tasks_progress"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    project_id: Mapped[int] = mapped_column(ForeignKey("projects.id", ondelete="CASCADE"), nullable=False)
    parent_task_id: Mapped[int | None] = mapped_column(
        ForeignKey("project_tasks.id", ondelete="SET NULL"), nullable=True
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    type: Mapped[str] = mapped_column(String(16), nullable=False, default="task")
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="todo")
    priority: Mapped[str] = mapped_column(String(16), nullable=False, default="medium")

    assigned_to_user_id: Mapped[int | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    start_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    due_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    completed_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    estimated_hours: Mapped[Decimal | None] = mapped_column(Numeric(precision=8, scale=2), nullable=True)
    actual_hours: Mapped[Decimal | None] = mapped_column(Numeric(precision=8, scale=2), nullable=True)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    project: Mapped["Project"] = relationship("Project", back_populates="tasks")
    parent: Mapped["ProjectTask | None"] = relationship("ProjectTask", remote_side="ProjectTask.id")
    assignee: Mapped["User | None"] = relationship("User", foreign_keys=[assigned_to_user_id], lazy="selectin")

    @property
    def is_overdue(self) -> bool:
        return bool(self.due_date and self.due_date < date.today() and self.status not in ("done", "cancelled"))
