"""Initial back office schema.

Revision ID: 0001_initial_schema
Revises:
Create Date: 2026-10-19
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "0001_initial_schema"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _money(name: str, nullable: bool = False) -> sa.Column:
    return sa.Column(name, sa.Numeric(precision=15, scale=2), nullable=nullable)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade() -> None:
    # ---------- platform: accounts, RBAC, audit ----------
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(255), nullable=True),
        sa.Column("email", sa.String(320), nullable=False),
        sa.Column("password_hash", sa.String(255), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("last_login_at", sa.DateTime(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("email"),
    )
    op.create_table(
        "roles",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("key", sa.String(64), nullable=False),
        sa.Column("name", sa.String(128), nullable=False),
        sa.Column("description", sa.String(500), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("key"),
    )
    op.create_table(
        "permissions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("key", sa.String(255), nullable=False),
        sa.Column("name", sa.String(128), nullable=False),
        sa.Column("description", sa.String(500), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("key"),
    )
    op.create_table(
        "user_roles",
        sa.Column("user_id", sa.Integer(), primary_key=True),
        sa.Column("role_id", sa.Integer(), primary_key=True),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["role_id"], ["roles.id"], ondelete="CASCADE"),
    )
    op.create_table(
        "role_permissions",
        sa.Column("role_id", sa.Integer(), primary_key=True),
        sa.Column("permission_id", sa.Integer(), primary_key=True),
        sa.ForeignKeyConstraint(["role_id"], ["roles.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["permission_id"], ["permissions.id"], ondelete="CASCADE"),
    )
    op.create_table(
        "audit_events",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("request_id", sa.String(64), nullable=True),
        sa.Column("client_ip", sa.String(64), nullable=True),
        sa.Column("actor_user_id", sa.Integer(), nullable=True),
        sa.Column("actor_user_email", sa.String(320), nullable=True),
        sa.Column("action", sa.String(128), nullable=False),
        sa.Column("entity_type", sa.String(128), nullable=True),
        sa.Column("entity_id", sa.String(128), nullable=True),
        sa.Column("reason", sa.String(512), nullable=True),
        sa.Column("metadata_json", sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(["actor_user_id"], ["users.id"], ondelete="SET NULL"),
    )
    op.create_index("idx_audit_events_created", "audit_events", ["created_at"])
    op.create_index("idx_audit_events_entity", "audit_events", ["entity_type", "entity_id"])

    # ---------- guest inquiries ----------
    op.create_table(
        "guest_inquiries",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("reference_number", sa.String(32), nullable=False),
        sa.Column("type", sa.String(32), nullable=False, server_default="general"),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("email", sa.String(320), nullable=False),
        sa.Column("phone", sa.String(20), nullable=True),
        sa.Column("company", sa.String(255), nullable=True),
        sa.Column("position", sa.String(255), nullable=True),
        sa.Column("subject", sa.String(255), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("preferred_contact_method", sa.String(16), nullable=False, server_default="email"),
        sa.Column("urgency", sa.String(16), nullable=False, server_default="normal"),
        sa.Column("status", sa.String(32), nullable=False, server_default="new"),
        sa.Column("source", sa.String(64), nullable=False, server_default="website"),
        sa.Column("assigned_to_user_id", sa.Integer(), nullable=True),
        sa.Column("internal_notes", sa.Text(), nullable=True),
        sa.Column("responded_at", sa.DateTime(), nullable=True),
        sa.Column("ip_address", sa.String(64), nullable=True),
        sa.Column("user_agent", sa.String(512), nullable=True),
        sa.Column("metadata_json", sa.Text(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["assigned_to_user_id"], ["users.id"], ondelete="SET NULL"),
        sa.UniqueConstraint("reference_number"),
    )
    op.create_index("idx_guest_inquiries_status", "guest_inquiries", ["status"])
    op.create_index("idx_guest_inquiries_type", "guest_inquiries", ["type"])
    op.create_index("idx_guest_inquiries_created_at", "guest_inquiries", ["created_at"])
    op.create_index("idx_guest_inquiries_assigned", "guest_inquiries", ["assigned_to_user_id"])

    # ---------- finance ----------
    op.create_table(
        "finance_categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("type", sa.String(16), nullable=False),
        sa.Column("color", sa.String(16), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("type IN ('income','expense')", name="ck_finance_categories_type"),
    )
    op.create_table(
        "accounts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("account_code", sa.String(32), nullable=False),
        sa.Column("type", sa.String(16), nullable=False),
        sa.Column("parent_account_id", sa.Integer(), nullable=True),
        sa.Column("level", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("normal_balance", sa.String(8), nullable=False, server_default="debit"),
        sa.Column("account_number", sa.String(64), nullable=True),
        sa.Column("bank_name", sa.String(255), nullable=True),
        _money("initial_balance"),
        _money("balance"),
        sa.Column("currency", sa.String(3), nullable=False, server_default="USD"),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("is_system_account", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("allow_manual_entries", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("user_id", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(["parent_account_id"], ["accounts.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.UniqueConstraint("account_code"),
        sa.CheckConstraint("type IN ('assets','liabilities','equity','income','expenses')", name="ck_accounts_type"),
        sa.CheckConstraint("normal_balance IN ('debit','credit')", name="ck_accounts_normal_balance"),
    )
    op.create_index("idx_accounts_user", "accounts", ["user_id"])
    op.create_index("idx_accounts_parent", "accounts", ["parent_account_id"])

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("type", sa.String(16), nullable=False),
        _money("amount"),
        sa.Column("description", sa.String(255), nullable=False),
        sa.Column("transaction_date", sa.Date(), nullable=False),
        sa.Column("account_id", sa.Integer(), nullable=False),
        sa.Column("transfer_to_account_id", sa.Integer(), nullable=True),
        sa.Column("category_id", sa.Integer(), nullable=True),
        sa.Column("reference_number", sa.String(64), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("status", sa.String(16), nullable=False, server_default="completed"),
        sa.Column("is_reconciled", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("reconciled_at", sa.DateTime(), nullable=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"]),
        sa.ForeignKeyConstraint(["transfer_to_account_id"], ["accounts.id"]),
        sa.ForeignKeyConstraint(["category_id"], ["finance_categories.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.CheckConstraint("type IN ('income','expense','transfer')", name="ck_transactions_type"),
        sa.CheckConstraint("status IN ('pending','completed','cancelled')", name="ck_transactions_status"),
    )
    op.create_index("idx_transactions_account", "transactions", ["account_id"])
    op.create_index("idx_transactions_date", "transactions", ["transaction_date"])
    op.create_index("idx_transactions_user", "transactions", ["user_id"])

    op.create_table(
        "invoices",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("invoice_number", sa.String(32), nullable=False),
        sa.Column("client_name", sa.String(255), nullable=False),
        sa.Column("client_email", sa.String(320), nullable=True),
        sa.Column("client_address", sa.Text(), nullable=True),
        sa.Column("status", sa.String(16), nullable=False, server_default="draft"),
        sa.Column("issue_date", sa.Date(), nullable=False),
        sa.Column("due_date", sa.Date(), nullable=False),
        _money("subtotal"),
        sa.Column("tax_rate", sa.Numeric(precision=5, scale=2), nullable=False),
        _money("tax_amount"),
        _money("discount_amount"),
        _money("total_amount"),
        _money("paid_amount"),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("terms", sa.Text(), nullable=True),
        sa.Column("sent_at", sa.DateTime(), nullable=True),
        sa.Column("paid_at", sa.DateTime(), nullable=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.UniqueConstraint("invoice_number"),
        sa.CheckConstraint("status IN ('draft','sent','paid','cancelled')", name="ck_invoices_status"),
    )
    op.create_index("idx_invoices_status", "invoices", ["status"])
    op.create_index("idx_invoices_due_date", "invoices", ["due_date"])

    op.create_table(
        "invoice_items",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("invoice_id", sa.Integer(), nullable=False),
        sa.Column("description", sa.String(500), nullable=False),
        sa.Column("quantity", sa.Numeric(precision=10, scale=2), nullable=False),
        _money("unit_price"),
        _money("total"),
        sa.ForeignKeyConstraint(["invoice_id"], ["invoices.id"], ondelete="CASCADE"),
    )

    op.create_table(
        "expenses",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        _money("amount"),
        sa.Column("expense_date", sa.Date(), nullable=False),
        sa.Column("vendor", sa.String(255), nullable=True),
        sa.Column("receipt_number", sa.String(64), nullable=True),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("category_id", sa.Integer(), nullable=True),
        sa.Column("account_id", sa.Integer(), nullable=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("approved_by_user_id", sa.Integer(), nullable=True),
        sa.Column("approved_at", sa.DateTime(), nullable=True),
        sa.Column("rejection_reason", sa.Text(), nullable=True),
        sa.Column("paid_at", sa.DateTime(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["category_id"], ["finance_categories.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.ForeignKeyConstraint(["approved_by_user_id"], ["users.id"]),
        sa.CheckConstraint("status IN ('pending','approved','rejected','paid')", name="ck_expenses_status"),
    )
    op.create_index("idx_expenses_status", "expenses", ["status"])
    op.create_index("idx_expenses_date", "expenses", ["expense_date"])

    op.create_table(
        "bank_statements",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("account_id", sa.Integer(), nullable=False),
        sa.Column("filename", sa.String(255), nullable=False),
        sa.Column("storage_key", sa.Text(), nullable=False),
        sa.Column("statement_date", sa.Date(), nullable=False),
        sa.Column("period_start", sa.Date(), nullable=False),
        sa.Column("period_end", sa.Date(), nullable=False),
        _money("opening_balance"),
        _money("closing_balance"),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("transactions_imported", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("column_mapping_json", sa.Text(), nullable=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("processed_at", sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"]),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.CheckConstraint(
            "status IN ('pending','processing','processed','failed')", name="ck_bank_statements_status"
        ),
    )
    op.create_index("idx_bank_statements_account", "bank_statements", ["account_id"])

    op.create_table(
        "bank_statement_lines",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("statement_id", sa.Integer(), nullable=False),
        sa.Column("line_date", sa.Date(), nullable=False),
        sa.Column("description", sa.String(500), nullable=False),
        _money("amount"),
        sa.Column("type", sa.String(8), nullable=False),
        sa.Column("reference", sa.String(128), nullable=True),
        _money("running_balance", nullable=True),
        sa.Column("is_reconciled", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.ForeignKeyConstraint(["statement_id"], ["bank_statements.id"], ondelete="CASCADE"),
        sa.CheckConstraint("type IN ('credit','debit')", name="ck_bank_statement_lines_type"),
    )
    op.create_index("idx_bank_statement_lines_statement", "bank_statement_lines", ["statement_id"])

    op.create_table(
        "bank_reconciliations",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("reconciliation_number", sa.String(64), nullable=False),
        sa.Column("account_id", sa.Integer(), nullable=False),
        sa.Column("statement_id", sa.Integer(), nullable=True),
        sa.Column("period_start", sa.Date(), nullable=False),
        sa.Column("period_end", sa.Date(), nullable=False),
        _money("statement_opening_balance"),
        _money("statement_closing_balance"),
        _money("book_opening_balance"),
        _money("book_closing_balance"),
        _money("difference"),
        sa.Column("status", sa.String(16), nullable=False, server_default="in_progress"),
        sa.Column("matched_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("unmatched_bank_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("unmatched_book_count", sa.Integer(), nullable=False, server_default="0"),
        _money("matched_amount"),
        _money("unmatched_bank_amount"),
        _money("unmatched_book_amount"),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"]),
        sa.ForeignKeyConstraint(["statement_id"], ["bank_statements.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
        sa.UniqueConstraint("reconciliation_number"),
        sa.CheckConstraint("status IN ('in_progress','completed')", name="ck_bank_reconciliations_status"),
    )
    op.create_index("idx_bank_reconciliations_account", "bank_reconciliations", ["account_id"])

    op.create_table(
        "reconciliation_items",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("reconciliation_id", sa.Integer(), nullable=False),
        sa.Column("kind", sa.String(16), nullable=False),
        sa.Column("statement_line_id", sa.Integer(), nullable=True),
        sa.Column("transaction_id", sa.Integer(), nullable=True),
        _money("amount"),
        sa.Column("item_date", sa.Date(), nullable=False),
        sa.Column("description", sa.String(500), nullable=False, server_default=""),
        sa.Column("match_type", sa.String(8), nullable=True),
        sa.Column("confidence", sa.Integer(), nullable=True),
        _money("amount_difference", nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("matched_by_user_id", sa.Integer(), nullable=True),
        sa.Column("matched_at", sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(["reconciliation_id"], ["bank_reconciliations.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["statement_line_id"], ["bank_statement_lines.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["transaction_id"], ["transactions.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["matched_by_user_id"], ["users.id"]),
        sa.CheckConstraint(
            "kind IN ('unmatched_bank','unmatched_book','matched')", name="ck_reconciliation_items_kind"
        ),
    )
    op.create_index("idx_reconciliation_items_reconciliation", "reconciliation_items", ["reconciliation_id"])

    # ---------- projects ----------
    op.create_table(
        "projects",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("code", sa.String(32), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("status", sa.String(16), nullable=False, server_default="planning"),
        sa.Column("priority", sa.String(16), nullable=False, server_default="medium"),
        sa.Column("start_date", sa.Date(), nullable=True),
        sa.Column("end_date", sa.Date(), nullable=True),
        _money("budget", nullable=True),
        sa.Column("owner_user_id", sa.Integer(), nullable=True),
        sa.Column("created_by_user_id", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(["owner_user_id"], ["users.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["created_by_user_id"], ["users.id"]),
        sa.UniqueConstraint("code"),
        sa.CheckConstraint(
            "status IN ('planning','active','on_hold','completed','cancelled')", name="ck_projects_status"
        ),
        sa.CheckConstraint("priority IN ('low','medium','high','critical')", name="ck_projects_priority"),
    )
    op.create_index("idx_projects_status", "projects", ["status"])

    op.create_table(
        "project_tasks",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("project_id", sa.Integer(), nullable=False),
        sa.Column("parent_task_id", sa.Integer(), nullable=True),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("type", sa.String(16), nullable=False, server_default="task"),
        sa.Column("status", sa.String(16), nullable=False, server_default="todo"),
        sa.Column("priority", sa.String(16), nullable=False, server_default="medium"),
        sa.Column("assigned_to_user_id", sa.Integer(), nullable=True),
        sa.Column("start_date", sa.Date(), nullable=True),
        sa.Column("due_date", sa.Date(), nullable=True),
        sa.Column("completed_date", sa.Date(), nullable=True),
        sa.Column("progress", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("estimated_hours", sa.Numeric(precision=8, scale=2), nullable=True),
        sa.Column("actual_hours", sa.Numeric(precision=8, scale=2), nullable=True),
        sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_by_user_id", sa.Integer(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["parent_task_id"], ["project_tasks.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["assigned_to_user_id"], ["users.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["created_by_user_id"], ["users.id"]),
        sa.CheckConstraint(
            "status IN ('todo','in-progress','review','testing','done','cancelled')", name="ck_project_tasks_status"
        ),
        sa.CheckConstraint("progress >= 0 AND progress <= 100", name="ck_project_tasks_progress"),
    )
    op.create_index("idx_project_tasks_project", "project_tasks", ["project_id"])
    op.create_index("idx_project_tasks_assignee", "project_tasks", ["assigned_to_user_id"])

    # ---------- HR ----------
    op.create_table(
        "hr_departments",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("code", sa.String(10), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("manager_user_id", sa.Integer(), nullable=True),
        sa.Column("parent_department_id", sa.Integer(), nullable=True),
        sa.Column("location", sa.String(255), nullable=True),
        _money("budget", nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        *_timestamps(),
        sa.ForeignKeyConstraint(["manager_user_id"], ["users.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["parent_department_id"], ["hr_departments.id"], ondelete="SET NULL"),
        sa.UniqueConstraint("code"),
        sa.CheckConstraint("budget IS NULL OR budget >= 0", name="ck_hr_departments_budget"),
    )
    op.create_index("idx_hr_departments_parent", "hr_departments", ["parent_department_id"])

    op.create_table(
        "hr_employees",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("employee_number", sa.String(20), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("department_id", sa.Integer(), nullable=True),
        sa.Column("job_title", sa.String(255), nullable=False),
        sa.Column("employment_type", sa.String(16), nullable=False, server_default="full_time"),
        sa.Column("employment_status", sa.String(16), nullable=False, server_default="active"),
        sa.Column("hire_date", sa.Date(), nullable=False),
        sa.Column("probation_end_date", sa.Date(), nullable=True),
        sa.Column("termination_date", sa.Date(), nullable=True),
        sa.Column("termination_reason", sa.Text(), nullable=True),
        _money("salary", nullable=True),
        sa.Column("salary_currency", sa.String(3), nullable=False, server_default="USD"),
        sa.Column("pay_frequency", sa.String(16), nullable=False, server_default="monthly"),
        sa.Column("manager_employee_id", sa.Integer(), nullable=True),
        sa.Column("work_location", sa.String(255), nullable=True),
        sa.Column("phone", sa.String(20), nullable=True),
        sa.Column("emergency_contact_name", sa.String(255), nullable=True),
        sa.Column("emergency_contact_phone", sa.String(20), nullable=True),
        sa.Column("emergency_contact_relationship", sa.String(100), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["department_id"], ["hr_departments.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["manager_employee_id"], ["hr_employees.id"], ondelete="SET NULL"),
        sa.UniqueConstraint("employee_number"),
        sa.UniqueConstraint("user_id"),
        sa.CheckConstraint(
            "employment_type IN ('full_time','part_time','contract','intern')", name="ck_hr_employees_type"
        ),
        sa.CheckConstraint(
            "employment_status IN ('active','inactive','terminated','on_leave')", name="ck_hr_employees_status"
        ),
        sa.CheckConstraint("salary IS NULL OR salary >= 0", name="ck_hr_employees_salary"),
    )
    op.create_index("idx_hr_employees_department", "hr_employees", ["department_id"])
    op.create_index("idx_hr_employees_status", "hr_employees", ["employment_status"])

    # ---------- support tickets ----------
    op.create_table(
        "support_ticket_categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(128), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("color", sa.String(16), nullable=False, server_default="#64748b"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("name"),
    )
    op.create_table(
        "support_tickets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("ticket_number", sa.String(20), nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="open"),
        sa.Column("priority", sa.String(16), nullable=False, server_default="medium"),
        sa.Column("category_id", sa.Integer(), nullable=True),
        sa.Column("tags", sa.JSON(), nullable=True),
        sa.Column("due_date", sa.Date(), nullable=True),
        sa.Column("assigned_to_user_id", sa.Integer(), nullable=True),
        sa.Column("created_by_user_id", sa.Integer(), nullable=True),
        sa.Column("first_response_at", sa.DateTime(), nullable=True),
        sa.Column("response_time_minutes", sa.Integer(), nullable=True),
        sa.Column("resolved_at", sa.DateTime(), nullable=True),
        sa.Column("resolution_time_minutes", sa.Integer(), nullable=True),
        sa.Column("closed_at", sa.DateTime(), nullable=True),
        sa.Column("escalation_level", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("escalated_at", sa.DateTime(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["category_id"], ["support_ticket_categories.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["assigned_to_user_id"], ["users.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["created_by_user_id"], ["users.id"], ondelete="SET NULL"),
        sa.UniqueConstraint("ticket_number"),
        sa.CheckConstraint(
            "status IN ('open','in_progress','pending','resolved','closed')", name="ck_support_tickets_status"
        ),
        sa.CheckConstraint("priority IN ('low','medium','high','urgent')", name="ck_support_tickets_priority"),
    )
    op.create_index("idx_support_tickets_status", "support_tickets", ["status"])
    op.create_index("idx_support_tickets_assignee", "support_tickets", ["assigned_to_user_id"])

    op.create_table(
        "support_ticket_comments",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("ticket_id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=True),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("is_internal", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("is_solution", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("time_spent_minutes", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["ticket_id"], ["support_tickets.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="SET NULL"),
    )
    op.create_index("idx_support_ticket_comments_ticket", "support_ticket_comments", ["ticket_id"])

    # ---------- CMS menus ----------
    op.create_table(
        "cms_menus",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("slug", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("location", sa.String(16), nullable=False, server_default="header"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_by_user_id", sa.Integer(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["created_by_user_id"], ["users.id"], ondelete="SET NULL"),
        sa.UniqueConstraint("slug"),
        sa.CheckConstraint(
            "location IN ('header','footer','sidebar','mobile','breadcrumb')", name="ck_cms_menus_location"
        ),
    )
    op.create_index("idx_cms_menus_location", "cms_menus", ["location"])

    op.create_table(
        "cms_menu_items",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("menu_id", sa.Integer(), nullable=False),
        sa.Column("parent_id", sa.Integer(), nullable=True),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("url", sa.String(500), nullable=True),
        sa.Column("target", sa.String(8), nullable=False, server_default="_self"),
        sa.Column("icon", sa.String(64), nullable=True),
        sa.Column("css_class", sa.String(128), nullable=True),
        sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("require_auth", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("permissions", sa.JSON(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["menu_id"], ["cms_menus.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["parent_id"], ["cms_menu_items.id"], ondelete="SET NULL"),
        sa.CheckConstraint("target IN ('_self','_blank','_parent','_top')", name="ck_cms_menu_items_target"),
    )
    op.create_index("idx_cms_menu_items_menu", "cms_menu_items", ["menu_id"])
    op.create_index("idx_cms_menu_items_parent", "cms_menu_items", ["parent_id"])

    # ---------- AI tooling ----------
    op.create_table(
        "ai_services",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("slug", sa.String(255), nullable=False),
        sa.Column("provider", sa.String(32), nullable=False),
        sa.Column("api_url", sa.String(500), nullable=True),
        sa.Column("api_key", sa.Text(), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("is_enabled", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("is_default", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("configuration", sa.JSON(), nullable=True),
        sa.Column("supported_features", sa.JSON(), nullable=True),
        sa.Column("cost_per_token", sa.Numeric(12, 8), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("slug"),
    )
    op.create_table(
        "ai_models",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("service_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("slug", sa.String(255), nullable=False),
        sa.Column("model_identifier", sa.String(255), nullable=False),
        sa.Column("type", sa.String(16), nullable=False, server_default="chat"),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("is_enabled", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("is_default", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("max_tokens", sa.Integer(), nullable=True),
        sa.Column("temperature", sa.Float(), nullable=True),
        sa.Column("top_p", sa.Float(), nullable=True),
        sa.Column("frequency_penalty", sa.Float(), nullable=True),
        sa.Column("presence_penalty", sa.Float(), nullable=True),
        sa.Column("cost_per_input_token", sa.Numeric(12, 8), nullable=True),
        sa.Column("cost_per_output_token", sa.Numeric(12, 8), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["service_id"], ["ai_services.id"], ondelete="RESTRICT"),
        sa.UniqueConstraint("slug"),
        sa.CheckConstraint("type IN ('chat','completion','embedding','image','audio')", name="ck_ai_models_type"),
        sa.CheckConstraint("max_tokens IS NULL OR max_tokens >= 1", name="ck_ai_models_max_tokens"),
    )
    op.create_index("idx_ai_models_service", "ai_models", ["service_id"])
    op.create_index("idx_ai_models_type", "ai_models", ["type"])

    op.create_table(
        "ai_prompt_templates",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("slug", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("category", sa.String(100), nullable=False, server_default="general"),
        sa.Column("template", sa.Text(), nullable=False),
        sa.Column("variables", sa.JSON(), nullable=True),
        sa.Column("example_data", sa.JSON(), nullable=True),
        sa.Column("tags", sa.JSON(), nullable=True),
        sa.Column("is_public", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("is_system", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("usage_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("avg_rating", sa.Float(), nullable=True),
        sa.Column("rating_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("user_id", sa.Integer(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="SET NULL"),
        sa.UniqueConstraint("slug"),
    )
    op.create_index("idx_ai_prompt_templates_category", "ai_prompt_templates", ["category"])

    op.create_table(
        "ai_conversations",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("model_id", sa.Integer(), nullable=False),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("context_type", sa.String(16), nullable=True),
        sa.Column("context_id", sa.Integer(), nullable=True),
        sa.Column("is_archived", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("message_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_tokens", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_cost", sa.Numeric(14, 6), nullable=False, server_default="0"),
        sa.Column("last_message_at", sa.DateTime(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["model_id"], ["ai_models.id"], ondelete="RESTRICT"),
        sa.CheckConstraint(
            "context_type IS NULL OR context_type IN ('crm','finance','support','general')",
            name="ck_ai_conversations_context_type",
        ),
    )
    op.create_index("idx_ai_conversations_user", "ai_conversations", ["user_id"])
    op.create_index("idx_ai_conversations_last_message", "ai_conversations", ["last_message_at"])

    op.create_table(
        "ai_conversation_messages",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("conversation_id", sa.Integer(), nullable=False),
        sa.Column("role", sa.String(16), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("tokens", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["conversation_id"], ["ai_conversations.id"], ondelete="CASCADE"),
        sa.CheckConstraint("role IN ('user','assistant','system')", name="ck_ai_conversation_messages_role"),
    )
    op.create_index(
        "idx_ai_conversation_messages_conversation", "ai_conversation_messages", ["conversation_id"]
    )

    # ---------- live chat ----------
    op.create_table(
        "chat_sessions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("token", sa.String(64), nullable=False),
        sa.Column("visitor_name", sa.String(255), nullable=False),
        sa.Column("visitor_email", sa.String(320), nullable=True),
        sa.Column("status", sa.String(16), nullable=False, server_default="waiting"),
        sa.Column("assigned_agent_id", sa.Integer(), nullable=True),
        sa.Column("ip_address", sa.String(64), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("claimed_at", sa.DateTime(), nullable=True),
        sa.Column("closed_at", sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(["assigned_agent_id"], ["users.id"], ondelete="SET NULL"),
        sa.UniqueConstraint("token"),
        sa.CheckConstraint("status IN ('waiting','active','closed')", name="ck_chat_sessions_status"),
    )
    op.create_index("idx_chat_sessions_status", "chat_sessions", ["status"])
    op.create_index("idx_chat_sessions_agent", "chat_sessions", ["assigned_agent_id"])

    op.create_table(
        "chat_messages",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("session_id", sa.Integer(), nullable=False),
        sa.Column("sender_type", sa.String(16), nullable=False),
        sa.Column("sender_user_id", sa.Integer(), nullable=True),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["session_id"], ["chat_sessions.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["sender_user_id"], ["users.id"], ondelete="SET NULL"),
        sa.CheckConstraint("sender_type IN ('visitor','agent','system')", name="ck_chat_messages_sender_type"),
    )
    op.create_index("idx_chat_messages_session", "chat_messages", ["session_id"])


# Children before parents; indexes go with their tables.
TABLES_IN_DROP_ORDER = (
    "chat_messages",
    "chat_sessions",
    "ai_conversation_messages",
    "ai_conversations",
    "ai_prompt_templates",
    "ai_models",
    "ai_services",
    "cms_menu_items",
    "cms_menus",
    "support_ticket_comments",
    "support_tickets",
    "support_ticket_categories",
    "hr_employees",
    "hr_departments",
    "project_tasks",
    "projects",
    "reconciliation_items",
    "bank_reconciliations",
    "bank_statement_lines",
    "bank_statements",
    "expenses",
    "invoice_items",
    "invoices",
    "transactions",
    "accounts",
    "finance_categories",
    "guest_inquiries",
    "audit_events",
    "role_permissions",
    "user_roles",
    "permissions",
    "roles",
    "users",
)


def downgrade() -> None:
    for table in TABLES_IN_DROP_ORDER:
        op.drop_table(table)
