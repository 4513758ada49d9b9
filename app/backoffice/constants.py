"""
Central constants: the permission catalogue and the system roles.

Permission keys follow ``<resource>.<action>``. The seed script, the role
defaults and the tests all read from here.
"""
from __future__ import annotations

PERMISSIONS: tuple[tuple[str, str], ...] = (
    ("admin.view", "Admin: view shell"),
    ("audit.view", "Audit: view trail"),
    # Access control
    ("users.view", "Users: view"),
    ("users.create", "Users: create"),
    ("users.edit", "Users: edit"),
    ("users.delete", "Users: delete"),
    ("roles.view", "Roles: view"),
    ("roles.create", "Roles: create"),
    ("roles.edit", "Roles: edit"),
    ("roles.delete", "Roles: delete"),
    ("permissions.view", "Permissions: view"),
    ("permissions.create", "Permissions: create"),
    ("permissions.edit", "Permissions: edit"),
    ("permissions.delete", "Permissions: delete"),
    # CRM / support intake
    ("inquiries.view", "Guest inquiries: view"),
    ("inquiries.edit", "Guest inquiries: edit/assign"),
    ("inquiries.delete", "Guest inquiries: delete"),
    ("inquiries.export", "Guest inquiries: export CSV"),
    ("integrations.view", "Integrations: run health checks"),
    # Finance
    ("finance_categories.view", "Finance categories: view"),
    ("finance_categories.manage", "Finance categories: manage"),
    ("accounts.view", "Accounts: view"),
    ("accounts.create", "Accounts: create"),
    ("accounts.edit", "Accounts: edit"),
    ("accounts.delete", "Accounts: delete"),
    ("transactions.view", "Transactions: view"),
    ("transactions.create", "Transactions: create"),
    ("transactions.edit", "Transactions: edit"),
    ("transactions.delete", "Transactions: delete"),
    ("invoices.view", "Invoices: view"),
    ("invoices.create", "Invoices: create"),
    ("invoices.edit", "Invoices: edit/send/record payment"),
    ("invoices.delete", "Invoices: delete"),
    ("expenses.view", "Expenses: view"),
    ("expenses.create", "Expenses: create"),
    ("expenses.edit", "Expenses: edit"),
    ("expenses.delete", "Expenses: delete"),
    ("expenses.approve", "Expenses: approve/reject"),
    ("bank_statements.view", "Bank statements: view"),
    ("bank_statements.import", "Bank statements: import CSV"),
    ("reconciliations.view", "Reconciliations: view"),
    ("reconciliations.manage", "Reconciliations: match/complete/delete"),
    # Projects
    ("projects.view", "Projects: view"),
    ("projects.create", "Projects: create"),
    ("projects.edit", "Projects: edit"),
    ("projects.delete", "Projects: delete"),
    ("tasks.view", "Tasks: view"),
    ("tasks.create", "Tasks: create"),
    ("tasks.edit", "Tasks: edit/update status"),
    ("tasks.delete", "Tasks: delete"),
    # CMS
    ("cms_menus.view", "CMS menus: view"),
    ("cms_menus.create", "CMS menus: create"),
    ("cms_menus.edit", "CMS menus: edit items"),
    ("cms_menus.delete", "CMS menus: delete"),
    # AI tooling
    ("ai_services.view", "AI services: view"),
    ("ai_services.manage", "AI services: manage"),
    ("ai_models.view", "AI models: view"),
    ("ai_models.manage", "AI models: manage"),
    ("prompt_templates.view", "Prompt templates: view"),
    ("prompt_templates.manage", "Prompt templates: manage"),
    ("conversations.view", "AI conversations: view"),
    ("conversations.manage", "AI conversations: manage/export"),
    # Live chat
    ("chat.view", "Live chat: view queue and join presence"),
    ("chat.manage", "Live chat: supervise all sessions"),
    # HR
    ("departments.view", "Departments: view"),
    ("departments.create", "Departments: create"),
    ("departments.edit", "Departments: edit/activate/deactivate"),
    ("departments.delete", "Departments: delete"),
    ("employees.view", "Employees: view"),
    ("employees.create", "Employees: create"),
    ("employees.edit", "Employees: edit/activate/deactivate"),
    ("employees.delete", "Employees: terminate"),
    # Support
    ("tickets.view", "Support tickets: view and comment"),
    ("tickets.create", "Support tickets: create"),
    ("tickets.edit", "Support tickets: edit/assign/escalate/close"),
    ("tickets.delete", "Support tickets: delete"),
)

# Core access-control permissions cannot be deleted from the UI.
SYSTEM_PERMISSION_KEYS = frozenset(
    {"admin.view"}
    | {f"{res}.{act}" for res in ("users", "roles", "permissions") for act in ("view", "create", "edit", "delete")}
)

SYSTEM_ROLES: dict[str, str] = {
    "admin": "Administrator",
    "manager": "Manager",
    "staff": "Staff",
    "customer": "Customer",
}

_MANAGER_EXCLUDED = frozenset(
    {
        "users.delete",
        "roles.create",
        "roles.edit",
        "roles.delete",
        "permissions.create",
        "permissions.edit",
        "permissions.delete",
    }
)

_STAFF_ALLOWED = frozenset(
    {
        "admin.view",
        "inquiries.view",
        "inquiries.edit",
        "projects.view",
        "tasks.view",
        "tasks.create",
        "tasks.edit",
        "expenses.view",
        "expenses.create",
        "expenses.edit",
        "cms_menus.view",
        "prompt_templates.view",
        "conversations.view",
        "chat.view",
        "departments.view",
        "tickets.view",
        "tickets.create",
        "tickets.edit",
    }
)


def default_role_permissions(role_key: str) -> list[str]:
    """Permission keys granted to a system role by the seed script."""
    all_keys = [k for k, _ in PERMISSIONS]
    if role_key == "admin":
        return all_keys
    if role_key == "manager":
        return [k for k in all_keys if k not in _MANAGER_EXCLUDED]
    if role_key == "staff":
        return [k for k in all_keys if k in _STAFF_ALLOWED]
    return []


# Seeded once; editable afterwards from the finance categories page.
DEFAULT_FINANCE_CATEGORIES: tuple[tuple[str, str, str], ...] = (
    ("Sales", "income", "#16a34a"),
    ("Services", "income", "#0d9488"),
    ("Interest", "income", "#2563eb"),
    ("Office Supplies", "expense", "#f59e0b"),
    ("Travel", "expense", "#db2777"),
    ("Software", "expense", "#7c3aed"),
    ("Payroll", "expense", "#dc2626"),
    ("Utilities", "expense", "#64748b"),
)

DEFAULT_TICKET_CATEGORIES: tuple[tuple[str, str], ...] = (
    ("General", "#64748b"),
    ("Technical", "#2563eb"),
    ("Billing", "#16a34a"),
    ("Account", "#7c3aed"),
)
