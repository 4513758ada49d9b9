from __future__ import annotations

from collections import OrderedDict
from typing import Iterable, NamedTuple

MODULES: tuple[str, ...] = ("crm", "finance", "projects", "support", "cms", "hr", "ai", "admin", "settings")
ACTIONS: tuple[str, ...] = ("view", "create", "edit", "delete", "manage", "export", "import", "approve", "access")

# Resource (either the dotted prefix or the legacy "<action> <resource>" tail) -> module.
RESOURCE_MODULES: dict[str, str] = {
    "admin": "admin",
    "audit": "admin",
    "users": "admin",
    "roles": "admin",
    "permissions": "admin",
    "integrations": "admin",
    "inquiries": "crm",
    "guest inquiries": "crm",
    "leads": "crm",
    "contacts": "crm",
    "finance categories": "finance",
    "accounts": "finance",
    "transactions": "finance",
    "invoices": "finance",
    "expenses": "finance",
    "bank statements": "finance",
    "reconciliations": "finance",
    "projects": "projects",
    "tasks": "projects",
    "tickets": "support",
    "chat": "support",
    "live chat": "support",
    "cms menus": "cms",
    "cms pages": "cms",
    "menus": "cms",
    "employees": "hr",
    "departments": "hr",
    "ai services": "ai",
    "ai models": "ai",
    "prompt templates": "ai",
    "conversations": "ai",
    "settings": "settings",
    "customer portal": "customer",
}


class PermissionName(NamedTuple):
    module: str
    action: str
    resource: str


def _module_for(resource: str) -> str | None:
    resource = resource.replace("_", " ").strip()
    if resource in RESOURCE_MODULES:
        return RESOURCE_MODULES[resource]
    if resource in MODULES:
        return resource
    return None


def parse_permission_name(name: str) -> PermissionName:
    """
    Split a permission name into (module, action, resource).

    Accepts dotted keys ("invoices.create", "crm.view") and legacy
    space-separated names ("view users", "access customer portal").
    Unknown names land in the "system" module with the full name as action.
    """
    raw = (name or "").strip().lower()
    if "." in raw:
        resource, action = raw.split(".", 1)
        module = _module_for(resource)
        if module and action:
            return PermissionName(module, action, resource)
    else:
        head, _, tail = raw.partition(" ")
        if head in ACTIONS and tail:
            module = _module_for(tail)
            if module:
                return PermissionName(module, head, tail.replace(" ", "_"))
    return PermissionName("system", raw, raw)


def group_by_module(keys: Iterable) -> "OrderedDict[str, list]":
    """
    Group permissions (objects with a ``key`` attribute, or plain strings) by module.
    Modules follow MODULES order; anything else is appended alphabetically.
    """
    buckets: dict[str, list] = {}
    for item in keys:
        key = getattr(item, "key", item)
        buckets.setdefault(parse_permission_name(key).module, []).append(item)

    ordered: "OrderedDict[str, list]" = OrderedDict()
    for module in list(MODULES) + sorted(m for m in buckets if m not in MODULES):
        if module in buckets:
            ordered[module] = sorted(buckets[module], key=lambda i: getattr(i, "key", i))
    return ordered
