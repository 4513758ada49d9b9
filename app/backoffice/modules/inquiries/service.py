from __future__ import annotations

import json
import logging
import secrets
import string
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, or_

from app.backoffice.audit import record_event
from app.backoffice.modules.inquiries.models import GuestInquiry
from app.backoffice.utils import is_valid_email

if TYPE_CHECKING:
    from sqlalchemy.orm import Query, Session

    from app.backoffice.models import User

logger = logging.getLogger(__name__)

TYPES = ("general", "sales", "partnership", "support", "other")
STATUSES = ("new", "in_progress", "resolved", "closed")
URGENCIES = ("low", "normal", "high", "urgent")
CONTACT_METHODS = ("email", "phone", "both")
BULK_ACTIONS = ("assign", "status", "delete")
UTM_FIELDS = ("utm_source", "utm_medium", "utm_campaign")

MAX_MESSAGE = 5000
MAX_NOTES = 5000

CSV_HEADER = [
    "Reference Number",
    "Type",
    "Name",
    "Email",
    "Phone",
    "Company",
    "Position",
    "Subject",
    "Message",
    "Urgency",
    "Status",
    "Assigned To",
    "Source",
    "Created At",
    "Responded At",
]

_REF_ALPHABET = string.ascii_uppercase + string.digits


def generate_reference_number(s: "Session") -> str:
    """PI- followed by 8 random uppercase characters, unique across inquiries."""
    while True:
        ref = "PI-" + "".join(secrets.choice(_REF_ALPHABET) for _ in range(8))
        if not s.query(GuestInquiry.id).filter(GuestInquiry.reference_number == ref).first():
            return ref


def validate_inquiry_payload(payload: dict) -> dict[str, str]:
    """Validate a public submission. Returns {field: message}."""
    errors: dict[str, str] = {}

    def _text(field: str) -> str:
        return str(payload.get(field) or "").strip()

    inquiry_type = _text("type") or "general"
    if inquiry_type not in TYPES:
        errors["type"] = f"Type must be one of: {', '.join(TYPES)}."

    for field, label, limit in (("name", "Name", 255), ("subject", "Subject", 255)):
        value = _text(field)
        if not value:
            errors[field] = f"{label} is required."
        elif len(value) > limit:
            errors[field] = f"{label} must be at most {limit} characters."

    email = _text("email")
    if not email:
        errors["email"] = "Email is required."
    elif not is_valid_email(email):
        errors["email"] = "Email must be a valid email address."

    message = _text("message")
    if not message:
        errors["message"] = "Message is required."
    elif len(message) > MAX_MESSAGE:
        errors["message"] = f"Message must be at most {MAX_MESSAGE} characters."

    if len(_text("phone")) > 20:
        errors["phone"] = "Phone must be at most 20 characters."
    for field in ("company", "position"):
        if len(_text(field)) > 255:
            errors[field] = f"{field.capitalize()} must be at most 255 characters."

    method = _text("preferred_contact_method") or "email"
    if method not in CONTACT_METHODS:
        errors["preferred_contact_method"] = f"Preferred contact method must be one of: {', '.join(CONTACT_METHODS)}."
    urgency = _text("urgency") or "normal"
    if urgency not in URGENCIES:
        errors["urgency"] = f"Urgency must be one of: {', '.join(URGENCIES)}."
    if len(_text("source")) > 64:
        errors["source"] = "Source must be at most 64 characters."
    return errors


def create_inquiry(
    s: "Session",
    payload: dict,
    *,
    ip_address: str | None = None,
    user_agent: str | None = None,
    referrer: str | None = None,
) -> GuestInquiry:
    def _text(field: str) -> str | None:
        return str(payload.get(field) or "").strip() or None

    meta: dict[str, Any] = {k: _text(k) for k in UTM_FIELDS if _text(k)}
    if referrer:
        meta["referrer"] = referrer

    now = datetime.utcnow()
    inquiry = GuestInquiry(
        reference_number=generate_reference_number(s),
        type=_text("type") or "general",
        name=_text("name") or "",
        email=(_text("email") or "").lower(),
        phone=_text("phone"),
        company=_text("company"),
        position=_text("position"),
        subject=_text("subject") or "",
        message=_text("message") or "",
        preferred_contact_method=_text("preferred_contact_method") or "email",
        urgency=_text("urgency") or "normal",
        status="new",
        source=_text("source") or "website",
        ip_address=ip_address,
        user_agent=(user_agent or "")[:512] or None,
        metadata_json=json.dumps(meta, sort_keys=True) if meta else None,
        created_at=now,
        updated_at=now,
    )
    s.add(inquiry)
    s.flush()
    record_event(
        s,
        actor=None,
        action="inquiry.submit",
        entity_type="GuestInquiry",
        entity_id=str(inquiry.id),
        metadata={"reference_number": inquiry.reference_number, "type": inquiry.type, "source": inquiry.source},
    )
    return inquiry


def notify_staff(config: dict, inquiry: GuestInquiry) -> bool:
    """Email the configured inbox about a new inquiry. Never raises; returns success."""
    from app.backoffice.mailer import mail_configured, send_mail

    recipient = (config.get("INQUIRY_NOTIFY_EMAIL") or "").strip()
    if not recipient or not mail_configured(config):
        return False
    try:
        send_mail(
            config,
            to=[recipient],
            subject=f"New {inquiry.type} inquiry {inquiry.reference_number}: {inquiry.subject}",
            body=(
                f"From: {inquiry.name} <{inquiry.email}>\n"
                f"Company: {inquiry.company or '-'}\n"
                f"Urgency: {inquiry.urgency}\n\n"
                f"{inquiry.message}\n"
            ),
        )
        return True
    except Exception:
        logger.exception("Failed to notify staff about inquiry %s", inquiry.reference_number)
        return False


# ---------- Admin queries ----------
def parse_inquiry_filters(args) -> dict[str, str]:
    return {
        "q": (args.get("q") or "").strip(),
        "type": (args.get("type") or "").strip(),
        "status": (args.get("status") or "").strip(),
        "urgency": (args.get("urgency") or "").strip(),
        "assigned_to": (args.get("assigned_to") or "").strip(),
    }


def query_inquiries(s: "Session", filters: dict[str, str]) -> "Query":
    q = s.query(GuestInquiry)
    search = filters.get("q")
    if search:
        like = f"%{search}%"
        q = q.filter(
            or_(
                GuestInquiry.name.ilike(like),
                GuestInquiry.email.ilike(like),
                GuestInquiry.company.ilike(like),
                GuestInquiry.subject.ilike(like),
                GuestInquiry.reference_number.ilike(like),
            )
        )
    if filters.get("type"):
        q = q.filter(GuestInquiry.type == filters["type"])
    if filters.get("status"):
        q = q.filter(GuestInquiry.status == filters["status"])
    if filters.get("urgency"):
        q = q.filter(GuestInquiry.urgency == filters["urgency"])
    assigned = filters.get("assigned_to")
    if assigned == "unassigned":
        q = q.filter(GuestInquiry.assigned_to_user_id.is_(None))
    elif assigned and assigned.isdigit():
        q = q.filter(GuestInquiry.assigned_to_user_id == int(assigned))
    return q.order_by(GuestInquiry.created_at.desc(), GuestInquiry.id.desc())


def inquiry_stats(s: "Session") -> dict[str, int]:
    def _count(*criteria) -> int:
        return s.query(func.count(GuestInquiry.id)).filter(*criteria).scalar() or 0

    return {
        "total": _count(),
        "new": _count(GuestInquiry.status == "new"),
        "in_progress": _count(GuestInquiry.status == "in_progress"),
        "unassigned": _count(GuestInquiry.assigned_to_user_id.is_(None)),
    }


def export_rows(inquiries: list[GuestInquiry]) -> list[list[Any]]:
    rows = []
    for i in inquiries:
        rows.append(
            [
                i.reference_number,
                i.type,
                i.name,
                i.email,
                i.phone,
                i.company,
                i.position,
                i.subject,
                i.message,
                i.urgency,
                i.status,
                i.assignee.display_name if i.assignee else "Unassigned",
                i.source,
                i.created_at.strftime("%Y-%m-%d %H:%M:%S") if i.created_at else "",
                i.responded_at.strftime("%Y-%m-%d %H:%M:%S") if i.responded_at else "",
            ]
        )
    return rows


# ---------- Admin mutations ----------
def _apply_status(inquiry: GuestInquiry, new_status: str) -> None:
    inquiry.status = new_status
    if new_status == "in_progress" and inquiry.responded_at is None:
        inquiry.responded_at = datetime.utcnow()


def validate_update_payload(s: "Session", payload: dict) -> list[str]:
    from app.backoffice.models import User

    errors: list[str] = []
    status = (payload.get("status") or "").strip()
    if status not in STATUSES:
        errors.append(f"Status must be one of: {', '.join(STATUSES)}.")
    assigned = (payload.get("assigned_to") or "").strip()
    if assigned and (not assigned.isdigit() or not s.get(User, int(assigned))):
        errors.append("Selected assignee does not exist.")
    if len(payload.get("internal_notes") or "") > MAX_NOTES:
        errors.append(f"Internal notes must be at most {MAX_NOTES} characters.")
    return errors


def update_inquiry(s: "Session", inquiry: GuestInquiry, payload: dict, user: "User") -> GuestInquiry:
    changes: dict[str, dict] = {}
    new_status = (payload.get("status") or "").strip()
    if new_status != inquiry.status:
        changes["status"] = {"old": inquiry.status, "new": new_status}
        _apply_status(inquiry, new_status)

    assigned = (payload.get("assigned_to") or "").strip()
    new_assignee = int(assigned) if assigned else None
    if new_assignee != inquiry.assigned_to_user_id:
        changes["assigned_to"] = {"old": inquiry.assigned_to_user_id, "new": new_assignee}
        inquiry.assigned_to_user_id = new_assignee

    new_notes = (payload.get("internal_notes") or "").strip() or None
    if new_notes != inquiry.internal_notes:
        changes["internal_notes"] = {"old": bool(inquiry.internal_notes), "new": bool(new_notes)}
        inquiry.internal_notes = new_notes

    inquiry.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=user,
        action="inquiry.update",
        entity_type="GuestInquiry",
        entity_id=str(inquiry.id),
        metadata={"reference_number": inquiry.reference_number, "changes": changes},
    )
    return inquiry


def assign_inquiry(s: "Session", inquiry: GuestInquiry, assignee: "User", user: "User") -> GuestInquiry:
    old = inquiry.assigned_to_user_id
    inquiry.assigned_to_user_id = assignee.id
    _apply_status(inquiry, "in_progress")
    inquiry.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=user,
        action="inquiry.assign",
        entity_type="GuestInquiry",
        entity_id=str(inquiry.id),
        metadata={"reference_number": inquiry.reference_number, "old": old, "new": assignee.id},
    )
    return inquiry


def mark_responded(s: "Session", inquiry: GuestInquiry, user: "User") -> GuestInquiry:
    if inquiry.responded_at is None:
        inquiry.responded_at = datetime.utcnow()
    if inquiry.status == "new":
        inquiry.status = "in_progress"
    inquiry.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=user,
        action="inquiry.mark_responded",
        entity_type="GuestInquiry",
        entity_id=str(inquiry.id),
        metadata={"reference_number": inquiry.reference_number},
    )
    return inquiry


def delete_inquiry(s: "Session", inquiry: GuestInquiry, user: "User") -> None:
    record_event(
        s,
        actor=user,
        action="inquiry.delete",
        entity_type="GuestInquiry",
        entity_id=str(inquiry.id),
        metadata={"reference_number": inquiry.reference_number, "email": inquiry.email},
    )
    s.delete(inquiry)


def bulk_update(s: "Session", ids: list[int], action: str, value: str | None, user: "User") -> int:
    """
    Apply one action to many inquiries.
    - assign: value is a user id (sets status in_progress)
    - status: value is a status
    - delete
    Returns the number of inquiries affected.
    """
    from app.backoffice.models import User

    if action not in BULK_ACTIONS:
        raise ValueError(f"Action must be one of: {', '.join(BULK_ACTIONS)}.")
    inquiries = s.query(GuestInquiry).filter(GuestInquiry.id.in_(ids)).all() if ids else []
    if not inquiries:
        raise ValueError("Select at least one inquiry.")

    if action == "assign":
        assignee = s.get(User, int(value)) if value and str(value).isdigit() else None
        if not assignee:
            raise ValueError("Select a valid assignee.")
        for inquiry in inquiries:
            inquiry.assigned_to_user_id = assignee.id
            _apply_status(inquiry, "in_progress")
            inquiry.updated_at = datetime.utcnow()
    elif action == "status":
        if value not in STATUSES:
            raise ValueError(f"Status must be one of: {', '.join(STATUSES)}.")
        for inquiry in inquiries:
            _apply_status(inquiry, value)
            inquiry.updated_at = datetime.utcnow()
    else:
        for inquiry in inquiries:
            s.delete(inquiry)

    record_event(
        s,
        actor=user,
        action=f"inquiry.bulk_{action}",
        entity_type="GuestInquiry",
        entity_id="bulk",
        metadata={"ids": sorted(i.id for i in inquiries), "value": value},
    )
    return len(inquiries)
