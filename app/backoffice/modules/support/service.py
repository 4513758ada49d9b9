from __future__ import annotations

from datetime import date, datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, or_

from app.backoffice.audit import record_event
from app.backoffice.models import User
from app.backoffice.modules.support.models import Ticket, TicketCategory, TicketComment
from app.backoffice.utils import clean, parse_date, parse_int

if TYPE_CHECKING:
    from sqlalchemy.orm import Query, Session

TICKET_STATUSES = ("open", "in_progress", "pending", "resolved", "closed")
PRIORITIES = ("low", "medium", "high", "urgent")
DONE_STATUSES = ("resolved", "closed")


class SupportRuleError(ValueError):
    pass


def _minutes_between(start: datetime, end: datetime) -> int:
    return max(0, int((end - start).total_seconds() // 60))


def _split_tags(raw: Any) -> list[str]:
    if not raw:
        return []
    if isinstance(raw, str):
        raw = raw.split(",")
    return [str(t).strip().lower() for t in raw if str(t).strip()]


def active_categories(s: "Session") -> list[TicketCategory]:
    return (
        s.query(TicketCategory)
        .filter(TicketCategory.is_active.is_(True))
        .order_by(TicketCategory.sort_order, TicketCategory.name)
        .all()
    )


def next_ticket_number(s: "Session", today: date | None = None) -> str:
    """TKT-<year>-<4-digit sequence>, restarting every year."""
    prefix = f"TKT-{(today or date.today()).year}-"
    highest = 0
    for (number,) in s.query(Ticket.ticket_number).filter(Ticket.ticket_number.like(f"{prefix}%")):
        n = parse_int(number[len(prefix):])
        if n is not None and n > highest:
            highest = n
    return f"{prefix}{highest + 1:04d}"


# ============================================================================
# TICKETS
# ============================================================================


def validate_ticket_payload(s: "Session", payload: dict, ticket: Ticket | None = None) -> list[str]:
    errors: list[str] = []
    title = clean(payload.get("title"))
    if not title:
        errors.append("Title is required.")
    elif len(title) > 255:
        errors.append("Title must be at most 255 characters.")
    if not clean(payload.get("description")):
        errors.append("Description is required.")
    if (payload.get("priority") or "medium") not in PRIORITIES:
        errors.append("Invalid priority.")
    if ticket is not None and (payload.get("status") or ticket.status) not in TICKET_STATUSES:
        errors.append("Invalid ticket status.")

    category_id = parse_int(payload.get("category_id"))
    if category_id is not None and s.get(TicketCategory, category_id) is None:
        errors.append("Category not found.")
    assignee_id = parse_int(payload.get("assigned_to_user_id"))
    if assignee_id is not None and s.get(User, assignee_id) is None:
        errors.append("Assignee not found.")
    if clean(payload.get("due_date")) and parse_date(payload.get("due_date")) is None:
        errors.append("Due date must be YYYY-MM-DD.")
    return errors


def _apply_ticket_fields(ticket: Ticket, payload: dict) -> None:
    ticket.title = clean(payload.get("title"))
    ticket.description = clean(payload.get("description"))
    ticket.priority = payload.get("priority") or "medium"
    ticket.category_id = parse_int(payload.get("category_id"))
    ticket.assigned_to_user_id = parse_int(payload.get("assigned_to_user_id"))
    ticket.due_date = parse_date(payload.get("due_date"))
    ticket.tags = _split_tags(payload.get("tags")) or None


def _apply_status(ticket: Ticket, status: str, now: datetime) -> None:
    # Resolution and close times are stamped once, on the first transition.
    ticket.status = status
    if status == "resolved" and ticket.resolved_at is None:
        ticket.resolved_at = now
        ticket.resolution_time_minutes = _minutes_between(ticket.created_at, now)
    if status == "closed" and ticket.closed_at is None:
        ticket.closed_at = now


def create_ticket(s: "Session", payload: dict, actor: User) -> Ticket:
    ticket = Ticket(
        ticket_number=next_ticket_number(s),
        status="open",
        escalation_level=0,
        created_by_user_id=actor.id,
        created_at=datetime.utcnow(),
    )
    _apply_ticket_fields(ticket, payload)
    s.add(ticket)
    s.flush()
    record_event(
        s,
        actor=actor,
        action="ticket.create",
        entity_type="Ticket",
        entity_id=str(ticket.id),
        metadata={"ticket_number": ticket.ticket_number, "priority": ticket.priority},
    )
    return ticket


def update_ticket(s: "Session", ticket: Ticket, payload: dict, actor: User) -> Ticket:
    before = {"status": ticket.status, "priority": ticket.priority, "assignee": ticket.assigned_to_user_id}
    _apply_ticket_fields(ticket, payload)
    now = datetime.utcnow()
    _apply_status(ticket, payload.get("status") or ticket.status, now)
    ticket.updated_at = now
    record_event(
        s,
        actor=actor,
        action="ticket.update",
        entity_type="Ticket",
        entity_id=str(ticket.id),
        metadata={
            "before": before,
            "after": {"status": ticket.status, "priority": ticket.priority, "assignee": ticket.assigned_to_user_id},
        },
    )
    return ticket


def delete_ticket(s: "Session", ticket: Ticket, actor: User) -> None:
    record_event(
        s,
        actor=actor,
        action="ticket.delete",
        entity_type="Ticket",
        entity_id=str(ticket.id),
        metadata={"ticket_number": ticket.ticket_number, "comments": len(ticket.comments)},
    )
    s.delete(ticket)


def assign_ticket(s: "Session", ticket: Ticket, user_id: Any, actor: User) -> Ticket:
    uid = parse_int(user_id)
    assignee = s.get(User, uid) if uid is not None else None
    if assignee is None or not assignee.is_active:
        raise SupportRuleError("Assignee not found.")
    old = ticket.assigned_to_user_id
    ticket.assigned_to_user_id = assignee.id
    ticket.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=actor,
        action="ticket.assign",
        entity_type="Ticket",
        entity_id=str(ticket.id),
        metadata={"from": old, "to": assignee.id},
    )
    return ticket


def escalate_ticket(s: "Session", ticket: Ticket, user_id: Any, reason: str | None, actor: User) -> Ticket:
    """Hand the ticket to someone else one level up, leaving an internal note."""
    reason = clean(reason)
    if not reason:
        raise SupportRuleError("Escalation reason is required.")
    if ticket.status in DONE_STATUSES:
        raise SupportRuleError("Resolved or closed tickets cannot be escalated.")
    uid = parse_int(user_id)
    target = s.get(User, uid) if uid is not None else None
    if target is None or not target.is_active:
        raise SupportRuleError("Escalation target not found.")

    now = datetime.utcnow()
    ticket.escalation_level = (ticket.escalation_level or 0) + 1
    ticket.escalated_at = now
    ticket.assigned_to_user_id = target.id
    ticket.updated_at = now
    ticket.comments.append(
        TicketComment(
            user_id=actor.id,
            content=f"Escalated to {target.display_name} (level {ticket.escalation_level}). Reason: {reason}",
            is_internal=True,
            is_solution=False,
            created_at=now,
        )
    )
    record_event(
        s,
        actor=actor,
        action="ticket.escalate",
        entity_type="Ticket",
        entity_id=str(ticket.id),
        reason=reason,
        metadata={"level": ticket.escalation_level, "to": target.id},
    )
    return ticket


def close_ticket(s: "Session", ticket: Ticket, actor: User, resolution_notes: str | None = None) -> Ticket:
    if ticket.status == "closed":
        raise SupportRuleError("Ticket is already closed.")
    now = datetime.utcnow()
    notes = clean(resolution_notes)
    if notes:
        ticket.comments.append(
            TicketComment(user_id=actor.id, content=notes, is_internal=False, is_solution=True, created_at=now)
        )
    _apply_status(ticket, "closed", now)
    ticket.updated_at = now
    record_event(s, actor=actor, action="ticket.close", entity_type="Ticket", entity_id=str(ticket.id))
    return ticket


def reopen_ticket(s: "Session", ticket: Ticket, reason: str | None, actor: User) -> Ticket:
    reason = clean(reason)
    if not reason:
        raise SupportRuleError("Reopen reason is required.")
    if ticket.status not in DONE_STATUSES:
        raise SupportRuleError("Only resolved or closed tickets can be reopened.")
    now = datetime.utcnow()
    old = ticket.status
    ticket.status = "open"
    ticket.resolved_at = None
    ticket.resolution_time_minutes = None
    ticket.closed_at = None
    ticket.updated_at = now
    ticket.comments.append(
        TicketComment(
            user_id=actor.id,
            content=f"Ticket reopened. Reason: {reason}",
            is_internal=True,
            is_solution=False,
            created_at=now,
        )
    )
    record_event(
        s,
        actor=actor,
        action="ticket.reopen",
        entity_type="Ticket",
        entity_id=str(ticket.id),
        reason=reason,
        metadata={"from": old},
    )
    return ticket


def add_comment(s: "Session", ticket: Ticket, payload: dict, actor: User) -> TicketComment:
    content = clean(payload.get("content"))
    if not content:
        raise SupportRuleError("Comment cannot be empty.")
    spent = None
    if clean(payload.get("time_spent_minutes")) is not None:
        spent = parse_int(payload.get("time_spent_minutes"))
        if spent is None or spent < 0:
            raise SupportRuleError("Time spent must be zero or more minutes.")
    is_internal = payload.get("is_internal") in ("1", "on", "true", True)
    now = datetime.utcnow()
    comment = TicketComment(
        user_id=actor.id,
        content=content,
        is_internal=is_internal,
        is_solution=payload.get("is_solution") in ("1", "on", "true", True),
        time_spent_minutes=spent,
        created_at=now,
    )
    ticket.comments.append(comment)
    # Internal notes do not count as a response to the requester.
    if not is_internal and ticket.first_response_at is None:
        ticket.first_response_at = now
        ticket.response_time_minutes = _minutes_between(ticket.created_at, now)
    ticket.updated_at = now
    s.flush()
    record_event(
        s,
        actor=actor,
        action="ticket.comment",
        entity_type="Ticket",
        entity_id=str(ticket.id),
        metadata={"comment_id": comment.id, "internal": is_internal},
    )
    return comment


def query_tickets(s: "Session", filters: dict[str, str]) -> "Query":
    q = s.query(Ticket)
    if filters.get("q"):
        like = f"%{filters['q']}%"
        q = q.filter(or_(Ticket.title.ilike(like), Ticket.description.ilike(like), Ticket.ticket_number.ilike(like)))
    if filters.get("status") in TICKET_STATUSES:
        q = q.filter(Ticket.status == filters["status"])
    if filters.get("priority") in PRIORITIES:
        q = q.filter(Ticket.priority == filters["priority"])
    category_id = parse_int(filters.get("category_id"))
    if category_id is not None:
        q = q.filter(Ticket.category_id == category_id)
    if filters.get("assigned") == "unassigned":
        q = q.filter(Ticket.assigned_to_user_id.is_(None))
    elif parse_int(filters.get("assigned")) is not None:
        q = q.filter(Ticket.assigned_to_user_id == parse_int(filters["assigned"]))
    if filters.get("overdue") == "1":
        q = q.filter(Ticket.due_date < date.today(), Ticket.status.notin_(DONE_STATUSES))
    return q.order_by(Ticket.created_at.desc(), Ticket.id.desc())


def ticket_stats(s: "Session") -> dict[str, int]:
    open_q = s.query(func.count(Ticket.id)).filter(Ticket.status.notin_(DONE_STATUSES))
    return {
        "total": s.query(func.count(Ticket.id)).scalar() or 0,
        "open": open_q.scalar() or 0,
        "unassigned": open_q.filter(Ticket.assigned_to_user_id.is_(None)).scalar() or 0,
        "overdue": open_q.filter(Ticket.due_date < date.today()).scalar() or 0,
    }
