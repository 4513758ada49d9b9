from datetime import date, datetime, timedelta

import pytest

from app.backoffice.db import session_scope
from app.backoffice.models import User
from app.backoffice.modules.support.models import Ticket, TicketCategory
from app.backoffice.modules.support.service import (
    SupportRuleError,
    add_comment,
    close_ticket,
    create_ticket,
    escalate_ticket,
    next_ticket_number,
    query_tickets,
    reopen_ticket,
    update_ticket,
    validate_ticket_payload,
)

from conftest import login, post, post_json, user_id


def _users(s):
    admin = s.query(User).filter(User.email == "admin@example.com").one()
    staff = s.query(User).filter(User.email == "staff@example.com").one()
    return admin, staff


def _open(s, actor, title="VPN drops every hour", **extra):
    return create_ticket(s, {"title": title, "description": "Users get disconnected.", **extra}, actor)


def _edit(ticket, **changes):
    payload = {"title": ticket.title, "description": ticket.description, "priority": ticket.priority}
    payload.update(changes)
    return payload


def test_default_categories_are_seeded(app):
    with session_scope(app) as s:
        names = [c.name for c in s.query(TicketCategory).order_by(TicketCategory.sort_order)]
        assert names == ["General", "Technical", "Billing", "Account"]


def test_ticket_numbers_restart_each_year(app):
    with session_scope(app) as s:
        admin, _ = _users(s)
        year = date.today().year
        assert next_ticket_number(s) == f"TKT-{year}-0001"
        ticket = _open(s, admin)
        s.flush()
        assert ticket.ticket_number == f"TKT-{year}-0001"
        assert next_ticket_number(s) == f"TKT-{year}-0002"
        assert next_ticket_number(s, date(year + 1, 1, 1)) == f"TKT-{year + 1}-0001"


def test_create_ticket_defaults_and_validation(app):
    with session_scope(app) as s:
        admin, _ = _users(s)
        errors = validate_ticket_payload(s, {"title": "", "description": " ", "priority": "critical", "category_id": "999"})
        assert errors == [
            "Title is required.",
            "Description is required.",
            "Invalid priority.",
            "Category not found.",
        ]

        technical = s.query(TicketCategory).filter(TicketCategory.name == "Technical").one()
        ticket = _open(s, admin, tags="VPN, Network ,", category_id=str(technical.id))
        s.flush()
        assert ticket.status == "open"
        assert ticket.priority == "medium"
        assert ticket.escalation_level == 0
        assert ticket.tags == ["vpn", "network"]
        assert ticket.category.name == "Technical"
        assert ticket.created_by_user_id == admin.id


def test_resolution_and_close_times_are_stamped_once(app):
    with session_scope(app) as s:
        admin, _ = _users(s)
        ticket = _open(s, admin)
        s.flush()
        ticket.created_at = datetime.utcnow() - timedelta(hours=2)

        update_ticket(s, ticket, _edit(ticket, status="resolved"), admin)
        first_resolved = ticket.resolved_at
        assert first_resolved is not None
        assert 119 <= ticket.resolution_time_minutes <= 121
        assert ticket.closed_at is None

        update_ticket(s, ticket, _edit(ticket, status="resolved", priority="high"), admin)
        assert ticket.resolved_at == first_resolved

        update_ticket(s, ticket, _edit(ticket, status="closed"), admin)
        assert ticket.status == "closed"
        assert ticket.closed_at is not None
        assert ticket.resolved_at == first_resolved


def test_reopen_requires_reason_and_clears_timestamps(app):
    with session_scope(app) as s:
        admin, _ = _users(s)
        ticket = _open(s, admin)
        s.flush()
        with pytest.raises(SupportRuleError, match="Only resolved or closed tickets can be reopened."):
            reopen_ticket(s, ticket, "Still broken", admin)

        update_ticket(s, ticket, _edit(ticket, status="resolved"), admin)
        with pytest.raises(SupportRuleError, match="Reopen reason is required."):
            reopen_ticket(s, ticket, "  ", admin)
        reopen_ticket(s, ticket, "Still broken", admin)
        assert ticket.status == "open"
        assert ticket.resolved_at is None
        assert ticket.resolution_time_minutes is None
        assert ticket.closed_at is None
        assert ticket.comments[-1].content == "Ticket reopened. Reason: Still broken"


def test_first_public_comment_sets_response_time(app):
    with session_scope(app) as s:
        admin, staff = _users(s)
        ticket = _open(s, admin)
        s.flush()
        ticket.created_at = datetime.utcnow() - timedelta(minutes=30)

        add_comment(s, ticket, {"content": "Looking at the logs.", "is_internal": "1"}, staff)
        assert ticket.first_response_at is None

        add_comment(s, ticket, {"content": "We are on it.", "time_spent_minutes": "15"}, staff)
        first = ticket.first_response_at
        assert first is not None
        assert 29 <= ticket.response_time_minutes <= 31

        add_comment(s, ticket, {"content": "Any update?"}, admin)
        assert ticket.first_response_at == first
        assert [c.time_spent_minutes for c in ticket.comments] == [None, 15, None]

        with pytest.raises(SupportRuleError, match="Comment cannot be empty."):
            add_comment(s, ticket, {"content": " "}, staff)
        with pytest.raises(SupportRuleError, match="Time spent"):
            add_comment(s, ticket, {"content": "x", "time_spent_minutes": "-3"}, staff)


def test_escalate_then_close(app):
    with session_scope(app) as s:
        admin, staff = _users(s)
        ticket = _open(s, staff)
        s.flush()
        with pytest.raises(SupportRuleError, match="Escalation reason is required."):
            escalate_ticket(s, ticket, admin.id, "", staff)
        with pytest.raises(SupportRuleError, match="Escalation target not found."):
            escalate_ticket(s, ticket, 9999, "Needs a manager", staff)

        escalate_ticket(s, ticket, admin.id, "Needs a manager", staff)
        assert ticket.escalation_level == 1
        assert ticket.escalated_at is not None
        assert ticket.assigned_to_user_id == admin.id
        note = ticket.comments[-1]
        assert note.is_internal is True
        assert note.content == "Escalated to Admin (level 1). Reason: Needs a manager"

        close_ticket(s, ticket, admin, "Replaced the router.")
        assert ticket.status == "closed"
        assert ticket.closed_at is not None
        solution = ticket.comments[-1]
        assert solution.is_solution is True
        assert solution.is_internal is False
        assert solution.content == "Replaced the router."
        with pytest.raises(SupportRuleError, match="Ticket is already closed."):
            close_ticket(s, ticket, admin)
        with pytest.raises(SupportRuleError, match="cannot be escalated"):
            escalate_ticket(s, ticket, staff.id, "Again", admin)


def test_query_tickets_filters(app):
    with session_scope(app) as s:
        admin, staff = _users(s)
        late = _open(s, admin, title="Invoice PDF broken", priority="high", due_date=str(date.today() - timedelta(days=1)))
        _open(s, admin, title="Password reset", assigned_to_user_id=str(staff.id))
        done = _open(s, admin, title="Old outage", due_date=str(date.today() - timedelta(days=5)))
        s.flush()
        update_ticket(s, done, _edit(done, status="closed", due_date=str(done.due_date)), admin)
        s.flush()

        def titles(**filters):
            return sorted(t.title for t in query_tickets(s, filters).all())

        assert titles(assigned="unassigned") == ["Invoice PDF broken", "Old outage"]
        assert titles(assigned=str(staff.id)) == ["Password reset"]
        assert titles(overdue="1") == ["Invoice PDF broken"]
        assert titles(priority="high") == ["Invoice PDF broken"]
        assert titles(status="closed") == ["Old outage"]
        assert titles(q=late.ticket_number) == ["Invoice PDF broken"]
        assert titles(q="password") == ["Password reset"]


def test_ticket_pages_and_actions(client, app):
    login(client, email="staff@example.com")
    r = post(client, "/admin/support/tickets/new", {"title": "", "description": ""})
    assert r.status_code == 400
    assert b"Title is required." in r.data

    r = post(client, "/admin/support/tickets/new", {"title": "Printer offline", "description": "Floor 2", "priority": "low"})
    assert r.status_code == 302
    with session_scope(app) as s:
        ticket_id = s.query(Ticket).one().id
    assert b"Printer offline" in client.get("/admin/support/tickets").data
    assert client.get(f"/admin/support/tickets/{ticket_id}").status_code == 200

    admin_id = user_id(app, "admin@example.com")
    r = post_json(client, f"/admin/support/tickets/{ticket_id}/assign", {"assigned_to_user_id": admin_id})
    assert r.get_json() == {"success": True, "message": "Ticket assigned successfully.", "status": "open"}

    r = post(client, f"/admin/support/tickets/{ticket_id}/comments", {"content": "Rebooted it."}, follow_redirects=True)
    assert b"Comment added successfully." in r.data

    r = post_json(client, f"/admin/support/tickets/{ticket_id}/close", {"resolution_notes": "Paper jam."})
    assert r.get_json()["status"] == "closed"
    r = post_json(client, f"/admin/support/tickets/{ticket_id}/reopen", {})
    assert r.status_code == 400
    assert r.get_json() == {"success": False, "message": "Reopen reason is required."}

    with session_scope(app) as s:
        ticket = s.get(Ticket, ticket_id)
        assert ticket.assigned_to_user_id == admin_id
        assert ticket.first_response_at is not None
        assert [c.content for c in ticket.comments] == ["Rebooted it.", "Paper jam."]

    assert post(client, f"/admin/support/tickets/{ticket_id}/delete").status_code == 403
    client.get("/auth/logout")
    login(client)
    assert post(client, f"/admin/support/tickets/{ticket_id}/delete").status_code == 302
    with session_scope(app) as s:
        assert s.get(Ticket, ticket_id) is None


def test_dashboard_shows_ticket_counters(client, app):
    with session_scope(app) as s:
        admin, _ = _users(s)
        _open(s, admin)
    login(client, email="staff@example.com")
    r = client.get("/admin/")
    assert b"Unassigned tickets" in r.data
    assert b"My open tickets" in r.data
