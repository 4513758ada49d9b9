"""Guest inquiry intake (public JSON) and the staff inbox."""
from app.backoffice.db import session_scope
from app.backoffice.models import AuditEvent
from app.backoffice.modules.inquiries.models import GuestInquiry
from app.backoffice.modules.inquiries.service import notify_staff

from conftest import login, post, user_id

VALID = {
    "type": "sales",
    "name": "Jane Visitor",
    "email": "Jane@Example.com",
    "company": "Acme",
    "subject": "Pricing question",
    "message": "How much for the enterprise plan?",
    "urgency": "high",
    "utm_source": "newsletter",
}


def _submit(client, **overrides):
    return client.post("/guest/inquiries", json={**VALID, **overrides})


def _inquiry_id(app, ref):
    with session_scope(app) as s:
        return s.query(GuestInquiry).filter(GuestInquiry.reference_number == ref).one().id


def test_guest_submission_creates_inquiry(client, app):
    r = _submit(client)
    assert r.status_code == 201
    assert r.json["success"] is True
    ref = r.json["reference_number"]
    assert ref.startswith("PI-") and len(ref) == 11

    with session_scope(app) as s:
        inquiry = s.query(GuestInquiry).filter(GuestInquiry.reference_number == ref).one()
        assert inquiry.status == "new"
        assert inquiry.email == "jane@example.com"
        assert inquiry.source == "website"
        assert "newsletter" in inquiry.metadata_json
        assert s.query(AuditEvent).filter(AuditEvent.action == "inquiry.submit").count() == 1


def test_guest_submission_needs_no_csrf_or_login(client):
    r = client.post("/guest/inquiries", data=VALID)
    assert r.status_code == 201


def test_guest_submission_validation(client):
    r = _submit(client, name="", email="not-an-email", type="spam", message="")
    assert r.status_code == 422
    errors = r.json["errors"]
    assert set(errors) >= {"name", "email", "type", "message"}


def test_guest_submission_rate_limited(client):
    for _ in range(10):
        assert _submit(client).status_code == 201
    r = _submit(client)
    assert r.status_code == 429


def test_guest_status_lookup(client):
    ref = _submit(client).json["reference_number"]
    r = client.get(f"/guest/inquiries/{ref.lower()}")
    assert r.status_code == 200
    assert r.json["status"] == "new"
    assert r.json["responded"] is False


def test_inbox_lists_and_filters(client):
    _submit(client)
    _submit(client, subject="Partnership idea", type="partnership", urgency="low")
    login(client)
    r = client.get("/admin/inquiries")
    assert r.status_code == 200
    assert b"Pricing question" in r.data
    assert b"Partnership idea" in r.data

    r = client.get("/admin/inquiries?type=partnership")
    assert b"Partnership idea" in r.data
    assert b"Pricing question" not in r.data


def test_assign_defaults_to_current_user(client, app):
    ref = _submit(client).json["reference_number"]
    inquiry_id = _inquiry_id(app, ref)
    login(client)
    r = post(client, f"/admin/inquiries/{inquiry_id}/assign")
    assert r.status_code == 302
    with session_scope(app) as s:
        inquiry = s.get(GuestInquiry, inquiry_id)
        assert inquiry.assigned_to_user_id == user_id(app, "admin@example.com")
        assert inquiry.status == "in_progress"
        assert inquiry.responded_at is not None


def test_update_validates_status(client, app):
    ref = _submit(client).json["reference_number"]
    inquiry_id = _inquiry_id(app, ref)
    login(client)
    r = post(client, f"/admin/inquiries/{inquiry_id}/update", data={"status": "bogus"}, follow_redirects=True)
    assert b"Status must be one of" in r.data

    r = post(
        client,
        f"/admin/inquiries/{inquiry_id}/update",
        data={"status": "resolved", "internal_notes": "Sent quote."},
    )
    assert r.status_code == 302
    with session_scope(app) as s:
        inquiry = s.get(GuestInquiry, inquiry_id)
        assert inquiry.status == "resolved"
        assert inquiry.internal_notes == "Sent quote."


def test_mark_responded(client, app):
    ref = _submit(client).json["reference_number"]
    inquiry_id = _inquiry_id(app, ref)
    login(client)
    post(client, f"/admin/inquiries/{inquiry_id}/responded")
    r = client.get(f"/guest/inquiries/{ref}")
    assert r.json["responded"] is True
    assert r.json["status"] == "in_progress"


def test_bulk_status_and_delete(client, app):
    ids = [_inquiry_id(app, _submit(client, subject=f"Q{i}").json["reference_number"]) for i in range(3)]
    login(client)
    r = post(
        client,
        "/admin/inquiries/bulk",
        data={"ids": [str(i) for i in ids[:2]], "action": "status", "value": "closed"},
        follow_redirects=True,
    )
    assert b"2 inquiry(ies) updated successfully." in r.data
    with session_scope(app) as s:
        assert s.get(GuestInquiry, ids[0]).status == "closed"
        assert s.get(GuestInquiry, ids[2]).status == "new"

    r = post(client, "/admin/inquiries/bulk", data={"ids": [str(ids[2])], "action": "delete"})
    assert r.status_code == 302
    with session_scope(app) as s:
        assert s.get(GuestInquiry, ids[2]) is None


def test_bulk_requires_selection(client):
    login(client)
    r = post(client, "/admin/inquiries/bulk", data={"action": "status", "value": "closed"}, follow_redirects=True)
    assert b"Select at least one inquiry." in r.data


def test_staff_cannot_bulk_delete(client, app):
    inquiry_id = _inquiry_id(app, _submit(client).json["reference_number"])
    login(client, email="staff@example.com")
    r = post(client, "/admin/inquiries/bulk", data={"ids": [str(inquiry_id)], "action": "delete"})
    assert r.status_code == 403


def test_export_csv(client):
    _submit(client)
    login(client)
    r = client.get("/admin/inquiries/export")
    assert r.status_code == 200
    assert r.mimetype == "text/csv"
    lines = r.data.decode("utf-8").splitlines()
    assert lines[0].startswith("Reference Number,Type,Name,Email")
    assert "Pricing question" in lines[1]
    assert "Unassigned" in lines[1]


def test_notify_staff_skipped_without_mail_config(app):
    inquiry = GuestInquiry(reference_number="PI-TEST0001", type="general", subject="x", name="n", email="e@x.io")
    assert notify_staff({"INQUIRY_NOTIFY_EMAIL": "ops@example.com", "MAIL_SERVER": ""}, inquiry) is False
