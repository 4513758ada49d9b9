from __future__ import annotations

from flask import Blueprint, abort, current_app, jsonify, request

from app.backoffice.db import db_session
from app.backoffice.modules.inquiries.models import GuestInquiry
from app.backoffice.modules.inquiries.service import create_inquiry, notify_staff, validate_inquiry_payload
from app.backoffice.security import SlidingWindowLimiter

bp = Blueprint("guest", __name__)
submission_limiter = SlidingWindowLimiter(limit=10, window_seconds=3600)


@bp.post("/inquiries")
def inquiry_submit():
    payload = request.get_json(silent=True) if request.is_json else request.form.to_dict()
    if not isinstance(payload, dict):
        return jsonify({"success": False, "errors": {"_": "Request body must be an object."}}), 422

    ip = request.remote_addr or "unknown"
    if submission_limiter.is_limited(ip):
        return jsonify({"success": False, "message": "Too many submissions. Please try again later."}), 429

    errors = validate_inquiry_payload(payload)
    if errors:
        return jsonify({"success": False, "errors": errors}), 422

    submission_limiter.record(ip)
    s = db_session()
    inquiry = create_inquiry(
        s,
        payload,
        ip_address=request.remote_addr,
        user_agent=request.headers.get("User-Agent"),
        referrer=request.referrer,
    )
    s.commit()
    current_app.logger.info("Guest inquiry received ref=%s type=%s", inquiry.reference_number, inquiry.type)

    notify_staff(current_app.config, inquiry)

    return (
        jsonify(
            {
                "success": True,
                "message": "Thank you for your inquiry. We will get back to you soon.",
                "reference_number": inquiry.reference_number,
            }
        ),
        201,
    )


@bp.get("/inquiries/<reference_number>")
def inquiry_status(reference_number: str):
    s = db_session()
    inquiry = (
        s.query(GuestInquiry)
        .filter(GuestInquiry.reference_number == reference_number.strip().upper())
        .one_or_none()
    )
    if not inquiry:
        abort(404)
    return jsonify(
        {
            "reference_number": inquiry.reference_number,
            "status": inquiry.status,
            "subject": inquiry.subject,
            "submitted_at": inquiry.created_at.isoformat(),
            "responded": inquiry.responded_at is not None,
        }
    )
