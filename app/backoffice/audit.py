"""Append-only audit trail.

Services call ``record_event`` inside the same session as the change they
describe, so the event commits or rolls back together with it.
"""
import json
from typing import Any

from flask import g, has_request_context, request
from sqlalchemy.orm import Session

from app.backoffice.models import AuditEvent, User

REASON_MAX = 512


def _request_origin() -> tuple[str | None, str | None]:
    if not has_request_context():
        return None, None
    return g.get("request_id"), request.remote_addr


def _encode(metadata: dict[str, Any] | None) -> str | None:
    if not metadata:
        return None
    return json.dumps(metadata, sort_keys=True, default=str)


def record_event(
    s: Session,
    *,
    actor: User | None,
    action: str,
    entity_type: str | None = None,
    entity_id: str | None = None,
    reason: str | None = None,
    metadata: dict[str, Any] | None = None,
    request_id: str | None = None,
) -> AuditEvent:
    current_request_id, client_ip = _request_origin()
    event = AuditEvent(
        request_id=request_id or current_request_id,
        client_ip=client_ip,
        actor_user_id=actor.id if actor else None,
        actor_user_email=actor.email if actor else None,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        reason=reason[:REASON_MAX] if reason else None,
        metadata_json=_encode(metadata),
    )
    s.add(event)
    return event


def entity_history(s: Session, entity_type: str, entity_id: Any, *, limit: int = 20) -> list[AuditEvent]:
    """Newest-first events recorded against one record, for detail pages."""
    return (
        s.query(AuditEvent)
        .filter(AuditEvent.entity_type == entity_type, AuditEvent.entity_id == str(entity_id))
        .order_by(AuditEvent.created_at.desc(), AuditEvent.id.desc())
        .limit(limit)
        .all()
    )


def event_metadata(event: AuditEvent) -> dict[str, Any]:
    return json.loads(event.metadata_json) if event.metadata_json else {}
