"""
Guest inquiries module.

Scope:
- Public intake endpoint (website contact / partnership form) returning a reference number
- Admin triage: filtered + paginated list, assignment, status updates, bulk actions
- CSV export honouring the list filters

Hard constraints:
- responded_at is written once (first move to in_progress or explicit mark-responded)
- Staff notification failures never fail the public submission
"""
