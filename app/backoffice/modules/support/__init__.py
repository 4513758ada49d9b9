"""
Support tickets: numbered tickets with categories, assignment, escalation,
comments and the open/resolve/close/reopen lifecycle with response timings.
"""
