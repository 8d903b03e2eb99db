"""
SLA Escalation Module
=====================

Bounded context for support-case SLA follow-up and escalation.

Responsibilities:
- Classify open cases by time since last activity
- Send one SMS follow-up to the case contact past the follow-up threshold
- Alert every administrator by email past the escalation threshold
- Keep an append-only audit trail of notifications
- Expose the run trigger and case endpoints over HTTP
"""

__version__ = "1.0.0"
