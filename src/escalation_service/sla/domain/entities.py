"""
SLA Domain Entities
====================

Pure Python domain entities for SLA escalation.

Following Domain-Driven Design principles, these entities contain
business logic and are free of infrastructure concerns.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from escalation_service.config import (
    CaseStatus, CaseSource, OPEN_STATUSES, VALID_STATUSES
)


@dataclass
class Case:
    """
    Case entity representing a unit of support work.

    The two ``*_sent_at`` fields are the idempotency markers of the
    escalation pipeline: a set marker means the matching notification has
    already gone out for the current open period.
    """

    # Core attributes
    id: str
    title: str
    category: str
    priority: str
    status: str

    # Timestamps
    created_at: datetime
    last_activity_at: datetime

    description: str = ""
    source: str = CaseSource.MANUAL

    # Assignment and contact
    assignee_id: Optional[str] = None
    employee_name: Optional[str] = None
    contact_phone: Optional[str] = None
    contact_email: Optional[str] = None

    # Tenant
    company_id: Optional[str] = None
    client_name: Optional[str] = None

    # Idempotency markers
    follow_up_sent_at: Optional[datetime] = None
    escalation_sent_at: Optional[datetime] = None

    closed_at: Optional[datetime] = None

    # Set by clear_markers(); tells the repository to null the markers on save
    markers_cleared: bool = field(default=False, repr=False, compare=False)

    def __post_init__(self):
        """Validate case on initialization."""
        if self.last_activity_at < self.created_at:
            raise ValueError("last_activity_at cannot be before created_at")

        if self.status not in VALID_STATUSES:
            raise ValueError(f"Unknown case status: {self.status}")

    @property
    def is_open(self) -> bool:
        """Check if the case is still tracked by the SLA pipeline."""
        return self.status in OPEN_STATUSES

    def elapsed(self, now: datetime) -> timedelta:
        """Time since the last staff activity on the case."""
        return now - self.last_activity_at

    def hours_since_activity(self, now: datetime) -> float:
        """Elapsed time in hours, rounded to one decimal."""
        return round(self.elapsed(now).total_seconds() / 3600, 1)

    def clear_markers(self) -> None:
        """Make the case eligible for follow-up and escalation again."""
        self.follow_up_sent_at = None
        self.escalation_sent_at = None
        self.markers_cleared = True

    def record_activity(self, now: datetime, reset_markers: bool = False) -> None:
        """Staff touched the case (note added, reply sent); restart the clock."""
        if now < self.created_at:
            raise ValueError("activity cannot precede case creation")
        self.last_activity_at = now
        if reset_markers:
            self.clear_markers()

    def change_status(
        self,
        new_status: str,
        now: datetime,
        reset_markers_on_reopen: bool = True
    ) -> None:
        """
        Move the case to a new status.

        Any status change counts as activity. Closing stamps ``closed_at``;
        reopening a closed case starts a new open period, and with
        ``reset_markers_on_reopen`` that period gets fresh markers.
        """
        if new_status not in VALID_STATUSES:
            raise ValueError(f"Unknown case status: {new_status}")

        reopening = self.status == CaseStatus.CLOSED and new_status != CaseStatus.CLOSED

        self.status = new_status
        self.record_activity(now)

        if new_status == CaseStatus.CLOSED:
            self.closed_at = now
        elif reopening:
            self.closed_at = None
            if reset_markers_on_reopen:
                self.clear_markers()


@dataclass
class NotificationRecord:
    """
    Audit trail entry written as a side effect of dispatch.

    Append-only: records are never updated or deleted.
    """

    case_id: str
    kind: str
    channel: str
    recipient: str
    message: str
    created_at: datetime
    id: Optional[str] = None
    details: dict = field(default_factory=dict)


@dataclass
class AdminRecipient:
    """An account that receives escalation alerts."""

    email: str
    name: str
    role: str
    company_id: Optional[str] = None
