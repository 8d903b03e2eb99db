"""
SLA Application DTOs
=====================

Data Transfer Objects for the SLA API layer.

These Pydantic models handle serialization/deserialization and validation
for API requests and responses.
"""

from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import List, Optional, Literal
from datetime import datetime


# ========== Type Aliases for Literals ==========
CaseStatusStr = Literal["open", "in_progress", "waiting", "closed"]
CasePriorityStr = Literal["low", "medium", "high"]
CaseSourceStr = Literal["manual", "email", "sms", "system"]
SLAClassificationStr = Literal["on_time", "needs_follow_up", "needs_escalation"]


# ========== Request DTOs ==========

class CaseCreateDTO(BaseModel):
    """DTO for case intake."""
    title: str = Field(..., min_length=1, max_length=500, description="Short case title")
    description: str = Field(default="", description="Case description")
    category: str = Field(..., min_length=1, max_length=100, description="Issue category (HR, Payroll, ...)")
    priority: CasePriorityStr = Field(default="medium", description="Case priority")
    status: CaseStatusStr = Field(default="open", description="Initial status")
    source: CaseSourceStr = Field(default="manual", description="Intake channel")
    employee_name: Optional[str] = Field(None, max_length=255)
    contact_phone: Optional[str] = Field(None, max_length=32, description="E.164 phone for follow-ups")
    contact_email: Optional[str] = Field(None, max_length=255)
    assignee_id: Optional[str] = None
    company_id: Optional[str] = None
    client_name: Optional[str] = Field(None, max_length=255)
    created_at: Optional[datetime] = Field(None, description="Defaults to now")

    @field_validator("contact_phone")
    @classmethod
    def validate_phone(cls, v: Optional[str]) -> Optional[str]:
        """Accept E.164-style numbers only."""
        if v is None:
            return v
        cleaned = v.replace(" ", "").replace("-", "")
        if not cleaned.startswith("+") or not cleaned[1:].isdigit() or len(cleaned) < 8:
            raise ValueError("contact_phone must be in E.164 format, e.g. +15551234567")
        return cleaned


class CaseActivityDTO(BaseModel):
    """Staff activity that resets the SLA clock."""
    note: str = Field(..., min_length=1, description="Note text")
    author_id: Optional[str] = None


class CaseStatusUpdateDTO(BaseModel):
    """Status change request."""
    status: CaseStatusStr


# ========== Response DTOs ==========

class ProcessRunResponse(BaseModel):
    """Summary of one SLA processor run."""
    model_config = ConfigDict(populate_by_name=True)

    success: bool
    message: str
    follow_ups_sent: int = Field(..., alias="followUpsSent")
    escalations_sent: int = Field(..., alias="escalationsSent")
    errors: List[str] = Field(default_factory=list)


class ErrorResponse(BaseModel):
    """Body returned when a run fails outright."""
    error: str
    details: Optional[str] = None


class NotificationRecordResponse(BaseModel):
    """One audit trail entry."""
    id: str
    kind: str
    channel: str
    recipient: str
    message: str
    created_at: datetime
    details: dict = Field(default_factory=dict)


class CaseResponse(BaseModel):
    """Case with its live SLA classification."""
    id: str
    title: str
    description: str
    category: str
    priority: CasePriorityStr
    status: CaseStatusStr
    source: CaseSourceStr
    employee_name: Optional[str] = None
    contact_phone: Optional[str] = None
    contact_email: Optional[str] = None
    assignee_id: Optional[str] = None
    company_id: Optional[str] = None
    client_name: Optional[str] = None
    created_at: datetime
    last_activity_at: datetime
    closed_at: Optional[datetime] = None
    follow_up_sent_at: Optional[datetime] = None
    escalation_sent_at: Optional[datetime] = None

    # SLA information
    sla_classification: SLAClassificationStr
    hours_since_activity: float
    notifications: List[NotificationRecordResponse] = Field(default_factory=list)


class SLAOverviewResponse(BaseModel):
    """Open cases counted by SLA classification."""
    evaluated_at: datetime
    open_cases: int
    on_time: int
    needs_follow_up: int
    needs_escalation: int
    follow_up_pending: int = Field(..., description="Past follow-up threshold with no reminder sent yet")
    escalation_pending: int = Field(..., description="Past escalation threshold with no alert sent yet")
