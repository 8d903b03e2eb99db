"""
SLA Infrastructure Models
==========================

SQLAlchemy ORM models for the SLA escalation module.

These are the database representations of our domain entities.
They belong in the infrastructure layer, not the domain layer.
"""

from datetime import datetime, timezone
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from escalation_service.infrastructure.database import Base
from escalation_service.config import CaseStatus, CasePriority, CaseSource


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CaseModel(Base):
    """
    Database model for Case entity.

    Maps to the 'cases' table.
    """
    __tablename__ = "cases"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    title: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    category: Mapped[str] = mapped_column(String(100), nullable=False)
    priority: Mapped[str] = mapped_column(String(20), nullable=False, default=CasePriority.MEDIUM)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=CaseStatus.OPEN, index=True)
    source: Mapped[str] = mapped_column(String(20), nullable=False, default=CaseSource.MANUAL)

    # Assignment and contact
    assignee_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    employee_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    contact_phone: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    contact_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Tenant
    company_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    client_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    last_activity_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    closed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Idempotency markers
    follow_up_sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    escalation_sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_cases_status_last_activity", "status", "last_activity_at"),
    )


class NotificationRecordModel(Base):
    """
    Database model for the append-only notification audit trail.

    Maps to the 'case_notifications' table.
    """
    __tablename__ = "case_notifications"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    case_id: Mapped[UUID] = mapped_column(Uuid, ForeignKey("cases.id"), nullable=False, index=True)

    kind: Mapped[str] = mapped_column(String(20), nullable=False)  # follow_up or escalation
    channel: Mapped[str] = mapped_column(String(20), nullable=False)  # sms or email
    recipient: Mapped[str] = mapped_column(Text, nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    details: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)


class AdminAccountModel(Base):
    """
    Accounts that can receive escalation alerts.

    ``company_id`` is null for platform-wide admins, who see every tenant.
    """
    __tablename__ = "admin_accounts"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    role: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    company_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
