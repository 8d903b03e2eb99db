"""
SLA Infrastructure Layer
=========================

Infrastructure implementations for SLA escalation:
- Models: SQLAlchemy ORM models
- Repositories: Data access layer
- External: Twilio, Resend, policy file watcher, scheduler
"""

from escalation_service.sla.infrastructure.models import (
    CaseModel,
    NotificationRecordModel,
    AdminAccountModel,
)
from escalation_service.sla.infrastructure.repositories import (
    SQLAlchemyCaseRepository,
    SQLAlchemyNotificationLog,
    SQLAlchemyAdminDirectory,
)
from escalation_service.sla.infrastructure.external import (
    SLAPolicyManager,
    CircuitBreaker,
    TwilioSMSClient,
    ResendEmailClient,
    SLAScheduler,
)

__all__ = [
    "CaseModel",
    "NotificationRecordModel",
    "AdminAccountModel",
    "SQLAlchemyCaseRepository",
    "SQLAlchemyNotificationLog",
    "SQLAlchemyAdminDirectory",
    "SLAPolicyManager",
    "CircuitBreaker",
    "TwilioSMSClient",
    "ResendEmailClient",
    "SLAScheduler",
]
