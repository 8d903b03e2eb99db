"""
SLA Application Layer
======================

Application layer for the SLA escalation module.

Contains:
- Services: notifiers and the SLA processor that sequences them
- Ports: repository and delivery-channel interfaces
- DTOs: Data transfer objects for API serialization

This layer depends on the domain layer and the port interfaces,
but not on concrete infrastructure implementations.
"""

from escalation_service.sla.application.dto import (
    CaseCreateDTO,
    CaseActivityDTO,
    CaseStatusUpdateDTO,
    ProcessRunResponse,
    ErrorResponse,
    NotificationRecordResponse,
    CaseResponse,
    SLAOverviewResponse,
)
from escalation_service.sla.application.services import (
    FollowUpNotifier,
    EscalationNotifier,
    SLAProcessor,
    ProcessorReport,
    NotifierResult,
    DispatchFailure,
    ICaseRepository,
    INotificationLog,
    IAdminDirectory,
    ISMSChannel,
    IEmailChannel,
    ISLAPolicyProvider,
)

__all__ = [
    # DTOs
    "CaseCreateDTO",
    "CaseActivityDTO",
    "CaseStatusUpdateDTO",
    "ProcessRunResponse",
    "ErrorResponse",
    "NotificationRecordResponse",
    "CaseResponse",
    "SLAOverviewResponse",
    # Services
    "FollowUpNotifier",
    "EscalationNotifier",
    "SLAProcessor",
    "ProcessorReport",
    "NotifierResult",
    "DispatchFailure",
    # Ports
    "ICaseRepository",
    "INotificationLog",
    "IAdminDirectory",
    "ISMSChannel",
    "IEmailChannel",
    "ISLAPolicyProvider",
]
