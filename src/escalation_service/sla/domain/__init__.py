"""
SLA Domain Layer
================

Domain layer for the SLA escalation module.

Contains:
- Entities: Case, NotificationRecord, AdminRecipient
- Value Objects: SLAPolicy, SLAPolicySet, SLAEvaluation
- Domain Services: SLARuleEvaluator (pure classification)

This layer has no dependencies on infrastructure - pure Python business logic.
"""

from escalation_service.sla.domain.entities import Case, NotificationRecord, AdminRecipient
from escalation_service.sla.domain.value_objects import (
    SLAPolicy,
    SLAPolicySet,
    SLAEvaluation,
    SLARuleEvaluator,
)

__all__ = [
    # Entities
    "Case",
    "NotificationRecord",
    "AdminRecipient",
    # Value Objects & Services
    "SLAPolicy",
    "SLAPolicySet",
    "SLAEvaluation",
    "SLARuleEvaluator",
]
