"""
SLA Services
============

Composition root for the escalation pipeline.

Wires repositories, delivery channels and the policy provider into an
``SLAProcessor``. Used by the HTTP trigger and the background scheduler so
both run exactly the same pipeline.
"""

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from escalation_service.config import settings
from escalation_service.sla.application import (
    EscalationNotifier,
    FollowUpNotifier,
    IEmailChannel,
    ISLAPolicyProvider,
    ISMSChannel,
    SLAProcessor,
)
from escalation_service.sla.infrastructure.repositories import (
    SQLAlchemyAdminDirectory,
    SQLAlchemyCaseRepository,
    SQLAlchemyNotificationLog,
)


def build_sla_processor(
    session_factory: async_sessionmaker[AsyncSession],
    policy_provider: ISLAPolicyProvider,
    sms_channel: ISMSChannel,
    email_channel: IEmailChannel,
    dispatch_timeout: float | None = None,
    max_concurrency: int | None = None
) -> SLAProcessor:
    """Assemble a processor backed by the SQL case store."""
    timeout = dispatch_timeout or settings.dispatch_timeout_seconds
    concurrency = max_concurrency or settings.max_concurrent_dispatches

    case_repo = SQLAlchemyCaseRepository(session_factory)
    notification_log = SQLAlchemyNotificationLog(session_factory)
    admin_directory = SQLAlchemyAdminDirectory(session_factory)

    follow_ups = FollowUpNotifier(
        case_repo,
        sms_channel,
        notification_log,
        dispatch_timeout=timeout,
        max_concurrency=concurrency,
    )
    escalations = EscalationNotifier(
        case_repo,
        email_channel,
        admin_directory,
        notification_log,
        policy_provider,
        dispatch_timeout=timeout,
        max_concurrency=concurrency,
    )

    return SLAProcessor(case_repo, policy_provider, follow_ups, escalations)
