"""
SLA Controllers (API Routes)
=============================

FastAPI routes for the escalation pipeline and the case endpoints that
feed it.

Controllers are thin - they delegate to application services.
"""

from datetime import datetime, timezone
from typing import List, Optional
from uuid import uuid4

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from escalation_service.config import CaseStatus, SLAClassification, settings
from escalation_service.core import EvaluationException
from escalation_service.infrastructure.database import get_session_factory
from escalation_service.shared.infrastructure.logging import get_logger, log_latency
from escalation_service.sla.application import (
    CaseActivityDTO,
    CaseCreateDTO,
    CaseResponse,
    CaseStatusUpdateDTO,
    ErrorResponse,
    ICaseRepository,
    IEmailChannel,
    INotificationLog,
    ISLAPolicyProvider,
    ISMSChannel,
    NotificationRecordResponse,
    ProcessRunResponse,
    SLAOverviewResponse,
    SLAProcessor,
)
from escalation_service.sla.domain import Case, NotificationRecord, SLAPolicy, SLARuleEvaluator
from escalation_service.sla.infrastructure import (
    ResendEmailClient,
    SLAPolicyManager,
    SQLAlchemyCaseRepository,
    SQLAlchemyNotificationLog,
    TwilioSMSClient,
)
from escalation_service.sla.services import build_sla_processor

logger = get_logger(__name__)
router = APIRouter(prefix="/sla", tags=["SLA Escalation"])

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "POST, OPTIONS",
    "Access-Control-Allow-Headers": "authorization, x-client-info, apikey, content-type",
}


# ========== Example payloads for Swagger ==========

PROCESS_RESPONSE_EXAMPLE = {
    "success": True,
    "message": "SLA processing complete: 2 follow-ups, 1 escalations",
    "followUpsSent": 2,
    "escalationsSent": 1,
    "errors": []
}

PROCESS_ERROR_EXAMPLE = {
    "error": "Failed to load open cases",
    "details": "connection refused"
}


# ========== Dependencies ==========

def get_policy_provider(request: Request) -> ISLAPolicyProvider:
    """Policy manager loaded at startup, or a settings-only one without lifespan."""
    manager = getattr(request.app.state, "policy_manager", None)
    if manager is None:
        manager = SLAPolicyManager()
        manager.load(settings.sla_policy_path)
        request.app.state.policy_manager = manager
    return manager


def get_sms_channel(request: Request) -> ISMSChannel:
    client = getattr(request.app.state, "sms_client", None)
    if client is None:
        client = TwilioSMSClient()
        request.app.state.sms_client = client
    return client


def get_email_channel(request: Request) -> IEmailChannel:
    client = getattr(request.app.state, "email_client", None)
    if client is None:
        client = ResendEmailClient()
        request.app.state.email_client = client
    return client


def get_case_repository(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory)
) -> ICaseRepository:
    return SQLAlchemyCaseRepository(session_factory)


def get_notification_log(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory)
) -> INotificationLog:
    return SQLAlchemyNotificationLog(session_factory)


def get_sla_processor(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    policy_provider: ISLAPolicyProvider = Depends(get_policy_provider),
    sms_channel: ISMSChannel = Depends(get_sms_channel),
    email_channel: IEmailChannel = Depends(get_email_channel),
) -> SLAProcessor:
    return build_sla_processor(session_factory, policy_provider, sms_channel, email_channel)


# ========== Helpers ==========

def _now() -> datetime:
    return datetime.now(timezone.utc)


def _to_response(
    case: Case,
    policy: SLAPolicy,
    now: datetime,
    notifications: Optional[List[NotificationRecord]] = None
) -> CaseResponse:
    return CaseResponse(
        id=case.id,
        title=case.title,
        description=case.description,
        category=case.category,
        priority=case.priority,
        status=case.status,
        source=case.source,
        employee_name=case.employee_name,
        contact_phone=case.contact_phone,
        contact_email=case.contact_email,
        assignee_id=case.assignee_id,
        company_id=case.company_id,
        client_name=case.client_name,
        created_at=case.created_at,
        last_activity_at=case.last_activity_at,
        closed_at=case.closed_at,
        follow_up_sent_at=case.follow_up_sent_at,
        escalation_sent_at=case.escalation_sent_at,
        sla_classification=SLARuleEvaluator.classify_case(case, policy, now),
        hours_since_activity=max(0.0, case.hours_since_activity(now)),
        notifications=[
            NotificationRecordResponse(
                id=record.id or "",
                kind=record.kind,
                channel=record.channel,
                recipient=record.recipient,
                message=record.message,
                created_at=record.created_at,
                details=record.details,
            )
            for record in notifications or []
        ],
    )


async def _load_case(case_repo: ICaseRepository, case_id: str) -> Case:
    case = await case_repo.get_by_id(case_id)
    if case is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Case {case_id} not found"
        )
    return case


# ========== Route Handlers ==========

@router.options("/process", include_in_schema=False)
async def process_preflight() -> Response:
    """CORS preflight for browser-triggered manual runs."""
    return Response(status_code=status.HTTP_200_OK, headers=CORS_HEADERS)


@router.post(
    "/process",
    response_model=ProcessRunResponse,
    summary="Run SLA follow-up and escalation",
    description="""
    Evaluate every open case and dispatch what is due.

    No request body. Called by the scheduler or manually from the admin UI.

    - Cases idle past the follow-up threshold get one SMS reminder.
    - Cases idle past the escalation threshold alert every administrator by
      email and get an audit record.
    - A failed delivery is logged and retried on the next run; it never
      aborts the batch.

    Returns 500 `{error, details}` only when the open cases cannot be loaded.
    """,
    responses={
        200: {
            "description": "Run completed (per-case failures listed in `errors`)",
            "content": {"application/json": {"example": PROCESS_RESPONSE_EXAMPLE}}
        },
        500: {
            "model": ErrorResponse,
            "description": "Evaluation failed; nothing was dispatched",
            "content": {"application/json": {"example": PROCESS_ERROR_EXAMPLE}}
        }
    }
)
async def run_sla_processor(processor: SLAProcessor = Depends(get_sla_processor)):
    try:
        with log_latency(logger, "sla_process_request"):
            report = await processor.run()
    except EvaluationException as e:
        logger.error("SLA run aborted", extra={"error": e.message, **e.details})
        body = ErrorResponse(error=e.message, details=e.details.get("error"))
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=body.model_dump(),
            headers=CORS_HEADERS,
        )

    return ProcessRunResponse(
        success=True,
        message=report.message,
        follow_ups_sent=report.follow_ups_sent,
        escalations_sent=report.escalations_sent,
        errors=report.errors,
    )


@router.post(
    "/cases",
    response_model=CaseResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a case",
)
async def create_case(
    request: CaseCreateDTO,
    case_repo: ICaseRepository = Depends(get_case_repository),
    policy_provider: ISLAPolicyProvider = Depends(get_policy_provider),
):
    now = _now()
    created_at = request.created_at or now
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)

    try:
        case = Case(
            id=str(uuid4()),
            title=request.title,
            description=request.description,
            category=request.category,
            priority=request.priority,
            status=request.status,
            source=request.source,
            created_at=created_at,
            last_activity_at=created_at,
            assignee_id=request.assignee_id,
            employee_name=request.employee_name,
            contact_phone=request.contact_phone,
            contact_email=request.contact_email,
            company_id=request.company_id,
            client_name=request.client_name,
            closed_at=created_at if request.status == CaseStatus.CLOSED else None,
        )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))

    case = await case_repo.create(case)

    logger.info(
        "Case created",
        extra={"case_id": case.id, "source": case.source, "priority": case.priority}
    )

    policy = policy_provider.get_policies().policy_for(case.company_id)
    return _to_response(case, policy, now)


@router.get(
    "/cases/{case_id}",
    response_model=CaseResponse,
    summary="Get case SLA status",
    responses={404: {"description": "Case not found"}}
)
async def get_case(
    case_id: str,
    case_repo: ICaseRepository = Depends(get_case_repository),
    notification_log: INotificationLog = Depends(get_notification_log),
    policy_provider: ISLAPolicyProvider = Depends(get_policy_provider),
):
    case = await _load_case(case_repo, case_id)
    notifications = await notification_log.list_for_case(case.id)
    policy = policy_provider.get_policies().policy_for(case.company_id)
    return _to_response(case, policy, _now(), notifications)


@router.post(
    "/cases/{case_id}/activity",
    response_model=CaseResponse,
    summary="Record staff activity",
    description="Adding a note restarts the case's SLA clock.",
    responses={404: {"description": "Case not found"}}
)
async def record_case_activity(
    case_id: str,
    request: CaseActivityDTO,
    case_repo: ICaseRepository = Depends(get_case_repository),
    policy_provider: ISLAPolicyProvider = Depends(get_policy_provider),
):
    now = _now()
    case = await _load_case(case_repo, case_id)

    if not case.is_open:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Case {case_id} is closed; reopen it first"
        )

    case.record_activity(now, reset_markers=settings.reset_markers_on_activity)
    case = await case_repo.save(case)

    logger.info(
        "Case activity recorded",
        extra={"case_id": case.id, "author_id": request.author_id, "note_length": len(request.note)}
    )

    policy = policy_provider.get_policies().policy_for(case.company_id)
    return _to_response(case, policy, now)


@router.patch(
    "/cases/{case_id}/status",
    response_model=CaseResponse,
    summary="Change case status",
    description="""
    Closing a case stops SLA tracking. Reopening a closed case starts a new
    open period; its follow-up and escalation markers are cleared unless
    `RESET_MARKERS_ON_REOPEN=false`.
    """,
    responses={404: {"description": "Case not found"}}
)
async def update_case_status(
    case_id: str,
    request: CaseStatusUpdateDTO,
    case_repo: ICaseRepository = Depends(get_case_repository),
    policy_provider: ISLAPolicyProvider = Depends(get_policy_provider),
):
    now = _now()
    case = await _load_case(case_repo, case_id)
    previous = case.status

    case.change_status(request.status, now, reset_markers_on_reopen=settings.reset_markers_on_reopen)
    case = await case_repo.save(case)

    logger.info(
        "Case status changed",
        extra={"case_id": case.id, "from_status": previous, "to_status": case.status}
    )

    policy = policy_provider.get_policies().policy_for(case.company_id)
    return _to_response(case, policy, now)


@router.get(
    "/overview",
    response_model=SLAOverviewResponse,
    summary="Open cases by SLA classification",
)
async def get_overview(
    case_repo: ICaseRepository = Depends(get_case_repository),
    policy_provider: ISLAPolicyProvider = Depends(get_policy_provider),
):
    now = _now()
    cases = await case_repo.list_open_cases()
    policies = policy_provider.get_policies()

    counts = {c: 0 for c in (
        SLAClassification.ON_TIME,
        SLAClassification.NEEDS_FOLLOW_UP,
        SLAClassification.NEEDS_ESCALATION,
    )}
    for case in cases:
        counts[SLARuleEvaluator.classify_case(case, policies.policy_for(case.company_id), now)] += 1

    evaluation = SLARuleEvaluator.evaluate_for_tenants(cases, policies, now)

    return SLAOverviewResponse(
        evaluated_at=now,
        open_cases=len(cases),
        on_time=counts[SLAClassification.ON_TIME],
        needs_follow_up=counts[SLAClassification.NEEDS_FOLLOW_UP],
        needs_escalation=counts[SLAClassification.NEEDS_ESCALATION],
        follow_up_pending=len(evaluation.needs_follow_up),
        escalation_pending=len(evaluation.needs_escalation),
    )


# Export router for inclusion in main app
sla_router = router
