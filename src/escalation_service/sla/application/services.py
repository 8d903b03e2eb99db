"""
SLA Application Services
=========================

Application services orchestrate the escalation pipeline and coordinate
between domain logic, repositories and delivery channels.

Pipeline, run once per invocation:

    Evaluate -> Dispatch Follow-Ups -> Dispatch Escalations -> Report

Following SOLID principles:
- Single Responsibility: evaluator decides, notifiers deliver, processor sequences
- Dependency Inversion: depend on ports (ABCs below), not concrete clients
"""

import asyncio
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, List, Optional, Sequence, TypeVar

from escalation_service.config import DeliveryChannel, NotificationKind
from escalation_service.core import (
    DeliveryException,
    EvaluationException,
    MarkerWriteException,
)
from escalation_service.shared.infrastructure.logging import get_logger, mask_phone
from escalation_service.sla.domain import (
    AdminRecipient,
    Case,
    NotificationRecord,
    SLAEvaluation,
    SLAPolicySet,
    SLARuleEvaluator,
)

logger = get_logger(__name__)

T = TypeVar("T")


# ========== Ports (Dependency Inversion) ==========

class ICaseRepository(ABC):
    """Interface for case data access."""

    @abstractmethod
    async def list_open_cases(self) -> List[Case]:
        """All cases whose status is still tracked by the SLA pipeline."""

    @abstractmethod
    async def get_by_id(self, case_id: str) -> Optional[Case]:
        """Get case by ID."""

    @abstractmethod
    async def create(self, case: Case) -> Case:
        """Persist a new case."""

    @abstractmethod
    async def save(self, case: Case) -> Case:
        """Persist status/activity changes made through the Case entity."""

    @abstractmethod
    async def mark_follow_up_sent(self, case_id: str, sent_at: datetime) -> None:
        """Set follow_up_sent_at on one case row; raise MarkerWriteException if not applied."""

    @abstractmethod
    async def mark_escalation_sent(self, case_id: str, sent_at: datetime) -> None:
        """Set escalation_sent_at on one case row; raise MarkerWriteException if not applied."""


class INotificationLog(ABC):
    """Append-only store of Notification Records."""

    @abstractmethod
    async def append(self, record: NotificationRecord) -> NotificationRecord:
        """Write a record and return it with its id."""

    @abstractmethod
    async def list_for_case(self, case_id: str) -> List[NotificationRecord]:
        """Records for a case, oldest first."""


class IAdminDirectory(ABC):
    """Looks up the accounts that receive escalation alerts."""

    @abstractmethod
    async def list_admin_recipients(
        self,
        role_names: Sequence[str],
        company_id: Optional[str] = None
    ) -> List[AdminRecipient]:
        """Active accounts holding one of ``role_names`` for the tenant."""


class ISMSChannel(ABC):
    """SMS delivery channel."""

    @abstractmethod
    async def send_follow_up(
        self,
        case_id: str,
        phone_number: str,
        employee_name: str,
        issue_category: str
    ) -> str:
        """Send a follow-up reminder; return the text that was sent."""


class IEmailChannel(ABC):
    """Email delivery channel."""

    @abstractmethod
    async def send_escalation(
        self,
        recipient: AdminRecipient,
        case_id: str,
        employee_name: str,
        issue_category: str,
        client_name: str,
        hours_since_activity: float,
        last_activity_at: Optional[datetime] = None
    ) -> str:
        """
        Send an escalation alert to one admin; return the subject line.

        ``last_activity_at`` identifies the open period being escalated.
        """


class ISLAPolicyProvider(ABC):
    """Interface for SLA policy access."""

    @abstractmethod
    def get_policies(self) -> SLAPolicySet:
        """Get the current policy set."""


# ========== Results ==========

@dataclass
class DispatchFailure:
    """One case (or recipient) that did not get through."""
    case_id: str
    stage: str
    error: str
    recipient: Optional[str] = None


@dataclass
class NotifierResult:
    """Outcome of one notifier pass over its batch."""
    attempted: int = 0
    sent: int = 0
    failures: List[DispatchFailure] = field(default_factory=list)
    duplicate_risks: List[str] = field(default_factory=list)


@dataclass
class ProcessorReport:
    """Summary returned to whoever triggered the run."""
    started_at: datetime
    cases_evaluated: int = 0
    follow_ups_sent: int = 0
    escalations_sent: int = 0
    errors: List[str] = field(default_factory=list)
    duplicate_risks: List[str] = field(default_factory=list)
    duration_ms: int = 0

    @property
    def message(self) -> str:
        text = (
            f"SLA processing complete: {self.follow_ups_sent} follow-ups, "
            f"{self.escalations_sent} escalations"
        )
        if self.errors:
            text += f" ({len(self.errors)} errors)"
        return text


# ========== Helpers ==========

def utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def run_bounded(
    items: Sequence[T],
    worker: Callable[[T], Awaitable[None]],
    max_concurrency: int
) -> None:
    """
    Run ``worker`` over ``items`` with at most ``max_concurrency`` in flight.

    With a concurrency of 1 items are processed strictly in order.
    """
    if max_concurrency <= 1:
        for item in items:
            await worker(item)
        return

    semaphore = asyncio.Semaphore(max_concurrency)

    async def guarded(item: T) -> None:
        async with semaphore:
            await worker(item)

    await asyncio.gather(*(guarded(item) for item in items))


# ========== Notifiers ==========

class FollowUpNotifier:
    """
    Sends an SMS reminder to the contact of every case needing follow-up.

    Per case: send, then set ``follow_up_sent_at``, then log a record.
    A failed send leaves the marker unset so the next run retries it;
    there is no retry within a run.
    """

    def __init__(
        self,
        case_repository: ICaseRepository,
        sms_channel: ISMSChannel,
        notification_log: INotificationLog,
        dispatch_timeout: float = 10.0,
        max_concurrency: int = 1
    ):
        self._case_repo = case_repository
        self._sms = sms_channel
        self._log = notification_log
        self._timeout = dispatch_timeout
        self._max_concurrency = max_concurrency

    async def dispatch(self, cases: Sequence[Case], now: datetime) -> NotifierResult:
        result = NotifierResult()

        async def handle(case: Case) -> None:
            result.attempted += 1
            await self._dispatch_one(case, now, result)

        await run_bounded(cases, handle, self._max_concurrency)
        return result

    async def _dispatch_one(self, case: Case, now: datetime, result: NotifierResult) -> None:
        if not case.contact_phone:
            logger.warning(
                "Follow-up skipped: case has no contact phone",
                extra={"case_id": case.id}
            )
            result.failures.append(DispatchFailure(
                case_id=case.id, stage="follow_up", error="no contact phone"
            ))
            return

        try:
            message = await asyncio.wait_for(
                self._sms.send_follow_up(
                    case.id,
                    case.contact_phone,
                    case.employee_name or "there",
                    case.category,
                ),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError:
            self._record_delivery_failure(case, result, f"timed out after {self._timeout}s")
            return
        except DeliveryException as e:
            self._record_delivery_failure(case, result, e.message)
            return
        except Exception as e:
            self._record_delivery_failure(case, result, str(e))
            return

        result.sent += 1
        logger.info(
            "Follow-up SMS sent",
            extra={"case_id": case.id, "phone": mask_phone(case.contact_phone)}
        )

        try:
            await self._case_repo.mark_follow_up_sent(case.id, now)
        except MarkerWriteException as e:
            logger.error(
                "Follow-up sent but marker not saved; case may be reminded again",
                extra={"case_id": case.id, "error": e.message}
            )
            result.duplicate_risks.append(case.id)
        except Exception as e:
            logger.error(
                "Follow-up sent but marker write errored; case may be reminded again",
                extra={"case_id": case.id, "error": str(e)}
            )
            result.duplicate_risks.append(case.id)

        try:
            await self._log.append(NotificationRecord(
                case_id=case.id,
                kind=NotificationKind.FOLLOW_UP,
                channel=DeliveryChannel.SMS,
                recipient=case.contact_phone,
                message=message,
                created_at=now,
            ))
        except Exception as e:
            logger.error(
                "Failed to append follow-up record",
                extra={"case_id": case.id, "error": str(e)}
            )

    def _record_delivery_failure(self, case: Case, result: NotifierResult, error: str) -> None:
        logger.error(
            "Follow-up SMS failed",
            extra={
                "case_id": case.id,
                "phone": mask_phone(case.contact_phone),
                "error": error
            }
        )
        result.failures.append(DispatchFailure(
            case_id=case.id, stage="follow_up", error=error, recipient=case.contact_phone
        ))


class EscalationNotifier:
    """
    Alerts every administrator about cases past the escalation threshold.

    Per case: resolve admins, email each one (a failed recipient does not
    stop the fan-out), append one audit record whatever the delivery
    outcome, then set ``escalation_sent_at``. The marker means "delivery
    was attempted to everyone", not "everyone received it".
    """

    def __init__(
        self,
        case_repository: ICaseRepository,
        email_channel: IEmailChannel,
        admin_directory: IAdminDirectory,
        notification_log: INotificationLog,
        policy_provider: ISLAPolicyProvider,
        dispatch_timeout: float = 10.0,
        max_concurrency: int = 1
    ):
        self._case_repo = case_repository
        self._email = email_channel
        self._admins = admin_directory
        self._log = notification_log
        self._policy_provider = policy_provider
        self._timeout = dispatch_timeout
        self._max_concurrency = max_concurrency

    async def dispatch(self, cases: Sequence[Case], now: datetime) -> NotifierResult:
        result = NotifierResult()
        policies = self._policy_provider.get_policies()

        async def handle(case: Case) -> None:
            try:
                await self._dispatch_one(case, now, policies, result)
            except Exception as e:
                logger.error(
                    "Escalation failed",
                    extra={"case_id": case.id, "error": str(e)}
                )
                result.failures.append(DispatchFailure(
                    case_id=case.id, stage="escalation", error=str(e)
                ))

        await run_bounded(cases, handle, self._max_concurrency)
        return result

    async def _dispatch_one(
        self,
        case: Case,
        now: datetime,
        policies: SLAPolicySet,
        result: NotifierResult
    ) -> None:
        policy = policies.policy_for(case.company_id)
        recipients = await self._admins.list_admin_recipients(
            policy.admin_role_names, case.company_id
        )

        if not recipients:
            # Leave the marker unset so the breach is retried once admins exist
            logger.error(
                "No administrator recipients for escalation",
                extra={"case_id": case.id, "roles": policy.admin_role_names}
            )
            result.failures.append(DispatchFailure(
                case_id=case.id, stage="escalation", error="no administrator recipients"
            ))
            return

        result.attempted += 1
        hours = case.hours_since_activity(now)
        delivered: List[str] = []
        failed: List[str] = []
        subject = ""

        for recipient in recipients:
            try:
                subject = await asyncio.wait_for(
                    self._email.send_escalation(
                        recipient,
                        case.id,
                        case.employee_name or "Unknown",
                        case.category,
                        case.client_name or "Unknown",
                        hours,
                        last_activity_at=case.last_activity_at,
                    ),
                    timeout=self._timeout,
                )
                delivered.append(recipient.email)
            except asyncio.TimeoutError:
                failed.append(recipient.email)
                self._record_recipient_failure(
                    case, recipient, result, f"timed out after {self._timeout}s"
                )
            except DeliveryException as e:
                failed.append(recipient.email)
                self._record_recipient_failure(case, recipient, result, e.message)
            except Exception as e:
                failed.append(recipient.email)
                self._record_recipient_failure(case, recipient, result, str(e))

        try:
            await self._log.append(NotificationRecord(
                case_id=case.id,
                kind=NotificationKind.ESCALATION,
                channel=DeliveryChannel.EMAIL,
                recipient=", ".join(r.email for r in recipients),
                message=subject or f"SLA escalation for case {case.id}",
                created_at=now,
                details={
                    "hours_since_activity": hours,
                    "priority": case.priority,
                    "delivered": delivered,
                    "failed": failed,
                },
            ))
        except Exception as e:
            # Admins were alerted and the marker stands; the gap is reported, not retried
            logger.error(
                "Failed to append escalation audit record",
                extra={"case_id": case.id, "error": str(e)}
            )
            result.failures.append(DispatchFailure(
                case_id=case.id, stage="audit", error=str(e)
            ))

        result.sent += 1
        logger.info(
            "Escalation dispatched",
            extra={
                "case_id": case.id,
                "hours_since_activity": hours,
                "delivered": len(delivered),
                "failed": len(failed)
            }
        )

        try:
            await self._case_repo.mark_escalation_sent(case.id, now)
        except MarkerWriteException as e:
            logger.error(
                "Escalation sent but marker not saved; admins may be alerted again",
                extra={"case_id": case.id, "error": e.message}
            )
            result.duplicate_risks.append(case.id)
        except Exception as e:
            logger.error(
                "Escalation sent but marker write errored; admins may be alerted again",
                extra={"case_id": case.id, "error": str(e)}
            )
            result.duplicate_risks.append(case.id)

    def _record_recipient_failure(
        self,
        case: Case,
        recipient: AdminRecipient,
        result: NotifierResult,
        error: str
    ) -> None:
        logger.error(
            "Escalation email failed",
            extra={"case_id": case.id, "recipient": recipient.email, "error": error}
        )
        result.failures.append(DispatchFailure(
            case_id=case.id, stage="escalation", error=error, recipient=recipient.email
        ))


# ========== Orchestrator ==========

class SLAProcessor:
    """
    Runs the escalation pipeline once per invocation.

    Stateless between runs: the only state is the markers in the case store.
    """

    def __init__(
        self,
        case_repository: ICaseRepository,
        policy_provider: ISLAPolicyProvider,
        follow_up_notifier: FollowUpNotifier,
        escalation_notifier: EscalationNotifier,
        clock: Callable[[], datetime] = utc_now
    ):
        self._case_repo = case_repository
        self._policy_provider = policy_provider
        self._follow_ups = follow_up_notifier
        self._escalations = escalation_notifier
        self._clock = clock

    async def evaluate(self, now: datetime) -> SLAEvaluation:
        """
        Classify all open cases.

        Raises:
            EvaluationException: the case query failed; no partial list is used
        """
        try:
            cases = await self._case_repo.list_open_cases()
        except Exception as e:
            raise EvaluationException(
                "Failed to load open cases",
                {"error": str(e)}
            ) from e

        return SLARuleEvaluator.evaluate_for_tenants(
            cases, self._policy_provider.get_policies(), now
        )

    async def run(self) -> ProcessorReport:
        now = self._clock()
        start = time.perf_counter()
        report = ProcessorReport(started_at=now)

        evaluation = await self.evaluate(now)
        report.cases_evaluated = evaluation.cases_evaluated

        logger.info(
            "SLA evaluation complete",
            extra={
                "cases_evaluated": evaluation.cases_evaluated,
                "needs_follow_up": len(evaluation.needs_follow_up),
                "needs_escalation": len(evaluation.needs_escalation)
            }
        )

        # The two phases work on disjoint case sets, so one failing does not
        # stop the other.
        try:
            follow_up_result = await self._follow_ups.dispatch(evaluation.needs_follow_up, now)
            report.follow_ups_sent = follow_up_result.sent
            self._collect(report, follow_up_result)
        except Exception as e:
            logger.error("Follow-up phase failed", extra={"error": str(e)})
            report.errors.append(f"follow_up phase: {e}")

        try:
            escalation_result = await self._escalations.dispatch(evaluation.needs_escalation, now)
            report.escalations_sent = escalation_result.sent
            self._collect(report, escalation_result)
        except Exception as e:
            logger.error("Escalation phase failed", extra={"error": str(e)})
            report.errors.append(f"escalation phase: {e}")

        report.duration_ms = int((time.perf_counter() - start) * 1000)

        logger.info(
            "SLA run complete",
            extra={
                "follow_ups_sent": report.follow_ups_sent,
                "escalations_sent": report.escalations_sent,
                "errors": len(report.errors),
                "duplicate_risks": len(report.duplicate_risks),
                "duration_ms": report.duration_ms
            }
        )
        return report

    @staticmethod
    def _collect(report: ProcessorReport, result: NotifierResult) -> None:
        for failure in result.failures:
            target = f" ({failure.recipient})" if failure.recipient and failure.stage != "follow_up" else ""
            report.errors.append(f"{failure.stage} {failure.case_id}{target}: {failure.error}")
        for case_id in result.duplicate_risks:
            report.duplicate_risks.append(case_id)
            report.errors.append(f"marker write failed for case {case_id}")
