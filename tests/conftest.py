"""Shared fixtures: in-memory ports, case factory and a SQLite-backed session factory."""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Sequence
from uuid import uuid4

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from escalation_service.config import CaseStatus, OPEN_STATUSES
from escalation_service.core import DeliveryException, MarkerWriteException
from escalation_service.infrastructure.database import Base
from escalation_service.sla.application import (
    IAdminDirectory,
    ICaseRepository,
    IEmailChannel,
    INotificationLog,
    ISLAPolicyProvider,
    ISMSChannel,
)
from escalation_service.sla.domain import (
    AdminRecipient,
    Case,
    NotificationRecord,
    SLAPolicy,
    SLAPolicySet,
)
import escalation_service.sla.infrastructure.models  # noqa: F401


NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


# ========== In-memory ports ==========

class InMemoryCaseRepository(ICaseRepository):
    """Case store that mirrors the SQL repository's conditional marker writes."""

    def __init__(self, cases: Sequence[Case] = ()):
        self.cases: Dict[str, Case] = {c.id: c for c in cases}
        self.fail_listing = False
        self.fail_markers_for: set = set()

    async def list_open_cases(self) -> List[Case]:
        if self.fail_listing:
            raise ConnectionError("database unavailable")
        open_cases = [c for c in self.cases.values() if c.status in OPEN_STATUSES]
        return sorted(open_cases, key=lambda c: c.last_activity_at)

    async def get_by_id(self, case_id: str) -> Optional[Case]:
        return self.cases.get(case_id)

    async def create(self, case: Case) -> Case:
        self.cases[case.id] = case
        return case

    async def save(self, case: Case) -> Case:
        stored = self.cases[case.id]
        stored.status = case.status
        stored.last_activity_at = case.last_activity_at
        stored.closed_at = case.closed_at
        if case.markers_cleared:
            stored.follow_up_sent_at = None
            stored.escalation_sent_at = None
        return stored

    async def mark_follow_up_sent(self, case_id: str, sent_at: datetime) -> None:
        self._mark(case_id, "follow_up_sent_at", sent_at)

    async def mark_escalation_sent(self, case_id: str, sent_at: datetime) -> None:
        self._mark(case_id, "escalation_sent_at", sent_at)

    def _mark(self, case_id: str, marker: str, sent_at: datetime) -> None:
        if case_id in self.fail_markers_for:
            raise MarkerWriteException(case_id, marker, "write rejected")
        case = self.cases.get(case_id)
        if case is None or not case.is_open or getattr(case, marker) is not None:
            raise MarkerWriteException(case_id, marker, "case missing, closed, or already marked")
        setattr(case, marker, sent_at)


class InMemoryNotificationLog(INotificationLog):

    def __init__(self):
        self.records: List[NotificationRecord] = []
        self.fail = False

    async def append(self, record: NotificationRecord) -> NotificationRecord:
        if self.fail:
            raise ConnectionError("audit store unavailable")
        record.id = str(uuid4())
        self.records.append(record)
        return record

    async def list_for_case(self, case_id: str) -> List[NotificationRecord]:
        return [r for r in self.records if r.case_id == case_id]

    def for_case(self, case_id: str, kind: Optional[str] = None) -> List[NotificationRecord]:
        return [
            r for r in self.records
            if r.case_id == case_id and (kind is None or r.kind == kind)
        ]


class StaticAdminDirectory(IAdminDirectory):

    def __init__(self, recipients: Sequence[AdminRecipient] = ()):
        self.recipients = list(recipients)
        self.lookups: List[tuple] = []

    async def list_admin_recipients(self, role_names, company_id=None) -> List[AdminRecipient]:
        self.lookups.append((tuple(role_names), company_id))
        return [
            r for r in self.recipients
            if r.role in role_names and (r.company_id is None or r.company_id == company_id)
        ]


class RecordingSMSChannel(ISMSChannel):
    """Records every send; can be told to fail for particular numbers or to hang."""

    def __init__(self, fail_for: Sequence[str] = (), delay: float = 0.0):
        self.sent: List[dict] = []
        self.fail_for = set(fail_for)
        self.delay = delay

    async def send_follow_up(self, case_id, phone_number, employee_name, issue_category) -> str:
        if self.delay:
            await asyncio.sleep(self.delay)
        if phone_number in self.fail_for:
            raise DeliveryException("sms", "carrier rejected", phone_number)
        self.sent.append({
            "case_id": case_id,
            "phone": phone_number,
            "employee_name": employee_name,
            "category": issue_category,
        })
        return f"follow-up for {case_id}"


class RecordingEmailChannel(IEmailChannel):
    """Records every send; ``fail_on_calls`` holds 1-based call numbers that raise."""

    def __init__(self, fail_for: Sequence[str] = (), fail_on_calls: Sequence[int] = ()):
        self.calls = 0
        self.sent: List[dict] = []
        self.fail_for = set(fail_for)
        self.fail_on_calls = set(fail_on_calls)

    async def send_escalation(
        self, recipient, case_id, employee_name, issue_category, client_name, hours_since_activity,
        last_activity_at=None
    ) -> str:
        self.calls += 1
        if self.calls in self.fail_on_calls or recipient.email in self.fail_for:
            raise RuntimeError(f"mail provider refused {recipient.email}")
        self.sent.append({
            "to": recipient.email,
            "case_id": case_id,
            "hours": hours_since_activity,
            "client": client_name,
            "last_activity_at": last_activity_at,
        })
        return f"SLA escalation: {issue_category} case for {client_name}"


class StaticPolicyProvider(ISLAPolicyProvider):

    def __init__(self, policies: Optional[SLAPolicySet] = None):
        self.policies = policies or SLAPolicySet(default=SLAPolicy())

    def get_policies(self) -> SLAPolicySet:
        return self.policies


# ========== Factories ==========

def build_case(hours_idle: float, now: datetime = NOW, **overrides) -> Case:
    """Open case whose last activity was ``hours_idle`` hours before ``now``."""
    last_activity = now - timedelta(hours=hours_idle)
    fields = dict(
        id=str(uuid4()),
        title="Payslip missing",
        category="Payroll",
        priority="medium",
        status=CaseStatus.OPEN,
        created_at=last_activity - timedelta(hours=1),
        last_activity_at=last_activity,
        employee_name="Amina",
        contact_phone="+254700000001",
        client_name="Acme Ltd",
    )
    fields.update(overrides)
    return Case(**fields)


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def make_case():
    return build_case


@pytest.fixture
def admins() -> List[AdminRecipient]:
    return [
        AdminRecipient(email="ops@hali.example", name="Ops", role="super_admin"),
        AdminRecipient(email="lead@hali.example", name="Lead", role="company_admin"),
    ]


# ========== SQLite ==========

@pytest_asyncio.fixture
async def session_factory():
    """In-memory SQLite database with all tables, shared across sessions."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
    yield factory

    await engine.dispose()
