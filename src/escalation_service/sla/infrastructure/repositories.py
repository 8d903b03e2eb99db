"""
SLA Infrastructure Repositories
=================================

Concrete implementations of the repository ports using SQLAlchemy.

Each repository takes a session factory and opens one short transaction per
call. Marker writes in particular are single-row conditional UPDATEs
committed on their own, so a run never holds a batch of case rows and
never overwrites concurrent staff edits.
"""

from datetime import datetime, timezone
from typing import List, Optional, Sequence
from uuid import UUID, uuid4

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from escalation_service.config import OPEN_STATUSES
from escalation_service.core import MarkerWriteException, ResourceNotFoundException
from escalation_service.sla.application import (
    ICaseRepository, INotificationLog, IAdminDirectory
)
from escalation_service.sla.domain import AdminRecipient, Case, NotificationRecord
from escalation_service.sla.infrastructure.models import (
    AdminAccountModel, CaseModel, NotificationRecordModel
)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """Some drivers (SQLite) hand back naive datetimes; they are stored as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _parse_uuid(value: str) -> Optional[UUID]:
    try:
        return UUID(str(value))
    except ValueError:
        return None


def _to_domain(model: CaseModel) -> Case:
    return Case(
        id=str(model.id),
        title=model.title,
        description=model.description or "",
        category=model.category,
        priority=model.priority,
        status=model.status,
        source=model.source,
        created_at=_aware(model.created_at),
        last_activity_at=_aware(model.last_activity_at),
        assignee_id=model.assignee_id,
        employee_name=model.employee_name,
        contact_phone=model.contact_phone,
        contact_email=model.contact_email,
        company_id=model.company_id,
        client_name=model.client_name,
        follow_up_sent_at=_aware(model.follow_up_sent_at),
        escalation_sent_at=_aware(model.escalation_sent_at),
        closed_at=_aware(model.closed_at),
    )


class SQLAlchemyCaseRepository(ICaseRepository):
    """
    SQLAlchemy implementation of the case store.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def list_open_cases(self) -> List[Case]:
        """All open cases, longest-idle first."""
        stmt = (
            select(CaseModel)
            .where(CaseModel.status.in_(OPEN_STATUSES))
            .order_by(CaseModel.last_activity_at.asc())
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [_to_domain(m) for m in result.scalars().all()]

    async def get_by_id(self, case_id: str) -> Optional[Case]:
        """Get case by ID."""
        case_uuid = _parse_uuid(case_id)
        if case_uuid is None:
            return None

        async with self._session_factory() as session:
            model = await session.get(CaseModel, case_uuid)
            return _to_domain(model) if model else None

    async def create(self, case: Case) -> Case:
        """Create new case."""
        model = CaseModel(
            id=_parse_uuid(case.id) or uuid4(),
            title=case.title,
            description=case.description,
            category=case.category,
            priority=case.priority,
            status=case.status,
            source=case.source,
            assignee_id=case.assignee_id,
            employee_name=case.employee_name,
            contact_phone=case.contact_phone,
            contact_email=case.contact_email,
            company_id=case.company_id,
            client_name=case.client_name,
            created_at=case.created_at,
            last_activity_at=case.last_activity_at,
            closed_at=case.closed_at,
            follow_up_sent_at=case.follow_up_sent_at,
            escalation_sent_at=case.escalation_sent_at,
        )

        async with self._session_factory() as session:
            session.add(model)
            await session.commit()
            return _to_domain(model)

    async def save(self, case: Case) -> Case:
        """
        Persist status and activity changes for one case.

        Markers are never copied from ``case``: an SLA run may have set one
        since the caller loaded it. They are only nulled when the entity
        reset them (reopen, or activity with marker reset).
        """
        case_uuid = _parse_uuid(case.id)
        if case_uuid is None:
            raise ResourceNotFoundException("Case", case.id)

        values = {
            "status": case.status,
            "last_activity_at": case.last_activity_at,
            "closed_at": case.closed_at,
        }
        if case.markers_cleared:
            values["follow_up_sent_at"] = None
            values["escalation_sent_at"] = None

        stmt = (
            update(CaseModel)
            .where(CaseModel.id == case_uuid)
            .values(values)
            .execution_options(synchronize_session=False)
        )

        async with self._session_factory() as session:
            result = await session.execute(stmt)
            if result.rowcount == 0:
                raise ResourceNotFoundException("Case", case.id)
            await session.commit()
            case.markers_cleared = False

            model = await session.get(CaseModel, case_uuid, populate_existing=True)
            return _to_domain(model)

    async def mark_follow_up_sent(self, case_id: str, sent_at: datetime) -> None:
        await self._set_marker(case_id, CaseModel.follow_up_sent_at, sent_at)

    async def mark_escalation_sent(self, case_id: str, sent_at: datetime) -> None:
        await self._set_marker(case_id, CaseModel.escalation_sent_at, sent_at)

    async def _set_marker(self, case_id: str, column, sent_at: datetime) -> None:
        """
        Set one marker column on one row, only if it is still unset and the
        case is still open.
        """
        case_uuid = _parse_uuid(case_id)
        if case_uuid is None:
            raise MarkerWriteException(case_id, column.key, "invalid case id")

        stmt = (
            update(CaseModel)
            .where(
                CaseModel.id == case_uuid,
                column.is_(None),
                CaseModel.status.in_(OPEN_STATUSES),
            )
            .values({column.key: sent_at})
            .execution_options(synchronize_session=False)
        )

        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                await session.commit()
        except Exception as e:
            raise MarkerWriteException(case_id, column.key, str(e)) from e

        if result.rowcount == 0:
            raise MarkerWriteException(
                case_id, column.key, "case missing, closed, or already marked"
            )


class SQLAlchemyNotificationLog(INotificationLog):
    """
    Insert-only store for notification records.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def append(self, record: NotificationRecord) -> NotificationRecord:
        """Append a record."""
        case_uuid = _parse_uuid(record.case_id)
        if case_uuid is None:
            raise ValueError(f"Invalid case ID: {record.case_id}")

        model = NotificationRecordModel(
            id=uuid4(),
            case_id=case_uuid,
            kind=record.kind,
            channel=record.channel,
            recipient=record.recipient,
            message=record.message,
            details=record.details,
            created_at=record.created_at,
        )

        async with self._session_factory() as session:
            session.add(model)
            await session.commit()

        record.id = str(model.id)
        return record

    async def list_for_case(self, case_id: str) -> List[NotificationRecord]:
        """Get records for a case, oldest first."""
        case_uuid = _parse_uuid(case_id)
        if case_uuid is None:
            return []

        stmt = (
            select(NotificationRecordModel)
            .where(NotificationRecordModel.case_id == case_uuid)
            .order_by(NotificationRecordModel.created_at.asc())
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            models = result.scalars().all()

        return [
            NotificationRecord(
                id=str(m.id),
                case_id=str(m.case_id),
                kind=m.kind,
                channel=m.channel,
                recipient=m.recipient,
                message=m.message,
                created_at=_aware(m.created_at),
                details=m.details or {},
            )
            for m in models
        ]


class SQLAlchemyAdminDirectory(IAdminDirectory):
    """
    Resolves escalation recipients from the admin_accounts table.

    Platform-wide admins (no company) receive every tenant's escalations;
    tenant admins only their own.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def list_admin_recipients(
        self,
        role_names: Sequence[str],
        company_id: Optional[str] = None
    ) -> List[AdminRecipient]:
        scope = AdminAccountModel.company_id.is_(None)
        if company_id:
            scope = or_(scope, AdminAccountModel.company_id == company_id)

        stmt = (
            select(AdminAccountModel)
            .where(
                AdminAccountModel.role.in_(list(role_names)),
                AdminAccountModel.is_active.is_(True),
                scope,
            )
            .order_by(AdminAccountModel.email.asc())
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            models = result.scalars().all()

        # One email per address even if the account holds several roles
        seen = set()
        recipients = []
        for m in models:
            key = m.email.strip().lower()
            if key in seen:
                continue
            seen.add(key)
            recipients.append(AdminRecipient(
                email=m.email, name=m.name, role=m.role, company_id=m.company_id
            ))
        return recipients
