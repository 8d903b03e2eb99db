"""Tests for the SQLAlchemy case store, notification log and admin directory."""

from datetime import timedelta
from uuid import uuid4

import pytest

from escalation_service.config import CaseStatus, DeliveryChannel, NotificationKind
from escalation_service.core import MarkerWriteException, ResourceNotFoundException
from escalation_service.infrastructure import database
from escalation_service.sla.domain import NotificationRecord
from escalation_service.sla.infrastructure import (
    AdminAccountModel,
    SQLAlchemyAdminDirectory,
    SQLAlchemyCaseRepository,
    SQLAlchemyNotificationLog,
)

from conftest import NOW, build_case


@pytest.mark.asyncio
async def test_create_and_get_round_trips_timezone(session_factory):
    repo = SQLAlchemyCaseRepository(session_factory)
    case = await repo.create(build_case(30, company_id="acme"))

    loaded = await repo.get_by_id(case.id)

    assert loaded.id == case.id
    assert loaded.company_id == "acme"
    assert loaded.last_activity_at == NOW - timedelta(hours=30)
    assert loaded.last_activity_at.tzinfo is not None


@pytest.mark.asyncio
async def test_get_by_id_handles_unknown_and_malformed_ids(session_factory):
    repo = SQLAlchemyCaseRepository(session_factory)

    assert await repo.get_by_id(str(uuid4())) is None
    assert await repo.get_by_id("not-a-uuid") is None


@pytest.mark.asyncio
async def test_list_open_cases_excludes_closed_and_orders_by_idle_time(session_factory):
    repo = SQLAlchemyCaseRepository(session_factory)
    recent = await repo.create(build_case(5))
    oldest = await repo.create(build_case(80, status=CaseStatus.WAITING))
    await repo.create(build_case(100, status=CaseStatus.CLOSED, closed_at=NOW))

    cases = await repo.list_open_cases()

    assert [c.id for c in cases] == [oldest.id, recent.id]


@pytest.mark.asyncio
async def test_marker_is_set_once(session_factory):
    repo = SQLAlchemyCaseRepository(session_factory)
    case = await repo.create(build_case(30))

    await repo.mark_follow_up_sent(case.id, NOW)

    with pytest.raises(MarkerWriteException):
        await repo.mark_follow_up_sent(case.id, NOW + timedelta(hours=1))

    loaded = await repo.get_by_id(case.id)
    assert loaded.follow_up_sent_at == NOW
    assert loaded.escalation_sent_at is None


@pytest.mark.asyncio
async def test_marker_write_only_touches_its_own_row(session_factory):
    repo = SQLAlchemyCaseRepository(session_factory)
    target = await repo.create(build_case(50))
    other = await repo.create(build_case(50))

    await repo.mark_escalation_sent(target.id, NOW)

    assert (await repo.get_by_id(target.id)).escalation_sent_at == NOW
    assert (await repo.get_by_id(other.id)).escalation_sent_at is None


@pytest.mark.asyncio
async def test_marker_is_not_set_on_closed_case(session_factory):
    repo = SQLAlchemyCaseRepository(session_factory)
    case = await repo.create(build_case(50))
    case.change_status(CaseStatus.CLOSED, NOW)
    await repo.save(case)

    with pytest.raises(MarkerWriteException) as exc_info:
        await repo.mark_escalation_sent(case.id, NOW)

    assert exc_info.value.marker == "escalation_sent_at"


@pytest.mark.asyncio
async def test_marker_on_unknown_case_raises(session_factory):
    repo = SQLAlchemyCaseRepository(session_factory)

    with pytest.raises(MarkerWriteException):
        await repo.mark_follow_up_sent(str(uuid4()), NOW)


@pytest.mark.asyncio
async def test_save_persists_reopen(session_factory):
    repo = SQLAlchemyCaseRepository(session_factory)
    case = await repo.create(build_case(50))
    await repo.mark_escalation_sent(case.id, NOW)
    case = await repo.get_by_id(case.id)

    case.change_status(CaseStatus.CLOSED, NOW + timedelta(hours=1))
    await repo.save(case)
    case.change_status(CaseStatus.OPEN, NOW + timedelta(hours=2))
    saved = await repo.save(case)

    assert saved.status == CaseStatus.OPEN
    assert saved.escalation_sent_at is None
    assert saved.closed_at is None


@pytest.mark.asyncio
async def test_save_from_stale_copy_keeps_marker_set_by_run(session_factory):
    repo = SQLAlchemyCaseRepository(session_factory)
    created = await repo.create(build_case(30))
    stale = await repo.get_by_id(created.id)

    await repo.mark_follow_up_sent(created.id, NOW)
    stale.record_activity(NOW + timedelta(minutes=1))
    saved = await repo.save(stale)

    loaded = await repo.get_by_id(created.id)
    assert loaded.follow_up_sent_at == NOW
    assert loaded.last_activity_at == NOW + timedelta(minutes=1)
    assert saved.follow_up_sent_at == NOW


@pytest.mark.asyncio
async def test_save_from_stale_copy_on_status_change_keeps_marker(session_factory):
    repo = SQLAlchemyCaseRepository(session_factory)
    created = await repo.create(build_case(50))
    stale = await repo.get_by_id(created.id)

    await repo.mark_escalation_sent(created.id, NOW)
    stale.change_status(CaseStatus.WAITING, NOW + timedelta(minutes=1))
    await repo.save(stale)

    loaded = await repo.get_by_id(created.id)
    assert loaded.status == CaseStatus.WAITING
    assert loaded.escalation_sent_at == NOW


@pytest.mark.asyncio
async def test_activity_with_marker_reset_clears_markers(session_factory):
    repo = SQLAlchemyCaseRepository(session_factory)
    created = await repo.create(build_case(30))
    await repo.mark_follow_up_sent(created.id, NOW)
    case = await repo.get_by_id(created.id)

    case.record_activity(NOW + timedelta(minutes=1), reset_markers=True)
    saved = await repo.save(case)

    assert saved.follow_up_sent_at is None
    assert not case.markers_cleared


@pytest.mark.asyncio
async def test_save_unknown_case_raises(session_factory):
    repo = SQLAlchemyCaseRepository(session_factory)

    with pytest.raises(ResourceNotFoundException):
        await repo.save(build_case(5))


@pytest.mark.asyncio
async def test_notification_log_appends_and_lists_oldest_first(session_factory):
    repo = SQLAlchemyCaseRepository(session_factory)
    log = SQLAlchemyNotificationLog(session_factory)
    case = await repo.create(build_case(50))

    later = await log.append(NotificationRecord(
        case_id=case.id,
        kind=NotificationKind.ESCALATION,
        channel=DeliveryChannel.EMAIL,
        recipient="ops@hali.example",
        message="SLA escalation",
        created_at=NOW,
        details={"hours_since_activity": 50.0, "failed": []},
    ))
    earlier = await log.append(NotificationRecord(
        case_id=case.id,
        kind=NotificationKind.FOLLOW_UP,
        channel=DeliveryChannel.SMS,
        recipient="+254700000001",
        message="Hi Amina",
        created_at=NOW - timedelta(hours=24),
    ))

    records = await log.list_for_case(case.id)

    assert later.id is not None
    assert [r.id for r in records] == [earlier.id, later.id]
    assert records[1].details == {"hours_since_activity": 50.0, "failed": []}
    assert records[1].created_at == NOW


@pytest.mark.asyncio
async def test_admin_directory_scopes_and_deduplicates(session_factory):
    async with session_factory() as session:
        session.add_all([
            AdminAccountModel(email="ops@hali.example", name="Ops", role="super_admin"),
            AdminAccountModel(email="OPS@hali.example", name="Ops", role="company_admin"),
            AdminAccountModel(email="hr@acme.example", name="HR", role="company_admin", company_id="acme"),
            AdminAccountModel(email="hr@globex.example", name="HR", role="company_admin", company_id="globex"),
            AdminAccountModel(email="gone@hali.example", name="Gone", role="super_admin", is_active=False),
            AdminAccountModel(email="agent@hali.example", name="Agent", role="agent"),
        ])
        await session.commit()

    directory = SQLAlchemyAdminDirectory(session_factory)

    acme = await directory.list_admin_recipients(["super_admin", "company_admin"], "acme")
    platform = await directory.list_admin_recipients(["super_admin", "company_admin"])

    assert sorted(r.email.lower() for r in acme) == ["hr@acme.example", "ops@hali.example"]
    assert [r.email.lower() for r in platform] == ["ops@hali.example"]


def test_session_factory_requires_initialised_database(monkeypatch):
    monkeypatch.setattr(database, "_session_maker", None)

    with pytest.raises(RuntimeError, match="not initialized"):
        database.get_session_factory()

    assert not hasattr(database, "get_session")
    assert not hasattr(database, "get_session_context")
