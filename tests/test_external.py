"""Tests for the policy file, circuit breaker, delivery clients and scheduler."""

import json
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs

import httpx
import pytest

from escalation_service.core import ConfigurationException, DeliveryException
from escalation_service.sla.domain import AdminRecipient, SLAPolicy
from escalation_service.sla.infrastructure.external import (
    CircuitBreaker,
    CircuitState,
    ResendEmailClient,
    SLAPolicyManager,
    SLAScheduler,
    TwilioSMSClient,
    compose_escalation_email,
    compose_follow_up_sms,
    escalation_idempotency_key,
)


CASE_ID = "6f1d2c3b-0000-4000-8000-000000000001"
ADMIN = AdminRecipient(email="ops@hali.example", name="Ops", role="super_admin")
OPENED = datetime(2026, 2, 28, 10, 0, tzinfo=timezone.utc)


def mock_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


# ========== Policy file ==========

POLICY_YAML = """
default:
  follow_up_threshold_hours: 12
  escalation_threshold_hours: 36
tenants:
  acme:
    escalation_threshold_hours: 20
"""


def test_policy_file_is_loaded_with_tenant_overrides(tmp_path):
    path = tmp_path / "sla_policy.yaml"
    path.write_text(POLICY_YAML)

    manager = SLAPolicyManager(fallback=SLAPolicy())
    manager.load(path)
    policies = manager.get_policies()

    assert policies.default.follow_up_threshold_hours == 12
    assert policies.default.admin_role_names == ["super_admin", "company_admin"]
    assert policies.policy_for("acme").escalation_threshold_hours == 20
    assert policies.policy_for("acme").follow_up_threshold_hours == 12


def test_missing_policy_file_uses_fallback(tmp_path):
    fallback = SLAPolicy(follow_up_threshold_hours=6, escalation_threshold_hours=12)

    manager = SLAPolicyManager(fallback=fallback)
    manager.load(tmp_path / "absent.yaml")

    assert manager.get_policies().default == fallback
    assert manager.get_policies().tenants == {}


def test_invalid_policy_file_fails_load(tmp_path):
    path = tmp_path / "sla_policy.yaml"
    path.write_text("default:\n  follow_up_threshold_hours: 50\n  escalation_threshold_hours: 10\n")

    with pytest.raises(ConfigurationException):
        SLAPolicyManager(fallback=SLAPolicy()).load(path)


def test_reload_keeps_previous_policy_when_file_breaks(tmp_path):
    path = tmp_path / "sla_policy.yaml"
    path.write_text(POLICY_YAML)
    manager = SLAPolicyManager(fallback=SLAPolicy())
    manager.load(path)

    path.write_text("default: [not, a, mapping")

    assert manager.reload() is False
    assert manager.get_policies().default.follow_up_threshold_hours == 12


def test_reload_picks_up_changes(tmp_path):
    path = tmp_path / "sla_policy.yaml"
    path.write_text(POLICY_YAML)
    manager = SLAPolicyManager(fallback=SLAPolicy())
    manager.load(path)

    path.write_text("default:\n  follow_up_threshold_hours: 2\n  escalation_threshold_hours: 4\n")

    assert manager.reload() is True
    assert manager.get_policies().default.escalation_threshold_hours == 4
    assert manager.get_policies().tenants == {}


# ========== Circuit breaker ==========

def test_circuit_opens_after_threshold_and_recovers():
    now = [0.0]
    breaker = CircuitBreaker("twilio", failure_threshold=2, recovery_timeout=30, clock=lambda: now[0])

    breaker.record_failure()
    assert breaker.allow_request()
    breaker.record_failure()
    assert breaker.state == CircuitState.OPEN
    assert not breaker.allow_request()

    now[0] = 31.0
    assert breaker.state == CircuitState.HALF_OPEN
    breaker.record_success()
    assert breaker.state == CircuitState.CLOSED


def test_failure_while_half_open_reopens_circuit():
    now = [0.0]
    breaker = CircuitBreaker("resend", failure_threshold=1, recovery_timeout=10, clock=lambda: now[0])
    breaker.record_failure()
    now[0] = 11.0
    assert breaker.state == CircuitState.HALF_OPEN

    breaker.record_failure()

    assert breaker.state == CircuitState.OPEN


# ========== Twilio ==========

def test_follow_up_text_mentions_category_and_short_reference():
    text = compose_follow_up_sms(CASE_ID, "Amina", "Payroll")

    assert text.startswith("Hi Amina,")
    assert "Payroll case" in text
    assert "(ref 6f1d2c3b)" in text


@pytest.mark.asyncio
async def test_twilio_posts_form_encoded_message():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["authorization"]
        seen["form"] = parse_qs(request.content.decode())
        return httpx.Response(201, json={"sid": "SM123"})

    client = TwilioSMSClient(
        account_sid="AC123",
        auth_token="secret",
        from_number="+15550001111",
        api_base="https://twilio.test/2010-04-01",
        http_client=mock_client(handler),
    )

    body = await client.send_follow_up(CASE_ID, "+254700000001", "Amina", "Payroll")

    assert seen["url"] == "https://twilio.test/2010-04-01/Accounts/AC123/Messages.json"
    assert seen["auth"].startswith("Basic ")
    assert seen["form"]["To"] == ["+254700000001"]
    assert seen["form"]["From"] == ["+15550001111"]
    assert seen["form"]["Body"] == [body]
    await client.close()


@pytest.mark.asyncio
async def test_twilio_error_status_raises_and_counts_towards_circuit():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"message": "invalid To number"})

    breaker = CircuitBreaker("twilio", failure_threshold=2)
    client = TwilioSMSClient(
        account_sid="AC123",
        auth_token="secret",
        from_number="+15550001111",
        http_client=mock_client(handler),
        circuit_breaker=breaker,
    )

    for _ in range(2):
        with pytest.raises(DeliveryException) as exc_info:
            await client.send_follow_up(CASE_ID, "+254700000001", "Amina", "Payroll")
        assert exc_info.value.details["status_code"] == 400

    with pytest.raises(DeliveryException, match="circuit open"):
        await client.send_follow_up(CASE_ID, "+254700000001", "Amina", "Payroll")


@pytest.mark.asyncio
async def test_twilio_network_error_becomes_delivery_exception():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client = TwilioSMSClient(
        account_sid="AC123",
        auth_token="secret",
        from_number="+15550001111",
        http_client=mock_client(handler),
    )

    with pytest.raises(DeliveryException, match="request failed"):
        await client.send_follow_up(CASE_ID, "+254700000001", "Amina", "Payroll")


@pytest.mark.asyncio
async def test_unconfigured_twilio_refuses_to_send():
    calls = []
    client = TwilioSMSClient(http_client=mock_client(lambda r: calls.append(r)))

    assert not client.is_configured
    with pytest.raises(DeliveryException, match="not configured"):
        await client.send_follow_up(CASE_ID, "+254700000001", "Amina", "Payroll")
    assert calls == []


# ========== Resend ==========

def test_escalation_email_escapes_html():
    content = compose_escalation_email(
        CASE_ID, "Amina", "HR", "<Acme>", 50.0, "https://app.test/admin/pulse/cases/1"
    )

    assert content["subject"] == "SLA escalation: HR case for <Acme> idle 50h"
    assert "&lt;Acme&gt;" in content["html"]
    assert "<Acme>" not in content["html"]
    assert "Hours since last activity: 50.0" in content["text"]


@pytest.mark.asyncio
async def test_resend_sends_one_email_per_recipient():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["auth"] = request.headers["authorization"]
        seen["idempotency"] = request.headers["idempotency-key"]
        seen["payload"] = json.loads(request.content)
        return httpx.Response(200, json={"id": "email_1"})

    client = ResendEmailClient(
        api_key="re_test",
        from_email="Alerts <alerts@hali.example>",
        api_url="https://resend.test/emails",
        app_base_url="https://app.test/",
        http_client=mock_client(handler),
    )

    subject = await client.send_escalation(
        ADMIN, CASE_ID, "Amina", "HR", "Acme", 50.0, last_activity_at=OPENED
    )

    assert subject == "SLA escalation: HR case for Acme idle 50h"
    assert seen["auth"] == "Bearer re_test"
    assert seen["idempotency"] == (
        f"sla-escalation/{CASE_ID}/2026-02-28T10:00:00+00:00/ops@hali.example"
    )
    assert seen["payload"]["to"] == ["ops@hali.example"]
    assert seen["payload"]["from"] == "Alerts <alerts@hali.example>"
    assert f"https://app.test/admin/pulse/cases/{CASE_ID}" in seen["payload"]["html"]
    await client.close()


@pytest.mark.asyncio
async def test_resend_error_status_raises():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(422, json={"message": "invalid from"})

    client = ResendEmailClient(
        api_key="re_test",
        api_url="https://resend.test/emails",
        http_client=mock_client(handler),
    )

    with pytest.raises(DeliveryException) as exc_info:
        await client.send_escalation(ADMIN, CASE_ID, "Amina", "HR", "Acme", 50.0)

    assert exc_info.value.recipient == "ops@hali.example"
    assert exc_info.value.details["status_code"] == 422


def test_escalation_key_changes_with_open_period():
    first = escalation_idempotency_key(CASE_ID, "ops@hali.example", OPENED)
    replay = escalation_idempotency_key(CASE_ID, "OPS@hali.example", OPENED)
    reopened = escalation_idempotency_key(CASE_ID, "ops@hali.example", OPENED + timedelta(hours=3))

    assert first == replay
    assert first != reopened
    assert escalation_idempotency_key(CASE_ID, "ops@hali.example").endswith("/initial/ops@hali.example")


@pytest.mark.asyncio
async def test_resend_reescalation_after_reopen_uses_new_key():
    keys = []

    def handler(request: httpx.Request) -> httpx.Response:
        keys.append(request.headers["idempotency-key"])
        return httpx.Response(200, json={"id": f"email_{len(keys)}"})

    client = ResendEmailClient(
        api_key="re_test",
        api_url="https://resend.test/emails",
        http_client=mock_client(handler),
    )

    await client.send_escalation(ADMIN, CASE_ID, "Amina", "HR", "Acme", 50.0, last_activity_at=OPENED)
    await client.send_escalation(
        ADMIN, CASE_ID, "Amina", "HR", "Acme", 49.0, last_activity_at=OPENED + timedelta(hours=3)
    )

    assert len(keys) == 2
    assert keys[0] != keys[1]


@pytest.mark.asyncio
async def test_resend_idempotency_conflict_counts_as_sent():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(409, json={"name": "concurrent_idempotent_requests"})

    breaker = CircuitBreaker("resend", failure_threshold=1)
    client = ResendEmailClient(
        api_key="re_test",
        api_url="https://resend.test/emails",
        http_client=mock_client(handler),
        circuit_breaker=breaker,
    )

    subject = await client.send_escalation(
        ADMIN, CASE_ID, "Amina", "HR", "Acme", 50.0, last_activity_at=OPENED
    )

    assert subject == "SLA escalation: HR case for Acme idle 50h"
    assert breaker.state == CircuitState.CLOSED


# ========== Scheduler ==========

@pytest.mark.asyncio
async def test_scheduler_start_and_stop():
    async def job():
        return None

    scheduler = SLAScheduler(interval_seconds=3600)

    await scheduler.start(job)
    assert scheduler.is_running

    await scheduler.stop()
    assert not scheduler.is_running
