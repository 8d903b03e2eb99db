"""
SLA External Service Integrations
==================================

External services for the escalation pipeline:
- Twilio SMS for follow-up reminders
- Resend email for admin escalation alerts
- YAML policy file watcher
- APScheduler for periodic SLA runs
"""

import html
import threading
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
import yaml
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from escalation_service.config import DeliveryChannel, settings
from escalation_service.core import ConfigurationException, DeliveryException
from escalation_service.shared.infrastructure.logging import get_logger, mask_phone
from escalation_service.sla.application import IEmailChannel, ISLAPolicyProvider, ISMSChannel
from escalation_service.sla.domain import AdminRecipient, SLAPolicy, SLAPolicySet

logger = get_logger(__name__)


# ========== Policy file ==========

def default_policy() -> SLAPolicy:
    """Policy built from environment settings."""
    return SLAPolicy(
        follow_up_threshold_hours=settings.follow_up_threshold_hours,
        escalation_threshold_hours=settings.escalation_threshold_hours,
        admin_role_names=settings.admin_role_names,
    )


class PolicyFileHandler(FileSystemEventHandler):
    """Watchdog event handler for SLA policy file changes."""

    def __init__(self, policy_manager: "SLAPolicyManager", policy_path: Path):
        self.policy_manager = policy_manager
        self.policy_path = policy_path
        super().__init__()

    def on_modified(self, event):
        """Handle file modification event."""
        if event.is_directory:
            return
        if Path(event.src_path).resolve() == self.policy_path.resolve():
            logger.info("SLA policy file changed", extra={"path": str(event.src_path)})
            self.policy_manager.reload()


class SLAPolicyManager(ISLAPolicyProvider):
    """
    Thread-safe SLA policy provider with hot-reload support.

    Policy file layout::

        default:
          follow_up_threshold_hours: 24
          escalation_threshold_hours: 48
          admin_role_names: [super_admin, company_admin]
        tenants:
          <company_id>:
            escalation_threshold_hours: 12

    Keys missing from ``default`` come from environment settings; tenant
    entries override the default field by field.
    """

    def __init__(self, fallback: Optional[SLAPolicy] = None):
        self._fallback = fallback or default_policy()
        self._policies: Optional[SLAPolicySet] = None
        self._lock = threading.Lock()
        self._path: Optional[Path] = None
        self._observer = None

    def load(self, path: Path) -> SLAPolicySet:
        """Initial load; an invalid file is a startup error."""
        self._path = Path(path)
        try:
            policies = self._load_from_file(self._path)
        except (yaml.YAMLError, ValueError) as e:
            raise ConfigurationException(
                f"Invalid SLA policy file {self._path}", {"error": str(e)}
            ) from e
        with self._lock:
            self._policies = policies
        return policies

    def _load_from_file(self, path: Path) -> SLAPolicySet:
        """Load and parse the YAML policy file."""
        if not path.exists():
            logger.warning("SLA policy file not found, using defaults", extra={"path": str(path)})
            return SLAPolicySet(default=self._fallback)

        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}

        default = {**self._fallback.model_dump(), **(data.get("default") or {})}
        return SLAPolicySet(
            default=SLAPolicy(**default),
            tenants={str(k): v or {} for k, v in (data.get("tenants") or {}).items()},
        )

    def reload(self) -> bool:
        """Reload policies; keep the previous set if the new file is invalid."""
        if self._path is None:
            return False

        try:
            new_policies = self._load_from_file(self._path)
        except (OSError, yaml.YAMLError, ValueError) as e:
            logger.error("Failed to reload SLA policy, keeping previous", extra={"error": str(e)})
            return False

        with self._lock:
            self._policies = new_policies
        logger.info("SLA policy reloaded", extra={"tenant_overrides": len(new_policies.tenants)})
        return True

    def start_watching(self) -> None:
        """
        Start watching the policy file for changes.

        Skipped when the file does not exist or inotify is unavailable
        (serverless and some container runtimes).
        """
        if self._path is None:
            raise RuntimeError("Policy not loaded. Call load() first.")

        if not self._path.exists():
            logger.info(
                "Policy file doesn't exist, skipping file watch",
                extra={"path": str(self._path)}
            )
            return

        try:
            self._observer = Observer()
            handler = PolicyFileHandler(self, self._path)
            self._observer.schedule(handler, str(self._path.parent), recursive=False)
            self._observer.start()
            logger.info("Started watching policy file", extra={"path": str(self._path)})
        except OSError as e:
            logger.warning("File watching not available, using static policy", extra={"error": str(e)})
            self._observer = None

    def stop_watching(self) -> None:
        """Stop watching (safe to call even if not watching)."""
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None

    def get_policies(self) -> SLAPolicySet:
        with self._lock:
            if self._policies is None:
                return SLAPolicySet(default=self._fallback)
            return self._policies


# ========== Circuit breaker ==========

class CircuitState:
    """Circuit breaker states."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Circuit breaker for a delivery channel.

    States:
    - CLOSED: Normal operation, requests pass through
    - OPEN: After N consecutive failures, reject requests for M seconds
    - HALF_OPEN: After timeout, allow a test request
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        clock: Callable[[], float] = time.monotonic
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time: Optional[float] = None

    @property
    def state(self) -> str:
        """Get current circuit state."""
        if self._state == CircuitState.OPEN and self._last_failure_time is not None:
            if self._clock() - self._last_failure_time >= self.recovery_timeout:
                self._state = CircuitState.HALF_OPEN
        return self._state

    def allow_request(self) -> bool:
        return self.state in (CircuitState.CLOSED, CircuitState.HALF_OPEN)

    def record_success(self) -> None:
        self._failure_count = 0
        self._state = CircuitState.CLOSED

    def record_failure(self) -> None:
        self._failure_count += 1
        self._last_failure_time = self._clock()

        if self._state == CircuitState.HALF_OPEN or self._failure_count >= self.failure_threshold:
            self._state = CircuitState.OPEN
            logger.warning(
                "Circuit breaker opened",
                extra={
                    "channel": self.name,
                    "failure_count": self._failure_count,
                    "recovery_timeout": self.recovery_timeout
                }
            )


# ========== SMS ==========

def compose_follow_up_sms(case_id: str, employee_name: str, issue_category: str) -> str:
    """Reminder text sent to the case contact."""
    return (
        f"Hi {employee_name}, this is HALI following up on your {issue_category} case "
        f"(ref {case_id[:8]}). Reply to this message if you still need help and "
        f"our team will get back to you."
    )


class TwilioSMSClient(ISMSChannel):
    """
    Sends follow-up reminders through the Twilio Messages API.

    One attempt per call: a failed reminder stays eligible and is retried
    by the next scheduled run.
    """

    def __init__(
        self,
        account_sid: Optional[str] = None,
        auth_token: Optional[str] = None,
        from_number: Optional[str] = None,
        api_base: Optional[str] = None,
        timeout: Optional[float] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        circuit_breaker: Optional[CircuitBreaker] = None
    ):
        self._account_sid = account_sid or settings.twilio_account_sid
        self._auth_token = auth_token or settings.twilio_auth_token
        self._from_number = from_number or settings.twilio_from_number
        self._api_base = (api_base or settings.twilio_api_base).rstrip("/")
        self._timeout = timeout or settings.dispatch_timeout_seconds
        self._http_client = http_client
        self._circuit_breaker = circuit_breaker or CircuitBreaker(
            "twilio",
            failure_threshold=settings.circuit_failure_threshold,
            recovery_timeout=settings.circuit_recovery_seconds,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self._account_sid and self._auth_token and self._from_number)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self._timeout)
        return self._http_client

    async def send_follow_up(
        self,
        case_id: str,
        phone_number: str,
        employee_name: str,
        issue_category: str
    ) -> str:
        if not self.is_configured:
            raise DeliveryException(DeliveryChannel.SMS, "Twilio is not configured", phone_number)

        if not self._circuit_breaker.allow_request():
            raise DeliveryException(DeliveryChannel.SMS, "circuit open, Twilio short-circuited", phone_number)

        body = compose_follow_up_sms(case_id, employee_name, issue_category)
        url = f"{self._api_base}/Accounts/{self._account_sid}/Messages.json"

        try:
            client = await self._get_client()
            response = await client.post(
                url,
                data={"To": phone_number, "From": self._from_number, "Body": body},
                auth=(self._account_sid, self._auth_token),
            )
        except httpx.HTTPError as e:
            self._circuit_breaker.record_failure()
            raise DeliveryException(
                DeliveryChannel.SMS, f"request failed: {e}", phone_number
            ) from e

        if not response.is_success:
            self._circuit_breaker.record_failure()
            raise DeliveryException(
                DeliveryChannel.SMS,
                f"Twilio returned {response.status_code}",
                phone_number,
                {"status_code": response.status_code, "body": response.text[:500]},
            )

        self._circuit_breaker.record_success()
        logger.debug(
            "Twilio accepted message",
            extra={"case_id": case_id, "phone": mask_phone(phone_number)}
        )
        return body

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None


# ========== Email ==========

def escalation_idempotency_key(
    case_id: str,
    recipient_email: str,
    last_activity_at: Optional[datetime] = None
) -> str:
    """
    Key for one escalation email.

    Scoped to the case's open period (its last activity) so a replayed
    request is deduplicated while a re-escalation after reopen is not.
    """
    period = last_activity_at.isoformat() if last_activity_at else "initial"
    return f"sla-escalation/{case_id}/{period}/{recipient_email.strip().lower()}"


def compose_escalation_email(
    case_id: str,
    employee_name: str,
    issue_category: str,
    client_name: str,
    hours_since_activity: float,
    case_url: str
) -> Dict[str, str]:
    """Subject, HTML and text bodies for an escalation alert."""
    subject = f"SLA escalation: {issue_category} case for {client_name} idle {hours_since_activity:.0f}h"
    rows = [
        ("Case", case_id),
        ("Employee", employee_name),
        ("Client", client_name),
        ("Category", issue_category),
        ("Hours since last activity", f"{hours_since_activity:.1f}"),
    ]
    table = "".join(
        f"<p><strong>{html.escape(label)}:</strong> {html.escape(str(value))}</p>"
        for label, value in rows
    )
    html_body = (
        '<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">'
        '<div style="background: #dc2626; color: white; padding: 20px; text-align: center;">'
        "<h1>Case Escalation</h1></div>"
        '<div style="padding: 30px; background: #f9fafb;">'
        "<p>This case has had no activity past its escalation threshold.</p>"
        f"{table}"
        f'<p><a href="{html.escape(case_url)}">Open the case</a></p>'
        "</div></div>"
    )
    text_body = "\n".join(f"{label}: {value}" for label, value in rows) + f"\n\n{case_url}"
    return {"subject": subject, "html": html_body, "text": text_body}


class ResendEmailClient(IEmailChannel):
    """
    Sends escalation alerts through the Resend API, one email per admin.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        from_email: Optional[str] = None,
        api_url: Optional[str] = None,
        app_base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        circuit_breaker: Optional[CircuitBreaker] = None
    ):
        self._api_key = api_key or settings.resend_api_key
        self._from_email = from_email or settings.escalation_from_email
        self._api_url = api_url or settings.resend_api_url
        self._app_base_url = (app_base_url or settings.app_base_url).rstrip("/")
        self._timeout = timeout or settings.dispatch_timeout_seconds
        self._http_client = http_client
        self._circuit_breaker = circuit_breaker or CircuitBreaker(
            "resend",
            failure_threshold=settings.circuit_failure_threshold,
            recovery_timeout=settings.circuit_recovery_seconds,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self._api_key)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self._timeout)
        return self._http_client

    def case_url(self, case_id: str) -> str:
        return f"{self._app_base_url}/admin/pulse/cases/{case_id}"

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
        if not self.is_configured:
            raise DeliveryException(DeliveryChannel.EMAIL, "Resend is not configured", recipient.email)

        if not self._circuit_breaker.allow_request():
            raise DeliveryException(DeliveryChannel.EMAIL, "circuit open, Resend short-circuited", recipient.email)

        content = compose_escalation_email(
            case_id, employee_name, issue_category, client_name,
            hours_since_activity, self.case_url(case_id)
        )
        payload: Dict[str, Any] = {
            "from": self._from_email,
            "to": [recipient.email],
            "subject": content["subject"],
            "html": content["html"],
            "text": content["text"],
        }
        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
            "Idempotency-Key": escalation_idempotency_key(case_id, recipient.email, last_activity_at),
        }

        try:
            client = await self._get_client()
            response = await client.post(self._api_url, json=payload, headers=headers)
        except httpx.HTTPError as e:
            self._circuit_breaker.record_failure()
            raise DeliveryException(
                DeliveryChannel.EMAIL, f"request failed: {e}", recipient.email
            ) from e

        if response.status_code == 409:
            # Idempotency conflict: this escalation already went out
            self._circuit_breaker.record_success()
            logger.info(
                "Escalation email already sent",
                extra={"case_id": case_id, "recipient": recipient.email}
            )
            return content["subject"]

        if not response.is_success:
            self._circuit_breaker.record_failure()
            raise DeliveryException(
                DeliveryChannel.EMAIL,
                f"Resend returned {response.status_code}",
                recipient.email,
                {"status_code": response.status_code, "body": response.text[:500]},
            )

        self._circuit_breaker.record_success()
        return content["subject"]

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None


# ========== Scheduler ==========

class SLAScheduler:
    """
    Wrapper for APScheduler that triggers SLA runs on an interval.

    ``max_instances=1`` means a slow run delays the next one instead of
    overlapping it.
    """

    def __init__(self, interval_seconds: int = 900):
        self.interval_seconds = interval_seconds
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._running = False

    async def start(self, job_func: Callable[[], Awaitable[Any]]) -> None:
        """Start the scheduler with the given job function."""
        if self._running:
            logger.warning("SLA scheduler already running")
            return

        self._scheduler = AsyncIOScheduler()

        self._scheduler.add_job(
            job_func,
            "interval",
            seconds=self.interval_seconds,
            id="sla_processor",
            name="SLA Follow-up and Escalation",
            misfire_grace_time=60,
            max_instances=1,
            coalesce=True,
            replace_existing=True
        )

        self._scheduler.start()
        self._running = True

        logger.info(
            "SLA scheduler started",
            extra={"interval_seconds": self.interval_seconds}
        )

    async def stop(self) -> None:
        """Stop the scheduler gracefully."""
        if not self._running:
            return

        if self._scheduler:
            self._scheduler.shutdown(wait=False)

        self._running = False
        logger.info("SLA scheduler stopped")

    @property
    def is_running(self) -> bool:
        return self._running
