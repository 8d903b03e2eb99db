"""
Configuration Module
====================

Application settings and configuration management using Pydantic.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator, model_validator
from functools import lru_cache
from pathlib import Path
from typing import List, Optional


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Uses Pydantic for validation and type safety.
    """

    # ========== Application ==========
    app_name: str = Field(default="escalation-service", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    environment: str = Field(default="development", description="Environment name")
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Root log level")

    # ========== Server ==========
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port", ge=1, le=65535)

    # ========== Database ==========
    database_url: str = Field(
        default="postgresql+asyncpg://localhost:5432/cases",
        description="PostgreSQL connection URL (async)"
    )
    db_pool_size: int = Field(default=5, description="Database connection pool size", ge=1)
    db_max_overflow: int = Field(default=10, description="Max overflow connections", ge=0)

    # ========== SLA Policy ==========
    sla_policy_path: Path = Field(
        default=Path("sla_policy.yaml"),
        description="Path to per-tenant SLA policy YAML file"
    )
    sla_evaluation_interval: int = Field(
        default=900,
        description="Seconds between scheduled SLA runs (0 disables the scheduler)",
        ge=0
    )
    follow_up_threshold_hours: float = Field(
        default=24.0,
        description="Hours without activity before an SMS follow-up",
        gt=0
    )
    escalation_threshold_hours: float = Field(
        default=48.0,
        description="Hours without activity before admins are alerted",
        gt=0
    )
    admin_role_names: List[str] = Field(
        default=["super_admin", "company_admin"],
        description="Roles that receive escalation alerts"
    )
    reset_markers_on_reopen: bool = Field(
        default=True,
        description="Clear follow-up/escalation markers when a closed case is reopened"
    )
    reset_markers_on_activity: bool = Field(
        default=False,
        description="Clear follow-up/escalation markers on staff activity"
    )

    # ========== Dispatch ==========
    dispatch_timeout_seconds: float = Field(
        default=10.0,
        description="Upper bound for a single SMS or email delivery call",
        gt=0,
        le=120
    )
    max_concurrent_dispatches: int = Field(
        default=1,
        description="Cases dispatched in parallel within a run (1 = sequential)",
        ge=1,
        le=50
    )
    circuit_failure_threshold: int = Field(
        default=5,
        description="Consecutive delivery failures before a channel is short-circuited",
        ge=1
    )
    circuit_recovery_seconds: float = Field(
        default=60.0,
        description="Seconds before a tripped channel lets a test request through",
        ge=1
    )

    # ========== Twilio (SMS) ==========
    twilio_account_sid: Optional[str] = Field(default=None, description="Twilio account SID")
    twilio_auth_token: Optional[str] = Field(default=None, description="Twilio auth token")
    twilio_from_number: Optional[str] = Field(default=None, description="Sender phone number (E.164)")
    twilio_api_base: str = Field(
        default="https://api.twilio.com/2010-04-01",
        description="Twilio REST API base URL"
    )

    # ========== Resend (email) ==========
    resend_api_key: Optional[str] = Field(default=None, description="Resend API key")
    escalation_from_email: str = Field(
        default="Pulse Alerts <alerts@example.com>",
        description="From address for escalation emails"
    )
    resend_api_url: str = Field(
        default="https://api.resend.com/emails",
        description="Resend send endpoint"
    )
    app_base_url: str = Field(
        default="https://app.example.com",
        description="Public base URL used for case links in alerts"
    )

    # ========== CORS ==========
    cors_origins: List[str] = Field(
        default=["http://localhost:3000", "http://localhost:8080"],
        description="Allowed CORS origins"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Ensure environment is one of allowed values."""
        allowed = {"development", "staging", "production"}
        if v not in allowed:
            raise ValueError(f"environment must be one of {allowed}")
        return v

    @model_validator(mode="after")
    def validate_thresholds(self) -> "Settings":
        """Follow-up must fire strictly before escalation."""
        if self.follow_up_threshold_hours >= self.escalation_threshold_hours:
            raise ValueError(
                "follow_up_threshold_hours must be lower than escalation_threshold_hours"
            )
        return self


@lru_cache()
def get_settings() -> Settings:
    """Returns cached Settings instance."""
    return Settings()


# Global settings instance
settings = get_settings()


# ========== Constants ==========

class CaseStatus(str):
    """Case lifecycle statuses."""
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    WAITING = "waiting"
    CLOSED = "closed"


class CasePriority(str):
    """Case priority levels."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class CaseSource(str):
    """How a case entered the system."""
    MANUAL = "manual"
    EMAIL = "email"
    SMS = "sms"
    SYSTEM = "system"


class SLAClassification(str):
    """Outcome of evaluating a case against its SLA policy."""
    ON_TIME = "on_time"
    NEEDS_FOLLOW_UP = "needs_follow_up"
    NEEDS_ESCALATION = "needs_escalation"


class DeliveryChannel(str):
    """Notification delivery channels."""
    SMS = "sms"
    EMAIL = "email"


class NotificationKind(str):
    """What a notification record documents."""
    FOLLOW_UP = "follow_up"
    ESCALATION = "escalation"


# ========== Lists for validation ==========

OPEN_STATUSES = [CaseStatus.OPEN, CaseStatus.IN_PROGRESS, CaseStatus.WAITING]
VALID_STATUSES = OPEN_STATUSES + [CaseStatus.CLOSED]
