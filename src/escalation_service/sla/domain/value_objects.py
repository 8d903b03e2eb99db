"""
SLA Value Objects
==================

Immutable value objects and stateless domain services for SLA escalation.

Value objects are defined by their attributes rather than an identity.
They are immutable and can be freely shared.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from escalation_service.config import SLAClassification
from escalation_service.sla.domain.entities import Case


class SLAPolicy(BaseModel):
    """
    Thresholds and recipients that drive follow-up and escalation.

    Follow-up fires once a case has been idle for ``follow_up_threshold_hours``;
    admins are alerted once it has been idle for ``escalation_threshold_hours``.
    """
    follow_up_threshold_hours: float = Field(default=24.0, gt=0)
    escalation_threshold_hours: float = Field(default=48.0, gt=0)
    admin_role_names: List[str] = Field(
        default_factory=lambda: ["super_admin", "company_admin"],
        description="Roles whose accounts receive escalation alerts"
    )

    model_config = {"frozen": True}

    @field_validator("admin_role_names")
    @classmethod
    def validate_roles(cls, v: List[str]) -> List[str]:
        roles = [r.strip() for r in v if r and r.strip()]
        if not roles:
            raise ValueError("at least one admin role is required")
        return roles

    @model_validator(mode="after")
    def validate_ordering(self) -> "SLAPolicy":
        if self.follow_up_threshold_hours >= self.escalation_threshold_hours:
            raise ValueError(
                "follow_up_threshold_hours must be lower than escalation_threshold_hours"
            )
        return self

    @property
    def follow_up_threshold(self) -> timedelta:
        return timedelta(hours=self.follow_up_threshold_hours)

    @property
    def escalation_threshold(self) -> timedelta:
        return timedelta(hours=self.escalation_threshold_hours)


class SLAPolicySet(BaseModel):
    """
    Default policy plus per-tenant overrides, keyed by company id.

    Overrides are partial: any field a tenant leaves out is taken from the
    default policy.
    """
    default: SLAPolicy = Field(default_factory=SLAPolicy)
    tenants: Dict[str, Dict[str, Any]] = Field(default_factory=dict)

    @model_validator(mode="after")
    def validate_tenants(self) -> "SLAPolicySet":
        # Resolve every override once so a bad tenant entry fails at load time
        for company_id in self.tenants:
            self.policy_for(company_id)
        return self

    def policy_for(self, company_id: Optional[str]) -> SLAPolicy:
        """Effective policy for a tenant."""
        overrides = self.tenants.get(company_id) if company_id else None
        if not overrides:
            return self.default
        return SLAPolicy(**{**self.default.model_dump(), **overrides})


@dataclass(frozen=True)
class SLAEvaluation:
    """
    Result of one evaluation pass.

    ``needs_follow_up`` and ``needs_escalation`` are disjoint.
    """
    evaluated_at: datetime
    cases_evaluated: int
    needs_follow_up: List[Case] = field(default_factory=list)
    needs_escalation: List[Case] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.needs_follow_up and not self.needs_escalation


class SLARuleEvaluator:
    """
    Pure functions that classify cases against an SLA policy.

    Nothing here touches storage or delivery channels: markers are only
    written by the notifiers after a successful dispatch.
    """

    @staticmethod
    def classify_case(case: Case, policy: SLAPolicy, now: datetime) -> str:
        """
        Classify a case by time since last activity alone.

        Closed cases are always on time; marker state is ignored here.
        """
        if not case.is_open:
            return SLAClassification.ON_TIME

        elapsed = case.elapsed(now)
        if elapsed >= policy.escalation_threshold:
            return SLAClassification.NEEDS_ESCALATION
        if elapsed >= policy.follow_up_threshold:
            return SLAClassification.NEEDS_FOLLOW_UP
        return SLAClassification.ON_TIME

    @staticmethod
    def needs_follow_up(case: Case, policy: SLAPolicy, now: datetime) -> bool:
        return (
            SLARuleEvaluator.classify_case(case, policy, now) == SLAClassification.NEEDS_FOLLOW_UP
            and case.follow_up_sent_at is None
        )

    @staticmethod
    def needs_escalation(case: Case, policy: SLAPolicy, now: datetime) -> bool:
        # The follow-up marker does not matter: a case that jumped straight
        # past both thresholds is escalated without a prior reminder.
        return (
            SLARuleEvaluator.classify_case(case, policy, now) == SLAClassification.NEEDS_ESCALATION
            and case.escalation_sent_at is None
        )

    @staticmethod
    def evaluate(
        cases: Iterable[Case],
        policy: SLAPolicy,
        now: datetime
    ) -> SLAEvaluation:
        """Split cases into the follow-up and escalation sets under one policy."""
        return SLARuleEvaluator.evaluate_for_tenants(
            cases, SLAPolicySet(default=policy), now
        )

    @staticmethod
    def evaluate_for_tenants(
        cases: Iterable[Case],
        policies: SLAPolicySet,
        now: datetime
    ) -> SLAEvaluation:
        """Split cases into the two sets, resolving each case's tenant policy."""
        follow_up: List[Case] = []
        escalation: List[Case] = []
        count = 0

        for case in cases:
            count += 1
            policy = policies.policy_for(case.company_id)
            if SLARuleEvaluator.needs_escalation(case, policy, now):
                escalation.append(case)
            elif SLARuleEvaluator.needs_follow_up(case, policy, now):
                follow_up.append(case)

        return SLAEvaluation(
            evaluated_at=now,
            cases_evaluated=count,
            needs_follow_up=follow_up,
            needs_escalation=escalation,
        )
