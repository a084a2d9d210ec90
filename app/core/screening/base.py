"""
Screening Rules Engine: Base Types

Structured rule definitions and the per-rule, per-patient determination
the engine produces.  Rules are plain frozen data: age bounds, sex, required
risk factors and modifiers are explicit fields, never parsed expressions.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional, Tuple

from app.core.fhir.resources import Coding


class ScreeningCategory(str, Enum):
    CANCER         = "cancer"
    CARDIOVASCULAR = "cardiovascular"
    IMMUNIZATION   = "immunization"
    BONE_HEALTH    = "bone-health"
    METABOLIC      = "metabolic"
    OTHER          = "other"


class ScreeningStatus(str, Enum):
    """
    UP_TO_DATE     – next due date is beyond the lead window
    DUE            – due within the lead window, up to and including today
    OVERDUE        – due date strictly in the past
    NOT_APPLICABLE – patient is outside the rule's eligibility (a status, not an error)
    """
    UP_TO_DATE     = "up-to-date"
    DUE            = "due"
    OVERDUE        = "overdue"
    NOT_APPLICABLE = "not-applicable"


class Sex(str, Enum):
    ANY    = "any"
    FEMALE = "female"
    MALE   = "male"


class TriggerSource(str, Enum):
    """Which part of the record a risk code is looked up in."""
    CONDITION      = "condition"
    FAMILY_HISTORY = "family-history"
    ANY            = "any"


class ActionKind(str, Enum):
    """FHIR resource a confirmed recommendation becomes."""
    SERVICE_REQUEST             = "ServiceRequest"
    IMMUNIZATION_RECOMMENDATION = "ImmunizationRecommendation"


@dataclass(frozen=True)
class RiskModifier:
    """
    Adjusts a rule when any of ``codes`` is present in the patient's record.

    ``min_age`` replaces the rule's starting age (only ever lowers it);
    ``interval_months`` replaces the repeat interval (only ever shortens it).
    """
    modifier_id: str
    description: str
    codes: Tuple[Coding, ...]
    source: TriggerSource = TriggerSource.ANY
    min_age: Optional[int] = None
    interval_months: Optional[int] = None


@dataclass(frozen=True)
class Eligibility:
    """
    Who a rule applies to.

    ``risk_factors`` non-empty means the patient must have at least one of
    them (from ``risk_factor_source``) to be eligible at all.
    """
    min_age: Optional[int] = None
    max_age: Optional[int] = None
    sex: Sex = Sex.ANY
    risk_factors: Tuple[Coding, ...] = ()
    risk_factor_source: TriggerSource = TriggerSource.CONDITION

    @property
    def is_age_gated(self) -> bool:
        return self.min_age is not None or self.max_age is not None

    @property
    def is_sex_gated(self) -> bool:
        return self.sex != Sex.ANY


@dataclass(frozen=True)
class ScreeningRule:
    """
    One guideline row.

    ``interval_months`` None means a one-time screening: any qualifying
    record satisfies it permanently.  ``evidence`` lists the codes whose
    presence on a resulted Observation, completed Immunization or completed
    ServiceRequest counts as the screening having been performed.
    """
    rule_id: str
    title: str
    category: ScreeningCategory
    eligibility: Eligibility
    interval_months: Optional[int]
    evidence: Tuple[Coding, ...]
    order_code: Coding
    action: ActionKind = ActionKind.SERVICE_REQUEST
    modifiers: Tuple[RiskModifier, ...] = ()
    grace_months: int = 0
    guideline: str = ""

    @property
    def is_one_time(self) -> bool:
        return self.interval_months is None

    @property
    def evidence_keys(self) -> FrozenSet[Tuple[str, str]]:
        return frozenset(c.key for c in self.evidence)

    def interval_text(self, months: Optional[int] = None) -> str:
        months = self.interval_months if months is None else months
        if months is None:
            return "once"
        if months % 12 == 0:
            years = months // 12
            return "every year" if years == 1 else f"every {years} years"
        return f"every {months} months"


@dataclass
class ScreeningDetermination:
    """
    Derived output for one rule and one patient.  Never persisted.

    ``next_due_date`` is None when the rule is not applicable or a one-time
    screening has been satisfied.
    """
    rule_id: str
    patient_id: str
    status: ScreeningStatus
    last_performed_date: Optional[date] = None
    next_due_date: Optional[date] = None
    days_overdue: int = 0
    evaluated_on: Optional[date] = None
    interval_months: Optional[int] = None
    evidence_reference: Optional[str] = None
    applied_modifiers: Tuple[str, ...] = ()
    reason: str = ""

    @property
    def is_actionable(self) -> bool:
        return self.status in (ScreeningStatus.DUE, ScreeningStatus.OVERDUE)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rule_id": self.rule_id,
            "patient_id": self.patient_id,
            "status": self.status.value,
            "last_performed_date": self.last_performed_date.isoformat() if self.last_performed_date else None,
            "next_due_date": self.next_due_date.isoformat() if self.next_due_date else None,
            "days_overdue": self.days_overdue,
            "evaluated_on": self.evaluated_on.isoformat() if self.evaluated_on else None,
            "interval_months": self.interval_months,
            "evidence_reference": self.evidence_reference,
            "applied_modifiers": list(self.applied_modifiers),
            "reason": self.reason,
        }
