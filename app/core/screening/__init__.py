"""
Screening Rules Engine

Turns a patient's FHIR record into guideline due/overdue determinations.

Usage:
    from app.core.screening import ScreeningRulesEngine, PatientRecord

    engine = ScreeningRulesEngine()
    determinations = engine.evaluate(PatientRecord.from_bundle(bundle))
"""
from .base import (
    ActionKind,
    Eligibility,
    RiskModifier,
    ScreeningCategory,
    ScreeningDetermination,
    ScreeningRule,
    ScreeningStatus,
    Sex,
    TriggerSource,
)
from .engine import ScreeningRulesEngine, add_months, age_on
from .record import PatientRecord
from .rules import DEFAULT_RULES, validate_rules

__all__ = [
    "ActionKind",
    "Eligibility",
    "RiskModifier",
    "ScreeningCategory",
    "ScreeningDetermination",
    "ScreeningRule",
    "ScreeningStatus",
    "Sex",
    "TriggerSource",
    "ScreeningRulesEngine",
    "add_months",
    "age_on",
    "PatientRecord",
    "DEFAULT_RULES",
    "validate_rules",
]
