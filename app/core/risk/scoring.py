"""
Deterministic Risk Scoring

Named, versioned coefficient tables scored over features drawn from a
patient's compartment.  Not a learned model: the tables are fixed and the
same record always scores the same.

Model kinds:
    logistic  sigmoid(intercept + sum(weight * normalised feature))
    linear    intercept + sum(weight * normalised feature), clipped to [0, 1]
    rules     max risk over matched structured predicates

Feature normalisation maps each raw value linearly onto [0, 1] within a
fixed physiological range.  A missing feature normalises to 0 and lowers the
assessment's ``data_completeness``.

Risk scores are informational.  They never feed the screening engine.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

import numpy as np

from app.core.fhir.resources import LOINC, Coding
from app.core.screening.engine import age_on
from app.core.screening.record import PatientRecord
from app.core.screening.rules import (
    DIABETES_MELLITUS,
    EX_SMOKER,
    HBA1C,
    SMOKER,
    SYSTOLIC_BP,
    TOTAL_CHOLESTEROL,
)
from app.utils import get_logger

logger = get_logger(__name__)

BMI = Coding(LOINC, "39156-5", "Body mass index (BMI) [Ratio]")

# feature -> (low, high) raw range mapped onto [0, 1]
FEATURE_RANGES: Dict[str, Tuple[float, float]] = {
    "age":               (0.0, 100.0),
    "bmi":               (15.0, 50.0),
    "hba1c":             (4.0, 12.0),
    "systolic_bp":       (90.0, 200.0),
    "total_cholesterol": (100.0, 320.0),
    "family_history":    (0.0, 5.0),
    "male":              (0.0, 1.0),
    "female":            (0.0, 1.0),
    "smoker":            (0.0, 1.0),
    "diabetes":          (0.0, 1.0),
}

FEATURE_LABELS = {
    "age": "Age",
    "bmi": "Body Mass Index",
    "hba1c": "HbA1c Level",
    "systolic_bp": "Systolic Blood Pressure",
    "total_cholesterol": "Total Cholesterol",
    "family_history": "Family History",
    "male": "Male Sex",
    "female": "Female Sex",
    "smoker": "Smoking History",
    "diabetes": "Diabetes Diagnosis",
}


class RiskLevel(str, Enum):
    LOW    = "low"
    MEDIUM = "medium"
    HIGH   = "high"


class ModelKind(str, Enum):
    LOGISTIC = "logistic"
    LINEAR   = "linear"
    RULES    = "rules"


# ── Features ─────────────────────────────────────────────────────────────────

@dataclass
class RiskFeatures:
    """Raw feature values; None means not on record."""
    age: Optional[float] = None
    male: Optional[float] = None
    female: Optional[float] = None
    bmi: Optional[float] = None
    hba1c: Optional[float] = None
    systolic_bp: Optional[float] = None
    total_cholesterol: Optional[float] = None
    smoker: Optional[float] = None
    diabetes: Optional[float] = None
    family_history: Optional[float] = None

    @classmethod
    def from_record(cls, record: PatientRecord, as_of: date) -> "RiskFeatures":
        patient = record.patient
        birth = patient.birth_date
        age = float(age_on(birth, as_of)) if birth is not None and birth <= as_of else None
        gender = patient.gender
        male = female = None
        if gender in ("male", "female"):
            male = 1.0 if gender == "male" else 0.0
            female = 1.0 - male

        conditions = record.condition_codes()
        return cls(
            age=age,
            male=male,
            female=female,
            bmi=_latest_value(record, BMI),
            hba1c=_latest_value(record, HBA1C),
            systolic_bp=_latest_value(record, SYSTOLIC_BP),
            total_cholesterol=_latest_value(record, TOTAL_CHOLESTEROL),
            # Conditions are only ever positive evidence; absence is "no"
            smoker=1.0 if {SMOKER.key, EX_SMOKER.key} & conditions else 0.0,
            diabetes=1.0 if DIABETES_MELLITUS.key in conditions else 0.0,
            family_history=float(sum(
                1 for h in record.family_history if h.status != "entered-in-error"
            )),
        )

    def raw(self, name: str) -> Optional[float]:
        return getattr(self, name)

    def normalised(self, name: str) -> float:
        value = self.raw(name)
        if value is None:
            return 0.0
        low, high = FEATURE_RANGES[name]
        return float(np.clip((value - low) / (high - low), 0.0, 1.0))


def _latest_value(record: PatientRecord, coding: Coding) -> Optional[float]:
    obs = record.latest_observation(coding.key)
    if obs is None:
        return None
    if coding.key in obs.code_keys():
        value = obs.value()
        if value is not None:
            return value
    return obs.component_value(coding.code)


# ── Coefficient tables ───────────────────────────────────────────────────────

@dataclass(frozen=True)
class RiskRule:
    """Structured predicate: every listed condition must hold."""
    rule_id: str
    description: str
    risk: float
    age_over: Optional[float] = None
    requires: Tuple[str, ...] = ()

    def matches(self, features: RiskFeatures) -> bool:
        if self.age_over is not None:
            if features.age is None or features.age <= self.age_over:
                return False
        return all((features.raw(name) or 0.0) > 0 for name in self.requires)

    def inputs(self) -> Tuple[str, ...]:
        return (("age",) if self.age_over is not None else ()) + self.requires


@dataclass(frozen=True)
class RiskModel:
    name: str
    version: str
    kind: ModelKind
    medium_threshold: float
    high_threshold: float
    intercept: float = 0.0
    weights: Tuple[Tuple[str, float], ...] = ()
    rules: Tuple[RiskRule, ...] = ()

    @property
    def features(self) -> Tuple[str, ...]:
        if self.kind == ModelKind.RULES:
            seen: List[str] = []
            for rule in self.rules:
                seen.extend(f for f in rule.inputs() if f not in seen)
            return tuple(seen)
        return tuple(name for name, _ in self.weights)

    def level(self, score: float) -> RiskLevel:
        if score >= self.high_threshold:
            return RiskLevel.HIGH
        if score >= self.medium_threshold:
            return RiskLevel.MEDIUM
        return RiskLevel.LOW


RISK_MODELS: Tuple[RiskModel, ...] = (
    RiskModel(
        name="diabetes",
        version="2.0.0",
        kind=ModelKind.LOGISTIC,
        intercept=-4.0,
        weights=(
            ("age", 1.5),
            ("bmi", 2.5),
            ("hba1c", 3.0),
            ("systolic_bp", 0.5),
            ("family_history", 1.0),
        ),
        medium_threshold=0.35,
        high_threshold=0.55,
    ),
    RiskModel(
        name="cardiovascular",
        version="2.0.0",
        kind=ModelKind.LOGISTIC,
        intercept=-4.5,
        weights=(
            ("age", 2.0),
            ("male", 0.5),
            ("smoker", 1.0),
            ("systolic_bp", 1.5),
            ("total_cholesterol", 1.2),
            ("diabetes", 0.8),
            ("family_history", 0.6),
        ),
        medium_threshold=0.40,
        high_threshold=0.60,
    ),
    RiskModel(
        name="bone_health",
        version="2.0.0",
        kind=ModelKind.LINEAR,
        intercept=-0.2,
        weights=(
            ("age", 0.6),
            ("female", 0.25),
            ("bmi", -0.2),
            ("smoker", 0.1),
        ),
        medium_threshold=0.30,
        high_threshold=0.45,
    ),
    RiskModel(
        name="cancer",
        version="2.0.0",
        kind=ModelKind.RULES,
        rules=(
            RiskRule("older-with-family-history", "Over 50 with family history", 0.40,
                     age_over=50, requires=("family_history",)),
            RiskRule("smoker-over-45", "Smoker over 45", 0.35, age_over=45, requires=("smoker",)),
            RiskRule("female-with-family-history", "Female with family history", 0.30,
                     requires=("family_history", "female")),
            RiskRule("over-65", "Over 65", 0.25, age_over=65),
            RiskRule("smoker", "Smoking history", 0.20, requires=("smoker",)),
        ),
        medium_threshold=0.30,
        high_threshold=0.45,
    ),
)


# ── Results ──────────────────────────────────────────────────────────────────

@dataclass
class RiskAssessment:
    model: str
    model_version: str
    kind: ModelKind
    score: float
    level: RiskLevel
    data_completeness: float
    factors: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "model": self.model,
            "model_version": self.model_version,
            "kind": self.kind.value,
            "score": round(self.score, 3),
            "level": self.level.value,
            "data_completeness": round(self.data_completeness, 3),
            "factors": self.factors,
        }


@dataclass
class RiskReport:
    patient_id: str
    evaluated_on: date
    assessments: List[RiskAssessment] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "patient_id": self.patient_id,
            "evaluated_on": self.evaluated_on.isoformat(),
            "assessments": [a.to_dict() for a in self.assessments],
            "disclaimer": "Deterministic coefficient scores for screening support, not a diagnosis.",
        }


# ── Scorer ───────────────────────────────────────────────────────────────────

class RiskScorer:
    """
    Scores every configured model for one patient.

    Usage:
        scorer = RiskScorer()
        report = scorer.score(record, as_of=date(2024, 6, 15))
    """

    TOP_FACTORS = 3

    def __init__(
        self,
        models: Tuple[RiskModel, ...] = RISK_MODELS,
        clock: Callable[[], date] = date.today,
    ):
        names = [m.name for m in models]
        if len(set(names)) != len(names):
            raise ValueError(f"Duplicate risk model names: {names}")
        self.models = models
        self._clock = clock

    def score(self, record: PatientRecord, as_of: Optional[date] = None) -> RiskReport:
        as_of = as_of or self._clock()
        features = RiskFeatures.from_record(record, as_of)
        report = RiskReport(patient_id=record.patient_id, evaluated_on=as_of)
        for model in self.models:
            report.assessments.append(self.score_model(model, features))
        logger.info(
            f"RiskScorer: {record.patient_id} -> "
            + ", ".join(f"{a.model}={a.level.value}" for a in report.assessments)
        )
        return report

    def score_model(self, model: RiskModel, features: RiskFeatures) -> RiskAssessment:
        inputs = model.features
        present = sum(1 for name in inputs if features.raw(name) is not None)
        completeness = present / len(inputs) if inputs else 1.0

        if model.kind == ModelKind.RULES:
            score, factors = self._score_rules(model, features)
        else:
            score, factors = self._score_weighted(model, features)

        return RiskAssessment(
            model=model.name,
            model_version=model.version,
            kind=model.kind,
            score=score,
            level=model.level(score),
            data_completeness=completeness,
            factors=factors,
        )

    def _score_weighted(self, model: RiskModel, features: RiskFeatures) -> Tuple[float, List[Dict[str, Any]]]:
        names = [name for name, _ in model.weights]
        weights = np.array([w for _, w in model.weights], dtype=float)
        values = np.array([features.normalised(name) for name in names], dtype=float)
        contributions = weights * values
        z = model.intercept + float(contributions.sum())

        if model.kind == ModelKind.LOGISTIC:
            score = float(1.0 / (1.0 + np.exp(-z)))
        else:
            score = float(np.clip(z, 0.0, 1.0))

        factors = []
        for idx in np.argsort(-np.abs(contributions), kind="stable")[: self.TOP_FACTORS]:
            if abs(contributions[idx]) < 0.01:
                continue
            name = names[idx]
            factors.append({
                "feature": name,
                "label": FEATURE_LABELS.get(name, name),
                "value": features.raw(name),
                "normalised": round(float(values[idx]), 3),
                "weight": float(weights[idx]),
                "contribution": round(float(contributions[idx]), 3),
                "impact": "increases" if contributions[idx] > 0 else "decreases",
            })
        return score, factors

    def _score_rules(self, model: RiskModel, features: RiskFeatures) -> Tuple[float, List[Dict[str, Any]]]:
        matched = [r for r in model.rules if r.matches(features)]
        if not matched:
            return 0.0, []
        risks = np.array([r.risk for r in matched], dtype=float)
        factors = [
            {"rule": r.rule_id, "label": r.description, "risk": r.risk}
            for r in sorted(matched, key=lambda r: -r.risk)[: self.TOP_FACTORS]
        ]
        return float(risks.max()), factors
