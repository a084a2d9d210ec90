"""
Deterministic risk scoring over a patient's compartment.
"""
from .scoring import (
    RISK_MODELS,
    ModelKind,
    RiskAssessment,
    RiskFeatures,
    RiskLevel,
    RiskModel,
    RiskReport,
    RiskRule,
    RiskScorer,
)

__all__ = [
    "RISK_MODELS",
    "ModelKind",
    "RiskAssessment",
    "RiskFeatures",
    "RiskLevel",
    "RiskModel",
    "RiskReport",
    "RiskRule",
    "RiskScorer",
]
