"""
FHIR R4 Resource Layer

Versioned in-memory storage and FHIR REST semantics for the clinical
resources the screening engine reads.

Usage:
    from app.core.fhir import ClinicalDataStore, FHIRResourceService

    store = ClinicalDataStore()
    store.init()
    service = FHIRResourceService(store)
    bundle = service.everything("patient-demo-001")
"""
from .resources import (
    ClinicalResource,
    Coding,
    Patient,
    Observation,
    Condition,
    Immunization,
    FamilyMemberHistory,
    ServiceRequest,
    ImmunizationRecommendation,
    Medication,
    RESOURCE_CLASSES,
    resource_class,
)
from .store import ClinicalDataStore
from .service import FHIRResourceService

__all__ = [
    "ClinicalResource",
    "Coding",
    "Patient",
    "Observation",
    "Condition",
    "Immunization",
    "FamilyMemberHistory",
    "ServiceRequest",
    "ImmunizationRecommendation",
    "Medication",
    "RESOURCE_CLASSES",
    "resource_class",
    "ClinicalDataStore",
    "FHIRResourceService",
]
