"""
Pytest Configuration and Fixtures

Shared fixtures for the FHIR service, screening engine and CDS card tests.
"""
import itertools
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
import sys
from typing import Any, Callable, Dict, Optional

import pytest

# Add app to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from app.config import Settings
from app.core.cds import CDSCardGenerator
from app.core.events import EventBus
from app.core.fhir import ClinicalDataStore, FHIRResourceService
from app.core.fhir.resources import CVX, LOINC, SNOMED
from app.core.screening import ScreeningRulesEngine

EVALUATION_DATE = date(2024, 6, 15)


@pytest.fixture
def evaluation_date() -> date:
    """Frozen 'today' for rule evaluation."""
    return EVALUATION_DATE


@pytest.fixture
def ticking_clock() -> Callable[[], datetime]:
    """UTC clock that advances one second per call, so writes order deterministically."""
    start = datetime(2024, 6, 15, 9, 0, 0, tzinfo=timezone.utc)
    ticks = itertools.count()
    return lambda: start + timedelta(seconds=next(ticks))


@pytest.fixture
def settings() -> Settings:
    return Settings(seed_sample_data=False)


@pytest.fixture
def store() -> ClinicalDataStore:
    """Fresh, opened in-memory store."""
    s = ClinicalDataStore()
    s.init()
    yield s
    s.shutdown()


@pytest.fixture
def events() -> EventBus:
    return EventBus()


@pytest.fixture
def service(store, settings, events, ticking_clock) -> FHIRResourceService:
    return FHIRResourceService(store, settings=settings, events=events, clock=ticking_clock)


@pytest.fixture
def engine(evaluation_date) -> ScreeningRulesEngine:
    return ScreeningRulesEngine(lead_window_days=30, clock=lambda: evaluation_date)


@pytest.fixture
def generator(engine) -> CDSCardGenerator:
    return CDSCardGenerator(
        engine.rules,
        critical_overdue_days=180,
        clock=lambda: datetime(2024, 6, 15, 12, 0, tzinfo=timezone.utc),
    )


# ---- Resource body factories ----

@pytest.fixture
def patient_body() -> Callable[..., Dict[str, Any]]:
    def build(
        patient_id: Optional[str] = "pat-1",
        gender: Optional[str] = "female",
        birth_date: Optional[str] = "1975-06-01",
    ) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "resourceType": "Patient",
            "name": [{"family": "Rivera", "given": ["Ana"]}],
        }
        if patient_id:
            body["id"] = patient_id
        if gender:
            body["gender"] = gender
        if birth_date:
            body["birthDate"] = birth_date
        return body
    return build


@pytest.fixture
def observation_body() -> Callable[..., Dict[str, Any]]:
    def build(
        patient_id: str = "pat-1",
        code: str = "24606-6",
        effective: str = "2023-01-10",
        status: str = "final",
        system: str = LOINC,
        resource_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        body = {
            "resourceType": "Observation",
            "status": status,
            "code": {"coding": [{"system": system, "code": code}]},
            "subject": {"reference": f"Patient/{patient_id}"},
            "effectiveDateTime": effective,
        }
        if resource_id:
            body["id"] = resource_id
        return body
    return build


@pytest.fixture
def condition_body() -> Callable[..., Dict[str, Any]]:
    def build(patient_id: str = "pat-1", code: str = "38341003") -> Dict[str, Any]:
        return {
            "resourceType": "Condition",
            "code": {"coding": [{"system": SNOMED, "code": code}]},
            "subject": {"reference": f"Patient/{patient_id}"},
            "onsetDateTime": "2020-01-01",
        }
    return build


@pytest.fixture
def family_history_body() -> Callable[..., Dict[str, Any]]:
    def build(patient_id: str = "pat-1", code: str = "429740004") -> Dict[str, Any]:
        return {
            "resourceType": "FamilyMemberHistory",
            "status": "completed",
            "patient": {"reference": f"Patient/{patient_id}"},
            "relationship": {"coding": [{
                "system": "http://terminology.hl7.org/CodeSystem/v3-RoleCode", "code": "MTH",
            }]},
            "condition": [{"code": {"coding": [{"system": SNOMED, "code": code}]}}],
        }
    return build


@pytest.fixture
def immunization_body() -> Callable[..., Dict[str, Any]]:
    def build(patient_id: str = "pat-1", cvx: str = "150", occurrence: str = "2023-10-01") -> Dict[str, Any]:
        return {
            "resourceType": "Immunization",
            "status": "completed",
            "vaccineCode": {"coding": [{"system": CVX, "code": cvx}]},
            "patient": {"reference": f"Patient/{patient_id}"},
            "occurrenceDateTime": occurrence,
        }
    return build
