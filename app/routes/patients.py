"""
Patient-level screening and risk endpoints (non-FHIR JSON).
"""
from datetime import date
from typing import Optional

from fastapi import APIRouter, Query, Request

from app.core.fhir import FHIRResourceService
from app.core.screening import PatientRecord

router = APIRouter(prefix="/api/v1/patients", tags=["Screening"])


def load_patient_record(service: FHIRResourceService, patient_id: str) -> PatientRecord:
    """Assemble the engine's input from the patient's ``$everything`` Bundle."""
    return PatientRecord.from_bundle(service.everything(patient_id))


@router.get("/{patient_id}/screenings")
async def patient_screenings(
    patient_id: str,
    request: Request,
    as_of: Optional[date] = Query(default=None, description="Evaluation date (defaults to today)"),
):
    """Raw screening determinations, one per rule."""
    state = request.app.state
    record = load_patient_record(state.service, patient_id)
    determinations = state.engine.evaluate(record, as_of)
    summary = state.engine.summarise(determinations)
    return {
        "patient_id": patient_id,
        "evaluated_on": determinations[0].evaluated_on.isoformat() if determinations else None,
        **summary,
    }


@router.get("/{patient_id}/risk")
async def patient_risk(
    patient_id: str,
    request: Request,
    as_of: Optional[date] = Query(default=None, description="Evaluation date (defaults to today)"),
):
    """Deterministic coefficient-table risk scores."""
    state = request.app.state
    record = load_patient_record(state.service, patient_id)
    return state.scorer.score(record, as_of).to_dict()
