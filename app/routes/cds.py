"""
CDS Hooks endpoints

    GET  /cds-services                       discovery
    POST /cds-services/patient-view          $everything -> engine -> cards
    POST /cds-services/patient-view/confirm  card suggestion -> creation request
"""
from fastapi import APIRouter, Request

from app.core.cds import CDSCard
from app.core.events import CDS_CARDS
from app.models import CDSHookRequest, CDSHookResponse, ConfirmActionRequest
from app.utils import get_logger
from app.utils.exceptions import SearchParameterError
from .fhir import fhir_response, version_headers
from .patients import load_patient_record

logger = get_logger(__name__)

PATIENT_VIEW = "patient-view"

router = APIRouter(prefix="/cds-services", tags=["CDS Hooks"])


@router.get("")
async def discovery():
    """CDS Hooks discovery document."""
    return {
        "services": [{
            "hook": PATIENT_VIEW,
            "id": PATIENT_VIEW,
            "title": "Preventive screening reminders",
            "description": (
                "Due and overdue guideline screenings and adult vaccinations "
                "for the patient in context, with one-tap orders."
            ),
            "prefetch": {"patient": "Patient/{{context.patientId}}"},
        }]
    }


@router.post(f"/{PATIENT_VIEW}", response_model=CDSHookResponse)
async def patient_view(payload: CDSHookRequest, request: Request):
    """Evaluate the patient's record and return ranked cards."""
    if payload.hook != PATIENT_VIEW:
        raise SearchParameterError(
            f"Service {PATIENT_VIEW!r} does not handle hook {payload.hook!r}", parameter="hook"
        )
    state = request.app.state
    patient_id = payload.context.patientId

    record = load_patient_record(state.service, patient_id)
    determinations = state.engine.evaluate(record)
    cards = [card.to_dict() for card in state.generator.generate_cards(determinations)]

    state.events.publish(CDS_CARDS, {
        "patientId": patient_id,
        "hookInstance": payload.hookInstance,
        "cards": cards,
    })
    logger.info(f"patient-view {patient_id}: {len(cards)} card(s)")
    return CDSHookResponse(cards=cards)


@router.post(f"/{PATIENT_VIEW}/confirm")
async def confirm_suggestion(payload: ConfirmActionRequest, request: Request):
    """
    Resolve a chosen suggestion into a resource creation request.

    With ``persist`` the resource is created and returned (201); otherwise
    the request is returned for the client to submit.
    """
    state = request.app.state
    card = CDSCard.from_dict(payload.card)
    creation = state.generator.confirm_action(card, payload.suggestion)
    if not payload.persist:
        return creation.to_dict()

    created = state.service.create(creation.resource_type, creation.body)
    return fhir_response(created, status_code=201, headers=version_headers(request, created, with_location=True))
