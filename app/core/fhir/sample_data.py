"""
Demo records loaded at startup when FHIR_SEED_SAMPLE_DATA is on.
"""
from typing import Any, Dict, List

from .resources import CONDITION_CLINICAL, CONDITION_VER_STATUS, LOINC, OBSERVATION_CATEGORY, SNOMED
from .service import FHIRResourceService

DEMO_PATIENT_ID = "patient-demo-001"

SAMPLE_RESOURCES: List[Dict[str, Any]] = [
    {
        "resourceType": "Patient",
        "id": DEMO_PATIENT_ID,
        "identifier": [{"system": "urn:demo:patient", "value": "P001"}],
        "active": True,
        "name": [{"use": "official", "family": "Singhal", "given": ["Harsh"]}],
        "gender": "male",
        "birthDate": "1979-03-15",
        "telecom": [{"system": "phone", "value": "(555) 123-4567", "use": "home"}],
    },
    {
        "resourceType": "Observation",
        "id": "obs-bp-001",
        "status": "final",
        "category": [{"coding": [{
            "system": OBSERVATION_CATEGORY, "code": "vital-signs", "display": "Vital Signs",
        }]}],
        "code": {"coding": [{
            "system": LOINC, "code": "85354-9",
            "display": "Blood pressure panel with all children optional",
        }]},
        "subject": {"reference": f"Patient/{DEMO_PATIENT_ID}"},
        "effectiveDateTime": "2024-01-15T08:30:00Z",
        "component": [
            {
                "code": {"coding": [{"system": LOINC, "code": "8480-6", "display": "Systolic blood pressure"}]},
                "valueQuantity": {"value": 128, "unit": "mmHg",
                                  "system": "http://unitsofmeasure.org", "code": "mm[Hg]"},
            },
            {
                "code": {"coding": [{"system": LOINC, "code": "8462-4", "display": "Diastolic blood pressure"}]},
                "valueQuantity": {"value": 82, "unit": "mmHg",
                                  "system": "http://unitsofmeasure.org", "code": "mm[Hg]"},
            },
        ],
    },
    {
        "resourceType": "Condition",
        "id": "cond-htn-001",
        "clinicalStatus": {"coding": [{"system": CONDITION_CLINICAL, "code": "active", "display": "Active"}]},
        "verificationStatus": {"coding": [{
            "system": CONDITION_VER_STATUS, "code": "confirmed", "display": "Confirmed",
        }]},
        "category": [{"coding": [{
            "system": "http://terminology.hl7.org/CodeSystem/condition-category",
            "code": "problem-list-item", "display": "Problem List Item",
        }]}],
        "code": {"coding": [{"system": SNOMED, "code": "38341003", "display": "Hypertension"}]},
        "subject": {"reference": f"Patient/{DEMO_PATIENT_ID}"},
        "onsetDateTime": "2023-06-01T00:00:00Z",
        "recordedDate": "2023-06-01T00:00:00Z",
    },
]


def seed_sample_data(service: FHIRResourceService) -> int:
    """Create the demo records; returns how many were written."""
    for body in SAMPLE_RESOURCES:
        service.create(body["resourceType"], body)
    return len(SAMPLE_RESOURCES)
