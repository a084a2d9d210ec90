"""
Patient record assembled for rule evaluation.

Built either from typed resources (in-process, via the resource service's
patient compartment) or from a ``$everything`` / CDS prefetch Bundle.  Bundle
entries that fail validation are skipped with a warning; the engine must
still run on whatever is usable.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Tuple

from app.core.fhir.resources import (
    RESOURCE_CLASSES,
    ClinicalResource,
    Condition,
    FamilyMemberHistory,
    Immunization,
    Observation,
    Patient,
    ServiceRequest,
)
from app.utils import get_logger
from app.utils.exceptions import InvalidResourceError

logger = get_logger(__name__)

CodeKey = Tuple[str, str]


@dataclass
class PatientRecord:
    patient: Patient
    observations: List[Observation] = field(default_factory=list)
    conditions: List[Condition] = field(default_factory=list)
    immunizations: List[Immunization] = field(default_factory=list)
    family_history: List[FamilyMemberHistory] = field(default_factory=list)
    service_requests: List[ServiceRequest] = field(default_factory=list)

    @property
    def patient_id(self) -> str:
        return self.patient.id

    @classmethod
    def from_resources(cls, resources: Iterable[ClinicalResource]) -> "PatientRecord":
        """
        Group typed resources.  The first Patient found is the subject; other
        resources that point at a different patient are ignored.
        """
        resources = list(resources)
        patient = next((r for r in resources if isinstance(r, Patient)), None)
        if patient is None:
            raise InvalidResourceError("Record contains no Patient", resource_type="Patient")

        record = cls(patient=patient)
        reference = patient.reference
        for resource in resources:
            if resource is patient or resource.deleted:
                continue
            if resource.subject_reference != reference:
                logger.debug(f"PatientRecord: skipping {resource.reference}, not for {reference}")
                continue
            if isinstance(resource, Observation):
                record.observations.append(resource)
            elif isinstance(resource, Condition):
                record.conditions.append(resource)
            elif isinstance(resource, Immunization):
                record.immunizations.append(resource)
            elif isinstance(resource, FamilyMemberHistory):
                record.family_history.append(resource)
            elif isinstance(resource, ServiceRequest):
                record.service_requests.append(resource)
        return record

    @classmethod
    def from_bundle(cls, bundle: Dict[str, Any]) -> "PatientRecord":
        """Parse a Bundle (e.g. ``$everything``) leniently into a record."""
        resources: List[ClinicalResource] = []
        for entry in bundle.get("entry") or []:
            body = entry.get("resource") if isinstance(entry, dict) else None
            if not isinstance(body, dict):
                continue
            cls_for_type = RESOURCE_CLASSES.get(body.get("resourceType", ""))
            if cls_for_type is None:
                continue
            try:
                resources.append(cls_for_type.from_fhir(body))
            except InvalidResourceError as exc:
                logger.warning(f"PatientRecord: dropping invalid {body.get('resourceType')} entry: {exc.message}")
        return cls.from_resources(resources)

    # ── Code lookups ─────────────────────────────────────────────────────
    def condition_codes(self) -> FrozenSet[CodeKey]:
        """Codes of credible (not refuted / entered-in-error) conditions, resolved ones included."""
        keys = set()
        for condition in self.conditions:
            if condition.is_credible():
                keys.update(condition.code_keys())
        return frozenset(keys)

    def family_history_codes(self) -> FrozenSet[CodeKey]:
        keys = set()
        for history in self.family_history:
            if history.status != "entered-in-error":
                keys.update(history.code_keys())
        return frozenset(keys)

    def evidence_candidates(self) -> List[ClinicalResource]:
        """Resources that can document a performed screening or a given vaccine."""
        candidates: List[ClinicalResource] = []
        candidates.extend(o for o in self.observations if o.status in Observation.RESULTED)
        candidates.extend(i for i in self.immunizations if i.status == "completed")
        candidates.extend(s for s in self.service_requests if s.status == "completed")
        return candidates

    def latest_observation(self, code_key: CodeKey) -> Optional[Observation]:
        """Most recent resulted observation with ``code_key`` (or a component coded with it)."""
        best: Optional[Observation] = None
        for obs in self.observations:
            if obs.status not in Observation.RESULTED or obs.clinical_date() is None:
                continue
            has_code = code_key in obs.code_keys() or obs.component_value(code_key[1]) is not None
            if not has_code:
                continue
            if best is None or (obs.clinical_date(), obs.id) > (best.clinical_date(), best.id):
                best = obs
        return best
