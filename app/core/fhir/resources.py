"""
FHIR R4 Resource Variants

One class per supported resource type.  Each variant declares the fields a
write must carry, which element holds its patient reference, and where its
clinical date and primary codes live.  Validation happens once, in
``from_fhir``; after that the rest of the service can trust the shape.

The raw FHIR JSON is kept in ``content`` so unknown elements round-trip
untouched.  Server-managed values (id, meta.versionId, meta.lastUpdated)
are held on the instance and merged back in ``to_fhir``.
"""
from __future__ import annotations

import copy
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, ClassVar, Dict, FrozenSet, List, Optional, Tuple, Type

from app.utils.exceptions import InvalidResourceError

# ── Code systems ──────────────────────────────────────────────────────────────
LOINC = "http://loinc.org"
SNOMED = "http://snomed.info/sct"
CVX = "http://hl7.org/fhir/sid/cvx"
OBSERVATION_CATEGORY = "http://terminology.hl7.org/CodeSystem/observation-category"
CONDITION_CLINICAL = "http://terminology.hl7.org/CodeSystem/condition-clinical"
CONDITION_VER_STATUS = "http://terminology.hl7.org/CodeSystem/condition-ver-status"
RECOMMENDATION_STATUS = "http://terminology.hl7.org/CodeSystem/immunization-recommendation-status"

_ID_PATTERN = re.compile(r"^[A-Za-z0-9\-.]{1,64}$")
_DATE_PATTERN = re.compile(r"^(\d{4})(?:-(\d{2})(?:-(\d{2}))?)?")


@dataclass(frozen=True)
class Coding:
    """A code-system + code + display triple."""
    system: str
    code: str
    display: str = ""

    def to_fhir(self) -> Dict[str, str]:
        data = {"system": self.system, "code": self.code}
        if self.display:
            data["display"] = self.display
        return data

    def concept(self) -> Dict[str, Any]:
        """Wrap as a single-coding CodeableConcept."""
        concept: Dict[str, Any] = {"coding": [self.to_fhir()]}
        if self.display:
            concept["text"] = self.display
        return concept

    @property
    def key(self) -> Tuple[str, str]:
        return (self.system, self.code)

    @classmethod
    def from_fhir(cls, data: Any) -> Optional["Coding"]:
        if not isinstance(data, dict) or not data.get("code"):
            return None
        return cls(
            system=str(data.get("system", "")),
            code=str(data["code"]),
            display=str(data.get("display", "")),
        )


def codings_of(concept: Any) -> List[Coding]:
    """All codings of a CodeableConcept (tolerates a missing/ill-formed concept)."""
    if not isinstance(concept, dict):
        return []
    result = []
    for raw in concept.get("coding") or []:
        coding = Coding.from_fhir(raw)
        if coding is not None:
            result.append(coding)
    return result


def parse_fhir_date(value: Any) -> Optional[date]:
    """
    Parse a FHIR date/dateTime/instant to a calendar date.

    Partial dates resolve to the first day of the period ("1975" -> 1975-01-01,
    "1975-06" -> 1975-06-01).  Anything unparseable returns None.
    """
    if not isinstance(value, str):
        return None
    match = _DATE_PATTERN.match(value.strip())
    if not match:
        return None
    year, month, day = match.groups()
    try:
        return date(int(year), int(month or 1), int(day or 1))
    except ValueError:
        return None


def format_instant(moment: datetime) -> str:
    """FHIR instant, UTC with millisecond precision and a Z suffix."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    text = moment.astimezone(timezone.utc).isoformat(timespec="milliseconds")
    return text.replace("+00:00", "Z")


def parse_reference(reference: Any) -> Optional[Tuple[str, str]]:
    """Split "Patient/123" (or a full URL ending in it) into (type, id)."""
    if not isinstance(reference, str) or "/" not in reference:
        return None
    parts = reference.rstrip("/").split("/")
    if len(parts) < 2 or not parts[-1] or not parts[-2]:
        return None
    return parts[-2], parts[-1]


# ── Base variant ─────────────────────────────────────────────────────────────

@dataclass
class ClinicalResource:
    """
    Common envelope for all stored resources.

    ``version_id`` is a monotonically increasing integer rendered as a
    string; ``deleted`` marks a tombstone left behind by delete.
    """
    resource_type: ClassVar[str] = ""
    required_fields: ClassVar[Tuple[str, ...]] = ()
    subject_field: ClassVar[Optional[str]] = None
    allowed_status: ClassVar[FrozenSet[str]] = frozenset()

    id: str
    content: Dict[str, Any] = field(default_factory=dict)
    version_id: str = "1"
    last_updated: Optional[datetime] = None
    deleted: bool = False

    # ── Construction ─────────────────────────────────────────────────────
    @classmethod
    def from_fhir(cls, body: Dict[str, Any], resource_id: Optional[str] = None) -> "ClinicalResource":
        """
        Validate a FHIR JSON body and wrap it.

        Raises:
            InvalidResourceError: wrong resourceType, bad id, or a required
                element missing/ill-formed for this variant.
        """
        if not isinstance(body, dict):
            raise InvalidResourceError(
                "Resource body must be a JSON object", resource_type=cls.resource_type
            )
        if body.get("resourceType") != cls.resource_type:
            raise InvalidResourceError(
                f"Resource must be of type {cls.resource_type}",
                resource_type=cls.resource_type,
                details={"received": body.get("resourceType")},
            )

        rid = resource_id if resource_id is not None else body.get("id")
        if rid is not None and (not isinstance(rid, str) or not _ID_PATTERN.match(rid)):
            raise InvalidResourceError(
                f"Invalid {cls.resource_type} id {rid!r}", resource_type=cls.resource_type
            )

        missing = [name for name in cls.required_fields if body.get(name) in (None, "", [], {})]
        if missing:
            raise InvalidResourceError(
                f"{cls.resource_type} is missing required element(s): {', '.join(missing)}",
                resource_type=cls.resource_type,
                details={"missing": missing},
            )

        if cls.allowed_status and "status" in body and body["status"] not in cls.allowed_status:
            raise InvalidResourceError(
                f"{cls.resource_type}.status {body['status']!r} is not one of "
                f"{sorted(cls.allowed_status)}",
                resource_type=cls.resource_type,
            )

        meta = body.get("meta")
        if meta is not None and not isinstance(meta, dict):
            raise InvalidResourceError(
                f"{cls.resource_type}.meta must be an object", resource_type=cls.resource_type
            )

        if cls.subject_field is not None:
            subject = body.get(cls.subject_field)
            target = parse_reference(subject.get("reference")) if isinstance(subject, dict) else None
            if target is None or target[0] != "Patient":
                raise InvalidResourceError(
                    f"{cls.resource_type}.{cls.subject_field} must reference a Patient",
                    resource_type=cls.resource_type,
                )

        content = copy.deepcopy(body)
        content.pop("id", None)
        instance = cls(id=rid or "", content=content)
        instance.validate()
        return instance

    def validate(self) -> None:
        """Variant-specific checks beyond the required-field set."""

    # ── Accessors ────────────────────────────────────────────────────────
    @property
    def reference(self) -> str:
        return f"{self.resource_type}/{self.id}"

    @property
    def subject_reference(self) -> Optional[str]:
        if self.subject_field is None:
            return None
        return (self.content.get(self.subject_field) or {}).get("reference")

    @property
    def patient_id(self) -> Optional[str]:
        target = parse_reference(self.subject_reference)
        if target is None or target[0] != "Patient":
            return None
        return target[1]

    @property
    def status(self) -> Optional[str]:
        return self.content.get("status")

    def clinical_date(self) -> Optional[date]:
        """The date the clinical event happened, if the variant records one."""
        return None

    def codes(self) -> List[Coding]:
        """The resource's primary codes."""
        return []

    def code_keys(self) -> FrozenSet[Tuple[str, str]]:
        return frozenset(c.key for c in self.codes())

    # ── Serialisation ────────────────────────────────────────────────────
    def to_fhir(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"resourceType": self.resource_type, "id": self.id}
        meta = dict(self.content.get("meta") or {})
        meta["versionId"] = self.version_id
        if self.last_updated is not None:
            meta["lastUpdated"] = format_instant(self.last_updated)
        for key, value in self.content.items():
            if key in ("resourceType", "id", "meta"):
                continue
            body[key] = copy.deepcopy(value)
        body["meta"] = meta
        return body

    def tombstone(self) -> "ClinicalResource":
        """Deleted marker carrying only identity and the patient link."""
        content: Dict[str, Any] = {"resourceType": self.resource_type}
        if self.subject_field is not None and self.subject_field in self.content:
            content[self.subject_field] = copy.deepcopy(self.content[self.subject_field])
        return type(self)(
            id=self.id,
            content=content,
            version_id=self.version_id,
            last_updated=self.last_updated,
            deleted=True,
        )


def _first_date(content: Dict[str, Any], *paths: str) -> Optional[date]:
    for path in paths:
        value: Any = content
        for part in path.split("."):
            value = value.get(part) if isinstance(value, dict) else None
        parsed = parse_fhir_date(value)
        if parsed is not None:
            return parsed
    return None


# ── Variants ─────────────────────────────────────────────────────────────────

@dataclass
class Patient(ClinicalResource):
    resource_type: ClassVar[str] = "Patient"

    GENDERS: ClassVar[FrozenSet[str]] = frozenset({"male", "female", "other", "unknown"})

    def validate(self) -> None:
        gender = self.content.get("gender")
        if gender is not None and gender not in self.GENDERS:
            raise InvalidResourceError(
                f"Patient.gender {gender!r} is not one of {sorted(self.GENDERS)}",
                resource_type=self.resource_type,
            )
        birth = self.content.get("birthDate")
        if birth is not None and parse_fhir_date(birth) is None:
            raise InvalidResourceError(
                f"Patient.birthDate {birth!r} is not a valid FHIR date",
                resource_type=self.resource_type,
            )
        names = self.content.get("name", [])
        if not isinstance(names, list):
            raise InvalidResourceError(
                "Patient.name must be a list of HumanName", resource_type=self.resource_type
            )

    @property
    def birth_date(self) -> Optional[date]:
        return parse_fhir_date(self.content.get("birthDate"))

    @property
    def gender(self) -> Optional[str]:
        return self.content.get("gender")

    def name_strings(self) -> List[str]:
        """Every given/family/text fragment, for substring search."""
        fragments: List[str] = []
        for name in self.content.get("name") or []:
            if not isinstance(name, dict):
                continue
            fragments.extend(str(g) for g in name.get("given") or [])
            for key in ("family", "text"):
                if name.get(key):
                    fragments.append(str(name[key]))
        return fragments

    def display_name(self) -> str:
        for name in self.content.get("name") or []:
            if isinstance(name, dict):
                if name.get("text"):
                    return str(name["text"])
                parts = [str(g) for g in name.get("given") or []] + [str(name.get("family", ""))]
                text = " ".join(p for p in parts if p).strip()
                if text:
                    return text
        return self.reference


@dataclass
class Observation(ClinicalResource):
    resource_type: ClassVar[str] = "Observation"
    required_fields: ClassVar[Tuple[str, ...]] = ("status", "code", "subject")
    subject_field: ClassVar[Optional[str]] = "subject"
    allowed_status: ClassVar[FrozenSet[str]] = frozenset({
        "registered", "preliminary", "final", "amended",
        "corrected", "cancelled", "entered-in-error", "unknown",
    })

    # Statuses that count as a performed test
    RESULTED: ClassVar[FrozenSet[str]] = frozenset({"final", "amended", "corrected"})

    def validate(self) -> None:
        components = self.content.get("component") or []
        if not isinstance(components, list) or not all(isinstance(c, dict) for c in components):
            raise InvalidResourceError(
                "Observation.component must be a list of objects", resource_type=self.resource_type
            )

    def clinical_date(self) -> Optional[date]:
        return _first_date(
            self.content, "effectiveDateTime", "effectivePeriod.start",
            "effectiveInstant", "issued",
        )

    def codes(self) -> List[Coding]:
        return codings_of(self.content.get("code"))

    def category_codes(self) -> List[Coding]:
        result: List[Coding] = []
        for concept in self.content.get("category") or []:
            result.extend(codings_of(concept))
        return result

    def component_value(self, code: str) -> Optional[float]:
        """valueQuantity.value of the first component coded ``code``."""
        components = self.content.get("component")
        if not isinstance(components, list):
            return None
        for component in components:
            if isinstance(component, dict) and any(c.code == code for c in codings_of(component.get("code"))):
                return _quantity(component)
        return None

    def value(self) -> Optional[float]:
        return _quantity(self.content)


def _quantity(element: Dict[str, Any]) -> Optional[float]:
    quantity = element.get("valueQuantity")
    value = quantity.get("value") if isinstance(quantity, dict) else None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    return None


@dataclass
class Condition(ClinicalResource):
    resource_type: ClassVar[str] = "Condition"
    required_fields: ClassVar[Tuple[str, ...]] = ("code", "subject")
    subject_field: ClassVar[Optional[str]] = "subject"

    INACTIVE: ClassVar[FrozenSet[str]] = frozenset({"inactive", "resolved", "remission"})
    DISCOUNTED: ClassVar[FrozenSet[str]] = frozenset({"refuted", "entered-in-error"})

    def clinical_date(self) -> Optional[date]:
        return _first_date(self.content, "onsetDateTime", "onsetPeriod.start", "recordedDate")

    def codes(self) -> List[Coding]:
        return codings_of(self.content.get("code"))

    def category_codes(self) -> List[Coding]:
        result: List[Coding] = []
        for concept in self.content.get("category") or []:
            result.extend(codings_of(concept))
        return result

    @property
    def clinical_status(self) -> Optional[str]:
        codings = codings_of(self.content.get("clinicalStatus"))
        return codings[0].code if codings else None

    @property
    def verification_status(self) -> Optional[str]:
        codings = codings_of(self.content.get("verificationStatus"))
        return codings[0].code if codings else None

    def is_credible(self) -> bool:
        """Not refuted or entered in error; history counts even if resolved."""
        return self.verification_status not in self.DISCOUNTED


@dataclass
class Immunization(ClinicalResource):
    resource_type: ClassVar[str] = "Immunization"
    required_fields: ClassVar[Tuple[str, ...]] = ("status", "vaccineCode", "patient", "occurrenceDateTime")
    subject_field: ClassVar[Optional[str]] = "patient"
    allowed_status: ClassVar[FrozenSet[str]] = frozenset({"completed", "entered-in-error", "not-done"})

    def clinical_date(self) -> Optional[date]:
        return _first_date(self.content, "occurrenceDateTime")

    def codes(self) -> List[Coding]:
        return codings_of(self.content.get("vaccineCode"))


@dataclass
class FamilyMemberHistory(ClinicalResource):
    resource_type: ClassVar[str] = "FamilyMemberHistory"
    required_fields: ClassVar[Tuple[str, ...]] = ("status", "patient", "relationship")
    subject_field: ClassVar[Optional[str]] = "patient"
    allowed_status: ClassVar[FrozenSet[str]] = frozenset({
        "partial", "completed", "entered-in-error", "health-unknown",
    })

    def clinical_date(self) -> Optional[date]:
        return _first_date(self.content, "date")

    def codes(self) -> List[Coding]:
        result: List[Coding] = []
        for item in self.content.get("condition") or []:
            if isinstance(item, dict):
                result.extend(codings_of(item.get("code")))
        return result

    def relationship_codes(self) -> List[Coding]:
        return codings_of(self.content.get("relationship"))


@dataclass
class ServiceRequest(ClinicalResource):
    resource_type: ClassVar[str] = "ServiceRequest"
    required_fields: ClassVar[Tuple[str, ...]] = ("status", "intent", "subject")
    subject_field: ClassVar[Optional[str]] = "subject"
    allowed_status: ClassVar[FrozenSet[str]] = frozenset({
        "draft", "active", "on-hold", "revoked",
        "completed", "entered-in-error", "unknown",
    })

    def clinical_date(self) -> Optional[date]:
        return _first_date(
            self.content, "occurrenceDateTime", "occurrencePeriod.end",
            "occurrencePeriod.start", "authoredOn",
        )

    def codes(self) -> List[Coding]:
        return codings_of(self.content.get("code"))


@dataclass
class Medication(ClinicalResource):
    """Formulary entry; shared, not in any patient's compartment."""
    resource_type: ClassVar[str] = "Medication"
    required_fields: ClassVar[Tuple[str, ...]] = ("code",)
    allowed_status: ClassVar[FrozenSet[str]] = frozenset({"active", "inactive", "entered-in-error"})

    def codes(self) -> List[Coding]:
        return codings_of(self.content.get("code"))

    def form_codes(self) -> List[Coding]:
        return codings_of(self.content.get("form"))


@dataclass
class ImmunizationRecommendation(ClinicalResource):
    resource_type: ClassVar[str] = "ImmunizationRecommendation"
    required_fields: ClassVar[Tuple[str, ...]] = ("patient", "date", "recommendation")
    subject_field: ClassVar[Optional[str]] = "patient"

    def clinical_date(self) -> Optional[date]:
        return _first_date(self.content, "date")

    def codes(self) -> List[Coding]:
        result: List[Coding] = []
        for item in self.content.get("recommendation") or []:
            if isinstance(item, dict):
                result.extend(codings_of(item.get("vaccineCode")))
        return result


# ── Registry ─────────────────────────────────────────────────────────────────
RESOURCE_CLASSES: Dict[str, Type[ClinicalResource]] = {
    cls.resource_type: cls
    for cls in (
        Patient,
        Observation,
        Condition,
        Immunization,
        FamilyMemberHistory,
        ServiceRequest,
        ImmunizationRecommendation,
        Medication,
    )
}

# Order in which $everything groups the patient's compartment
COMPARTMENT_TYPES: Tuple[str, ...] = (
    "Observation",
    "Condition",
    "Immunization",
    "FamilyMemberHistory",
    "ServiceRequest",
    "ImmunizationRecommendation",
)


def resource_class(resource_type: str) -> Type[ClinicalResource]:
    """Look up the variant for a type name, rejecting unsupported types."""
    cls = RESOURCE_CLASSES.get(resource_type)
    if cls is None:
        raise InvalidResourceError(
            f"Unsupported resource type {resource_type!r}",
            resource_type=resource_type,
            details={"supported": sorted(RESOURCE_CLASSES)},
        )
    return cls
