"""
Search Parameter Parsing

Turns a FHIR query string (already split into name -> value) into a store
predicate plus paging.  Every supported parameter is declared per resource
type in ``_SEARCH_PARAMS``; anything else is rejected rather than silently
ignored, so a typo never widens a result set.

Date parameters accept either a plain prefix ("2024", "2024-01") matched
against the recorded string, or a comparator prefix ("ge2024-01-01",
"lt2023") compared on calendar dates.  A partial comparator value covers
its whole period, so "gt2023" means after 2023-12-31.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from dateutil.relativedelta import relativedelta

from app.utils.exceptions import SearchParameterError
from .resources import (
    ClinicalResource,
    Coding,
    Condition,
    FamilyMemberHistory,
    Medication,
    Observation,
    Patient,
    RESOURCE_CLASSES,
    codings_of,
    parse_fhir_date,
)

ResourcePredicate = Callable[[ClinicalResource], bool]
PredicateFactory = Callable[[str, str], ResourcePredicate]

_DATE_VALUE = re.compile(r"^\d{4}(-\d{2}(-\d{2}(T[0-9:.+\-Z]*)?)?)?$")
_COMPARATORS = ("eq", "ne", "gt", "lt", "ge", "le")
PAGING_PARAMS = ("_count", "_offset")


@dataclass
class SearchQuery:
    """A parsed search: combined predicate, paging, and the params echoed in links."""
    resource_type: str
    predicate: ResourcePredicate
    count: int
    offset: int
    params: List[Tuple[str, str]] = field(default_factory=list)


# ── Value helpers ────────────────────────────────────────────────────────────

def _raw_path(resource: ClinicalResource, path: str) -> Optional[str]:
    value: Any = resource.content
    for part in path.split("."):
        value = value.get(part) if isinstance(value, dict) else None
    return value if isinstance(value, str) else None


def _split_token(value: str) -> Tuple[Optional[str], str]:
    """'system|code' -> (system, code); bare 'code' -> (None, code)."""
    if "|" in value:
        system, code = value.split("|", 1)
        return (system or None), code
    return None, value


def _token_matches(codings: Sequence[Coding], value: str) -> bool:
    system, code = _split_token(value)
    return any(c.code == code and (system is None or c.system == system) for c in codings)


def _patient_id(name: str, value: str) -> str:
    if value.startswith("Patient/"):
        value = value[len("Patient/"):]
    if not value or "/" in value:
        raise SearchParameterError(f"Invalid patient reference {value!r}", parameter=name)
    return value


# ── Predicate factories ──────────────────────────────────────────────────────

def _patient_ref(name: str, value: str) -> ResourcePredicate:
    target = f"Patient/{_patient_id(name, value)}"
    return lambda r: r.subject_reference == target


def _token(getter: Callable[[ClinicalResource], Sequence[Coding]]) -> PredicateFactory:
    def factory(name: str, value: str) -> ResourcePredicate:
        if not value or value.endswith("|"):
            raise SearchParameterError(f"Empty token for {name}", parameter=name)
        return lambda r: _token_matches(getter(r), value)
    return factory


def _exact_string(path: str) -> PredicateFactory:
    def factory(name: str, value: str) -> ResourcePredicate:
        return lambda r: _raw_path(r, path) == value
    return factory


def _date(*paths: str) -> PredicateFactory:
    """Date search over the first populated path of ``paths``."""
    def factory(name: str, value: str) -> ResourcePredicate:
        comparator = None
        if value[:2] in _COMPARATORS and value[2:3].isdigit():
            comparator, value = value[:2], value[2:]
        if not _DATE_VALUE.match(value):
            raise SearchParameterError(f"Invalid date value {value!r} for {name}", parameter=name)

        def raw(resource: ClinicalResource) -> Optional[str]:
            for path in paths:
                found = _raw_path(resource, path)
                if found:
                    return found
            return None

        if comparator is None:
            return lambda r: (raw(r) or "").startswith(value)

        period = _period(value)
        if period is None:
            raise SearchParameterError(f"Invalid date value {value!r} for {name}", parameter=name)
        compare = _DATE_COMPARE[comparator]

        def predicate(resource: ClinicalResource) -> bool:
            recorded = parse_fhir_date(raw(resource))
            return recorded is not None and compare(recorded, *period)
        return predicate
    return factory


def _period(value: str) -> Optional[Tuple[date, date]]:
    """First and last day covered by a date of year, month or day precision."""
    start = parse_fhir_date(value)
    if start is None:
        return None
    precision = len(value.split("T", 1)[0])
    if precision == 4:
        return start, start + relativedelta(years=1, days=-1)
    if precision == 7:
        return start, start + relativedelta(months=1, days=-1)
    return start, start


# (recorded, period start, period end) -> match
_DATE_COMPARE: Dict[str, Callable[[date, date, date], bool]] = {
    "eq": lambda d, lo, hi: lo <= d <= hi,
    "ne": lambda d, lo, hi: not lo <= d <= hi,
    "gt": lambda d, lo, hi: d > hi,
    "lt": lambda d, lo, hi: d < lo,
    "ge": lambda d, lo, hi: d >= lo,
    "le": lambda d, lo, hi: d <= hi,
}


def _patient_name(name: str, value: str) -> ResourcePredicate:
    needle = value.lower()
    return lambda r: isinstance(r, Patient) and any(needle in s.lower() for s in r.name_strings())


def _status(name: str, value: str) -> ResourcePredicate:
    return lambda r: r.status == value


def _resource_id(name: str, value: str) -> ResourcePredicate:
    wanted = set(v for v in value.split(",") if v)
    return lambda r: r.id in wanted


def _clinical_status(name: str, value: str) -> ResourcePredicate:
    return lambda r: isinstance(r, Condition) and _token_matches(
        codings_of(r.content.get("clinicalStatus")), value
    )


_SEARCH_PARAMS: Dict[str, Dict[str, PredicateFactory]] = {
    "Patient": {
        "name": _patient_name,
        "birthdate": _exact_string("birthDate"),
        "gender": _exact_string("gender"),
    },
    "Observation": {
        "patient": _patient_ref,
        "category": _token(lambda r: r.category_codes() if isinstance(r, Observation) else []),
        "date": _date("effectiveDateTime", "effectivePeriod.start", "effectiveInstant", "issued"),
        "code": _token(lambda r: r.codes()),
        "status": _status,
    },
    "Condition": {
        "patient": _patient_ref,
        "clinical-status": _clinical_status,
        "onset-date": _date("onsetDateTime", "onsetPeriod.start"),
        "code": _token(lambda r: r.codes()),
        "category": _token(lambda r: r.category_codes() if isinstance(r, Condition) else []),
    },
    "Immunization": {
        "patient": _patient_ref,
        "date": _date("occurrenceDateTime"),
        "vaccine-code": _token(lambda r: r.codes()),
        "status": _status,
    },
    "FamilyMemberHistory": {
        "patient": _patient_ref,
        "relationship": _token(
            lambda r: r.relationship_codes() if isinstance(r, FamilyMemberHistory) else []
        ),
        "code": _token(lambda r: r.codes()),
    },
    "ServiceRequest": {
        "patient": _patient_ref,
        "status": _status,
        "code": _token(lambda r: r.codes()),
        "authored": _date("authoredOn"),
    },
    "ImmunizationRecommendation": {
        "patient": _patient_ref,
        "vaccine-type": _token(lambda r: r.codes()),
    },
    "Medication": {
        "code": _token(lambda r: r.codes()),
        "status": _status,
        "form": _token(lambda r: r.form_codes() if isinstance(r, Medication) else []),
    },
}

if set(_SEARCH_PARAMS) != set(RESOURCE_CLASSES):
    raise RuntimeError(
        f"Search table out of sync with resource registry: "
        f"{sorted(set(_SEARCH_PARAMS) ^ set(RESOURCE_CLASSES))}"
    )


def supported_parameters(resource_type: str) -> List[str]:
    """Names of every parameter accepted for ``resource_type`` (for the CapabilityStatement)."""
    return ["_id"] + sorted(_SEARCH_PARAMS.get(resource_type, {}))


def _parse_int(name: str, raw: str, minimum: int) -> int:
    try:
        value = int(raw)
    except (TypeError, ValueError):
        raise SearchParameterError(f"{name} must be an integer, got {raw!r}", parameter=name)
    if value < minimum:
        raise SearchParameterError(f"{name} must be >= {minimum}", parameter=name)
    return value


def _as_values(raw: Any) -> List[str]:
    if isinstance(raw, (list, tuple)):
        return [str(v) for v in raw]
    return [str(raw)]


def parse_search(
    resource_type: str,
    params: Mapping[str, Any],
    default_count: int = 20,
    max_count: int = 100,
) -> SearchQuery:
    """
    Validate ``params`` for ``resource_type`` and build the combined predicate.

    Repeated parameters are ANDed.  ``_count`` above ``max_count`` is clamped.

    Raises:
        SearchParameterError: unknown parameter, empty value, bad paging or date.
    """
    factories = _SEARCH_PARAMS.get(resource_type)
    if factories is None:
        raise SearchParameterError(
            f"Search is not supported for {resource_type!r}", parameter="resourceType"
        )

    predicates: List[ResourcePredicate] = []
    echoed: List[Tuple[str, str]] = []
    count, offset = default_count, 0

    for name, raw in params.items():
        values = _as_values(raw)
        if name == "_count":
            count = min(_parse_int(name, values[-1], 0), max_count)
            continue
        if name == "_offset":
            offset = _parse_int(name, values[-1], 0)
            continue
        if name == "_id":
            factory: PredicateFactory = _resource_id
        elif name in factories:
            factory = factories[name]
        else:
            raise SearchParameterError(
                f"Unknown search parameter {name!r} for {resource_type}",
                parameter=name,
                details={"supported": supported_parameters(resource_type)},
            )
        for value in values:
            value = value.strip()
            if not value:
                raise SearchParameterError(f"Empty value for {name}", parameter=name)
            predicates.append(factory(name, value))
            echoed.append((name, value))

    def combined(resource: ClinicalResource) -> bool:
        return all(p(resource) for p in predicates)

    return SearchQuery(
        resource_type=resource_type,
        predicate=combined,
        count=count,
        offset=offset,
        params=echoed,
    )
