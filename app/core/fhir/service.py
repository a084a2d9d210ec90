"""
FHIR Resource Service

Validates, versions and routes resource operations over the
ClinicalDataStore, presenting FHIR R4 read/create/update/delete/search
semantics plus the Patient ``$everything`` operation.

Usage:
    from app.core.fhir import ClinicalDataStore, FHIRResourceService

    store = ClinicalDataStore()
    store.init()
    service = FHIRResourceService(store)
    patient = service.create("Patient", {"resourceType": "Patient", ...})
    bundle = service.search("Observation", {"patient": patient["id"]})

Writes are serialised through the store lock, so the version read and the
version write of an update can never interleave with another writer.
Without an expected version the last writer wins; callers that pass
``expected_version`` (HTTP If-Match) get a VersionConflictError instead.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional
from urllib.parse import urlencode

from app.config import FHIR_VERSION, SERVICE_NAME, SERVICE_VERSION, Settings
from app.core.events import EventBus, RESOURCE_CREATED, RESOURCE_DELETED, RESOURCE_UPDATED
from app.utils import get_logger
from app.utils.exceptions import (
    InvalidResourceError,
    ResourceConflictError,
    ResourceGoneError,
    ResourceNotFoundError,
    VersionConflictError,
)
from .resources import (
    COMPARTMENT_TYPES,
    RESOURCE_CLASSES,
    ClinicalResource,
    format_instant,
    resource_class,
)
from .search import parse_search, supported_parameters
from .store import ClinicalDataStore

logger = get_logger(__name__)

Clock = Callable[[], datetime]

_REFERENCE_PARAMS = {"patient"}
_STRING_PARAMS = {"name"}
_DATE_PARAMS = {"date", "birthdate", "onset-date", "authored"}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class FHIRResourceService:
    """CRUD + search over the clinical data store."""

    def __init__(
        self,
        store: ClinicalDataStore,
        settings: Optional[Settings] = None,
        events: Optional[EventBus] = None,
        clock: Clock = _utcnow,
    ):
        self.store = store
        self.settings = settings or Settings()
        self.events = events
        self._clock = clock

    # ── Internals ────────────────────────────────────────────────────────
    def _now(self, previous: Optional[datetime] = None) -> datetime:
        now = self._clock()
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        # lastUpdated never goes backwards for a given resource
        if previous is not None and now < previous:
            return previous
        return now

    def _check_subject(self, resource: ClinicalResource) -> None:
        """Non-Patient resources must point at a live Patient."""
        if resource.subject_field is None:
            return
        patient_id = resource.patient_id
        if patient_id is None or not self.store.contains("Patient", patient_id):
            raise InvalidResourceError(
                f"{resource.resource_type}.{resource.subject_field} references "
                f"unknown Patient {patient_id!r}",
                resource_type=resource.resource_type,
                details={"reference": resource.subject_reference},
            )

    def _publish(self, name: str, resource: ClinicalResource) -> None:
        if self.events is None:
            return
        self.events.publish(name, {
            "resourceType": resource.resource_type,
            "id": resource.id,
            "versionId": resource.version_id,
            "patient": resource.patient_id if resource.resource_type != "Patient" else resource.id,
        })

    def _live(self, resource_type: str, resource_id: str) -> ClinicalResource:
        resource = self.store.get(resource_type, resource_id)
        if resource.deleted:
            raise ResourceGoneError(resource_type, resource_id, resource.version_id)
        return resource

    def _full_url(self, resource: ClinicalResource) -> str:
        return f"{self.settings.fhir_base_url}/{resource.resource_type}/{resource.id}"

    def _entry(self, resource: ClinicalResource, mode: str = "match") -> Dict[str, Any]:
        return {
            "fullUrl": self._full_url(resource),
            "resource": resource.to_fhir(),
            "search": {"mode": mode},
        }

    # ── Operations ───────────────────────────────────────────────────────
    def create(self, resource_type: str, body: Dict[str, Any]) -> Dict[str, Any]:
        """
        Validate and store a new resource.

        Assigns a random id when the body has none, versionId "1" and
        lastUpdated = now.  A body id that matches a tombstone re-creates the
        resource on the next version number.

        Raises:
            InvalidResourceError: type mismatch, missing required content,
                or subject reference that does not resolve.
            ResourceConflictError: the supplied id is already live.
        """
        cls = resource_class(resource_type)
        resource = cls.from_fhir(body)

        with self.store.lock:
            self._check_subject(resource)
            if not resource.id:
                resource.id = str(uuid.uuid4())

            version = 1
            previous_stamp = None
            if self.store.contains(resource_type, resource.id, include_deleted=True):
                existing = self.store.get(resource_type, resource.id)
                if not existing.deleted:
                    raise ResourceConflictError(resource_type, resource.id)
                version = int(existing.version_id) + 1
                previous_stamp = existing.last_updated

            resource.version_id = str(version)
            resource.last_updated = self._now(previous_stamp)
            rendered = resource.to_fhir()
            self.store.put(resource_type, resource.id, resource)

        logger.info(f"created {resource.reference} v{resource.version_id}")
        self._publish(RESOURCE_CREATED, resource)
        return rendered

    def read(self, resource_type: str, resource_id: str) -> Dict[str, Any]:
        """
        Raises:
            ResourceNotFoundError: unknown id.
            ResourceGoneError: the resource was deleted.
        """
        resource_class(resource_type)
        return self._live(resource_type, resource_id).to_fhir()

    def read_resource(self, resource_type: str, resource_id: str) -> ClinicalResource:
        """Typed variant of ``read`` for in-process callers."""
        resource_class(resource_type)
        return self._live(resource_type, resource_id)

    def update(
        self,
        resource_type: str,
        resource_id: str,
        body: Dict[str, Any],
        expected_version: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Full replace of an existing resource, bumping versionId.

        Raises:
            ResourceNotFoundError: unknown id.
            ResourceGoneError: the resource was deleted.
            InvalidResourceError: body type/id mismatch or invalid content.
            VersionConflictError: ``expected_version`` is stale.
        """
        cls = resource_class(resource_type)
        if isinstance(body, dict) and body.get("id") not in (None, resource_id):
            raise InvalidResourceError(
                f"Body id {body.get('id')!r} does not match {resource_type}/{resource_id}",
                resource_type=resource_type,
            )
        resource = cls.from_fhir(body, resource_id=resource_id)

        with self.store.lock:
            current = self._live(resource_type, resource_id)
            if expected_version is not None and expected_version != current.version_id:
                raise VersionConflictError(
                    resource_type, resource_id, expected_version, current.version_id
                )
            self._check_subject(resource)

            resource.version_id = str(int(current.version_id) + 1)
            resource.last_updated = self._now(current.last_updated)
            rendered = resource.to_fhir()
            self.store.put(resource_type, resource_id, resource)

        logger.info(f"updated {resource.reference} v{resource.version_id}")
        self._publish(RESOURCE_UPDATED, resource)
        return rendered

    def delete(self, resource_type: str, resource_id: str) -> None:
        """
        Replace the resource with a tombstone.  Deleting a tombstone is a no-op.

        Raises:
            ResourceNotFoundError: nothing was ever stored under this id.
        """
        resource_class(resource_type)
        with self.store.lock:
            current = self.store.get(resource_type, resource_id)
            if current.deleted:
                return
            tombstone = current.tombstone()
            tombstone.version_id = str(int(current.version_id) + 1)
            tombstone.last_updated = self._now(current.last_updated)
            self.store.put(resource_type, resource_id, tombstone)

        logger.info(f"deleted {tombstone.reference} (tombstone v{tombstone.version_id})")
        self._publish(RESOURCE_DELETED, tombstone)

    def search(self, resource_type: str, params: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
        """
        Filter + paginate into a searchset Bundle.

        Raises:
            InvalidResourceError: unsupported resource type.
            SearchParameterError: unknown or malformed parameter.
        """
        resource_class(resource_type)
        query = parse_search(
            resource_type,
            params or {},
            default_count=self.settings.default_count,
            max_count=self.settings.max_count,
        )
        page, total = self.store.query(
            resource_type, query.predicate, limit=query.count, offset=query.offset
        )
        logger.debug(
            f"search {resource_type} {query.params} -> {total} match(es), "
            f"returning {len(page)} from offset {query.offset}"
        )

        bundle = self._bundle([self._entry(r) for r in page], total)
        bundle["link"] = self._links(resource_type, query.params, query.count, query.offset, total)
        return bundle

    def everything(self, patient_id: str) -> Dict[str, Any]:
        """
        The Patient plus every live resource in its compartment.

        Raises:
            ResourceNotFoundError / ResourceGoneError: patient missing or deleted.
        """
        entries = [self._entry(r) for r in self.patient_compartment(patient_id)]
        bundle = self._bundle(entries, len(entries))
        bundle["link"] = [{
            "relation": "self",
            "url": f"{self.settings.fhir_base_url}/Patient/{patient_id}/$everything",
        }]
        return bundle

    def patient_compartment(self, patient_id: str) -> List[ClinicalResource]:
        """Typed ``$everything``: Patient first, then each compartment type in turn."""
        patient = self._live("Patient", patient_id)
        reference = f"Patient/{patient_id}"
        resources: List[ClinicalResource] = [patient]
        for rtype in COMPARTMENT_TYPES:
            matches, _ = self.store.query(rtype, lambda r: r.subject_reference == reference)
            resources.extend(matches)
        return resources

    # ── Bundles ──────────────────────────────────────────────────────────
    def _bundle(self, entries: List[Dict[str, Any]], total: int) -> Dict[str, Any]:
        return {
            "resourceType": "Bundle",
            "id": str(uuid.uuid4()),
            "meta": {"lastUpdated": format_instant(self._now())},
            "type": "searchset",
            "total": total,
            "entry": entries,
        }

    def _links(self, resource_type, params, count, offset, total) -> List[Dict[str, str]]:
        base = f"{self.settings.fhir_base_url}/{resource_type}"

        def url(page_offset: int) -> str:
            query = list(params) + [("_count", str(count)), ("_offset", str(page_offset))]
            return f"{base}?{urlencode(query)}"

        links = [{"relation": "self", "url": url(offset)}]
        if count > 0 and offset + count < total:
            links.append({"relation": "next", "url": url(offset + count)})
        if offset > 0 and count > 0:
            links.append({"relation": "previous", "url": url(max(offset - count, 0))})
        return links

    # ── Metadata ─────────────────────────────────────────────────────────
    def capability_statement(self) -> Dict[str, Any]:
        resources = []
        for rtype in RESOURCE_CLASSES:
            params = []
            for name in supported_parameters(rtype):
                if name in _REFERENCE_PARAMS:
                    ptype = "reference"
                elif name in _STRING_PARAMS:
                    ptype = "string"
                elif name in _DATE_PARAMS:
                    ptype = "date"
                else:
                    ptype = "token"
                params.append({"name": name, "type": ptype})
            entry: Dict[str, Any] = {
                "type": rtype,
                "versioning": "versioned-update",
                "conditionalCreate": False,
                "interaction": [
                    {"code": code}
                    for code in ("read", "search-type", "create", "update", "delete")
                ],
                "searchParam": params,
            }
            if rtype == "Patient":
                entry["operation"] = [{
                    "name": "everything",
                    "definition": "http://hl7.org/fhir/OperationDefinition/Patient-everything",
                }]
            resources.append(entry)

        return {
            "resourceType": "CapabilityStatement",
            "status": "active",
            "date": format_instant(self._now()),
            "publisher": SERVICE_NAME,
            "kind": "instance",
            "software": {"name": SERVICE_NAME, "version": SERVICE_VERSION},
            "implementation": {
                "description": f"{SERVICE_NAME} FHIR R4 endpoint",
                "url": self.settings.fhir_base_url,
            },
            "fhirVersion": FHIR_VERSION,
            "format": ["json"],
            "rest": [{"mode": "server", "resource": resources}],
        }
