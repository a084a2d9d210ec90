"""
FHIR R4 REST endpoints

    GET    /fhir/metadata
    GET    /fhir/Patient/{id}/$everything
    GET    /fhir/{type}?params      search
    POST   /fhir/{type}             create
    GET    /fhir/{type}/{id}        read
    PUT    /fhir/{type}/{id}        update (optional If-Match: W/"n")
    DELETE /fhir/{type}/{id}        delete (tombstone)

Errors surface as OperationOutcome bodies via the app's exception handler.
"""
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Header, Request, Response
from fastapi.responses import JSONResponse

from app.core.fhir import FHIRResourceService
from app.utils import get_logger
from app.utils.exceptions import InvalidResourceError

logger = get_logger(__name__)

FHIR_JSON = "application/fhir+json"

router = APIRouter(prefix="/fhir", tags=["FHIR"])


def _service(request: Request) -> FHIRResourceService:
    return request.app.state.service


def fhir_response(
    body: Dict[str, Any],
    status_code: int = 200,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    return JSONResponse(content=body, status_code=status_code, media_type=FHIR_JSON, headers=headers)


def version_headers(request: Request, resource: Dict[str, Any], with_location: bool = False) -> Dict[str, str]:
    """ETag / Last-Modified (and Location on create) for a stored resource."""
    meta = resource.get("meta", {})
    version = meta.get("versionId", "")
    headers = {
        "ETag": f'W/"{version}"',
        "Last-Modified": meta.get("lastUpdated", ""),
    }
    if with_location:
        base = request.app.state.settings.fhir_base_url
        headers["Location"] = f"{base}/{resource['resourceType']}/{resource['id']}/_history/{version}"
    return headers


def parse_if_match(value: Optional[str]) -> Optional[str]:
    """``W/"3"`` or ``"3"`` or ``3`` -> ``"3"``."""
    if value is None:
        return None
    tag = value.strip()
    if tag.startswith("W/"):
        tag = tag[2:]
    tag = tag.strip('"')
    if not tag.isdigit():
        raise InvalidResourceError(f"Malformed If-Match header {value!r}")
    return tag


async def read_json_body(request: Request) -> Any:
    try:
        return await request.json()
    except ValueError:
        raise InvalidResourceError("Request body is not valid JSON")


def _search_params(request: Request) -> Dict[str, List[str]]:
    params: Dict[str, List[str]] = {}
    for name, value in request.query_params.multi_items():
        params.setdefault(name, []).append(value)
    return params


# ---- Metadata ----

@router.get("/metadata")
async def capability_statement(request: Request):
    """Server CapabilityStatement."""
    return fhir_response(_service(request).capability_statement())


# ---- Operations ----

@router.get("/Patient/{patient_id}/$everything")
async def patient_everything(patient_id: str, request: Request):
    """Patient plus every live resource that references it."""
    return fhir_response(_service(request).everything(patient_id))


# ---- Type-level interactions ----

@router.get("/{resource_type}")
async def search_resources(resource_type: str, request: Request):
    return fhir_response(_service(request).search(resource_type, _search_params(request)))


@router.post("/{resource_type}", status_code=201)
async def create_resource(resource_type: str, request: Request):
    body = await read_json_body(request)
    created = _service(request).create(resource_type, body)
    return fhir_response(created, status_code=201, headers=version_headers(request, created, with_location=True))


# ---- Instance-level interactions ----

@router.get("/{resource_type}/{resource_id}")
async def read_resource(resource_type: str, resource_id: str, request: Request):
    resource = _service(request).read(resource_type, resource_id)
    return fhir_response(resource, headers=version_headers(request, resource))


@router.put("/{resource_type}/{resource_id}")
async def update_resource(
    resource_type: str,
    resource_id: str,
    request: Request,
    if_match: Optional[str] = Header(default=None),
):
    body = await read_json_body(request)
    updated = _service(request).update(
        resource_type, resource_id, body, expected_version=parse_if_match(if_match)
    )
    return fhir_response(updated, headers=version_headers(request, updated))


@router.delete("/{resource_type}/{resource_id}", status_code=204)
async def delete_resource(resource_type: str, resource_id: str, request: Request):
    _service(request).delete(resource_type, resource_id)
    return Response(status_code=204)
