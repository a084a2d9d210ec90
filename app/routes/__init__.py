"""
HTTP routers: FHIR REST, CDS Hooks and patient screening/risk views.
"""
from .cds import router as cds_router
from .fhir import router as fhir_router
from .patients import router as patients_router

__all__ = ["cds_router", "fhir_router", "patients_router"]
