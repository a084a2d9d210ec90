"""
API request/response models for the non-FHIR endpoints.

FHIR resource bodies are taken as raw JSON and validated by the resource
variants themselves; these models cover health checks and the CDS Hooks
surface.
"""
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    service: str
    version: str
    fhir_version: str
    timestamp: str
    uptime_seconds: float
    resource_counts: Dict[str, int] = Field(default_factory=dict)


class CDSHookContext(BaseModel):
    patientId: str = Field(..., min_length=1, description="Patient in context")
    userId: Optional[str] = Field(default=None, description="Practitioner viewing the chart")


class CDSHookRequest(BaseModel):
    """CDS Hooks service call (patient-view)."""
    hook: str = Field(default="patient-view")
    hookInstance: Optional[str] = None
    fhirServer: Optional[str] = None
    context: CDSHookContext
    prefetch: Optional[Dict[str, Any]] = None


class CDSHookResponse(BaseModel):
    cards: List[Dict[str, Any]] = Field(default_factory=list)


class ConfirmActionRequest(BaseModel):
    """One-tap confirmation of a card suggestion."""
    card: Dict[str, Any]
    suggestion: str = Field(..., min_length=1, description="Suggestion uuid or label")
    persist: bool = Field(default=False, description="Create the resource instead of returning it")
