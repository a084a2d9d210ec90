"""
Preventive Screening FHIR Service

FHIR R4 resource server, guideline screening rules engine and CDS Hooks
card generator.
"""
from app.config import SERVICE_VERSION

__version__ = SERVICE_VERSION
