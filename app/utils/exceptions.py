"""
Custom Exception Hierarchy

Typed failures raised by the clinical data store, the FHIR resource service
and the CDS layer.  Each carries the HTTP status and FHIR issue code it maps
to, so the API boundary can render an OperationOutcome without guessing.
"""
from typing import Optional, Dict, Any


class FHIRServiceError(Exception):
    """Base exception for all resource-service errors."""

    status_code: int = 500
    issue_code: str = "exception"

    def __init__(
        self,
        message: str,
        code: str = "UNKNOWN_ERROR",
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logs and non-FHIR responses."""
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details
        }

    def to_operation_outcome(self) -> Dict[str, Any]:
        """Render as a FHIR OperationOutcome resource."""
        return operation_outcome(self.message, code=self.issue_code)


def operation_outcome(
    text: str,
    code: str = "exception",
    severity: str = "error",
) -> Dict[str, Any]:
    """Build a single-issue OperationOutcome."""
    return {
        "resourceType": "OperationOutcome",
        "issue": [{
            "severity": severity,
            "code": code,
            "details": {"text": text},
        }],
    }


class InvalidResourceError(FHIRServiceError):
    """Resource type mismatch or missing required content on write."""

    status_code = 400
    issue_code = "invalid"

    def __init__(
        self,
        message: str,
        resource_type: str = "unknown",
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(
            message=message,
            code="INVALID_RESOURCE",
            details={"resource_type": resource_type, **(details or {})}
        )
        self.resource_type = resource_type


class ResourceNotFoundError(FHIRServiceError):
    """No resource with the given type and id."""

    status_code = 404
    issue_code = "not-found"

    def __init__(self, resource_type: str, resource_id: str):
        super().__init__(
            message=f"{resource_type} {resource_id} not found",
            code="NOT_FOUND",
            details={"resource_type": resource_type, "id": resource_id}
        )
        self.resource_type = resource_type
        self.resource_id = resource_id


class ResourceGoneError(FHIRServiceError):
    """The resource existed but has been deleted (tombstoned)."""

    status_code = 410
    issue_code = "deleted"

    def __init__(self, resource_type: str, resource_id: str, version_id: str = ""):
        super().__init__(
            message=f"{resource_type} {resource_id} has been deleted",
            code="GONE",
            details={
                "resource_type": resource_type,
                "id": resource_id,
                "version_id": version_id,
            }
        )
        self.resource_type = resource_type
        self.resource_id = resource_id


class SearchParameterError(FHIRServiceError):
    """Malformed or unsupported request parameter."""

    status_code = 400
    issue_code = "invalid"

    def __init__(
        self,
        message: str,
        parameter: str = "unknown",
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(
            message=message,
            code="VALIDATION_ERROR",
            details={"parameter": parameter, **(details or {})}
        )
        self.parameter = parameter


class ValidationError(SearchParameterError):
    """Malformed request payload field (CDS card, suggestion choice)."""

    def __init__(
        self,
        message: str,
        field: str = "body",
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, parameter=field, details=details)
        self.field = field


class ResourceConflictError(FHIRServiceError):
    """Create attempted with an id that is already live."""

    status_code = 409
    issue_code = "duplicate"

    def __init__(self, resource_type: str, resource_id: str):
        super().__init__(
            message=f"{resource_type} {resource_id} already exists",
            code="CONFLICT",
            details={"resource_type": resource_type, "id": resource_id}
        )
        self.resource_type = resource_type
        self.resource_id = resource_id


class VersionConflictError(FHIRServiceError):
    """Optimistic concurrency check failed."""

    status_code = 412
    issue_code = "conflict"

    def __init__(
        self,
        resource_type: str,
        resource_id: str,
        expected: str,
        actual: str,
    ):
        super().__init__(
            message=(
                f"{resource_type} {resource_id} is at version {actual}, "
                f"update was based on version {expected}"
            ),
            code="VERSION_CONFLICT",
            details={
                "resource_type": resource_type,
                "id": resource_id,
                "expected_version": expected,
                "current_version": actual,
            }
        )
        self.expected = expected
        self.actual = actual


class RuleConfigurationError(FHIRServiceError):
    """The screening rule table violates one of its invariants."""

    def __init__(
        self,
        message: str,
        rule_id: str = "unknown",
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(
            message=message,
            code="RULE_CONFIGURATION_ERROR",
            details={"rule_id": rule_id, **(details or {})}
        )
        self.rule_id = rule_id
