"""
Utilities Package - Logging and Exception Handling
"""
from .logging import get_logger, setup_logging
from .exceptions import (
    FHIRServiceError,
    InvalidResourceError,
    ResourceNotFoundError,
    ResourceGoneError,
    SearchParameterError,
    ValidationError,
    ResourceConflictError,
    VersionConflictError,
    RuleConfigurationError,
    operation_outcome,
)

__all__ = [
    "get_logger",
    "setup_logging",
    "FHIRServiceError",
    "InvalidResourceError",
    "ResourceNotFoundError",
    "ResourceGoneError",
    "SearchParameterError",
    "ValidationError",
    "ResourceConflictError",
    "VersionConflictError",
    "RuleConfigurationError",
    "operation_outcome",
]
