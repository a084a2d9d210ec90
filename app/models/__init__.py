from .api import (
    CDSHookContext,
    CDSHookRequest,
    CDSHookResponse,
    ConfirmActionRequest,
    HealthResponse,
)

__all__ = [
    "CDSHookContext",
    "CDSHookRequest",
    "CDSHookResponse",
    "ConfirmActionRequest",
    "HealthResponse",
]
