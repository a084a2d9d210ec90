"""
CDS Hooks card generation for screening determinations.
"""
from .cards import (
    Action,
    CardIndicator,
    CDSCard,
    CDSCardGenerator,
    ResourceCreationRequest,
    Suggestion,
)

__all__ = [
    "Action",
    "CardIndicator",
    "CDSCard",
    "CDSCardGenerator",
    "ResourceCreationRequest",
    "Suggestion",
]
