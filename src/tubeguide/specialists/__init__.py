"""TubeGuide Specialists

Domain responders sharing one contract.

Key Components:
    BaseSpecialist: Abstract base class; ``handle(query, provider, context)``.
    HandlerContext: Execution context passed from the workflow to a specialist.
    HandlerResponse: Standardised response used by routing and synthesis.
    SpecialistConfig: Per-variant data (name, keywords, mention pattern, colour).
    SpecialistId: Enumeration of specialist ids (one per Tube line plus status).
    SpecialistRegistry: Read-only id → specialist lookup.
    LineSpecialist / StatusSpecialist: Concrete variants.
"""

from tubeguide.specialists.base import BaseSpecialist, HandlerContext, HandlerResponse
from tubeguide.specialists.config import (
    FALLBACK_HANDLER,
    FILTER_HANDLER,
    SPECIALIST_CONFIGS,
    SpecialistConfig,
    SpecialistId,
)
from tubeguide.specialists.line import LineSpecialist, StatusSpecialist
from tubeguide.specialists.registry import SpecialistRegistry

__all__ = [
    "BaseSpecialist",
    "HandlerContext",
    "HandlerResponse",
    "SpecialistConfig",
    "SpecialistId",
    "SPECIALIST_CONFIGS",
    "FALLBACK_HANDLER",
    "FILTER_HANDLER",
    "LineSpecialist",
    "StatusSpecialist",
    "SpecialistRegistry",
]
