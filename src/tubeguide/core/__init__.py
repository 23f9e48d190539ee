"""TubeGuide 核心层

提供异常定义。
"""

from .exceptions import (
    ClassificationError,
    CollaborationError,
    ConfigurationError,
    HandlerError,
    PersistenceError,
    ReasoningError,
    ReasoningTimeoutError,
    SpecialistNotFoundError,
    SynthesisError,
    TubeGuideError,
    ValidationError,
)

__all__ = [
    "TubeGuideError",
    "ConfigurationError",
    "ValidationError",
    "ReasoningError",
    "ReasoningTimeoutError",
    "ClassificationError",
    "SpecialistNotFoundError",
    "HandlerError",
    "CollaborationError",
    "SynthesisError",
    "PersistenceError",
]
