"""Knowledge base ingestion and retrieval engine."""

__version__ = "0.1.0"

from .errors import (
    ConflictError,
    KnowledgeBaseError,
    NotFoundError,
    ScoringBackendError,
    ValidationError,
)

__all__ = [
    "KnowledgeBaseError",
    "ValidationError",
    "NotFoundError",
    "ConflictError",
    "ScoringBackendError",
]
