"""
Error taxonomy for the knowledge base engine.

Every error carries a machine-readable ``kind`` and a human-readable message so
callers (e.g. an HTTP layer) can map it to a response without string matching.
"""

from __future__ import annotations

from typing import Any


class KnowledgeBaseError(Exception):
    """Base class for all engine errors."""

    kind: str = "internal"

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        """Serialize the error for transport."""
        data: dict[str, Any] = {"kind": self.kind, "message": self.message}
        if self.details:
            data["details"] = self.details
        return data

    def __repr__(self) -> str:
        return f"{type(self).__name__}(kind={self.kind!r}, message={self.message!r})"


class ValidationError(KnowledgeBaseError):
    """Malformed, oversized or empty input supplied by the caller."""

    kind = "validation"


class NotFoundError(KnowledgeBaseError):
    """A referenced knowledge base or document does not exist."""

    kind = "not_found"


class ConflictError(KnowledgeBaseError):
    """A re-ingestion of the same document is already in flight."""

    kind = "conflict"


class ScoringBackendError(KnowledgeBaseError):
    """The relevance scoring backend failed or timed out."""

    kind = "scoring_backend"
