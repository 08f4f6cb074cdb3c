"""Error taxonomy for premise.

Every public operation either returns a value or raises one of these.
All premise exceptions inherit from PremiseError.
"""

from __future__ import annotations

from typing import Any


class PremiseError(Exception):
    """Base exception for all premise errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class ValidationError(PremiseError):
    """Malformed input or dangling reference. Raised before any mutation."""


class ConflictError(PremiseError):
    """A transaction was built against a stale version."""

    def __init__(self, message: str, expected: int, actual: int):
        super().__init__(message, {"expected": expected, "actual": actual})
        self.expected = expected
        self.actual = actual


class NotFoundError(PremiseError):
    """Reference to an unknown entity id."""

    def __init__(self, kind: str, entity_id: str):
        super().__init__(f"Unknown {kind}: {entity_id}", {"kind": kind, "id": entity_id})
        self.kind = kind
        self.entity_id = entity_id


class StorageError(PremiseError):
    """Persistence I/O failed. The in-memory state is still authoritative."""


class CorruptSnapshotError(StorageError):
    """A persisted snapshot failed its checksum or could not be decoded."""


class ProviderError(PremiseError):
    """The AI provider or parser collaborator failed."""
