"""Summary: Error kinds raised by the Missiv store and services.

Importance: Gives the transport layer typed failures to map onto responses.
Alternatives: Raise ValueError everywhere and parse messages.
"""

from __future__ import annotations

from typing import Any


class MissivError(Exception):
    """Summary: Base exception for all engine errors.

    Importance: Lets callers catch every engine failure with one clause.
    Alternatives: Return error tuples from every operation.
    """

    code = "MISSIV_ERROR"

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class NotFound(MissivError):
    """Summary: A referenced entity does not exist."""

    code = "NOT_FOUND"

    def __init__(self, entity: str, key: str) -> None:
        super().__init__(f"{entity} not found: {key}", {"entity": entity, "key": key})
        self.entity = entity
        self.key = key


class AlreadyExists(MissivError):
    """Summary: A uniqueness constraint was violated."""

    code = "ALREADY_EXISTS"


class InvalidState(MissivError):
    """Summary: The operation is not valid for the entity's current state."""

    code = "INVALID_STATE"


class PreconditionFailed(MissivError):
    """Summary: A conditional mutation found its precondition already unmet.

    Importance: Distinguishes idempotent no-ops (already read) from true failures.
    Alternatives: Return a boolean from every conditional update.
    """

    code = "PRECONDITION_FAILED"


class Unavailable(MissivError):
    """Summary: A durable backend failed transiently.

    Importance: Callers own retry policy; the core never retries.
    Alternatives: Retry inside the store with backoff.
    """

    code = "UNAVAILABLE"
