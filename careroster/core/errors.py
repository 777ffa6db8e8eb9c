"""Domain error taxonomy shared by all CareRoster services."""

from __future__ import annotations

from typing import Any


class CareRosterError(Exception):
    """Base class for errors surfaced to callers of a core operation."""


class ConflictError(CareRosterError):
    """A uniqueness or overlap rule would be violated."""


class NotFoundError(CareRosterError):
    """A referenced record does not exist."""

    def __init__(self, resource: str, identifier: Any = None):
        self.resource = resource
        self.identifier = identifier
        if identifier is None:
            message = f"{resource} not found"
        else:
            message = f"{resource} not found: {identifier}"
        super().__init__(message)


class ValidationError(CareRosterError, ValueError):
    """Input is malformed or the requested transition is not allowed."""
