from __future__ import annotations

from typing import Optional


class StaffingError(Exception):
    """Base class for errors raised by the shift generation engine."""


class ConfigurationError(StaffingError, ValueError):
    """The template a call depends on is missing or inactive."""

    def __init__(self, template_id: Optional[int], reason: str = "missing") -> None:
        self.template_id = template_id
        self.reason = reason
        if reason == "inactive":
            message = f"Shift template {template_id} is inactive."
        else:
            message = f"Shift template {template_id} was not found."
        super().__init__(message)


class IgnorableConflict(StaffingError):
    """An insert hit a key that a live instance already occupies."""

    def __init__(self, unique_key: str) -> None:
        self.unique_key = unique_key
        super().__init__(f"Generated shift {unique_key} already exists.")


class PersistenceError(StaffingError):
    """The persistence layer failed to read or write."""
