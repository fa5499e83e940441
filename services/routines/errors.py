from __future__ import annotations

from typing import Any


class RoutineError(Exception):
    """Base class for routine and notification failures."""


class ActivityValidationError(RoutineError, ValueError):
    def __init__(self, message: str, errors: list[dict[str, Any]] | None = None) -> None:
        super().__init__(message)
        self.errors = errors or []


class StoreError(RoutineError):
    """The routine store could not complete an operation."""


class ChannelError(RoutineError):
    """A notification could not be published."""
