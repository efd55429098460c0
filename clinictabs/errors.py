"""Error taxonomy for tab configuration operations.

Service functions raise these; the HTTP layer in :mod:`clinictabs.main`
renders them into the standard error envelope using ``status_code`` and
``error_type``.
"""

from __future__ import annotations

from typing import Any, Optional


class TabConfigError(Exception):
    """Base class for failures surfaced to the API caller."""

    status_code = 500
    error_type = "TabConfigError"

    def __init__(self, message: str, *, details: Optional[Any] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class UnauthorizedError(TabConfigError):
    """No organization or identity context could be resolved."""

    status_code = 401
    error_type = "Unauthorized"


class ForbiddenError(TabConfigError):
    """The caller lacks rights for the scope or the target row."""

    status_code = 403
    error_type = "Forbidden"


class TabNotFoundError(TabConfigError):
    status_code = 404
    error_type = "NotFound"


class InvalidStateError(TabConfigError):
    """The change would leave the caller without any visible tab."""

    status_code = 409
    error_type = "InvalidState"


class TabValidationError(TabConfigError):
    status_code = 400
    error_type = "ValidationError"


__all__ = [
    "TabConfigError",
    "UnauthorizedError",
    "ForbiddenError",
    "TabNotFoundError",
    "InvalidStateError",
    "TabValidationError",
]
