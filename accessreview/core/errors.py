from __future__ import annotations


class AccessReviewError(Exception):
    """Base error for the access review engine."""


class NotFoundError(AccessReviewError):
    """Campaign, item, schedule or notification does not exist."""

    def __init__(self, resource: str, resource_id: str) -> None:
        super().__init__(f"{resource} not found: {resource_id}")
        self.resource = resource
        self.resource_id = resource_id


class InvalidConfigError(AccessReviewError):
    """Malformed scope or recurrence configuration; raised before any mutation."""


class InvalidStateError(AccessReviewError):
    """Requested transition is not allowed from the campaign's current status."""


class PermissionSourceError(AccessReviewError):
    """Permission source request failure."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class PermissionSourceAuthError(PermissionSourceError):
    """Permission source rejected the configured credentials."""


class PermissionSourceTimeoutError(PermissionSourceError):
    """Permission source call exceeded its bounded timeout."""
