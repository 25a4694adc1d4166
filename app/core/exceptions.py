"""
Platform-wide exception hierarchy.

Services raise these types; the tracking blueprint registers one handler per
type and maps them to consistent HTTP status codes and error codes.

Usage:
    from app.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="Risk", resource_id=42)
    raise ValidationError("likelihood_change_reason is required",
                          details={"likelihood_change_reason": "required"})
"""


class NotFoundError(Exception):
    """Raised when an entity, step or version does not exist.

    Args:
        resource: Human-readable model/entity name (e.g. "Risk", "EntityVersion").
        resource_id: The key that was looked up.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input fails a business rule in the service layer.

    Covers missing mandatory justifications, missing required descriptive
    fields and malformed dimension values. Never silently defaulted.

    Args:
        message: Human-readable explanation of what failed.
        details: Field-level breakdown. Keys are field names; values are
                 error descriptions.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class NoBaselineError(ValidationError):
    """Raised when version 1 of an entity lacks its dimension fields."""

    def __init__(self, entity_id: int) -> None:
        self.entity_id = entity_id
        super().__init__(
            f"Version 1 of entity id={entity_id} has no baseline dimension values",
            details={"entity_id": entity_id},
        )


class ImmutableFieldError(Exception):
    """Raised when a client writes a derive-only or locked field.

    Baseline (original_*) fields are derived from version 1 and rejected
    outright; fields of completed progress steps are locked.

    Args:
        field: The offending field name.
        reason: Human-readable explanation.
    """

    def __init__(self, field: str, reason: str | None = None) -> None:
        self.field = field
        msg = reason or f"{field} cannot be set directly"
        super().__init__(msg)


class ConcurrencyConflictError(Exception):
    """Raised when two writers race for the same version number.

    Args:
        resource: Versioned model name.
        resource_id: Owner id of the version log.
        version: The version number that collided.
    """

    def __init__(self, resource: str, resource_id: int | str, version: int) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.version = version
        super().__init__(
            f"{resource} id={resource_id} version {version} was written concurrently; retry the request"
        )
