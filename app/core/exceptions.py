"""
Service-wide exception hierarchy.

Services raise these types; the workflow blueprint registers handlers
against them once and gets consistent HTTP status codes everywhere.

Usage:
    from app.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="WorkflowStep", resource_id="order:po_signed")
    raise ValidationError("entity_type is invalid", details={"entity_type": "..."})
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist.

    Args:
        resource: Human-readable model/entity name (e.g. "WorkflowStep").
        resource_id: The key that was looked up. Included in logs and the message.
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
    """Raised when input fails business-rule validation in the service layer.

    Distinct from HTTP 400 (malformed input, caught in blueprint) — this
    exception signals that the data was well-formed but violated a business
    rule (e.g. unknown prerequisite, dependency cycle).

    Maps to HTTP 422 in blueprint error handlers.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when an operation would create a duplicate unique constraint violation.

    Maps to HTTP 409.

    Args:
        resource: Model name.
        field: The unique field that would be duplicated.
        value: The conflicting value.
    """

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        msg = f"{resource} with {field}={value!r} already exists"
        super().__init__(msg)


class WorkflowConfigurationError(ValidationError):
    """The step catalog is inconsistent (unknown prerequisite, cycle, duplicate key).

    ``details["problems"]`` holds one dict per problem found.
    """


class WorkflowStorageError(Exception):
    """A progress write failed at the storage layer and was rolled back.

    Args:
        message: What was being written.
        conflict: True when the failure was a constraint violation (HTTP 409),
                  False for connectivity / unexpected errors (HTTP 500).
    """

    def __init__(self, message: str, conflict: bool = False) -> None:
        self.conflict = conflict
        super().__init__(message)
