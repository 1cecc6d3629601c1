"""
Service-wide exception hierarchy.

Services raise these types; the app factory maps each one to a JSON error
response once, so every blueprint gets the same status codes.

Usage:
    from campusflow.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="Request", resource_id=42)
    raise ValidationError("comment is required", details={"comment": "required"})
"""


class NotFoundError(Exception):
    """Raised when a referenced entity does not exist.

    Also used for a request with no active step: there is nothing to act on.

    Args:
        resource: Human-readable entity name (e.g. "Request", "WorkflowStep").
        resource_id: The key that was looked up. Included in logs, not in HTTP response.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class UnauthorizedError(Exception):
    """Raised when the actor is not eligible for the operation.

    Maps to HTTP 403.  Raised before any mutation.
    """

    def __init__(self, message: str = "Not authorized for this action") -> None:
        super().__init__(message)


class ValidationError(Exception):
    """Raised when input fails business-rule validation in the service layer.

    Distinct from HTTP 400 (malformed input, caught in blueprint).  This
    exception signals well-formed data that violates a rule (missing comment,
    unknown field, end before start).

    Maps to HTTP 422.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised on a duplicate value or a stale / illegal state.

    Maps to HTTP 409.

    Args:
        resource: Model name.
        field: The field in conflict (``status``, ``version``, ``key`` ...).
        value: The conflicting value.
        message: Optional override for the generated message.
    """

    def __init__(
        self,
        resource: str,
        field: str,
        value: str | int | None = None,
        message: str | None = None,
    ) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        msg = message or f"{resource} with {field}={value!r} already exists"
        super().__init__(msg)


class DependencyError(Exception):
    """Raised when an external collaborator (storage, renderer) fails.

    Maps to HTTP 502.
    """

    def __init__(self, dependency: str, message: str) -> None:
        self.dependency = dependency
        super().__init__(f"{dependency}: {message}")


class IdentityRequiredError(Exception):
    """Raised when a request carries no resolvable caller identity.

    Maps to HTTP 401.
    """

    def __init__(self, message: str = "X-User-Id header is required") -> None:
        super().__init__(message)
