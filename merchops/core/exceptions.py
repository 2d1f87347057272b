"""
Errors the engine's services raise.

Services raise; each blueprint maps them to a status once, through
``register_error_handlers``. Batch runs catch them per row and report the
message instead.

    raise NotFoundError("Projection", 42)
    raise InvalidTransitionError("ExpiredProjection", 7, action="verify", current="verified")
"""


def _label(resource: str, resource_id) -> str:
    return resource if resource_id is None else f"{resource} {resource_id}"


class EngineError(Exception):
    """Base for every error below."""


class NotFoundError(EngineError):
    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        super().__init__(f"{_label(resource, resource_id)} not found")


class ValidationError(EngineError):
    """Well-formed input that breaks a rule; *details* maps field to problem."""

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class InvalidTransitionError(EngineError):
    """The record's current lifecycle state forbids *action*.

    ``current_status`` is echoed to API clients so they can refresh their view.
    """

    def __init__(self, resource: str, resource_id: int | str, *, action: str,
                 current: str, reason: str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.action = action
        self.current_status = current
        message = f"Cannot '{action}' {resource} {resource_id} (status={current})"
        super().__init__(f"{message}: {reason}" if reason else message)


class ConcurrentModificationError(EngineError):
    """The version column moved between our read and our write."""

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        super().__init__(f"{_label(resource, resource_id)} was modified concurrently; reload and retry")


class ConflictError(EngineError):
    """A unique value (a PO number already allocated, say) is taken."""

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        super().__init__(f"{resource} with {field}={value!r} already exists")
