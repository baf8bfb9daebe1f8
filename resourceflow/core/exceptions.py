"""
Platform-wide exception hierarchy.

Services raise only these types; the app factory registers one handler per
type so every blueprint gets the same status code and error envelope.

Usage:
    from resourceflow.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="AidRequest", resource_id=42)
    raise ValidationError("percentage must be > 0", details={"percentage": "..."})
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist.

    Also used when a policy check asks to hide a resource's existence
    (a recipient looking at another recipient's request gets a 404, not a 403).

    Args:
        resource: Human-readable model/entity name (e.g. "AidRequest").
        resource_id: The PK that was looked up. Included in logs and message.
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
    """Raised when well-formed input violates a business rule.

    Examples: percentage out of range, percentage exceeds the remaining
    funding, missing required field, invalid lifecycle transition.

    Maps to HTTP 422. Never retried automatically.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when the target changed state underneath the caller.

    Typical causes: the request became terminal or fully funded while the
    caller was working from an older view. The caller may resubmit with
    refreshed state.

    Maps to HTTP 409.

    Args:
        message: Human-readable explanation.
        resource: Model name.
        resource_id: PK of the conflicting row.
        state: The state that caused the conflict (e.g. "closed_no_match").
    """

    def __init__(
        self,
        message: str,
        *,
        resource: str | None = None,
        resource_id: int | str | None = None,
        state: str | None = None,
    ) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.state = state
        super().__init__(message)


class AuthorizationError(Exception):
    """Raised when a policy predicate denies an action. Maps to HTTP 403.

    Args:
        actor_id: The user that attempted the action (None for anonymous).
        action: Policy action name, e.g. "create", "approve_recede".
        resource_type: Policy resource group, e.g. "contribution".
    """

    def __init__(self, actor_id: int | None, action: str, resource_type: str) -> None:
        self.actor_id = actor_id
        self.action = action
        self.resource_type = resource_type
        super().__init__(
            f"User {actor_id} is not allowed to '{action}' on {resource_type}"
        )


class AuthenticationError(Exception):
    """Raised when no valid actor could be resolved for the call. Maps to HTTP 401."""

    def __init__(self, message: str = "Authentication required") -> None:
        super().__init__(message)


class TransitionError(ValidationError):
    """Raised when a lifecycle action is not valid from the current status."""

    def __init__(self, resource_id: int, action: str, current: str, reason: str | None = None):
        msg = f"Cannot '{action}' request {resource_id} (status={current})"
        if reason:
            msg += f": {reason}"
        super().__init__(msg, details={"action": action, "status": current})
        self.resource_id = resource_id
        self.action = action
        self.current_status = current
        self.reason = reason
