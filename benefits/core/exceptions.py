"""
Engine-wide exception hierarchy.

Every engine operation raises one of these types; the blueprint registers
a handler per type and gets consistent HTTP status codes everywhere.

Usage:
    from benefits.core.exceptions import NotFoundError, TransitionConflictError

    raise NotFoundError(resource="BenefitRequest", resource_id=42)
    raise TransitionConflictError(request_id=42, action="cancel")
"""


class NotFoundError(Exception):
    """Raised when a request, step or user does not exist.

    Args:
        resource: Human-readable model/entity name (e.g. "BenefitRequest").
        resource_id: The PK that was looked up.
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
    """Raised when well-formed input violates a policy bound.

    Amount / term out of range, missing consent, duplicate approver or
    sequence order, duplicate unique field on commit.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class IneligibleError(Exception):
    """Raised when the eligibility evaluator blocks request creation.

    ``reason`` is the evaluator's human-readable verdict, e.g.
    "Existing active loan".
    """

    def __init__(self, reason: str, eligibility: dict | None = None) -> None:
        self.reason = reason
        self.eligibility = eligibility or {}
        super().__init__(f"Not eligible: {reason}")


class InvalidTransitionError(Exception):
    """Raised when an action is not legal from the request's current status."""

    def __init__(self, request_id: int | None, action: str, current: str, reason: str | None = None):
        msg = f"Cannot '{action}' request {request_id} (status={current})"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)
        self.request_id = request_id
        self.action = action
        self.current_status = current
        self.reason = reason


class NotAuthorizedError(Exception):
    """Raised when the actor lacks the role, relation or turn for an action.

    Covers "not your turn", "not the assigned officer" and
    "not your own request".
    """

    def __init__(self, actor_id: int | None, action: str, reason: str) -> None:
        self.actor_id = actor_id
        self.action = action
        self.reason = reason
        super().__init__(f"User {actor_id} may not '{action}': {reason}")


class TransitionConflictError(Exception):
    """Raised when a conditional update matched zero rows.

    Another actor moved the request (or step) after it was read.  The
    caller should reload and may retry; the engine itself never retries.
    """

    def __init__(self, request_id: int | None, action: str, detail: str | None = None) -> None:
        self.request_id = request_id
        self.action = action
        self.detail = detail
        msg = f"Request {request_id} was modified concurrently during '{action}'"
        if detail:
            msg += f": {detail}"
        super().__init__(msg)
