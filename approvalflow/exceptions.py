"""
ApprovalFlow - Domain errors for the approval and assignment workflow.

All errors are expected and recoverable. Each one carries an HTTP status code
and a structured payload so callers can render a specific message.
"""

from typing import Any, Optional


def _camel(key: str) -> str:
    head, *rest = key.split("_")
    return head + "".join(part.title() for part in rest)


class ApprovalFlowError(Exception):
    """Base exception for all ApprovalFlow errors."""

    error_code = "approvalflow_error"
    default_status_code = 500

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code or self.default_status_code
        self.response = response

    def details(self) -> dict[str, Any]:
        return {}

    def to_dict(self) -> dict[str, Any]:
        """Wire payload. Detail keys appear in snake_case and camelCase."""
        data = {"error": self.error_code, "message": self.message}
        for key, value in self.details().items():
            data[key] = value
            data[_camel(key)] = value
        return data


class NotFoundError(ApprovalFlowError):
    """Raised when a requested resource is not found."""

    error_code = "not_found"
    default_status_code = 404

    def __init__(
        self, message: str, resource: str = "item", identifier: Optional[str] = None, **kwargs: Any
    ) -> None:
        super().__init__(message, **kwargs)
        self.resource = resource
        self.identifier = identifier

    def details(self) -> dict[str, Any]:
        return {"resource": self.resource, "identifier": self.identifier}


class ConflictError(ApprovalFlowError):
    """Raised when a write collides with existing state."""

    error_code = "conflict"
    default_status_code = 409

    def __init__(self, message: str, existing_item_id: Optional[str] = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.existing_item_id = existing_item_id

    def details(self) -> dict[str, Any]:
        return {"existing_item_id": self.existing_item_id}


class DuplicatePendingItemError(ConflictError):
    """Raised when a non-terminal item already exists for (module_type, module_id)."""

    error_code = "duplicate_pending_item"

    def __init__(
        self,
        message: str,
        existing_item_id: Optional[str] = None,
        module_type: Optional[str] = None,
        module_id: Optional[str] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, existing_item_id=existing_item_id, **kwargs)
        self.module_type = module_type
        self.module_id = module_id

    def details(self) -> dict[str, Any]:
        return {
            "existing_item_id": self.existing_item_id,
            "module_type": self.module_type,
            "module_id": self.module_id,
        }


class StaleStateError(ConflictError):
    """Raised when a change was computed against a version that is no longer current."""

    error_code = "stale_state"

    def __init__(
        self,
        message: str,
        current_version: Optional[int] = None,
        current_status: Optional[str] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        self.current_version = current_version
        self.current_status = current_status

    def details(self) -> dict[str, Any]:
        return {
            "current_version": self.current_version,
            "current_status": self.current_status,
        }


class InvalidTransitionError(ApprovalFlowError):
    """Raised when a status change is not in the transition table."""

    error_code = "invalid_transition"
    default_status_code = 409

    def __init__(
        self,
        message: str,
        current_status: Optional[str] = None,
        requested_status: Optional[str] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        self.current_status = current_status
        self.requested_status = requested_status

    def details(self) -> dict[str, Any]:
        return {
            "current_status": self.current_status,
            "requested_status": self.requested_status,
        }


class ValidationError(ApprovalFlowError):
    """Raised when request validation fails."""

    error_code = "validation_error"
    default_status_code = 400

    def __init__(self, message: str, field: Optional[str] = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.field = field

    def details(self) -> dict[str, Any]:
        return {"invalid_field": self.field}


class NoReviewersSelectedError(ValidationError):
    """Raised when a manual assignment names no reviewers."""

    error_code = "no_reviewers_selected"

    def __init__(self, message: str = "At least one reviewer is required", **kwargs: Any) -> None:
        kwargs.setdefault("field", "reviewer_ids")
        super().__init__(message, **kwargs)


class UnknownReviewerError(ValidationError):
    """Raised when a reviewer id cannot be resolved in the User Directory."""

    error_code = "unknown_reviewer"

    def __init__(
        self, message: str, unknown_ids: Optional[list[str]] = None, **kwargs: Any
    ) -> None:
        kwargs.setdefault("field", "reviewer_ids")
        super().__init__(message, **kwargs)
        self.unknown_ids = unknown_ids or []

    def details(self) -> dict[str, Any]:
        return {"invalid_field": self.field, "unknown_ids": self.unknown_ids}


class InvalidStrategyError(ValidationError):
    """Raised when settings name an unrecognized strategy."""

    error_code = "invalid_strategy"

    def __init__(self, message: str, strategy_type: Any = None, **kwargs: Any) -> None:
        kwargs.setdefault("field", "strategy_type")
        super().__init__(message, **kwargs)
        self.strategy_type = strategy_type


class InvalidRoleOrDepartmentError(ValidationError):
    """Raised when enabled settings have an empty role or department set."""

    error_code = "invalid_role_or_department"


class NoEligibleReviewersError(ApprovalFlowError):
    """Raised when a strategy finds nobody to assign."""

    error_code = "no_eligible_reviewers"
    default_status_code = 422

    def __init__(self, message: str, strategy_type: Optional[str] = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.strategy_type = strategy_type

    def details(self) -> dict[str, Any]:
        return {"strategy_type": self.strategy_type}


class AutoAssignmentDisabledError(ApprovalFlowError):
    """Raised when auto-assignment is disabled and not forced."""

    error_code = "auto_assignment_disabled"
    default_status_code = 412

    def details(self) -> dict[str, Any]:
        return {"reason": "disabled"}


class UnavailableError(ApprovalFlowError):
    """Raised when an infrastructure dependency stays unavailable after retries."""

    error_code = "unavailable"
    default_status_code = 503


_ERRORS_BY_CODE: dict[str, type] = {
    cls.error_code: cls
    for cls in (
        NotFoundError,
        ConflictError,
        DuplicatePendingItemError,
        StaleStateError,
        InvalidTransitionError,
        ValidationError,
        NoReviewersSelectedError,
        UnknownReviewerError,
        InvalidStrategyError,
        InvalidRoleOrDepartmentError,
        NoEligibleReviewersError,
        AutoAssignmentDisabledError,
        UnavailableError,
    )
}


def error_from_payload(status_code: int, data: Optional[dict[str, Any]]) -> ApprovalFlowError:
    """Rebuild a domain error from a rendered ``to_dict()`` payload."""
    data = data or {}
    message = data.get("message") or f"Request failed with status {status_code}"
    cls = _ERRORS_BY_CODE.get(data.get("error", ""))

    if cls is None:
        return ApprovalFlowError(message, status_code=status_code, response=data)
    if cls is NotFoundError:
        return NotFoundError(
            message,
            resource=data.get("resource", "item"),
            identifier=data.get("identifier"),
            status_code=status_code,
            response=data,
        )
    if cls is DuplicatePendingItemError:
        return DuplicatePendingItemError(
            message,
            existing_item_id=data.get("existing_item_id"),
            module_type=data.get("module_type"),
            module_id=data.get("module_id"),
            status_code=status_code,
            response=data,
        )
    if cls is StaleStateError:
        return StaleStateError(
            message,
            current_version=data.get("current_version"),
            current_status=data.get("current_status"),
            status_code=status_code,
            response=data,
        )
    if cls is ConflictError:
        return ConflictError(
            message,
            existing_item_id=data.get("existing_item_id"),
            status_code=status_code,
            response=data,
        )
    if cls is InvalidTransitionError:
        return InvalidTransitionError(
            message,
            current_status=data.get("current_status"),
            requested_status=data.get("requested_status"),
            status_code=status_code,
            response=data,
        )
    if cls is UnknownReviewerError:
        return UnknownReviewerError(
            message,
            unknown_ids=data.get("unknown_ids"),
            status_code=status_code,
            response=data,
        )
    if issubclass(cls, ValidationError):
        return cls(message, field=data.get("invalid_field"), status_code=status_code, response=data)
    if cls is NoEligibleReviewersError:
        return NoEligibleReviewersError(
            message,
            strategy_type=data.get("strategy_type"),
            status_code=status_code,
            response=data,
        )
    return cls(message, status_code=status_code, response=data)
