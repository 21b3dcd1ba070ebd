"""
ApprovalFlow - Input validation helpers.

Every helper raises a ``ValidationError`` subclass naming the offending field.
"""

from typing import Any, Iterable, Optional, Union

from .exceptions import (
    InvalidRoleOrDepartmentError,
    InvalidStrategyError,
    NoReviewersSelectedError,
    ValidationError,
)
from .models import AutoAssignmentSettings, ItemStatus, ModuleType, Priority, StrategyType


def validate_required(value: Any, field_name: str) -> None:
    """Validate that a required field is not None or empty."""
    if value is None:
        raise ValidationError(f"{field_name} is required", field=field_name)
    if isinstance(value, str) and not value.strip():
        raise ValidationError(f"{field_name} cannot be empty", field=field_name)


def validate_string_length(
    value: Optional[str],
    field_name: str,
    min_length: Optional[int] = None,
    max_length: Optional[int] = None,
) -> None:
    """Validate string length constraints."""
    if value is None:
        return

    if min_length is not None and len(value) < min_length:
        raise ValidationError(
            f"{field_name} must be at least {min_length} characters", field=field_name
        )

    if max_length is not None and len(value) > max_length:
        raise ValidationError(
            f"{field_name} must be at most {max_length} characters", field=field_name
        )


def _parse_enum(enum_cls, value: Any, field_name: str):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        valid = [e.value for e in enum_cls]
        raise ValidationError(
            f"Invalid {field_name} '{value}'. Valid: {valid}", field=field_name
        )


def parse_module_type(value: Union[str, ModuleType]) -> ModuleType:
    return _parse_enum(ModuleType, value, "module_type")


def parse_priority(value: Union[str, Priority, None]) -> Priority:
    if value is None:
        return Priority.MEDIUM
    return _parse_enum(Priority, value, "priority")


def parse_status(value: Union[str, ItemStatus]) -> ItemStatus:
    return _parse_enum(ItemStatus, value, "status")


def validate_submission(module_type: Any, module_id: Any, title: Any) -> ModuleType:
    """Validate the identifying fields of a submission."""
    parsed = parse_module_type(module_type)
    validate_required(module_id, "module_id")
    validate_string_length(str(module_id), "module_id", max_length=255)
    validate_required(title, "title")
    validate_string_length(title, "title", max_length=255)
    return parsed


def normalize_reviewer_ids(reviewer_ids: Optional[Iterable[str]]) -> list[str]:
    """Strip, de-duplicate (keeping order) and require at least one id."""
    seen: list[str] = []
    for reviewer_id in reviewer_ids or []:
        if reviewer_id is None:
            continue
        reviewer_id = str(reviewer_id).strip()
        if reviewer_id and reviewer_id not in seen:
            seen.append(reviewer_id)
    if not seen:
        raise NoReviewersSelectedError()
    return seen


def _as_name_set(value: Any, field_name: str) -> frozenset:
    if value is None:
        return frozenset()
    if isinstance(value, str):
        value = [value]
    try:
        names = [str(v).strip() for v in value]
    except TypeError:
        raise InvalidRoleOrDepartmentError(f"{field_name} must be a list", field=field_name)
    return frozenset(n for n in names if n)


def validate_settings(
    data: Union[dict[str, Any], AutoAssignmentSettings],
) -> AutoAssignmentSettings:
    """
    Validate a complete settings record.

    Raises:
        InvalidStrategyError: If the strategy type is not recognized.
        InvalidRoleOrDepartmentError: If enabled with an empty role or department set.
    """
    if isinstance(data, AutoAssignmentSettings):
        data = data.to_dict()

    raw_strategy = data.get("strategy_type", data.get("strategyType"))
    if raw_strategy is None:
        raise InvalidStrategyError("strategy_type is required", strategy_type=None)
    try:
        strategy_type = StrategyType(raw_strategy)
    except ValueError:
        valid = [s.value for s in StrategyType]
        raise InvalidStrategyError(
            f"Unknown strategy '{raw_strategy}'. Valid: {valid}",
            strategy_type=raw_strategy,
        )

    enabled = data.get("enabled", True)
    if not isinstance(enabled, bool):
        raise ValidationError("enabled must be a boolean", field="enabled")

    roles = _as_name_set(data.get("eligible_roles", data.get("eligibleRoles")), "eligible_roles")
    departments = _as_name_set(
        data.get("eligible_departments", data.get("eligibleDepartments")),
        "eligible_departments",
    )

    if enabled and not roles:
        raise InvalidRoleOrDepartmentError(
            "eligible_roles cannot be empty while auto-assignment is enabled",
            field="eligible_roles",
        )
    if enabled and not departments:
        raise InvalidRoleOrDepartmentError(
            "eligible_departments cannot be empty while auto-assignment is enabled",
            field="eligible_departments",
        )

    return AutoAssignmentSettings(
        enabled=enabled,
        strategy_type=strategy_type,
        eligible_roles=roles,
        eligible_departments=departments,
    )
