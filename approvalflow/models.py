"""
ApprovalFlow - Data models for the approval and assignment workflow.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


def utcnow() -> datetime:
    """Naive UTC timestamp, matching what the database columns store."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def _format_datetime(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class ModuleType(str, Enum):
    """Kind of compliance artifact submitted for review."""

    RISK_ASSESSMENT = "risk_assessment"
    SYSTEM_REGISTRATION = "system_registration"
    DOCUMENT = "document"
    TRAINING = "training"
    EXPERT_LEGAL_REVIEW = "expert_legal_review"


class ItemStatus(str, Enum):
    """Status of a reviewable item in its lifecycle."""

    PENDING = "pending"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    REJECTED = "rejected"

    @property
    def is_terminal(self) -> bool:
        return self in (ItemStatus.COMPLETED, ItemStatus.REJECTED)


NON_TERMINAL_STATUSES = frozenset(
    {ItemStatus.PENDING, ItemStatus.ASSIGNED, ItemStatus.IN_PROGRESS}
)


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class StrategyType(str, Enum):
    """Auto-assignment strategies."""

    WORKLOAD_BALANCED = "workload_balanced"
    ROUND_ROBIN = "round_robin"
    DEPARTMENT_BASED = "department_based"
    EXPERTISE_BASED = "expertise_based"


MANUAL_STRATEGY = "manual"


class EventType(str, Enum):
    """Kinds of events emitted to the Notification Dispatcher."""

    SUBMISSION = "submission"
    ASSIGNMENT = "assignment"
    UPDATE = "update"
    COMPLETION = "completion"
    REMINDER = "reminder"


class ConfidenceLevel(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    UNCERTAIN = "uncertain"


class ValidationReviewStatus(str, Enum):
    """Outcome of automated legal validation."""

    VALIDATED = "validated"
    PENDING_REVIEW = "pending_review"
    REQUIRES_LEGAL_REVIEW = "requires_legal_review"
    OUTDATED = "outdated"


class RetryStrategy(str, Enum):
    """Backoff shape for adapter retries."""

    NONE = "none"
    FIXED = "fixed"
    EXPONENTIAL = "exponential"
    LINEAR = "linear"


@dataclass
class RetryPolicy:
    """
    Bounded retry policy applied at store and adapter boundaries.
    """

    strategy: RetryStrategy = RetryStrategy.EXPONENTIAL
    max_retries: int = 3
    base_delay_ms: int = 100
    max_delay_ms: int = 2000

    def delay_for(self, attempt: int) -> float:
        """Delay in seconds before retry number ``attempt`` (0-based)."""
        if self.strategy == RetryStrategy.NONE:
            return 0.0
        if self.strategy == RetryStrategy.FIXED:
            delay_ms = self.base_delay_ms
        elif self.strategy == RetryStrategy.LINEAR:
            delay_ms = self.base_delay_ms * (attempt + 1)
        else:
            delay_ms = self.base_delay_ms * (2**attempt)
        return min(delay_ms, self.max_delay_ms) / 1000.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "strategy": self.strategy.value,
            "max_retries": self.max_retries,
            "base_delay_ms": self.base_delay_ms,
            "max_delay_ms": self.max_delay_ms,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RetryPolicy":
        return cls(
            strategy=RetryStrategy(data.get("strategy", "exponential")),
            max_retries=data.get("max_retries", data.get("maxRetries", 3)),
            base_delay_ms=data.get("base_delay_ms", data.get("baseDelayMs", 100)),
            max_delay_ms=data.get("max_delay_ms", data.get("maxDelayMs", 2000)),
        )


@dataclass
class ValidationResult:
    """
    Structured output of the text-analysis collaborator.
    """

    is_valid: bool
    confidence_level: ConfidenceLevel
    review_status: ValidationReviewStatus
    issues: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    review_required: bool = False
    validator: str = "system"
    validation_notes: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_valid": self.is_valid,
            "confidence_level": self.confidence_level.value,
            "review_status": self.review_status.value,
            "issues": list(self.issues),
            "warnings": list(self.warnings),
            "review_required": self.review_required,
            "validator": self.validator,
            "validation_notes": self.validation_notes,
            "timestamp": _format_datetime(self.timestamp),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ValidationResult":
        return cls(
            is_valid=data.get("is_valid", data.get("isValid", False)),
            confidence_level=ConfidenceLevel(
                data.get("confidence_level", data.get("confidenceLevel", "uncertain"))
            ),
            review_status=ValidationReviewStatus(
                data.get("review_status", data.get("reviewStatus", "requires_legal_review"))
            ),
            issues=list(data.get("issues", [])),
            warnings=list(data.get("warnings", [])),
            review_required=data.get("review_required", data.get("reviewRequired", False)),
            validator=data.get("validator", "system"),
            validation_notes=data.get("validation_notes", data.get("validationNotes")),
            timestamp=_parse_datetime(data.get("timestamp")) or utcnow(),
        )


@dataclass
class ReviewableItem:
    """
    An artifact submitted for human approval.

    At most one non-terminal item may exist per (module_type, module_id).
    """

    id: str
    module_type: ModuleType
    module_id: str
    title: str
    description: str = ""
    priority: Priority = Priority.MEDIUM
    status: ItemStatus = ItemStatus.PENDING
    assignees: list[str] = field(default_factory=list)
    version: int = 1
    due_date: Optional[datetime] = None
    submitted_by: Optional[str] = None
    feedback: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def active_key(self) -> str:
        return f"{self.module_type.value}:{self.module_id}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "module_type": self.module_type.value,
            "module_id": self.module_id,
            "title": self.title,
            "description": self.description,
            "priority": self.priority.value,
            "status": self.status.value,
            "assignees": list(self.assignees),
            "version": self.version,
            "due_date": _format_datetime(self.due_date),
            "submitted_by": self.submitted_by,
            "feedback": self.feedback,
            "created_at": _format_datetime(self.created_at),
            "updated_at": _format_datetime(self.updated_at),
            "completed_at": _format_datetime(self.completed_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ReviewableItem":
        module_type = ModuleType(data.get("module_type", data.get("moduleType")))
        target = ExpertReview if module_type == ModuleType.EXPERT_LEGAL_REVIEW else cls
        kwargs = dict(
            id=data["id"],
            module_type=module_type,
            module_id=data.get("module_id", data.get("moduleId")),
            title=data.get("title", ""),
            description=data.get("description") or "",
            priority=Priority(data.get("priority", "medium")),
            status=ItemStatus(data.get("status", "pending")),
            assignees=list(data.get("assignees") or []),
            version=data.get("version", 1),
            due_date=_parse_datetime(data.get("due_date", data.get("dueDate"))),
            submitted_by=data.get("submitted_by", data.get("submittedBy")),
            feedback=data.get("feedback", data.get("expert_feedback")),
            created_at=_parse_datetime(data.get("created_at", data.get("createdAt"))),
            updated_at=_parse_datetime(data.get("updated_at", data.get("updatedAt"))),
            completed_at=_parse_datetime(data.get("completed_at", data.get("completedAt"))),
        )
        if target is ExpertReview:
            result = data.get("validation_result", data.get("validationResult"))
            kwargs.update(
                text=data.get("text", ""),
                review_type=data.get("review_type", data.get("type")),
                validation_result=ValidationResult.from_dict(result) if result else None,
            )
        return target(**kwargs)


@dataclass
class ExpertReview(ReviewableItem):
    """
    Expert legal review of AI-generated text.

    Uses the pending -> in_progress -> completed vocabulary.
    """

    text: str = ""
    review_type: Optional[str] = None
    validation_result: Optional[ValidationResult] = None

    @property
    def expert_feedback(self) -> Optional[str]:
        return self.feedback

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data.update(
            {
                "text": self.text,
                "review_type": self.review_type,
                "validation_result": (
                    self.validation_result.to_dict() if self.validation_result else None
                ),
                "expert_feedback": self.feedback,
            }
        )
        return data


@dataclass
class Reviewer:
    """
    Read-only projection of a user from the User Directory.
    """

    id: str
    display_name: str
    role: str
    department: Optional[str] = None
    open_assignment_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "display_name": self.display_name,
            "role": self.role,
            "department": self.department,
            "open_assignment_count": self.open_assignment_count,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Reviewer":
        return cls(
            id=str(data["id"]),
            display_name=data.get("display_name", data.get("displayName", str(data["id"]))),
            role=data.get("role", ""),
            department=data.get("department"),
            open_assignment_count=int(
                data.get("open_assignment_count", data.get("openAssignmentCount", 0))
            ),
        )


@dataclass(frozen=True)
class AutoAssignmentSettings:
    """
    Process-wide auto-assignment configuration.

    Replaced wholesale on update. The round-robin cursor lives alongside the
    strategy configuration and is advanced only by the engine.
    """

    enabled: bool = True
    strategy_type: StrategyType = StrategyType.WORKLOAD_BALANCED
    eligible_roles: frozenset = frozenset()
    eligible_departments: frozenset = frozenset()
    version: int = 1
    round_robin_cursor: Optional[str] = None
    updated_at: Optional[datetime] = None
    updated_by: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "strategy_type": self.strategy_type.value,
            "eligible_roles": sorted(self.eligible_roles),
            "eligible_departments": sorted(self.eligible_departments),
            "version": self.version,
            "round_robin_cursor": self.round_robin_cursor,
            "updated_at": _format_datetime(self.updated_at),
            "updated_by": self.updated_by,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AutoAssignmentSettings":
        return cls(
            enabled=bool(data.get("enabled", True)),
            strategy_type=StrategyType(
                data.get("strategy_type", data.get("strategyType", "workload_balanced"))
            ),
            eligible_roles=frozenset(data.get("eligible_roles", data.get("eligibleRoles", []))),
            eligible_departments=frozenset(
                data.get("eligible_departments", data.get("eligibleDepartments", []))
            ),
            version=data.get("version", 1),
            round_robin_cursor=data.get("round_robin_cursor"),
            updated_at=_parse_datetime(data.get("updated_at")),
            updated_by=data.get("updated_by"),
        )


@dataclass
class Assignment:
    """
    Immutable audit record of one assignment.
    """

    id: str
    item_id: str
    assigned_to: list[str]
    strategy_used: str
    assigned_at: datetime
    note: str = ""
    assigned_by: Optional[str] = None

    @property
    def is_manual(self) -> bool:
        return self.strategy_used == MANUAL_STRATEGY

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "item_id": self.item_id,
            "assigned_to": list(self.assigned_to),
            "strategy_used": self.strategy_used,
            "assigned_at": self.assigned_at.isoformat(),
            "note": self.note,
            "assigned_by": self.assigned_by,
        }


@dataclass
class TransitionEvent:
    """
    A status change (or reminder) handed to the Notification Dispatcher.
    """

    id: str
    item_id: str
    event_type: EventType
    old_status: Optional[ItemStatus]
    new_status: ItemStatus
    assignees: list[str] = field(default_factory=list)
    actor: Optional[str] = None
    title: str = ""
    module_type: Optional[ModuleType] = None
    priority: Priority = Priority.MEDIUM
    submitted_by: Optional[str] = None
    occurred_at: datetime = field(default_factory=utcnow)

    @property
    def recipients(self) -> list[str]:
        """Users affected by this event: assignees, then the submitter."""
        users = list(self.assignees)
        if self.submitted_by and self.submitted_by not in users:
            users.append(self.submitted_by)
        return users

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "item_id": self.item_id,
            "event_type": self.event_type.value,
            "old_status": self.old_status.value if self.old_status else None,
            "new_status": self.new_status.value,
            "assignees": list(self.assignees),
            "actor": self.actor,
            "title": self.title,
            "module_type": self.module_type.value if self.module_type else None,
            "priority": self.priority.value,
            "submitted_by": self.submitted_by,
            "occurred_at": self.occurred_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TransitionEvent":
        return cls(
            id=data["id"],
            item_id=data["item_id"],
            event_type=EventType(data["event_type"]),
            old_status=ItemStatus(data["old_status"]) if data.get("old_status") else None,
            new_status=ItemStatus(data["new_status"]),
            assignees=list(data.get("assignees") or []),
            actor=data.get("actor"),
            title=data.get("title", ""),
            module_type=ModuleType(data["module_type"]) if data.get("module_type") else None,
            priority=Priority(data.get("priority", "medium")),
            submitted_by=data.get("submitted_by"),
            occurred_at=_parse_datetime(data.get("occurred_at")) or utcnow(),
        )


@dataclass
class Notification:
    """
    Per-user inbox entry derived from a transition event.
    """

    id: str
    user_id: str
    item_id: str
    title: str
    message: str
    type: str
    priority: Priority = Priority.MEDIUM
    is_read: bool = False
    created_at: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "item_id": self.item_id,
            "title": self.title,
            "message": self.message,
            "type": self.type,
            "priority": self.priority.value,
            "is_read": self.is_read,
            "created_at": _format_datetime(self.created_at),
        }
