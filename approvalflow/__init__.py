"""
ApprovalFlow - Approval and assignment workflow engine for compliance reviews.

Routes risk assessments, system registrations, documents, trainings and
expert legal reviews to human reviewers, with pluggable assignment
strategies and an explicit review state machine.
"""

from .client import ApprovalFlowClient
from .database import Database
from .directory import (
    DatabaseUserDirectory,
    HttpUserDirectory,
    InMemoryUserDirectory,
    UserDirectory,
    load_reviewers_yaml,
)
from .engine import AssignmentEngine
from .exceptions import (
    ApprovalFlowError,
    AutoAssignmentDisabledError,
    ConflictError,
    DuplicatePendingItemError,
    InvalidRoleOrDepartmentError,
    InvalidStrategyError,
    InvalidTransitionError,
    NoEligibleReviewersError,
    NoReviewersSelectedError,
    NotFoundError,
    StaleStateError,
    UnavailableError,
    UnknownReviewerError,
    ValidationError,
)
from .expert_review import ExpertReviewService
from .legal_validation import (
    HttpTextAnalysisService,
    RuleBasedTextAnalyzer,
    TextAnalysisService,
    analyze_safely,
    requires_expert_review,
)
from .models import (
    Assignment,
    AutoAssignmentSettings,
    ConfidenceLevel,
    EventType,
    ExpertReview,
    ItemStatus,
    ModuleType,
    Notification,
    Priority,
    RetryPolicy,
    RetryStrategy,
    ReviewableItem,
    Reviewer,
    StrategyType,
    TransitionEvent,
    ValidationResult,
    ValidationReviewStatus,
)
from .notifications import (
    InboxNotificationSink,
    InMemoryNotificationSink,
    LoggingNotificationSink,
    NotificationDispatcher,
    NotificationSink,
    WebhookNotificationSink,
)
from .routing import RoutingRules
from .settings import DEFAULT_SETTINGS, SettingsStore
from .state_machine import EXPERT_REVIEW_MACHINE, GENERIC_MACHINE, StateMachine, machine_for
from .store import ReviewableItemStore
from .strategies import (
    AssignmentStrategy,
    DepartmentBasedStrategy,
    ExpertiseBasedStrategy,
    RoundRobinStrategy,
    WorkloadBalancedStrategy,
    get_strategy,
)


def get_server():
    """Lazy import for server components (requires server extras)."""
    try:
        from .server import ApprovalFlowServer, ServerConfig, create_app

        return ApprovalFlowServer, ServerConfig, create_app
    except ImportError:
        raise ImportError(
            "Server components require the 'server' extras. "
            "Install with: pip install approvalflow[server]"
        )


__version__ = "0.1.0"
__all__ = [
    "ApprovalFlowClient",
    "AssignmentEngine",
    "Database",
    "ReviewableItemStore",
    "SettingsStore",
    "DEFAULT_SETTINGS",
    "UserDirectory",
    "InMemoryUserDirectory",
    "DatabaseUserDirectory",
    "HttpUserDirectory",
    "load_reviewers_yaml",
    "NotificationSink",
    "LoggingNotificationSink",
    "InMemoryNotificationSink",
    "InboxNotificationSink",
    "WebhookNotificationSink",
    "NotificationDispatcher",
    "TextAnalysisService",
    "RuleBasedTextAnalyzer",
    "HttpTextAnalysisService",
    "analyze_safely",
    "requires_expert_review",
    "ExpertReviewService",
    "RoutingRules",
    "StateMachine",
    "GENERIC_MACHINE",
    "EXPERT_REVIEW_MACHINE",
    "machine_for",
    "AssignmentStrategy",
    "WorkloadBalancedStrategy",
    "RoundRobinStrategy",
    "DepartmentBasedStrategy",
    "ExpertiseBasedStrategy",
    "get_strategy",
    "ModuleType",
    "ItemStatus",
    "Priority",
    "StrategyType",
    "EventType",
    "ConfidenceLevel",
    "ValidationReviewStatus",
    "RetryPolicy",
    "RetryStrategy",
    "ReviewableItem",
    "ExpertReview",
    "Reviewer",
    "AutoAssignmentSettings",
    "Assignment",
    "TransitionEvent",
    "ValidationResult",
    "Notification",
    "ApprovalFlowError",
    "NotFoundError",
    "ConflictError",
    "DuplicatePendingItemError",
    "StaleStateError",
    "InvalidTransitionError",
    "ValidationError",
    "NoReviewersSelectedError",
    "UnknownReviewerError",
    "InvalidStrategyError",
    "InvalidRoleOrDepartmentError",
    "NoEligibleReviewersError",
    "AutoAssignmentDisabledError",
    "UnavailableError",
    "get_server",
]
