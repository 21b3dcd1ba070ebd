"""
ApprovalFlow - Assignment Engine.

Orchestrates submission, manual and automatic assignment, and review status
changes on top of the item store, the user directory and the settings store.

Lock order is always item lock, then settings lock. Events are dispatched
only after every lock has been released.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Optional, Union
from uuid import uuid4

from .directory import UserDirectory
from .exceptions import (
    AutoAssignmentDisabledError,
    ConflictError,
    DuplicatePendingItemError,
    NoEligibleReviewersError,
    UnknownReviewerError,
)
from .locks import KeyedLock
from .models import (
    MANUAL_STRATEGY,
    Assignment,
    AutoAssignmentSettings,
    EventType,
    ExpertReview,
    ItemStatus,
    ModuleType,
    ReviewableItem,
    StrategyType,
    TransitionEvent,
    ValidationResult,
    utcnow,
)
from .notifications import NotificationDispatcher
from .routing import RoutingRules
from .settings import SettingsStore
from .state_machine import machine_for
from .store import ReviewableItemStore, new_item_id
from .strategies import get_strategy
from .validation import (
    normalize_reviewer_ids,
    parse_module_type,
    parse_priority,
    parse_status,
    validate_string_length,
    validate_submission,
)

logger = logging.getLogger("approvalflow.engine")

DEFAULT_REMINDER_WINDOW = timedelta(hours=48)


def _to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Aware datetimes become naive UTC, matching ``utcnow``."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class AssignmentEngine:
    """
    Entry point for every state-affecting operation on reviewable items.

    Example:
        ```python
        engine = AssignmentEngine(store, directory, settings_store, dispatcher)
        item_id = engine.submit_for_approval("risk_assessment", "sys-42", "Risk review")
        item = engine.auto_assign(item_id)
        engine.update_review_status(item_id, "completed", actor=item.assignees[0])
        ```
    """

    def __init__(
        self,
        store: ReviewableItemStore,
        directory: UserDirectory,
        settings_store: SettingsStore,
        dispatcher: Optional[NotificationDispatcher] = None,
        routing: Optional[RoutingRules] = None,
        lock_timeout: Optional[float] = None,
    ):
        self.store = store
        self.directory = directory
        self.settings_store = settings_store
        self.dispatcher = dispatcher
        self.routing = routing or RoutingRules()
        self.lock_timeout = lock_timeout
        self._locks = KeyedLock()

    def _publish(self, event: TransitionEvent) -> None:
        if self.dispatcher is not None:
            self.dispatcher.dispatch(event)

    def _item_lock(self, item_id: str):
        return self._locks.hold(("item", item_id), timeout=self.lock_timeout)

    # ==================== Submission ====================

    def submit(
        self,
        module_type: Union[str, ModuleType],
        module_id: str,
        title: str,
        description: str = "",
        priority: Any = None,
        *,
        submitted_by: Optional[str] = None,
        due_date: Optional[datetime] = None,
        text: Optional[str] = None,
        review_type: Optional[str] = None,
        validation_result: Optional[ValidationResult] = None,
    ) -> ReviewableItem:
        """Create a pending item; the duplicate check and the insert are one step."""
        module_type = validate_submission(module_type, module_id, title)
        validate_string_length(description, "description", max_length=10_000)
        fields = dict(
            id=new_item_id(),
            module_type=module_type,
            module_id=str(module_id),
            title=title.strip(),
            description=description or "",
            priority=parse_priority(priority),
            due_date=_to_naive_utc(due_date),
            submitted_by=submitted_by,
        )
        if module_type == ModuleType.EXPERT_LEGAL_REVIEW:
            item = ExpertReview(
                **fields,
                text=text or "",
                review_type=review_type,
                validation_result=validation_result,
            )
        else:
            item = ReviewableItem(**fields)

        with self._locks.hold(("submission", item.active_key), timeout=self.lock_timeout):
            try:
                created, event = self.store.submit(item, actor=submitted_by)
            except ConflictError as e:
                raise DuplicatePendingItemError(
                    f"{module_type.value} {module_id} already has a pending approval request",
                    existing_item_id=e.existing_item_id,
                    module_type=module_type.value,
                    module_id=str(module_id),
                ) from e

        logger.info(
            "Submitted %s %s for approval as item %s",
            module_type.value,
            module_id,
            created.id,
        )
        self._publish(event)
        return created

    def submit_for_approval(
        self,
        module_type: Union[str, ModuleType],
        module_id: str,
        title: str,
        description: str = "",
        priority: Any = None,
        **kwargs: Any,
    ) -> str:
        """
        Submit an artifact and return the new item id.

        Raises:
            DuplicatePendingItemError: A non-terminal item already exists for
                the same module; ``existing_item_id`` names it.
        """
        return self.submit(module_type, module_id, title, description, priority, **kwargs).id

    # ==================== Queries ====================

    def check_exists(self, module_type: Union[str, ModuleType], module_id: str) -> bool:
        return self.store.check_exists(parse_module_type(module_type), str(module_id))

    def get_item(self, item_id: str) -> ReviewableItem:
        return self.store.get(item_id)

    def list_items(
        self,
        status: Optional[Iterable[Union[str, ItemStatus]]] = None,
        module_type: Optional[Union[str, ModuleType]] = None,
        assignee: Optional[str] = None,
        review_type: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[ReviewableItem]:
        statuses = [parse_status(s) for s in status] if status else None
        module = parse_module_type(module_type) if module_type else None
        return self.store.list_items(
            status=statuses,
            module_type=module,
            assignee=assignee,
            review_type=review_type,
            limit=limit,
            offset=offset,
        )

    def get_assignments(self, item_id: str) -> list[Assignment]:
        return self.store.assignments(item_id)

    def get_history(self, item_id: str, limit: int = 100, offset: int = 0) -> list[TransitionEvent]:
        return self.store.history(item_id, limit=limit, offset=offset)

    # ==================== Assignment ====================

    def _known_reviewers(self, reviewer_ids: Iterable[str]) -> list[str]:
        ids = normalize_reviewer_ids(reviewer_ids)
        unknown = self.directory.unknown_ids(ids)
        if unknown:
            raise UnknownReviewerError(
                f"Unknown reviewer(s): {', '.join(unknown)}", unknown_ids=unknown
            )
        return ids

    def assign_manually(
        self,
        item_id: str,
        reviewer_ids: Iterable[str],
        note: str = "",
        actor: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> ReviewableItem:
        """
        Assign the given reviewers to a pending item.

        Raises:
            NoReviewersSelectedError: ``reviewer_ids`` is empty.
            UnknownReviewerError: Some ids are not in the user directory.
        """
        ids = self._known_reviewers(reviewer_ids)

        with self._item_lock(item_id):
            item, event = self.store.apply_assignment(
                item_id,
                ids,
                MANUAL_STRATEGY,
                note=note or "",
                actor=actor,
                expected_version=expected_version,
            )

        logger.info("Item %s manually assigned to %s", item_id, ", ".join(ids))
        self._publish(event)
        return item

    def assign_and_update_status(
        self,
        item_id: str,
        reviewer_ids: Iterable[str],
        new_status: Union[str, ItemStatus],
        note: str = "",
        actor: Optional[str] = None,
        feedback: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> ReviewableItem:
        """
        Manually assign a pending item and move it on from its assigned status.

        Nothing is written unless both steps are valid. When ``new_status``
        is the status assignment already produces, this is a plain assignment.
        """
        ids = self._known_reviewers(reviewer_ids)
        status = parse_status(new_status)

        with self._item_lock(item_id):
            current = self.store.get(item_id)
            machine = machine_for(current.module_type)
            assigned_status = machine.validate_assignment(current.status)
            if status == assigned_status:
                item, event = self.store.apply_assignment(
                    item_id,
                    ids,
                    MANUAL_STRATEGY,
                    note=note or "",
                    actor=actor,
                    expected_version=expected_version,
                )
                events = [event]
            else:
                machine.validate_transition(assigned_status, status)
                item, events = self.store.apply_assignment_and_status(
                    item_id,
                    ids,
                    MANUAL_STRATEGY,
                    status,
                    note=note or "",
                    actor=actor,
                    feedback=feedback,
                    expected_version=expected_version,
                )

        logger.info(
            "Item %s manually assigned to %s and moved to %s",
            item_id,
            ", ".join(ids),
            item.status.value,
        )
        for event in events:
            self._publish(event)
        return item

    def auto_assign(
        self,
        item_id: str,
        force_assign: bool = False,
        actor: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> ReviewableItem:
        """
        Assign a pending item using the configured strategy.

        Raises:
            AutoAssignmentDisabledError: Disabled and ``force_assign`` is false.
            NoEligibleReviewersError: The strategy found nobody.
        """
        with self._item_lock(item_id):
            with self.settings_store.lock:
                settings = self.settings_store.get()
                if not settings.enabled and not force_assign:
                    raise AutoAssignmentDisabledError("Auto-assignment is disabled")

                current = self.store.get(item_id)
                machine_for(current.module_type).validate_assignment(current.status)
                if expected_version is None:
                    expected_version = current.version

                pool = self.directory.list_eligible(
                    settings.eligible_roles, settings.eligible_departments
                )
                strategy = get_strategy(settings.strategy_type, self.routing)
                chosen = strategy.select(current, pool, settings)
                if not chosen:
                    raise NoEligibleReviewersError(
                        f"No eligible reviewers for {settings.strategy_type.value}",
                        strategy_type=settings.strategy_type.value,
                    )

                advance = None
                if settings.strategy_type == StrategyType.ROUND_ROBIN:
                    last = chosen[-1]

                    def advance(session):
                        self.settings_store.advance_cursor(last, session=session)

                item, event = self.store.apply_assignment(
                    item_id,
                    chosen,
                    settings.strategy_type.value,
                    actor=actor,
                    expected_version=expected_version,
                    in_transaction=advance,
                )

        logger.info(
            "Item %s auto-assigned to %s via %s",
            item_id,
            ", ".join(chosen),
            settings.strategy_type.value,
        )
        self._publish(event)
        return item

    # ==================== Review status ====================

    def update_review_status(
        self,
        item_id: str,
        new_status: Union[str, ItemStatus],
        actor: Optional[str] = None,
        feedback: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> ReviewableItem:
        """
        Move an item along its state machine.

        Raises:
            InvalidTransitionError: The transition is not allowed; nothing changes.
            StaleStateError: ``expected_version`` is behind the stored item.
        """
        status = parse_status(new_status)
        with self._item_lock(item_id):
            item, event = self.store.apply_status_change(
                item_id,
                status,
                actor=actor,
                feedback=feedback,
                expected_version=expected_version,
            )

        logger.info(
            "Item %s moved %s -> %s",
            item_id,
            event.old_status.value if event.old_status else None,
            status.value,
        )
        self._publish(event)
        return item

    # ==================== Settings ====================

    def get_auto_assignment_settings(self) -> AutoAssignmentSettings:
        return self.settings_store.get()

    def update_auto_assignment_settings(
        self,
        new_settings: Union[dict[str, Any], AutoAssignmentSettings],
        expected_version: Optional[int] = None,
        actor: Optional[str] = None,
    ) -> AutoAssignmentSettings:
        return self.settings_store.update(
            new_settings, expected_version=expected_version, actor=actor
        )

    # ==================== Reminders ====================

    def send_due_date_reminders(
        self,
        within: timedelta = DEFAULT_REMINDER_WINDOW,
        now: Optional[datetime] = None,
    ) -> int:
        """Publish a reminder for each assigned, open item due within ``within``."""
        now = _to_naive_utc(now) or utcnow()
        sent = 0
        for item in self.store.list_due(now + within):
            if item.due_date <= now or not item.assignees:
                continue
            self._publish(
                TransitionEvent(
                    id=str(uuid4()),
                    item_id=item.id,
                    event_type=EventType.REMINDER,
                    old_status=item.status,
                    new_status=item.status,
                    assignees=list(item.assignees),
                    title=item.title,
                    module_type=item.module_type,
                    priority=item.priority,
                    submitted_by=item.submitted_by,
                    occurred_at=now,
                )
            )
            sent += 1
        if sent:
            logger.info("Sent %d due-date reminders", sent)
        return sent
