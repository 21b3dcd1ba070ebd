"""
ReviewableItem Store.

Each public operation runs in a single database transaction, so a failure at
any step leaves nothing behind. Mutations are compare-and-set on the item's
version. Uniqueness of the non-terminal (module_type, module_id) pair is
backed by the unique ``active_key`` column.
"""

import logging
from datetime import datetime
from typing import Callable, Iterable, Optional, TypeVar
from uuid import uuid4

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from .database import AssignmentModel, Database, ItemEventModel, ReviewableItemModel
from .exceptions import ConflictError, NotFoundError, StaleStateError
from .models import (
    Assignment,
    EventType,
    ExpertReview,
    ItemStatus,
    ModuleType,
    Priority,
    RetryPolicy,
    ReviewableItem,
    TransitionEvent,
    ValidationResult,
    utcnow,
)
from .retry import call_with_retry
from .state_machine import machine_for

logger = logging.getLogger("approvalflow.store")

T = TypeVar("T")


def active_key_for(module_type: ModuleType, module_id: str) -> str:
    return f"{ModuleType(module_type).value}:{module_id}"


def item_from_row(row: ReviewableItemModel) -> ReviewableItem:
    module_type = ModuleType(row.module_type)
    fields = dict(
        id=row.id,
        module_type=module_type,
        module_id=row.module_id,
        title=row.title,
        description=row.description or "",
        priority=Priority(row.priority or "medium"),
        status=ItemStatus(row.status),
        assignees=list(row.assignees or []),
        version=row.version,
        due_date=row.due_date,
        submitted_by=row.submitted_by,
        feedback=row.feedback,
        created_at=row.created_at,
        updated_at=row.updated_at,
        completed_at=row.completed_at,
    )
    if module_type == ModuleType.EXPERT_LEGAL_REVIEW:
        return ExpertReview(
            **fields,
            text=row.text or "",
            review_type=row.review_type,
            validation_result=(
                ValidationResult.from_dict(row.validation_result)
                if row.validation_result
                else None
            ),
        )
    return ReviewableItem(**fields)


def assignment_from_row(row: AssignmentModel) -> Assignment:
    return Assignment(
        id=row.id,
        item_id=row.item_id,
        assigned_to=list(row.assigned_to or []),
        strategy_used=row.strategy_used,
        assigned_at=row.assigned_at,
        note=row.note or "",
        assigned_by=row.assigned_by,
    )


def event_from_row(row: ItemEventModel, item: ReviewableItemModel) -> TransitionEvent:
    return TransitionEvent(
        id=row.id,
        item_id=row.item_id,
        event_type=EventType(row.event_type),
        old_status=ItemStatus(row.old_status) if row.old_status else None,
        new_status=ItemStatus(row.new_status),
        assignees=list(row.assignees or []),
        actor=row.actor,
        title=item.title,
        module_type=ModuleType(item.module_type),
        priority=Priority(item.priority or "medium"),
        submitted_by=item.submitted_by,
        occurred_at=row.created_at,
    )


class ReviewableItemStore:
    """Durable record of reviewable items, their assignments and history."""

    def __init__(self, db: Database, retry_policy: Optional[RetryPolicy] = None):
        self.db = db
        self.retry_policy = retry_policy or RetryPolicy()

    def _run(self, description: str, operation: Callable[[Session], T]) -> T:
        def attempt() -> T:
            with self.db.transaction() as session:
                return operation(session)

        return call_with_retry(
            attempt,
            policy=self.retry_policy,
            retry_on=(OperationalError,),
            description=description,
        )

    def _get_row(self, session: Session, item_id: str) -> ReviewableItemModel:
        row = self.db.get_item(session, item_id)
        if row is None:
            raise NotFoundError(
                f"Item {item_id} not found", resource="item", identifier=item_id
            )
        return row

    @staticmethod
    def _check_version(row: ReviewableItemModel, expected_version: Optional[int]) -> None:
        if expected_version is not None and row.version != expected_version:
            raise StaleStateError(
                f"Item {row.id} is at version {row.version}, not {expected_version}",
                current_version=row.version,
                current_status=row.status,
            )

    # ==================== Create & read ====================

    def submit(
        self, item: ReviewableItem, actor: Optional[str] = None
    ) -> tuple[ReviewableItem, TransitionEvent]:
        """Insert a new pending item and its submission event."""

        def operation(session: Session):
            existing = self.db.find_active_item(session, item.active_key)
            if existing is not None:
                raise ConflictError(
                    f"A non-terminal item already exists for {item.active_key}",
                    existing_item_id=existing.id,
                )

            now = utcnow()
            values = dict(
                id=item.id,
                module_type=item.module_type.value,
                module_id=item.module_id,
                active_key=item.active_key,
                title=item.title,
                description=item.description,
                priority=item.priority.value,
                status=ItemStatus.PENDING.value,
                assignees=[],
                version=1,
                due_date=item.due_date,
                submitted_by=item.submitted_by,
                created_at=now,
                updated_at=now,
            )
            if isinstance(item, ExpertReview):
                values.update(
                    text=item.text,
                    review_type=item.review_type,
                    validation_result=(
                        item.validation_result.to_dict() if item.validation_result else None
                    ),
                )
            row = self.db.create_item(session, **values)
            event_row = self.db.create_event(
                session,
                item_id=row.id,
                event_type=EventType.SUBMISSION.value,
                old_status=None,
                new_status=ItemStatus.PENDING.value,
                assignees=[],
                actor=actor,
                payload={"module_type": row.module_type, "module_id": row.module_id},
                created_at=now,
            )
            return item_from_row(row), event_from_row(event_row, row)

        try:
            return self._run("create item", operation)
        except IntegrityError:
            existing = self.find_active(item.module_type, item.module_id)
            raise ConflictError(
                f"A non-terminal item already exists for {item.active_key}",
                existing_item_id=existing.id if existing else None,
            )

    def create(self, item: ReviewableItem, actor: Optional[str] = None) -> str:
        """Create a pending item; raises ``ConflictError`` on a non-terminal duplicate."""
        created, _ = self.submit(item, actor=actor)
        return created.id

    def get(self, item_id: str) -> ReviewableItem:
        return self._run(
            "get item", lambda session: item_from_row(self._get_row(session, item_id))
        )

    def find_active(self, module_type: ModuleType, module_id: str) -> Optional[ReviewableItem]:
        key = active_key_for(module_type, module_id)

        def operation(session: Session):
            row = self.db.find_active_item(session, key)
            return item_from_row(row) if row else None

        return self._run("find active item", operation)

    def check_exists(self, module_type: ModuleType, module_id: str) -> bool:
        return self.find_active(module_type, module_id) is not None

    def list_items(
        self,
        status: Optional[Iterable[ItemStatus]] = None,
        module_type: Optional[ModuleType] = None,
        assignee: Optional[str] = None,
        review_type: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[ReviewableItem]:
        statuses = [ItemStatus(s).value for s in status] if status else None
        module = ModuleType(module_type).value if module_type else None

        def operation(session: Session):
            rows = self.db.list_items(
                session,
                status=statuses,
                module_type=module,
                assignee=assignee,
                review_type=review_type,
                limit=limit,
                offset=offset,
            )
            return [item_from_row(r) for r in rows]

        return self._run("list items", operation)

    def list_due(self, until: datetime) -> list[ReviewableItem]:
        """Non-terminal items with a due date at or before ``until``."""
        return self._run(
            "list due items",
            lambda session: [
                item_from_row(row) for row in self.db.list_open_items(session, due_before=until)
            ],
        )

    def assignments(self, item_id: str) -> list[Assignment]:
        def operation(session: Session):
            self._get_row(session, item_id)
            return [assignment_from_row(a) for a in self.db.get_assignments(session, item_id)]

        return self._run("list assignments", operation)

    def history(self, item_id: str, limit: int = 100, offset: int = 0) -> list[TransitionEvent]:
        def operation(session: Session):
            row = self._get_row(session, item_id)
            return [
                event_from_row(e, row)
                for e in self.db.get_events(session, item_id, limit=limit, offset=offset)
            ]

        return self._run("list item events", operation)

    def open_assignment_counts(
        self, reviewer_ids: Optional[Iterable[str]] = None
    ) -> dict[str, int]:
        ids = list(reviewer_ids) if reviewer_ids is not None else None
        return self._run(
            "count open assignments",
            lambda session: self.db.count_open_assignments(session, ids),
        )

    # ==================== Mutations ====================

    def _change_status(
        self,
        session: Session,
        row: ReviewableItemModel,
        new_status: ItemStatus,
        actor: Optional[str],
        feedback: Optional[str],
    ) -> ItemEventModel:
        current = ItemStatus(row.status)
        machine_for(ModuleType(row.module_type)).validate_transition(current, new_status)

        now = utcnow()
        values = {"status": new_status.value, "updated_at": now}
        if new_status.is_terminal:
            values["active_key"] = None
        if new_status == ItemStatus.COMPLETED:
            values["completed_at"] = now
        if feedback is not None:
            values["feedback"] = feedback

        if not self.db.compare_and_set_item(session, row.id, row.version, **values):
            session.refresh(row)
            raise StaleStateError(
                f"Item {row.id} changed while updating status",
                current_version=row.version,
                current_status=row.status,
            )

        event_row = self.db.create_event(
            session,
            item_id=row.id,
            event_type=(
                EventType.COMPLETION.value if new_status.is_terminal else EventType.UPDATE.value
            ),
            old_status=current.value,
            new_status=new_status.value,
            assignees=list(row.assignees or []),
            actor=actor,
            payload={"feedback": feedback} if feedback else {},
            created_at=now,
        )
        session.refresh(row)
        return event_row

    def _assign(
        self,
        session: Session,
        row: ReviewableItemModel,
        reviewer_ids: list[str],
        strategy_used: str,
        note: str,
        actor: Optional[str],
    ) -> ItemEventModel:
        current = ItemStatus(row.status)
        new_status = machine_for(ModuleType(row.module_type)).validate_assignment(current)

        now = utcnow()
        if not self.db.compare_and_set_item(
            session,
            row.id,
            row.version,
            status=new_status.value,
            assignees=reviewer_ids,
            updated_at=now,
        ):
            session.refresh(row)
            raise StaleStateError(
                f"Item {row.id} changed while assigning reviewers",
                current_version=row.version,
                current_status=row.status,
            )
        self.db.replace_item_assignees(session, row.id, reviewer_ids)

        self.db.record_assignment(
            session,
            item_id=row.id,
            assigned_to=reviewer_ids,
            strategy_used=strategy_used,
            note=note,
            assigned_by=actor,
            assigned_at=now,
        )
        event_row = self.db.create_event(
            session,
            item_id=row.id,
            event_type=EventType.ASSIGNMENT.value,
            old_status=current.value,
            new_status=new_status.value,
            assignees=reviewer_ids,
            actor=actor,
            payload={"strategy_used": strategy_used, "note": note},
            created_at=now,
        )
        session.refresh(row)
        return event_row

    def apply_status_change(
        self,
        item_id: str,
        new_status: ItemStatus,
        actor: Optional[str] = None,
        feedback: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> tuple[ReviewableItem, TransitionEvent]:
        new_status = ItemStatus(new_status)

        def operation(session: Session):
            row = self._get_row(session, item_id)
            self._check_version(row, expected_version)
            event_row = self._change_status(session, row, new_status, actor, feedback)
            return item_from_row(row), event_from_row(event_row, row)

        return self._run("update item status", operation)

    def update_status(
        self,
        item_id: str,
        new_status: ItemStatus,
        actor: Optional[str] = None,
        feedback: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> ReviewableItem:
        """
        Validated status change.

        Raises ``InvalidTransitionError`` and leaves the item untouched when
        the move is not allowed.
        """
        item, _ = self.apply_status_change(
            item_id, new_status, actor=actor, feedback=feedback, expected_version=expected_version
        )
        return item

    def apply_assignment(
        self,
        item_id: str,
        reviewer_ids: list[str],
        strategy_used: str,
        note: str = "",
        actor: Optional[str] = None,
        expected_version: Optional[int] = None,
        in_transaction: Optional[Callable[[Session], None]] = None,
    ) -> tuple[ReviewableItem, TransitionEvent]:
        """
        Write assignees to a pending item, append the audit record and move it
        to its assigned status.

        ``in_transaction`` runs inside the same transaction after the write, so
        related state (such as a strategy cursor) commits or rolls back with it.
        """
        reviewer_ids = list(reviewer_ids)

        def operation(session: Session):
            row = self._get_row(session, item_id)
            self._check_version(row, expected_version)
            event_row = self._assign(session, row, reviewer_ids, strategy_used, note, actor)
            if in_transaction is not None:
                in_transaction(session)
                session.refresh(row)
            return item_from_row(row), event_from_row(event_row, row)

        return self._run("assign item", operation)

    def apply_assignment_and_status(
        self,
        item_id: str,
        reviewer_ids: list[str],
        strategy_used: str,
        new_status: ItemStatus,
        note: str = "",
        actor: Optional[str] = None,
        feedback: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> tuple[ReviewableItem, list[TransitionEvent]]:
        """
        Assign reviewers and then move the item to ``new_status`` in one
        transaction. Either both steps are stored or neither is.
        """
        reviewer_ids = list(reviewer_ids)
        new_status = ItemStatus(new_status)

        def operation(session: Session):
            row = self._get_row(session, item_id)
            self._check_version(row, expected_version)
            assigned = self._assign(session, row, reviewer_ids, strategy_used, note, actor)
            changed = self._change_status(session, row, new_status, actor, feedback)
            return item_from_row(row), [
                event_from_row(assigned, row),
                event_from_row(changed, row),
            ]

        return self._run("assign and update item status", operation)

    def set_assignees(
        self,
        item_id: str,
        reviewer_ids: list[str],
        strategy_used: str,
        note: str = "",
        actor: Optional[str] = None,
    ) -> ReviewableItem:
        item, _ = self.apply_assignment(
            item_id, reviewer_ids, strategy_used, note=note, actor=actor
        )
        return item


def new_item_id() -> str:
    return str(uuid4())


__all__ = [
    "ReviewableItemStore",
    "active_key_for",
    "item_from_row",
    "new_item_id",
]
