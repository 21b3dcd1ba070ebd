"""
Database layer for ApprovalFlow using SQLAlchemy.
Supports SQLite (default) and PostgreSQL.
"""

from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Iterable, Iterator, List, Optional
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    create_engine,
    desc,
    func,
)
from sqlalchemy.orm import Session, declarative_base, relationship, sessionmaker
from sqlalchemy.pool import StaticPool

from .models import NON_TERMINAL_STATUSES, utcnow

Base = declarative_base()

SETTINGS_ROW_ID = 1


class ReviewableItemModel(Base):
    __tablename__ = "reviewable_items"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    module_type = Column(String(50), nullable=False)
    module_id = Column(String(255), nullable=False)
    # Set to "<module_type>:<module_id>" while non-terminal, NULL afterwards.
    active_key = Column(String(320), nullable=True, unique=True)
    title = Column(String(255), nullable=False)
    description = Column(Text, default="")
    priority = Column(String(20), default="medium")
    status = Column(String(50), default="pending", nullable=False)
    assignees = Column(JSON, default=list)
    version = Column(Integer, default=1, nullable=False)
    due_date = Column(DateTime, nullable=True)
    submitted_by = Column(String(255), nullable=True)
    feedback = Column(Text, nullable=True)
    text = Column(Text, nullable=True)
    review_type = Column(String(100), nullable=True)
    validation_result = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow)
    completed_at = Column(DateTime, nullable=True)

    assignments = relationship(
        "AssignmentModel", back_populates="item", cascade="all, delete-orphan"
    )
    events = relationship(
        "ItemEventModel", back_populates="item", cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index("idx_items_module", "module_type", "module_id"),
        Index("idx_items_status", "status"),
    )


class AssignmentModel(Base):
    __tablename__ = "assignments"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    item_id = Column(String(36), ForeignKey("reviewable_items.id"), nullable=False)
    assigned_to = Column(JSON, default=list)
    strategy_used = Column(String(50), nullable=False)
    note = Column(Text, default="")
    assigned_by = Column(String(255), nullable=True)
    assigned_at = Column(DateTime, default=utcnow)

    item = relationship("ReviewableItemModel", back_populates="assignments")

    __table_args__ = (Index("idx_assignments_item_id", "item_id"),)


class ItemAssigneeModel(Base):
    """Current assignees of an item, one row per reviewer."""

    __tablename__ = "item_assignees"

    item_id = Column(String(36), ForeignKey("reviewable_items.id"), primary_key=True)
    reviewer_id = Column(String(255), primary_key=True)

    __table_args__ = (Index("idx_item_assignees_reviewer", "reviewer_id"),)


class ItemEventModel(Base):
    __tablename__ = "item_events"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    item_id = Column(String(36), ForeignKey("reviewable_items.id"), nullable=False)
    event_type = Column(String(50), nullable=False)
    old_status = Column(String(50), nullable=True)
    new_status = Column(String(50), nullable=False)
    assignees = Column(JSON, default=list)
    actor = Column(String(255), nullable=True)
    payload = Column(JSON, default=dict)
    created_at = Column(DateTime, default=utcnow)

    item = relationship("ReviewableItemModel", back_populates="events")

    __table_args__ = (Index("idx_item_events_item_id", "item_id"),)


class ReviewerModel(Base):
    __tablename__ = "reviewers"

    id = Column(String(255), primary_key=True)
    display_name = Column(String(255), nullable=False)
    role = Column(String(100), nullable=False)
    department = Column(String(255), nullable=True)
    active = Column(Boolean, default=True)

    __table_args__ = (Index("idx_reviewers_role_department", "role", "department"),)


class AutoAssignmentSettingsModel(Base):
    __tablename__ = "auto_assignment_settings"

    id = Column(Integer, primary_key=True, default=SETTINGS_ROW_ID)
    enabled = Column(Boolean, default=True, nullable=False)
    strategy_type = Column(String(50), nullable=False)
    eligible_roles = Column(JSON, default=list)
    eligible_departments = Column(JSON, default=list)
    round_robin_cursor = Column(String(255), nullable=True)
    version = Column(Integer, default=1, nullable=False)
    updated_at = Column(DateTime, default=utcnow)
    updated_by = Column(String(255), nullable=True)


class NotificationModel(Base):
    __tablename__ = "notifications"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    user_id = Column(String(255), nullable=False)
    item_id = Column(String(36), nullable=False)
    event_id = Column(String(36), nullable=True)
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    type = Column(String(50), nullable=False)
    priority = Column(String(20), default="medium")
    is_read = Column(Boolean, default=False)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        Index("idx_notifications_user", "user_id", "is_read"),
        Index("idx_notifications_event_user", "event_id", "user_id", unique=True),
    )


class Database:
    """Database interface for ApprovalFlow."""

    def __init__(self, database_url: str):
        self.database_url = database_url

        connect_args = {}
        engine_kwargs = {}
        if database_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
            connect_args["timeout"] = 30
            if _is_sqlite_memory(database_url):
                engine_kwargs["poolclass"] = StaticPool

        self.engine = create_engine(database_url, connect_args=connect_args, **engine_kwargs)
        self.SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False)

    def create_tables(self):
        """Create all tables."""
        Base.metadata.create_all(self.engine)

    def get_session(self) -> Session:
        """Get a new database session."""
        return self.SessionLocal()

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """Session committed on success and rolled back on any exception."""
        session = self.get_session()
        try:
            yield session
            session.commit()
        except BaseException:
            session.rollback()
            raise
        finally:
            session.close()

    # ==================== Reviewable items ====================

    def create_item(self, session: Session, **kwargs) -> ReviewableItemModel:
        item = ReviewableItemModel(**kwargs)
        session.add(item)
        session.flush()
        return item

    def get_item(self, session: Session, item_id: str) -> Optional[ReviewableItemModel]:
        return (
            session.query(ReviewableItemModel)
            .filter(ReviewableItemModel.id == item_id)
            .first()
        )

    def find_active_item(
        self, session: Session, active_key: str
    ) -> Optional[ReviewableItemModel]:
        return (
            session.query(ReviewableItemModel)
            .filter(ReviewableItemModel.active_key == active_key)
            .first()
        )

    def list_items(
        self,
        session: Session,
        status: Optional[Iterable[str]] = None,
        module_type: Optional[str] = None,
        assignee: Optional[str] = None,
        review_type: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[ReviewableItemModel]:
        query = session.query(ReviewableItemModel)
        if status:
            query = query.filter(ReviewableItemModel.status.in_(list(status)))
        if module_type:
            query = query.filter(ReviewableItemModel.module_type == module_type)
        if review_type:
            query = query.filter(ReviewableItemModel.review_type == review_type)
        if assignee:
            query = query.join(
                ItemAssigneeModel, ItemAssigneeModel.item_id == ReviewableItemModel.id
            ).filter(ItemAssigneeModel.reviewer_id == assignee)
        return (
            query.order_by(desc(ReviewableItemModel.created_at))
            .offset(offset)
            .limit(limit)
            .all()
        )

    def list_open_items(
        self, session: Session, due_before: Optional[datetime] = None
    ) -> List[ReviewableItemModel]:
        query = session.query(ReviewableItemModel).filter(
            ReviewableItemModel.status.in_([s.value for s in NON_TERMINAL_STATUSES])
        )
        if due_before is not None:
            query = query.filter(
                ReviewableItemModel.due_date.isnot(None),
                ReviewableItemModel.due_date <= due_before,
            )
        return query.all()

    def compare_and_set_item(
        self, session: Session, item_id: str, version: int, **values
    ) -> bool:
        """Apply ``values`` only if the row is still at ``version``; bumps the version."""
        values["version"] = version + 1
        values.setdefault("updated_at", utcnow())
        updated = (
            session.query(ReviewableItemModel)
            .filter(
                ReviewableItemModel.id == item_id,
                ReviewableItemModel.version == version,
            )
            .update(values, synchronize_session=False)
        )
        return updated == 1

    def replace_item_assignees(
        self, session: Session, item_id: str, reviewer_ids: Iterable[str]
    ) -> None:
        session.query(ItemAssigneeModel).filter(ItemAssigneeModel.item_id == item_id).delete(
            synchronize_session=False
        )
        for reviewer_id in dict.fromkeys(reviewer_ids):
            session.add(ItemAssigneeModel(item_id=item_id, reviewer_id=reviewer_id))
        session.flush()

    def count_open_assignments(
        self, session: Session, reviewer_ids: Optional[Iterable[str]] = None
    ) -> Dict[str, int]:
        query = (
            session.query(ItemAssigneeModel.reviewer_id, func.count(ItemAssigneeModel.item_id))
            .join(ReviewableItemModel, ReviewableItemModel.id == ItemAssigneeModel.item_id)
            .filter(ReviewableItemModel.status.in_([s.value for s in NON_TERMINAL_STATUSES]))
        )
        if reviewer_ids is not None:
            query = query.filter(ItemAssigneeModel.reviewer_id.in_(list(reviewer_ids)))
        return dict(query.group_by(ItemAssigneeModel.reviewer_id).all())

    # ==================== Assignments & events ====================

    def record_assignment(self, session: Session, **kwargs) -> AssignmentModel:
        assignment = AssignmentModel(**kwargs)
        session.add(assignment)
        session.flush()
        return assignment

    def get_assignments(self, session: Session, item_id: str) -> List[AssignmentModel]:
        return (
            session.query(AssignmentModel)
            .filter(AssignmentModel.item_id == item_id)
            .order_by(AssignmentModel.assigned_at)
            .all()
        )

    def create_event(self, session: Session, **kwargs) -> ItemEventModel:
        event = ItemEventModel(**kwargs)
        session.add(event)
        session.flush()
        return event

    def get_events(
        self, session: Session, item_id: str, limit: int = 100, offset: int = 0
    ) -> List[ItemEventModel]:
        return (
            session.query(ItemEventModel)
            .filter(ItemEventModel.item_id == item_id)
            .order_by(ItemEventModel.created_at)
            .offset(offset)
            .limit(limit)
            .all()
        )

    # ==================== Reviewers ====================

    def upsert_reviewer(self, session: Session, **kwargs) -> ReviewerModel:
        reviewer = self.get_reviewer(session, kwargs["id"])
        if reviewer:
            for key, value in kwargs.items():
                setattr(reviewer, key, value)
        else:
            reviewer = ReviewerModel(**kwargs)
            session.add(reviewer)
        session.flush()
        return reviewer

    def get_reviewer(self, session: Session, reviewer_id: str) -> Optional[ReviewerModel]:
        return (
            session.query(ReviewerModel)
            .filter(ReviewerModel.id == reviewer_id, ReviewerModel.active.is_(True))
            .first()
        )

    def list_reviewers(
        self,
        session: Session,
        roles: Optional[Iterable[str]] = None,
        departments: Optional[Iterable[str]] = None,
    ) -> List[ReviewerModel]:
        query = session.query(ReviewerModel).filter(ReviewerModel.active.is_(True))
        roles = list(roles or [])
        departments = list(departments or [])
        if roles:
            query = query.filter(ReviewerModel.role.in_(roles))
        if departments:
            query = query.filter(ReviewerModel.department.in_(departments))
        return query.order_by(ReviewerModel.id).all()

    # ==================== Settings ====================

    def get_settings(self, session: Session) -> Optional[AutoAssignmentSettingsModel]:
        return (
            session.query(AutoAssignmentSettingsModel)
            .filter(AutoAssignmentSettingsModel.id == SETTINGS_ROW_ID)
            .first()
        )

    def create_settings(self, session: Session, **kwargs) -> AutoAssignmentSettingsModel:
        row = AutoAssignmentSettingsModel(id=SETTINGS_ROW_ID, **kwargs)
        session.add(row)
        session.flush()
        return row

    def compare_and_set_settings(self, session: Session, version: int, **values) -> bool:
        values["version"] = version + 1
        values.setdefault("updated_at", utcnow())
        updated = (
            session.query(AutoAssignmentSettingsModel)
            .filter(
                AutoAssignmentSettingsModel.id == SETTINGS_ROW_ID,
                AutoAssignmentSettingsModel.version == version,
            )
            .update(values, synchronize_session=False)
        )
        return updated == 1

    # ==================== Notifications ====================

    def create_notification(self, session: Session, **kwargs) -> NotificationModel:
        notification = NotificationModel(**kwargs)
        session.add(notification)
        session.flush()
        return notification

    def has_notification(self, session: Session, event_id: str, user_id: str) -> bool:
        return (
            session.query(NotificationModel.id)
            .filter(
                NotificationModel.event_id == event_id,
                NotificationModel.user_id == user_id,
            )
            .first()
            is not None
        )

    def list_notifications(
        self,
        session: Session,
        user_id: str,
        unread_only: bool = False,
        limit: int = 50,
    ) -> List[NotificationModel]:
        query = session.query(NotificationModel).filter(NotificationModel.user_id == user_id)
        if unread_only:
            query = query.filter(NotificationModel.is_read.is_(False))
        return query.order_by(desc(NotificationModel.created_at)).limit(limit).all()

    def count_unread_notifications(self, session: Session, user_id: str) -> int:
        return (
            session.query(func.count(NotificationModel.id))
            .filter(
                NotificationModel.user_id == user_id,
                NotificationModel.is_read.is_(False),
            )
            .scalar()
            or 0
        )

    def mark_notifications_read(
        self, session: Session, user_id: str, notification_ids: Optional[Iterable[str]] = None
    ) -> int:
        query = session.query(NotificationModel).filter(
            NotificationModel.user_id == user_id,
            NotificationModel.is_read.is_(False),
        )
        if notification_ids is not None:
            query = query.filter(NotificationModel.id.in_(list(notification_ids)))
        return query.update({"is_read": True}, synchronize_session=False)


def _is_sqlite_memory(database_url: str) -> bool:
    return database_url in ("sqlite://", "sqlite:///:memory:") or ":memory:" in database_url


_database: Optional[Database] = None


def get_database(database_url: str = "sqlite:///./approvalflow.db") -> Database:
    """Get or create the database instance."""
    global _database
    if _database is None:
        _database = Database(database_url)
        _database.create_tables()
    return _database
