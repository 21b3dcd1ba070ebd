"""
FastAPI application for the ApprovalFlow server.
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..directory import (
    DatabaseUserDirectory,
    HttpUserDirectory,
    UserDirectory,
    load_reviewers_yaml,
)
from ..engine import AssignmentEngine
from ..exceptions import ApprovalFlowError, ValidationError
from ..expert_review import ExpertReviewService
from ..legal_validation import (
    HttpTextAnalysisService,
    RuleBasedTextAnalyzer,
    TextAnalysisService,
    analyze_safely,
)
from ..models import (
    ConfidenceLevel,
    EventType,
    ItemStatus,
    ModuleType,
    Priority,
    Reviewer,
    StrategyType,
    ValidationReviewStatus,
)
from ..notifications import (
    InboxNotificationSink,
    LoggingNotificationSink,
    NotificationDispatcher,
    WebhookNotificationSink,
)
from ..routing import RoutingRules
from ..settings import SettingsStore
from ..store import ReviewableItemStore
from .config import ServerConfig
from ..database import Database, get_database

logger = logging.getLogger("approvalflow.server")


# ==================== Request models ====================


class ItemCreate(BaseModel):
    module_type: str = Field(alias="moduleType")
    module_id: str = Field(alias="moduleId")
    title: str
    description: str = ""
    priority: Optional[str] = None
    due_date: Optional[datetime] = Field(None, alias="dueDate")
    submitted_by: Optional[str] = Field(None, alias="submittedBy")

    class Config:
        populate_by_name = True


class ManualAssignRequest(BaseModel):
    reviewer_ids: List[str] = Field(default_factory=list, alias="reviewerIds")
    note: str = ""

    class Config:
        populate_by_name = True


class AutoAssignRequest(BaseModel):
    force_assign: bool = Field(False, alias="forceAssign")

    class Config:
        populate_by_name = True


class StatusUpdateRequest(BaseModel):
    new_status: str = Field(alias="newStatus")
    feedback: Optional[str] = None

    class Config:
        populate_by_name = True


class SettingsUpdate(BaseModel):
    enabled: Any = True
    strategy_type: Optional[str] = Field(None, alias="strategyType")
    eligible_roles: List[str] = Field(default_factory=list, alias="eligibleRoles")
    eligible_departments: List[str] = Field(default_factory=list, alias="eligibleDepartments")

    class Config:
        populate_by_name = True


class ReviewerCreate(BaseModel):
    id: str
    display_name: str = Field(alias="displayName")
    role: str
    department: Optional[str] = None
    active: bool = True

    class Config:
        populate_by_name = True


class MarkReadRequest(BaseModel):
    notification_ids: Optional[List[str]] = Field(None, alias="notificationIds")

    class Config:
        populate_by_name = True


class ReminderRequest(BaseModel):
    within_hours: float = Field(48, alias="withinHours")

    class Config:
        populate_by_name = True


class AnalyzeRequest(BaseModel):
    text: str
    context: Dict[str, Any] = Field(default_factory=dict)


class ExpertReviewCreate(BaseModel):
    text: str
    review_type: str = Field("general", alias="type")
    title: Optional[str] = None
    source_id: Optional[str] = Field(None, alias="sourceId")
    priority: Optional[str] = None
    submitted_by: Optional[str] = Field(None, alias="submittedBy")
    context: Dict[str, Any] = Field(default_factory=dict)

    class Config:
        populate_by_name = True


class ExpertReviewUpdate(BaseModel):
    status: Optional[str] = None
    assigned_to: Optional[str] = Field(None, alias="assignedTo")
    expert_feedback: Optional[str] = Field(None, alias="expertFeedback")

    class Config:
        populate_by_name = True


# ==================== Response models ====================


class ValidationResultResponse(BaseModel):
    is_valid: bool
    confidence_level: ConfidenceLevel
    review_status: ValidationReviewStatus
    issues: List[str]
    warnings: List[str]
    review_required: bool
    validator: str
    validation_notes: Optional[str] = None
    timestamp: datetime

    class Config:
        from_attributes = True


class ItemResponse(BaseModel):
    id: str
    module_type: ModuleType
    module_id: str
    title: str
    description: str
    priority: Priority
    status: ItemStatus
    assignees: List[str]
    version: int
    due_date: Optional[datetime] = None
    submitted_by: Optional[str] = None
    feedback: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class ExpertReviewResponse(ItemResponse):
    text: str
    review_type: Optional[str] = None
    validation_result: Optional[ValidationResultResponse] = None
    expert_feedback: Optional[str] = None


class AssignmentResponse(BaseModel):
    id: str
    item_id: str
    assigned_to: List[str]
    strategy_used: str
    assigned_at: datetime
    note: str
    assigned_by: Optional[str] = None

    class Config:
        from_attributes = True


class EventResponse(BaseModel):
    id: str
    item_id: str
    event_type: EventType
    old_status: Optional[ItemStatus] = None
    new_status: ItemStatus
    assignees: List[str]
    actor: Optional[str] = None
    occurred_at: datetime

    class Config:
        from_attributes = True


class SettingsResponse(BaseModel):
    enabled: bool
    strategy_type: str
    eligible_roles: List[str]
    eligible_departments: List[str]
    version: int
    updated_at: Optional[datetime] = None
    updated_by: Optional[str] = None


class ReviewerResponse(BaseModel):
    id: str
    display_name: str
    role: str
    department: Optional[str] = None
    open_assignment_count: int = 0

    class Config:
        from_attributes = True


class NotificationResponse(BaseModel):
    id: str
    user_id: str
    item_id: str
    title: str
    message: str
    type: str
    priority: Priority
    is_read: bool
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


# ==================== Wiring ====================


@dataclass
class Services:
    db: Database
    store: ReviewableItemStore
    settings: SettingsStore
    directory: UserDirectory
    inbox: InboxNotificationSink
    dispatcher: NotificationDispatcher
    analyzer: TextAnalysisService
    engine: AssignmentEngine
    expert_reviews: ExpertReviewService


def build_services(config: ServerConfig, db: Optional[Database] = None) -> Services:
    """Assemble the engine and its collaborators from configuration."""
    db = db or get_database(config.database_url)
    store = ReviewableItemStore(db)
    settings = SettingsStore(db)
    routing = RoutingRules.from_yaml(config.routing_file) if config.routing_file else RoutingRules()

    if config.directory_url:
        directory: UserDirectory = HttpUserDirectory(
            config.directory_url, workload=store.open_assignment_counts
        )
    else:
        directory = DatabaseUserDirectory(db, workload=store.open_assignment_counts)
        if config.reviewers_file:
            directory.load(load_reviewers_yaml(config.reviewers_file))

    inbox = InboxNotificationSink(db)
    sinks = [LoggingNotificationSink(), inbox]
    if config.webhook_url:
        sinks.append(WebhookNotificationSink(config.webhook_url))
    dispatcher = NotificationDispatcher(sinks)

    analyzer: TextAnalysisService = (
        HttpTextAnalysisService(config.text_analysis_url)
        if config.text_analysis_url
        else RuleBasedTextAnalyzer()
    )

    engine = AssignmentEngine(store, directory, settings, dispatcher=dispatcher, routing=routing)
    return Services(
        db=db,
        store=store,
        settings=settings,
        directory=directory,
        inbox=inbox,
        dispatcher=dispatcher,
        analyzer=analyzer,
        engine=engine,
        expert_reviews=ExpertReviewService(engine, analyzer),
    )


def _settings_response(settings) -> SettingsResponse:
    data = settings.to_dict()
    data.pop("round_robin_cursor", None)
    return SettingsResponse(**data)


def _item_response(item) -> ItemResponse:
    if item.module_type == ModuleType.EXPERT_LEGAL_REVIEW:
        return ExpertReviewResponse.model_validate(item)
    return ItemResponse.model_validate(item)


def create_app(config: Optional[ServerConfig] = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    if config is None:
        config = ServerConfig.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        services = build_services(config)
        app.state.services = services
        app.state.config = config
        if config.start_dispatcher:
            services.dispatcher.start()
        logger.info("ApprovalFlow server ready (database=%s)", config.database_url)
        yield
        services.dispatcher.stop()

    app = FastAPI(
        title="ApprovalFlow Server",
        description="Approval and assignment workflow for compliance artifacts",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ApprovalFlowError)
    async def approvalflow_error_handler(request: Request, exc: ApprovalFlowError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    def get_services() -> Services:
        return app.state.services

    def get_engine() -> AssignmentEngine:
        return app.state.services.engine

    def validate_api_key(x_api_key: str = Header(None)) -> str:
        if x_api_key is None or x_api_key not in app.state.config.api_keys:
            raise HTTPException(status_code=401, detail="Invalid or missing API key")
        return x_api_key

    def get_actor(
        api_key: str = Depends(validate_api_key), x_user_id: str = Header(None)
    ) -> str:
        return x_user_id or api_key

    def get_version_header(if_match: str = Header(None)) -> Optional[int]:
        if if_match is None:
            return None
        try:
            return int(if_match.strip('"'))
        except ValueError:
            return None

    @app.get("/.well-known/approvalflow.json")
    def discovery():
        return {
            "service": "ApprovalFlow",
            "version": app.version,
            "apiVersion": config.api_version,
            "moduleTypes": [m.value for m in ModuleType],
            "strategies": [s.value for s in StrategyType],
            "capabilities": [
                "items",
                "manual-assignment",
                "auto-assignment",
                "optimistic-concurrency",
                "notifications",
                "reminders",
                "legal-validation",
                "expert-review",
            ],
            "openApiUrl": "/openapi.json",
        }

    # ==================== Items ====================

    @app.post("/api/v1/items", status_code=201)
    def submit_item(
        body: ItemCreate,
        engine: AssignmentEngine = Depends(get_engine),
        actor: str = Depends(get_actor),
    ):
        item = engine.submit(
            body.module_type,
            body.module_id,
            body.title,
            body.description,
            body.priority,
            submitted_by=body.submitted_by or actor,
            due_date=body.due_date,
        )
        return {
            "item_id": item.id,
            "itemId": item.id,
            "item": _item_response(item).model_dump(mode="json"),
        }

    @app.get("/api/v1/items/exists")
    def check_exists(
        module_type: str = Query(..., alias="moduleType"),
        module_id: str = Query(..., alias="moduleId"),
        services: Services = Depends(get_services),
        api_key: str = Depends(validate_api_key),
    ):
        existing = None
        exists = services.engine.check_exists(module_type, module_id)
        if exists:
            existing = services.store.find_active(ModuleType(module_type), module_id)
        return {"exists": exists, "item_id": existing.id if existing else None}

    @app.get("/api/v1/items")
    def list_items(
        status: Optional[List[str]] = Query(None),
        module_type: Optional[str] = Query(None, alias="moduleType"),
        assignee: Optional[str] = None,
        limit: int = Query(100, ge=1, le=1000),
        offset: int = Query(0, ge=0),
        engine: AssignmentEngine = Depends(get_engine),
        api_key: str = Depends(validate_api_key),
    ):
        items = engine.list_items(
            status=status, module_type=module_type, assignee=assignee, limit=limit, offset=offset
        )
        return [_item_response(i) for i in items]

    @app.get("/api/v1/items/{item_id}")
    def get_item(
        item_id: str,
        engine: AssignmentEngine = Depends(get_engine),
        api_key: str = Depends(validate_api_key),
    ):
        return _item_response(engine.get_item(item_id))

    @app.get("/api/v1/items/{item_id}/assignments", response_model=List[AssignmentResponse])
    def get_assignments(
        item_id: str,
        engine: AssignmentEngine = Depends(get_engine),
        api_key: str = Depends(validate_api_key),
    ):
        return [AssignmentResponse.model_validate(a) for a in engine.get_assignments(item_id)]

    @app.get("/api/v1/items/{item_id}/events", response_model=List[EventResponse])
    def get_events(
        item_id: str,
        limit: int = Query(100, ge=1, le=1000),
        offset: int = Query(0, ge=0),
        engine: AssignmentEngine = Depends(get_engine),
        api_key: str = Depends(validate_api_key),
    ):
        return [
            EventResponse.model_validate(e)
            for e in engine.get_history(item_id, limit=limit, offset=offset)
        ]

    @app.post("/api/v1/items/{item_id}/assign")
    def assign_manual(
        item_id: str,
        body: ManualAssignRequest,
        engine: AssignmentEngine = Depends(get_engine),
        actor: str = Depends(get_actor),
        if_match: Optional[int] = Depends(get_version_header),
    ):
        item = engine.assign_manually(
            item_id, body.reviewer_ids, note=body.note, actor=actor, expected_version=if_match
        )
        return _item_response(item)

    @app.post("/api/v1/items/{item_id}/auto-assign")
    def auto_assign(
        item_id: str,
        body: Optional[AutoAssignRequest] = None,
        engine: AssignmentEngine = Depends(get_engine),
        actor: str = Depends(get_actor),
        if_match: Optional[int] = Depends(get_version_header),
    ):
        force = body.force_assign if body else False
        item = engine.auto_assign(
            item_id, force_assign=force, actor=actor, expected_version=if_match
        )
        return _item_response(item)

    @app.patch("/api/v1/items/{item_id}/status")
    def update_status(
        item_id: str,
        body: StatusUpdateRequest,
        engine: AssignmentEngine = Depends(get_engine),
        actor: str = Depends(get_actor),
        if_match: Optional[int] = Depends(get_version_header),
    ):
        item = engine.update_review_status(
            item_id,
            body.new_status,
            actor=actor,
            feedback=body.feedback,
            expected_version=if_match,
        )
        return _item_response(item)

    # ==================== Settings ====================

    @app.get("/api/v1/settings/auto-assignment", response_model=SettingsResponse)
    def get_settings(
        engine: AssignmentEngine = Depends(get_engine),
        api_key: str = Depends(validate_api_key),
    ):
        return _settings_response(engine.get_auto_assignment_settings())

    @app.put("/api/v1/settings/auto-assignment", response_model=SettingsResponse)
    def update_settings(
        body: SettingsUpdate,
        engine: AssignmentEngine = Depends(get_engine),
        actor: str = Depends(get_actor),
        if_match: Optional[int] = Depends(get_version_header),
    ):
        settings = engine.update_auto_assignment_settings(
            body.model_dump(), expected_version=if_match, actor=actor
        )
        return _settings_response(settings)

    # ==================== Reviewers ====================

    @app.get("/api/v1/reviewers", response_model=List[ReviewerResponse])
    def list_reviewers(
        role: Optional[List[str]] = Query(None),
        department: Optional[List[str]] = Query(None),
        services: Services = Depends(get_services),
        api_key: str = Depends(validate_api_key),
    ):
        reviewers = services.directory.list_eligible(role or [], department or [])
        return [ReviewerResponse.model_validate(r) for r in reviewers]

    @app.post("/api/v1/reviewers", response_model=ReviewerResponse, status_code=201)
    def upsert_reviewer(
        body: ReviewerCreate,
        services: Services = Depends(get_services),
        api_key: str = Depends(validate_api_key),
    ):
        if not isinstance(services.directory, DatabaseUserDirectory):
            raise ValidationError("The configured user directory is read-only", field="directory")
        reviewer = Reviewer(
            id=body.id,
            display_name=body.display_name,
            role=body.role,
            department=body.department,
        )
        services.directory.upsert(reviewer, active=body.active)
        return ReviewerResponse.model_validate(reviewer)

    # ==================== Notifications ====================

    @app.get(
        "/api/v1/users/{user_id}/notifications", response_model=List[NotificationResponse]
    )
    def list_notifications(
        user_id: str,
        unread_only: bool = Query(False, alias="unreadOnly"),
        limit: int = Query(50, ge=1, le=500),
        services: Services = Depends(get_services),
        api_key: str = Depends(validate_api_key),
    ):
        return [
            NotificationResponse.model_validate(n)
            for n in services.inbox.list(user_id, unread_only=unread_only, limit=limit)
        ]

    @app.get("/api/v1/users/{user_id}/notifications/unread-count")
    def unread_count(
        user_id: str,
        services: Services = Depends(get_services),
        api_key: str = Depends(validate_api_key),
    ):
        return {"count": services.inbox.unread_count(user_id)}

    @app.post("/api/v1/users/{user_id}/notifications/read")
    def mark_read(
        user_id: str,
        body: Optional[MarkReadRequest] = None,
        services: Services = Depends(get_services),
        api_key: str = Depends(validate_api_key),
    ):
        ids = body.notification_ids if body else None
        return {"updated": services.inbox.mark_read(user_id, ids)}

    @app.post("/api/v1/reminders/send")
    def send_reminders(
        body: Optional[ReminderRequest] = None,
        engine: AssignmentEngine = Depends(get_engine),
        api_key: str = Depends(validate_api_key),
    ):
        hours = body.within_hours if body else 48
        return {"sent": engine.send_due_date_reminders(within=timedelta(hours=hours))}

    # ==================== Legal validation & expert review ====================

    @app.post("/api/v1/validation/analyze", response_model=ValidationResultResponse)
    def analyze_text(
        body: AnalyzeRequest,
        services: Services = Depends(get_services),
        api_key: str = Depends(validate_api_key),
    ):
        if not body.text.strip():
            raise ValidationError("text cannot be empty", field="text")
        return ValidationResultResponse.model_validate(
            analyze_safely(services.analyzer, body.text, body.context)
        )

    @app.post("/api/v1/expert-reviews", response_model=ExpertReviewResponse, status_code=201)
    def request_expert_review(
        body: ExpertReviewCreate,
        services: Services = Depends(get_services),
        actor: str = Depends(get_actor),
    ):
        review = services.expert_reviews.request_review(
            body.text,
            review_type=body.review_type,
            title=body.title,
            source_id=body.source_id,
            priority=body.priority,
            submitted_by=body.submitted_by or actor,
            context=body.context,
        )
        return ExpertReviewResponse.model_validate(review)

    @app.get("/api/v1/expert-reviews", response_model=List[ExpertReviewResponse])
    def list_expert_reviews(
        status: Optional[str] = None,
        review_type: Optional[str] = Query(None, alias="type"),
        limit: int = Query(100, ge=1, le=1000),
        offset: int = Query(0, ge=0),
        services: Services = Depends(get_services),
        api_key: str = Depends(validate_api_key),
    ):
        reviews = services.expert_reviews.list_reviews(
            status=status, review_type=review_type, limit=limit, offset=offset
        )
        return [ExpertReviewResponse.model_validate(r) for r in reviews]

    @app.get("/api/v1/expert-reviews/{review_id}", response_model=ExpertReviewResponse)
    def get_expert_review(
        review_id: str,
        services: Services = Depends(get_services),
        api_key: str = Depends(validate_api_key),
    ):
        return ExpertReviewResponse.model_validate(services.expert_reviews.get_review(review_id))

    @app.patch("/api/v1/expert-reviews/{review_id}", response_model=ExpertReviewResponse)
    def update_expert_review(
        review_id: str,
        body: ExpertReviewUpdate,
        services: Services = Depends(get_services),
        actor: str = Depends(get_actor),
        if_match: Optional[int] = Depends(get_version_header),
    ):
        review = services.expert_reviews.update_review(
            review_id,
            status=body.status,
            assigned_to=body.assigned_to,
            expert_feedback=body.expert_feedback,
            actor=actor,
            expected_version=if_match,
        )
        return ExpertReviewResponse.model_validate(review)

    return app


class ApprovalFlowServer:
    """High-level server class for running ApprovalFlow."""

    def __init__(
        self,
        host: str = "0.0.0.0",
        port: int = 8000,
        database_url: Optional[str] = None,
        api_keys: Optional[set] = None,
        **kwargs,
    ):
        self.config = ServerConfig(
            host=host,
            port=port,
            database_url=database_url,
            api_keys=api_keys or ServerConfig().api_keys,
            **kwargs,
        )
        self.app = create_app(self.config)

    def run(self):
        """Run the server (blocking)."""
        import uvicorn

        uvicorn.run(
            self.app,
            host=self.config.host,
            port=self.config.port,
            log_level=self.config.log_level,
        )

    async def run_async(self):
        """Run the server asynchronously."""
        import uvicorn

        config = uvicorn.Config(
            self.app,
            host=self.config.host,
            port=self.config.port,
            log_level=self.config.log_level,
        )
        server = uvicorn.Server(config)
        await server.serve()
