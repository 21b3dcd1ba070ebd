"""
Tests for expert legal reviews.
"""

import pytest

from approvalflow.exceptions import (
    DuplicatePendingItemError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from approvalflow.expert_review import ExpertReviewService
from approvalflow.legal_validation import TextAnalysisService
from approvalflow.models import (
    ConfidenceLevel,
    EventType,
    ExpertReview,
    ItemStatus,
    ValidationReviewStatus,
)

UNCERTAIN_TEXT = "It might be high risk, possibly. It seems unclear and ambiguous."


class BrokenAnalyzer(TextAnalysisService):
    def analyze(self, text, context=None):
        raise RuntimeError("offline")


@pytest.fixture
def service(engine):
    return ExpertReviewService(engine)


class TestRequestReview:
    def test_request_stores_validation_result(self, service):
        review = service.request_review(UNCERTAIN_TEXT, review_type="risk_assessment", submitted_by="s1")

        assert isinstance(review, ExpertReview)
        assert review.status == ItemStatus.PENDING
        assert review.review_type == "risk_assessment"
        assert review.validation_result.confidence_level == ConfidenceLevel.LOW
        assert review.validation_result.review_required

        loaded = service.get_review(review.id)
        assert loaded.text == UNCERTAIN_TEXT

    def test_empty_text(self, service):
        with pytest.raises(ValidationError) as exc:
            service.request_review("  ")
        assert exc.value.field == "text"

    def test_analyzer_failure_still_queues_review(self, engine):
        service = ExpertReviewService(engine, analyzer=BrokenAnalyzer())
        review = service.request_review("Some text")
        assert review.validation_result.review_status == ValidationReviewStatus.REQUIRES_LEGAL_REVIEW

    def test_one_open_review_per_source(self, service):
        first = service.request_review("text", source_id="assessment-1")
        with pytest.raises(DuplicatePendingItemError) as exc:
            service.request_review("text again", source_id="assessment-1")
        assert exc.value.existing_item_id == first.id


class TestListAndGet:
    def test_list_filters_by_type(self, service, engine):
        service.request_review("a", review_type="risk_assessment")
        service.request_review("b", review_type="general")
        engine.submit_for_approval("document", "doc-1", "Not an expert review")

        assert len(service.list_reviews()) == 2
        [review] = service.list_reviews(review_type="general")
        assert review.text == "b"
        assert service.list_reviews(status="completed") == []

    def test_get_rejects_other_items(self, service, engine):
        item_id = engine.submit_for_approval("document", "doc-1", "Doc")
        with pytest.raises(NotFoundError) as exc:
            service.get_review(item_id)
        assert exc.value.resource == "expert_review"


class TestUpdateReview:
    def test_assign_starts_review(self, service):
        review = service.request_review("text")
        updated = service.update_review(review.id, assigned_to="u1", actor="admin")

        assert updated.status == ItemStatus.IN_PROGRESS
        assert updated.assignees == ["u1"]

    def test_complete_with_feedback(self, service):
        review = service.request_review("text")
        service.update_review(review.id, assigned_to="u1")
        done = service.update_review(review.id, status="completed", expert_feedback="Accurate")

        assert done.status == ItemStatus.COMPLETED
        assert done.expert_feedback == "Accurate"
        assert done.completed_at is not None

    def test_start_without_expert(self, service):
        review = service.request_review("text")
        with pytest.raises(ValidationError) as exc:
            service.update_review(review.id, status="in_progress")
        assert exc.value.field == "assigned_to"

    def test_feedback_requires_status(self, service):
        review = service.request_review("text")
        with pytest.raises(ValidationError) as exc:
            service.update_review(review.id, assigned_to="u1", expert_feedback="early")
        assert exc.value.field == "status"
        assert service.get_review(review.id).status == ItemStatus.PENDING

    def test_cannot_complete_pending_review(self, service):
        review = service.request_review("text")
        with pytest.raises(InvalidTransitionError):
            service.update_review(review.id, status="completed")

    def test_no_rejected_state(self, service):
        review = service.request_review("text")
        service.update_review(review.id, assigned_to="u1")
        with pytest.raises(InvalidTransitionError):
            service.update_review(review.id, status="rejected")

    def test_invalid_status_leaves_review_unassigned(self, service, engine, dispatcher, sink):
        review = service.request_review("text")
        with pytest.raises(InvalidTransitionError):
            service.update_review(review.id, status="rejected", assigned_to="u1")

        loaded = service.get_review(review.id)
        assert loaded.status == ItemStatus.PENDING
        assert loaded.assignees == []
        assert loaded.version == review.version
        assert engine.get_assignments(review.id) == []

        dispatcher.drain()
        assert [e.event_type for e in sink.events] == [EventType.SUBMISSION]

    def test_assign_and_complete_in_one_call(self, service, dispatcher, sink):
        review = service.request_review("text")
        done = service.update_review(
            review.id, status="completed", assigned_to="u1", expert_feedback="Accurate"
        )

        assert done.status == ItemStatus.COMPLETED
        assert done.assignees == ["u1"]
        assert done.expert_feedback == "Accurate"

        dispatcher.drain()
        assert [e.event_type for e in sink.events] == [
            EventType.SUBMISSION,
            EventType.ASSIGNMENT,
            EventType.COMPLETION,
        ]

    def test_assign_with_started_status(self, service):
        review = service.request_review("text")
        updated = service.update_review(review.id, status="in_progress", assigned_to="u2")

        assert updated.status == ItemStatus.IN_PROGRESS
        assert updated.assignees == ["u2"]
