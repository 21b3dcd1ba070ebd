"""
Expert legal review of AI-generated text.

An expert review is a reviewable item of type ``expert_legal_review`` that
carries the text under review and the automated validation result. It moves
pending -> in_progress (when an expert is assigned) -> completed.
"""

import logging
from typing import Any, Optional

from .engine import AssignmentEngine
from .exceptions import NotFoundError, ValidationError
from .legal_validation import RuleBasedTextAnalyzer, TextAnalysisService, analyze_safely
from .models import ExpertReview, ItemStatus, ModuleType
from .store import new_item_id
from .validation import parse_priority, parse_status, validate_required

logger = logging.getLogger("approvalflow.expert_review")


class ExpertReviewService:
    def __init__(
        self,
        engine: AssignmentEngine,
        analyzer: Optional[TextAnalysisService] = None,
    ):
        self.engine = engine
        self.analyzer = analyzer or RuleBasedTextAnalyzer()

    def request_review(
        self,
        text: str,
        review_type: str = "general",
        title: Optional[str] = None,
        source_id: Optional[str] = None,
        priority: Any = None,
        submitted_by: Optional[str] = None,
        context: Optional[dict[str, Any]] = None,
    ) -> ExpertReview:
        """Analyze ``text`` and queue it for expert review."""
        validate_required(text, "text")
        result = analyze_safely(self.analyzer, text, context)
        review = self.engine.submit(
            ModuleType.EXPERT_LEGAL_REVIEW,
            source_id or new_item_id(),
            title or f"Expert review: {review_type}",
            priority=parse_priority(priority),
            submitted_by=submitted_by,
            text=text,
            review_type=review_type,
            validation_result=result,
        )
        logger.info(
            "Expert review %s requested (confidence=%s, review_required=%s)",
            review.id,
            result.confidence_level.value,
            result.review_required,
        )
        return review

    def list_reviews(
        self,
        status: Optional[str] = None,
        review_type: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[ExpertReview]:
        return self.engine.list_items(
            status=[status] if status else None,
            module_type=ModuleType.EXPERT_LEGAL_REVIEW,
            review_type=review_type,
            limit=limit,
            offset=offset,
        )

    def get_review(self, review_id: str) -> ExpertReview:
        item = self.engine.get_item(review_id)
        if item.module_type != ModuleType.EXPERT_LEGAL_REVIEW:
            raise NotFoundError(
                f"Expert review {review_id} not found",
                resource="expert_review",
                identifier=review_id,
            )
        return item

    def update_review(
        self,
        review_id: str,
        status: Optional[str] = None,
        assigned_to: Optional[str] = None,
        expert_feedback: Optional[str] = None,
        actor: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> ExpertReview:
        """
        Assign an expert and/or move the review forward.

        Assigning a pending review starts it. Moving to ``in_progress``
        without an assignee is rejected. An assignment combined with a status
        change is stored as one step, so an invalid status leaves the review
        unassigned.
        """
        review = self.get_review(review_id)
        new_status = parse_status(status) if status else None
        if expert_feedback is not None and new_status is None:
            raise ValidationError(
                "expert_feedback is recorded together with a status change", field="status"
            )

        if assigned_to:
            if new_status is None:
                return self.engine.assign_manually(
                    review_id,
                    [assigned_to],
                    note="expert assignment",
                    actor=actor,
                    expected_version=expected_version,
                )
            return self.engine.assign_and_update_status(
                review_id,
                [assigned_to],
                new_status,
                note="expert assignment",
                actor=actor,
                feedback=expert_feedback,
                expected_version=expected_version,
            )

        if new_status == ItemStatus.IN_PROGRESS and not review.assignees:
            raise ValidationError(
                "An expert must be assigned before the review can start",
                field="assigned_to",
            )
        if new_status is not None and new_status != review.status:
            review = self.engine.update_review_status(
                review_id,
                new_status,
                actor=actor,
                feedback=expert_feedback,
                expected_version=expected_version,
            )
        return review
