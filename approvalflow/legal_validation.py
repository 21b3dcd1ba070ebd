"""
Legal validation of AI-generated compliance text.

``RuleBasedTextAnalyzer`` is the default Text-Analysis Service. Any service
can be wrapped with ``analyze_safely`` so its failures come back as a
``requires_legal_review`` result instead of an exception.
"""

import logging
import re
from abc import ABC, abstractmethod
from typing import Any, Optional

import httpx

from .models import ConfidenceLevel, RetryPolicy, ValidationResult, ValidationReviewStatus
from .retry import call_with_retry

logger = logging.getLogger("approvalflow.legal_validation")

UNCERTAINTY_PHRASES = (
    "might be",
    "possibly",
    "could be",
    "unclear",
    "uncertain",
    "may be",
    "potential",
    "arguably",
    "seems",
    "appears to be",
    "not entirely clear",
    "ambiguous",
    "open to interpretation",
)

CERTAINTY_PHRASES = (
    "definitely",
    "certainly",
    "clearly",
    "without doubt",
    "unquestionably",
    "is required",
    "must be",
    "explicitly states",
    "according to article",
    "precisely",
    "specifically mandates",
    "is prohibited",
)

MAX_ARTICLE = 85
MAX_PARAGRAPH = 10

_REFERENCE = re.compile(
    r"Article (\d+)(?:\((\d+)\))?(?:\s*(?:of the EU AI Act|of Regulation|EU AI Act))?",
    re.IGNORECASE,
)

_CONTRADICTIONS = (
    (r"is high risk.*is not high risk", "Contradicting statements about high risk classification"),
    (r"is prohibited.*is allowed", "Contradicting statements about prohibition"),
    (r"must comply.*exempt from", "Contradicting statements about compliance requirements"),
    (
        r"Article \d+ applies.*Article \d+ does not apply",
        "Contradicting statements about applicable articles",
    ),
)

_REQUIRED_SECTIONS = (
    ("Risk Classification", r"risk (classification|category|level)"),
    ("Required Actions", r"(required|recommended|necessary) (actions|steps|measures)"),
    ("Legal Basis", r"(legal basis|according to article|based on the EU AI Act)"),
    (
        "Limitations",
        r"(limitations|constraints|restrictions|this (assessment|analysis) (does not|is not))",
    ),
)


def analyze_confidence(text: str) -> ConfidenceLevel:
    lowered = text.lower()
    uncertain = sum(1 for phrase in UNCERTAINTY_PHRASES if phrase in lowered)
    certain = sum(1 for phrase in CERTAINTY_PHRASES if phrase in lowered)

    if uncertain > 3 and certain < 2:
        return ConfidenceLevel.LOW
    if uncertain <= 1 and certain >= 3:
        return ConfidenceLevel.HIGH
    return ConfidenceLevel.MEDIUM


def invalid_legal_references(text: str) -> list[str]:
    """Article references outside 1-85, or with a paragraph above 10."""
    invalid = []
    for match in _REFERENCE.finditer(text):
        article = int(match.group(1))
        paragraph = match.group(2)
        if not 1 <= article <= MAX_ARTICLE or (
            paragraph is not None and int(paragraph) > MAX_PARAGRAPH
        ):
            invalid.append(
                f"Article {match.group(1)}({paragraph})"
                if paragraph
                else f"Article {match.group(1)}"
            )
    return invalid


def find_contradictions(text: str) -> list[str]:
    return [
        message
        for pattern, message in _CONTRADICTIONS
        if re.search(pattern, text, re.IGNORECASE | re.DOTALL)
    ]


def missing_sections(text: str) -> list[str]:
    return [
        name for name, pattern in _REQUIRED_SECTIONS if not re.search(pattern, text, re.IGNORECASE)
    ]


def requires_legal_review_result(note: Optional[str] = None) -> ValidationResult:
    return ValidationResult(
        is_valid=False,
        confidence_level=ConfidenceLevel.UNCERTAIN,
        review_status=ValidationReviewStatus.REQUIRES_LEGAL_REVIEW,
        review_required=True,
        validator="system",
        validation_notes=note,
    )


class TextAnalysisService(ABC):
    @abstractmethod
    def analyze(self, text: str, context: Optional[dict[str, Any]] = None) -> ValidationResult:
        ...


class RuleBasedTextAnalyzer(TextAnalysisService):
    """
    Heuristic checks for EU AI Act assessments:

    - confidence from certainty and uncertainty phrases
    - article references within the regulation's range
    - contradictory statements
    - presence of the required sections
    """

    def analyze(self, text, context=None):
        result = ValidationResult(
            is_valid=True,
            confidence_level=analyze_confidence(text),
            review_status=ValidationReviewStatus.VALIDATED,
        )

        if result.confidence_level == ConfidenceLevel.LOW:
            result.warnings.append("Assessment contains high uncertainty language")
            result.review_status = ValidationReviewStatus.REQUIRES_LEGAL_REVIEW
            result.review_required = True

        invalid = invalid_legal_references(text)
        if invalid:
            result.issues.append(f"Invalid legal references: {', '.join(invalid)}")
            result.is_valid = False
            result.review_required = True

        contradictions = find_contradictions(text)
        if contradictions:
            result.issues.extend(contradictions)
            result.is_valid = False
            result.review_status = ValidationReviewStatus.REQUIRES_LEGAL_REVIEW
            result.review_required = True

        missing = missing_sections(text)
        if missing:
            result.issues.append(f"Missing required sections: {', '.join(missing)}")
            result.is_valid = False
            result.review_required = True

        return result


class HttpTextAnalysisService(TextAnalysisService):
    """Remote analyzer: ``POST {base_url}/analyze`` with ``{text, context}``."""

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: float = 30.0,
        retry_policy: Optional[RetryPolicy] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        headers = {"X-API-Key": api_key} if api_key else {}
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"), headers=headers, timeout=timeout, transport=transport
        )
        self.retry_policy = retry_policy or RetryPolicy()

    def analyze(self, text, context=None):
        def attempt():
            response = self._client.post("/analyze", json={"text": text, "context": context or {}})
            response.raise_for_status()
            return response.json()

        data = call_with_retry(
            attempt,
            policy=self.retry_policy,
            retry_on=(httpx.HTTPError,),
            description="text analysis",
        )
        return ValidationResult.from_dict(data)

    def close(self) -> None:
        self._client.close()


def analyze_safely(
    service: TextAnalysisService, text: str, context: Optional[dict[str, Any]] = None
) -> ValidationResult:
    try:
        return service.analyze(text, context)
    except Exception:
        logger.exception("Text analysis failed; flagging for legal review")
        return requires_legal_review_result("Automated analysis unavailable")


def requires_expert_review(assessment: dict[str, Any]) -> bool:
    """
    Whether an assessment must go to a legal expert: high or unacceptable
    risk, low or uncertain confidence, or any validation issue.
    """
    if assessment.get("risk_level", assessment.get("riskLevel")) in ("high", "unacceptable"):
        return True

    confidence = assessment.get("confidence_level", assessment.get("confidenceLevel"))
    if confidence in (ConfidenceLevel.LOW, ConfidenceLevel.UNCERTAIN, "low", "uncertain"):
        return True

    validation = assessment.get("validation")
    if isinstance(validation, ValidationResult):
        return bool(validation.issues) or not validation.is_valid
    if isinstance(validation, dict):
        return bool(validation.get("issues")) or not validation.get(
            "is_valid", validation.get("isValid", True)
        )
    return False
