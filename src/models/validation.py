"""
Input validation and small derivation rules shared by ingestion and classification.
"""

import re
from typing import Any, Optional

from src.config.constants import (
    ALLOWED_SOURCES,
    MAX_BODY_CHARS,
    MAX_TIER_CHARS,
    MAX_TITLE_CHARS,
    THEME_TAXONOMY,
)
from src.models.errors import ValidationError
from src.models.schemas import FeedbackInput, Severity


def to_severity(urgency_score: float) -> Severity:
    """Bucket an urgency score (0-100) into a severity level."""
    if urgency_score >= 70:
        return Severity.HIGH
    if urgency_score >= 40:
        return Severity.MEDIUM
    return Severity.LOW


def theme_is_valid(theme: Any) -> bool:
    return isinstance(theme, str) and theme in THEME_TAXONOMY


def normalize_text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def normalize_source(value: Any) -> str:
    if not isinstance(value, str):
        return ""
    return re.sub(r'\s+', ' ', value.strip().lower())


def _field(data: Any, name: str) -> Optional[Any]:
    if isinstance(data, dict):
        return data.get(name)
    return getattr(data, name, None)


def validate_feedback_input(data: Any) -> FeedbackInput:
    """
    Validate and normalize a feedback payload.
    
    Args:
        data: Mapping or object with source, title, body and customer_tier
    
    Returns:
        Normalized FeedbackInput with empty optional fields set to None
    
    Raises:
        ValidationError: With a message suitable for returning to the submitter
    """
    source = normalize_source(_field(data, "source"))
    if source not in ALLOWED_SOURCES:
        raise ValidationError(f"Invalid source. Allowed: {', '.join(ALLOWED_SOURCES)}")
    
    title = normalize_text(_field(data, "title"))
    body = normalize_text(_field(data, "body"))
    customer_tier = normalize_text(_field(data, "customer_tier"))
    
    if not body:
        raise ValidationError("Body is required")
    if len(body) > MAX_BODY_CHARS:
        raise ValidationError(f"Body too long (max {MAX_BODY_CHARS} chars)")
    if len(title) > MAX_TITLE_CHARS:
        raise ValidationError(f"Title too long (max {MAX_TITLE_CHARS} chars)")
    if len(customer_tier) > MAX_TIER_CHARS:
        raise ValidationError(f"Customer tier too long (max {MAX_TIER_CHARS} chars)")
    
    return FeedbackInput(
        source=source,
        title=title or None,
        body=body,
        customer_tier=customer_tier or None
    )
