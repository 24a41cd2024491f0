from pydantic import BaseModel, Field, ConfigDict
from datetime import datetime
from typing import Optional, List, Dict, Any, Tuple
from enum import Enum


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class FeedbackInput(BaseModel):
    """Feedback fields after ingestion validation."""
    source: str
    body: str
    title: Optional[str] = None
    customer_tier: Optional[str] = None


class FeedbackRecord(BaseModel):
    """Stored customer feedback record."""
    id: str
    source: str
    body: str
    created_at: datetime
    title: Optional[str] = None
    customer_tier: Optional[str] = None

    @property
    def search_text(self) -> str:
        """Text used for embedding and similarity queries."""
        return f"{self.title or ''}\n{self.body}"


class StructuredAnalysis(BaseModel):
    """Validated classifier output."""
    summary: str
    theme: str
    sentiment_label: str
    sentiment_score: float = Field(..., ge=0.0, le=1.0)
    urgency_score: int = Field(..., ge=0, le=100)
    proposed_fix: str
    suggested_owner: str


class AnalysisRecord(BaseModel):
    """Stored classification result, at most one per feedback record."""
    model_config = ConfigDict(use_enum_values=True)

    feedback_id: str
    summary: str
    theme: str
    sentiment_label: str
    sentiment_score: float = Field(..., ge=0.0, le=1.0)
    urgency_score: int = Field(..., ge=0, le=100)
    severity: Severity
    suggested_owner: str
    proposed_fix: str
    analyzed_at: datetime
    model: str


class FeedbackWithAnalysis(BaseModel):
    """Feedback row joined with its analysis, if any."""
    id: str
    source: str
    body: str
    created_at: datetime
    title: Optional[str] = None
    customer_tier: Optional[str] = None
    summary: Optional[str] = None
    theme: Optional[str] = None
    sentiment_label: Optional[str] = None
    sentiment_score: Optional[float] = None
    urgency_score: Optional[int] = None
    severity: Optional[str] = None
    suggested_owner: Optional[str] = None


class SeedItem(BaseModel):
    """Raw dataset item; fields are validated at insert time, not here."""
    id: Optional[str] = None
    source: Optional[Any] = None
    title: Optional[Any] = None
    body: Optional[Any] = None
    customer_tier: Optional[Any] = None
    created_at: Optional[Any] = None


class GoldenRecord(SeedItem):
    """Labeled golden item with its duplicate grouping key."""
    duplicate_pair_id: Optional[str] = None
    ground_truth_theme: Optional[str] = None

    def to_seed_item(self) -> SeedItem:
        return SeedItem(**self.model_dump(exclude={"duplicate_pair_id", "ground_truth_theme"}))


class SkippedItem(BaseModel):
    id: Optional[str] = None
    reason: str


class SeedResult(BaseModel):
    inserted: List[str] = Field(default_factory=list)
    duplicate_pairs: List[Tuple[str, str]] = Field(default_factory=list)
    skipped: List[SkippedItem] = Field(default_factory=list)


class EvalRun(BaseModel):
    """One evaluation invocation and its aggregate metrics."""
    id: str
    created_at: datetime
    model: str
    prompt_version: str
    total_cases: int
    json_valid_rate: float = Field(..., ge=0.0, le=1.0)
    theme_valid_rate: float = Field(..., ge=0.0, le=1.0)
    recall_at_3: Optional[float] = None


class EvalCase(BaseModel):
    """Per golden item outcome within a run."""
    run_id: str
    feedback_id: str
    json_valid: bool
    theme_valid: bool
    recall_hit: Optional[bool] = None
    notes: Optional[str] = None


class EvalRunResult(BaseModel):
    run_id: str
    created_at: datetime
    total_cases: int
    json_valid_rate: float
    theme_valid_rate: float
    recall_at_3: Optional[float] = None


class EvalReport(BaseModel):
    latest: Optional[EvalRun] = None
    failing_cases: List[EvalCase] = Field(default_factory=list)


class VectorMatch(BaseModel):
    """Nearest-neighbour hit from the retrieval index."""
    id: str
    score: float
    metadata: Dict[str, Any] = Field(default_factory=dict)


class SearchResponse(BaseModel):
    results: List[FeedbackWithAnalysis] = Field(default_factory=list)
    note: Optional[str] = None


class ThemeSummary(BaseModel):
    theme: str
    count: int
    examples: List[str] = Field(default_factory=list)
