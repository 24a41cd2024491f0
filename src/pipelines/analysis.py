"""
Classify-and-persist for single feedback records, plus the retrieval helpers
built on top of stored analyses.
"""

from typing import List, Optional
from datetime import datetime, timezone
import logging

from src.config.settings import Settings
from src.config.constants import (
    NOTE_EMBEDDING_FAILED,
    NOTE_INDEX_NOT_CONFIGURED,
    NOTE_INDEX_QUERY_FAILED,
)
from src.data_access.sql_client import SQLClient
from src.data_access.vector_index import VectorIndex
from src.embedding.embedder import Embedder
from src.agents.llm_agent import FeedbackClassifier
from src.models.errors import EmbeddingError, FeedbackNotFoundError, VectorIndexError
from src.models.schemas import (
    AnalysisRecord,
    FeedbackRecord,
    FeedbackWithAnalysis,
    SearchResponse,
    ThemeSummary,
)
from src.models.validation import to_severity


logger = logging.getLogger(__name__)


class AnalysisService:
    """Run the classifier over stored feedback and keep the retrieval index in sync."""

    def __init__(
        self,
        config: Settings,
        sql_client: SQLClient,
        vector_index: VectorIndex,
        embedder: Embedder,
        classifier: FeedbackClassifier
    ):
        self.config = config
        self.sql_client = sql_client
        self.vector_index = vector_index
        self.embedder = embedder
        self.classifier = classifier

    def analyze_and_store(self, feedback: FeedbackRecord) -> AnalysisRecord:
        """
        Classify a record, upsert its analysis and index its embedding.

        Indexing runs synchronously after the store write and its failure is
        logged, not raised.

        Raises:
            ClassificationError: If the classifier fails after its retry
            StoreError: If the analysis cannot be written
        """
        structured = self.classifier.classify(feedback)

        analysis = AnalysisRecord(
            feedback_id=feedback.id,
            summary=structured.summary,
            theme=structured.theme,
            sentiment_label=structured.sentiment_label,
            sentiment_score=structured.sentiment_score,
            urgency_score=structured.urgency_score,
            severity=to_severity(structured.urgency_score),
            suggested_owner=structured.suggested_owner,
            proposed_fix=structured.proposed_fix,
            analyzed_at=datetime.now(timezone.utc),
            model=self.classifier.model
        )
        self.sql_client.upsert_analysis(analysis)

        self.index_feedback(feedback, analysis)
        return analysis

    def analyze_by_id(self, feedback_id: str) -> AnalysisRecord:
        feedback = self.sql_client.get_feedback_by_id(feedback_id)
        if feedback is None:
            raise FeedbackNotFoundError(feedback_id)
        return self.analyze_and_store(feedback)

    def stored_analysis(self, feedback_id: str) -> Optional[AnalysisRecord]:
        """
        The analysis last stored for a record, without re-classifying.

        Returns:
            The stored analysis, or None if the record has not been analyzed

        Raises:
            FeedbackNotFoundError: If no feedback record has this id
        """
        if self.sql_client.get_feedback_by_id(feedback_id) is None:
            raise FeedbackNotFoundError(feedback_id)
        return self.sql_client.get_analysis(feedback_id)

    def index_feedback(self, feedback: FeedbackRecord, analysis: AnalysisRecord) -> bool:
        """
        Embed a record and upsert it into the retrieval index.

        Returns:
            True if the vector was written, False if the index or the
            embedding capability is not configured, or embedding/indexing failed
        """
        if not self.vector_index.is_configured or not self.embedder.is_available:
            return False

        try:
            vector = self.embedder.embed_single(feedback.search_text)
            self.vector_index.upsert(
                feedback.id,
                vector,
                {
                    "theme": analysis.theme,
                    "source": feedback.source,
                    "created_at": feedback.created_at.isoformat(),
                }
            )
        except (EmbeddingError, VectorIndexError) as e:
            logger.warning(f"Indexing skipped for {feedback.id}: {e}")
            return False
        return True

    def search(self, query: str, limit: Optional[int] = None) -> SearchResponse:
        """
        Semantic search over stored feedback.

        Without a retrieval index this falls back to a substring match on
        title and body.

        Returns:
            Stored rows in match order; ids the store no longer has are dropped
        """
        limit = limit or self.config.search_limit

        if not self.vector_index.is_configured:
            rows = self.sql_client.search_feedback_text(query, limit)
            return SearchResponse(results=rows, note=NOTE_INDEX_NOT_CONFIGURED)

        try:
            vector = self.embedder.embed_single(query)
        except EmbeddingError as e:
            logger.warning(f"Search embedding failed: {e}")
            return SearchResponse(results=[], note=NOTE_EMBEDDING_FAILED)

        try:
            matches = self.vector_index.query(vector, top_k=limit)
        except VectorIndexError as e:
            logger.warning(f"Search query failed: {e}")
            return SearchResponse(results=[], note=NOTE_INDEX_QUERY_FAILED)

        ids = [match.id for match in matches if match.id]
        return SearchResponse(results=self._ordered_rows(ids))

    def find_similar(self, feedback: FeedbackRecord, limit: Optional[int] = None) -> SearchResponse:
        """
        Nearest stored neighbours of a record, excluding the record itself.
        """
        limit = limit or self.config.search_limit

        if not self.vector_index.is_configured:
            return SearchResponse(results=[], note=NOTE_INDEX_NOT_CONFIGURED)

        try:
            vector = self.embedder.embed_single(feedback.search_text)
        except EmbeddingError as e:
            logger.warning(f"Similarity embedding failed for {feedback.id}: {e}")
            return SearchResponse(results=[], note=NOTE_EMBEDDING_FAILED)

        try:
            matches = self.vector_index.query(vector, top_k=limit + 1)
        except VectorIndexError as e:
            logger.warning(f"Similarity query failed for {feedback.id}: {e}")
            return SearchResponse(results=[], note=NOTE_INDEX_QUERY_FAILED)

        ids = [match.id for match in matches if match.id and match.id != feedback.id]
        return SearchResponse(results=self._ordered_rows(ids)[:limit])

    def find_similar_by_id(self, feedback_id: str, limit: Optional[int] = None) -> SearchResponse:
        feedback = self.sql_client.get_feedback_by_id(feedback_id)
        if feedback is None:
            raise FeedbackNotFoundError(feedback_id)
        return self.find_similar(feedback, limit)

    def theme_summary(self) -> List[ThemeSummary]:
        """Analysis counts per theme with the two most recently analyzed examples."""
        return [
            ThemeSummary(
                theme=row['theme'],
                count=row['count'],
                examples=self.sql_client.get_theme_examples(row['theme'], limit=2)
            )
            for row in self.sql_client.get_theme_counts()
        ]

    def _ordered_rows(self, ids: List[str]) -> List[FeedbackWithAnalysis]:
        if not ids:
            return []
        rows = self.sql_client.get_feedback_with_analysis_by_ids(ids)
        return [rows[feedback_id] for feedback_id in ids if feedback_id in rows]
