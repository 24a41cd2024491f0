"""
Ingestion pipeline for new feedback.
Validates and stores single records or bulk payloads, optionally classifying
each inserted record afterwards.
"""

from typing import Any, Dict, List, Optional
from datetime import datetime, timezone
from pathlib import Path
import argparse
import json
import logging
import uuid

from src.config.settings import Settings
from src.config.constants import REASON_DUPLICATE_ID, REASON_VALIDATION_FAILED
from src.config.logging_config import configure_logging
from src.data.datasets import load_messy_items
from src.data_access.sql_client import SQLClient
from src.data_access.vector_index import VectorIndex
from src.embedding.embedder import Embedder
from src.agents.llm_agent import FeedbackClassifier
from src.pipelines.analysis import AnalysisService
from src.models.errors import ClassificationError, FeedbackNotFoundError, ValidationError
from src.models.schemas import FeedbackRecord
from src.models.validation import validate_feedback_input


logger = logging.getLogger(__name__)


class IngestionPipeline:
    """Pipeline for ingesting feedback records."""

    def __init__(self, config: Settings):
        """
        Initialize the ingestion pipeline.

        Args:
            config: Application settings
        """
        self.config = config
        self.sql_client = SQLClient(config)
        self.vector_index = VectorIndex(config)
        self.embedder = Embedder(config)
        self.classifier = FeedbackClassifier(config)
        self.analysis = AnalysisService(
            config, self.sql_client, self.vector_index, self.embedder, self.classifier
        )

    def ingest(self, data: Any) -> str:
        """
        Validate and store one feedback record under a fresh id.

        Returns:
            The new record id

        Raises:
            ValidationError: If the payload fails ingestion validation
        """
        validated = validate_feedback_input(data)
        record = FeedbackRecord(
            id=str(uuid.uuid4()),
            source=validated.source,
            title=validated.title,
            body=validated.body,
            customer_tier=validated.customer_tier,
            created_at=datetime.now(timezone.utc)
        )
        self.sql_client.insert_feedback(record)
        logger.info(f"Ingested feedback {record.id} from {record.source}")
        return record.id

    def bulk_ingest(self, items: List[Any], analyze: bool = False) -> Dict[str, Any]:
        """
        Validate and store a batch of feedback records.

        Args:
            items: Raw payloads; an item's own "id" is kept when present
            analyze: Classify every inserted record once all inserts are done

        Returns:
            Dictionary with inserted ids and skipped item indexes with reasons
        """
        inserted: List[str] = []
        skipped: List[Dict[str, Any]] = []

        for index, item in enumerate(items):
            try:
                validated = validate_feedback_input(item)
            except ValidationError as e:
                logger.info(f"Skipping item {index}: {e}")
                skipped.append({"index": index, "reason": REASON_VALIDATION_FAILED})
                continue

            item_id = item.get("id") if isinstance(item, dict) else None
            record = FeedbackRecord(
                id=str(item_id) if item_id else str(uuid.uuid4()),
                source=validated.source,
                title=validated.title,
                body=validated.body,
                customer_tier=validated.customer_tier,
                created_at=datetime.now(timezone.utc)
            )
            if not self.sql_client.insert_feedback(record):
                skipped.append({"index": index, "reason": REASON_DUPLICATE_ID})
                continue
            inserted.append(record.id)

        logger.info(f"Bulk ingest: {len(inserted)} inserted, {len(skipped)} skipped")

        analyzed = 0
        if analyze:
            analyzed = self._analyze_inserted(inserted)

        return {
            "inserted_count": len(inserted),
            "inserted_ids": inserted,
            "skipped": skipped,
            "analyzed_count": analyzed
        }

    def _analyze_inserted(self, feedback_ids: List[str]) -> int:
        """Classify each id independently; one failure does not stop the rest."""
        analyzed = 0
        for feedback_id in feedback_ids:
            try:
                self.analysis.analyze_by_id(feedback_id)
                analyzed += 1
            except (ClassificationError, FeedbackNotFoundError) as e:
                logger.warning(f"Analysis failed for {feedback_id}: {e}")
        logger.info(f"Analyzed {analyzed}/{len(feedback_ids)} inserted records")
        return analyzed


def main():
    """Main entry point for running bulk ingestion with CLI arguments."""
    # Parse command-line arguments
    parser = argparse.ArgumentParser(
        description='Ingest a JSON array of feedback records.'
    )
    parser.add_argument(
        '--file',
        type=str,
        help='JSON file containing an array of feedback items (default: packaged messy sample)'
    )
    parser.add_argument(
        '--analyze',
        action='store_true',
        help='Classify every inserted record after ingestion'
    )
    parser.add_argument(
        '--init-schema',
        action='store_true',
        help='Create store and index tables if they do not exist'
    )

    args = parser.parse_args()

    if args.file:
        try:
            items = json.loads(Path(args.file).read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            parser.error(f"Could not read {args.file}: {e}")
        if not isinstance(items, list):
            parser.error("Expected a JSON array of feedback items")
    else:
        items = load_messy_items()

    # Load configuration
    config = Settings()
    configure_logging(config.log_level)

    pipeline = IngestionPipeline(config)
    try:
        if args.init_schema:
            pipeline.sql_client.initialize_schema()
            pipeline.vector_index.initialize_schema()
        stats = pipeline.bulk_ingest(items, analyze=args.analyze)
    finally:
        pipeline.sql_client.close()
        pipeline.vector_index.close()

    # Print results
    print("\n" + "="*60)
    print("INGESTION RESULTS")
    print("="*60)
    print(f"Inserted: {stats['inserted_count']}")
    print(f"Skipped: {len(stats['skipped'])}")
    for skipped in stats['skipped']:
        print(f"  item {skipped['index']}: {skipped['reason']}")
    if args.analyze:
        print(f"Analyzed: {stats['analyzed_count']}")
    print("="*60)


if __name__ == "__main__":
    main()
