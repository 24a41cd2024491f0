"""
Evaluation pipeline: seed the golden set, re-classify and re-index it, score
classification validity and Recall@3 over known duplicate pairs, and persist
the run with one case row per processed item.
"""

from typing import Any, Dict, List, Optional, Tuple
from datetime import datetime, timezone
from pathlib import Path
import argparse
import json
import logging
import uuid

from pydantic import TypeAdapter, ValidationError as PydanticValidationError

from src.config.settings import Settings
from src.config.constants import (
    NOTE_ANALYSIS_FAILED,
    NOTE_INDEX_NOT_CONFIGURED,
    NOTE_RECALL_MISS,
    REASON_ALREADY_EXISTS,
    REASON_VALIDATION_FAILED,
)
from src.config.logging_config import configure_logging
from src.data.datasets import (
    DuplicatePair,
    build_duplicate_pairs,
    extract_seed_payload,
    golden_seed_items,
    load_golden_records,
)
from src.data_access.sql_client import SQLClient
from src.data_access.vector_index import VectorIndex
from src.embedding.embedder import Embedder
from src.agents.llm_agent import FeedbackClassifier
from src.pipelines.analysis import AnalysisService
from src.models.errors import CapabilityUnavailable, ClassificationError, ValidationError
from src.models.schemas import (
    EvalCase,
    EvalReport,
    EvalRun,
    EvalRunResult,
    FeedbackRecord,
    SeedItem,
    SeedResult,
    SkippedItem,
)
from src.models.validation import theme_is_valid, validate_feedback_input


logger = logging.getLogger(__name__)

_DATETIME = TypeAdapter(datetime)


def resolve_created_at(value: Any) -> datetime:
    """Parse a supplied ISO timestamp, falling back to now (UTC)."""
    if isinstance(value, str) and value.strip():
        try:
            parsed = _DATETIME.validate_python(value.strip())
        except PydanticValidationError:
            parsed = None
        if parsed is not None:
            return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return datetime.now(timezone.utc)


def compute_rate(count: int, total: int) -> float:
    return count / total if total else 0.0


def compute_recall(hits: int, pair_count: int, index_configured: bool) -> Optional[float]:
    """Recall over every configured pair; None without an index or without pairs."""
    if not index_configured or pair_count == 0:
        return None
    return hits / pair_count


class EvaluationPipeline:
    """Golden-set evaluation of classification and retrieval quality."""

    def __init__(
        self,
        config: Settings,
        golden_items: Optional[List[SeedItem]] = None,
        duplicate_pairs: Optional[List[DuplicatePair]] = None
    ):
        """
        Initialize the evaluation pipeline.

        Args:
            config: Application settings
            golden_items: Items to seed and evaluate. If None, the packaged golden dataset is used.
            duplicate_pairs: Ground-truth pairs for recall. If None, derived from the packaged golden dataset.
        """
        self.config = config
        self.sql_client = SQLClient(config)
        self.vector_index = VectorIndex(config)
        self.embedder = Embedder(config)
        self.classifier = FeedbackClassifier(config)
        self.analysis = AnalysisService(
            config, self.sql_client, self.vector_index, self.embedder, self.classifier
        )

        if golden_items is None or duplicate_pairs is None:
            records = load_golden_records()
            if golden_items is None:
                golden_items = golden_seed_items(records)
            if duplicate_pairs is None:
                duplicate_pairs = build_duplicate_pairs(records)
        self.golden_items = golden_items
        self.duplicate_pairs = duplicate_pairs

    def seed(
        self,
        items: Optional[List[SeedItem]] = None,
        duplicate_pairs: Optional[List[DuplicatePair]] = None
    ) -> SeedResult:
        """
        Insert golden items that are not already stored.

        Safe to repeat: ids already present are reported as skipped.

        Returns:
            SeedResult with inserted ids, the duplicate pairs in effect and skipped items
        """
        items = self.golden_items if items is None else items
        duplicate_pairs = self.duplicate_pairs if duplicate_pairs is None else duplicate_pairs

        result = SeedResult(duplicate_pairs=duplicate_pairs)
        for item in items:
            feedback_id = str(item.id) if item.id else str(uuid.uuid4())

            if self.sql_client.get_feedback_by_id(feedback_id) is not None:
                result.skipped.append(SkippedItem(id=feedback_id, reason=REASON_ALREADY_EXISTS))
                continue

            try:
                validated = validate_feedback_input(item)
            except ValidationError as e:
                logger.info(f"Skipping golden item {feedback_id}: {e}")
                result.skipped.append(SkippedItem(id=feedback_id, reason=REASON_VALIDATION_FAILED))
                continue

            record = FeedbackRecord(
                id=feedback_id,
                source=validated.source,
                title=validated.title,
                body=validated.body,
                customer_tier=validated.customer_tier,
                created_at=resolve_created_at(item.created_at)
            )
            if self.sql_client.insert_feedback(record):
                result.inserted.append(feedback_id)
            else:
                # Inserted by a concurrent caller between the lookup and the insert
                result.skipped.append(SkippedItem(id=feedback_id, reason=REASON_ALREADY_EXISTS))

        logger.info(f"Seed complete: {len(result.inserted)} inserted, {len(result.skipped)} skipped")
        return result

    def run(self) -> EvalRunResult:
        """
        Execute one evaluation run.

        Returns:
            Aggregate metrics and the run id

        Raises:
            CapabilityUnavailable: If the classifier is not configured
            StoreError: If the record store fails at any step
        """
        if not self.classifier.is_available:
            raise CapabilityUnavailable("chat")

        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)

        run_id = str(uuid.uuid4())
        created_at = datetime.now(timezone.utc)
        logger.info(f"Starting evaluation run {run_id}")

        self.seed()

        cases, valid_json_count, valid_theme_count = self._classify_pass(run_id)
        hits = self._recall_pass(cases)

        total_cases = len(cases)
        run = EvalRun(
            id=run_id,
            created_at=created_at,
            model=self.classifier.model,
            prompt_version=self.config.prompt_version,
            total_cases=total_cases,
            json_valid_rate=compute_rate(valid_json_count, total_cases),
            theme_valid_rate=compute_rate(valid_theme_count, total_cases),
            recall_at_3=compute_recall(hits, len(self.duplicate_pairs), self.vector_index.is_configured)
        )

        self.sql_client.insert_eval_run(run)
        for case in cases.values():
            self.sql_client.insert_eval_case(case)

        logger.info(
            f"Evaluation run {run_id} complete: {total_cases} cases, "
            f"json_valid_rate={run.json_valid_rate:.2f}, theme_valid_rate={run.theme_valid_rate:.2f}, "
            f"recall_at_3={run.recall_at_3}"
        )

        return EvalRunResult(
            run_id=run.id,
            created_at=run.created_at,
            total_cases=run.total_cases,
            json_valid_rate=run.json_valid_rate,
            theme_valid_rate=run.theme_valid_rate,
            recall_at_3=run.recall_at_3
        )

    def latest(self) -> EvalReport:
        """Most recent run with its newest failing cases."""
        return EvalReport(
            latest=self.sql_client.get_latest_eval_run(),
            failing_cases=self.sql_client.list_failing_eval_cases(self.config.failing_cases_limit)
        )

    def _classify_pass(self, run_id: str) -> Tuple[Dict[str, EvalCase], int, int]:
        """
        Re-classify every stored golden item.

        Returns:
            Cases keyed by feedback id in golden order, valid JSON count, valid theme count
        """
        cases: Dict[str, EvalCase] = {}
        valid_json_count = 0
        valid_theme_count = 0

        for item in self.golden_items:
            if not item.id:
                continue
            feedback = self.sql_client.get_feedback_by_id(str(item.id))
            if feedback is None:
                logger.warning(f"Golden item {item.id} not in store; no case recorded")
                continue

            try:
                analysis = self.analysis.analyze_and_store(feedback)
            except ClassificationError as e:
                logger.warning(f"Analysis failed for golden item {feedback.id}: {e.reason}")
                cases[feedback.id] = EvalCase(
                    run_id=run_id,
                    feedback_id=feedback.id,
                    json_valid=False,
                    theme_valid=False,
                    notes=NOTE_ANALYSIS_FAILED
                )
                continue

            theme_valid = theme_is_valid(analysis.theme)
            valid_json_count += 1
            valid_theme_count += int(theme_valid)
            cases[feedback.id] = EvalCase(
                run_id=run_id,
                feedback_id=feedback.id,
                json_valid=True,
                theme_valid=theme_valid
            )

        return cases, valid_json_count, valid_theme_count

    def _recall_pass(self, cases: Dict[str, EvalCase]) -> int:
        """
        Score each duplicate pair (A, B) by whether B is in A's top results.

        Updates the A-side case in place and returns the hit count. Pairs whose
        A record is missing score no hit.
        """
        if not self.vector_index.is_configured:
            for id_a, _ in self.duplicate_pairs:
                case = cases.get(id_a)
                if case is not None:
                    case.recall_hit = None
                    case.notes = NOTE_INDEX_NOT_CONFIGURED
            return 0

        top_k = self.config.recall_top_k
        hits = 0
        for id_a, id_b in self.duplicate_pairs:
            feedback = self.sql_client.get_feedback_by_id(id_a)
            if feedback is None:
                logger.warning(f"Duplicate pair ({id_a}, {id_b}) skipped: {id_a} not in store")
                continue

            response = self.analysis.search(feedback.search_text, max(self.config.search_limit, top_k))
            top_ids = [row.id for row in response.results[:top_k]]
            hit = id_b in top_ids
            hits += int(hit)

            case = cases.get(id_a)
            if case is not None:
                case.recall_hit = hit
                if not hit:
                    case.notes = f"{case.notes}; {NOTE_RECALL_MISS}" if case.notes else NOTE_RECALL_MISS

        return hits


def _print_seed(result: SeedResult) -> None:
    print("\n" + "="*60)
    print("GOLDEN SET SEED RESULTS")
    print("="*60)
    print(f"Inserted: {len(result.inserted)}")
    print(f"Skipped: {len(result.skipped)}")
    for skipped in result.skipped:
        print(f"  {skipped.id}: {skipped.reason}")
    print(f"Duplicate pairs: {len(result.duplicate_pairs)}")
    print("="*60)


def _print_run(result: EvalRunResult) -> None:
    recall = f"{result.recall_at_3:.2%}" if result.recall_at_3 is not None else "n/a (no vector index)"
    print("\n" + "="*60)
    print("EVALUATION RUN RESULTS")
    print("="*60)
    print(f"Run id: {result.run_id}")
    print(f"Total cases: {result.total_cases}")
    print(f"JSON valid rate: {result.json_valid_rate:.2%}")
    print(f"Theme valid rate: {result.theme_valid_rate:.2%}")
    print(f"Recall@3: {recall}")
    print("="*60)


def main():
    """Main entry point for seeding, running and inspecting evaluations."""
    parser = argparse.ArgumentParser(
        description='Seed the golden set, run an evaluation, or show the latest run.'
    )
    parser.add_argument(
        '--json',
        action='store_true',
        help='Print results as JSON instead of a summary'
    )
    parser.add_argument(
        '--init-schema',
        action='store_true',
        help='Create store and index tables if they do not exist'
    )
    subparsers = parser.add_subparsers(dest='command', required=True)

    seed_parser = subparsers.add_parser('seed', help='Insert golden items that are not stored yet')
    seed_parser.add_argument(
        '--file',
        type=str,
        help='JSON file with a list of items or an object with "items" and "duplicate_pairs"'
    )
    subparsers.add_parser('run', help='Run a full evaluation')
    subparsers.add_parser('latest', help='Show the latest run and its failing cases')

    args = parser.parse_args()

    # Load configuration
    config = Settings()
    configure_logging(config.log_level)

    pipeline = EvaluationPipeline(config)
    try:
        if args.init_schema:
            pipeline.sql_client.initialize_schema()
            pipeline.vector_index.initialize_schema()
        if args.command == 'seed':
            payload = None
            if args.file:
                payload = json.loads(Path(args.file).read_text(encoding="utf-8"))
            items, pairs = extract_seed_payload(payload, pipeline.golden_items, pipeline.duplicate_pairs)
            result = pipeline.seed(items, pairs)
            if args.json:
                print(result.model_dump_json(indent=2))
            else:
                _print_seed(result)
        elif args.command == 'run':
            result = pipeline.run()
            if args.json:
                print(result.model_dump_json(indent=2))
            else:
                _print_run(result)
        else:
            print(pipeline.latest().model_dump_json(indent=2))
    finally:
        pipeline.sql_client.close()
        pipeline.vector_index.close()


if __name__ == "__main__":
    main()
