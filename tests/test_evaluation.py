"""Unit tests for the evaluation pipeline."""
import pytest
from unittest.mock import patch
from datetime import datetime, timezone
from src.pipelines.evaluation import (
    EvaluationPipeline,
    compute_rate,
    compute_recall,
    resolve_created_at,
)
from src.models.errors import CapabilityUnavailable, ClassificationError
from src.models.schemas import (
    EvalCase,
    EvalRun,
    FeedbackWithAnalysis,
    SeedItem,
    StructuredAnalysis,
    VectorMatch,
)


GOLDEN_ITEMS = [
    SeedItem(id="a1", source="github issue", title="Deploy 500", body="Deploy returns 500.",
             created_at="2025-01-06T09:12:00Z"),
    SeedItem(id="a2", source="slack", title="Deploy broken", body="HTTP 500 on every deploy."),
    SeedItem(id="b1", source="email", title="Charged twice", body="Two charges on the invoice."),
    SeedItem(id="b2", source="zendesk", title="Double billing", body="We were billed twice."),
    SeedItem(id="c1", source="reddit", title="Dark mode", body="Please add dark mode."),
]
PAIRS = [("a1", "a2"), ("b1", "b2")]


class FakeStore:
    """In-memory stand-in for the SQL client's feedback and eval methods."""

    def __init__(self, mock_sql):
        self.feedback = {}
        self.runs = []
        self.cases = []
        mock_sql.get_feedback_by_id.side_effect = self.feedback.get
        mock_sql.insert_feedback.side_effect = self.insert_feedback
        mock_sql.get_feedback_with_analysis_by_ids.side_effect = self.with_analysis
        mock_sql.insert_eval_run.side_effect = self.runs.append
        mock_sql.insert_eval_case.side_effect = self.cases.append

    def insert_feedback(self, record):
        if record.id in self.feedback:
            return False
        self.feedback[record.id] = record
        return True

    def with_analysis(self, ids):
        return {
            i: FeedbackWithAnalysis(**self.feedback[i].model_dump())
            for i in ids if i in self.feedback
        }


def _structured(theme="Reliability/outage"):
    return StructuredAnalysis(
        summary="Summary.",
        theme=theme,
        sentiment_label="negative",
        sentiment_score=0.2,
        urgency_score=55,
        proposed_fix="Fix it.",
        suggested_owner="Engineering"
    )


def _matches(*ids):
    return [VectorMatch(id=i, score=1.0 - n / 10) for n, i in enumerate(ids)]


@pytest.fixture
def build_pipeline(mock_config, indexed_config):
    """Create an EvaluationPipeline with patched clients and an in-memory store."""
    patchers = [
        patch('src.pipelines.evaluation.SQLClient'),
        patch('src.pipelines.evaluation.VectorIndex'),
        patch('src.pipelines.evaluation.Embedder'),
        patch('src.pipelines.evaluation.FeedbackClassifier'),
    ]
    mock_sql, mock_index, mock_embedder, mock_classifier = [p.start() for p in patchers]

    def _build(indexed=False, items=GOLDEN_ITEMS, pairs=PAIRS, failing=(), themes=None):
        mock_index.return_value.is_configured = indexed
        mock_embedder.return_value.embed_single.return_value = [0.1, 0.2]
        classifier = mock_classifier.return_value
        classifier.is_available = True
        classifier.model = "gpt-4o-mini"

        def classify(feedback):
            if feedback.id in failing:
                raise ClassificationError("Invalid JSON from model (after retry)")
            return _structured((themes or {}).get(feedback.id, "Reliability/outage"))

        classifier.classify.side_effect = classify
        store = FakeStore(mock_sql.return_value)
        config = indexed_config if indexed else mock_config
        pipeline = EvaluationPipeline(config, golden_items=list(items), duplicate_pairs=list(pairs))
        return pipeline, store

    yield _build

    for p in patchers:
        p.stop()


class TestHelpers:
    """Test metric and timestamp helpers."""

    def test_compute_rate(self):
        """Test rates divide by total and are zero without cases."""
        assert compute_rate(4, 5) == 0.8
        assert compute_rate(0, 0) == 0.0

    def test_compute_recall(self):
        """Test recall is absent without an index or without pairs."""
        assert compute_recall(1, 2, True) == 0.5
        assert compute_recall(0, 0, True) is None
        assert compute_recall(2, 2, False) is None

    def test_resolve_created_at(self):
        """Test ISO strings are parsed and anything else falls back to now."""
        assert resolve_created_at("2025-01-06T09:12:00Z") == datetime(2025, 1, 6, 9, 12, tzinfo=timezone.utc)
        assert resolve_created_at("2025-01-06T09:12:00").tzinfo == timezone.utc
        before = datetime.now(timezone.utc)
        assert resolve_created_at("yesterday") >= before
        assert resolve_created_at(None) >= before

    def test_resolve_created_at_fractional_seconds(self):
        """Test fractional seconds with a Z suffix are parsed rather than replaced by now."""
        assert resolve_created_at("2025-01-06T09:12:00.5Z") == datetime(
            2025, 1, 6, 9, 12, 0, 500000, tzinfo=timezone.utc
        )
        assert resolve_created_at("2025-01-06T10:12:00+01:00") == datetime(2025, 1, 6, 9, 12, tzinfo=timezone.utc)


class TestSeed:
    """Test golden set seeding."""

    def test_seed_is_idempotent(self, build_pipeline):
        """Test a second seed inserts nothing and reports every id as existing."""
        pipeline, store = build_pipeline()

        first = pipeline.seed()
        second = pipeline.seed()

        assert first.inserted == ["a1", "a2", "b1", "b2", "c1"]
        assert first.skipped == []
        assert first.duplicate_pairs == PAIRS
        assert second.inserted == []
        assert [(s.id, s.reason) for s in second.skipped] == [
            (i, "Already exists") for i in ["a1", "a2", "b1", "b2", "c1"]
        ]
        assert len(store.feedback) == 5

    def test_existing_item_is_skipped(self, build_pipeline, sample_feedback):
        """Test a pre-existing id is skipped while the rest are inserted."""
        pipeline, store = build_pipeline()
        store.feedback["a1"] = sample_feedback.model_copy(update={"id": "a1"})

        result = pipeline.seed()

        assert result.inserted == ["a2", "b1", "b2", "c1"]
        assert [(s.id, s.reason) for s in result.skipped] == [("a1", "Already exists")]

    def test_invalid_item_is_skipped(self, build_pipeline):
        """Test items failing ingestion validation are reported and not stored."""
        items = [SeedItem(id="x1", source="fax", body="hello"), SeedItem(id="x2", source="email", body=" ")]
        pipeline, store = build_pipeline(items=items, pairs=[])

        result = pipeline.seed()

        assert result.inserted == []
        assert [s.reason for s in result.skipped] == ["Validation failed", "Validation failed"]
        assert store.feedback == {}

    def test_items_without_id_get_one(self, build_pipeline):
        """Test a generated id is used when an item has none."""
        pipeline, store = build_pipeline(items=[SeedItem(source="Slack", body="hi")], pairs=[])

        result = pipeline.seed()

        assert len(result.inserted) == 1
        assert store.feedback[result.inserted[0]].source == "slack"

    def test_supplied_created_at_is_kept(self, build_pipeline):
        """Test a supplied timestamp is stored as given."""
        pipeline, store = build_pipeline()

        pipeline.seed()

        assert store.feedback["a1"].created_at == datetime(2025, 1, 6, 9, 12, tzinfo=timezone.utc)

    def test_explicit_items_and_pairs(self, build_pipeline):
        """Test seed arguments override the configured golden set."""
        pipeline, _ = build_pipeline()

        result = pipeline.seed([SeedItem(id="n1", source="api", body="new")], [("n1", "n2")])

        assert result.inserted == ["n1"]
        assert result.duplicate_pairs == [("n1", "n2")]


class TestRun:
    """Test evaluation runs."""

    def test_requires_classifier(self, build_pipeline):
        """Test a run without the chat capability fails before touching the store."""
        pipeline, store = build_pipeline()
        pipeline.classifier.is_available = False

        with pytest.raises(CapabilityUnavailable, match="chat"):
            pipeline.run()

        assert store.feedback == {}
        assert store.runs == []

    def test_run_without_index(self, build_pipeline):
        """Test recall is absent and pair A cases are noted when no index is configured."""
        pipeline, store = build_pipeline(indexed=False)

        result = pipeline.run()

        assert result.total_cases == 5
        assert result.json_valid_rate == 1.0
        assert result.theme_valid_rate == 1.0
        assert result.recall_at_3 is None

        cases = {case.feedback_id: case for case in store.cases}
        for feedback_id in ("a1", "b1"):
            assert cases[feedback_id].recall_hit is None
            assert cases[feedback_id].notes == "Vectorize not configured"
        assert cases["c1"].notes is None
        pipeline.vector_index.query.assert_not_called()

    def test_run_is_persisted(self, build_pipeline):
        """Test one run row and one case row per processed item are written."""
        pipeline, store = build_pipeline()

        result = pipeline.run()

        assert len(store.runs) == 1
        run = store.runs[0]
        assert isinstance(run, EvalRun)
        assert run.id == result.run_id
        assert run.model == "gpt-4o-mini"
        assert run.prompt_version == "v1"
        assert [case.feedback_id for case in store.cases] == ["a1", "a2", "b1", "b2", "c1"]
        assert all(isinstance(case, EvalCase) and case.run_id == run.id for case in store.cases)

    def test_recall_hits_and_misses(self, build_pipeline):
        """Test B in A's top three is a hit and anything else is a noted miss."""
        pipeline, store = build_pipeline(indexed=True)
        pipeline.vector_index.query.side_effect = [
            _matches("a1", "a2", "c1", "b1", "b2"),
            _matches("b1", "c1", "a1", "b2", "a2"),
        ]

        result = pipeline.run()

        assert result.recall_at_3 == 0.5
        cases = {case.feedback_id: case for case in store.cases}
        assert cases["a1"].recall_hit is True
        assert cases["a1"].notes is None
        assert cases["b1"].recall_hit is False
        assert cases["b1"].notes == "Recall miss"
        assert cases["a2"].recall_hit is None
        for call in pipeline.vector_index.query.call_args_list:
            assert call.kwargs["top_k"] == 5

    def test_recall_window_not_narrowed_by_search_limit(self, build_pipeline):
        """Test a small search limit still leaves three candidates for recall."""
        pipeline, _ = build_pipeline(indexed=True, pairs=[("a1", "a2")])
        pipeline.config.search_limit = 2
        pipeline.vector_index.query.return_value = _matches("a1", "c1", "a2")

        result = pipeline.run()

        assert result.recall_at_3 == 1.0
        assert pipeline.vector_index.query.call_args.kwargs["top_k"] == 3

    def test_recall_ignores_ids_missing_from_store(self, build_pipeline):
        """Test stale index ids do not take a top-three slot."""
        pipeline, _ = build_pipeline(indexed=True, pairs=[("a1", "a2")])
        pipeline.vector_index.query.return_value = _matches("stale-1", "a1", "stale-2", "c1", "a2")

        assert pipeline.run().recall_at_3 == 1.0

        pipeline.vector_index.query.return_value = _matches("stale-1", "a1", "c1", "b1", "a2")
        assert pipeline.run().recall_at_3 == 0.0

    def test_missing_pair_member_counts_as_miss(self, build_pipeline):
        """Test a pair whose A record is absent stays in the denominator."""
        pipeline, _ = build_pipeline(indexed=True, pairs=[("a1", "a2"), ("zz", "b1")])
        pipeline.vector_index.query.return_value = _matches("a1", "a2")

        result = pipeline.run()

        assert result.recall_at_3 == 0.5
        assert pipeline.vector_index.query.call_count == 1

    def test_analysis_failure_is_a_failing_case(self, build_pipeline):
        """Test a classifier failure records a case with both validity flags false."""
        pipeline, store = build_pipeline(failing={"c1"})

        result = pipeline.run()

        assert result.total_cases == 5
        assert result.json_valid_rate == pytest.approx(0.8)
        assert result.theme_valid_rate == pytest.approx(0.8)
        failed = [case for case in store.cases if case.feedback_id == "c1"][0]
        assert failed.json_valid is False
        assert failed.theme_valid is False
        assert failed.notes == "Analysis failed"

    def test_failed_pair_member_keeps_analysis_note(self, build_pipeline):
        """Test a recall miss on a failed item is appended to its note."""
        pipeline, store = build_pipeline(indexed=True, failing={"a1"}, pairs=[("a1", "a2")])
        pipeline.vector_index.query.return_value = _matches("a1", "c1", "b1")

        pipeline.run()

        case = [case for case in store.cases if case.feedback_id == "a1"][0]
        assert case.recall_hit is False
        assert case.notes == "Analysis failed; Recall miss"

    def test_theme_outside_taxonomy(self, build_pipeline):
        """Test a structurally valid analysis with an unknown theme counts as JSON valid only."""
        pipeline, store = build_pipeline(themes={"c1": "Other"})

        result = pipeline.run()

        assert result.json_valid_rate == 1.0
        assert result.theme_valid_rate == pytest.approx(0.8)
        assert [c.theme_valid for c in store.cases if c.feedback_id == "c1"] == [False]

    def test_empty_golden_set(self, build_pipeline):
        """Test a run with no items reports zero rates and no recall."""
        pipeline, store = build_pipeline(indexed=True, items=[], pairs=[])

        result = pipeline.run()

        assert result.total_cases == 0
        assert result.json_valid_rate == 0.0
        assert result.theme_valid_rate == 0.0
        assert result.recall_at_3 is None
        assert len(store.runs) == 1
        assert store.cases == []

    def test_second_run_reclassifies_existing_items(self, build_pipeline):
        """Test items seeded earlier are still evaluated."""
        pipeline, store = build_pipeline()
        pipeline.seed()

        result = pipeline.run()

        assert result.total_cases == 5
        assert pipeline.classifier.classify.call_count == 5


class TestLatest:
    """Test the latest-run report."""

    def test_latest(self, build_pipeline):
        """Test the newest run is returned with up to ten failing cases."""
        pipeline, _ = build_pipeline()
        run = EvalRun(
            id="run-1", created_at=datetime(2025, 1, 6, tzinfo=timezone.utc), model="gpt-4o-mini",
            prompt_version="v1", total_cases=5, json_valid_rate=0.8, theme_valid_rate=0.8,
            recall_at_3=0.5
        )
        failing = [EvalCase(run_id="run-1", feedback_id="b1", json_valid=True, theme_valid=True,
                            recall_hit=False, notes="Recall miss")]
        pipeline.sql_client.get_latest_eval_run.return_value = run
        pipeline.sql_client.list_failing_eval_cases.return_value = failing

        report = pipeline.latest()

        assert report.latest == run
        assert report.failing_cases == failing
        pipeline.sql_client.list_failing_eval_cases.assert_called_once_with(10)

    def test_latest_without_runs(self, build_pipeline):
        """Test an empty history yields no run."""
        pipeline, _ = build_pipeline()
        pipeline.sql_client.get_latest_eval_run.return_value = None
        pipeline.sql_client.list_failing_eval_cases.return_value = []

        report = pipeline.latest()

        assert report.latest is None
        assert report.failing_cases == []


class TestDefaultDataset:
    """Test the packaged golden set is used by default."""

    @patch('src.pipelines.evaluation.FeedbackClassifier')
    @patch('src.pipelines.evaluation.Embedder')
    @patch('src.pipelines.evaluation.VectorIndex')
    @patch('src.pipelines.evaluation.SQLClient')
    def test_defaults(self, mock_sql, mock_index, mock_embedder, mock_classifier, mock_config):
        """Test fourteen items and four pairs are loaded."""
        pipeline = EvaluationPipeline(mock_config)

        assert len(pipeline.golden_items) == 14
        assert pipeline.duplicate_pairs == [("g1", "g2"), ("g3", "g4"), ("g5", "g6"), ("g7", "g8")]
