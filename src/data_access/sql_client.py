import pymssql
import re
from contextlib import contextmanager
from typing import List, Optional, Dict, Any
from src.config.settings import Settings
from src.models.errors import StoreError
from src.models.schemas import (
    FeedbackRecord,
    FeedbackWithAnalysis,
    AnalysisRecord,
    EvalRun,
    EvalCase,
)

# Tables count_by may target
COUNTABLE_TABLES = {
    "feedback": "signaldesk.feedback",
    "analysis": "signaldesk.analysis",
    "eval_runs": "signaldesk.eval_runs",
    "eval_cases": "signaldesk.eval_cases",
}

IDENTIFIER = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*$')

FEEDBACK_WITH_ANALYSIS_COLUMNS = """
    f.id, f.source, f.title, f.body, f.customer_tier, f.created_at,
    a.summary, a.theme, a.sentiment_label, a.sentiment_score, a.urgency_score,
    a.severity, a.suggested_owner
"""


def _row_to_feedback(row: Dict[str, Any]) -> FeedbackRecord:
    return FeedbackRecord(
        id=row['id'],
        source=row['source'],
        title=row.get('title'),
        body=row['body'],
        customer_tier=row.get('customer_tier'),
        created_at=row['created_at']
    )


class SQLClient:
    """SQL Server client for feedback, analysis and evaluation results."""

    def __init__(self, config: Settings):
        self.config = config
        self.conn = None

    def connect(self) -> None:
        """Establish database connection."""
        try:
            self.conn = pymssql.connect(
                server=self.config.sql_server_host,
                port=self.config.sql_server_port,
                user=self.config.sql_server_username,
                password=self.config.sql_server_password,
                database=self.config.sql_server_database
            )
        except pymssql.Error as e:
            raise StoreError(f"Could not connect to record store: {e}") from e

    def close(self) -> None:
        """Close database connection."""
        if self.conn:
            self.conn.close()
            self.conn = None

    @contextmanager
    def _cursor(self, as_dict: bool = False):
        if not self.conn:
            self.connect()
        try:
            with self.conn.cursor(as_dict=as_dict) as cursor:
                yield cursor
        except pymssql.Error as e:
            raise StoreError(f"Record store operation failed: {e}") from e

    def initialize_schema(self) -> None:
        """Create the schema and tables if they don't exist."""
        statements = [
            "IF SCHEMA_ID('signaldesk') IS NULL EXEC('CREATE SCHEMA signaldesk')",
            """
            IF OBJECT_ID('signaldesk.feedback', 'U') IS NULL
            CREATE TABLE signaldesk.feedback (
                id VARCHAR(255) PRIMARY KEY,
                source VARCHAR(50) NOT NULL,
                title NVARCHAR(200) NULL,
                body NVARCHAR(MAX) NOT NULL,
                customer_tier NVARCHAR(50) NULL,
                created_at DATETIME2 NOT NULL
            )
            """,
            """
            IF OBJECT_ID('signaldesk.analysis', 'U') IS NULL
            CREATE TABLE signaldesk.analysis (
                feedback_id VARCHAR(255) NOT NULL UNIQUE
                    REFERENCES signaldesk.feedback(id),
                summary NVARCHAR(MAX) NOT NULL,
                theme VARCHAR(100) NOT NULL,
                sentiment_label VARCHAR(50) NOT NULL,
                sentiment_score FLOAT NOT NULL,
                urgency_score INT NOT NULL,
                severity VARCHAR(10) NOT NULL,
                suggested_owner NVARCHAR(200) NOT NULL,
                proposed_fix NVARCHAR(MAX) NOT NULL,
                analyzed_at DATETIME2 NOT NULL,
                model VARCHAR(100) NOT NULL
            )
            """,
            """
            IF OBJECT_ID('signaldesk.eval_runs', 'U') IS NULL
            CREATE TABLE signaldesk.eval_runs (
                id VARCHAR(64) PRIMARY KEY,
                created_at DATETIME2 NOT NULL,
                model VARCHAR(100) NOT NULL,
                prompt_version VARCHAR(50) NOT NULL,
                total_cases INT NOT NULL,
                json_valid_rate FLOAT NULL,
                theme_valid_rate FLOAT NULL,
                recall_at_3 FLOAT NULL
            )
            """,
            """
            IF OBJECT_ID('signaldesk.eval_cases', 'U') IS NULL
            CREATE TABLE signaldesk.eval_cases (
                case_id INT IDENTITY(1,1) PRIMARY KEY,
                run_id VARCHAR(64) NOT NULL,
                feedback_id VARCHAR(255) NOT NULL,
                json_valid BIT NOT NULL,
                theme_valid BIT NOT NULL,
                recall_hit BIT NULL,
                notes NVARCHAR(500) NULL
            )
            """,
        ]

        with self._cursor() as cursor:
            for statement in statements:
                cursor.execute(statement)
            self.conn.commit()

    def get_feedback_by_id(self, feedback_id: str) -> Optional[FeedbackRecord]:
        """
        Retrieve a single feedback record, or None if it does not exist.
        """
        query = """
            SELECT id, source, title, body, customer_tier, created_at
            FROM signaldesk.feedback
            WHERE id = %s
        """

        with self._cursor(as_dict=True) as cursor:
            cursor.execute(query, (feedback_id,))
            row = cursor.fetchone()

        return _row_to_feedback(row) if row else None

    def get_feedback_by_ids(self, feedback_ids: List[str]) -> Dict[str, FeedbackRecord]:
        """
        Retrieve specific feedback records by IDs.

        Returns:
            Mapping of id to record; ids without a row are absent
        """
        if not feedback_ids:
            return {}

        placeholders = ','.join(['%s'] * len(feedback_ids))
        query = f"""
            SELECT id, source, title, body, customer_tier, created_at
            FROM signaldesk.feedback
            WHERE id IN ({placeholders})
        """

        with self._cursor(as_dict=True) as cursor:
            cursor.execute(query, tuple(feedback_ids))
            rows = cursor.fetchall()

        return {row['id']: _row_to_feedback(row) for row in rows}

    def get_feedback_with_analysis_by_ids(self, feedback_ids: List[str]) -> Dict[str, FeedbackWithAnalysis]:
        """
        Retrieve feedback rows joined with their analysis by IDs.
        """
        if not feedback_ids:
            return {}

        placeholders = ','.join(['%s'] * len(feedback_ids))
        query = f"""
            SELECT {FEEDBACK_WITH_ANALYSIS_COLUMNS}
            FROM signaldesk.feedback f
            LEFT JOIN signaldesk.analysis a ON f.id = a.feedback_id
            WHERE f.id IN ({placeholders})
        """

        with self._cursor(as_dict=True) as cursor:
            cursor.execute(query, tuple(feedback_ids))
            rows = cursor.fetchall()

        return {row['id']: FeedbackWithAnalysis(**row) for row in rows}

    def insert_feedback(self, record: FeedbackRecord) -> bool:
        """
        Insert a feedback record unless its id already exists.

        Returns:
            True if a row was inserted, False if the id was taken
        """
        query = """
            INSERT INTO signaldesk.feedback (id, source, title, body, customer_tier, created_at)
            SELECT %s, %s, %s, %s, %s, %s
            WHERE NOT EXISTS (SELECT 1 FROM signaldesk.feedback WHERE id = %s)
        """

        with self._cursor() as cursor:
            cursor.execute(
                query,
                (record.id, record.source, record.title, record.body,
                 record.customer_tier, record.created_at, record.id)
            )
            inserted = cursor.rowcount == 1
            self.conn.commit()

        return inserted

    def upsert_analysis(self, analysis: AnalysisRecord) -> None:
        """
        Insert or replace the analysis for a feedback record.
        """
        query = """
            MERGE INTO signaldesk.analysis AS target
            USING (VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)) AS source
                (feedback_id, summary, theme, sentiment_label, sentiment_score, urgency_score,
                 severity, suggested_owner, proposed_fix, analyzed_at, model)
            ON target.feedback_id = source.feedback_id
            WHEN MATCHED THEN
                UPDATE SET
                    summary = source.summary,
                    theme = source.theme,
                    sentiment_label = source.sentiment_label,
                    sentiment_score = source.sentiment_score,
                    urgency_score = source.urgency_score,
                    severity = source.severity,
                    suggested_owner = source.suggested_owner,
                    proposed_fix = source.proposed_fix,
                    analyzed_at = source.analyzed_at,
                    model = source.model
            WHEN NOT MATCHED THEN
                INSERT (feedback_id, summary, theme, sentiment_label, sentiment_score, urgency_score,
                        severity, suggested_owner, proposed_fix, analyzed_at, model)
                VALUES (source.feedback_id, source.summary, source.theme, source.sentiment_label,
                        source.sentiment_score, source.urgency_score, source.severity,
                        source.suggested_owner, source.proposed_fix, source.analyzed_at, source.model);
        """

        with self._cursor() as cursor:
            cursor.execute(
                query,
                (analysis.feedback_id, analysis.summary, analysis.theme, analysis.sentiment_label,
                 analysis.sentiment_score, analysis.urgency_score, analysis.severity,
                 analysis.suggested_owner, analysis.proposed_fix, analysis.analyzed_at,
                 analysis.model)
            )
            self.conn.commit()

    def get_analysis(self, feedback_id: str) -> Optional[AnalysisRecord]:
        query = """
            SELECT feedback_id, summary, theme, sentiment_label, sentiment_score, urgency_score,
                   severity, suggested_owner, proposed_fix, analyzed_at, model
            FROM signaldesk.analysis
            WHERE feedback_id = %s
        """

        with self._cursor(as_dict=True) as cursor:
            cursor.execute(query, (feedback_id,))
            row = cursor.fetchone()

        return AnalysisRecord(**row) if row else None

    def list_recent_feedback(self, limit: int = 20) -> List[FeedbackWithAnalysis]:
        """
        List the newest feedback records joined with their analysis.
        """
        query = f"""
            SELECT TOP {int(limit)} {FEEDBACK_WITH_ANALYSIS_COLUMNS}
            FROM signaldesk.feedback f
            LEFT JOIN signaldesk.analysis a ON f.id = a.feedback_id
            ORDER BY f.created_at DESC
        """

        with self._cursor(as_dict=True) as cursor:
            cursor.execute(query)
            rows = cursor.fetchall()

        return [FeedbackWithAnalysis(**row) for row in rows]

    def search_feedback_text(self, text: str, limit: int = 5) -> List[FeedbackWithAnalysis]:
        """
        Substring match over title and body, newest first.
        """
        query = f"""
            SELECT TOP {int(limit)} {FEEDBACK_WITH_ANALYSIS_COLUMNS}
            FROM signaldesk.feedback f
            LEFT JOIN signaldesk.analysis a ON f.id = a.feedback_id
            WHERE f.title LIKE %s OR f.body LIKE %s
            ORDER BY f.created_at DESC
        """
        pattern = f"%{text}%"

        with self._cursor(as_dict=True) as cursor:
            cursor.execute(query, (pattern, pattern))
            rows = cursor.fetchall()

        return [FeedbackWithAnalysis(**row) for row in rows]

    def count_by(self, table: str, filters: Optional[Dict[str, Any]] = None) -> int:
        """
        Count rows in a table matching column equality filters.

        Args:
            table: One of feedback, analysis, eval_runs, eval_cases
            filters: Column name to value; None values match NULL

        Raises:
            ValueError: For an unknown table or an invalid column name
        """
        if table not in COUNTABLE_TABLES:
            raise ValueError(f"Unknown table: {table}")

        query = f"SELECT COUNT(*) AS count FROM {COUNTABLE_TABLES[table]} WHERE 1=1"
        params = []
        for column, value in (filters or {}).items():
            if not IDENTIFIER.match(column):
                raise ValueError(f"Invalid column name: {column}")
            if value is None:
                query += f" AND {column} IS NULL"
            else:
                query += f" AND {column} = %s"
                params.append(value)

        with self._cursor(as_dict=True) as cursor:
            cursor.execute(query, tuple(params))
            row = cursor.fetchone()

        return int(row['count']) if row else 0

    def get_theme_counts(self) -> List[Dict[str, Any]]:
        """
        Count analyses per theme, most common first.
        """
        query = """
            SELECT theme, COUNT(*) AS count
            FROM signaldesk.analysis
            GROUP BY theme
            ORDER BY count DESC
        """

        with self._cursor(as_dict=True) as cursor:
            cursor.execute(query)
            return [{'theme': row['theme'], 'count': int(row['count'])} for row in cursor.fetchall()]

    def get_theme_examples(self, theme: str, limit: int = 2) -> List[str]:
        query = f"""
            SELECT TOP {int(limit)} feedback_id
            FROM signaldesk.analysis
            WHERE theme = %s
            ORDER BY analyzed_at DESC
        """

        with self._cursor(as_dict=True) as cursor:
            cursor.execute(query, (theme,))
            return [row['feedback_id'] for row in cursor.fetchall()]

    def insert_eval_run(self, run: EvalRun) -> None:
        query = """
            INSERT INTO signaldesk.eval_runs
                (id, created_at, model, prompt_version, total_cases,
                 json_valid_rate, theme_valid_rate, recall_at_3)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
        """

        with self._cursor() as cursor:
            cursor.execute(
                query,
                (run.id, run.created_at, run.model, run.prompt_version, run.total_cases,
                 run.json_valid_rate, run.theme_valid_rate, run.recall_at_3)
            )
            self.conn.commit()

    def insert_eval_case(self, case: EvalCase) -> None:
        query = """
            INSERT INTO signaldesk.eval_cases
                (run_id, feedback_id, json_valid, theme_valid, recall_hit, notes)
            VALUES (%s, %s, %s, %s, %s, %s)
        """

        with self._cursor() as cursor:
            cursor.execute(
                query,
                (case.run_id, case.feedback_id, case.json_valid, case.theme_valid,
                 case.recall_hit, case.notes)
            )
            self.conn.commit()

    def get_latest_eval_run(self) -> Optional[EvalRun]:
        query = """
            SELECT TOP 1 id, created_at, model, prompt_version, total_cases,
                   json_valid_rate, theme_valid_rate, recall_at_3
            FROM signaldesk.eval_runs
            ORDER BY created_at DESC
        """

        with self._cursor(as_dict=True) as cursor:
            cursor.execute(query)
            row = cursor.fetchone()

        return EvalRun(**row) if row else None

    def list_failing_eval_cases(self, limit: int = 10) -> List[EvalCase]:
        """
        List cases that failed any check, most recently inserted first.
        """
        query = f"""
            SELECT TOP {int(limit)} run_id, feedback_id, json_valid, theme_valid, recall_hit, notes
            FROM signaldesk.eval_cases
            WHERE json_valid = 0 OR theme_valid = 0 OR recall_hit = 0
            ORDER BY case_id DESC
        """

        with self._cursor(as_dict=True) as cursor:
            cursor.execute(query)
            rows = cursor.fetchall()

        return [EvalCase(**row) for row in rows]
