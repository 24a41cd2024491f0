"""
Read-side tooling over stored feedback: recent items, search, similar items,
theme counts and on-demand analysis.

Usage:
    python -m src.pipelines.explore recent --limit 20
    python -m src.pipelines.explore search --query "deploy returns 500"
    python -m src.pipelines.explore similar --feedback-id g1 --export similar.csv
    python -m src.pipelines.explore themes
    python -m src.pipelines.explore analyze --feedback-id g1
    python -m src.pipelines.explore show --feedback-id g1
"""

from typing import List, Optional
import argparse
import logging

import pandas as pd
from pydantic import BaseModel

from src.config.settings import Settings
from src.config.logging_config import configure_logging
from src.data_access.sql_client import SQLClient
from src.data_access.vector_index import VectorIndex
from src.embedding.embedder import Embedder
from src.agents.llm_agent import FeedbackClassifier
from src.pipelines.analysis import AnalysisService
from src.models.errors import ClassificationError, FeedbackNotFoundError


logger = logging.getLogger(__name__)

DISPLAY_COLUMNS = ["id", "source", "theme", "severity", "title", "created_at"]


def to_frame(rows: List[BaseModel]) -> pd.DataFrame:
    """Convert result models to a DataFrame."""
    return pd.DataFrame([row.model_dump() for row in rows])


def print_frame(df: pd.DataFrame, note: Optional[str] = None) -> None:
    if note:
        print(f"Note: {note}")
    if df.empty:
        print("No results found.")
        return
    # Feedback rows carry the full body; other frames print as-is
    columns = [c for c in DISPLAY_COLUMNS if c in df.columns] if "id" in df.columns else list(df.columns)
    print(df[columns].to_string(index=False, max_colwidth=60))


def main():
    parser = argparse.ArgumentParser(description="Explore stored feedback")
    parser.add_argument("--export", help="Export results to CSV")
    subparsers = parser.add_subparsers(dest="command", required=True)

    recent = subparsers.add_parser("recent", help="Newest feedback with analysis")
    recent.add_argument("--limit", type=int, default=20)

    search = subparsers.add_parser("search", help="Semantic search (substring match without an index)")
    search.add_argument("--query", required=True)
    search.add_argument("--limit", type=int)

    similar = subparsers.add_parser("similar", help="Feedback similar to a stored record")
    similar.add_argument("--feedback-id", required=True)
    similar.add_argument("--limit", type=int)

    subparsers.add_parser("themes", help="Analysis counts per theme")

    analyze = subparsers.add_parser("analyze", help="Classify one stored record now")
    analyze.add_argument("--feedback-id", required=True)

    show = subparsers.add_parser("show", help="Stored analysis of one record, without re-classifying")
    show.add_argument("--feedback-id", required=True)

    args = parser.parse_args()

    config = Settings()
    configure_logging(config.log_level)

    sql_client = SQLClient(config)
    vector_index = VectorIndex(config)
    service = AnalysisService(
        config, sql_client, vector_index, Embedder(config), FeedbackClassifier(config)
    )

    note = None
    try:
        if args.command == "recent":
            df = to_frame(sql_client.list_recent_feedback(args.limit))
        elif args.command == "search":
            response = service.search(args.query.strip(), args.limit)
            df, note = to_frame(response.results), response.note
        elif args.command == "similar":
            response = service.find_similar_by_id(args.feedback_id, args.limit)
            df, note = to_frame(response.results), response.note
        elif args.command == "themes":
            df = to_frame(service.theme_summary())
        elif args.command == "show":
            analysis = service.stored_analysis(args.feedback_id)
            df = to_frame([analysis] if analysis else [])
            note = None if analysis else f"{args.feedback_id} has not been analyzed yet"
        else:
            df = to_frame([service.analyze_by_id(args.feedback_id)])
    except FeedbackNotFoundError as e:
        print(f"Error: {e}")
        return
    except ClassificationError as e:
        print(f"Error: AI analysis failed: {e.reason}")
        return
    finally:
        sql_client.close()
        vector_index.close()

    print_frame(df, note)

    if args.export:
        df.to_csv(args.export, index=False)
        print(f"Exported to {args.export}")


if __name__ == "__main__":
    main()
