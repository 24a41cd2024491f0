"""
Packaged datasets: the labeled golden set used by evaluation and a messy
sample used to exercise bulk ingestion.
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from src.models.schemas import GoldenRecord, SeedItem

logger = logging.getLogger(__name__)

DATA_DIR = Path(__file__).parent
GOLDEN_DATASET_PATH = DATA_DIR / "golden_dataset.json"
MESSY_DATASET_PATH = DATA_DIR / "messy_data.json"

DuplicatePair = Tuple[str, str]


def _read_json(path: Path) -> Any:
    with open(path, encoding="utf-8") as f:
        return json.load(f)


def load_golden_records(path: Optional[Path] = None) -> List[GoldenRecord]:
    """Load labeled golden records from JSON."""
    records = [GoldenRecord(**item) for item in _read_json(path or GOLDEN_DATASET_PATH)]
    logger.debug(f"Loaded {len(records)} golden records")
    return records


def load_messy_items(path: Optional[Path] = None) -> List[Dict[str, Any]]:
    """
    Load the messy ingestion sample as raw dicts.

    Items are deliberately not coerced through SeedItem so that wrongly typed
    fields reach ingestion validation as-is.
    """
    return list(_read_json(path or MESSY_DATASET_PATH))


def build_duplicate_pairs(records: List[GoldenRecord]) -> List[DuplicatePair]:
    """
    Build ground-truth duplicate pairs from golden records.

    Records sharing a duplicate_pair_id form a group. Each group's ids are
    de-duplicated and sorted, then coupled two at a time: (0, 1), (2, 3), ...
    A trailing odd id is left unpaired.
    """
    groups: Dict[str, List[str]] = {}
    for record in records:
        if not record.duplicate_pair_id or not record.id:
            continue
        groups.setdefault(record.duplicate_pair_id, []).append(record.id)

    pairs: List[DuplicatePair] = []
    for ids in groups.values():
        unique = sorted(set(ids))
        for i in range(0, len(unique) - 1, 2):
            pairs.append((unique[i], unique[i + 1]))
    return pairs


def golden_seed_items(records: List[GoldenRecord]) -> List[SeedItem]:
    """Strip labels from golden records."""
    return [record.to_seed_item() for record in records]


def extract_seed_payload(
    value: Any,
    default_items: List[SeedItem],
    default_pairs: List[DuplicatePair]
) -> Tuple[List[SeedItem], List[DuplicatePair]]:
    """
    Interpret a seed payload.

    Accepts a list of items (default pairs kept), an object with optional
    "items" and "duplicate_pairs" keys, or None for the defaults.
    """
    if isinstance(value, list):
        return [SeedItem(**item) for item in value], default_pairs

    items = default_items
    pairs = default_pairs
    if isinstance(value, dict):
        if isinstance(value.get("items"), list):
            items = [SeedItem(**item) for item in value["items"]]
        if isinstance(value.get("duplicate_pairs"), list):
            pairs = [(str(a), str(b)) for a, b in value["duplicate_pairs"]]
    return items, pairs
