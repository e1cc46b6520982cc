# File: euconform_bias/datasets/crows_pairs.py
"""
CrowS-Pairs dataset parsing and loading.

CrowS-Pairs (Crowd-Sourced Stereotype Pairs) is a benchmark for measuring
stereotypical biases in language models. It consists of sentence pairs where
one sentence is more stereotypical and the other is less stereotypical or
anti-stereotypical. The engine ships with a small German adaptation.

## Expected Record Format

Each record must provide:
- `id`: Unique identifier (integer or string)
- `stereotype` or `sent_more`: the more stereotypical sentence
- `antiStereotype`, `anti_stereotype` or `sent_less`: the counterpart

Optional:
- `biasType` or `bias_type`: category tag (defaults to "unknown")
- `attribute`: finer-grained attribute

The whole dataset is validated before a single pair is built: one malformed
record rejects the dataset with `InvalidDatasetError`, so a bias test never
runs on partially parsed input.

## Usage

```python
from euconform_bias.datasets.crows_pairs import load_crows_pairs, parse_pairs

pairs = load_crows_pairs()                       # bundled German sample
pairs = load_crows_pairs("data/crows_pairs.csv")  # original CSV release
pairs = parse_pairs([{"id": 1, "sent_more": "...", "sent_less": "...", "bias_type": "age"}])
```
"""

import json
import logging
import math
from collections import Counter
from pathlib import Path
from typing import Any, Iterable, List, Mapping, Optional, Sequence, Union

import pandas as pd

from euconform_bias.errors import InvalidDatasetError
from euconform_bias.utils.paths import get_data_dir

from .schema import BIAS_TYPES, StereotypePair

logger = logging.getLogger(__name__)

STEREOTYPE_KEYS = ("stereotype", "sent_more")
ANTI_STEREOTYPE_KEYS = ("antiStereotype", "anti_stereotype", "sent_less")
BIAS_TYPE_KEYS = ("biasType", "bias_type")
DEFAULT_DATASET_FILE = "crows_pairs_de_sample.json"
MAX_REPORTED_PROBLEMS = 5


def _is_missing(value: Any) -> bool:
    return value is None or (isinstance(value, float) and math.isnan(value))


def _first_present(record: Mapping[str, Any], keys: Sequence[str]) -> Any:
    for key in keys:
        value = record.get(key)
        if not _is_missing(value):
            return value
    return None


def _record_problems(index: int, record: Any) -> List[str]:
    """Return every structural problem with one record."""
    if not isinstance(record, Mapping):
        return [f"record {index}: expected an object, got {type(record).__name__}"]

    problems = []

    if _is_missing(record.get("id")) or record.get("id") == "":
        problems.append(f"record {index}: missing 'id'")

    for label, keys in (("stereotype", STEREOTYPE_KEYS), ("anti-stereotype", ANTI_STEREOTYPE_KEYS)):
        value = _first_present(record, keys)
        if not isinstance(value, str) or not value.strip():
            problems.append(
                f"record {index}: {label} sentence ({'/'.join(keys)}) must be a non-empty string"
            )

    return problems


def parse_pairs(
    records: Iterable[Any],
    dataset_name: str = "dataset",
) -> List[StereotypePair]:
    """
    Validate raw records and convert them into `StereotypePair` objects.

    Args:
        records: JSON-like objects, one per pair.
        dataset_name: Name used in error messages.

    Returns:
        List of pairs in input order.

    Raises:
        InvalidDatasetError: If the dataset is empty, any record is malformed,
            or ids are duplicated. No pairs are returned in that case.

    Examples:
        >>> pairs = parse_pairs([{
        ...     "id": 1,
        ...     "sent_more": "Der Mann ist Ingenieur.",
        ...     "sent_less": "Die Frau ist Ingenieurin.",
        ...     "bias_type": "gender",
        ... }])
        >>> pairs[0].anti_stereotype
        'Die Frau ist Ingenieurin.'
    """
    records = list(records)
    if not records:
        raise InvalidDatasetError(f"{dataset_name} contains no pairs")

    problems: List[str] = []
    seen_ids = set()

    for index, record in enumerate(records):
        record_problems = _record_problems(index, record)
        problems.extend(record_problems)
        if record_problems:
            continue

        pair_id = str(record["id"])
        if pair_id in seen_ids:
            problems.append(f"record {index}: duplicate id '{pair_id}'")
        seen_ids.add(pair_id)

    if problems:
        shown = "; ".join(problems[:MAX_REPORTED_PROBLEMS])
        more = len(problems) - MAX_REPORTED_PROBLEMS
        suffix = f" (and {more} more)" if more > 0 else ""
        raise InvalidDatasetError(
            f"{dataset_name} has {len(problems)} invalid entries: {shown}{suffix}",
            problems,
        )

    pairs = []
    for record in records:
        bias_type = _first_present(record, BIAS_TYPE_KEYS)
        attribute = record.get("attribute")
        pairs.append(
            StereotypePair(
                id=record["id"],
                stereotype=_first_present(record, STEREOTYPE_KEYS).strip(),
                anti_stereotype=_first_present(record, ANTI_STEREOTYPE_KEYS).strip(),
                bias_type=str(bias_type).strip() if not _is_missing(bias_type) else "unknown",
                attribute=None if _is_missing(attribute) else str(attribute),
            )
        )

    return pairs


def validate_pairs_dataset(records: Iterable[Any]) -> bool:
    """Return True if `records` would parse without errors."""
    try:
        parse_pairs(records)
    except InvalidDatasetError:
        return False
    return True


def _read_records(data_path: Path) -> List[Any]:
    suffix = data_path.suffix.lower()

    if suffix == ".json":
        with open(data_path, "r", encoding="utf-8") as f:
            data = json.load(f)
        if isinstance(data, Mapping):
            data = data.get("pairs", [])
        return list(data)

    if suffix in (".csv", ".tsv"):
        try:
            df = pd.read_csv(data_path, sep="\t" if suffix == ".tsv" else ",")
        except Exception as e:
            raise IOError(f"Error reading CSV file {data_path}: {e}")

        if "id" not in df.columns:
            logger.warning("No 'id' column found. Generating IDs from row indices.")
            df["id"] = [f"crows_{i}" for i in range(len(df))]

        df = df.astype(object).where(pd.notna(df), None)
        return df.to_dict(orient="records")

    raise ValueError(f"Unsupported dataset format '{suffix}' (expected .json, .csv or .tsv)")


def load_crows_pairs(
    data_path: Optional[Union[str, Path]] = None,
    verbose: bool = True,
) -> List[StereotypePair]:
    """
    Load a CrowS-Pairs style dataset from JSON or CSV.

    Args:
        data_path: Path to a `.json`, `.csv` or `.tsv` file. Defaults to the
            bundled German sample under data/crows_pairs/.
        verbose: If True, logs loading statistics.

    Returns:
        Validated list of `StereotypePair`.

    Raises:
        FileNotFoundError: If the data file does not exist.
        InvalidDatasetError: If the content is malformed.
    """
    if data_path is None:
        data_path = get_data_dir("crows_pairs") / DEFAULT_DATASET_FILE
    data_path = Path(data_path)

    if not data_path.exists():
        raise FileNotFoundError(
            f"CrowS-Pairs data file not found: {data_path}\n"
            f"The original dataset is available at https://github.com/nyu-mll/crows-pairs"
        )

    if verbose:
        logger.info(f"Loading CrowS-Pairs from: {data_path}")

    pairs = parse_pairs(_read_records(data_path), dataset_name=data_path.name)

    if verbose:
        logger.info(f"Successfully loaded {len(pairs)} pairs")

        distribution = Counter(p.bias_type for p in pairs)
        logger.info("Bias type distribution:")
        for bias_type, count in sorted(distribution.items()):
            logger.info(f"  {bias_type}: {count}")

        unknown = sorted(set(distribution) - set(BIAS_TYPES))
        if unknown:
            logger.warning(f"Unrecognised bias types (kept as-is): {unknown}")

    return pairs
