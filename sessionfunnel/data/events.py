"""
Event Ingestion & Temporal Partitioning

Loads raw JSON-lines event batches and puts every customer's events in
chronological order.

Design Principles:
- Raw fields are never rewritten, only normalized (names, dtypes)
- Partitioning is deterministic: ties in timestamp keep arrival order
- Events without a customer_id are dropped silently (logged, not raised)
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterator, List, Tuple, Union

import numpy as np
import pandas as pd
import requests

from sessionfunnel.errors import InvalidInputError, UpstreamUnavailableError

logger = logging.getLogger(__name__)

# Fixed ingestion format; lenient parsing falls back to ISO-8601 near-matches
TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%f"

ORDER_EVENT_TYPE = "placed_order"

RAW_COLUMNS = ["customer_id", "timestamp", "type"]


def fetch_events(source: Union[str, Path], timeout: float = 30.0) -> pd.DataFrame:
    """
    Fetch a batch of raw events.

    Args:
        source: HTTP(S) URL serving JSON lines, or a local JSON-lines file
        timeout: Request timeout in seconds (HTTP only)

    Returns:
        DataFrame with customer_id, timestamp (unparsed) and type columns
    """
    source = str(source)

    if source.startswith(("http://", "https://")):
        logger.info(f"📥 Requesting events from {source}")
        try:
            response = requests.get(source, timeout=timeout)
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            raise UpstreamUnavailableError(f"Could not fetch events from {source}: {e}") from e
        body = response.text
    else:
        logger.info(f"📂 Reading events from {source}")
        try:
            body = Path(source).read_text(encoding="utf-8")
        except OSError as e:
            raise UpstreamUnavailableError(f"Could not read events from {source}: {e}") from e

    return read_events_jsonl(body)


def read_events_jsonl(body: str) -> pd.DataFrame:
    """Parse a JSON-lines payload into a raw event frame."""
    records = []
    for line_number, line in enumerate(body.splitlines(), start=1):
        if not line.strip():
            continue
        try:
            records.append(json.loads(line))
        except json.JSONDecodeError as e:
            raise InvalidInputError(f"Line {line_number} is not valid JSON: {e}") from e

    return normalize_events(records)


def normalize_events(records: List[Dict[str, Any]]) -> pd.DataFrame:
    """
    Flatten raw records into the customer_id / timestamp / type layout.

    Records may carry their fields at the top level or inside a nested
    ``event`` object; hyphenated keys (``customer-id``) become snake_case.
    """
    if not records:
        return pd.DataFrame(
            {
                "customer_id": pd.Series(dtype="Int64"),
                "timestamp": pd.Series(dtype="object"),
                "type": pd.Series(dtype="object"),
            }
        )

    df = pd.json_normalize(records)
    df.columns = [_normalize_column(c) for c in df.columns]
    df = df.loc[:, ~df.columns.duplicated()]

    missing_cols = {"timestamp", "type"} - set(df.columns)
    if missing_cols:
        raise InvalidInputError(f"Missing required fields: {missing_cols}")

    if "customer_id" not in df.columns:
        df["customer_id"] = None

    df["customer_id"] = pd.to_numeric(df["customer_id"], errors="coerce").astype("Int64")

    return df[RAW_COLUMNS]


def _normalize_column(name: str) -> str:
    if name.startswith("event."):
        name = name[len("event."):]
    return name.replace("-", "_")


def parse_timestamps(values: pd.Series, strict: bool = False) -> pd.Series:
    """
    Parse timestamps to microsecond resolution.

    Lenient mode (default) tries the fixed format, then ISO-8601, and leaves
    NaT for anything still unparseable. Strict mode raises instead.
    """
    if pd.api.types.is_datetime64_any_dtype(values):
        parsed = values
        if getattr(parsed.dt, "tz", None) is not None:
            parsed = parsed.dt.tz_convert(None)
        return parsed.dt.floor("us")

    parsed = pd.to_datetime(values, format=TIMESTAMP_FORMAT, errors="coerce")

    retry = parsed.isna() & values.notna()
    if retry.any():
        fallback = pd.to_datetime(values[retry], format="ISO8601", errors="coerce", utc=True)
        parsed.loc[retry] = fallback.dt.tz_convert(None)

    failed = parsed.isna()
    if strict and failed.any():
        examples = values[failed].head(3).tolist()
        raise InvalidInputError(
            f"{int(failed.sum())} unparseable timestamps (e.g. {examples})"
        )

    return parsed.dt.floor("us")


def partition_events(events_df: pd.DataFrame, strict_timestamps: bool = False) -> pd.DataFrame:
    """
    Group events by customer and order each group chronologically.

    Args:
        events_df: Raw events with customer_id, timestamp and type
        strict_timestamps: Abort on unparseable timestamps instead of dropping them

    Returns:
        Events sorted by (customer_id, timestamp, arrival order) with an
        ``event_seq`` column giving each event's position in its partition

    Events with a null customer_id are discarded. This is intentional data
    loss, reported in the log only.
    """
    missing_cols = set(RAW_COLUMNS) - set(events_df.columns)
    if missing_cols:
        raise InvalidInputError(f"Missing required columns: {missing_cols}")

    df = events_df[RAW_COLUMNS].copy()
    df["arrival"] = np.arange(len(df))

    customer_ids = pd.to_numeric(df["customer_id"], errors="coerce")
    null_ids = customer_ids.isna()
    if null_ids.any():
        logger.info(f"   Discarding {int(null_ids.sum()):,} events without a customer_id")
    df = df[~null_ids].copy()
    df["customer_id"] = customer_ids[~null_ids].astype("int64")

    df["timestamp"] = parse_timestamps(df["timestamp"], strict=strict_timestamps)
    unparsed = df["timestamp"].isna()
    if unparsed.any():
        logger.warning(f"   Dropping {int(unparsed.sum()):,} events with unparseable timestamps")
        df = df[~unparsed]

    df = df.sort_values(["customer_id", "timestamp", "arrival"]).reset_index(drop=True)
    df = df.drop(columns=["arrival"])
    df["event_seq"] = df.groupby("customer_id").cumcount().astype("int64")

    return df


def iter_partitions(df: pd.DataFrame) -> Iterator[Tuple[int, pd.DataFrame]]:
    """Yield (customer_id, events) pairs from a partitioned frame."""
    for customer_id, events in df.groupby("customer_id", sort=True):
        yield int(customer_id), events
