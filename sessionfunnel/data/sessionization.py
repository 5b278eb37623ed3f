"""
Sessionization Engine

Splits each customer's ordered event stream into sessions using an
inactivity threshold. Re-sessionizing with another threshold is a fresh
run over the raw events; earlier results are never modified.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import List

import pandas as pd

from sessionfunnel.data.events import ORDER_EVENT_TYPE, iter_partitions, partition_events
from sessionfunnel.errors import EmptyPartitionError, InvalidInputError

logger = logging.getLogger(__name__)

MICROSECONDS_PER_MINUTE = 60_000_000

SESSIONIZED_COLUMNS = [
    "customer_id",
    "timestamp",
    "time_diff",
    "new_session",
    "session_number",
    "type",
    "event_seq",
]


@dataclass
class SessionStats:
    """Statistics for a sessionization run."""

    total_events: int
    total_customers: int
    total_sessions: int
    avg_events_per_session: float
    avg_session_duration_minutes: float
    sessions_with_order: int
    session_conversion_rate: float


def minutes_between(delta: pd.Series) -> pd.Series:
    """Convert a timedelta series to fractional minutes via whole microseconds."""
    micros = delta // pd.Timedelta(microseconds=1)
    return micros.astype("float64") / MICROSECONDS_PER_MINUTE


class TimeBasedSessionizer:
    """
    Time-based sessionization using an inactivity threshold.

    Design Principle:
    If the gap to the customer's previous event > session_length → new session.
    A gap exactly equal to the threshold stays in the current session.
    """

    def __init__(self, session_length: float = 30, n_workers: int = 1):
        """
        Initialize sessionizer.

        Args:
            session_length: Maximum gap in minutes before a new session starts
            n_workers: Threads to fan customer shards out to (1 = no fan-out)
        """
        if session_length < 0:
            raise InvalidInputError(f"session_length must be >= 0, got {session_length}")

        self.session_length = session_length
        self.n_workers = max(1, int(n_workers))

    def sessionize(self, events_df: pd.DataFrame, strict_timestamps: bool = False) -> pd.DataFrame:
        """
        Partition raw events by customer and assign session numbers.

        Args:
            events_df: Raw events with customer_id, timestamp and type
            strict_timestamps: Abort on unparseable timestamps instead of dropping them

        Returns:
            DataFrame with time_diff, new_session, session_number and event_seq added
        """
        logger.info(f"🔄 Sessionizing {len(events_df):,} events...")
        logger.info(f"   Session length: {self.session_length} minutes")

        df = partition_events(events_df, strict_timestamps=strict_timestamps)

        if self.n_workers > 1 and df["customer_id"].nunique() > 1:
            df = self._sessionize_sharded(df)
        else:
            df = self._segment(df)

        if len(df):
            self._log_stats(self.calculate_stats(df))

        return df

    def _segment(self, df: pd.DataFrame) -> pd.DataFrame:
        """Compute time_diff, new_session and session_number on a partitioned frame."""
        df = df.copy()

        if df.empty:
            df["time_diff"] = pd.Series(dtype="float64")
            df["new_session"] = pd.Series(dtype="int64")
            df["session_number"] = pd.Series(dtype="int64")
            return df[SESSIONIZED_COLUMNS]

        gaps = df.groupby("customer_id")["timestamp"].diff().fillna(pd.Timedelta(0))
        df["time_diff"] = minutes_between(gaps)

        # first event of a customer has time_diff 0, so it never opens a boundary
        df["new_session"] = (df["time_diff"] > self.session_length).astype("int64")

        df["session_number"] = df.groupby("customer_id")["new_session"].cumsum().astype("int64")

        return df[SESSIONIZED_COLUMNS]

    def _segment_shard(self, shard: pd.DataFrame) -> pd.DataFrame:
        if shard.empty:
            raise EmptyPartitionError("Received an empty customer shard")
        return self._segment(shard)

    def _sessionize_sharded(self, df: pd.DataFrame) -> pd.DataFrame:
        """Segment customer shards on a thread pool and merge on the calling thread."""
        buckets: List[List[pd.DataFrame]] = [[] for _ in range(self.n_workers)]
        for i, (_, events) in enumerate(iter_partitions(df)):
            buckets[i % self.n_workers].append(events)

        shards = [pd.concat(bucket) for bucket in buckets if bucket]
        logger.info(f"   Fanning out {len(shards)} customer shards")

        with ThreadPoolExecutor(max_workers=self.n_workers) as pool:
            results = list(pool.map(self._segment_shard, shards))

        merged = pd.concat(results, ignore_index=True)
        return merged.sort_values(["customer_id", "event_seq"]).reset_index(drop=True)

    def calculate_stats(self, df: pd.DataFrame) -> SessionStats:
        """Calculate sessionization statistics."""
        sessions = df.groupby(["customer_id", "session_number"])
        session_agg = sessions.agg(
            start_time=("timestamp", "min"),
            end_time=("timestamp", "max"),
            events=("timestamp", "size"),
            has_order=("type", lambda x: (x == ORDER_EVENT_TYPE).any()),
        )
        duration_minutes = minutes_between(session_agg["end_time"] - session_agg["start_time"])

        return SessionStats(
            total_events=len(df),
            total_customers=df["customer_id"].nunique(),
            total_sessions=len(session_agg),
            avg_events_per_session=float(session_agg["events"].mean()),
            avg_session_duration_minutes=float(duration_minutes.mean()),
            sessions_with_order=int(session_agg["has_order"].sum()),
            session_conversion_rate=float(session_agg["has_order"].mean()),
        )

    def _log_stats(self, stats: SessionStats):
        logger.info("✅ Sessionization complete:")
        logger.info(f"   Total events: {stats.total_events:,}")
        logger.info(f"   Customers: {stats.total_customers:,}")
        logger.info(f"   Total sessions: {stats.total_sessions:,}")
        logger.info(f"   Avg events/session: {stats.avg_events_per_session:.1f}")
        logger.info(f"   Avg session duration: {stats.avg_session_duration_minutes:.1f} minutes")
        logger.info(
            f"   Sessions with order: {stats.sessions_with_order:,} "
            f"({stats.session_conversion_rate:.2%})"
        )


def resessionize(
    events_df: pd.DataFrame, session_length: float, strict_timestamps: bool = False
) -> pd.DataFrame:
    """Sessionize raw events again with a different threshold."""
    return TimeBasedSessionizer(session_length=session_length).sessionize(
        events_df, strict_timestamps=strict_timestamps
    )
