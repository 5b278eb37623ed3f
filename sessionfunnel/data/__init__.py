from .events import fetch_events, normalize_events, partition_events, read_events_jsonl
from .sessionization import SessionStats, TimeBasedSessionizer, resessionize

__all__ = [
    "SessionStats",
    "TimeBasedSessionizer",
    "fetch_events",
    "normalize_events",
    "partition_events",
    "read_events_jsonl",
    "resessionize",
]
