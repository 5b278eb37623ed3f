"""
Unit tests for the sessionization engine

Run with: pytest sessionfunnel/data/test_sessionization.py -v
"""

import pandas as pd
import pytest

from sessionfunnel.data.sessionization import TimeBasedSessionizer, resessionize
from sessionfunnel.errors import EmptyPartitionError, InvalidInputError

BASE = pd.Timestamp("2024-05-01 08:00:00")


def _events(rows):
    """Build raw events from (customer_id, minutes_after_base, type) tuples."""
    return pd.DataFrame(
        {
            "customer_id": [r[0] for r in rows],
            "timestamp": [
                (BASE + pd.Timedelta(minutes=r[1])).strftime("%Y-%m-%dT%H:%M:%S.%f") for r in rows
            ],
            "type": [r[2] for r in rows],
        }
    )


@pytest.fixture
def mixed_events():
    """Several customers, unsorted, with a null customer id."""
    rows = [
        (3, 200, "page_view"),
        (1, 0, "page_view"),
        (2, 15, "page_view"),
        (1, 40, "page_view"),
        (3, 0, "page_view"),
        (1, 5, "add_to_cart"),
        (2, 0, "page_view"),
        (3, 31, "placed_order"),
        (3, 61, "page_view"),
        (2, 100, "placed_order"),
    ]
    df = _events(rows)
    orphan = pd.DataFrame({"customer_id": [None], "timestamp": [df["timestamp"].iloc[0]], "type": ["page_view"]})
    return pd.concat([df, orphan], ignore_index=True)


class TestSessionBoundaries:
    """Test time_diff, new_session and session_number assignment."""

    def test_gap_over_threshold_starts_session(self):
        """Events at minutes 0, 5, 40 with a 30 minute threshold."""
        df = TimeBasedSessionizer(session_length=30).sessionize(
            _events([(1, 0, "page_view"), (1, 5, "page_view"), (1, 40, "page_view")])
        )
        assert df["time_diff"].tolist() == [0, 5, 35]
        assert df["new_session"].tolist() == [0, 0, 1]
        assert df["session_number"].tolist() == [0, 0, 1]

    def test_single_event_customer(self):
        df = TimeBasedSessionizer(session_length=30).sessionize(_events([(9, 0, "page_view")]))
        assert df["session_number"].tolist() == [0]
        assert df["time_diff"].tolist() == [0]
        assert df["new_session"].tolist() == [0]

    def test_gap_equal_to_threshold_stays_in_session(self):
        df = TimeBasedSessionizer(session_length=30).sessionize(
            _events([(1, 0, "page_view"), (1, 30, "page_view")])
        )
        assert df["session_number"].tolist() == [0, 0]

    def test_zero_session_length(self):
        """Any positive gap splits; simultaneous events stay together."""
        df = TimeBasedSessionizer(session_length=0).sessionize(
            _events([(1, 0, "a"), (1, 0, "b"), (1, 1, "c"), (1, 2, "d")])
        )
        assert df["session_number"].tolist() == [0, 0, 1, 2]

    def test_first_event_of_each_customer_never_starts_a_session(self):
        """Gaps are measured within a customer, never across customers."""
        df = TimeBasedSessionizer(session_length=0).sessionize(
            _events([(1, 500, "page_view"), (2, 0, "page_view"), (3, 900, "page_view")])
        )
        assert df["time_diff"].tolist() == [0, 0, 0]
        assert df["new_session"].tolist() == [0, 0, 0]
        assert df["session_number"].tolist() == [0, 0, 0]

    def test_fractional_minutes(self):
        events = pd.DataFrame(
            {
                "customer_id": [1, 1],
                "timestamp": ["2024-05-01T08:00:00.000000", "2024-05-01T08:00:30.000001"],
                "type": ["a", "b"],
            }
        )
        df = TimeBasedSessionizer(session_length=0.5).sessionize(events)
        assert df["time_diff"].iloc[1] == pytest.approx(0.5 + 1 / 60_000_000)
        assert df["new_session"].tolist() == [0, 1]

    def test_negative_session_length_rejected(self):
        with pytest.raises(InvalidInputError):
            TimeBasedSessionizer(session_length=-1)


class TestSessionInvariants:
    """Test properties that hold for every customer."""

    def test_sessions_start_at_zero_and_step_by_one(self, mixed_events):
        df = TimeBasedSessionizer(session_length=30).sessionize(mixed_events)
        for _, events in df.groupby("customer_id"):
            numbers = events["session_number"].tolist()
            assert numbers[0] == 0
            steps = [b - a for a, b in zip(numbers, numbers[1:])]
            assert all(step in (0, 1) for step in steps)
            assert steps == events["new_session"].tolist()[1:]
            assert (events["time_diff"] >= 0).all()
            assert events["time_diff"].iloc[0] == 0

    def test_null_customer_does_not_affect_others(self, mixed_events):
        with_orphan = TimeBasedSessionizer(session_length=30).sessionize(mixed_events)
        without_orphan = TimeBasedSessionizer(session_length=30).sessionize(
            mixed_events[mixed_events["customer_id"].notna()]
        )
        assert with_orphan["customer_id"].notna().all()
        pd.testing.assert_frame_equal(with_orphan, without_orphan)

    def test_idempotent(self, mixed_events):
        first = TimeBasedSessionizer(session_length=30).sessionize(mixed_events)
        second = TimeBasedSessionizer(session_length=30).sessionize(mixed_events)
        pd.testing.assert_frame_equal(first, second)

    def test_longer_session_length_never_adds_sessions(self, mixed_events):
        previous = None
        for session_length in [0, 5, 15, 30, 60, 240]:
            df = resessionize(mixed_events, session_length=session_length)
            final_sessions = df.groupby("customer_id")["session_number"].max()
            if previous is not None:
                assert (final_sessions <= previous).all()
            previous = final_sessions

    def test_resessionize_leaves_input_untouched(self, mixed_events):
        snapshot = mixed_events.copy()
        resessionize(mixed_events, session_length=10)
        pd.testing.assert_frame_equal(mixed_events, snapshot)

    def test_raw_fields_unchanged(self, mixed_events):
        df = TimeBasedSessionizer(session_length=30).sessionize(mixed_events)
        assert sorted(df["type"].tolist()) == sorted(mixed_events.dropna()["type"].tolist())


class TestShardedSessionization:
    """Test the thread fan-out path."""

    def test_matches_single_threaded(self, mixed_events):
        single = TimeBasedSessionizer(session_length=30).sessionize(mixed_events)
        sharded = TimeBasedSessionizer(session_length=30, n_workers=2).sessionize(mixed_events)
        pd.testing.assert_frame_equal(single, sharded)

    def test_empty_shard_is_an_invariant_violation(self):
        sessionizer = TimeBasedSessionizer(session_length=30, n_workers=2)
        empty = _events([(1, 0, "a")]).iloc[0:0]
        with pytest.raises(EmptyPartitionError):
            sessionizer._segment_shard(empty)


class TestSessionStats:
    """Test sessionization statistics."""

    def test_stats(self, mixed_events):
        sessionizer = TimeBasedSessionizer(session_length=30)
        stats = sessionizer.calculate_stats(sessionizer.sessionize(mixed_events))
        # customer 1: 2 sessions, customer 2: 2 sessions, customer 3: 3 sessions
        assert stats.total_events == 10
        assert stats.total_customers == 3
        assert stats.total_sessions == 7
        assert stats.sessions_with_order == 2


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
