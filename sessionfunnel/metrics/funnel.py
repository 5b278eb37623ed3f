"""
Funnel Aggregation

Relates sessions to the orders that follow them:
- median number of sessions between consecutive orders
- median duration of the sessions before a customer's first order

Both metrics are medians over the whole customer population. An empty
population raises NoDataError rather than producing 0.0.
"""

from dataclasses import asdict, dataclass
from typing import Dict, Iterable

import numpy as np
import pandas as pd

from sessionfunnel.data.events import ORDER_EVENT_TYPE
from sessionfunnel.data.sessionization import minutes_between
from sessionfunnel.errors import InvalidInputError, NoDataError

REQUIRED_COLUMNS = ["customer_id", "timestamp", "type", "session_number"]


@dataclass(frozen=True)
class MetricsSnapshot:
    """Funnel metrics computed over the full event history."""

    median_visits_before_order: float
    median_session_duration_minutes_before_order: float

    def to_dict(self) -> Dict[str, float]:
        return asdict(self)


def median(values: Iterable[float], label: str = "population") -> float:
    """
    Median of a numeric population.

    Odd sizes return the middle value, even sizes the mean of the two middle
    values. An empty population raises NoDataError.
    """
    population = np.sort(np.asarray(list(values), dtype="float64"))
    if population.size == 0:
        raise NoDataError(f"No data to compute the median of {label}")
    return float(np.median(population))


class FunnelAggregator:
    """
    Computes order funnel metrics from a sessionized event table.

    The aggregator is stateless: every call works on the frame it is given.
    """

    def number_orders(self, events_df: pd.DataFrame) -> pd.DataFrame:
        """
        Add placed_order and order_number columns.

        order_number counts orders up to and including the current event,
        so browsing before the first order has order_number 0.
        """
        missing_cols = set(REQUIRED_COLUMNS) - set(events_df.columns)
        if missing_cols:
            raise InvalidInputError(f"Missing required columns: {missing_cols}")

        sort_cols = ["customer_id", "timestamp"]
        if "event_seq" in events_df.columns:
            sort_cols.append("event_seq")

        df = events_df.sort_values(sort_cols, kind="mergesort").reset_index(drop=True)
        df["placed_order"] = (df["type"] == ORDER_EVENT_TYPE).astype("int64")
        df["order_number"] = df.groupby("customer_id")["placed_order"].cumsum()
        return df

    def visit_gaps(self, events_df: pd.DataFrame) -> pd.Series:
        """
        Sessions elapsed between each order and the customer's previous one.

        One value per (customer, order). Each order owns the highest session
        seen while its order_number was in effect, browsing up to the next
        order included. The first order of a customer is measured from
        session 0.
        """
        df = self.number_orders(events_df)
        ordered = df[df["order_number"] >= 1]

        max_session_for_order = ordered.groupby(["customer_id", "order_number"])[
            "session_number"
        ].max()
        previous = max_session_for_order.groupby(level="customer_id").shift(1).fillna(0)

        return (max_session_for_order - previous).astype("float64").reset_index(drop=True)

    def pre_order_session_durations(self, events_df: pd.DataFrame) -> pd.Series:
        """
        Duration in minutes of every session before a customer's first order.

        Every event with order_number 0 counts, so customers who never order
        contribute all their sessions. A session cut by the first order
        counts up to its last browsing event.
        """
        df = self.number_orders(events_df)
        before_first_order = df[df["order_number"] == 0]

        if before_first_order.empty:
            return pd.Series(dtype="float64")

        bounds = before_first_order.groupby(["customer_id", "session_number"])["timestamp"].agg(
            ["min", "max"]
        )
        return minutes_between(bounds["max"] - bounds["min"])

    def compute(self, events_df: pd.DataFrame) -> MetricsSnapshot:
        """
        Compute the metrics snapshot.

        Raises:
            NoDataError: If there are no events, no orders, or no pre-order sessions
        """
        if events_df.empty:
            raise NoDataError("No events available")
        if not (events_df["type"] == ORDER_EVENT_TYPE).any():
            raise NoDataError("No placed_order events available")

        return MetricsSnapshot(
            median_visits_before_order=median(
                self.visit_gaps(events_df), label="visits before order"
            ),
            median_session_duration_minutes_before_order=median(
                self.pre_order_session_durations(events_df),
                label="session duration before order",
            ),
        )


def compute_funnel_metrics(events_df: pd.DataFrame) -> MetricsSnapshot:
    """Compute funnel metrics for a sessionized event table."""
    return FunnelAggregator().compute(events_df)
