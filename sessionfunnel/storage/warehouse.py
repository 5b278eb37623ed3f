"""
Event Warehouse

DuckDB-backed durable store for the sessionized ``webshop.events`` relation.

Responsibilities:
- create the schema and tables
- poll the staging area until staged parquet is readable
- replace the table with the staged snapshot whenever its content changes
- evaluate the funnel metrics with window functions and median()
"""

import hashlib
import logging
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional, Union

import duckdb
import pandas as pd

from sessionfunnel.data.sessionization import SESSIONIZED_COLUMNS
from sessionfunnel.errors import NoDataError, UpstreamUnavailableError
from sessionfunnel.metrics.funnel import MetricsSnapshot

logger = logging.getLogger(__name__)

RAW_VIEW_COLUMNS = ["customer_id", "timestamp", "type"]

CREATE_SCHEMA_SQL = "CREATE SCHEMA IF NOT EXISTS webshop;"

CREATE_EVENTS_SQL = """
    CREATE TABLE IF NOT EXISTS webshop.events (
        customer_id BIGINT,
        "timestamp" TIMESTAMP,
        time_diff DOUBLE,
        new_session INTEGER,
        session_number INTEGER,
        "type" VARCHAR,
        event_seq INTEGER
    );
"""

CREATE_LOADED_FILES_SQL = """
    CREATE TABLE IF NOT EXISTS webshop.loaded_files (
        file_name VARCHAR NOT NULL,
        checksum VARCHAR,
        row_count BIGINT,
        loaded_at TIMESTAMP DEFAULT current_timestamp
    );
"""

MEDIAN_VISITS_BEFORE_ORDER_SQL = """
    -- flag events where an order was placed
    WITH placed_order_events AS (
        SELECT
            *,
            CASE WHEN "type" = 'placed_order' THEN 1 ELSE 0 END AS placed_order
        FROM webshop.events
    ),

    -- count orders placed up to and including each event
    order_numbers AS (
        SELECT
            *,
            SUM(placed_order) OVER (
                PARTITION BY customer_id ORDER BY "timestamp", event_seq
                ROWS BETWEEN UNBOUNDED PRECEDING AND CURRENT ROW
            ) AS order_number
        FROM placed_order_events
    ),

    -- highest session seen while each order_number was in effect
    orders AS (
        SELECT DISTINCT
            customer_id,
            order_number,
            MAX(session_number) OVER (PARTITION BY customer_id, order_number) AS max_session_for_order
        FROM order_numbers
        WHERE order_number >= 1
    ),

    -- sessions elapsed since the previous order
    session_diffs AS (
        SELECT
            max_session_for_order - COALESCE(
                LAG(max_session_for_order) OVER (PARTITION BY customer_id ORDER BY order_number),
                0
            ) AS session_diff
        FROM orders
    )

    SELECT median(CAST(session_diff AS DOUBLE))
    FROM session_diffs;
"""

MEDIAN_SESSION_DURATION_BEFORE_ORDER_SQL = """
    WITH placed_order_events AS (
        SELECT
            *,
            CASE WHEN "type" = 'placed_order' THEN 1 ELSE 0 END AS placed_order
        FROM webshop.events
    ),

    order_numbers AS (
        SELECT
            *,
            SUM(placed_order) OVER (
                PARTITION BY customer_id ORDER BY "timestamp", event_seq
                ROWS BETWEEN UNBOUNDED PRECEDING AND CURRENT ROW
            ) AS order_number
        FROM placed_order_events
    ),

    events_before_first_order AS (
        SELECT *
        FROM order_numbers
        WHERE order_number = 0
    ),

    session_duration AS (
        SELECT
            customer_id,
            session_number,
            CAST(date_diff('microsecond', MIN("timestamp"), MAX("timestamp")) AS DOUBLE)
                / 60000000 AS session_duration
        FROM events_before_first_order
        GROUP BY customer_id, session_number
    )

    SELECT median(session_duration)
    FROM session_duration;
"""

EVENT_COUNTS_SQL = """
    SELECT
        COUNT(*) AS events,
        COALESCE(SUM(CASE WHEN "type" = 'placed_order' THEN 1 ELSE 0 END), 0) AS orders
    FROM webshop.events;
"""


def _sql_literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def file_checksum(path: Path) -> str:
    """MD5 hex digest of a file's bytes."""
    digest = hashlib.md5()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(1 << 20), b""):
            digest.update(chunk)
    return digest.hexdigest()


class EventWarehouse:
    """
    Durable store for sessionized events.

    One DuckDB connection per warehouse; every query runs on its own cursor
    so the instance can be shared by request threads.
    """

    def __init__(
        self,
        database_path: Union[str, Path] = ":memory:",
        stage_dir: Optional[Union[str, Path]] = None,
    ):
        """
        Args:
            database_path: DuckDB database file (":memory:" for an ephemeral store)
            stage_dir: Staging area holding parquet files to copy in
        """
        self.database_path = str(database_path)
        self.stage_dir = Path(stage_dir) if stage_dir is not None else None
        self.conn: Optional[duckdb.DuckDBPyConnection] = None

    def connect(self) -> "EventWarehouse":
        if self.database_path != ":memory:":
            Path(self.database_path).parent.mkdir(parents=True, exist_ok=True)

        logger.info(f"Establishing connection to {self.database_path}")
        try:
            self.conn = duckdb.connect(self.database_path)
        except duckdb.Error as e:
            raise UpstreamUnavailableError(f"Could not open warehouse {self.database_path}: {e}") from e
        return self

    def close(self):
        if self.conn is not None:
            self.conn.close()
            self.conn = None

    @contextmanager
    def _cursor(self) -> Iterator[duckdb.DuckDBPyConnection]:
        if self.conn is None:
            self.connect()
        cursor = self.conn.cursor()
        try:
            yield cursor
        except duckdb.Error as e:
            raise UpstreamUnavailableError(f"Warehouse query failed: {e}") from e
        finally:
            cursor.close()

    def prepare_db(self) -> "EventWarehouse":
        """Create the schema, the events table and the staging area."""
        logger.info("Preparing database")
        with self._cursor() as cur:
            cur.execute(CREATE_SCHEMA_SQL)
            logger.info("Preparing table")
            cur.execute(CREATE_EVENTS_SQL)
            cur.execute(CREATE_LOADED_FILES_SQL)

        if self.stage_dir is not None:
            logger.info(f"Preparing stage at {self.stage_dir}")
            self.stage_dir.mkdir(parents=True, exist_ok=True)

        return self

    def _require_stage(self) -> Path:
        if self.stage_dir is None:
            raise UpstreamUnavailableError("No staging area configured")
        return self.stage_dir

    def staged_files(self) -> List[Path]:
        return sorted(self._require_stage().glob("*.parquet"))

    def stage_ready(self) -> bool:
        """True once staged parquet can be read."""
        pattern = _sql_literal(str(self._require_stage() / "*.parquet"))
        try:
            with self._cursor() as cur:
                cur.execute(f"SELECT * FROM read_parquet({pattern}) LIMIT 10;").fetchall()
        except UpstreamUnavailableError as e:
            logger.info(f"Error: {e.__cause__}")
            return False
        return True

    def wait_for_stage(self, poll_interval: float = 5.0, max_attempts: Optional[int] = None):
        """
        Poll the staging area with a fixed delay until data is visible.

        Args:
            poll_interval: Seconds to sleep between attempts
            max_attempts: Give up after this many failed checks (None = wait forever)

        Raises:
            UpstreamUnavailableError: If max_attempts checks all fail
        """
        logger.info("Testing if data is staged yet")
        attempts = 0
        while not self.stage_ready():
            attempts += 1
            if max_attempts is not None and attempts >= max_attempts:
                raise UpstreamUnavailableError(
                    f"Stage {self.stage_dir} not ready after {attempts} attempts"
                )
            logger.info(f"Sleeping for {poll_interval} seconds")
            time.sleep(poll_interval)

    def copy_stage_to_table(
        self, poll_interval: float = 5.0, max_attempts: Optional[int] = None
    ) -> int:
        """
        Replace webshop.events with the contents of the staging area.

        Every sessionization run stages the full history, so the stage is a
        snapshot rather than an increment. The table is rewritten in one
        transaction whenever a staged file's name or checksum differs from the
        last copy; an unchanged stage copies nothing.

        Returns:
            Number of rows copied
        """
        self.wait_for_stage(poll_interval=poll_interval, max_attempts=max_attempts)

        staged = {path.name: (path, file_checksum(path)) for path in self.staged_files()}
        columns = ", ".join(f'"{c}"' for c in SESSIONIZED_COLUMNS)
        copied = 0

        with self._cursor() as cur:
            loaded = dict(
                cur.execute("SELECT file_name, checksum FROM webshop.loaded_files;").fetchall()
            )
            if loaded == {name: checksum for name, (_, checksum) in staged.items()}:
                logger.info("Stage unchanged since last copy, skipping")
                return 0

            cur.begin()
            try:
                cur.execute("DELETE FROM webshop.events;")
                cur.execute("DELETE FROM webshop.loaded_files;")

                for name, (path, checksum) in staged.items():
                    source = f"read_parquet({_sql_literal(str(path))})"
                    logger.info(f"Copying {name} from stage into table")

                    rows = cur.execute(f"SELECT COUNT(*) FROM {source};").fetchone()[0]
                    cur.execute(
                        f"INSERT INTO webshop.events ({columns}) SELECT {columns} FROM {source};"
                    )
                    cur.execute(
                        "INSERT INTO webshop.loaded_files (file_name, checksum, row_count) "
                        "VALUES (?, ?, ?);",
                        [name, checksum, rows],
                    )
                    copied += rows

                cur.commit()
            except duckdb.Error:
                cur.rollback()
                raise

        logger.info(f"✅ Replaced webshop.events with {copied:,} staged rows")
        return copied

    def row_count(self) -> int:
        with self._cursor() as cur:
            return cur.execute("SELECT COUNT(*) FROM webshop.events;").fetchone()[0]

    def load_events(self, sessionized: bool = True) -> pd.DataFrame:
        """
        Read the stored relation ordered by customer and position.

        Args:
            sessionized: Include the derived session columns; otherwise only
                the raw customer_id / timestamp / type fields
        """
        columns = SESSIONIZED_COLUMNS if sessionized else RAW_VIEW_COLUMNS
        select = ", ".join(f'"{c}"' for c in columns)
        with self._cursor() as cur:
            return cur.execute(
                f"SELECT {select} FROM webshop.events ORDER BY customer_id, event_seq;"
            ).df()

    def view_data(self, sessionized: bool = False, side: str = "top", nrow: int = 5) -> pd.DataFrame:
        """First (side="top") or last (side="bottom") nrow rows of the table."""
        columns = SESSIONIZED_COLUMNS if sessionized else RAW_VIEW_COLUMNS
        select = ", ".join(f'"{c}"' for c in columns)
        direction = "DESC" if side == "bottom" else "ASC"

        with self._cursor() as cur:
            df = cur.execute(
                f"SELECT {select} FROM webshop.events "
                f"ORDER BY customer_id {direction}, event_seq {direction} LIMIT ?;",
                [int(nrow)],
            ).df()

        if side == "bottom":
            df = df.iloc[::-1].reset_index(drop=True)
        return df

    def publish_metrics(self) -> MetricsSnapshot:
        """
        Compute the funnel metrics over everything currently stored.

        Raises:
            NoDataError: If the table is empty, holds no orders, or a median
                population is empty
        """
        with self._cursor() as cur:
            events, orders = cur.execute(EVENT_COUNTS_SQL).fetchone()
            if events == 0:
                raise NoDataError("No events loaded")
            if orders == 0:
                raise NoDataError("No placed_order events loaded")

            visits = cur.execute(MEDIAN_VISITS_BEFORE_ORDER_SQL).fetchone()[0]
            duration = cur.execute(MEDIAN_SESSION_DURATION_BEFORE_ORDER_SQL).fetchone()[0]

        if visits is None:
            raise NoDataError("No data to compute the median of visits before order")
        if duration is None:
            raise NoDataError("No data to compute the median of session duration before order")

        return MetricsSnapshot(
            median_visits_before_order=float(visits),
            median_session_duration_minutes_before_order=float(duration),
        )
