"""
Unit tests for the Funnel Metrics API

Run with: pytest deployment/api/test_api.py -v
"""

import pandas as pd
import pytest
from fastapi.testclient import TestClient

from deployment.api.main import app, get_warehouse
from sessionfunnel.data.sessionization import TimeBasedSessionizer
from sessionfunnel.errors import UpstreamUnavailableError
from sessionfunnel.storage.staging import stage_events
from sessionfunnel.storage.warehouse import EventWarehouse


def _events():
    base = pd.Timestamp("2024-03-01 09:00:00")
    rows = [
        # customer 1: two browsing sessions, then orders in a third
        (1, base, "page_view"),
        (1, base + pd.Timedelta(minutes=10), "add_to_cart"),
        (1, base + pd.Timedelta(minutes=60), "page_view"),
        (1, base + pd.Timedelta(minutes=120), "placed_order"),
        # customer 2: orders straight away
        (2, base, "placed_order"),
    ]
    return pd.DataFrame(rows, columns=["customer_id", "timestamp", "type"])


@pytest.fixture
def loaded_warehouse(tmp_path):
    """Warehouse with one staged and copied sessionization run."""
    sessionized = TimeBasedSessionizer(session_length=30).sessionize(_events())
    stage_dir = tmp_path / "stage"
    stage_events(sessionized, tmp_path / "sessionized.parquet", stage_dir)

    warehouse = EventWarehouse(tmp_path / "warehouse.duckdb", stage_dir).connect().prepare_db()
    warehouse.copy_stage_to_table(poll_interval=0, max_attempts=1)
    yield warehouse
    warehouse.close()


@pytest.fixture
def empty_warehouse(tmp_path):
    warehouse = EventWarehouse(tmp_path / "empty.duckdb", tmp_path / "stage").connect().prepare_db()
    yield warehouse
    warehouse.close()


class BrokenWarehouse:
    """Stands in for a warehouse whose backend is down."""

    def row_count(self):
        raise UpstreamUnavailableError("connection refused")

    def publish_metrics(self):
        raise UpstreamUnavailableError("connection refused")


def _client_for(warehouse):
    app.dependency_overrides[get_warehouse] = lambda: warehouse
    return TestClient(app)


@pytest.fixture(autouse=True)
def clear_overrides():
    yield
    app.dependency_overrides.clear()


class TestGeneralEndpoints:
    """Test general API endpoints."""

    def test_root(self, loaded_warehouse):
        """Test root endpoint."""
        response = _client_for(loaded_warehouse).get("/")
        assert response.status_code == 200
        data = response.json()
        assert data["name"] == "Session Funnel Metrics API"
        assert data["status"] == "running"

    def test_ping(self, loaded_warehouse):
        response = _client_for(loaded_warehouse).get("/ping")
        assert response.status_code == 200
        assert response.json() == {"message": "pong"}

    def test_health_check(self, loaded_warehouse):
        """Test health check endpoint."""
        response = _client_for(loaded_warehouse).get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["warehouse_connected"] is True
        assert data["events_loaded"] == 5

    def test_health_check_degraded(self):
        response = _client_for(BrokenWarehouse()).get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "degraded"


class TestMetricsEndpoints:
    """Test the order metrics endpoint."""

    def test_order_metrics(self, loaded_warehouse):
        response = _client_for(loaded_warehouse).get("/metrics/orders")
        assert response.status_code == 200
        data = response.json()
        # gaps: customer 1 → 2, customer 2 → 0
        assert data["median_visits_before_order"] == pytest.approx(1.0)
        # pre-order sessions of customer 1 last 10 and 0 minutes
        assert data["median_session_duration_minutes_before_order"] == pytest.approx(5.0)

    def test_order_metrics_no_data(self, empty_warehouse):
        """Empty store is reported as not found, not as zero."""
        response = _client_for(empty_warehouse).get("/metrics/orders")
        assert response.status_code == 404

    def test_order_metrics_upstream_failure(self):
        response = _client_for(BrokenWarehouse()).get("/metrics/orders")
        assert response.status_code == 500
        assert "connection refused" not in response.text


class TestDataEndpoints:
    """Test data view and re-sessionization endpoints."""

    def test_view_top_raw(self, loaded_warehouse):
        response = _client_for(loaded_warehouse).get("/data/view", params={"nrow": 2})
        assert response.status_code == 200
        data = response.json()
        assert data["columns"] == ["customer_id", "timestamp", "type"]
        assert [row["type"] for row in data["rows"]] == ["page_view", "add_to_cart"]

    def test_view_bottom_sessionized(self, loaded_warehouse):
        response = _client_for(loaded_warehouse).get(
            "/data/view", params={"sessionized": True, "side": "bottom", "nrow": 2}
        )
        assert response.status_code == 200
        data = response.json()
        assert "session_number" in data["columns"]
        assert [row["customer_id"] for row in data["rows"]] == [1, 2]
        assert data["rows"][0]["session_number"] == 2

    def test_view_invalid_side(self, loaded_warehouse):
        response = _client_for(loaded_warehouse).get("/data/view", params={"side": "middle"})
        assert response.status_code == 422

    def test_view_empty(self, empty_warehouse):
        response = _client_for(empty_warehouse).get("/data/view")
        assert response.status_code == 404

    def test_re_sessionize(self, loaded_warehouse):
        """A longer session length merges customer 1 into fewer sessions."""
        response = _client_for(loaded_warehouse).get(
            "/data/re-sessionize", params={"session_length": 90}
        )
        assert response.status_code == 200
        data = response.json()
        assert data["session_length"] == 90
        assert data["customers"] == 2
        # customer 1: gaps 10, 50, 60 all <= 90 → one session; customer 2: one session
        assert data["sessions"] == 2
        assert data["metrics"]["median_visits_before_order"] == pytest.approx(0.0)

    def test_re_sessionize_leaves_store_untouched(self, loaded_warehouse):
        client = _client_for(loaded_warehouse)
        client.get("/data/re-sessionize", params={"session_length": 90})

        response = client.get("/metrics/orders")
        assert response.json()["median_visits_before_order"] == pytest.approx(1.0)

    def test_re_sessionize_negative_length(self, loaded_warehouse):
        response = _client_for(loaded_warehouse).get(
            "/data/re-sessionize", params={"session_length": -1}
        )
        assert response.status_code == 422


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
