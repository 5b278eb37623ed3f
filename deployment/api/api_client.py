"""
Client for the Funnel Metrics API

Demonstrates how to interact with the API and validate responses.
"""

import argparse
import time
from typing import Dict, Optional

import requests


class FunnelAPIClient:
    """Client for interacting with the Funnel Metrics API."""

    def __init__(self, base_url: str = "http://localhost:8000", timeout: float = 10.0):
        """
        Initialize API client.

        Args:
            base_url: Base URL of the API
            timeout: Per-request timeout in seconds
        """
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.session = requests.Session()

    def _get(self, path: str, params: Optional[Dict] = None) -> Dict:
        response = self.session.get(f"{self.base_url}{path}", params=params, timeout=self.timeout)
        response.raise_for_status()
        return response.json()

    def ping(self) -> Dict:
        return self._get("/ping")

    def health_check(self) -> Dict:
        """
        Check API health status.

        Returns:
            Health check response
        """
        return self._get("/health")

    def order_metrics(self) -> Dict:
        """
        Fetch the current funnel metrics.

        Returns:
            Metrics response
        """
        return self._get("/metrics/orders")

    def view_data(self, sessionized: bool = False, side: str = "top", nrow: int = 5) -> Dict:
        return self._get("/data/view", params={"sessionized": sessionized, "side": side, "nrow": nrow})

    def re_sessionize(self, session_length: int) -> Dict:
        """
        Ask for metrics under a different session length.

        Args:
            session_length: Inactivity threshold in minutes

        Returns:
            Re-sessionization summary
        """
        return self._get("/data/re-sessionize", params={"session_length": session_length})


def main():
    """Smoke-test a running API."""
    parser = argparse.ArgumentParser(description="Funnel Metrics API smoke test")
    parser.add_argument("--url", default="http://localhost:8000", help="Base URL of the API")
    args = parser.parse_args()

    print("=" * 80)
    print("🧪 Testing Funnel Metrics API")
    print("=" * 80)

    client = FunnelAPIClient(args.url)

    # 1. Health Check
    print("\n1️⃣  Health Check")
    print("-" * 40)
    try:
        health = client.health_check()
        print(f"✅ Status: {health['status']}")
        print(f"   Events loaded: {health['events_loaded']}")
        print(f"   Uptime: {health['uptime_seconds']:.1f}s")
    except requests.exceptions.RequestException as e:
        print(f"❌ Health check failed: {str(e)}")
        return

    # 2. Order Metrics
    print("\n2️⃣  Order Metrics")
    print("-" * 40)
    try:
        start = time.time()
        metrics = client.order_metrics()
        latency = (time.time() - start) * 1000
        print(f"✅ Median visits before order: {metrics['median_visits_before_order']:.2f}")
        print(
            f"   Median session duration before order: "
            f"{metrics['median_session_duration_minutes_before_order']:.2f} minutes"
        )
        print(f"   Latency: {latency:.2f}ms")
    except requests.exceptions.RequestException as e:
        print(f"❌ Metrics request failed: {str(e)}")

    # 3. Data View
    print("\n3️⃣  Data View")
    print("-" * 40)
    try:
        view = client.view_data(sessionized=True, nrow=5)
        for row in view["rows"]:
            print(f"   {row}")
    except requests.exceptions.RequestException as e:
        print(f"❌ Data view failed: {str(e)}")

    # 4. Session Length Comparison
    print("\n4️⃣  Session Length Comparison")
    print("-" * 40)
    try:
        for session_length in [15, 30, 60]:
            result = client.re_sessionize(session_length)
            visits = result["metrics"]["median_visits_before_order"] if result["metrics"] else None
            print(f"   {session_length:>3} min: {result['sessions']:,} sessions, "
                  f"median visits before order = {visits}")
    except requests.exceptions.RequestException as e:
        print(f"❌ Re-sessionization failed: {str(e)}")

    print("\n" + "=" * 80)
    print("✅ API Testing Complete!")
    print("=" * 80)


if __name__ == "__main__":
    main()
