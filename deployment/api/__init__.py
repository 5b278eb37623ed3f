"""
Session Funnel Metrics API

FastAPI application serving order funnel metrics.
"""

__version__ = "1.0.0"

from .main import app

__all__ = ["app"]
