"""
Session Funnel Analytics

Sessionizes per-customer event logs and derives order funnel metrics.
"""

__version__ = "1.0.0"

from .errors import (
    EmptyPartitionError,
    InvalidInputError,
    NoDataError,
    SessionFunnelError,
    UpstreamUnavailableError,
)

__all__ = [
    "EmptyPartitionError",
    "InvalidInputError",
    "NoDataError",
    "SessionFunnelError",
    "UpstreamUnavailableError",
]
