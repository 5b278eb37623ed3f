from .funnel import FunnelAggregator, MetricsSnapshot, compute_funnel_metrics, median

__all__ = ["FunnelAggregator", "MetricsSnapshot", "compute_funnel_metrics", "median"]
