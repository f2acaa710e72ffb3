"""
Metrics feature — aggregate statistics over finished workflows.

Public API:
    from features.metrics import Metrics, MetricsAggregator
"""

from features.metrics.aggregator import MetricsAggregator
from features.metrics.models import Metrics

__all__ = ["Metrics", "MetricsAggregator"]
