"""Badge count exports."""

from .aggregator import BadgeCounts, NotificationAggregator

__all__ = ["BadgeCounts", "NotificationAggregator"]
