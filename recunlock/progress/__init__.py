"""Progress rollups per scan."""

from recunlock.progress.aggregator import ProgressAggregator, snapshot_from_counts

__all__ = ["ProgressAggregator", "snapshot_from_counts"]
