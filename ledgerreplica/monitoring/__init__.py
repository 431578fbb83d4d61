from ledgerreplica.monitoring.sync_metrics import MetricAggregation, SyncMetrics

__all__ = ["MetricAggregation", "SyncMetrics"]
