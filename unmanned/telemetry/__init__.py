from .aggregator import MAX_NUM_TIMING_SAMPLES, TelemetryAggregator

__all__ = ["TelemetryAggregator", "MAX_NUM_TIMING_SAMPLES"]
