"""
Builders for test data points.
"""

from datetime import UTC, datetime, timedelta

from src.anomaly.types import STABLE_TREND, BaselineData, MetricData, Percentiles, utc_now

MONDAY = datetime(2025, 1, 6, tzinfo=UTC)


def make_metric(value, timestamp=None, source="api-server", tags=None, previous_value=None):
    """Build a metric data point with sensible defaults."""
    return MetricData(
        timestamp=timestamp or utc_now(),
        source=source,
        tags=tags or {},
        value=value,
        previous_value=previous_value,
    )


def metric_series(values, start=None, step=timedelta(minutes=1), source="api-server"):
    """Metric points spaced evenly from start."""
    start = start or utc_now() - step * len(values)
    return [make_metric(float(v), timestamp=start + step * i, source=source) for i, v in enumerate(values)]


def make_baseline(mean=100.0, std_dev=10.0, sample_size=500, patterns=()):
    """Baseline with fixed percentiles around a mean of 100."""
    return BaselineData(
        mean=mean,
        std_dev=std_dev,
        min=mean - 4 * std_dev,
        max=mean + 4 * std_dev,
        percentiles=Percentiles(p10=87.0, p25=93.0, p50=100.0, p75=107.0, p90=113.0, p95=116.0, p99=123.0),
        seasonal_patterns=tuple(patterns),
        trend=STABLE_TREND,
        last_updated=utc_now(),
        sample_size=sample_size,
    )
