"""
Feature extraction from monitoring data.

Every data variant exposes one primary scalar (used for baselines and the
statistical explanation) and a small type-specific feature vector (used by the
models). Enumerated fields are mapped to ordinal codes.
"""

import math

from .types import (
    BehaviorData,
    ErrorData,
    LogData,
    MetricData,
    MonitoringData,
    TraceData,
)

LOG_LEVELS = {"debug": 1, "info": 2, "warn": 3, "warning": 3, "error": 4, "critical": 5}
ERROR_SEVERITIES = {"low": 1, "medium": 2, "high": 3, "critical": 4}
TRACE_STATUSES = {"success": 1, "error": 2, "timeout": 3}

# Tags that split a source into finer-grained baselines
BASELINE_TAGS = ("service", "endpoint", "environment", "region")


def log_level_code(level: str | None) -> int:
    return LOG_LEVELS.get((level or "").lower(), 0)


def severity_code(severity: str | None) -> int:
    return ERROR_SEVERITIES.get((severity or "").lower(), 0)


def status_code(status: str | None) -> int:
    return TRACE_STATUSES.get((status or "").lower(), 0)


def extract_primary_value(data: MonitoringData) -> float:
    """Scalar that represents the data point in its baseline series"""
    if isinstance(data, MetricData):
        return _as_float(data.value)
    if isinstance(data, (TraceData, BehaviorData)):
        return _as_float(data.duration or 0.0)
    if isinstance(data, LogData):
        return float(log_level_code(data.level))
    if isinstance(data, ErrorData):
        return float(severity_code(data.severity))
    return 0.0


def extract_features(data: MonitoringData) -> list[float]:
    """Type-specific feature vector fed to the models"""
    if isinstance(data, MetricData):
        return [_as_float(data.value)]
    if isinstance(data, LogData):
        return [float(log_level_code(data.level)), float(len(data.message or ""))]
    if isinstance(data, TraceData):
        return [_as_float(data.duration), float(status_code(data.status))]
    if isinstance(data, ErrorData):
        return [float(severity_code(data.severity)), float(len(data.stack_trace or ""))]
    if isinstance(data, BehaviorData):
        return [_as_float(data.duration or 0.0), 1.0 if data.success else 0.0]
    raise TypeError(f"Unsupported monitoring data: {type(data).__name__}")


def is_valid_value(value: float) -> bool:
    return isinstance(value, (int, float)) and math.isfinite(value)


def is_valid_features(features: list[float]) -> bool:
    return len(features) > 0 and all(is_valid_value(v) for v in features)


def baseline_key(data: MonitoringData) -> str:
    """Deterministic key partitioning data points into independent series

    Format: ``<type>:<source>[:tag:value,...]`` with the relevant tags sorted.
    """
    source = data.source or "unknown"
    tags = data.tags or {}
    relevant = sorted(f"{tag}:{tags[tag]}" for tag in BASELINE_TAGS if tags.get(tag))
    key = f"{data.data_type.value}:{source}"
    return f"{key}:{','.join(relevant)}" if relevant else key


def _as_float(value) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return math.nan
