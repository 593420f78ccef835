"""
Data model for the anomaly detection engine.

Monitoring data arrives as one of five variants (metric, log, trace, error,
user behavior). Everything the engine produces from it (baselines, scores,
explanations, anomalies) is an immutable value object.
"""

import time
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field, fields, is_dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any, ClassVar


class DataType(str, Enum):
    """Monitoring data variants"""

    METRIC = "metric"
    LOG = "log"
    TRACE = "trace"
    ERROR = "error"
    BEHAVIOR = "behavior"


class Severity(str, Enum):
    """Anomaly severity levels"""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class SeasonalPeriod(str, Enum):
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"


class TrendDirection(str, Enum):
    INCREASING = "increasing"
    DECREASING = "decreasing"
    STABLE = "stable"


def utc_now() -> datetime:
    return datetime.now(UTC)


def to_datetime(value: Any) -> datetime:
    """Coerce a wire timestamp (ISO string, epoch milliseconds or datetime) to an aware datetime

    Raises:
        ValueError: If the value cannot be interpreted as a timestamp
    """
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        try:
            return datetime.fromtimestamp(value / 1000, tz=UTC)
        except (OverflowError, OSError) as e:
            raise ValueError(f"Timestamp out of range: {value!r}") from e
    if isinstance(value, str):
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
    raise ValueError(f"Unsupported timestamp: {value!r}")


# ---------------------------------------------------------------------------
# Monitoring data
# ---------------------------------------------------------------------------


@dataclass(frozen=True, kw_only=True)
class MonitoringData:
    """Fields shared by every monitoring data variant"""

    data_type: ClassVar[DataType]

    timestamp: datetime
    source: str
    tags: dict[str, str] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "timestamp", to_datetime(self.timestamp))


@dataclass(frozen=True, kw_only=True)
class MetricData(MonitoringData):
    data_type: ClassVar[DataType] = DataType.METRIC

    value: float
    previous_value: float | None = None


@dataclass(frozen=True, kw_only=True)
class LogData(MonitoringData):
    data_type: ClassVar[DataType] = DataType.LOG

    level: str  # debug | info | warn | error | critical
    message: str
    stack_trace: str | None = None


@dataclass(frozen=True, kw_only=True)
class TraceData(MonitoringData):
    data_type: ClassVar[DataType] = DataType.TRACE

    trace_id: str
    span_id: str
    operation: str
    duration: float  # milliseconds
    status: str  # success | error | timeout


@dataclass(frozen=True, kw_only=True)
class ErrorData(MonitoringData):
    data_type: ClassVar[DataType] = DataType.ERROR

    error_type: str
    message: str
    severity: str  # low | medium | high | critical
    stack_trace: str | None = None


@dataclass(frozen=True, kw_only=True)
class BehaviorData(MonitoringData):
    data_type: ClassVar[DataType] = DataType.BEHAVIOR

    session_id: str
    action: str
    page: str
    success: bool
    duration: float | None = None
    user_id: str | None = None


DATA_CLASSES: dict[DataType, type[MonitoringData]] = {
    DataType.METRIC: MetricData,
    DataType.LOG: LogData,
    DataType.TRACE: TraceData,
    DataType.ERROR: ErrorData,
    DataType.BEHAVIOR: BehaviorData,
}

# camelCase names used by the instrumentation SDKs
_FIELD_ALIASES = {
    "traceId": "trace_id",
    "spanId": "span_id",
    "stackTrace": "stack_trace",
    "sessionId": "session_id",
    "userId": "user_id",
    "previousValue": "previous_value",
    "errorType": "error_type",
}


def _resolve_data_type(payload: dict[str, Any]) -> DataType:
    declared = payload.get("data_type", payload.get("type"))
    if isinstance(declared, DataType):
        return declared
    if declared in DataType._value2member_map_:
        return DataType(declared)

    if "value" in payload:
        return DataType.METRIC
    if "level" in payload:
        return DataType.LOG
    if "trace_id" in payload:
        return DataType.TRACE
    if "stack_trace" in payload or "severity" in payload:
        return DataType.ERROR
    if "action" in payload:
        return DataType.BEHAVIOR

    raise ValueError("Cannot determine monitoring data type")


def parse_monitoring_data(message: dict[str, Any]) -> MonitoringData:
    """Build a monitoring data variant from a wire dictionary

    Args:
        message: Decoded message, either with an explicit ``type`` key or with
            the variant's characteristic fields

    Returns:
        The matching MonitoringData variant

    Raises:
        ValueError: If the message is malformed
    """
    payload = {_FIELD_ALIASES.get(key, key): value for key, value in message.items()}
    data_type = _resolve_data_type(payload)
    data_class = DATA_CLASSES[data_type]

    if data_type is DataType.ERROR and "error_type" not in payload:
        declared = payload.get("type")
        payload["error_type"] = (
            declared if isinstance(declared, str) and declared != DataType.ERROR.value else "Error"
        )

    if "timestamp" not in payload:
        raise ValueError(f"Malformed {data_type.value} message: missing timestamp")

    names = {f.name for f in fields(data_class)}
    kwargs = {key: value for key, value in payload.items() if key in names}
    kwargs["timestamp"] = to_datetime(kwargs["timestamp"])
    kwargs["source"] = kwargs.get("source") or "unknown"
    for name in ("tags", "metadata"):
        if not isinstance(kwargs.get(name) or {}, Mapping):
            raise ValueError(f"Malformed {data_type.value} message: {name} must be an object")
    kwargs["tags"] = {str(k): str(v) for k, v in (kwargs.get("tags") or {}).items()}
    kwargs["metadata"] = dict(kwargs.get("metadata") or {})

    try:
        if data_type is DataType.METRIC:
            kwargs["value"] = float(kwargs["value"])
        return data_class(**kwargs)
    except (KeyError, TypeError) as e:
        raise ValueError(f"Malformed {data_type.value} message: {e}") from e


@dataclass(frozen=True)
class TimeSeriesPoint:
    timestamp: datetime
    value: float
    source: str
    data_type: DataType

    def __post_init__(self):
        object.__setattr__(self, "timestamp", to_datetime(self.timestamp))


# ---------------------------------------------------------------------------
# Baselines
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SeasonalPattern:
    """Bucket averages for one periodicity and how strongly they vary"""

    period: SeasonalPeriod
    pattern: tuple[float, ...]
    strength: float  # 0-1

    def to_dict(self) -> dict:
        return {"period": self.period.value, "pattern": list(self.pattern), "strength": self.strength}

    @classmethod
    def from_dict(cls, data: dict) -> "SeasonalPattern":
        return cls(
            period=SeasonalPeriod(data["period"]),
            pattern=tuple(data["pattern"]),
            strength=data["strength"],
        )


@dataclass(frozen=True)
class TrendData:
    slope: float
    intercept: float
    correlation: float  # R-squared
    direction: TrendDirection

    def to_dict(self) -> dict:
        return {
            "slope": self.slope,
            "intercept": self.intercept,
            "correlation": self.correlation,
            "direction": self.direction.value,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "TrendData":
        return cls(
            slope=data["slope"],
            intercept=data["intercept"],
            correlation=data["correlation"],
            direction=TrendDirection(data["direction"]),
        )


STABLE_TREND = TrendData(slope=0.0, intercept=0.0, correlation=0.0, direction=TrendDirection.STABLE)


@dataclass(frozen=True)
class Percentiles:
    p10: float
    p25: float
    p50: float
    p75: float
    p90: float
    p95: float
    p99: float

    def as_dict(self) -> dict[str, float]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


@dataclass(frozen=True)
class BaselineData:
    """Learned statistical summary of one baseline key"""

    mean: float
    std_dev: float
    min: float
    max: float
    percentiles: Percentiles
    seasonal_patterns: tuple[SeasonalPattern, ...]
    trend: TrendData
    last_updated: datetime
    sample_size: int

    def to_dict(self) -> dict:
        return {
            "mean": self.mean,
            "std_dev": self.std_dev,
            "min": self.min,
            "max": self.max,
            "percentiles": self.percentiles.as_dict(),
            "seasonal_patterns": [p.to_dict() for p in self.seasonal_patterns],
            "trend": self.trend.to_dict(),
            "last_updated": self.last_updated.isoformat(),
            "sample_size": self.sample_size,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "BaselineData":
        return cls(
            mean=data["mean"],
            std_dev=data["std_dev"],
            min=data["min"],
            max=data["max"],
            percentiles=Percentiles(**data["percentiles"]),
            seasonal_patterns=tuple(SeasonalPattern.from_dict(p) for p in data["seasonal_patterns"]),
            trend=TrendData.from_dict(data["trend"]),
            last_updated=to_datetime(data["last_updated"]),
            sample_size=data["sample_size"],
        )


# ---------------------------------------------------------------------------
# Models, scores and explanations
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ModelMetrics:
    """Self-reported quality estimates of a model, refreshed after each training run"""

    accuracy: float = 0.0
    precision: float = 0.0
    recall: float = 0.0
    f1_score: float = 0.0
    false_positive_rate: float = 0.0
    last_trained: datetime | None = None
    training_data_size: int = 0


@dataclass(frozen=True)
class AnomalyScore:
    score: float  # 0-100, 100 is most anomalous
    confidence: float  # 0-1
    severity: Severity
    timestamp: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class ExplanationFactor:
    name: str
    impact: float  # 0-1, contribution to the anomaly
    description: str
    evidence: tuple[str, ...] = ()
    confidence: float = 0.5


@dataclass(frozen=True)
class AnomalyExplanation:
    reason: str
    factors: tuple[ExplanationFactor, ...]
    suggestions: tuple[str, ...]
    confidence: float


def new_anomaly_id() -> str:
    return f"anomaly_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


@dataclass(frozen=True)
class Anomaly:
    id: str
    type: DataType
    score: AnomalyScore
    data: MonitoringData
    explanation: AnomalyExplanation
    baseline: BaselineData | None = None


@dataclass(frozen=True)
class Feedback:
    """Human or automated label for a previously emitted anomaly"""

    anomaly_id: str
    is_actual_anomaly: bool
    timestamp: datetime = field(default_factory=utc_now)
    user_id: str | None = None
    severity: Severity | None = None
    comment: str | None = None

    def __post_init__(self):
        object.__setattr__(self, "timestamp", to_datetime(self.timestamp))


def parse_feedback(message: dict[str, Any]) -> Feedback:
    """Build Feedback from a wire dictionary

    Raises:
        ValueError: If required fields are missing
    """
    try:
        anomaly_id = message.get("anomaly_id", message.get("anomalyId"))
        is_actual = message.get("is_actual_anomaly", message.get("isActualAnomaly"))
        if anomaly_id is None or is_actual is None:
            raise KeyError("anomaly_id/is_actual_anomaly")

        severity = message.get("severity")
        return Feedback(
            anomaly_id=str(anomaly_id),
            is_actual_anomaly=bool(is_actual),
            timestamp=to_datetime(message["timestamp"]) if "timestamp" in message else utc_now(),
            user_id=message.get("user_id", message.get("userId")),
            severity=Severity(severity) if severity else None,
            comment=message.get("comment"),
        )
    except KeyError as e:
        raise ValueError(f"Malformed feedback message: missing {e}") from e


def to_jsonable(obj: Any) -> Any:
    """Convert engine value objects into JSON-serializable structures"""
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, datetime):
        return obj.isoformat()
    if is_dataclass(obj) and not isinstance(obj, type):
        result = {f.name: to_jsonable(getattr(obj, f.name)) for f in fields(obj)}
        if isinstance(obj, MonitoringData):
            result["type"] = obj.data_type.value
        return result
    if isinstance(obj, dict):
        return {str(key): to_jsonable(value) for key, value in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [to_jsonable(item) for item in obj]
    return obj
