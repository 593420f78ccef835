"""
Anomaly detection engine: baselines, models, detector and explainer.
"""

from .baseline import BaselineCheck, BaselineManager
from .config import (
    AutoTuningConfig,
    DetectorConfig,
    ModelConfig,
    ModelType,
    PerformanceConfig,
    ThresholdConfig,
    default_detector_config,
)
from .detector import (
    AnomalyDetector,
    DetectorEvent,
    DetectorState,
    EventType,
    ThresholdAdjustment,
    TrainingSummary,
)
from .errors import (
    AnomalyEngineError,
    DetectorStateError,
    InvalidModelTypeError,
    ModelNotInitializedError,
    NotInitializedError,
    TrainingError,
)
from .explainer import AnomalyExplainer, DetailedExplanation, VisualExplanation
from .types import (
    Anomaly,
    AnomalyExplanation,
    AnomalyScore,
    BaselineData,
    BehaviorData,
    DataType,
    ErrorData,
    ExplanationFactor,
    Feedback,
    LogData,
    MetricData,
    MonitoringData,
    Severity,
    TraceData,
    parse_feedback,
    parse_monitoring_data,
)

__all__ = [
    "Anomaly",
    "AnomalyDetector",
    "AnomalyEngineError",
    "AnomalyExplainer",
    "AnomalyExplanation",
    "AnomalyScore",
    "AutoTuningConfig",
    "BaselineCheck",
    "BaselineData",
    "BaselineManager",
    "BehaviorData",
    "DataType",
    "DetailedExplanation",
    "DetectorConfig",
    "DetectorEvent",
    "DetectorState",
    "DetectorStateError",
    "ErrorData",
    "EventType",
    "ExplanationFactor",
    "Feedback",
    "InvalidModelTypeError",
    "LogData",
    "MetricData",
    "ModelConfig",
    "ModelNotInitializedError",
    "ModelType",
    "MonitoringData",
    "NotInitializedError",
    "PerformanceConfig",
    "Severity",
    "ThresholdAdjustment",
    "ThresholdConfig",
    "TraceData",
    "TrainingError",
    "TrainingSummary",
    "VisualExplanation",
    "default_detector_config",
    "parse_feedback",
    "parse_monitoring_data",
]
