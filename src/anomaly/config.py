"""
Configuration for the anomaly detector and its models.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .errors import InvalidModelTypeError


class ModelType(str, Enum):
    """Closed set of model variants known to the registry"""

    ISOLATION_FOREST = "isolation_forest"
    CLUSTERING = "clustering"
    STATISTICAL = "statistical"
    SEQUENCE = "sequence"
    ENSEMBLE = "ensemble"


@dataclass
class ModelConfig:
    """Configuration of one model instance"""

    type: ModelType = ModelType.ISOLATION_FOREST
    parameters: dict[str, Any] = field(default_factory=dict)
    threshold: float = 0.6  # score above which the model itself flags a sample
    auto_tune: bool = False

    def __post_init__(self):
        if not isinstance(self.type, ModelType):
            try:
                self.type = ModelType(self.type)
            except ValueError as e:
                raise InvalidModelTypeError(f"Unknown model type: {self.type}") from e


@dataclass
class ThresholdConfig:
    anomaly_score: float = 70.0  # 0-100
    confidence: float = 0.7  # 0-1


@dataclass
class AutoTuningConfig:
    enabled: bool = True
    feedback_window: float = 60.0  # minutes
    min_samples: int = 50
    adjustment_rate: float = 0.1
    target_false_positive_rate: float = 0.05


@dataclass
class PerformanceConfig:
    max_latency: float = 100.0  # milliseconds
    batch_size: int = 100
    parallel_processing: bool = True
    queue_size: int = 10000
    queue_tick_seconds: float = 0.01


@dataclass
class DetectorConfig:
    """Configuration for the anomaly detector"""

    models: list[ModelConfig] = field(
        default_factory=lambda: [
            ModelConfig(type=ModelType.ISOLATION_FOREST, parameters={"isolation_tree_count": 100}),
            ModelConfig(type=ModelType.CLUSTERING, parameters={"cluster_count": 5}),
            ModelConfig(type=ModelType.STATISTICAL),
        ]
    )
    thresholds: ThresholdConfig = field(default_factory=ThresholdConfig)
    auto_tuning: AutoTuningConfig = field(default_factory=AutoTuningConfig)
    performance: PerformanceConfig = field(default_factory=PerformanceConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DetectorConfig":
        """Create from a nested dictionary (e.g. decoded JSON/YAML)

        Missing sections fall back to their defaults.
        """
        config = cls()
        if "models" in data:
            config.models = [ModelConfig(**model) for model in data["models"]]
        if "thresholds" in data:
            config.thresholds = ThresholdConfig(**data["thresholds"])
        if "auto_tuning" in data:
            config.auto_tuning = AutoTuningConfig(**data["auto_tuning"])
        if "performance" in data:
            config.performance = PerformanceConfig(**data["performance"])
        return config


def default_detector_config() -> DetectorConfig:
    return DetectorConfig()
