"""
Anomaly model registry and factory.
"""

from ..config import ModelConfig, ModelType
from ..errors import InvalidModelTypeError
from .base import AnomalyModel
from .clustering import ClusteringModel
from .ensemble import EnsembleModel
from .isolation_forest import IsolationForestModel, IsolationNode, average_path_length
from .sequence import SequenceModel
from .statistical import StatisticalModel

# Registry of available models
MODEL_REGISTRY: dict[ModelType, type[AnomalyModel]] = {
    ModelType.ISOLATION_FOREST: IsolationForestModel,
    ModelType.CLUSTERING: ClusteringModel,
    ModelType.STATISTICAL: StatisticalModel,
    ModelType.SEQUENCE: SequenceModel,
    ModelType.ENSEMBLE: EnsembleModel,
}


def create_model(config: ModelConfig) -> AnomalyModel:
    """Factory to create an anomaly model

    Args:
        config: Model configuration; ``config.type`` selects the implementation

    Returns:
        Uninitialized model instance

    Raises:
        InvalidModelTypeError: If the type is not registered
    """
    model_type = config.type
    if model_type not in MODEL_REGISTRY:
        available = ", ".join(list_model_types())
        raise InvalidModelTypeError(f"Unknown model type '{model_type}'. Available models: {available}")

    model_class = MODEL_REGISTRY[model_type]
    return model_class(config)


def list_model_types() -> list[str]:
    """List all available model types"""
    return [model_type.value for model_type in MODEL_REGISTRY]


__all__ = [
    "MODEL_REGISTRY",
    "AnomalyModel",
    "ClusteringModel",
    "EnsembleModel",
    "IsolationForestModel",
    "IsolationNode",
    "SequenceModel",
    "StatisticalModel",
    "average_path_length",
    "create_model",
    "list_model_types",
]
