"""
Weighted ensemble of anomaly models.

Parameters:
    weights: Mapping of model type to weight
        (default isolation_forest 0.4, clustering 0.4, statistical 0.2)

All other parameters are passed through to every member model.
"""

from dataclasses import dataclass
from typing import Any

import numpy as np

from ..config import ModelConfig, ModelType
from ..types import ModelMetrics, utc_now
from .base import AnomalyModel
from .clustering import ClusteringModel
from .isolation_forest import IsolationForestModel
from .sequence import SequenceModel
from .statistical import StatisticalModel

DEFAULT_WEIGHTS = {
    ModelType.ISOLATION_FOREST: 0.4,
    ModelType.CLUSTERING: 0.4,
    ModelType.STATISTICAL: 0.2,
}

MEMBER_CLASSES: dict[ModelType, type[AnomalyModel]] = {
    ModelType.ISOLATION_FOREST: IsolationForestModel,
    ModelType.CLUSTERING: ClusteringModel,
    ModelType.STATISTICAL: StatisticalModel,
    ModelType.SEQUENCE: SequenceModel,
}


@dataclass
class EnsembleState:
    trained_members: tuple[str, ...]


class EnsembleModel(AnomalyModel):
    model_type = ModelType.ENSEMBLE

    def __init__(self, config: ModelConfig):
        super().__init__(config)
        raw_weights = self.parameters.get("weights") or DEFAULT_WEIGHTS
        self.weights = {ModelType(model_type): float(weight) for model_type, weight in raw_weights.items()}

        shared = {key: value for key, value in self.parameters.items() if key != "weights"}
        self.members: dict[ModelType, AnomalyModel] = {}
        for model_type in self.weights:
            if model_type not in MEMBER_CLASSES:
                raise ValueError(f"Model type '{model_type.value}' cannot be an ensemble member")
            member_config = ModelConfig(type=model_type, parameters=dict(shared), threshold=config.threshold)
            self.members[model_type] = MEMBER_CLASSES[model_type](member_config)

    def initialize(self) -> None:
        for member in self.members.values():
            member.initialize()
        super().initialize()

    def _fit(self, data: np.ndarray) -> EnsembleState | None:
        for member in self.members.values():
            member.train(data)
        trained = tuple(m.name for m in self.members.values() if m.is_trained)
        return EnsembleState(trained_members=trained) if trained else None

    def _score(self, x: np.ndarray, state: EnsembleState) -> float:
        total = 0.0
        weight_sum = 0.0
        for model_type, member in self.members.items():
            if not member.is_trained:
                continue
            total += self.weights[model_type] * member.predict(x)
            weight_sum += self.weights[model_type]
        return total / weight_sum if weight_sum > 0 else 0.0

    def _estimate_metrics(self, data: np.ndarray, state: EnsembleState) -> ModelMetrics:
        metrics = [m.get_model_metrics() for m in self.members.values() if m.is_trained]
        return ModelMetrics(
            accuracy=float(np.mean([m.accuracy for m in metrics])),
            precision=float(np.mean([m.precision for m in metrics])),
            recall=float(np.mean([m.recall for m in metrics])),
            f1_score=float(np.mean([m.f1_score for m in metrics])),
            false_positive_rate=float(np.mean([m.false_positive_rate for m in metrics])),
            last_trained=utc_now(),
            training_data_size=data.shape[0],
        )

    def _state_to_dict(self, state: EnsembleState) -> dict[str, Any]:
        return {
            "trained_members": list(state.trained_members),
            "members": {model_type.value: member.to_state() for model_type, member in self.members.items()},
        }

    def _state_from_dict(self, data: dict[str, Any]) -> EnsembleState:
        for model_type, document in data["members"].items():
            self.members[ModelType(model_type)].from_state(document)
        return EnsembleState(trained_members=tuple(data["trained_members"]))
