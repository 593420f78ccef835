"""
Statistical anomaly model: z-score combined with IQR fences.

Only the first feature (the primary value) is modelled.

Parameters:
    z_threshold: Z-score mapped to a score of 1 (default 3.0)
    iqr_multiplier: Fence distance in IQRs (default 1.5)
"""

import math
from dataclasses import dataclass
from typing import Any

import numpy as np

from ..config import ModelConfig, ModelType
from .base import AnomalyModel


@dataclass
class StatisticalState:
    mean: float
    std_dev: float
    q1: float
    q3: float
    n_features: int

    @property
    def iqr(self) -> float:
        return self.q3 - self.q1


class StatisticalModel(AnomalyModel):
    model_type = ModelType.STATISTICAL

    def __init__(self, config: ModelConfig):
        super().__init__(config)
        self.z_threshold = float(self.parameters.get("z_threshold", 3.0))
        self.iqr_multiplier = float(self.parameters.get("iqr_multiplier", 1.5))

    def _fit(self, data: np.ndarray) -> StatisticalState:
        values = data[:, 0]
        q1, q3 = np.percentile(values, [25, 75])
        return StatisticalState(
            mean=float(values.mean()),
            std_dev=float(values.std()),
            q1=float(q1),
            q3=float(q3),
            n_features=data.shape[1],
        )

    def _score(self, x: np.ndarray, state: StatisticalState) -> float:
        value = float(x[0])

        if state.std_dev > 0:
            z = abs(value - state.mean) / state.std_dev
        else:
            z = 0.0 if value == state.mean else math.inf
        z_score = min(1.0, z / self.z_threshold)

        lower = state.q1 - self.iqr_multiplier * state.iqr
        upper = state.q3 + self.iqr_multiplier * state.iqr
        iqr_score = 1.0 if value < lower or value > upper else 0.0

        return (z_score + iqr_score) / 2.0

    def _quality_estimates(self, data: np.ndarray, state: StatisticalState) -> tuple[float, float]:
        n = data.shape[0]
        return min(0.85, 0.7 + (n / 5000) * 0.1), min(0.8, 0.65 + (n / 5000) * 0.1)

    def _state_to_dict(self, state: StatisticalState) -> dict[str, Any]:
        return {
            "mean": state.mean,
            "std_dev": state.std_dev,
            "q1": state.q1,
            "q3": state.q3,
            "n_features": state.n_features,
        }

    def _state_from_dict(self, data: dict[str, Any]) -> StatisticalState:
        return StatisticalState(**data)
