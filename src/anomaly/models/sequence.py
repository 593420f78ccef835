"""
Recurrent sequence anomaly model.

A single-layer Elman network (tanh hidden state, linear read-out) trained by
back-propagation through time to predict the next primary value from the
preceding window. At prediction time the feature vector is read as a
sequence: all but the last element are the context and the last element is
the observation, scored by its one-step-ahead error relative to the spread of
the training residuals.

Parameters:
    hidden_units: Size of the hidden state (default 16)
    sequence_length: Context window length (default 10)
    epochs: Passes over the training windows (default 20)
    learning_rate: SGD step size (default 0.01)
    error_threshold: Residual z-score mapped to a score of 1 (default 3.0)
    max_windows: Cap on training windows per epoch (default 2000)
    random_state: Seed for weight init and window order (default None)
"""

from dataclasses import dataclass, replace
from typing import Any

import numpy as np
import structlog

from ..config import ModelConfig, ModelType
from .base import AnomalyModel

logger = structlog.get_logger(__name__)

GRADIENT_CLIP = 1.0
MIN_RESIDUAL_STD = 1e-3


@dataclass
class RecurrentState:
    w_input: np.ndarray  # (H,)
    w_hidden: np.ndarray  # (H, H)
    bias: np.ndarray  # (H,)
    w_output: np.ndarray  # (H,)
    b_output: float
    scale_min: float
    scale_range: float
    residual_std: float

    # Sequences have no fixed length
    n_features = None

    def scale(self, values: np.ndarray) -> np.ndarray:
        return (values - self.scale_min) / self.scale_range

    def forward(self, inputs: np.ndarray) -> tuple[float, list[np.ndarray]]:
        hidden = np.zeros_like(self.bias)
        states = [hidden]
        for x_t in inputs:
            hidden = np.tanh(self.w_input * x_t + self.w_hidden @ hidden + self.bias)
            states.append(hidden)
        return float(self.w_output @ hidden + self.b_output), states


class SequenceModel(AnomalyModel):
    model_type = ModelType.SEQUENCE

    def __init__(self, config: ModelConfig):
        super().__init__(config)
        self.hidden_units = int(self.parameters.get("hidden_units", 16))
        self.sequence_length = int(self.parameters.get("sequence_length", 10))
        self.epochs = int(self.parameters.get("epochs", 20))
        self.learning_rate = float(self.parameters.get("learning_rate", 0.01))
        self.error_threshold = float(self.parameters.get("error_threshold", 3.0))
        self.max_windows = int(self.parameters.get("max_windows", 2000))

    def _fit(self, data: np.ndarray) -> RecurrentState | None:
        series = data[:, 0]
        if series.shape[0] <= self.sequence_length:
            return None

        rng = self._rng()
        low, high = float(series.min()), float(series.max())
        hidden = self.hidden_units
        state = RecurrentState(
            w_input=rng.normal(0.0, 0.5, hidden),
            w_hidden=rng.normal(0.0, 1.0 / np.sqrt(hidden), (hidden, hidden)),
            bias=np.zeros(hidden),
            w_output=rng.normal(0.0, 1.0 / np.sqrt(hidden), hidden),
            b_output=0.0,
            scale_min=low,
            scale_range=(high - low) or 1.0,
            residual_std=1.0,
        )

        scaled = state.scale(series)
        windows = np.arange(scaled.shape[0] - self.sequence_length)
        if windows.shape[0] > self.max_windows:
            windows = windows[-self.max_windows :]

        loss = 0.0
        for epoch in range(self.epochs):
            loss = 0.0
            for start in rng.permutation(windows):
                inputs = scaled[start : start + self.sequence_length]
                target = scaled[start + self.sequence_length]
                loss += self._train_step(state, inputs, target)
            loss /= windows.shape[0]

        residuals = np.array(
            [
                state.forward(scaled[start : start + self.sequence_length])[0]
                - scaled[start + self.sequence_length]
                for start in windows
            ]
        )
        state.residual_std = max(MIN_RESIDUAL_STD, float(residuals.std()))

        logger.debug(
            "Sequence model trained",
            windows=windows.shape[0],
            epochs=self.epochs,
            final_loss=round(loss, 6),
            residual_std=round(state.residual_std, 6),
        )
        return state

    def _train_step(self, state: RecurrentState, inputs: np.ndarray, target: float) -> float:
        """One SGD step of back-propagation through time; returns the squared error"""
        prediction, states = state.forward(inputs)
        error = prediction - target

        grad_w_output = error * states[-1]
        grad_b_output = error
        grad_w_input = np.zeros_like(state.w_input)
        grad_w_hidden = np.zeros_like(state.w_hidden)
        grad_bias = np.zeros_like(state.bias)

        delta_hidden = error * state.w_output
        for t in reversed(range(len(inputs))):
            delta = delta_hidden * (1.0 - states[t + 1] ** 2)
            grad_w_input += delta * inputs[t]
            grad_w_hidden += np.outer(delta, states[t])
            grad_bias += delta
            delta_hidden = state.w_hidden.T @ delta

        rate = self.learning_rate
        state.w_output -= rate * np.clip(grad_w_output, -GRADIENT_CLIP, GRADIENT_CLIP)
        state.b_output -= rate * float(np.clip(grad_b_output, -GRADIENT_CLIP, GRADIENT_CLIP))
        state.w_input -= rate * np.clip(grad_w_input, -GRADIENT_CLIP, GRADIENT_CLIP)
        state.w_hidden -= rate * np.clip(grad_w_hidden, -GRADIENT_CLIP, GRADIENT_CLIP)
        state.bias -= rate * np.clip(grad_bias, -GRADIENT_CLIP, GRADIENT_CLIP)
        return error**2

    def _score(self, x: np.ndarray, state: RecurrentState) -> float:
        if x.shape[0] < 2:
            return 0.0
        scaled = state.scale(x)
        context = scaled[:-1][-self.sequence_length :]
        prediction, _ = state.forward(context)
        z = abs(prediction - scaled[-1]) / state.residual_std
        return min(1.0, z / self.error_threshold)

    def _estimate_metrics(self, data: np.ndarray, state: RecurrentState):
        # Score training windows as sequences rather than single rows
        series = data[:, 0]
        window = self.sequence_length + 1
        starts = np.arange(max(0, series.shape[0] - window + 1))
        if starts.shape[0] > 128:
            starts = np.linspace(0, starts[-1], 128).astype(int)
        rows = np.array([series[start : start + window] for start in starts])
        metrics = super()._estimate_metrics(rows, state)
        return replace(metrics, training_data_size=data.shape[0])

    def _state_to_dict(self, state: RecurrentState) -> dict[str, Any]:
        return {
            "w_input": state.w_input.tolist(),
            "w_hidden": state.w_hidden.tolist(),
            "bias": state.bias.tolist(),
            "w_output": state.w_output.tolist(),
            "b_output": state.b_output,
            "scale_min": state.scale_min,
            "scale_range": state.scale_range,
            "residual_std": state.residual_std,
        }

    def _state_from_dict(self, data: dict[str, Any]) -> RecurrentState:
        return RecurrentState(
            w_input=np.asarray(data["w_input"], dtype=float),
            w_hidden=np.asarray(data["w_hidden"], dtype=float),
            bias=np.asarray(data["bias"], dtype=float),
            w_output=np.asarray(data["w_output"], dtype=float),
            b_output=data["b_output"],
            scale_min=data["scale_min"],
            scale_range=data["scale_range"],
            residual_std=data["residual_std"],
        )
