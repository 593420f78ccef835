"""
Isolation Forest anomaly model.

Anomalies are few and different, so random axis-aligned splits isolate them
in fewer steps than normal points. The score is derived from the average
path length across all trees, normalized by the expected path length of an
unsuccessful binary-search-tree lookup over the training set.

Parameters:
    isolation_tree_count: Number of trees (default 100)
    max_depth: Maximum tree depth (default 10)
    sample_size: Rows drawn without replacement per tree (default 256)
    random_state: Seed for reproducible forests (default None)
"""

import math
from dataclasses import dataclass
from typing import Any

import numpy as np
import structlog

from ..config import ModelConfig, ModelType
from .base import AnomalyModel

logger = structlog.get_logger(__name__)

EULER_GAMMA = 0.5772156649


def average_path_length(n: float) -> float:
    """Expected path length c(n) of an unsuccessful search in a BST of n nodes"""
    if n <= 1:
        return 0.0
    if n == 2:
        return 1.0
    return 2.0 * (math.log(n - 1) + EULER_GAMMA) - 2.0 * (n - 1) / n


@dataclass
class IsolationNode:
    """Node of an isolation tree; a node without children is a leaf"""

    size: int
    split_feature: int | None = None
    split_value: float | None = None
    left: "IsolationNode | None" = None
    right: "IsolationNode | None" = None

    @property
    def is_leaf(self) -> bool:
        return self.left is None and self.right is None

    def path_length(self, x: np.ndarray) -> float:
        node = self
        depth = 0
        while True:
            if node.is_leaf or node.split_feature is None:
                return depth + average_path_length(node.size)

            value = x[node.split_feature]
            child = node.left if value < node.split_value else node.right
            if child is None:
                # Empty side of a split: treat as isolated half
                return depth + 1 + average_path_length(max(1.0, node.size / 2))

            node = child
            depth += 1

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"size": self.size}
        if self.split_feature is not None:
            result["split_feature"] = self.split_feature
            result["split_value"] = self.split_value
        if self.left is not None:
            result["left"] = self.left.to_dict()
        if self.right is not None:
            result["right"] = self.right.to_dict()
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "IsolationNode":
        return cls(
            size=data["size"],
            split_feature=data.get("split_feature"),
            split_value=data.get("split_value"),
            left=cls.from_dict(data["left"]) if "left" in data else None,
            right=cls.from_dict(data["right"]) if "right" in data else None,
        )


@dataclass
class ForestState:
    trees: list[IsolationNode]
    training_size: int
    n_features: int


class IsolationForestModel(AnomalyModel):
    """Ensemble of random isolation trees"""

    model_type = ModelType.ISOLATION_FOREST

    def __init__(self, config: ModelConfig):
        super().__init__(config)
        self.tree_count = int(self.parameters.get("isolation_tree_count", 100))
        self.max_depth = int(self.parameters.get("max_depth", 10))
        self.sample_size = int(self.parameters.get("sample_size", 256))

    def _fit(self, data: np.ndarray) -> ForestState:
        rng = self._rng()
        n_samples = data.shape[0]
        subsample = min(self.sample_size, n_samples)

        trees = []
        for _ in range(self.tree_count):
            indices = rng.choice(n_samples, size=subsample, replace=False)
            trees.append(self._build_tree(data[indices], 0, rng))

        logger.debug(
            "Isolation forest built",
            trees=len(trees),
            subsample=subsample,
            max_depth=self.max_depth,
        )
        return ForestState(trees=trees, training_size=n_samples, n_features=data.shape[1])

    def _build_tree(self, data: np.ndarray, depth: int, rng: np.random.Generator) -> IsolationNode:
        node = IsolationNode(size=data.shape[0])
        if depth >= self.max_depth or data.shape[0] <= 1:
            return node

        feature = int(rng.integers(data.shape[1]))
        column = data[:, feature]
        low, high = float(column.min()), float(column.max())
        if low == high:
            return node

        split = low + float(rng.random()) * (high - low)
        mask = column < split

        node.split_feature = feature
        node.split_value = split
        if mask.any():
            node.left = self._build_tree(data[mask], depth + 1, rng)
        if not mask.all():
            node.right = self._build_tree(data[~mask], depth + 1, rng)
        return node

    def _score(self, x: np.ndarray, state: ForestState) -> float:
        normalizer = average_path_length(state.training_size)
        if normalizer == 0:
            return 0.0
        average = sum(tree.path_length(x) for tree in state.trees) / len(state.trees)
        return 2.0 ** (-average / normalizer)

    def get_feature_importance(self) -> dict[int, float]:
        """Share of splits made on each feature index across the forest"""
        state = self._state
        if state is None:
            return {}

        counts = np.zeros(state.n_features)
        stack = list(state.trees)
        while stack:
            node = stack.pop()
            if node.split_feature is not None:
                counts[node.split_feature] += 1
            stack.extend(child for child in (node.left, node.right) if child is not None)

        total = counts.sum()
        if total == 0:
            return {i: 0.0 for i in range(state.n_features)}
        return {i: float(count / total) for i, count in enumerate(counts)}

    def _state_to_dict(self, state: ForestState) -> dict[str, Any]:
        return {
            "trees": [tree.to_dict() for tree in state.trees],
            "training_size": state.training_size,
            "n_features": state.n_features,
        }

    def _state_from_dict(self, data: dict[str, Any]) -> ForestState:
        return ForestState(
            trees=[IsolationNode.from_dict(tree) for tree in data["trees"]],
            training_size=data["training_size"],
            n_features=data["n_features"],
        )
