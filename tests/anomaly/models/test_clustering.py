"""
Tests for the k-means clustering model.
"""

import math

import numpy as np
import pytest

from src.anomaly.config import ModelConfig, ModelType
from src.anomaly.models import ClusteringModel


def make_model(**parameters):
    parameters.setdefault("random_state", 5)
    model = ClusteringModel(ModelConfig(type=ModelType.CLUSTERING, parameters=parameters))
    model.initialize()
    return model


@pytest.fixture
def three_groups():
    rng = np.random.default_rng(9)
    return np.concatenate([rng.normal(center, 1.0, (100, 1)) for center in (10.0, 50.0, 90.0)])


class TestClustering:
    """Tests for training and scoring."""

    def test_near_and_far(self, three_groups):
        """Test that a point inside a cluster scores lower than a distant one."""
        model = make_model(cluster_count=3)
        model.train(three_groups)

        near, far = model.predict([50.0]), model.predict([500.0])

        assert near < 0.3
        assert far == pytest.approx(1.0 / (1.0 + math.exp(-1.5)))
        assert near < far

    def test_finds_groups(self, three_groups):
        """Test that the centroids land on the three groups."""
        model = make_model(cluster_count=3)
        model.train(three_groups)

        centroids = sorted(info["centroid"][0] for info in model.get_cluster_info())

        assert centroids == pytest.approx([10.0, 50.0, 90.0], abs=1.0)
        assert sum(info["size"] for info in model.get_cluster_info()) == 300

    def test_cluster_count_bounded_by_sample_size(self):
        """Test that k shrinks with sqrt(n/2)."""
        model = make_model(cluster_count=5)
        model.train(np.arange(18, dtype=float).reshape(-1, 1))

        assert len(model.get_cluster_info()) == 3

    def test_predict_cluster(self, three_groups):
        """Test that points of one group share a cluster."""
        model = make_model(cluster_count=3)
        model.train(three_groups)

        assert model.predict_cluster([9.5]) == model.predict_cluster([10.5])
        assert model.predict_cluster([10.0]) != model.predict_cluster([90.0])

    def test_untrained(self):
        """Test untrained behaviour."""
        model = make_model()

        assert model.predict([1.0]) == 0.0
        assert model.predict_cluster([1.0]) == -1
        assert model.get_cluster_info() == []

    def test_variance_floor(self):
        """Test that tight clusters keep a minimum variance."""
        model = make_model(cluster_count=2)
        model.train([[1.0]] * 10 + [[100.0]] * 10)

        assert all(info["variance"] >= 0.1 for info in model.get_cluster_info())

    def test_silhouette_drives_metrics(self, three_groups):
        """Test that well separated clusters report high precision."""
        model = make_model(cluster_count=3)
        model.train(three_groups)

        metrics = model.get_model_metrics()

        assert model._state.silhouette > 0.8
        assert metrics.precision > 0.85
        assert metrics.training_data_size == 300
