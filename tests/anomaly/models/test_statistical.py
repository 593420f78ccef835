"""
Tests for the statistical model.
"""

import numpy as np
import pytest

from src.anomaly.config import ModelConfig, ModelType
from src.anomaly.models import StatisticalModel


def make_model(**parameters):
    model = StatisticalModel(ModelConfig(type=ModelType.STATISTICAL, parameters=parameters))
    model.initialize()
    return model


class TestStatistical:
    """Tests for the z-score and IQR combination."""

    @pytest.fixture
    def model(self):
        model = make_model()
        model.train(np.arange(1, 101, dtype=float).reshape(-1, 1))
        return model

    def test_mean_scores_zero(self, model):
        """Test that the mean itself is not anomalous."""
        assert model.predict([50.5]) == 0.0

    def test_outlier_scores_one(self, model):
        """Test that a value beyond both rules scores one."""
        assert model.predict([1000.0]) == 1.0

    def test_scores_are_averaged(self, model):
        """Test that the z term alone contributes half its value."""
        std_dev = float(np.arange(1, 101).std())
        value = 50.5 + std_dev * 1.5

        assert model.predict([value]) == pytest.approx(0.25)

    def test_only_first_feature(self):
        """Test that extra features are ignored."""
        model = make_model()
        model.train([[float(i), 1000.0 * i] for i in range(50)])

        assert model.predict([24.5, -1e9]) == 0.0

    def test_zero_variance(self):
        """Test constant training data."""
        model = make_model()
        model.train([[5.0]] * 10)

        assert model.predict([5.0]) == 0.0
        assert model.predict([6.0]) == 1.0
