"""
Tests for the model registry, the ensemble and the shared model contract.
"""

import threading
from concurrent.futures import ThreadPoolExecutor

import numpy as np
import pytest

from src.anomaly.config import ModelConfig, ModelType
from src.anomaly.errors import InvalidModelTypeError, ModelNotInitializedError
from src.anomaly.models import (
    MODEL_REGISTRY,
    ClusteringModel,
    EnsembleModel,
    IsolationForestModel,
    StatisticalModel,
    create_model,
    list_model_types,
)


@pytest.fixture
def training_data():
    return np.random.default_rng(13).normal(100, 10, (150, 1))


class TestRegistry:
    """Tests for model creation."""

    def test_registry_contains_all_types(self):
        """Test that every model type is registered."""
        assert set(MODEL_REGISTRY) == set(ModelType)
        assert "isolation_forest" in list_model_types()

    @pytest.mark.parametrize(
        "model_type,expected_class",
        [
            (ModelType.ISOLATION_FOREST, IsolationForestModel),
            (ModelType.CLUSTERING, ClusteringModel),
            (ModelType.STATISTICAL, StatisticalModel),
            ("ensemble", EnsembleModel),
        ],
    )
    def test_create_model(self, model_type, expected_class):
        """Test creating models by type."""
        model = create_model(ModelConfig(type=model_type))

        assert isinstance(model, expected_class)
        assert not model.is_initialized

    def test_unknown_type(self):
        """Test that an unknown model type is rejected."""
        with pytest.raises(InvalidModelTypeError):
            create_model(ModelConfig(type="autoencoder"))


class TestModelContract:
    """Tests for behaviour shared by all models."""

    def test_train_requires_initialize(self, training_data):
        """Test that training an uninitialized model raises."""
        model = create_model(ModelConfig(type=ModelType.STATISTICAL))

        with pytest.raises(ModelNotInitializedError):
            model.train(training_data)

    def test_feature_mismatch(self, training_data):
        """Test that a vector of the wrong length raises ValueError."""
        model = create_model(ModelConfig(type=ModelType.CLUSTERING, parameters={"random_state": 1}))
        model.initialize()
        model.train(training_data)

        with pytest.raises(ValueError, match="expects 1 features"):
            model.predict([1.0, 2.0])

    def test_invalid_rows_dropped(self):
        """Test that non-finite or ragged rows are skipped."""
        model = create_model(ModelConfig(type=ModelType.STATISTICAL))
        model.initialize()

        model.train([[1.0], [2.0], [float("nan")], [3.0, 4.0], [3.0]])

        assert model.get_model_metrics().training_data_size == 3

    def test_metrics_after_training(self, training_data):
        """Test that training refreshes the metrics."""
        model = create_model(ModelConfig(type=ModelType.ISOLATION_FOREST, parameters={"random_state": 1}))
        model.initialize()
        model.train(training_data)

        metrics = model.get_model_metrics()

        assert metrics.training_data_size == 150
        assert metrics.accuracy == pytest.approx(1 - metrics.false_positive_rate)
        assert 0 < metrics.f1_score < 1

    @pytest.mark.parametrize(
        "model_type", [ModelType.ISOLATION_FOREST, ModelType.CLUSTERING, ModelType.STATISTICAL]
    )
    def test_predict_during_retraining(self, model_type, training_data):
        """Test that predictions stay valid while the same model retrains."""
        model = create_model(ModelConfig(type=model_type, parameters={"random_state": 1}))
        model.initialize()
        model.train(training_data)
        retrain_data = np.random.default_rng(29).normal(500, 50, (150, 1))
        done = threading.Event()

        def retrain():
            try:
                for _ in range(5):
                    model.train(retrain_data)
                    model.train(training_data)
            finally:
                done.set()

        with ThreadPoolExecutor(max_workers=1) as executor:
            future = executor.submit(retrain)
            scores = [model.predict([100.0])]
            while not done.is_set():
                scores.append(model.predict([float(len(scores) % 600)]))
            future.result()

        assert all(0.0 <= score <= 1.0 for score in scores)

    def test_save_and_load(self, training_data, tmp_path):
        """Test that a saved model predicts identically after loading."""
        config = ModelConfig(type=ModelType.ISOLATION_FOREST, parameters={"random_state": 1})
        model = create_model(config)
        model.initialize()
        model.train(training_data)
        path = tmp_path / "models" / "forest.json"

        model.save(path)
        loaded = create_model(config)
        loaded.load(path)

        assert loaded.is_trained
        assert loaded.predict([150.0]) == pytest.approx(model.predict([150.0]))
        assert loaded.get_model_metrics().training_data_size == 150

    def test_load_wrong_type(self, training_data):
        """Test that a document of another model type is rejected."""
        model = create_model(ModelConfig(type=ModelType.STATISTICAL))
        model.initialize()
        model.train(training_data)

        with pytest.raises(ValueError, match="Cannot load 'statistical'"):
            create_model(ModelConfig(type=ModelType.CLUSTERING)).from_state(model.to_state())

    def test_load_wrong_version(self):
        """Test that an unknown format version is rejected."""
        model = create_model(ModelConfig(type=ModelType.STATISTICAL))
        document = {"format_version": 99, "model_type": "statistical", "state": None}

        with pytest.raises(ValueError, match="format version"):
            model.from_state(document)


class TestEnsemble:
    """Tests for the weighted ensemble."""

    def test_weighted_average(self, training_data):
        """Test that the ensemble score is the weighted member average."""
        model = create_model(ModelConfig(type=ModelType.ENSEMBLE, parameters={"random_state": 3}))
        model.initialize()
        model.train(training_data)

        expected = sum(
            model.weights[model_type] * member.predict([300.0]) for model_type, member in model.members.items()
        ) / sum(model.weights.values())

        assert model.predict([300.0]) == pytest.approx(expected)
        assert model.predict([300.0]) > model.predict([100.0])

    def test_custom_weights(self, training_data):
        """Test that weights select the members."""
        model = create_model(
            ModelConfig(type=ModelType.ENSEMBLE, parameters={"weights": {"statistical": 1.0}})
        )
        model.initialize()
        model.train(training_data)

        assert list(model.members) == [ModelType.STATISTICAL]
        assert model.predict([1000.0]) == 1.0

    def test_nested_ensemble_rejected(self):
        """Test that an ensemble cannot contain an ensemble."""
        with pytest.raises(ValueError):
            create_model(ModelConfig(type=ModelType.ENSEMBLE, parameters={"weights": {"ensemble": 1.0}}))

    def test_state_round_trip(self, training_data):
        """Test that member states travel with the ensemble document."""
        config = ModelConfig(type=ModelType.ENSEMBLE, parameters={"random_state": 3})
        model = create_model(config)
        model.initialize()
        model.train(training_data)

        restored = create_model(config)
        restored.from_state(model.to_state())

        assert restored.predict([250.0]) == pytest.approx(model.predict([250.0]))
