"""
Pytest configuration and shared fixtures.
"""

import numpy as np
import pytest

from src.anomaly.baseline import BaselineManager
from src.anomaly.config import (
    AutoTuningConfig,
    DetectorConfig,
    ModelConfig,
    ModelType,
    PerformanceConfig,
)
from src.anomaly.detector import AnomalyDetector
from src.anomaly.explainer import AnomalyExplainer
from src.stream.config import StreamConfig
from tests.helpers import metric_series


# Data fixtures
@pytest.fixture
def normal_values():
    """100 samples drawn from N(100, 10)."""
    return np.random.default_rng(42).normal(100, 10, 100)


@pytest.fixture
def normal_metrics(normal_values):
    """100 recent metric points drawn from N(100, 10)."""
    return metric_series(normal_values)


# Component fixtures
@pytest.fixture
def baseline_manager():
    """Initialized baseline manager without the background cleanup thread."""
    manager = BaselineManager(cleanup_interval_seconds=None)
    manager.initialize()
    yield manager
    manager.shutdown()


@pytest.fixture
def explainer():
    """Initialized explainer."""
    explainer = AnomalyExplainer()
    explainer.initialize()
    return explainer


@pytest.fixture
def detector_config():
    """Default model mix with fixed seeds and a small feedback sample size."""
    return DetectorConfig(
        models=[
            ModelConfig(
                type=ModelType.ISOLATION_FOREST,
                parameters={"isolation_tree_count": 100, "random_state": 7},
            ),
            ModelConfig(type=ModelType.CLUSTERING, parameters={"cluster_count": 5, "random_state": 7}),
            ModelConfig(type=ModelType.STATISTICAL),
        ],
        auto_tuning=AutoTuningConfig(enabled=True, feedback_window=60, min_samples=5, adjustment_rate=0.1),
        performance=PerformanceConfig(batch_size=10, parallel_processing=True, queue_size=100),
    )


@pytest.fixture
def detector(detector_config):
    """Initialized detector, shut down after the test."""
    detector = AnomalyDetector(
        detector_config,
        baselines=BaselineManager(cleanup_interval_seconds=None),
    )
    detector.initialize()
    yield detector
    detector.shutdown()


@pytest.fixture
def trained_detector(detector, normal_metrics):
    """Detector trained on 100 metric points drawn from N(100, 10)."""
    detector.train(normal_metrics)
    return detector


# Stream fixtures
@pytest.fixture
def stream_config():
    """Basic stream configuration for testing."""
    return StreamConfig(
        kafka_bootstrap_servers="localhost:9092",
        kafka_input_topic="test-monitoring",
        kafka_anomaly_topic="test-anomalies",
        kafka_group_id="test-group",
        redis_host="localhost",
        cache_ttl_seconds=60,
        training_buffer_size=50,
    )
