"""
Tests for AnomalyDetector.
"""

import math
import queue
from datetime import UTC, datetime, timedelta
from unittest.mock import patch

import pytest

from src.anomaly.baseline import BaselineManager
from src.anomaly.config import AutoTuningConfig, DetectorConfig
from src.anomaly.detector import (
    AnomalyDetector,
    DetectorState,
    EventType,
    ThresholdAdjustment,
    severity_for,
)
from src.anomaly.errors import DetectorStateError, NotInitializedError, TrainingError
from src.anomaly.types import DataType, Feedback, Severity
from tests.helpers import make_baseline, make_metric


def drain_events(detector):
    events = []
    while True:
        try:
            events.append(detector.events.get_nowait())
        except queue.Empty:
            return events


class TestLifecycle:
    """Tests for initialization, state and shutdown."""

    def test_detect_requires_initialize(self):
        """Test that detecting before initialize raises."""
        detector = AnomalyDetector(baselines=BaselineManager(cleanup_interval_seconds=None))

        with pytest.raises(NotInitializedError, match="Detector not initialized"):
            detector.detect(make_metric(1.0))
        assert detector.state is DetectorState.UNINITIALIZED

    def test_train_requires_initialize(self):
        """Test that training before initialize raises."""
        detector = AnomalyDetector(baselines=BaselineManager(cleanup_interval_seconds=None))

        with pytest.raises(NotInitializedError):
            detector.train([make_metric(1.0)])

    def test_initialize_creates_models_per_type(self, detector):
        """Test that every data type gets its own model instances."""
        assert detector.state is DetectorState.READY
        for data_type in DataType:
            assert list(detector.get_models(data_type)) == [
                "isolation_forest_0",
                "clustering_1",
                "statistical_2",
            ]
        assert detector.get_model(DataType.METRIC, "clustering_1") is not detector.get_model(
            DataType.LOG, "clustering_1"
        )

    def test_initialize_twice(self, detector):
        """Test that a second initialize is rejected."""
        with pytest.raises(DetectorStateError):
            detector.initialize()

    def test_shutdown(self, detector):
        """Test that a stopped detector rejects work and publishes a shutdown event."""
        detector.shutdown()

        assert detector.state is DetectorState.STOPPED
        assert drain_events(detector)[-1].type is EventType.SHUTDOWN
        with pytest.raises(DetectorStateError, match="stopped"):
            detector.detect(make_metric(1.0))

    def test_shutdown_is_idempotent(self, detector):
        """Test that shutting down twice is harmless."""
        detector.shutdown()
        detector.shutdown()

        assert detector.state is DetectorState.STOPPED

    def test_initialized_event(self, detector):
        """Test that initialize publishes an initialized event."""
        event = drain_events(detector)[0]

        assert event.type is EventType.INITIALIZED
        assert event.payload == {"models": ["isolation_forest", "clustering", "statistical"]}


class TestDetection:
    """Tests for single and batch detection."""

    def test_normal_value(self, trained_detector):
        """Test that a value near the training mean is not an anomaly."""
        assert trained_detector.detect(make_metric(105.0)) is None

    def test_extreme_value(self, trained_detector):
        """Test that a value far outside the training data is an anomaly."""
        anomaly = trained_detector.detect(make_metric(1000.0))

        assert anomaly is not None
        assert anomaly.type is DataType.METRIC
        assert anomaly.score.score > 50
        assert anomaly.score.severity is Severity.CRITICAL
        assert anomaly.explanation.factors
        assert anomaly.baseline is not None
        assert anomaly.id.startswith("anomaly_")
        assert trained_detector.get_anomaly(anomaly.id) is anomaly

    def test_anomaly_event(self, trained_detector):
        """Test that a detected anomaly is published as an event."""
        drain_events(trained_detector)

        anomaly = trained_detector.detect(make_metric(1000.0))

        events = drain_events(trained_detector)
        assert [e.type for e in events] == [EventType.ANOMALY_DETECTED]
        assert events[0].payload is anomaly

    def test_untrained_detector(self, detector):
        """Test that untrained models never produce an anomaly."""
        assert detector.detect(make_metric(1000.0)) is None

    @pytest.mark.parametrize("value", [math.nan, math.inf])
    def test_invalid_value(self, trained_detector, value):
        """Test that non-finite values are skipped and counted."""
        assert trained_detector.detect(make_metric(value)) is None
        assert trained_detector.get_performance_metrics()["invalid_inputs"] == 1

    def test_failing_model_scores_zero(self, trained_detector):
        """Test that a failing model does not abort detection."""
        model = trained_detector.get_model(DataType.METRIC, "isolation_forest_0")

        with patch.object(model, "predict", side_effect=RuntimeError("broken")):
            anomaly = trained_detector.detect(make_metric(1000.0))

        assert anomaly is not None
        assert 0.0 <= anomaly.score.confidence <= 1.0

    def test_batch_alignment(self, trained_detector):
        """Test that batch results line up with their inputs across chunks."""
        values = [105.0 if i % 3 else 1000.0 for i in range(25)]
        values[4] = math.nan

        results = trained_detector.detect_batch([make_metric(v) for v in values])

        assert len(results) == 25
        for value, result in zip(values, results):
            if value == 1000.0:
                assert result is not None
                assert result.data.value == 1000.0
                assert 0.0 <= result.score.score <= 100.0
                assert 0.0 <= result.score.confidence <= 1.0
            else:
                assert result is None
        assert trained_detector.get_performance_metrics()["throughput"] > 0

    def test_submit_and_wait(self, trained_detector):
        """Test asynchronous detection through the processing queue."""
        drain_events(trained_detector)

        assert trained_detector.submit(make_metric(1000.0))
        trained_detector.wait_until_idle()

        events = drain_events(trained_detector)
        assert [e.type for e in events] == [EventType.ANOMALY_DETECTED]

    def test_submit_queue_full(self, detector):
        """Test that a full queue rejects the data point."""
        with patch.object(detector._queue, "put_nowait", side_effect=queue.Full):
            assert detector.submit(make_metric(1.0)) is False

    def test_shutdown_drains_queue(self, trained_detector):
        """Test that queued points are processed before the detector stops."""
        processed = trained_detector.get_performance_metrics()["total_processed"]
        for value in (101.0, 102.0, 103.0, 104.0, 1000.0):
            trained_detector.submit(make_metric(value))

        trained_detector.shutdown()

        assert trained_detector.stats["total_processed"] == processed + 5
        assert trained_detector.stats["anomalies_detected"] == 1

    def test_performance_metrics(self, trained_detector):
        """Test the performance metrics snapshot."""
        trained_detector.detect(make_metric(100.0))
        trained_detector.detect(make_metric(1000.0))

        metrics = trained_detector.get_performance_metrics()

        assert metrics["state"] == "ready"
        assert metrics["total_processed"] == 2
        assert metrics["anomalies_detected"] == 1
        assert metrics["average_processing_time_ms"] > 0
        assert metrics["thresholds"] == {"anomaly_score": 70.0, "confidence": 0.7}


class TestScoring:
    """Tests for score fusion and severity buckets."""

    def test_no_models(self):
        """Test that no model scores means a zero score."""
        score = AnomalyDetector.calculate_score({}, 1.0, None)

        assert score.score == 0.0
        assert score.confidence == 0.0
        assert score.severity is Severity.LOW

    def test_simple_mean(self):
        """Test that the ensemble score is the mean of the model scores."""
        score = AnomalyDetector.calculate_score({"a": 0.4, "b": 0.6}, 1.0, None)

        assert score.score == pytest.approx(50.0)
        assert score.confidence == pytest.approx(1 - 0.1 / 100)
        assert score.severity is Severity.MEDIUM

    def test_deviation_amplifies(self):
        """Test that a value beyond three sigma amplifies the score."""
        score = AnomalyDetector.calculate_score({"a": 0.5, "b": 0.5}, 140.0, make_baseline())

        assert score.score == pytest.approx(70.0)

    def test_amplification_capped(self):
        """Test that the amplified score never exceeds 100."""
        score = AnomalyDetector.calculate_score({"a": 0.5}, 1000.0, make_baseline())

        assert score.score == 100.0
        assert score.severity is Severity.CRITICAL

    def test_small_deviation_unchanged(self):
        """Test that a value within three sigma leaves the score unchanged."""
        score = AnomalyDetector.calculate_score({"a": 0.5}, 125.0, make_baseline())

        assert score.score == pytest.approx(50.0)

    @pytest.mark.parametrize(
        "score,severity",
        [
            (95.0, Severity.CRITICAL),
            (90.0, Severity.CRITICAL),
            (89.9, Severity.HIGH),
            (75.0, Severity.HIGH),
            (50.0, Severity.MEDIUM),
            (49.9, Severity.LOW),
            (0.0, Severity.LOW),
        ],
    )
    def test_severity_buckets(self, score, severity):
        """Test severity bucket boundaries."""
        assert severity_for(score) is severity


class TestTraining:
    """Tests for training and retraining."""

    def test_train_summary(self, detector, normal_metrics):
        """Test the training summary and retrained event."""
        summary = detector.train(normal_metrics + [make_metric(math.nan)])

        assert summary.samples == 100
        assert summary.dropped == 1
        assert summary.updated_baselines == ("metric:api-server",)
        assert summary.trained_models == (
            "metric/isolation_forest_0",
            "metric/clustering_1",
            "metric/statistical_2",
        )
        assert drain_events(detector)[-1].type is EventType.MODELS_RETRAINED

    def test_only_present_types_trained(self, trained_detector):
        """Test that models of absent data types stay untrained."""
        assert all(m.is_trained for m in trained_detector.get_models(DataType.METRIC).values())
        assert not any(m.is_trained for m in trained_detector.get_models(DataType.LOG).values())

    def test_training_error_keeps_others(self, detector, normal_metrics):
        """Test that one failing model does not stop the others."""
        model = detector.get_model(DataType.METRIC, "clustering_1")

        with patch.object(model, "train", side_effect=RuntimeError("diverged")):
            with pytest.raises(TrainingError) as exc_info:
                detector.train(normal_metrics)

        assert exc_info.value.failures == {"metric/clustering_1": "diverged"}
        assert detector.get_model(DataType.METRIC, "isolation_forest_0").is_trained
        assert detector.get_model(DataType.METRIC, "statistical_2").is_trained

    def test_retrain_alias(self, trained_detector, normal_metrics):
        """Test that retrain behaves like train."""
        summary = trained_detector.retrain(normal_metrics)

        assert len(summary.trained_models) == 3

    def test_mixed_naive_and_aware_timestamps(self, detector, normal_values):
        """Test that a batch mixing naive and aware timestamps trains normally."""
        start = datetime.now(UTC) - timedelta(hours=2)
        timestamps = [start + timedelta(minutes=i) for i in range(len(normal_values))]
        timestamps[1::2] = [t.replace(tzinfo=None) for t in timestamps[1::2]]
        points = [make_metric(float(v), timestamp=t) for v, t in zip(normal_values, timestamps)]

        summary = detector.train(points)

        assert summary.samples == 100
        assert summary.updated_baselines == ("metric:api-server",)

    def test_export_and_restore(self, trained_detector, detector_config):
        """Test that exported model state restores into a fresh detector."""
        exported = trained_detector.export_models()
        assert set(exported[DataType.METRIC]) == {"isolation_forest_0", "clustering_1", "statistical_2"}
        assert exported[DataType.LOG] == {}

        fresh = AnomalyDetector(detector_config, baselines=BaselineManager(cleanup_interval_seconds=None))
        fresh.initialize()
        for model_id, document in exported[DataType.METRIC].items():
            fresh.restore_model(DataType.METRIC, model_id, document)

        for model_id in exported[DataType.METRIC]:
            original = trained_detector.get_model(DataType.METRIC, model_id)
            restored = fresh.get_model(DataType.METRIC, model_id)
            assert restored.predict([1000.0]) == pytest.approx(original.predict([1000.0]))
        fresh.shutdown()


class TestFeedback:
    """Tests for feedback and threshold auto-tuning."""

    def test_false_positives_raise_thresholds(self, trained_detector):
        """Test that repeated false positives raise both thresholds up to their caps."""
        anomaly = trained_detector.detect(make_metric(1000.0))
        results = [
            trained_detector.provide_feedback(Feedback(anomaly_id=anomaly.id, is_actual_anomaly=False))
            for _ in range(10)
        ]

        assert results[:4] == [None] * 4
        assert isinstance(results[4], ThresholdAdjustment)
        assert results[4].previous.anomaly_score == 70.0
        assert results[4].current.anomaly_score == pytest.approx(77.0)
        assert results[4].current.confidence == pytest.approx(0.77)
        assert results[4].false_positive_rate == 1.0
        assert trained_detector.thresholds.anomaly_score == 100.0
        assert trained_detector.thresholds.confidence == 1.0
        assert trained_detector.get_performance_metrics()["false_positive_rate"] == 1.0

    def test_true_positives_keep_thresholds(self, trained_detector):
        """Test that confirmed anomalies leave the thresholds alone."""
        for i in range(10):
            assert trained_detector.provide_feedback(Feedback(anomaly_id=f"a{i}", is_actual_anomaly=True)) is None

        assert trained_detector.thresholds.anomaly_score == 70.0

    def test_auto_tuning_disabled(self, detector_config):
        """Test that disabled auto-tuning never adjusts."""
        config = DetectorConfig(
            models=detector_config.models,
            auto_tuning=AutoTuningConfig(enabled=False, min_samples=1),
        )
        detector = AnomalyDetector(config, baselines=BaselineManager(cleanup_interval_seconds=None))
        detector.initialize()

        assert detector.provide_feedback(Feedback(anomaly_id="a", is_actual_anomaly=False)) is None
        assert detector.thresholds.anomaly_score == 70.0
        detector.shutdown()

    def test_naive_feedback_timestamps(self, trained_detector):
        """Test that feedback with naive UTC timestamps still drives auto-tuning."""
        naive_now = datetime.now(UTC).replace(tzinfo=None)
        results = [
            trained_detector.provide_feedback(
                Feedback(anomaly_id="a", is_actual_anomaly=False, timestamp=naive_now)
            )
            for _ in range(5)
        ]

        assert isinstance(results[-1], ThresholdAdjustment)
        assert trained_detector.thresholds.anomaly_score == pytest.approx(77.0)

    def test_threshold_event(self, trained_detector):
        """Test that a threshold change is published."""
        for _ in range(5):
            trained_detector.provide_feedback(Feedback(anomaly_id="a", is_actual_anomaly=False))

        types = [e.type for e in drain_events(trained_detector)]
        assert EventType.THRESHOLDS_ADJUSTED in types
