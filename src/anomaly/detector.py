"""
Anomaly detector: baselines + model ensemble + explanations.

Workflow:
1. Training: update baselines and train every model of each data type seen
2. Detection: extract features, score with all models of the point's type,
   fuse the scores, gate on the score and confidence thresholds, explain
3. Feedback: buffer labels and raise thresholds while the false positive
   rate stays above target

Models are kept per data type because each variant has its own feature
space. Outbound notifications are published as DetectorEvent objects on
``detector.events``.
"""

import math
import queue
import threading
import time
from collections import OrderedDict
from collections.abc import Iterator
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

import numpy as np
import structlog

from .baseline import BaselineManager
from .config import DetectorConfig, ThresholdConfig
from .errors import DetectorStateError, NotInitializedError, TrainingError
from .explainer import AnomalyExplainer
from .features import extract_features, extract_primary_value, is_valid_features, is_valid_value
from .models import AnomalyModel, create_model
from .types import (
    Anomaly,
    AnomalyScore,
    BaselineData,
    DataType,
    Feedback,
    MonitoringData,
    Severity,
    new_anomaly_id,
    utc_now,
)

logger = structlog.get_logger(__name__)

RECENT_ANOMALIES_LIMIT = 1000
EVENT_QUEUE_SIZE = 10000
THREE_SIGMA = 3.0


class DetectorState(str, Enum):
    UNINITIALIZED = "uninitialized"
    READY = "ready"
    DETECTING = "detecting"
    TRAINING = "training"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"


class EventType(str, Enum):
    INITIALIZED = "initialized"
    ANOMALY_DETECTED = "anomaly_detected"
    MODELS_RETRAINED = "models_retrained"
    THRESHOLDS_ADJUSTED = "thresholds_adjusted"
    SHUTDOWN = "shutdown"


@dataclass(frozen=True)
class DetectorEvent:
    type: EventType
    payload: Any = None
    timestamp: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class ThresholdAdjustment:
    """Result of one auto-tuning step"""

    previous: ThresholdConfig
    current: ThresholdConfig
    false_positive_rate: float
    sample_count: int


@dataclass(frozen=True)
class TrainingSummary:
    samples: int
    dropped: int
    updated_baselines: tuple[str, ...]
    trained_models: tuple[str, ...]
    elapsed_seconds: float


def severity_for(score: float) -> Severity:
    """Map a 0-100 score to its severity bucket"""
    if score >= 90:
        return Severity.CRITICAL
    if score >= 75:
        return Severity.HIGH
    if score >= 50:
        return Severity.MEDIUM
    return Severity.LOW


class AnomalyDetector:
    """Real-time anomaly detector"""

    def __init__(
        self,
        config: DetectorConfig | None = None,
        baselines: BaselineManager | None = None,
        explainer: AnomalyExplainer | None = None,
    ):
        self.config = config or DetectorConfig()
        self.thresholds = ThresholdConfig(
            anomaly_score=self.config.thresholds.anomaly_score,
            confidence=self.config.thresholds.confidence,
        )
        self.baselines = baselines or BaselineManager()
        self.explainer = explainer or AnomalyExplainer()
        self.events: queue.Queue[DetectorEvent] = queue.Queue(maxsize=EVENT_QUEUE_SIZE)

        self._models: dict[DataType, dict[str, AnomalyModel]] = {}
        self._state = DetectorState.UNINITIALIZED
        self._state_lock = threading.Lock()
        self._active_detections = 0
        self._training = False
        self._train_lock = threading.Lock()

        self._feedback: list[Feedback] = []
        self._feedback_lock = threading.Lock()
        self._threshold_lock = threading.Lock()
        self._recent_anomalies: OrderedDict[str, Anomaly] = OrderedDict()

        self._queue: queue.Queue[MonitoringData] = queue.Queue(maxsize=self.config.performance.queue_size)
        self._stop_worker = threading.Event()
        self._worker: threading.Thread | None = None
        self._executor: ThreadPoolExecutor | None = None

        self._metrics_lock = threading.Lock()
        self.stats = {
            "total_processed": 0,
            "anomalies_detected": 0,
            "invalid_inputs": 0,
            "slow_detections": 0,
            "last_processing_ms": 0.0,
            "total_processing_ms": 0.0,
            "throughput": 0.0,
            "feedback_total": 0,
            "false_positives": 0,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def state(self) -> DetectorState:
        with self._state_lock:
            if self._state is not DetectorState.READY:
                return self._state
            if self._training:
                return DetectorState.TRAINING
            if self._active_detections:
                return DetectorState.DETECTING
            return DetectorState.READY

    def initialize(self) -> None:
        """Create models for every data type and start the processing worker"""
        with self._state_lock:
            if self._state is not DetectorState.UNINITIALIZED:
                raise DetectorStateError(f"Cannot initialize detector in state '{self._state.value}'")

        self.baselines.initialize()
        self.explainer.initialize()

        for data_type in DataType:
            models = {}
            for index, model_config in enumerate(self.config.models):
                model = create_model(model_config)
                model.initialize()
                models[f"{model_config.type.value}_{index}"] = model
            self._models[data_type] = models

        performance = self.config.performance
        if performance.parallel_processing:
            self._executor = ThreadPoolExecutor(
                max_workers=max(1, min(32, performance.batch_size)),
                thread_name_prefix="detect",
            )

        self._stop_worker.clear()
        self._worker = threading.Thread(target=self._drain_loop, name="detector-queue", daemon=True)
        self._worker.start()

        with self._state_lock:
            self._state = DetectorState.READY

        self._publish(EventType.INITIALIZED, {"models": [m.type.value for m in self.config.models]})
        logger.info(
            "Anomaly detector initialized",
            models=[m.type.value for m in self.config.models],
            anomaly_threshold=self.thresholds.anomaly_score,
            confidence_threshold=self.thresholds.confidence,
        )

    def shutdown(self) -> None:
        """Drain queued items, stop the worker and release models and baselines"""
        with self._state_lock:
            if self._state in (DetectorState.SHUTTING_DOWN, DetectorState.STOPPED):
                return
            if self._state is DetectorState.UNINITIALIZED:
                self._state = DetectorState.STOPPED
                return
            self._state = DetectorState.SHUTTING_DOWN

        logger.info("Shutting down anomaly detector", queued=self._queue.qsize())

        self._stop_worker.set()
        if self._worker is not None:
            self._worker.join()
            self._worker = None
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

        self.baselines.shutdown()
        self._models = {}

        with self._state_lock:
            self._state = DetectorState.STOPPED

        self._publish(EventType.SHUTDOWN, self.get_performance_metrics())
        logger.info("Anomaly detector stopped", total_processed=self.stats["total_processed"])

    def _ensure_usable(self) -> None:
        with self._state_lock:
            state = self._state
        if state is DetectorState.UNINITIALIZED:
            raise NotInitializedError()
        if state in (DetectorState.SHUTTING_DOWN, DetectorState.STOPPED):
            raise DetectorStateError(f"Detector is {state.value}")

    @contextmanager
    def _detecting(self) -> Iterator[None]:
        with self._state_lock:
            self._active_detections += 1
        try:
            yield
        finally:
            with self._state_lock:
                self._active_detections -= 1

    # ------------------------------------------------------------------
    # Detection
    # ------------------------------------------------------------------

    def detect(self, data: MonitoringData) -> Anomaly | None:
        """Score one data point

        Returns:
            An Anomaly if both the score and confidence thresholds are met,
            None otherwise (including for invalid input)

        Raises:
            NotInitializedError: If initialize() was not called
        """
        self._ensure_usable()
        with self._detecting():
            return self._detect_one(data)

    def detect_batch(self, data_points: list[MonitoringData]) -> list[Anomaly | None]:
        """Score many data points; the result is aligned with the input"""
        self._ensure_usable()

        start_time = time.perf_counter()
        batch_size = max(1, self.config.performance.batch_size)
        results: list[Anomaly | None] = []

        with self._detecting():
            for offset in range(0, len(data_points), batch_size):
                chunk = data_points[offset : offset + batch_size]
                if self._executor is not None and len(chunk) > 1:
                    results.extend(self._executor.map(self._detect_one, chunk))
                else:
                    results.extend(self._detect_one(data) for data in chunk)

        elapsed = time.perf_counter() - start_time
        throughput = len(data_points) / elapsed if elapsed > 0 else 0.0
        with self._metrics_lock:
            self.stats["throughput"] = throughput

        logger.info(
            "Batch processed",
            items=len(data_points),
            anomalies=sum(1 for result in results if result is not None),
            elapsed_ms=round(elapsed * 1000, 1),
            throughput_per_sec=round(throughput, 1),
        )
        return results

    def submit(self, data: MonitoringData) -> bool:
        """Enqueue a data point for asynchronous detection

        Anomalies found by the worker are published as ``anomaly_detected``
        events.

        Returns:
            False if the queue is full
        """
        self._ensure_usable()
        try:
            self._queue.put_nowait(data)
            return True
        except queue.Full:
            logger.warning("Processing queue full, data point rejected", queue_size=self._queue.maxsize)
            return False

    def _detect_one(self, data: MonitoringData) -> Anomaly | None:
        start_time = time.perf_counter()

        value = extract_primary_value(data)
        features = extract_features(data)
        if not is_valid_value(value) or not is_valid_features(features):
            logger.warning("Invalid data point skipped", data_type=data.data_type.value, source=data.source)
            with self._metrics_lock:
                self.stats["invalid_inputs"] += 1
            return None

        baseline = self.baselines.get_baseline(data)
        model_scores = self._score_models(data.data_type, features)
        score = self.calculate_score(model_scores, value, baseline)

        anomaly = None
        thresholds = self.thresholds
        if score.score >= thresholds.anomaly_score and score.confidence >= thresholds.confidence:
            anomaly = Anomaly(
                id=new_anomaly_id(),
                type=data.data_type,
                score=score,
                data=data,
                explanation=self.explainer.explain(data, score, baseline, model_scores),
                baseline=baseline,
            )
            self._remember(anomaly)
            self._publish(EventType.ANOMALY_DETECTED, anomaly)
            logger.info(
                "Anomaly detected",
                anomaly_id=anomaly.id,
                data_type=data.data_type.value,
                source=data.source,
                score=round(score.score, 1),
                confidence=round(score.confidence, 3),
                severity=score.severity.value,
            )

        self._record_processing((time.perf_counter() - start_time) * 1000, anomaly is not None)
        return anomaly

    def _score_models(self, data_type: DataType, features: list[float]) -> dict[str, float]:
        scores = {}
        for model_id, model in self._models.get(data_type, {}).items():
            try:
                scores[model_id] = model.predict(features)
            except Exception as e:
                logger.warning("Model prediction failed", model=model_id, data_type=data_type.value, error=str(e))
                scores[model_id] = 0.0
        return scores

    @staticmethod
    def calculate_score(
        model_scores: dict[str, float], value: float, baseline: BaselineData | None
    ) -> AnomalyScore:
        """Fuse model scores into a 0-100 score with confidence and severity"""
        if not model_scores:
            return AnomalyScore(score=0.0, confidence=0.0, severity=Severity.LOW)

        scores = np.array(list(model_scores.values()), dtype=float)
        ensemble = float(scores.mean())
        confidence = max(0.0, 1.0 - math.sqrt(float(scores.var())) / 100)

        adjusted = ensemble
        if baseline is not None:
            deviation = abs(value - baseline.mean) / (baseline.std_dev or 1.0)
            if deviation > THREE_SIGMA:
                adjusted = min(1.0, ensemble * (1 + deviation * 0.1))

        final = min(100.0, max(0.0, adjusted * 100))
        return AnomalyScore(score=final, confidence=min(1.0, confidence), severity=severity_for(final))

    # ------------------------------------------------------------------
    # Processing queue
    # ------------------------------------------------------------------

    def _drain_loop(self) -> None:
        tick = self.config.performance.queue_tick_seconds
        while not self._stop_worker.is_set():
            self._drain_batch()
            self._stop_worker.wait(tick)

        # Items accepted before shutdown are still processed
        while self._drain_batch():
            pass

    def _drain_batch(self) -> int:
        processed = 0
        while processed < self.config.performance.batch_size:
            try:
                data = self._queue.get_nowait()
            except queue.Empty:
                break
            try:
                self._detect_one(data)
            except Exception as e:
                logger.error("Queued detection failed", error=str(e), exc_info=True)
            finally:
                self._queue.task_done()
            processed += 1
        return processed

    def wait_until_idle(self) -> None:
        """Block until every submitted data point has been processed"""
        self._queue.join()

    # ------------------------------------------------------------------
    # Training
    # ------------------------------------------------------------------

    def train(self, data_points: list[MonitoringData]) -> TrainingSummary:
        """Update baselines and train every model for the data types present

        Raises:
            NotInitializedError: If initialize() was not called
            TrainingError: If any model failed; the others are still trained
                and failed models keep their previous state
        """
        self._ensure_usable()

        with self._train_lock:
            with self._state_lock:
                self._training = True
            try:
                return self._train(data_points)
            finally:
                with self._state_lock:
                    self._training = False

    retrain = train

    def _train(self, data_points: list[MonitoringData]) -> TrainingSummary:
        start_time = time.perf_counter()
        logger.info("Training started", data_points=len(data_points))

        samples: dict[DataType, list[list[float]]] = {}
        valid_points = []
        for data in data_points:
            features = extract_features(data)
            if not is_valid_value(extract_primary_value(data)) or not is_valid_features(features):
                continue
            valid_points.append(data)
            samples.setdefault(data.data_type, []).append(features)

        dropped = len(data_points) - len(valid_points)
        if dropped:
            logger.warning("Dropped invalid training points", count=dropped)

        updated_baselines = self.baselines.update_baselines(valid_points)

        trained: list[str] = []
        failures: dict[str, str] = {}
        for data_type, type_samples in samples.items():
            for model_id, model in self._models[data_type].items():
                name = f"{data_type.value}/{model_id}"
                try:
                    model.train(type_samples)
                    trained.append(name)
                except Exception as e:
                    logger.error("Model training failed", model=name, error=str(e), exc_info=True)
                    failures[name] = str(e)

        summary = TrainingSummary(
            samples=len(valid_points),
            dropped=dropped,
            updated_baselines=tuple(updated_baselines),
            trained_models=tuple(trained),
            elapsed_seconds=time.perf_counter() - start_time,
        )
        self._publish(EventType.MODELS_RETRAINED, summary)
        logger.info(
            "Training completed",
            samples=summary.samples,
            baselines=len(summary.updated_baselines),
            models=len(summary.trained_models),
            failures=len(failures),
            elapsed_sec=round(summary.elapsed_seconds, 2),
        )

        if failures:
            raise TrainingError(failures)
        return summary

    # ------------------------------------------------------------------
    # Feedback and auto-tuning
    # ------------------------------------------------------------------

    def provide_feedback(self, feedback: Feedback) -> ThresholdAdjustment | None:
        """Record a label for a past anomaly and auto-tune thresholds

        Returns:
            The threshold change, if one was made
        """
        self._ensure_usable()

        with self._feedback_lock:
            self._feedback.append(feedback)
        with self._metrics_lock:
            self.stats["feedback_total"] += 1
            if not feedback.is_actual_anomaly:
                self.stats["false_positives"] += 1

        logger.debug(
            "Feedback received",
            anomaly_id=feedback.anomaly_id,
            is_actual_anomaly=feedback.is_actual_anomaly,
            known_anomaly=feedback.anomaly_id in self._recent_anomalies,
        )

        if not self.config.auto_tuning.enabled:
            return None

        try:
            return self._adjust_thresholds()
        except Exception as e:
            logger.error("Threshold adjustment failed", error=str(e), exc_info=True)
            return None

    def _adjust_thresholds(self) -> ThresholdAdjustment | None:
        tuning = self.config.auto_tuning
        with self._feedback_lock:
            if len(self._feedback) < tuning.min_samples:
                return None
            cutoff = utc_now() - timedelta(minutes=tuning.feedback_window)
            self._feedback = [f for f in self._feedback if f.timestamp >= cutoff]
            recent = list(self._feedback)

        if not recent:
            return None

        false_positive_rate = sum(1 for f in recent if not f.is_actual_anomaly) / len(recent)
        if false_positive_rate <= tuning.target_false_positive_rate:
            return None

        factor = 1 + tuning.adjustment_rate
        with self._threshold_lock:
            previous = self.thresholds
            current = ThresholdConfig(
                anomaly_score=min(100.0, previous.anomaly_score * factor),
                confidence=min(1.0, previous.confidence * factor),
            )
            if current == previous:
                return None
            self.thresholds = current

        adjustment = ThresholdAdjustment(
            previous=previous,
            current=current,
            false_positive_rate=false_positive_rate,
            sample_count=len(recent),
        )
        self._publish(EventType.THRESHOLDS_ADJUSTED, adjustment)
        logger.info(
            "Thresholds adjusted",
            false_positive_rate=round(false_positive_rate, 3),
            anomaly_score=round(current.anomaly_score, 2),
            confidence=round(current.confidence, 3),
        )
        return adjustment

    # ------------------------------------------------------------------
    # Models and metrics
    # ------------------------------------------------------------------

    def get_models(self, data_type: DataType) -> dict[str, AnomalyModel]:
        return dict(self._models.get(data_type, {}))

    def get_model(self, data_type: DataType, model_id: str) -> AnomalyModel:
        """Raises KeyError for an unknown data type or model id"""
        return self._models[data_type][model_id]

    def export_models(self) -> dict[DataType, dict[str, dict[str, Any]]]:
        """State documents of every trained model"""
        return {
            data_type: {model_id: model.to_state() for model_id, model in models.items() if model.is_trained}
            for data_type, models in self._models.items()
        }

    def restore_model(self, data_type: DataType, model_id: str, document: dict[str, Any]) -> None:
        self._ensure_usable()
        self.get_model(data_type, model_id).from_state(document)
        logger.info("Model restored", data_type=data_type.value, model=model_id)

    def get_anomaly(self, anomaly_id: str) -> Anomaly | None:
        return self._recent_anomalies.get(anomaly_id)

    def get_performance_metrics(self) -> dict[str, Any]:
        with self._metrics_lock:
            stats = dict(self.stats)
        processed = stats["total_processed"]
        return {
            "state": self.state.value,
            "processing_time_ms": stats["last_processing_ms"],
            "average_processing_time_ms": stats["total_processing_ms"] / processed if processed else 0.0,
            "throughput": stats["throughput"],
            "total_processed": processed,
            "anomalies_detected": stats["anomalies_detected"],
            "invalid_inputs": stats["invalid_inputs"],
            "slow_detections": stats["slow_detections"],
            "false_positive_rate": (
                stats["false_positives"] / stats["feedback_total"] if stats["feedback_total"] else 0.0
            ),
            "queue_size": self._queue.qsize(),
            "thresholds": {
                "anomaly_score": self.thresholds.anomaly_score,
                "confidence": self.thresholds.confidence,
            },
        }

    def _record_processing(self, elapsed_ms: float, is_anomaly: bool) -> None:
        slow = elapsed_ms > self.config.performance.max_latency
        with self._metrics_lock:
            self.stats["total_processed"] += 1
            self.stats["last_processing_ms"] = elapsed_ms
            self.stats["total_processing_ms"] += elapsed_ms
            if is_anomaly:
                self.stats["anomalies_detected"] += 1
            if slow:
                self.stats["slow_detections"] += 1
        if slow:
            logger.warning(
                "Detection exceeded latency budget",
                elapsed_ms=round(elapsed_ms, 1),
                max_latency_ms=self.config.performance.max_latency,
            )

    def _remember(self, anomaly: Anomaly) -> None:
        with self._metrics_lock:
            self._recent_anomalies[anomaly.id] = anomaly
            while len(self._recent_anomalies) > RECENT_ANOMALIES_LIMIT:
                self._recent_anomalies.popitem(last=False)

    def _publish(self, event_type: EventType, payload: Any = None) -> None:
        try:
            self.events.put_nowait(DetectorEvent(type=event_type, payload=payload))
        except queue.Full:
            logger.warning("Event queue full, event dropped", event=event_type.value)
