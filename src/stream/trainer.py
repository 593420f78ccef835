"""
Batch trainer for the anomaly detector.

Trains the detector on a batch of historical data points and persists every
trained model and baseline to the store, so another process can warm-start
from them.
"""

import time

import structlog

from src.anomaly.detector import AnomalyDetector
from src.anomaly.errors import TrainingError
from src.anomaly.types import DataType, MonitoringData

from .store import RedisModelStore

logger = structlog.get_logger(__name__)


class DetectorTrainer:
    """Trains a detector and saves its state to Redis"""

    def __init__(self, detector: AnomalyDetector, store: RedisModelStore):
        self.detector = detector
        self.store = store

    def train(self, data_points: list[MonitoringData]) -> dict:
        """Train on historical points and persist the result

        Returns:
            Dictionary with training statistics
        """
        logger.info("Starting detector training", data_points=len(data_points))

        stats = {
            "samples": 0,
            "baselines_updated": 0,
            "models_trained": 0,
            "failed": 0,
            "models_saved": 0,
            "baselines_saved": 0,
        }
        start_time = time.time()

        try:
            summary = self.detector.train(data_points)
            stats["samples"] = summary.samples
            stats["baselines_updated"] = len(summary.updated_baselines)
            stats["models_trained"] = len(summary.trained_models)
        except TrainingError as e:
            # Models that did train are still worth persisting
            logger.error("Detector training incomplete", failures=e.failures)
            stats["failed"] = len(e.failures)

        stats["models_saved"] = self.save_models()
        stats["baselines_saved"] = self.store.save_baselines(self.detector.baselines.export_baselines())

        logger.info(
            "Training completed",
            samples=stats["samples"],
            models_trained=stats["models_trained"],
            failed=stats["failed"],
            models_saved=stats["models_saved"],
            baselines_saved=stats["baselines_saved"],
            elapsed_sec=round(time.time() - start_time, 1),
        )
        return stats

    def save_models(self) -> int:
        saved = 0
        for data_type, documents in self.detector.export_models().items():
            for model_id, document in documents.items():
                if self.store.save_model(data_type, model_id, document):
                    saved += 1
                else:
                    logger.warning("Model trained but failed to save", data_type=data_type.value, model=model_id)
        return saved

    def restore(self) -> dict:
        """Load persisted models and baselines into the detector

        Returns:
            Dictionary with restore statistics
        """
        stats = {"models_restored": 0, "models_missing": 0, "failed": 0, "baselines_restored": 0}

        for data_type in DataType:
            for model_id in self.detector.get_models(data_type):
                document = self.store.load_model(data_type, model_id)
                if document is None:
                    stats["models_missing"] += 1
                    continue
                try:
                    self.detector.restore_model(data_type, model_id, document)
                    stats["models_restored"] += 1
                except ValueError as e:
                    logger.error(
                        "Failed to restore model",
                        data_type=data_type.value,
                        model=model_id,
                        error=str(e),
                    )
                    stats["failed"] += 1

        snapshots = self.store.load_baselines()
        if snapshots:
            self.detector.baselines.restore_baselines(snapshots)
        stats["baselines_restored"] = len(snapshots)

        logger.info("Detector state restored", **stats)
        return stats
