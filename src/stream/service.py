"""
Entry point for the streaming detection service.

Usage:
    python -m src.stream.service

Settings come from the environment (see StreamConfig.from_env); LOG_LEVEL
selects the log level and RUN_DURATION_SECONDS bounds the run.
"""

import os
import sys

import structlog

from src.anomaly.detector import AnomalyDetector
from src.core.logger import level_from_env, setup_logging

from .config import StreamConfig
from .consumer import DetectionConsumer
from .store import RedisModelStore
from .trainer import DetectorTrainer

logger = structlog.get_logger(__name__)


def run(config: StreamConfig, duration_seconds: int | None = None) -> None:
    """Warm-start a detector from Redis and consume until stopped"""
    detector = AnomalyDetector()
    detector.initialize()
    try:
        trainer = DetectorTrainer(detector, RedisModelStore(config))
        trainer.restore()

        consumer = DetectionConsumer(config, detector, trainer=trainer)
        consumer.run(duration_seconds=duration_seconds)
    finally:
        detector.shutdown()


def main():
    """Main entry point"""
    setup_logging(level=level_from_env())
    logger.info("Starting anomaly detection service")

    try:
        duration = os.getenv("RUN_DURATION_SECONDS")
        run(StreamConfig.from_env(), duration_seconds=int(duration) if duration else None)
        logger.info("Service completed successfully")
        return 0

    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 0

    except Exception as e:
        logger.error("Service failed", error=str(e), exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
