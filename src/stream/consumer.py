"""
Kafka consumer feeding monitoring data into the anomaly detector.

Monitoring messages are parsed, scored and, when anomalous, published to the
anomaly topic. Messages of type ``feedback`` are routed to the detector's
auto-tuning loop. With a trainer attached, the detector is periodically
retrained on a rolling buffer of recently consumed points.
"""

import json
import time
from collections import deque
from typing import Any

import structlog
from kafka import KafkaConsumer, KafkaProducer

from src.anomaly.detector import AnomalyDetector
from src.anomaly.types import Anomaly, parse_feedback, parse_monitoring_data, to_jsonable

from .config import StreamConfig
from .trainer import DetectorTrainer

logger = structlog.get_logger(__name__)

FEEDBACK_MESSAGE_TYPE = "feedback"


class DetectionConsumer:
    """Real-time anomaly detection consumer"""

    def __init__(
        self,
        config: StreamConfig,
        detector: AnomalyDetector,
        trainer: DetectorTrainer | None = None,
    ):
        self.config = config
        self.detector = detector
        self.trainer = trainer

        try:
            self.consumer = KafkaConsumer(
                config.kafka_input_topic,
                bootstrap_servers=config.kafka_bootstrap_servers,
                group_id=config.kafka_group_id,
                auto_offset_reset=config.kafka_auto_offset_reset,
                enable_auto_commit=config.enable_auto_commit,
                max_poll_records=config.max_poll_records,
                value_deserializer=lambda m: json.loads(m.decode("utf-8")),
            )
            self.producer = KafkaProducer(
                bootstrap_servers=config.kafka_bootstrap_servers,
                value_serializer=lambda v: json.dumps(v).encode("utf-8"),
                key_serializer=lambda k: k.encode("utf-8"),
            )
            logger.info(
                "Kafka clients initialized",
                bootstrap_servers=config.kafka_bootstrap_servers,
                input_topic=config.kafka_input_topic,
                anomaly_topic=config.kafka_anomaly_topic,
                group_id=config.kafka_group_id,
            )
        except Exception as e:
            logger.error("Failed to initialize Kafka clients", error=str(e))
            raise

        self.history: deque = deque(maxlen=config.training_buffer_size)
        self.stats = {
            "total_consumed": 0,
            "total_analyzed": 0,
            "anomalies_detected": 0,
            "feedback_received": 0,
            "threshold_adjustments": 0,
            "retrainings": 0,
            "parse_errors": 0,
        }

    def run(self, duration_seconds: int | None = None):
        """Run the consumer

        Args:
            duration_seconds: Optional duration in seconds. If None, runs indefinitely.
        """
        logger.info(
            "Starting detection consumer",
            topic=self.config.kafka_input_topic,
            duration=duration_seconds if duration_seconds else "indefinite",
        )

        start_time = time.time()
        last_log_time = start_time
        last_training_time = start_time

        try:
            for message in self.consumer:
                self.stats["total_consumed"] += 1

                self._process_message(message.value)

                now = time.time()
                elapsed = now - start_time
                if now - last_log_time >= self.config.stats_interval_seconds:
                    self._log_stats(elapsed)
                    last_log_time = now

                if self.trainer and now - last_training_time >= self.config.training_frequency_minutes * 60:
                    self._retrain()
                    last_training_time = time.time()

                if duration_seconds and elapsed >= duration_seconds:
                    logger.info("Duration limit reached", duration_seconds=duration_seconds)
                    break

        except KeyboardInterrupt:
            logger.info("Received interrupt signal, stopping consumer")

        except Exception as e:
            logger.error("Consumer error", error=str(e), exc_info=True)
            raise

        finally:
            self.close()

            elapsed = time.time() - start_time
            rate = self.stats["total_consumed"] / elapsed if elapsed > 0 else 0
            logger.info(
                "Consumer stopped",
                total_consumed=self.stats["total_consumed"],
                total_analyzed=self.stats["total_analyzed"],
                anomalies_detected=self.stats["anomalies_detected"],
                elapsed_sec=round(elapsed, 1),
                avg_rate_per_sec=round(rate, 1),
            )

    def _process_message(self, message: Any) -> Anomaly | None:
        """Process a single Kafka message"""
        try:
            if not isinstance(message, dict):
                raise ValueError(f"Expected a JSON object, got {type(message).__name__}")

            if message.get("type") == FEEDBACK_MESSAGE_TYPE:
                self._process_feedback(message)
                return None

            data = parse_monitoring_data(message)
        except ValueError as e:
            logger.warning("Failed to parse message", error=str(e), message=message)
            self.stats["parse_errors"] += 1
            return None

        self.stats["total_analyzed"] += 1
        self.history.append(data)

        anomaly = self.detector.detect(data)
        if anomaly is not None:
            self.stats["anomalies_detected"] += 1
            self._publish(anomaly)
        return anomaly

    def _process_feedback(self, message: dict[str, Any]) -> None:
        feedback = parse_feedback(message)
        self.stats["feedback_received"] += 1

        adjustment = self.detector.provide_feedback(feedback)
        if adjustment is not None:
            self.stats["threshold_adjustments"] += 1

    def _publish(self, anomaly: Anomaly) -> None:
        try:
            self.producer.send(self.config.kafka_anomaly_topic, key=anomaly.id, value=to_jsonable(anomaly))
            logger.info(
                "Anomaly published",
                anomaly_id=anomaly.id,
                data_type=anomaly.type.value,
                source=anomaly.data.source,
                severity=anomaly.score.severity.value,
                score=round(anomaly.score.score, 1),
                reason=anomaly.explanation.reason,
            )
        except Exception as e:
            logger.error("Failed to publish anomaly", anomaly_id=anomaly.id, error=str(e))

    def _retrain(self) -> None:
        if not self.history:
            return
        logger.info("Periodic retraining", buffered=len(self.history))
        self.trainer.train(list(self.history))
        self.stats["retrainings"] += 1

    def _log_stats(self, elapsed: float) -> None:
        rate = self.stats["total_consumed"] / elapsed if elapsed > 0 else 0
        detection_rate = (
            self.stats["anomalies_detected"] / self.stats["total_analyzed"] * 100
            if self.stats["total_analyzed"] > 0
            else 0
        )
        logger.info(
            "Consumer stats",
            total_consumed=self.stats["total_consumed"],
            total_analyzed=self.stats["total_analyzed"],
            anomalies_detected=self.stats["anomalies_detected"],
            detection_rate_percent=round(detection_rate, 2),
            feedback_received=self.stats["feedback_received"],
            parse_errors=self.stats["parse_errors"],
            rate_per_sec=round(rate, 1),
            elapsed_sec=round(elapsed, 1),
        )

    def close(self):
        """Clean up resources"""
        self.consumer.close()
        self.producer.flush()
        self.producer.close()
