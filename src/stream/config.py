"""
Connection settings for the streaming adapters.
"""

import os
from dataclasses import dataclass

from dotenv import load_dotenv


@dataclass
class StreamConfig:
    """Kafka and Redis settings for the detection service"""

    # Kafka settings
    kafka_bootstrap_servers: str = "localhost:9092"
    kafka_input_topic: str = "monitoring-data"
    kafka_anomaly_topic: str = "anomalies"
    kafka_group_id: str = "anomaly-engine-consumer-group"
    kafka_auto_offset_reset: str = "latest"
    max_poll_records: int = 500
    enable_auto_commit: bool = True

    # Redis settings
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_db: int = 0
    redis_password: str | None = None
    cache_ttl_seconds: int = 7 * 24 * 3600

    # Retraining from the live stream
    training_frequency_minutes: int = 60
    training_buffer_size: int = 10000
    stats_interval_seconds: float = 30.0

    @classmethod
    def from_env(cls) -> "StreamConfig":
        """Build from environment variables (a .env file is loaded first)"""
        load_dotenv()
        defaults = cls()
        return cls(
            kafka_bootstrap_servers=os.getenv("KAFKA_BOOTSTRAP_SERVERS", defaults.kafka_bootstrap_servers),
            kafka_input_topic=os.getenv("KAFKA_INPUT_TOPIC", defaults.kafka_input_topic),
            kafka_anomaly_topic=os.getenv("KAFKA_ANOMALY_TOPIC", defaults.kafka_anomaly_topic),
            kafka_group_id=os.getenv("KAFKA_GROUP_ID", defaults.kafka_group_id),
            kafka_auto_offset_reset=os.getenv("KAFKA_AUTO_OFFSET_RESET", defaults.kafka_auto_offset_reset),
            redis_host=os.getenv("REDIS_HOST", defaults.redis_host),
            redis_port=int(os.getenv("REDIS_PORT", str(defaults.redis_port))),
            redis_db=int(os.getenv("REDIS_DB", str(defaults.redis_db))),
            redis_password=os.getenv("REDIS_PASSWORD") or None,
            cache_ttl_seconds=int(os.getenv("MODEL_CACHE_TTL_SECONDS", str(defaults.cache_ttl_seconds))),
            training_frequency_minutes=int(
                os.getenv("TRAINING_FREQUENCY_MINUTES", str(defaults.training_frequency_minutes))
            ),
            training_buffer_size=int(os.getenv("TRAINING_BUFFER_SIZE", str(defaults.training_buffer_size))),
        )
