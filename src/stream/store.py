"""
Redis store for trained model states and baseline snapshots.
"""

import json
from typing import Any

import redis
import structlog

from src.anomaly.types import DataType

from .config import StreamConfig

logger = structlog.get_logger(__name__)

MODEL_PREFIX = "anomaly:model"
BASELINE_PREFIX = "anomaly:baseline"


class RedisModelStore:
    """Redis backend for model state documents and baselines"""

    def __init__(self, config: StreamConfig):
        try:
            self.redis = redis.Redis(
                host=config.redis_host,
                port=config.redis_port,
                db=config.redis_db,
                password=config.redis_password,
                decode_responses=True,
            )
            self.ttl = config.cache_ttl_seconds
            self.redis.ping()  # Test connection
            logger.info("Redis model store initialized", host=config.redis_host, port=config.redis_port)
        except Exception as e:
            logger.error("Failed to initialize Redis", error=str(e))
            raise

    def save_model(self, data_type: DataType, model_id: str, document: dict[str, Any]) -> bool:
        key = self._model_key(data_type, model_id)
        try:
            self.redis.setex(key, self.ttl, json.dumps(document))
            logger.debug("Model saved to Redis", key=key)
            return True
        except Exception as e:
            logger.error("Failed to save model to Redis", key=key, error=str(e))
            return False

    def load_model(self, data_type: DataType, model_id: str) -> dict[str, Any] | None:
        key = self._model_key(data_type, model_id)
        try:
            data = self.redis.get(key)
            if data is None:
                return None
            return json.loads(data)
        except Exception as e:
            logger.error("Failed to load model from Redis", key=key, error=str(e))
            return None

    def save_baselines(self, snapshots: dict[str, dict[str, Any]]) -> int:
        """Save baseline snapshots keyed by baseline key

        Returns:
            Number of snapshots written
        """
        saved = 0
        for baseline_key, snapshot in snapshots.items():
            key = f"{BASELINE_PREFIX}:{baseline_key}"
            try:
                self.redis.setex(key, self.ttl, json.dumps(snapshot))
                saved += 1
            except Exception as e:
                logger.error("Failed to save baseline to Redis", key=key, error=str(e))
        logger.debug("Baselines saved to Redis", saved=saved, total=len(snapshots))
        return saved

    def load_baselines(self) -> dict[str, dict[str, Any]]:
        prefix = f"{BASELINE_PREFIX}:"
        snapshots = {}
        try:
            for key in self.redis.scan_iter(match=f"{prefix}*"):
                data = self.redis.get(key)
                if data is not None:
                    snapshots[key[len(prefix) :]] = json.loads(data)
        except Exception as e:
            logger.error("Failed to load baselines from Redis", error=str(e))
        return snapshots

    def _model_key(self, data_type: DataType, model_id: str) -> str:
        """Generate Redis key"""
        return f"{MODEL_PREFIX}:{data_type.value}:{model_id}"
