"""
Streaming adapters: Kafka consumer, Redis model store and batch trainer.
"""

from .config import StreamConfig
from .consumer import DetectionConsumer
from .store import RedisModelStore
from .trainer import DetectorTrainer

__all__ = ["DetectionConsumer", "DetectorTrainer", "RedisModelStore", "StreamConfig"]
