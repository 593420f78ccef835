"""
Core utilities shared across the engine.
"""

from .logger import level_from_env, setup_logging

__all__ = ["setup_logging", "level_from_env"]
