"""Configuration module for upletworker."""

from .settings import Settings, settings, get_logging_config, setup_logging, topic_configs

__all__ = ["Settings", "settings", "get_logging_config", "setup_logging", "topic_configs"]
