"""Configuration module."""

from agentcron.core.config.loader import load_config
from agentcron.core.config.schema import Config

__all__ = ["Config", "load_config"]
