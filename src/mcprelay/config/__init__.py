"""Configuration management."""

from mcprelay.config.manager import ConfigManager
from mcprelay.config.models import CapabilityState, RelaySettings, ServerConfig

__all__ = ["CapabilityState", "ConfigManager", "RelaySettings", "ServerConfig"]
