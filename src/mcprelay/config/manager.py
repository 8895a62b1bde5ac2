"""
Configuration Manager - servers, capability state and relay settings.

Handles YAML/JSON configuration with change notifications.
"""

import json
import os
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

import yaml
from loguru import logger
from pydantic import ValidationError

from mcprelay.config.models import CapabilityState, RelaySettings, ServerConfig
from mcprelay.errors import ConfigError, DuplicateName, NotFound
from mcprelay.mcp.models import ConnectionDescriptor

ConfigWatcher = Callable[[str, Any], None]


class ConfigManager:
    """
    Configuration manager for the relay.

    Features:
    - YAML/JSON configuration files
    - Change watchers (the supervisor reloads on server changes)
    - Environment variable overrides
    - Default values
    """

    DEFAULT_CONFIG = {
        "app": {
            "name": "mcp-relay",
            "debug": False,
        },
        "relay": {
            "auto_reconnect": True,
            "reconnect_delay_seconds": 5.0,
            "max_reconnect_attempts": 3,
            "health_check_interval_seconds": 30.0,
            "timeouts": {
                "open_seconds": 30.0,
                "discovery_seconds": 30.0,
                "health_check_seconds": 10.0,
                "call_seconds": 300.0,
                "close_seconds": 5.0,
            },
        },
        "logging": {
            "level": "INFO",
            "file": None,
        },
        "servers": [],
        "tool_states": {},
    }

    def __init__(self, config_path: Optional[Union[str, Path]] = None):
        """
        Initialize configuration manager.

        Args:
            config_path: Path to configuration file
        """
        self._config_path = Path(config_path) if config_path else Path("mcprelay.yaml")
        self._config: Dict[str, Any] = self._deep_copy(self.DEFAULT_CONFIG)
        self._watchers: List[ConfigWatcher] = []
        self._loaded = False

    @property
    def path(self) -> Path:
        return self._config_path

    async def load(self) -> None:
        """Load configuration from file."""
        # Start with defaults
        self._config = self._deep_copy(self.DEFAULT_CONFIG)

        # Load from file if exists
        if self._config_path.exists():
            try:
                content = self._config_path.read_text(encoding="utf-8")

                if self._config_path.suffix in [".yaml", ".yml"]:
                    file_config = yaml.safe_load(content) or {}
                else:
                    file_config = json.loads(content)

                # Merge with defaults
                self._deep_merge(self._config, file_config)
                logger.info(f"Configuration loaded from {self._config_path}")

            except Exception as e:
                logger.warning(f"Failed to load config: {e}, using defaults")
        else:
            # Create default config file
            await self.save()
            logger.info("Created default configuration file")

        # Apply environment variable overrides
        self._apply_env_overrides()

        self._loaded = True

    async def save(self) -> None:
        """Save configuration to file."""
        try:
            self._config_path.parent.mkdir(parents=True, exist_ok=True)

            if self._config_path.suffix in [".yaml", ".yml"]:
                content = yaml.safe_dump(self._config, default_flow_style=False, sort_keys=False)
            else:
                content = json.dumps(self._config, indent=2)

            self._config_path.write_text(content, encoding="utf-8")
            logger.debug(f"Configuration saved to {self._config_path}")

        except Exception as e:
            logger.error(f"Failed to save config: {e}")

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get a configuration value.

        Args:
            key: Dot-notation key (e.g., "relay.reconnect_delay_seconds")
            default: Default value if not found

        Returns:
            Configuration value
        """
        parts = key.split(".")
        value = self._config

        for part in parts:
            if isinstance(value, dict) and part in value:
                value = value[part]
            else:
                return default

        return value

    def set(self, key: str, value: Any) -> None:
        """
        Set a configuration value.

        Args:
            key: Dot-notation key
            value: Value to set
        """
        parts = key.split(".")
        config = self._config

        for part in parts[:-1]:
            if part not in config:
                config[part] = {}
            config = config[part]

        config[parts[-1]] = value
        self._notify(key, value)

    def watch(self, callback: ConfigWatcher) -> None:
        """Register a configuration change watcher."""
        if callback not in self._watchers:
            self._watchers.append(callback)

    def unwatch(self, callback: ConfigWatcher) -> None:
        """Unregister a watcher."""
        if callback in self._watchers:
            self._watchers.remove(callback)

    def _notify(self, key: str, value: Any) -> None:
        for watcher in list(self._watchers):
            try:
                watcher(key, value)
            except Exception as e:
                logger.warning(f"Config watcher error: {e}")

    def get_settings(self) -> RelaySettings:
        """Validated `relay` section; falls back to defaults when invalid."""
        try:
            return RelaySettings.model_validate(self._config.get("relay") or {})
        except ValidationError as e:
            logger.warning(f"Invalid relay settings, using defaults: {e}")
            return RelaySettings()

    # ------------------------------------------------------------------
    # Servers
    # ------------------------------------------------------------------

    def list_server_configs(self) -> List[ServerConfig]:
        """Configured servers; invalid entries are skipped."""
        servers: List[ServerConfig] = []
        for raw in self._config.get("servers") or []:
            try:
                servers.append(ServerConfig.model_validate(raw))
            except ValidationError as e:
                name = raw.get("name") if isinstance(raw, dict) else raw
                logger.warning(f"Skipping invalid server config {name!r}: {e.errors()[0].get('msg', e)}")
        return servers

    def list_server_descriptors(self) -> List[ConnectionDescriptor]:
        base_dir = self._config_path.resolve().parent
        return [s.to_descriptor(base_dir) for s in self.list_server_configs()]

    def get_server_descriptor(self, name: str) -> Optional[ConnectionDescriptor]:
        for descriptor in self.list_server_descriptors():
            if descriptor.name == name:
                return descriptor
        return None

    def _raw_servers(self) -> List[Dict[str, Any]]:
        return [dict(s) for s in (self._config.get("servers") or []) if isinstance(s, dict)]

    async def _save_servers(self, servers: List[Dict[str, Any]]) -> None:
        self._config["servers"] = servers
        await self.save()
        self._notify("servers", self._deep_copy(servers))

    async def add_server_config(self, server: Union[ServerConfig, Dict[str, Any]]) -> ServerConfig:
        """Add a new server configuration."""
        try:
            model = server if isinstance(server, ServerConfig) else ServerConfig.model_validate(server)
        except ValidationError as e:
            raise ConfigError(f"Invalid server config: {e}") from e

        servers = self._raw_servers()
        if any(s.get("name") == model.name for s in servers):
            raise DuplicateName(f'Server with name "{model.name}" already exists', server=model.name)

        servers.append(model.model_dump(exclude_none=True))
        await self._save_servers(servers)
        return model

    async def update_server_config(self, name: str, updates: Dict[str, Any]) -> ServerConfig:
        """Update an existing server configuration (a rename is allowed)."""
        servers = self._raw_servers()
        index = next((i for i, s in enumerate(servers) if s.get("name") == name), -1)
        if index == -1:
            raise NotFound(f'Server "{name}" not found', server=name)

        new_name = updates.get("name")
        if new_name and new_name != name and any(s.get("name") == new_name for s in servers):
            raise DuplicateName(f'Server with name "{new_name}" already exists', server=new_name)

        try:
            model = ServerConfig.model_validate({**servers[index], **updates})
        except ValidationError as e:
            raise ConfigError(f"Invalid server config: {e}") from e

        servers[index] = model.model_dump(exclude_none=True)
        await self._save_servers(servers)
        return model

    async def remove_server_config(self, name: str) -> None:
        """Remove a server configuration and its capability states."""
        servers = self._raw_servers()
        filtered = [s for s in servers if s.get("name") != name]
        if len(filtered) == len(servers):
            raise NotFound(f'Server "{name}" not found', server=name)

        tool_states = self._config.get("tool_states") or {}
        tool_states.pop(name, None)
        self._config["tool_states"] = tool_states

        await self._save_servers(filtered)

    # ------------------------------------------------------------------
    # Capability state
    # ------------------------------------------------------------------

    def get_capability_state(self, server_name: str, capability_name: str) -> CapabilityState:
        """Enable/custom-id state for one capability; enabled by default."""
        states = (self._config.get("tool_states") or {}).get(server_name) or {}
        raw = states.get(capability_name)
        if not raw:
            return CapabilityState()
        try:
            return CapabilityState.model_validate(raw)
        except ValidationError as e:
            logger.warning(f"Invalid capability state for {server_name}/{capability_name}: {e}")
            return CapabilityState()

    def get_server_capability_states(self, server_name: str) -> Dict[str, CapabilityState]:
        states = (self._config.get("tool_states") or {}).get(server_name) or {}
        return {name: self.get_capability_state(server_name, name) for name in states}

    async def set_capability_state(
        self,
        server_name: str,
        capability_name: str,
        state: Union[CapabilityState, Dict[str, Any]],
    ) -> CapabilityState:
        model = state if isinstance(state, CapabilityState) else CapabilityState.model_validate(state)
        tool_states = self._config.setdefault("tool_states", {})
        tool_states.setdefault(server_name, {})[capability_name] = model.model_dump(exclude_none=True)
        await self.save()
        self._notify(f"tool_states.{server_name}", self._deep_copy(tool_states[server_name]))
        return model

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _apply_env_overrides(self) -> None:
        """Apply environment variable overrides."""

        def _bool(x: str) -> bool:
            return x.strip().lower() in ("1", "true", "yes", "on")

        # Map environment variables to config keys
        env_mappings = {
            "MCPRELAY_DEBUG": ("app.debug", _bool),
            "MCPRELAY_AUTO_RECONNECT": ("relay.auto_reconnect", _bool),
            "MCPRELAY_RECONNECT_DELAY": ("relay.reconnect_delay_seconds", float),
            "MCPRELAY_MAX_RECONNECT_ATTEMPTS": ("relay.max_reconnect_attempts", int),
            "MCPRELAY_HEALTH_CHECK_INTERVAL": ("relay.health_check_interval_seconds", float),
        }

        for env_var, (config_key, converter) in env_mappings.items():
            value = os.getenv(env_var)
            if value:
                try:
                    self.set(config_key, converter(value))
                    logger.debug(f"Applied env override: {env_var}")
                except Exception as e:
                    logger.warning(f"Failed to apply {env_var}: {e}")

    def _deep_merge(self, base: dict, override: dict) -> None:
        """Deep merge override into base dict."""
        for key, value in override.items():
            if key in base and isinstance(base[key], dict) and isinstance(value, dict):
                self._deep_merge(base[key], value)
            else:
                base[key] = value

    def _deep_copy(self, obj: Any) -> Any:
        """Deep copy a dictionary."""
        if isinstance(obj, dict):
            return {k: self._deep_copy(v) for k, v in obj.items()}
        elif isinstance(obj, list):
            return [self._deep_copy(item) for item in obj]
        return obj

    @property
    def all(self) -> Dict[str, Any]:
        """Get all configuration."""
        return self._deep_copy(self._config)
