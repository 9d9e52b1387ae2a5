from __future__ import annotations

import os
from dataclasses import asdict, dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from shared.envelope import DEFAULT_TYPE_TAG, Route
from shared.log import get_logger
from shared.utils import is_port

logger = get_logger(__name__)

# Environment variables checked after the YAML file and before CLI options
ENV_OVERRIDES: Dict[str, str] = {
    "UDP_BRIDGE_HOST": "host",
    "UDP_BRIDGE_PORT": "port",
    "UDP_BRIDGE_INBOUND": "inbound_channel",
    "UDP_BRIDGE_OUTBOUND": "outbound_channel",
    "UDP_BRIDGE_TYPE": "type_tag",
    "UDP_BRIDGE_MAX_DATAGRAM": "max_datagram_size",
}

_INT_FIELDS = {"port", "max_datagram_size"}

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


class ConfigError(ValueError):
    """Raised when a configuration value cannot be used."""
    pass


@dataclass(frozen=True)
class BridgeConfig:
    host: str = "127.0.0.1"
    port: int = 9090
    inbound_channel: str = "/listener"    # bus channel forwarded out over UDP
    outbound_channel: str = "/chatter"    # bus channel fed from UDP; also the accepted wire topic
    type_tag: str = DEFAULT_TYPE_TAG
    max_datagram_size: int = 1024
    log_level: str = "INFO"

    @property
    def route(self) -> Route:
        """The only (topic, type) pair accepted from the wire."""
        return Route(topic=self.outbound_channel, type=self.type_tag)

    def validate(self) -> BridgeConfig:
        if not self.host:
            raise ConfigError("host must not be empty")
        # Port 0 lets the OS pick, used by tests and ad-hoc runs
        if not (self.port == 0 or is_port(self.port)):
            raise ConfigError(f"port must be 0..65535, got {self.port!r}")
        for name in ("inbound_channel", "outbound_channel", "type_tag"):
            value = getattr(self, name)
            if not isinstance(value, str) or not value:
                raise ConfigError(f"{name} must be a non-empty string")
        if isinstance(self.max_datagram_size, bool) or not isinstance(self.max_datagram_size, int) \
                or not 0 < self.max_datagram_size <= 65535:
            raise ConfigError(f"max_datagram_size must be 1..65535, got {self.max_datagram_size!r}")
        if not isinstance(self.log_level, str) or self.log_level.upper() not in LOG_LEVELS:
            raise ConfigError(f"log_level must be one of {', '.join(LOG_LEVELS)}, got {self.log_level!r}")
        return self

    def with_overrides(self, **overrides: Any) -> BridgeConfig:
        """Return a copy with every non-None override applied."""
        changes = {k: v for k, v in overrides.items() if v is not None}
        unknown = set(changes) - {f.name for f in fields(self)}
        if unknown:
            raise ConfigError(f"Unknown config keys: {sorted(unknown)}")
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _coerce(key: str, value: Any) -> Any:
    if key in _INT_FIELDS and isinstance(value, str):
        try:
            return int(value)
        except ValueError:
            raise ConfigError(f"{key} must be an integer, got {value!r}")
    return value


def load_yaml(path: Path) -> Dict[str, Any]:
    """Read the `bridge:` section (or the whole mapping) from a YAML file."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except OSError as e:
        raise ConfigError(f"Cannot read config file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a mapping")
    section = data.get("bridge", data)
    if not isinstance(section, dict):
        raise ConfigError(f"'bridge' section of {path} must be a mapping")
    return section


def env_overrides(environ: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    environ = os.environ if environ is None else environ
    result: Dict[str, Any] = {}
    for var, key in ENV_OVERRIDES.items():
        value = environ.get(var)
        if value:
            result[key] = _coerce(key, value)
    return result


def load_config(
    path: Optional[Path] = None,
    *,
    environ: Optional[Dict[str, str]] = None,
    **overrides: Any,
) -> BridgeConfig:
    """
    Resolve configuration: defaults < YAML file < environment < explicit overrides.

    Raises:
        ConfigError: unreadable file or invalid values
    """
    config = BridgeConfig()
    if path is not None:
        file_values = {k: _coerce(k, v) for k, v in load_yaml(Path(path)).items()}
        config = config.with_overrides(**file_values)
        logger.debug(f"Loaded config from {path}")
    config = config.with_overrides(**env_overrides(environ))
    config = config.with_overrides(**overrides)
    return config.validate()
