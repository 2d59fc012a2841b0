import os
import re
from pathlib import Path
from collections.abc import Mapping
from typing import Any, Dict, Optional

import yaml
from dotenv import load_dotenv

from .settings import ConfigError, TradingSettings

load_dotenv()

DEFAULT_CONFIG_PATH = Path(__file__).parent / 'config.yaml'
CONFIG_PATH_ENV = 'ANOMALY_ENGINE_CONFIG'
# ${VAR} or ${VAR:-fallback}
PLACEHOLDER = re.compile(r'^\$\{(?P<name>[A-Za-z_][A-Za-z0-9_]*)(?::-(?P<default>.*))?\}$')


def _wrap(value: Any) -> Any:
    return SectionProxy(value) if isinstance(value, dict) else value


def expand_placeholders(node: Any) -> Any:
    """Replace ``${VAR}`` strings with environment values, recursively.

    Unset variables without a ``:-`` fallback keep the literal placeholder so
    consumers can tell "not configured" apart from an empty value.
    """
    if isinstance(node, dict):
        return {key: expand_placeholders(value) for key, value in node.items()}
    if isinstance(node, list):
        return [expand_placeholders(item) for item in node]
    if isinstance(node, str):
        match = PLACEHOLDER.match(node)
        if match:
            fallback = match.group('default')
            return os.getenv(match.group('name'), node if fallback is None else fallback)
    return node


class SectionProxy(Mapping):
    """Read-only view of one YAML mapping with attribute access."""

    def __init__(self, data: Dict[str, Any]):
        self._data = data or {}

    def __getitem__(self, key: str) -> Any:
        return _wrap(self._data[key])

    def __getattr__(self, name: str) -> Any:
        if name.startswith('_'):
            raise AttributeError(name)
        value = self._data.get(name)
        if value is None:
            raise AttributeError(f"Config key '{name}' not found")
        return _wrap(value)

    def __iter__(self):
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def get(self, key: str, default: Any = None) -> Any:
        return _wrap(self._data.get(key, default))

    def to_dict(self) -> Dict[str, Any]:
        return self._data


class Config(SectionProxy):
    """The whole configuration file, loaded once per process."""

    def __init__(self, config_path: Optional[str] = None):
        self.config_path = Path(config_path or os.getenv(CONFIG_PATH_ENV) or DEFAULT_CONFIG_PATH)
        super().__init__(self._load_config())

    def _load_config(self) -> Dict[str, Any]:
        if not self.config_path.exists():
            raise ConfigError(f"Configuration file not found at {self.config_path}")
        with self.config_path.open('r') as fh:
            try:
                raw = yaml.safe_load(fh) or {}
            except yaml.YAMLError as exc:
                raise ConfigError(f"Error parsing YAML configuration: {exc}") from exc
        if not isinstance(raw, dict):
            raise ConfigError(f"{self.config_path} must hold a mapping of sections")
        return expand_placeholders(raw)

    def trading_settings(self) -> TradingSettings:
        return TradingSettings.from_config(self.get('trading'), self.get('multi_level'))

    def reload(self) -> None:
        self._data = self._load_config()


config_loader = Config()
