import os
import re
from pathlib import Path
from collections.abc import Mapping
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv

load_dotenv()

DEFAULT_CONFIG_PATH = Path(__file__).parent / 'config.yaml'

_ENV_PATTERN = re.compile(r'\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-([^}]*))?\}')

CLIENT_MODES = ('continuous', 'oneOff')
SAVE_MODES = ('all', 'spotAndPerps', 'historical')


class SectionProxy(Mapping):
    def __init__(self, data: Dict[str, Any]):
        self._data = data or {}

    def __getitem__(self, key: str) -> Any:
        value = self._data[key]
        if isinstance(value, dict):
            return SectionProxy(value)
        return value

    def __getattr__(self, name: str) -> Any:
        if name.startswith('_'):
            raise AttributeError(name)
        value = self._data.get(name)
        if isinstance(value, dict):
            return SectionProxy(value)
        if value is None:
            raise AttributeError(f"Config key '{name}' not found")
        return value

    def __iter__(self):
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def get(self, key: str, default: Any = None) -> Any:
        value = self._data.get(key, default)
        if isinstance(value, dict):
            return SectionProxy(value)
        return value

    def to_dict(self) -> Dict[str, Any]:
        return self._data


def split_accounts(value: Any) -> List[str]:
    """Accept a YAML list or a comma separated string (as produced by ``${HL_ACCOUNTS}``)."""
    if value is None:
        return []
    if isinstance(value, str):
        items = value.split(',')
    else:
        items = list(value)
    return [str(item).strip() for item in items if str(item).strip()]


class Config:
    """YAML settings with ``${VAR}`` / ``${VAR:-default}`` substitution from the environment."""

    def __init__(self, config_path: Optional[str] = None):
        self.config_path = Path(config_path or os.getenv('ACCOUNT_WATCH_CONFIG') or DEFAULT_CONFIG_PATH)
        self._data = self._load_config()

    def _load_config(self) -> Dict[str, Any]:
        if not self.config_path.exists():
            raise RuntimeError(f"Configuration file not found at {self.config_path}")
        with self.config_path.open('r') as fh:
            try:
                raw = yaml.safe_load(fh) or {}
            except yaml.YAMLError as exc:
                raise RuntimeError(f"Error parsing YAML configuration: {exc}") from exc
        data = self._resolve_env_vars(raw)
        feed = data.get('feed')
        if isinstance(feed, dict):
            feed['accounts'] = split_accounts(feed.get('accounts'))
        self.validate(data)
        return data

    def _resolve_env_vars(self, node: Any) -> Any:
        if isinstance(node, dict):
            return {key: self._resolve_env_vars(value) for key, value in node.items()}
        if isinstance(node, list):
            return [self._resolve_env_vars(item) for item in node]
        if isinstance(node, str):
            whole = _ENV_PATTERN.fullmatch(node)
            if whole:
                # unresolved whole-value references stay verbatim
                return os.getenv(whole.group(1), whole.group(2) if whole.group(2) is not None else node)
            return _ENV_PATTERN.sub(self._substitute, node)
        return node

    @staticmethod
    def _substitute(match: 're.Match') -> str:
        default = match.group(2)
        return os.getenv(match.group(1), default if default is not None else match.group(0))

    @staticmethod
    def validate(data: Dict[str, Any]) -> None:
        mode = (data.get('mode') or {}).get('client_mode', 'continuous')
        if mode not in CLIENT_MODES:
            raise RuntimeError(f"mode.client_mode must be one of {CLIENT_MODES}, got {mode!r}")
        save_mode = (data.get('persistence') or {}).get('save_mode', 'historical')
        if save_mode not in SAVE_MODES:
            raise RuntimeError(f"persistence.save_mode must be one of {SAVE_MODES}, got {save_mode!r}")
        per_connection = (data.get('connections') or {}).get('max_accounts_per_connection', 3)
        if not isinstance(per_connection, int) or per_connection < 1:
            raise RuntimeError("connections.max_accounts_per_connection must be a positive integer")

    def override(self, section: str, key: str, value: Any) -> None:
        """Apply a command-line override and re-run validation."""
        self._data.setdefault(section, {})[key] = value
        self.validate(self._data)

    def get(self, key: str, default: Any = None) -> Any:
        value = self._data.get(key, default)
        if isinstance(value, dict):
            return SectionProxy(value)
        return value

    def __getitem__(self, key: str) -> Any:
        value = self._data[key]
        if isinstance(value, dict):
            return SectionProxy(value)
        return value

    def __getattr__(self, name: str) -> Any:
        if name.startswith('_'):
            raise AttributeError(name)
        try:
            value = self._data[name]
        except KeyError as exc:
            raise AttributeError(f"Config key '{name}' not found") from exc
        if isinstance(value, dict):
            return SectionProxy(value)
        return value

    def to_dict(self) -> Dict[str, Any]:
        return self._data

    def reload(self) -> None:
        self._data = self._load_config()


config_loader = Config()
