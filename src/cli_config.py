"""Layered runtime configuration.

Precedence, lowest first: built-in defaults, ``~/.deplock/config.yaml``,
``.deplock/config.yaml`` files from the filesystem root down to the working
directory (nearer wins), ``DEPLOCK_*`` environment variables, then each
``--config KEY=VALUE`` or ``--config PATH`` in command-line order.

The provider is handed to the planner and sources explicitly; nothing reads
configuration from module globals.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional

import yaml

from constants import Constants
from errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULTS: Dict[str, Any] = {
    "registry.url": Constants.REGISTRY_URL,
    "cache.dir": Constants.DEFAULT_CACHE_DIR,
    "net.offline": False,
    "net.retry": Constants.HTTP_RETRY_MAX,
    "net.timeout": Constants.REQUEST_TIMEOUT,
    "net.max-concurrency": Constants.FETCH_MAX_CONCURRENCY,
    "net.index-ttl": Constants.INDEX_TTL_SEC,
    "resolver.minimal-versions": False,
    "resolver.parallel-majors": True,
    "resolver.max-toolchain": None,
    "term.color": "auto",
}

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}


def _flatten(data: Mapping[str, Any], prefix: str = "") -> Dict[str, Any]:
    """Turn nested YAML tables into dotted keys."""
    flat: Dict[str, Any] = {}
    for key, value in data.items():
        dotted = f"{prefix}{key}"
        if isinstance(value, Mapping):
            flat.update(_flatten(value, f"{dotted}."))
        else:
            flat[dotted] = value
    return flat


def env_var_name(key: str) -> str:
    """``net.max-concurrency`` -> ``DEPLOCK_NET_MAX_CONCURRENCY``."""
    return Constants.ENV_PREFIX + key.upper().replace(".", "_").replace("-", "_")


def load_config_file(path: Path) -> Dict[str, Any]:
    """Read one YAML config file into dotted keys."""
    try:
        with open(path, encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except OSError as exc:
        raise ConfigError(f"could not read config file `{path}`: {exc}", path=str(path)) from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"could not parse config file `{path}`: {exc}", path=str(path)) from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"config file `{path}` must contain a mapping", path=str(path))
    return _flatten(data)


def discover_config_files(cwd: Path, home: Optional[Path] = None) -> List[Path]:
    """Config files in increasing precedence order."""
    found: List[Path] = []
    home = home if home is not None else Path.home()
    home_file = home / Constants.CONFIG_DIR / Constants.CONFIG_FILE
    if home_file.is_file():
        found.append(home_file)
    for directory in reversed([cwd, *cwd.parents]):
        candidate = directory / Constants.CONFIG_DIR / Constants.CONFIG_FILE
        if candidate.is_file() and candidate not in found:
            found.append(candidate)
    return found


class ConfigProvider:
    """Read-only view over layered configuration values."""

    def __init__(self, values: Optional[Mapping[str, Any]] = None):
        self._values: Dict[str, Any] = dict(DEFAULTS)
        if values:
            self._values.update(values)

    @classmethod
    def load(
        cls,
        cwd: Path,
        cli_overrides: Iterable[str] = (),
        env: Optional[Mapping[str, str]] = None,
        home: Optional[Path] = None,
    ) -> "ConfigProvider":
        """Build the provider from files, environment and CLI overrides."""
        values: Dict[str, Any] = {}
        for path in discover_config_files(cwd, home):
            logger.debug("Loading config file %s", path)
            values.update(load_config_file(path))

        env = os.environ if env is None else env
        for key in DEFAULTS:
            name = env_var_name(key)
            if name in env:
                values[key] = env[name]

        for override in cli_overrides:
            values.update(cls._parse_override(override, cwd))
        return cls(values)

    @staticmethod
    def _parse_override(override: str, cwd: Path) -> Dict[str, Any]:
        if "=" in override:
            key, _, raw = override.partition("=")
            key = key.strip()
            if not key:
                raise ConfigError(f"invalid --config value `{override}`", value=override)
            try:
                value = yaml.safe_load(raw) if raw.strip() else ""
            except yaml.YAMLError as exc:
                raise ConfigError(f"invalid --config value `{override}`: {exc}", value=override) from exc
            return {key: value}
        path = Path(override)
        if not path.is_absolute():
            path = cwd / path
        return load_config_file(path)

    def get(self, key: str, default: Any = None) -> Any:
        """Raw value for ``key``."""
        return self._values.get(key, default)

    def get_str(self, key: str) -> Optional[str]:
        """Value as a string, or None when unset."""
        value = self.get(key)
        return None if value is None else str(value)

    def get_bool(self, key: str) -> bool:
        """Value as a boolean; accepts yes/no style strings."""
        value = self.get(key)
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower() if value is not None else ""
        if text in _TRUE:
            return True
        if text in _FALSE:
            return False
        raise ConfigError(f"config `{key}` expects a boolean, found `{value}`", key=key)

    def get_int(self, key: str) -> int:
        """Value as an integer."""
        value = self.get(key)
        if isinstance(value, bool):
            raise ConfigError(f"config `{key}` expects an integer, found `{value}`", key=key)
        try:
            return int(value)
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"config `{key}` expects an integer, found `{value}`", key=key) from exc

    def cache_dir(self) -> Path:
        """Root of the on-disk cache."""
        return Path(str(self.get("cache.dir"))).expanduser()
