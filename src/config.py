"""Runtime settings for the store, resolver and coordinator.

Precedence (lowest to highest): defaults from ``Constants``, a YAML config
file, then ``POLYPIN_*`` environment variables. Unlike CLI overrides, invalid
values are reported as ConfigError rather than ignored.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

from constants import Constants
from errors import ConfigError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Settings:
    """Tunables shared by the package manager components."""

    store_root: str = Constants.DEFAULT_STORE_ROOT
    lock_timeout: Optional[float] = Constants.DEFAULT_LOCK_TIMEOUT_SEC
    staging_workers: int = Constants.DEFAULT_STAGING_WORKERS
    prefer_active_transitive: bool = False
    max_resolution_steps: Optional[int] = Constants.DEFAULT_MAX_RESOLUTION_STEPS
    stale_tmp_seconds: float = Constants.DEFAULT_STALE_TMP_SEC
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if self.lock_timeout is not None and self.lock_timeout < 0:
            raise ConfigError("lock_timeout must be >= 0", lock_timeout=self.lock_timeout)
        if self.staging_workers < 1:
            raise ConfigError("staging_workers must be >= 1", staging_workers=self.staging_workers)
        if self.max_resolution_steps is not None and self.max_resolution_steps < 1:
            raise ConfigError("max_resolution_steps must be >= 1", max_resolution_steps=self.max_resolution_steps)
        if self.stale_tmp_seconds < 0:
            raise ConfigError("stale_tmp_seconds must be >= 0", stale_tmp_seconds=self.stale_tmp_seconds)

    @property
    def store_path(self) -> Path:
        return Path(self.store_root).expanduser()

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


def _as_bool(key: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("1", "true", "yes", "on"):
        return True
    if isinstance(value, str) and value.strip().lower() in ("0", "false", "no", "off"):
        return False
    raise ConfigError(f"'{key}' must be a boolean", **{key: value})


def _as_number(key: str, value: Any, kind: type, optional: bool = False) -> Any:
    if value is None and optional:
        return None
    if isinstance(value, bool):
        raise ConfigError(f"'{key}' must be a number", **{key: value})
    try:
        return kind(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"'{key}' must be a number", **{key: value}) from e


def _coerce(data: Dict[str, Any]) -> Dict[str, Any]:
    known = {f.name for f in fields(Settings)}
    out: Dict[str, Any] = {}
    for key, value in data.items():
        if key not in known:
            logger.warning("Ignoring unknown config key '%s'", key)
            continue
        if key in ("store_root", "log_level"):
            out[key] = str(value)
        elif key == "prefer_active_transitive":
            out[key] = _as_bool(key, value)
        elif key in ("lock_timeout", "stale_tmp_seconds"):
            out[key] = _as_number(key, value, float, optional=(key == "lock_timeout"))
        else:
            out[key] = _as_number(key, value, int, optional=(key == "max_resolution_steps"))
    return out


def _read_config_file(path: Path) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            if path.suffix.lower() == ".json":
                data = json.load(f)
            else:
                data = yaml.safe_load(f)
    except (OSError, ValueError, yaml.YAMLError) as e:
        raise ConfigError(f"cannot read config file {path}: {e}", path=str(path)) from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"config file {path} must contain a mapping", path=str(path))
    # accept either a top-level "polypin" section or a flat mapping
    section = data.get("polypin", data)
    if not isinstance(section, dict):
        raise ConfigError(f"'polypin' section of {path} must be a mapping", path=str(path))
    return section


def _discover(path: Optional[Union[str, Path]]) -> Optional[Path]:
    if path is not None:
        candidate = Path(path).expanduser()
        if not candidate.is_file():
            raise ConfigError(f"config file not found: {candidate}", path=str(candidate))
        return candidate
    env_path = os.environ.get(Constants.ENV_CONFIG)
    if env_path:
        candidate = Path(env_path).expanduser()
        if not candidate.is_file():
            raise ConfigError(f"config file not found: {candidate}", path=str(candidate))
        return candidate
    for name in Constants.CONFIG_FILE_NAMES:
        candidate = Path.cwd() / name
        if candidate.is_file():
            return candidate
    return None


def _env_overrides() -> Dict[str, Any]:
    env_map = {
        Constants.ENV_STORE_ROOT: "store_root",
        Constants.ENV_LOG_LEVEL: "log_level",
        Constants.ENV_LOCK_TIMEOUT: "lock_timeout",
        Constants.ENV_STAGING_WORKERS: "staging_workers",
    }
    out: Dict[str, Any] = {}
    for var, key in env_map.items():
        value = os.environ.get(var)
        if value is not None and value.strip():
            out[key] = value.strip()
    return out


def load_settings(path: Optional[Union[str, Path]] = None, **overrides: Any) -> Settings:
    """Build Settings from defaults, a config file and the environment.

    Args:
        path: Explicit config file. Without it ``$POLYPIN_CONFIG`` and then
            ``./polypin.yml`` / ``./polypin.yaml`` are tried.
        **overrides: Values applied last (e.g. from a caller's own flags).

    Returns:
        Settings: The effective settings.

    Raises:
        ConfigError: Missing explicit file, unreadable file or invalid value.
    """
    settings = Settings()
    config_path = _discover(path)
    if config_path is not None:
        logger.debug("Loading config from %s", config_path)
        settings = replace(settings, **_coerce(_read_config_file(config_path)))
    env = _env_overrides()
    if env:
        settings = replace(settings, **_coerce(env))
    if overrides:
        settings = replace(settings, **_coerce({k: v for k, v in overrides.items() if v is not None}))
    return settings
