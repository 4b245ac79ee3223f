"""Store configuration registry.

Provides lock and durability settings for fact stores.
Environment variables take precedence over YAML config.

Usage:
    from factstream.config import load_store_config

    config = load_store_config("factstream.yaml")
    store = FactStore.open_or_create("facts.stream", TrackValue, config=config)

YAML layout:
    store:
      lock_timeout_sec: 2.5
      lock_retry_interval_ms: 100
      allow_unknown: true
      fsync: true
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

logger = logging.getLogger(__name__)

ENV_LOCK_TIMEOUT = "FACTSTREAM_LOCK_TIMEOUT_SEC"
ENV_LOCK_RETRY_MS = "FACTSTREAM_LOCK_RETRY_MS"
ENV_FSYNC = "FACTSTREAM_FSYNC"

DEFAULT_LOCK_RETRY_MS = 100

_TRUE_VALUES = ("1", "true", "yes", "on")
_FALSE_VALUES = ("0", "false", "no", "off")


@dataclass
class StoreConfig:
    """Resolved store settings.

    A ``lock_timeout_sec`` of zero means immediate-fail locking
    (AlreadyLockedError); a positive value polls every
    ``lock_retry_interval_ms`` until the bound is exhausted (LockTimeoutError).
    """

    lock_timeout_sec: float = 0.0
    lock_retry_interval_ms: int = DEFAULT_LOCK_RETRY_MS
    allow_unknown: bool = True
    fsync: bool = True
    source: str = "default"  # "default" | "yaml" | "env"

    @property
    def lock_retry_interval_sec(self) -> float:
        return self.lock_retry_interval_ms / 1000


def _coerce_bool(value: Any, name: str, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE_VALUES:
        return True
    if text in _FALSE_VALUES:
        return False
    logger.warning("Invalid boolean for '%s': %r. Using default %s.", name, value, default)
    return default


def _coerce_number(value: Any, name: str, default: float, cast: type) -> Any:
    try:
        number = cast(value)
    except (TypeError, ValueError):
        logger.warning("Invalid value for '%s': %r. Using default %s.", name, value, default)
        return default
    if number < 0:
        logger.warning("Negative value for '%s': %r. Using default %s.", name, value, default)
        return default
    return number


def _load_yaml(path: Path) -> Dict[str, Any]:
    """Load the ``store`` section of a YAML config file."""
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        logger.warning("Ignoring config %s: top level is not a mapping", path)
        return {}
    section = data.get("store", {}) or {}
    if not isinstance(section, dict):
        logger.warning("Ignoring 'store' section in %s: not a mapping", path)
        return {}
    known = {f.name for f in fields(StoreConfig)} - {"source"}
    unknown = set(section) - known
    if unknown:
        logger.warning("Unknown store config keys in %s: %s", path, sorted(unknown))
    return {k: v for k, v in section.items() if k in known}


def load_store_config(path: Optional[Union[str, Path]] = None) -> StoreConfig:
    """Resolve store configuration: environment > YAML > defaults.

    Args:
        path: Optional YAML file. A missing file is not an error.

    Returns:
        The resolved StoreConfig.
    """
    defaults = StoreConfig()
    raw: Dict[str, Any] = {}
    source = "default"

    if path is not None and Path(path).exists():
        raw.update(_load_yaml(Path(path)))
        if raw:
            source = "yaml"

    env = os.environ
    if ENV_LOCK_TIMEOUT in env:
        raw["lock_timeout_sec"] = env[ENV_LOCK_TIMEOUT]
        source = "env"
    if ENV_LOCK_RETRY_MS in env:
        raw["lock_retry_interval_ms"] = env[ENV_LOCK_RETRY_MS]
        source = "env"
    if ENV_FSYNC in env:
        raw["fsync"] = env[ENV_FSYNC]
        source = "env"

    config = StoreConfig(
        lock_timeout_sec=_coerce_number(
            raw.get("lock_timeout_sec", defaults.lock_timeout_sec),
            "lock_timeout_sec",
            defaults.lock_timeout_sec,
            float,
        ),
        lock_retry_interval_ms=_coerce_number(
            raw.get("lock_retry_interval_ms", defaults.lock_retry_interval_ms),
            "lock_retry_interval_ms",
            defaults.lock_retry_interval_ms,
            int,
        ),
        allow_unknown=_coerce_bool(
            raw.get("allow_unknown", defaults.allow_unknown), "allow_unknown", defaults.allow_unknown
        ),
        fsync=_coerce_bool(raw.get("fsync", defaults.fsync), "fsync", defaults.fsync),
        source=source,
    )
    logger.debug("Resolved store config from %s: %s", source, config)
    return config
