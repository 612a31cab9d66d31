"""Settings loading for the gateway.

Secrets in keys.yaml, everything else in gateway.yaml.

Priority order (highest wins):
1. Environment variables (DATABASE_URL, GATEWAY_PORT, etc.)
2. keys.yaml for secrets, gateway.yaml for config
3. Model defaults
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from slack_gateway import conventions
from slack_gateway.fileutil import atomic_write
from slack_gateway.schema import GatewaySettings

logger = logging.getLogger(__name__)


def gateway_home() -> Path:
    override = os.environ.get("GATEWAY_HOME", "")
    return Path(override or conventions.GATEWAY_HOME).expanduser()


def config_path(home: Path | None = None) -> Path:
    return (home or gateway_home()) / conventions.GATEWAY_CONFIG_FILENAME


def keys_path(home: Path | None = None) -> Path:
    return (home or gateway_home()) / conventions.KEYS_FILENAME


def _load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text())
    except yaml.YAMLError as exc:
        raise ValueError(f"Malformed YAML in {path}: {exc}") from exc
    return data if isinstance(data, dict) else {}


def _load_keys(home: Path | None = None) -> dict[str, Any]:
    """Load keys.yaml; unreadable keys are logged, not fatal."""
    try:
        return _load_yaml(keys_path(home))
    except (OSError, ValueError):
        logger.warning("Failed to read keys.yaml", exc_info=True)
        return {}


def _str(env_key: str, keys: dict[str, Any], current: str) -> str:
    """Get string: env > keys.yaml > current (from gateway.yaml or default)."""
    env = os.environ.get(env_key, "")
    if env:
        return env
    k = keys.get(env_key, "")
    if k:
        return str(k)
    return current


def _bool(env_key: str, current: bool) -> bool:
    env = os.environ.get(env_key, "")
    if env:
        return env.lower() in ("1", "true", "yes")
    return current


def _number(env_key: str, current: float, cast: type = float) -> Any:
    env = os.environ.get(env_key, "")
    if not env:
        return current
    try:
        return cast(env)
    except ValueError:
        logger.warning("Ignoring non-numeric %s=%r", env_key, env)
        return current


def load_settings(home: Path | None = None) -> GatewaySettings:
    """Load gateway.yaml with keys.yaml and environment overrides applied.

    Raises:
        ValueError: gateway.yaml is not valid YAML or fails validation.
    """
    path = config_path(home)
    data = _load_yaml(path)
    try:
        settings = GatewaySettings(**data)
    except ValidationError as exc:
        raise ValueError(f"Invalid {path}: {exc}") from exc

    keys = _load_keys(home)
    server, store, threads, relay = (
        settings.server,
        settings.store,
        settings.threads,
        settings.relay,
    )
    server.host = _str("GATEWAY_HOST", {}, server.host)
    server.port = _number("GATEWAY_PORT", server.port, int)
    server.api_key = _str("GATEWAY_API_KEY", keys, server.api_key)
    server.log_level = _str("GATEWAY_LOG_LEVEL", {}, server.log_level)
    store.database_url = _str("DATABASE_URL", keys, store.database_url)
    store.redis_url = _str("REDIS_URL", keys, store.redis_url)
    store.data_dir = _str("GATEWAY_DATA_DIR", {}, store.data_dir)
    threads.timeout_minutes = _number("THREAD_TIMEOUT_MINUTES", threads.timeout_minutes)
    relay.default_streaming = _bool("ENABLE_STREAMING", relay.default_streaming)

    logger.debug(
        "Settings loaded from %s (database=%s redis=%s)",
        path,
        bool(store.database_url),
        bool(store.redis_url),
    )
    return settings


def save_settings(settings: GatewaySettings, home: Path | None = None) -> Path:
    """Write settings to gateway.yaml, leaving secrets out."""
    path = config_path(home)
    data = settings.model_dump(
        exclude={"server": {"api_key"}, "store": {"database_url", "redis_url"}}
    )
    atomic_write(path, yaml.dump(data, default_flow_style=False, sort_keys=False))
    return path
