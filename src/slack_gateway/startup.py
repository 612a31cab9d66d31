"""Gateway startup utilities: structured logging, .env loading, startup info.

Runs before the event loop starts serving:
- Structured logging (JSON lines to file, human-readable to console)
- .env loading into the process environment
- Version, bind address and storage tier logging
"""

from __future__ import annotations

import json
import logging
import os
from datetime import UTC, datetime
from importlib.metadata import PackageNotFoundError
from logging.handlers import RotatingFileHandler
from pathlib import Path

from slack_gateway import conventions
from slack_gateway.config import gateway_home

logger = logging.getLogger(__name__)

_HANDLER_MARK = "_slack_gateway_handler"


def log_file_path(home: Path | None = None) -> Path:
    base = home or gateway_home()
    return base / conventions.SERVER_LOG_FILE


class JSONFormatter(logging.Formatter):
    """JSON log formatter for structured file logging."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, object] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        tenant = getattr(record, "tenant_id", None)
        if tenant:
            entry["tenant_id"] = tenant
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry)


def setup_logging(
    log_file: Path | None = None, level: int | str = logging.INFO
) -> None:
    """Configure console + rotating JSON file logging on the root logger.

    Calling it again replaces the handlers it installed earlier.
    """
    if log_file is None:
        log_file = log_file_path()
    log_file.parent.mkdir(parents=True, exist_ok=True)

    root = logging.getLogger()
    root.setLevel(level)
    for handler in list(root.handlers):
        if getattr(handler, _HANDLER_MARK, False):
            root.removeHandler(handler)
            handler.close()

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(
        logging.Formatter(
            "%(asctime)s %(levelname)-8s %(name)s: %(message)s",
            datefmt="%H:%M:%S",
        )
    )
    file_handler = RotatingFileHandler(
        str(log_file), maxBytes=10 * 1024 * 1024, backupCount=3
    )
    file_handler.setFormatter(JSONFormatter())
    for handler in (console_handler, file_handler):
        setattr(handler, _HANDLER_MARK, True)
        root.addHandler(handler)


def load_env_file(env_file: Path) -> list[str]:
    """Load ``KEY=value`` lines from *env_file* without overriding the env.

    Returns the names that were present in the file.
    """
    if not env_file.exists():
        return []
    loaded: list[str] = []
    try:
        lines = env_file.read_text().splitlines()
    except OSError:
        logger.warning("Could not read %s", env_file, exc_info=True)
        return []
    for raw_line in lines:
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, _, value = line.partition("=")
        key, value = key.strip(), value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in ('"', "'"):
            value = value[1:-1]
        if key:
            os.environ.setdefault(key, value)
            loaded.append(key)
    return loaded


def package_version() -> str:
    from importlib.metadata import version

    try:
        return version("slack-gateway")
    except PackageNotFoundError:
        logger.debug("Package metadata not found, using default version")
        return "0.1.0"


def log_startup_info(
    *, host: str, port: int, tiers: list[str], log: logging.Logger
) -> None:
    log.info("Slack Gateway v%s", package_version())
    log.info("Bind: %s:%d", host, port)
    log.info("Tenant store tiers: %s", " -> ".join(tiers))
