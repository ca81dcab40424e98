"""Process setup for ``inbox-assistant serve``.

Runs before uvicorn takes over:
- logging: readable console lines, JSON lines in ~/.inbox-assistant/server/
- secrets: ``.env`` and ``keys.yaml`` values exported into the environment
  so GoogleCredentials.from_env() sees them
- a startup banner naming the upstream model, the mail mode and the apps
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Iterable
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import TYPE_CHECKING

import yaml

from inbox_assistant import __version__, conventions
from inbox_assistant.mail.client import GmailClient

if TYPE_CHECKING:
    from inbox_assistant.server.services import ServerServices

logger = logging.getLogger(__name__)

# LogRecord attributes set through ``extra=`` that are copied into JSON lines.
CONTEXT_FIELDS: tuple[str, ...] = ("context_key", "intent", "upstream_status")

# Libraries that log every request at INFO.
_CHATTY_LOGGERS = ("httpx", "httpcore", "googleapiclient.discovery_cache")

_HANDLER_NAMES = ("inbox-assistant-console", "inbox-assistant-file")


def log_file_path() -> Path:
    return (
        Path(conventions.ASSISTANT_HOME).expanduser()
        / conventions.SERVER_DIR
        / conventions.SERVER_LOG_FILE
    )


def keys_file_path() -> Path:
    return Path(conventions.ASSISTANT_HOME).expanduser() / conventions.KEYS_FILENAME


class JSONFormatter(logging.Formatter):
    """One JSON object per line, with the assistant's context fields."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, object] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for name in CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                entry[name] = value
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False)


def setup_logging(log_file: Path | None = None, level: int = logging.INFO) -> Path:
    """Install the console and JSON file handlers on the root logger.

    Calling it again replaces the handlers it installed before. Returns the
    log file path.
    """
    log_file = log_file or log_file_path()
    log_file.parent.mkdir(parents=True, exist_ok=True)

    root = logging.getLogger()
    root.setLevel(level)
    for handler in [h for h in root.handlers if h.get_name() in _HANDLER_NAMES]:
        root.removeHandler(handler)
        handler.close()

    console = logging.StreamHandler()
    console.set_name(_HANDLER_NAMES[0])
    console.setFormatter(
        logging.Formatter(
            "%(asctime)s %(levelname)-8s %(name)s: %(message)s", datefmt="%H:%M:%S"
        )
    )
    file_handler = RotatingFileHandler(
        log_file, maxBytes=5 * 1024 * 1024, backupCount=3, encoding="utf-8"
    )
    file_handler.set_name(_HANDLER_NAMES[1])
    file_handler.setFormatter(JSONFormatter())
    root.addHandler(console)
    root.addHandler(file_handler)

    for name in _CHATTY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
    return log_file


def _export(pairs: Iterable[tuple[str, str]]) -> list[str]:
    """setdefault each pair into os.environ; return the names seen."""
    names: list[str] = []
    for key, value in pairs:
        os.environ.setdefault(key, value)
        names.append(key)
    return names


def _env_pairs(text: str) -> Iterable[tuple[str, str]]:
    for raw in text.splitlines():
        line = raw.strip()
        if line.startswith("export "):
            line = line[len("export ") :].lstrip()
        key, sep, value = line.partition("=")
        key, value = key.strip(), value.strip()
        if not sep or not key or key.startswith("#"):
            continue
        if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
            value = value[1:-1]
        yield key, value


def load_env_file(env_file: Path | None = None) -> list[str]:
    """Export ``KEY=value`` lines from ~/.inbox-assistant/.env.

    Variables already in the environment win. Returns the names read.
    """
    env_file = env_file or Path(conventions.ASSISTANT_HOME).expanduser() / ".env"
    try:
        text = env_file.read_text(encoding="utf-8")
    except FileNotFoundError:
        return []
    except OSError:
        logger.warning("Could not read %s", env_file, exc_info=True)
        return []
    return _export(_env_pairs(text))


def export_keys(keys_file: Path | None = None) -> list[str]:
    """Export the scalar entries of keys.yaml (strings and numbers).

    Variables already in the environment win. Returns the names exported,
    never the values.
    """
    keys_file = keys_file or keys_file_path()
    try:
        data = yaml.safe_load(keys_file.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return []
    except (OSError, yaml.YAMLError) as e:
        logger.warning("Ignoring unreadable %s: %s", keys_file, e)
        return []
    if not isinstance(data, dict):
        return []
    return _export(
        (str(key), str(value))
        for key, value in data.items()
        if isinstance(value, (str, int, float))
        and not isinstance(value, bool)
        and value != ""
    )


def log_startup_info(
    *,
    host: str,
    port: int,
    apps: list[str],
    services: ServerServices,
    logger: logging.Logger = logger,
) -> None:
    """Log what this process is about to serve."""
    inference = services.config.inference
    mail_mode = "gmail" if isinstance(services.mail, GmailClient) else "simulator"
    read_timeout = (
        "none"
        if inference.read_timeout_seconds is None
        else f"{inference.read_timeout_seconds:g}s"
    )

    logger.info("Inbox Assistant v%s on http://%s:%d", __version__, host, port)
    logger.info(
        "Inference: %s model=%s (connect %gs, read %s)",
        services.relay.endpoint,
        inference.model,
        inference.connect_timeout_seconds,
        read_timeout,
    )
    logger.info(
        "Mail: %s, page size %d%s",
        mail_mode,
        services.config.mail.page_size,
        " (dev mode)" if services.dev_mode else "",
    )
    logger.info(
        "Delete routes: %s",
        "bearer key required" if services.config.server.api_key else "open",
    )
    logger.info("Apps: %s", ", ".join(apps) if apps else "none")
