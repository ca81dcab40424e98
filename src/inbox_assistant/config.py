"""Config I/O for assistant.yaml."""

import logging
from pathlib import Path

import yaml
from pydantic import ValidationError

from . import conventions
from .schema import AssistantConfig

logger = logging.getLogger(__name__)


def config_path() -> Path:
    """Return the path to ~/.inbox-assistant/assistant.yaml, expanded."""
    return Path(conventions.ASSISTANT_HOME).expanduser() / conventions.CONFIG_FILENAME


def load_config() -> AssistantConfig:
    """Load and parse assistant.yaml, returning defaults if missing or invalid.

    If the file contains invalid values, logs a warning and returns
    defaults so the server can still start.
    """
    path = config_path()
    if not path.exists():
        return AssistantConfig()

    try:
        data = yaml.safe_load(path.read_text())
    except yaml.YAMLError as exc:
        logger.warning("Unreadable assistant.yaml at %s: %s. Using defaults.", path, exc)
        return AssistantConfig()
    if not data:
        return AssistantConfig()

    try:
        return AssistantConfig(**data)
    except (ValidationError, TypeError) as exc:
        logger.warning("Invalid assistant.yaml at %s: %s. Using defaults.", path, exc)
        return AssistantConfig()


def save_config(config: AssistantConfig) -> None:
    """Write config to ~/.inbox-assistant/assistant.yaml."""
    path = config_path()
    path.parent.mkdir(parents=True, exist_ok=True)

    data = config.model_dump()
    text = yaml.dump(data, default_flow_style=False, sort_keys=False)
    path.write_text(text)
