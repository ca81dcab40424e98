"""Google OAuth credentials for the Gmail collaborator.

Secrets live in keys.yaml or the environment, never in assistant.yaml.

Priority order (highest wins):
1. Environment variables (GOOGLE_*)
2. ~/.inbox-assistant/keys.yaml
3. Dataclass defaults
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from inbox_assistant.conventions import ASSISTANT_HOME, KEYS_FILENAME

logger = logging.getLogger(__name__)


def _load_keys() -> dict[str, Any]:
    """Load ~/.inbox-assistant/keys.yaml, or {} if missing or unreadable."""
    path = Path(ASSISTANT_HOME).expanduser() / KEYS_FILENAME
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text())
        return data if isinstance(data, dict) else {}
    except (OSError, yaml.YAMLError):
        logger.warning("Failed to read keys.yaml", exc_info=True)
        return {}


def _str(env_key: str, keys: dict[str, Any], default: str = "") -> str:
    """Get string: env > keys.yaml > default."""
    env = os.environ.get(env_key, "")
    if env:
        return env
    k = keys.get(env_key, "")
    if k:
        return str(k)
    return default


@dataclass
class GoogleCredentials:
    """OAuth client and tokens for the Gmail API."""

    client_id: str = ""
    client_secret: str = ""
    refresh_token: str = ""
    access_token: str = ""  # Auto-refreshed, can be empty

    @classmethod
    def from_env(cls) -> GoogleCredentials:
        keys = _load_keys()
        return cls(
            client_id=_str("GOOGLE_CLIENT_ID", keys),
            client_secret=_str("GOOGLE_CLIENT_SECRET", keys),
            refresh_token=_str("GOOGLE_REFRESH_TOKEN", keys),
            access_token=_str("GOOGLE_ACCESS_TOKEN", keys),
        )

    @property
    def is_configured(self) -> bool:
        return bool(
            self.client_id
            and self.client_secret
            and (self.refresh_token or self.access_token)
        )
