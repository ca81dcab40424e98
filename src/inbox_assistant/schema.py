"""Pydantic schema for ~/.inbox-assistant/assistant.yaml

Default values here MUST match the canonical constants in conventions.py.
Secrets (Google OAuth client and refresh token) never live here; they are
read from keys.yaml or the environment (see mail/settings.py).
"""

from pydantic import BaseModel, Field

from . import conventions


class InferenceConfig(BaseModel):
    """Local inference server (Ollama) settings.

    read_timeout_seconds=None means the relay waits on the upstream body
    indefinitely, which is how long generations are served today.
    """

    base_url: str = conventions.DEFAULT_INFERENCE_URL
    model: str = conventions.DEFAULT_INFERENCE_MODEL
    connect_timeout_seconds: float = 10.0
    read_timeout_seconds: float | None = None


class MailConfig(BaseModel):
    """Inbox browsing settings (non-secret)."""

    page_size: int = conventions.GMAIL_PAGE_SIZE
    base_query: str = conventions.GMAIL_BASE_QUERY
    simulator_mode: bool = False


class ServerConfig(BaseModel):
    """Server settings including optional API key authentication.

    If api_key is set, mutation endpoints require an
    Authorization: Bearer <key> header.
    """

    api_key: str = ""


class AssistantConfig(BaseModel):
    inference: InferenceConfig = Field(default_factory=InferenceConfig)
    mail: MailConfig = Field(default_factory=MailConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
