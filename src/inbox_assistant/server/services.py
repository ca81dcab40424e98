"""Server-level shared services.

The server creates ONE set of services at startup and shares them with all
apps: the inference relay, the mail client and the access-token provider.

Usage:
    # At server startup (in cli.py):
    from inbox_assistant.server.services import init_services
    services = init_services(dev_mode=True)

    # In app route handlers:
    from inbox_assistant.server.services import get_services
    services = get_services()
    stream = await services.relay.open(request)

    # In tests:
    from inbox_assistant.server.services import init_services, reset_services
    services = init_services(relay=my_relay, mail=MemoryMailClient())
    # ... run tests ...
    reset_services()
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field

from inbox_assistant.config import load_config
from inbox_assistant.mail.auth import (
    AccessTokenProvider,
    StaticTokenProvider,
    TokenManager,
)
from inbox_assistant.mail.client import GmailClient, MailClient, MemoryMailClient
from inbox_assistant.mail.settings import GoogleCredentials
from inbox_assistant.schema import AssistantConfig
from inbox_assistant.server.relay import InferenceRelay

logger = logging.getLogger(__name__)

# Module-level singleton
_instance: ServerServices | None = None
_instance_lock = threading.Lock()


@dataclass
class ServerServices:
    """Shared services available to all server apps.

    Attributes:
        relay: Inference relay (owns the upstream HTTP client)
        mail: Mail client (GmailClient or MemoryMailClient)
        auth: Access-token provider for the mail client
        dev_mode: Whether the server is in dev/simulator mode
        config: The loaded assistant.yaml
    """

    relay: InferenceRelay
    mail: MailClient
    auth: AccessTokenProvider
    dev_mode: bool = False
    config: AssistantConfig = field(default_factory=AssistantConfig)


def init_services(
    *,
    dev_mode: bool = False,
    relay: InferenceRelay | None = None,
    mail: MailClient | None = None,
    auth: AccessTokenProvider | None = None,
    config: AssistantConfig | None = None,
) -> ServerServices:
    """Initialize server services. Called once at server startup.

    Args:
        dev_mode: Use the in-memory mailbox and a static token.
        relay: Override the inference relay (for testing).
        mail: Override the mail client (for testing).
        auth: Override the token provider (for testing).
        config: Override assistant.yaml (for testing).

    Returns:
        The initialized ServerServices instance.
    """
    global _instance

    if config is None:
        config = load_config()

    if relay is None:
        relay = InferenceRelay(config.inference)
        logger.info("Server services: inference relay -> %s", relay.endpoint)

    simulator = dev_mode or config.mail.simulator_mode
    if auth is None:
        credentials = GoogleCredentials.from_env()
        if simulator or not credentials.is_configured:
            auth = StaticTokenProvider()
            simulator = True
        else:
            auth = TokenManager(credentials)

    if mail is None:
        if simulator:
            mail = MemoryMailClient(page_size=config.mail.page_size)
            logger.info("Server services: using MemoryMailClient (simulator)")
        else:
            mail = GmailClient(auth, page_size=config.mail.page_size)
            logger.info("Server services: using GmailClient")

    with _instance_lock:
        _instance = ServerServices(
            relay=relay, mail=mail, auth=auth, dev_mode=dev_mode, config=config
        )
        return _instance


def get_services() -> ServerServices:
    """Get the shared services instance.

    Raises RuntimeError if services haven't been initialized.
    """
    with _instance_lock:
        if _instance is None:
            raise RuntimeError(
                "Server services not initialized. Call init_services() first."
            )
        return _instance


def reset_services() -> None:
    """Reset services (for testing). Not for production use."""
    global _instance
    with _instance_lock:
        _instance = None


async def stop_services() -> None:
    """Close the relay's upstream HTTP client.

    Safe to call even if services were never initialized.
    """
    with _instance_lock:
        instance = _instance

    if instance is None:
        return

    await instance.relay.aclose()
