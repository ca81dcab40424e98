"""CLI entry point for the assistant server.

Usage:
    inbox-assistant serve [OPTIONS]            # run the server (foreground)
    inbox-assistant ask "PROMPT" [--url URL]   # stream one answer from a server
    python -m inbox_assistant.server [...]     # via module
"""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from typing import TYPE_CHECKING, TextIO

import click
import httpx
from fastapi import FastAPI

from inbox_assistant import conventions

if TYPE_CHECKING:
    from inbox_assistant.server.app import AssistantServer

DEV_ENV_VAR = "INBOX_ASSISTANT_DEV"

logger = logging.getLogger("inbox_assistant.server")


@click.group("inbox-assistant")
def main() -> None:
    """Inbox assistant: Gmail browsing with a local-LLM relay."""


def build_server(dev_mode: bool) -> AssistantServer:
    """Initialize shared services and register every built-in app."""
    from inbox_assistant.server.app import AssistantServer
    from inbox_assistant.server.services import init_services, stop_services

    init_services(dev_mode=dev_mode)
    server = AssistantServer(dev_mode=dev_mode)
    server.register_builtin_apps()
    server.app.add_event_handler("shutdown", stop_services)
    return server


def create_app() -> FastAPI:
    """uvicorn factory (``--factory inbox_assistant.server.cli:create_app``).

    Dev mode is read from the INBOX_ASSISTANT_DEV environment variable.
    """
    return build_server(os.environ.get(DEV_ENV_VAR) == "1").app


@main.command()
@click.option(
    "--host",
    default="127.0.0.1",
    help="Bind host (use 0.0.0.0 for LAN access)",
)
@click.option(
    "--port",
    default=conventions.SERVER_DEFAULT_PORT,
    type=int,
    help="Bind port",
)
@click.option("--reload", is_flag=True, help="Enable auto-reload for development")
@click.option(
    "--dev",
    is_flag=True,
    help="Dev mode: in-memory mailbox, no Google credentials needed",
)
def serve(host: str, port: int, reload: bool, dev: bool) -> None:
    """Run the assistant server in the foreground."""
    import uvicorn

    from inbox_assistant.config import load_config
    from inbox_assistant.server.startup import (
        export_keys,
        load_env_file,
        log_startup_info,
        setup_logging,
    )

    setup_logging()

    loaded_env = load_env_file()
    if loaded_env:
        logger.info(
            "Loaded %d var(s) from .env: %s", len(loaded_env), ", ".join(loaded_env)
        )
    exported = export_keys()
    if exported:
        logger.info(
            "Exported %d key(s) from keys.yaml: %s", len(exported), ", ".join(exported)
        )

    cfg = load_config()
    if dev:
        os.environ[DEV_ENV_VAR] = "1"
        click.echo("--- Dev mode: simulated inbox ---")

    click.echo(f"Starting Inbox Assistant on {host}:{port}")
    click.echo(f"  URL:       http://{host}:{port}")
    click.echo(f"  API docs:  http://{host}:{port}/api/docs")
    click.echo(f"  Inference: {cfg.inference.base_url}")

    if reload:
        # The reloader re-imports the app in a subprocess, so pass a factory.
        uvicorn.run(
            "inbox_assistant.server.cli:create_app",
            factory=True,
            host=host,
            port=port,
            reload=True,
            log_level="info",
        )
        return

    from inbox_assistant.server.services import get_services

    server = build_server(dev)
    log_startup_info(
        host=host,
        port=port,
        apps=list(server.apps),
        services=get_services(),
        logger=logger,
    )
    uvicorn.run(server.app, host=host, port=port, log_level="info")


@main.command()
@click.argument("prompt")
@click.option(
    "--email-file",
    type=click.File("r", encoding="utf-8"),
    default=None,
    help="File whose text is sent as the email content",
)
@click.option(
    "--url",
    default=f"http://127.0.0.1:{conventions.SERVER_DEFAULT_PORT}",
    help="Base URL of a running assistant server",
)
def ask(prompt: str, email_file: TextIO | None, url: str) -> None:
    """Stream one generation from a running server to stdout."""
    from inbox_assistant.server.apps.assistant.client import (
        RelayClient,
        RelayHTTPError,
    )
    from inbox_assistant.server.relay import GenerationRequest

    request = GenerationRequest(
        prompt=prompt, email_content=email_file.read() if email_file else ""
    )

    async def _run() -> None:
        async for text in RelayClient(url).stream(request):
            click.echo(text, nl=False)
            sys.stdout.flush()
        click.echo()

    try:
        asyncio.run(_run())
    except RelayHTTPError as e:
        click.echo(f"\nError: {e}", err=True)
        raise SystemExit(1) from None
    except httpx.HTTPError as e:
        click.echo(f"\nCannot reach {url}: {e}", err=True)
        raise SystemExit(1) from None
