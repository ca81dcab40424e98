"""Inbox Assistant HTTP server.

One FastAPI application: a small core API under /api plus the built-in
apps, each mounted under /apps/<name>.

    /api/health            liveness, version, mail mode, inference model
    /api/config            assistant.yaml with the API key masked
    /api/apps              mounted apps
    /apps/assistant/...    inference relay and chat panel
    /apps/mail/...         inbox listing, detail and delete

An app module exposes ``manifest: AppManifest``. Its handlers reach the
shared relay and mail client through ``server.services.get_services()``.
"""

from __future__ import annotations

import hmac
import importlib
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from fastapi import APIRouter, Depends, FastAPI, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from inbox_assistant import __version__
from inbox_assistant.config import load_config
from inbox_assistant.mail.client import MemoryMailClient
from inbox_assistant.server.services import get_services

logger = logging.getLogger(__name__)

# Modules under inbox_assistant.server.apps, mounted in this order.
BUILTIN_APPS: tuple[str, ...] = ("assistant", "mail")

LifecycleHook = Callable[[], Awaitable[None] | None]

_bearer = HTTPBearer(auto_error=False)


@dataclass
class AppManifest:
    """What an app module hands to the server."""

    name: str
    description: str
    router: APIRouter | None = field(default=None, repr=False)
    on_startup: LifecycleHook | None = field(default=None, repr=False)
    on_shutdown: LifecycleHook | None = field(default=None, repr=False)

    @property
    def mount_path(self) -> str:
        return f"/apps/{self.name}"


def _configured_api_key() -> str:
    try:
        return get_services().config.server.api_key
    except RuntimeError:
        return load_config().server.api_key


async def verify_api_key(
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer),  # noqa: B008
) -> None:
    """Guard for destructive routes.

    With no ``server.api_key`` configured every caller passes. Otherwise the
    request needs ``Authorization: Bearer <key>``.
    """
    expected = _configured_api_key()
    if not expected:
        return
    supplied = credentials.credentials if credentials is not None else ""
    if not hmac.compare_digest(supplied.encode(), expected.encode()):
        raise HTTPException(status_code=401, detail="Invalid or missing API key")


class AssistantServer:
    """The FastAPI application and the apps mounted on it.

    Usage:
        server = AssistantServer(dev_mode=True)
        server.register_builtin_apps()
        uvicorn.run(server.app, port=8410)
    """

    def __init__(self, *, dev_mode: bool = False, version: str = __version__) -> None:
        self.dev_mode = dev_mode
        self._manifests: dict[str, AppManifest] = {}
        self.app = FastAPI(
            title="Inbox Assistant",
            version=version,
            docs_url="/api/docs",
            openapi_url="/api/openapi.json",
        )
        self.app.include_router(self._core_router())

    @property
    def apps(self) -> dict[str, AppManifest]:
        return dict(self._manifests)

    def register_app(self, manifest: AppManifest) -> None:
        """Mount one app at /apps/<name> and hook its lifecycle callbacks."""
        if manifest.name in self._manifests:
            raise ValueError(f"App already registered: {manifest.name}")

        if manifest.router is not None:
            self.app.include_router(
                manifest.router, prefix=manifest.mount_path, tags=[manifest.name]
            )
        for event, hook in (
            ("startup", manifest.on_startup),
            ("shutdown", manifest.on_shutdown),
        ):
            if hook is not None:
                self.app.add_event_handler(event, hook)

        self._manifests[manifest.name] = manifest
        logger.info("Mounted %s at %s", manifest.name, manifest.mount_path)

    def register_builtin_apps(self, names: Iterable[str] = BUILTIN_APPS) -> list[str]:
        """Import each built-in app module and mount its manifest."""
        mounted: list[str] = []
        for name in names:
            module = importlib.import_module(f"{__package__}.apps.{name}")
            self.register_app(module.manifest)
            mounted.append(module.manifest.name)
        return mounted

    def _core_router(self) -> APIRouter:
        router = APIRouter(prefix="/api", tags=["core"])

        @router.get("/health")
        async def health() -> dict[str, Any]:
            body: dict[str, Any] = {"status": "ok", "version": self.app.version}
            try:
                services = get_services()
            except RuntimeError:
                return body
            body["mail"] = (
                "simulator" if isinstance(services.mail, MemoryMailClient) else "gmail"
            )
            body["model"] = services.config.inference.model
            return body

        @router.get("/config")
        async def config() -> dict[str, Any]:
            cfg = load_config()
            data = cfg.model_dump()
            data["server"]["api_key"] = "***" if cfg.server.api_key else ""
            return data

        @router.get("/apps")
        async def apps() -> dict[str, dict[str, str]]:
            return {
                name: {"description": m.description, "mount_path": m.mount_path}
                for name, m in self._manifests.items()
            }

        return router
