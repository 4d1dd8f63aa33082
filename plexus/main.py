"""Plexus FastAPI application."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from collections.abc import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from plexus import __version__
from plexus.api.auth import DefaultAuthProvider
from plexus.api.dispatch import create_dispatch_router
from plexus.api.middleware import RequestLoggingMiddleware
from plexus.api.proxy import HttpxProxyFactory
from plexus.api.routes import health, plugins
from plexus.config.service_config import FileConfigurationSource
from plexus.config.settings import Settings, settings as default_settings
from plexus.plugins.errors import DynamicInstallError, ReasonCode, RejectedPlugin
from plexus.plugins.installer import PluginInstaller
from plexus.plugins.loader import DefinitionLoader, PythonModuleLoader
from plexus.plugins.registry import PluginRegistry
from plexus.plugins.routing import AgentTarget, RouteCompiler

logger = logging.getLogger("plexus.api")


def build_installer(settings: Settings, registry: PluginRegistry | None = None) -> PluginInstaller:
    """Wire the installer with the default collaborators."""
    config_source = FileConfigurationSource(settings.INSTANCE_CONFIG_DIR)
    agent = None
    if settings.AGENT_HOST:
        agent = AgentTarget(settings.AGENT_HOST, settings.AGENT_PORT, settings.AGENT_HTTPS)
    compiler = RouteCompiler(
        settings.PRODUCT_CODE,
        module_loader=PythonModuleLoader(),
        proxy_factory=HttpxProxyFactory(
            timeout=settings.PROXY_TIMEOUT,
            verify_tls=not settings.ALLOW_INVALID_TLS_PROXY,
        ),
        auth_provider=DefaultAuthProvider(settings),
        config_source=config_source,
        agent=agent,
        loopback_url=settings.LOOPBACK_URL,
    )
    return PluginInstaller(registry or PluginRegistry(), compiler, config_source=config_source)


async def install_from_directory(installer: PluginInstaller, plugins_dir: str) -> None:
    """Static install pass over a plugins directory.

    Raises:
        RuntimeError: If definitions failed to load and none loaded.
    """
    definitions, errors = DefinitionLoader(plugins_dir).load()
    if errors and not definitions:
        raise RuntimeError(f"No plugin could be loaded from {plugins_dir} ({len(errors)} errors)")
    result = await installer.install_plugins(definitions)
    for rejected in result.rejected:
        logger.warning("plugin_rejected plugin_id=%s reason=%s detail=%s",
                       rejected.plugin_id, rejected.reason.value, rejected.detail)
    plugins.drain_events(installer.registry)


def create_app(
    settings: Settings | None = None,
    installer: PluginInstaller | None = None,
    load_plugins: bool = True,
) -> FastAPI:
    """Build the application.

    Args:
        settings: Defaults to the environment settings.
        installer: Defaults to one wired by ``build_installer``.
        load_plugins: Run the static install pass on startup.
    """
    settings = settings or default_settings
    logging.getLogger("plexus").setLevel(settings.LOG_LEVEL)
    installer = installer or build_installer(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        if load_plugins:
            await install_from_directory(installer, settings.PLUGINS_DIR)
        yield

    app = FastAPI(
        title="Plexus",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.installer = installer
    app.state.registry = installer.registry
    app.state.install_lock = asyncio.Lock()

    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health.router)
    app.include_router(plugins.router)
    app.include_router(create_dispatch_router(settings.PRODUCT_CODE))

    # --- Exception handlers ---

    @app.exception_handler(DynamicInstallError)
    async def dynamic_install_error_handler(request: Request, exc: DynamicInstallError) -> JSONResponse:
        status = 409 if exc.reason is ReasonCode.DYNAMIC_INSTALL_CONFLICT else 422
        return JSONResponse(status_code=status, content={
            "detail": str(exc),
            "rejection": RejectedPlugin.from_error(exc).to_dict(),
        })

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(Exception)
    async def generic_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("unhandled_error path=%s", request.url.path)
        return JSONResponse(status_code=500, content={"detail": "Internal server error"})

    return app


app = create_app()
