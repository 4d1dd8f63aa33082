"""
Routing table compilation.

Every (plugin, service, version) triple of an installed plugin becomes a
Route mounted at

    /{productCode}/plugins/{pluginId}/services/{serviceName}/{version}

and every service group gets an extra ``_current`` alias targeting the
route of its highest version. A route runs a fixed middleware chain:

    1. pluginDefinition   request.state.plugin_def
    2. serviceHandles     request.state.services (name -> ServiceHandle)
    3. serviceDefinition  request.state.service_def
    4. auth               AuthProvider.middleware_for(service authorization)
    5. logging
    6. noCache            only when the service does not opt into caching
    7. terminal handler

Terminal handlers come from collaborators: router and legacy services are
loaded through the ModuleLoader, external and agent ("service" typed)
services through the ProxyFactory. Import routes are the source route
object itself, mounted a second time under the importer's path.

A service that cannot be compiled is left out of the table with a
RouteFailure; the plugin's other routes are kept.

RoutingTable is immutable. Publishing a new install pass means building a
new table (``extend``) and swapping a single reference.
"""

from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Any, Iterable, Mapping
import inspect
import logging

import httpx
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from plexus.plugins.collaborators import (
    AuthProvider,
    CallNext,
    ConfigurationSource,
    Handler,
    Middleware,
    ModuleLoader,
    ProxyFactory,
)
from plexus.plugins.errors import PluginError, ReasonCode, RouteFailure
from plexus.plugins.plugin import InstalledPlugin
from plexus.plugins.services import (
    DispatchKind,
    ServiceKind,
    ServiceRecord,
    describe,
)

logger = logging.getLogger(__name__)

CURRENT_VERSION = "_current"

DEFAULT_ROUTER_FACTORY = "create_router"
LEGACY_HANDLER = "handle_request"

NO_CACHE_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}

RouteKey = tuple[str, str, str]


def service_path(product_code: str, plugin_id: str, service_name: str, version: str) -> str:
    return f"/{product_code}/plugins/{plugin_id}/services/{service_name}/{version}"


@dataclass(frozen=True)
class AgentTarget:
    """Upstream agent that "service" typed services are proxied to."""

    host: str
    port: int
    is_https: bool = False


@dataclass(frozen=True)
class ServiceHandle:
    """Call-handle to a sibling or imported service.

    Attributes:
        name: Name the service is known by inside the plugin.
        version: The version bound at compile time.
        url_path: Mounted path of that version's route.
        base_url: Loopback URL of this server.
        transport: httpx transport for calls; None uses the network.
    """

    name: str
    version: str
    url_path: str
    base_url: str
    transport: httpx.AsyncBaseTransport | None = field(default=None, compare=False, repr=False)

    @property
    def url(self) -> str:
        return self.base_url.rstrip("/") + self.url_path

    async def call(self, path: str = "", method: str = "GET", **kwargs: Any) -> httpx.Response:
        """Issue a request to the service through the loopback address."""
        async with httpx.AsyncClient(base_url=self.base_url, transport=self.transport) as client:
            return await client.request(method, self.url_path + path, **kwargs)


@dataclass(frozen=True)
class ServiceContext:
    """Passed to router factories and legacy handlers."""

    plugin_def: Mapping[str, Any]
    service_def: Mapping[str, Any]
    configuration: Mapping[str, Any]
    logger: logging.Logger


@dataclass(frozen=True)
class MiddlewareStep:
    """One named step of a route's middleware chain."""

    name: str
    fn: Middleware


@dataclass(frozen=True)
class Route:
    """A compiled route.

    Attributes:
        url_path: Mount path, ending in a version or ``_current``.
        is_default: True only for the ``_current`` alias.
        middleware_chain: Steps run before the handler, in order.
        handler_ref: Terminal handler.
        plugin_id: Plugin the route is mounted under.
        service_name: Service name (local name for imports).
        version: Concrete version served.
        kind: Kind of the service record.
        source: (plugin, service, version) of the exporting route, for imports.
    """

    url_path: str
    is_default: bool
    middleware_chain: tuple[MiddlewareStep, ...]
    handler_ref: Handler
    plugin_id: str
    service_name: str
    version: str
    kind: ServiceKind
    source: RouteKey | None = None

    @property
    def key(self) -> RouteKey:
        return (self.plugin_id, self.service_name, self.version)

    @property
    def step_names(self) -> list[str]:
        return [step.name for step in self.middleware_chain]

    async def handle(self, request: Request) -> Response:
        """Run the middleware chain and the terminal handler."""
        chain = self.middleware_chain

        async def call(index: int, req: Request) -> Response:
            if index == len(chain):
                return await self.handler_ref(req)
            return await chain[index].fn(req, lambda r: call(index + 1, r))

        return await call(0, request)

    def to_dict(self) -> dict[str, Any]:
        return {
            "urlPath": self.url_path,
            "isDefault": self.is_default,
            "pluginId": self.plugin_id,
            "serviceName": self.service_name,
            "version": self.version,
            "kind": self.kind.value,
            "middleware": self.step_names,
            "source": "/".join(self.source) if self.source else None,
        }


@dataclass(frozen=True)
class RoutingTable:
    """Immutable snapshot of everything published so far.

    Attributes:
        routes: Mount path -> Route, aliases included.
        index: (plugin, service, version) -> canonical Route.
        plugins: Installed plugins by identifier.
    """

    routes: Mapping[str, Route] = field(default_factory=lambda: MappingProxyType({}))
    index: Mapping[RouteKey, Route] = field(default_factory=lambda: MappingProxyType({}))
    plugins: Mapping[str, InstalledPlugin] = field(default_factory=lambda: MappingProxyType({}))

    def extend(self, plugins: Iterable[InstalledPlugin], routes: Iterable[Route]) -> "RoutingTable":
        """A new table holding this one's content plus *plugins* and *routes*."""
        all_routes = dict(self.routes)
        index = dict(self.index)
        for route in routes:
            all_routes[route.url_path] = route
            if not route.is_default:
                index[route.key] = route
        installed = dict(self.plugins)
        installed.update((p.identifier, p) for p in plugins)
        return RoutingTable(
            routes=MappingProxyType(all_routes),
            index=MappingProxyType(index),
            plugins=MappingProxyType(installed),
        )

    def match(self, path: str) -> tuple[Route, str] | None:
        """Find the route serving *path*.

        Returns:
            (route, remaining sub-path) or None.
        """
        parts = path.lstrip("/").split("/", 6)
        if len(parts) < 6:
            return None
        route = self.routes.get("/" + "/".join(parts[:6]))
        if route is None:
            return None
        return route, "/" + parts[6] if len(parts) == 7 else ""

    def routes_for(self, plugin_id: str) -> list[Route]:
        return [r for r in self.routes.values() if r.plugin_id == plugin_id]

    def __len__(self) -> int:
        return len(self.routes)


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


def _as_handler(fn: Any, *args: Any) -> Handler:
    async def handler(request: Request) -> Response:
        result = await _maybe_await(fn(request, *args))
        if isinstance(result, Response):
            return result
        return JSONResponse(result)

    return handler


def _inject(attribute: str, value: Any) -> Middleware:
    async def step(request: Request, call_next: CallNext) -> Response:
        setattr(request.state, attribute, value)
        return await call_next(request)

    return step


def _log_request(plugin_id: str, name: str, version: str) -> Middleware:
    async def step(request: Request, call_next: CallNext) -> Response:
        logger.debug(f"{request.method} {request.url.path} -> {plugin_id}::{name}@{version}")
        return await call_next(request)

    return step


async def _no_cache(request: Request, call_next: CallNext) -> Response:
    response = await call_next(request)
    response.headers.update(NO_CACHE_HEADERS)
    return response


async def _allow_all(request: Request, call_next: CallNext) -> Response:
    return await call_next(request)


class RouteCompiler:
    """Compiles installed plugins into routes.

    Args:
        product_code: First URL segment of every route.
        module_loader: Loads router / legacy implementation modules.
        proxy_factory: Builds handlers for external and agent services.
        auth_provider: Supplies the auth step; absent means allow all.
        config_source: Service configuration handed to service modules.
        agent: Upstream for "service" typed services.
        loopback_url: Base URL used by service handles.
        transport: httpx transport given to service handles, e.g. an
            ``ASGITransport`` that keeps sibling calls in process.
    """

    def __init__(
        self,
        product_code: str,
        module_loader: ModuleLoader | None = None,
        proxy_factory: ProxyFactory | None = None,
        auth_provider: AuthProvider | None = None,
        config_source: ConfigurationSource | None = None,
        agent: AgentTarget | None = None,
        loopback_url: str = "http://127.0.0.1:8000",
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.product_code = product_code.strip("/")
        self.module_loader = module_loader
        self.proxy_factory = proxy_factory
        self.auth_provider = auth_provider
        self.config_source = config_source
        self.agent = agent
        self.loopback_url = loopback_url
        self.transport = transport

    def path(self, plugin_id: str, service_name: str, version: str) -> str:
        return service_path(self.product_code, plugin_id, service_name, version)

    async def compile(
        self,
        plugins: Iterable[InstalledPlugin],
        base: RoutingTable | None = None,
    ) -> tuple[list[Route], list[RouteFailure]]:
        """Compile *plugins* in order.

        Imports resolve against *base* plus routes compiled earlier in
        the same call, so *plugins* must be in topological order.

        Returns:
            (routes, failures)
        """
        index: dict[RouteKey, Route] = dict(base.index) if base else {}
        routes: list[Route] = []
        failures: list[RouteFailure] = []
        for plugin in plugins:
            plugin_routes, plugin_failures = await self.compile_plugin(plugin, index)
            for route in plugin_routes:
                if not route.is_default:
                    index[route.key] = route
            routes.extend(plugin_routes)
            failures.extend(plugin_failures)
        return routes, failures

    async def compile_plugin(
        self,
        plugin: InstalledPlugin,
        index: Mapping[RouteKey, Route],
    ) -> tuple[list[Route], list[RouteFailure]]:
        """Compile every service version of one plugin, plus the aliases."""
        routes: list[Route] = []
        failures: list[RouteFailure] = []
        plugin_def = MappingProxyType(plugin.record.export_def())

        for group in plugin.groups():
            compiled: dict[str, Route] = {}
            for version, service in group.versions.items():
                try:
                    if service.kind is ServiceKind.IMPORT:
                        route = self._mount_import(plugin, group.name, service, index)
                    else:
                        route = await self._compile_service(plugin, plugin_def, group.name, service)
                except PluginError as e:
                    logger.warning(f"Could not compile route: {e}")
                    failures.append(RouteFailure.from_error(e))
                    continue
                except Exception as e:
                    error = PluginError(plugin.identifier, ReasonCode.ROUTE_COMPILATION_FAILURE,
                                        f"{type(e).__name__}: {e}", group.name, version)
                    logger.warning(f"Could not compile route: {error}")
                    failures.append(RouteFailure.from_error(error))
                    continue
                compiled[version] = route
                routes.append(route)
                logger.info(f"{plugin.identifier}: installed route {route.url_path}")

            current = compiled.get(group.highest_version)
            if current is not None:
                routes.append(replace(
                    current,
                    url_path=self.path(plugin.identifier, group.name, CURRENT_VERSION),
                    is_default=True,
                ))
            elif compiled:
                logger.warning(
                    f"{plugin.identifier}::{group.name}: highest version {group.highest_version} "
                    f"has no route, no {CURRENT_VERSION} alias"
                )
        return routes, failures

    def _mount_import(
        self,
        plugin: InstalledPlugin,
        local_name: str,
        service: ServiceRecord,
        index: Mapping[RouteKey, Route],
    ) -> Route:
        source_key = (service.source_plugin, service.source_name, service.version)
        source = index.get(source_key)
        if source is None:
            raise PluginError(
                plugin.identifier,
                ReasonCode.ROUTE_COMPILATION_FAILURE,
                f"imported route {service.source_plugin}::{service.source_name}@{service.version} not found",
                local_name,
                service.version,
            )
        return replace(
            source,
            url_path=self.path(plugin.identifier, local_name, service.version),
            is_default=False,
            plugin_id=plugin.identifier,
            service_name=local_name,
            kind=ServiceKind.IMPORT,
            source=source.source or source_key,
        )

    def _handles(self, plugin: InstalledPlugin, service: ServiceRecord) -> Mapping[str, ServiceHandle]:
        pinned = service.version_requirements or {}
        handles = {}
        for group in plugin.groups():
            version = pinned.get(group.name)
            if version not in group.versions:
                version = group.highest_version
            handles[group.name] = ServiceHandle(
                name=group.name,
                version=version,
                url_path=self.path(plugin.identifier, group.name, version),
                base_url=self.loopback_url,
                transport=self.transport,
            )
        return MappingProxyType(handles)

    async def _compile_service(
        self,
        plugin: InstalledPlugin,
        plugin_def: Mapping[str, Any],
        name: str,
        service: ServiceRecord,
    ) -> Route:
        service_def = MappingProxyType(describe(service))
        handler = await self._terminal_handler(plugin, plugin_def, service_def, service)

        auth = _allow_all
        if self.auth_provider is not None:
            auth = self.auth_provider.middleware_for(service.authorization)

        chain = [
            MiddlewareStep("pluginDefinition", _inject("plugin_def", plugin_def)),
            MiddlewareStep("serviceHandles", _inject("services", self._handles(plugin, service))),
            MiddlewareStep("serviceDefinition", _inject("service_def", service_def)),
            MiddlewareStep("auth", auth),
            MiddlewareStep("logging", _log_request(plugin.identifier, name, service.version)),
        ]
        if not service.http_caching:
            chain.append(MiddlewareStep("noCache", _no_cache))

        return Route(
            url_path=self.path(plugin.identifier, name, service.version),
            is_default=False,
            middleware_chain=tuple(chain),
            handler_ref=handler,
            plugin_id=plugin.identifier,
            service_name=name,
            version=service.version,
            kind=service.kind,
        )

    def _fail(self, plugin: InstalledPlugin, service: ServiceRecord, detail: str) -> PluginError:
        return PluginError(plugin.identifier, ReasonCode.ROUTE_COMPILATION_FAILURE,
                           detail, service.name, service.version)

    async def _terminal_handler(
        self,
        plugin: InstalledPlugin,
        plugin_def: Mapping[str, Any],
        service_def: Mapping[str, Any],
        service: ServiceRecord,
    ) -> Handler:
        if service.kind is ServiceKind.EXTERNAL:
            if not service.host or not service.port:
                raise self._fail(plugin, service, "external service has no host/port")
            if self.proxy_factory is None:
                raise self._fail(plugin, service, "no proxy factory configured")
            return self.proxy_factory.make_proxy_handler(
                service.host, int(service.port), service.url_prefix, service.is_https
            )

        match service.dispatch:
            case DispatchKind.AGENT_PROXY:
                if self.agent is None or self.proxy_factory is None:
                    raise self._fail(plugin, service, "no agent configured for service proxy")
                prefix = service.url_prefix or self.path(plugin.identifier, service.name, "").rstrip("/")
                return self.proxy_factory.make_proxy_handler(
                    self.agent.host, self.agent.port, prefix, self.agent.is_https
                )
            case DispatchKind.ROUTER | DispatchKind.LEGACY:
                if self.module_loader is None:
                    raise self._fail(plugin, service, "no module loader configured")
                module = await _maybe_await(
                    self.module_loader.load_module(plugin.record.location, service.filename)
                )
                context = ServiceContext(
                    plugin_def=plugin_def,
                    service_def=service_def,
                    configuration=MappingProxyType(self._configuration(plugin, service)),
                    logger=logging.getLogger(f"plexus.services.{plugin.identifier}.{service.name}"),
                )
                if service.dispatch is DispatchKind.LEGACY:
                    fn = getattr(module, LEGACY_HANDLER, None)
                    if not callable(fn):
                        raise self._fail(plugin, service, f"{service.filename} has no {LEGACY_HANDLER}()")
                    return _as_handler(fn, context)
                factory_name = service.router_factory or DEFAULT_ROUTER_FACTORY
                factory = getattr(module, factory_name, None)
                if not callable(factory):
                    raise self._fail(plugin, service, f"{service.filename} has no {factory_name}()")
                router = await _maybe_await(factory(context))
                if not callable(router):
                    raise self._fail(plugin, service, f"{factory_name}() did not return a handler")
                return _as_handler(router)
            case _:
                raise self._fail(plugin, service, f"unknown service type {service.service_type}")

    def _configuration(self, plugin: InstalledPlugin, service: ServiceRecord) -> dict[str, Any]:
        if self.config_source is None:
            return {}
        return dict(self.config_source.get_service_configuration(plugin.identifier, service.name) or {})
