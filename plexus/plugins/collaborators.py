"""
Collaborator interfaces consumed by the plugin engine.

The engine itself is pure graph and version logic. Everything that touches
the outside world goes through one of these four interfaces, implemented
elsewhere in the package (``plexus.plugins.loader``, ``plexus.api.proxy``,
``plexus.api.auth``, ``plexus.config.service_config``) or by test doubles.

Each interface uses Python's Protocol for structural subtyping, so any
object with matching methods can be passed in.

Request flow types:
    Handler: ``async (request) -> response``, the terminal step of a route.
    Middleware: ``async (request, call_next) -> response``, the same shape
        as Starlette's BaseHTTPMiddleware.dispatch.
"""

from types import ModuleType
from typing import Any, Awaitable, Callable, Protocol, runtime_checkable

from starlette.requests import Request
from starlette.responses import Response

Handler = Callable[[Request], Awaitable[Response]]
CallNext = Callable[[Request], Awaitable[Response]]
Middleware = Callable[[Request, CallNext], Awaitable[Response]]


@runtime_checkable
class ModuleLoader(Protocol):
    """Loads the implementation module of router / legacy services.

    ``load_module`` may be a plain or a coroutine function; the engine
    awaits the result when needed.
    """

    def load_module(self, location: str, filename: str) -> ModuleType | Awaitable[ModuleType]:
        """Load ``<location>/lib/<filename>``.

        Returns:
            The loaded module.
        """
        ...


@runtime_checkable
class ProxyFactory(Protocol):
    """Builds reverse-proxy handlers for external and agent services."""

    def make_proxy_handler(
        self,
        host: str,
        port: int,
        url_prefix: str | None,
        is_https: bool,
    ) -> Handler:
        """Return a handler forwarding requests to the upstream."""
        ...


@runtime_checkable
class AuthProvider(Protocol):
    """Supplies the authentication/authorization step of a route."""

    def middleware_for(self, auth_config: dict[str, Any] | None) -> Middleware:
        """Return the auth middleware for a service's own auth config.

        Absent configuration falls back to the default handler.
        """
        ...


@runtime_checkable
class ConfigurationSource(Protocol):
    """Read-only view over per-service configuration."""

    def get_service_configuration(self, plugin_id: str, service_name: str | None) -> dict[str, Any]:
        """Configuration for one service, keyed by file name.

        With ``service_name=None`` the plugin-level configuration is returned.
        """
        ...
