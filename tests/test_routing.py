"""Tests for route compilation and the routing table."""

import json

import pytest
from starlette.requests import Request

from plexus.plugins.definition import parse_plugin_definition
from plexus.plugins.depgraph import DependencyResolver
from plexus.plugins.errors import ReasonCode
from plexus.plugins.plugin import prepare_plugin
from plexus.plugins.routing import (
    CURRENT_VERSION,
    NO_CACHE_HEADERS,
    RouteCompiler,
    RoutingTable,
    service_path,
)
from plexus.plugins.services import ServiceKind
from plexus.plugins.validation import LocalRequirementValidator

from builders import FakeModuleLoader, make_import, make_plugin, make_router


def _installed(*definitions):
    resolver = DependencyResolver(validators=[LocalRequirementValidator()])
    prepared = [prepare_plugin(parse_plugin_definition(d)) for d in definitions]
    result = resolver.resolve(prepared)
    assert result.rejected == []
    return result.installable


def _request(path: str, method: str = "GET", headers=None) -> Request:
    return Request({
        "type": "http",
        "method": method,
        "path": path,
        "raw_path": path.encode(),
        "root_path": "",
        "scheme": "http",
        "query_string": b"",
        "headers": headers or [],
        "server": ("testserver", 80),
    })


def _body(response) -> dict:
    return json.loads(response.body)


async def _table(compiler, *definitions):
    plugins = _installed(*definitions)
    routes, failures = await compiler.compile(plugins)
    return RoutingTable().extend(plugins, routes), failures


# ===========================================================================
# Paths and aliases
# ===========================================================================

class TestCompile:
    def test_service_path(self):
        assert service_path("zlux", "org.a", "svc", "1.0.0") == "/zlux/plugins/org.a/services/svc/1.0.0"

    def test_product_code_slashes_stripped(self):
        assert RouteCompiler("/zlux/").path("a", "s", "1.0.0") == "/zlux/plugins/a/services/s/1.0.0"

    @pytest.mark.asyncio
    async def test_every_version_routed_with_current_alias(self, compiler):
        table, failures = await _table(compiler, make_plugin(
            "e", make_router("svc", "1.2.3"), make_router("svc", "4.5.6"),
        ))
        assert failures == []
        assert set(table.routes) == {
            "/plexus/plugins/e/services/svc/1.2.3",
            "/plexus/plugins/e/services/svc/4.5.6",
            "/plexus/plugins/e/services/svc/_current",
        }
        current = table.routes[f"/plexus/plugins/e/services/svc/{CURRENT_VERSION}"]
        assert current.is_default
        assert current.version == "4.5.6"
        assert current.handler_ref is table.routes["/plexus/plugins/e/services/svc/4.5.6"].handler_ref
        assert table.index[("e", "svc", "1.2.3")].version == "1.2.3"

    @pytest.mark.asyncio
    async def test_chain_order(self, compiler):
        table, _ = await _table(compiler, make_plugin("a", make_router("svc")))
        route = table.routes["/plexus/plugins/a/services/svc/1.0.0"]
        assert route.step_names == [
            "pluginDefinition", "serviceHandles", "serviceDefinition", "auth", "logging", "noCache",
        ]

    @pytest.mark.asyncio
    async def test_caching_service_has_no_nocache_step(self, compiler):
        table, _ = await _table(compiler, make_plugin("a", make_router("svc", httpCaching=True)))
        route = table.routes["/plexus/plugins/a/services/svc/1.0.0"]
        assert "noCache" not in route.step_names

    @pytest.mark.asyncio
    async def test_import_reuses_source_route(self, compiler):
        table, failures = await _table(
            compiler,
            make_plugin("a", make_router("foo", "1.0.0")),
            make_plugin("b", make_import("a", "foo", "^1.0.0")),
        )
        assert failures == []
        source = table.routes["/plexus/plugins/a/services/foo/1.0.0"]
        imported = table.routes["/plexus/plugins/b/services/foo/1.0.0"]
        assert imported.handler_ref is source.handler_ref
        assert imported.middleware_chain is source.middleware_chain
        assert imported.kind is ServiceKind.IMPORT
        assert imported.source == ("a", "foo", "1.0.0")
        assert "/plexus/plugins/b/services/foo/_current" in table.routes

    @pytest.mark.asyncio
    async def test_import_with_local_name(self, compiler):
        table, _ = await _table(
            compiler,
            make_plugin("a", make_router("foo")),
            make_plugin("b", make_import("a", "foo", local_name="bar")),
        )
        assert table.routes["/plexus/plugins/b/services/bar/1.0.0"].service_name == "bar"

    @pytest.mark.asyncio
    async def test_missing_import_source_fails_only_that_route(self, compiler):
        _, importer = _installed(
            make_plugin("a", make_router("foo")),
            make_plugin("b", make_router("own"), make_import("a", "foo")),
        )
        routes, failures = await compiler.compile_plugin(importer, {})
        assert [r.url_path for r in routes] == [
            "/plexus/plugins/b/services/own/1.0.0",
            "/plexus/plugins/b/services/own/_current",
        ]
        assert len(failures) == 1
        assert failures[0].reason is ReasonCode.ROUTE_COMPILATION_FAILURE
        assert failures[0].service_name == "foo"

    @pytest.mark.asyncio
    async def test_module_load_failure(self, proxy_factory):
        compiler = RouteCompiler("plexus", FakeModuleLoader(missing={"broken.py"}), proxy_factory)
        table, failures = await _table(compiler, make_plugin(
            "a", make_router("ok"), make_router("broken", "2.0.0"), make_router("broken", "1.0.0", filename="ok.py"),
        ))
        assert [(f.service_name, f.reason) for f in failures] == [
            ("broken", ReasonCode.ROUTE_COMPILATION_FAILURE),
        ]
        assert "/plexus/plugins/a/services/broken/1.0.0" in table.routes
        # highest version failed, so no alias
        assert "/plexus/plugins/a/services/broken/_current" not in table.routes
        assert "/plexus/plugins/a/services/ok/_current" in table.routes

    @pytest.mark.asyncio
    async def test_missing_router_factory(self, compiler):
        _, failures = await _table(compiler, make_plugin("a", make_router("svc", routerFactory="nope")))
        assert "nope" in failures[0].detail

    @pytest.mark.asyncio
    async def test_unknown_service_type_fails(self, compiler):
        _, failures = await _table(compiler, make_plugin(
            "a", {"type": "widget", "name": "w", "version": "1.0.0"},
        ))
        assert "unknown service type" in failures[0].detail

    @pytest.mark.asyncio
    async def test_external_service_proxied(self, compiler, proxy_factory):
        await _table(compiler, make_plugin("a", {
            "type": "external", "name": "ext", "version": "1.0.0",
            "host": "upstream", "port": 9443, "urlPrefix": "/api", "isHttps": True,
        }))
        assert proxy_factory.calls == [("upstream", 9443, "/api", True)]

    @pytest.mark.asyncio
    async def test_external_without_host_fails(self, compiler):
        _, failures = await _table(compiler, make_plugin(
            "a", {"type": "external", "name": "ext", "version": "1.0.0"},
        ))
        assert "host/port" in failures[0].detail

    @pytest.mark.asyncio
    async def test_agent_service_proxied(self, compiler, proxy_factory):
        await _table(compiler, make_plugin("a", {"type": "service", "name": "data", "version": "1.0.0"}))
        assert proxy_factory.calls == [("agent.local", 7000, "/plexus/plugins/a/services/data", False)]

    @pytest.mark.asyncio
    async def test_agent_service_without_agent_fails(self, module_loader, proxy_factory):
        compiler = RouteCompiler("plexus", module_loader, proxy_factory)
        _, failures = await _table(compiler, make_plugin(
            "a", {"type": "service", "name": "data", "version": "1.0.0"},
        ))
        assert failures[0].reason is ReasonCode.ROUTE_COMPILATION_FAILURE


# ===========================================================================
# RoutingTable
# ===========================================================================

class TestRoutingTable:
    @pytest.mark.asyncio
    async def test_match_with_sub_path(self, compiler):
        table, _ = await _table(compiler, make_plugin("a", make_router("svc")))
        route, sub_path = table.match("/plexus/plugins/a/services/svc/1.0.0/items/7")
        assert route.service_name == "svc"
        assert sub_path == "/items/7"
        assert table.match("/plexus/plugins/a/services/svc/_current")[1] == ""

    @pytest.mark.asyncio
    async def test_no_match(self, compiler):
        table, _ = await _table(compiler, make_plugin("a", make_router("svc")))
        assert table.match("/plexus/plugins/a/services/svc/9.9.9") is None
        assert table.match("/plexus/plugins/a") is None

    @pytest.mark.asyncio
    async def test_extend_leaves_original_untouched(self, compiler):
        empty = RoutingTable()
        table, _ = await _table(compiler, make_plugin("a", make_router("svc")))
        assert len(empty) == 0
        assert len(table) == 2
        with pytest.raises(TypeError):
            table.routes["/x"] = None

    @pytest.mark.asyncio
    async def test_routes_for(self, compiler):
        table, _ = await _table(
            compiler,
            make_plugin("a", make_router("svc")),
            make_plugin("b", make_router("other")),
        )
        assert {r.service_name for r in table.routes_for("b")} == {"other"}


# ===========================================================================
# Request handling
# ===========================================================================

class TestHandle:
    @pytest.mark.asyncio
    async def test_router_handler_sees_injected_state(self, compiler):
        table, _ = await _table(compiler, make_plugin(
            "a", make_router("svc", "2.0.0"), make_router("helper"),
        ))
        route, sub_path = table.match("/plexus/plugins/a/services/svc/_current/x")
        request = _request("/plexus/plugins/a/services/svc/_current/x")
        request.state.sub_path = sub_path
        response = await route.handle(request)
        assert _body(response) == {
            "plugin": "a", "service": "svc", "version": "2.0.0", "subPath": "/x", "handles": ["helper", "svc"],
        }
        assert request.state.plugin_def["identifier"] == "a"
        assert request.state.service_def["version"] == "2.0.0"
        for header, value in NO_CACHE_HEADERS.items():
            assert response.headers[header] == value

    @pytest.mark.asyncio
    async def test_handles_follow_pinned_requirements(self, compiler):
        table, _ = await _table(compiler, make_plugin(
            "f",
            make_router("foo", "1.2.3"),
            make_router("foo", "4.5.6"),
            make_router("main", versionRequirements={"foo": "^1.0.0"}),
        ))
        request = _request("/plexus/plugins/f/services/main/1.0.0")
        await table.routes["/plexus/plugins/f/services/main/1.0.0"].handle(request)
        handle = request.state.services["foo"]
        assert handle.version == "1.2.3"
        assert handle.url == "http://127.0.0.1:8000/plexus/plugins/f/services/foo/1.2.3"

    @pytest.mark.asyncio
    async def test_legacy_handler_result_wrapped(self, compiler):
        table, _ = await _table(compiler, make_plugin("a", {
            "type": "nodeService", "name": "old", "version": "1.0.0", "filename": "old.py",
        }))
        response = await table.routes["/plexus/plugins/a/services/old/1.0.0"].handle(
            _request("/plexus/plugins/a/services/old/1.0.0")
        )
        assert _body(response) == {"legacy": "old"}

    @pytest.mark.asyncio
    async def test_imported_route_runs_with_source_context(self, compiler):
        table, _ = await _table(
            compiler,
            make_plugin("a", make_router("foo")),
            make_plugin("b", make_import("a", "foo", local_name="bar")),
        )
        response = await table.routes["/plexus/plugins/b/services/bar/1.0.0"].handle(
            _request("/plexus/plugins/b/services/bar/1.0.0")
        )
        assert _body(response)["plugin"] == "a"
