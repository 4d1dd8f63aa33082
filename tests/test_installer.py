"""Tests for batch and dynamic install passes."""

import pytest

from plexus.plugins.errors import DynamicInstallError, ReasonCode

from builders import make_import, make_plugin, make_router


def _reasons(result):
    return {r.plugin_id: r.reason for r in result.rejected}


# ===========================================================================
# Batch installs
# ===========================================================================

class TestInstallPlugins:
    @pytest.mark.asyncio
    async def test_import_resolves_to_exporter_route(self, installer, registry):
        result = await installer.install_plugins([
            make_plugin("b", make_import("a", "foo", "^1.0.0")),
            make_plugin("a", make_router("foo", "1.0.0")),
        ])
        assert result.order == ["a", "b"]
        table = registry.table
        imported = table.routes["/plexus/plugins/b/services/foo/1.0.0"]
        assert imported.handler_ref is table.routes["/plexus/plugins/a/services/foo/1.0.0"].handler_ref

    @pytest.mark.asyncio
    async def test_missing_plugin_does_not_block_unrelated(self, installer, registry):
        result = await installer.install_plugins([
            make_plugin("c", make_import("z", "bar")),
            make_plugin("d", make_router("baz")),
        ])
        assert _reasons(result) == {"c": ReasonCode.MISSING_PLUGIN}
        assert result.order == ["d"]
        assert registry.get_routes("c") == []
        assert registry.get_rejected()[0].plugin_id == "c"

    @pytest.mark.asyncio
    async def test_current_alias_targets_highest(self, installer, registry):
        await installer.install_plugins([
            make_plugin("e", make_router("svc", "1.2.3"), make_router("svc", "4.5.6")),
        ])
        table = registry.table
        group = registry.get_plugin("e").data_services_grouped["svc"]
        assert group.highest_version == "4.5.6"
        current = table.routes["/plexus/plugins/e/services/svc/_current"]
        assert current.handler_ref is table.routes["/plexus/plugins/e/services/svc/4.5.6"].handler_ref
        assert table.routes["/plexus/plugins/e/services/svc/1.2.3"].version == "1.2.3"

    @pytest.mark.asyncio
    async def test_requirement_pinned(self, installer, registry):
        await installer.install_plugins([
            make_plugin(
                "f",
                make_router("foo", "1.2.3"),
                make_router("foo", "4.5.6"),
                make_router("main", versionRequirements={"foo": "^4.0.0"}),
            ),
        ])
        main = registry.get_plugin("f").data_services_grouped["main"].current
        assert main.version_requirements == {"foo": "4.5.6"}

    @pytest.mark.asyncio
    async def test_requirement_unsatisfiable(self, installer, registry):
        result = await installer.install_plugins([
            make_plugin(
                "f",
                make_router("foo", "1.2.3"),
                make_router("main", versionRequirements={"foo": "^4.0.0"}),
            ),
        ])
        assert _reasons(result) == {"f": ReasonCode.UNSATISFIABLE_VERSION_RANGE}
        assert not registry.is_installed("f")

    @pytest.mark.asyncio
    async def test_cycle_publishes_nothing_for_members(self, installer, registry):
        result = await installer.install_plugins([
            make_plugin("a", make_router("x"), make_import("b", "y")),
            make_plugin("b", make_router("y"), make_import("a", "x")),
        ])
        assert _reasons(result) == {"a": ReasonCode.CYCLIC_DEPENDENCY, "b": ReasonCode.CYCLIC_DEPENDENCY}
        assert len(registry.table) == 0

    @pytest.mark.asyncio
    async def test_malformed_definitions_rejected_early(self, installer):
        result = await installer.install_plugins([
            make_plugin("ok"),
            make_plugin("odd", plugin_type="gadget"),
            {"identifier": "broken"},
        ])
        assert result.order == ["ok"]
        assert _reasons(result) == {
            "odd": ReasonCode.UNKNOWN_PLUGIN_TYPE,
            "broken": ReasonCode.MALFORMED_DEFINITION,
        }

    @pytest.mark.asyncio
    async def test_second_pass_builds_on_first(self, installer, registry):
        await installer.install_plugins([make_plugin("a", make_router("foo"))])
        result = await installer.install_plugins([
            make_plugin("b", make_import("a", "foo")),
            make_plugin("a", make_router("other")),
        ])
        assert result.order == ["b"]
        assert _reasons(result) == {"a": ReasonCode.DUPLICATE_IDENTIFIER}
        assert registry.is_installed("a") and registry.is_installed("b")
        assert "/plexus/plugins/a/services/foo/1.0.0" in registry.table.routes

    @pytest.mark.asyncio
    async def test_duplicate_of_installed_stays_rejected(self, installer, registry):
        await installer.install_plugins([make_plugin("a", make_router("foo"))])
        await installer.install_plugins([make_plugin("a", make_router("other"))])

        assert registry.is_installed("a")
        assert [(r.plugin_id, r.reason) for r in registry.get_rejected()] == [
            ("a", ReasonCode.DUPLICATE_IDENTIFIER),
        ]
        assert registry.get_statistics()["rejected_plugins"] == 1

    @pytest.mark.asyncio
    async def test_non_object_service_entry_rejects_only_itself(self, installer, registry):
        result = await installer.install_plugins([make_plugin("a", make_router("ok"), "garbage")])

        assert result.order == ["a"]
        assert result.rejected == []
        assert "/plexus/plugins/a/services/ok/1.0.0" in registry.table.routes
        [rejection] = registry.get_service_rejections()
        assert rejection.plugin_id == "a"
        assert rejection.reason is ReasonCode.MALFORMED_DEFINITION

    @pytest.mark.asyncio
    async def test_route_failures_recorded(self, installer, registry, module_loader):
        module_loader.missing.add("broken.py")
        result = await installer.install_plugins([make_plugin("a", make_router("broken"), make_router("ok"))])
        assert result.order == ["a"]
        assert [f.service_name for f in registry.get_route_failures()] == ["broken"]
        assert "/plexus/plugins/a/services/ok/1.0.0" in registry.table.routes


class TestNotifications:
    @pytest.mark.asyncio
    async def test_one_event_per_installed_plugin(self, installer, registry):
        result = await installer.install_plugins([
            make_plugin("a", make_router("x")),
            make_plugin("c", make_import("z", "bar")),
        ])
        assert [(e.event_type, e.plugin_id) for e in result.notifications] == [("plugin_installed", "a")]
        assert result.notifications[0].details["routes"] == 2

        drained = registry.drain_notifications()
        assert [e.plugin_id for e in drained] == ["a"]
        assert registry.drain_notifications() == []

    @pytest.mark.asyncio
    async def test_listeners_called(self, installer, registry):
        seen = []
        registry.add_event_listener(lambda event: seen.append(event.plugin_id))
        await installer.install_plugins([make_plugin("a")])
        assert seen == ["a"]

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_break_publish(self, installer, registry):
        def explode(event):
            raise RuntimeError("boom")

        registry.add_event_listener(explode)
        await installer.install_plugins([make_plugin("a")])
        assert registry.is_installed("a")

    @pytest.mark.asyncio
    async def test_removed_listener_not_called(self, installer, registry):
        seen = []

        def listener(event):
            seen.append(event.plugin_id)

        registry.add_event_listener(listener)
        await installer.install_plugins([make_plugin("a")])
        registry.remove_event_listener(listener)
        registry.remove_event_listener(listener)
        await installer.install_plugins([make_plugin("b")])
        assert seen == ["a"]

    @pytest.mark.asyncio
    async def test_statistics(self, installer, registry):
        await installer.install_plugins([
            make_plugin("a", make_router("x")),
            make_plugin("c", make_import("z", "bar")),
        ])
        stats = registry.get_statistics()
        assert stats["total_plugins"] == 1
        assert stats["total_routes"] == 2
        assert stats["default_routes"] == 1
        assert stats["rejected_plugins"] == 1
        assert stats["plugins_by_type"] == {"application": 1}


# ===========================================================================
# Dynamic installs
# ===========================================================================

class TestAddDynamicPlugin:
    @pytest.mark.asyncio
    async def test_adds_routes(self, installer, registry):
        await installer.install_plugins([make_plugin("a", make_router("foo", "1.3.0"))])
        before = registry.table

        routes = await installer.add_dynamic_plugin(make_plugin("b", make_import("a", "foo", "^1.0.0")))

        assert {r.url_path for r in routes} == {
            "/plexus/plugins/b/services/foo/1.3.0",
            "/plexus/plugins/b/services/foo/_current",
        }
        assert registry.table is not before
        assert set(before.routes) < set(registry.table.routes)
        assert registry.drain_notifications()[-1].event_type == "plugin_added"

    @pytest.mark.asyncio
    async def test_conflict_leaves_table_unchanged(self, installer, registry):
        await installer.install_plugins([make_plugin("a", make_router("foo"))])
        before = registry.table
        registry.drain_notifications()

        with pytest.raises(DynamicInstallError) as exc_info:
            await installer.add_dynamic_plugin(make_plugin("a", make_router("bar")))

        assert exc_info.value.reason is ReasonCode.DYNAMIC_INSTALL_CONFLICT
        assert registry.table is before
        assert registry.drain_notifications() == []

    @pytest.mark.asyncio
    async def test_missing_exporter(self, installer, registry):
        before = registry.table
        with pytest.raises(DynamicInstallError) as exc_info:
            await installer.add_dynamic_plugin(make_plugin("b", make_import("a", "foo")))
        assert exc_info.value.reason is ReasonCode.MISSING_PLUGIN
        assert registry.table is before

    @pytest.mark.asyncio
    async def test_bad_service_fails_whole_plugin(self, installer, registry):
        with pytest.raises(DynamicInstallError) as exc_info:
            await installer.add_dynamic_plugin(make_plugin("b", make_router("ok"), make_router("bad", "1")))
        assert exc_info.value.reason is ReasonCode.INVALID_VERSION_STRING
        assert not registry.is_installed("b")

    @pytest.mark.asyncio
    async def test_route_failure_fails_whole_plugin(self, installer, registry, module_loader):
        module_loader.missing.add("broken.py")
        with pytest.raises(DynamicInstallError) as exc_info:
            await installer.add_dynamic_plugin(make_plugin("b", make_router("ok"), make_router("broken")))
        assert exc_info.value.reason is ReasonCode.ROUTE_COMPILATION_FAILURE
        assert len(registry.table) == 0

    @pytest.mark.asyncio
    async def test_rejected_exporter_reports_required_failed(self, installer):
        await installer.install_plugins([make_plugin("a", make_import("ghost", "x"), make_router("foo"))])
        with pytest.raises(DynamicInstallError) as exc_info:
            await installer.add_dynamic_plugin(make_plugin("b", make_import("a", "foo")))
        assert exc_info.value.reason is ReasonCode.REQUIRED_PLUGIN_FAILED

    @pytest.mark.asyncio
    async def test_does_not_unblock_earlier_rejects(self, installer, registry):
        result = await installer.install_plugins([make_plugin("b", make_import("a", "foo"))])
        assert _reasons(result) == {"b": ReasonCode.MISSING_PLUGIN}

        await installer.add_dynamic_plugin(make_plugin("a", make_router("foo")))

        assert registry.is_installed("a")
        assert not registry.is_installed("b")
        assert [r.plugin_id for r in registry.get_rejected()] == ["b"]
