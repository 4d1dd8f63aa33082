"""
Plexus CLI - Plugin Commands

Offline inspection of a plugins directory: what would be loaded, in which
order it would install, what would be rejected and which routes the
server would publish.

Commands:
    list     - List plugin definitions found in a directory
    resolve  - Show install order and rejections
    routes   - Show the compiled routing table
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Optional

import typer

from plexus.api.proxy import HttpxProxyFactory
from plexus.cli import console, plugin_app
from plexus.cli.output import print_error, print_json, print_success, print_table, print_warning
from plexus.config.service_config import FileConfigurationSource
from plexus.plugins.installer import PluginInstaller
from plexus.plugins.loader import DefinitionLoader, DefinitionLoadError, PythonModuleLoader
from plexus.plugins.plugin import ResolutionResult
from plexus.plugins.registry import PluginRegistry
from plexus.plugins.routing import RouteCompiler

PLUGINS_DIR_ARGUMENT = typer.Argument(
    ...,
    help="Directory of plugin pointer files.",
    exists=True,
    file_okay=False,
    dir_okay=True,
)

FORMAT_OPTION = typer.Option(
    "table",
    "--format",
    "-f",
    help="Output format: table, json.",
)


def _load(plugins_dir: Path) -> tuple[list[dict], list[DefinitionLoadError]]:
    definitions, errors = DefinitionLoader(plugins_dir).load()
    return definitions, errors


def _report_load_errors(errors: list[DefinitionLoadError]) -> None:
    for error in errors:
        print_warning(str(error))


def _install(
    plugins_dir: Path,
    product_code: str,
    instance_dir: Optional[Path],
) -> tuple[PluginInstaller, ResolutionResult, list[DefinitionLoadError]]:
    definitions, errors = _load(plugins_dir)
    config_source = FileConfigurationSource(instance_dir) if instance_dir else None
    compiler = RouteCompiler(
        product_code,
        module_loader=PythonModuleLoader(),
        proxy_factory=HttpxProxyFactory(),
        config_source=config_source,
    )
    installer = PluginInstaller(PluginRegistry(), compiler, config_source=config_source)
    result = asyncio.run(installer.install_plugins(definitions))
    return installer, result, errors


@plugin_app.command("list")
def list_plugins(
    plugins_dir: Path = PLUGINS_DIR_ARGUMENT,
    format: str = FORMAT_OPTION,
) -> None:
    """
    List plugin definitions.

    Reads every pointer file and its pluginDefinition.json without
    resolving dependencies.
    """
    definitions, errors = _load(plugins_dir)

    if format == "json":
        print_json(highlight=False, data={
            "plugins": [
                {
                    "identifier": d.get("identifier"),
                    "pluginType": d.get("pluginType"),
                    "pluginVersion": d.get("pluginVersion"),
                    "location": d.get("location"),
                    "dataServices": len(d.get("dataServices") or []),
                }
                for d in definitions
            ],
            "errors": [e.to_dict() for e in errors],
        })
        return

    print_table(
        "Plugin Definitions",
        ["Identifier", "Type", "Version", "Services", "Location"],
        [
            [
                str(d.get("identifier")),
                str(d.get("pluginType")),
                str(d.get("pluginVersion")),
                str(len(d.get("dataServices") or [])),
                str(d.get("location")),
            ]
            for d in definitions
        ],
        styles=["cyan"],
    )
    _report_load_errors(errors)
    console.print()
    console.print(f"[dim]Total: {len(definitions)} plugins[/dim]")


@plugin_app.command("resolve")
def resolve_plugins(
    plugins_dir: Path = PLUGINS_DIR_ARGUMENT,
    format: str = FORMAT_OPTION,
    product_code: str = typer.Option("plexus", "--product-code", help="First URL segment of routes."),
    instance_dir: Optional[Path] = typer.Option(
        None,
        "--instance-dir",
        help="Service configuration root.",
    ),
    strict: bool = typer.Option(
        False,
        "--strict",
        help="Exit with status 1 if anything is rejected.",
    ),
) -> None:
    """
    Resolve a plugins directory.

    Shows the order plugins would install in and every plugin, service
    and route that would be rejected.
    """
    _, result, errors = _install(plugins_dir, product_code, instance_dir)
    problems = bool(errors or result.rejected or result.service_rejections or result.route_failures)

    if format == "json":
        data = result.to_dict()
        data["loadErrors"] = [e.to_dict() for e in errors]
        print_json(data, highlight=False)
    else:
        print_table(
            "Install Order",
            ["#", "Identifier", "Type", "Version", "Imports"],
            [
                [
                    str(i + 1),
                    p.identifier,
                    p.plugin_type.value,
                    p.record.plugin_version,
                    ", ".join(
                        f"{s.local_name} <- {s.source_plugin}:{s.source_name}@{s.version}"
                        for g in p.imports_grouped.values() for s in g.versions.values()
                    ),
                ]
                for i, p in enumerate(result.installable)
            ],
            styles=[None, "cyan"],
        )
        rejections = [
            [r.plugin_id, r.service_name or "", r.reason.value, r.detail]
            for r in [*result.rejected, *result.service_rejections, *result.route_failures]
        ]
        if rejections:
            print_table("Rejected", ["Plugin", "Service", "Reason", "Detail"], rejections,
                        styles=["cyan", None, "red"])
        _report_load_errors(errors)
        if not problems:
            print_success(f"All {len(result.installable)} plugins resolved")

    if strict and problems:
        raise typer.Exit(1)


@plugin_app.command("routes")
def list_routes(
    plugins_dir: Path = PLUGINS_DIR_ARGUMENT,
    format: str = FORMAT_OPTION,
    product_code: str = typer.Option("plexus", "--product-code", help="First URL segment of routes."),
    instance_dir: Optional[Path] = typer.Option(
        None,
        "--instance-dir",
        help="Service configuration root.",
    ),
    plugin: Optional[str] = typer.Option(
        None,
        "--plugin",
        "-p",
        help="Only routes of this plugin.",
    ),
) -> None:
    """
    Show the routing table.

    Compiles the plugins directory and lists every route, including
    the _current aliases.
    """
    installer, _, errors = _install(plugins_dir, product_code, instance_dir)
    table = installer.registry.table
    routes = sorted(table.routes.values(), key=lambda r: r.url_path)
    if plugin:
        if plugin not in table.plugins:
            print_error(f"Plugin {plugin} is not installed", hint="Run 'plexus plugin resolve' to see why")
            raise typer.Exit(1)
        routes = [r for r in routes if r.plugin_id == plugin]

    if format == "json":
        print_json({"routes": [r.to_dict() for r in routes]}, highlight=False)
        return

    print_table(
        "Routes",
        ["Path", "Kind", "Middleware", "Source"],
        [
            [
                r.url_path,
                r.kind.value + (" (current)" if r.is_default else ""),
                " > ".join(r.step_names),
                "/".join(r.source) if r.source else "",
            ]
            for r in routes
        ],
        styles=["cyan"],
    )
    _report_load_errors(errors)
    console.print()
    console.print(f"[dim]Total: {len(routes)} routes[/dim]")
