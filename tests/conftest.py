"""Shared fixtures: collaborator doubles wired into a compiler and installer."""

from __future__ import annotations

import pytest

from plexus.plugins.installer import PluginInstaller
from plexus.plugins.registry import PluginRegistry
from plexus.plugins.routing import AgentTarget, RouteCompiler

from builders import FakeModuleLoader, FakeProxyFactory


@pytest.fixture
def module_loader() -> FakeModuleLoader:
    return FakeModuleLoader()


@pytest.fixture
def proxy_factory() -> FakeProxyFactory:
    return FakeProxyFactory()


@pytest.fixture
def compiler(module_loader, proxy_factory) -> RouteCompiler:
    return RouteCompiler(
        "plexus",
        module_loader=module_loader,
        proxy_factory=proxy_factory,
        agent=AgentTarget("agent.local", 7000),
    )


@pytest.fixture
def registry() -> PluginRegistry:
    return PluginRegistry()


@pytest.fixture
def installer(registry, compiler) -> PluginInstaller:
    return PluginInstaller(registry, compiler)
