"""Tests for plexus.config."""

import json

import pytest
from pydantic import ValidationError

from plexus.config import FileConfigurationSource, Settings
from plexus.config.settings import DEV_SECRET_KEY


class TestSettings:
    """Test the Settings pydantic-settings class."""

    def _make(self, **kwargs):
        """Create a Settings instance without reading a .env file."""
        return Settings(_env_file=None, **kwargs)

    # -- defaults --

    def test_defaults(self):
        s = self._make()
        assert s.PRODUCT_CODE == "plexus"
        assert s.PLUGINS_DIR == "./plugins"
        assert s.AGENT_HOST == ""
        assert s.PROXY_TIMEOUT == 30.0
        assert s.ALLOW_INVALID_TLS_PROXY is False
        assert s.SECRET_KEY == DEV_SECRET_KEY
        assert s.auth_enabled is False
        assert "http://localhost:3000" in s.CORS_ORIGINS

    # -- PRODUCT_CODE --

    def test_product_code_slashes_stripped(self):
        assert self._make(PRODUCT_CODE="/zlux/").PRODUCT_CODE == "zlux"

    @pytest.mark.parametrize("value", ["", "/", "a/b"])
    def test_product_code_must_be_one_segment(self, value):
        with pytest.raises(ValidationError):
            self._make(PRODUCT_CODE=value)

    # -- LOG_LEVEL --

    def test_log_level_uppercased(self):
        assert self._make(LOG_LEVEL=" debug ").LOG_LEVEL == "DEBUG"

    # -- agent --

    def test_agent_host_needs_port(self):
        with pytest.raises(ValidationError):
            self._make(AGENT_HOST="agent.local")

    def test_agent(self):
        s = self._make(AGENT_HOST="agent.local", AGENT_PORT=7000)
        assert (s.AGENT_HOST, s.AGENT_PORT) == ("agent.local", 7000)

    # -- env --

    def test_reads_environment(self, monkeypatch):
        monkeypatch.setenv("PRODUCT_CODE", "zlux")
        monkeypatch.setenv("SECRET_KEY", "s3cret")
        s = self._make()
        assert s.PRODUCT_CODE == "zlux"
        assert s.auth_enabled is True


class TestFileConfigurationSource:
    def _write(self, path, data):
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(data), encoding="utf-8")

    def test_service_level(self, tmp_path):
        self._write(tmp_path / "plugins/org.a/services/ext/remote.json", {"host": "h", "port": 1})
        source = FileConfigurationSource(tmp_path)
        assert source.get_service_configuration("org.a", "ext") == {"remote.json": {"host": "h", "port": 1}}

    def test_plugin_level(self, tmp_path):
        self._write(tmp_path / "plugins/org.a/remote.json", {"host": "h"})
        self._write(tmp_path / "plugins/org.a/services/ext/other.json", {"x": 1})
        source = FileConfigurationSource(tmp_path)
        assert source.get_service_configuration("org.a", None) == {"remote.json": {"host": "h"}}

    def test_missing_directory(self, tmp_path):
        assert FileConfigurationSource(tmp_path).get_service_configuration("org.a", "ext") == {}

    def test_layered_roots_deep_merge(self, tmp_path):
        product, instance = tmp_path / "product", tmp_path / "instance"
        self._write(product / "plugins/org.a/services/ext/remote.json",
                    {"host": "product", "port": 1, "tls": {"verify": True, "ca": "a.pem"}})
        self._write(instance / "plugins/org.a/services/ext/remote.json",
                    {"host": "instance", "tls": {"verify": False}})
        source = FileConfigurationSource([product, instance])
        assert source.get_service_configuration("org.a", "ext")["remote.json"] == {
            "host": "instance",
            "port": 1,
            "tls": {"verify": False, "ca": "a.pem"},
        }

    def test_unreadable_file_skipped(self, tmp_path):
        directory = tmp_path / "plugins/org.a/services/ext"
        directory.mkdir(parents=True)
        (directory / "bad.json").write_text("{not json", encoding="utf-8")
        self._write(directory / "good.json", {"ok": True})
        source = FileConfigurationSource(tmp_path)
        assert source.get_service_configuration("org.a", "ext") == {"good.json": {"ok": True}}
