"""Tests for layered configuration."""

import pytest

from cli_config import ConfigProvider, discover_config_files, env_var_name
from errors import ConfigError


def write_config(directory, body):
    path = directory / ".deplock" / "config.yaml"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(body, encoding="utf-8")
    return path


@pytest.fixture
def layout(tmp_path):
    home = tmp_path / "home"
    project = tmp_path / "project"
    home.mkdir()
    project.mkdir()
    return home, project


class TestPrecedence:
    """Test which layer wins."""

    def test_defaults(self, layout):
        """Test built-in defaults with no files."""
        home, project = layout
        config = ConfigProvider.load(project, env={}, home=home)
        assert config.get_int("net.retry") == 3
        assert config.get_bool("resolver.parallel-majors") is True
        assert config.get_bool("net.offline") is False

    def test_home_then_project(self, layout):
        """Test that the project file overrides the home file."""
        home, project = layout
        write_config(home, "net:\n  retry: 5\n  timeout: 7\n")
        write_config(project, "net:\n  retry: 2\n")
        config = ConfigProvider.load(project, env={}, home=home)
        assert config.get_int("net.retry") == 2
        assert config.get_int("net.timeout") == 7

    def test_env_over_files(self, layout):
        """Test that environment variables override files."""
        home, project = layout
        write_config(project, "net:\n  offline: false\n")
        config = ConfigProvider.load(project, env={"DEPLOCK_NET_OFFLINE": "yes"}, home=home)
        assert config.get_bool("net.offline") is True

    def test_cli_over_env(self, layout):
        """Test that --config values win over everything."""
        home, project = layout
        config = ConfigProvider.load(
            project,
            cli_overrides=["net.max-concurrency=2"],
            env={"DEPLOCK_NET_MAX_CONCURRENCY": "16"},
            home=home,
        )
        assert config.get_int("net.max-concurrency") == 2

    def test_cli_config_file(self, layout):
        """Test --config naming a file relative to the working directory."""
        home, project = layout
        (project / "extra.yaml").write_text("registry:\n  url: https://index.test/\n", encoding="utf-8")
        config = ConfigProvider.load(project, cli_overrides=["extra.yaml"], env={}, home=home)
        assert config.get_str("registry.url") == "https://index.test/"

    def test_discovery_order(self, layout):
        """Test that files are listed lowest precedence first."""
        home, project = layout
        nested = project / "sub"
        nested.mkdir()
        files = [write_config(home, "{}\n"), write_config(project, "{}\n"), write_config(nested, "{}\n")]
        assert discover_config_files(nested, home) == files


class TestValues:
    """Test typed accessors and errors."""

    def test_env_var_name(self):
        """Test dotted keys map to environment names."""
        assert env_var_name("net.max-concurrency") == "DEPLOCK_NET_MAX_CONCURRENCY"

    def test_bad_bool(self):
        """Test a value that is not a boolean."""
        with pytest.raises(ConfigError):
            ConfigProvider({"net.offline": "maybe"}).get_bool("net.offline")

    def test_bad_int(self):
        """Test a value that is not an integer."""
        with pytest.raises(ConfigError):
            ConfigProvider({"net.retry": "lots"}).get_int("net.retry")

    def test_bad_yaml(self, layout):
        """Test a config file that is not YAML."""
        home, project = layout
        write_config(project, "net: [unclosed\n")
        with pytest.raises(ConfigError):
            ConfigProvider.load(project, env={}, home=home)

    def test_non_mapping_file(self, layout):
        """Test a config file holding a list."""
        home, project = layout
        write_config(project, "- a\n- b\n")
        with pytest.raises(ConfigError):
            ConfigProvider.load(project, env={}, home=home)

    def test_bad_override(self, layout):
        """Test an override without a key."""
        home, project = layout
        with pytest.raises(ConfigError):
            ConfigProvider.load(project, cli_overrides=["=1"], env={}, home=home)

    def test_cache_dir_expands_user(self, monkeypatch, tmp_path):
        """Test that ~ in cache.dir is expanded."""
        monkeypatch.setenv("HOME", str(tmp_path))
        assert ConfigProvider({"cache.dir": "~/cache"}).cache_dir() == tmp_path / "cache"
