"""Tests for the configuration module."""

from __future__ import annotations

import logging
import sys
from pathlib import Path

import pytest

from agentdeck.config import (
    Config,
    deep_merge,
    get_config,
    load_config,
    merge_configs,
    on_config_reload,
    reload_config,
    reset_config,
)
from agentdeck.config.paths import (
    get_config_paths,
    get_project_config_path,
    get_system_config_path,
    get_user_config_path,
)
from agentdeck.config.schema import DEFAULT_COMPRESS_THRESHOLD


@pytest.fixture
def isolated_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point the user config at an empty directory and clear overrides."""
    user_dir = tmp_path / "xdg"
    user_dir.mkdir()
    monkeypatch.setattr(sys, "platform", "linux")
    monkeypatch.setenv("XDG_CONFIG_HOME", str(user_dir))
    for name in ("AGENTDECK_LOG", "AGENTDECK_PERMISSION_MODE", "AGENTDECK_COMPRESS_THRESHOLD"):
        monkeypatch.delenv(name, raising=False)
    return user_dir


@pytest.fixture
def project_dir(tmp_path: Path) -> Path:
    config_dir = tmp_path / "project" / ".agentdeck"
    config_dir.mkdir(parents=True)
    return config_dir


class TestDeepMerge:
    """Test the deep merge algorithm."""

    def test_simple_override(self) -> None:
        base = {"a": 1, "b": 2}
        override = {"b": 3, "c": 4}
        assert deep_merge(base, override) == {"a": 1, "b": 3, "c": 4}

    def test_nested_merge(self) -> None:
        """Nested dicts are merged recursively."""
        base = {"context": {"compress_threshold": 0.9, "default_max_tokens": 1000}}
        override = {"context": {"compress_threshold": 0.8}}
        result = deep_merge(base, override)
        assert result["context"] == {"compress_threshold": 0.8, "default_max_tokens": 1000}

    def test_none_does_not_override(self) -> None:
        assert deep_merge({"a": 1}, {"a": None}) == {"a": 1}

    def test_list_replaced_not_merged(self) -> None:
        result = deep_merge({"items": [1, 2, 3]}, {"items": [4, 5]})
        assert result["items"] == [4, 5]

    def test_base_not_mutated(self) -> None:
        base = {"a": {"b": 1}}
        deep_merge(base, {"a": {"b": 2}})
        assert base == {"a": {"b": 1}}

    def test_merge_configs_multiple(self) -> None:
        """Later configs win."""
        result = merge_configs({"a": 1, "b": 2}, {"b": 3}, {}, {"c": 4})
        assert result == {"a": 1, "b": 3, "c": 4}


class TestConfigPaths:
    """Test platform-aware path resolution."""

    def test_windows_system_path(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(sys, "platform", "win32")
        monkeypatch.setenv("PROGRAMDATA", "C:\\ProgramData")

        path = get_system_config_path()
        assert path is not None
        assert "ProgramData" in str(path)
        assert "agentdeck" in str(path)
        assert path.name == "config.yaml"

    def test_windows_without_appdata(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(sys, "platform", "win32")
        monkeypatch.delenv("APPDATA", raising=False)
        assert get_user_config_path() is None

    def test_unix_system_path(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(sys, "platform", "linux")
        assert get_system_config_path() == Path("/etc/agentdeck/config.yaml")

    def test_unix_user_path_xdg(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """XDG_CONFIG_HOME wins over the home directory."""
        monkeypatch.setattr(sys, "platform", "linux")
        monkeypatch.setenv("XDG_CONFIG_HOME", "/home/test/.config-custom")

        path = get_user_config_path()
        assert path == Path("/home/test/.config-custom/agentdeck/config.yaml")

    def test_project_config_path(self) -> None:
        path = get_project_config_path("/home/user/myproject")
        assert path == Path("/home/user/myproject/.agentdeck/config.yaml")

    def test_get_config_paths_order(self, isolated_env: Path) -> None:
        """System first, then user, then project."""
        paths = get_config_paths(project_root="/project")
        assert len(paths) == 3
        assert "etc" in paths[0].parts
        assert paths[1].is_relative_to(isolated_env)
        assert "project" in paths[2].parts

    def test_no_project_path_without_root(self, isolated_env: Path) -> None:
        assert len(get_config_paths()) == 2


class TestConfigLoading:
    """Test configuration loading."""

    def test_defaults(self, isolated_env: Path) -> None:
        config = load_config()
        assert config.context.compress_threshold == DEFAULT_COMPRESS_THRESHOLD
        assert config.permissions.mode == "default"
        assert config.batching.enabled is True
        assert config.coordinator.max_turns is None

    def test_load_project_yaml(self, isolated_env: Path, project_dir: Path) -> None:
        (project_dir / "config.yaml").write_text(
            """
coordinator:
  queue_delay: 0.25
  max_turns: 30
context:
  compress_threshold: 0.8
batching:
  read_only_tools: [MyLookup, 42]
permissions:
  mode: plan
"""
        )
        config = load_config(project_root=str(project_dir.parent))
        assert config.coordinator.queue_delay == 0.25
        assert config.coordinator.max_turns == 30
        assert config.context.compress_threshold == 0.8
        assert config.batching.read_only_tools == ["MyLookup"]
        assert config.permissions.mode == "plan"

    def test_project_overrides_user(self, isolated_env: Path, project_dir: Path) -> None:
        user_dir = isolated_env / "agentdeck"
        user_dir.mkdir()
        (user_dir / "config.yaml").write_text(
            "context:\n  compress_threshold: 0.7\n  default_max_tokens: 64000\n"
        )
        (project_dir / "config.yaml").write_text("context:\n  compress_threshold: 0.85\n")

        config = load_config(project_root=str(project_dir.parent))
        assert config.context.compress_threshold == 0.85
        assert config.context.default_max_tokens == 64000

    def test_invalid_yaml_uses_defaults(
        self, isolated_env: Path, project_dir: Path, caplog: pytest.LogCaptureFixture
    ) -> None:
        (project_dir / "config.yaml").write_text("invalid: yaml: :")

        with caplog.at_level(logging.WARNING, logger="agentdeck.config"):
            config = load_config(project_root=str(project_dir.parent))
        assert config.permissions.mode == "default"
        assert "Invalid YAML" in caplog.text

    def test_non_mapping_yaml_ignored(self, isolated_env: Path, project_dir: Path) -> None:
        (project_dir / "config.yaml").write_text("- just\n- a list\n")
        config = load_config(project_root=str(project_dir.parent))
        assert config.extra == {}

    def test_extra_fields_preserved(self, isolated_env: Path, project_dir: Path) -> None:
        """Unknown sections end up in ``extra``."""
        (project_dir / "config.yaml").write_text(
            "custom_field: custom_value\nnested:\n  field: value\n"
        )
        config = load_config(project_root=str(project_dir.parent))
        assert config.extra["custom_field"] == "custom_value"
        assert config.extra["nested"]["field"] == "value"


class TestEnvironmentOverrides:
    """Environment variables have the highest priority."""

    def test_log_file(self, isolated_env: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("AGENTDECK_LOG", "/tmp/agentdeck-test.log")
        assert load_config().logging.file == "/tmp/agentdeck-test.log"

    def test_permission_mode(
        self, isolated_env: Path, project_dir: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        (project_dir / "config.yaml").write_text("permissions:\n  mode: plan\n")
        monkeypatch.setenv("AGENTDECK_PERMISSION_MODE", "yolo")

        config = load_config(project_root=str(project_dir.parent))
        assert config.permissions.mode == "yolo"

    def test_compress_threshold(self, isolated_env: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("AGENTDECK_COMPRESS_THRESHOLD", "0.5")
        assert load_config().context.compress_threshold == 0.5

    def test_invalid_threshold_ignored(
        self,
        isolated_env: Path,
        monkeypatch: pytest.MonkeyPatch,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        monkeypatch.setenv("AGENTDECK_COMPRESS_THRESHOLD", "lots")

        with caplog.at_level(logging.WARNING, logger="agentdeck.config"):
            config = load_config()
        assert config.context.compress_threshold == DEFAULT_COMPRESS_THRESHOLD
        assert "AGENTDECK_COMPRESS_THRESHOLD" in caplog.text


class TestConfigCaching:
    """Test config caching behavior."""

    def test_get_config_caches(self, isolated_env: Path) -> None:
        assert get_config() is get_config()

    def test_reset_clears_cache(self, isolated_env: Path) -> None:
        config1 = get_config()
        reset_config()
        assert get_config() is not config1

    def test_project_config_not_cached(self, isolated_env: Path, tmp_path: Path) -> None:
        """A project-specific load never replaces the global config."""
        project_config = load_config(project_root=str(tmp_path))
        assert project_config is not get_config()

    def test_reload_notifies_callbacks(self, isolated_env: Path) -> None:
        seen: list[Config] = []
        unregister = on_config_reload(seen.append)
        try:
            config = reload_config()
        finally:
            unregister()

        assert seen == [config]
        assert get_config() is config

        reload_config()
        assert len(seen) == 1

    def test_failing_callback_does_not_stop_reload(
        self, isolated_env: Path, caplog: pytest.LogCaptureFixture
    ) -> None:
        def broken(config: Config) -> None:
            raise RuntimeError("boom")

        seen: list[Config] = []
        unregister_broken = on_config_reload(broken)
        unregister_seen = on_config_reload(seen.append)
        try:
            with caplog.at_level(logging.WARNING, logger="agentdeck.config"):
                reload_config()
        finally:
            unregister_broken()
            unregister_seen()

        assert len(seen) == 1
        assert "boom" in caplog.text
