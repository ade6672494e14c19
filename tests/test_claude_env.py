"""
Tests for pointing Claude Code at the proxy.
"""

import json
from unittest.mock import Mock

import pytest

from proxy_tray import claude_env
from proxy_tray.claude_env import (
    CLAUDE_ENV_KEYS,
    ClaudeLaunchError,
    ClaudeSettings,
    build_claude_env,
    build_launch_command,
    launch_claude_code,
)


@pytest.fixture
def settings(tmp_path):
    return ClaudeSettings(tmp_path / ".claude" / "settings.json")


def read_json(path):
    with open(path, encoding="utf-8") as fh:
        return json.load(fh)


class TestBuildEnv:
    def test_small_model_falls_back_to_model(self):
        env = build_claude_env(4399, "claude-sonnet-4")
        assert env["ANTHROPIC_BASE_URL"] == "http://localhost:4399"
        assert env["ANTHROPIC_SMALL_FAST_MODEL"] == "claude-sonnet-4"
        assert env["ANTHROPIC_DEFAULT_HAIKU_MODEL"] == "claude-sonnet-4"

    def test_every_key_is_set(self):
        assert set(build_claude_env(1, "m", "s")) == set(CLAUDE_ENV_KEYS)


class TestSettingsFile:
    def test_write_creates_file(self, settings):
        result = settings.write_env(5000, "gpt-4o", "gpt-4o-mini")

        assert result["ok"] is True
        env = read_json(settings.path)["env"]
        assert env["ANTHROPIC_BASE_URL"] == "http://localhost:5000"
        assert env["ANTHROPIC_SMALL_FAST_MODEL"] == "gpt-4o-mini"

    def test_write_keeps_unrelated_settings(self, settings):
        settings.save({"theme": "dark", "env": {"EDITOR": "vim"}})
        settings.write_env(4399, "m")

        data = read_json(settings.path)
        assert data["theme"] == "dark"
        assert data["env"]["EDITOR"] == "vim"

    def test_clear_removes_only_proxy_keys(self, settings):
        settings.save({"env": {"EDITOR": "vim"}})
        settings.write_env(4399, "m")
        settings.clear_env()

        assert read_json(settings.path) == {"env": {"EDITOR": "vim"}}

    def test_clear_drops_empty_env(self, settings):
        settings.save({"theme": "dark"})
        settings.write_env(4399, "m")
        settings.clear_env()

        assert read_json(settings.path) == {"theme": "dark"}

    def test_check(self, settings):
        assert settings.check_env() == {"written": False, "base_url": None}
        settings.write_env(4399, "m")
        assert settings.check_env() == {"written": True, "base_url": "http://localhost:4399"}

    def test_broken_file_is_treated_as_empty(self, settings):
        settings.path.parent.mkdir(parents=True)
        settings.path.write_text("{not json", encoding="utf-8")

        assert settings.read() == {}
        settings.write_env(4399, "m")
        assert "env" in read_json(settings.path)


class TestLaunch:
    def test_windows_command(self, tmp_path, monkeypatch):
        monkeypatch.setattr(claude_env, "IS_WINDOWS", True)
        argv = build_launch_command(tmp_path, {"ANTHROPIC_MODEL": "it's"})

        assert argv[:6] == ["cmd.exe", "/c", "start", "powershell.exe", "-NoExit", "-Command"]
        assert argv[6].startswith(f"Set-Location '{tmp_path}'")
        assert "$env:ANTHROPIC_MODEL='it''s'" in argv[6]
        assert argv[6].endswith("; claude")

    def test_macos_command(self, tmp_path, monkeypatch):
        monkeypatch.setattr(claude_env, "IS_WINDOWS", False)
        monkeypatch.setattr(claude_env, "IS_MACOS", True)
        argv = build_launch_command(tmp_path, {"ANTHROPIC_MODEL": "m"})

        assert argv[:2] == ["osascript", "-e"]
        assert "ANTHROPIC_MODEL=m claude" in argv[2]

    def test_linux_command(self, tmp_path, monkeypatch):
        monkeypatch.setattr(claude_env, "IS_WINDOWS", False)
        monkeypatch.setattr(claude_env, "IS_MACOS", False)
        monkeypatch.setattr(
            claude_env.shutil, "which", lambda name: "/usr/bin/xterm" if name == "xterm" else None
        )
        argv = build_launch_command(tmp_path, {"ANTHROPIC_MODEL": "m"})

        assert argv[:4] == ["/usr/bin/xterm", "-e", "sh", "-c"]
        assert "env ANTHROPIC_MODEL=m claude" in argv[4]

    def test_linux_without_terminal(self, tmp_path, monkeypatch):
        monkeypatch.setattr(claude_env, "IS_WINDOWS", False)
        monkeypatch.setattr(claude_env, "IS_MACOS", False)
        monkeypatch.setattr(claude_env.shutil, "which", lambda name: None)
        with pytest.raises(ClaudeLaunchError):
            build_launch_command(tmp_path, {})

    def test_launch_spawns_terminal(self, tmp_path, monkeypatch):
        monkeypatch.setattr(claude_env, "build_launch_command", lambda cwd, env: ["term", env["ANTHROPIC_BASE_URL"]])
        popen = Mock()

        result = launch_claude_code(tmp_path, 4399, "m", popen=popen)

        assert result == {"ok": True, "cwd": str(tmp_path)}
        assert popen.call_args.args[0] == ["term", "http://localhost:4399"]

    def test_missing_folder(self, tmp_path):
        with pytest.raises(ClaudeLaunchError):
            launch_claude_code(tmp_path / "nope", 4399, popen=Mock())

    def test_spawn_failure(self, tmp_path, monkeypatch):
        monkeypatch.setattr(claude_env, "build_launch_command", lambda cwd, env: ["term"])
        popen = Mock(side_effect=FileNotFoundError("term"))
        with pytest.raises(ClaudeLaunchError):
            launch_claude_code(tmp_path, 4399, popen=popen)
