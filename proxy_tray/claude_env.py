"""
Point Claude Code at the local proxy.

Two ways are offered: write the proxy's address into the ``env`` block of
``~/.claude/settings.json`` (and remove it again), or open a terminal in a
chosen workspace with the variables set for that session only.
"""

import json
import logging
import shlex
import shutil
import subprocess
from pathlib import Path
from typing import Any, Callable

from proxy_tray.platform_utils import IS_MACOS, IS_WINDOWS

logger = logging.getLogger(__name__)

CLAUDE_ENV_KEYS = (
    "ANTHROPIC_BASE_URL",
    "ANTHROPIC_AUTH_TOKEN",
    "ANTHROPIC_MODEL",
    "ANTHROPIC_DEFAULT_SONNET_MODEL",
    "ANTHROPIC_SMALL_FAST_MODEL",
    "ANTHROPIC_DEFAULT_HAIKU_MODEL",
    "DISABLE_NON_ESSENTIAL_MODEL_CALLS",
    "CLAUDE_CODE_DISABLE_NONESSENTIAL_TRAFFIC",
)

# Terminals tried on Linux, with the flag that precedes the command to run.
_LINUX_TERMINALS = (
    ("x-terminal-emulator", "-e"),
    ("gnome-terminal", "--"),
    ("konsole", "-e"),
    ("xterm", "-e"),
)


class ClaudeLaunchError(RuntimeError):
    """Claude Code could not be started in a terminal."""


def claude_settings_path() -> Path:
    return Path.home() / ".claude" / "settings.json"


def build_claude_env(port: int, model: str = "", small_model: str = "") -> dict[str, str]:
    """Return the variables that send Claude Code through the proxy."""
    small = small_model or model
    return {
        "ANTHROPIC_BASE_URL": f"http://localhost:{port}",
        "ANTHROPIC_AUTH_TOKEN": "dummy",
        "ANTHROPIC_MODEL": model,
        "ANTHROPIC_DEFAULT_SONNET_MODEL": model,
        "ANTHROPIC_SMALL_FAST_MODEL": small,
        "ANTHROPIC_DEFAULT_HAIKU_MODEL": small,
        "DISABLE_NON_ESSENTIAL_MODEL_CALLS": "1",
        "CLAUDE_CODE_DISABLE_NONESSENTIAL_TRAFFIC": "1",
    }


class ClaudeSettings:
    """The user-level Claude Code ``settings.json``."""

    def __init__(self, path: Path | None = None):
        self._path = path or claude_settings_path()

    @property
    def path(self) -> Path:
        return self._path

    def read(self) -> dict[str, Any]:
        """Return the settings, or ``{}`` when missing or unreadable."""
        if not self._path.exists():
            return {}
        try:
            with open(self._path, encoding="utf-8") as fh:
                data = json.load(fh)
        except (ValueError, OSError) as exc:
            logger.warning("Could not read Claude settings (%s).", exc)
            return {}
        return data if isinstance(data, dict) else {}

    def save(self, settings: dict[str, Any]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with open(self._path, "w", encoding="utf-8") as fh:
            json.dump(settings, fh, indent=2)

    def write_env(self, port: int, model: str = "", small_model: str = "") -> dict[str, Any]:
        """Merge the proxy variables into the ``env`` block."""
        env_vars = build_claude_env(port, model, small_model)
        settings = self.read()
        env = settings.get("env")
        if not isinstance(env, dict):
            env = {}
        env.update(env_vars)
        settings["env"] = env
        self.save(settings)
        logger.info("Wrote Claude Code proxy settings to %s", self._path)
        return {"ok": True, "path": str(self._path), "vars": list(env_vars)}

    def clear_env(self) -> dict[str, Any]:
        """Remove the proxy variables, and the ``env`` block if it empties."""
        settings = self.read()
        env = settings.get("env")
        if not isinstance(env, dict):
            return {"ok": True, "path": str(self._path)}
        for key in CLAUDE_ENV_KEYS:
            env.pop(key, None)
        if not env:
            del settings["env"]
        self.save(settings)
        logger.info("Removed Claude Code proxy settings from %s", self._path)
        return {"ok": True, "path": str(self._path)}

    def check_env(self) -> dict[str, Any]:
        env = self.read().get("env")
        base_url = env.get("ANTHROPIC_BASE_URL") if isinstance(env, dict) else None
        return {"written": bool(base_url), "base_url": base_url or None}


# ---- terminal launch ---------------------------------------------------


def _powershell_quote(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def _applescript_quote(value: str) -> str:
    return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'


def build_launch_command(workspace: Path, env: dict[str, str]) -> list[str]:
    """Return the argv that opens a terminal in *workspace* running ``claude``."""
    if IS_WINDOWS:
        parts = [f"Set-Location {_powershell_quote(str(workspace))}"]
        parts += [f"$env:{key}={_powershell_quote(value)}" for key, value in env.items()]
        parts.append("claude")
        return ["cmd.exe", "/c", "start", "powershell.exe", "-NoExit", "-Command", "; ".join(parts)]

    exports = " ".join(f"{key}={shlex.quote(value)}" for key, value in env.items())
    script = f"cd {shlex.quote(str(workspace))} && env {exports} claude"
    if IS_MACOS:
        return ["osascript", "-e", f"tell application \"Terminal\" to do script {_applescript_quote(script)}"]

    for name, flag in _LINUX_TERMINALS:
        terminal = shutil.which(name)
        if terminal:
            return [terminal, flag, "sh", "-c", f"{script}; exec \"${{SHELL:-sh}}\""]
    raise ClaudeLaunchError("No terminal emulator found")


def launch_claude_code(
    workspace: Path,
    port: int,
    model: str = "",
    small_model: str = "",
    popen: Callable[..., Any] = subprocess.Popen,
) -> dict[str, Any]:
    """Open a terminal in *workspace* running Claude Code against the proxy."""
    workspace = Path(workspace)
    if not workspace.is_dir():
        raise ClaudeLaunchError(f"Workspace is not a folder: {workspace}")
    argv = build_launch_command(workspace, build_claude_env(port, model, small_model))
    try:
        popen(
            argv,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            **({} if IS_WINDOWS else {"start_new_session": True}),
        )
    except OSError as exc:
        raise ClaudeLaunchError(f"Failed to open a terminal: {exc}") from exc
    logger.info("Launched Claude Code in %s", workspace)
    return {"ok": True, "cwd": str(workspace)}
