"""
Cross-platform utilities for Copilot Proxy Tray.

Centralises OS detection and the on-disk locations the app depends on so
every other module imports a single canonical set of helpers rather than
scattering ``sys.platform`` checks throughout the codebase.

Supported platforms:
  - Windows 10/11
  - macOS 12+
  - Linux (best-effort; no at-rest token encryption)
"""

from __future__ import annotations

import logging
import os
import sys
import webbrowser
from pathlib import Path

logger = logging.getLogger(__name__)

# ---- platform flags ----------------------------------------------------

IS_WINDOWS: bool = sys.platform == "win32"
IS_MACOS: bool = sys.platform == "darwin"
IS_LINUX: bool = sys.platform.startswith("linux")

APP_DIR_NAME = "copilot-proxy-gui"

# ---- directories -------------------------------------------------------


def get_config_dir() -> Path:
    """
    Return the application data directory, created if needed.

    - Windows : ``%APPDATA%\\copilot-proxy-gui``
    - macOS   : ``~/Library/Application Support/copilot-proxy-gui``
    - Linux   : ``$XDG_CONFIG_HOME/copilot-proxy-gui`` (default ``~/.config``)
    """
    if IS_WINDOWS:
        base = os.environ.get("APPDATA", str(Path.home()))
    elif IS_MACOS:
        base = str(Path.home() / "Library" / "Application Support")
    else:
        base = os.environ.get("XDG_CONFIG_HOME", str(Path.home() / ".config"))

    config_dir = Path(base) / APP_DIR_NAME
    config_dir.mkdir(parents=True, exist_ok=True)
    return config_dir


def get_legacy_token_dir() -> Path:
    """Return the directory the CLI and older GUI builds kept the token in.

    Only read for migration; never created.
    """
    return Path.home() / ".local" / "share" / "copilot-proxy"


def get_log_path() -> Path:
    """Return the path to the log file (inside the config directory)."""
    return get_config_dir() / "copilot_proxy_tray.log"


def get_resources_dir() -> Path:
    """Return the directory bundled resources live in.

    For a frozen build this is the folder holding the executable; from a
    source checkout it is the repository root.
    """
    if getattr(sys, "frozen", False):
        return Path(sys.executable).resolve().parent
    return Path(__file__).resolve().parent.parent


# ---- desktop integration -----------------------------------------------


def open_url_in_browser(url: str) -> bool:
    """Open *url* in the user's default browser.  Returns True on success.

    Only ``http`` and ``https`` URLs are opened; failures are logged and
    otherwise ignored.
    """
    if not url.startswith(("https://", "http://")):
        logger.warning("Refusing to open non-web URL: %s", url)
        return False
    try:
        return webbrowser.open(url, new=2)
    except Exception:
        logger.warning("Could not open browser for %s", url, exc_info=True)
        return False
