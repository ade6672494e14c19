"""
Main application controller for Copilot Proxy Tray.

Ties together configuration, the credential store, the proxy supervisor,
the state broadcaster, the GitHub device flow, the system tray and the
wxPython window.

Cross-platform: Windows, macOS, and Linux.
"""

import logging
import logging.handlers
import sys
from typing import Any

import wx

from proxy_tray import __app_name__, __version__
from proxy_tray.commands import CommandRouter
from proxy_tray.claude_env import ClaudeSettings
from proxy_tray.config import Config, get_log_path
from proxy_tray.copilot_api import CopilotClient
from proxy_tray.credentials import CredentialStore
from proxy_tray.device_auth import DeviceAuthFlow, DeviceAuthSession
from proxy_tray.state import StateBroadcaster
from proxy_tray.supervisor import ProcessSupervisor
from proxy_tray.tray import SysTray
from proxy_tray.ui import DeviceCodeDialog, MainWindow

logger = logging.getLogger(__name__)


class App:
    """
    Central orchestrator.

    Implements the TrayCallbacks protocol expected by SysTray.
    """

    def __init__(self, config: Config | None = None) -> None:
        self.config = config or Config()
        self.quitting = False

        # wx application; the frame may be hidden, so keep the loop alive
        self._wx_app = wx.App(False)
        self._wx_app.SetAppName(__app_name__)
        self._wx_app.SetExitOnFrameDelete(False)

        self.credentials = CredentialStore()
        self.broadcaster = StateBroadcaster()
        self.supervisor = ProcessSupervisor(
            self.credentials,
            on_state_change=self.broadcaster.on_state_change,
            on_unexpected_exit=self.broadcaster.on_unexpected_exit,
        )
        self.broadcaster.bind_supervisor(self.supervisor)
        self.device_flow = DeviceAuthFlow(self.credentials)

        self._window = MainWindow(self)
        self._tray = SysTray(self)
        self.router = CommandRouter(
            self.broadcaster,
            self.supervisor,
            self.credentials,
            self.device_flow,
            self._make_prompt,
            on_minimize=self._window.hide,
            on_quit=self.on_quit,
            copilot=CopilotClient(self.credentials),
            claude_settings=ClaudeSettings(),
        )

        self.broadcaster.add_observer(self._tray)
        self.broadcaster.add_observer(self._window)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def run(self) -> None:
        """Start the application (tray + optional proxy, then enter the wx loop)."""
        self._setup_logging()

        logger.info("%s %s starting.", __app_name__, __version__)

        self._tray.start()

        if not self.config.start_minimized:
            wx.CallAfter(self._window.show)
        if self.config.auto_start:
            wx.CallAfter(self._auto_start)

        self._wx_app.MainLoop()

    def invoke(self, command: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:
        """Run a window command through the router."""
        return self.router.invoke(command, payload)

    # ------------------------------------------------------------------
    # TrayCallbacks (called from the tray thread)
    # ------------------------------------------------------------------

    def on_show_window(self) -> None:
        wx.CallAfter(self._window.show)

    def on_tray_start(self) -> None:
        self.broadcaster.replay_last_start()

    def on_tray_stop(self) -> None:
        self.broadcaster.stop_service(from_tray=True)

    def on_quit(self) -> None:
        """Cleanly shut down the application."""
        wx.CallAfter(self._quit)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _quit(self) -> None:
        if self.quitting:
            return
        self.quitting = True
        logger.info("Shutting down…")
        self.device_flow.cancel()
        self.supervisor.shutdown()
        self._tray.stop()
        self._window.destroy()
        self._wx_app.ExitMainLoop()

    def _auto_start(self) -> None:
        """Start the proxy at launch when the saved settings allow it."""
        cfg = self.config
        if not self.credentials.status()["has_token"] or cfg.needs_risk_acceptance():
            logger.info("Auto-start needs user input; opening the window.")
            self._window.show()
            self._window.start_interactive()
            return
        try:
            self.broadcaster.start_service(cfg.to_cli_args(), cfg.default_model)
        except RuntimeError as exc:
            logger.error("Auto-start failed: %s", exc)

    def _make_prompt(self, session: DeviceAuthSession, on_user_close) -> DeviceCodeDialog:
        return DeviceCodeDialog(self._window.frame, session, on_user_close)

    def _setup_logging(self) -> None:
        """Configure rotating file log and stderr handler."""
        log_path = get_log_path()
        level = getattr(logging, self.config.log_level.upper(), logging.INFO)
        root_logger = logging.getLogger()
        root_logger.setLevel(level)

        fmt = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")

        max_bytes = self.config.max_log_size_mb * 1024 * 1024
        fh = logging.handlers.RotatingFileHandler(
            str(log_path),
            maxBytes=max_bytes,
            backupCount=self.config.log_backup_count,
            encoding="utf-8",
        )
        fh.setLevel(level)
        fh.setFormatter(fmt)
        root_logger.addHandler(fh)

        # Stderr handler (for development)
        sh = logging.StreamHandler(sys.stderr)
        sh.setLevel(level)
        sh.setFormatter(fmt)
        root_logger.addHandler(sh)
