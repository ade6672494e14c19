"""System tray icon for Copilot Proxy Tray.

Mirrors the service state in the tray: the icon colour, hover tooltip and
context menu are rebuilt from every state snapshot the broadcaster sends,
so a stopped or crashed proxy never keeps a "Running" label.
"""

import logging
import threading
from typing import Any, Protocol

import pystray
from PIL import Image, ImageDraw
from PIL.Image import Image as PILImage

from proxy_tray import __app_name__
from proxy_tray.state import EVENT_STOPPED, ServiceState, ServiceStatus

logger = logging.getLogger(__name__)

# Tray colours
COLOR_RUNNING = "#22C55E"  # green
COLOR_STOPPED = "#888888"  # grey
COLOR_ERROR = "#C4001A"    # red

_STATUS_LABELS = {
    ServiceStatus.IDLE: "Stopped",
    ServiceStatus.STARTING: "Starting",
    ServiceStatus.RUNNING: "Running",
    ServiceStatus.STOPPING: "Stopping",
    ServiceStatus.ERROR: "Error",
}


class TrayCallbacks(Protocol):
    """Expected callback interface for the tray icon owner."""

    def on_show_window(self) -> None:
        """Bring the main window to the front."""
        ...

    def on_tray_start(self) -> None:
        """Start the proxy from the tray."""
        ...

    def on_tray_stop(self) -> None:
        """Stop the proxy from the tray."""
        ...

    def on_quit(self) -> None:
        """Quit the application."""
        ...


def _create_icon_image(color: str = COLOR_STOPPED, size: int = 64) -> PILImage:
    """Create a rounded square icon with an inner status dot."""
    img = Image.new("RGBA", (size, size), (0, 0, 0, 0))
    draw = ImageDraw.Draw(img)
    draw.rounded_rectangle(
        [(2, 2), (size - 2, size - 2)],
        radius=10,
        fill="#24292F",
    )
    margin = size // 4
    draw.ellipse(
        [(margin, margin), (size - margin, size - margin)],
        fill=color,
    )
    return img


def icon_color(state: ServiceState) -> str:
    """Return the icon colour for *state*."""
    if state.status is ServiceStatus.RUNNING:
        return COLOR_RUNNING
    if state.status is ServiceStatus.ERROR:
        return COLOR_ERROR
    return COLOR_STOPPED


def tooltip_text(state: ServiceState) -> str:
    """Return the hover tooltip for *state*."""
    text = f"{__app_name__} - {_STATUS_LABELS[state.status]}"
    if state.running and state.last_model_name:
        text += f"\nModel: {state.last_model_name}"
    elif state.status is ServiceStatus.ERROR and state.last_error:
        text += f"\n{state.last_error[:60]}"
    return text


class SysTray:
    """Manages the system-tray icon and its context menu.

    The tray runs on its own thread so it does not block the wx main loop.
    """

    def __init__(self, callbacks: TrayCallbacks):
        """Create the tray icon bound to *callbacks*."""
        self._callbacks = callbacks
        self._icon: Any | None = None
        self._thread: threading.Thread | None = None
        self._state = ServiceState()

    def _build_menu(self) -> pystray.Menu:
        """Build the context menu for the last state seen."""
        state = self._state
        status_line = ("● " if state.running else "○ ") + _STATUS_LABELS[state.status]
        if state.running:
            toggle = pystray.MenuItem("■ Stop Service", lambda: self._callbacks.on_tray_stop())
        else:
            toggle = pystray.MenuItem("▶ Start Service", lambda: self._callbacks.on_tray_start())
        return pystray.Menu(
            pystray.MenuItem(status_line, None, enabled=False),
            pystray.Menu.SEPARATOR,
            toggle,
            pystray.Menu.SEPARATOR,
            pystray.MenuItem(
                "Show Window", lambda: self._callbacks.on_show_window(), default=True
            ),
            pystray.Menu.SEPARATOR,
            pystray.MenuItem("Quit", lambda: self._callbacks.on_quit()),
        )

    def start(self) -> None:
        """Start the tray icon on a daemon thread."""
        self._icon = pystray.Icon(
            name="CopilotProxy",
            icon=_create_icon_image(icon_color(self._state)),
            title=tooltip_text(self._state),
            menu=self._build_menu(),
        )
        icon = self._icon
        self._thread = threading.Thread(target=icon.run, daemon=True, name="SysTray")
        self._thread.start()
        logger.info("System tray icon started.")

    def stop(self) -> None:
        """Remove the tray icon and stop its thread."""
        if self._icon:
            try:
                self._icon.stop()
            except Exception:
                logger.debug("Tray icon stop failed.", exc_info=True)
            self._icon = None
        logger.info("System tray icon stopped.")

    # ---- StateObserver ----

    def on_service_state(self, state: ServiceState) -> None:
        """Repaint icon, tooltip and menu for *state*."""
        self._state = state
        if not self._icon:
            return
        self._icon.icon = _create_icon_image(icon_color(state))
        self._icon.title = tooltip_text(state)
        self._icon.menu = self._build_menu()
        self._icon.update_menu()

    def on_service_event(self, event: str, payload: dict[str, Any]) -> None:
        """Pop a desktop notification when the proxy dies on its own."""
        if event != EVENT_STOPPED or not payload.get("unexpected") or not self._icon:
            return
        code = payload.get("code")
        try:
            self._icon.notify(
                f"The proxy stopped unexpectedly (exit code {code}).", __app_name__
            )
        except Exception:
            logger.debug("Notification failed.", exc_info=True)
