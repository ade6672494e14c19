"""Canonical service state for Copilot Proxy Tray.

The :class:`StateBroadcaster` holds the one authoritative
:class:`ServiceState` and fans every transition out to its observers (the
tray icon and the main window).  Observers only ever receive immutable
snapshots, so none of them can change the shared state behind the
broadcaster's back.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from proxy_tray.supervisor import ProcessSupervisor, StartResult, StopResult

logger = logging.getLogger(__name__)

# Events pushed to observers alongside state snapshots
EVENT_STARTED = "started"
EVENT_STOPPED = "stopped"
EVENT_CLOSE_REQUESTED = "close-requested"
EVENT_TRIGGER_START = "trigger-start"


class ServiceStatus(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass(frozen=True)
class ServiceState:
    """Immutable snapshot of the proxy service."""
    status: ServiceStatus = ServiceStatus.IDLE
    pid: int | None = None
    last_error: str | None = None
    last_model_name: str = ""

    @property
    def running(self) -> bool:
        return self.status is ServiceStatus.RUNNING


@dataclass(frozen=True)
class StartPayload:
    """Arguments of the most recent start, replayed by the tray."""
    args: tuple[str, ...] = ()
    model_name: str = ""


class StateObserver(Protocol):
    """Expected interface for anything that mirrors the service state."""

    def on_service_state(self, state: ServiceState) -> None:
        """Render the new state snapshot."""
        ...

    def on_service_event(self, event: str, payload: dict[str, Any]) -> None:
        """React to a one-off event such as ``stopped`` or ``trigger-start``."""
        ...


class StateBroadcaster:
    """
    Owns :class:`ServiceState` and the last start payload.

    The supervisor reports transitions through :meth:`on_state_change` and
    :meth:`on_unexpected_exit`; user commands from the window or the tray go
    through :meth:`start_service`, :meth:`stop_service` and
    :meth:`replay_last_start`.
    """

    def __init__(self) -> None:
        self._state = ServiceState()
        self._last_payload: StartPayload | None = None
        self._observers: list[StateObserver] = []
        self._supervisor: ProcessSupervisor | None = None
        self._lock = threading.Lock()

    def bind_supervisor(self, supervisor: ProcessSupervisor) -> None:
        """Attach the supervisor used to carry out start/stop commands."""
        self._supervisor = supervisor

    def add_observer(self, observer: StateObserver) -> None:
        """Register *observer* and immediately show it the current state."""
        with self._lock:
            self._observers.append(observer)
            state = self._state
        _deliver(observer.on_service_state, state)

    def remove_observer(self, observer: StateObserver) -> None:
        with self._lock:
            if observer in self._observers:
                self._observers.remove(observer)

    # ---- queries ----

    @property
    def state(self) -> ServiceState:
        """Return the current snapshot."""
        with self._lock:
            return self._state

    @property
    def last_payload(self) -> StartPayload | None:
        with self._lock:
            return self._last_payload

    # ---- supervisor callbacks ----

    def on_state_change(
        self,
        status: ServiceStatus,
        pid: int | None = None,
        error: str | None = None,
        model_name: str = "",
    ) -> None:
        """Record a transition and push it to every observer."""
        with self._lock:
            new_state = ServiceState(
                status=status,
                pid=pid if status is ServiceStatus.RUNNING else None,
                last_error=error if status is ServiceStatus.ERROR else None,
                last_model_name=model_name or self._state.last_model_name,
            )
            self._state = new_state
            observers = list(self._observers)
        logger.info("Service state: %s", new_state.status.value)
        for observer in observers:
            _deliver(observer.on_service_state, new_state)

    def on_unexpected_exit(self, code: int) -> None:
        """Tell observers the worker died without being asked to stop."""
        self.emit(EVENT_STOPPED, unexpected=True, code=code)

    # ---- commands ----

    def start_service(self, args: list[str] | None, model_name: str = "") -> StartResult:
        """Start the worker and remember the payload for tray restarts.

        Only a start that actually launched the worker is remembered.
        """
        result = self._require_supervisor().start(list(args) if args else None, model_name)
        if not result.already_running:
            with self._lock:
                self._last_payload = StartPayload(args=tuple(args or ()), model_name=model_name)
        return result

    def stop_service(self, from_tray: bool = False) -> StopResult:
        """Stop the worker.  Tray-initiated stops are echoed to the window."""
        result = self._require_supervisor().stop()
        if from_tray:
            self.emit(EVENT_STOPPED, unexpected=False)
        return result

    def replay_last_start(self) -> bool:
        """Restart with the remembered payload, or ask the window to start.

        Returns True when the worker was started directly.
        """
        payload = self.last_payload
        if payload is None:
            self.emit(EVENT_TRIGGER_START)
            return False
        try:
            self._require_supervisor().start(list(payload.args) or None, payload.model_name)
        except RuntimeError:
            logger.warning("Failed to start service from tray.", exc_info=True)
            return False
        self.emit(EVENT_STARTED)
        return True

    def request_close(self) -> None:
        """Ask the window to confirm minimise-to-tray or quit."""
        self.emit(EVENT_CLOSE_REQUESTED)

    def emit(self, event: str, **payload: Any) -> None:
        """Send *event* to every observer."""
        with self._lock:
            observers = list(self._observers)
        for observer in observers:
            _deliver(observer.on_service_event, event, payload)

    def _require_supervisor(self) -> ProcessSupervisor:
        if self._supervisor is None:
            raise RuntimeError("No process supervisor bound to the broadcaster.")
        return self._supervisor


def _deliver(callback, *args) -> None:
    try:
        callback(*args)
    except Exception:
        logger.exception("Observer %r failed.", callback)
