"""
Proxy worker supervision for Copilot Proxy Tray.

Owns at most one worker process at a time, captures its stdout/stderr
into a bounded log buffer, and reports state changes and unexpected exits
through callbacks.  The supervisor never restarts the worker on its own;
restarting is always a user or tray action.

Each output stream and the exit wait run on their own daemon threads so
the UI event loop is never blocked.
"""

import logging
import shutil
import signal
import subprocess
import sys
import threading
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Callable, Protocol

import psutil

from proxy_tray.credentials import CredentialStore
from proxy_tray.platform_utils import IS_WINDOWS, get_resources_dir
from proxy_tray.state import ServiceStatus

logger = logging.getLogger(__name__)

MAX_LOG_LINES = 500
TOKEN_FLAG = "--github-token"
DEFAULT_ARGS = ["start", "--port", "4399"]

_BUNDLED_NAME = "copilot-proxy-server.exe" if IS_WINDOWS else "copilot-proxy-server"
_SOURCE_DIR_NAME = "copilot-proxy"
_SOURCE_ENTRY = Path("src") / "main.ts"


class WorkerNotFoundError(RuntimeError):
    """The worker binary or the runtime needed to run it is missing."""


class WorkerStartError(RuntimeError):
    """The operating system refused to launch the worker."""


# ======================================================================
# Log buffer
# ======================================================================


class LogBuffer:
    """Bounded, thread-safe list of output lines; oldest lines drop first."""

    def __init__(self, capacity: int = MAX_LOG_LINES):
        self._lines: deque[str] = deque(maxlen=capacity)
        self._lock = threading.Lock()

    @property
    def capacity(self) -> int:
        return self._lines.maxlen or 0

    def append(self, line: str) -> None:
        with self._lock:
            self._lines.append(line)

    def append_chunk(self, chunk: str) -> None:
        """Split *chunk* on newlines and append the non-empty lines."""
        lines = [line.rstrip("\r") for line in chunk.split("\n")]
        with self._lock:
            self._lines.extend(line for line in lines if line)

    def snapshot(self) -> list[str]:
        with self._lock:
            return list(self._lines)

    def __len__(self) -> int:
        with self._lock:
            return len(self._lines)


# ======================================================================
# Worker location
# ======================================================================


@dataclass(frozen=True)
class WorkerCommand:
    """Command prefix used to launch the worker, before its own arguments."""
    argv: tuple[str, ...]
    cwd: Path | None = None


class WorkerLocator:
    """
    Finds the proxy worker.

    A bundled ``copilot-proxy-server`` executable beside the app wins.
    Frozen builds require it; from a source checkout the locator falls back
    to ``bun run src/main.ts`` inside the ``copilot-proxy`` source tree.
    """

    def __init__(
        self,
        resources_dir: Path | None = None,
        source_dir: Path | None = None,
        frozen: bool | None = None,
    ):
        self._resources_dir = resources_dir or get_resources_dir()
        self._source_dir = source_dir
        self._frozen = getattr(sys, "frozen", False) if frozen is None else frozen

    def resolve(self) -> WorkerCommand:
        """Return the launch prefix or raise :class:`WorkerNotFoundError`."""
        bundled = self._resources_dir / _BUNDLED_NAME
        if bundled.is_file():
            return WorkerCommand(argv=(str(bundled),))
        if self._frozen:
            raise WorkerNotFoundError(f"Bundled proxy server not found at: {bundled}")

        source = self._find_source_dir()
        if source is None:
            raise WorkerNotFoundError(
                f"Proxy source not found (expected {_SOURCE_DIR_NAME}/{_SOURCE_ENTRY.as_posix()})"
            )
        bun = find_bun()
        if bun is None:
            raise WorkerNotFoundError("bun not found in PATH or ~/.bun/bin")
        return WorkerCommand(argv=(bun, "run", _SOURCE_ENTRY.as_posix()), cwd=source)

    def _find_source_dir(self) -> Path | None:
        candidates = [self._source_dir] if self._source_dir else [
            self._resources_dir / _SOURCE_DIR_NAME,
            self._resources_dir.parent,
        ]
        for candidate in candidates:
            if candidate is not None and (candidate / _SOURCE_ENTRY).is_file():
                return candidate
        return None


def find_bun() -> str | None:
    """Return a working ``bun`` executable path, or None."""
    candidates = []
    on_path = shutil.which("bun")
    if on_path:
        candidates.append(on_path)
    bun_bin = Path.home() / ".bun" / "bin"
    candidates += [str(bun_bin / "bun.exe"), str(bun_bin / "bun")]

    for candidate in candidates:
        if not Path(candidate).is_file():
            continue
        try:
            result = subprocess.run(
                [candidate, "--version"],
                capture_output=True,
                timeout=10,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired):
            continue
        if result.returncode == 0:
            logger.debug("Using bun %s at %s", result.stdout.decode().strip(), candidate)
            return candidate
    return None


# ======================================================================
# Termination strategies
# ======================================================================


class ProcessTerminator(Protocol):
    """Ends a worker process; errors propagate to the supervisor."""

    def terminate(self, process: subprocess.Popen) -> None:
        ...


class SignalTerminator:
    """Send a graceful SIGTERM to the worker itself."""

    def terminate(self, process: subprocess.Popen) -> None:
        process.terminate()


class TreeTerminator:
    """Kill the worker and every descendant.

    Needed on Windows, where ending a process does not end its children.
    """

    def __init__(self, wait_seconds: float = 3.0):
        self._wait_seconds = wait_seconds

    def terminate(self, process: subprocess.Popen) -> None:
        try:
            parent = psutil.Process(process.pid)
            procs = parent.children(recursive=True) + [parent]
        except psutil.NoSuchProcess:
            return
        for proc in procs:
            try:
                proc.kill()
            except psutil.NoSuchProcess:
                pass
        psutil.wait_procs(procs, timeout=self._wait_seconds)


def default_terminator() -> ProcessTerminator:
    """Return the termination strategy for the running platform."""
    return TreeTerminator() if IS_WINDOWS else SignalTerminator()


# ======================================================================
# Supervisor
# ======================================================================


@dataclass(frozen=True)
class StartResult:
    pid: int
    already_running: bool


@dataclass(frozen=True)
class StopResult:
    ok: bool
    message: str


StateCallback = Callable[..., None]


class ProcessSupervisor:
    """
    Starts, watches and stops the proxy worker.

    Parameters
    ----------
    credentials : CredentialStore
        Read once per start to inject the token argument.
    locator : WorkerLocator, optional
        Finds the worker command prefix.
    terminator : ProcessTerminator, optional
        Platform kill strategy; :func:`default_terminator` when omitted.
    on_state_change : callable, optional
        ``on_state_change(status, pid=None, error=None, model_name="")``.
    on_unexpected_exit : callable, optional
        ``on_unexpected_exit(code)``; fired when the worker exits without
        :meth:`stop` having been called.
    """

    def __init__(
        self,
        credentials: CredentialStore,
        locator: WorkerLocator | None = None,
        terminator: ProcessTerminator | None = None,
        on_state_change: StateCallback | None = None,
        on_unexpected_exit: Callable[[int], None] | None = None,
        log_capacity: int = MAX_LOG_LINES,
    ):
        self._credentials = credentials
        self._locator = locator or WorkerLocator()
        self._terminator = terminator or default_terminator()
        self._on_state_change = on_state_change
        self._on_unexpected_exit = on_unexpected_exit
        self._log_capacity = log_capacity
        self._logs = LogBuffer(log_capacity)
        self._process: subprocess.Popen | None = None
        self._lock = threading.Lock()
        self._start_lock = threading.RLock()

    # ---- queries ----

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._process is not None

    @property
    def pid(self) -> int | None:
        with self._lock:
            return self._process.pid if self._process else None

    def get_logs(self) -> list[str]:
        """Return a copy of the captured output of the current/last run."""
        return self._logs.snapshot()

    # ---- lifecycle ----

    def start(self, args: list[str] | None, model_name: str = "") -> StartResult:
        """Launch the worker with *args* unless one is already supervised.

        Raises :class:`WorkerNotFoundError` or :class:`WorkerStartError`;
        either way the state is reported as ``error`` first.
        """
        with self._start_lock:
            return self._start(args, model_name)

    def _start(self, args: list[str] | None, model_name: str) -> StartResult:
        with self._lock:
            if self._process is not None:
                return StartResult(pid=self._process.pid, already_running=True)

        worker_args = list(args) if args else list(DEFAULT_ARGS)
        token = self._credentials.read_with_migration()
        if token and TOKEN_FLAG not in worker_args:
            worker_args += [TOKEN_FLAG, token]

        try:
            command = self._locator.resolve()
        except WorkerNotFoundError as exc:
            logger.error("Cannot start proxy: %s", exc)
            self._emit(ServiceStatus.ERROR, error=str(exc), model_name=model_name)
            raise

        logs = LogBuffer(self._log_capacity)
        try:
            process = subprocess.Popen(
                [*command.argv, *worker_args],
                cwd=str(command.cwd) if command.cwd else None,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                **_detach_kwargs(),
            )
        except OSError as exc:
            logger.error("Failed to launch proxy: %s", exc)
            self._emit(ServiceStatus.ERROR, error=str(exc), model_name=model_name)
            raise WorkerStartError(str(exc)) from exc

        with self._lock:
            self._process = process
            self._logs = logs

        logger.info("Proxy started (pid %d).", process.pid)
        # Must precede the exit watcher: "running" never follows its "idle".
        self._emit(ServiceStatus.RUNNING, pid=process.pid, model_name=model_name)

        readers = [
            _start_thread(self._pump, (process.stdout, logs), "ProxyStdout"),
            _start_thread(self._pump, (process.stderr, logs), "ProxyStderr"),
        ]
        _start_thread(self._wait_for_exit, (process, logs, readers), "ProxyExitWatch")
        return StartResult(pid=process.pid, already_running=False)

    def stop(self) -> StopResult:
        """Terminate the supervised worker; a no-op when there is none.

        Waits for an in-flight :meth:`start` so its ``running`` report can
        never land after this stop's ``idle``.
        """
        with self._start_lock:
            return self._stop()

    def _stop(self) -> StopResult:
        with self._lock:
            process = self._process
            # Cleared before termination so the exit watcher sees a user stop.
            self._process = None
        if process is None:
            return StopResult(ok=True, message="service was not running")

        try:
            self._terminator.terminate(process)
        except Exception:
            logger.warning("Failed to terminate proxy (pid %d).", process.pid, exc_info=True)
        logger.info("Proxy stop requested (pid %d).", process.pid)
        self._emit(ServiceStatus.IDLE)
        return StopResult(ok=True, message="service stopped")

    def shutdown(self) -> None:
        """Stop the worker as the application quits."""
        if self.is_running:
            self.stop()

    # ---- internals ----

    @staticmethod
    def _pump(stream: IO[bytes], logs: LogBuffer) -> None:
        """Copy one output stream into *logs* until EOF."""
        try:
            for raw in iter(stream.readline, b""):
                logs.append_chunk(raw.decode("utf-8", errors="replace"))
        except (OSError, ValueError):
            logger.debug("Proxy output stream closed.", exc_info=True)
        finally:
            stream.close()

    def _wait_for_exit(
        self,
        process: subprocess.Popen,
        logs: LogBuffer,
        readers: list[threading.Thread],
    ) -> None:
        code = process.wait()
        for reader in readers:
            reader.join(timeout=2)
        logs.append(f"[process exited with {describe_exit(code)}]")

        with self._lock:
            unexpected = self._process is process
            if unexpected:
                self._process = None

        if not unexpected:
            logger.info("Proxy exited with code %s after stop.", code)
            return

        logger.warning("Proxy stopped unexpectedly with code %s.", code)
        self._emit(ServiceStatus.IDLE)
        if self._on_unexpected_exit:
            try:
                self._on_unexpected_exit(code)
            except Exception:
                logger.exception("Error in unexpected-exit callback.")

    def _emit(self, status: ServiceStatus, **details) -> None:
        if self._on_state_change is None:
            return
        try:
            self._on_state_change(status, **details)
        except Exception:
            logger.exception("Error in state-change callback.")


def describe_exit(code: int) -> str:
    """Return ``code N``, or ``signal NAME`` for a POSIX signal death."""
    if code < 0 and not IS_WINDOWS:
        try:
            return f"signal {signal.Signals(-code).name}"
        except ValueError:
            pass
    return f"code {code}"


def _detach_kwargs() -> dict:
    if IS_WINDOWS:
        return {"creationflags": subprocess.CREATE_NO_WINDOW}
    return {"start_new_session": True}


def _start_thread(target: Callable, args: tuple, name: str) -> threading.Thread:
    thread = threading.Thread(target=target, args=args, daemon=True, name=name)
    thread.start()
    return thread
