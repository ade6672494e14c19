"""
GitHub sign-in via the OAuth 2.0 Device Authorization Grant (RFC 8628).

The user is shown a short code and a verification URL; they approve the
app in their browser while we poll GitHub for the access token.

The poll loop is split in two:

* :func:`transition`: a pure function from ``(session, event)`` to
  ``(session, effects)``.  Every terminal / non-terminal decision lives
  here, so it can be tested without network or timers.
* :class:`DeviceAuthFlow`: the thin imperative shell that performs the
  HTTP requests, waits, writes the token and drives the verification
  prompt according to the effects.

Failures fall into three groups that must stay distinct:

* fatal: the device-code request fails, or the token cannot be saved;
* retried: a poll fails in transport or returns non-2xx, ``pending``,
  ``slow_down``;
* terminal but expected: ``expired_token``, ``access_denied``, or the
  user closing the prompt.
"""

import logging
import threading
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Callable, Protocol

import requests

from proxy_tray.credentials import CredentialStore
from proxy_tray.platform_utils import open_url_in_browser

logger = logging.getLogger(__name__)

GITHUB_BASE_URL = "https://github.com"
GITHUB_CLIENT_ID = "Iv1.b507a08c87ecfe98"
GITHUB_APP_SCOPES = "read:user"
DEVICE_GRANT_TYPE = "urn:ietf:params:oauth:grant-type:device_code"

DEFAULT_INTERVAL = 5      # seconds, when the server does not say
SLOW_DOWN_STEP = 2        # seconds added per slow_down
MAX_INTERVAL = 60         # cap for repeated slow_down
SUCCESS_CLOSE_DELAY = 1.5
FAILURE_CLOSE_DELAY = 2.0
WRITE_FAILURE_CLOSE_DELAY = 3.0

STATUS_WAITING = "waiting"
STATUS_SUCCESS = "success"
STATUS_ERROR = "error"

_WAITING_TEXT = "Waiting for authorization…"


class DeviceAuthError(RuntimeError):
    """The device code could not be obtained from GitHub."""


class AuthStatus(str, Enum):
    SUCCESS = "success"
    EXPIRED = "expired"
    ERROR = "error"
    CANCELED = "canceled"


@dataclass(frozen=True)
class AuthOutcome:
    """How a device-flow session ended."""
    status: AuthStatus
    message: str
    token_path: str | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"status": self.status.value, "message": self.message}
        if self.token_path:
            result["token_path"] = self.token_path
        return result


@dataclass(frozen=True)
class DeviceAuthSession:
    device_code: str
    user_code: str
    verification_uri: str
    interval: int
    poll_count: int = 0
    expires_in: int | None = None

    @classmethod
    def from_response(cls, data: dict[str, Any]) -> "DeviceAuthSession":
        """Build a session from the device-code response.

        The first poll waits one second longer than the server asks.
        """
        try:
            return cls(
                device_code=str(data["device_code"]),
                user_code=str(data["user_code"]),
                verification_uri=str(data["verification_uri"]),
                interval=int(data.get("interval") or DEFAULT_INTERVAL) + 1,
                expires_in=int(data["expires_in"]) if data.get("expires_in") else None,
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise DeviceAuthError(f"Malformed device code response: {exc}") from exc


# ======================================================================
# Events (inputs to the state machine)
# ======================================================================


@dataclass(frozen=True)
class PollFailed:
    """Transport error or non-2xx answer from the token endpoint."""
    reason: str


@dataclass(frozen=True)
class Pending:
    pass


@dataclass(frozen=True)
class SlowDown:
    pass


@dataclass(frozen=True)
class Expired:
    pass


@dataclass(frozen=True)
class Denied:
    pass


@dataclass(frozen=True)
class TokenReceived:
    access_token: str


@dataclass(frozen=True)
class TokenSaved:
    token_path: str


@dataclass(frozen=True)
class TokenWriteFailed:
    reason: str


@dataclass(frozen=True)
class Canceled:
    pass


# ======================================================================
# Effects (outputs of the state machine)
# ======================================================================


@dataclass(frozen=True)
class Schedule:
    """Poll again after *delay* seconds."""
    delay: float


@dataclass(frozen=True)
class PersistToken:
    token: str


@dataclass(frozen=True)
class ShowStatus:
    text: str
    kind: str = STATUS_WAITING


@dataclass(frozen=True)
class CloseAfter:
    delay: float


@dataclass(frozen=True)
class Resolve:
    outcome: AuthOutcome


_POLL_EVENTS = (PollFailed, Pending, SlowDown, Expired, Denied, TokenReceived)


def transition(session: DeviceAuthSession, event: object) -> tuple[DeviceAuthSession, list]:
    """Return the next session and the effects to carry out for *event*."""
    if isinstance(event, _POLL_EVENTS):
        session = replace(session, poll_count=session.poll_count + 1)
    count = session.poll_count

    if isinstance(event, PollFailed):
        return session, [
            ShowStatus(f"{_WAITING_TEXT} retrying ({count})"),
            Schedule(session.interval),
        ]

    if isinstance(event, Pending):
        return session, [
            ShowStatus(f"{_WAITING_TEXT} ({count})"),
            Schedule(session.interval),
        ]

    if isinstance(event, SlowDown):
        session = replace(
            session, interval=min(session.interval + SLOW_DOWN_STEP, MAX_INTERVAL)
        )
        return session, [ShowStatus(_WAITING_TEXT), Schedule(session.interval)]

    if isinstance(event, TokenReceived):
        return session, [PersistToken(event.access_token)]

    if isinstance(event, TokenSaved):
        return session, [
            ShowStatus("Signed in to GitHub!", STATUS_SUCCESS),
            CloseAfter(SUCCESS_CLOSE_DELAY),
            Resolve(AuthOutcome(AuthStatus.SUCCESS, "GitHub token saved", event.token_path)),
        ]

    if isinstance(event, TokenWriteFailed):
        return session, [
            ShowStatus(f"Could not save token: {event.reason}", STATUS_ERROR),
            CloseAfter(WRITE_FAILURE_CLOSE_DELAY),
            Resolve(AuthOutcome(AuthStatus.ERROR, f"Failed to write token: {event.reason}")),
        ]

    if isinstance(event, Expired):
        return session, [
            ShowStatus("The code has expired, please try again.", STATUS_ERROR),
            CloseAfter(FAILURE_CLOSE_DELAY),
            Resolve(AuthOutcome(AuthStatus.EXPIRED, "Device code expired")),
        ]

    if isinstance(event, Denied):
        return session, [
            ShowStatus("Authorization was denied.", STATUS_ERROR),
            CloseAfter(FAILURE_CLOSE_DELAY),
            Resolve(AuthOutcome(AuthStatus.ERROR, "Authorization denied")),
        ]

    if isinstance(event, Canceled):
        return session, [
            Resolve(AuthOutcome(AuthStatus.CANCELED, "Sign-in window closed by user")),
        ]

    raise TypeError(f"Unknown device flow event: {event!r}")


def classify_poll_response(ok: bool, payload: Any, reason: str = "") -> object:
    """Map one token-endpoint answer onto a state-machine event."""
    if not ok:
        return PollFailed(reason or "HTTP error")
    if not isinstance(payload, dict):
        return PollFailed("response was not a JSON object")
    if payload.get("access_token"):
        return TokenReceived(payload["access_token"])
    error = payload.get("error")
    if error == "slow_down":
        return SlowDown()
    if error == "expired_token":
        return Expired()
    if error == "access_denied":
        return Denied()
    return Pending()


# ======================================================================
# HTTP client
# ======================================================================


@dataclass(frozen=True)
class PollResponse:
    ok: bool
    status_code: int
    payload: Any


class GitHubDeviceClient:
    """Talks to GitHub's device-code and token endpoints."""

    def __init__(
        self,
        base_url: str = GITHUB_BASE_URL,
        client_id: str = GITHUB_CLIENT_ID,
        scope: str = GITHUB_APP_SCOPES,
        http: requests.Session | None = None,
        timeout: float = 15,
    ):
        self._base_url = base_url.rstrip("/")
        self._client_id = client_id
        self._scope = scope
        self._http = http or requests.Session()
        self._timeout = timeout

    def _post(self, path: str, body: dict[str, str]) -> requests.Response:
        return self._http.post(
            f"{self._base_url}{path}",
            json=body,
            headers={"Accept": "application/json"},
            timeout=self._timeout,
        )

    def request_device_code(self) -> dict[str, Any]:
        """Return the device-code payload or raise :class:`DeviceAuthError`."""
        try:
            resp = self._post(
                "/login/device/code",
                {"client_id": self._client_id, "scope": self._scope},
            )
        except requests.RequestException as exc:
            raise DeviceAuthError(f"Failed to get device code: {exc}") from exc
        if not resp.ok:
            raise DeviceAuthError(
                f"Failed to get device code: HTTP {resp.status_code} - {resp.text}"
            )
        try:
            return resp.json()
        except ValueError as exc:
            raise DeviceAuthError("Device code response was not JSON") from exc

    def poll_token(self, device_code: str) -> PollResponse:
        """Ask once for the access token.  Transport errors propagate."""
        resp = self._post(
            "/login/oauth/access_token",
            {
                "client_id": self._client_id,
                "device_code": device_code,
                "grant_type": DEVICE_GRANT_TYPE,
            },
        )
        try:
            payload = resp.json()
        except ValueError:
            payload = None
        return PollResponse(ok=resp.ok, status_code=resp.status_code, payload=payload)


# ======================================================================
# Imperative shell
# ======================================================================


class VerificationPrompt(Protocol):
    """The window that shows the user code while polling runs."""

    def show(self) -> None:
        ...

    def set_status(self, text: str, kind: str = STATUS_WAITING) -> None:
        ...

    def close(self, delay: float = 0.0) -> None:
        """Close now, or after *delay* seconds."""
        ...


PromptFactory = Callable[[DeviceAuthSession, Callable[[], None]], VerificationPrompt]
Waiter = Callable[[threading.Event, float], bool]


def _event_wait(cancelled: threading.Event, delay: float) -> bool:
    return cancelled.wait(timeout=delay)


class _PollRun:
    """Book-keeping for one ``begin()`` call."""

    def __init__(self) -> None:
        self.cancelled = threading.Event()
        self.prompt: VerificationPrompt | None = None

    def cancel(self) -> None:
        self.cancelled.set()


class DeviceAuthFlow:
    """
    Runs the device flow end to end.

    :meth:`begin` blocks until the session reaches a terminal outcome, so
    call it from a worker thread.  Only one session is live at a time: a new
    ``begin()`` cancels the previous one and closes its prompt.

    Parameters
    ----------
    credentials : CredentialStore
        Receives the access token.
    client : GitHubDeviceClient, optional
        HTTP access to GitHub.
    open_browser : callable, optional
        Opens the verification URL; failures are ignored.
    waiter : callable, optional
        ``waiter(cancelled_event, seconds) -> bool``; returns True when the
        wait was cut short by cancellation.
    clock : callable, optional
        Monotonic seconds; bounds polling by the code's ``expires_in``.
    """

    def __init__(
        self,
        credentials: CredentialStore,
        client: GitHubDeviceClient | None = None,
        open_browser: Callable[[str], Any] = open_url_in_browser,
        waiter: Waiter = _event_wait,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._credentials = credentials
        self._client = client or GitHubDeviceClient()
        self._open_browser = open_browser
        self._wait = waiter
        self._clock = clock
        self._active: _PollRun | None = None
        self._lock = threading.Lock()

    @property
    def active(self) -> bool:
        with self._lock:
            return self._active is not None

    def cancel(self) -> None:
        """Cancel the live session, if any, and close its prompt."""
        with self._lock:
            run = self._active
        if run is not None:
            _retire(run)

    def begin(self, prompt_factory: PromptFactory) -> AuthOutcome:
        """Request a code, show it, and poll until a terminal outcome.

        Raises :class:`DeviceAuthError` if GitHub will not issue a code.
        """
        session = DeviceAuthSession.from_response(self._client.request_device_code())
        logger.info("Device code issued; verification at %s", session.verification_uri)

        try:
            self._open_browser(session.verification_uri)
        except Exception:
            logger.warning("Could not open the verification page.", exc_info=True)

        run = _PollRun()
        with self._lock:
            stale, self._active = self._active, run
        if stale is not None:
            _retire(stale)

        run.prompt = prompt_factory(session, run.cancel)
        run.prompt.show()
        try:
            outcome = self._poll_loop(session, run)
        finally:
            with self._lock:
                if self._active is run:
                    self._active = None
        logger.info("Device flow finished: %s", outcome.status.value)
        return outcome

    def _poll_loop(self, session: DeviceAuthSession, run: _PollRun) -> AuthOutcome:
        delay: float = session.interval
        deadline = self._clock() + session.expires_in if session.expires_in else None
        while True:
            if self._wait(run.cancelled, delay) or run.cancelled.is_set():
                event = Canceled()
            elif deadline is not None and self._clock() >= deadline:
                event = Expired()
            else:
                event = self._poll_once(session)
                # Closing the prompt during a request discards its answer.
                if run.cancelled.is_set():
                    event = Canceled()
            session, effects = transition(session, event)

            while effects:
                effect = effects.pop(0)
                if isinstance(effect, ShowStatus):
                    _safe_prompt_call(run, "set_status", effect.text, effect.kind)
                elif isinstance(effect, CloseAfter):
                    _safe_prompt_call(run, "close", effect.delay)
                elif isinstance(effect, PersistToken):
                    session, follow_up = transition(session, self._persist(effect.token))
                    effects = follow_up + effects
                elif isinstance(effect, Schedule):
                    delay = effect.delay
                elif isinstance(effect, Resolve):
                    return effect.outcome

    def _poll_once(self, session: DeviceAuthSession) -> object:
        try:
            resp = self._client.poll_token(session.device_code)
        except requests.RequestException as exc:
            logger.warning("Auth poll error, retrying: %s", exc)
            return PollFailed(str(exc))
        return classify_poll_response(resp.ok, resp.payload, f"HTTP {resp.status_code}")

    def _persist(self, token: str) -> object:
        try:
            self._credentials.write(token)
        except Exception as exc:
            logger.error("Failed to write token: %s", exc)
            return TokenWriteFailed(str(exc))
        return TokenSaved(str(self._credentials.token_path))


def _retire(run: _PollRun) -> None:
    run.cancel()
    _safe_prompt_call(run, "close", 0.0)


def _safe_prompt_call(run: _PollRun, method: str, *args) -> None:
    if run.prompt is None:
        return
    try:
        getattr(run.prompt, method)(*args)
    except Exception:
        logger.debug("Verification prompt %s failed.", method, exc_info=True)
