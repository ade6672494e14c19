"""Command dispatch between the window and the core services.

The window speaks a small vocabulary of named commands with dict payloads
(``service_start``, ``auth_status``, …) and gets plain dicts back.  This
module maps each name onto the broadcaster, supervisor, credential store
and device flow, so the UI never touches them directly.
"""

import logging
from typing import Any, Callable

from proxy_tray.claude_env import ClaudeSettings, launch_claude_code
from proxy_tray.config import ACCOUNT_INDIVIDUAL, DEFAULT_PORT
from proxy_tray.copilot_api import (
    CopilotClient,
    LocalProxyClient,
    ProxyNotReadyError,
    model_ids,
)
from proxy_tray.credentials import CredentialStore
from proxy_tray.device_auth import DeviceAuthFlow, PromptFactory
from proxy_tray.platform_utils import open_url_in_browser
from proxy_tray.state import StateBroadcaster
from proxy_tray.supervisor import ProcessSupervisor

logger = logging.getLogger(__name__)

CLOSE_MINIMIZE = "minimize"
CLOSE_QUIT = "quit"
CLOSE_CANCEL = "cancel"


class UnknownCommandError(ValueError):
    """The window asked for a command nobody handles."""


class CommandRouter:
    """
    Executes window commands.

    Parameters
    ----------
    broadcaster, supervisor, credentials, device_flow
        The core services.
    prompt_factory : callable
        Builds the device-code prompt for ``auth_device_code_start``.
    on_minimize, on_quit : callable
        Window-level reactions to ``close_confirm_response``.
    copilot : CopilotClient, optional
        Model list and account-type detection.
    claude_settings : ClaudeSettings, optional
    proxy_client_factory : callable, optional
        Builds a :class:`LocalProxyClient` for a port.
    claude_launcher : callable, optional
        Opens Claude Code in a workspace; defaults to :func:`launch_claude_code`.
    """

    def __init__(
        self,
        broadcaster: StateBroadcaster,
        supervisor: ProcessSupervisor,
        credentials: CredentialStore,
        device_flow: DeviceAuthFlow,
        prompt_factory: PromptFactory,
        on_minimize: Callable[[], None] | None = None,
        on_quit: Callable[[], None] | None = None,
        copilot: CopilotClient | None = None,
        claude_settings: ClaudeSettings | None = None,
        proxy_client_factory: Callable[[int], LocalProxyClient] = LocalProxyClient,
        claude_launcher: Callable[..., dict[str, Any]] = launch_claude_code,
    ):
        self._broadcaster = broadcaster
        self._supervisor = supervisor
        self._credentials = credentials
        self._device_flow = device_flow
        self._prompt_factory = prompt_factory
        self._on_minimize = on_minimize
        self._on_quit = on_quit
        self._copilot = copilot or CopilotClient(credentials)
        self._claude_settings = claude_settings or ClaudeSettings()
        self._proxy_client_factory = proxy_client_factory
        self._claude_launcher = claude_launcher
        self._handlers: dict[str, Callable[[dict[str, Any]], dict[str, Any]]] = {
            "service_start": self._service_start,
            "service_stop": self._service_stop,
            "service_logs": self._service_logs,
            "service_wait_ready": self._service_wait_ready,
            "service_usage": self._service_usage,
            "auth_status": self._auth_status,
            "auth_device_code_start": self._auth_device_code_start,
            "delete_token": self._delete_token,
            "fetch_models": self._fetch_models,
            "detect_account_type": self._detect_account_type,
            "write_claude_env": self._write_claude_env,
            "clear_claude_env": self._clear_claude_env,
            "check_claude_env": self._check_claude_env,
            "launch_claude_code": self._launch_claude_code,
            "close_confirm_response": self._close_confirm_response,
            "open_external": self._open_external,
        }

    @property
    def commands(self) -> list[str]:
        return sorted(self._handlers)

    def invoke(self, command: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:
        """Run *command*.  Fatal errors from the services propagate."""
        handler = self._handlers.get(command)
        if handler is None:
            raise UnknownCommandError(f"Unknown command: {command}")
        logger.debug("Command %s", command)
        return handler(payload or {})

    # ---- service ----

    def _service_start(self, payload: dict[str, Any]) -> dict[str, Any]:
        result = self._broadcaster.start_service(
            payload.get("args"), payload.get("model_name", "")
        )
        return {"pid": result.pid, "already_running": result.already_running}

    def _service_stop(self, payload: dict[str, Any]) -> dict[str, Any]:
        result = self._broadcaster.stop_service()
        return {"ok": result.ok, "message": result.message}

    def _service_logs(self, payload: dict[str, Any]) -> dict[str, Any]:
        return {"lines": self._supervisor.get_logs()}

    def _service_wait_ready(self, payload: dict[str, Any]) -> dict[str, Any]:
        client = self._proxy_client_factory(_port(payload))
        try:
            client.wait_for_ready(cancelled=payload.get("cancelled"))
        except ProxyNotReadyError as exc:
            return {"ready": False, "message": str(exc)}
        return {"ready": True, "base_url": client.base_url}

    def _service_usage(self, payload: dict[str, Any]) -> dict[str, Any]:
        return self._proxy_client_factory(_port(payload)).usage()

    # ---- auth ----

    def _auth_status(self, payload: dict[str, Any]) -> dict[str, Any]:
        return self._credentials.status()

    def _auth_device_code_start(self, payload: dict[str, Any]) -> dict[str, Any]:
        return self._device_flow.begin(self._prompt_factory).to_dict()

    def _delete_token(self, payload: dict[str, Any]) -> dict[str, Any]:
        self._credentials.delete()
        return {"ok": True, "token_path": str(self._credentials.token_path)}

    # ---- copilot ----

    def _fetch_models(self, payload: dict[str, Any]) -> dict[str, Any]:
        models = self._copilot.fetch_models(payload.get("account_type") or ACCOUNT_INDIVIDUAL)
        return {"models": model_ids(models), "data": models.get("data") or []}

    def _detect_account_type(self, payload: dict[str, Any]) -> dict[str, Any]:
        return self._copilot.detect_account_type()

    # ---- claude code ----

    def _write_claude_env(self, payload: dict[str, Any]) -> dict[str, Any]:
        return self._claude_settings.write_env(
            _port(payload), payload.get("model", ""), payload.get("small_model", "")
        )

    def _clear_claude_env(self, payload: dict[str, Any]) -> dict[str, Any]:
        return self._claude_settings.clear_env()

    def _check_claude_env(self, payload: dict[str, Any]) -> dict[str, Any]:
        return self._claude_settings.check_env()

    def _launch_claude_code(self, payload: dict[str, Any]) -> dict[str, Any]:
        cwd = payload.get("cwd")
        if not cwd:
            return {"ok": False, "canceled": True}
        return self._claude_launcher(
            cwd, _port(payload), payload.get("model", ""), payload.get("small_model", "")
        )

    # ---- window ----

    def _close_confirm_response(self, payload: dict[str, Any]) -> dict[str, Any]:
        action = payload.get("action", CLOSE_CANCEL)
        if action == CLOSE_MINIMIZE and self._on_minimize:
            self._on_minimize()
        elif action == CLOSE_QUIT and self._on_quit:
            self._on_quit()
        return {"ok": True}

    def _open_external(self, payload: dict[str, Any]) -> dict[str, Any]:
        url = payload.get("url", "")
        opened = bool(url) and open_url_in_browser(url)
        return {"ok": True, "opened": opened}


def _port(payload: dict[str, Any]) -> int:
    return int(payload.get("port") or DEFAULT_PORT)
