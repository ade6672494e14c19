"""
HTTP helpers around the Copilot service and the local proxy.

:class:`CopilotClient` talks to GitHub directly with the stored GitHub
token, so the model list and the account plan can be read before the proxy
is running.  :class:`LocalProxyClient` talks to the running proxy: health,
readiness after a start, and premium-request usage.
"""

import logging
import threading
import time
from typing import Any, Callable

import requests

from proxy_tray.config import (
    ACCOUNT_BUSINESS,
    ACCOUNT_ENTERPRISE,
    ACCOUNT_INDIVIDUAL,
)
from proxy_tray.credentials import CredentialStore

logger = logging.getLogger(__name__)

COPILOT_TOKEN_URL = "https://api.github.com/copilot_internal/v2/token"

# Identify as the VS Code Copilot Chat extension; the API rejects unknown editors.
EDITOR_VERSION = "vscode/1.97.0"
EDITOR_PLUGIN_VERSION = "copilot-chat/0.26.7"
USER_AGENT = "GitHubCopilotChat/0.26.7"
INTEGRATION_ID = "vscode-chat"

# Paid plans first; every account can reach the individual endpoint.
DETECTION_ORDER = (ACCOUNT_ENTERPRISE, ACCOUNT_BUSINESS, ACCOUNT_INDIVIDUAL)

READY_RETRIES = 30
READY_INTERVAL = 1.0


class CopilotApiError(RuntimeError):
    """A Copilot or proxy request failed."""


class NotSignedInError(CopilotApiError):
    """No GitHub token is stored."""


class ProxyNotReadyError(CopilotApiError):
    """The local proxy did not answer its health check in time."""


def copilot_base_url(account_type: str) -> str:
    """Return the Copilot API root for *account_type*."""
    if account_type == ACCOUNT_INDIVIDUAL:
        return "https://api.githubcopilot.com"
    return f"https://api.{account_type}.githubcopilot.com"


def model_ids(models: dict[str, Any]) -> list[str]:
    """Return the model ids listed in a ``/models`` response, in order."""
    ids = []
    for entry in models.get("data") or []:
        if isinstance(entry, dict) and entry.get("id"):
            ids.append(str(entry["id"]))
    return ids


def _editor_headers() -> dict[str, str]:
    return {
        "accept": "application/json",
        "content-type": "application/json",
        "editor-version": EDITOR_VERSION,
        "editor-plugin-version": EDITOR_PLUGIN_VERSION,
        "user-agent": USER_AGENT,
    }


class CopilotClient:
    """
    Reads Copilot metadata with the signed-in GitHub account.

    Parameters
    ----------
    credentials : CredentialStore
        Source of the GitHub token.
    http : requests.Session, optional
    timeout : float
        Timeout for the token and model-list requests.
    detect_timeout : float
        Timeout for each plan check during account detection.
    """

    def __init__(
        self,
        credentials: CredentialStore,
        http: requests.Session | None = None,
        timeout: float = 10,
        detect_timeout: float = 8,
    ):
        self._credentials = credentials
        self._http = http or requests.Session()
        self._timeout = timeout
        self._detect_timeout = detect_timeout

    def copilot_token(self) -> str:
        """Exchange the GitHub token for a short-lived Copilot token."""
        github_token = self._credentials.read_with_migration()
        if not github_token:
            raise NotSignedInError("Sign in to GitHub first")
        headers = {**_editor_headers(), "authorization": f"token {github_token}"}
        resp = self._get(COPILOT_TOKEN_URL, headers, self._timeout)
        if not resp.ok:
            raise CopilotApiError(f"Failed to get Copilot token: HTTP {resp.status_code}")
        try:
            return str(resp.json()["token"])
        except (ValueError, KeyError, TypeError) as exc:
            raise CopilotApiError("Copilot token response was malformed") from exc

    def fetch_models(self, account_type: str = ACCOUNT_INDIVIDUAL) -> dict[str, Any]:
        """Return the ``/models`` payload for *account_type*."""
        resp = self._get_models(self.copilot_token(), account_type, self._timeout)
        if not resp.ok:
            raise CopilotApiError(f"Failed to fetch the model list: HTTP {resp.status_code}")
        try:
            payload = resp.json()
        except ValueError as exc:
            raise CopilotApiError("Model list response was not JSON") from exc
        if not isinstance(payload, dict):
            raise CopilotApiError("Model list response was not a JSON object")
        return payload

    def detect_account_type(self) -> dict[str, Any]:
        """Try each plan's endpoint and report the first that answers."""
        copilot_token = self.copilot_token()
        for account_type in DETECTION_ORDER:
            try:
                resp = self._get_models(copilot_token, account_type, self._detect_timeout)
            except CopilotApiError as exc:
                logger.warning("Account type check for %s failed: %s", account_type, exc)
                continue
            if resp.ok:
                logger.info("Detected Copilot account type: %s", account_type)
                return {"account_type": account_type, "detected": True}
        return {
            "account_type": ACCOUNT_INDIVIDUAL,
            "detected": False,
            "message": "Could not detect the account type; using individual",
        }

    def _get_models(self, copilot_token: str, account_type: str, timeout: float) -> requests.Response:
        headers = {
            **_editor_headers(),
            "authorization": f"Bearer {copilot_token}",
            "copilot-integration-id": INTEGRATION_ID,
        }
        return self._get(f"{copilot_base_url(account_type)}/models", headers, timeout)

    def _get(self, url: str, headers: dict[str, str], timeout: float) -> requests.Response:
        try:
            return self._http.get(url, headers=headers, timeout=timeout)
        except requests.RequestException as exc:
            raise CopilotApiError(f"Request to {url} failed: {exc}") from exc


class LocalProxyClient:
    """Health, readiness and usage of the proxy listening on *port*."""

    def __init__(
        self,
        port: int,
        http: requests.Session | None = None,
        timeout: float = 5,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._port = int(port)
        self._http = http or requests.Session()
        self._timeout = timeout
        self._sleep = sleep

    @property
    def base_url(self) -> str:
        return f"http://localhost:{self._port}"

    def health(self) -> str:
        """Return the body of ``GET /``; raise if the proxy is not healthy."""
        try:
            resp = self._http.get(f"{self.base_url}/", timeout=self._timeout)
        except requests.RequestException as exc:
            raise CopilotApiError(f"Health check failed: {exc}") from exc
        if not resp.ok:
            raise CopilotApiError(f"Health check failed: {resp.status_code}")
        return resp.text

    def usage(self) -> dict[str, Any]:
        """Return the proxy's ``/usage`` report."""
        try:
            resp = self._http.get(f"{self.base_url}/usage", timeout=self._timeout)
        except requests.RequestException as exc:
            raise CopilotApiError(f"Usage request failed: {exc}") from exc
        if not resp.ok:
            raise CopilotApiError(f"Usage request failed: {resp.status_code}")
        try:
            return resp.json()
        except ValueError as exc:
            raise CopilotApiError("Usage response was not JSON") from exc

    def wait_for_ready(
        self,
        max_retries: int = READY_RETRIES,
        interval: float = READY_INTERVAL,
        cancelled: threading.Event | None = None,
    ) -> None:
        """Poll :meth:`health` until it succeeds.

        Raises :class:`ProxyNotReadyError` after *max_retries* failures, or
        as soon as *cancelled* is set.
        """
        for attempt in range(1, max_retries + 1):
            if cancelled is not None and cancelled.is_set():
                raise ProxyNotReadyError("Stopped waiting for the proxy")
            try:
                self.health()
            except CopilotApiError as exc:
                logger.debug("Proxy not ready (attempt %d): %s", attempt, exc)
                self._sleep(interval)
                continue
            logger.info("Proxy is ready at %s", self.base_url)
            return
        raise ProxyNotReadyError("Service start timeout, please check the logs")


def summarize_usage(usage: dict[str, Any]) -> str:
    """One-line summary of a ``/usage`` report for the window."""
    parts = []
    if usage.get("copilot_plan"):
        parts.append(f"Plan: {usage['copilot_plan']}")
    snapshots = usage.get("quota_snapshots") or {}
    for key, label in (("premium_interactions", "premium requests"), ("chat", "chat")):
        quota = snapshots.get(key)
        if not isinstance(quota, dict):
            continue
        if quota.get("unlimited"):
            parts.append(f"{label} unlimited")
            continue
        entitlement = quota.get("entitlement") or 0
        remaining = quota.get("remaining") or 0
        parts.append(f"{label} {entitlement - remaining} / {entitlement} used")
    if usage.get("quota_reset_date"):
        parts.append(f"resets {usage['quota_reset_date']}")
    return " · ".join(parts) or "No usage data"
