"""Configuration management for Copilot Proxy Tray.

Stores and retrieves user settings from a JSON config file in the
platform-appropriate application data directory, and turns the
service-affecting settings into the worker's command-line arguments.
"""

import json
import logging
from pathlib import Path
from typing import Any

from proxy_tray.platform_utils import (
    get_config_dir as _platform_config_dir,
)
from proxy_tray.platform_utils import (
    get_log_path as _platform_log_path,
)

logger = logging.getLogger(__name__)

DEFAULT_PORT = 4399

# Copilot account plans the proxy understands
ACCOUNT_INDIVIDUAL = "individual"
ACCOUNT_BUSINESS = "business"
ACCOUNT_ENTERPRISE = "enterprise"
ACCOUNT_TYPES = (ACCOUNT_INDIVIDUAL, ACCOUNT_BUSINESS, ACCOUNT_ENTERPRISE)

DEFAULT_CONFIG: dict[str, Any] = {
    "port": DEFAULT_PORT,
    "account_type": ACCOUNT_INDIVIDUAL,
    "verbose": False,
    "manual_approve": False,
    "rate_limit_seconds": None,  # None = no rate limit
    "rate_limit_wait": False,
    "proxy_env": False,
    "show_token": False,
    "auto_start": False,  # start the proxy as soon as the app launches
    "default_model": "",
    "default_small_model": "",
    "start_minimized": False,
    "log_level": "INFO",
    # ---- log rotation ----
    "max_log_size_mb": 10,
    "log_backup_count": 3,
    # ---- risk acknowledgement ----
    "risk_accepted_at": None,  # ISO timestamp
    "risk_config_fingerprint": "",
}

# Keys whose change alters how the worker behaves
_FINGERPRINT_KEYS = (
    "port",
    "account_type",
    "verbose",
    "manual_approve",
    "rate_limit_seconds",
    "rate_limit_wait",
    "proxy_env",
    "show_token",
)


def get_config_dir() -> Path:
    """Return the platform-appropriate application config directory."""
    return _platform_config_dir()


def get_config_path() -> Path:
    """Return the path to the configuration file."""
    return get_config_dir() / "config.json"


def get_log_path() -> Path:
    """Return the path to the log file."""
    return _platform_log_path()


class Config:
    """Configuration manager backed by a JSON file."""

    def __init__(self, path: Path | None = None):
        """Load config from *path*, falling back to the platform default."""
        self._path = path or get_config_path()
        self._data: dict[str, Any] = dict(DEFAULT_CONFIG)
        self.load()

    @property
    def path(self) -> Path:
        return self._path

    # ---- persistence ----

    def load(self) -> None:
        """Load configuration from disk, applying defaults for missing keys."""
        if self._path.exists():
            try:
                with open(self._path, encoding="utf-8") as fh:
                    stored = json.load(fh)
                if not isinstance(stored, dict):
                    raise ValueError("config root is not an object")
                self._data = {**DEFAULT_CONFIG, **stored}
                logger.info("Configuration loaded from %s", self._path)
            except (ValueError, OSError) as exc:
                logger.warning("Could not read config (%s); using defaults.", exc)
                self._data = dict(DEFAULT_CONFIG)
        else:
            self._data = dict(DEFAULT_CONFIG)
            self.save()
            logger.info("Created default configuration at %s", self._path)

    def save(self) -> None:
        """Persist the current configuration to disk."""
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with open(self._path, "w", encoding="utf-8") as fh:
                json.dump(self._data, fh, indent=2)
            logger.info("Configuration saved.")
        except OSError as exc:
            logger.error("Failed to save configuration: %s", exc)

    def reset(self) -> None:
        """Restore every setting to its default and save."""
        self._data = dict(DEFAULT_CONFIG)
        self.save()

    # ---- accessors ----

    @property
    def port(self) -> int:
        """Return the port the proxy listens on."""
        return int(self._data.get("port", DEFAULT_PORT))

    @port.setter
    def port(self, value: int) -> None:
        """Set the listen port (1-65535)."""
        value = int(value)
        if not 1 <= value <= 65535:
            raise ValueError(f"port out of range: {value}")
        self._data["port"] = value

    @property
    def account_type(self) -> str:
        """Return the Copilot account plan."""
        return self._data.get("account_type", ACCOUNT_INDIVIDUAL)

    @account_type.setter
    def account_type(self, value: str) -> None:
        """Set the Copilot account plan, defaulting unknown values."""
        if value not in ACCOUNT_TYPES:
            value = ACCOUNT_INDIVIDUAL
        self._data["account_type"] = value

    @property
    def verbose(self) -> bool:
        return bool(self._data.get("verbose", False))

    @verbose.setter
    def verbose(self, value: bool) -> None:
        self._data["verbose"] = bool(value)

    @property
    def manual_approve(self) -> bool:
        """Return whether every proxied request needs manual approval."""
        return bool(self._data.get("manual_approve", False))

    @manual_approve.setter
    def manual_approve(self, value: bool) -> None:
        self._data["manual_approve"] = bool(value)

    @property
    def rate_limit_seconds(self) -> int | None:
        """Return the minimum seconds between requests, or None."""
        value = self._data.get("rate_limit_seconds")
        if value in (None, ""):
            return None
        return int(value)

    @rate_limit_seconds.setter
    def rate_limit_seconds(self, value: int | None) -> None:
        """Set the rate limit (None or a non-negative integer)."""
        self._data["rate_limit_seconds"] = None if value in (None, "") else max(0, int(value))

    @property
    def rate_limit_wait(self) -> bool:
        """Return whether rate-limited requests wait instead of failing."""
        return bool(self._data.get("rate_limit_wait", False))

    @rate_limit_wait.setter
    def rate_limit_wait(self, value: bool) -> None:
        self._data["rate_limit_wait"] = bool(value)

    @property
    def proxy_env(self) -> bool:
        """Return whether the worker honours HTTP(S)_PROXY variables."""
        return bool(self._data.get("proxy_env", False))

    @proxy_env.setter
    def proxy_env(self, value: bool) -> None:
        self._data["proxy_env"] = bool(value)

    @property
    def show_token(self) -> bool:
        return bool(self._data.get("show_token", False))

    @show_token.setter
    def show_token(self, value: bool) -> None:
        self._data["show_token"] = bool(value)

    @property
    def auto_start(self) -> bool:
        """Return whether the proxy starts when the app launches."""
        return bool(self._data.get("auto_start", False))

    @auto_start.setter
    def auto_start(self, value: bool) -> None:
        self._data["auto_start"] = bool(value)

    @property
    def default_model(self) -> str:
        """Return the model name shown in the tray tooltip."""
        return self._data.get("default_model", "")

    @default_model.setter
    def default_model(self, value: str) -> None:
        self._data["default_model"] = value.strip()

    @property
    def default_small_model(self) -> str:
        return self._data.get("default_small_model", "")

    @default_small_model.setter
    def default_small_model(self, value: str) -> None:
        self._data["default_small_model"] = value.strip()

    @property
    def start_minimized(self) -> bool:
        """Return whether the app starts hidden in the tray."""
        return bool(self._data.get("start_minimized", False))

    @start_minimized.setter
    def start_minimized(self, value: bool) -> None:
        self._data["start_minimized"] = bool(value)

    @property
    def log_level(self) -> str:
        """Return the current logging level name."""
        return self._data.get("log_level", "INFO")

    @log_level.setter
    def log_level(self, value: str) -> None:
        """Set the logging level name."""
        self._data["log_level"] = value

    # ---- log rotation ----

    @property
    def max_log_size_mb(self) -> int:
        """Return the maximum log file size in MB before rotation."""
        return int(self._data.get("max_log_size_mb", 10))

    @max_log_size_mb.setter
    def max_log_size_mb(self, value: int) -> None:
        """Set the maximum log file size in MB (minimum 1)."""
        self._data["max_log_size_mb"] = max(1, int(value))

    @property
    def log_backup_count(self) -> int:
        """Return the number of rotated log backups to keep."""
        return int(self._data.get("log_backup_count", 3))

    @log_backup_count.setter
    def log_backup_count(self, value: int) -> None:
        """Set the number of rotated log backups to keep."""
        self._data["log_backup_count"] = max(0, int(value))

    # ---- risk acknowledgement ----

    def fingerprint(self) -> str:
        """Return a string identifying the service-affecting settings."""
        return config_fingerprint(self._data)

    def needs_risk_acceptance(self) -> bool:
        """Return True when the usage-risk notice must be (re-)accepted.

        Acceptance is tied to the settings in force at the time, so changing
        any service-affecting setting asks again.
        """
        if not self._data.get("risk_accepted_at"):
            return True
        return self._data.get("risk_config_fingerprint", "") != self.fingerprint()

    def accept_risk(self, accepted_at: str) -> None:
        """Record acceptance of the usage-risk notice for the current settings."""
        self._data["risk_accepted_at"] = accepted_at
        self._data["risk_config_fingerprint"] = self.fingerprint()

    # ---- worker arguments ----

    def to_cli_args(self) -> list[str]:
        """Return the worker argument list for the current settings."""
        args = ["start", "--port", str(self.port)]
        if self.account_type != ACCOUNT_INDIVIDUAL:
            args += ["--account-type", self.account_type]
        if self.verbose:
            args.append("--verbose")
        if self.manual_approve:
            args.append("--manual")
        if self.rate_limit_seconds is not None:
            args += ["--rate-limit", str(self.rate_limit_seconds)]
        if self.rate_limit_wait:
            args.append("--wait")
        if self.proxy_env:
            args.append("--proxy-env")
        if self.show_token:
            args.append("--show-token")
        return args


def config_fingerprint(data: dict[str, Any]) -> str:
    """Build ``key=value|key=value`` over the service-affecting keys."""
    parts = []
    for key in _FINGERPRINT_KEYS:
        value = data.get(key)
        parts.append(f"{key}={'' if value is None else value}")
    return "|".join(parts)
