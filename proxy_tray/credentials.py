"""
GitHub token storage for Copilot Proxy Tray.

The token lives in the application data directory as either an encrypted
blob (``github_token.enc``) or, when the platform offers no encryption, a
plaintext file (``github_token``).  Older releases and the command-line
proxy kept it under ``~/.local/share/copilot-proxy``; that location is only
read so the token can be moved forward.

Availability wins over secrecy: if encryption fails the token is still
written, in plaintext, and a warning is logged.

**Windows**: encrypted with DPAPI (``win32crypt`` from pywin32), bound to
the current user account.

**macOS / Linux**: no cipher is available; plaintext only.
"""

import logging
from pathlib import Path
from typing import Protocol

from proxy_tray.platform_utils import (
    IS_WINDOWS,
    get_config_dir,
    get_legacy_token_dir,
)

logger = logging.getLogger(__name__)

# ---- Windows DPAPI (pywin32) -------------------------------------------

_HAS_WIN32CRYPT = False
if IS_WINDOWS:
    try:
        import win32crypt  # type: ignore[import-untyped]
        _HAS_WIN32CRYPT = True
    except ImportError:
        logger.warning("pywin32 not installed; token will be stored unencrypted.")

TOKEN_FILENAME = "github_token"
ENCRYPTED_SUFFIX = ".enc"

_DPAPI_DESCRIPTION = "copilot-proxy github token"


class SecretCipher(Protocol):
    """Platform encryption capability used by :class:`CredentialStore`."""

    def is_available(self) -> bool:
        """Return whether encrypt/decrypt can be used right now."""
        ...

    def encrypt(self, plaintext: str) -> bytes:
        """Return an opaque blob for *plaintext*."""
        ...

    def decrypt(self, blob: bytes) -> str:
        """Return the plaintext sealed in *blob*."""
        ...


class DpapiCipher:
    """Windows Data Protection API, scoped to the logged-in user."""

    def is_available(self) -> bool:
        return _HAS_WIN32CRYPT

    def encrypt(self, plaintext: str) -> bytes:
        return win32crypt.CryptProtectData(
            plaintext.encode("utf-8"), _DPAPI_DESCRIPTION, None, None, None, 0
        )

    def decrypt(self, blob: bytes) -> str:
        _description, data = win32crypt.CryptUnprotectData(blob, None, None, None, 0)
        return data.decode("utf-8")


class UnavailableCipher:
    """Stand-in for platforms without at-rest encryption."""

    def is_available(self) -> bool:
        return False

    def encrypt(self, plaintext: str) -> bytes:
        raise RuntimeError("Token encryption is not available on this platform.")

    def decrypt(self, blob: bytes) -> str:
        raise RuntimeError("Token encryption is not available on this platform.")


def default_cipher() -> SecretCipher:
    """Return the best cipher for the running platform."""
    if IS_WINDOWS and _HAS_WIN32CRYPT:
        return DpapiCipher()
    return UnavailableCipher()


class CredentialStore:
    """
    Reads and writes the GitHub access token.

    Parameters
    ----------
    cipher : SecretCipher
        Encryption capability; :func:`default_cipher` when omitted.
    token_dir : Path, optional
        Current storage directory (the app data directory by default).
    legacy_dir : Path, optional
        Historical directory consulted only for migration.
    """

    def __init__(
        self,
        cipher: SecretCipher | None = None,
        token_dir: Path | None = None,
        legacy_dir: Path | None = None,
    ):
        self._cipher = cipher or default_cipher()
        self._token_dir = token_dir or get_config_dir()
        self._legacy_dir = legacy_dir or get_legacy_token_dir()

    # ---- paths ----

    @property
    def token_path(self) -> Path:
        """Plaintext path at the current location (also the base name)."""
        return self._token_dir / TOKEN_FILENAME

    @property
    def encrypted_path(self) -> Path:
        return self._token_dir / (TOKEN_FILENAME + ENCRYPTED_SUFFIX)

    @property
    def legacy_path(self) -> Path:
        return self._legacy_dir / TOKEN_FILENAME

    @property
    def legacy_encrypted_path(self) -> Path:
        return self._legacy_dir / (TOKEN_FILENAME + ENCRYPTED_SUFFIX)

    # ---- read ----

    def read_with_migration(self) -> str:
        """Return the stored token, or ``""`` when there is none.

        This is a read with write side effects: a plaintext token at the
        current location is re-encrypted when possible, and a token found
        only at the legacy location is written to the current location and
        the legacy files removed.
        """
        enc_path = self.encrypted_path
        plain_path = self.token_path
        cipher_ok = self._cipher.is_available()

        if enc_path.exists():
            if not cipher_ok:
                logger.warning("Encrypted token found but encryption is unavailable.")
                if plain_path.exists():
                    return _read_text(plain_path)
                return ""
            try:
                return self._cipher.decrypt(enc_path.read_bytes())
            except Exception:
                logger.warning("Failed to decrypt token.", exc_info=True)
                return ""

        if plain_path.exists():
            token = _read_text(plain_path)
            if token and cipher_ok:
                try:
                    self._token_dir.mkdir(parents=True, exist_ok=True)
                    enc_path.write_bytes(self._cipher.encrypt(token))
                    plain_path.unlink()
                    logger.info("Migrated token to encrypted storage.")
                except Exception:
                    logger.warning(
                        "Token migration to encrypted storage failed.", exc_info=True
                    )
            return token

        return self._migrate_legacy()

    read = read_with_migration

    def _migrate_legacy(self) -> str:
        legacy_enc = self.legacy_encrypted_path
        legacy_plain = self.legacy_path

        token = ""
        if legacy_enc.exists() and self._cipher.is_available():
            try:
                token = self._cipher.decrypt(legacy_enc.read_bytes())
            except Exception:
                logger.warning("Failed to decrypt legacy token.", exc_info=True)
        if not token and legacy_plain.exists():
            token = _read_text(legacy_plain)

        if not token:
            return ""

        self.write(token)
        for path in (legacy_enc, legacy_plain):
            try:
                path.unlink(missing_ok=True)
            except OSError:
                logger.warning("Failed to clean up legacy token file %s", path, exc_info=True)
        logger.info("Migrated token from legacy location %s", self._legacy_dir)
        return token

    # ---- write / delete ----

    def write(self, token: str) -> None:
        """Persist *token*, encrypted when the platform allows it.

        Raises ``OSError`` if even the plaintext fallback cannot be written.
        """
        self._token_dir.mkdir(parents=True, exist_ok=True)
        if self._cipher.is_available():
            try:
                self.encrypted_path.write_bytes(self._cipher.encrypt(token))
                self.token_path.unlink(missing_ok=True)
                return
            except Exception:
                logger.warning(
                    "Failed to encrypt token, falling back to plaintext.", exc_info=True
                )
        self.token_path.write_text(token, encoding="utf-8")

    def delete(self) -> None:
        """Remove every stored copy of the token, current and legacy."""
        for path in (
            self.encrypted_path,
            self.token_path,
            self.legacy_encrypted_path,
            self.legacy_path,
        ):
            try:
                path.unlink(missing_ok=True)
            except OSError:
                logger.warning("Could not delete %s", path, exc_info=True)
        logger.info("GitHub token deleted.")

    # ---- status ----

    def status(self) -> dict:
        """Return ``{has_token, token_path, message}`` for the UI."""
        has_token = bool(self.read_with_migration())
        return {
            "has_token": has_token,
            "token_path": str(self.token_path),
            "message": "GitHub token exists" if has_token else "GitHub token not found",
        }


def _read_text(path: Path) -> str:
    return path.read_text(encoding="utf-8").strip()
