"""Thin session wrapper around ``hvac`` for the two things vssh needs from Vault.

Pattern: Narrow Backend Facade
-------------------------------
vssh only ever asks Vault three questions: *is my token still good?*,
*exchange these credentials for a token*, and *sign this public key*.  All of
them go through ``BackendSession`` so the rest of the code never touches
``hvac`` directly and tests can patch a single ``hvac.Client``.

``is_valid`` is a gate predicate: every failure (no token, network error,
403, malformed response, TTL below the floor) collapses to ``False``.  The
write-style operations raise ``VaultBackendError`` subclasses instead.
"""

from __future__ import annotations

import logging
from typing import Any

import hvac
import requests

from vssh.config.settings import VaultConfig

# A token with less than this left is treated as already expired.
MIN_TOKEN_TTL_SECONDS = 300


class VaultBackendError(Exception):
    """Raised when a Vault write-style call fails."""


class VaultLoginError(VaultBackendError):
    """Raised when a login call returns no usable auth block."""


class VaultSignError(VaultBackendError):
    """Raised when Vault refuses to sign or returns no ``signed_key``."""


class BackendSession:
    """Holds the Vault client, its namespace, and the current token."""

    def __init__(self, config: VaultConfig, logger: logging.Logger | None = None) -> None:
        self._config = config
        self._logger = logger or logging.getLogger(__name__)
        # token="" stops hvac from falling back to VAULT_TOKEN / ~/.vault-token
        # on its own; token discovery belongs to the authenticator.
        self._client = hvac.Client(
            url=config.address,
            token="",
            namespace=config.namespace,
            timeout=config.timeout,
        )

    @property
    def token(self) -> str | None:
        return self._client.token or None

    def set_token(self, value: str) -> None:
        self._client.token = value

    def is_valid(self) -> bool:
        """Return ``True`` if the current token has at least 5 minutes left."""
        if not self._client.token:
            self._logger.debug("No token set")
            return False

        try:
            response = self._client.auth.token.lookup_self()
        except (hvac.exceptions.VaultError, requests.exceptions.RequestException) as exc:
            self._logger.debug("Token lookup failed: %s", exc)
            return False

        data = response.get("data") if isinstance(response, dict) else None
        if not data:
            self._logger.debug("Token lookup returned no data")
            return False

        ttl = _coerce_ttl(data.get("ttl"))
        if ttl is None:
            self._logger.debug("Token TTL missing or unreadable: %r", data.get("ttl"))
            return False

        if ttl < MIN_TOKEN_TTL_SECONDS:
            self._logger.debug("Token TTL too low: %ss", ttl)
            return False

        self._logger.debug("Token is valid with TTL: %ss", ttl)
        return True

    def write(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        """Write *payload* to *path* and return the decoded response body.

        An empty (204) response comes back as ``{}``.
        """
        try:
            response = self._client.write_data(path, data=payload)
        except (hvac.exceptions.VaultError, requests.exceptions.RequestException) as exc:
            raise VaultBackendError(f"Vault write to {path} failed: {exc}") from exc
        return response if isinstance(response, dict) else {}

    def login(self, mount: str, identifier: str, payload: dict[str, Any]) -> str:
        """Log in at ``auth/<mount>/login/<identifier>`` and return the client token."""
        path = f"auth/{mount}/login/{identifier}"
        try:
            response = self.write(path, payload)
        except VaultBackendError as exc:
            raise VaultLoginError(f"Login at auth/{mount} failed: {exc}") from exc

        client_token = client_token_from(response)
        if client_token is None:
            raise VaultLoginError(f"No authentication data returned from auth/{mount}")
        return client_token

    def sign(self, signing_mount: str, role: str, public_key: str, ttl: str) -> str:
        """Ask ``<signing_mount>/sign/<role>`` to sign *public_key* for *ttl*.

        Returns the OpenSSH certificate text.
        """
        path = f"{signing_mount}/sign/{role}"
        self._logger.debug("Signing public key at %s (ttl=%s)", path, ttl)
        try:
            response = self.write(path, {"public_key": public_key, "ttl": ttl})
        except VaultBackendError as exc:
            raise VaultSignError(f"Failed to sign SSH key with role '{role}': {exc}") from exc

        data = response.get("data")
        if not data:
            raise VaultSignError(f"No data returned from Vault SSH signing at {path}")

        signed_key = data.get("signed_key")
        if not isinstance(signed_key, str) or not signed_key.strip():
            raise VaultSignError(f"signed_key not found in Vault response from {path}")
        return signed_key


def client_token_from(response: dict[str, Any]) -> str | None:
    """Extract ``auth.client_token`` from a login-style response."""
    auth = response.get("auth")
    if not isinstance(auth, dict):
        return None
    token = auth.get("client_token")
    if not isinstance(token, str) or not token:
        return None
    return token


def _coerce_ttl(raw: Any) -> int | None:
    if isinstance(raw, bool) or raw is None:
        return None
    if isinstance(raw, (int, float)):
        return int(raw)
    try:
        return int(str(raw).strip())
    except ValueError:
        return None
