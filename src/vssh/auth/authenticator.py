"""Vault authentication for vssh.

Pattern: Reuse-or-Login Gate
-----------------------------
Before anything can be signed, the process needs a Vault token with some
life left in it.  ``Authenticator.ensure_authenticated`` walks a short state
machine:

  NoToken -> TokenLoaded -> TokenValidated(ok | stale)
          -> Authenticating(method) -> Authenticated -> Persisted

A token from ``VAULT_TOKEN`` or the token file is reused if Vault says it has
at least five minutes left; in that case the lookup is the only network call.
Otherwise one of four login flows runs (token, userpass, LDAP, OIDC), the new
token is installed on the ``BackendSession``, and it is written back to the
token file.  A failed write is only a warning: the in-memory token still
works for this run.

There is no retry loop.  Any failure ends the invocation and the operator
runs the command again.
"""

from __future__ import annotations

import logging
import urllib.parse
from typing import Callable

from rich.markup import escape

from vssh.auth.prompt import Prompter
from vssh.auth.token_store import SessionToken, SessionTokenStore, TokenStoreError
from vssh.config.settings import AuthMethod, PasswordAuthConfig, VaultConfig
from vssh.vault.backend import (
    BackendSession,
    VaultBackendError,
    VaultLoginError,
    client_token_from,
)

OIDC_REDIRECT_URI = "http://localhost:8250/oidc/callback"

# Menu order for the interactive method choice.
_METHOD_MENU: list[tuple[str, AuthMethod, str]] = [
    ("1", AuthMethod.TOKEN, "Token"),
    ("2", AuthMethod.USERPASS, "Username/Password"),
    ("3", AuthMethod.LDAP, "LDAP"),
    ("4", AuthMethod.OIDC, "OIDC"),
]


class VaultAuthenticationError(Exception):
    """Raised when Vault authentication fails."""


class EmptyCredentialError(VaultAuthenticationError):
    """Raised when the operator supplies a blank credential."""


class InvalidCredentialError(VaultAuthenticationError):
    """Raised when a supplied token is rejected by Vault."""


class MissingRoleError(VaultAuthenticationError):
    """Raised when OIDC is selected but no role is configured."""


class NoAuthURLError(VaultAuthenticationError):
    """Raised when Vault does not return a usable OIDC authorization URL."""


class Authenticator:
    """Ensures a ``BackendSession`` holds a valid Vault token."""

    def __init__(
        self,
        backend: BackendSession,
        store: SessionTokenStore,
        config: VaultConfig,
        prompter: Prompter,
        logger: logging.Logger | None = None,
    ) -> None:
        self._backend = backend
        self._store = store
        self._config = config
        self._prompter = prompter
        self._logger = logger or logging.getLogger(__name__)
        self._handlers: dict[AuthMethod, Callable[[], None]] = {
            AuthMethod.TOKEN: self._authenticate_token,
            AuthMethod.USERPASS: lambda: self._authenticate_password(
                config.userpass, label_prefix=""
            ),
            AuthMethod.LDAP: lambda: self._authenticate_password(
                config.ldap, label_prefix="LDAP "
            ),
            AuthMethod.OIDC: self._authenticate_oidc,
        }

    def ensure_authenticated(self) -> None:
        """Reuse a live token or log in, then persist the new token.

        Raises ``VaultAuthenticationError`` (or a subclass) on failure.
        """
        self._load_existing_token()

        if self._backend.is_valid():
            self._logger.debug("Using existing valid token")
            return

        self._logger.info("No valid token found, authentication required")

        method = self._config.auth_method or self._choose_method()
        self._logger.debug("Authenticating with method %s", method.value)
        self._handlers[method]()

        token = self._backend.token
        if token is None:
            raise VaultAuthenticationError(f"{method.value} authentication produced no token")

        try:
            self._store.save(SessionToken(token))
        except OSError as exc:
            self._logger.warning("Failed to save token to %s: %s", self._store.path, exc)

        self._logger.info("Authentication successful")

    # -- private helpers -----------------------------------------------------

    def _load_existing_token(self) -> None:
        if self._config.token:
            self._logger.debug("Using token from VAULT_TOKEN")
            self._backend.set_token(self._config.token)
            return

        try:
            token = self._store.load()
        except (TokenStoreError, OSError) as exc:
            self._logger.debug("Could not load token from file: %s", exc)
            return

        if token is not None:
            self._backend.set_token(token.value)

    def _choose_method(self) -> AuthMethod:
        self._prompter.show("Please choose an authentication method:")
        for key, _, title in _METHOD_MENU:
            self._prompter.show(f"  {key}. {title}")

        choice = self._prompter.prompt_visible("Enter your choice (1-4)").strip()
        for key, method, _ in _METHOD_MENU:
            if choice == key:
                return method
        raise VaultAuthenticationError(f"Invalid authentication method choice: {choice!r}")

    def _authenticate_token(self) -> None:
        token = self._prompter.prompt_hidden("Enter Vault token").strip()
        if not token:
            raise EmptyCredentialError("Token cannot be empty")

        self._backend.set_token(token)
        if not self._backend.is_valid():
            raise InvalidCredentialError("Invalid or expiring token provided")

    def _authenticate_password(self, settings: PasswordAuthConfig, label_prefix: str) -> None:
        """Shared userpass / LDAP flow; only the mount and labels differ."""
        username = settings.username
        if not username:
            username = self._prompter.prompt_visible(f"{label_prefix}Username").strip()
        if not username:
            raise EmptyCredentialError("Username cannot be empty")

        password = self._prompter.prompt_hidden(f"{label_prefix}Password").strip()
        if not password:
            raise EmptyCredentialError("Password cannot be empty")

        try:
            client_token = self._backend.login(settings.mount, username, {"password": password})
        except VaultLoginError as exc:
            raise VaultAuthenticationError(f"Authentication failed for {username}: {exc}") from exc

        self._backend.set_token(client_token)
        self._logger.debug("Logged in as %s via auth/%s", username, settings.mount)

    def _authenticate_oidc(self) -> None:
        oidc = self._config.oidc
        if not oidc.role:
            raise MissingRoleError("OIDC role not configured (vault.oidc.role)")

        self._prompter.show(f"Starting OIDC authentication for role: {escape(oidc.role)}")

        try:
            response = self._backend.write(
                f"auth/{oidc.mount}/oidc/auth_url",
                {"role": oidc.role, "redirect_uri": OIDC_REDIRECT_URI},
            )
        except VaultBackendError as exc:
            raise VaultAuthenticationError(f"Failed to get OIDC auth URL: {exc}") from exc

        data = response.get("data") or {}
        auth_url = data.get("auth_url")
        if not _is_http_url(auth_url):
            raise NoAuthURLError("No valid OIDC auth URL returned")

        self._prompter.show(f"Please visit this URL to authenticate: {escape(auth_url)}")
        code = self._prompter.prompt_visible("Enter the authorization code").strip()
        if not code:
            raise EmptyCredentialError("Authorization code cannot be empty")

        query = urllib.parse.parse_qs(urllib.parse.urlsplit(auth_url).query)
        payload = {"code": code, "state": data.get("state") or _first(query, "state")}
        nonce = _first(query, "nonce")
        if nonce:
            payload["nonce"] = nonce

        try:
            callback = self._backend.write(f"auth/{oidc.mount}/oidc/callback", payload)
        except VaultBackendError as exc:
            raise VaultAuthenticationError(f"OIDC authentication failed: {exc}") from exc

        client_token = client_token_from(callback)
        if client_token is None:
            raise VaultAuthenticationError("No authentication data returned from OIDC callback")
        self._backend.set_token(client_token)


def _is_http_url(value: object) -> bool:
    if not isinstance(value, str):
        return False
    parts = urllib.parse.urlsplit(value)
    return parts.scheme in ("http", "https") and bool(parts.netloc)


def _first(query: dict[str, list[str]], key: str) -> str | None:
    values = query.get(key)
    return values[0] if values else None
