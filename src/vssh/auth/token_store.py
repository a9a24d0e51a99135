"""On-disk persistence of the Vault session token.

The token file is the only state shared between invocations: a successful
login writes it, and the next run reads it back and asks Vault whether it is
still good.  The store knows nothing about validity; it only reads and writes
the file with owner-only permissions.
"""

from __future__ import annotations

import dataclasses
import logging
import os
import pathlib


@dataclasses.dataclass(frozen=True)
class SessionToken:
    """An opaque Vault client token.

    The value is kept out of ``repr``/``str`` so it never lands in a log line
    or a traceback by accident.
    """

    value: str = dataclasses.field(repr=False)

    def __str__(self) -> str:
        return "SessionToken(<redacted>)"


class TokenStoreError(Exception):
    """Raised when the token file exists but cannot be used."""


class EmptyTokenError(TokenStoreError):
    """Raised when the token file exists but holds only whitespace."""


class CorruptTokenError(TokenStoreError):
    """Raised when the token file cannot be decoded as text."""


class SessionTokenStore:
    """Reads and writes the token file at *token_path* (``~`` is expanded)."""

    def __init__(self, token_path: str | pathlib.Path, logger: logging.Logger | None = None) -> None:
        self._path = pathlib.Path(token_path).expanduser()
        self._logger = logger or logging.getLogger(__name__)

    @property
    def path(self) -> pathlib.Path:
        return self._path

    def load(self) -> SessionToken | None:
        """Return the stored token, or ``None`` if there is no token file.

        Raises ``EmptyTokenError`` for a blank file and ``CorruptTokenError``
        for undecodable contents; other ``OSError``s propagate.
        """
        try:
            raw = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            self._logger.debug("No token file at %s", self._path)
            return None
        except UnicodeDecodeError as exc:
            raise CorruptTokenError(f"Token file {self._path} is not valid text: {exc}") from exc

        value = raw.strip()
        if not value:
            raise EmptyTokenError(f"Token file {self._path} is empty")

        self._logger.debug("Loaded token from %s", self._path)
        return SessionToken(value)

    def save(self, token: SessionToken) -> None:
        """Write *token* with mode 0600, creating the parent directory (0700)."""
        self._path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
        fd = os.open(self._path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w") as fh:
            fh.write(token.value)
        # O_CREAT's mode only applies to new files.
        os.chmod(self._path, 0o600)
        self._logger.debug("Saved token to %s", self._path)
