"""Connection target and local identity resolution."""

from __future__ import annotations

import dataclasses
import getpass
import os
from typing import Mapping

from vssh.config.settings import UserConfig


class TargetError(Exception):
    """Raised when a ``[user@]host`` target cannot be parsed."""


@dataclasses.dataclass(frozen=True)
class SSHTarget:
    username: str
    hostname: str

    def __str__(self) -> str:
        return f"{self.username}@{self.hostname}"


@dataclasses.dataclass(frozen=True)
class Identity:
    """The SSH principal being connected as.

    Attributes:
        name:        Local user / principal name; also names the certificate file.
        private_key: Per-identity private key path from ``users.<name>``, if any.
        vault_role:  Per-identity signing role override, if any.
    """

    name: str
    private_key: str | None = None
    vault_role: str | None = None

    @classmethod
    def resolve(cls, name: str, users: Mapping[str, UserConfig]) -> Identity:
        user_config = users.get(name)
        if user_config is None:
            return cls(name=name)
        return cls(
            name=name,
            private_key=user_config.private_key,
            vault_role=user_config.vault_role,
        )


def parse_target(target: str, environ: Mapping[str, str] | None = None) -> SSHTarget:
    """Split ``[user@]host``; a missing user falls back to the invoking OS user."""
    env = os.environ if environ is None else environ
    parts = target.split("@")
    if len(parts) == 2:
        username, hostname = parts
    elif len(parts) == 1:
        username = env.get("USER") or _os_user()
        hostname = parts[0]
    else:
        raise TargetError(f"Invalid SSH target format: {target}")

    if not username:
        raise TargetError("Username cannot be empty")
    if not hostname:
        raise TargetError("Hostname cannot be empty")
    return SSHTarget(username=username, hostname=hostname)


def _os_user() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return ""
