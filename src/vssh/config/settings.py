"""Configuration loading for vssh.

Pattern: Validated Settings Snapshot
-------------------------------------
A single YAML file (``~/.config/vssh/config.yaml`` by default) describes the
Vault server, the preferred authentication method, where SSH keys live, and
per-user overrides.  It is read once at process start, merged with defaults
and a handful of ``VAULT_*`` environment variables, validated, and frozen
into a ``Config`` tree.  Everything downstream receives that object
explicitly; nothing re-reads the file or consults the environment later.

A missing config file is not an error: the defaults describe a usable setup
once ``vault.address`` points somewhere real (or ``VAULT_ADDR`` is set).
"""

from __future__ import annotations

import dataclasses
import enum
import os
import pathlib
import re
from typing import Any, Mapping

import yaml

DEFAULT_CONFIG_PATH = pathlib.Path("~/.config/vssh/config.yaml")

DEFAULT_VAULT_ADDRESS = "https://vault.example.com"
DEFAULT_TOKEN_PATH = "~/.vault-token"
DEFAULT_KEY_DIRECTORY = "~/.ssh"
DEFAULT_CERTIFICATE_TTL = "4h"
DEFAULT_SIGNING_ENGINE = "ssh-client-signer"
DEFAULT_TIMEOUT_SECONDS = 30

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(h|m|s)")
_DURATION_UNITS = {"h": 3600, "m": 60, "s": 1}


class AuthMethod(enum.Enum):
    """Vault authentication methods understood by the authenticator."""

    TOKEN = "token"
    USERPASS = "userpass"
    LDAP = "ldap"
    OIDC = "oidc"


class ConfigError(Exception):
    """Raised when the configuration file is unreadable or invalid."""


@dataclasses.dataclass(frozen=True)
class TokenConfig:
    token_path: str = DEFAULT_TOKEN_PATH


@dataclasses.dataclass(frozen=True)
class PasswordAuthConfig:
    """Settings shared by the userpass and LDAP methods."""

    mount: str
    username: str | None = None


@dataclasses.dataclass(frozen=True)
class OIDCConfig:
    mount: str = "oidc"
    role: str | None = None


@dataclasses.dataclass(frozen=True)
class VaultConfig:
    """Vault connection and authentication settings.

    Attributes:
        address:     Base URL of the Vault server.
        auth_method: Preferred method, or ``None`` to ask the operator.
        namespace:   Vault Enterprise namespace, if any.
        timeout:     Per-request timeout in seconds.
        token:       Token supplied through ``VAULT_TOKEN``; takes precedence
                     over the token file when present.
    """

    address: str = DEFAULT_VAULT_ADDRESS
    auth_method: AuthMethod | None = AuthMethod.TOKEN
    namespace: str | None = None
    timeout: int = DEFAULT_TIMEOUT_SECONDS
    token: str | None = dataclasses.field(default=None, repr=False)
    token_file: TokenConfig = dataclasses.field(default_factory=TokenConfig)
    userpass: PasswordAuthConfig = dataclasses.field(
        default_factory=lambda: PasswordAuthConfig(mount="userpass")
    )
    ldap: PasswordAuthConfig = dataclasses.field(
        default_factory=lambda: PasswordAuthConfig(mount="ldap")
    )
    oidc: OIDCConfig = dataclasses.field(default_factory=OIDCConfig)


@dataclasses.dataclass(frozen=True)
class SSHConfig:
    key_directory: str = DEFAULT_KEY_DIRECTORY
    certificate_ttl: int = 4 * 3600
    signing_engine: str = DEFAULT_SIGNING_ENGINE

    @property
    def key_dir_path(self) -> pathlib.Path:
        return pathlib.Path(self.key_directory).expanduser()


@dataclasses.dataclass(frozen=True)
class UserConfig:
    private_key: str
    vault_role: str | None = None


@dataclasses.dataclass(frozen=True)
class Config:
    vault: VaultConfig = dataclasses.field(default_factory=VaultConfig)
    ssh: SSHConfig = dataclasses.field(default_factory=SSHConfig)
    users: Mapping[str, UserConfig] = dataclasses.field(default_factory=dict)
    debug: bool = False


def parse_duration(value: str | int) -> int:
    """Parse a duration into whole seconds.

    Accepts bare seconds (``300`` or ``"300"``) and Go-style strings such as
    ``"5m"``, ``"4h"`` or ``"1h30m"``.
    """
    if isinstance(value, bool):
        raise ValueError(f"invalid duration: {value!r}")
    if isinstance(value, int):
        return value
    s = str(value).strip()
    if s.isdigit():
        return int(s)
    pos = 0
    total = 0.0
    for match in _DURATION_PART.finditer(s):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos == 0 or pos != len(s):
        raise ValueError(f"invalid duration: {value!r}")
    return int(total)


def load_config(
    path: str | pathlib.Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> Config:
    """Load, merge and validate the configuration.

    *path* defaults to ``~/.config/vssh/config.yaml``; a missing file yields
    the defaults.  *environ* defaults to ``os.environ``.

    Raises ``ConfigError`` naming the offending field.
    """
    config_path = pathlib.Path(path or DEFAULT_CONFIG_PATH).expanduser()
    env = os.environ if environ is None else environ
    raw = _read_yaml(config_path)
    return _build_config(raw, env)


def render_default_config() -> str:
    """Return the commented configuration written by ``vssh init``."""
    return _DEFAULT_CONFIG_TEMPLATE


def write_default_config(path: str | pathlib.Path, force: bool = False) -> pathlib.Path:
    """Write the default configuration to *path*.

    Raises ``ConfigError`` if the file exists and *force* is false.
    """
    target = pathlib.Path(path).expanduser()
    if target.exists() and not force:
        raise ConfigError(
            f"Configuration file already exists at {target} (use --force to overwrite)"
        )
    target.parent.mkdir(mode=0o755, parents=True, exist_ok=True)
    target.write_text(render_default_config())
    return target


# -- private helpers ---------------------------------------------------------


def _read_yaml(config_path: pathlib.Path) -> dict[str, Any]:
    if not config_path.exists():
        return {}
    try:
        with open(config_path, encoding="utf-8") as fh:
            data = yaml.safe_load(fh)
    except (OSError, UnicodeDecodeError, yaml.YAMLError) as exc:
        raise ConfigError(f"Error reading config file {config_path}: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {config_path} must contain a YAML mapping")
    return data


def _section(data: Mapping[str, Any], key: str, prefix: str) -> dict[str, Any]:
    value = data.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"{prefix}{key} must be a mapping")
    return value


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _build_config(raw: Mapping[str, Any], env: Mapping[str, str]) -> Config:
    vault_raw = _section(raw, "vault", "")
    ssh_raw = _section(raw, "ssh", "")
    users_raw = _section(raw, "users", "")

    vault = _build_vault(vault_raw, env)
    ssh = _build_ssh(ssh_raw)
    users = _build_users(users_raw)

    return Config(vault=vault, ssh=ssh, users=users, debug=bool(raw.get("debug", False)))


def _build_vault(vault_raw: Mapping[str, Any], env: Mapping[str, str]) -> VaultConfig:
    address = _optional_str(env.get("VAULT_ADDR")) or _optional_str(
        vault_raw.get("address", DEFAULT_VAULT_ADDRESS)
    )
    if not address:
        raise ConfigError("vault.address is required")

    auth_method: AuthMethod | None
    method_raw = vault_raw.get("auth_method", AuthMethod.TOKEN.value)
    method_name = _optional_str(method_raw)
    if method_name is None:
        auth_method = None
    else:
        try:
            auth_method = AuthMethod(method_name.lower())
        except ValueError:
            supported = ", ".join(m.value for m in AuthMethod)
            raise ConfigError(
                f"invalid vault.auth_method: {method_name}. Supported methods: {supported}"
            ) from None

    try:
        timeout = parse_duration(vault_raw.get("timeout", DEFAULT_TIMEOUT_SECONDS))
    except ValueError as exc:
        raise ConfigError(f"vault.timeout: {exc}") from exc
    if timeout <= 0:
        raise ConfigError("vault.timeout must be greater than 0")

    token_raw = _section(vault_raw, "token", "vault.")
    userpass_raw = _section(vault_raw, "userpass", "vault.")
    ldap_raw = _section(vault_raw, "ldap", "vault.")
    oidc_raw = _section(vault_raw, "oidc", "vault.")

    oidc = OIDCConfig(
        mount=_optional_str(oidc_raw.get("mount")) or "oidc",
        role=_optional_str(oidc_raw.get("role")),
    )
    if auth_method is AuthMethod.OIDC and oidc.role is None:
        raise ConfigError("vault.oidc.role is required when using oidc auth")

    return VaultConfig(
        address=address,
        auth_method=auth_method,
        namespace=_optional_str(env.get("VAULT_NAMESPACE"))
        or _optional_str(vault_raw.get("namespace")),
        timeout=timeout,
        token=_optional_str(env.get("VAULT_TOKEN")),
        token_file=TokenConfig(
            token_path=_optional_str(token_raw.get("token_path")) or DEFAULT_TOKEN_PATH,
        ),
        userpass=PasswordAuthConfig(
            mount=_optional_str(userpass_raw.get("mount")) or "userpass",
            username=_optional_str(userpass_raw.get("username")),
        ),
        ldap=PasswordAuthConfig(
            mount=_optional_str(ldap_raw.get("mount")) or "ldap",
            username=_optional_str(ldap_raw.get("username")),
        ),
        oidc=oidc,
    )


def _build_ssh(ssh_raw: Mapping[str, Any]) -> SSHConfig:
    key_directory = _optional_str(ssh_raw.get("key_directory", DEFAULT_KEY_DIRECTORY))
    if not key_directory:
        raise ConfigError("ssh.key_directory is required")

    try:
        ttl = parse_duration(ssh_raw.get("certificate_ttl", DEFAULT_CERTIFICATE_TTL))
    except ValueError as exc:
        raise ConfigError(f"ssh.certificate_ttl: {exc}") from exc
    if ttl <= 0:
        raise ConfigError("ssh.certificate_ttl must be greater than 0")

    return SSHConfig(
        key_directory=key_directory,
        certificate_ttl=ttl,
        signing_engine=_optional_str(ssh_raw.get("signing_engine")) or DEFAULT_SIGNING_ENGINE,
    )


def _build_users(users_raw: Mapping[str, Any]) -> dict[str, UserConfig]:
    users: dict[str, UserConfig] = {}
    for username, block in users_raw.items():
        if not isinstance(block, dict):
            raise ConfigError(f"users.{username} must be a mapping")
        private_key = _optional_str(block.get("private_key"))
        if private_key is None:
            raise ConfigError(f"users.{username}.private_key is required")
        users[str(username)] = UserConfig(
            private_key=os.path.expanduser(private_key),
            vault_role=_optional_str(block.get("vault_role")),
        )
    return users


_DEFAULT_CONFIG_TEMPLATE = """\
# vssh configuration file

vault:
  address: "https://vault.example.com"
  auth_method: "token"  # Options: token, userpass, ldap, oidc (empty = ask)
  # namespace: "admin"
  # timeout: 30

  # Token authentication (default)
  token:
    token_path: "~/.vault-token"

  # Username/Password authentication
  # userpass:
  #   username: "your-username"
  #   mount: "userpass"

  # LDAP authentication
  # ldap:
  #   username: "your-username"
  #   mount: "ldap"

  # OIDC authentication
  # oidc:
  #   role: "your-oidc-role"
  #   mount: "oidc"

ssh:
  key_directory: "~/.ssh"
  certificate_ttl: "4h"
  signing_engine: "ssh-client-signer"

# Per-user SSH key configuration
users:
  # user1:
  #   private_key: "~/.ssh/user1_rsa"
  #   vault_role: "user1-role"  # Optional: defaults to the username

# Enable debug logging
debug: false
"""
