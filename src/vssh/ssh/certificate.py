"""Signed SSH certificate lifecycle.

Pattern: Freshness Gate
------------------------
Each identity has exactly one certificate file,
``<key_directory>/vault_signed_<name>.pub``.  SSH server administrators
configure trust against that name, so it must not change.

On every invocation ``CertificateManager.ensure_certificate`` re-reads the
file and parses it once into a ``SignedCertificate`` whose validity window is
held as plain integers.  If the certificate is inside its window with at
least five minutes to spare, it is reused without any network call.
Otherwise the identity's public key is sent to Vault for signing and the
result overwrites the file.

Keys are never generated here.  A missing key pair is the operator's problem
and is reported with the exact path that was expected.
"""

from __future__ import annotations

import dataclasses
import logging
import os
import pathlib
import time
from typing import Callable

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization

from vssh.config.settings import SSHConfig
from vssh.ssh.target import Identity
from vssh.vault.backend import BackendSession

# Certificates with less than this left are re-signed.
SAFETY_MARGIN_SECONDS = 300

CERTIFICATE_PREFIX = "vault_signed_"
DEFAULT_PRIVATE_KEY_NAME = "id_rsa"


class CertificateError(Exception):
    """Base class for certificate lifecycle failures."""


class CertificateParseError(CertificateError):
    """Raised when text is not an OpenSSH certificate."""


class KeyNotFoundError(CertificateError):
    """Raised when the identity's private or public key file is missing."""


@dataclasses.dataclass(frozen=True)
class SignedCertificate:
    """An OpenSSH certificate with its validity window pulled out.

    Attributes:
        blob:         The certificate text as stored on disk.
        key_id:       Key ID embedded by the signer.
        principals:   Principals the certificate is valid for.
        valid_after:  Unix time the certificate becomes valid (0 = unbounded).
        valid_before: Unix time the certificate expires (0 = unbounded).
    """

    blob: str
    key_id: str
    principals: tuple[str, ...]
    valid_after: int
    valid_before: int

    @classmethod
    def parse(cls, text: str) -> SignedCertificate:
        """Parse OpenSSH certificate text.

        Raises ``CertificateParseError`` for garbage or a bare public key.
        """
        try:
            identity = serialization.load_ssh_public_identity(text.strip().encode())
        except (ValueError, UnsupportedAlgorithm) as exc:
            raise CertificateParseError(f"Failed to parse certificate: {exc}") from exc

        if not isinstance(identity, serialization.SSHCertificate):
            raise CertificateParseError("Public key is not a certificate")

        return cls(
            blob=text,
            key_id=identity.key_id.decode(errors="replace"),
            principals=tuple(p.decode(errors="replace") for p in identity.valid_principals),
            valid_after=identity.valid_after,
            valid_before=identity.valid_before,
        )

    def remaining_seconds(self, now: int) -> int | None:
        """Seconds until expiry, or ``None`` when there is no upper bound."""
        if self.valid_before == 0:
            return None
        return self.valid_before - now

    def is_usable(self, now: int, margin: int = SAFETY_MARGIN_SECONDS) -> bool:
        if self.valid_after != 0 and now < self.valid_after:
            return False
        remaining = self.remaining_seconds(now)
        if remaining is None:
            return True
        return remaining > 0 and remaining >= margin


class CertificateManager:
    """Produces a fresh certificate path for an identity."""

    def __init__(
        self,
        backend: BackendSession,
        config: SSHConfig,
        logger: logging.Logger | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._backend = backend
        self._config = config
        self._logger = logger or logging.getLogger(__name__)
        self._clock = clock

    def certificate_path(self, identity: Identity) -> pathlib.Path:
        return self._config.key_dir_path / f"{CERTIFICATE_PREFIX}{identity.name}.pub"

    def private_key_path(self, identity: Identity) -> pathlib.Path:
        if identity.private_key:
            return pathlib.Path(identity.private_key).expanduser()
        return self._config.key_dir_path / DEFAULT_PRIVATE_KEY_NAME

    @staticmethod
    def signing_role(identity: Identity) -> str:
        """Per-identity override, else the identity name.

        Vault policies are typically keyed by username, so by default an
        operator can only sign for themselves.
        """
        return identity.vault_role or identity.name

    def load_certificate(self, path: pathlib.Path) -> SignedCertificate | None:
        """Read and parse *path*; ``None`` if missing, unreadable or not a certificate."""
        try:
            text = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            self._logger.debug("Certificate file not readable: %s (%s)", path, exc)
            return None
        try:
            return SignedCertificate.parse(text)
        except CertificateParseError as exc:
            self._logger.debug("%s: %s", path, exc)
            return None

    def is_certificate_valid(self, path: pathlib.Path) -> bool:
        certificate = self.load_certificate(path)
        if certificate is None:
            return False

        now = int(self._clock())
        if not certificate.is_usable(now):
            self._logger.debug(
                "Certificate %s not usable: valid_after=%d valid_before=%d now=%d",
                path,
                certificate.valid_after,
                certificate.valid_before,
                now,
            )
            return False

        remaining = certificate.remaining_seconds(now)
        self._logger.debug(
            "Certificate is valid with %s remaining",
            "unlimited time" if remaining is None else f"{remaining}s",
        )
        return True

    def ensure_certificate(self, identity: Identity) -> pathlib.Path:
        """Return the path of a certificate valid for at least the safety margin.

        Raises ``KeyNotFoundError`` or ``VaultSignError``.
        """
        cert_path = self.certificate_path(identity)
        if self.is_certificate_valid(cert_path):
            self._logger.debug("Using existing valid certificate: %s", cert_path)
            return cert_path

        self._logger.info("Generating new SSH certificate for user: %s", identity.name)

        private_key = self.private_key_path(identity)
        public_key = pathlib.Path(f"{private_key}.pub")
        for key_path, kind in ((private_key, "Private"), (public_key, "Public")):
            if not key_path.exists():
                raise KeyNotFoundError(
                    f"{kind} key not found: {key_path}. Please generate an SSH key pair first"
                )

        try:
            public_key_text = public_key.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise KeyNotFoundError(f"Failed to read public key {public_key}: {exc}") from exc

        role = self.signing_role(identity)
        self._logger.debug("Signing SSH key for user %s with role %s", identity.name, role)
        signed = self._backend.sign(
            self._config.signing_engine,
            role,
            public_key_text,
            f"{self._config.certificate_ttl}s",
        )

        try:
            self._write_certificate(cert_path, signed)
        except OSError as exc:
            raise CertificateError(f"Failed to write certificate file {cert_path}: {exc}") from exc
        self._logger.info("SSH certificate saved to: %s", cert_path)
        return cert_path

    def _write_certificate(self, cert_path: pathlib.Path, signed: str) -> None:
        cert_path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
        fd = os.open(cert_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o644)
        with os.fdopen(fd, "w") as fh:
            fh.write(signed)
        os.chmod(cert_path, 0o644)
