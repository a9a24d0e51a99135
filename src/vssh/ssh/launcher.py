"""Hand-off to the system ``ssh`` client.

vssh does not speak SSH itself.  Once a fresh certificate exists, the
launcher builds an ``ssh`` command line that presents it, runs the client
with the parent's stdin/stdout/stderr and environment untouched, and relays
the exit status so scripts wrapping vssh see exactly what ``ssh`` returned.
"""

from __future__ import annotations

import dataclasses
import logging
import pathlib
import shlex
import shutil
import subprocess
from typing import Sequence

from vssh.ssh.target import SSHTarget

SSH_BINARY = "ssh"

# Always sent so ssh tries the certificate before anything interactive.
_PUBKEY_OPTIONS = (
    "-o", "PreferredAuthentications=publickey",
    "-o", "PubkeyAuthentication=yes",
)


class SSHLaunchError(Exception):
    """Raised when the ssh client cannot be started."""


class SSHBinaryNotFoundError(SSHLaunchError):
    """Raised when no ssh executable is on ``PATH``."""


class SSHConnectionFailed(SSHLaunchError):
    """Raised when ssh exits non-zero; carries its exit code."""

    def __init__(self, exit_code: int) -> None:
        super().__init__(f"SSH connection failed with exit code {exit_code}")
        self.exit_code = exit_code


@dataclasses.dataclass(frozen=True)
class SSHOptions:
    """ssh flags collected from the vssh command line.

    Attributes:
        port:       ``-p`` value, if given.
        ipv4/ipv6:  ``-4`` / ``-6``.
        verbose:    adds ``-v``.
        debug:      adds ``-vvv``.
        extra_args: passed through verbatim before the target.
    """

    port: str | None = None
    ipv4: bool = False
    ipv6: bool = False
    verbose: bool = False
    debug: bool = False
    extra_args: tuple[str, ...] = ()


class SessionLauncher:
    def __init__(self, ssh_binary: str = SSH_BINARY, logger: logging.Logger | None = None) -> None:
        self._ssh_binary = ssh_binary
        self._logger = logger or logging.getLogger(__name__)

    def validate_binary(self) -> str:
        """Return the resolved ssh path or raise ``SSHBinaryNotFoundError``."""
        resolved = shutil.which(self._ssh_binary)
        if resolved is None:
            raise SSHBinaryNotFoundError(
                f"SSH binary '{self._ssh_binary}' not found in PATH. Please install OpenSSH client"
            )
        return resolved

    def build_command(
        self,
        target: SSHTarget,
        certificate_path: pathlib.Path,
        private_key_path: pathlib.Path,
        options: SSHOptions,
        command: Sequence[str] = (),
    ) -> list[str]:
        args = [self._ssh_binary]
        if options.port:
            args += ["-p", options.port]
        args += ["-o", f"CertificateFile={certificate_path}"]
        args += ["-i", str(private_key_path)]
        if options.ipv4:
            args.append("-4")
        if options.ipv6:
            args.append("-6")
        if options.verbose:
            args.append("-v")
        if options.debug:
            args.append("-vvv")
        args += _PUBKEY_OPTIONS
        args += options.extra_args
        args.append(str(target))
        args += command
        return args

    def connect(
        self,
        target: SSHTarget,
        certificate_path: pathlib.Path,
        private_key_path: pathlib.Path,
        options: SSHOptions,
        command: Sequence[str] = (),
    ) -> int:
        """Run ssh in the foreground and return 0 on success.

        Raises ``SSHConnectionFailed`` for a non-zero exit (a child killed by
        signal N reports ``128 + N``) and ``SSHLaunchError`` if the process
        cannot be started.
        """
        args = self.build_command(target, certificate_path, private_key_path, options, command)
        self._logger.debug("Executing SSH command: %s", shlex.join(args))

        try:
            returncode = subprocess.call(args)
        except OSError as exc:
            raise SSHLaunchError(f"Failed to execute SSH command: {exc}") from exc

        if returncode < 0:
            returncode = 128 - returncode
        if returncode != 0:
            raise SSHConnectionFailed(returncode)
        return 0
