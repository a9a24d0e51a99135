"""CLI entry point: ``vssh [options] [user@]host [command ...]``.

Builds the configuration, logger and collaborators once, then runs the three
gates in order: authenticate with Vault, make sure a fresh certificate exists,
and exec ssh.  This is the only place where exceptions become exit statuses.
"""

from __future__ import annotations

import argparse
import importlib.metadata
import logging
import sys
from typing import Sequence

from rich.console import Console
from rich.markup import escape

from vssh.auth.authenticator import Authenticator, VaultAuthenticationError
from vssh.auth.prompt import ConsolePrompter, PromptError
from vssh.auth.token_store import SessionTokenStore
from vssh.config.settings import (
    DEFAULT_CONFIG_PATH,
    Config,
    ConfigError,
    load_config,
    write_default_config,
)
from vssh.ssh.certificate import CertificateError, CertificateManager
from vssh.ssh.launcher import SessionLauncher, SSHConnectionFailed, SSHLaunchError, SSHOptions
from vssh.ssh.target import Identity, TargetError, parse_target
from vssh.vault.backend import BackendSession, VaultBackendError

console = Console(stderr=True)

_EXPECTED_ERRORS = (
    ConfigError,
    TargetError,
    PromptError,
    VaultAuthenticationError,
    VaultBackendError,
    CertificateError,
    SSHLaunchError,
)


def _version() -> str:
    try:
        return importlib.metadata.version("vssh")
    except importlib.metadata.PackageNotFoundError:
        return "dev"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="vssh",
        description="SSH with Vault-signed certificates",
        epilog=(
            "examples:\n"
            "  vssh user@server.com\n"
            "  vssh user@server.com ls -la\n"
            "  vssh -p 2222 user@server.com\n"
            "  vssh init"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--config",
        default=str(DEFAULT_CONFIG_PATH),
        help="Path to config.yaml (default: %(default)s)",
    )
    parser.add_argument("--version", action="version", version=f"vssh {_version()}")
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging and pass -v to ssh",
    )
    parser.add_argument(
        "--debug", "-d",
        action="store_true",
        help="Enable debug logging and pass -vvv to ssh",
    )
    parser.add_argument("-p", "--port", help="Port to connect to on the remote host")
    ip_group = parser.add_mutually_exclusive_group()
    ip_group.add_argument("-4", dest="ipv4", action="store_true", help="Force IPv4 addresses only")
    ip_group.add_argument("-6", dest="ipv6", action="store_true", help="Force IPv6 addresses only")
    parser.add_argument(
        "-o",
        dest="ssh_options",
        action="append",
        default=[],
        metavar="OPTION",
        help="Pass an option to ssh (repeatable)",
    )
    parser.add_argument("-A", dest="forward_agent", action="store_true", help="Enable agent forwarding")
    tty_group = parser.add_mutually_exclusive_group()
    tty_group.add_argument("-t", dest="force_tty", action="store_true", help="Force pseudo-terminal allocation")
    tty_group.add_argument("-T", dest="no_tty", action="store_true", help="Disable pseudo-terminal allocation")
    parser.add_argument("target", help="[user@]hostname")
    parser.add_argument("command", nargs=argparse.REMAINDER, help="Remote command to execute")
    return parser


def build_init_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="vssh init",
        description="Create a default vssh configuration file",
    )
    parser.add_argument(
        "--config",
        default=str(DEFAULT_CONFIG_PATH),
        help="Where to write the configuration (default: %(default)s)",
    )
    parser.add_argument(
        "--force", "-f",
        action="store_true",
        help="Overwrite an existing configuration file",
    )
    return parser


def ssh_options_from_args(args: argparse.Namespace) -> SSHOptions:
    extra: list[str] = []
    for option in args.ssh_options:
        extra += ["-o", option]
    if args.forward_agent:
        extra.append("-A")
    if args.force_tty:
        extra.append("-t")
    if args.no_tty:
        extra.append("-T")
    return SSHOptions(
        port=args.port,
        ipv4=args.ipv4,
        ipv6=args.ipv6,
        verbose=args.verbose,
        debug=args.debug,
        extra_args=tuple(extra),
    )


def run_init(argv: Sequence[str]) -> int:
    args = build_init_parser().parse_args(argv)
    try:
        path = write_default_config(args.config, force=args.force)
    except ConfigError as exc:
        console.print(f"[yellow]{escape(str(exc))}[/yellow]")
        return 1
    except OSError as exc:
        console.print(f"[red]Error creating configuration file:[/red] {escape(str(exc))}")
        return 1

    console.print(f"Configuration file created at [bold]{escape(str(path))}[/bold]")
    console.print("\nPlease edit the configuration file to match your Vault setup:")
    console.print("  - Set vault.address to your Vault server URL")
    console.print("  - Configure your preferred authentication method")
    console.print("  - Add user configurations as needed")
    return 0


def run(argv: Sequence[str]) -> int:
    """Run vssh with *argv* (without the program name) and return the exit status."""
    if list(argv[:1]) == ["init"]:
        return run_init(argv[1:])

    args = build_parser().parse_args(argv)

    try:
        config = load_config(args.config)
    except ConfigError as exc:
        console.print(f"[red]Failed to load configuration:[/red] {escape(str(exc))}")
        return 1

    logging.basicConfig(
        level=logging.DEBUG if (args.verbose or args.debug or config.debug) else logging.INFO,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )
    logger = logging.getLogger("vssh")
    logger.debug("Vault address: %s", config.vault.address)
    logger.debug(
        "Auth method: %s",
        config.vault.auth_method.value if config.vault.auth_method else "(ask)",
    )

    try:
        return _connect(args, config, logger)
    except SSHConnectionFailed as exc:
        logger.debug("%s", exc)
        return exc.exit_code
    except _EXPECTED_ERRORS as exc:
        console.print(f"[red]Error:[/red] {escape(str(exc))}")
        return 1
    except KeyboardInterrupt:
        console.print("\n[dim]Interrupted.[/dim]")
        return 130


def _connect(args: argparse.Namespace, config: Config, logger: logging.Logger) -> int:
    target = parse_target(args.target)
    identity = Identity.resolve(target.username, config.users)
    logger.debug("Parsed SSH target - Username: %s, Hostname: %s", target.username, target.hostname)

    launcher = SessionLauncher(logger=logger.getChild("ssh"))
    launcher.validate_binary()

    backend = BackendSession(config.vault, logger=logger.getChild("vault"))
    authenticator = Authenticator(
        backend=backend,
        store=SessionTokenStore(config.vault.token_file.token_path, logger=logger.getChild("token")),
        config=config.vault,
        prompter=ConsolePrompter(console),
        logger=logger.getChild("auth"),
    )
    authenticator.ensure_authenticated()

    certificates = CertificateManager(backend, config.ssh, logger=logger.getChild("certificate"))
    cert_path = certificates.ensure_certificate(identity)
    private_key = certificates.private_key_path(identity)

    console.print(f"Connecting to {escape(args.target)} with Vault-signed certificate...")
    logger.info("Using certificate: %s", cert_path)
    logger.info("Using private key: %s", private_key)

    return launcher.connect(
        target,
        cert_path,
        private_key,
        ssh_options_from_args(args),
        args.command,
    )


def main() -> None:
    sys.exit(run(sys.argv[1:]))


if __name__ == "__main__":
    main()
