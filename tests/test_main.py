"""Tests for the command-line entry point."""

from __future__ import annotations

import pathlib
from typing import Callable
from unittest.mock import MagicMock, patch

import pytest

from vssh.main import build_parser, run, ssh_options_from_args

HOUR = {"data": {"ttl": 3600}}


@pytest.fixture(autouse=True)
def _clean_vault_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("VAULT_ADDR", "VAULT_TOKEN", "VAULT_NAMESPACE"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def config_file(tmp_path: pathlib.Path, key_dir: pathlib.Path) -> pathlib.Path:
    path = tmp_path / "config.yaml"
    path.write_text(
        "vault:\n"
        '  address: "http://127.0.0.1:8200"\n'
        '  auth_method: "token"\n'
        "  token:\n"
        f'    token_path: "{tmp_path / ".vault-token"}"\n'
        "ssh:\n"
        f'  key_directory: "{key_dir}"\n'
        '  certificate_ttl: "1h"\n'
    )
    return path


# ---------------------------------------------------------------------------
# Argument handling
# ---------------------------------------------------------------------------

class TestSSHOptionsFromArgs:
    def test_passthrough_flags_become_extra_args(self) -> None:
        args = build_parser().parse_args(
            ["-o", "ForwardX11=no", "-o", "ServerAliveInterval=30", "-A", "-T", "-p", "2222", "-6", "host"]
        )

        options = ssh_options_from_args(args)

        assert options.port == "2222"
        assert options.ipv6 is True
        assert options.ipv4 is False
        assert options.extra_args == (
            "-o", "ForwardX11=no", "-o", "ServerAliveInterval=30", "-A", "-T",
        )

    def test_remote_command_is_kept_verbatim(self) -> None:
        args = build_parser().parse_args(["alice@host", "ls", "-la", "/tmp"])
        assert args.target == "alice@host"
        assert args.command == ["ls", "-la", "/tmp"]

    def test_tty_flags_are_exclusive(self) -> None:
        with pytest.raises(SystemExit):
            build_parser().parse_args(["-t", "-T", "host"])


# ---------------------------------------------------------------------------
# run
# ---------------------------------------------------------------------------

class TestRun:
    def test_end_to_end_relays_ssh_exit_code(
        self,
        monkeypatch: pytest.MonkeyPatch,
        vault_client: MagicMock,
        config_file: pathlib.Path,
        key_dir: pathlib.Path,
        key_pair: pathlib.Path,
        certificate_factory: Callable[..., str],
        now: int,
    ) -> None:
        monkeypatch.setenv("VAULT_TOKEN", "s.env")
        vault_client.auth.token.lookup_self.return_value = HOUR
        vault_client.write_data.return_value = {
            "data": {"signed_key": certificate_factory(now - 60, now + 3600)}
        }

        with patch("vssh.ssh.launcher.shutil.which", return_value="/usr/bin/ssh"), \
                patch("vssh.ssh.launcher.subprocess.call", return_value=7) as call:
            code = run(["--config", str(config_file), "alice@web01", "uptime"])

        assert code == 7
        vault_client.write_data.assert_called_once()
        assert vault_client.write_data.call_args.args == ("ssh-client-signer/sign/alice",)
        assert vault_client.write_data.call_args.kwargs["data"]["ttl"] == "3600s"

        cert_path = key_dir / "vault_signed_alice.pub"
        assert cert_path.exists()
        ssh_args = call.call_args.args[0]
        assert f"CertificateFile={cert_path}" in ssh_args
        assert ssh_args[-2:] == ["alice@web01", "uptime"]

    def test_successful_session_returns_zero(
        self, config_file: pathlib.Path, key_dir: pathlib.Path
    ) -> None:
        with patch("vssh.main.Authenticator"), \
                patch("vssh.main.CertificateManager") as manager_cls, \
                patch("vssh.ssh.launcher.shutil.which", return_value="/usr/bin/ssh"), \
                patch("vssh.ssh.launcher.subprocess.call", return_value=0):
            manager_cls.return_value.ensure_certificate.return_value = key_dir / "cert.pub"
            manager_cls.return_value.private_key_path.return_value = key_dir / "id_rsa"

            assert run(["--config", str(config_file), "alice@web01"]) == 0

    def test_missing_ssh_binary_fails_before_vault(
        self, vault_client: MagicMock, config_file: pathlib.Path
    ) -> None:
        with patch("vssh.ssh.launcher.shutil.which", return_value=None):
            assert run(["--config", str(config_file), "alice@web01"]) == 1

        vault_client.auth.token.lookup_self.assert_not_called()
        vault_client.write_data.assert_not_called()

    def test_bad_target_returns_one(self, config_file: pathlib.Path) -> None:
        assert run(["--config", str(config_file), "a@b@c"]) == 1

    def test_invalid_config_returns_one(self, tmp_path: pathlib.Path) -> None:
        path = tmp_path / "config.yaml"
        path.write_text('vault:\n  auth_method: "kerberos"\n')

        assert run(["--config", str(path), "alice@web01"]) == 1

    def test_interrupt_returns_130(self, config_file: pathlib.Path) -> None:
        with patch("vssh.main.Authenticator") as auth_cls, \
                patch("vssh.ssh.launcher.shutil.which", return_value="/usr/bin/ssh"):
            auth_cls.return_value.ensure_authenticated.side_effect = KeyboardInterrupt

            assert run(["--config", str(config_file), "alice@web01"]) == 130


class TestInit:
    def test_writes_config_then_refuses_second_run(self, tmp_path: pathlib.Path) -> None:
        path = tmp_path / "vssh" / "config.yaml"

        assert run(["init", "--config", str(path)]) == 0
        assert "signing_engine" in path.read_text()

        assert run(["init", "--config", str(path)]) == 1

    def test_force_overwrites(self, tmp_path: pathlib.Path) -> None:
        path = tmp_path / "config.yaml"
        path.write_text("debug: true\n")

        assert run(["init", "--force", "--config", str(path)]) == 0
        assert path.read_text() != "debug: true\n"
