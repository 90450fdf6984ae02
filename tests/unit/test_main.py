"""Unit tests for the command-line entry point."""

import json
import logging
from unittest.mock import MagicMock, patch

import pytest

from ftpmon.ftp.exceptions import FTPAuthenticationError, FTPConnectionError
from ftpmon.main import Application, build_parser, main


@pytest.fixture(autouse=True)
def restore_logger():
    logger = logging.getLogger("ftpmon")
    handlers, level = list(logger.handlers), logger.level
    yield
    logger.handlers[:] = handlers
    logger.setLevel(level)


def parse(*argv: str):
    return build_parser().parse_args(list(argv))


class TestParser:
    """Tests for argument parsing."""

    def test_proxy_arguments(self):
        args = parse("proxy", "2121", "ftp.example.com", "21", "--data-port", "5000-5010",
                     "--server-connection-timeout", "3000")

        assert args.command == "proxy"
        assert args.local_port == 2121
        assert args.server_host == "ftp.example.com"
        assert args.server_port == 21
        assert args.data_port == (5000, 5010)
        assert args.server_connection_timeout == 3000

    def test_single_data_port(self):
        assert parse("proxy", "2121", "localhost", "21", "--data-port", "5000").data_port == (5000, 5000)

    def test_client_defaults(self):
        args = parse("ls", "ftp.example.com")

        assert args.port == 21
        assert args.user == "anonymous"
        assert args.password is None
        assert args.active is False
        assert args.path is None
        assert args.long is False

    def test_verbosity_flags(self):
        assert parse("--debug", "ls", "localhost").log_level == "DEBUG"
        assert parse("--quiet", "ls", "localhost").log_level == "ERROR"
        assert parse("ls", "localhost").log_level is None

    @pytest.mark.parametrize("argv", [
        ["proxy", "0", "localhost", "21"],
        ["proxy", "2121", "localhost", "99999"],
        ["proxy", "2121", "localhost", "21", "--data-port", "0-5000"],
        ["proxy", "2121", "localhost", "21", "--server-connection-timeout", "0"],
        ["ls", "bad host!"],
        ["--debug", "--quiet", "ls", "localhost"],
    ])
    def test_invalid_arguments(self, argv):
        with pytest.raises(SystemExit):
            build_parser().parse_args(argv)


class TestApplication:
    """Tests for the Application controller with mocked collaborators."""

    def make_app(self, tmp_path, *argv):
        args = parse("--config", str(tmp_path / "settings.json"), *argv)
        return Application(args)

    @patch("ftpmon.main.FTPClient")
    def test_ls_long(self, mock_client_class, tmp_path, capsys):
        """Test ls --long prints formatted entries using passive mode."""
        from datetime import datetime
        from ftpmon.ftp.direntry import DirEntry

        client = MagicMock()
        client.__enter__.return_value = client
        client.list_entries.return_value = iter([
            DirEntry(False, "ftp", "ftp", 42, datetime(2019, 1, 2), "notes.txt"),
        ])
        mock_client_class.connect.return_value = client

        app = self.make_app(tmp_path, "ls", "localhost", "/pub", "--long", "--password", "pw")
        assert app.run() == 0

        client.login.assert_called_once_with("anonymous", "pw")
        client.passive.assert_called_once()
        client.list_entries.assert_called_once_with("/pub")
        assert "notes.txt" in capsys.readouterr().out

    @patch("ftpmon.main.FTPClient")
    def test_ls_active(self, mock_client_class, tmp_path):
        client = MagicMock()
        client.__enter__.return_value = client
        client.nlist.return_value = iter(["a", "b"])
        mock_client_class.connect.return_value = client

        app = self.make_app(tmp_path, "ls", "localhost", "--active", "--password", "pw")
        assert app.run() == 0

        client.active.assert_called_once()
        client.passive.assert_not_called()

    @patch("ftpmon.main.FTPClient")
    def test_authentication_failure_exit_code(self, mock_client_class, tmp_path, caplog):
        """Test FTP errors are logged and mapped to exit code 1."""
        client = MagicMock()
        client.login.side_effect = FTPAuthenticationError("bob", 530, "Login incorrect")
        mock_client_class.connect.return_value = client

        app = self.make_app(tmp_path, "ls", "localhost", "--user", "bob", "--password", "bad")
        with caplog.at_level(logging.ERROR, logger="ftpmon"):
            assert app.run() == 1

        client.close.assert_called_once()
        assert "Authentication failed" in caplog.text

    @patch("ftpmon.main.FTPClient")
    def test_connection_failure_exit_code(self, mock_client_class, tmp_path):
        mock_client_class.connect.side_effect = FTPConnectionError("localhost", 21, OSError("refused"))

        app = self.make_app(tmp_path, "get", "localhost", "/pub/file", "--password", "pw")
        assert app.run() == 1

    @patch("ftpmon.main.getpass.getpass", return_value="prompted")
    @patch("ftpmon.main.CredentialManager")
    @patch("ftpmon.main.FTPClient")
    def test_password_from_keyring_then_prompt(self, mock_client_class, mock_credentials_class,
                                               mock_getpass, tmp_path):
        """Test the keyring is consulted before prompting."""
        client = MagicMock()
        client.__enter__.return_value = client
        client.nlist.return_value = iter([])
        mock_client_class.connect.return_value = client
        credentials = mock_credentials_class.return_value

        credentials.get_password.return_value = "stored"
        assert self.make_app(tmp_path, "ls", "localhost", "--user", "bob").run() == 0
        client.login.assert_called_with("bob", "stored")
        mock_getpass.assert_not_called()

        credentials.get_password.return_value = None
        client.nlist.return_value = iter([])
        assert self.make_app(tmp_path, "ls", "localhost", "--user", "bob", "--save-password").run() == 0
        client.login.assert_called_with("bob", "prompted")
        credentials.save_password.assert_called_once_with("localhost", "bob", "prompted")

    @patch("ftpmon.main.get_log_file_path")
    def test_default_log_file(self, mock_log_path, tmp_path):
        """Test --log writes to the default log file."""
        mock_log_path.return_value = tmp_path / "ftpmon.log"
        app = self.make_app(tmp_path, "--log", "ls", "localhost")

        assert (tmp_path / "ftpmon.log").exists()
        for handler in app._logger.handlers:
            handler.close()

    @patch("ftpmon.main.FtpReverseProxy")
    def test_proxy_uses_settings_and_overrides(self, mock_proxy_class, tmp_path):
        """Test the proxy is built from settings with command-line overrides."""
        app = self.make_app(tmp_path, "proxy", "2121", "ftp.example.com", "21",
                            "--data-port", "5000-5002", "--bind-address", "127.0.0.1")
        assert app.run() == 0

        args, kwargs = mock_proxy_class.call_args
        assert args[0] == ("127.0.0.1", 2121)
        assert args[1] == ("ftp.example.com", 21)
        assert (args[2].first, args[2].last) == (5000, 5002)
        assert kwargs["server_connection_timeout"] == 20.0
        mock_proxy_class.return_value.serve_forever.assert_called_once()
        mock_proxy_class.return_value.stop.assert_called_once()


def test_main_returns_exit_code(tmp_path):
    with patch("ftpmon.main.Application") as mock_app_class:
        mock_app_class.return_value.run.return_value = 0
        assert main(["--config", str(tmp_path / "s.json"), "ls", "localhost"]) == 0


class TestConfigCommand:
    """Tests for the config subcommand."""

    def run_config(self, tmp_path, *argv) -> int:
        args = parse("--config", str(tmp_path / "settings.json"), "config", *argv)
        return Application(args).run()

    def test_show(self, tmp_path, capsys):
        assert self.run_config(tmp_path, "show") == 0

        out = capsys.readouterr().out
        assert "data_port = 0" in out
        assert "passive_mode = True" in out
        assert "data_port_first" not in out

    def test_set_values(self, tmp_path):
        """Test values are converted to the setting's type and saved."""
        assert self.run_config(tmp_path, "set", "passive_mode", "no") == 0
        assert self.run_config(tmp_path, "set", "accept_timeout", "5000") == 0
        assert self.run_config(tmp_path, "set", "data_port", "5000-5010") == 0

        saved = json.loads((tmp_path / "settings.json").read_text())
        assert saved["passive_mode"] is False
        assert saved["accept_timeout"] == 5000
        assert (saved["data_port_first"], saved["data_port_last"]) == (5000, 5010)

    @pytest.mark.parametrize("key, value", [
        ("accept_timeout", "soon"),
        ("accept_timeout", "0"),
        ("hex_dump", "maybe"),
        ("log_level", "LOUD"),
        ("no_such_setting", "1"),
    ])
    def test_set_rejects_invalid(self, tmp_path, key, value):
        assert self.run_config(tmp_path, "set", key, value) == 1
        assert not (tmp_path / "settings.json").exists()

    def test_reset(self, tmp_path):
        assert self.run_config(tmp_path, "set", "hex_dump", "true") == 0
        assert self.run_config(tmp_path, "reset") == 0
        assert not (tmp_path / "settings.json").exists()

    @patch("ftpmon.main.CredentialManager")
    def test_forget_password(self, mock_credentials_class, tmp_path):
        """Test a stored password is removed from the keyring."""
        credentials = mock_credentials_class.return_value
        credentials.has_password.return_value = True
        credentials.delete_password.return_value = True

        assert self.run_config(tmp_path, "forget-password", "ftp.example.com", "--user", "bob") == 0
        credentials.delete_password.assert_called_once_with("ftp.example.com", "bob")

    @patch("ftpmon.main.CredentialManager")
    def test_forget_missing_password(self, mock_credentials_class, tmp_path):
        credentials = mock_credentials_class.return_value
        credentials.has_password.return_value = False

        assert self.run_config(tmp_path, "forget-password", "ftp.example.com") == 1
        credentials.delete_password.assert_not_called()
