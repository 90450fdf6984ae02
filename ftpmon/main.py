"""Command-line entry point for ftpmon.

Wires settings, credentials and logging together and dispatches to the
reverse proxy or to one of the client commands (ls, get, put).
"""

import argparse
import getpass
import logging
import shutil
import sys
from pathlib import Path, PurePosixPath
from typing import List, Optional

from ftpmon import __version__
from ftpmon.config.credentials import CredentialManager
from ftpmon.config.paths import get_log_file_path
from ftpmon.config.settings import MonitorSettings, SettingsManager
from ftpmon.ftp.client import FTPClient
from ftpmon.ftp.direntry import serialize_dir_entry
from ftpmon.ftp.exceptions import (
    FTPAuthenticationError,
    FTPConnectionError,
    FTPError,
    FTPTimeoutError,
)
from ftpmon.ftp.reverse_proxy import FtpReverseProxy
from ftpmon.net.ports import PortAllocator
from ftpmon.utils.logging import setup_logging
from ftpmon.utils.validators import parse_port_range, validate_host, validate_port, validate_timeout


def _port(text: str) -> int:
    try:
        port = int(text)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid port '{text}'")
    is_valid, error = validate_port(port)
    if not is_valid:
        raise argparse.ArgumentTypeError(error)
    return port


def _port_range(text: str):
    try:
        return parse_port_range(text)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e))


def _timeout(text: str) -> int:
    try:
        timeout = int(text)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid timeout '{text}'")
    is_valid, error = validate_timeout(timeout)
    if not is_valid:
        raise argparse.ArgumentTypeError(error)
    return timeout


def _host(text: str) -> str:
    is_valid, error = validate_host(text)
    if not is_valid:
        raise argparse.ArgumentTypeError(error)
    return text.strip()


def _setting_value(current, text: str):
    """Convert text to the type of a setting's current value."""
    if isinstance(current, bool):
        lowered = text.lower()
        if lowered in ("1", "true", "yes", "on"):
            return True
        if lowered in ("0", "false", "no", "off"):
            return False
        raise ValueError(f"expected true or false, got '{text}'")
    if isinstance(current, int):
        return int(text)
    return text


def build_parser() -> argparse.ArgumentParser:
    """Create the argument parser for all subcommands."""
    parser = argparse.ArgumentParser(
        prog="ftpmon",
        description="FTP monitoring proxy and command-line FTP client",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    verbosity = parser.add_mutually_exclusive_group()
    verbosity.add_argument("--verbose", "-v", action="store_const", dest="log_level",
                           const="INFO", help="log connections and transfers")
    verbosity.add_argument("--debug", "-d", action="store_const", dest="log_level",
                           const="DEBUG", help="log all control traffic and hex dumps")
    verbosity.add_argument("--quiet", "-q", action="store_const", dest="log_level",
                           const="ERROR", help="log errors only")
    log_target = parser.add_mutually_exclusive_group()
    log_target.add_argument("--log-file", type=Path, help="also write the log to this file")
    log_target.add_argument("--log", action="store_true", help="also write the log to ftpmon.log in the config dir")
    parser.add_argument("--config", type=Path, help="settings file (default: platform config dir)")

    commands = parser.add_subparsers(dest="command", required=True)

    proxy = commands.add_parser("proxy", help="run an FTP reverse proxy in front of a server")
    proxy.add_argument("local_port", type=_port, help="port clients connect to")
    proxy.add_argument("server_host", type=_host, help="FTP server host")
    proxy.add_argument("server_port", type=_port, help="FTP server port")
    proxy.add_argument("--bind-address", help="local address to listen on")
    proxy.add_argument("--data-port", type=_port_range, metavar="N|N-M",
                       help="local ports for data connections")
    proxy.add_argument("--server-connection-timeout", type=_timeout, metavar="MS",
                       help="timeout for connecting to the server in milliseconds")
    proxy.add_argument("--backlog", type=int, default=5, help="listen backlog")

    client = argparse.ArgumentParser(add_help=False)
    client.add_argument("host", type=_host, help="FTP server host")
    client.add_argument("--port", "-p", type=_port, default=21, help="FTP server port")
    client.add_argument("--user", "-u", default="anonymous", help="user name")
    client.add_argument("--password", help="password (default: keyring, then prompt)")
    client.add_argument("--active", action="store_true", help="use active mode (PORT)")
    client.add_argument("--save-password", action="store_true",
                        help="store the password in the system keyring")

    ls = commands.add_parser("ls", parents=[client], help="list a remote directory")
    ls.add_argument("path", nargs="?", help="remote directory")
    ls.add_argument("--long", "-l", action="store_true", help="long listing")

    get = commands.add_parser("get", parents=[client], help="download a file")
    get.add_argument("remote", help="remote file")
    get.add_argument("local", nargs="?", type=Path, help="local file (default: remote name)")

    put = commands.add_parser("put", parents=[client], help="upload a file")
    put.add_argument("local", type=Path, help="local file")
    put.add_argument("remote", nargs="?", help="remote file (default: local name)")

    config = commands.add_parser("config", help="show or change saved settings and passwords")
    actions = config.add_subparsers(dest="action", required=True)
    actions.add_parser("show", help="print the current settings")
    set_ = actions.add_parser("set", help="change one setting")
    set_.add_argument("key", help="setting name (data_port takes N or N-M)")
    set_.add_argument("value", help="new value")
    actions.add_parser("reset", help="restore the default settings")
    forget = actions.add_parser("forget-password", help="remove a password from the keyring")
    forget.add_argument("host", type=_host, help="FTP server host")
    forget.add_argument("--user", "-u", default="anonymous", help="user name")

    return parser


class Application:
    """
    Command-line application controller.

    Resolves settings, credentials and logging, then runs one command.
    """

    def __init__(self, args: argparse.Namespace):
        """
        Initialize the application.

        Args:
            args: Parsed command line
        """
        self._args = args
        self._settings_manager = SettingsManager(args.config)
        self._settings: MonitorSettings = self._settings_manager.load()
        self._credential_manager = CredentialManager()

        level_name = args.log_level or self._settings.log_level
        self._logger = setup_logging(
            level=getattr(logging, level_name.upper()),
            log_file=get_log_file_path() if args.log else args.log_file,
        )

    def run(self) -> int:
        """
        Run the selected command.

        Returns:
            Exit code (0 for success)
        """
        command = getattr(self, f"_run_{self._args.command}")
        try:
            return command() or 0
        except FTPError as e:
            self._logger.error(self._describe_error(e))
            return 1
        except OSError as e:
            self._logger.error(f"I/O error: {e}")
            return 1

    def _describe_error(self, error: FTPError) -> str:
        if isinstance(error, FTPAuthenticationError):
            return "Authentication failed. Check the user name and password."
        if isinstance(error, FTPTimeoutError):
            return f"{error}. Is the server reachable?"
        if isinstance(error, FTPConnectionError):
            return f"Could not connect to {error.host}:{error.port}: {error.original_error}"
        return f"FTP error: {error}"

    # config

    def _run_config(self) -> int:
        action = self._args.action.replace("-", "_")
        return getattr(self, f"_config_{action}")()

    def _config_show(self) -> int:
        print(f"# {self._settings_manager.config_path}")
        for key, value in self._settings.to_dict().items():
            if key == "data_port_first":
                print(f"data_port = {self._settings.data_port_range}")
            elif key != "data_port_last":
                print(f"{key} = {value}")
        return 0

    def _config_set(self) -> int:
        key, text = self._args.key, self._args.value
        try:
            if key == "data_port":
                first, last = parse_port_range(text)
                changes = {"data_port_first": first, "data_port_last": last}
            elif key in self._settings.to_dict():
                changes = {key: _setting_value(getattr(self._settings, key), text)}
            else:
                self._logger.error(f"Unknown setting '{key}'")
                return 1
            self._settings = self._settings_manager.update(**changes)
        except ValueError as e:
            self._logger.error(f"Invalid value for {key}: {e}")
            return 1

        self._logger.info(f"Saved {key} = {text}")
        return 0

    def _config_reset(self) -> int:
        self._settings = self._settings_manager.reset()
        self._logger.info("Settings reset to defaults")
        return 0

    def _config_forget_password(self) -> int:
        host, user = self._args.host, self._args.user
        if not self._credential_manager.has_password(host, user):
            self._logger.warning(f"No password stored for {user}@{host}")
            return 1
        if not self._credential_manager.delete_password(host, user):
            self._logger.error(f"Could not remove the password for {user}@{host}")
            return 1
        self._logger.info(f"Removed the password for {user}@{host}")
        return 0

    # proxy

    def _run_proxy(self) -> None:
        args = self._args
        first, last = args.data_port or (self._settings.data_port_first, self._settings.data_port_last)
        bind_address = args.bind_address or self._settings.bind_address
        timeout = args.server_connection_timeout or self._settings.server_connection_timeout

        proxy = FtpReverseProxy(
            (bind_address, args.local_port),
            (args.server_host, args.server_port),
            PortAllocator(first, last),
            server_connection_timeout=timeout / 1000,
            backlog=args.backlog,
            hex_dump=self._settings.hex_dump or args.log_level == "DEBUG",
        )
        try:
            proxy.serve_forever()
        except KeyboardInterrupt:
            self._logger.info("Interrupted")
        finally:
            proxy.stop()

    # client commands

    def _resolve_password(self) -> str:
        args = self._args
        if args.password is not None:
            password = args.password
        else:
            password = self._credential_manager.get_password(args.host, args.user)
            if password is None:
                if args.user == "anonymous":
                    password = "guest@"
                else:
                    password = getpass.getpass(f"Password for {args.user}@{args.host}: ")

        if args.save_password:
            self._credential_manager.save_password(args.host, args.user, password)
        return password

    def _connect(self) -> FTPClient:
        args = self._args
        client = FTPClient.connect(
            args.host,
            args.port,
            timeout=self._settings.server_connection_timeout / 1000,
            accept_timeout=self._settings.accept_timeout,
        )
        try:
            client.login(args.user, self._resolve_password())
        except Exception:
            client.close()
            raise
        return client

    def _select_mode(self, client: FTPClient) -> None:
        if self._args.active or not self._settings.passive_mode:
            client.active()
        else:
            client.passive()

    def _run_ls(self) -> None:
        with self._connect() as client:
            self._select_mode(client)
            if self._args.long:
                for entry in client.list_entries(self._args.path):
                    print(serialize_dir_entry(entry))
            else:
                for name in client.nlist(self._args.path):
                    print(name)
            client.quit()

    def _run_get(self) -> None:
        remote = self._args.remote
        local = self._args.local or Path(PurePosixPath(remote).name)

        with self._connect() as client:
            self._select_mode(client)
            with client.retrieve(remote) as source, open(local, "wb") as target:
                shutil.copyfileobj(source, target)
            self._logger.info(f"Downloaded '{remote}' to {local}")
            client.quit()

    def _run_put(self) -> None:
        local = self._args.local
        remote = self._args.remote or local.name

        with self._connect() as client:
            self._select_mode(client)
            with open(local, "rb") as source, client.store(remote) as target:
                shutil.copyfileobj(source, target)
            self._logger.info(f"Uploaded {local} to '{remote}'")
            client.quit()


def main(argv: Optional[List[str]] = None) -> int:
    """
    Command-line entry point.

    Returns:
        Exit code (0 for success)
    """
    args = build_parser().parse_args(argv)
    try:
        app = Application(args)
    except Exception as e:
        print(f"Fatal error: {e}", file=sys.stderr)
        return 1
    return app.run()


if __name__ == "__main__":
    sys.exit(main())
