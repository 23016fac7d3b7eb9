"""
Shared fixtures.  FakeServer stands in for the admin command of a database server.
"""

import pytest

import dbrestart

HEADER = "Client ID   User Name   Computer Name   Ext Privilege"


def admin_args(command):
    """Strip the admin command and the credentials, leaving the admin arguments."""
    args = list(command[1:])
    for option in ("-u", "-p"):
        if args[:1] == [option]:
            args = args[2:]
    return tuple(args)


class FakeServer:
    """
    Behaves like the admin command of a small database server.

    clients     - client rows shown below the header in "list clients"
    open_files  - resources shown by "list files"
    failures    - {args: exit_status} for commands that fail
    hooks       - {args: callable} run before the command is answered
    """

    def __init__(self, clients=None, open_files=None, close_fails=0):
        self.clients = list(clients or [])
        self.open_files = list(open_files or [])
        self.close_fails = close_fails
        self.failures = {}
        self.hooks = {}
        self.calls = []
        self.commands = []

    def run(self, command):
        args = admin_args(command)
        self.commands.append(list(command))
        self.calls.append(args)

        hook = self.hooks.get(args)
        if hook:
            hook()

        if args in self.failures:
            return f"Error: {' '.join(args)} failed", self.failures[args]

        if args == ("list", "clients"):
            return "\n".join([HEADER] + self.clients), 0
        if args == ("list", "files"):
            return "\n".join(f"{name}   Normal" for name in self.open_files), 0
        if args[0] == "close":
            closing = self.open_files[: len(self.open_files) - self.close_fails]
            log = [f"File Closed: {name}" for name in closing]
            log += [f"Error 802: unable to close {name}" for name in self.open_files[len(closing):]]
            self.open_files = self.open_files[len(closing):]
            return "\n".join(log), 0
        if args[0] in ("stop", "start"):
            return f"{args[0]} {args[1]}: ok", 0
        return f"Unknown command {args}", 1

    def close(self):
        pass

    def lifecycle_calls(self):
        return [args for args in self.calls if args[0] in ("stop", "start")]


@pytest.fixture
def config(tmp_path):
    config = dbrestart.Config(tmp_path / "dbrestart.conf")
    config.admin_cmd = "/opt/db/bin/dbadmin"
    config.admin_user = "admin"
    config.admin_password = "s3cret"
    config.flag_file = str(tmp_path / "state" / "restart.flag")
    config.log_file = str(tmp_path / "dbrestart.log")
    config.confirm_interval = 0.01
    config.confirm_timeout = 0.2
    config.service_timeout = 5
    config.metrics_method = dbrestart.NONE
    config.alert_url = ""
    return config


@pytest.fixture
def server():
    return FakeServer()


@pytest.fixture
def admin(config, server):
    return dbrestart.AdminClient(config, runner=server)


@pytest.fixture
def flag(config):
    return dbrestart.RestartFlag(config.flag_file)


@pytest.fixture
def alerter(config):
    return dbrestart.Alerter(config)


@pytest.fixture
def machine(config, admin, flag, alerter):
    return dbrestart.RestartStateMachine(config, admin, flag, alerter)
