"""
Tests for the admin command wrapper and its runners.
"""

import socket
import sys
from unittest.mock import MagicMock, patch

import paramiko
import pytest

import dbrestart
from dbrestart import AdminClient, AdminCommandError, LocalRunner, SshRunner
from tests.conftest import HEADER, FakeServer


class TestAdminClientCommands:
    """The command lines passed to the runner."""

    def test_credentials_passed_to_command(self, admin, server):
        admin.run("list", "clients")
        assert server.commands[0] == ["/opt/db/bin/dbadmin", "-u", "admin", "-p", "s3cret", "list", "clients"]

    def test_no_credentials_when_not_configured(self, config, server):
        config.admin_user = ""
        config.admin_password = ""
        AdminClient(config, runner=server).run("list", "clients")
        assert server.commands[0] == ["/opt/db/bin/dbadmin", "list", "clients"]

    def test_password_masked(self, admin):
        command = admin.build_command(["close", "--force"])
        masked = admin.masked(command)
        assert "s3cret" not in masked
        assert dbrestart.MASK in masked

    def test_password_never_logged(self, admin, caplog):
        caplog.set_level("DEBUG", logger="dbrestart")
        admin.run("list", "clients")
        assert "s3cret" not in caplog.text

    def test_non_zero_exit_raises(self, admin, server):
        server.failures[("list", "clients")] = 9
        with pytest.raises(AdminCommandError) as exc:
            admin.run("list", "clients")
        assert exc.value.exit_status == 9
        assert "failed" in exc.value.raw_output
        assert "s3cret" not in str(exc.value)

    def test_stop_passes_force(self, admin, server):
        admin.stop_subsystem("adminserver")
        admin.start_subsystem("server")
        assert server.calls == [("stop", "adminserver", "--force"), ("start", "server")]

    def test_unknown_subsystem(self, admin, server):
        with pytest.raises(ValueError):
            admin.stop_subsystem("webserver")
        assert server.calls == []


class TestAdminClientParsing:
    """Parsing the admin command output."""

    def test_list_clients_drops_header(self, admin, server):
        server.clients = ["17  alice  LAPTOP-1  fmapp", "18  bob  DESKTOP-9  fmapp"]
        clients = admin.list_clients()
        assert [c.client_id for c in clients] == ["17", "18"]
        assert clients[0].raw == "17  alice  LAPTOP-1  fmapp"

    def test_list_clients_header_only(self, admin):
        assert admin.list_clients() == []

    def test_list_clients_ignores_blank_lines(self, config):
        runner = MagicMock()
        runner.run.return_value = (f"\n{HEADER}\n\n 3  carol  PC  fmapp\n\n", 0)
        assert len(AdminClient(config, runner=runner).list_clients()) == 1

    def test_list_resources(self, admin, server):
        server.open_files = ["Sales.fmp12", "Stock.fmp12"]
        resources = admin.list_resources()
        assert [r.identifier for r in resources] == ["Sales.fmp12", "Stock.fmp12"]
        assert all(r.is_open for r in resources)
        assert admin.count_open() == 2

    def test_closed_resources_not_counted(self, config):
        runner = MagicMock()
        runner.run.return_value = ("Sales.fmp12 Normal\nOld.fmp12 Closed\n", 0)
        client = AdminClient(config, runner=runner)
        assert [r.is_open for r in client.list_resources()] == [True, False]
        assert client.count_open() == 1

    def test_close_all_counts_markers(self, admin, server):
        server.open_files = ["a.fmp12", "b.fmp12", "c.fmp12"]
        server.close_fails = 1
        output, closed = admin.close_all(force=True)
        assert closed == 2
        assert "unable to close c.fmp12" in output
        assert server.calls == [("close", "--force")]

    def test_close_all_without_force(self, admin, server):
        admin.close_all(force=False)
        assert server.calls == [("close",)]

    def test_custom_marker(self, config):
        config.closed_marker = "DONE"
        runner = MagicMock()
        runner.run.return_value = ("done a\nDONE b\nc failed\nnot done d\n", 0)
        output, closed = AdminClient(config, runner=runner).close_all()
        assert closed == 2

    def test_count_marker_lines(self):
        assert dbrestart.count_marker_lines("", "File Closed:") == 0
        assert dbrestart.count_marker_lines("File Closed: a\n  FILE CLOSED: b\nerror", "File Closed:") == 2

    def test_count_marker_lines_ignores_other_mentions(self):
        """Only lines starting with the marker are closed resources."""
        output = "File Closed: a\nError: File Closed: b failed\nFile not closed: c\nunclosed d"
        assert dbrestart.count_marker_lines(output, "File Closed:") == 1
        assert dbrestart.count_marker_lines(output, "closed") == 0


class TestRunnerSelection:

    def test_local_runner_by_default(self, config):
        assert isinstance(AdminClient(config).runner, LocalRunner)

    def test_ssh_runner_with_admin_host(self, config):
        config.admin_host = "db1.example.org"
        runner = AdminClient(config).runner
        assert isinstance(runner, SshRunner)
        assert runner.host == "db1.example.org"
        assert runner.ssh_user == config.ssh_user


class TestLocalRunner:
    """LocalRunner runs real processes."""

    def test_output_and_status(self):
        output, status = LocalRunner(10).run([sys.executable, "-c", "print('hello'); import sys; sys.exit(3)"])
        assert output == "hello"
        assert status == 3

    def test_stderr_included(self):
        output, status = LocalRunner(10).run([sys.executable, "-c", "import sys; sys.stderr.write('bad'); sys.exit(1)"])
        assert "bad" in output
        assert status == 1

    def test_timeout(self):
        output, status = LocalRunner(0.2).run([sys.executable, "-c", "import time; time.sleep(5)"])
        assert status == dbrestart.TIMEOUT_STATUS

    def test_missing_command(self, tmp_path):
        output, status = LocalRunner(10).run([str(tmp_path / "no-such-dbadmin")])
        assert status == dbrestart.NOT_FOUND_STATUS


class TestSshRunner:
    """SshRunner with paramiko mocked out."""

    def make_client(self, stdout_text="", stderr_text="", exit_status=0):
        stdout = MagicMock()
        stdout.read.return_value = stdout_text.encode()
        stdout.channel.recv_exit_status.return_value = exit_status
        stderr = MagicMock()
        stderr.read.return_value = stderr_text.encode()
        client = MagicMock()
        client.exec_command.return_value = (MagicMock(), stdout, stderr)
        return client

    def test_run_uses_key_only(self):
        client = self.make_client("Client ID\n", exit_status=0)
        with patch("dbrestart.paramiko.SSHClient", return_value=client), \
                patch("dbrestart.paramiko.ECDSAKey.from_private_key_file") as load_key:
            runner = SshRunner("db1", "dbrestart", "/keys/dbrestartkey", 30)
            output, status = runner.run(["dbadmin", "-p", "pa ss", "list", "clients"])

        assert (output, status) == ("Client ID", 0)
        load_key.assert_called_once_with("/keys/dbrestartkey")
        kwargs = client.connect.call_args.kwargs
        assert kwargs["allow_agent"] is False
        assert kwargs["look_for_keys"] is False
        command = client.exec_command.call_args.args[0]
        assert command == "dbadmin -p 'pa ss' list clients"

    def test_connection_reused(self):
        client = self.make_client("ok")
        with patch("dbrestart.paramiko.SSHClient", return_value=client) as ssh_class, \
                patch("dbrestart.paramiko.ECDSAKey.from_private_key_file"):
            runner = SshRunner("db1", "dbrestart", "/keys/k", 30)
            runner.run(["dbadmin", "list", "files"])
            runner.run(["dbadmin", "list", "files"])
            runner.close()
        assert ssh_class.call_count == 1
        client.close.assert_called_once()

    def test_exit_status_returned(self):
        client = self.make_client("", "Error 10502", exit_status=4)
        with patch("dbrestart.paramiko.SSHClient", return_value=client), \
                patch("dbrestart.paramiko.ECDSAKey.from_private_key_file"):
            output, status = SshRunner("db1", "u", "/k", 30).run(["dbadmin", "stop", "server"])
        assert status == 4
        assert "Error 10502" in output

    def test_timeout(self):
        client = self.make_client()
        client.exec_command.side_effect = socket.timeout()
        with patch("dbrestart.paramiko.SSHClient", return_value=client), \
                patch("dbrestart.paramiko.ECDSAKey.from_private_key_file"):
            output, status = SshRunner("db1", "u", "/k", 30).run(["dbadmin", "list", "clients"])
        assert status == dbrestart.TIMEOUT_STATUS

    def test_ssh_error(self):
        client = self.make_client()
        client.connect.side_effect = paramiko.SSHException("auth failed")
        with patch("dbrestart.paramiko.SSHClient", return_value=client), \
                patch("dbrestart.paramiko.ECDSAKey.from_private_key_file"):
            runner = SshRunner("db1", "u", "/k", 30)
            output, status = runner.run(["dbadmin", "list", "clients"])
        assert status == dbrestart.SSH_ERROR_STATUS
        assert "auth failed" in output
        assert runner.ssh_client is None

    def test_failure_surfaces_as_admin_error(self, config):
        """A failed ssh command becomes an AdminCommandError like any other."""
        runner = MagicMock()
        runner.run.return_value = ("SSH error on db1", dbrestart.SSH_ERROR_STATUS)
        with pytest.raises(AdminCommandError) as exc:
            AdminClient(config, runner=runner).list_clients()
        assert exc.value.exit_status == 255


def test_fake_server_answers_unknown_commands():
    output, status = FakeServer().run(["dbadmin", "backup"])
    assert status == 1
