#---------------------------------------------------------------------------------
# Copyright (c) 2025 Lancaster University
# Written by: Gerard Hand
#
# Permission is hereby granted, free of charge, to any person obtaining a copy
# of this software and associated documentation files (the "Software"), to deal
# in the Software without restriction, including without limitation the rights
# to use, copy, modify, merge, publish, distribute, sublicense, and/or sell
# copies of the Software, and to permit persons to whom the Software is
# furnished to do so, subject to the following conditions:
#
# The above copyright notice and this permission notice shall be included in all
# copies or substantial portions of the Software.
#
# THE SOFTWARE IS PROVIDED "AS IS", WITHOUT WARRANTY OF ANY KIND, EXPRESS OR
# IMPLIED, INCLUDING BUT NOT LIMITED TO THE WARRANTIES OF MERCHANTABILITY,
# FITNESS FOR A PARTICULAR PURPOSE AND NONINFRINGEMENT. IN NO EVENT SHALL THE
# AUTHORS OR COPYRIGHT HOLDERS BE LIABLE FOR ANY CLAIM, DAMAGES OR OTHER
# LIABILITY, WHETHER IN AN ACTION OF CONTRACT, TORT OR OTHERWISE, ARISING FROM,
# OUT OF OR IN CONNECTION WITH THE SOFTWARE OR THE USE OR OTHER DEALINGS IN THE
# SOFTWARE.
#
#---------------------------------------------------------------------------------
# Exit Codes:
# 0 - Clean exit.  The restart completed or there was nothing to do.
# 1 - Restart aborted because clients are connected.  The flag is kept for the next run.
# 2 - Terminated because of an exception.
# 3 - Signal shutdown.
# 4 - The server didn't return to a quiescent state before confirm_timeout.
# 5 - The private key doesn't exist.
# Any other value is the exit status of the admin command that failed.
#
#---------------------------------------------------------------------------------
# Notes:
# - A restart is only attempted when the restart flag file exists.  Deployment and
#   certificate tooling create it with "dbrestart --trigger".
# - Nothing stops two copies of the program running at the same time.  Run it from
#   cron, a systemd timer or with --every so the runs never overlap.
# - Stopping and starting the subsystems is never rolled back.  If a step fails the
#   server may be left stopped and needs looking at.
#
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives import serialization
from collections import namedtuple
import argparse
import configparser
from datetime import datetime, timezone
import json
import logging
import os
import paramiko
from pathlib import Path
from prometheus_client import start_http_server, Gauge, Histogram, CollectorRegistry, push_to_gateway
import requests
import schedule
import shlex
import signal
import socket
import stat
import subprocess
import sys
import time
import threading
import traceback

#-----------------------------------------------------------------------------------------------------
# Global data
logger = logging.getLogger('dbrestart')

#-----------------------------------------------------------------------------------------------------
# Constants
VERSION = "1.0.0"
PULL = 'PULL'
PUSH = 'PUSH'
NONE = 'NONE'
HEARTBEAT_INTERVAL = 5

EXIT_OK = 0
EXIT_ABORTED = 1
EXIT_EXCEPTION = 2
EXIT_SIGNAL = 3
EXIT_CONFIRM_TIMEOUT = 4
EXIT_NO_KEY = 5

# Exit statuses reported by the runners when the admin command never produced one.
TIMEOUT_STATUS = 124
NOT_FOUND_STATUS = 127
SSH_ERROR_STATUS = 255

# The client listing always starts with a single header row.
# NOTE: This isn't checked.  If the admin tool changes its output the client count will be wrong.
CLIENT_HEADER_ROWS = 1
FORCE_OPTION = '--force'
MASK = '********'

# Restart outcomes
COMPLETED = 'COMPLETED'
ABORTED_CLIENTS_CONNECTED = 'ABORTED_CLIENTS_CONNECTED'
ABORTED_NOTHING_TO_DO = 'ABORTED_NOTHING_TO_DO'
FAILED = 'FAILED'

# Restart states
IDLE = 'IDLE'
CHECK_PENDING = 'CHECK_PENDING'
DRAINING = 'DRAINING'
CLOSING = 'CLOSING'
STOPPING = 'STOPPING'
STARTING = 'STARTING'
CONFIRMING = 'CONFIRMING'
ABORTED = 'ABORTED'

# Prometheus and Alertmanager
ALERT_DBRESTART_RESTART_ERROR = 'DBRESTART_RESTART_ERROR'
ALERT_TYPE_LIST = [ALERT_DBRESTART_RESTART_ERROR]

#-----------------------------------------------------------------------------------------------------
# Default Config Options Values
is_root = os.geteuid() == 0
config_path = Path("/etc/dbrestart/" if is_root else os.path.expanduser("~/.config/dbrestart/"))
state_path = Path("/var/lib/dbrestart/" if is_root else os.path.expanduser("~/.local/state/dbrestart/"))

ADMIN_CMD          = 'dbadmin'
ADMIN_USER         = ''
ADMIN_PASSWORD     = ''
ADMIN_HOST         = ''
ADMIN_SVC          = 'adminserver'
MAIN_SVC           = 'server'
LIST_CLIENTS_CMD   = 'list clients'
LIST_RESOURCES_CMD = 'list files'
CLOSED_MARKER      = 'File Closed:'
SSH_USER           = 'dbrestart'
PKEY_NAME          = 'dbrestartkey'
PKEY_PATH          = config_path
CONFIG_DIR         = config_path
CONFIG_FILE_NAME   = 'dbrestart.conf'
FLAG_FILE          = state_path / 'restart.flag'
LOG_FILE           = '/var/log/dbrestart.log' if is_root else str(state_path / 'dbrestart.log')
LOG_LEVEL          = 'INFO'
CLUSTER_ID         = 'production'
CONFIRM_INTERVAL   = 10             # 10 seconds
CONFIRM_TIMEOUT    = 30 * 60        # 30 mins
SERVICE_TIMEOUT    = 300
ALERTMANAGER_URL   = ''
PUSHGW_URL         = 'http://localhost:9091'
METRICS_PORT       = 8000
METRICS_METHOD     = NONE

#--------------------------------------- Config Class -------------------------------------------------------
# Holds the current settings used in the program.
#
# Config Options
#
# admin_cmd          - Path to the admin command used to control the database server.
# admin_user         - User name passed to the admin command.
# admin_password     - Password passed to the admin command.  Never written to the log.
# admin_host         - Run the admin command on this host over ssh.  Blank runs it locally.
# admin_svc          - Name of the admin subsystem.  Stopped first and started last.
# main_svc           - Name of the main database subsystem.
# alert_url          - Alert-manager URL + port.  Blank disables alerts.
# closed_marker      - Text starting a line of the close output for each closed resource.
# cluster_id         - Value to use in the metrics cluster label.
# confirm_interval   - Seconds between checks that the server has settled after the restart.
# confirm_timeout    - Seconds to wait for the server to settle.  0 waits forever.
# flag_file          - File whose existence means a restart is wanted.
# list_clients_cmd   - Admin command arguments that list the connected clients.
# list_resources_cmd - Admin command arguments that list the open resources.
# log_file           - Log file.
# log_level          - Logging output level: DEBUG, INFO, WARNING, ERROR, CRITICAL.
# metrics_method     - Method of transfering metrics: PUSH, PULL, NONE.
# metrics_port       - Listening port to provide prometheus metrics.
# pkey_name          - File name of the private key file used with admin_host.  (not including path)
# pkey_path          - Directory containing pkey_name file.
# pushgw_url         - URL + port of the gateway for pushing prometheus metrics.
# service_timeout    - Seconds to wait for an admin command to finish.
# ssh_user           - User used by the ssh connection.
#
# Options automatically set but not saved to the settings file
# hostname           - Hostname of the computer running this program.
#
class Config:

    def __init__(self, config_file=None, fail_no_key=True):
        # If True reading the config will exit the program if admin_host is set and the private key doesn't exist.
        self.__fail_no_key = fail_no_key

        self.config_file = str(config_file) if config_file else os.path.join(CONFIG_DIR, CONFIG_FILE_NAME)
        self.config_dir = os.path.dirname(self.config_file)

        # Passwords can contain '%' so turn off interpolation.
        self.parser = configparser.ConfigParser(interpolation=None)

        self.admin_cmd = ADMIN_CMD
        self.admin_user = ADMIN_USER
        self.admin_password = ADMIN_PASSWORD
        self.admin_host = ADMIN_HOST
        self.admin_svc = ADMIN_SVC
        self.main_svc = MAIN_SVC
        self.list_clients_cmd = LIST_CLIENTS_CMD
        self.list_resources_cmd = LIST_RESOURCES_CMD
        self.closed_marker = CLOSED_MARKER
        self.ssh_user = SSH_USER
        self.pkey_name = PKEY_NAME
        self.pkey_path = str(PKEY_PATH)
        self.flag_file = str(FLAG_FILE)
        self.log_file = LOG_FILE
        self.log_level = LOG_LEVEL
        self.cluster_id = CLUSTER_ID
        self.confirm_interval = CONFIRM_INTERVAL
        self.confirm_timeout = CONFIRM_TIMEOUT
        self.service_timeout = SERVICE_TIMEOUT
        self.alert_url = ALERTMANAGER_URL
        self.pushgw_url = PUSHGW_URL
        self.metrics_port = METRICS_PORT
        self.metrics_method = METRICS_METHOD

        self.priv_file = os.path.join(self.pkey_path, self.pkey_name)
        self.set_extra_values()


    def load_config(self):
        # Read the settings from the config file.
        # Create a default config file if it doesn't exist.
        if not os.path.exists(self.config_file):
            logger.info(f"Create a default config file: {self.config_file}")
            if self.config_dir:
                os.makedirs(self.config_dir, exist_ok=True)
            self.save_config()

        # Read the contents of the file and extract the settings.
        self.parser.read(self.config_file)
        if not self.parser.has_section('general'):
            self.parser.add_section('general')
        general = self.parser['general']

        self.log_level = general.get('log_level', fallback=LOG_LEVEL).upper()
        if self.log_level not in logging._nameToLevel:
            self.log_level = LOG_LEVEL

        self.admin_cmd = general.get('admin_cmd', fallback=ADMIN_CMD)
        self.admin_user = general.get('admin_user', fallback=ADMIN_USER)
        self.admin_password = general.get('admin_password', fallback=ADMIN_PASSWORD)
        self.admin_host = general.get('admin_host', fallback=ADMIN_HOST)
        self.admin_svc = general.get('admin_svc', fallback=ADMIN_SVC)
        self.main_svc = general.get('main_svc', fallback=MAIN_SVC)
        self.list_clients_cmd = general.get('list_clients_cmd', fallback=LIST_CLIENTS_CMD)
        self.list_resources_cmd = general.get('list_resources_cmd', fallback=LIST_RESOURCES_CMD)
        self.closed_marker = general.get('closed_marker', fallback=CLOSED_MARKER)
        self.ssh_user = general.get('ssh_user', fallback=SSH_USER)
        self.pkey_name = general.get('pkey_name', fallback=PKEY_NAME)
        self.pkey_path = os.path.expanduser(general.get('pkey_path', fallback=str(PKEY_PATH)))
        self.flag_file = os.path.expanduser(general.get('flag_file', fallback=str(FLAG_FILE)))
        self.log_file = os.path.expanduser(general.get('log_file', fallback=LOG_FILE))
        self.cluster_id = general.get('cluster_id', fallback=CLUSTER_ID)
        self.confirm_interval = float(general.get('confirm_interval', fallback=CONFIRM_INTERVAL))
        self.confirm_timeout = float(general.get('confirm_timeout', fallback=CONFIRM_TIMEOUT))
        self.service_timeout = int(general.get('service_timeout', fallback=SERVICE_TIMEOUT))
        self.alert_url = general.get('alert_url', fallback=ALERTMANAGER_URL)
        self.pushgw_url = general.get('pushgw_url', fallback=PUSHGW_URL)
        self.metrics_port = int(general.get('metrics_port', fallback=METRICS_PORT))
        self.metrics_method = general.get('metrics_method', fallback=METRICS_METHOD).upper()
        if self.metrics_method not in [PUSH, PULL, NONE]:
            logger.error(f"{self.metrics_method} is not a valid metrics method.  Changing to {METRICS_METHOD}")
            self.metrics_method = METRICS_METHOD

        # Set object fields that aren't read from the config file.
        self.set_extra_values()

        # Check the private key exists.  It's only needed when the admin command runs on another host.
        self.priv_file = os.path.join(self.pkey_path, self.pkey_name)
        if self.admin_host and self.pkey_name and not os.path.isfile(self.priv_file):
            if self.__fail_no_key:
                logger.info(f"The private key {self.priv_file} doesn't exist.  Create it with --create-keys")
                sys.exit(EXIT_NO_KEY)


    def set_extra_values(self):
        self.hostname = socket.gethostname()


    def save_config(self):
        # Write the settings back to the config file.
        self.parser['general'] = {
            'admin_cmd': self.admin_cmd,
            'admin_user': self.admin_user,
            'admin_password': self.admin_password,
            'admin_host': self.admin_host,
            'admin_svc': self.admin_svc,
            'main_svc': self.main_svc,
            'list_clients_cmd': self.list_clients_cmd,
            'list_resources_cmd': self.list_resources_cmd,
            'closed_marker': self.closed_marker,
            'ssh_user': self.ssh_user,
            'pkey_name': self.pkey_name,
            'pkey_path': self.pkey_path,
            'flag_file': self.flag_file,
            'log_file': self.log_file,
            'log_level': self.log_level,
            'cluster_id': self.cluster_id,
            'confirm_interval': self.confirm_interval,
            'confirm_timeout': self.confirm_timeout,
            'service_timeout': self.service_timeout,
            'alert_url': self.alert_url,
            'pushgw_url': self.pushgw_url,
            'metrics_port': self.metrics_port,
            'metrics_method': self.metrics_method
        }
        with open(self.config_file, 'w') as configfile:
            self.parser.write(configfile)
        # The file holds the admin password.
        os.chmod(self.config_file, 0o600)


    def describe(self):
        # Return the settings as "name: value" lines.  The password is masked.
        return [
            f"config_file: {self.config_file}",
            f"admin_cmd: {self.admin_cmd}",
            f"admin_user: {self.admin_user}",
            f"admin_password: {MASK if self.admin_password else ''}",
            f"admin_host: {self.admin_host}",
            f"admin_svc: {self.admin_svc}",
            f"main_svc: {self.main_svc}",
            f"list_clients_cmd: {self.list_clients_cmd}",
            f"list_resources_cmd: {self.list_resources_cmd}",
            f"closed_marker: {self.closed_marker}",
            f"ssh_user: {self.ssh_user}",
            f"pkey_name: {self.pkey_name}",
            f"pkey_path: {self.pkey_path}",
            f"flag_file: {self.flag_file}",
            f"log_file: {self.log_file}",
            f"log_level: {self.log_level}",
            f"cluster_id: {self.cluster_id}",
            f"confirm_interval: {self.confirm_interval}",
            f"confirm_timeout: {self.confirm_timeout}",
            f"service_timeout: {self.service_timeout}",
            f"alert_url: {self.alert_url}",
            f"pushgw_url: {self.pushgw_url}",
            f"metrics_port: {self.metrics_port}",
            f"metrics_method: {self.metrics_method}",
        ]


    def log(self):
        for line in self.describe():
            logger.info(line)


    def create_keys(self):
        # Create an ECDSA key pair to use to authenticate the ssh connection to admin_host.
        # Make sure the key directory exists first.
        if not os.path.isdir(self.pkey_path):
            logger.info(f"Creating {self.pkey_path}")
            os.makedirs(self.pkey_path)

        # Generate a new ECDSA private key and save to file.
        private_key = ec.generate_private_key(ec.SECP521R1())
        with open(self.priv_file, 'wb') as f:
            logger.debug(f"Writing private key: {self.priv_file}")
            f.write(private_key.private_bytes(
                encoding=serialization.Encoding.PEM,
                format=serialization.PrivateFormat.TraditionalOpenSSL,
                encryption_algorithm=serialization.NoEncryption()
            ))
        os.chmod(self.priv_file, 0o600)

        # Create a public key using the private key and save to file.
        pub_file = self.priv_file + ".pub"
        public_key = private_key.public_key()
        with open(pub_file, 'wb') as f:
            logger.debug(f"Writing public key: {pub_file}")
            f.write(public_key.public_bytes(
                encoding=serialization.Encoding.OpenSSH,
                format=serialization.PublicFormat.OpenSSH
            ))
        return pub_file

#-----------------------------------------------------------------------------------------------------

class RestartFlag:
    # The restart flag.  The file existing means a restart is wanted.  It holds the time
    # the restart was requested.

    class FlagError(Exception):
        pass


    def __init__(self, flag_file):
        self.flag_file = Path(flag_file)


    def set_pending(self):
        # Writing the file again just updates the request time so there is only ever one flag.
        try:
            self.flag_file.parent.mkdir(parents=True, exist_ok=True)
            self.flag_file.write_text(datetime.now(timezone.utc).isoformat() + "\n")
        except OSError as e:
            raise RestartFlag.FlagError(f"Unable to set the restart flag {self.flag_file}: {e}")
        logger.info(f"Restart flag set: {self.flag_file}")


    def is_pending(self):
        try:
            return stat.S_ISREG(self.flag_file.stat().st_mode)
        except FileNotFoundError:
            return False
        except OSError as e:
            raise RestartFlag.FlagError(f"Unable to read the restart flag {self.flag_file}: {e}")


    def requested_at(self):
        if not self.is_pending():
            return None
        try:
            return datetime.fromisoformat(self.flag_file.read_text().strip())
        except ValueError:
            # Somebody touched the file rather than using --trigger.
            return datetime.fromtimestamp(self.flag_file.stat().st_mtime, timezone.utc)
        except OSError as e:
            raise RestartFlag.FlagError(f"Unable to read the restart flag {self.flag_file}: {e}")


    def clear(self):
        try:
            self.flag_file.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            raise RestartFlag.FlagError(f"Unable to clear the restart flag {self.flag_file}: {e}")
        logger.info(f"Restart flag cleared: {self.flag_file}")

#-----------------------------------------------------------------------------------------------------
# Records returned by the admin client.  Everything else in the program works with these rather
# than the text the admin command outputs.

ClientSession = namedtuple('ClientSession', ['client_id', 'raw'])
OpenResource = namedtuple('OpenResource', ['identifier', 'is_open'])
CloseResult = namedtuple('CloseResult', ['closed_count', 'failures', 'open_before'])


def parse_client_row(row):
    fields = row.split()
    return ClientSession(fields[0], row.strip())


def parse_resource_row(row):
    fields = row.split()
    is_open = not any(field.lower() == 'closed' for field in fields[1:])
    return OpenResource(fields[0], is_open)


def count_marker_lines(output, marker):
    # Only lines starting with the marker count.  "Error: file not closed" mustn't.
    marker = marker.lower()
    return sum(1 for line in output.splitlines() if line.strip().lower().startswith(marker))


class AdminCommandError(Exception):

    def __init__(self, exit_status, raw_output, command=''):
        self.exit_status = exit_status
        self.raw_output = raw_output
        self.command = command
        super().__init__(f"Admin command '{command}' failed with exit status {exit_status}: {raw_output}")

#-----------------------------------------------------------------------------------------------------

class LocalRunner:
    # Run the admin command on this computer.

    def __init__(self, timeout):
        self.timeout = timeout


    def run(self, command):
        try:
            result = subprocess.run(command, capture_output=True, text=True, timeout=self.timeout)
        except subprocess.TimeoutExpired:
            logger.error(f"Timeout after {self.timeout}s running {command[0]}")
            return f"Timeout after {self.timeout}s", TIMEOUT_STATUS
        except OSError as e:
            logger.error(f"Unable to run {command[0]}: {e}")
            return str(e), NOT_FOUND_STATUS
        output = "\n".join(part for part in (result.stdout.strip(), result.stderr.strip()) if part)
        return output, result.returncode


    def close(self):
        pass


class SshRunner:
    # Run the admin command on admin_host using ssh.

    def __init__(self, host, ssh_user, pkey_file, timeout):
        self.host = host
        self.ssh_user = ssh_user
        self.pkey_file = pkey_file
        self.timeout = timeout
        self.ssh_client = None


    def connect(self):
        # Connect to the server. Only use the private key specified in the config.
        # Stop it using the agent as that could result in intermittent working/not working.
        # Don't look in the .ssh directory for valid keys.
        if self.ssh_client is None:
            logger.info(f"Connecting to {self.host}")
            private_key = paramiko.ECDSAKey.from_private_key_file(self.pkey_file)
            ssh_client = paramiko.SSHClient()
            ssh_client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
            ssh_client.connect(self.host, username=self.ssh_user, pkey=private_key, allow_agent=False, look_for_keys=False)
            logger.debug(f"Connected to {self.host}")
            self.ssh_client = ssh_client
        return self.ssh_client


    def run(self, command):
        try:
            ssh_client = self.connect()
            # NOTE: exec_command() doen't generate an exception when the timeout is reached.
            #       The exception is raised when stdout.read() is executed.
            stdin, stdout, stderr = ssh_client.exec_command(shlex.join(command), timeout=self.timeout)
            ret_stdout = stdout.read().decode().strip()
            ret_stderr = stderr.read().decode().strip()
            exit_status = stdout.channel.recv_exit_status()
        except socket.timeout:
            logger.error(f"Timeout while executing {command[0]} on {self.host}")
            self.close()
            return f"Timeout after {self.timeout}s on {self.host}", TIMEOUT_STATUS
        except (paramiko.SSHException, OSError) as e:
            logger.error(f"SSH error while executing {command[0]} on {self.host}: {e}")
            self.close()
            return f"SSH error on {self.host}: {e}", SSH_ERROR_STATUS

        output = "\n".join(part for part in (ret_stdout, ret_stderr) if part)
        return output, exit_status


    def close(self):
        if self.ssh_client is not None:
            try:
                logger.info(f"Closing connection to {self.host}")
                self.ssh_client.close()
            except Exception as e:
                logger.error(f"Error closing connection to {self.host}: {str(e)}")
            self.ssh_client = None

#-----------------------------------------------------------------------------------------------------

class AdminClient:
    # Synchronous wrapper round the admin command.  All the parsing of the command output is done
    # here so the rest of the program only sees ClientSession, OpenResource and counts.

    def __init__(self, config, runner=None):
        self.admin_cmd = config.admin_cmd
        self.admin_user = config.admin_user
        self.admin_password = config.admin_password
        self.admin_svc = config.admin_svc
        self.main_svc = config.main_svc
        self.list_clients_args = shlex.split(config.list_clients_cmd)
        self.list_resources_args = shlex.split(config.list_resources_cmd)
        self.closed_marker = config.closed_marker

        if runner is None:
            if config.admin_host:
                runner = SshRunner(config.admin_host, config.ssh_user, config.priv_file, config.service_timeout)
            else:
                runner = LocalRunner(config.service_timeout)
        self.runner = runner


    def build_command(self, args):
        command = [self.admin_cmd]
        if self.admin_user:
            command += ['-u', self.admin_user]
        if self.admin_password:
            command += ['-p', self.admin_password]
        return command + list(args)


    def masked(self, command):
        return ' '.join(MASK if self.admin_password and part == self.admin_password else part for part in command)


    def run(self, *args):
        # Returns (output, exit_status).  A non-zero exit status raises AdminCommandError.
        command = self.build_command(args)
        logger.debug(f"Executing admin command: {self.masked(command)}")
        start_time = time.time()
        output, exit_status = self.runner.run(command)
        logger.debug(f"Exit status {exit_status} after {time.time() - start_time:.1f}s")
        logger.debug(f"output: {output}")
        if exit_status != 0:
            raise AdminCommandError(exit_status, output, ' '.join(args))
        return output, exit_status


    def rows(self, output):
        return [line for line in output.splitlines() if line.strip()]


    def list_clients(self):
        output, exit_status = self.run(*self.list_clients_args)
        return [parse_client_row(row) for row in self.rows(output)[CLIENT_HEADER_ROWS:]]


    def list_resources(self):
        output, exit_status = self.run(*self.list_resources_args)
        return [parse_resource_row(row) for row in self.rows(output)]


    def count_open(self):
        return sum(1 for resource in self.list_resources() if resource.is_open)


    def close_all(self, force=True):
        # Returns the close output and the number of lines in it saying a resource was closed.
        args = ['close', FORCE_OPTION] if force else ['close']
        output, exit_status = self.run(*args)
        return output, count_marker_lines(output, self.closed_marker)


    def check_subsystem(self, name):
        if name not in (self.admin_svc, self.main_svc):
            raise ValueError(f"Unknown subsystem: {name}")


    def stop_subsystem(self, name):
        self.check_subsystem(name)
        return self.run('stop', name, FORCE_OPTION)


    def start_subsystem(self, name):
        self.check_subsystem(name)
        return self.run('start', name)


    def close(self):
        self.runner.close()

#-----------------------------------------------------------------------------------------------------

class DrainController:
    # Decides if there are clients connected that would be disrupted by closing resources or
    # stopping the server.

    def __init__(self, admin):
        self.admin = admin
        self.last_error = None


    def client_count(self):
        # Returns None if the clients couldn't be listed.
        try:
            count = len(self.admin.list_clients())
        except AdminCommandError as e:
            logger.error(f"Unable to list the connected clients: {e}")
            self.last_error = e
            return None
        self.last_error = None
        logger.debug(f"{count} clients connected")
        return count


    def clients_connected(self):
        # If the clients can't be listed assume they are connected.
        count = self.client_count()
        if count is None:
            logger.info("Treating the server as having clients connected")
            return True
        return count > 0

#-----------------------------------------------------------------------------------------------------

class RestartOutcome:

    def __init__(self, status, step=None, exit_status=EXIT_OK, message=''):
        self.status = status
        self.step = step
        self.exit_status = exit_status
        self.message = message


    def __str__(self):
        if self.status == FAILED:
            return f"{self.status} at '{self.step}' (exit status {self.exit_status}) {self.message}".strip()
        return f"{self.status} {self.message}".strip()


    def __repr__(self):
        return f"RestartOutcome({self.status!r}, step={self.step!r}, exit_status={self.exit_status!r})"


    @property
    def exit_code(self):
        # Process exit code for this outcome.
        if self.status in (COMPLETED, ABORTED_NOTHING_TO_DO):
            return EXIT_OK
        if self.status == ABORTED_CLIENTS_CONNECTED:
            return EXIT_ABORTED
        if isinstance(self.exit_status, int) and 0 < self.exit_status < 256:
            return self.exit_status
        return EXIT_EXCEPTION

#-----------------------------------------------------------------------------------------------------

class CloseOrchestrator:
    # Close all the open resources on the server once no clients are connected.

    def __init__(self, admin, drain):
        self.admin = admin
        self.drain = drain


    def close(self, on_closing=None, cancelled=None):
        # Returns (CloseResult, None) on success or (None, RestartOutcome) when the close was
        # aborted or failed.  cancelled() is checked before anything is closed.
        if self.drain.clients_connected():
            logger.info("Clients are connected.  Not closing anything")
            return None, RestartOutcome(ABORTED_CLIENTS_CONNECTED, message="clients connected")

        if on_closing:
            on_closing()

        if cancelled and cancelled():
            logger.info("Program termination detected.  Not closing anything")
            return None, RestartOutcome(FAILED, 'cancelled', EXIT_SIGNAL, "interrupted")

        try:
            open_before = self.admin.count_open()
        except AdminCommandError as e:
            logger.error(f"Unable to list the open resources: {e}")
            return None, RestartOutcome(FAILED, 'list resources', e.exit_status, e.raw_output)

        if open_before == 0:
            logger.info("No open resources.  Nothing to close")
            return CloseResult(0, 0, 0), None

        logger.info(f"Closing {open_before} open resources")
        try:
            output, closed_count = self.admin.close_all(force=True)
        except AdminCommandError as e:
            logger.error(f"Unable to close the open resources: {e}")
            return None, RestartOutcome(FAILED, 'close', e.exit_status, e.raw_output)

        failures = max(open_before - closed_count, 0)
        if failures:
            logger.warning(f"Only {closed_count} of {open_before} resources reported closed")
        logger.info(f"{closed_count} resources closed")
        return CloseResult(closed_count, failures, open_before), None

#-----------------------------------------------------------------------------------------------------

class ServiceLifecycle:
    # Stops and starts the two server subsystems in a fixed order.
    # The admin subsystem is stopped first and started last.
    # Nothing is rolled back.  A failure leaves the server as it is.

    def __init__(self, admin, config):
        self.admin = admin
        self.admin_svc = config.admin_svc
        self.main_svc = config.main_svc


    def stop(self):
        # Returns (failed_step, exit_status).  failed_step is None if all went well.
        for name in (self.admin_svc, self.main_svc):
            ret = self.do_step('stop', self.admin.stop_subsystem, name)
            if ret[0]:
                return ret
        return None, EXIT_OK


    def start(self):
        for name in (self.main_svc, self.admin_svc):
            ret = self.do_step('start', self.admin.start_subsystem, name)
            if ret[0]:
                return ret
        return None, EXIT_OK


    def run(self):
        ret = self.stop()
        if ret[0]:
            return ret
        return self.start()


    def do_step(self, action, func, name):
        step = f"{action} {name}"
        start_time = time.time()
        logger.info(f"Running {step}")
        try:
            func(name)
        except AdminCommandError as e:
            logger.error(f"{step} failed with exit status {e.exit_status}: {e.raw_output}")
            logger.error(f"No further steps will be run.  Please check the state of {name}")
            return step, e.exit_status
        finally:
            logger.debug(f"{step} took {time.time() - start_time:.1f}s")
        logger.info(f"{step} complete")
        return None, EXIT_OK

#-----------------------------------------------------------------------------------------------------

class RestartStateMachine:
    # Runs a single restart attempt:
    # CHECK_PENDING -> DRAINING -> CLOSING -> STOPPING -> STARTING -> CONFIRMING -> IDLE
    # Ending in ABORTED or FAILED leaves the restart flag set so the next run tries again.

    class TerminateException(Exception):
        pass


    def __init__(self, config, admin, flag, alerter=None):
        self.admin = admin
        self.flag = flag
        self.alerter = alerter
        self.drain = DrainController(admin)
        self.closer = CloseOrchestrator(admin, self.drain)
        self.lifecycle = ServiceLifecycle(admin, config)
        self.confirm_interval = config.confirm_interval
        self.confirm_timeout = config.confirm_timeout
        self.cancel_event = threading.Event()
        self.state = IDLE


    def set_state(self, state):
        logger.debug(f"State {self.state} -> {state}")
        self.state = state


    def signal_handler(self, signum, frame):
        # Don't interrupt an admin command.  Record the signal and stop at the next safe point.
        logger.info(f"Signal {signum} received. Setting flag to abort the restart process..")
        self.cancel_event.set()


    def cancelled(self):
        return self.cancel_event.is_set()


    def run(self):
        self.cancel_event.clear()
        self.set_state(CHECK_PENDING)
        if not self.flag.is_pending():
            logger.info("No restart pending.  Nothing to do")
            return self.finish(RestartOutcome(ABORTED_NOTHING_TO_DO, message="no action taken"))

        logger.info(f"Restart requested at {self.flag.requested_at()}")

        # Signal handlers can only be changed from the main thread.
        handle_signals = threading.current_thread() is threading.main_thread()
        if handle_signals:
            logger.debug("Reassigning signal handler for run()")
            original_sigint_handler = signal.getsignal(signal.SIGINT)
            original_sigterm_handler = signal.getsignal(signal.SIGTERM)
            signal.signal(signal.SIGINT, self.signal_handler)
            signal.signal(signal.SIGTERM, self.signal_handler)

        try:
            if self.alerter:
                self.alerter.restart_begin()
                with self.alerter.restart_duration.labels(**self.alerter.labels()).time():
                    outcome = self.do_restart()
            else:
                outcome = self.do_restart()
        finally:
            if self.alerter:
                self.alerter.restart_end()
            if handle_signals:
                logger.debug("Restoring the original signal handlers")
                signal.signal(signal.SIGINT, original_sigint_handler)
                signal.signal(signal.SIGTERM, original_sigterm_handler)

        if self.alerter:
            self.alerter.record_outcome(outcome)
        return self.finish(outcome)


    def do_restart(self):
        if self.cancelled():
            return RestartOutcome(FAILED, 'cancelled', EXIT_SIGNAL)

        self.set_state(DRAINING)
        close_result, outcome = self.closer.close(on_closing=lambda: self.set_state(CLOSING), cancelled=self.cancelled)
        if outcome:
            return outcome
        if self.alerter:
            self.alerter.record_close(close_result.closed_count)

        if self.cancelled():
            logger.info("Program termination detected.  Not stopping the server")
            return RestartOutcome(FAILED, 'cancelled', EXIT_SIGNAL, "interrupted")

        # Signals received from here on are only acted on once the services are back.
        self.set_state(STOPPING)
        step, exit_status = self.lifecycle.stop()
        if step:
            return RestartOutcome(FAILED, step, exit_status)

        self.set_state(STARTING)
        step, exit_status = self.lifecycle.start()
        if step:
            return RestartOutcome(FAILED, step, exit_status)

        self.set_state(CONFIRMING)
        outcome = self.confirm(close_result)
        if outcome:
            return outcome

        self.flag.clear()
        return RestartOutcome(COMPLETED, message=f"{close_result.closed_count} resources closed")


    def confirm(self, close_result):
        # Wait for the server to settle.  No clients connected and the open resources matching
        # what was left open by the close.  Returns None once settled.
        expected_open = max(close_result.open_before - close_result.closed_count, 0)
        deadline = time.monotonic() + self.confirm_timeout if self.confirm_timeout > 0 else None

        while True:
            clients = self.drain.client_count()
            try:
                open_count = self.admin.count_open()
            except AdminCommandError as e:
                logger.error(f"Unable to list the open resources: {e}")
                open_count = None

            logger.info(f"Waiting for the server to settle: {clients} clients, {open_count} open resources. Expecting 0 and {expected_open}")
            if clients == 0 and open_count == expected_open:
                logger.info("Server has settled")
                return None

            if self.cancelled():
                logger.info("Confirming the restart was interrupted")
                return RestartOutcome(FAILED, 'confirm', EXIT_SIGNAL, "interrupted")

            wait = self.confirm_interval
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    logger.error(f"The server didn't settle within {self.confirm_timeout} seconds")
                    return RestartOutcome(FAILED, 'confirm', EXIT_CONFIRM_TIMEOUT, "timed out")
                wait = min(wait, remaining)
            self.cancel_event.wait(wait)


    def finish(self, outcome):
        if outcome.status == FAILED:
            self.set_state(FAILED)
            logger.error(f"Restart failed: {outcome}")
            if outcome.step not in ('confirm', 'cancelled', 'close', 'list resources'):
                logger.error("The server may be stopped.  Please check it.  The restart flag has been left set")
        elif outcome.status == ABORTED_CLIENTS_CONNECTED:
            self.set_state(ABORTED)
            logger.info(f"Restart aborted: {outcome}.  It will be tried again on the next run")
        else:
            self.set_state(IDLE)
            logger.info(f"Restart finished: {outcome}")
        return outcome

#-----------------------------------------------------------------------------------------------------

class Alerter:

    def __init__(self, config):
        self.metrics_method = config.metrics_method
        self.cluster_id = config.cluster_id
        self.node = config.admin_host or config.hostname
        self.pushgw_url = config.pushgw_url
        self.alert_url = config.alert_url
        self.metrics_port = config.metrics_port
        self.alerts_on = config.alert_url != ""
        logger.info(f"Alerts are {'enabled' if self.alerts_on else 'disabled'}")

        self.registry = CollectorRegistry()

        # Workout the histogram buckets from the service_timeout.  There are four stop/start steps.
        b_size = 15
        b_end = ((4 * config.service_timeout + b_size) // b_size) * b_size
        duration_buckets = [x for x in range(b_size, max(b_end, 3 * b_size), b_size)]

        if self.metrics_method == PULL:
            # Pull needs a webserver to serve the metrics.
            logger.debug(f"Creating webserver on port {self.metrics_port}")
            start_http_server(self.metrics_port, registry=self.registry)
            label_names = ["node"]
        else:
            label_names = ["node", "cluster"]
        self.create_metrics(label_names, duration_buckets)


    def create_metrics(self, label_names, duration_buckets):
        r = self.registry
        self.heartbeat_metric = Gauge("dbrestart_heartbeat", f"dbrestart heartbeat generated every {HEARTBEAT_INTERVAL} seconds", label_names, registry=r)
        self.restart_active = Gauge("dbrestart_restart_active", "State of the database server restart. 1=Restart Active, 0=Idle", label_names, registry=r)
        self.start_time = Gauge("dbrestart_start_time", "Time when dbrestart started restarting the server", label_names, registry=r)
        self.last_outcome = Gauge("dbrestart_last_outcome", "Outcome of the last restart attempt. 0=Completed, 1=Aborted, 2=Failed", label_names, registry=r)
        self.resources_closed = Gauge("dbrestart_resources_closed", "Number of resources closed by the last restart", label_names, registry=r)
        self.restart_alert_state = Gauge("dbrestart_restart_alert_state", "State of the restart alert. 1=Alert, 0=No Alert", label_names, registry=r)
        self.restart_duration = Histogram("dbrestart_restart_duration_seconds", "How long it took to restart the server", label_names, buckets=duration_buckets, registry=r)


    def labels(self):
        # Return the labels to use with a metric value.
        ret = {"node": self.node}
        if self.metrics_method != PULL:
            ret["cluster"] = self.cluster_id
        return ret


    def restart_begin(self):
        self.restart_active.labels(**self.labels()).set(1)
        self.start_time.labels(**self.labels()).set(time.time())


    def restart_end(self):
        self.restart_active.labels(**self.labels()).set(0)


    def record_close(self, closed_count):
        self.resources_closed.labels(**self.labels()).set(closed_count)


    def record_outcome(self, outcome):
        if outcome.status == COMPLETED:
            self.last_outcome.labels(**self.labels()).set(0)
            self.clear_restart_alert()
        elif outcome.status == FAILED:
            self.last_outcome.labels(**self.labels()).set(2)
            self.restart_failure(f"Unable to restart the database server on {self.node}", str(outcome))
        else:
            self.last_outcome.labels(**self.labels()).set(1)
        self.push_metrics()


    def push_metrics(self):
        if self.metrics_method == PUSH:
            try:
                logger.debug(f"Pushing metrics to {self.pushgw_url}")
                push_to_gateway(self.pushgw_url, job='dbrestart', registry=self.registry)
            except Exception as e:
                logger.error(f"Error pushing metrics to {self.pushgw_url}: {e}")


    def set_heartbeat(self):
        # Set the heartbeat metric to the current time and PUSH to the gateway if metrics are being pushed.
        logger.debug("heartbeat")
        self.heartbeat_metric.labels(**self.labels()).set(time.time())
        self.push_metrics()


    def restart_failure(self, err_summary, err_message):
        # Send the alert manager an ALERT_DBRESTART_RESTART_ERROR and set the restart alert state metric
        if self.alerts_on:
            alert = self.new_alert(ALERT_DBRESTART_RESTART_ERROR, err_summary, err_message)
            self.send_alert(alert)
        self.restart_alert_state.labels(**self.labels()).set(1)


    def clear_restart_alert(self):
        # Clear ALERT_DBRESTART_RESTART_ERROR on the alert manager and unset the restart alert state metric
        if self.alerts_on:
            logger.debug(f"Clearing restart alert for {self.node}")
            alert = self.find_alert(ALERT_DBRESTART_RESTART_ERROR)
            if alert:
                self.end_alert(alert)
        self.restart_alert_state.labels(**self.labels()).set(0)


    def get_active_alerts(self, alert_types):
        # Return a list of active alerts in the alert manager that match the alert types in alert_types.
        ret = []
        if self.alerts_on:
            url = f"{self.alert_url}/api/v2/alerts"
            try:
                logger.debug(f"Requesting alerts from {url}")
                response = requests.get(url, timeout=10)
                response.raise_for_status()
                for alert in response.json():
                    if alert.get("labels", {}).get("alertname") in alert_types:
                        ret.append(alert)
                logger.debug(f"{len(ret)} alerts read")
            except requests.exceptions.RequestException as e:
                logger.error(f"Error fetching active alerts: {e}")
        return ret


    def find_alert(self, alert_type):
        # Find the alert_type alert for this node on the alert manager.
        for alert in self.get_active_alerts([alert_type]):
            if alert.get("labels", {}).get("node") == self.node:
                return alert
        return None


    def new_alert(self, alert_type, err_summary, err_message):
        return {
            "labels": {
                "alertname": alert_type,
                "severity": "critical",
                "node": self.node,
            },
            "annotations": {
                "summary": err_summary,
                "description": err_message,
            },
            "startsAt": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())
        }


    def end_alert(self, alert):
        # Set the end time of the alert and update the alert manager.
        logger.info("Ending alert: %s", alert)
        alert["endsAt"] = time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())
        self.send_alert(alert)


    def send_alert(self, alert):
        if self.alerts_on:
            mgr_url = f"{self.alert_url}/api/v2/alerts"
            logger.debug(f"Sending alert to {mgr_url}: {alert}")
            try:
                response = requests.post(
                    url=mgr_url,
                    data=json.dumps([alert]),
                    headers={"Content-type": "application/json"},
                    timeout=10
                )
                if response.status_code == 200:
                    logger.debug("Alert sent successfully")
                else:
                    logger.error(f"Failed to send alert: {response.status_code} {response.text}")
            except requests.exceptions.RequestException as e:
                logger.error(f"Error sending alert: {alert}, Exception: {e}")

#-----------------------------------------------------------------------------------------------------

class UniqueFilter(logging.Filter):
    # Filter duplicated log entries.  Repeated log entries are reduced to two log entries.
    # The first log entry and then a summary line showing how many times the log entry was repeated.
    # This stops the log file filling up while waiting for the server to settle.
    def __init__(self):
        super().__init__()
        self.last_message = None
        self.last_level = None
        self.count = 0


    def filter(self, record):
        # Skip processing if this is a summary record being output.  We don't want to dive into infinite recursion.
        if getattr(record, "is_summary", False):
            return True

        current_message = record.getMessage()
        if current_message == self.last_message:
            self.count += 1
            return False

        if self.count > 0:
            # If there were only two messages the same, just output the message again.
            if self.count == 1:
                log_msg = self.last_message
            else:
                log_msg = f"Repeated {self.count} more times: {self.last_message}"

            summary_record = logging.LogRecord(
                name=record.name,
                level=self.last_level,
                pathname=record.pathname,
                lineno=record.lineno,
                msg=log_msg,
                args=(),
                exc_info=None,
            )
            summary_record.is_summary = True
            logging.getLogger(record.name).handle(summary_record)

        self.last_message = current_message
        self.last_level = record.levelno
        self.count = 0
        return True


def setup_logging(log_file, log_level=LOG_LEVEL):
    # Log to log_file, filtering repeating messages.
    Path(log_file).parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(log_file)
    handler.setFormatter(logging.Formatter('%(asctime)s - %(levelname)s - %(message)s'))
    handler.addFilter(UniqueFilter())
    logger.addHandler(handler)
    logger.setLevel(log_level)
    return handler

#-----------------------------------------------------------------------------------------------------
class Heartbeat:

    def __init__(self, alerter):
        self.alerter = alerter
        self.stopped = threading.Event()
        self.heartbeat_thread = threading.Thread(target=self.generate_heartbeat)
        self.heartbeat_thread.daemon = True

    def start(self):
        self.heartbeat_thread.start()

    def stop(self):
        self.stopped.set()

    def generate_heartbeat(self):
        while not self.stopped.is_set():
            try:
                self.alerter.set_heartbeat()
            except Exception as e:
                logger.error(f"Error generating the heartbeat: {str(e)}")
                logger.error("Heartbeat disabled")
                return
            self.stopped.wait(HEARTBEAT_INTERVAL)

#-----------------------------------------------------------------------------------------------------
def positive_seconds(value):
    seconds = float(value)
    if seconds <= 0:
        raise argparse.ArgumentTypeError(f"{value} must be more than 0 seconds")
    return seconds


def parse_arguments(argv=None):
    parser = argparse.ArgumentParser(description='Restart a database server once no clients are connected')
    parser.add_argument('-c', '--config', help='Config file to use')
    group = parser.add_mutually_exclusive_group()
    group.add_argument('--trigger', action='store_true', help='Set the restart flag and exit')
    group.add_argument('--status', action='store_true', help='Show the configuration and the restart flag state')
    group.add_argument('--create-keys', action='store_true', help='Create the ssh key pair used to reach admin_host')
    group.add_argument('--every', type=positive_seconds, metavar='SECONDS', help='Keep running, checking for a restart every SECONDS')
    return parser.parse_args(argv)


def run_scheduled(machine, alerter, interval):
    # Run the state machine now and then every interval seconds.
    # schedule runs the jobs in this thread so runs never overlap.
    heartbeat = Heartbeat(alerter)
    logger.info("Starting heartbeat thread")
    heartbeat.start()

    def stop_handler(sig, frame):
        logger.info("Received signal to stop")
        heartbeat.stop()
        sys.exit(EXIT_OK)

    def job():
        outcome = machine.run()
        if machine.cancelled():
            raise RestartStateMachine.TerminateException(f"Program termination detected after {outcome}")

    original_sigint_handler = signal.getsignal(signal.SIGINT)
    original_sigterm_handler = signal.getsignal(signal.SIGTERM)
    signal.signal(signal.SIGTERM, stop_handler)
    signal.signal(signal.SIGINT, stop_handler)

    schedule.every(interval).seconds.do(job)
    logger.debug(f"Restart check scheduled to run every {interval} seconds")

    try:
        # Run the first check because schedule will wait for the interval before doing the first run.
        job()
        while True:
            schedule.run_pending()
            time.sleep(1)
    finally:
        heartbeat.stop()
        schedule.clear()
        signal.signal(signal.SIGINT, original_sigint_handler)
        signal.signal(signal.SIGTERM, original_sigterm_handler)


def main(argv=None):
    args = parse_arguments(argv)

    # Read in the config file.
    config = Config(args.config, fail_no_key=not args.create_keys)
    config.load_config()

    setup_logging(config.log_file, config.log_level)
    logger.info("===========================================================================")
    logger.info("=============================  PROGRAM START ==============================")
    logger.info("===========================================================================")
    logger.info(f"Version: {VERSION}")
    logger.info(f"Read config file: {config.config_file}")

    flag = RestartFlag(config.flag_file)
    admin = None
    try:
        if args.create_keys:
            pub_file = config.create_keys()
            print(f"Created {config.priv_file}.  Copy {pub_file} to {config.ssh_user}@{config.admin_host or '<admin_host>'}")
            return EXIT_OK

        if args.trigger:
            flag.set_pending()
            print(f"Restart requested: {config.flag_file}")
            return EXIT_OK

        if args.status:
            config.log()
            for line in config.describe():
                print(line)
            print(f"restart pending: {flag.is_pending()} {flag.requested_at() or ''}".strip())
            return EXIT_OK

        config.log()
        logger.info("Starting Alerter")
        alerter = Alerter(config)
        admin = AdminClient(config)
        machine = RestartStateMachine(config, admin, flag, alerter)

        if args.every:
            run_scheduled(machine, alerter, args.every)
            return EXIT_OK

        outcome = machine.run()
        print(outcome)
        return outcome.exit_code

    except RestartStateMachine.TerminateException as e:
        logger.info(f"Program terminating: {e}")
        return EXIT_SIGNAL
    except RestartFlag.FlagError as e:
        logger.error(f"Program terminating: {e}")
        print(f"An error occurred: {e}")
        return EXIT_EXCEPTION
    except Exception as e:
        logger.error(f"Program terminating because of an exception: {str(e)}")
        print(f"An error occurred: {e}")
        tb = traceback.format_exc()
        print("Traceback details:")
        print(tb)
        logger.error(tb)
        logger.info("Program terminating")
        return EXIT_EXCEPTION
    finally:
        if admin:
            admin.close()


if __name__ == "__main__":
    sys.exit(main())
