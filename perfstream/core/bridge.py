"""
Device bridges for perfstream.
Run one-shot and long-running shell commands on a device, and push files to it,
either through a local adb executable or over SSH.
"""

import codecs
import logging
import os
import subprocess
import threading
import time
from typing import Callable, Iterator, List, Optional, Union
from dataclasses import dataclass

import paramiko
from paramiko import SSHClient, AutoAddPolicy, SFTPClient

from .errors import CommandFailed

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 4096
KILL_TIMEOUT = 5


@dataclass
class CommandResult:
    """Result of a device or host command execution."""
    command: str
    exit_code: int
    stdout: str
    stderr: str
    start_time: float
    end_time: float

    @property
    def duration(self) -> float:
        return self.end_time - self.start_time

    @property
    def success(self) -> bool:
        return self.exit_code == 0


@dataclass
class ConnectionConfig:
    """SSH connection configuration."""
    host: str
    port: int = 22
    user: str = "shell"
    key_file: Optional[str] = None
    password: Optional[str] = None
    timeout: int = 30
    retry_attempts: int = 3
    retry_delay: int = 5


def _describe(command: Union[str, List[str]]) -> str:
    if isinstance(command, str):
        return command
    return " ".join(command)


def execute_host_command(command: Union[str, List[str]], timeout: int = 60) -> CommandResult:
    """Execute a command on the host machine."""
    start_time = time.time()
    try:
        result = subprocess.run(
            command,
            shell=isinstance(command, str),
            capture_output=True,
            text=True,
            timeout=timeout
        )
        return CommandResult(
            command=_describe(command),
            exit_code=result.returncode,
            stdout=result.stdout,
            stderr=result.stderr,
            start_time=start_time,
            end_time=time.time()
        )
    except subprocess.TimeoutExpired:
        return CommandResult(
            command=_describe(command),
            exit_code=-1,
            stdout="",
            stderr=f"Command timed out after {timeout}s",
            start_time=start_time,
            end_time=time.time()
        )
    except OSError as e:
        return CommandResult(
            command=_describe(command),
            exit_code=-1,
            stdout="",
            stderr=str(e),
            start_time=start_time,
            end_time=time.time()
        )


class RemoteProcess:
    """Handle on a long-running device command."""

    def iter_stdout(self) -> Iterator[str]:
        """Yield decoded stdout chunks as they arrive, until EOF."""
        raise NotImplementedError

    def iter_stderr(self) -> Iterator[str]:
        """Yield stderr lines without their line terminator, until EOF."""
        raise NotImplementedError

    def kill(self):
        raise NotImplementedError

    @property
    def is_running(self) -> bool:
        raise NotImplementedError


class LocalProcess(RemoteProcess):
    """Long-running command driven by a local subprocess (e.g. ``adb shell``)."""

    def __init__(self, args: List[str], capture_output: bool = True):
        self.args = args
        pipe = subprocess.PIPE if capture_output else subprocess.DEVNULL
        self._proc = subprocess.Popen(args, stdout=pipe, stderr=pipe)

    def iter_stdout(self) -> Iterator[str]:
        stream = self._proc.stdout
        if stream is None:
            return
        decoder = codecs.getincrementaldecoder('utf-8')(errors='replace')
        try:
            while True:
                data = stream.read1(READ_CHUNK_SIZE)
                if not data:
                    break
                text = decoder.decode(data)
                if text:
                    yield text
            tail = decoder.decode(b'', final=True)
            if tail:
                yield tail
        finally:
            stream.close()

    def iter_stderr(self) -> Iterator[str]:
        stream = self._proc.stderr
        if stream is None:
            return
        try:
            for raw in stream:
                yield raw.decode('utf-8', errors='replace').rstrip('\r\n')
        finally:
            stream.close()

    def kill(self):
        if self._proc.poll() is None:
            self._proc.kill()
        try:
            self._proc.wait(timeout=KILL_TIMEOUT)
        except subprocess.TimeoutExpired:
            logger.warning("Process %s did not exit after kill", _describe(self.args))

    @property
    def is_running(self) -> bool:
        return self._proc.poll() is None


def _read_remote_pid(channel) -> Optional[str]:
    """Read the shell pid echoed ahead of a wrapped command's own output."""
    line = b""
    while not line.endswith(b"\n"):
        data = channel.recv(1)
        if not data:
            break
        line += data
    pid = line.decode('ascii', errors='replace').strip()
    return pid if pid.isdigit() else None


class ChannelProcess(RemoteProcess):
    """
    Long-running command driven by a paramiko channel.
    The command is exec'd by a shell that prints its pid first. kill() signals
    that pid, since closing a channel without a pty leaves the command running.
    """

    def __init__(self, stdout, stderr, remote_pid: Optional[str] = None,
                 terminate: Optional[Callable[[str], None]] = None):
        self._stdout = stdout
        self._stderr = stderr
        self._channel = stdout.channel
        self.remote_pid = remote_pid
        self._terminate = terminate

    def iter_stdout(self) -> Iterator[str]:
        decoder = codecs.getincrementaldecoder('utf-8')(errors='replace')
        while True:
            data = self._channel.recv(READ_CHUNK_SIZE)
            if not data:
                break
            text = decoder.decode(data)
            if text:
                yield text
        tail = decoder.decode(b'', final=True)
        if tail:
            yield tail

    def iter_stderr(self) -> Iterator[str]:
        for line in self._stderr:
            if isinstance(line, bytes):
                line = line.decode('utf-8', errors='replace')
            yield line.rstrip('\r\n')

    def kill(self):
        if self._channel.closed:
            return
        if self.remote_pid and self._terminate and not self._channel.exit_status_ready():
            try:
                self._terminate(self.remote_pid)
            except CommandFailed as e:
                logger.warning("Could not terminate remote pid %s: %s", self.remote_pid, e)
        self._channel.close()

    @property
    def is_running(self) -> bool:
        return not self._channel.closed and not self._channel.exit_status_ready()


class DeviceBridge:
    """
    Shell access to a device.
    Subclasses implement execute, run_discarding_output, run_long_running and push.
    """

    def execute(self, command: str, timeout: Optional[int] = None) -> CommandResult:
        raise NotImplementedError

    def run_command(self, command: str, timeout: Optional[int] = None) -> str:
        """Run a one-shot command and return its stdout, raising on failure."""
        result = self.execute(command, timeout=timeout)
        if not result.success:
            raise CommandFailed(result)
        return result.stdout

    def run_discarding_output(self, command: str, timeout: Optional[int] = None):
        """Run a one-shot command whose output is never buffered."""
        raise NotImplementedError

    def run_long_running(self, command: str, capture_output: bool = True) -> RemoteProcess:
        raise NotImplementedError

    def push(self, local_path: str, remote_path: str):
        raise NotImplementedError

    def close(self):
        pass


class AdbBridge(DeviceBridge):
    """Bridge backed by the local adb executable."""

    def __init__(self, adb_path: str = "adb", serial: Optional[str] = None, timeout: int = 60):
        self.adb_path = adb_path
        self.serial = serial
        self.timeout = timeout

    def _adb_args(self, *args: str) -> List[str]:
        cmd = [self.adb_path]
        if self.serial:
            cmd.extend(["-s", self.serial])
        cmd.extend(args)
        return cmd

    def execute(self, command: str, timeout: Optional[int] = None) -> CommandResult:
        return execute_host_command(self._adb_args("shell", command), timeout=timeout or self.timeout)

    def run_discarding_output(self, command: str, timeout: Optional[int] = None):
        args = self._adb_args("shell", command)
        start_time = time.time()
        try:
            exit_code = subprocess.run(
                args,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                timeout=timeout or self.timeout
            ).returncode
            error = ""
        except subprocess.TimeoutExpired:
            exit_code, error = -1, f"Command timed out after {timeout or self.timeout}s"
        except OSError as e:
            exit_code, error = -1, str(e)

        if exit_code != 0:
            raise CommandFailed(CommandResult(
                command=_describe(args),
                exit_code=exit_code,
                stdout="",
                stderr=error,
                start_time=start_time,
                end_time=time.time()
            ))

    def run_long_running(self, command: str, capture_output: bool = True) -> RemoteProcess:
        args = self._adb_args("shell", command)
        logger.debug("Spawning %s", _describe(args))
        try:
            return LocalProcess(args, capture_output=capture_output)
        except OSError as e:
            now = time.time()
            raise CommandFailed(CommandResult(
                command=_describe(args), exit_code=-1, stdout="", stderr=str(e),
                start_time=now, end_time=now
            )) from e

    def push(self, local_path: str, remote_path: str):
        result = execute_host_command(self._adb_args("push", local_path, remote_path), timeout=self.timeout)
        if not result.success:
            raise CommandFailed(result)


class SSHBridge(DeviceBridge):
    """
    Bridge for devices exposing a shell over SSH.
    Connects lazily on first use and reconnects when the transport drops.
    """

    def __init__(self, config: ConnectionConfig):
        self.config = config
        self._client: Optional[SSHClient] = None
        self._sftp: Optional[SFTPClient] = None
        self._lock = threading.Lock()
        self._connected = False

    def _connect(self) -> bool:
        for attempt in range(1, self.config.retry_attempts + 1):
            try:
                self._client = SSHClient()
                self._client.set_missing_host_key_policy(AutoAddPolicy())

                connect_kwargs = {
                    'hostname': self.config.host,
                    'port': self.config.port,
                    'username': self.config.user,
                    'timeout': self.config.timeout,
                }

                if self.config.key_file:
                    connect_kwargs['key_filename'] = os.path.expanduser(self.config.key_file)
                elif self.config.password:
                    connect_kwargs['password'] = self.config.password

                self._client.connect(**connect_kwargs)
                self._connected = True
                logger.info("Connected to %s:%s", self.config.host, self.config.port)
                return True

            except (paramiko.SSHException, OSError) as e:
                logger.warning("SSH connection attempt %d/%d to %s failed: %s",
                               attempt, self.config.retry_attempts, self.config.host, e)
                if attempt < self.config.retry_attempts:
                    time.sleep(self.config.retry_delay)

        self._connected = False
        logger.error("Giving up on %s after %d attempts", self.config.host, self.config.retry_attempts)
        return False

    def close(self):
        """Close SSH connection."""
        with self._lock:
            if self._sftp:
                try:
                    self._sftp.close()
                except (paramiko.SSHException, OSError):
                    logger.debug("SFTP session already closed")
                self._sftp = None

            if self._client:
                self._client.close()
                self._client = None

            self._connected = False

    def _ensure_connected(self) -> bool:
        """Ensure connection is active, reconnect if needed."""
        if not self._connected or not self._client:
            return self._connect()

        transport = self._client.get_transport()
        if transport is None or not transport.is_active():
            logger.warning("Connection to %s lost, reconnecting", self.config.host)
            self._sftp = None
            return self._connect()

        return True

    def _connection_failed(self, command: str) -> CommandResult:
        now = time.time()
        return CommandResult(
            command=command,
            exit_code=-1,
            stdout="",
            stderr="Connection failed",
            start_time=now,
            end_time=now
        )

    def execute(self, command: str, timeout: Optional[int] = None) -> CommandResult:
        """
        Execute a remote command.
        Returns CommandResult with stdout, stderr, exit code, and timing.
        """
        with self._lock:
            if not self._ensure_connected():
                return self._connection_failed(command)

            start_time = time.time()
            try:
                stdin, stdout, stderr = self._client.exec_command(
                    command,
                    timeout=timeout or self.config.timeout
                )

                stdout_str = stdout.read().decode('utf-8', errors='replace')
                stderr_str = stderr.read().decode('utf-8', errors='replace')
                exit_code = stdout.channel.recv_exit_status()

                return CommandResult(
                    command=command,
                    exit_code=exit_code,
                    stdout=stdout_str,
                    stderr=stderr_str,
                    start_time=start_time,
                    end_time=time.time()
                )

            except (paramiko.SSHException, OSError) as e:
                self._connected = False
                return CommandResult(
                    command=command,
                    exit_code=-1,
                    stdout="",
                    stderr=str(e),
                    start_time=start_time,
                    end_time=time.time()
                )

    def run_discarding_output(self, command: str, timeout: Optional[int] = None):
        with self._lock:
            if not self._ensure_connected():
                raise CommandFailed(self._connection_failed(command))

            start_time = time.time()
            try:
                stdin, stdout, stderr = self._client.exec_command(
                    command,
                    timeout=timeout or self.config.timeout
                )
                channel = stdout.channel
                # Drain and drop both streams so the remote side never blocks
                while not channel.exit_status_ready() or channel.recv_ready() or channel.recv_stderr_ready():
                    if channel.recv_ready():
                        channel.recv(READ_CHUNK_SIZE)
                    elif channel.recv_stderr_ready():
                        channel.recv_stderr(READ_CHUNK_SIZE)
                    else:
                        time.sleep(0.05)
                exit_code = channel.recv_exit_status()
                error = ""
            except (paramiko.SSHException, OSError) as e:
                self._connected = False
                exit_code, error = -1, str(e)

            if exit_code != 0:
                raise CommandFailed(CommandResult(
                    command=command,
                    exit_code=exit_code,
                    stdout="",
                    stderr=error,
                    start_time=start_time,
                    end_time=time.time()
                ))

    def _terminate(self, remote_pid: str):
        self.run_discarding_output(f"kill {remote_pid}")

    def run_long_running(self, command: str, capture_output: bool = True) -> RemoteProcess:
        if not capture_output:
            command = f"{command} >/dev/null 2>&1"
        wrapped = f"echo $$; exec {command}"

        with self._lock:
            if not self._ensure_connected():
                raise CommandFailed(self._connection_failed(command))

            try:
                stdin, stdout, stderr = self._client.exec_command(wrapped)
                remote_pid = _read_remote_pid(stdout.channel)
            except (paramiko.SSHException, OSError) as e:
                self._connected = False
                now = time.time()
                raise CommandFailed(CommandResult(
                    command=command, exit_code=-1, stdout="", stderr=str(e),
                    start_time=now, end_time=now
                )) from e

        if remote_pid is None:
            logger.warning("No pid reported for %r, kill will only close the channel", command)
        else:
            logger.debug("Spawned %r as remote pid %s", command, remote_pid)
        return ChannelProcess(stdout, stderr, remote_pid=remote_pid, terminate=self._terminate)

    def push(self, local_path: str, remote_path: str):
        """Copy a file from local to the device over SFTP."""
        with self._lock:
            if not self._ensure_connected():
                raise CommandFailed(self._connection_failed(f"push {local_path} {remote_path}"))

            start_time = time.time()
            try:
                if self._sftp is None:
                    self._sftp = self._client.open_sftp()

                self._sftp.put(local_path, remote_path)
            except (paramiko.SSHException, OSError) as e:
                self._sftp = None
                raise CommandFailed(CommandResult(
                    command=f"push {local_path} {remote_path}",
                    exit_code=-1,
                    stdout="",
                    stderr=str(e),
                    start_time=start_time,
                    end_time=time.time()
                )) from e
