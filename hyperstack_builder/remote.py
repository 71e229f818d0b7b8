"""
SSH session to the build VM

Wraps a paramiko client with the retrying connect, streamed command execution
and SCP upload that provisioning needs. One session talks to exactly one host.
"""

import codecs
import logging
import os
import posixpath
import shlex
import threading
import time
from dataclasses import dataclass
from typing import Callable, List, Optional

import paramiko

from .errors import CommandError, ConnectionTimeout, TransferError, ValidationError
from .polling import SSH_CONNECT_POLICY, PollPolicy

logger = logging.getLogger(__name__)

DEFAULT_USERNAME = "ubuntu"
SSH_PORT = 22
CONNECT_TIMEOUT = 30
KEEPALIVE_INTERVAL = 30
SCP_FILE_MODE = "0644"
CHUNK_SIZE = 32768


@dataclass
class CommandResult:
    """Outcome of one remote command."""
    exit_status: int
    stdout: str
    stderr: str


def load_private_key(private_key_path: str) -> paramiko.PKey:
    """
    Read and parse an SSH private key.

    Args:
        private_key_path: Key file path, `~` is expanded

    Returns:
        Parsed key usable for public key authentication

    Raises:
        ValidationError: If the key cannot be read or parsed
    """
    path = os.path.expanduser(private_key_path)
    try:
        return paramiko.PKey.from_path(path)
    except (OSError, paramiko.SSHException, ValueError) as e:
        raise ValidationError(f"Failed to load private key {path}: {e}") from e


class _LineStream:
    """Splits streamed bytes into lines and logs each complete one."""

    def __init__(self, log: Callable[[str], None]) -> None:
        self._log = log
        self._decoder = codecs.getincrementaldecoder('utf-8')(errors='replace')
        self._partial = ""
        self.lines: List[str] = []

    def feed(self, data: bytes) -> None:
        # Multi-byte characters may straddle chunk boundaries
        text = self._partial + self._decoder.decode(data)
        *complete, self._partial = text.split('\n')
        for line in complete:
            self._emit(line)

    def flush(self) -> None:
        self._partial += self._decoder.decode(b"", final=True)
        if self._partial:
            self._emit(self._partial)
            self._partial = ""

    def _emit(self, line: str) -> None:
        line = line.rstrip()
        if line:
            self.lines.append(line)
            self._log(f"  {line}")

    @property
    def text(self) -> str:
        return '\n'.join(self.lines)


class RemoteSession:
    """Authenticated SSH connection to a single host."""

    def __init__(
        self,
        private_key_path: str,
        username: str = DEFAULT_USERNAME,
        port: int = SSH_PORT,
        policy: PollPolicy = SSH_CONNECT_POLICY,
        client_factory: Callable[[], paramiko.SSHClient] = paramiko.SSHClient,
        sleep: Callable[[float], None] = time.sleep
    ) -> None:
        self.private_key_path = private_key_path
        self.username = username
        self.port = port
        self.policy = policy
        self.host: Optional[str] = None
        self._client_factory = client_factory
        self._sleep = sleep
        self._client: Optional[paramiko.SSHClient] = None
        self._lock = threading.Lock()

    def __enter__(self) -> "RemoteSession":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    @property
    def connected(self) -> bool:
        return self._client is not None

    def connect(self, host: str) -> "RemoteSession":
        """
        Connect to `host`, retrying while the VM finishes booting.

        Raises:
            ValidationError: If the private key cannot be loaded
            ConnectionTimeout: If every attempt failed; chained to the last error
        """
        pkey = load_private_key(self.private_key_path)
        last_error: Optional[Exception] = None

        logger.info(f"Connecting to {self.username}@{host}:{self.port}...")

        for attempt in range(1, self.policy.max_attempts + 1):
            client = self._client_factory()
            client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
            try:
                client.connect(
                    hostname=host,
                    port=self.port,
                    username=self.username,
                    pkey=pkey,
                    timeout=CONNECT_TIMEOUT,
                    banner_timeout=CONNECT_TIMEOUT,
                    allow_agent=False,
                    look_for_keys=False
                )
            except (paramiko.SSHException, OSError) as e:
                client.close()
                last_error = e
                logger.warning(
                    f"SSH connection attempt {attempt}/{self.policy.max_attempts} failed: {e}"
                )
                if attempt < self.policy.max_attempts:
                    self._sleep(self.policy.interval)
                continue

            # Keep the connection alive through long provisioning scripts
            transport = client.get_transport()
            if transport is not None:
                transport.set_keepalive(KEEPALIVE_INTERVAL)

            self._client = client
            self.host = host
            logger.info(f"SSH connection established to {host}")
            return self

        raise ConnectionTimeout(host, self.policy.max_attempts, last_error) from last_error

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None
            logger.info(f"SSH connection to {self.host} closed")

    def _require_client(self) -> paramiko.SSHClient:
        if self._client is None:
            raise CommandError("SSH connection not established", command="")
        return self._client

    def run(self, command: str) -> CommandResult:
        """
        Execute a command, streaming stdout (INFO) and stderr (WARNING) to the log.

        Raises:
            CommandError: On a non-zero exit status or a channel failure
        """
        with self._lock:
            client = self._require_client()
            logger.info(f"Executing command: {command}")

            stdout_stream = _LineStream(logger.info)
            stderr_stream = _LineStream(logger.warning)

            try:
                _, stdout, _ = client.exec_command(command, get_pty=False)
                channel = stdout.channel

                # Drain both streams while the command runs to avoid buffer deadlock
                while not channel.exit_status_ready():
                    idle = True
                    if channel.recv_ready():
                        stdout_stream.feed(channel.recv(4096))
                        idle = False
                    if channel.recv_stderr_ready():
                        stderr_stream.feed(channel.recv_stderr(4096))
                        idle = False
                    if idle:
                        time.sleep(0.1)

                while channel.recv_ready():
                    stdout_stream.feed(channel.recv(4096))
                while channel.recv_stderr_ready():
                    stderr_stream.feed(channel.recv_stderr(4096))

                exit_status = channel.recv_exit_status()
            except (paramiko.SSHException, OSError) as e:
                raise CommandError(f"Command failed: {command}: {e}", command=command) from e

            stdout_stream.flush()
            stderr_stream.flush()

            result = CommandResult(exit_status, stdout_stream.text, stderr_stream.text)
            if exit_status != 0:
                tail = stderr_stream.lines[-1] if stderr_stream.lines else ""
                raise CommandError(
                    f"Command exited with status {exit_status}: {command}"
                    + (f": {tail}" if tail else ""),
                    command=command,
                    exit_status=exit_status
                )
            return result

    def upload(self, local_path: str, remote_path: str) -> None:
        """
        Copy a local file to `remote_path` using the SCP sink protocol.

        Raises:
            TransferError: If the local file cannot be read or the remote side rejects it
        """
        with self._lock:
            client = self._require_client()

            try:
                size = os.stat(local_path).st_size
                source = open(local_path, 'rb')
            except OSError as e:
                raise TransferError(
                    f"Failed to open local file {local_path}: {e}",
                    local_path=local_path,
                    remote_path=remote_path
                ) from e

            with source:
                transport = client.get_transport()
                if transport is None:
                    raise TransferError(
                        "SSH transport is not active",
                        local_path=local_path,
                        remote_path=remote_path
                    )

                try:
                    channel = transport.open_session()
                except (paramiko.SSHException, OSError) as e:
                    raise TransferError(
                        f"Failed to open SCP channel for {remote_path}: {e}",
                        local_path=local_path,
                        remote_path=remote_path
                    ) from e

                try:
                    channel.exec_command(f"scp -t {shlex.quote(remote_path)}")
                    self._scp_ack(channel, local_path, remote_path)

                    header = f"C{SCP_FILE_MODE} {size} {posixpath.basename(remote_path)}\n"
                    channel.sendall(header.encode('utf-8'))
                    self._scp_ack(channel, local_path, remote_path)

                    while True:
                        chunk = source.read(CHUNK_SIZE)
                        if not chunk:
                            break
                        channel.sendall(chunk)
                    channel.sendall(b"\x00")
                    self._scp_ack(channel, local_path, remote_path)

                    channel.shutdown_write()
                    exit_status = channel.recv_exit_status()
                except (paramiko.SSHException, OSError) as e:
                    raise TransferError(
                        f"Failed to copy {local_path} to {remote_path}: {e}",
                        local_path=local_path,
                        remote_path=remote_path
                    ) from e
                finally:
                    channel.close()

            if exit_status != 0:
                raise TransferError(
                    f"scp exited with status {exit_status} copying {local_path} to {remote_path}",
                    local_path=local_path,
                    remote_path=remote_path
                )

            logger.info(f"File copied: {local_path} -> {remote_path}")

    @staticmethod
    def _scp_ack(channel: paramiko.Channel, local_path: str, remote_path: str) -> None:
        """Read one SCP acknowledgement: NUL is success, 0x01/0x02 carry an error line."""
        code = channel.recv(1)
        if code == b"\x00":
            return
        if not code:
            raise TransferError(
                f"Remote scp closed the channel copying {local_path}",
                local_path=local_path,
                remote_path=remote_path
            )

        message = b""
        while True:
            char = channel.recv(1)
            if not char or char == b"\n":
                break
            message += char

        raise TransferError(
            f"Remote scp rejected {remote_path}: {message.decode('utf-8', errors='replace')}",
            local_path=local_path,
            remote_path=remote_path
        )

    def run_script(self, remote_path: str) -> CommandResult:
        """Mark a remote file executable and run it."""
        quoted = shlex.quote(remote_path)
        try:
            self.run(f"chmod +x {quoted}")
        except CommandError as e:
            raise CommandError(
                f"Failed to make script executable: {e.message}",
                command=e.command,
                exit_status=e.exit_status
            ) from e

        try:
            return self.run(quoted)
        except CommandError as e:
            raise CommandError(
                f"Failed to execute script {remote_path}: {e.message}",
                command=e.command,
                exit_status=e.exit_status
            ) from e
