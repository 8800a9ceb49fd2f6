"""Prompt-synchronized command execution over an interactive SSH shell."""

from __future__ import annotations

import re
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from pathlib import Path

import paramiko
from loguru import logger
from tenacity import (
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from oneshot.constants import (
    PROMPT_ATTEMPTS,
    PROMPT_INTERVAL,
    PROMPT_MARKER,
    SSH_CONNECT_ATTEMPTS,
    SSH_CONNECT_TIMEOUT,
    SSH_PORT,
    SSH_SETTLE_DELAY,
)
from oneshot.exceptions import ConnectError

log = logger.bind(component="ssh")

_ANSI_ESCAPE = re.compile(r"\x1b\[[0-9;?]*[A-Za-z]")
_RECV_CHUNK = 64 * 1024


@dataclass(frozen=True, slots=True)
class Command:
    """One line typed into the remote shell.

    Attributes:
        text: Shell command line, without trailing newline.
        attempts: How many times to look for the prompt before giving up.
        interval: Seconds between two looks.
    """

    text: str
    attempts: int = PROMPT_ATTEMPTS
    interval: float = PROMPT_INTERVAL


@dataclass(frozen=True, slots=True)
class CapturedOutput:
    """Output observed for a command.

    ``complete`` is False when the prompt did not come back within the
    command's budget; ``output`` then holds whatever arrived so far.
    """

    command: str
    output: str
    complete: bool


class RemoteSession:
    """An authenticated connection with one open shell channel."""

    __slots__ = ("host", "banner", "transcript", "_client", "_channel", "_buffer", "_runner", "_closed")

    def __init__(
        self,
        host: str,
        client: paramiko.SSHClient,
        channel: paramiko.Channel,
        runner: RemoteCommandChannel,
    ) -> None:
        self.host = host
        self.banner = ""
        self.transcript: list[CapturedOutput] = []
        self._client = client
        self._channel = channel
        self._buffer = bytearray()
        self._runner = runner
        self._closed = False

    @property
    def client(self) -> paramiko.SSHClient:
        return self._client

    @property
    def connected(self) -> bool:
        if self._closed or self._channel.closed:
            return False
        transport = self._client.get_transport()
        return transport is not None and transport.is_active()

    def run(self, command: Command | str) -> RemoteSession:
        """Run a command and return this session, for chaining."""
        self._runner.run(self, command)
        return self

    def close(self) -> None:
        self._runner.close(self)

    def _send(self, text: str) -> None:
        self._channel.sendall(text.encode())

    def _drain(self) -> None:
        while self._channel.recv_ready():
            chunk = self._channel.recv(_RECV_CHUNK)
            if not chunk:
                break
            self._buffer.extend(chunk)

    def _peek(self) -> str:
        return self._buffer.decode(errors="replace")

    def _take(self) -> str:
        text = self._peek()
        self._buffer.clear()
        return text

    def __enter__(self) -> RemoteSession:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()


class RemoteCommandChannel:
    """Opens shell sessions and runs commands against the shell prompt.

    Commands are typed into one interactive shell, so each one sees the
    working directory and environment left by the previous one. Completion
    is detected by the prompt marker reappearing at the end of the output.
    This is best-effort: a command that outlives its budget yields a
    partial capture rather than an error.
    """

    def __init__(
        self,
        *,
        settle_delay: float = SSH_SETTLE_DELAY,
        connect_attempts: int = SSH_CONNECT_ATTEMPTS,
        connect_timeout: float = SSH_CONNECT_TIMEOUT,
        prompt_marker: str = PROMPT_MARKER,
        prompt_attempts: int = PROMPT_ATTEMPTS,
        prompt_interval: float = PROMPT_INTERVAL,
        port: int = SSH_PORT,
        sleep: Callable[[float], None] = time.sleep,
        client_factory: Callable[[], paramiko.SSHClient] = paramiko.SSHClient,
    ) -> None:
        self._settle_delay = settle_delay
        self._connect_attempts = connect_attempts
        self._connect_timeout = connect_timeout
        self._prompt_marker = prompt_marker
        self._prompt_attempts = prompt_attempts
        self._prompt_interval = prompt_interval
        self._port = port
        self._sleep = sleep
        self._client_factory = client_factory

    def command(self, text: str, *, attempts: int | None = None) -> Command:
        """Build a command with this channel's default prompt budget."""
        return Command(
            text=text,
            attempts=attempts if attempts is not None else self._prompt_attempts,
            interval=self._prompt_interval,
        )

    # =========================================================================
    # Connection
    # =========================================================================

    def open(self, address: str, private_key_path: Path, username: str) -> RemoteSession:
        """Connect to a freshly started instance and open a shell.

        Host keys are accepted without verification: the instance is
        single-use and its key cannot be known in advance.

        Raises:
            ConnectError: If no shell could be opened.
        """
        log.info(f"Waiting {self._settle_delay:.0f}s for {address} to accept SSH")
        self._sleep(self._settle_delay)

        retrying = Retrying(
            stop=stop_after_attempt(self._connect_attempts),
            wait=wait_exponential(multiplier=1, min=1, max=10),
            retry=retry_if_exception_type((paramiko.SSHException, OSError)),
            sleep=self._sleep,
            reraise=True,
        )
        try:
            client = retrying(self._connect, address, private_key_path, username)
        except (paramiko.SSHException, OSError) as e:
            raise ConnectError(f"Could not connect to {username}@{address}: {e}") from e

        try:
            channel = client.invoke_shell()
        except (paramiko.SSHException, OSError) as e:
            client.close()
            raise ConnectError(f"Could not open a shell on {address}: {e}") from e

        session = RemoteSession(address, client, channel, self)
        session.banner = self._wait_for_prompt(session, self._prompt_attempts, self._prompt_interval)[0]
        log.info(f"SSH connection to {username}@{address} established")
        return session

    def _connect(self, address: str, private_key_path: Path, username: str) -> paramiko.SSHClient:
        log.debug(f"SSH: connecting to {address}:{self._port} ({username})")
        client = self._client_factory()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            client.connect(
                hostname=address,
                port=self._port,
                username=username,
                key_filename=str(private_key_path),
                timeout=self._connect_timeout,
                look_for_keys=False,
                allow_agent=False,
            )
        except Exception:
            client.close()
            raise
        return client

    def close(self, session: RemoteSession | None) -> None:
        """Disconnect the shell channel and the transport.

        Safe to call repeatedly and with None; each step is attempted
        independently.
        """
        if session is None or session._closed:
            return
        session._closed = True

        try:
            session._channel.close()
        except Exception as e:
            log.debug(f"Closing shell channel failed: {e}")
        try:
            session._client.close()
        except Exception as e:
            log.debug(f"Closing SSH transport failed: {e}")
        log.info(f"SSH connection to {session.host} closed")

    # =========================================================================
    # Commands
    # =========================================================================

    def run(self, session: RemoteSession, command: Command | str) -> CapturedOutput:
        """Type a command and wait for the prompt to come back.

        Raises:
            ConnectError: If the session is no longer connected.
        """
        if not session.connected:
            raise ConnectError(f"Session to {session.host} is not connected")

        cmd = self.command(command) if isinstance(command, str) else command
        log.info(f"$ {cmd.text}")
        session._send(cmd.text + "\n")

        output, complete = self._wait_for_prompt(session, cmd.attempts, cmd.interval)
        if output.strip():
            log.debug(output)
        if not complete:
            log.warning(
                f"No prompt after {cmd.attempts * cmd.interval:.0f}s for {cmd.text!r}, "
                "continuing with partial output"
            )

        capture = CapturedOutput(command=cmd.text, output=output, complete=complete)
        session.transcript.append(capture)
        return capture

    def run_script(
        self,
        session: RemoteSession,
        commands: Iterable[Command | str],
    ) -> tuple[CapturedOutput, ...]:
        """Run commands in order against one session."""
        return tuple(self.run(session, command) for command in commands)

    def _wait_for_prompt(
        self,
        session: RemoteSession,
        attempts: int,
        interval: float,
    ) -> tuple[str, bool]:
        for _ in range(attempts):
            self._sleep(interval)
            session._drain()
            if self._prompt_seen(session._peek()):
                return session._take(), True
        return session._take(), False

    def _prompt_seen(self, text: str) -> bool:
        return _ANSI_ESCAPE.sub("", text).rstrip().endswith(self._prompt_marker)

    # =========================================================================
    # File transfer
    # =========================================================================

    def upload_directory(self, session: RemoteSession, local_dir: Path, remote_dir: str) -> int:
        """Copy a local directory tree to the remote host over SFTP.

        Relative remote paths are resolved against the login user's home.
        File modes are preserved.

        Returns:
            Number of files copied.
        """
        local_dir = local_dir.expanduser()
        sftp = session.client.open_sftp()
        copied = 0
        try:
            self._sftp_mkdir(sftp, remote_dir)
            for path in sorted(local_dir.rglob("*")):
                remote = f"{remote_dir}/{path.relative_to(local_dir).as_posix()}"
                if path.is_dir():
                    self._sftp_mkdir(sftp, remote)
                elif path.is_file():
                    sftp.put(str(path), remote)
                    sftp.chmod(remote, path.stat().st_mode & 0o777)
                    copied += 1
        finally:
            sftp.close()

        log.info(f"Copied {copied} file(s) from {local_dir} to {session.host}:{remote_dir}")
        return copied

    @staticmethod
    def _sftp_mkdir(sftp: paramiko.SFTPClient, remote_dir: str) -> None:
        try:
            sftp.stat(remote_dir)
        except FileNotFoundError:
            sftp.mkdir(remote_dir, mode=0o700)
