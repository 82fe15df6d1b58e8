"""Transport layer for remote nodes.

The node handle only needs a handful of primitives: run a command, move
bytes in each direction, check reachability and open a line-oriented
shell. SshTransport provides them with the OpenSSH client; anything else
offering the same methods (a hypervisor agent, a test fake) can be used
in its place.
"""

import logging
import os
import subprocess
import tempfile
from pathlib import Path
from typing import IO, Iterable, Iterator, Optional, Protocol, runtime_checkable

from common import run_command
from config import SshCredentials
from remote.errors import NodeConnectionError, TransferError

logger = logging.getLogger(__name__)

# ssh exits with 255 when the connection itself fails
SSH_CONNECTION_FAILED = 255

SSH_OPTS = [
    '-o', 'StrictHostKeyChecking=no',
    '-o', 'UserKnownHostsFile=/dev/null',
    '-o', 'LogLevel=ERROR',
]


class InteractiveShell:
    """Line-oriented channel to a remote shell.

    Lines are produced until the remote side closes the stream (or a
    sentinel is seen, with read_until). The line source and sink are
    plain file-like objects so tests can substitute in-memory ones.
    """

    def __init__(
        self,
        stdin: IO[str],
        stdout: Iterable[str],
        process: Optional[subprocess.Popen] = None,
    ):
        self._stdin = stdin
        self._stdout = stdout
        self._process = process
        self.closed = False

    @classmethod
    def from_process(cls, process: subprocess.Popen) -> 'InteractiveShell':
        return cls(process.stdin, process.stdout, process)  # type: ignore[arg-type]

    def send(self, line: str) -> None:
        """Send one line to the remote shell."""
        if self.closed:
            raise NodeConnectionError("Shell is closed")
        self._stdin.write(line + '\n')
        self._stdin.flush()

    def lines(self) -> Iterator[str]:
        """Yield output lines until the remote side closes the stream."""
        for line in self._stdout:
            yield line.rstrip('\r\n')

    def read_until(self, sentinel: str) -> Iterator[str]:
        """Yield output lines up to (not including) the first line equal to sentinel."""
        for line in self.lines():
            if line.strip() == sentinel:
                return
            yield line

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            self._stdin.close()
        except OSError as e:
            logger.debug(f"Error closing shell input: {e}")
        if self._process is not None:
            try:
                self._process.wait(timeout=10)
            except subprocess.TimeoutExpired:
                self._process.terminate()
                self._process.wait()

    def __enter__(self) -> 'InteractiveShell':
        return self

    def __exit__(self, *exc) -> None:
        self.close()


@runtime_checkable
class Transport(Protocol):
    """Primitives a node handle needs from the remote side."""

    def run(self, command: str, binary: bool = False, timeout: Optional[int] = None) -> tuple[int, str | bytes, str]:
        """Run a command; return (exit_code, stdout, stderr)."""

    def put(self, data: bytes, remote_path: str) -> None:
        """Write data to remote_path."""

    def get(self, remote_path: str) -> bytes:
        """Read remote_path."""

    def probe(self, timeout: int) -> bool:
        """Return True if a session can be established."""

    def open_shell(self) -> InteractiveShell:
        """Open an interactive line-based shell."""

    def close(self) -> None:
        """Drop any established session."""


class SshTransport:
    """OpenSSH-backed transport.

    A ControlMaster socket keeps one authenticated session per node so
    repeated commands don't pay for a new handshake each time.
    """

    def __init__(
        self,
        host: str,
        credentials: SshCredentials,
        port: int = 22,
        connect_timeout: int = 10,
        command_timeout: int = 3600,
        file_timeout: int = 60,
    ):
        self.host = host
        self.credentials = credentials
        self.port = port
        self.connect_timeout = connect_timeout
        self.command_timeout = command_timeout
        self.file_timeout = file_timeout
        self._control_path = os.path.join(tempfile.gettempdir(), 'swarm-driver-%C')

    @property
    def target(self) -> str:
        return f'{self.credentials.user}@{self.host}' if self.credentials.user else self.host

    def _env(self) -> Optional[dict]:
        if not self.credentials.password:
            return None
        env = dict(os.environ)
        env['SSHPASS'] = self.credentials.password
        return env

    def _common_opts(self, connect_timeout: Optional[int] = None) -> list[str]:
        opts = list(SSH_OPTS)
        opts += ['-o', f'ConnectTimeout={connect_timeout or self.connect_timeout}']
        opts += ['-o', 'ControlMaster=auto', '-o', f'ControlPath={self._control_path}',
                 '-o', 'ControlPersist=60']
        if self.credentials.key_file:
            opts += ['-i', str(self.credentials.key_file)]
        if not self.credentials.password:
            opts += ['-o', 'BatchMode=yes']
        return opts

    def _prefix(self) -> list[str]:
        return ['sshpass', '-e'] if self.credentials.password else []

    def _ssh(self, connect_timeout: Optional[int] = None) -> list[str]:
        return self._prefix() + ['ssh', '-p', str(self.port)] + self._common_opts(connect_timeout)

    def _scp(self) -> list[str]:
        return self._prefix() + ['scp', '-q', '-P', str(self.port)] + self._common_opts()

    def run(self, command: str, binary: bool = False, timeout: Optional[int] = None) -> tuple[int, str | bytes, str]:
        cmd = self._ssh() + [self.target, command]
        rc, out, err = run_command(cmd, timeout=timeout or self.command_timeout, env=self._env(), text=not binary)
        if rc == SSH_CONNECTION_FAILED:
            raise NodeConnectionError(f"SSH connection to {self.host} failed: {err.strip()}")
        return rc, out, err

    def put(self, data: bytes, remote_path: str) -> None:
        with tempfile.NamedTemporaryFile(prefix='swarm-driver-', delete=False) as tmp:
            tmp.write(data)
            local_path = tmp.name
        try:
            rc, _, err = run_command(
                self._scp() + [local_path, f'{self.target}:{remote_path}'],
                timeout=self.file_timeout, env=self._env())
        finally:
            os.unlink(local_path)
        if rc != 0:
            raise TransferError(remote_path, err.strip() or f'scp exit code {rc}')

    def get(self, remote_path: str) -> bytes:
        with tempfile.TemporaryDirectory(prefix='swarm-driver-') as tmp_dir:
            local_path = Path(tmp_dir) / 'download'
            rc, _, err = run_command(
                self._scp() + [f'{self.target}:{remote_path}', str(local_path)],
                timeout=self.file_timeout, env=self._env())
            if rc != 0 or not local_path.exists():
                raise TransferError(remote_path, err.strip() or f'scp exit code {rc}')
            return local_path.read_bytes()

    def probe(self, timeout: int) -> bool:
        rc, out, err = run_command(
            self._ssh(connect_timeout=timeout) + [self.target, 'echo ready'],
            timeout=timeout + 5, env=self._env())
        if rc != 0:
            logger.debug(f"Probe of {self.host} failed: {str(err).strip()}")
        return rc == 0 and 'ready' in str(out)

    def open_shell(self) -> InteractiveShell:
        process = subprocess.Popen(
            self._ssh() + ['-T', self.target],
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            env=self._env(),
        )
        return InteractiveShell.from_process(process)

    def close(self) -> None:
        run_command(self._ssh() + ['-O', 'exit', self.target], timeout=10, env=self._env())
