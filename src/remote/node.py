"""Node handle: one remotely managed machine.

A NodeHandle owns the transport session for a single node and is the
durable record of how far that node got during a run. Expected remote
failures don't raise when FAULT_ON_ERROR is set: the node is marked
faulted, the fault message is kept, and a CommandResponse is returned so
the caller can decide whether to continue.
"""

import logging
import threading
import time
import uuid
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING, Any, Optional

from common import format_args, format_command, normalize_text, poll_until
from remote.errors import CommandError, NodeConnectionError, TransferError
from remote.options import CommandResponse, RunOptions
from remote.transport import InteractiveShell, Transport

if TYPE_CHECKING:
    from remote.bundle import CommandBundle

REDACTED = '!!SECRETS-REDACTED!!'
FAULTED_STATUS = '*** FAULTED ***'
FAULTED_OUTPUT = '** proxy is faulted **'

UPLOAD_PREFIX = '/tmp/swarm-upload'
REBOOT_SETTLE_SECONDS = 10


class NodeHandle:
    """Handle to one remote node.

    Attributes:
        name: Logical node name
        address: DNS name or IP address
        metadata: Immutable per-node data (role, labels) from the cluster definition
        transport: Session used to reach the node
        default_options: Options ORed in when a command passes RunOptions.DEFAULTS
        remote_path: Directories prepended to PATH for every command
        is_ready: True once the node has been confirmed reachable
    """

    def __init__(
        self,
        name: str,
        address: str,
        transport: Transport,
        metadata: Any = None,
        default_options: RunOptions = RunOptions.NONE,
        remote_path: Optional[str] = None,
        log_dir: Optional[Path] = None,
        connect_timeout: int = 10,
    ):
        self.name = name
        self.address = address
        self.transport = transport
        self.metadata = metadata
        self.default_options = default_options
        self.remote_path = remote_path
        self.connect_timeout = connect_timeout
        self.is_ready = False

        self._lock = threading.Lock()
        self._status = ''
        self._fault_message: Optional[str] = None

        self.log = logging.getLogger(f'node.{name}')
        self._log_handler: Optional[logging.Handler] = None
        if log_dir is not None:
            self._open_log(Path(log_dir))

    def __repr__(self) -> str:
        return f'NodeHandle({self.name!r}, {self.address!r})'

    # Status and faults

    @property
    def status(self) -> str:
        with self._lock:
            if self._fault_message is not None:
                return FAULTED_STATUS
            return self._status

    @status.setter
    def status(self, value: str) -> None:
        with self._lock:
            self._status = value

    @property
    def is_faulted(self) -> bool:
        with self._lock:
            return self._fault_message is not None

    @property
    def fault_message(self) -> Optional[str]:
        with self._lock:
            return self._fault_message

    def fault(self, message: str) -> None:
        """Mark the node faulted for the rest of the run. The first message wins."""
        with self._lock:
            if self._fault_message is not None:
                return
            self._fault_message = message or 'faulted'
        self.log.error(f"[{self.name}] FAULT: {message}")

    # Session

    def connect(self) -> None:
        """Confirm the node is reachable.

        Raises:
            NodeConnectionError: If the host is unreachable or rejects the credentials.
        """
        self.status = 'connecting'
        if not self.transport.probe(self.connect_timeout):
            self.is_ready = False
            raise NodeConnectionError(f"Unable to connect to [{self.name}] at {self.address}")
        self.is_ready = True
        self.status = 'connected'
        self.log.debug(f"[{self.name}] Connected to {self.address}")

    def disconnect(self) -> None:
        self.is_ready = False
        self.transport.close()

    def close(self) -> None:
        """Disconnect and release the per-node log file."""
        self.disconnect()
        if self._log_handler is not None:
            self.log.removeHandler(self._log_handler)
            self._log_handler.close()
            self._log_handler = None

    def wait_for_boot(self, timeout: int = 300, interval: int = 5) -> int:
        """Poll until the node accepts a session.

        Returns:
            Number of connection attempts.

        Raises:
            NodeTimeoutError: If the node is not reachable within timeout seconds.
        """
        self.status = 'waiting for boot'
        attempts = poll_until(
            lambda: self.transport.probe(self.connect_timeout),
            timeout=timeout,
            interval=interval,
            description=f'[{self.name}] to come online',
        )
        self.is_ready = True
        self.status = 'online'
        self.log.info(f"[{self.name}] Online after {attempts} attempt(s)")
        return attempts

    def reboot(self, wait: bool = True, timeout: int = 300, interval: int = 5) -> None:
        """Reboot the node and optionally wait for it to come back.

        Raises:
            NodeTimeoutError: If wait is set and the node doesn't come back in time.
        """
        self.status = 'rebooting'
        self.log.info(f"[{self.name}] Rebooting")
        try:
            # no FAULT_ON_ERROR: the dropped session must not fault the node
            self.sudo('shutdown -r 0', RunOptions.NONE)
        except NodeConnectionError:
            # the session usually drops before shutdown reports back
            self.log.debug(f"[{self.name}] Session dropped during reboot")
        self.disconnect()
        if not wait:
            return
        time.sleep(REBOOT_SETTLE_SECONDS)
        self.wait_for_boot(timeout=timeout, interval=interval)

    # Commands

    def resolve_options(self, options: RunOptions) -> RunOptions:
        if RunOptions.DEFAULTS in options:
            options |= self.default_options
        return options

    def redact(self, command_line: str) -> str:
        """Keep only the first word of a classified command line."""
        parts = command_line.split(maxsplit=1)
        if len(parts) < 2:
            return command_line
        return f'{parts[0]} {REDACTED}'

    def faulted_response(self, command_line: str) -> CommandResponse:
        self.log.debug(f"[{self.name}] Skipping [{command_line}]: node is faulted")
        return CommandResponse(command_line, 1, error_text=FAULTED_OUTPUT, node_faulted=True)

    def run(self, command: 'str | CommandBundle', options: RunOptions = RunOptions.DEFAULTS, *args) -> CommandResponse:
        """Run a command line (with args) or a CommandBundle."""
        if not isinstance(command, str):
            return command.execute(self, options, sudo=False)
        return self.execute_line(format_command(command, *args), options)

    def sudo(self, command: 'str | CommandBundle', options: RunOptions = RunOptions.DEFAULTS, *args) -> CommandResponse:
        """Run a command line or CommandBundle as root."""
        if not isinstance(command, str):
            return command.execute(self, options, sudo=True)
        return self.execute_line(format_command(command, *args), options, sudo=True)

    def execute_line(
        self,
        command_line: str,
        options: RunOptions = RunOptions.DEFAULTS,
        sudo: bool = False,
        workdir: Optional[str] = None,
    ) -> CommandResponse:
        """Run an already formatted command line.

        Raises:
            ValueError: If a sudo command contains a single quote.
            NodeConnectionError: If the session fails and FAULT_ON_ERROR is not set.
        """
        options = self.resolve_options(options)
        if self.is_faulted and RunOptions.RUN_WHEN_FAULTED not in options:
            return self.faulted_response(command_line)

        remote = command_line
        if workdir:
            remote = f'cd {workdir} && {remote}'
        if self.remote_path and RunOptions.IGNORE_REMOTE_PATH not in options:
            remote = f'export PATH={self.remote_path}:$PATH && {remote}'
        if sudo:
            if "'" in remote:
                raise ValueError(f"sudo commands may not contain single quotes, use a CommandBundle: {command_line}")
            remote = f"sudo bash -c '{remote}'"

        classified = RunOptions.CLASSIFIED in options
        display = self.redact(command_line) if classified else command_line
        quiet = RunOptions.LOG_ON_ERROR_ONLY in options
        binary = RunOptions.BINARY_OUTPUT in options

        previous_status = self.status
        self.status = f'run: {display}'
        if not quiet:
            self.log.info(f"[{self.name}] START: {display}")

        try:
            rc, out, err = self.transport.run(remote, binary=binary)
        except NodeConnectionError as e:
            self.is_ready = False
            if RunOptions.FAULT_ON_ERROR not in options:
                raise
            self.fault(str(e))
            return CommandResponse(command_line, 1, error_text=str(e))

        response = CommandResponse(
            command=command_line,
            exit_code=rc,
            output_text='' if binary else str(out),
            output_binary=out if binary else None,  # type: ignore[arg-type]
            error_text=err,
        )
        self._log_response(response, options, display)

        if rc == 0:
            self.status = previous_status
        elif RunOptions.FAULT_ON_ERROR in options:
            self.status = f'ERROR[{rc}]'
            if classified:
                error = CommandError(display, rc, REDACTED)
            else:
                error = CommandError(display, rc, response.output_text, response.error_text)
            self.fault(str(error))
        else:
            self.status = f'WARN[{rc}]'
        return response

    def _log_response(self, response: CommandResponse, options: RunOptions, display: str) -> None:
        failed = response.exit_code != 0
        if RunOptions.LOG_ON_ERROR_ONLY in options and not failed:
            return
        if RunOptions.LOG_ON_ERROR_ONLY in options:
            self.log.info(f"[{self.name}] START: {display}")

        if RunOptions.LOG_OUTPUT in options or failed:
            if RunOptions.CLASSIFIED in options:
                self.log.info(f"[{self.name}]     {REDACTED}")
            else:
                output = '<binary>' if response.output_binary is not None else response.output_text
                for line in (output + '\n' + response.error_text).strip().splitlines():
                    self.log.info(f"[{self.name}]     {line}")

        if failed:
            self.log.warning(f"[{self.name}] END [ERROR={response.exit_code}]")
        else:
            self.log.info(f"[{self.name}] END [OK]")

    # Transfers

    def _run_transfer(self, command: str, path: str) -> None:
        rc, out, err = self.transport.run(command)
        if rc != 0:
            raise TransferError(path, (str(err) or str(out)).strip() or f'exit code {rc}')

    def upload(
        self,
        path: str,
        data: bytes,
        permissions: Optional[str] = None,
        user_permissions: bool = False,
    ) -> None:
        """Upload data to path, creating intervening directories.

        Files are staged under /tmp and moved into place with sudo. The
        result is owned by root unless user_permissions is set.

        Raises:
            TransferError: If any part of the transfer fails.
        """
        if self.is_faulted:
            self.log.debug(f"[{self.name}] Skipping upload of {path}: node is faulted")
            return
        self.status = f'upload: {path}'
        self.log.info(f"[{self.name}] Uploading {path} ({len(data)} bytes)")

        target = PurePosixPath(path)
        staged = f'{UPLOAD_PREFIX}.{uuid.uuid4().hex[:12]}'
        self.transport.put(data, staged)

        quoted = format_args(str(target))
        steps = [f'mkdir -p {format_args(str(target.parent))}', f'mv {staged} {quoted}']
        if permissions:
            steps.append(f'chmod {permissions} {quoted}')
        if not user_permissions:
            steps.append(f'chown root:root {quoted}')
        try:
            self._run_transfer(f"sudo bash -c '{' && '.join(steps)}'", path)
        except TransferError:
            self.transport.run(f'sudo rm -f {staged}')
            raise

    def upload_text(
        self,
        path: str,
        text: str,
        tab_stop: int = 0,
        line_ending: str = '\n',
        permissions: Optional[str] = None,
        user_permissions: bool = False,
    ) -> None:
        """Upload text with line endings normalized (LF by default) and tabs expanded."""
        data = normalize_text(text, tab_stop, line_ending).encode('utf-8')
        self.upload(path, data, permissions=permissions, user_permissions=user_permissions)

    def download(self, path: str) -> bytes:
        """Download a file.

        Raises:
            TransferError: If the node is faulted or the transfer fails.
        """
        if self.is_faulted:
            raise TransferError(path, 'node is faulted')
        self.status = f'download: {path}'
        return self.transport.get(path)

    def download_text(self, path: str) -> str:
        return self.download(path).decode('utf-8')

    def download_to(self, path: str, target: Path) -> Path:
        target = Path(target)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(self.download(path))
        return target

    def open_shell(self, sudo: bool = False) -> InteractiveShell:
        """Open an interactive line-based shell (a root shell with sudo)."""
        if self.is_faulted:
            raise NodeConnectionError(f"[{self.name}] is faulted")
        shell = self.transport.open_shell()
        if sudo:
            shell.send('exec sudo -i')
        return shell

    # Logging

    def _open_log(self, log_dir: Path) -> None:
        log_dir.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(log_dir / f'{self.name}.log', encoding='utf-8')
        handler.setFormatter(logging.Formatter('%(asctime)s [%(levelname)s] %(message)s', '%Y-%m-%d %H:%M:%S'))
        self.log.addHandler(handler)
        self._log_handler = handler
