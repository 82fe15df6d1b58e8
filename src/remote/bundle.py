"""Command bundles: a command line plus the files it needs.

Executing a bundle stages every attached file into a fresh remote
temporary directory, runs the command from that directory and removes
the directory again, whatever the outcome. Files live flat in the
directory so scripts can refer to each other as ./name.
"""

from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

from common import format_args, format_command, normalize_text
from remote.errors import NodeConnectionError
from remote.options import CommandResponse, RunOptions

if TYPE_CHECKING:
    from remote.node import NodeHandle


STAGING_TEMPLATE = '/tmp/swarm-bundle.XXXXXXXX'


class BundleStagingError(Exception):
    """Staging directory could not be created or populated."""


@dataclass
class BundleFile:
    """A file attached to a bundle.

    Text content is normalized to LF line endings before upload.
    """
    name: str
    data: str | bytes
    executable: bool = False
    permissions: Optional[str] = None

    def to_bytes(self) -> bytes:
        if isinstance(self.data, bytes):
            return self.data
        return normalize_text(self.data).encode('utf-8')

    def mode(self, sudo: bool) -> Optional[str]:
        if self.permissions:
            return self.permissions
        if self.executable:
            return '700' if sudo else '755'
        return None


class CommandBundle:
    """A deferred unit of remote work.

    Example:
        bundle = CommandBundle('./setup-docker.sh', version)
        bundle.add_file('setup-docker.sh', script, executable=True)
        node.sudo(bundle, RunOptions.DEFAULTS)
    """

    def __init__(self, command: str, *args):
        self.command = command
        self.args = args
        self._files: dict[str, BundleFile] = {}

    def __str__(self) -> str:
        return format_command(self.command, *self.args)

    def __repr__(self) -> str:
        return f'CommandBundle({str(self)!r}, files={list(self._files)})'

    @property
    def files(self) -> list[BundleFile]:
        return list(self._files.values())

    def add_file(
        self,
        name: str,
        content: str | bytes,
        executable: bool = False,
        permissions: Optional[str] = None,
    ) -> None:
        """Attach a file; a later file with the same name replaces the earlier one.

        Raises:
            ValueError: If name is empty or not a plain file name.
        """
        if not name or '/' in name or name in ('.', '..'):
            raise ValueError(f"Bundle file names must be plain file names: {name!r}")
        self._files[name] = BundleFile(name, content, executable, permissions)

    def execute(self, node: 'NodeHandle', options: RunOptions = RunOptions.DEFAULTS, sudo: bool = False) -> CommandResponse:
        """Stage the files on node, run the command and clean up.

        A staging failure of any kind is reported like a failed command
        (exit code 1 with the staging error); with FAULT_ON_ERROR the node
        is faulted. A staging directory that was created is always removed.
        """
        options = node.resolve_options(options)
        command_line = str(self)
        if node.is_faulted and RunOptions.RUN_WHEN_FAULTED not in options:
            return node.faulted_response(command_line)

        classified = RunOptions.CLASSIFIED in options
        if RunOptions.LOG_BUNDLE in options:
            self._log_contents(node, classified)

        staging_dir: Optional[str] = None
        try:
            staging_dir = self._create_staging_dir(node)
            self._stage_files(node, staging_dir, sudo)
        except Exception as e:
            display = node.redact(command_line) if classified else command_line
            message = f"Bundle staging failed for [{display}]: {e}"
            node.log.error(f"[{node.name}] {message}")
            if RunOptions.FAULT_ON_ERROR in options:
                node.fault(message)
            if staging_dir:
                self._remove_staging_dir(node, staging_dir, sudo)
            return CommandResponse(command_line, 1, error_text=str(e))

        try:
            return node.execute_line(command_line, options, sudo=sudo, workdir=staging_dir)
        finally:
            self._remove_staging_dir(node, staging_dir, sudo)

    def _create_staging_dir(self, node: 'NodeHandle') -> str:
        rc, out, err = node.transport.run(f'mktemp -d {STAGING_TEMPLATE}')
        staging_dir = str(out).strip()
        if rc != 0 or not staging_dir:
            raise BundleStagingError(str(err).strip() or f'mktemp exit code {rc}')
        return staging_dir

    def _stage_files(self, node: 'NodeHandle', staging_dir: str, sudo: bool) -> None:
        chmods = []
        for bundle_file in self._files.values():
            path = f'{staging_dir}/{bundle_file.name}'
            node.transport.put(bundle_file.to_bytes(), path)
            if mode := bundle_file.mode(sudo):
                chmods.append(f'chmod {mode} {format_args(path)}')
        if chmods:
            rc, out, err = node.transport.run(' && '.join(chmods))
            if rc != 0:
                raise BundleStagingError((str(err) or str(out)).strip() or f'chmod exit code {rc}')

    def _remove_staging_dir(self, node: 'NodeHandle', staging_dir: str, sudo: bool) -> None:
        command = f'rm -rf {staging_dir}'
        if sudo:
            command = f'sudo {command}'
        try:
            rc, _, err = node.transport.run(command)
        except NodeConnectionError as e:
            node.log.warning(f"[{node.name}] Unable to remove {staging_dir}: {e}")
            return
        if rc != 0:
            node.log.warning(f"[{node.name}] Unable to remove {staging_dir}: {str(err).strip()}")

    def _log_contents(self, node: 'NodeHandle', classified: bool) -> None:
        node.log.info(f"[{node.name}] BUNDLE: {node.redact(str(self)) if classified else self}")
        for bundle_file in self._files.values():
            mode = bundle_file.mode(False) or 'default'
            node.log.info(f"[{node.name}]   {bundle_file.name} ({mode})")
            if classified or isinstance(bundle_file.data, bytes):
                continue
            for line in bundle_file.data.splitlines():
                node.log.debug(f"[{node.name}]     {line}")
