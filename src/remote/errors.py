"""Error taxonomy for remote node operations.

Most per-node failures are recorded as node faults rather than raised;
these exceptions cover the cases that have to unwind the caller.
"""

from typing import Optional


class RemoteError(Exception):
    """Base class for remote operation errors."""


class NodeConnectionError(RemoteError, ConnectionError):
    """Node unreachable or authentication rejected."""


class CommandError(RemoteError):
    """A remote command returned a non-zero exit code."""

    def __init__(self, command: str, exit_code: int, output: str = '', error: str = ''):
        self.command = command
        self.exit_code = exit_code
        self.output = output
        self.error = error
        super().__init__(self._describe())

    def _describe(self) -> str:
        detail = (self.error or self.output or '').strip().splitlines()
        tail = f": {detail[-1]}" if detail else ''
        return f"[{self.command}] exit code={self.exit_code}{tail}"


class TransferError(RemoteError):
    """Upload or download failed."""

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Transfer of [{path}] failed: {reason}")


class NodeTimeoutError(RemoteError, TimeoutError):
    """A bounded wait exceeded its deadline."""


class GlobalStepError(RemoteError):
    """An error raised inside a global step. Always fatal to the run."""

    def __init__(self, step: str, cause: Optional[BaseException] = None):
        self.step = step
        self.cause = cause
        reason = str(cause) if cause else 'unknown error'
        super().__init__(f"Global step [{step}] failed: {reason}")
