"""Run options and command responses for remote execution."""

from dataclasses import dataclass
from enum import Flag, auto
from typing import Optional


class RunOptions(Flag):
    """Flags controlling how a remote command is executed and logged.

    DEFAULTS ORs in the node's default_options, which is how a command
    picks up a cluster-wide FAULT_ON_ERROR.
    """
    NONE = 0
    DEFAULTS = auto()
    FAULT_ON_ERROR = auto()
    RUN_WHEN_FAULTED = auto()
    IGNORE_REMOTE_PATH = auto()
    BINARY_OUTPUT = auto()
    CLASSIFIED = auto()
    LOG_ON_ERROR_ONLY = auto()
    LOG_OUTPUT = auto()
    LOG_BUNDLE = auto()


@dataclass
class CommandResponse:
    """Result of a remote command.

    Attributes:
        command: The command line as executed
        exit_code: Remote exit code (1 when skipped because the node is faulted)
        output_text: Standard output (text mode)
        output_binary: Standard output (BINARY_OUTPUT mode)
        error_text: Standard error
        node_faulted: True if the command was skipped because the node is faulted
    """
    command: str
    exit_code: int
    output_text: str = ''
    output_binary: Optional[bytes] = None
    error_text: str = ''
    node_faulted: bool = False

    @property
    def success(self) -> bool:
        return self.exit_code == 0 and not self.node_faulted

    def __bool__(self) -> bool:
        return self.success

    @property
    def output(self) -> str:
        """Return stdout, or stderr if stdout is empty."""
        return self.output_text.strip() or self.error_text.strip()
