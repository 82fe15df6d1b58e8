"""Common utilities shared by the remote, setup and command layers."""

import logging
import shlex
import subprocess
import time
from pathlib import Path
from typing import Callable, Optional

from remote.errors import NodeTimeoutError

logger = logging.getLogger(__name__)


def run_command(
    cmd: list[str],
    cwd: Optional[Path] = None,
    timeout: int = 600,
    capture: bool = True,
    env: Optional[dict] = None,
    text: bool = True,
) -> tuple[int, str | bytes, str]:
    """Run a command and return (returncode, stdout, stderr).

    With text=False stdout is returned as bytes; stderr is always decoded.
    """
    logger.debug(f"Running: {' '.join(cmd)}")
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=capture,
            text=text,
            timeout=timeout,
            env=env,
            check=False  # We handle return codes explicitly
        )
        stderr = result.stderr
        if isinstance(stderr, bytes):
            stderr = stderr.decode('utf-8', errors='replace')
        return result.returncode, result.stdout, stderr or ''
    except subprocess.TimeoutExpired:
        return -1, b'' if not text else '', f'Command timed out after {timeout}s'
    except OSError as e:
        return -1, b'' if not text else '', str(e)


def poll_until(
    predicate: Callable[[], bool],
    timeout: float,
    interval: float,
    description: str = 'condition',
) -> int:
    """Call predicate every interval seconds until it returns True.

    The deadline is the only bound; there is no separate retry count.
    The predicate is always tried at least once, and no sleep is started
    that would end past the deadline.

    Returns:
        The number of attempts it took.

    Raises:
        NodeTimeoutError: If the deadline passes without success.
    """
    deadline = time.monotonic() + timeout
    attempts = 0
    while True:
        attempts += 1
        if predicate():
            return attempts
        if time.monotonic() + interval > deadline:
            break
        logger.debug(f"Waiting for {description} (attempt {attempts}), retrying in {interval}s...")
        time.sleep(interval)
    raise NodeTimeoutError(f"Timeout after {timeout}s waiting for {description} ({attempts} attempts)")


def format_args(*args) -> str:
    """Render command arguments the way remote commands expect them.

    None is skipped, booleans become true/false, blank strings become '-'
    and values containing whitespace are double quoted.
    """
    parts = []
    for arg in args:
        if arg is None:
            continue
        if isinstance(arg, bool):
            parts.append('true' if arg else 'false')
            continue
        value = str(arg)
        if not value.strip():
            value = '-'
        elif any(c.isspace() for c in value):
            value = f'"{value}"'
        parts.append(value)
    return ' '.join(parts)


def format_command(command: str, *args) -> str:
    """Append formatted args to a command line."""
    rendered = format_args(*args)
    return f'{command} {rendered}' if rendered else command


def expand_tabs(line: str, tab_stop: int) -> str:
    """Expand TABs to spaces; tab_stop <= 0 leaves the line unchanged."""
    if tab_stop <= 0:
        return line
    return line.expandtabs(tab_stop)


def normalize_text(text: str, tab_stop: int = 0, line_ending: str = '\n') -> str:
    """Normalize line endings (CRLF/CR to line_ending) and optionally expand tabs."""
    lines = text.replace('\r\n', '\n').replace('\r', '\n').split('\n')
    if tab_stop > 0:
        lines = [expand_tabs(line, tab_stop) for line in lines]
    return line_ending.join(lines)


def shell_quote(value: str) -> str:
    """Quote a value for a POSIX shell."""
    return shlex.quote(value)
