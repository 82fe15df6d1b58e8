#!/usr/bin/env python3
"""Tests for common.py - shared utilities.

Tests verify:
1. run_command execution and error handling
2. poll_until deadline semantics
3. Command argument formatting
4. Text normalization
"""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

import pytest
from common import (
    format_args,
    format_command,
    normalize_text,
    poll_until,
    run_command,
)
from remote.errors import NodeTimeoutError


class TestRunCommand:
    """Test run_command utility."""

    def test_returns_success_tuple(self):
        """Should return (returncode, stdout, stderr) on success."""
        rc, stdout, stderr = run_command(['echo', 'hello'])
        assert rc == 0
        assert 'hello' in stdout
        assert stderr == ''

    def test_returns_failure_tuple(self):
        """Should return non-zero returncode on failure."""
        rc, _, _ = run_command(['false'])
        assert rc != 0

    def test_timeout_returns_error(self):
        """Should return -1 and a message on timeout."""
        rc, _, stderr = run_command(['sleep', '10'], timeout=1)
        assert rc == -1
        assert 'timed out' in stderr.lower()

    def test_missing_binary_returns_error(self):
        """Should return -1 instead of raising when the program doesn't exist."""
        rc, _, stderr = run_command(['/nonexistent/swarm-driver-test'])
        assert rc == -1
        assert stderr


class TestPollUntil:
    """Test poll_until deadline-based retry."""

    def test_returns_attempts_on_success(self, fake_clock):
        """Should return how many attempts it took."""
        results = iter([False, False, False, True])
        assert poll_until(lambda: next(results), timeout=120, interval=5) == 4
        assert fake_clock.sleeps == [5, 5, 5]

    def test_first_attempt_success_does_not_sleep(self, fake_clock):
        """Should not sleep when the first attempt succeeds."""
        assert poll_until(lambda: True, timeout=10, interval=5) == 1
        assert fake_clock.sleeps == []

    def test_deadline_bounds_attempts(self, fake_clock):
        """Should stop once the next sleep would pass the deadline."""
        calls = []

        def never():
            calls.append(1)
            return False

        with pytest.raises(NodeTimeoutError) as exc:
            poll_until(never, timeout=120, interval=5, description='consul join')
        # attempts at t=0,5,...,120
        assert len(calls) == 25
        assert 'consul join' in str(exc.value)

    def test_zero_timeout_tries_once(self, fake_clock):
        """Should always try the predicate at least once."""
        calls = []
        with pytest.raises(NodeTimeoutError):
            poll_until(lambda: calls.append(1) or False, timeout=0, interval=5)
        assert len(calls) == 1

    def test_timeout_error_is_builtin_timeout(self, fake_clock):
        """NodeTimeoutError should also be a TimeoutError."""
        with pytest.raises(TimeoutError):
            poll_until(lambda: False, timeout=1, interval=5)


class TestFormatArgs:
    """Test remote argument formatting."""

    def test_skips_none(self):
        assert format_args('a', None, 'b') == 'a b'

    def test_booleans(self):
        assert format_args(True, False) == 'true false'

    def test_blank_becomes_dash(self):
        assert format_args('', '  ') == '- -'

    def test_whitespace_is_quoted(self):
        assert format_args('hello world') == '"hello world"'

    def test_numbers(self):
        assert format_args(2377, 1.5) == '2377 1.5'

    def test_format_command_without_args(self):
        assert format_command('docker info') == 'docker info'

    def test_format_command_with_args(self):
        assert format_command('docker pull', 'nginx:latest') == 'docker pull nginx:latest'


class TestNormalizeText:
    """Test line ending and tab normalization."""

    def test_crlf_to_lf(self):
        assert normalize_text('a\r\nb\rc\n') == 'a\nb\nc\n'

    def test_custom_line_ending(self):
        assert normalize_text('a\nb', line_ending='\r\n') == 'a\r\nb'

    def test_tabs_expanded(self):
        assert normalize_text('\tx', tab_stop=4) == '    x'

    def test_tabs_kept_by_default(self):
        assert normalize_text('\tx') == '\tx'
