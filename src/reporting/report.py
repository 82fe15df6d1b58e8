"""Run reports for cluster operations."""

import json
from datetime import datetime
from pathlib import Path
from typing import Optional

from setup_opr.state import RunResult


class SetupReport:
    """Writes JSON and Markdown summaries of a SetupController run.

    Files are named <timestamp>.<run-name>.<passed|failed>.<ext> so
    reports from repeated runs don't collide.
    """

    def __init__(self, report_dir: Path):
        self.report_dir = Path(report_dir)

    def write(self, result: RunResult, now: Optional[datetime] = None) -> list[Path]:
        """Write both report files. Returns their paths."""
        now = now or datetime.now()
        self.report_dir.mkdir(parents=True, exist_ok=True)
        data = result.to_dict()
        return [
            self._write_json(data, now),
            self._write_markdown(result, now),
        ]

    def _write_json(self, data: dict, now: datetime) -> Path:
        filename = self._report_filename(data['name'], data['success'], now, 'json')
        with open(filename, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2)
        return filename

    def _write_markdown(self, result: RunResult, now: datetime) -> Path:
        status = 'PASSED' if result.success else 'FAILED'
        duration = result.duration or 0.0

        lines = [
            f"# {result.name}",
            "",
            f"**Status**: {status}",
            f"**Date**: {now.strftime('%Y-%m-%d %H:%M:%S')}",
            f"**Duration**: {duration:.1f}s",
        ]
        if result.global_error:
            lines.append(f"**Error**: {result.global_error}")

        lines.extend([
            "",
            "## Steps",
            "",
            "| Step | Status | Nodes | Duration | Message |",
            "|------|--------|-------|----------|---------|",
        ])
        for step in result.steps:
            status_emoji = {'passed': '✅', 'failed': '❌', 'skipped': '⏭️'}.get(step.status, '❓')
            step_duration = f"{step.duration:.1f}s" if step.duration is not None else '-'
            lines.append(
                f"| {step.name} | {status_emoji} {step.status} | {len(step.nodes)} "
                f"| {step_duration} | {step.message or ''} |")

        lines.extend([
            "",
            "## Nodes",
            "",
            "| Node | State | Status | Message |",
            "|------|-------|--------|---------|",
        ])
        for outcome in result.nodes.values():
            lines.append(f"| {outcome.name} | {outcome.state} | {outcome.status} | {outcome.message or ''} |")

        lines.extend(["", "---", f"Generated: {now.isoformat()}"])

        filename = self._report_filename(result.name, result.success, now, 'md')
        with open(filename, 'w', encoding='utf-8') as f:
            f.write('\n'.join(lines))
        return filename

    def _report_filename(self, name: str, success: bool, now: datetime, ext: str) -> Path:
        timestamp = now.strftime('%Y%m%d-%H%M%S')
        status = 'passed' if success else 'failed'
        slug = name.replace('/', '-').replace(' ', '-')
        return self.report_dir / f"{timestamp}.{slug}.{status}.{ext}"
