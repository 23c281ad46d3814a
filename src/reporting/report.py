"""Run reporting for apply and destroy."""

import json
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from engine.executor import ExecutionResult


@dataclass
class RunReport:
    """Collects one apply/destroy run and writes JSON and Markdown reports."""
    stack: str
    command: str
    report_dir: Path
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    success: bool = False
    actions: list[dict] = field(default_factory=list)
    outputs: dict[str, Any] = field(default_factory=dict)
    summary: str = ''
    error: str = ''

    def start(self):
        """Mark run start."""
        self.started_at = datetime.now()
        self.report_dir.mkdir(parents=True, exist_ok=True)

    def record(self, result: ExecutionResult):
        """Copy per-address outcomes from an executor result."""
        self.actions = [r.to_dict() for r in result.reports.values()]
        self.summary = result.summary_line()
        if result.conflict is not None:
            self.error = str(result.conflict)

    def finish(self, success: bool) -> list[Path]:
        """Finalize report and write files."""
        self.finished_at = datetime.now()
        self.success = success
        return [self._write_json(), self._write_markdown()]

    @property
    def duration(self) -> float:
        if self.finished_at and self.started_at:
            return (self.finished_at - self.started_at).total_seconds()
        return 0.0

    def to_dict(self) -> dict:
        data = {
            'stack': self.stack,
            'command': self.command,
            'success': self.success,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'finished_at': self.finished_at.isoformat() if self.finished_at else None,
            'duration': round(self.duration, 1),
            'summary': self.summary,
            'actions': self.actions,
            'outputs': self.outputs,
        }
        if self.error:
            data['error'] = self.error
        return data

    def _write_json(self) -> Path:
        """Write JSON report."""
        filename = self._report_filename('json')
        with open(filename, 'w', encoding="utf-8") as f:
            json.dump(self.to_dict(), f, indent=2)
        return filename

    def _write_markdown(self) -> Path:
        """Write markdown report."""
        status = 'SUCCEEDED' if self.success else 'FAILED'

        lines = [
            f"# {self.stack}: {self.command}",
            "",
            f"**Status**: {status}",
            f"**Date**: {self.started_at.strftime('%Y-%m-%d %H:%M:%S') if self.started_at else 'N/A'}",
            f"**Duration**: {self.duration:.1f}s",
            f"**Summary**: {self.summary}",
            "",
            "## Actions",
            "",
            "| Address | Action | Status | Duration | Error |",
            "|---------|--------|--------|----------|-------|",
        ]

        for a in self.actions:
            status_emoji = {'succeeded': '✅', 'failed': '❌', 'blocked': '⛔', 'skipped': '⏭️'}.get(a['status'], '❓')
            duration = f"{a['duration']:.1f}s" if 'duration' in a else '-'
            lines.append(
                f"| {a['address']} | {a['action']} | {status_emoji} {a['status']} | {duration} | {a.get('error', '')} |"
            )

        if self.outputs:
            lines.extend(["", "## Outputs", "", "| Name | Value |", "|------|-------|"])
            for name, value in self.outputs.items():
                lines.append(f"| {name} | {value} |")

        if self.error:
            lines.extend(["", f"**Error**: {self.error}"])

        lines.extend(["", "---", f"Generated: {datetime.now().isoformat()}"])

        filename = self._report_filename('md')
        with open(filename, 'w', encoding="utf-8") as f:
            f.write('\n'.join(lines))
        return filename

    def _report_filename(self, ext: str) -> Path:
        """Generate report filename: <timestamp>.<stack>.<command>.<status>.<ext>"""
        timestamp = self.started_at.strftime('%Y%m%d-%H%M%S-%f') if self.started_at else 'unknown'
        status = 'succeeded' if self.success else 'failed'
        stack_slug = self.stack.replace('/', '-')
        return self.report_dir / f"{timestamp}.{stack_slug}.{self.command}.{status}.{ext}"
