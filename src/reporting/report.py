"""Run reporting."""

import json
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional


@dataclass
class UnitRecord:
    """Outcome of one (action, node) unit."""
    unit: str
    action: str
    node: str
    status: str  # 'succeeded', 'failed', 'cancelled', or 'running' if abandoned
    message: str = ''
    duration: float = 0.0


@dataclass
class RunReport:
    """Collects unit outcomes of a run and writes JSON and markdown reports."""
    targets: list[str]
    report_dir: Path
    cluster: str = ''
    units: list[UnitRecord] = field(default_factory=list)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    success: bool = False
    error: str = ''

    def start(self):
        """Mark run start."""
        self.started_at = datetime.now()
        self.report_dir.mkdir(parents=True, exist_ok=True)

    def record_result(self, result) -> None:
        """Record every unit of a SchedulerResult."""
        for unit in result.units:
            self.units.append(UnitRecord(
                unit=unit.key,
                action=str(unit.action.id),
                node=unit.node.name,
                status=unit.status,
                message=str(unit.error) if unit.error is not None else '',
                duration=unit.duration or 0.0,
            ))

    def finish(self, success: bool, error: str = '') -> list[Path]:
        """Finalize report and write files. Returns the written paths."""
        self.finished_at = datetime.now()
        self.success = success
        self.error = error
        return [self._write_json(), self._write_markdown()]

    @property
    def duration(self) -> float:
        if self.finished_at and self.started_at:
            return (self.finished_at - self.started_at).total_seconds()
        return 0.0

    def to_dict(self) -> dict:
        """Return report as dictionary for JSON output."""
        result = {
            'targets': self.targets,
            'cluster': self.cluster,
            'success': self.success,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'finished_at': self.finished_at.isoformat() if self.finished_at else None,
            'duration_seconds': round(self.duration, 1),
            'units': [
                {
                    'unit': u.unit,
                    'action': u.action,
                    'node': u.node,
                    'status': u.status,
                    'duration': round(u.duration, 1),
                    'message': u.message,
                }
                for u in self.units
            ]
        }
        if self.error:
            result['error'] = self.error
        return result

    def _write_json(self) -> Path:
        filename = self._report_filename('json')
        with open(filename, 'w', encoding="utf-8") as f:
            json.dump(self.to_dict(), f, indent=2)
        return filename

    def _write_markdown(self) -> Path:
        status = 'PASSED' if self.success else 'FAILED'

        lines = [
            f"# {' '.join(self.targets)}",
            "",
            f"**Cluster**: {self.cluster}",
            f"**Status**: {status}",
            f"**Date**: {self.started_at.strftime('%Y-%m-%d %H:%M:%S') if self.started_at else 'N/A'}",
            f"**Duration**: {self.duration:.1f}s",
            "",
        ]
        if self.error:
            lines.extend([f"**Error**: {self.error}", ""])
        lines.extend([
            "## Units",
            "",
            "| Action | Node | Status | Duration | Message |",
            "|--------|------|--------|----------|---------|",
        ])

        for u in self.units:
            status_emoji = {'succeeded': '✅', 'failed': '❌', 'cancelled': '⏭️'}.get(u.status, '❓')
            lines.append(f"| {u.action} | {u.node} | {status_emoji} {u.status} | {u.duration:.1f}s | {u.message} |")

        lines.extend(["", "---", f"Generated: {datetime.now().isoformat()}"])

        filename = self._report_filename('md')
        with open(filename, 'w', encoding="utf-8") as f:
            f.write('\n'.join(lines))
        return filename

    def _report_filename(self, ext: str) -> Path:
        """Generate report filename: <timestamp>.<targets>.<passed|failed>.<ext>"""
        timestamp = self.started_at.strftime('%Y%m%d-%H%M%S') if self.started_at else 'unknown'
        status = 'passed' if self.success else 'failed'
        targets_slug = '-'.join(t.replace('/', '-').replace(':', '-') for t in self.targets)
        if targets_slug:
            return self.report_dir / f"{timestamp}.{targets_slug}.{status}.{ext}"
        return self.report_dir / f"{timestamp}.{status}.{ext}"
