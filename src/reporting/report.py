"""Run reports for manifest verbs.

A RunReport collects one phase per engine step (render, init, plan,
apply, output, check, destroy) plus the per-resource outcome of the
run. It is written as a JSON + Markdown pair when a report directory
is configured and feeds the --json-output payload either way.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

STATUS_ICONS = {'passed': '✅', 'failed': '❌', 'skipped': '⏭️'}


@dataclass
class PhaseResult:
    """Outcome of one engine step."""
    name: str
    status: str  # passed, failed, skipped
    message: str = ''
    duration: float = 0.0
    finished_at: Optional[datetime] = None

    def summary(self, with_message: bool = True) -> dict[str, Any]:
        entry: dict[str, Any] = {
            'name': self.name,
            'status': self.status,
            'duration': round(self.duration, 1),
        }
        if with_message:
            entry['message'] = self.message
        return entry


@dataclass
class RunReport:
    """Phase and resource record for a single verb invocation.

    Attributes:
        manifest: Manifest name
        verb: Verb being run (plan, apply, destroy, check, test)
        report_dir: Where finish() writes report files (None = no files)
    """
    manifest: str
    verb: str
    report_dir: Optional[Path] = None
    phases: list[PhaseResult] = field(default_factory=list)
    resources: dict[str, str] = field(default_factory=dict)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    success: bool = False

    def start(self):
        self.started_at = datetime.now()

    def pass_phase(self, name: str, message: str = '', duration: float = 0.0):
        self._add(name, 'passed', message, duration)

    def fail_phase(self, name: str, message: str = '', duration: float = 0.0):
        self._add(name, 'failed', message, duration)

    def skip_phase(self, name: str, message: str = ''):
        self._add(name, 'skipped', message, 0.0)

    def record(self, name: str, result) -> None:
        """Record an ActionResult under the given phase name."""
        status = 'passed' if result.success else 'failed'
        self._add(name, status, result.message, result.duration)

    def record_resources(self, state) -> None:
        """Capture the final status of each resource from an ExecutionState."""
        self.resources = {address: rs.status for address, rs in state.resources.items()}

    def _add(self, name: str, status: str, message: str, duration: float) -> None:
        self.phases.append(PhaseResult(name, status, message, duration, datetime.now()))

    @property
    def duration(self) -> float:
        if self.finished_at and self.started_at:
            return (self.finished_at - self.started_at).total_seconds()
        return 0.0

    @property
    def first_error(self) -> Optional[str]:
        return next((p.message for p in self.phases if p.status == 'failed' and p.message), None)

    def finish(self, success: bool) -> list[Path]:
        """Close the run and write report files when report_dir is set.

        Returns:
            Written paths, JSON first
        """
        self.finished_at = datetime.now()
        self.success = success
        if self.report_dir is None:
            return []
        self.report_dir.mkdir(parents=True, exist_ok=True)

        json_path = self._report_filename('json')
        json_path.write_text(json.dumps(self._summary(with_messages=True), indent=2), encoding='utf-8')

        md_path = self._report_filename('md')
        md_path.write_text('\n'.join(self._markdown_lines()), encoding='utf-8')
        return [json_path, md_path]

    def _summary(self, with_messages: bool) -> dict[str, Any]:
        data: dict[str, Any] = {
            'manifest': self.manifest,
            'verb': self.verb,
            'success': self.success,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'finished_at': self.finished_at.isoformat() if self.finished_at else None,
            'duration_seconds': round(self.duration, 1),
            'phases': [p.summary(with_messages) for p in self.phases],
        }
        if self.resources:
            data['resource_status'] = dict(self.resources)
        return data

    def _markdown_lines(self) -> list[str]:
        started = self.started_at.strftime('%Y-%m-%d %H:%M:%S') if self.started_at else 'N/A'
        lines = [
            f"# {self.manifest}: {self.verb}",
            "",
            f"**Result**: {'PASSED' if self.success else 'FAILED'}",
            f"**Started**: {started}",
            f"**Duration**: {self.duration:.1f}s",
            "",
            "## Phases",
            "",
            "| Phase | Status | Duration | Message |",
            "|-------|--------|----------|---------|",
        ]
        for p in self.phases:
            icon = STATUS_ICONS.get(p.status, '❓')
            message = p.message.replace('|', '\\|').replace('\n', ' ')
            lines.append(f"| {p.name} | {icon} {p.status} | {p.duration:.1f}s | {message} |")

        if self.resources:
            lines += ["", "## Resources", "", "| Address | Status |", "|---------|--------|"]
            lines += [f"| `{address}` | {status} |" for address, status in self.resources.items()]
        return lines

    def _report_filename(self, ext: str) -> Path:
        """{timestamp}.{manifest}.{verb}.{passed|failed}.{ext}"""
        assert self.report_dir is not None
        stamp = self.started_at.strftime('%Y%m%d-%H%M%S') if self.started_at else 'unknown'
        outcome = 'passed' if self.success else 'failed'
        slug = self.manifest.replace('/', '-')
        return self.report_dir / f"{stamp}.{slug}.{self.verb}.{outcome}.{ext}"

    def to_dict(self, context: Optional[dict] = None) -> dict:
        """Report payload for --json-output.

        Context keys starting with '_' and values that are not JSON
        serializable are left out.
        """
        result = self._summary(with_messages=False)
        del result['started_at'], result['finished_at']
        if not self.success and self.first_error:
            result['error'] = self.first_error

        serializable: dict[str, Any] = {}
        for key, value in (context or {}).items():
            if key.startswith('_'):
                continue
            try:
                json.dumps(value)
            except (TypeError, ValueError):
                continue
            serializable[key] = value
        if serializable:
            result['context'] = serializable
        return result
