"""Run reporting: JSON and markdown summaries of an engine run."""

import json
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional

from deploy_opr.outcome import ResourceResult, RunOutcome
from deploy_opr.validator import ValidationResult

RESULT_MARKS = {
    ResourceResult.READY: '✅',
    ResourceResult.DELETED: '✅',
    ResourceResult.SKIPPED: '⏭️',
    ResourceResult.FAILED: '❌',
    ResourceResult.BLOCKED: '⛔',
    ResourceResult.CANCELLED: '⏹️',
}


@dataclass
class RunReport:
    """Collects a run outcome plus validation results and renders them."""
    verb: str
    target: str
    outcome: RunOutcome
    validations: list[ValidationResult] = field(default_factory=list)
    generated_at: datetime = field(default_factory=datetime.now)

    @property
    def deployment(self) -> str:
        return self.outcome.deployment_id

    @property
    def not_ready(self) -> list[str]:
        return [v.name for v in self.validations if not v.ready]

    def to_dict(self) -> dict:
        """Return report as dictionary for JSON output."""
        result = {
            'verb': self.verb,
            'target': self.target,
            'success': self.outcome.success,
        }
        result.update(self.outcome.to_dict())
        if self.validations:
            result['validation'] = [v.to_dict() for v in self.validations]
        return result

    def summary_lines(self) -> list[str]:
        """Human-readable summary printed at the end of a run."""
        outcome = self.outcome
        duration = outcome.duration or 0.0
        lines = [
            f"{self.verb} '{self.deployment}' on {self.target}: "
            f"{outcome.status.value} ({duration:.1f}s)",
        ]
        validation = {v.name: v for v in self.validations}
        for name, res in outcome.resources.items():
            line = f"  {res.result.value:<9} {name} [{res.action.value}]"
            if res.attempts > 1:
                line += f" attempts={res.attempts}"
            v = validation.get(name)
            if v is not None and not v.ready:
                line += " (not ready)"
            if res.error:
                line += f": {res.error}"
            lines.append(line)
        if outcome.error:
            lines.append(f"  fatal: {outcome.error}")
        for v in self.validations:
            if v.error is not None:
                lines.append(f"  validation: {v.error}")
        return lines

    def write(self, report_dir: Path) -> tuple[Path, Path]:
        """Write JSON and markdown reports; returns their paths."""
        report_dir = Path(report_dir)
        report_dir.mkdir(parents=True, exist_ok=True)
        json_path = self._report_filename(report_dir, 'json')
        md_path = self._report_filename(report_dir, 'md')
        with open(json_path, 'w', encoding="utf-8") as f:
            json.dump(self.to_dict(), f, indent=2)
        with open(md_path, 'w', encoding="utf-8") as f:
            f.write(self.to_markdown())
        return json_path, md_path

    def to_markdown(self) -> str:
        outcome = self.outcome
        duration = outcome.duration or 0.0
        lines = [
            f"# {self.verb} {self.deployment}",
            "",
            f"**Target**: {self.target}",
            f"**Status**: {outcome.status.value}",
            f"**Date**: {self.generated_at.strftime('%Y-%m-%d %H:%M:%S')}",
            f"**Duration**: {duration:.1f}s",
            "",
            "## Resources",
            "",
            "| Resource | Action | Result | Attempts | Error |",
            "|----------|--------|--------|----------|-------|",
        ]
        for name, res in outcome.resources.items():
            mark = RESULT_MARKS.get(res.result, '❓')
            lines.append(
                f"| {name} | {res.action.value} | {mark} {res.result.value} "
                f"| {res.attempts} | {res.error or ''} |"
            )

        if self.validations:
            lines.extend([
                "",
                "## Validation",
                "",
                "| Resource | Ready | State | Polls | Elapsed |",
                "|----------|-------|-------|-------|---------|",
            ])
            for v in self.validations:
                lines.append(
                    f"| {v.name} | {'yes' if v.ready else 'no'} | {v.state or ''} "
                    f"| {v.polls} | {v.elapsed:.1f}s |"
                )

        if outcome.error:
            lines.extend(["", "## Fatal error", "", outcome.error])

        lines.extend(["", "---", f"Generated: {self.generated_at.isoformat()}"])
        return '\n'.join(lines) + '\n'

    def _report_filename(self, report_dir: Path, ext: str) -> Path:
        """Timestamped filename; includes deployment and verb to avoid collisions."""
        timestamp = self.generated_at.strftime('%Y%m%d-%H%M%S')
        status = self.outcome.status.value
        return report_dir / f"{timestamp}.{self.deployment}.{self.verb}.{status}.{ext}"


def write_report(report: RunReport, report_dir: Optional[Path]) -> Optional[tuple[Path, Path]]:
    """Write report files when a report directory is configured."""
    if report_dir is None:
        return None
    return report.write(report_dir)
