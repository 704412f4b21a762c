#!/usr/bin/env python3
"""
Report Synthesizer

Renders a finished RunReport as a Markdown and an HTML document. Both are
produced by Jinja2 templates from one shared report model, so the two
formats always carry the same totals and the same per-category narrative.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from jinja2 import Environment, PackageLoader, select_autoescape

from auxiliary import format_duration, format_kilobytes
from run_report import DiskUsage, RunReport, Status

MARKDOWN_TEMPLATE = "report.md.j2"
HTML_TEMPLATE = "report.html.j2"

# (advice, operation id that must have completed for it to apply)
RECOMMENDATIONS = [
    ("Restart your Mac to complete all system changes", None),
    ("Verify applications work correctly after restart", None),
    ("Check Spotlight indexing completion (may take time)", "spotlight_rebuild"),
    ("Open Mail to rebuild envelope index (first launch may be slow)", "mail_optimization"),
    ("Test network connectivity after the network reset", "network_reset"),
]

MAINTENANCE_SCHEDULE = [
    "Weekly: Empty Trash, clear browser caches",
    "Monthly: Run this maintenance tool",
    "Quarterly: Check for macOS and application updates",
    "Annually: Consider clean macOS installation for optimal performance",
]


@dataclass(frozen=True)
class ArtifactPaths:
    log: Path
    markdown: Path
    html: Path

    def as_dict(self) -> dict[str, str]:
        return {
            "Markdown Report": str(self.markdown),
            "HTML Report": str(self.html),
            "Log File": str(self.log),
        }


@dataclass(frozen=True)
class ReportArtifacts:
    markdown: str
    html: str


def artifact_paths(report_dir, log_dir, run_stamp: str) -> ArtifactPaths:
    """Derive the three artifact paths of a run from its one timestamp"""
    report_dir = Path(report_dir).expanduser()
    return ArtifactPaths(
        log=Path(log_dir).expanduser() / f"therapeia_{run_stamp}.log",
        markdown=report_dir / f"maintenance_report_{run_stamp}.md",
        html=report_dir / f"maintenance_report_{run_stamp}.html",
    )


def make_environment() -> Environment:
    environment = Environment(
        loader=PackageLoader("therapeia_data", "templates"),
        autoescape=select_autoescape(enabled_extensions=("html.j2",)),
        trim_blocks=True,
        lstrip_blocks=True,
        keep_trailing_newline=True,
    )
    environment.filters["kilobytes"] = format_kilobytes
    environment.filters["duration"] = format_duration
    return environment


def _disk_model(usage: Optional[DiskUsage]) -> Optional[dict]:
    if usage is None:
        return None
    return {
        "total": format_kilobytes(usage.total_kb),
        "used": format_kilobytes(usage.used_kb),
        "free": format_kilobytes(usage.free_kb),
        "percent": usage.percent_used,
    }


def _narrative(completed: int, skipped: int, errors: int, warnings: int) -> str:
    return f"{completed} completed, {skipped} skipped, {errors} error(s), {warnings} warning(s)"


def build_report_model(report: RunReport, paths: ArtifactPaths) -> dict:
    """Build the template model shared by both report formats.

    Only a finalized report is rendered, so the model never depends on the
    time it is built.
    """
    if not report.finalized:
        raise ValueError("cannot render a report that has not been finalized")
    rows = []
    categories: dict[str, dict[str, int]] = {}
    for outcome in report.outcomes:
        descriptor = report.catalogue.get(outcome.operation_id)
        category = descriptor.category if descriptor else "general"
        rows.append(
            {
                "id": outcome.operation_id,
                "description": descriptor.description if descriptor else outcome.operation_id,
                "category": category,
                "status": outcome.status.value,
                "duration": outcome.duration_seconds,
                "space_freed_kb": outcome.space_freed_kb,
                "warnings": len(outcome.warnings),
                "errors": list(outcome.errors),
                "reason": outcome.reason,
            }
        )
        counts = categories.setdefault(category, {"completed": 0, "skipped": 0, "errors": 0, "warnings": 0})
        if outcome.status is not Status.FAILED:
            counts[outcome.status.name.lower()] += 1
        counts["errors"] += len(outcome.errors)
        counts["warnings"] += len(outcome.warnings)

    completed_ids = {o.operation_id for o in report.outcomes_with(Status.COMPLETED)}
    environment = report.environment
    moment = report.finished_at

    return {
        "generated": moment.strftime("%Y-%m-%d %H:%M:%S"),
        "version": report.version,
        "environment": {
            "os_version": environment.os_version if environment else "unknown",
            "hostname": environment.hostname if environment else "unknown",
        },
        "totals": {
            "selected": len(report.selected_ids),
            "completed": report.completed_count,
            "skipped": report.skipped_count,
            "failed": report.failed_count,
            "errors": report.error_count,
            "warnings": report.warning_count,
            "space_freed_kb": report.total_space_freed_kb,
            "duration": report.duration_seconds,
        },
        "categories": [
            {"name": name, "narrative": _narrative(**counts)} for name, counts in categories.items()
        ],
        "completed": [r for r in rows if r["status"] == Status.COMPLETED.value],
        "skipped": [r for r in rows if r["status"] == Status.SKIPPED.value],
        "failed": [r for r in rows if r["status"] == Status.FAILED.value],
        "errors": [(o.operation_id, e) for o in report.outcomes for e in o.errors],
        "warnings": [(o.operation_id, w) for o in report.outcomes for w in o.warnings],
        "notices": list(report.notices),
        "interrupted_by": report.interrupted_by,
        "recommendations": [text for text, needs in RECOMMENDATIONS if needs is None or needs in completed_ids],
        "schedule": MAINTENANCE_SCHEDULE,
        "disk_before": _disk_model(environment.disk_before if environment else None),
        "disk_after": _disk_model(environment.disk_after if environment else None),
        "files": list(paths.as_dict().items()),
    }


def render(report: RunReport, paths: ArtifactPaths, environment: Optional[Environment] = None) -> ReportArtifacts:
    """Render both report formats from the same model"""
    environment = environment or make_environment()
    model = build_report_model(report, paths)
    return ReportArtifacts(
        markdown=environment.get_template(MARKDOWN_TEMPLATE).render(**model),
        html=environment.get_template(HTML_TEMPLATE).render(**model),
    )


def write_artifacts(artifacts: ReportArtifacts, paths: ArtifactPaths):
    paths.markdown.parent.mkdir(parents=True, exist_ok=True)
    paths.markdown.write_text(artifacts.markdown, encoding="utf-8")
    paths.html.parent.mkdir(parents=True, exist_ok=True)
    paths.html.write_text(artifacts.html, encoding="utf-8")
