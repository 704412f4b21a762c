"""Tests for rendering the Markdown and HTML reports"""

import re
from datetime import timedelta
from pathlib import Path

import pytest

from operation_registry import OperationDescriptor, Risk
from report_synthesizer import artifact_paths, build_report_model, render, write_artifacts
from run_report import (
    DiskUsage,
    EnvironmentSnapshot,
    OperationOutcome,
    ResultAggregator,
    RunReport,
    Status,
    local_now,
    make_run_stamp,
)

STAMP = "20240309_070501"


@pytest.fixture
def catalogue(registry):
    registry.register(OperationDescriptor("network_reset", "Reset network", Risk.HIGH, "network", "Reset done"))
    return registry


@pytest.fixture
def paths(tmp_path):
    return artifact_paths(tmp_path / "reports", tmp_path / "logs", STAMP)


def build_report(catalogue, network_status=Status.FAILED):
    started = local_now()
    report = RunReport(
        started_at=started,
        run_stamp=make_run_stamp(started),
        version="1.0.0",
        selected_ids=("a", "b", "c", "network_reset"),
        catalogue={d.id: d for d in catalogue.list()},
        environment=EnvironmentSnapshot(
            os_version="macOS 14.5 (arm64)",
            hostname="studio",
            disk_before=DiskUsage(total_kb=1000, used_kb=800, free_kb=200),
        ),
    )
    aggregator = ResultAggregator(report, catalogue)
    aggregator.record_outcome(
        OperationOutcome(
            "a",
            Status.COMPLETED,
            started,
            started + timedelta(seconds=65),
            space_freed_kb=2048,
            warnings=("<script>alert(1)</script>",),
        )
    )
    aggregator.record_skip("b", "user declined")
    aggregator.record_outcome(OperationOutcome("c", Status.FAILED, started, started, errors=("c failed: boom",)))
    errors = ("network_reset failed: no route",) if network_status is Status.FAILED else ()
    aggregator.record_outcome(OperationOutcome("network_reset", network_status, started, started, errors=errors))
    aggregator.add_notice("caffeinate not available - the system may sleep during maintenance")
    aggregator.finalize(DiskUsage(total_kb=1000, used_kb=700, free_kb=300))
    return report


def html_totals(html):
    return dict(re.findall(r'data-total="(\w+)">([^<]*)<', html))


def test_both_formats_carry_the_same_totals(catalogue, paths):
    report = build_report(catalogue)
    artifacts = render(report, paths)

    totals = html_totals(artifacts.html)
    assert totals["selected"] == "4"
    assert totals["completed"] == "1"
    assert totals["skipped"] == "1"
    assert totals["failed"] == "2"
    assert totals["warnings"] == "1"
    assert totals["errors"] == "2"
    assert totals["space_freed"] == "2.0 MiB"

    md = artifacts.markdown
    assert "**Selected Operations:** 4" in md
    assert "**Completed Operations:** 1" in md
    assert "**Skipped Operations:** 1" in md
    assert "**Failed Operations:** 2" in md
    assert "**Space Freed:** 2.0 MiB (approximate)" in md
    assert "**Errors:** 2" in md
    assert "**Warnings:** 1" in md


def test_category_narrative(catalogue, paths):
    model = build_report_model(build_report(catalogue), paths)
    narratives = {c["name"]: c["narrative"] for c in model["categories"]}
    assert narratives["cleanup"] == "1 completed, 0 skipped, 0 error(s), 1 warning(s)"
    assert narratives["network"] == "0 completed, 0 skipped, 2 error(s), 0 warning(s)"
    assert narratives["database"] == "0 completed, 1 skipped, 0 error(s), 0 warning(s)"


def test_only_finalized_reports_are_rendered(catalogue, paths):
    started = local_now()
    report = RunReport(started_at=started, run_stamp=make_run_stamp(started), selected_ids=("a",))
    assert report.duration_seconds == 0
    with pytest.raises(ValueError, match="not been finalized"):
        render(report, paths)


def test_network_recommendation_needs_a_completed_reset(catalogue, paths):
    advice = "Test network connectivity after the network reset"
    failed = render(build_report(catalogue, Status.FAILED), paths)
    assert advice not in failed.markdown
    assert advice not in failed.html

    completed = render(build_report(catalogue, Status.COMPLETED), paths)
    assert advice in completed.markdown
    assert advice in completed.html
    assert "Restart your Mac to complete all system changes" in completed.markdown


def test_html_escapes_captured_text(catalogue, paths):
    artifacts = render(build_report(catalogue), paths)
    assert "<script>alert(1)</script>" not in artifacts.html
    assert "&lt;script&gt;alert(1)&lt;/script&gt;" in artifacts.html
    assert "<script>alert(1)</script>" in artifacts.markdown


def test_sections(catalogue, paths):
    md = render(build_report(catalogue), paths).markdown
    assert "- ⏭️  **b** - user declined" in md
    assert "- ❌ [c] c failed: boom" in md
    assert "caffeinate not available" in md
    assert "| Before | 1000.0 KiB | 800.0 KiB | 200.0 KiB | 80% |" in md
    assert "| After | 1000.0 KiB | 700.0 KiB | 300.0 KiB | 70% |" in md
    assert f"`{paths.log}`" in md
    assert "1m 5s" in md


def test_interruption_is_reported(catalogue, paths):
    started = local_now()
    report = RunReport(started_at=started, run_stamp=make_run_stamp(started), selected_ids=("a", "b"))
    aggregator = ResultAggregator(report, catalogue)
    aggregator.record_outcome(OperationOutcome("a", Status.FAILED, started, started, errors=("interrupted",)))
    aggregator.mark_interrupted("SIGINT")
    aggregator.finalize()

    artifacts = render(report, paths)
    for text in (artifacts.markdown, artifacts.html):
        assert "interrupted by SIGINT" in text
    assert "| Before | n/a | n/a | n/a | n/a |" in artifacts.markdown


def test_artifact_paths_share_the_run_stamp(tmp_path):
    paths = artifact_paths(tmp_path / "r", tmp_path / "l", STAMP)
    assert paths.markdown == tmp_path / "r" / f"maintenance_report_{STAMP}.md"
    assert paths.html == tmp_path / "r" / f"maintenance_report_{STAMP}.html"
    assert paths.log == tmp_path / "l" / f"therapeia_{STAMP}.log"
    assert list(paths.as_dict()) == ["Markdown Report", "HTML Report", "Log File"]


def test_write_artifacts_creates_the_report_dir(catalogue, paths):
    write_artifacts(render(build_report(catalogue), paths), paths)
    assert Path(paths.markdown).read_text(encoding="utf-8").startswith("# macOS Maintenance Report")
    assert "<html" in paths.html.read_text(encoding="utf-8")
