"""Tests for the run report, the result aggregator and space accounting"""

from datetime import timedelta

import pytest

from conftest import DiskUsageTuple
from operation_registry import UnknownOperationError
from run_report import (
    DiskUsage,
    EnvironmentSnapshot,
    InvalidOutcomeError,
    OperationOutcome,
    ReportFinalizedError,
    ResourceAccountant,
    ResultAggregator,
    RunReport,
    Status,
    capture_environment,
    local_now,
    make_run_stamp,
)


def make_outcome(operation_id, status=Status.COMPLETED, **kwargs):
    now = local_now()
    return OperationOutcome(operation_id=operation_id, status=status, started_at=now, finished_at=now, **kwargs)


@pytest.fixture
def report():
    now = local_now()
    return RunReport(started_at=now, run_stamp=make_run_stamp(now))


@pytest.fixture
def aggregator(report, registry):
    return ResultAggregator(report, registry)


class TestResourceAccountant:
    def test_full_deletion_counts_the_measured_size(self):
        accountant = ResourceAccountant()
        assert accountant.record_freed(2048, 0) == 2048
        assert accountant.total_kb == 2048

    def test_partial_deletion_counts_nothing(self):
        accountant = ResourceAccountant()
        assert accountant.record_freed(2048, 10) == 0
        assert accountant.total_kb == 0

    def test_volume_growth_is_not_negative(self):
        accountant = ResourceAccountant()
        assert accountant.record_volume_delta(1000, 1500) == 0
        assert accountant.record_volume_delta(1500, 1000) == 500
        assert accountant.total_kb == 500
        assert accountant.deltas == [0, 500]

    def test_total_never_decreases(self):
        accountant = ResourceAccountant()
        totals = []
        for before, after in [(10, 0), (5, 5), (-3, 0), (7, 0)]:
            accountant.record_freed(before, after)
            totals.append(accountant.total_kb)
        assert totals == sorted(totals)
        assert accountant.total_kb == 17


class TestResultAggregator:
    def test_counts_follow_outcomes(self, aggregator, report):
        aggregator.record_outcome(make_outcome("a", space_freed_kb=100, warnings=("w1", "w2")))
        aggregator.record_skip("b", "user declined")
        aggregator.record_outcome(make_outcome("c", Status.FAILED, errors=("boom",)))

        assert report.completed_count == 1
        assert report.skipped_count == 1
        assert report.failed_count == 1
        assert report.warning_count == 2
        assert report.error_count == 1
        assert report.total_space_freed_kb == 100
        assert report.completed_count + report.skipped_count + report.failed_count == len(report.outcomes)
        assert report.outcomes_with(Status.SKIPPED)[0].reason == "user declined"

    def test_skip_with_errors_is_rejected(self, aggregator):
        with pytest.raises(InvalidOutcomeError):
            aggregator.record_outcome(make_outcome("a", Status.SKIPPED, errors=("nope",)))

    def test_negative_space_is_rejected(self, aggregator):
        with pytest.raises(InvalidOutcomeError):
            aggregator.record_outcome(make_outcome("a", space_freed_kb=-1))

    def test_unknown_operation_is_rejected(self, aggregator):
        with pytest.raises(UnknownOperationError):
            aggregator.record_outcome(make_outcome("zzz"))

    def test_finalized_report_is_read_only(self, aggregator, report):
        aggregator.finalize()
        assert report.finalized
        with pytest.raises(ReportFinalizedError):
            aggregator.record_skip("a", "late")
        with pytest.raises(ReportFinalizedError):
            aggregator.add_notice("late")
        with pytest.raises(ReportFinalizedError):
            aggregator.finalize()

    def test_finalize_records_disk_after(self, aggregator, report):
        report.environment = EnvironmentSnapshot(os_version="macOS 14.5", hostname="mac")
        after = DiskUsage(total_kb=1000, used_kb=400, free_kb=600)
        aggregator.finalize(after)
        assert report.environment.disk_after == after
        assert report.finished_at is not None

    def test_interruption_and_notices(self, aggregator, report):
        aggregator.add_notice("Sleep prevention unavailable")
        aggregator.mark_interrupted("SIGINT")
        assert report.notices == ["Sleep prevention unavailable"]
        assert report.interrupted_by == "SIGINT"


class TestModel:
    def test_outcome_duration(self):
        now = local_now()
        outcome = OperationOutcome("a", Status.COMPLETED, now, now + timedelta(seconds=90))
        assert outcome.duration_seconds == 90

    def test_disk_usage_measure(self, fake_disk):
        usage = DiskUsage.measure("/", fake_disk)
        assert usage.total_kb == 500 * 1024**2
        assert usage.free_kb == 100 * 1024**2
        assert usage.percent_used == 80

    def test_disk_usage_empty_volume(self):
        assert DiskUsage(0, 0, 0).percent_used == 0

    def test_capture_environment_survives_disk_errors(self):
        def broken(_volume):
            raise OSError("no such volume")

        snapshot = capture_environment("/nope", broken)
        assert snapshot.disk_before is None
        assert snapshot.hostname

    def test_capture_environment(self):
        snapshot = capture_environment("/", lambda _v: DiskUsageTuple(4096, 1024, 3072))
        assert snapshot.disk_before == DiskUsage(4, 1, 3)

    def test_run_stamp_format(self):
        now = local_now().replace(year=2024, month=3, day=9, hour=7, minute=5, second=1)
        assert make_run_stamp(now) == "20240309_070501"
