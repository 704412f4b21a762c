#!/usr/bin/env python3
"""
Run Report, Result Aggregator and Resource Accountant

The RunReport is the single record of one orchestration run and the only
source for the rendered artifacts. Its totals are computed from the recorded
outcomes on every access, so there are no counters that could drift from the
outcome list. The ResultAggregator is the only code that writes to it.
"""

import dataclasses
import platform
import shutil
import socket
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

from tzlocal import get_localzone

from operation_registry import OperationDescriptor, OperationRegistry, TherapeiaError, UnknownOperationError


class Status(Enum):
    COMPLETED = "Completed"
    SKIPPED = "Skipped"
    FAILED = "Failed"


@dataclass(frozen=True)
class OperationOutcome:
    operation_id: str
    status: Status
    started_at: datetime
    finished_at: datetime
    space_freed_kb: int = 0
    warnings: tuple[str, ...] = ()
    errors: tuple[str, ...] = ()
    reason: str = ""

    @property
    def duration_seconds(self) -> float:
        return (self.finished_at - self.started_at).total_seconds()


@dataclass(frozen=True)
class DiskUsage:
    total_kb: int
    used_kb: int
    free_kb: int

    @classmethod
    def measure(cls, volume: str = "/", disk_usage: Callable = shutil.disk_usage) -> "DiskUsage":
        usage = disk_usage(volume)
        return cls(total_kb=usage.total // 1024, used_kb=usage.used // 1024, free_kb=usage.free // 1024)

    @property
    def percent_used(self) -> int:
        return (100 * self.used_kb) // self.total_kb if self.total_kb else 0


@dataclass(frozen=True)
class EnvironmentSnapshot:
    os_version: str
    hostname: str
    disk_before: Optional[DiskUsage] = None
    disk_after: Optional[DiskUsage] = None


def describe_os() -> str:
    mac_release = platform.mac_ver()[0]
    if mac_release:
        return f"macOS {mac_release} ({platform.machine()})"
    return platform.platform()


def capture_environment(volume: str = "/", disk_usage: Callable = shutil.disk_usage) -> EnvironmentSnapshot:
    """Capture the OS description and the pre-run disk usage of the volume"""
    try:
        disk_before = DiskUsage.measure(volume, disk_usage)
    except OSError:
        disk_before = None
    return EnvironmentSnapshot(os_version=describe_os(), hostname=socket.gethostname(), disk_before=disk_before)


def local_now() -> datetime:
    return datetime.now(get_localzone())


def make_run_stamp(moment: datetime) -> str:
    return moment.strftime("%Y%m%d_%H%M%S")


# ---------------------------------------------------------------------------
# Run report
# ---------------------------------------------------------------------------


class ReportFinalizedError(TherapeiaError):
    """Raised when something tries to write to a finalized report"""


class InvalidOutcomeError(TherapeiaError):
    """Raised when an outcome violates the report invariants"""


@dataclass
class RunReport:
    started_at: datetime
    run_stamp: str
    version: str = ""
    selected_ids: tuple[str, ...] = ()
    catalogue: dict[str, OperationDescriptor] = field(default_factory=dict)
    environment: Optional[EnvironmentSnapshot] = None
    outcomes: list[OperationOutcome] = field(default_factory=list)
    notices: list[str] = field(default_factory=list)
    interrupted_by: Optional[str] = None
    finished_at: Optional[datetime] = None

    def _count(self, status: Status) -> int:
        return sum(1 for o in self.outcomes if o.status is status)

    @property
    def completed_count(self) -> int:
        return self._count(Status.COMPLETED)

    @property
    def skipped_count(self) -> int:
        return self._count(Status.SKIPPED)

    @property
    def failed_count(self) -> int:
        return self._count(Status.FAILED)

    @property
    def error_count(self) -> int:
        return sum(len(o.errors) for o in self.outcomes)

    @property
    def warning_count(self) -> int:
        return sum(len(o.warnings) for o in self.outcomes)

    @property
    def total_space_freed_kb(self) -> int:
        return sum(o.space_freed_kb for o in self.outcomes)

    @property
    def finalized(self) -> bool:
        return self.finished_at is not None

    @property
    def duration_seconds(self) -> float:
        end = self.finished_at or self.started_at
        return max(0.0, (end - self.started_at).total_seconds())

    def outcomes_with(self, status: Status) -> list[OperationOutcome]:
        return [o for o in self.outcomes if o.status is status]


# ---------------------------------------------------------------------------
# Resource accountant
# ---------------------------------------------------------------------------


class ResourceAccountant:
    """Monotonic counter of reclaimed disk space, in kilobytes"""

    def __init__(self):
        self._total_kb = 0
        self.deltas: list[int] = []

    @property
    def total_kb(self) -> int:
        return self._total_kb

    def record_freed(self, before_kb: int, after_kb: int) -> int:
        """Account a deletion measured before and after it ran.

        Args:
            before_kb: Size of the target measured right before the deletion
            after_kb: Remaining size afterwards, 0 if the target is gone

        Returns:
            The delta added to the total (0 for denied or partial deletions)
        """
        delta = max(0, before_kb) if after_kb <= 0 else 0
        return self._add(delta)

    def record_volume_delta(self, used_before_kb: int, used_after_kb: int) -> int:
        """Account a change in used space on a whole volume"""
        return self._add(max(0, used_before_kb - used_after_kb))

    def _add(self, delta: int) -> int:
        self.deltas.append(delta)
        self._total_kb += delta
        return delta


# ---------------------------------------------------------------------------
# Result aggregator
# ---------------------------------------------------------------------------


class ResultAggregator:
    """Sole writer of a RunReport"""

    def __init__(self, report: RunReport, registry: OperationRegistry):
        self.report = report
        self.registry = registry

    def _ensure_open(self):
        if self.report.finalized:
            raise ReportFinalizedError("Run report is already finalized")

    def record_outcome(self, outcome: OperationOutcome):
        self._ensure_open()
        if outcome.operation_id not in self.registry:
            raise UnknownOperationError(outcome.operation_id)
        if outcome.status is Status.SKIPPED and outcome.errors:
            raise InvalidOutcomeError(f"Skipped outcome for {outcome.operation_id} carries errors")
        if outcome.space_freed_kb < 0:
            raise InvalidOutcomeError(f"Negative space freed for {outcome.operation_id}")
        self.report.outcomes.append(outcome)

    def record_skip(self, operation_id: str, reason: str, at: Optional[datetime] = None):
        moment = at or local_now()
        self.record_outcome(
            OperationOutcome(
                operation_id=operation_id,
                status=Status.SKIPPED,
                started_at=moment,
                finished_at=moment,
                reason=reason,
            )
        )

    def add_notice(self, message: str):
        self._ensure_open()
        self.report.notices.append(message)

    def mark_interrupted(self, signal_name: str):
        self._ensure_open()
        self.report.interrupted_by = signal_name

    def finalize(self, disk_after: Optional[DiskUsage] = None) -> RunReport:
        self._ensure_open()
        if self.report.environment is not None and disk_after is not None:
            self.report.environment = dataclasses.replace(self.report.environment, disk_after=disk_after)
        self.report.finished_at = local_now()
        return self.report
