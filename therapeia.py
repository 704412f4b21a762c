#!/usr/bin/env python3
"""
Therapeia — Ancient Greek θεραπεία (care, service, treatment)

A macOS maintenance orchestrator. Runs a catalogue of cleanup, repair and
diagnostic operations in a fixed order, asks before each one, keeps the
machine awake and sudo fresh while it works, and writes a Markdown and an
HTML report of what happened.

Usage:
    therapeia                           # Run everything, confirming each operation
    therapeia --yes                     # Run without prompts
    therapeia --only-risk LOW           # Only low-risk operations
    therapeia --operation dns_flush     # Exactly one operation
    therapeia --skip kext_rebuild       # Skip an operation (repeatable)
    therapeia --list                    # Show the operation catalogue
"""

import argparse
import logging
import shutil
import sys
from pathlib import Path
from typing import Optional

from jinja2 import TemplateError

from confirmation_gate import ConfirmationGate
from console_ui import ConsoleUI
from maintenance_operation import (
    CommandRunner,
    OperationCancelledError,
    OperationContext,
    RunServices,
    StepOperation,
)
from operation_registry import (
    OPERATIONS_FILE,
    OperationDescriptor,
    OperationRegistry,
    Risk,
    RunConfiguration,
    TherapeiaError,
    load_registry,
    resolve_selection,
)
from report_synthesizer import ArtifactPaths, artifact_paths, render, write_artifacts
from run_log import LOGGER_NAME, log_success, setup_run_log
from run_report import (
    DiskUsage,
    ResourceAccountant,
    ResultAggregator,
    RunReport,
    Status,
    capture_environment,
    local_now,
    make_run_stamp,
)
from safety_supervisor import PreflightError, RunInterrupted, SafetySupervisor, signal_name
from therapeia_config import ConfigManager, TherapeiaConfig

__version__ = "1.0.0"

logger = logging.getLogger(LOGGER_NAME)


# ---------------------------------------------------------------------------
# Therapeia
# ---------------------------------------------------------------------------


class Therapeia:
    """Main application class for the Therapeia maintenance orchestrator."""

    def __init__(
        self,
        args: argparse.Namespace,
        registry: Optional[OperationRegistry] = None,
        settings: Optional[TherapeiaConfig] = None,
        ui: Optional[ConsoleUI] = None,
        gate: Optional[ConfirmationGate] = None,
        runner: Optional[CommandRunner] = None,
        supervisor: Optional[SafetySupervisor] = None,
        disk_usage=shutil.disk_usage,
    ):
        self.args = args
        self.run_config = RunConfiguration.from_args(args)
        self.ui = ui or ConsoleUI(no_color=not self.run_config.color_enabled)

        self.settings = settings or ConfigManager(getattr(args, "config", None)).load()
        if getattr(args, "report_dir", None):
            self.settings.report_dir = args.report_dir
        if getattr(args, "min_free_gb", None) is not None:
            self.settings.min_free_gb = args.min_free_gb

        if registry is None:
            catalogue = Path(self.settings.operations_file).expanduser() if self.settings.operations_file else OPERATIONS_FILE
            registry = load_registry(catalogue)
        self.registry = registry

        self.gate = gate or ConfirmationGate(self.ui, policy=self.settings.confirmation_policy)
        self.runner = runner or CommandRunner(default_timeout=self.settings.command_timeout)
        self.disk_usage = disk_usage
        self.supervisor = supervisor or SafetySupervisor(self.settings, self.runner, disk_usage=disk_usage)
        self.accountant = ResourceAccountant()
        self.last_report: Optional[RunReport] = None

    # -- operation execution -------------------------------------------------

    def run_operation(self, descriptor: OperationDescriptor, services: RunServices, aggregator: ResultAggregator):
        """Run one operation body and record its outcome; failures never escape"""
        context = OperationContext(descriptor, services)
        body = self.registry.operation(descriptor.id) or StepOperation(descriptor)
        try:
            outcome = body.execute(context)
        except OperationCancelledError:
            outcome = context.outcome(Status.FAILED, "interrupted")
        except RunInterrupted:
            aggregator.record_outcome(context.outcome(Status.FAILED, "interrupted"))
            raise
        except Exception as e:
            logger.debug("%s raised", descriptor.id, exc_info=True)
            outcome = context.outcome(Status.FAILED, f"{descriptor.id} failed: {str(e) or type(e).__name__}")
        aggregator.record_outcome(outcome)

    def orchestrate(self, selection: list[str], services: RunServices, aggregator: ResultAggregator):
        """Gate and run the selected operations in order until done or cancelled"""
        for operation_id in selection:
            if services.cancel_event.is_set():
                break
            descriptor = self.registry.get(operation_id)

            if not self.gate.confirm(descriptor, self.run_config):
                if services.cancel_event.is_set():
                    break
                logger.info(f"Skipping {operation_id}")
                aggregator.record_skip(operation_id, "user declined")
                continue
            if services.cancel_event.is_set():
                break

            self.run_operation(descriptor, services, aggregator)

    # -- reporting -----------------------------------------------------------

    def _measure_disk(self) -> Optional[DiskUsage]:
        try:
            return DiskUsage.measure(self.supervisor.volume, self.disk_usage)
        except OSError:
            return None

    def _write_report(self, report: RunReport, paths: ArtifactPaths) -> bool:
        logger.info("Generating maintenance report...")
        try:
            write_artifacts(render(report, paths), paths)
        except (OSError, TemplateError) as e:
            logger.error(f"Could not write report: {e}")
            return False
        log_success(logger, f"Report generated: {paths.markdown}")
        log_success(logger, f"HTML report generated: {paths.html}")
        return True

    def _open_report(self, paths: ArtifactPaths):
        if shutil.which("open") is None:
            logger.info(f"Open the report manually: {paths.html}")
            return
        self.runner.run(["open", str(paths.html)])

    def _show_run_plan(self, selection: list[str], paths: ArtifactPaths):
        self.ui.show_configuration(
            {
                "Operations selected": f"{len(selection)} of {len(self.registry)}",
                "Risk filter": self.run_config.risk_filter.value if self.run_config.risk_filter else "all",
                "Skipped": sorted(self.run_config.skip_set),
                "Auto confirm": "yes" if self.run_config.auto_confirm else "no",
                "Log file": paths.log,
                "Report": paths.markdown,
            }
        )
        self.ui.print_warning("NO BACKUPS WILL BE CREATED - ensure you have recent backups!")
        self.ui.print_warning("A system restart is recommended after completion.")

    # -- main entry point ----------------------------------------------------

    def run(self) -> int:
        if getattr(self.args, "list", False):
            self.ui.show_operations(self.registry.list())
            return 0

        selection = resolve_selection(self.registry, self.run_config)
        started = local_now()
        stamp = make_run_stamp(started)
        paths = artifact_paths(self.settings.report_dir, self.settings.log_dir, stamp)
        setup_run_log(paths.log, self.ui, self.run_config.verbose)

        report = RunReport(
            started_at=started,
            run_stamp=stamp,
            version=__version__,
            selected_ids=tuple(selection),
            catalogue={operation_id: self.registry.get(operation_id) for operation_id in selection},
        )
        aggregator = ResultAggregator(report, self.registry)
        self.last_report = report

        with self.supervisor:
            self.ui.print_header("Therapeia - macOS Maintenance", f"Version {__version__}")
            logger.info(f"Starting Therapeia v{__version__}")
            for unknown in sorted(self.run_config.skip_set.difference(self.registry.ids())):
                logger.warning(f"Ignoring unknown operation in --skip: {unknown}")

            logger.info("Performing pre-flight checks...")
            try:
                self.supervisor.preflight(self.settings.min_free_gb)
            except PreflightError as e:
                logger.error(f"Pre-flight check failed: {e}")
                return 1

            report.environment = capture_environment(self.supervisor.volume, self.disk_usage)
            self.supervisor.start_sleep_inhibitor()
            self.supervisor.start_privilege_keepalive(
                any(self.registry.get(operation_id).needs_privilege for operation_id in selection)
            )
            for notice in self.supervisor.notices:
                aggregator.add_notice(notice)

            self._show_run_plan(selection, paths)
            if not selection:
                logger.warning("No operations selected")

            services = RunServices(
                runner=self.runner,
                accountant=self.accountant,
                gate=self.gate,
                run_config=self.run_config,
                settings=self.settings,
                cancel_event=self.supervisor.cancel_event,
                progress_callback=self.ui.show_progress_line,
                disk_usage=self.disk_usage,
                volume=self.supervisor.volume,
            )

            exit_code = 0
            try:
                self.orchestrate(selection, services, aggregator)
            except RunInterrupted as e:
                self.supervisor.signal_received = self.supervisor.signal_received or e.signum

            if self.supervisor.interrupted:
                aggregator.mark_interrupted(signal_name(self.supervisor.signal_received))
                logger.warning("Maintenance interrupted - writing partial report")
                exit_code = 128 + self.supervisor.signal_received

            aggregator.finalize(self._measure_disk())
            if not self._write_report(report, paths) and exit_code == 0:
                exit_code = 1

            self.ui.show_run_summary(report, paths.as_dict())
            if not self.supervisor.interrupted:
                self.ui.print_warning("RESTART YOUR MAC to complete all system changes!")
                if getattr(self.args, "open_report", False):
                    self._open_report(paths)

        return exit_code


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


def _risk_level(value: str) -> Risk:
    try:
        return Risk.parse(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e)) from None


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="therapeia",
        description="Therapeia — macOS maintenance orchestrator",
    )
    parser.add_argument("-y", "--yes", action="store_true", help="Auto-confirm all operations")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug output")
    parser.add_argument("-o", "--operation", metavar="ID", help="Run exactly one operation")
    parser.add_argument("--only-risk", type=_risk_level, metavar="LEVEL", help="Only run LOW, MEDIUM or HIGH operations")
    parser.add_argument("--skip", action="append", default=[], metavar="ID", help="Skip an operation (repeatable)")
    parser.add_argument("-l", "--list", action="store_true", help="List available operations and exit")
    parser.add_argument("--no-color", action="store_true", help="Disable colored output")
    parser.add_argument("--config", type=Path, default=None, help="Alternate configuration file")
    parser.add_argument("--report-dir", default=None, help="Directory for the generated reports")
    parser.add_argument("--min-free-gb", type=float, default=None, help="Minimum free disk space to start (GB)")
    parser.add_argument("--open-report", action="store_true", help="Open the HTML report when finished")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def main():
    parser = build_parser()
    args = parser.parse_args()

    try:
        app = Therapeia(args)
    except TherapeiaError as e:
        ConsoleUI(no_color=args.no_color).print_error(str(e))
        sys.exit(1)

    if args.operation and args.operation not in app.registry:
        parser.error(f"unknown operation '{args.operation}' (use --list to see available operations)")

    try:
        sys.exit(app.run())
    except RunInterrupted as e:
        sys.exit(e.exit_code)
    except TherapeiaError as e:
        app.ui.print_error(str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
