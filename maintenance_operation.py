#!/usr/bin/env python3
"""
Maintenance Operation Runtime

Everything an operation body needs while it runs:

- CommandRunner: external commands with optional sudo, a timeout and a handle
  on the active child so a signal can terminate it
- OperationContext: leveled logging that feeds the outcome, nested prompts,
  measure-before/after space accounting, progress and cancellation checks
- StepOperation: interpreter for the declarative steps of the catalogue

Operations never write to the run report. They return an OperationOutcome
and the orchestrator records it.
"""

import fnmatch
import glob
import heapq
import logging
import os
import re
import shutil
import sqlite3
import stat
import subprocess
import threading
import time
from contextlib import closing
from dataclasses import dataclass, field
from typing import Callable, Optional

import xxhash

from auxiliary import expand_targets, format_bytes, format_kilobytes, format_path_for_display
from confirmation_gate import ConfirmationGate
from operation_registry import OperationDescriptor, RunConfiguration, Step, StepKind, TherapeiaError
from progress_tracker import ProgressTracker
from run_log import LOGGER_NAME, log_success
from run_report import DiskUsage, OperationOutcome, ResourceAccountant, Status, local_now
from therapeia_config import TherapeiaConfig

logger = logging.getLogger(f"{LOGGER_NAME}.operation")

PATH_PREFIXES = ("/", "~", "$")
HASH_CHUNK_SIZE = 65536


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class StepFailedError(TherapeiaError):
    """Raised when a step marked required fails"""


class OperationTimeoutError(TherapeiaError):
    """Raised when an operation runs past its deadline"""


class OperationCancelledError(TherapeiaError):
    """Raised at the next checkpoint after a cancellation request"""


# ---------------------------------------------------------------------------
# Command runner
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CommandResult:
    argv: tuple[str, ...]
    returncode: int
    stdout: str = ""
    stderr: str = ""
    duration: float = 0.0
    timed_out: bool = False
    missing: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out and not self.missing

    @property
    def output(self) -> str:
        if self.stdout and self.stderr:
            return f"{self.stdout.rstrip()}\n{self.stderr}"
        return self.stdout or self.stderr

    def describe(self) -> str:
        if self.missing:
            return f"{self.argv[0]} not found"
        if self.timed_out:
            return f"timed out after {self.duration:.0f}s"
        return f"exit code {self.returncode}"


class CommandRunner:
    """Runs external commands one at a time"""

    SUDO_PREFIX = ("sudo", "-n")

    def __init__(self, default_timeout: float = 600, is_root: Optional[bool] = None):
        self.default_timeout = default_timeout
        if is_root is None:
            is_root = hasattr(os, "geteuid") and os.geteuid() == 0
        self.is_root = is_root
        self._active: Optional[subprocess.Popen] = None

    def run(self, argv, sudo: bool = False, timeout: Optional[float] = None) -> CommandResult:
        """Run a command to completion and capture its output.

        Args:
            argv: Command and arguments (no shell involved)
            sudo: Prefix with non-interactive sudo unless already root
            timeout: Seconds before the child is killed (default_timeout if None)

        Returns:
            CommandResult; a missing executable is reported, not raised
        """
        argv = tuple(argv)
        if sudo and not self.is_root:
            argv = self.SUDO_PREFIX + argv
        if timeout is None:
            timeout = self.default_timeout

        logger.debug("Running: %s", " ".join(argv))
        started = time.monotonic()
        try:
            process = subprocess.Popen(
                argv,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                errors="replace",
            )
        except FileNotFoundError:
            return CommandResult(argv=argv, returncode=127, missing=True)
        except OSError as e:
            return CommandResult(argv=argv, returncode=126, stderr=str(e))

        self._active = process
        timed_out = False
        try:
            stdout, stderr = process.communicate(timeout=timeout)
        except subprocess.TimeoutExpired:
            process.kill()
            stdout, stderr = process.communicate()
            timed_out = True
        finally:
            self._active = None

        return CommandResult(
            argv=argv,
            returncode=process.returncode,
            stdout=stdout or "",
            stderr=stderr or "",
            duration=time.monotonic() - started,
            timed_out=timed_out,
        )

    def terminate_active(self) -> bool:
        """Terminate the running child, if any. Safe to call from a signal handler."""
        process = self._active
        if process is None or process.poll() is not None:
            return False
        process.terminate()
        return True


def expand_argv(command, target: Optional[str] = None) -> Optional[list[str]]:
    """Expand a catalogue command into argv.

    Arguments that start with /, ~ or $ are path arguments: ~ and environment
    variables are expanded and wildcards are globbed. Other arguments get
    {uid}, {path} and {name} substituted.

    Returns:
        The argv, or None if a wildcard path argument matched nothing
    """
    uid = str(os.getuid()) if hasattr(os, "getuid") else ""
    argv = []
    for arg in command:
        if arg.startswith(PATH_PREFIXES):
            expanded = os.path.expandvars(os.path.expanduser(arg))
            if glob.has_magic(expanded):
                matches = sorted(glob.glob(expanded))
                if not matches:
                    return None
                argv.extend(matches)
            else:
                argv.append(expanded)
            continue

        arg = arg.replace("{uid}", uid)
        if target is not None:
            arg = arg.replace("{path}", target).replace("{name}", os.path.basename(target))
        argv.append(arg)
    return argv


# ---------------------------------------------------------------------------
# Filesystem helpers
# ---------------------------------------------------------------------------


def measure_kb(path: str) -> int:
    """Size of a file or directory tree in kilobytes (rounded up), 0 if absent"""
    try:
        st = os.lstat(path)
    except OSError:
        return 0

    if not stat.S_ISDIR(st.st_mode):
        return (st.st_size + 1023) // 1024

    total = 0
    for dirpath, _dirnames, filenames in os.walk(path, followlinks=False):
        for f in filenames:
            try:
                total += os.lstat(os.path.join(dirpath, f)).st_size
            except OSError:
                pass
    return (total + 1023) // 1024


def find_matches(
    root: str,
    pattern: str,
    exclude: tuple[str, ...] = (),
    directories: bool = False,
    older_than_days: Optional[int] = None,
) -> list[str]:
    """Walk root and collect files (or directories) whose name matches pattern

    Args:
        root: Directory to walk
        pattern: fnmatch pattern for the entry name
        exclude: fnmatch patterns that veto a match
        directories: Match directories instead of files; matched directories are not descended
        older_than_days: Only entries last modified more than this many days ago

    Returns:
        Matching paths in walk order
    """
    cutoff = time.time() - older_than_days * 86400 if older_than_days is not None else None
    matches = []
    for dirpath, dirnames, filenames in os.walk(root, followlinks=False):
        names = dirnames if directories else filenames
        matched = set()
        for name in names:
            if not fnmatch.fnmatch(name, pattern):
                continue
            if any(fnmatch.fnmatch(name, x) for x in exclude):
                continue
            path = os.path.join(dirpath, name)
            if cutoff is not None:
                try:
                    if os.lstat(path).st_mtime >= cutoff:
                        continue
                except OSError:
                    continue
            matched.add(name)
            matches.append(path)
        if directories:
            dirnames[:] = [d for d in dirnames if d not in matched]
    return matches


def find_large_files(
    roots: list[str],
    min_size: int,
    limit: int,
    exclude: tuple[str, ...] = (),
    checkpoint: Callable[[], None] = lambda: None,
) -> list[tuple[int, str]]:
    """Return the largest regular files at or above min_size, biggest first"""
    heap: list[tuple[int, str]] = []
    for root in roots:
        for dirpath, dirnames, filenames in os.walk(root, followlinks=False):
            checkpoint()
            dirnames[:] = [
                d for d in dirnames if not any(fnmatch.fnmatch(os.path.join(dirpath, d) + "/", x) for x in exclude)
            ]
            for name in filenames:
                path = os.path.join(dirpath, name)
                try:
                    st = os.lstat(path)
                except OSError:
                    continue
                if not stat.S_ISREG(st.st_mode) or st.st_size < min_size:
                    continue
                if any(fnmatch.fnmatch(path, x) for x in exclude):
                    continue
                if len(heap) < limit:
                    heapq.heappush(heap, (st.st_size, path))
                elif st.st_size > heap[0][0]:
                    heapq.heapreplace(heap, (st.st_size, path))
    return sorted(heap, reverse=True)


def file_digest(path: str, chunk_size: int = HASH_CHUNK_SIZE) -> str:
    """Streaming xxh64 digest of a file's contents"""
    hash_obj = xxhash.xxh64()
    with open(path, "rb") as f:
        while chunk := f.read(chunk_size):
            hash_obj.update(chunk)
    return hash_obj.hexdigest()


def find_duplicates(
    roots: list[str], min_size: int, checkpoint: Callable[[], None] = lambda: None
) -> list[list[str]]:
    """Group files with identical content

    Files are grouped by size first; only sizes shared by two or more files
    are hashed.

    Returns:
        Groups of two or more identical files, each sorted
    """
    size_groups: dict[int, list[str]] = {}
    for root in roots:
        for dirpath, _dirnames, filenames in os.walk(root, followlinks=False):
            checkpoint()
            for name in filenames:
                path = os.path.join(dirpath, name)
                try:
                    st = os.lstat(path)
                except OSError:
                    continue  # Skip files we can't stat
                if stat.S_ISREG(st.st_mode) and st.st_size >= min_size:
                    size_groups.setdefault(st.st_size, []).append(path)

    hash_groups: dict[tuple[int, str], list[str]] = {}
    for size, paths in size_groups.items():
        if len(paths) < 2:
            continue
        for path in paths:
            checkpoint()
            try:
                digest = file_digest(path)
            except OSError:
                continue  # Skip files we can't read
            hash_groups.setdefault((size, digest), []).append(path)

    return sorted(sorted(paths) for paths in hash_groups.values() if len(paths) > 1)


# ---------------------------------------------------------------------------
# Operation context
# ---------------------------------------------------------------------------


@dataclass
class RunServices:
    """Collaborators shared by every operation of one run"""

    runner: CommandRunner
    accountant: ResourceAccountant
    gate: ConfirmationGate
    run_config: RunConfiguration
    settings: TherapeiaConfig
    cancel_event: threading.Event = field(default_factory=threading.Event)
    progress_callback: Optional[Callable[[str], None]] = None
    clock: Callable[[], float] = time.monotonic
    disk_usage: Callable = shutil.disk_usage
    volume: str = "/"


class OperationContext:
    """Capabilities handed to one operation body"""

    def __init__(self, descriptor: OperationDescriptor, services: RunServices, log: logging.Logger = logger):
        self.descriptor = descriptor
        self.services = services
        self.runner = services.runner
        self.accountant = services.accountant
        self.log = log
        self.progress = ProgressTracker(clock=services.clock)
        self.warnings: list[str] = []
        self.errors: list[str] = []
        self.started_at = local_now()
        self._freed_at_start = services.accountant.total_kb
        self._deadline = services.clock() + services.settings.operation_timeout

    # -- logging ---------------------------------------------------------------

    def debug(self, message: str):
        self.log.debug(message)

    def info(self, message: str):
        self.log.info(message)

    def success(self, message: str):
        log_success(self.log, message)

    def warn(self, message: str):
        """Record a warning on the outcome; the operation continues"""
        self.warnings.append(message)
        self.log.warning(message)

    def error(self, message: str):
        self.errors.append(message)
        self.log.error(message)

    # -- control ---------------------------------------------------------------

    def ask(self, question: str, default: bool = False) -> bool:
        return self.services.gate.ask(question, default, self.services.run_config)

    def check_cancelled(self):
        """Raise if the run was cancelled or this operation is past its deadline"""
        if self.services.cancel_event.is_set():
            raise OperationCancelledError("interrupted")
        if self.services.clock() > self._deadline:
            raise OperationTimeoutError(
                f"timed out after {self.services.settings.operation_timeout:.0f}s operation deadline"
            )

    def remaining_time(self) -> float:
        return max(0.0, self._deadline - self.services.clock())

    def advance(self, label: str):
        snapshot = self.progress.advance(label)
        if self.services.progress_callback:
            self.services.progress_callback(self.progress.render(snapshot))

    # -- commands --------------------------------------------------------------

    def run_command(self, argv, sudo: bool = False, timeout: Optional[float] = None, retries: int = 0) -> CommandResult:
        """Run a command with bounded retries; its output is logged at DEBUG"""
        limit = timeout if timeout is not None else self.services.settings.command_timeout
        attempts = max(0, retries) + 1
        result = None
        for attempt in range(1, attempts + 1):
            self.check_cancelled()
            result = self.runner.run(argv, sudo=sudo, timeout=min(limit, self.remaining_time()))
            for line in result.output.splitlines():
                self.debug(f"  {line}")
            self.check_cancelled()
            if result.ok or result.missing:
                break
            if attempt < attempts:
                self.debug(f"Retrying {argv[0]} ({attempt}/{retries}): {result.describe()}")
        return result

    # -- space accounting --------------------------------------------------------

    def measure_kb(self, path: str) -> int:
        return measure_kb(path)

    def used_kb(self) -> Optional[int]:
        try:
            return DiskUsage.measure(self.services.volume, self.services.disk_usage).used_kb
        except OSError:
            return None

    def remove_target(self, path: str, sudo: bool = False) -> bool:
        """Delete a file or tree and account the space it held.

        Args:
            path: Target to delete
            sudo: Delete through sudo rm -rf instead of in-process

        Returns:
            True if the target no longer exists
        """
        display = format_path_for_display(path)
        before = measure_kb(path)
        try:
            if sudo and not self.runner.is_root:
                result = self.run_command(("rm", "-rf", path), sudo=True)
                if not result.ok:
                    self.debug(f"Failed to remove {display}: {result.describe()}")
            elif os.path.isdir(path) and not os.path.islink(path):
                shutil.rmtree(path)
            else:
                os.unlink(path)
        except OSError as e:
            self.debug(f"Failed to remove {display}: {e}")

        gone = not os.path.lexists(path)
        self.accountant.record_freed(before, 0 if gone else measure_kb(path))
        if gone:
            self.debug(f"Removed: {display} ({format_kilobytes(before)})")
        return gone

    @property
    def space_freed_kb(self) -> int:
        return self.accountant.total_kb - self._freed_at_start

    def outcome(self, status: Status, error: Optional[str] = None) -> OperationOutcome:
        if error:
            self.error(error)
        return OperationOutcome(
            operation_id=self.descriptor.id,
            status=status,
            started_at=self.started_at,
            finished_at=local_now(),
            space_freed_kb=self.space_freed_kb,
            warnings=tuple(self.warnings),
            errors=tuple(self.errors),
        )


# ---------------------------------------------------------------------------
# Step interpreter
# ---------------------------------------------------------------------------


class StepOperation:
    """Operation body declared as a list of catalogue steps"""

    def __init__(self, descriptor: OperationDescriptor):
        self.descriptor = descriptor
        self._handlers = {
            StepKind.REMOVE: self._remove,
            StepKind.COMMAND: self._command,
            StepKind.SQLITE: self._sqlite,
            StepKind.PRUNE: self._prune,
            StepKind.CONFIRM: self._confirm,
            StepKind.LARGE_FILES: self._large_files,
            StepKind.DUPLICATES: self._duplicates,
        }

    def execute(self, context: OperationContext) -> OperationOutcome:
        context.info(f"Starting {self.descriptor.id}...")
        context.progress.begin(len(self.descriptor.steps))
        for step in self.descriptor.steps:
            context.check_cancelled()
            self.run_step(context, step)
            context.advance(step.label)

        context.success(self.descriptor.completion_message or f"{self.descriptor.id} completed")
        return context.outcome(Status.COMPLETED)

    def run_step(self, context: OperationContext, step: Step):
        if step.if_exists and not expand_targets(step.if_exists):
            context.debug(f"Skipping '{step.label}': {step.if_exists} not found")
            return

        handler = self._handlers[step.kind]
        if not step.measure_volume:
            handler(context, step)
            return

        used_before = context.used_kb()
        try:
            handler(context, step)
        finally:
            used_after = context.used_kb()
            if used_before is not None and used_after is not None:
                freed = context.accountant.record_volume_delta(used_before, used_after)
                if freed:
                    context.info(f"Freed {format_kilobytes(freed)} ({step.label})")

    def _nested(self, context: OperationContext, steps: tuple[Step, ...]):
        for nested in steps:
            context.check_cancelled()
            self.run_step(context, nested)

    def _fail(self, context: OperationContext, step: Step, message: str):
        """Stop the operation for required steps, record a warning otherwise"""
        if step.required:
            raise StepFailedError(f"{step.label}: {message}")
        if step.quiet:
            context.debug(message)
            return
        context.warn(message)

    # -- remove / prune ----------------------------------------------------------

    def _remove(self, context: OperationContext, step: Step):
        failed = 0
        for pattern in step.paths:
            for target in expand_targets(pattern):
                context.check_cancelled()
                if any(fnmatch.fnmatch(os.path.basename(target), x) for x in step.exclude):
                    continue
                if not context.remove_target(target, sudo=step.sudo):
                    failed += 1
        if failed:
            self._fail(context, step, step.message or f"{step.label}: could not remove {failed} item(s)")

    def _prune(self, context: OperationContext, step: Step):
        root = os.path.expandvars(os.path.expanduser(step.root or ""))
        if not os.path.isdir(root):
            context.debug(f"Skipping '{step.label}': {format_path_for_display(root)} is not a directory")
            return

        matches = find_matches(root, step.pattern, step.exclude, step.directories, step.older_than_days)
        failed = 0
        for path in matches:
            context.check_cancelled()
            if not context.remove_target(path, sudo=step.sudo):
                failed += 1

        context.debug(f"Pruned {len(matches) - failed} of {len(matches)} item(s) under {format_path_for_display(root)}")
        if failed:
            self._fail(context, step, step.message or f"{step.label}: could not remove {failed} item(s)")

    # -- command -----------------------------------------------------------------

    def _command(self, context: OperationContext, step: Step):
        if step.requires and shutil.which(step.requires) is None:
            context.info(f"{step.requires} not installed, skipping: {step.label}")
            return

        if step.for_each:
            self._command_each(context, step)
            return

        argv = expand_argv(step.command)
        if argv is None:
            # A wildcard path argument matched nothing: treat as empty output
            result = CommandResult(argv=tuple(step.command), returncode=0)
        else:
            result = context.run_command(argv, sudo=step.sudo, timeout=step.timeout, retries=step.retries)

        exited = not (result.missing or result.timed_out)
        if not result.ok and not (step.ignore_exit and exited):
            self._fail(context, step, step.message or f"{step.label} failed ({result.describe()})")
            self._nested(context, step.otherwise)
            return

        self._check_output(context, step, result.output)

    def _command_each(self, context: OperationContext, step: Step):
        failures = 0
        for target in expand_targets(step.for_each):
            context.check_cancelled()
            argv = expand_argv(step.command, target)
            if argv is None:
                continue
            result = context.run_command(argv, sudo=step.sudo, timeout=step.timeout, retries=step.retries)
            if not result.ok:
                failures += 1
                message = (step.message or "{name}: " + result.describe()).replace("{name}", os.path.basename(target))
                self._fail(context, step, message.replace("{path}", format_path_for_display(target)))

        if not failures and step.success:
            context.success(step.success)

    def _check_output(self, context: OperationContext, step: Step, output: str):
        lines = [line for line in output.splitlines() if line.strip()]
        if step.match:
            pattern = re.compile(step.match, re.IGNORECASE)
            lines = [line for line in lines if pattern.search(line)]
        if step.exclude:
            lines = [line for line in lines if not any(fnmatch.fnmatch(line, x) for x in step.exclude)]

        if step.show_output:
            for line in lines[: step.max_lines]:
                context.info(f"  {line}")

        passed = True
        if step.expect is not None and step.expect not in output:
            passed = False
        if step.reject is not None and step.reject in output:
            passed = False
        if not passed:
            self._fail(context, step, step.message or f"{step.label}: unexpected output")
            self._nested(context, step.otherwise)
            return

        if step.warn_if_any is not None and lines:
            context.warn(step.warn_if_any.replace("{count}", str(len(lines))))
            return

        if step.success:
            context.success(step.success)

    # -- sqlite ------------------------------------------------------------------

    def _sqlite(self, context: OperationContext, step: Step):
        databases = [p for pattern in step.paths for p in expand_targets(pattern) if os.path.isfile(p)]
        failed = 0
        for db_path in databases:
            context.check_cancelled()
            display = format_path_for_display(db_path)
            try:
                with closing(sqlite3.connect(db_path, timeout=5, isolation_level=None)) as conn:
                    for statement in step.statements:
                        conn.execute(statement)
                context.debug(f"Optimized {display}")
            except sqlite3.Error as e:
                failed += 1
                context.debug(f"Could not optimize {display}: {e}")

        if failed:
            self._fail(context, step, step.message or f"{step.label}: {failed} of {len(databases)} database(s) failed")
        elif databases and step.success:
            context.success(step.success)

    # -- nested prompt -------------------------------------------------------------

    def _confirm(self, context: OperationContext, step: Step):
        if not context.ask(step.prompt or step.label, step.default):
            context.info(f"{step.label} skipped")
            return
        self._nested(context, step.steps)
        if step.success:
            context.success(step.success)

    # -- read-only reports -----------------------------------------------------------

    def _roots(self, step: Step) -> list[str]:
        roots = [os.path.expandvars(os.path.expanduser(p)) for p in step.paths or ("/",)]
        return [r for r in roots if os.path.isdir(r)]

    def _large_files(self, context: OperationContext, step: Step):
        found = find_large_files(
            self._roots(step),
            step.min_size_mb * 1024 * 1024,
            step.limit,
            step.exclude,
            checkpoint=context.check_cancelled,
        )
        if not found:
            context.info(f"No files larger than {step.min_size_mb}MB found")
            return

        context.info(f"Top {len(found)} largest files (over {step.min_size_mb}MB):")
        for size, path in found:
            context.info(f"  {format_bytes(size):>10}  {format_path_for_display(path)}")
        context.info("Review and delete large unnecessary files manually")

    def _duplicates(self, context: OperationContext, step: Step):
        groups = find_duplicates(self._roots(step), step.min_size_mb * 1024 * 1024, checkpoint=context.check_cancelled)
        duplicates = sum(len(group) - 1 for group in groups)
        if not duplicates:
            context.success("No duplicate files found")
            return

        context.warn(f"Found {duplicates} potential duplicate files")
        for group in groups[: step.limit]:
            context.info("  " + " = ".join(format_path_for_display(p) for p in group))
        context.info("Review and manually delete duplicates if needed")
