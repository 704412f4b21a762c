#!/usr/bin/env python3
"""
Safety Supervisor

Guards a maintenance run: the free-space preflight, signal handling, the
sleep inhibitor child process and the sudo keep-alive thread. Used as a
context manager so that cleanup runs exactly once on every exit path.
"""

import logging
import os
import shutil
import signal
import subprocess
import threading
from typing import Callable, Optional

from maintenance_operation import CommandRunner
from operation_registry import TherapeiaError
from run_log import LOGGER_NAME, close_run_log
from therapeia_config import TherapeiaConfig

logger = logging.getLogger(f"{LOGGER_NAME}.supervisor")

HANDLED_SIGNALS = (signal.SIGINT, signal.SIGTERM)


def signal_name(signum: int) -> str:
    try:
        return signal.Signals(signum).name
    except ValueError:
        return f"signal {signum}"


class PreflightError(TherapeiaError):
    """Raised when the system is not fit to start maintenance"""


class RunInterrupted(TherapeiaError):
    """Raised by a second signal to force the run to unwind"""

    def __init__(self, signum: int):
        super().__init__(f"Interrupted by {signal_name(signum)}")
        self.signum = signum

    @property
    def exit_code(self) -> int:
        return 128 + self.signum


# ---------------------------------------------------------------------------
# Background helpers
# ---------------------------------------------------------------------------


class SleepInhibitor:
    """Child process that keeps the system awake while this process lives"""

    def __init__(self, argv_template: list[str], popen: Callable = subprocess.Popen):
        self.argv_template = list(argv_template)
        self._popen = popen
        self._process: Optional[subprocess.Popen] = None

    def start(self) -> bool:
        if not self.argv_template or shutil.which(self.argv_template[0]) is None:
            return False
        argv = [a.replace("{pid}", str(os.getpid())) for a in self.argv_template]
        try:
            self._process = self._popen(argv, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
        except OSError as e:
            logger.debug("Could not start %s: %s", argv[0], e)
            return False
        logger.debug("Started %s (PID: %s)", argv[0], self._process.pid)
        return True

    def stop(self):
        process, self._process = self._process, None
        if process is None or process.poll() is not None:
            return
        logger.debug("Stopping sleep inhibitor (PID: %s)", process.pid)
        process.terminate()
        try:
            process.wait(timeout=5)
        except subprocess.TimeoutExpired:
            process.kill()


class PrivilegeKeepAlive:
    """Acquires a sudo session and refreshes it from a daemon thread"""

    def __init__(self, interval: float = 50, run: Callable = subprocess.run):
        self.interval = interval
        self._run = run
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def acquire(self) -> bool:
        """Prompt for the sudo password once, on the controlling terminal"""
        try:
            return self._run(["sudo", "-v"], check=False).returncode == 0
        except OSError as e:
            logger.debug("sudo unavailable: %s", e)
            return False

    def start(self):
        self._stop.clear()
        self._thread = threading.Thread(target=self._refresh_loop, name="sudo-keepalive", daemon=True)
        self._thread.start()

    def _refresh_loop(self):
        while not self._stop.wait(self.interval):
            try:
                self._run(["sudo", "-n", "true"], check=False, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
            except OSError:
                break

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def stop(self):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=2)
            self._thread = None


# ---------------------------------------------------------------------------
# Supervisor
# ---------------------------------------------------------------------------


class SafetySupervisor:
    """Scoped guard around a maintenance run"""

    def __init__(
        self,
        settings: TherapeiaConfig,
        runner: CommandRunner,
        disk_usage: Callable = shutil.disk_usage,
        volume: str = "/",
        sleep_inhibitor: Optional[SleepInhibitor] = None,
        keepalive: Optional[PrivilegeKeepAlive] = None,
        is_root: Optional[bool] = None,
    ):
        self.settings = settings
        self.runner = runner
        self.disk_usage = disk_usage
        self.volume = volume
        self.sleep_inhibitor = sleep_inhibitor or SleepInhibitor(settings.sleep_inhibitor)
        self.keepalive = keepalive or PrivilegeKeepAlive(settings.keepalive_interval)
        self.is_root = runner.is_root if is_root is None else is_root

        self.cancel_event = threading.Event()
        self.signal_received: Optional[int] = None
        self.notices: list[str] = []
        self._previous_handlers: dict[int, object] = {}
        self._cleaned_up = False

    # -- context manager -----------------------------------------------------

    def __enter__(self) -> "SafetySupervisor":
        for signum in HANDLED_SIGNALS:
            self._previous_handlers[signum] = signal.signal(signum, self._handle_signal)
        return self

    def __exit__(self, exc_type, exc, tb):
        self.cleanup()
        return False

    # -- signal handling -------------------------------------------------------

    def _handle_signal(self, signum, frame):
        if self.cancel_event.is_set():
            raise RunInterrupted(signum)
        self.signal_received = signum
        self.cancel_event.set()
        logger.warning("Shutdown requested... press Ctrl+C again to force quit.")
        self.runner.terminate_active()

    @property
    def interrupted(self) -> bool:
        return self.signal_received is not None

    # -- checks and helpers ----------------------------------------------------

    def preflight(self, min_free_gb: Optional[float] = None) -> float:
        """Verify free space on the primary volume.

        Args:
            min_free_gb: Required free space in GiB (settings.min_free_gb if None)

        Returns:
            Free space in GiB

        Raises:
            PreflightError: If free space is below the threshold or cannot be measured
        """
        threshold = self.settings.min_free_gb if min_free_gb is None else min_free_gb
        logger.info("Checking available disk space...")
        try:
            usage = self.disk_usage(self.volume)
        except OSError as e:
            raise PreflightError(f"Cannot measure free space on {self.volume}: {e}") from e

        free_gb = usage.free / 1024**3
        if free_gb < threshold:
            raise PreflightError(f"Insufficient disk space: {free_gb:.1f}GB available, {threshold:g}GB required")
        logger.info(f"Available disk space: {free_gb:.1f}GB")
        return free_gb

    def _notice(self, message: str):
        self.notices.append(message)
        logger.warning(message)

    def start_sleep_inhibitor(self) -> bool:
        if self.sleep_inhibitor.start():
            logger.info("Sleep prevention active")
            return True
        name = self.settings.sleep_inhibitor[0] if self.settings.sleep_inhibitor else "sleep inhibitor"
        self._notice(f"{name} not available - the system may sleep during maintenance")
        return False

    def start_privilege_keepalive(self, needed: bool) -> bool:
        """Acquire sudo and keep it fresh, if any selected operation needs it"""
        if not needed or self.is_root:
            return False
        logger.info("Some operations require sudo privileges")
        if not self.keepalive.acquire():
            self._notice("sudo credentials were not acquired - privileged steps may fail")
            return False
        self.keepalive.start()
        return True

    def cleanup(self):
        """Stop background helpers, restore signal handlers and flush the log. Runs once."""
        if self._cleaned_up:
            return
        self._cleaned_up = True

        logger.debug("Cleaning up")
        self.sleep_inhibitor.stop()
        self.keepalive.stop()
        for signum, handler in self._previous_handlers.items():
            signal.signal(signum, handler)
        self._previous_handlers.clear()
        close_run_log()
