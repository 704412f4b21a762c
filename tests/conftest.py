"""Shared fixtures for the Therapeia test suite.

The modules live flat at the repository root, so the root is put on sys.path
for runs that do not install the project first.
"""

import io
import logging
import sys
from collections import namedtuple
from pathlib import Path

import pytest
from rich.console import Console

_REPO_ROOT = Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))

from confirmation_gate import ConfirmationGate  # noqa: E402
from console_ui import ConsoleUI  # noqa: E402
from maintenance_operation import CommandResult, OperationContext, RunServices  # noqa: E402
from operation_registry import OperationDescriptor, OperationRegistry, Risk, RunConfiguration  # noqa: E402
from run_log import LOGGER_NAME, close_run_log  # noqa: E402
from run_report import ResourceAccountant  # noqa: E402
from therapeia_config import TherapeiaConfig  # noqa: E402

GiB = 1024**3

DiskUsageTuple = namedtuple("DiskUsageTuple", "total used free")


class FakeClock:
    """Monotonic clock that only moves when told to"""

    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class ScriptedKeys:
    """Key reader returning scripted keystrokes in order"""

    def __init__(self, *keys: str):
        self.keys = list(keys)
        self.calls = 0

    def __call__(self) -> str:
        self.calls += 1
        if not self.keys:
            raise AssertionError("unexpected prompt")
        return self.keys.pop(0)


class FakeDisk:
    """Stand-in for shutil.disk_usage with adjustable numbers"""

    def __init__(self, total: int = 500 * GiB, free: int = 100 * GiB):
        self.total = total
        self.free = free
        self.calls = 0

    def __call__(self, path):
        self.calls += 1
        return DiskUsageTuple(self.total, self.total - self.free, self.free)


class FakeRunner:
    """CommandRunner double: records argv and replays scripted results"""

    def __init__(self, responses=None, is_root: bool = True):
        self.responses = dict(responses or {})
        self.is_root = is_root
        self.calls: list[tuple[tuple[str, ...], bool]] = []
        self.terminated = 0

    def run(self, argv, sudo: bool = False, timeout=None) -> CommandResult:
        argv = tuple(argv)
        self.calls.append((argv, sudo))
        response = self.responses.get(argv, self.responses.get(argv[0]))
        if callable(response):
            return response(argv)
        if response is None:
            return CommandResult(argv=argv, returncode=0)
        returncode, stdout = response
        return CommandResult(argv=argv, returncode=returncode, stdout=stdout)

    def terminate_active(self) -> bool:
        self.terminated += 1
        return False

    def commands(self) -> list[tuple[str, ...]]:
        return [argv for argv, _sudo in self.calls]


def console_output(ui: ConsoleUI) -> str:
    return ui.console.file.getvalue()


@pytest.fixture(autouse=True)
def _detach_run_log():
    yield
    close_run_log()
    logging.getLogger(LOGGER_NAME).propagate = True


@pytest.fixture
def ui():
    console_ui = ConsoleUI(no_color=True)
    console_ui.console = Console(file=io.StringIO(), force_terminal=False, no_color=True, width=120)
    return console_ui


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_disk():
    return FakeDisk()


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def settings(tmp_path):
    return TherapeiaConfig(
        report_dir=str(tmp_path / "reports"),
        log_dir=str(tmp_path / "logs"),
        sleep_inhibitor=[],
        min_free_gb=5,
    )


@pytest.fixture
def registry():
    """Three-operation catalogue: a LOW, b MEDIUM, c HIGH"""
    reg = OperationRegistry()
    reg.register(OperationDescriptor("a", "Operation A", Risk.LOW, "cleanup", "A done"))
    reg.register(OperationDescriptor("b", "Operation B", Risk.MEDIUM, "database", "B done"))
    reg.register(OperationDescriptor("c", "Operation C", Risk.HIGH, "network", "C done"))
    return reg


@pytest.fixture
def make_services(ui, runner, settings, clock, fake_disk):
    def _make(run_config=None, keys=(), **overrides):
        options = dict(
            runner=runner,
            accountant=ResourceAccountant(),
            gate=ConfirmationGate(ui, key_reader=ScriptedKeys(*keys)),
            run_config=run_config or RunConfiguration(auto_confirm=True),
            settings=settings,
            clock=clock,
            disk_usage=fake_disk,
        )
        options.update(overrides)
        return RunServices(**options)

    return _make


@pytest.fixture
def make_context(make_services):
    def _make(descriptor, services=None):
        return OperationContext(descriptor, services or make_services())

    return _make
