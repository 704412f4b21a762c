#!/usr/bin/env python3
"""
Confirmation Gate

Decides whether an operation may run. Three strategies apply in order:
auto-confirm (--yes), a confirmation policy from the config file keyed by
operation id or risk level, and finally an interactive single-keystroke
prompt. The interactive prompt is the only place the run blocks on the user.
"""

import signal
import sys
from typing import Callable, Optional

try:
    import termios
    import tty

    _HAS_TERMIOS = True
except ImportError:
    _HAS_TERMIOS = False

from console_ui import ConsoleUI
from operation_registry import OperationDescriptor, RunConfiguration

APPROVE = "approve"
DECLINE = "decline"

YES_KEYS = ("y", "Y")
NO_KEYS = ("n", "N")
ENTER_KEYS = ("", "\r", "\n")
CTRL_C = "\x03"


def _get_single_key() -> str:
    """Read a single keypress without requiring Enter.

    Falls back to input() if the terminal doesn't support raw mode.
    """
    if not _HAS_TERMIOS or not sys.stdin.isatty():
        return input("> ").strip()[:1]
    try:
        fd = sys.stdin.fileno()
        old_settings = termios.tcgetattr(fd)
        try:
            tty.setraw(fd)
            ch = sys.stdin.read(1)
        finally:
            termios.tcsetattr(fd, termios.TCSADRAIN, old_settings)
        return ch
    except (termios.error, OSError):
        return input("> ").strip()[:1]


class ConfirmationGate:
    """Per-operation approval with auto, policy and interactive strategies"""

    def __init__(
        self,
        ui: ConsoleUI,
        key_reader: Callable[[], str] = _get_single_key,
        policy: Optional[dict[str, str]] = None,
    ):
        self.ui = ui
        self._read_key = key_reader
        self.policy = {k: v.lower() for k, v in (policy or {}).items()}

    def _policy_decision(self, descriptor: OperationDescriptor) -> Optional[bool]:
        decision = self.policy.get(descriptor.id) or self.policy.get(descriptor.risk.value)
        if decision == APPROVE:
            return True
        if decision == DECLINE:
            return False
        return None

    def _read(self) -> str:
        key = self._read_key()
        self.ui.console.print()
        # Raw mode swallows the terminal's SIGINT, so hand Ctrl+C back to the handlers
        if key == CTRL_C:
            signal.raise_signal(signal.SIGINT)
        return key

    def confirm(self, descriptor: OperationDescriptor, config: RunConfiguration) -> bool:
        """Return True if the operation may run.

        Args:
            descriptor: Operation about to run
            config: Run configuration (auto_confirm short-circuits all I/O)

        Returns:
            True to proceed, False to skip
        """
        if config.auto_confirm:
            return True

        decision = self._policy_decision(descriptor)
        if decision is not None:
            return decision

        self.ui.show_operation_prompt(descriptor)
        self.ui.console.print("Proceed? [Y/n] ", end="")
        key = self._read()
        return key in ENTER_KEYS or key in YES_KEYS

    def ask(self, question: str, default: bool, config: RunConfiguration) -> bool:
        """Nested yes/no prompt used inside an operation body"""
        if config.auto_confirm:
            return default

        hint = "[Y/n]" if default else "[y/N]"
        self.ui.console.print(f"{question} {hint} ", end="", markup=False)
        key = self._read()
        if key in YES_KEYS:
            return True
        if key in NO_KEYS:
            return False
        return default
