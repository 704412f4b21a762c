"""Tests for per-operation approval and nested prompts"""

import signal

import pytest

from conftest import ScriptedKeys, console_output
from confirmation_gate import ConfirmationGate
from operation_registry import RunConfiguration

INTERACTIVE = RunConfiguration()
AUTO = RunConfiguration(auto_confirm=True)


def test_auto_confirm_never_reads_a_key(ui, registry):
    keys = ScriptedKeys()
    gate = ConfirmationGate(ui, key_reader=keys)
    for descriptor in registry.list():
        assert gate.confirm(descriptor, AUTO)
    assert keys.calls == 0
    assert console_output(ui) == ""


def test_policy_by_operation_id(ui, registry):
    keys = ScriptedKeys()
    gate = ConfirmationGate(ui, key_reader=keys, policy={"a": "Decline"})
    assert not gate.confirm(registry.get("a"), INTERACTIVE)
    assert keys.calls == 0


def test_policy_by_risk(ui, registry):
    keys = ScriptedKeys("n")
    gate = ConfirmationGate(ui, key_reader=keys, policy={"HIGH": "approve", "b": "ask"})
    assert gate.confirm(registry.get("c"), INTERACTIVE)
    assert not gate.confirm(registry.get("b"), INTERACTIVE)
    assert keys.calls == 1


def test_policy_id_wins_over_risk(ui, registry):
    gate = ConfirmationGate(ui, key_reader=ScriptedKeys(), policy={"HIGH": "approve", "c": "decline"})
    assert not gate.confirm(registry.get("c"), INTERACTIVE)


@pytest.mark.parametrize("key, expected", [("", True), ("\r", True), ("y", True), ("Y", True), ("n", False), ("x", False)])
def test_interactive_keys(ui, registry, key, expected):
    gate = ConfirmationGate(ui, key_reader=ScriptedKeys(key))
    assert gate.confirm(registry.get("a"), INTERACTIVE) is expected


def test_interactive_prompt_shows_the_operation(ui, registry):
    gate = ConfirmationGate(ui, key_reader=ScriptedKeys("y"))
    gate.confirm(registry.get("c"), INTERACTIVE)
    output = console_output(ui)
    assert "Operation C" in output
    assert "HIGH" in output
    assert "Proceed? [Y/n]" in output


def test_ask_under_auto_confirm_returns_the_default(ui):
    keys = ScriptedKeys()
    gate = ConfirmationGate(ui, key_reader=keys)
    assert gate.ask("Purge memory?", False, AUTO) is False
    assert gate.ask("Flush caches?", True, AUTO) is True
    assert keys.calls == 0


def test_ask_keys(ui):
    gate = ConfirmationGate(ui, key_reader=ScriptedKeys("y", "n", "", "q"))
    assert gate.ask("One?", False, INTERACTIVE) is True
    assert gate.ask("Two?", True, INTERACTIVE) is False
    assert gate.ask("Three?", True, INTERACTIVE) is True
    assert gate.ask("Four?", False, INTERACTIVE) is False
    assert "Four? [y/N]" in console_output(ui)


def test_ctrl_c_is_forwarded_to_the_sigint_handler(ui, registry):
    received = []
    previous = signal.signal(signal.SIGINT, lambda signum, frame: received.append(signum))
    try:
        gate = ConfirmationGate(ui, key_reader=ScriptedKeys("\x03"))
        assert not gate.confirm(registry.get("a"), INTERACTIVE)
    finally:
        signal.signal(signal.SIGINT, previous)
    assert received == [signal.SIGINT]
