#!/usr/bin/env python3
"""
Operation Registry and Selector

Holds the catalogue of maintenance operations in declaration order and
computes which of them a run executes. The declaration order encodes
execution dependency (network checks run before anything that can sever
connectivity), so selection only ever filters, it never reorders.

The default catalogue is therapeia_operations.toml in the therapeia_data package.
"""

import argparse
from dataclasses import dataclass, field
from enum import Enum
from importlib.resources import files
from pathlib import Path
from typing import Any, Optional, Protocol

import tomllib

OPERATIONS_FILE = files("therapeia_data") / "therapeia_operations.toml"


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class TherapeiaError(Exception):
    """Base class for all Therapeia errors"""


class UnknownOperationError(TherapeiaError):
    def __init__(self, operation_id: str):
        super().__init__(f"Unknown operation: {operation_id}")
        self.operation_id = operation_id


class DuplicateOperationError(TherapeiaError):
    def __init__(self, operation_id: str):
        super().__init__(f"Operation already registered: {operation_id}")
        self.operation_id = operation_id


class CatalogueError(TherapeiaError):
    """Raised when the operations catalogue cannot be parsed"""


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------


class Risk(Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"

    @classmethod
    def parse(cls, value: str) -> "Risk":
        try:
            return cls(value.strip().upper())
        except ValueError:
            raise ValueError(f"invalid risk level '{value}' (choose from LOW, MEDIUM, HIGH)") from None


RISK_WORDING = {
    Risk.LOW: "Safe operation",
    Risk.MEDIUM: "May require system restart",
    Risk.HIGH: "Significant system changes",
}


class StepKind(Enum):
    REMOVE = "remove"
    COMMAND = "command"
    SQLITE = "sqlite"
    PRUNE = "prune"
    CONFIRM = "confirm"
    LARGE_FILES = "large_files"
    DUPLICATES = "duplicates"


@dataclass(frozen=True)
class Step:
    """One declarative sub-step of an operation body.

    Only the fields relevant to ``kind`` are read by the interpreter; the rest
    keep their defaults.
    """

    label: str
    kind: StepKind
    # remove / sqlite / large_files / duplicates
    paths: tuple[str, ...] = ()
    # command
    command: tuple[str, ...] = ()
    requires: Optional[str] = None
    for_each: Optional[str] = None
    expect: Optional[str] = None
    reject: Optional[str] = None
    warn_if_any: Optional[str] = None
    match: Optional[str] = None
    show_output: bool = False
    max_lines: int = 30
    success: Optional[str] = None
    message: Optional[str] = None
    otherwise: tuple["Step", ...] = ()
    retries: int = 0
    timeout: Optional[float] = None
    ignore_exit: bool = False
    # sqlite
    statements: tuple[str, ...] = ("VACUUM", "REINDEX")
    # prune / large_files (exclude also filters remove targets and command output)
    root: Optional[str] = None
    pattern: str = "*"
    exclude: tuple[str, ...] = ()
    older_than_days: Optional[int] = None
    directories: bool = False
    # confirm
    prompt: Optional[str] = None
    default: bool = False
    steps: tuple["Step", ...] = ()
    # large_files / duplicates
    min_size_mb: int = 100
    limit: int = 50
    # shared
    if_exists: Optional[str] = None
    quiet: bool = False
    sudo: bool = False
    required: bool = False
    measure_volume: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Step":
        try:
            kind = StepKind(data["kind"])
            label = data["label"]
        except KeyError as e:
            raise CatalogueError(f"step is missing required key {e}") from None
        except ValueError:
            raise CatalogueError(f"unknown step kind '{data['kind']}'") from None

        exclude = data.get("exclude", ())
        if isinstance(exclude, str):
            exclude = (exclude,)

        return cls(
            label=label,
            kind=kind,
            paths=tuple(data.get("paths", ())),
            command=tuple(data.get("command", ())),
            requires=data.get("requires"),
            for_each=data.get("for_each"),
            expect=data.get("expect"),
            reject=data.get("reject"),
            warn_if_any=data.get("warn_if_any"),
            match=data.get("match"),
            show_output=data.get("show_output", False),
            max_lines=int(data.get("max_lines", 30)),
            success=data.get("success"),
            message=data.get("message"),
            otherwise=tuple(cls.from_dict(s) for s in data.get("otherwise", ())),
            retries=int(data.get("retries", 0)),
            timeout=data.get("timeout"),
            statements=tuple(data.get("statements", ("VACUUM", "REINDEX"))),
            root=data.get("root"),
            pattern=data.get("pattern", "*"),
            exclude=tuple(exclude),
            older_than_days=data.get("older_than_days"),
            directories=data.get("directories", False),
            prompt=data.get("prompt"),
            default=data.get("default", False),
            steps=tuple(cls.from_dict(s) for s in data.get("steps", ())),
            min_size_mb=int(data.get("min_size_mb", 100)),
            limit=int(data.get("limit", 50)),
            if_exists=data.get("if_exists"),
            quiet=data.get("quiet", False),
            ignore_exit=data.get("ignore_exit", False),
            sudo=data.get("sudo", False),
            required=data.get("required", False),
            measure_volume=data.get("measure_volume", False),
        )

    @property
    def needs_privilege(self) -> bool:
        return self.sudo or any(s.needs_privilege for s in self.steps + self.otherwise)


@dataclass(frozen=True)
class OperationDescriptor:
    id: str
    description: str
    risk: Risk
    category: str
    completion_message: str = ""
    steps: tuple[Step, ...] = ()

    @property
    def needs_privilege(self) -> bool:
        return any(s.needs_privilege for s in self.steps)


class Operation(Protocol):
    """Contract for an operation body: run against a context, return its outcome"""

    def execute(self, context: Any) -> Any: ...


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class OperationRegistry:
    """Ordered id -> descriptor map, fixed for the lifetime of the process"""

    def __init__(self):
        self._descriptors: dict[str, OperationDescriptor] = {}
        self._operations: dict[str, Operation] = {}

    def register(self, descriptor: OperationDescriptor, operation: Optional[Operation] = None):
        if descriptor.id in self._descriptors:
            raise DuplicateOperationError(descriptor.id)
        self._descriptors[descriptor.id] = descriptor
        if operation is not None:
            self._operations[descriptor.id] = operation

    def ids(self) -> list[str]:
        return list(self._descriptors)

    # shadows builtin list for any annotation below this point
    def list(self) -> list[OperationDescriptor]:
        return list(self._descriptors.values())

    def get(self, operation_id: str) -> OperationDescriptor:
        try:
            return self._descriptors[operation_id]
        except KeyError:
            raise UnknownOperationError(operation_id) from None

    def operation(self, operation_id: str) -> Optional[Operation]:
        """Return the custom body registered for an id, if any"""
        return self._operations.get(operation_id)

    def __contains__(self, operation_id: object) -> bool:
        return operation_id in self._descriptors

    def __len__(self) -> int:
        return len(self._descriptors)


def load_registry(path: Path = OPERATIONS_FILE) -> OperationRegistry:
    """Load the operation catalogue from a TOML file.

    Operations are registered in file order.
    """
    try:
        with path.open("rb") as f:
            data = tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError) as e:
        raise CatalogueError(f"Cannot read operations catalogue {path}: {e}") from e

    registry = OperationRegistry()
    for entry in data.get("operations", []):
        try:
            descriptor = OperationDescriptor(
                id=entry["id"],
                description=entry["description"],
                risk=Risk.parse(entry["risk"]),
                category=entry.get("category", "general"),
                completion_message=entry.get("completion_message", ""),
                steps=tuple(Step.from_dict(s) for s in entry.get("steps", [])),
            )
        except KeyError as e:
            raise CatalogueError(f"operation entry is missing required key {e}") from None
        except ValueError as e:
            raise CatalogueError(str(e)) from None
        registry.register(descriptor)

    return registry


# ---------------------------------------------------------------------------
# Selection
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RunConfiguration:
    verbose: bool = False
    auto_confirm: bool = False
    single_operation: Optional[str] = None
    risk_filter: Optional[Risk] = None
    skip_set: frozenset[str] = field(default_factory=frozenset)
    color_enabled: bool = True

    @classmethod
    def from_args(cls, args: argparse.Namespace) -> "RunConfiguration":
        return cls(
            verbose=getattr(args, "verbose", False),
            auto_confirm=getattr(args, "yes", False),
            single_operation=getattr(args, "operation", None),
            risk_filter=getattr(args, "only_risk", None),
            skip_set=frozenset(getattr(args, "skip", None) or ()),
            color_enabled=not getattr(args, "no_color", False),
        )


def resolve_selection(registry: OperationRegistry, config: RunConfiguration) -> list[str]:
    """Compute the ordered ids a run executes.

    A single operation wins outright; otherwise the declaration order is
    filtered by risk, then by the skip set.

    Raises:
        UnknownOperationError: If the single operation is not registered
    """
    if config.single_operation is not None:
        return [registry.get(config.single_operation).id]

    selected = registry.list()
    if config.risk_filter is not None:
        selected = [d for d in selected if d.risk is config.risk_filter]
    return [d.id for d in selected if d.id not in config.skip_set]
