#!/usr/bin/env python3
"""
Console UI Module using Rich

Provides the console interface for Therapeia: styled messages, the run
header, per-operation confirmation panels, the operation catalogue table,
progress lines and the end-of-run summary.
"""

from typing import Any, Optional

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from auxiliary import format_kilobytes, format_path_for_display
from operation_registry import RISK_WORDING, OperationDescriptor, Risk

RISK_STYLES = {
    Risk.LOW: "green",
    Risk.MEDIUM: "yellow",
    Risk.HIGH: "red",
}


class ConsoleUI:
    """Console UI handler using Rich"""

    def __init__(self, force_terminal: Optional[bool] = None, no_color: bool = False):
        """Initialize console with optional terminal forcing and color suppression"""
        self.console = Console(force_terminal=force_terminal, no_color=no_color, highlight=False)

    # Basic styled output methods
    def print_success(self, message: str):
        """Print success message in green"""
        self.console.print(message, style="green", markup=False)

    def print_error(self, message: str):
        """Print error message in red"""
        self.console.print(message, style="red bold", markup=False)

    def print_warning(self, message: str):
        """Print warning message in yellow"""
        self.console.print(message, style="yellow", markup=False)

    def print_info(self, message: str):
        """Print info message in cyan"""
        self.console.print(message, style="cyan", markup=False)

    def print_debug(self, message: str):
        """Print debug message in magenta"""
        self.console.print(message, style="magenta dim", markup=False)

    def print_plain(self, message: str):
        """Print message in plain white"""
        self.console.print(message, style="white", markup=False)

    def print_header(self, title: str, subtitle: Optional[str] = None):
        """Print a header with optional subtitle"""
        if subtitle:
            header_text = f"[bold]{title}[/bold]\n[dim]{subtitle}[/dim]"
        else:
            header_text = f"[bold]{title}[/bold]"

        panel = Panel(header_text, box=box.ROUNDED, padding=(0, 1))
        self.console.print(panel)

    def show_configuration(self, config: dict[str, Any]):
        """Display configuration in a formatted table"""
        table = Table(show_header=False, box=box.SIMPLE)
        table.add_column("Setting", style="cyan dim", min_width=20, justify="right")
        table.add_column("Value", style="cyan", min_width=30)

        for key, value in config.items():
            if isinstance(value, (list, tuple, set, frozenset)):
                value = ", ".join(str(v) for v in value) or "-"
            table.add_row(key, str(value))

        self.console.print(table)

    # Operation display
    def show_operation_prompt(self, descriptor: OperationDescriptor):
        """Show id, description and risk wording ahead of a confirmation"""
        style = RISK_STYLES[descriptor.risk]
        body = (
            f"[bold]Operation:[/bold] {descriptor.id}\n"
            f"[bold]Description:[/bold] {descriptor.description}\n"
            f"[bold]Risk Level:[/bold] [{style}]{descriptor.risk.value} - {RISK_WORDING[descriptor.risk]}[/{style}]"
        )
        self.console.print()
        self.console.print(Panel(body, box=box.HEAVY, border_style=style, padding=(0, 1)))

    def show_operations(self, descriptors: list[OperationDescriptor]):
        """Show the operation catalogue grouped by risk level"""
        self.console.print(f"[bold cyan]Available Operations ({len(descriptors)} total):[/bold cyan]")

        number = 0
        for risk in Risk:
            group = [d for d in descriptors if d.risk is risk]
            if not group:
                continue

            style = RISK_STYLES[risk]
            table = Table(title=f"{risk.value} RISK Operations", title_style=style, box=box.SIMPLE, title_justify="left")
            table.add_column("#", justify="right", style="dim", min_width=3)
            table.add_column("Operation", style="cyan", min_width=24)
            table.add_column("Category", style="dim", min_width=12)
            table.add_column("Description", min_width=30)
            for descriptor in group:
                number += 1
                table.add_row(str(number), descriptor.id, descriptor.category, descriptor.description)
            self.console.print(table)

    def show_progress_line(self, line: str):
        """Print a rendered progress line"""
        self.console.print(line, style="cyan", markup=False, highlight=False)

    def show_run_summary(self, report, artifact_paths: dict[str, str]):
        """Show final counts and generated files after a run"""
        self.console.print()
        table = Table(title="Maintenance Summary", box=box.ROUNDED, show_header=False)
        table.add_column("Metric", style="cyan", min_width=22)
        table.add_column("Value", justify="right", min_width=10)
        table.add_row("Completed operations", f"[green]{report.completed_count}[/green]/{len(report.selected_ids)}")
        table.add_row("Skipped operations", str(report.skipped_count))
        table.add_row("Failed operations", f"[red]{report.failed_count}[/red]")
        table.add_row("Errors", f"[red]{report.error_count}[/red]")
        table.add_row("Warnings", f"[yellow]{report.warning_count}[/yellow]")
        table.add_row("Approximate space freed", format_kilobytes(report.total_space_freed_kb))
        self.console.print(table)

        self.console.print()
        self.print_info("Files generated:")
        for name, path in artifact_paths.items():
            self.print_plain(f"  {name}: {format_path_for_display(path)}")
