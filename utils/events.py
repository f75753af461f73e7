from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from rich.console import Console
from rich.table import Table


class Phase(str, Enum):
    INIT = "init"
    CHECK_BALANCE = "check_balance"
    ENSURE_APPROVAL = "ensure_approval"
    SIGN_PERMIT = "sign_permit"
    QUOTE = "quote"
    EXECUTE = "execute"
    DONE = "done"


# event statuses
STARTED = "started"
SUCCEEDED = "succeeded"
SKIPPED = "skipped"
FAILED = "failed"
INFO = "info"


@dataclass(frozen=True)
class PhaseEvent:
    phase: Phase
    status: str
    message: str = ""
    token: Optional[str] = None
    amount: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)


_STYLES = {
    STARTED: "cyan",
    SUCCEEDED: "bold green",
    SKIPPED: "yellow",
    FAILED: "bold red",
    INFO: "blue",
}


class ConsoleReporter:
    """Renders orchestrator events and the run summary with rich."""

    def __init__(self, console: Optional[Console] = None):
        self.console = console or Console()

    def __call__(self, event: PhaseEvent) -> None:
        if event.phase is Phase.DONE and event.status == STARTED:
            return
        if event.status == STARTED and event.phase in (Phase.CHECK_BALANCE, Phase.ENSURE_APPROVAL,
                                                       Phase.SIGN_PERMIT):
            self.console.rule(f"[bold cyan]{event.phase.value.replace('_', ' ').title()}[/bold cyan]")
        style = _STYLES.get(event.status, "white")
        subject = " ".join(p for p in (event.amount, event.token) if p)
        prefix = f"[{style}]{event.phase.value}[/{style}]"
        text = f"{prefix} {subject}: {event.message}" if subject else f"{prefix} {event.message}"
        self.console.log(text)

    def render_summary(self, report) -> None:
        self.console.rule("[bold]Swap summary[/bold]")
        table = Table(show_header=True, header_style="bold")
        table.add_column("#", justify="right")
        table.add_column("Swap")
        table.add_column("Status")
        table.add_column("Detail")
        for idx, outcome in enumerate(report.outcomes, start=1):
            style = _STYLES.get(outcome.status, "white")
            table.add_row(str(idx), outcome.request.label(), f"[{style}]{outcome.status}[/{style}]", outcome.detail())
        self.console.print(table)

        self.console.print(f"[bold green]Succeeded:[/bold green] {len(report.succeeded)}")
        self.console.print(f"[yellow]Skipped:[/yellow] {len(report.skipped)}")
        self.console.print(f"[bold red]Failed:[/bold red] {len(report.failed)}")
        if report.fatal_error is not None:
            self.console.print(f"[bold red]Run halted in {report.phase.value}: {report.fatal_error}[/bold red]")
