from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Sequence

from rich.console import Console
from rich.markup import escape

from .actions import ActionKind, OutcomeStatus, ResourceOutcome
from .environments import EnvironmentRecord


SUMMARY_KIND = "agentcfg.run.summary.v1"


@dataclass(frozen=True)
class RunSummary:
    lines: tuple[str, ...]
    outcomes: tuple[ResourceOutcome, ...]
    exit_code: int
    fatal: str = ""
    notes: tuple[str, ...] = ()
    environment: EnvironmentRecord | None = None
    solution_name: str = ""

    @property
    def succeeded(self) -> int:
        return sum(1 for o in self.outcomes if o.status is OutcomeStatus.SUCCEEDED)

    @property
    def manual_required(self) -> int:
        return sum(1 for o in self.outcomes if o.status is OutcomeStatus.FAILED_MANUAL_REQUIRED)

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": SUMMARY_KIND,
            "solutionName": self.solution_name,
            "environment": self.environment.to_dict() if self.environment else None,
            "fatal": self.fatal,
            "exitCode": self.exit_code,
            "counts": {
                "outcomes": len(self.outcomes),
                "succeeded": self.succeeded,
                "manualRequired": self.manual_required,
            },
            "notes": list(self.notes),
            "lines": list(self.lines),
            "outcomes": [o.to_dict() for o in self.outcomes],
        }


def outcome_line(outcome: ResourceOutcome) -> str:
    name = outcome.display_name or outcome.resource_id
    line = f"{name} [{outcome.action.value}]: {outcome.status.value}"
    if outcome.reason:
        line += f" - {outcome.reason}"
    return line


def summarize(
    outcomes: Sequence[ResourceOutcome],
    *,
    fatal: BaseException | None = None,
    notes: Sequence[str] = (),
    environment: EnvironmentRecord | None = None,
    solution_name: str = "",
) -> RunSummary:
    """Fold per-agent outcomes into the run summary.

    Only a fatal error (no token, no environment) fails the run. Outcomes
    that need manual follow-up are reported but keep exit status 0.
    """
    return RunSummary(
        lines=tuple(outcome_line(o) for o in outcomes),
        outcomes=tuple(outcomes),
        exit_code=1 if fatal is not None else 0,
        fatal=str(fatal) if fatal is not None else "",
        notes=tuple(notes),
        environment=environment,
        solution_name=solution_name,
    )


def render_summary(summary: RunSummary, console: Console) -> None:
    console.print("[bold cyan]=== Agent configuration summary ===[/bold cyan]")
    if summary.solution_name:
        console.print(f"  Solution: {escape(summary.solution_name)}")
    env = summary.environment
    if env is not None:
        label = env.display_name or env.environment_id
        console.print(
            f"  Environment: {escape(label)} ({escape(env.instance_url)}, match {env.match_confidence.value})"
        )
    if summary.fatal:
        console.print(f"  [bold red]Fatal:[/bold red] {escape(summary.fatal)}")
    for note in summary.notes:
        console.print(f"  [yellow]Note:[/yellow] {escape(note)}")

    for outcome in summary.outcomes:
        style = "green" if outcome.status is OutcomeStatus.SUCCEEDED else "yellow"
        console.print(f"  [{style}]{escape(outcome_line(outcome))}[/{style}]")
        if outcome.status is OutcomeStatus.FAILED_MANUAL_REQUIRED:
            for i, step in enumerate(outcome.manual_steps, start=1):
                console.print(f"      {i}. {escape(step)}")

    if summary.outcomes:
        console.print(
            f"  {summary.succeeded} succeeded, {summary.manual_required} need manual follow-up"
        )
    share_pending = any(o.action is ActionKind.SHARE for o in summary.outcomes)
    if share_pending:
        console.print("  [dim]Sharing and channel configuration are manual steps by design.[/dim]")
    status = "[bold red]failed[/bold red]" if summary.exit_code else "[bold green]completed[/bold green]"
    console.print(f"  Run status: {status}")
