"""Human-readable renderings of entities and workflow state for the CLI."""

from __future__ import annotations

import io
from typing import Any

from rich.console import Console
from rich.table import Table

from .engine.model import Entity


def _console(width: int) -> Console:
    return Console(record=True, width=width, file=io.StringIO())


def format_entity_table(entities: list[Entity], title: str = "") -> str:
    """Format entities as a table (one row each).

    Args:
        entities: Rows to render, in display order.
        title: Optional table title.

    Returns:
        Formatted text.
    """
    console = _console(120)
    table = Table(title=title or None)
    table.add_column("ID", no_wrap=True)
    table.add_column("Title")
    table.add_column("Status")
    table.add_column("Priority")
    table.add_column("Ver", justify="right")
    table.add_column("Blocked by")
    for entity in entities:
        table.add_row(
            entity.id,
            entity.title,
            entity.status,
            entity.priority.value,
            str(entity.version),
            ", ".join(entity.blocker_ids()) or "-",
        )
    console.print(table)
    return console.export_text()


def format_workflow_state(state: dict[str, Any]) -> str:
    """Format the workflow state of one entity as rich text."""
    console = _console(80)

    console.print()
    console.print(f"[bold]{state['kind'].title()} {state['id']}: {state.get('title') or ''}[/bold]")
    console.print("━" * 80)

    table = Table(show_header=False, box=None)
    table.add_row("Status:", state["status"])
    table.add_row("Position:", state.get("pipeline_position") or "-")
    table.add_row("Next:", state.get("next_status") or "-")
    table.add_row("Previous:", state.get("prev_status") or "-")
    table.add_row("Version:", str(state["version"]))
    table.add_row("Terminal:", "yes" if state["is_terminal"] else "no")
    console.print(table)

    if state["blocked_by"]:
        console.print("\n[bold red]Blocked by:[/bold red]")
        for blocker in state["blocked_by"]:
            console.print(f"  • {blocker}")
        if state.get("blocked_reason"):
            console.print(f"[dim]Reason: {state['blocked_reason']}[/dim]")

    if state.get("related"):
        console.print("\n[bold]Related:[/bold]")
        for item in state["related"]:
            console.print(f"  • {item['id']} ({item.get('status') or 'missing'})")

    console.print("\n" + "━" * 80)
    return console.export_text()
