"""Dependency graph commands.

Reads the task snapshot, builds the graph and answers:
    - validate: cycles, dangling/self references, status problems (--fix)
    - ready: tasks that can start now, best unblocking leverage first
    - impact: what finishing a task unblocks
    - critical: bottleneck tasks
    - tree: ancestors or descendants of a task
"""

from __future__ import annotations

import typer
from rich import box
from rich.panel import Panel
from rich.table import Table
from rich.tree import Tree

from shipyard.commands._shared import emit_json, snapshot_for
from shipyard.core.artifacts import apply_fixes, write_snapshot
from shipyard.core.console import console
from shipyard.core.decorators import handle_exceptions
from shipyard.core.validation import ValidationIssue, validate

app = typer.Typer(help="Task dependency graph: readiness, impact and validation.")


def _issue_line(issue: ValidationIssue) -> str:
    prefix = f"{issue.task}: " if issue.task and not issue.message.startswith(issue.task) else ""
    return f"[{issue.kind}] {prefix}{issue.message}"


@app.command("validate")
@handle_exceptions
def validate_cmd(
    ctx: typer.Context,
    prd: str | None = typer.Option(None, "--prd", help="Only check tasks of this PRD."),
    fix: bool = typer.Option(False, "--fix", help="Apply safe fixes to the task snapshot."),
    json_output: bool = typer.Option(False, "--json", help="Print JSON instead of tables."),
) -> None:
    """Check the graph for cycles, broken references and bad statuses."""
    state = ctx.obj
    snapshot = snapshot_for(state.config)
    report = validate(snapshot.graph(), prd=prd, epics=snapshot.epic_graph())

    fixed = 0
    if fix and report.fixes:
        fixed = apply_fixes(snapshot, report.fixes)
        if fixed:
            write_snapshot(snapshot)
            state.logger.info("Applied %d fix(es) to %s", fixed, snapshot.path)
        # Re-check what is left after the fixes.
        refreshed = snapshot_for(state.config)
        report = validate(refreshed.graph(), prd=prd, epics=refreshed.epic_graph())

    if json_output:
        emit_json(
            {
                "ok": report.ok,
                "errors": report.errors,
                "warnings": report.warnings,
                "fixes": report.fixes,
                "fixed": fixed,
            }
        )
    else:
        for issue in report.errors:
            console.print(f"[red]error[/red] {_issue_line(issue)}", markup=True, highlight=False)
        for issue in report.warnings:
            console.print(f"[yellow]warn[/yellow]  {_issue_line(issue)}", markup=True, highlight=False)
        if fix:
            console.print(f"[green]Fixed {fixed} field(s).[/green]")
        elif report.fixes:
            console.print(f"[dim]{len(report.fixes)} safe fix(es) available: rerun with --fix[/dim]")

        summary = f"{len(report.errors)} error(s), {len(report.warnings)} warning(s)"
        style = "green" if report.ok else "red"
        console.print(Panel(summary, title="Dependency graph", border_style=style))

    if not report.ok:
        raise typer.Exit(code=1)


@app.command("ready")
@handle_exceptions
def ready(
    ctx: typer.Context,
    prd: str | None = typer.Option(None, "--prd", help="Only tasks of this PRD."),
    epic: str | None = typer.Option(None, "--epic", help="Only tasks of this epic."),
    limit: int | None = typer.Option(None, "--limit", "-l", help="Maximum tasks to list."),
    include_started: bool = typer.Option(
        False, "--include-started", help="Also list In Progress tasks."
    ),
    json_output: bool = typer.Option(False, "--json", help="Print JSON instead of a table."),
) -> None:
    """List tasks whose blockers are all done, highest leverage first."""
    state = ctx.obj
    graph = snapshot_for(state.config).graph()
    ranked = graph.ready_tasks(prd=prd, epic=epic, limit=limit, include_started=include_started)

    if json_output:
        emit_json(
            [
                {
                    "id": r.task.id,
                    "title": r.task.title,
                    "status": r.task.raw_status,
                    "prd_id": r.task.prd_id,
                    "epic_id": r.task.epic_id,
                    "total_unblocked": r.total_unblocked,
                    "critical_path_length": r.critical_path_length,
                }
                for r in ranked
            ]
        )
        return

    if not ranked:
        console.print(Panel("No ready tasks.", style="yellow"))
        return

    table = Table(title=f"Ready tasks ({len(ranked)})", box=box.SIMPLE_HEAVY, expand=True)
    table.add_column("Task", style="cyan", no_wrap=True)
    table.add_column("Title", style="white")
    table.add_column("Unblocks", justify="right")
    table.add_column("Critical path", justify="right")
    for r in ranked:
        table.add_row(r.task.id, r.task.title, str(r.total_unblocked), str(r.critical_path_length))
    console.print(table)


@app.command("impact")
@handle_exceptions
def impact(
    ctx: typer.Context,
    task_id: str = typer.Argument(..., help="Task to analyse."),
    json_output: bool = typer.Option(False, "--json", help="Print JSON instead of a panel."),
) -> None:
    """Show what completing a task would unblock."""
    state = ctx.obj
    report = snapshot_for(state.config).graph().impact(task_id)

    if json_output:
        emit_json(report)
        return

    lines = [
        f"Directly unblocks: {', '.join(report.direct_unblocks) or 'none'}",
        f"Total unblocked (transitive): {report.total_unblocked}",
        f"Critical path ({report.critical_path_length}): {' -> '.join(report.critical_path)}",
    ]
    if report.still_blocked:
        lines.append("Still blocked:")
        lines.extend(f"  {sb.id} waits on {', '.join(sb.waiting_on)}" for sb in report.still_blocked)
    console.print(Panel("\n".join(lines), title=f"Impact of {task_id}", box=box.SIMPLE), highlight=False)


@app.command("critical")
@handle_exceptions
def critical(
    ctx: typer.Context,
    prd: str | None = typer.Option(None, "--prd", help="Only tasks of this PRD."),
    limit: int = typer.Option(5, "--limit", "-l", help="Maximum bottlenecks to list."),
    json_output: bool = typer.Option(False, "--json", help="Print JSON instead of a table."),
) -> None:
    """List the open tasks that block the most work."""
    state = ctx.obj
    bottlenecks = snapshot_for(state.config).graph().critical_tasks(prd=prd, limit=limit)

    if json_output:
        emit_json(
            [
                {
                    "id": b.task.id,
                    "title": b.task.title,
                    "status": b.task.raw_status,
                    "dependents": b.dependents,
                    "critical_path_length": b.critical_path_length,
                    "score": b.score,
                }
                for b in bottlenecks
            ]
        )
        return

    if not bottlenecks:
        console.print(Panel("No open task blocks anything.", style="green"))
        return

    table = Table(title="Bottlenecks", box=box.SIMPLE_HEAVY, expand=True)
    table.add_column("Task", style="cyan", no_wrap=True)
    table.add_column("Status", style="white", no_wrap=True)
    table.add_column("Dependents", justify="right")
    table.add_column("Critical path", justify="right")
    table.add_column("Score", justify="right", style="bold")
    for b in bottlenecks:
        table.add_row(
            b.task.id, b.task.raw_status, str(b.dependents), str(b.critical_path_length), str(b.score)
        )
    console.print(table)


@app.command("tree")
@handle_exceptions
def tree(
    ctx: typer.Context,
    task_id: str = typer.Argument(..., help="Task at the root of the tree."),
    ancestors: bool = typer.Option(
        False, "--ancestors", help="Walk blockers instead of dependents."
    ),
    descendants: bool = typer.Option(False, "--descendants", help="Walk dependents (default)."),
    depth: int | None = typer.Option(None, "--depth", "-d", help="Maximum depth to walk."),
    json_output: bool = typer.Option(False, "--json", help="Print JSON instead of a tree."),
) -> None:
    """Show a task's blockers or dependents, level by level."""
    if ancestors and descendants:
        console.print("[red]Choose one of --ancestors or --descendants.[/red]")
        raise typer.Exit(code=2)

    state = ctx.obj
    graph = snapshot_for(state.config).graph()
    graph.get(task_id)

    def edges(node_id: str) -> list[str]:
        if ancestors:
            return graph.get(node_id).blockers()
        return graph.dependents_of(node_id)

    if ancestors:
        ids = graph.ancestors(task_id, max_depth=depth)
        label = "blocked by"
    else:
        ids = graph.descendants(task_id, max_depth=depth)
        label = "unblocks"

    if json_output:
        emit_json({"task_id": task_id, "direction": label, "ids": ids})
        return

    root = Tree(f"[cyan]{task_id}[/cyan] {label}")
    seen = {task_id}

    def add_children(branch: Tree, node_id: str, level: int) -> None:
        if depth is not None and level >= depth:
            return
        for child in edges(node_id):
            if child not in graph:
                branch.add(f"[red]{child}[/red] (missing)")
                continue
            if child in seen:
                branch.add(f"[dim]{child}[/dim] (see above)")
                continue
            seen.add(child)
            node = graph.get(child)
            sub = branch.add(f"[cyan]{child}[/cyan] {node.raw_status} {node.title}".rstrip())
            add_children(sub, child, level + 1)

    add_children(root, task_id, 0)
    console.print(root)


__all__ = ["app"]
