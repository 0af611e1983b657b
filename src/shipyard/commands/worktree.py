"""Worktree commands: isolation, hierarchy health and integration.

    - status: task worktrees and their agents
    - preflight / postflight: can a worker spawn, what to do with its output
    - spawn / cleanup: create and remove a task's checkout
    - pr: push a task branch and open a pull request
    - sync / reconcile: diagnose the branch hierarchy and repair drift
    - merge / promote: fold task, epic and PRD branches into their parents
"""

from __future__ import annotations

import asyncio
import shutil
from typing import Any

import click
import typer
from rich import box
from rich.panel import Panel
from rich.table import Table

from shipyard.commands._shared import emit_json, open_repo, optional_snapshot, registry_for
from shipyard.core.artifacts import AgentRecord, AgentRegistry, TaskSnapshot
from shipyard.core.config import AppConfig
from shipyard.core.console import console
from shipyard.core.decorators import handle_exceptions
from shipyard.core.result import OperationError, unwrap_or_raise
from shipyard.git import AsyncRepo
from shipyard.worktree.hierarchy import TASK_PREFIX, BranchContext, Branching
from shipyard.worktree.lifecycle import Worktree, WorktreeManager, WorktreeState
from shipyard.worktree.merge import (
    MergeOrchestrator,
    MergeRecord,
    RegistryUpdate,
    cascade,
    reconcile_registry,
    record_merge,
)
from shipyard.worktree.preflight import (
    PostflightReport,
    PreflightReport,
    postflight,
    preflight,
    resolve_context,
)
from shipyard.worktree.reconcile import Action, ApplyOutcome, Diagnosis, Reconciler

app = typer.Typer(help="Per-task worktrees, branch hierarchy sync and merges.")

STRATEGIES = click.Choice(["merge", "squash", "rebase"])
SYNC_STRATEGIES = click.Choice(["merge", "rebase"])

_OUTCOME_STYLES = {
    "applied": "green",
    "planned": "cyan",
    "skipped": "dim",
    "kept": "yellow",
    "escalated": "yellow",
    "failed": "red",
}


def _manager(repo: AsyncRepo, config: AppConfig) -> WorktreeManager:
    return WorktreeManager(
        repo,
        config.worktrees_dir,
        main_branch=config.git.main_branch,
        remote=config.git.remote,
        delete_remote=config.git.delete_remote_on_cleanup,
    )


def _reconciler(repo: AsyncRepo, config: AppConfig, strategy: str | None = None) -> Reconciler:
    return Reconciler(
        repo,
        main_branch=config.git.main_branch,
        remote=config.git.remote,
        sync_strategy=strategy or config.git.sync_strategy,  # type: ignore[arg-type]
        scratch_dir=config.worktrees_dir / ".sync",
        ignore_paths=config.state_paths,
    )


def _hierarchy_context(
    config: AppConfig,
    snapshot: TaskSnapshot | None,
    prd: str | None,
    epic: str | None,
) -> BranchContext:
    """Context for hierarchy-wide commands from --prd/--epic."""
    if epic and not prd and snapshot is not None:
        prd = snapshot.epic_prd(epic)
    if epic:
        if not prd:
            raise OperationError(f"Cannot tell which PRD epic {epic} belongs to", remedy="Pass --prd")
        return BranchContext(prd_id=prd, epic_id=epic, branching=Branching.EPIC)
    if prd:
        branching = Branching(config.git.branching)
        if branching is Branching.FLAT:
            branching = Branching.PRD
        return BranchContext(prd_id=prd, branching=branching)
    return BranchContext(branching=Branching.FLAT)


def _task_ids_under(registry: AgentRegistry, context: BranchContext) -> list[str]:
    """Task ids with a live worktree inside the given hierarchy."""
    ids: list[str] = []
    for record in registry:
        worktree = Worktree.from_record(record.task_id, record.worktree)
        if worktree is None or (record.worktree or {}).get("cleaned_at"):
            continue
        if context.prd_id and record.prd_id and record.prd_id != context.prd_id:
            continue
        if context.epic_id and record.epic_id and record.epic_id != context.epic_id:
            continue
        ids.append(record.task_id)
    return sorted(ids)


def _require_worktree(registry: AgentRegistry, task_id: str) -> tuple[AgentRecord, Worktree]:
    record = registry.get(task_id)
    if record is None:
        raise OperationError(f"No agent found for task: {task_id}", remedy=f"yard worktree spawn {task_id}")
    worktree = Worktree.from_record(task_id, record.worktree)
    if worktree is None:
        raise OperationError(f"Task {task_id} has no worktree", remedy=f"yard worktree spawn {task_id}")
    return record, worktree


def _print_actions(actions: list[Action], title: str = "Next") -> None:
    if not actions:
        return
    console.print(f"\n[bold]{title}:[/bold]")
    for action in actions:
        console.print(f"  -> {action.message}", highlight=False)
        if action.command:
            console.print(f"     [dim]{action.command}[/dim]", highlight=False)


def _print_outcomes(outcomes: list[ApplyOutcome]) -> None:
    table = Table(title="Applied actions", box=box.SIMPLE_HEAVY, expand=True)
    table.add_column("Action", style="cyan", no_wrap=True)
    table.add_column("Branch", style="white", no_wrap=True)
    table.add_column("Result", no_wrap=True)
    table.add_column("Message", style="white")
    for outcome in outcomes:
        style = _OUTCOME_STYLES.get(outcome.status, "white")
        table.add_row(
            outcome.action.kind,
            outcome.action.branch,
            f"[{style}]{outcome.status}[/{style}]",
            outcome.message,
        )
    console.print(table)


def _print_diagnosis(diagnosis: Diagnosis) -> None:
    table = Table(title="Branch hierarchy", box=box.SIMPLE_HEAVY, expand=True)
    table.add_column("Branch", style="cyan", no_wrap=True)
    table.add_column("Parent", style="white", no_wrap=True)
    table.add_column("State", no_wrap=True)
    table.add_column("Ahead/Behind", justify="right", no_wrap=True)
    table.add_column("Conflicts", style="red")
    for node in diagnosis.nodes:
        style = "green" if node.state.value in ("synced", "ahead") else "yellow"
        if node.state.value in ("conflict", "orphan"):
            style = "red"
        table.add_row(
            node.branch,
            node.parent,
            f"[{style}]{node.state.value}[/{style}]",
            f"{node.ahead}/{node.behind}",
            ", ".join(node.conflict_files),
        )
    console.print(table)
    if diagnosis.orphans:
        console.print(f"[yellow]Orphan branches:[/yellow] {', '.join(diagnosis.orphans)}", highlight=False)
    for issue in diagnosis.issues:
        console.print(f"[yellow]![/yellow] {issue}", highlight=False)


# -----------------------------------------------------------------------------
# status
# -----------------------------------------------------------------------------


async def _status(config: AppConfig) -> dict[str, Any]:
    repo = await open_repo(config)
    manager = _manager(repo, config)
    registry = registry_for(config)

    rows: list[dict[str, Any]] = []
    seen: set[str] = set()
    for record in registry:
        worktree = Worktree.from_record(record.task_id, record.worktree)
        if worktree is None or (record.worktree or {}).get("cleaned_at"):
            continue
        seen.add(record.task_id)
        state = await manager.worktree_status(record.task_id, worktree.base_branch)
        rows.append({"agent_status": record.status, "pr_url": record.pr_url, **_state_row(state)})

    for info in await manager.list_worktrees():
        task_id = info.branch.removeprefix(TASK_PREFIX)
        if task_id in seen:
            continue
        state = await manager.worktree_status(task_id)
        rows.append({"agent_status": None, "pr_url": None, **_state_row(state)})

    orphans = await manager.detect_orphaned_worktrees()
    return {"worktrees": rows, "orphaned": [str(p) for p in orphans]}


def _state_row(state: WorktreeState) -> dict[str, Any]:
    return {
        "task_id": state.task_id,
        "path": str(state.path),
        "branch": state.branch,
        "base_branch": state.base_branch,
        "exists": state.exists,
        "clean": state.clean,
        "changed_files": state.changed_files,
        "ahead": state.ahead,
        "behind": state.behind,
    }


@app.command("status")
@handle_exceptions
def status(
    ctx: typer.Context,
    json_output: bool = typer.Option(False, "--json", help="Print JSON instead of a table."),
) -> None:
    """Show task worktrees, their agents and how far they are from their base."""
    state = ctx.obj
    payload = asyncio.run(_status(state.config))

    if json_output:
        emit_json(payload)
        return

    rows = payload["worktrees"]
    if not rows:
        console.print(Panel("No task worktrees.", style="yellow"))
    else:
        table = Table(title=f"Task worktrees ({len(rows)})", box=box.SIMPLE_HEAVY, expand=True)
        table.add_column("Task", style="cyan", no_wrap=True)
        table.add_column("Agent", style="white", no_wrap=True)
        table.add_column("Base", style="white", no_wrap=True)
        table.add_column("Tree", no_wrap=True)
        table.add_column("Ahead/Behind", justify="right", no_wrap=True)
        table.add_column("PR", style="white")
        for row in rows:
            if not row["exists"]:
                tree_state = "[red]missing[/red]"
            elif row["clean"]:
                tree_state = "[green]clean[/green]"
            else:
                tree_state = f"[yellow]{row['changed_files']} changed[/yellow]"
            table.add_row(
                row["task_id"],
                row["agent_status"] or "-",
                row["base_branch"],
                tree_state,
                f"{row['ahead']}/{row['behind']}",
                row["pr_url"] or "",
            )
        console.print(table)

    if payload["orphaned"]:
        console.print(
            f"[yellow]Orphaned directories:[/yellow] {', '.join(payload['orphaned'])}\n"
            "[dim]Remove them with: git worktree prune && rm -rf <dir>[/dim]",
            highlight=False,
        )


# -----------------------------------------------------------------------------
# preflight / postflight
# -----------------------------------------------------------------------------


async def _preflight(config: AppConfig, task_id: str | None, for_merge: bool) -> PreflightReport:
    repo = await open_repo(config)
    return await preflight(
        repo,
        config,
        registry_for(config),
        optional_snapshot(config),
        task_id=task_id,
        for_merge=for_merge,
    )


def _print_preflight(report: PreflightReport) -> None:
    title = f"Spawn preflight: {report.task_id}" if report.task_id else "Spawn preflight"
    if report.for_merge:
        title += " (merge mode)"
    if report.can_spawn and not report.warnings:
        verdict = "[green]Ready to spawn[/green]"
    elif report.can_spawn:
        verdict = "[yellow]Ready with warnings[/yellow]"
    else:
        verdict = "[red]Cannot spawn[/red]"

    lines = [verdict]
    if report.context is not None:
        lines.append(
            f"PRD: {report.context.prd_id or 'none'}  Epic: {report.context.epic_id or 'none'}  "
            f"Branching: {report.context.branching.value}  Parent: {report.parent_branch}"
        )
    lines.extend(f"[red]x[/red] {b}" for b in report.blockers)
    lines.extend(f"[yellow]![/yellow] {w}" for w in report.warnings)
    if report.pending_merges:
        lines.append(f"Pending merges: {', '.join(report.pending_merges)}")
    if report.running_agents:
        lines.append(f"Running agents: {', '.join(report.running_agents)}")
    if report.recommended_action:
        lines.append(f"\nRecommended: {report.recommended_action}")
    console.print(Panel("\n".join(lines), title=title, box=box.SIMPLE), highlight=False)
    _print_actions(report.actions, title="Actions needed")


@app.command("preflight")
@handle_exceptions
def preflight_cmd(
    ctx: typer.Context,
    task_id: str | None = typer.Argument(None, help="Task about to be spawned."),
    for_merge: bool = typer.Option(
        False, "--for-merge", help="Spawning a conflict-resolution worker; drift becomes a warning."
    ),
    json_output: bool = typer.Option(False, "--json", help="Print JSON instead of a panel."),
) -> None:
    """Check whether a worker can be spawned and report what blocks it."""
    state = ctx.obj
    report = asyncio.run(_preflight(state.config, task_id, for_merge))

    if json_output:
        emit_json(report)
    else:
        _print_preflight(report)

    if not report.can_spawn:
        raise typer.Exit(code=1)


async def _postflight(config: AppConfig, task_id: str) -> PostflightReport:
    repo = await open_repo(config)
    return await postflight(repo, config, registry_for(config), task_id, optional_snapshot(config))


@app.command("postflight")
@handle_exceptions
def postflight_cmd(
    ctx: typer.Context,
    task_id: str = typer.Argument(..., help="Task whose worker finished."),
    json_output: bool = typer.Option(False, "--json", help="Print JSON instead of a panel."),
) -> None:
    """Recommend what to do with a finished worker's branch."""
    state = ctx.obj
    report = asyncio.run(_postflight(state.config, task_id))

    if json_output:
        emit_json(report)
        return

    lines = [
        f"Agent status: {report.agent_status}",
        f"Branch: {report.branch} -> {report.parent_branch}",
        f"Changes: {report.commits} commit(s)" if report.commits else "Changes: none",
        f"Conflicts: {', '.join(report.conflict_files)}" if report.conflict_files else "Conflicts: none",
    ]
    if report.merge_position is not None:
        lines.append(f"Merge order position: {report.merge_position}")
    if report.merge_partners:
        lines.append(f"Overlaps with: {', '.join(report.merge_partners)}")
    lines.extend(f"[yellow]![/yellow] {w}" for w in report.warnings)
    console.print(Panel("\n".join(lines), title=f"Postflight: {task_id}", box=box.SIMPLE), highlight=False)
    _print_actions(report.actions, title="Recommended")
    _print_actions(report.cascade, title="Cascade")


# -----------------------------------------------------------------------------
# spawn / cleanup / pr
# -----------------------------------------------------------------------------


async def _spawn(config: AppConfig, task_id: str, force: bool) -> tuple[Worktree, PreflightReport | None]:
    repo = await open_repo(config)
    registry = registry_for(config)
    snapshot = optional_snapshot(config)
    context = resolve_context(config, task_id, snapshot, registry)

    report = None
    if not force:
        report = await preflight(repo, config, registry, snapshot, task_id=task_id, context=context)
        if not report.can_spawn:
            raise OperationError(
                f"Cannot spawn {task_id}: {'; '.join(report.blockers)}",
                remedy=report.recommended_action,
            )

    worktree = await _manager(repo, config).spawn(task_id, context)

    existing = registry.get(task_id)
    fields = {
        "status": "dispatched",
        "worktree": worktree.to_record(),
        "prd_id": context.prd_id,
        "epic_id": context.epic_id,
    }
    if existing is None:
        registry.upsert(AgentRecord(task_id=task_id, **fields))
    else:
        registry.upsert(existing.model_copy(update=fields))
    registry.save()
    return worktree, report


@app.command("spawn")
@handle_exceptions
def spawn(
    ctx: typer.Context,
    task_id: str = typer.Argument(..., help="Task to create a worktree for."),
    force: bool = typer.Option(False, "--force", help="Skip the preflight check."),
    json_output: bool = typer.Option(False, "--json", help="Print JSON instead of a panel."),
) -> None:
    """Create a task's worktree on a new task branch off its parent."""
    state = ctx.obj
    worktree, report = asyncio.run(_spawn(state.config, task_id, force))

    if json_output:
        emit_json({"worktree": worktree, "warnings": report.warnings if report else []})
        return

    console.print(
        Panel(
            f"[green]Spawned[/green] {worktree.branch} from {worktree.base_branch}\nPath: {worktree.path}",
            title=f"Worktree {task_id}",
        ),
        highlight=False,
    )
    if report is not None:
        for warning in report.warnings:
            console.print(f"[yellow]![/yellow] {warning}", highlight=False)


async def _cleanup(config: AppConfig, task_id: str, force: bool) -> Any:
    repo = await open_repo(config)
    registry = registry_for(config)
    record = registry.get(task_id)
    worktree = Worktree.from_record(task_id, record.worktree) if record else None

    report = await _manager(repo, config).cleanup(
        task_id,
        base_branch=worktree.base_branch if worktree else None,
        force=force,
    )
    if record is not None and record.worktree:
        registry.mark_cleaned(task_id)
        registry.save()
    return report


@app.command("cleanup")
@handle_exceptions
def cleanup(
    ctx: typer.Context,
    task_id: str = typer.Argument(..., help="Task whose worktree to remove."),
    force: bool = typer.Option(
        False, "--force", "-f", help="Remove even if unmerged or dirty."
    ),
    json_output: bool = typer.Option(False, "--json", help="Print JSON instead of a summary."),
) -> None:
    """Remove a merged task's worktree and delete its branches."""
    state = ctx.obj
    report = asyncio.run(_cleanup(state.config, task_id, force))

    if json_output:
        emit_json(report)
        return

    def mark(flag: bool | None) -> str:
        if flag is None:
            return "[dim]n/a[/dim]"
        return "[green]yes[/green]" if flag else "[red]no[/red]"

    console.print(
        Panel(
            f"Worktree removed: {mark(report.worktree_removed)}\n"
            f"Local branch deleted: {mark(report.local_branch_deleted)}\n"
            f"Remote branch deleted: {mark(report.remote_branch_deleted)}",
            title=f"Cleanup {task_id}",
        ),
        highlight=False,
    )
    for error in report.errors:
        console.print(f"[yellow]![/yellow] {error}", highlight=False)


async def _create_pr(
    config: AppConfig, task_id: str, draft: bool, title: str | None
) -> tuple[str, bool]:
    """Push the task branch and open a PR; returns (url, created)."""
    repo = await open_repo(config)
    registry = registry_for(config)
    record, worktree = _require_worktree(registry, task_id)
    if record.pr_url:
        return record.pr_url, False

    gh = shutil.which("gh")
    if gh is None:
        raise OperationError("gh CLI not found", remedy="Install GitHub CLI: https://cli.github.com")

    remote = config.git.remote
    if not unwrap_or_raise(await repo.has_remote(remote)):
        raise OperationError(f"Remote {remote} is not configured", remedy=f"git remote add {remote} <url>")
    unwrap_or_raise(await repo.push(remote, worktree.branch))

    snapshot = optional_snapshot(config)
    task_title = ""
    if snapshot is not None:
        task_title = next((t.title for t in snapshot.tasks if t.id == task_id), "")
    pr_title = title or (f"{task_id}: {task_title}" if task_title else task_id)

    args = [
        gh,
        "pr",
        "create",
        "--head",
        worktree.branch,
        "--base",
        worktree.base_branch,
        "--title",
        pr_title,
        "--body",
        f"Task {task_id} from {worktree.branch} into {worktree.base_branch}.",
    ]
    if draft:
        args.append("--draft")

    process = await asyncio.create_subprocess_exec(
        *args,
        cwd=str(worktree.path if worktree.path.exists() else repo.path),
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    stdout, stderr = await process.communicate()
    if process.returncode != 0:
        raise OperationError(
            f"gh pr create failed: {stderr.decode('utf-8', errors='replace').strip()}",
            context={"task": task_id},
        )

    lines = stdout.decode("utf-8", errors="replace").strip().splitlines()
    url = lines[-1] if lines else ""
    registry.upsert(record.model_copy(update={"pr_url": url}))
    registry.save()
    return url, True


@app.command("pr")
@handle_exceptions
def pr(
    ctx: typer.Context,
    task_id: str = typer.Argument(..., help="Task whose branch to open a PR for."),
    draft: bool = typer.Option(False, "--draft", help="Create the PR as a draft."),
    title: str | None = typer.Option(None, "--title", help="PR title (defaults to the task title)."),
    json_output: bool = typer.Option(False, "--json", help="Print JSON instead of text."),
) -> None:
    """Push a task branch and open a pull request against its base."""
    state = ctx.obj
    url, created = asyncio.run(_create_pr(state.config, task_id, draft, title))

    if json_output:
        emit_json({"task_id": task_id, "pr_url": url, "created": created})
        return
    if created:
        console.print(f"[green]PR created:[/green] {url}", highlight=False)
    else:
        console.print(f"PR already exists: {url}", highlight=False)


# -----------------------------------------------------------------------------
# sync / reconcile
# -----------------------------------------------------------------------------


async def _sync(
    config: AppConfig, prd: str | None, epic: str | None, strategy: str | None, dry_run: bool
) -> tuple[Diagnosis, list[ApplyOutcome], list[RegistryUpdate]]:
    repo = await open_repo(config)
    registry = registry_for(config)
    context = _hierarchy_context(config, optional_snapshot(config), prd, epic)
    reconciler = _reconciler(repo, config, strategy)
    diagnosis = await reconciler.diagnose(context)
    actions = [a for a in diagnosis.actions if a.kind in ("sync", "escalate")]
    outcomes = await reconciler.apply(actions, dry_run=dry_run)

    updates = await reconcile_registry(repo, registry, _manager(repo, config), dry_run=dry_run)
    if any(u.status == "applied" for u in updates):
        registry.save()
    return diagnosis, outcomes, updates


def _print_registry_updates(updates: list[RegistryUpdate]) -> None:
    table = Table(title="Agent records", box=box.SIMPLE_HEAVY, expand=True)
    table.add_column("Task", style="cyan", no_wrap=True)
    table.add_column("Update", style="white", no_wrap=True)
    table.add_column("Result", no_wrap=True)
    table.add_column("Reason", style="white")
    for update in updates:
        style = _OUTCOME_STYLES.get(update.status, "white")
        table.add_row(
            update.task_id,
            update.kind,
            f"[{style}]{update.status}[/{style}]",
            f"{update.reason}; {update.message}" if update.message else update.reason,
        )
    console.print(table)


@app.command("sync")
@handle_exceptions
def sync(
    ctx: typer.Context,
    prd: str | None = typer.Option(None, "--prd", help="PRD whose branches to sync."),
    epic: str | None = typer.Option(None, "--epic", help="Epic whose branch to sync."),
    strategy: str | None = typer.Option(
        None, "--strategy", click_type=SYNC_STRATEGIES, help="Override git.sync_strategy."
    ),
    dry_run: bool = typer.Option(False, "--dry-run", help="Only show what would run."),
    json_output: bool = typer.Option(False, "--json", help="Print JSON instead of tables."),
) -> None:
    """Bring integration branches up to date and retire merged or lost agents."""
    state = ctx.obj
    diagnosis, outcomes, updates = asyncio.run(_sync(state.config, prd, epic, strategy, dry_run))

    if json_output:
        emit_json(
            {
                "nodes": diagnosis.nodes,
                "issues": diagnosis.issues,
                "outcomes": outcomes,
                "agents": updates,
                "dry_run": dry_run,
            }
        )
    else:
        _print_diagnosis(diagnosis)
        if outcomes:
            _print_outcomes(outcomes)
        if updates:
            _print_registry_updates(updates)
        if not outcomes and not updates:
            console.print("[green]Hierarchy and agent records in sync.[/green]")

    failed = any(o.status in ("failed", "escalated") for o in outcomes)
    if failed or any(u.status == "failed" for u in updates):
        raise typer.Exit(code=1)


async def _reconcile(
    config: AppConfig,
    *,
    prd: str | None,
    epic: str | None,
    do_sync: bool,
    do_prune: bool,
    force: bool,
    for_merge: bool,
    dry_run: bool,
) -> dict[str, Any]:
    repo = await open_repo(config)
    registry = registry_for(config)
    snapshot = optional_snapshot(config)
    context = _hierarchy_context(config, snapshot, prd, epic)
    reconciler = _reconciler(repo, config)

    known_ids = snapshot.known_ids() | {r.task_id for r in registry} if snapshot else None
    diagnosis = await reconciler.diagnose(
        context,
        task_ids=_task_ids_under(registry, context),
        known_ids=known_ids,
    )
    gate = await reconciler.branch_gate(context, for_merge=for_merge)

    selected = [
        a
        for a in diagnosis.actions
        if (a.kind == "sync" and do_sync) or (a.kind == "prune" and do_prune)
    ]
    outcomes = await reconciler.apply(selected, force=force, dry_run=dry_run) if selected else []
    return {"diagnosis": diagnosis, "gate": gate, "outcomes": outcomes}


@app.command("reconcile")
@handle_exceptions
def reconcile(
    ctx: typer.Context,
    prd: str | None = typer.Option(None, "--prd", help="PRD hierarchy to check."),
    epic: str | None = typer.Option(None, "--epic", help="Epic hierarchy to check."),
    do_sync: bool = typer.Option(False, "--sync", help="Apply recommended sync actions."),
    do_prune: bool = typer.Option(False, "--prune", help="Delete orphan branches that are merged."),
    force: bool = typer.Option(False, "--force", help="Prune orphan branches even if unmerged."),
    for_merge: bool = typer.Option(
        False, "--for-merge", help="Judge the hierarchy for a conflict-resolution worker."
    ),
    dry_run: bool = typer.Option(False, "--dry-run", help="Only show what would run."),
    json_output: bool = typer.Option(False, "--json", help="Print JSON instead of tables."),
) -> None:
    """Diagnose the branch hierarchy and optionally repair it."""
    state = ctx.obj
    result = asyncio.run(
        _reconcile(
            state.config,
            prd=prd,
            epic=epic,
            do_sync=do_sync,
            do_prune=do_prune,
            force=force,
            for_merge=for_merge,
            dry_run=dry_run,
        )
    )
    diagnosis: Diagnosis = result["diagnosis"]
    outcomes: list[ApplyOutcome] = result["outcomes"]
    gate = result["gate"]

    if json_output:
        emit_json(
            {
                "nodes": diagnosis.nodes,
                "orphans": diagnosis.orphans,
                "issues": diagnosis.issues,
                "actions": diagnosis.actions,
                "healthy": diagnosis.healthy,
                "gate": {"ok": gate.ok, "blockers": gate.blockers, "warnings": gate.warnings},
                "outcomes": outcomes,
            }
        )
    else:
        _print_diagnosis(diagnosis)
        if outcomes:
            _print_outcomes(outcomes)
        pending = [a for a in diagnosis.actions if not outcomes or a.kind == "escalate"]
        _print_actions(pending, title="Recommended")
        if diagnosis.healthy:
            console.print("[green]Hierarchy healthy.[/green]")

    if any(o.status == "failed" for o in outcomes) or not gate.ok:
        raise typer.Exit(code=1)


# -----------------------------------------------------------------------------
# merge / promote
# -----------------------------------------------------------------------------


async def _merge(
    config: AppConfig, task_id: str, strategy: str | None, cleanup: bool, dry_run: bool
) -> tuple[MergeRecord, list[Action]]:
    repo = await open_repo(config)
    registry = registry_for(config)
    snapshot = optional_snapshot(config)
    _, worktree = _require_worktree(registry, task_id)

    manager = _manager(repo, config)
    orchestrator = MergeOrchestrator(repo, config, manager, scratch_dir=config.worktrees_dir / ".sync")
    record = await orchestrator.merge_task(
        worktree,
        strategy=strategy,  # type: ignore[arg-type]
        cleanup=cleanup,
        dry_run=dry_run,
    )
    if dry_run:
        return record, []

    record_merge(registry, record)
    registry.save()

    follow_ups: list[Action] = []
    if snapshot is not None:
        context = resolve_context(config, task_id, snapshot, registry)
        follow_ups = cascade(task_id, context, snapshot, registry)
    return record, follow_ups


@app.command("merge")
@handle_exceptions
def merge(
    ctx: typer.Context,
    task_id: str = typer.Argument(..., help="Task whose branch to merge into its base."),
    strategy: str | None = typer.Option(
        None, "--strategy", "-s", click_type=STRATEGIES, help="Override the configured strategy."
    ),
    no_cleanup: bool = typer.Option(False, "--no-cleanup", help="Keep the worktree and branch."),
    dry_run: bool = typer.Option(False, "--dry-run", help="Run prechecks only."),
    json_output: bool = typer.Option(False, "--json", help="Print JSON instead of a panel."),
) -> None:
    """Merge a task branch into its parent and clean up its worktree."""
    state = ctx.obj
    record, follow_ups = asyncio.run(_merge(state.config, task_id, strategy, not no_cleanup, dry_run))

    if json_output:
        emit_json({"merge": record, "cascade": follow_ups})
        return

    verb = "Would merge" if record.dry_run else "Merged"
    console.print(
        Panel(
            f"[green]{verb}[/green] {record.source} into {record.target} "
            f"({record.strategy}, {record.commits} commit(s))"
            + (f"\nCommit: {record.commit}" if record.commit else "")
            + ("\nWorktree cleaned up" if record.cleaned else ""),
            title=f"Merge {task_id}",
        ),
        highlight=False,
    )
    _print_actions(follow_ups, title="Cascade")


async def _promote(
    config: AppConfig,
    level: str,
    entity_id: str,
    prd: str | None,
    strategy: str | None,
    dry_run: bool,
) -> MergeRecord:
    repo = await open_repo(config)
    if level == "epic" and not prd:
        snapshot = optional_snapshot(config)
        prd = snapshot.epic_prd(entity_id) if snapshot else None
    orchestrator = MergeOrchestrator(repo, config, scratch_dir=config.worktrees_dir / ".sync")
    return await orchestrator.promote(
        level,  # type: ignore[arg-type]
        entity_id,
        prd_id=prd,
        strategy=strategy,  # type: ignore[arg-type]
        dry_run=dry_run,
    )


@app.command("promote")
@handle_exceptions
def promote(
    ctx: typer.Context,
    level: str = typer.Argument(..., click_type=click.Choice(["epic", "prd"]), help="epic or prd."),
    entity_id: str = typer.Argument(..., help="Epic or PRD id."),
    prd: str | None = typer.Option(None, "--prd", help="PRD the epic belongs to."),
    strategy: str | None = typer.Option(
        None, "--strategy", "-s", click_type=STRATEGIES, help="Override the configured strategy."
    ),
    dry_run: bool = typer.Option(False, "--dry-run", help="Run prechecks only."),
    json_output: bool = typer.Option(False, "--json", help="Print JSON instead of a panel."),
) -> None:
    """Merge an epic branch into its PRD branch, or a PRD branch into main."""
    state = ctx.obj
    record = asyncio.run(_promote(state.config, level, entity_id, prd, strategy, dry_run))

    if json_output:
        emit_json(record)
        return

    verb = "Would promote" if record.dry_run else "Promoted"
    console.print(
        Panel(
            f"[green]{verb}[/green] {record.source} into {record.target} "
            f"({record.strategy}, {record.commits} commit(s))",
            title=f"Promote {level} {entity_id}",
        ),
        highlight=False,
    )


__all__ = ["app"]
