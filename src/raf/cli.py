"""RAF CLI: run a planned project's tasks and inspect project status.

Installed as the ``raf`` console_script.
"""

from __future__ import annotations

import os
import sys
from dataclasses import replace
from pathlib import Path

import click

from raf import __version__, log
from raf.config import Config, ConfigError, load_config
from raf.context import ExecutionContext
from raf.engines.base import EngineBase
from raf.engines.registry import ENGINE_NAMES, get_engine
from raf.git_ops import Git
from raf.paths import RAF_DIR, list_project_folders, resolve_project
from raf.runner import ProjectExecutionResult, Runner
from raf.state import derive_project_state, get_derived_stats
from raf.tasks.model import ProjectState, TaskStatus
from raf.worktree import (
    ValidationStage,
    WorktreeError,
    compute_worktree_path,
    create_worktree,
    create_worktree_from_branch,
    detect_main_branch,
    merge_worktree_branch,
    pull_main_branch,
    push_main_branch,
    remove_worktree,
    validate_worktree,
)

CONTEXT_SETTINGS = dict(help_option_names=["-h", "--help"])

_STATUS_STYLE = {
    TaskStatus.PENDING: "[dim]pending[/dim]",
    TaskStatus.IN_PROGRESS: "[blue]in progress[/blue]",
    TaskStatus.COMPLETED: "[green]completed[/green]",
    TaskStatus.FAILED: "[red]failed[/red]",
    TaskStatus.BLOCKED: "[yellow]blocked[/yellow]",
}

_STAGE_HINTS = {
    ValidationStage.EXISTS: "worktree directory is missing",
    ValidationStage.LISTED: "directory exists but is not a registered git worktree",
    ValidationStage.PROJECT_FOLDER: "project folder is missing; commit the project's plans first",
    ValidationStage.PLANS: "project has no plans/ directory",
}


def _fail(msg: str) -> None:
    log.error(msg)
    sys.exit(1)


def _raf_dir(repo_root: Path | None) -> Path:
    return (repo_root or Path.cwd()) / RAF_DIR


def _pick_project(raf_dir: Path, identifier: str | None) -> Path:
    if identifier:
        try:
            path = resolve_project(raf_dir, identifier)
        except LookupError as e:
            raise click.BadParameter(str(e), param_hint="PROJECT") from e
        if path is None:
            raise click.BadParameter(f"No project matching '{identifier}' in {raf_dir}", param_hint="PROJECT")
        return path

    # No identifier: the most recent project that still has work to do.
    for project in reversed(list_project_folders(raf_dir)):
        state = derive_project_state(project.path)
        stats = get_derived_stats(state)
        if stats.total and stats.completed < stats.total:
            return project.path
    raise click.UsageError(f"No project with remaining tasks in {raf_dir}")


# ── group ────────────────────────────────────────────────────────────


@click.group(context_settings=CONTEXT_SETTINGS)
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Config file (default: ~/.raf/raf.config.json or $RAF_CONFIG)",
)
@click.version_option(__version__, prog_name="raf")
@click.pass_context
def main(ctx: click.Context, config_path: Path | None) -> None:
    """RAF: run planned projects task by task with an AI agent.

    \b
    EXAMPLES:
      raf do                        # Run the latest unfinished project
      raf do 00abc0 --worktree      # Run in an isolated git worktree
      raf do my-feature --merge     # Merge the worktree branch when done
      raf status                    # List projects and their progress
    """
    try:
        ctx.obj = load_config(config_path)
    except ConfigError as e:
        raise click.ClickException(str(e)) from e


# ── Subcommand: do ───────────────────────────────────────────────────


@main.command("do", context_settings=CONTEXT_SETTINGS)
@click.argument("project", required=False)
@click.option("--timeout", type=click.FloatRange(min=0, min_open=True), default=None, help="Minutes per attempt")
@click.option("--max-retries", type=click.IntRange(min=1), default=None, help="Attempts per task")
@click.option("--model", default=None, help="Model passed to the agent")
@click.option("--engine", type=click.Choice(ENGINE_NAMES), default=None, help="Agent CLI to run")
@click.option("--worktree/--no-worktree", default=None, help="Run in an isolated git worktree")
@click.option("--merge", is_flag=True, help="Merge the worktree branch into main after success")
@click.option("--push", is_flag=True, help="Push main to origin after a successful merge")
@click.option("--no-commit", is_flag=True, help="Do not commit task changes")
@click.option("-v", "--verbose", is_flag=True, help="Show debug output")
@click.option("-d", "--debug", is_flag=True, help="Save agent logs for every task")
@click.pass_obj
def do_cmd(
    cfg: Config,
    project: str | None,
    timeout: float | None,
    max_retries: int | None,
    model: str | None,
    engine: str | None,
    worktree: bool | None,
    merge: bool,
    push: bool,
    no_commit: bool,
    verbose: bool,
    debug: bool,
) -> None:
    """Execute the tasks of PROJECT (folder name, id prefix or name)."""
    cfg = replace(
        cfg,
        timeout=timeout if timeout is not None else cfg.timeout,
        max_retries=max_retries if max_retries is not None else cfg.max_retries,
        model=model or cfg.model,
        engine=engine or cfg.engine,
        worktree=cfg.worktree if worktree is None else worktree,
        auto_commit=cfg.auto_commit and not no_commit,
        verbose=verbose or debug,
        debug=debug,
    )
    log.set_verbose(cfg.verbose)
    logger = log.default_logger()

    repo = Git()
    repo_root = repo.repo_root()
    if repo_root is not None:
        repo = Git(repo_root)
    project_path = _pick_project(_raf_dir(repo_root), project)

    if merge and not cfg.worktree:
        raise click.UsageError("--merge only applies with --worktree")
    if cfg.worktree and repo_root is None:
        _fail("Worktree mode needs a git repository")

    agent = get_engine(cfg.engine, model=cfg.model, logger=logger)
    missing = agent.check_available()
    if missing:
        _fail(missing)

    _show_banner(cfg, project_path)

    if not cfg.worktree:
        agent.cwd = repo_root or Path.cwd()
        result = _run_project(cfg, project_path, agent, Git(agent.cwd), logger)
        sys.exit(0 if result.success else 1)

    assert repo_root is not None
    try:
        wt_path, wt_project = _prepare_worktree(cfg, repo, repo_root, project_path, logger)
        agent.cwd = wt_path
        result = _run_project(cfg, wt_project, agent, Git(wt_path), logger)

        if not result.success:
            logger.warn(f"Worktree kept at {wt_path} (branch {project_path.name})")
            sys.exit(1)

        if not merge:
            logger.info(f"Worktree kept at {wt_path}; merge branch {project_path.name} when ready")
            return

        _merge_back(repo, wt_path, project_path.name, logger, push=push)
    except WorktreeError as e:
        _fail(str(e))


def _run_project(
    cfg: Config, project_path: Path, agent: EngineBase, vcs: Git, logger: log.Logger
) -> ProjectExecutionResult:
    ctx = ExecutionContext(logger=logger)
    return Runner(cfg, project_path, agent, ctx=ctx, vcs=vcs).run()


def _prepare_worktree(
    cfg: Config, repo: Git, repo_root: Path, project_path: Path, logger: log.Logger
) -> tuple[Path, Path]:
    """Create or re-attach the project's worktree and validate it."""
    folder = project_path.name
    rel = os.path.relpath(project_path.resolve(), repo_root.resolve())

    if cfg.sync_main_branch:
        sync = pull_main_branch(repo)
        if sync.success:
            if sync.had_changes:
                logger.info(f"Pulled latest {sync.main_branch} from origin")
        else:
            logger.warn(f"Could not sync main branch: {sync.error}")

    wt_path = compute_worktree_path(repo_root.name, folder, cfg.worktree_root)
    check = validate_worktree(wt_path, rel, repo=repo)
    if check.failed_stage == ValidationStage.EXISTS:
        create = create_worktree_from_branch if repo.branch_exists(folder) else create_worktree
        created = create(repo_root.name, folder, repo=repo, root=cfg.worktree_root, logger=logger)
        if not created.success:
            raise WorktreeError(created.error)
        logger.info(f"Worktree: {created.worktree_path} (branch {created.branch})")
        check = validate_worktree(wt_path, rel, repo=repo)
    else:
        logger.info(f"Reusing worktree: {wt_path}")

    if not check.valid or check.project_path is None:
        stage = check.failed_stage or ValidationStage.PROJECT_FOLDER
        raise WorktreeError(f"Invalid worktree at {wt_path}: {_STAGE_HINTS[stage]}")
    return wt_path, check.project_path


def _merge_back(repo: Git, wt_path: Path, branch: str, logger: log.Logger, *, push: bool) -> None:
    target = detect_main_branch(repo)
    if not target:
        raise WorktreeError("Could not detect main branch to merge into")

    merged = merge_worktree_branch(branch, target, repo=repo, logger=logger)
    if not merged.success:
        raise WorktreeError(merged.error)
    kind = "fast-forward" if merged.fast_forward else "merge commit"
    logger.success(f"Merged {branch} into {target} ({kind})")

    removed = remove_worktree(wt_path, repo=repo, logger=logger)
    if removed.success:
        logger.info(f"Removed worktree {wt_path}; branch {branch} kept")
    else:
        logger.warn(removed.error)

    if push:
        pushed = push_main_branch(repo)
        if not pushed.success:
            raise WorktreeError(pushed.error)
        if pushed.had_changes:
            logger.success(f"Pushed {pushed.main_branch} to origin")
        else:
            logger.info(f"{pushed.main_branch} already up to date on origin")


def _show_banner(cfg: Config, project_path: Path) -> None:
    log.console.print("[bold]============================================[/bold]")
    log.console.print(f"[bold]RAF[/bold]: {project_path.name}")
    log.console.print(f"Engine: [magenta]{cfg.engine}[/magenta] ({cfg.model})")

    parts = [f"timeout:{cfg.timeout:g}m", f"attempts:{cfg.max_retries}"]
    if cfg.worktree:
        parts.append("worktree")
    if not cfg.auto_commit:
        parts.append("no-commit")
    if cfg.debug:
        parts.append("debug")
    log.console.print(f"Mode: [yellow]{' '.join(parts)}[/yellow]")
    log.console.print("[bold]============================================[/bold]")


# ── Subcommand: status ───────────────────────────────────────────────


@main.command("status", context_settings=CONTEXT_SETTINGS)
@click.argument("project", required=False)
def status_cmd(project: str | None) -> None:
    """Show derived task status for PROJECT, or a summary of all projects."""
    raf_dir = _raf_dir(Git().repo_root())

    if project:
        try:
            path = resolve_project(raf_dir, project)
        except LookupError as e:
            raise click.BadParameter(str(e), param_hint="PROJECT") from e
        if path is None:
            raise click.BadParameter(f"No project matching '{project}' in {raf_dir}", param_hint="PROJECT")
        _print_project(path.name, derive_project_state(path))
        return

    projects = list_project_folders(raf_dir)
    if not projects:
        log.info(f"No projects in {raf_dir}")
        return
    for p in projects:
        state = derive_project_state(p.path)
        stats = get_derived_stats(state)
        log.console.print(
            f"  {p.folder}  [bold]{state.status.value}[/bold]  "
            f"{stats.completed}/{stats.total} completed"
            + (f", {stats.failed} failed" if stats.failed else "")
            + (f", {stats.blocked} blocked" if stats.blocked else "")
        )


def _print_project(name: str, state: ProjectState) -> None:
    stats = get_derived_stats(state)
    log.console.print(f"[bold]{name}[/bold]: {state.status.value}")
    for task in state.tasks:
        deps = f"  (after {', '.join(task.dependencies)})" if task.dependencies else ""
        log.console.print(f"  {task.id}  {_STATUS_STYLE[task.status]}  {task.name}{deps}")
    log.console.print(
        f"{stats.completed}/{stats.total} completed, {stats.failed} failed, "
        f"{stats.blocked} blocked, {stats.pending} pending"
    )
