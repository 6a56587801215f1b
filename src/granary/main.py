"""CLI entrypoint for granary."""

from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from granary import __version__
from granary.orchestrator.controllers import (
    LogsCommand,
    OrchestratorCliController,
    PruneCommand,
    RunCommand,
    RunListCommand,
    WorkerStartCommand,
    WorkerStatusCommand,
    WorkerStopCommand,
)
from granary.orchestrator.models import RunStatus
from granary.tracker.controllers import (
    CheckpointCommand,
    EventsCommand,
    InitiativeCreateCommand,
    LinkCommand,
    ProjectCreateCommand,
    ProjectListCommand,
    ProjectUpdateCommand,
    RefCommand,
    ScopeCommand,
    SearchCommand,
    SessionCreateCommand,
    SessionFocusCommand,
    SessionListCommand,
    StoreCommand,
    SweepCommand,
    TaskCreateCommand,
    TaskDepsCommand,
    TaskListCommand,
    TaskShowCommand,
    TaskTransitionCommand,
    TaskUpdateCommand,
    TrackerCliController,
)
from granary.tracker.errors import GranaryError
from granary.tracker.models import ProjectStatus, SessionStatus, TaskStatus

click.rich_click.USE_MARKDOWN = True
TRACKER_CONTROLLER = TrackerCliController()
ORCHESTRATOR_CONTROLLER = OrchestratorCliController()

CommandT = TypeVar("CommandT")

db_path_option = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="Workspace SQLite DB path. Defaults to GRANARY_DB_PATH or .granary/granary.db.",
)
expected_version_option = click.option(
    "--expected-version",
    type=click.IntRange(min=1),
    default=None,
    help="Fail with a version conflict unless the entity is at this version.",
)
owner_option = click.option(
    "--owner",
    default=None,
    help="Lease owner. Defaults to GRANARY_SESSION, then the OS user name.",
)
ttl_option = click.option(
    "--ttl",
    "ttl_seconds",
    type=click.IntRange(min=1),
    default=None,
    help="Lease TTL in seconds. Defaults to GRANARY_LEASE_TTL_SECONDS.",
)


def scope_options(function: Callable) -> Callable:
    function = click.option("--session", "session_id", default=None, help="Session scope.")(
        function,
    )
    function = click.option(
        "--initiative",
        "initiative_ref",
        default=None,
        help="Initiative scope.",
    )(function)
    return click.option("--project", "project_ref", default=None, help="Project scope.")(function)


@click.group()
@click.version_option(version=__version__, prog_name="granary")
def granary() -> None:
    """Task tracker and event-driven worker supervisor for coding agents.

    Scope commands to a session with `GRANARY_SESSION`; exit code **4** means a
    claim or version conflict and **5** means unmet dependencies.
    """


@granary.command("init")
@db_path_option
def init_store(db_path: Path | None) -> None:
    """Create or migrate the workspace store."""

    _emit(TRACKER_CONTROLLER.init_store, StoreCommand(db_path=db_path))


# Initiatives


@granary.group()
def initiative() -> None:
    """Initiatives: groups of related projects."""


@initiative.command("create")
@db_path_option
@click.argument("name")
@click.option("--slug", default=None, help="Custom slug; derived from the name by default.")
@click.option("--description", default=None)
@click.option("--owner", default=None)
@click.option("--tag", "tags", multiple=True, help="Tag. Can be repeated.")
def initiative_create(  # noqa: PLR0913
    db_path: Path | None,
    name: str,
    slug: str | None,
    description: str | None,
    owner: str | None,
    tags: tuple[str, ...],
) -> None:
    """Create an initiative."""

    _emit(
        TRACKER_CONTROLLER.create_initiative,
        InitiativeCreateCommand(
            db_path=db_path,
            name=name,
            slug=slug,
            description=description,
            owner=owner,
            tags=tags,
        ),
    )


@initiative.command("list")
@db_path_option
def initiative_list(db_path: Path | None) -> None:
    """List initiatives."""

    _emit(TRACKER_CONTROLLER.list_initiatives, StoreCommand(db_path=db_path))


@initiative.command("show")
@db_path_option
@click.argument("initiative_ref")
def initiative_show(db_path: Path | None, initiative_ref: str) -> None:
    """Show an initiative with blocked/unblocked/completed projects."""

    _emit(TRACKER_CONTROLLER.show_initiative, RefCommand(db_path=db_path, ref=initiative_ref))


@initiative.command("delete")
@db_path_option
@click.argument("initiative_ref")
def initiative_delete(db_path: Path | None, initiative_ref: str) -> None:
    """Delete an initiative; its projects are kept."""

    _emit(TRACKER_CONTROLLER.delete_initiative, RefCommand(db_path=db_path, ref=initiative_ref))


@initiative.command("add-project")
@db_path_option
@click.argument("initiative_ref")
@click.argument("project_ref")
def initiative_add_project(db_path: Path | None, initiative_ref: str, project_ref: str) -> None:
    """Add a project to an initiative."""

    _emit(
        TRACKER_CONTROLLER.add_initiative_project,
        LinkCommand(db_path=db_path, ref=initiative_ref, other_ref=project_ref),
    )


@initiative.command("remove-project")
@db_path_option
@click.argument("initiative_ref")
@click.argument("project_ref")
def initiative_remove_project(db_path: Path | None, initiative_ref: str, project_ref: str) -> None:
    """Remove a project from an initiative."""

    _emit(
        TRACKER_CONTROLLER.remove_initiative_project,
        LinkCommand(db_path=db_path, ref=initiative_ref, other_ref=project_ref),
    )


# Projects


@granary.group()
def project() -> None:
    """Projects and project dependencies."""


@project.command("create")
@db_path_option
@click.argument("name")
@click.option("--slug", default=None, help="Custom slug; derived from the name by default.")
@click.option("--description", default=None)
@click.option("--owner", default=None)
@click.option("--tag", "tags", multiple=True, help="Tag. Can be repeated.")
def project_create(  # noqa: PLR0913
    db_path: Path | None,
    name: str,
    slug: str | None,
    description: str | None,
    owner: str | None,
    tags: tuple[str, ...],
) -> None:
    """Create a project."""

    _emit(
        TRACKER_CONTROLLER.create_project,
        ProjectCreateCommand(
            db_path=db_path,
            name=name,
            slug=slug,
            description=description,
            owner=owner,
            tags=tags,
        ),
    )


@project.command("list")
@db_path_option
@click.option(
    "--status",
    type=click.Choice([status.value for status in ProjectStatus]),
    default=None,
)
def project_list(db_path: Path | None, status: str | None) -> None:
    """List projects with their dependency gate."""

    _emit(TRACKER_CONTROLLER.list_projects, ProjectListCommand(db_path=db_path, status=status))


@project.command("show")
@db_path_option
@click.argument("project_ref")
def project_show(db_path: Path | None, project_ref: str) -> None:
    """Show a project and its tasks."""

    _emit(TRACKER_CONTROLLER.show_project, RefCommand(db_path=db_path, ref=project_ref))


@project.command("update")
@db_path_option
@click.argument("project_ref")
@click.option("--name", default=None)
@click.option("--description", default=None)
@click.option("--owner", default=None)
@click.option(
    "--status",
    type=click.Choice([status.value for status in ProjectStatus]),
    default=None,
)
@click.option("--tag", "tags", multiple=True, help="Replace tags. Can be repeated.")
@expected_version_option
def project_update(  # noqa: PLR0913
    db_path: Path | None,
    project_ref: str,
    name: str | None,
    description: str | None,
    owner: str | None,
    status: str | None,
    tags: tuple[str, ...],
    expected_version: int | None,
) -> None:
    """Update project fields."""

    _emit(
        TRACKER_CONTROLLER.update_project,
        ProjectUpdateCommand(
            db_path=db_path,
            ref=project_ref,
            name=name,
            description=description,
            owner=owner,
            status=status,
            tags=tags or None,
            expected_version=expected_version,
        ),
    )


@project.command("delete")
@db_path_option
@click.argument("project_ref")
def project_delete(db_path: Path | None, project_ref: str) -> None:
    """Delete a project with its tasks."""

    _emit(TRACKER_CONTROLLER.delete_project, RefCommand(db_path=db_path, ref=project_ref))


@project.command("depend")
@db_path_option
@click.argument("project_ref")
@click.argument("depends_on_ref")
@expected_version_option
def project_depend(
    db_path: Path | None,
    project_ref: str,
    depends_on_ref: str,
    expected_version: int | None,
) -> None:
    """Make PROJECT_REF depend on DEPENDS_ON_REF."""

    _emit(
        TRACKER_CONTROLLER.add_project_dependency,
        LinkCommand(
            db_path=db_path,
            ref=project_ref,
            other_ref=depends_on_ref,
            expected_version=expected_version,
        ),
    )


@project.command("undepend")
@db_path_option
@click.argument("project_ref")
@click.argument("depends_on_ref")
@expected_version_option
def project_undepend(
    db_path: Path | None,
    project_ref: str,
    depends_on_ref: str,
    expected_version: int | None,
) -> None:
    """Remove a project dependency."""

    _emit(
        TRACKER_CONTROLLER.remove_project_dependency,
        LinkCommand(
            db_path=db_path,
            ref=project_ref,
            other_ref=depends_on_ref,
            expected_version=expected_version,
        ),
    )


# Tasks


@granary.group()
def task() -> None:
    """Tasks: lifecycle, leases and dependencies."""


@task.command("create")
@db_path_option
@click.argument("project_ref")
@click.argument("title")
@click.option("--description", default=None)
@click.option("--priority", default="P2", show_default=True, help="P0 (most urgent) to P3.")
@click.option(
    "--draft",
    is_flag=True,
    default=False,
    help="Create in draft; run `task ready` later.",
)
@click.option("--depends-on", "dependency_ids", multiple=True, help="Task id. Can be repeated.")
def task_create(  # noqa: PLR0913
    db_path: Path | None,
    project_ref: str,
    title: str,
    description: str | None,
    priority: str,
    draft: bool,
    dependency_ids: tuple[str, ...],
) -> None:
    """Create a task in a project."""

    _emit(
        TRACKER_CONTROLLER.create_task,
        TaskCreateCommand(
            db_path=db_path,
            project_ref=project_ref,
            title=title,
            description=description,
            priority=priority,
            draft=draft,
            dependency_ids=dependency_ids,
        ),
    )


@task.command("show")
@db_path_option
@click.argument("task_id")
@click.option("--json", "as_json", is_flag=True, default=False, help="Print JSON.")
def task_show(db_path: Path | None, task_id: str, as_json: bool) -> None:
    """Show a task."""

    _emit(
        TRACKER_CONTROLLER.show_task,
        TaskShowCommand(
            db_path=db_path,
            task_id=task_id,
            output_format="json" if as_json else "text",
        ),
    )


@task.command("list")
@db_path_option
@scope_options
@click.option(
    "--status",
    "statuses",
    type=click.Choice([status.value for status in TaskStatus]),
    multiple=True,
    help="Status filter. Can be repeated.",
)
def task_list(
    db_path: Path | None,
    project_ref: str | None,
    initiative_ref: str | None,
    session_id: str | None,
    statuses: tuple[str, ...],
) -> None:
    """List tasks in scope."""

    _emit(
        TRACKER_CONTROLLER.list_tasks,
        TaskListCommand(
            db_path=db_path,
            project_ref=project_ref,
            initiative_ref=initiative_ref,
            session_id=session_id,
            statuses=statuses,
        ),
    )


@task.command("update")
@db_path_option
@click.argument("task_id")
@click.option("--title", default=None)
@click.option("--description", default=None)
@click.option("--priority", default=None)
@expected_version_option
def task_update(  # noqa: PLR0913
    db_path: Path | None,
    task_id: str,
    title: str | None,
    description: str | None,
    priority: str | None,
    expected_version: int | None,
) -> None:
    """Update task fields."""

    _emit(
        TRACKER_CONTROLLER.update_task,
        TaskUpdateCommand(
            db_path=db_path,
            task_id=task_id,
            title=title,
            description=description,
            priority=priority,
            expected_version=expected_version,
        ),
    )


@task.command("ready")
@db_path_option
@click.argument("task_id")
@expected_version_option
def task_ready(db_path: Path | None, task_id: str, expected_version: int | None) -> None:
    """Move a draft task to todo."""

    _emit(
        TRACKER_CONTROLLER.ready_task,
        TaskTransitionCommand(db_path=db_path, task_id=task_id, expected_version=expected_version),
    )


@task.command("claim")
@db_path_option
@click.argument("task_id")
@owner_option
@ttl_option
@expected_version_option
def task_claim(
    db_path: Path | None,
    task_id: str,
    owner: str | None,
    ttl_seconds: int | None,
    expected_version: int | None,
) -> None:
    """Take an exclusive lease on a task (exit 4 if someone else holds it)."""

    _emit(
        TRACKER_CONTROLLER.claim_task,
        TaskTransitionCommand(
            db_path=db_path,
            task_id=task_id,
            owner=owner,
            ttl_seconds=ttl_seconds,
            expected_version=expected_version,
        ),
    )


@task.command("start")
@db_path_option
@click.argument("task_id")
@owner_option
@ttl_option
@expected_version_option
def task_start(
    db_path: Path | None,
    task_id: str,
    owner: str | None,
    ttl_seconds: int | None,
    expected_version: int | None,
) -> None:
    """Start a task (exit 5 while dependencies are not done)."""

    _emit(
        TRACKER_CONTROLLER.start_task,
        TaskTransitionCommand(
            db_path=db_path,
            task_id=task_id,
            owner=owner,
            ttl_seconds=ttl_seconds,
            expected_version=expected_version,
        ),
    )


@task.command("done")
@db_path_option
@click.argument("task_id")
@owner_option
@click.option("--output", default=None, help="Result text passed to downstream workers.")
@expected_version_option
def task_done(
    db_path: Path | None,
    task_id: str,
    owner: str | None,
    output: str | None,
    expected_version: int | None,
) -> None:
    """Complete a task and release its lease."""

    _emit(
        TRACKER_CONTROLLER.done_task,
        TaskTransitionCommand(
            db_path=db_path,
            task_id=task_id,
            owner=owner,
            output=output,
            expected_version=expected_version,
        ),
    )


@task.command("block")
@db_path_option
@click.argument("task_id")
@click.option("--reason", required=True, help="Why the task is blocked.")
@owner_option
@expected_version_option
def task_block(
    db_path: Path | None,
    task_id: str,
    reason: str,
    owner: str | None,
    expected_version: int | None,
) -> None:
    """Mark a task blocked."""

    _emit(
        TRACKER_CONTROLLER.block_task,
        TaskTransitionCommand(
            db_path=db_path,
            task_id=task_id,
            reason=reason,
            owner=owner,
            expected_version=expected_version,
        ),
    )


@task.command("unblock")
@db_path_option
@click.argument("task_id")
@expected_version_option
def task_unblock(db_path: Path | None, task_id: str, expected_version: int | None) -> None:
    """Move a blocked task back to todo."""

    _emit(
        TRACKER_CONTROLLER.unblock_task,
        TaskTransitionCommand(db_path=db_path, task_id=task_id, expected_version=expected_version),
    )


@task.command("reopen")
@db_path_option
@click.argument("task_id")
@expected_version_option
def task_reopen(db_path: Path | None, task_id: str, expected_version: int | None) -> None:
    """Move a done task back to todo."""

    _emit(
        TRACKER_CONTROLLER.reopen_task,
        TaskTransitionCommand(db_path=db_path, task_id=task_id, expected_version=expected_version),
    )


@task.command("release")
@db_path_option
@click.argument("task_id")
@owner_option
@expected_version_option
def task_release(
    db_path: Path | None,
    task_id: str,
    owner: str | None,
    expected_version: int | None,
) -> None:
    """Give up a lease."""

    _emit(
        TRACKER_CONTROLLER.release_task,
        TaskTransitionCommand(
            db_path=db_path,
            task_id=task_id,
            owner=owner,
            expected_version=expected_version,
        ),
    )


@task.command("heartbeat")
@db_path_option
@click.argument("task_id")
@owner_option
@ttl_option
@expected_version_option
def task_heartbeat(
    db_path: Path | None,
    task_id: str,
    owner: str | None,
    ttl_seconds: int | None,
    expected_version: int | None,
) -> None:
    """Extend the caller's lease (exit 4 if the caller is not the holder)."""

    _emit(
        TRACKER_CONTROLLER.heartbeat_task,
        TaskTransitionCommand(
            db_path=db_path,
            task_id=task_id,
            owner=owner,
            ttl_seconds=ttl_seconds,
            expected_version=expected_version,
        ),
    )


@task.command("deps")
@db_path_option
@click.argument("task_id")
@click.option("--add", multiple=True, help="Add a dependency. Can be repeated.")
@click.option("--remove", multiple=True, help="Remove a dependency. Can be repeated.")
@expected_version_option
def task_deps(
    db_path: Path | None,
    task_id: str,
    add: tuple[str, ...],
    remove: tuple[str, ...],
    expected_version: int | None,
) -> None:
    """Show or edit task dependencies."""

    _emit(
        TRACKER_CONTROLLER.task_deps,
        TaskDepsCommand(
            db_path=db_path,
            task_id=task_id,
            add=add,
            remove=remove,
            expected_version=expected_version,
        ),
    )


@task.command("next")
@db_path_option
@scope_options
@click.option("--all", "show_all", is_flag=True, default=False, help="List every actionable task.")
@click.option("--json", "as_json", is_flag=True, default=False, help="Print JSON.")
def task_next(  # noqa: PLR0913
    db_path: Path | None,
    project_ref: str | None,
    initiative_ref: str | None,
    session_id: str | None,
    show_all: bool,
    as_json: bool,
) -> None:
    """Most urgent actionable task in scope."""

    _emit(
        TRACKER_CONTROLLER.next_task,
        ScopeCommand(
            db_path=db_path,
            project_ref=project_ref,
            initiative_ref=initiative_ref,
            session_id=session_id,
            show_all=show_all,
            output_format="json" if as_json else "text",
        ),
    )


@task.command("sweep")
@db_path_option
def task_sweep(db_path: Path | None) -> None:
    """Clear expired leases and emit lease-expired events."""

    _emit(TRACKER_CONTROLLER.sweep_leases, SweepCommand(db_path=db_path))


# Sessions


@granary.group()
def session() -> None:
    """Sessions: shared scope for cooperating agents."""


@session.command("create")
@db_path_option
@click.option("--name", default=None)
@click.option("--owner", default=None)
@click.option("--mode", default=None, help="Free-form mode label, for example plan or execute.")
@click.option("--project", "projects", multiple=True, help="Attach a project. Can be repeated.")
def session_create(
    db_path: Path | None,
    name: str | None,
    owner: str | None,
    mode: str | None,
    projects: tuple[str, ...],
) -> None:
    """Create a session and print its export line."""

    _emit(
        TRACKER_CONTROLLER.create_session,
        SessionCreateCommand(
            db_path=db_path,
            name=name,
            owner=owner,
            mode=mode,
            projects=projects,
        ),
    )


@session.command("show")
@db_path_option
@click.argument("session_id", required=False)
def session_show(db_path: Path | None, session_id: str | None) -> None:
    """Show a session (defaults to GRANARY_SESSION)."""

    _emit(TRACKER_CONTROLLER.show_session, RefCommand(db_path=db_path, ref=session_id))


@session.command("list")
@db_path_option
@click.option(
    "--status",
    type=click.Choice([status.value for status in SessionStatus]),
    default=None,
)
def session_list(db_path: Path | None, status: str | None) -> None:
    """List sessions."""

    _emit(TRACKER_CONTROLLER.list_sessions, SessionListCommand(db_path=db_path, status=status))


@session.command("close")
@db_path_option
@click.argument("session_id", required=False)
def session_close(db_path: Path | None, session_id: str | None) -> None:
    """Close a session."""

    _emit(TRACKER_CONTROLLER.close_session, RefCommand(db_path=db_path, ref=session_id))


@session.command("attach")
@db_path_option
@click.argument("project_ref")
@click.option("--session", "session_id", default=None, help="Defaults to GRANARY_SESSION.")
def session_attach(db_path: Path | None, project_ref: str, session_id: str | None) -> None:
    """Attach a project to a session."""

    _emit(
        TRACKER_CONTROLLER.attach_session_project,
        LinkCommand(db_path=db_path, ref=session_id, other_ref=project_ref),
    )


@session.command("detach")
@db_path_option
@click.argument("project_ref")
@click.option("--session", "session_id", default=None, help="Defaults to GRANARY_SESSION.")
def session_detach(db_path: Path | None, project_ref: str, session_id: str | None) -> None:
    """Detach a project from a session."""

    _emit(
        TRACKER_CONTROLLER.detach_session_project,
        LinkCommand(db_path=db_path, ref=session_id, other_ref=project_ref),
    )


@session.command("focus")
@db_path_option
@click.argument("task_id", required=False)
@click.option("--session", "session_id", default=None, help="Defaults to GRANARY_SESSION.")
def session_focus(db_path: Path | None, task_id: str | None, session_id: str | None) -> None:
    """Set (or clear, without TASK_ID) the session's focus task."""

    _emit(
        TRACKER_CONTROLLER.focus_session,
        SessionFocusCommand(db_path=db_path, session_id=session_id, task_id=task_id),
    )


# Checkpoints


@granary.group()
def checkpoint() -> None:
    """Named snapshots of the workspace store."""


@checkpoint.command("create")
@db_path_option
@click.argument("name")
@click.option("--overwrite", is_flag=True, default=False, help="Replace an existing checkpoint.")
def checkpoint_create(db_path: Path | None, name: str, overwrite: bool) -> None:
    """Snapshot the current state."""

    _emit(
        TRACKER_CONTROLLER.create_checkpoint,
        CheckpointCommand(db_path=db_path, name=name, overwrite=overwrite),
    )


@checkpoint.command("restore")
@db_path_option
@click.argument("name")
def checkpoint_restore(db_path: Path | None, name: str) -> None:
    """Replace the current state with a snapshot."""

    _emit(TRACKER_CONTROLLER.restore_checkpoint, CheckpointCommand(db_path=db_path, name=name))


@checkpoint.command("list")
@db_path_option
def checkpoint_list(db_path: Path | None) -> None:
    """List checkpoints."""

    _emit(TRACKER_CONTROLLER.list_checkpoints, StoreCommand(db_path=db_path))


@checkpoint.command("prune")
@db_path_option
@click.argument("name")
def checkpoint_prune(db_path: Path | None, name: str) -> None:
    """Delete a checkpoint."""

    _emit(TRACKER_CONTROLLER.prune_checkpoint, CheckpointCommand(db_path=db_path, name=name))


# Search, summary, events


@granary.command("search")
@db_path_option
@click.argument("query")
@click.option("--limit", type=click.IntRange(min=1, max=500), default=50, show_default=True)
def search(db_path: Path | None, query: str, limit: int) -> None:
    """Search project and task names and descriptions."""

    _emit(TRACKER_CONTROLLER.search, SearchCommand(db_path=db_path, query=query, limit=limit))


@granary.command("summary")
@db_path_option
@scope_options
@click.option(
    "--next-limit",
    type=click.IntRange(min=0, max=50),
    default=5,
    show_default=True,
    help="How many next actions to list.",
)
def summary(
    db_path: Path | None,
    project_ref: str | None,
    initiative_ref: str | None,
    session_id: str | None,
    next_limit: int,
) -> None:
    """Counts, blocked tasks and next actions for a scope."""

    _emit(
        TRACKER_CONTROLLER.summary,
        ScopeCommand(
            db_path=db_path,
            project_ref=project_ref,
            initiative_ref=initiative_ref,
            session_id=session_id,
            limit=next_limit,
        ),
    )


@granary.command("events")
@db_path_option
@click.option("--after", "after_id", type=click.IntRange(min=0), default=0, show_default=True)
@click.option("--entity", "entity_id", default=None, help="Only events of this entity.")
@click.option("--type", "event_type", default=None, help="Event type, for example task.done.")
@click.option("--limit", type=click.IntRange(min=1, max=10_000), default=100, show_default=True)
@click.option("--json", "as_json", is_flag=True, default=False, help="Print JSON lines.")
def events(  # noqa: PLR0913
    db_path: Path | None,
    after_id: int,
    entity_id: str | None,
    event_type: str | None,
    limit: int,
    as_json: bool,
) -> None:
    """List lifecycle events after a cursor."""

    _emit(
        TRACKER_CONTROLLER.list_events,
        EventsCommand(
            db_path=db_path,
            after_id=after_id,
            entity_id=entity_id,
            event_type=event_type,
            limit=limit,
            output_format="json" if as_json else "text",
        ),
    )


# Workers


@granary.group()
def worker() -> None:
    """Event-driven workers that spawn runner processes."""


@worker.command("start")
@click.option(
    "--workspace",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Workspace whose events the worker consumes. Defaults to GRANARY_WORKSPACE or cwd.",
)
@click.option("--runner", default=None, help="Runner name from $GRANARY_HOME/config.toml.")
@click.option("--command", "runner_command", default=None, help="Executable to run per event.")
@click.option(
    "--arg",
    "args",
    multiple=True,
    help="Argument template, e.g. `{task.id}`. Can be repeated.",
)
@click.option("--on", default=None, help="Event type pattern, e.g. `task.unblocked` or `task.*`.")
@click.option("--filter", "filters", multiple=True, help="`field=value` or `field!=value`.")
@click.option("--env", multiple=True, help="KEY=VALUE for the runner. Can be repeated.")
@click.option("--concurrency", type=click.IntRange(min=1), default=None)
@click.option("--max-attempts", type=click.IntRange(min=1), default=None)
@click.option(
    "--replay",
    is_flag=True,
    default=False,
    help="Consume events from the beginning of the log.",
)
@click.option("--detach", is_flag=True, default=False, help="Run in the background.")
@click.option(
    "--restore",
    is_flag=True,
    default=False,
    help="Relaunch registered workers whose process exited, from their stored cursor.",
)
@click.option("--worker-id", default=None, hidden=True)
def worker_start(  # noqa: PLR0913
    workspace: Path | None,
    runner: str | None,
    runner_command: str | None,
    args: tuple[str, ...],
    on: str | None,
    filters: tuple[str, ...],
    env: tuple[str, ...],
    concurrency: int | None,
    max_attempts: int | None,
    replay: bool,
    detach: bool,
    restore: bool,
    worker_id: str | None,
) -> None:
    """Register a worker and run it until stopped, or restore exited workers."""

    _emit(
        ORCHESTRATOR_CONTROLLER.start_worker,
        WorkerStartCommand(
            workspace=workspace,
            runner=runner,
            command=runner_command,
            args=args,
            on=on,
            filters=filters,
            env=env,
            concurrency=concurrency,
            max_attempts=max_attempts,
            replay=replay,
            detach=detach,
            worker_id=worker_id,
            restore=restore,
        ),
    )


@worker.command("stop")
@click.argument("worker_id", required=False)
@click.option("--all", "all_workers", is_flag=True, default=False, help="Stop every worker.")
@click.option(
    "--runs/--no-runs",
    "stop_runs",
    default=False,
    show_default=True,
    help="Terminate in-flight runs instead of letting them finish.",
)
def worker_stop(worker_id: str | None, all_workers: bool, stop_runs: bool) -> None:
    """Stop a worker."""

    _emit(
        ORCHESTRATOR_CONTROLLER.stop_worker,
        WorkerStopCommand(worker_id=worker_id, all_workers=all_workers, stop_runs=stop_runs),
    )


@worker.command("status")
@click.argument("worker_id", required=False)
@click.option("--all", "show_all", is_flag=True, default=False, help="Include stopped workers.")
def worker_status(worker_id: str | None, show_all: bool) -> None:
    """Show workers, or one worker with its recent runs."""

    _emit(
        ORCHESTRATOR_CONTROLLER.worker_status,
        WorkerStatusCommand(worker_id=worker_id, show_all=show_all),
    )


@worker.command("logs")
@click.argument("worker_id")
@click.option("-n", "--lines", type=click.IntRange(min=1), default=50, show_default=True)
def worker_logs(worker_id: str, lines: int) -> None:
    """Tail a worker's log."""

    _emit(ORCHESTRATOR_CONTROLLER.worker_logs, LogsCommand(ref=worker_id, lines=lines))


@worker.command("prune")
@click.option("--keep-logs", is_flag=True, default=False, help="Keep log directories.")
def worker_prune(keep_logs: bool) -> None:
    """Remove stopped and errored workers."""

    _emit(ORCHESTRATOR_CONTROLLER.prune_workers, PruneCommand(keep_logs=keep_logs))


# Runs


@granary.group()
def run() -> None:
    """Runs: one runner process per matched event, with retries."""


@run.command("list")
@click.option("--worker", "worker_id", default=None, help="Only runs of this worker.")
@click.option(
    "--status",
    "statuses",
    type=click.Choice([status.value for status in RunStatus]),
    multiple=True,
    help="Status filter. Can be repeated.",
)
@click.option("--limit", type=click.IntRange(min=1, max=1000), default=50, show_default=True)
def run_list(worker_id: str | None, statuses: tuple[str, ...], limit: int) -> None:
    """List recent runs."""

    _emit(
        ORCHESTRATOR_CONTROLLER.list_runs,
        RunListCommand(worker_id=worker_id, statuses=statuses, limit=limit),
    )


@run.command("status")
@click.argument("run_id")
def run_status(run_id: str) -> None:
    """Show a run."""

    _emit(ORCHESTRATOR_CONTROLLER.run_status, RunCommand(run_id=run_id))


@run.command("stop")
@click.argument("run_id")
def run_stop(run_id: str) -> None:
    """Cancel a run and terminate its process."""

    _emit(ORCHESTRATOR_CONTROLLER.stop_run, RunCommand(run_id=run_id))


@run.command("pause")
@click.argument("run_id")
def run_pause(run_id: str) -> None:
    """Suspend a running run's process."""

    _emit(ORCHESTRATOR_CONTROLLER.pause_run, RunCommand(run_id=run_id))


@run.command("resume")
@click.argument("run_id")
def run_resume(run_id: str) -> None:
    """Continue a paused run."""

    _emit(ORCHESTRATOR_CONTROLLER.resume_run, RunCommand(run_id=run_id))


@run.command("logs")
@click.argument("run_id")
@click.option("-n", "--lines", type=click.IntRange(min=1), default=50, show_default=True)
def run_logs(run_id: str, lines: int) -> None:
    """Tail a run's output log."""

    _emit(ORCHESTRATOR_CONTROLLER.run_logs, LogsCommand(ref=run_id, lines=lines))


def _emit(handler: Callable[[CommandT], list[str]], command: CommandT) -> None:
    try:
        lines = handler(command)
    except GranaryError as error:
        raise _cli_error(str(error), exit_code=error.exit_code) from error
    except ValueError as error:
        raise _cli_error(str(error), exit_code=2) from error
    _emit_lines(lines)


def _cli_error(message: str, *, exit_code: int) -> click.ClickException:
    exception = click.ClickException(message)
    exception.exit_code = exit_code
    return exception


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    granary()
