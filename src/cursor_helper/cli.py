"""CLI entry point for cursor-helper."""

import logging
import os
import sys
from pathlib import Path

import click
import uvicorn

from .chats import read_sessions
from .config import get_projects_path, get_workspace_storage_path
from .core import MigrationPlan, OperationResult, WorkspaceRecord
from .errors import EXIT_FATAL, EXIT_IO, EXIT_VALIDATION, StorageRootError, ValidationError
from .export import ExportOptions, sessions_to_json, sessions_to_markdown, write_split
from .identity import compute_identity, path_to_folder_id
from .locator import WorkspaceLocator
from .migration import MigrationEngine
from .paths import canonicalize
from .reaper import OrphanReaper
from .storage import count_chat_sessions, directory_size, format_size

logger = logging.getLogger(__name__)


@click.group()
@click.option(
    "--storage-root",
    type=click.Path(file_okay=False, path_type=Path),
    help="Cursor workspaceStorage directory (default: platform location).",
)
@click.option(
    "--projects-root",
    type=click.Path(file_okay=False, path_type=Path),
    help="Cursor per-project data directory (default: ~/.cursor/projects).",
)
@click.option("-v", "--verbose", is_flag=True, help="Log debug output to stderr.")
@click.version_option("0.1.0", prog_name="cursor-helper")
@click.pass_context
def main(ctx, storage_root, projects_root, verbose):
    """Rename, copy, back up and clean up Cursor projects without losing chat history."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    storage_root = storage_root or get_workspace_storage_path()
    ctx.obj = {
        "storage_root": storage_root,
        "projects_root": projects_root or get_projects_path(),
        "global_storage": storage_root.parent / "globalStorage",
    }


@main.command("list")
@click.option("--with-id", is_flag=True, help="Show the workspace id of each project.")
@click.option(
    "-s", "--sort",
    type=click.Choice(["modified", "name", "chats"]),
    default="modified",
    show_default=True,
)
@click.option("-r", "--reverse", is_flag=True, help="Reverse sort order.")
@click.option("-f", "--filter", "filter_", help="local, remote, or a substring of the path.")
@click.option("-n", "--limit", type=int, help="Show at most N projects.")
@click.pass_context
def list_projects(ctx, with_id, sort, reverse, filter_, limit):
    """List all Cursor projects."""
    locator = _get_locator(ctx)
    rows = []
    for record in locator.records():
        path = record.claimed_path
        if path is None:
            continue
        if filter_ == "local" and path.is_remote:
            continue
        if filter_ == "remote" and not path.is_remote:
            continue
        if filter_ not in (None, "local", "remote") and filter_ not in str(path):
            continue
        rows.append((record, count_chat_sessions(record.directory)))

    if sort == "name":
        rows.sort(key=lambda r: str(r[0].claimed_path))
    elif sort == "chats":
        rows.sort(key=lambda r: r[1], reverse=True)
    else:
        rows.sort(key=lambda r: _mtime(r[0]), reverse=True)
    if reverse:
        rows.reverse()

    total = len(rows)
    if limit is not None:
        rows = rows[:limit]

    for record, chats in rows:
        path = record.claimed_path
        remote = f"{path.scheme}:{path.host}" if path.is_remote else "-"
        modified = record.last_modified
        parts = [record.identity.value] if with_id else []
        parts += [
            remote,
            path.path if path.is_remote else path.fs_path,
            str(chats),
            modified.strftime("%Y-%m-%d %H:%M") if modified else "-",
        ]
        click.echo("  ".join(parts))

    if len(rows) < total:
        click.echo(f"\nShowing {len(rows)} of {total} projects")
    else:
        click.echo(f"\n{total} projects found")


@main.command()
@click.argument("project", required=False)
@click.pass_context
def stats(ctx, project):
    """Show identifiers and storage usage for a project (default: current directory)."""
    locator = _get_locator(ctx)
    path = canonicalize(project or os.getcwd())
    identity = compute_identity(path)
    folder_id = path_to_folder_id(path)

    records = locator.find(path)
    workspace_size = sum(directory_size(r.directory) for r in records)
    chat_count = sum(count_chat_sessions(r.directory) for r in records)
    projects_dir = ctx.obj["projects_root"] / folder_id
    projects_size = directory_size(projects_dir) if projects_dir.is_dir() else 0

    click.echo(f"Project: {path}")
    click.echo(f"Folder ID: {folder_id}")
    click.echo(f"Computed ID: {identity.value}{' (approximate)' if identity.approximate else ''}")
    if records:
        for record in records:
            click.echo(f"Workspace ID: {record.identity.value}")
    else:
        click.echo("Workspace ID: (not found)")
    click.echo("")
    click.echo(f"Chat Sessions: {chat_count}")
    click.echo(f"Workspace Storage: {format_size(workspace_size)}")
    click.echo(f"Projects Data: {format_size(projects_size)}")
    click.echo(f"Total Cursor Data: {format_size(workspace_size + projects_size)}")


@main.command()
@click.argument("old_path")
@click.argument("new_path")
@click.option("-n", "--dry-run", is_flag=True, help="Show what would be done without making changes.")
@click.option("-c", "--copy", "copy_mode", is_flag=True, help="Copy instead of move.")
@click.option("--storage-only", is_flag=True, help="Leave the project folder itself alone.")
@click.option("-y", "--yes", is_flag=True, help="Skip the confirmation prompt.")
@click.pass_context
def rename(ctx, old_path, new_path, dry_run, copy_mode, storage_only, yes):
    """Move (or copy) a project while keeping its chat history."""
    engine = _get_engine(ctx)
    try:
        plan = engine.plan(
            "rename", old_path, new_path,
            mode="copy" if copy_mode else "move",
            dry_run=dry_run,
            storage_only=storage_only,
        )
    except ValidationError as e:
        _fail(str(e), EXIT_VALIDATION)

    _describe_plan(plan)
    if not dry_run:
        _confirm(yes, "Proceed?")
    _report(engine.relocate(plan))


@main.command("clone")
@click.argument("source")
@click.argument("new_path", required=False)
@click.option("-n", "--dry-run", is_flag=True, help="Show what would be done without making changes.")
@click.pass_context
def clone_project(ctx, source, new_path, dry_run):
    """Copy a project and its chat history (default: next to it as <name>-copy)."""
    engine = _get_engine(ctx)
    try:
        record = engine.locator.resolve(source)
        if new_path is None:
            if record.claimed_path is None:
                raise ValidationError(f"Workspace {record.identity.value} has no project path to clone")
            new_path = engine.clone_destination(record.claimed_path)
        plan = engine.plan("clone", record, new_path, mode="copy", dry_run=dry_run)
    except ValidationError as e:
        _fail(str(e), EXIT_VALIDATION)

    _describe_plan(plan)
    _report(engine.relocate(plan))


@main.command()
@click.argument("project")
@click.argument("archive", type=click.Path(dir_okay=False, path_type=Path))
@click.pass_context
def backup(ctx, project, archive):
    """Back up a project's Cursor data to a .tar.gz archive."""
    if not archive.name.endswith((".tar.gz", ".tgz")):
        archive = archive.with_name(archive.name + ".tar.gz")
    _report(_get_engine(ctx).backup(project, archive))


@main.command()
@click.argument("archive", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.argument("new_path")
@click.option("-n", "--dry-run", is_flag=True, help="Show what would be done without making changes.")
@click.option("-y", "--yes", is_flag=True, help="Skip the confirmation prompt.")
@click.pass_context
def restore(ctx, archive, new_path, dry_run, yes):
    """Restore a project's Cursor data from a backup archive."""
    engine = _get_engine(ctx)
    click.echo(f"Restoring {archive} -> {canonicalize(new_path)}")
    if not dry_run:
        _confirm(yes, "Proceed?")
    _report(engine.restore(archive, new_path, dry_run=dry_run))


@main.command()
@click.option("-n", "--dry-run", is_flag=True, help="Only list what would be deleted.")
@click.option("-y", "--yes", is_flag=True, help="Skip the confirmation prompt.")
@click.pass_context
def clean(ctx, dry_run, yes):
    """Remove workspace data for projects that no longer exist."""
    reaper = OrphanReaper(_get_locator(ctx))
    orphans = reaper.orphans()
    if not orphans:
        click.echo("No orphaned workspaces found. Everything is clean!")
        return

    click.echo(f"Found {len(orphans)} orphaned workspace(s):\n")
    for item in orphans:
        click.echo(f"  {item.record.directory} ({format_size(item.size)})")
        click.echo(click.style(f"    Original: {item.record.claimed_uri}", dim=True))
    total = sum(item.size for item in orphans)
    click.echo(f"\nTotal: {format_size(total)} in {len(orphans)} item(s)")

    if dry_run:
        click.echo(click.style("\n(DRY-RUN) No changes made.", fg="blue"))
        return

    _confirm(yes, "Delete these orphaned workspaces?")
    deleted = reaper.reap(orphans, confirmed=True)
    click.echo(
        f"\nCleaned up {deleted} workspace(s), "
        f"{len(reaper.skipped)} skipped, {len(reaper.failed)} failed"
    )
    for record in reaper.failed:
        click.echo(click.style(f"  Failed: {record.directory}", fg="red"), err=True)
    if reaper.failed:
        sys.exit(EXIT_IO)


@main.command("export-chat")
@click.argument("target")
@click.option("-f", "--format", "fmt", type=click.Choice(["md", "json"]), default="md", show_default=True)
@click.option("-o", "--output", type=click.Path(path_type=Path), help="Output file, or directory with --split.")
@click.option("--split", is_flag=True, help="Write one file per session into --output.")
@click.option("--with-thinking", is_flag=True, help="Include thinking blocks.")
@click.option("--with-tools", is_flag=True, help="Include tool calls.")
@click.option("--with-stats", is_flag=True, help="Include model names and token counts.")
@click.option("--verbose-export", is_flag=True, help="Include thinking, tools and stats.")
@click.option("--include-archived", is_flag=True, help="Include archived sessions.")
@click.option("--exclude-blank", is_flag=True, help="Skip sessions with no turns.")
@click.pass_context
def export_chat(ctx, target, fmt, output, split, with_thinking, with_tools, with_stats,
                verbose_export, include_archived, exclude_blank):
    """Export a project's chat history to Markdown or JSON."""
    if split and output is None:
        _fail("--split needs --output DIRECTORY", EXIT_VALIDATION)

    record = _resolve(_get_locator(ctx), target)
    options = ExportOptions.verbose() if verbose_export else ExportOptions(
        with_thinking=with_thinking, with_tools=with_tools, with_stats=with_stats,
    )
    reader = read_sessions(
        record,
        include_archived=include_archived,
        global_db=ctx.obj["global_storage"] / "state.vscdb",
    )
    sessions = [s for s in reader if s.turns or not exclude_blank]
    for warning in reader.warnings:
        click.echo(click.style(f"Warning: {warning}", fg="yellow"), err=True)

    project = str(record.claimed_path) if record.claimed_path else record.identity.value
    if split:
        paths = write_split(sessions, output, project, fmt, options)
        click.echo(f"Exported {len(paths)} sessions to directory: {output}")
        return

    if fmt == "json":
        content = sessions_to_json(sessions, project, options)
    else:
        content = sessions_to_markdown(sessions, project, options)

    if output:
        output.write_text(content, encoding="utf-8")
        click.echo(f"Exported to: {output}")
    else:
        click.echo(content)


@main.command()
@click.option("--port", default=8080, help="Port to serve on.")
@click.option("--host", default="127.0.0.1", help="Host to bind to.")
@click.pass_context
def serve(ctx, port: int, host: str):
    """Start the read-only web viewer."""
    os.environ["CURSOR_HELPER_STORAGE_PATH"] = str(ctx.obj["storage_root"])
    click.echo(f"Starting cursor-helper on http://{host}:{port}")
    uvicorn.run("cursor_helper.server:app", host=host, port=port, reload=False)


# ── Private helpers ──────────────────────────────────────────────


def _fail(message: str, code: int):
    click.echo(click.style(f"Error: {message}", fg="red"), err=True)
    sys.exit(code)


def _get_locator(ctx) -> WorkspaceLocator:
    try:
        return WorkspaceLocator(ctx.obj["storage_root"])
    except StorageRootError as e:
        _fail(str(e), EXIT_FATAL)


def _get_engine(ctx) -> MigrationEngine:
    return MigrationEngine(
        _get_locator(ctx),
        projects_root=ctx.obj["projects_root"],
        global_storage=ctx.obj["global_storage"],
    )


def _resolve(locator: WorkspaceLocator, target: str) -> WorkspaceRecord:
    try:
        return locator.resolve(target)
    except ValidationError as e:
        _fail(str(e), EXIT_VALIDATION)


def _confirm(yes: bool, prompt: str) -> None:
    """Ask before a destructive step; refuse when nobody can answer."""
    if yes:
        return
    if not sys.stdin.isatty():
        _fail("Refusing to continue without --yes when stdin is not interactive", EXIT_VALIDATION)
    if not click.confirm(prompt, default=False):
        click.echo("Aborted.")
        sys.exit(0)


def _describe_plan(plan: MigrationPlan) -> None:
    source = plan.source
    action = "Copy" if plan.mode == "copy" else "Move"
    if plan.dry_run:
        click.echo(click.style("=== DRY RUN ===", fg="blue"))
    click.echo(f"{action} {source.claimed_path or source.identity.value} -> {plan.destination}")
    click.echo(f"  Workspace ID: {source.identity.value}")
    if plan.carry_folder:
        click.echo(f"  Project folder will be {'copied' if plan.mode == 'copy' else 'moved'} too")


def _report(result: OperationResult) -> None:
    for warning in result.warnings:
        click.echo(click.style(f"Warning: {warning}", fg="yellow"), err=True)

    if not result.ok:
        _fail(result.reason or f"{result.operation} failed", result.exit_code)

    if result.reason:
        click.echo(result.reason)
    if result.destination_identity:
        click.echo(f"  New workspace ID: {result.destination_identity}")
    if result.details.get("archive") and not result.dry_run:
        click.echo(f"  Archive: {result.details['archive']}")
    label = "(DRY-RUN) " if result.dry_run else ""
    click.echo(click.style(f"{label}{result.operation.capitalize()} complete.", fg="green"))


def _mtime(record: WorkspaceRecord) -> float:
    modified = record.last_modified
    return modified.timestamp() if modified else 0.0
