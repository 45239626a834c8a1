from __future__ import annotations

import asyncio
import difflib
import json
import logging
import sys
from pathlib import Path

import click

from tagscan import __version__
from tagscan.config import (
    DEFAULT_CONFIG,
    ConfigError,
    get_project_config,
    load_config_file,
    load_repo_config,
    save_project_config,
)
from tagscan.db import (
    ProjectRow,
    add_project,
    add_tag,
    connect,
    get_change_set,
    get_project,
    link_project_repo,
    list_projects,
    list_scan_logs,
    list_status_history,
    list_tags,
    list_task_tags,
    list_tasks,
    load_change_set_items,
)
from tagscan.local import scan_local_tree
from tagscan.resolver import ResolveError, default_actions, resolve
from tagscan.scanning import (
    get_pending_updates,
    get_project_history,
    get_scan_history,
    initiate_scan,
    summarize_update,
)


def _suggest(name: str, choices: list[str]) -> str:
    matches = difflib.get_close_matches(name, choices, n=2, cutoff=0.5)
    return f" Did you mean: {', '.join(matches)}?" if matches else ""


class _JsonErrorGroup(click.Group):
    """Command group whose failures are JSON objects on stdout.

    Usage errors, command errors and interrupts all print
    ``{"ok": false, "error": ...}`` so scripted callers parse one format.
    """

    def resolve_command(self, ctx, args):  # type: ignore[override]
        try:
            return super().resolve_command(ctx, args)
        except click.UsageError:
            if not args:
                raise
            hint = _suggest(args[0], self.list_commands(ctx))
            raise click.UsageError(f"No such command '{args[0]}'.{hint}") from None

    def main(self, args=None, standalone_mode=True, **kwargs):  # type: ignore[override]
        try:
            rv = super().main(args=args, standalone_mode=False, **kwargs)
        except click.ClickException as e:
            message, code = e.format_message(), e.exit_code
        except click.Abort:
            message, code = "aborted", 1
        else:
            if standalone_mode:
                raise SystemExit(rv or 0)
            return rv
        click.echo(json.dumps({"ok": False, "error": message}))
        if standalone_mode:
            raise SystemExit(code)
        return code


@click.group(cls=_JsonErrorGroup)
@click.version_option(version=__version__)
@click.option("--verbose", "-v", is_flag=True, help="Log debug output to stderr.")
def main(verbose: bool):
    """Track tagged code annotations (TODO:, @idea, ...) as reviewable tasks.

    \b
    Quick start:
      tagscan project add NAME --owner ME --repo-url URL --default-config
      tagscan scan NAME --owner ME              Scan and queue a change-set
      tagscan updates NAME --owner ME           List pending change-sets
      tagscan resolve NAME ID --owner ME --defaults --approve

    \b
    Key concepts:
      snapshot    The annotations found by one scan
      update      A pending change-set diffing a scan against the last accepted one
      task        A durable record created from an approved annotation
    """
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            stream=sys.stderr,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )


def _echo(payload) -> None:
    click.echo(json.dumps(payload, indent=2, default=str))


def _not_found(entity: str, identifier: str) -> click.ClickException:
    """Build a ClickException with an actionable suggestion for missing entities."""
    hints = {
        "project": "Run 'tagscan project list' to see registered projects.",
        "update": "Run 'tagscan updates PROJECT --owner ID' to see pending updates.",
    }
    msg = f"{entity.title()} '{identifier}' not found."
    hint = hints.get(entity)
    if hint:
        msg += f"\n{hint}"
    return click.ClickException(msg)


def _resolve_project(conn, name: str, owner: str | None = None) -> ProjectRow:
    proj = get_project(conn, name)
    if not proj:
        raise _not_found("project", name)
    if owner is not None and proj["owner_id"] != owner:
        raise click.ClickException(f"Project '{name}' is not owned by '{owner}'.")
    return proj


def _parse_json_option(value: str | None, option: str) -> dict:
    if not value:
        return {}
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"not valid JSON: {e}", param_hint=option) from e
    if not isinstance(parsed, dict):
        raise click.BadParameter("expected a JSON object", param_hint=option)
    return parsed


# -- project --


@main.group()
def project():
    """Manage projects."""


@project.command("add")
@click.argument("name")
@click.option("--owner", required=True, help="Owner identity.")
@click.option("--repo-url", default=None, help="GitHub repository URL.")
@click.option("--branch", default=None, help="Branch to scan (default: repository HEAD).")
@click.option("--default-config", is_flag=True, help="Seed the default tag configuration.")
def project_add(
    name: str, owner: str, repo_url: str | None, branch: str | None, default_config: bool
):
    """Register a project."""
    with connect() as conn:
        try:
            proj = add_project(conn, name, owner, repo_url=repo_url, scan_branch=branch)
            if default_config:
                save_project_config(conn, proj["id"], owner, DEFAULT_CONFIG)
        except ValueError as e:
            raise click.ClickException(str(e)) from e
    _echo(dict(proj))


@project.command("list")
@click.option("--owner", default=None, help="Only projects owned by this identity.")
def project_list(owner: str | None):
    """List projects."""
    with connect() as conn:
        projects = [dict(p) for p in list_projects(conn, owner)]
    _echo(projects)


@project.command("show")
@click.argument("name_or_id")
def project_show(name_or_id: str):
    """Show project details and scan configuration."""
    with connect() as conn:
        proj = _resolve_project(conn, name_or_id)
        try:
            config = get_project_config(conn, proj["id"])
        except ConfigError as e:
            config = {"error": str(e)}
    output = dict(proj)
    output["config"] = config
    _echo(output)


@project.command("link")
@click.argument("name")
@click.argument("repo_url")
@click.option("--branch", default=None, help="Branch to scan.")
def project_link(name: str, repo_url: str, branch: str | None):
    """Link a project to a GitHub repository."""
    with connect() as conn:
        proj = _resolve_project(conn, name)
        link_project_repo(conn, proj["id"], repo_url, branch)
        proj = _resolve_project(conn, proj["id"])
    _echo(dict(proj))


# -- config --


@main.group("config")
def config_group():
    """Show or replace a project's tag configuration."""


@config_group.command("show")
@click.argument("name")
def config_show(name: str):
    """Show the tag matchers and ignore patterns of a project."""
    with connect() as conn:
        proj = _resolve_project(conn, name)
        try:
            config = get_project_config(conn, proj["id"])
        except ConfigError as e:
            raise click.ClickException(str(e)) from e
    _echo(config)


@config_group.command("set")
@click.argument("name")
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def config_set(name: str, file: Path):
    """Replace a project's configuration from a JSON or .toml FILE."""
    with connect() as conn:
        proj = _resolve_project(conn, name)
        try:
            config = save_project_config(conn, proj["id"], proj["owner_id"], load_config_file(file))
        except ConfigError as e:
            raise click.ClickException(str(e)) from e
    _echo(config)


# -- tag --


@main.group()
def tag():
    """Manage tags."""


@tag.command("add")
@click.argument("title")
@click.option("--owner", required=True, help="Owner identity.")
def tag_add(title: str, owner: str):
    """Create a tag (or revive a deleted one)."""
    with connect() as conn:
        row = add_tag(conn, owner, title)
    _echo(dict(row))


@tag.command("list")
@click.option("--owner", required=True, help="Owner identity.")
@click.option("--all", "include_deleted", is_flag=True, help="Include deleted tags.")
def tag_list(owner: str, include_deleted: bool):
    """List tags of an owner."""
    with connect() as conn:
        rows = [dict(t) for t in list_tags(conn, owner, include_deleted=include_deleted)]
    _echo(rows)


# -- scan --


async def _stream_scan(project_id: str, owner: str, token: str) -> str:
    last = ""
    with connect() as conn:
        async for message in initiate_scan(conn, project_id, owner, token):
            click.echo(message, nl=False)
            last = message.strip()
    return last


@main.command()
@click.argument("name")
@click.option("--owner", required=True, help="Identity requesting the scan.")
@click.option("--token", envvar="GITHUB_TOKEN", default="", help="GitHub access token.")
@click.option("--background", is_flag=True, help="Run the scan in an rq worker.")
@click.pass_context
def scan(ctx: click.Context, name: str, owner: str, token: str, background: bool):
    """Scan a project's repository and queue a change-set for review.

    Progress lines are printed as they happen. The exit code is 1 unless
    the last line is 'done'.
    """
    with connect() as conn:
        proj = _resolve_project(conn, name)

    if background:
        from redis.exceptions import RedisError

        from tagscan.queue import enqueue_scan

        try:
            job = enqueue_scan(proj["id"], owner)
        except RedisError:
            raise click.ClickException("Redis unavailable, cannot enqueue scan.") from None
        _echo({"ok": True, "job_id": job.id, "project_id": proj["id"]})
        return

    last = asyncio.run(_stream_scan(proj["id"], owner, token))
    if last != "done":
        ctx.exit(1)


@main.command()
@click.argument("job_id")
def job(job_id: str):
    """Show the state of a background scan job."""
    from redis.exceptions import RedisError

    from tagscan.queue import get_job

    try:
        found = get_job(job_id)
        if found is None:
            raise click.ClickException(f"Job '{job_id}' not found.")
        payload = {
            "id": found.id,
            "status": found.get_status(),
            "result": found.return_value(),
            "description": found.description,
        }
    except RedisError:
        raise click.ClickException("Redis unavailable, cannot read job.") from None
    _echo(payload)


@main.command()
@click.argument("path", type=click.Path(exists=True, file_okay=False, path_type=Path))
@click.option(
    "--config",
    "config_file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="JSON or .toml config (default: PATH/.tagscan.toml, then built-in tags).",
)
def parse(path: Path, config_file: Path | None):
    """Parse annotations from a local directory without storing anything."""
    try:
        if config_file is not None:
            config = load_config_file(config_file)
        else:
            config = load_repo_config(path) or DEFAULT_CONFIG
    except ConfigError as e:
        raise click.ClickException(str(e)) from e
    _echo(scan_local_tree(path, config))


# -- updates --


@main.command()
@click.argument("name")
@click.option("--owner", required=True, help="Owner identity.")
def updates(name: str, owner: str):
    """List pending change-sets of a project with per-type counts."""
    with connect() as conn:
        proj = _resolve_project(conn, name)
        try:
            pending = get_pending_updates(conn, proj["id"], owner)
        except ValueError as e:
            raise click.ClickException(str(e)) from e
    _echo([summarize_update(cs) for cs in pending])


@main.group()
def update():
    """Inspect a single change-set."""


@update.command("show")
@click.argument("update_id", type=int)
def update_show(update_id: int):
    """Show a change-set with its items and status history."""
    with connect() as conn:
        cs = get_change_set(conn, update_id)
        if not cs:
            raise _not_found("update", str(update_id))
        history = list_status_history(conn, entity_type="change_set", entity_id=str(update_id))
    output = summarize_update(cs)
    output["items"] = load_change_set_items(cs)
    output["status_history"] = history
    _echo(output)


@main.command("resolve")
@click.argument("name")
@click.argument("update_id", type=int)
@click.option("--owner", required=True, help="Owner identity.")
@click.option("--actions", "actions_json", default=None, help='JSON, e.g. {"CREATE": ["id"]}.')
@click.option("--titles", "titles_json", default=None, help='JSON, e.g. {"id": "Title"}.')
@click.option("--defaults", is_flag=True, help="Apply the default action to unlisted items.")
@click.option("--approve/--reject", "approved", default=None, help="Accept or reject the update.")
def resolve_cmd(
    name: str,
    update_id: int,
    owner: str,
    actions_json: str | None,
    titles_json: str | None,
    defaults: bool,
    approved: bool | None,
):
    """Accept or reject a pending change-set."""
    if approved is None:
        raise click.UsageError("One of --approve or --reject is required.")
    actions = _parse_json_option(actions_json, "--actions")
    titles = _parse_json_option(titles_json, "--titles")

    with connect() as conn:
        proj = _resolve_project(conn, name)
        if defaults:
            cs = get_change_set(conn, update_id, proj["id"])
            if cs is not None:
                defaults_for_items = default_actions(load_change_set_items(cs))
                actions = _merge_default_actions(actions, defaults_for_items)
        try:
            result = resolve(conn, proj["id"], owner, update_id, actions, titles, approved)
        except ResolveError as e:
            raise click.ClickException(f"{e.kind}: {e.message}") from e
    _echo({"ok": True, **result})


def _merge_default_actions(explicit: dict, defaults: dict[str, list[str]]) -> dict:
    """Defaults for every item not already listed in *explicit*."""
    listed = {
        item_id for ids in explicit.values() if isinstance(ids, list) for item_id in ids
    }
    merged = {kind: list(ids) for kind, ids in explicit.items()}
    for kind, ids in defaults.items():
        extra = [item_id for item_id in ids if item_id not in listed]
        if extra:
            merged.setdefault(kind, []).extend(extra)
    return merged


# -- history --


@main.command()
@click.argument("name")
@click.option("--owner", required=True, help="Owner identity.")
def history(name: str, owner: str):
    """Show scans and task history of a project, newest first."""
    with connect() as conn:
        proj = _resolve_project(conn, name)
        try:
            snapshots = get_scan_history(conn, proj["id"], owner)
        except ValueError as e:
            raise click.ClickException(str(e)) from e
        entries = get_project_history(conn, proj["id"])
    scans = [
        {
            "id": s["id"],
            "accepted": bool(s["accepted"]),
            "branch": s["branch"],
            "commit_sha": s["commit_sha"],
            "annotations": len(json.loads(s["data"] or "[]")),
            "created_at": s["created_at"],
        }
        for s in snapshots
    ]
    _echo({"scans": scans, "history": entries})


# -- task --


@main.group()
def task():
    """Inspect tasks created from annotations."""


@task.command("list")
@click.argument("name")
@click.option("--include-deleted", is_flag=True, help="Include tasks marked DELETED.")
def task_list(name: str, include_deleted: bool):
    """List tasks of a project with their tags."""
    with connect() as conn:
        proj = _resolve_project(conn, name)
        rows = []
        for t in list_tasks(conn, proj["id"], include_deleted=include_deleted):
            item = dict(t)
            item["tags"] = [tag_row["title"] for tag_row in list_task_tags(conn, t["id"])]
            rows.append(item)
    _echo(rows)


@main.command("scan-logs")
@click.argument("name")
@click.option("--level", default=None, help="Only records of this level (e.g. WARNING).")
def scan_logs(name: str, level: str | None):
    """Show log records captured during background scans."""
    with connect() as conn:
        proj = _resolve_project(conn, name)
        rows = list_scan_logs(conn, proj["id"], level.upper() if level else None)
    _echo(rows)
