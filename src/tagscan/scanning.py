"""Scan workflow: fetch, snapshot, diff, and queue a change-set for review.

``initiate_scan`` is an async generator of newline-terminated progress
messages. The last message is ``done`` on success or ``error: <reason>``;
it never raises to its consumer.
"""

from __future__ import annotations

import contextlib
import logging
import sqlite3
from collections.abc import AsyncGenerator, AsyncIterator

from tagscan.config import ConfigError, get_project_config
from tagscan.db import (
    ChangeSetRow,
    ProjectRow,
    SnapshotRow,
    claim_scan,
    get_annotations_for_snapshot,
    get_latest_accepted_snapshot,
    get_owned_project,
    get_project_by_id,
    list_actions,
    list_change_sets,
    list_snapshots,
    load_change_set_items,
    release_scan,
    save_pending,
    save_snapshot,
    supersede_pending,
)
from tagscan.diff import count_by_type, generate_diff
from tagscan.github import GitHubClient, ScanError, scan_repo
from tagscan.models import BranchInfo, ParsedTask, ScanConfig

log = logging.getLogger(__name__)

# Tree ref used when a project has no scan branch configured.
DEFAULT_REF = "HEAD"

ERR_NOT_FOUND = "project not found or access denied"
ERR_NOT_LINKED = "project not linked to repository"
ERR_BAD_URL = "could not parse repo url"
ERR_IN_PROGRESS = "scan already in progress"
ERR_SAVE_FAILED = "failed to save scan results"
ERR_SCAN_FAILED = "scan failed"


def _msg(text: str) -> str:
    return f"{text}\n"


def _error(reason: str) -> str:
    return f"error: {' '.join(reason.split())}\n"


def parse_repo_url(repo_url: str) -> tuple[str, str] | None:
    """Owner and repository name from a GitHub URL, or None if malformed.

    Accepts ``https://github.com/owner/repo``, a trailing slash, and a
    trailing ``.git``.
    """
    url = repo_url.strip().rstrip("/")
    url = url.removesuffix(".git")
    parts = url.split("/")
    if len(parts) < 2:
        return None
    owner, repo = parts[-2], parts[-1]
    if not owner or not repo:
        return None
    return owner, repo


async def _fetch(
    project: ProjectRow,
    owner: str,
    repo: str,
    access_token: str,
    config: ScanConfig,
    client: GitHubClient | None,
) -> tuple[list[ParsedTask] | ScanError, BranchInfo | None]:
    async with contextlib.AsyncExitStack() as stack:
        if client is None:
            client = await stack.enter_async_context(GitHubClient(access_token))

        branch = project["scan_branch"]
        branch_info: BranchInfo | None = None
        if branch:
            info = await client.fetch_branch(owner, repo, branch)
            if isinstance(info, ScanError):
                log.warning(
                    "Could not read branch %s of %s/%s: %s", branch, owner, repo, info.describe()
                )
            else:
                branch_info = info

        # Pin the whole scan to one commit when the branch head is known.
        if branch_info and branch_info["commit_sha"]:
            ref = branch_info["commit_sha"]
        else:
            ref = branch or DEFAULT_REF
        result = await scan_repo(owner, repo, ref, access_token, config, client=client)
        return result, branch_info


async def _run_scan(
    conn: sqlite3.Connection,
    project: ProjectRow,
    access_token: str,
    client: GitHubClient | None,
) -> AsyncGenerator[str, None]:
    project_id = project["id"]

    yield _msg("loading config")
    try:
        config = get_project_config(conn, project_id)
    except ConfigError as exc:
        yield _error(str(exc))
        return

    parsed = parse_repo_url(project["repo_url"] or "")
    if parsed is None:
        log.warning("Could not parse repo url %r for project %s", project["repo_url"], project_id)
        yield _error(ERR_BAD_URL)
        return
    owner, repo = parsed

    yield _msg("scanning repo")
    result, branch_info = await _fetch(project, owner, repo, access_token, config, client)
    if isinstance(result, ScanError):
        log.warning("Scan of %s/%s failed: %s", owner, repo, result.describe())
        yield _error(f"{ERR_SCAN_FAILED} - {result.describe()}")
        return

    stored_info: BranchInfo = branch_info or {
        "branch": project["scan_branch"],
        "commit_sha": None,
        "commit_msg": None,
        "commit_url": None,
    }

    yield _msg("saving scan")
    try:
        new_id = save_snapshot(
            conn,
            project_id,
            result,
            branch=stored_info["branch"],
            commit_sha=stored_info["commit_sha"],
        )
    except sqlite3.Error:
        log.exception("Failed to save snapshot for project %s", project_id)
        yield _error(ERR_SAVE_FAILED)
        return

    yield _msg("finding existing scan")
    baseline = get_latest_accepted_snapshot(conn, project_id)
    old_tasks = get_annotations_for_snapshot(conn, baseline["id"]) if baseline else []
    old_id = baseline["id"] if baseline else None

    yield _msg("running diff")
    diff = generate_diff(old_tasks, result)
    log.info("Diff for project %s: %s", project_id, count_by_type(diff))

    yield _msg("saving update")
    try:
        superseded = supersede_pending(conn, project_id, commit=False)
        change_set_id = save_pending(
            conn, project_id, diff, old_id, new_id, branch_info=stored_info
        )
    except sqlite3.Error:
        conn.rollback()
        log.exception("Failed to save change-set for project %s", project_id)
        yield _error(ERR_SAVE_FAILED)
        return
    if superseded:
        log.info("Superseded pending change-sets %s for project %s", superseded, project_id)
    log.info("Saved change-set %d for project %s", change_set_id, project_id)

    yield _msg("done")


async def initiate_scan(
    conn: sqlite3.Connection,
    project_id: str,
    user_id: str,
    access_token: str,
    *,
    client: GitHubClient | None = None,
) -> AsyncIterator[str]:
    """Scan a project's repository and record a PENDING change-set.

    Ownership and the repository link are checked before the per-project
    scan lock is taken. The lock is released when the generator finishes
    or is closed early; writes already issued are kept.
    """
    yield _msg("starting")
    try:
        project = get_owned_project(conn, project_id, user_id)
    except sqlite3.Error:
        log.exception("Project lookup failed for %s", project_id)
        yield _error(ERR_SCAN_FAILED)
        return
    if project is None:
        yield _error(ERR_NOT_FOUND)
        return
    if not project["repo_url"]:
        yield _error(ERR_NOT_LINKED)
        return

    try:
        claimed = claim_scan(conn, project_id)
    except sqlite3.Error:
        log.exception("Could not take scan lock for %s", project_id)
        yield _error(ERR_SCAN_FAILED)
        return
    if not claimed:
        yield _error(ERR_IN_PROGRESS)
        return
    try:
        async with contextlib.aclosing(_run_scan(conn, project, access_token, client)) as steps:
            async for message in steps:
                yield message
    except Exception:
        log.exception("Scan of project %s failed", project_id)
        yield _error(ERR_SCAN_FAILED)
    finally:
        release_scan(conn, project_id)


# -- Read models --


def _require_owned(conn: sqlite3.Connection, project_id: str, user_id: str) -> ProjectRow:
    project = get_owned_project(conn, project_id, user_id)
    if project is None:
        raise ValueError(ERR_NOT_FOUND)
    return project


def get_pending_updates(
    conn: sqlite3.Connection, project_id: str, user_id: str
) -> list[ChangeSetRow]:
    """PENDING change-sets for an owned project, newest first."""
    _require_owned(conn, project_id, user_id)
    return list_change_sets(conn, project_id, status="PENDING")


def get_scan_history(conn: sqlite3.Connection, project_id: str, user_id: str) -> list[SnapshotRow]:
    _require_owned(conn, project_id, user_id)
    return list_snapshots(conn, project_id)


def summarize_update(change_set: ChangeSetRow) -> dict:
    """Change-set metadata with per-type item counts instead of the items."""
    return {
        "id": change_set["id"],
        "status": change_set["status"],
        "old_id": change_set["old_id"],
        "new_id": change_set["new_id"],
        "branch": change_set["branch"],
        "commit_sha": change_set["commit_sha"],
        "commit_msg": change_set["commit_msg"],
        "created_at": change_set["created_at"],
        "counts": count_by_type(load_change_set_items(change_set)),
    }


def get_project_history(conn: sqlite3.Connection, project_id: str) -> list[dict]:
    """Task actions and scans of a project, merged newest first.

    Scans are reported as ``SCAN`` entries built from the project's
    change-sets. An unknown project has no history.
    """
    project = get_project_by_id(conn, project_id)
    if project is None:
        return []

    entries = list_actions(
        conn,
        project["owner_id"],
        types=("CREATE_TASK", "UPDATE_TASK", "DELETE_TASK"),
        project_id=project_id,
    )
    for change_set in list_change_sets(conn, project_id):
        entries.append(
            {
                "id": f"scan-{change_set['id']}",
                "type": "SCAN",
                "description": f"Scanned branch '{change_set['branch'] or DEFAULT_REF}'",
                "created_at": change_set["created_at"],
                "data": {
                    "project_id": project_id,
                    "message": change_set["commit_msg"],
                    "status": change_set["status"],
                },
            }
        )
    entries.sort(key=lambda entry: entry["created_at"], reverse=True)
    return entries
