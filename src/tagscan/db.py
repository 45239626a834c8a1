"""SQLite database for tagscan state."""

from __future__ import annotations

import contextlib
import json
import sqlite3
import uuid
from collections.abc import Sequence
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, TypedDict, cast

from tagscan.models import BranchInfo, DiffResult, ParsedTask
from tagscan.paths import DEFAULT_DB_PATH

VALID_CHANGE_SET_STATUSES = {"PENDING", "ACCEPTED", "REJECTED", "IGNORED"}
VALID_TASK_PROGRESS = {"UNSTARTED", "IN_PROGRESS", "COMPLETED"}
VALID_TASK_PRIORITIES = {"LOW", "MEDIUM", "HIGH"}
VALID_TASK_VISIBILITIES = {"PRIVATE", "PUBLIC", "HIDDEN", "ARCHIVED", "DRAFT", "DELETED"}
VALID_ACTION_TYPES = {"CREATE_TASK", "UPDATE_TASK", "DELETE_TASK"}
VALID_SCAN_STATES = {"idle", "scanning"}

SCAN_LOCK_STALE_SECONDS = 900


def _utcnow() -> str:
    """ISO 8601 UTC timestamp matching SQLite strftime format."""
    return datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


# Bump when adding migrations.
SCHEMA_VERSION = 1

SCHEMA = """\
CREATE TABLE IF NOT EXISTS projects (
    id TEXT PRIMARY KEY,
    name TEXT UNIQUE NOT NULL,
    owner_id TEXT NOT NULL,
    repo_url TEXT,
    scan_branch TEXT,
    scan_state TEXT NOT NULL DEFAULT 'idle',
    scan_started_at TEXT,
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
);

CREATE TABLE IF NOT EXISTS tags (
    id TEXT PRIMARY KEY,
    owner_id TEXT NOT NULL,
    title TEXT NOT NULL,
    deleted INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now')),
    UNIQUE (owner_id, title)
);

CREATE TABLE IF NOT EXISTS tag_config (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    project_id TEXT NOT NULL REFERENCES projects(id),
    tag_id TEXT NOT NULL REFERENCES tags(id),
    match TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS ignore_paths (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    project_id TEXT NOT NULL REFERENCES projects(id),
    path TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS snapshots (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    project_id TEXT NOT NULL REFERENCES projects(id),
    data TEXT NOT NULL,
    accepted INTEGER NOT NULL DEFAULT 0,
    branch TEXT,
    commit_sha TEXT,
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
);

CREATE TABLE IF NOT EXISTS change_sets (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    project_id TEXT NOT NULL REFERENCES projects(id),
    old_id INTEGER REFERENCES snapshots(id),
    new_id INTEGER NOT NULL REFERENCES snapshots(id),
    data TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'PENDING',
    branch TEXT,
    commit_sha TEXT,
    commit_msg TEXT,
    commit_url TEXT,
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now')),
    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
);

CREATE TABLE IF NOT EXISTS codebase_tasks (
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL REFERENCES projects(id),
    text TEXT NOT NULL,
    line INTEGER NOT NULL DEFAULT 0,
    file TEXT NOT NULL,
    type TEXT NOT NULL,
    context TEXT,
    recent_scan_id INTEGER REFERENCES snapshots(id),
    branch TEXT,
    commit_sha TEXT,
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now')),
    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
);

CREATE TABLE IF NOT EXISTS tasks (
    id TEXT PRIMARY KEY,
    owner_id TEXT NOT NULL,
    project_id TEXT REFERENCES projects(id),
    title TEXT NOT NULL,
    description TEXT,
    progress TEXT NOT NULL DEFAULT 'UNSTARTED',
    priority TEXT NOT NULL DEFAULT 'LOW',
    visibility TEXT NOT NULL DEFAULT 'PRIVATE',
    codebase_task_id TEXT,
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now')),
    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
);

CREATE TABLE IF NOT EXISTS task_tags (
    task_id TEXT NOT NULL REFERENCES tasks(id),
    tag_id TEXT NOT NULL REFERENCES tags(id),
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now')),
    PRIMARY KEY (task_id, tag_id)
);

CREATE TABLE IF NOT EXISTS actions (
    id TEXT PRIMARY KEY,
    owner_id TEXT NOT NULL,
    type TEXT NOT NULL,
    description TEXT NOT NULL,
    data TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
);

CREATE TABLE IF NOT EXISTS status_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    entity_type TEXT NOT NULL CHECK (entity_type IN ('change_set', 'task')),
    entity_id TEXT NOT NULL,
    old_status TEXT,
    new_status TEXT NOT NULL,
    actor TEXT,
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
);

CREATE TABLE IF NOT EXISTS scan_logs (
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL REFERENCES projects(id),
    level TEXT NOT NULL,
    message TEXT NOT NULL,
    source TEXT NOT NULL DEFAULT 'scan',
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
);
"""


# -- Row TypedDicts matching table schemas --


class ProjectRow(TypedDict):
    id: str
    name: str
    owner_id: str
    repo_url: str | None
    scan_branch: str | None
    scan_state: str
    scan_started_at: str | None
    created_at: str


class TagRow(TypedDict):
    id: str
    owner_id: str
    title: str
    deleted: int
    created_at: str


class SnapshotRow(TypedDict):
    id: int
    project_id: str
    data: str
    accepted: int
    branch: str | None
    commit_sha: str | None
    created_at: str


class ChangeSetRow(TypedDict):
    id: int
    project_id: str
    old_id: int | None
    new_id: int
    data: str
    status: str
    branch: str | None
    commit_sha: str | None
    commit_msg: str | None
    commit_url: str | None
    created_at: str
    updated_at: str


class CodebaseTaskRow(TypedDict):
    id: str
    project_id: str
    text: str
    line: int
    file: str
    type: str
    context: str | None
    recent_scan_id: int | None
    branch: str | None
    commit_sha: str | None
    created_at: str
    updated_at: str


class TaskRow(TypedDict):
    id: str
    owner_id: str
    project_id: str | None
    title: str
    description: str | None
    progress: str
    priority: str
    visibility: str
    codebase_task_id: str | None
    created_at: str
    updated_at: str


def get_connection(db_path: Path = DEFAULT_DB_PATH) -> sqlite3.Connection:
    db_path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
    conn = sqlite3.connect(str(db_path))
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.execute("PRAGMA busy_timeout=10000")
    conn.executescript(SCHEMA)

    current_version = conn.execute("PRAGMA user_version").fetchone()[0]
    if current_version < SCHEMA_VERSION:
        _create_indexes(conn)
        conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
        conn.commit()
    return conn


@contextlib.contextmanager
def connect(db_path: Path = DEFAULT_DB_PATH):
    """Context manager wrapper for get_connection().

    Usage:
        with connect() as conn:
            do_stuff(conn)
    # conn.close() is guaranteed even on exceptions.
    """
    conn = get_connection(db_path)
    try:
        yield conn
    finally:
        conn.close()


def _create_indexes(conn: sqlite3.Connection) -> None:
    conn.executescript("""
        CREATE INDEX IF NOT EXISTS idx_snapshots_project_accepted
            ON snapshots(project_id, accepted, created_at);
        CREATE INDEX IF NOT EXISTS idx_change_sets_project_status
            ON change_sets(project_id, status, created_at);
        CREATE INDEX IF NOT EXISTS idx_codebase_tasks_recent_scan
            ON codebase_tasks(recent_scan_id);
        CREATE INDEX IF NOT EXISTS idx_tasks_codebase_task
            ON tasks(codebase_task_id);
        CREATE INDEX IF NOT EXISTS idx_tasks_project
            ON tasks(project_id, created_at);
        CREATE INDEX IF NOT EXISTS idx_tag_config_project
            ON tag_config(project_id);
        CREATE INDEX IF NOT EXISTS idx_actions_owner
            ON actions(owner_id, created_at);
        CREATE INDEX IF NOT EXISTS idx_status_history_entity_timeline
            ON status_history(entity_type, entity_id, created_at, id);
        CREATE INDEX IF NOT EXISTS idx_scan_logs_project
            ON scan_logs(project_id, created_at);
    """)


def _new_id() -> str:
    return uuid.uuid4().hex[:12]


# -- Status history --


def _status_set_for_entity_type(entity_type: str) -> set[str]:
    if entity_type == "change_set":
        return VALID_CHANGE_SET_STATUSES
    if entity_type == "task":
        return VALID_TASK_PROGRESS
    raise ValueError(f"Invalid entity_type '{entity_type}'. Must be 'change_set' or 'task'.")


def record_status_change(
    conn: sqlite3.Connection,
    *,
    entity_type: str,
    entity_id: str,
    new_status: str,
    old_status: str | None = None,
    actor: str | None = None,
) -> dict:
    """Record a validated status transition for a change-set or task.

    This helper intentionally does not commit. Callers can compose status updates
    and history inserts atomically inside a caller-managed transaction.
    """
    valid = _status_set_for_entity_type(entity_type)
    if new_status not in valid:
        raise ValueError(f"Invalid new_status '{new_status}' for {entity_type}.")
    if old_status is not None and old_status not in valid:
        raise ValueError(f"Invalid old_status '{old_status}' for {entity_type}.")
    if old_status == new_status:
        return {}
    cursor = conn.execute(
        "INSERT INTO status_history (entity_type, entity_id, old_status, new_status, actor) "
        "VALUES (?, ?, ?, ?, ?)",
        (entity_type, str(entity_id), old_status, new_status, actor),
    )
    row = conn.execute(
        "SELECT id, entity_type, entity_id, old_status, new_status, actor, created_at "
        "FROM status_history WHERE id = ?",
        (cursor.lastrowid,),
    ).fetchone()
    return dict(row) if row else {}


def list_status_history(
    conn: sqlite3.Connection, *, entity_type: str, entity_id: str
) -> list[dict]:
    """List status history oldest-first for a specific change-set or task."""
    _status_set_for_entity_type(entity_type)
    rows = conn.execute(
        "SELECT id, entity_type, entity_id, old_status, new_status, actor, created_at "
        "FROM status_history WHERE entity_type = ? AND entity_id = ? "
        "ORDER BY created_at, id",
        (entity_type, str(entity_id)),
    ).fetchall()
    return [dict(row) for row in rows]


# -- Projects --


def add_project(
    conn: sqlite3.Connection,
    name: str,
    owner_id: str,
    *,
    repo_url: str | None = None,
    scan_branch: str | None = None,
) -> ProjectRow:
    if get_project(conn, name):
        raise ValueError(f"Project '{name}' is already registered.")
    project_id = _new_id()
    conn.execute(
        "INSERT INTO projects (id, name, owner_id, repo_url, scan_branch) VALUES (?, ?, ?, ?, ?)",
        (project_id, name, owner_id, repo_url, scan_branch),
    )
    conn.commit()
    project = get_project_by_id(conn, project_id)
    assert project is not None
    return project


def get_project(conn: sqlite3.Connection, name_or_id: str) -> ProjectRow | None:
    row = conn.execute(
        "SELECT * FROM projects WHERE id = ? OR name = ?", (name_or_id, name_or_id)
    ).fetchone()
    return cast(ProjectRow, dict(row)) if row else None


def get_project_by_id(conn: sqlite3.Connection, project_id: str) -> ProjectRow | None:
    row = conn.execute("SELECT * FROM projects WHERE id = ?", (project_id,)).fetchone()
    return cast(ProjectRow, dict(row)) if row else None


def get_owned_project(
    conn: sqlite3.Connection, project_id: str, owner_id: str
) -> ProjectRow | None:
    """Project *project_id* if it exists and belongs to *owner_id*."""
    row = conn.execute(
        "SELECT * FROM projects WHERE id = ? AND owner_id = ?", (project_id, owner_id)
    ).fetchone()
    return cast(ProjectRow, dict(row)) if row else None


def list_projects(conn: sqlite3.Connection, owner_id: str | None = None) -> list[ProjectRow]:
    if owner_id is None:
        rows = conn.execute("SELECT * FROM projects ORDER BY created_at, name").fetchall()
    else:
        rows = conn.execute(
            "SELECT * FROM projects WHERE owner_id = ? ORDER BY created_at, name", (owner_id,)
        ).fetchall()
    return [cast(ProjectRow, dict(row)) for row in rows]


def link_project_repo(
    conn: sqlite3.Connection, project_id: str, repo_url: str | None, scan_branch: str | None = None
) -> bool:
    cursor = conn.execute(
        "UPDATE projects SET repo_url = ?, scan_branch = ? WHERE id = ?",
        (repo_url, scan_branch, project_id),
    )
    conn.commit()
    return cursor.rowcount > 0


def claim_scan(
    conn: sqlite3.Connection, project_id: str, *, stale_after: int = SCAN_LOCK_STALE_SECONDS
) -> bool:
    """Compare-and-swap a project from ``idle`` to ``scanning``.

    A lock older than *stale_after* seconds is treated as abandoned and may be
    taken over. Returns False when another scan holds the lock.
    """
    cutoff = (datetime.now(UTC) - timedelta(seconds=stale_after)).strftime("%Y-%m-%dT%H:%M:%SZ")
    cursor = conn.execute(
        "UPDATE projects SET scan_state = 'scanning', scan_started_at = ? "
        "WHERE id = ? AND (scan_state = 'idle' OR scan_started_at IS NULL "
        "OR scan_started_at < ?)",
        (_utcnow(), project_id, cutoff),
    )
    conn.commit()
    return cursor.rowcount > 0


def release_scan(conn: sqlite3.Connection, project_id: str) -> None:
    conn.execute(
        "UPDATE projects SET scan_state = 'idle', scan_started_at = NULL WHERE id = ?",
        (project_id,),
    )
    conn.commit()


# -- Tags and scan configuration --


def add_tag(conn: sqlite3.Connection, owner_id: str, title: str) -> TagRow:
    """Create a tag, or revive and return the existing one with that title."""
    existing = get_tag_by_title(conn, owner_id, title)
    if existing:
        if existing["deleted"]:
            conn.execute("UPDATE tags SET deleted = 0 WHERE id = ?", (existing["id"],))
            conn.commit()
            existing["deleted"] = 0
        return existing
    tag_id = _new_id()
    conn.execute(
        "INSERT INTO tags (id, owner_id, title) VALUES (?, ?, ?)", (tag_id, owner_id, title)
    )
    conn.commit()
    return cast(TagRow, dict(conn.execute("SELECT * FROM tags WHERE id = ?", (tag_id,)).fetchone()))


def get_tag_by_title(conn: sqlite3.Connection, owner_id: str, title: str) -> TagRow | None:
    row = conn.execute(
        "SELECT * FROM tags WHERE owner_id = ? AND title = ?", (owner_id, title)
    ).fetchone()
    return cast(TagRow, dict(row)) if row else None


def delete_tag(conn: sqlite3.Connection, tag_id: str) -> bool:
    cursor = conn.execute("UPDATE tags SET deleted = 1 WHERE id = ?", (tag_id,))
    conn.commit()
    return cursor.rowcount > 0


def list_tags(
    conn: sqlite3.Connection, owner_id: str, *, include_deleted: bool = False
) -> list[TagRow]:
    query = "SELECT * FROM tags WHERE owner_id = ?"
    if not include_deleted:
        query += " AND deleted = 0"
    rows = conn.execute(query + " ORDER BY title", (owner_id,)).fetchall()
    return [cast(TagRow, dict(row)) for row in rows]


def get_active_tags_by_name(conn: sqlite3.Connection, owner_id: str) -> dict[str, TagRow]:
    return {tag["title"]: tag for tag in list_tags(conn, owner_id)}


def link_task_to_tag(conn: sqlite3.Connection, task_id: str, tag_id: str) -> bool:
    """Associate a task with a tag. Does not commit; returns False if already linked."""
    cursor = conn.execute(
        "INSERT OR IGNORE INTO task_tags (task_id, tag_id) VALUES (?, ?)", (task_id, tag_id)
    )
    return cursor.rowcount > 0


def list_task_tags(conn: sqlite3.Connection, task_id: str) -> list[TagRow]:
    rows = conn.execute(
        "SELECT tags.* FROM task_tags JOIN tags ON tags.id = task_tags.tag_id "
        "WHERE task_tags.task_id = ? ORDER BY tags.title",
        (task_id,),
    ).fetchall()
    return [cast(TagRow, dict(row)) for row in rows]


def list_tag_config_rows(conn: sqlite3.Connection, project_id: str) -> list[dict]:
    """(tag title, match) rows for a project, in insertion order."""
    rows = conn.execute(
        "SELECT tags.id AS tag_id, tags.title AS name, tag_config.match AS match "
        "FROM tag_config JOIN tags ON tags.id = tag_config.tag_id "
        "WHERE tag_config.project_id = ? ORDER BY tag_config.id",
        (project_id,),
    ).fetchall()
    return [dict(row) for row in rows]


def list_ignore_paths(conn: sqlite3.Connection, project_id: str) -> list[str]:
    rows = conn.execute(
        "SELECT path FROM ignore_paths WHERE project_id = ? ORDER BY id", (project_id,)
    ).fetchall()
    return [row["path"] for row in rows]


def replace_scan_config(
    conn: sqlite3.Connection,
    project_id: str,
    owner_id: str,
    tags: Sequence[tuple[str, Sequence[str]]],
    ignore: Sequence[str],
) -> None:
    """Replace a project's tag matchers and ignore patterns in one transaction."""
    try:
        conn.execute("DELETE FROM tag_config WHERE project_id = ?", (project_id,))
        conn.execute("DELETE FROM ignore_paths WHERE project_id = ?", (project_id,))
        for title, matches in tags:
            tag = get_tag_by_title(conn, owner_id, title)
            if tag is None:
                tag_id = _new_id()
                conn.execute(
                    "INSERT INTO tags (id, owner_id, title) VALUES (?, ?, ?)",
                    (tag_id, owner_id, title),
                )
            else:
                tag_id = tag["id"]
                if tag["deleted"]:
                    conn.execute("UPDATE tags SET deleted = 0 WHERE id = ?", (tag_id,))
            for match in matches:
                conn.execute(
                    "INSERT INTO tag_config (project_id, tag_id, match) VALUES (?, ?, ?)",
                    (project_id, tag_id, match),
                )
        for path in ignore:
            conn.execute(
                "INSERT INTO ignore_paths (project_id, path) VALUES (?, ?)", (project_id, path)
            )
        conn.commit()
    except Exception:
        conn.rollback()
        raise


# -- Snapshots --


def save_snapshot(
    conn: sqlite3.Connection,
    project_id: str,
    tasks: Sequence[ParsedTask],
    *,
    branch: str | None = None,
    commit_sha: str | None = None,
) -> int:
    cursor = conn.execute(
        "INSERT INTO snapshots (project_id, data, branch, commit_sha) VALUES (?, ?, ?, ?)",
        (project_id, json.dumps(list(tasks)), branch, commit_sha),
    )
    conn.commit()
    return cast(int, cursor.lastrowid)


def get_snapshot(conn: sqlite3.Connection, snapshot_id: int) -> SnapshotRow | None:
    row = conn.execute("SELECT * FROM snapshots WHERE id = ?", (snapshot_id,)).fetchone()
    return cast(SnapshotRow, dict(row)) if row else None


def get_latest_accepted_snapshot(conn: sqlite3.Connection, project_id: str) -> SnapshotRow | None:
    row = conn.execute(
        "SELECT * FROM snapshots WHERE project_id = ? AND accepted = 1 "
        "ORDER BY created_at DESC, id DESC LIMIT 1",
        (project_id,),
    ).fetchone()
    return cast(SnapshotRow, dict(row)) if row else None


def list_snapshots(conn: sqlite3.Connection, project_id: str) -> list[SnapshotRow]:
    rows = conn.execute(
        "SELECT * FROM snapshots WHERE project_id = ? ORDER BY created_at DESC, id DESC",
        (project_id,),
    ).fetchall()
    return [cast(SnapshotRow, dict(row)) for row in rows]


def set_snapshot_accepted(
    conn: sqlite3.Connection, snapshot_id: int, accepted: bool, *, commit: bool = True
) -> bool:
    cursor = conn.execute(
        "UPDATE snapshots SET accepted = ? WHERE id = ?", (1 if accepted else 0, snapshot_id)
    )
    if commit:
        conn.commit()
    return cursor.rowcount > 0


def parse_context(value: Any) -> list[str]:
    """Normalize a stored context value into a list of lines.

    Accepts JSON text, a list, or a bare string. Numbers are stringified,
    anything else is dropped.
    """
    if not value:
        return []
    if isinstance(value, list):
        return [
            str(item)
            for item in value
            if isinstance(item, (str, int, float)) and not isinstance(item, bool)
        ]
    if isinstance(value, str):
        try:
            parsed = json.loads(value)
        except json.JSONDecodeError:
            return [value]
        if isinstance(parsed, str):
            return [parsed]
        return parse_context(parsed)
    return []


def get_annotations_for_snapshot(conn: sqlite3.Connection, snapshot_id: int) -> list[ParsedTask]:
    """Live annotations last confirmed in *snapshot_id*, in ParsedTask shape."""
    rows = conn.execute(
        "SELECT * FROM codebase_tasks WHERE recent_scan_id = ? ORDER BY file, line, created_at",
        (snapshot_id,),
    ).fetchall()
    return [
        {
            "id": row["id"],
            "file": row["file"] or "",
            "line": row["line"] or 0,
            "tag": row["type"] or "todo",
            "text": row["text"] or "",
            "context": parse_context(row["context"]),
        }
        for row in rows
    ]


# -- Change-sets --


def supersede_pending(
    conn: sqlite3.Connection, project_id: str, *, commit: bool = True
) -> list[int]:
    """Force every PENDING change-set of a project to IGNORED."""
    rows = conn.execute(
        "SELECT id FROM change_sets WHERE project_id = ? AND status = 'PENDING'", (project_id,)
    ).fetchall()
    ids = [row["id"] for row in rows]
    for change_set_id in ids:
        conn.execute(
            "UPDATE change_sets SET status = 'IGNORED', "
            "updated_at = strftime('%Y-%m-%dT%H:%M:%SZ', 'now') "
            "WHERE id = ? AND status = 'PENDING'",
            (change_set_id,),
        )
        record_status_change(
            conn,
            entity_type="change_set",
            entity_id=str(change_set_id),
            old_status="PENDING",
            new_status="IGNORED",
            actor="scan",
        )
    if commit:
        conn.commit()
    return ids


def save_pending(
    conn: sqlite3.Connection,
    project_id: str,
    diff: Sequence[DiffResult],
    old_id: int | None,
    new_id: int,
    *,
    branch_info: BranchInfo | None = None,
) -> int:
    info = branch_info or {}
    cursor = conn.execute(
        "INSERT INTO change_sets "
        "(project_id, old_id, new_id, data, branch, commit_sha, commit_msg, commit_url) "
        "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
        (
            project_id,
            old_id,
            new_id,
            json.dumps(list(diff)),
            info.get("branch"),
            info.get("commit_sha"),
            info.get("commit_msg"),
            info.get("commit_url"),
        ),
    )
    change_set_id = cast(int, cursor.lastrowid)
    record_status_change(
        conn,
        entity_type="change_set",
        entity_id=str(change_set_id),
        new_status="PENDING",
        actor="scan",
    )
    conn.commit()
    return change_set_id


def get_change_set(
    conn: sqlite3.Connection, change_set_id: int, project_id: str | None = None
) -> ChangeSetRow | None:
    if project_id is None:
        row = conn.execute("SELECT * FROM change_sets WHERE id = ?", (change_set_id,)).fetchone()
    else:
        row = conn.execute(
            "SELECT * FROM change_sets WHERE id = ? AND project_id = ?",
            (change_set_id, project_id),
        ).fetchone()
    return cast(ChangeSetRow, dict(row)) if row else None


def list_change_sets(
    conn: sqlite3.Connection, project_id: str, status: str | None = None
) -> list[ChangeSetRow]:
    query = "SELECT * FROM change_sets WHERE project_id = ?"
    params: list[Any] = [project_id]
    if status is not None:
        if status not in VALID_CHANGE_SET_STATUSES:
            raise ValueError(
                f"Invalid change-set status '{status}'. Must be one of: {VALID_CHANGE_SET_STATUSES}"
            )
        query += " AND status = ?"
        params.append(status)
    rows = conn.execute(query + " ORDER BY created_at DESC, id DESC", params).fetchall()
    return [cast(ChangeSetRow, dict(row)) for row in rows]


def set_change_set_status(
    conn: sqlite3.Connection,
    change_set_id: int,
    status: str,
    *,
    actor: str | None = None,
    commit: bool = True,
) -> bool:
    if status not in VALID_CHANGE_SET_STATUSES:
        raise ValueError(
            f"Invalid change-set status '{status}'. Must be one of: {VALID_CHANGE_SET_STATUSES}"
        )
    current = conn.execute(
        "SELECT status FROM change_sets WHERE id = ?", (change_set_id,)
    ).fetchone()
    if not current:
        return False
    cursor = conn.execute(
        "UPDATE change_sets SET status = ?, updated_at = strftime('%Y-%m-%dT%H:%M:%SZ', 'now') "
        "WHERE id = ? AND status = ?",
        (status, change_set_id, current["status"]),
    )
    if cursor.rowcount > 0:
        record_status_change(
            conn,
            entity_type="change_set",
            entity_id=str(change_set_id),
            old_status=current["status"],
            new_status=status,
            actor=actor,
        )
    if commit:
        conn.commit()
    return cursor.rowcount > 0


def load_change_set_items(change_set: ChangeSetRow) -> list[DiffResult]:
    data = change_set["data"]
    items = json.loads(data) if isinstance(data, str) else data
    return cast(list[DiffResult], items or [])


# -- Live annotations (codebase tasks) --


def upsert_codebase_task(
    conn: sqlite3.Connection,
    project_id: str,
    item: DiffResult,
    snapshot_id: int,
    *,
    branch: str | None = None,
    commit_sha: str | None = None,
) -> None:
    """Store the new side of a diff item as the live annotation. Does not commit."""
    new = item["data"]["new"] or {}
    context = new.get("context")
    conn.execute(
        "INSERT INTO codebase_tasks "
        "(id, project_id, text, line, file, type, context, recent_scan_id, branch, commit_sha) "
        "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?) "
        "ON CONFLICT(id) DO UPDATE SET text = excluded.text, line = excluded.line, "
        "file = excluded.file, type = excluded.type, context = excluded.context, "
        "recent_scan_id = excluded.recent_scan_id, branch = excluded.branch, "
        "commit_sha = excluded.commit_sha, "
        "updated_at = strftime('%Y-%m-%dT%H:%M:%SZ', 'now')",
        (
            item["id"],
            project_id,
            new.get("text") or "",
            new.get("line") or 0,
            new.get("file") or "unknown",
            item.get("tag") or "todo",
            json.dumps(context) if context else None,
            snapshot_id,
            branch,
            commit_sha,
        ),
    )


def delete_codebase_task(conn: sqlite3.Connection, codebase_task_id: str) -> bool:
    """Remove a live annotation row. Does not commit."""
    cursor = conn.execute("DELETE FROM codebase_tasks WHERE id = ?", (codebase_task_id,))
    return cursor.rowcount > 0


def get_codebase_task(conn: sqlite3.Connection, codebase_task_id: str) -> CodebaseTaskRow | None:
    row = conn.execute(
        "SELECT * FROM codebase_tasks WHERE id = ?", (codebase_task_id,)
    ).fetchone()
    return cast(CodebaseTaskRow, dict(row)) if row else None


# -- Tasks --


def _validate_choice(value: str, valid: set[str], field: str) -> str:
    if value not in valid:
        raise ValueError(f"Invalid task {field} '{value}'. Must be one of: {sorted(valid)}")
    return value


def create_task(
    conn: sqlite3.Connection,
    *,
    owner_id: str,
    project_id: str | None,
    title: str,
    description: str | None = None,
    progress: str = "UNSTARTED",
    priority: str = "LOW",
    codebase_task_id: str | None = None,
) -> TaskRow:
    """Insert a task row. Does not commit."""
    _validate_choice(progress, VALID_TASK_PROGRESS, "progress")
    _validate_choice(priority, VALID_TASK_PRIORITIES, "priority")
    task_id = _new_id()
    conn.execute(
        "INSERT INTO tasks "
        "(id, owner_id, project_id, title, description, progress, priority, codebase_task_id) "
        "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
        (task_id, owner_id, project_id, title, description, progress, priority, codebase_task_id),
    )
    task = get_task(conn, task_id)
    assert task is not None
    return task


def get_task(conn: sqlite3.Connection, task_id: str) -> TaskRow | None:
    row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
    return cast(TaskRow, dict(row)) if row else None


def list_tasks(
    conn: sqlite3.Connection, project_id: str, *, include_deleted: bool = False
) -> list[TaskRow]:
    query = "SELECT * FROM tasks WHERE project_id = ?"
    if not include_deleted:
        query += " AND visibility != 'DELETED'"
    rows = conn.execute(query + " ORDER BY created_at, id", (project_id,)).fetchall()
    return [cast(TaskRow, dict(row)) for row in rows]


def get_tasks_for_codebase_task(conn: sqlite3.Connection, codebase_task_id: str) -> list[TaskRow]:
    rows = conn.execute(
        "SELECT * FROM tasks WHERE codebase_task_id = ? ORDER BY created_at, id",
        (codebase_task_id,),
    ).fetchall()
    return [cast(TaskRow, dict(row)) for row in rows]


def set_task_codebase_link(
    conn: sqlite3.Connection, task_id: str, codebase_task_id: str | None
) -> bool:
    """Point a task at a live annotation, or detach it with None. Does not commit."""
    cursor = conn.execute(
        "UPDATE tasks SET codebase_task_id = ?, "
        "updated_at = strftime('%Y-%m-%dT%H:%M:%SZ', 'now') WHERE id = ?",
        (codebase_task_id, task_id),
    )
    return cursor.rowcount > 0


def set_task_visibility(conn: sqlite3.Connection, task_id: str, visibility: str) -> bool:
    """Does not commit."""
    _validate_choice(visibility, VALID_TASK_VISIBILITIES, "visibility")
    cursor = conn.execute(
        "UPDATE tasks SET visibility = ?, "
        "updated_at = strftime('%Y-%m-%dT%H:%M:%SZ', 'now') WHERE id = ?",
        (visibility, task_id),
    )
    return cursor.rowcount > 0


def update_task_progress(
    conn: sqlite3.Connection, task_id: str, progress: str, *, actor: str | None = None
) -> bool:
    """Set a task's progress and record the transition. Does not commit."""
    _validate_choice(progress, VALID_TASK_PROGRESS, "progress")
    current = conn.execute("SELECT progress FROM tasks WHERE id = ?", (task_id,)).fetchone()
    if not current or current["progress"] == progress:
        return False
    cursor = conn.execute(
        "UPDATE tasks SET progress = ?, updated_at = strftime('%Y-%m-%dT%H:%M:%SZ', 'now') "
        "WHERE id = ? AND progress = ?",
        (progress, task_id, current["progress"]),
    )
    if cursor.rowcount > 0:
        record_status_change(
            conn,
            entity_type="task",
            entity_id=task_id,
            old_status=current["progress"],
            new_status=progress,
            actor=actor,
        )
    return cursor.rowcount > 0


# -- History --


def add_task_action(
    conn: sqlite3.Connection,
    *,
    owner_id: str,
    task_id: str,
    action_type: str,
    description: str,
    project_id: str | None,
) -> dict:
    """Append a history entry for a task. Does not commit."""
    if action_type not in VALID_ACTION_TYPES:
        raise ValueError(
            f"Invalid action type '{action_type}'. Must be one of: {sorted(VALID_ACTION_TYPES)}"
        )
    task = get_task(conn, task_id)
    data: dict[str, Any] = {"task_id": task_id}
    if project_id is not None:
        data["project_id"] = project_id
    if task is not None:
        data["title"] = task["title"]
    action_id = _new_id()
    conn.execute(
        "INSERT INTO actions (id, owner_id, type, description, data) VALUES (?, ?, ?, ?, ?)",
        (action_id, owner_id, action_type, description, json.dumps(data)),
    )
    return {
        "id": action_id,
        "owner_id": owner_id,
        "type": action_type,
        "description": description,
        "data": data,
    }


def list_actions(
    conn: sqlite3.Connection,
    owner_id: str,
    *,
    types: Sequence[str] | None = None,
    project_id: str | None = None,
) -> list[dict]:
    query = "SELECT * FROM actions WHERE owner_id = ?"
    params: list[Any] = [owner_id]
    if types:
        placeholders = ",".join("?" for _ in types)
        query += f" AND type IN ({placeholders})"
        params.extend(types)
    rows = conn.execute(query + " ORDER BY created_at, id", params).fetchall()
    result = []
    for row in rows:
        entry = dict(row)
        try:
            entry["data"] = json.loads(entry["data"] or "{}")
        except json.JSONDecodeError:
            entry["data"] = {}
        if project_id is not None and entry["data"].get("project_id") != project_id:
            continue
        result.append(entry)
    return result


# -- Scan logs --


def add_scan_log(
    conn: sqlite3.Connection,
    *,
    project_id: str,
    level: str,
    message: str,
    source: str = "scan",
) -> None:
    conn.execute(
        "INSERT INTO scan_logs (id, project_id, level, message, source) VALUES (?, ?, ?, ?, ?)",
        (_new_id(), project_id, level, message, source),
    )
    conn.commit()


def list_scan_logs(
    conn: sqlite3.Connection, project_id: str, level: str | None = None
) -> list[dict]:
    query = "SELECT * FROM scan_logs WHERE project_id = ?"
    params: list[Any] = [project_id]
    if level:
        query += " AND level = ?"
        params.append(level)
    rows = conn.execute(query + " ORDER BY created_at, rowid", params).fetchall()
    return [dict(row) for row in rows]
