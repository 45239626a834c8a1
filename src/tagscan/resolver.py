"""Apply a reviewed change-set to the task store.

Each diff item is resolved by at most one action. Which actions are legal
depends on the item's diff type:

    SAME, MOVE, UPDATE  ->  CONFIRM, UNLINK
    NEW                 ->  CREATE, IGNORE
    DELETE              ->  UNLINK, COMPLETE, DELETE

The whole call is one SQLite transaction. Any failure rolls back every
write made by the call, status flips included.
"""

from __future__ import annotations

import contextlib
import logging
import sqlite3
from collections.abc import Iterator, Mapping, Sequence
from typing import Any

from jsonschema import Draft202012Validator
from jsonschema.exceptions import best_match

from tagscan.db import (
    ChangeSetRow,
    TagRow,
    add_task_action,
    create_task,
    delete_codebase_task,
    get_active_tags_by_name,
    get_change_set,
    get_owned_project,
    get_tasks_for_codebase_task,
    link_task_to_tag,
    load_change_set_items,
    set_change_set_status,
    set_snapshot_accepted,
    set_task_codebase_link,
    set_task_visibility,
    update_task_progress,
    upsert_codebase_task,
)
from tagscan.models import DiffResult

log = logging.getLogger(__name__)

NOT_FOUND = "not_found"
BAD_REQUEST = "bad_request"
INTERNAL = "internal"

ACTION_KINDS = ("CONFIRM", "UNLINK", "CREATE", "IGNORE", "DELETE", "COMPLETE")

ALLOWED_ACTIONS: dict[str, tuple[str, ...]] = {
    "SAME": ("CONFIRM", "UNLINK"),
    "MOVE": ("CONFIRM", "UNLINK"),
    "UPDATE": ("CONFIRM", "UNLINK"),
    "NEW": ("CREATE", "IGNORE"),
    "DELETE": ("UNLINK", "COMPLETE", "DELETE"),
}

_actions_validator = Draft202012Validator(
    {
        "type": "object",
        "propertyNames": {"enum": list(ACTION_KINDS)},
        "additionalProperties": {"type": "array", "items": {"type": "string"}},
    }
)
_titles_validator = Draft202012Validator(
    {"type": "object", "additionalProperties": {"type": "string"}}
)


class ResolveError(Exception):
    """Structured resolve failure.

    ``kind`` is one of ``not_found``, ``bad_request`` or ``internal``.
    ``phase`` names the step that failed: ``validate``, ``upsert``,
    ``delete``, ``action-application`` or ``tag-link``.
    """

    def __init__(self, kind: str, message: str, phase: str | None = None):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.phase = phase

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "message": self.message, "phase": self.phase}


def default_actions(diff: Sequence[DiffResult]) -> dict[str, list[str]]:
    """Group every item under the first legal action for its type."""
    grouped: dict[str, list[str]] = {}
    for item in diff:
        allowed = ALLOWED_ACTIONS.get(item["type"])
        if not allowed:
            continue
        grouped.setdefault(allowed[0], []).append(item["id"])
    return grouped


def _validate_payload(actions: Any, titles: Any) -> None:
    for name, validator, value in (
        ("actions", _actions_validator, actions),
        ("titles", _titles_validator, titles),
    ):
        error = best_match(validator.iter_errors(value))
        if error is not None:
            raise ResolveError(BAD_REQUEST, f"invalid {name}: {error.message}", phase="validate")


def plan_actions(
    actions: Mapping[str, Sequence[str]], items: Sequence[DiffResult]
) -> dict[str, str]:
    """Map item id to its single action, rejecting illegal combinations.

    Ids that are not part of the change-set are logged and dropped.
    """
    types = {item["id"]: item["type"] for item in items}
    planned: dict[str, str] = {}
    for action, item_ids in actions.items():
        for item_id in item_ids:
            if item_id not in types:
                log.warning("Ignoring %s for unknown item %s", action, item_id)
                continue
            previous = planned.get(item_id)
            if previous is not None and previous != action:
                raise ResolveError(
                    BAD_REQUEST,
                    f"item {item_id} listed under both {previous} and {action}",
                    phase="validate",
                )
            if action not in ALLOWED_ACTIONS.get(types[item_id], ()):
                raise ResolveError(
                    BAD_REQUEST,
                    f"{action} is not valid for {types[item_id]} item {item_id}",
                    phase="validate",
                )
            planned[item_id] = action
    return planned


@contextlib.contextmanager
def _phase(name: str, item_id: str | None = None) -> Iterator[None]:
    try:
        yield
    except ResolveError:
        raise
    except Exception as exc:
        target = f" for item {item_id}" if item_id else ""
        raise ResolveError(INTERNAL, f"{name} failed{target}: {exc}", phase=name) from exc


class _Materializer:
    """Per-call state for applying an approved change-set."""

    def __init__(
        self,
        conn: sqlite3.Connection,
        project_id: str,
        user_id: str,
        change_set: ChangeSetRow,
        titles: Mapping[str, str],
    ):
        self.conn = conn
        self.project_id = project_id
        self.user_id = user_id
        self.change_set = change_set
        self.titles = titles
        self.tags: dict[str, TagRow] = get_active_tags_by_name(conn, user_id)

    def apply(self, item: DiffResult, action: str) -> None:
        handler = getattr(self, f"_{action.lower()}")
        handler(item)

    def _upsert(self, item: DiffResult) -> None:
        with _phase("upsert", item["id"]):
            upsert_codebase_task(
                self.conn,
                self.project_id,
                item,
                self.change_set["new_id"],
                branch=self.change_set["branch"],
                commit_sha=self.change_set["commit_sha"],
            )

    def _link_tag(self, task_id: str, tag_name: str) -> None:
        with _phase("tag-link", task_id):
            tag = self.tags.get(tag_name)
            if tag is None:
                log.warning("No active tag named %r, task %s left untagged", tag_name, task_id)
                return
            link_task_to_tag(self.conn, task_id, tag["id"])

    def _log_action(self, task_id: str, action_type: str, description: str) -> None:
        add_task_action(
            self.conn,
            owner_id=self.user_id,
            task_id=task_id,
            action_type=action_type,
            description=description,
            project_id=self.project_id,
        )

    def _create(self, item: DiffResult) -> None:
        self._upsert(item)
        new = item["data"]["new"] or {}
        text = new.get("text") or ""
        with _phase("action-application", item["id"]):
            task = create_task(
                self.conn,
                owner_id=self.user_id,
                project_id=self.project_id,
                title=self.titles.get(item["id"]) or text or "Untitled Task",
                description=text,
                codebase_task_id=item["id"],
            )
            self._log_action(task["id"], "CREATE_TASK", "Task created (via scan)")
        self._link_tag(task["id"], item["tag"])

    def _confirm(self, item: DiffResult) -> None:
        self._upsert(item)
        for task in get_tasks_for_codebase_task(self.conn, item["id"]):
            self._link_tag(task["id"], item["tag"])

    def _unlink(self, item: DiffResult) -> None:
        with _phase("action-application", item["id"]):
            for task in get_tasks_for_codebase_task(self.conn, item["id"]):
                set_task_codebase_link(self.conn, task["id"], None)
                self._log_action(
                    task["id"], "UPDATE_TASK", "Task unlinked from codebase (via scan)"
                )

    def _delete(self, item: DiffResult) -> None:
        with _phase("action-application", item["id"]):
            for task in get_tasks_for_codebase_task(self.conn, item["id"]):
                set_task_visibility(self.conn, task["id"], "DELETED")
                set_task_codebase_link(self.conn, task["id"], None)
                self._log_action(task["id"], "DELETE_TASK", "Task deleted (via scan)")
        with _phase("delete", item["id"]):
            delete_codebase_task(self.conn, item["id"])

    def _complete(self, item: DiffResult) -> None:
        with _phase("action-application", item["id"]):
            for task in get_tasks_for_codebase_task(self.conn, item["id"]):
                update_task_progress(self.conn, task["id"], "COMPLETED", actor=self.user_id)
                self._log_action(task["id"], "UPDATE_TASK", "Task completed (via scan)")

    def _ignore(self, item: DiffResult) -> None:
        log.debug("Ignoring item %s", item["id"])


def resolve(
    conn: sqlite3.Connection,
    project_id: str,
    user_id: str,
    change_set_id: int,
    actions: Mapping[str, Sequence[str]] | None,
    titles: Mapping[str, str] | None,
    approved: bool,
) -> dict[str, bool]:
    """Accept or reject a PENDING change-set.

    Rejection marks the snapshot unaccepted and the change-set REJECTED and
    ignores *actions* entirely. Approval marks both accepted, then applies
    one action per listed item; unlisted items are left alone.
    """
    actions = actions if actions is not None else {}
    titles = titles if titles is not None else {}

    if get_owned_project(conn, project_id, user_id) is None:
        raise ResolveError(NOT_FOUND, "project not found or access denied", phase="validate")
    change_set = get_change_set(conn, change_set_id, project_id)
    if change_set is None:
        raise ResolveError(NOT_FOUND, f"update {change_set_id} not found", phase="validate")
    if change_set["status"] != "PENDING":
        raise ResolveError(
            BAD_REQUEST,
            f"update {change_set_id} is {change_set['status']}, not PENDING",
            phase="validate",
        )

    items = load_change_set_items(change_set)
    planned: dict[str, str] = {}
    if approved:
        _validate_payload(actions, titles)
        planned = plan_actions(actions, items)

    try:
        with _phase("action-application"):
            set_snapshot_accepted(conn, change_set["new_id"], approved, commit=False)
            set_change_set_status(
                conn,
                change_set_id,
                "ACCEPTED" if approved else "REJECTED",
                actor=user_id,
                commit=False,
            )
            if approved:
                materializer = _Materializer(conn, project_id, user_id, change_set, titles)
                for item in items:
                    action = planned.get(item["id"])
                    if action is not None:
                        materializer.apply(item, action)
            conn.commit()
    except ResolveError:
        conn.rollback()
        log.exception("Resolving update %s of project %s failed", change_set_id, project_id)
        raise

    log.info(
        "Update %s of project %s %s (%d actions)",
        change_set_id,
        project_id,
        "accepted" if approved else "rejected",
        len(planned),
    )
    return {"applied": approved}
