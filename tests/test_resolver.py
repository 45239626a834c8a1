"""Tests for change-set resolution and task materialization."""

import sqlite3

import pytest

from tagscan.db import (
    delete_tag,
    get_change_set,
    get_codebase_task,
    get_snapshot,
    get_tag_by_title,
    get_tasks_for_codebase_task,
    list_actions,
    list_status_history,
    list_task_tags,
    list_tasks,
    save_pending,
    save_snapshot,
)
from tagscan.resolver import (
    BAD_REQUEST,
    INTERNAL,
    NOT_FOUND,
    ResolveError,
    default_actions,
    plan_actions,
    resolve,
)

OWNER = "user-1"


def _info(text, line, file):
    return {"text": text, "line": line, "file": file, "context": [f"# TODO: {text}"]}


def _item(item_id, diff_type, text="fix it", tag="todo", line=3, file="a.py"):
    old = _info(text, line, file) if diff_type != "NEW" else None
    new = _info(text, line + 1 if diff_type == "MOVE" else line, file)
    if diff_type == "DELETE":
        new = None
    return {"id": item_id, "tag": tag, "type": diff_type, "data": {"old": old, "new": new}}


def _pending(conn, project_id, items, old_id=None):
    new_id = save_snapshot(conn, project_id, [], branch="main", commit_sha="c0ffee")
    branch_info = {"branch": "main", "commit_sha": "c0ffee", "commit_msg": None, "commit_url": None}
    change_set_id = save_pending(conn, project_id, items, old_id, new_id, branch_info=branch_info)
    return change_set_id, new_id


def _create_linked(conn, project_id, item_id="cb1", text="fix it"):
    """Approve a NEW item with CREATE and return the resulting task."""
    change_set_id, _ = _pending(conn, project_id, [_item(item_id, "NEW", text=text)])
    resolve(conn, project_id, OWNER, change_set_id, {"CREATE": [item_id]}, {}, True)
    [task] = get_tasks_for_codebase_task(conn, item_id)
    return task


def _status(conn, change_set_id):
    return get_change_set(conn, change_set_id)["status"]


class TestReject:
    def test_reject_changes_no_tasks(self, db_conn, project_id) -> None:
        change_set_id, new_id = _pending(db_conn, project_id, [_item("n1", "NEW")])
        result = resolve(
            db_conn, project_id, OWNER, change_set_id, {"CREATE": ["n1"]}, {}, False
        )
        assert result == {"applied": False}
        assert _status(db_conn, change_set_id) == "REJECTED"
        assert get_snapshot(db_conn, new_id)["accepted"] == 0
        assert list_tasks(db_conn, project_id) == []
        assert get_codebase_task(db_conn, "n1") is None

    def test_reject_ignores_malformed_actions(self, db_conn, project_id) -> None:
        change_set_id, _ = _pending(db_conn, project_id, [_item("n1", "NEW")])
        result = resolve(db_conn, project_id, OWNER, change_set_id, {"BOGUS": [1]}, None, False)
        assert result == {"applied": False}

    def test_status_history_records_actor(self, db_conn, project_id) -> None:
        change_set_id, _ = _pending(db_conn, project_id, [])
        resolve(db_conn, project_id, OWNER, change_set_id, None, None, False)
        history = list_status_history(db_conn, entity_type="change_set", entity_id=change_set_id)
        assert [(h["old_status"], h["new_status"]) for h in history] == [
            (None, "PENDING"),
            ("PENDING", "REJECTED"),
        ]
        assert history[-1]["actor"] == OWNER


class TestCreate:
    def test_create_with_title(self, db_conn, project_id) -> None:
        change_set_id, new_id = _pending(db_conn, project_id, [_item("n1", "NEW")])
        result = resolve(
            db_conn,
            project_id,
            OWNER,
            change_set_id,
            {"CREATE": ["n1"]},
            {"n1": "Custom title"},
            True,
        )
        assert result == {"applied": True}
        assert _status(db_conn, change_set_id) == "ACCEPTED"
        assert get_snapshot(db_conn, new_id)["accepted"] == 1

        [task] = list_tasks(db_conn, project_id)
        assert task["title"] == "Custom title"
        assert task["description"] == "fix it"
        assert task["codebase_task_id"] == "n1"
        assert task["progress"] == "UNSTARTED"
        assert task["owner_id"] == OWNER
        assert [t["title"] for t in list_task_tags(db_conn, task["id"])] == ["todo"]

        codebase = get_codebase_task(db_conn, "n1")
        assert codebase["recent_scan_id"] == new_id
        assert codebase["type"] == "todo"
        assert codebase["branch"] == "main"
        assert codebase["commit_sha"] == "c0ffee"

        [action] = list_actions(db_conn, OWNER, project_id=project_id)
        assert action["type"] == "CREATE_TASK"
        assert action["description"] == "Task created (via scan)"
        assert action["data"] == {
            "task_id": task["id"],
            "project_id": project_id,
            "title": "Custom title",
        }

    def test_title_defaults_to_text(self, db_conn, project_id) -> None:
        task = _create_linked(db_conn, project_id, text="wire the thing")
        assert task["title"] == "wire the thing"

    def test_empty_text_gets_placeholder_title(self, db_conn, project_id) -> None:
        task = _create_linked(db_conn, project_id, text="")
        assert task["title"] == "Untitled Task"

    def test_missing_tag_leaves_task_untagged(self, db_conn, project_id) -> None:
        change_set_id, _ = _pending(db_conn, project_id, [_item("n1", "NEW", tag="hack")])
        resolve(db_conn, project_id, OWNER, change_set_id, {"CREATE": ["n1"]}, {}, True)
        [task] = list_tasks(db_conn, project_id)
        assert list_task_tags(db_conn, task["id"]) == []

    def test_deleted_tag_not_linked(self, db_conn, project_id) -> None:
        delete_tag(db_conn, get_tag_by_title(db_conn, OWNER, "todo")["id"])
        task = _create_linked(db_conn, project_id)
        assert list_task_tags(db_conn, task["id"]) == []


class TestExistingAnnotations:
    def test_confirm_refreshes_annotation(self, db_conn, project_id) -> None:
        task = _create_linked(db_conn, project_id)
        change_set_id, new_id = _pending(db_conn, project_id, [_item("cb1", "MOVE", tag="bug")])
        resolve(db_conn, project_id, OWNER, change_set_id, {"CONFIRM": ["cb1"]}, {}, True)

        codebase = get_codebase_task(db_conn, "cb1")
        assert codebase["recent_scan_id"] == new_id
        assert codebase["line"] == 4
        assert codebase["type"] == "bug"
        tags = [t["title"] for t in list_task_tags(db_conn, task["id"])]
        assert tags == ["bug", "todo"]
        assert len(list_tasks(db_conn, project_id)) == 1

    def test_unlink_detaches_tasks(self, db_conn, project_id) -> None:
        task = _create_linked(db_conn, project_id)
        change_set_id, _ = _pending(db_conn, project_id, [_item("cb1", "SAME")])
        resolve(db_conn, project_id, OWNER, change_set_id, {"UNLINK": ["cb1"]}, {}, True)

        [refreshed] = list_tasks(db_conn, project_id)
        assert refreshed["id"] == task["id"]
        assert refreshed["codebase_task_id"] is None
        assert get_codebase_task(db_conn, "cb1") is not None
        actions = list_actions(db_conn, OWNER, types=["UPDATE_TASK"])
        assert [a["description"] for a in actions] == ["Task unlinked from codebase (via scan)"]

    def test_delete_removes_annotation_and_task(self, db_conn, project_id) -> None:
        task = _create_linked(db_conn, project_id)
        change_set_id, _ = _pending(db_conn, project_id, [_item("cb1", "DELETE")])
        resolve(db_conn, project_id, OWNER, change_set_id, {"DELETE": ["cb1"]}, {}, True)

        assert get_codebase_task(db_conn, "cb1") is None
        assert list_tasks(db_conn, project_id) == []
        [deleted] = list_tasks(db_conn, project_id, include_deleted=True)
        assert deleted["id"] == task["id"]
        assert deleted["visibility"] == "DELETED"
        assert deleted["codebase_task_id"] is None
        actions = list_actions(db_conn, OWNER, types=["DELETE_TASK"])
        assert [a["data"]["task_id"] for a in actions] == [task["id"]]

    def test_complete_marks_task_done(self, db_conn, project_id) -> None:
        task = _create_linked(db_conn, project_id)
        change_set_id, _ = _pending(db_conn, project_id, [_item("cb1", "DELETE")])
        resolve(db_conn, project_id, OWNER, change_set_id, {"COMPLETE": ["cb1"]}, {}, True)

        [done] = list_tasks(db_conn, project_id)
        assert done["progress"] == "COMPLETED"
        history = list_status_history(db_conn, entity_type="task", entity_id=task["id"])
        assert [(h["old_status"], h["new_status"]) for h in history] == [
            ("UNSTARTED", "COMPLETED")
        ]

    def test_ignore_creates_nothing(self, db_conn, project_id) -> None:
        change_set_id, _ = _pending(db_conn, project_id, [_item("n1", "NEW")])
        resolve(db_conn, project_id, OWNER, change_set_id, {"IGNORE": ["n1"]}, {}, True)
        assert list_tasks(db_conn, project_id) == []
        assert get_codebase_task(db_conn, "n1") is None

    def test_unlisted_items_left_alone(self, db_conn, project_id) -> None:
        change_set_id, _ = _pending(db_conn, project_id, [_item("n1", "NEW")])
        assert resolve(db_conn, project_id, OWNER, change_set_id, {}, {}, True) == {
            "applied": True
        }
        assert _status(db_conn, change_set_id) == "ACCEPTED"
        assert list_tasks(db_conn, project_id) == []


class TestValidation:
    def _expect(self, conn, project_id, change_set_id, actions, titles=None, *, kind=BAD_REQUEST):
        with pytest.raises(ResolveError) as excinfo:
            resolve(conn, project_id, OWNER, change_set_id, actions, titles, True)
        assert excinfo.value.kind == kind
        assert excinfo.value.phase == "validate"
        return excinfo.value

    def test_illegal_action_for_type(self, db_conn, project_id) -> None:
        change_set_id, _ = _pending(db_conn, project_id, [_item("o1", "SAME")])
        error = self._expect(db_conn, project_id, change_set_id, {"CREATE": ["o1"]})
        assert "CREATE is not valid for SAME" in error.message
        assert _status(db_conn, change_set_id) == "PENDING"

    def test_illegal_action_checked_before_any_write(self, db_conn, project_id) -> None:
        items = [_item("n1", "NEW"), _item("d1", "DELETE")]
        change_set_id, _ = _pending(db_conn, project_id, items)
        self._expect(db_conn, project_id, change_set_id, {"CREATE": ["n1", "d1"]})
        assert list_tasks(db_conn, project_id) == []
        assert get_codebase_task(db_conn, "n1") is None

    def test_item_under_two_actions(self, db_conn, project_id) -> None:
        change_set_id, _ = _pending(db_conn, project_id, [_item("n1", "NEW")])
        error = self._expect(
            db_conn, project_id, change_set_id, {"CREATE": ["n1"], "IGNORE": ["n1"]}
        )
        assert "both" in error.message

    def test_unknown_action_kind(self, db_conn, project_id) -> None:
        change_set_id, _ = _pending(db_conn, project_id, [_item("n1", "NEW")])
        error = self._expect(db_conn, project_id, change_set_id, {"EXPLODE": ["n1"]})
        assert error.message.startswith("invalid actions")

    def test_non_string_title(self, db_conn, project_id) -> None:
        change_set_id, _ = _pending(db_conn, project_id, [_item("n1", "NEW")])
        error = self._expect(
            db_conn, project_id, change_set_id, {"CREATE": ["n1"]}, {"n1": 5}
        )
        assert error.message.startswith("invalid titles")

    def test_unknown_item_ignored(self, db_conn, project_id) -> None:
        change_set_id, _ = _pending(db_conn, project_id, [_item("n1", "NEW")])
        result = resolve(db_conn, project_id, OWNER, change_set_id, {"CREATE": ["ghost"]}, {}, True)
        assert result == {"applied": True}
        assert list_tasks(db_conn, project_id) == []

    def test_other_owner(self, db_conn, project_id) -> None:
        change_set_id, _ = _pending(db_conn, project_id, [])
        with pytest.raises(ResolveError) as excinfo:
            resolve(db_conn, project_id, "intruder", change_set_id, {}, {}, True)
        assert excinfo.value.kind == NOT_FOUND

    def test_missing_change_set(self, db_conn, project_id) -> None:
        self._expect(db_conn, project_id, 999, {}, kind=NOT_FOUND)

    def test_change_set_of_other_project(self, db_conn, project_id) -> None:
        change_set_id, _ = _pending(db_conn, project_id, [])
        bare = db_conn.execute("SELECT id FROM projects WHERE name = 'bare'").fetchone()["id"]
        self._expect(db_conn, bare, change_set_id, {}, kind=NOT_FOUND)

    def test_already_resolved(self, db_conn, project_id) -> None:
        change_set_id, _ = _pending(db_conn, project_id, [])
        resolve(db_conn, project_id, OWNER, change_set_id, {}, {}, True)
        error = self._expect(db_conn, project_id, change_set_id, {})
        assert "ACCEPTED" in error.message


class TestRollback:
    def test_failure_rolls_back_whole_call(self, db_conn, project_id, monkeypatch) -> None:
        def broken_link(conn, task_id, tag_id):
            raise sqlite3.OperationalError("disk I/O error")

        monkeypatch.setattr("tagscan.resolver.link_task_to_tag", broken_link)
        change_set_id, new_id = _pending(db_conn, project_id, [_item("n1", "NEW")])

        with pytest.raises(ResolveError) as excinfo:
            resolve(db_conn, project_id, OWNER, change_set_id, {"CREATE": ["n1"]}, {}, True)

        assert excinfo.value.kind == INTERNAL
        assert excinfo.value.phase == "tag-link"
        assert "disk I/O error" in excinfo.value.message
        assert _status(db_conn, change_set_id) == "PENDING"
        assert get_snapshot(db_conn, new_id)["accepted"] == 0
        assert list_tasks(db_conn, project_id, include_deleted=True) == []
        assert get_codebase_task(db_conn, "n1") is None
        assert list_actions(db_conn, OWNER) == []

    def test_error_serializes(self) -> None:
        error = ResolveError(INTERNAL, "upsert failed", phase="upsert")
        assert error.to_dict() == {
            "kind": "internal",
            "message": "upsert failed",
            "phase": "upsert",
        }


def test_default_actions() -> None:
    items = [
        _item("s", "SAME"),
        _item("m", "MOVE"),
        _item("u", "UPDATE"),
        _item("n", "NEW"),
        _item("d", "DELETE"),
    ]
    assert default_actions(items) == {"CONFIRM": ["s", "m", "u"], "CREATE": ["n"], "UNLINK": ["d"]}


def test_plan_actions_allows_repeated_listing_under_same_action() -> None:
    assert plan_actions({"CREATE": ["n", "n"]}, [_item("n", "NEW")]) == {"n": "CREATE"}
