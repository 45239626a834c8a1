"""Correlate two annotation snapshots into a change classification.

Matching is greedy in old-array order: the first unconsumed old record that
qualifies wins, and each old record is consumed at most once. Text equality
is tried before line+tag equality for every new record.
"""

from __future__ import annotations

from collections.abc import Sequence

from tagscan.models import DiffInfo, DiffResult, DiffType, ParsedTask


def same_text(a: str, b: str) -> bool:
    return a.strip() == b.strip()


def extract_diff_info(task: ParsedTask) -> DiffInfo:
    return {
        "text": task["text"],
        "line": task["line"],
        "file": task["file"],
        "context": task["context"],
    }


def _first_unused(
    old_tasks: Sequence[ParsedTask], used: set[int], new_task: ParsedTask, *, by_text: bool
) -> int | None:
    for idx, old_task in enumerate(old_tasks):
        if idx in used:
            continue
        if by_text:
            if same_text(old_task["text"], new_task["text"]):
                return idx
        elif (
            old_task["line"] == new_task["line"]
            and old_task["tag"] == new_task["tag"]
            and not same_text(old_task["text"], new_task["text"])
        ):
            return idx
    return None


def _matched(old_task: ParsedTask, new_task: ParsedTask, diff_type: DiffType) -> DiffResult:
    return {
        "id": old_task["id"],
        "tag": new_task["tag"],
        "type": diff_type,
        "data": {"old": extract_diff_info(old_task), "new": extract_diff_info(new_task)},
    }


def generate_diff(
    old_tasks: Sequence[ParsedTask], new_tasks: Sequence[ParsedTask]
) -> list[DiffResult]:
    """Classify every record of both snapshots exactly once.

    Results for *new_tasks* come first, in their order, followed by one
    DELETE per unconsumed old record in old order.
    """
    used: set[int] = set()
    results: list[DiffResult] = []

    for new_task in new_tasks:
        idx = _first_unused(old_tasks, used, new_task, by_text=True)
        if idx is not None:
            used.add(idx)
            old_task = old_tasks[idx]
            unchanged = (
                old_task["line"] == new_task["line"] and old_task["file"] == new_task["file"]
            )
            results.append(_matched(old_task, new_task, "SAME" if unchanged else "MOVE"))
            continue

        idx = _first_unused(old_tasks, used, new_task, by_text=False)
        if idx is not None:
            used.add(idx)
            results.append(_matched(old_tasks[idx], new_task, "UPDATE"))
            continue

        results.append(
            {
                "id": new_task["id"],
                "tag": new_task["tag"],
                "type": "NEW",
                "data": {"old": None, "new": extract_diff_info(new_task)},
            }
        )

    for idx, old_task in enumerate(old_tasks):
        if idx in used:
            continue
        results.append(
            {
                "id": old_task["id"],
                "tag": old_task["tag"],
                "type": "DELETE",
                "data": {"old": extract_diff_info(old_task), "new": None},
            }
        )
    return results


def count_by_type(diff: Sequence[DiffResult]) -> dict[str, int]:
    """Per-type item counts, used for change-set summaries."""
    counts: dict[str, int] = {}
    for item in diff:
        counts[item["type"]] = counts.get(item["type"], 0) + 1
    return counts
