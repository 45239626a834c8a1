"""Record shapes shared by the parser, the diff matcher and the stores.

Everything here is a plain TypedDict so a record can be written to the
database as JSON and read back without conversion.
"""

from __future__ import annotations

from typing import Literal, TypedDict

DiffType = Literal["SAME", "MOVE", "UPDATE", "NEW", "DELETE"]

DIFF_TYPES: tuple[DiffType, ...] = ("SAME", "MOVE", "UPDATE", "NEW", "DELETE")


class TagMatcher(TypedDict):
    name: str
    match: list[str]


class ScanConfig(TypedDict):
    tags: list[TagMatcher]
    ignore: list[str]


class LineMatch(TypedDict):
    tag: str
    match_index: int
    match_length: int


class ParsedTask(TypedDict):
    id: str
    file: str
    line: int
    tag: str
    text: str
    context: list[str]


class DiffInfo(TypedDict):
    text: str
    line: int
    file: str
    context: list[str]


class DiffData(TypedDict):
    old: DiffInfo | None
    new: DiffInfo | None


class DiffResult(TypedDict):
    id: str
    tag: str
    type: DiffType
    data: DiffData


class TreeEntry(TypedDict):
    path: str
    type: Literal["blob", "tree"]
    sha: str
    size: int


class BranchInfo(TypedDict):
    branch: str | None
    commit_sha: str | None
    commit_msg: str | None
    commit_url: str | None
